from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
import os


@dataclass(frozen=True)
class E2EConfig:
    poll_timeout_seconds: float = float(os.getenv("KBE2E_POLL_TIMEOUT_SECONDS", "300"))
    poll_interval_seconds: float = float(os.getenv("KBE2E_POLL_INTERVAL_SECONDS", "0.5"))
    restore_appear_timeout_seconds: float = float(os.getenv("KBE2E_RESTORE_APPEAR_TIMEOUT_SECONDS", "300"))
    restore_appear_interval_seconds: float = float(os.getenv("KBE2E_RESTORE_APPEAR_INTERVAL_SECONDS", "10"))
    operation_timeout_seconds: float = float(os.getenv("KBE2E_OPERATION_TIMEOUT_SECONDS", "240"))
    operation_interval_seconds: float = float(os.getenv("KBE2E_OPERATION_INTERVAL_SECONDS", "10"))
    timeout_scale: float = float(os.getenv("KBE2E_TIMEOUT_SCALE", "1"))
    k3s_version: str = os.getenv("KBE2E_K3S_VERSION", "")
    k3s_kubeconfig_path: Path = Path(os.getenv("KBE2E_K3S_KUBECONFIG", "/etc/rancher/k3s/k3s.yaml"))
    cert_manager_version: str = os.getenv("KBE2E_CERT_MANAGER_VERSION", "v1.15.3")
    kubewarden_repo_url: str = os.getenv("KBE2E_KUBEWARDEN_REPO_URL", "https://charts.kubewarden.io")
    kubewarden_namespace: str = os.getenv("KBE2E_KUBEWARDEN_NAMESPACE", "kubewarden")
    backup_operator_repo_url: str = os.getenv("KBE2E_BACKUP_OPERATOR_REPO_URL", "https://charts.rancher.io")
    backup_operator_namespace: str = os.getenv("KBE2E_BACKUP_OPERATOR_NAMESPACE", "cattle-resources-system")
    backup_operator_version: str = os.getenv("KBE2E_BACKUP_OPERATOR_VERSION", "")
    backup_pvc_size: str = os.getenv("KBE2E_BACKUP_PVC_SIZE", "1Gi")
    cluster_namespace: str = os.getenv("KBE2E_CLUSTER_NAMESPACE", "kubewarden")
    work_dir: Path = Path(os.getenv("KBE2E_WORK_DIR", "."))
    log_source: str = os.getenv("KBE2E_LOG_SOURCE", "kubectl")

    def scaled(self, seconds: float) -> float:
        return seconds * self.timeout_scale


def local_kubeconfig_path() -> Path:
    return Path(os.environ.get("HOME", "~")).expanduser() / ".kube" / "config"
