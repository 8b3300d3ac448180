from __future__ import annotations

from pathlib import Path
from urllib.parse import urlparse
import logging
import os
import shutil

import yaml

from .config import E2EConfig, local_kubeconfig_path
from .k8s import wait_for_api_server, wait_for_pods_ready
from .kubectl import Kubectl
from .manifest import RESOURCE_SET_MANIFEST
from .shell import require_binaries, run_command

logger = logging.getLogger(__name__)

K3S_INSTALL_URL = "https://get.k3s.io"
K3S_INSTALL_SCRIPT = "k3s-install.sh"
K3S_UNINSTALL_SCRIPT = "k3s-uninstall.sh"
K3S_SYSTEM_NAMESPACE = "kube-system"
K3S_SYSTEM_SELECTORS = (
    "app=local-path-provisioner",
    "k8s-app=kube-dns",
    "app.kubernetes.io/name=traefik",
    "svccontroller.k3s.cattle.io/svcname=traefik",
)

CERT_MANAGER_NAMESPACE = "cert-manager"
KUBEWARDEN_REPO_NAME = "kubewarden"
KUBEWARDEN_CHARTS = ("kubewarden-crds", "kubewarden-controller", "kubewarden-defaults")
BACKUP_OPERATOR_REPO_NAME = "rancher-charts"
BACKUP_OPERATOR_CRD_CHART = "rancher-backup-crd"
BACKUP_OPERATOR_CHART = "rancher-backup"
BACKUP_OPERATOR_SELECTOR = "app.kubernetes.io/name=rancher-backup"
BACKUP_OPERATOR_VOLUME = "pv-storage"
HELM_TIMEOUT = "10m"


def install_k3s(cfg: E2EConfig) -> None:
    require_binaries("curl", "sh")
    script_path = cfg.work_dir / K3S_INSTALL_SCRIPT
    run_command(["curl", "-sfL", "-o", str(script_path), K3S_INSTALL_URL], timeout_seconds=120)

    environment = os.environ.copy()
    environment["INSTALL_K3S_SKIP_START"] = "true"
    environment["INSTALL_K3S_EXEC"] = "--disable metrics-server --write-kubeconfig-mode 0644"
    if cfg.k3s_version:
        environment["INSTALL_K3S_VERSION"] = cfg.k3s_version

    logger.info("Installing K3s %s", cfg.k3s_version or "(latest stable)")
    run_command(["sh", str(script_path)], env=environment, timeout_seconds=600)


def start_k3s() -> None:
    run_command(["sudo", "systemctl", "start", "k3s"], timeout_seconds=300)


def uninstall_k3s() -> None:
    logger.info("Uninstalling K3s")
    run_command([K3S_UNINSTALL_SCRIPT], timeout_seconds=600)


def wait_for_k3s(kubectl: Kubectl, cfg: E2EConfig) -> None:
    """Block until the K3s API server answers and its system pods are Ready.

    Runs before ``configure_kubeconfig``, so every check reads the K3s
    kubeconfig directly instead of relying on ``KUBECONFIG``.
    """
    kubeconfig_path = str(cfg.k3s_kubeconfig_path)
    wait_for_api_server(
        kubeconfig_path=kubeconfig_path,
        timeout_seconds=kubectl.poll_timeout_seconds,
        interval_seconds=kubectl.poll_interval_seconds,
    )
    for selector in K3S_SYSTEM_SELECTORS:
        wait_for_pods_ready(
            kubeconfig_path=kubeconfig_path,
            namespace=K3S_SYSTEM_NAMESPACE,
            label_selector=selector,
            timeout_seconds=kubectl.poll_timeout_seconds,
            interval_seconds=kubectl.poll_interval_seconds,
        )


def configure_kubeconfig(cfg: E2EConfig, destination: Path | None = None) -> Path:
    source = cfg.k3s_kubeconfig_path
    if not source.exists():
        raise RuntimeError(f"K3s kubeconfig was not found at {source}. Was K3s started?")

    target = destination or local_kubeconfig_path()
    target.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(source, target)
    os.chmod(target, 0o600)
    use_kubeconfig(target)
    logger.info("Kubeconfig %s points to %s", target, read_kubeconfig_server(target))
    return target


def use_kubeconfig(path: Path) -> None:
    os.environ["KUBECONFIG"] = str(path)


def read_kubeconfig_server(path: Path) -> str:
    parsed = yaml.safe_load(path.read_text(encoding="utf-8"))
    if not isinstance(parsed, dict):
        raise RuntimeError(f"Kubeconfig {path} must be a YAML mapping.")

    clusters = parsed.get("clusters")
    if not isinstance(clusters, list) or not clusters:
        raise RuntimeError(f"Kubeconfig {path} did not contain any clusters.")

    cluster_block = clusters[0].get("cluster") if isinstance(clusters[0], dict) else None
    if not isinstance(cluster_block, dict):
        raise RuntimeError(f"Kubeconfig {path} cluster entry is missing the 'cluster' mapping.")

    server = str(cluster_block.get("server", "")).strip()
    parsed_server = urlparse(server)
    if parsed_server.scheme != "https" or not parsed_server.hostname:
        raise RuntimeError(f"Unable to parse Kubernetes API server endpoint from kubeconfig: {server!r}")
    return server


def helm(*args: str) -> None:
    run_command(["helm", *args], timeout_seconds=900)


def install_cert_manager(kubectl: Kubectl, cfg: E2EConfig) -> None:
    manifest_url = (
        "https://github.com/cert-manager/cert-manager/releases/download/"
        f"{cfg.cert_manager_version}/cert-manager.yaml"
    )
    kubectl.apply(manifest_url, namespace="")
    kubectl.wait_for_namespace_with_pods(CERT_MANAGER_NAMESPACE)


def install_kubewarden(kubectl: Kubectl, cfg: E2EConfig) -> None:
    require_binaries("helm")
    install_cert_manager(kubectl, cfg)

    helm("repo", "add", "--force-update", KUBEWARDEN_REPO_NAME, cfg.kubewarden_repo_url)
    helm("repo", "update", KUBEWARDEN_REPO_NAME)
    for chart in KUBEWARDEN_CHARTS:
        extra_args: list[str] = []
        if chart == "kubewarden-defaults":
            extra_args = ["--set", "recommendedPolicies.enabled=true"]
        helm(
            "upgrade",
            "--install",
            chart,
            f"{KUBEWARDEN_REPO_NAME}/{chart}",
            "--namespace",
            cfg.kubewarden_namespace,
            "--create-namespace",
            "--wait",
            "--timeout",
            HELM_TIMEOUT,
            *extra_args,
        )

    kubectl.wait_for_namespace_with_pods(cfg.kubewarden_namespace)


def install_backup_operator(kubectl: Kubectl, cfg: E2EConfig) -> None:
    require_binaries("helm")
    helm("repo", "add", "--force-update", BACKUP_OPERATOR_REPO_NAME, cfg.backup_operator_repo_url)
    helm("repo", "update", BACKUP_OPERATOR_REPO_NAME)

    version_args = ["--version", cfg.backup_operator_version] if cfg.backup_operator_version else []
    for chart, chart_args in (
        (BACKUP_OPERATOR_CRD_CHART, []),
        (
            BACKUP_OPERATOR_CHART,
            [
                "--set",
                "persistence.enabled=true",
                "--set",
                "persistence.storageClass=local-path",
                "--set",
                f"persistence.size={cfg.backup_pvc_size}",
            ],
        ),
    ):
        helm(
            "upgrade",
            "--install",
            chart,
            f"{BACKUP_OPERATOR_REPO_NAME}/{chart}",
            "--namespace",
            cfg.backup_operator_namespace,
            "--create-namespace",
            "--wait",
            "--timeout",
            HELM_TIMEOUT,
            *version_args,
            *chart_args,
        )

    kubectl.wait_for_namespace_with_pods(cfg.backup_operator_namespace, BACKUP_OPERATOR_SELECTOR)
    kubectl.apply(RESOURCE_SET_MANIFEST, namespace="")


def get_backup_dir(kubectl: Kubectl, cfg: E2EConfig) -> str:
    """Return the host directory backing the backup operator's storage volume."""
    namespace = cfg.backup_operator_namespace
    claim_name = kubectl.run_without_err(
        "get",
        "pod",
        "--namespace",
        namespace,
        "-l",
        BACKUP_OPERATOR_SELECTOR,
        "-o",
        f'jsonpath={{.items[*].spec.volumes[?(@.name=="{BACKUP_OPERATOR_VOLUME}")].persistentVolumeClaim.claimName}}',
    )
    if not claim_name:
        raise RuntimeError(
            f"Backup operator pod in namespace '{namespace}' does not mount a '{BACKUP_OPERATOR_VOLUME}' claim. "
            "Check that the operator was installed with persistence enabled."
        )

    volume_name = kubectl.get_jsonpath("pvc", claim_name.split()[0], "{.spec.volumeName}", namespace=namespace)
    if not volume_name:
        raise RuntimeError(f"PVC {namespace}/{claim_name} is not bound to a volume yet.")

    storage_path = kubectl.get_jsonpath("pv", volume_name, "{.spec.hostPath.path}", namespace="")
    if not storage_path:
        storage_path = kubectl.get_jsonpath("pv", volume_name, "{.spec.local.path}", namespace="")
    if not storage_path:
        raise RuntimeError(f"PV {volume_name} does not expose a hostPath or local path.")
    return storage_path


def copy_file_with_sudo(source: Path | str, destination: Path | str) -> None:
    run_command(["sudo", "cp", str(source), str(destination)], timeout_seconds=120)
