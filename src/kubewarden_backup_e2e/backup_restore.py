from __future__ import annotations

from dataclasses import replace
from pathlib import Path
from typing import Iterable
import logging
import os

from .config import E2EConfig
from .install import copy_file_with_sudo, get_backup_dir
from .k8s import KubernetesAuthenticationError, KubernetesQueryError, load_kubernetes_clients, read_pod_logs
from .kubectl import Kubectl
from .manifest import BACKUP_TEMPLATE, render_restore_manifest
from .models import BackupArtifact, PollResult
from .poll import contains, wait_for_substring
from .shell import CommandError

logger = logging.getLogger(__name__)

BACKUP_RESOURCE_NAME = "kubewarden-backup"
RESTORE_RESOURCE_NAME = "kubewarden-restore"
BACKUP_DONE_MESSAGE = "Done with backup"
RESTORE_DONE_MESSAGE = "Done restoring"
OPERATOR_SELECTOR = "app.kubernetes.io/name=rancher-backup"
KUBEWARDEN_RESOURCE_KINDS = ("ClusterAdmissionPolicy", "AdmissionPolicy")
LOG_SOURCES = ("kubectl", "api")


class BackupRestoreError(RuntimeError):
    """Raised when a Backup or Restore resource is not in the expected state."""


def operator_logs(kubectl: Kubectl, cfg: E2EConfig) -> str:
    """Fetch the full backup operator log through kubectl or the Kubernetes API."""
    if cfg.log_source == "kubectl":
        return kubectl.logs(OPERATOR_SELECTOR, namespace=cfg.backup_operator_namespace)
    if cfg.log_source == "api":
        kubeconfig_path = kubectl.kubeconfig_path or os.environ.get("KUBECONFIG")
        clients = load_kubernetes_clients(kubeconfig_path=str(kubeconfig_path) if kubeconfig_path else None)
        try:
            return read_pod_logs(
                clients,
                namespace=cfg.backup_operator_namespace,
                label_selector=OPERATOR_SELECTOR,
            )
        finally:
            clients.api_client.close()
    raise ValueError(f"Unsupported log source {cfg.log_source!r}. Expected one of {', '.join(LOG_SOURCES)}.")


def check_backup_restore(kubectl: Kubectl, cfg: E2EConfig, message: str) -> PollResult:
    """Wait until the backup operator logged ``message``.

    The whole log is fetched on every attempt.
    """
    return wait_for_substring(
        lambda: operator_logs(kubectl, cfg),
        message,
        timeout_seconds=cfg.scaled(cfg.operation_timeout_seconds),
        interval_seconds=cfg.operation_interval_seconds,
        description=f"backup operator log line {message!r}",
        ignored_errors=(CommandError, KubernetesAuthenticationError, KubernetesQueryError),
    )


def create_backup(kubectl: Kubectl, *, namespace: str, manifest: Path = BACKUP_TEMPLATE) -> str:
    kubectl.apply(manifest, namespace=namespace)
    name = kubectl.get_jsonpath("backup", BACKUP_RESOURCE_NAME, "{.metadata.name}", namespace="")
    if BACKUP_RESOURCE_NAME not in name:
        raise BackupRestoreError(f"Backup resource {BACKUP_RESOURCE_NAME!r} was not found after apply (got {name!r}).")
    return name


def read_backup_filename(kubectl: Kubectl) -> str:
    filename = kubectl.get_jsonpath("backup", BACKUP_RESOURCE_NAME, "{.status.filename}", namespace="")
    if not filename:
        raise BackupRestoreError(
            f"Backup resource {BACKUP_RESOURCE_NAME!r} has no .status.filename. "
            "The operator has not finished the backup yet."
        )
    return filename


def wait_for_backup(kubectl: Kubectl, cfg: E2EConfig) -> BackupArtifact:
    check_backup_restore(kubectl, cfg, BACKUP_DONE_MESSAGE)
    filename = read_backup_filename(kubectl)
    logger.info("Backup %s produced %s", BACKUP_RESOURCE_NAME, filename)
    return BackupArtifact(resource_name=BACKUP_RESOURCE_NAME, filename=filename)


def copy_backup_out(kubectl: Kubectl, cfg: E2EConfig, artifact: BackupArtifact) -> BackupArtifact:
    """Copy the archive from the operator's storage volume into the working directory."""
    storage_dir = get_backup_dir(kubectl, cfg)
    local_copy = cfg.work_dir / artifact.filename
    copy_file_with_sudo(Path(storage_dir) / artifact.filename, local_copy)
    logger.info("Saved %s to %s", artifact.filename, local_copy)
    return replace(artifact, storage_dir=storage_dir, local_copy=local_copy)


def copy_backup_in(kubectl: Kubectl, cfg: E2EConfig, artifact: BackupArtifact) -> BackupArtifact:
    """Copy a saved archive into the storage volume of the (re)installed operator."""
    if artifact.local_copy is None:
        raise BackupRestoreError(
            f"Backup {artifact.filename!r} has no local copy. Call copy_backup_out before reinstalling the cluster."
        )
    storage_dir = get_backup_dir(kubectl, cfg)
    copy_file_with_sudo(artifact.local_copy, Path(storage_dir) / artifact.filename)
    logger.info("Restored %s into %s", artifact.filename, storage_dir)
    return replace(artifact, storage_dir=storage_dir)


def create_restore(
    kubectl: Kubectl,
    *,
    backup_file: str,
    prune: bool,
    destination: Path,
    namespace: str,
) -> Path:
    manifest = render_restore_manifest(destination, backup_file=backup_file, prune=prune)
    logger.info("Restoring %s (prune=%s)", backup_file, prune)
    kubectl.apply(manifest, namespace=namespace)
    return manifest


def wait_for_restore(kubectl: Kubectl, cfg: E2EConfig) -> PollResult:
    kubectl.wait_for_jsonpath(
        "restore",
        RESTORE_RESOURCE_NAME,
        "{.metadata.name}",
        contains(RESTORE_RESOURCE_NAME),
        namespace="",
        timeout_seconds=cfg.scaled(cfg.restore_appear_timeout_seconds),
        interval_seconds=cfg.restore_appear_interval_seconds,
    )
    return check_backup_restore(kubectl, cfg, RESTORE_DONE_MESSAGE)


def delete_resources(kubectl: Kubectl, kinds: Iterable[str], *, namespace: str) -> dict[str, list[str]]:
    deleted: dict[str, list[str]] = {}
    for kind in kinds:
        names = kubectl.list_names(kind, namespace=namespace)
        for name in names:
            kubectl.delete(kind, name, namespace=namespace)
        deleted[kind] = names
        logger.info("Deleted %d %s resource(s)", len(names), kind)
    return deleted


def wait_for_resources(
    kubectl: Kubectl,
    expected: dict[str, list[str]],
    *,
    namespace: str,
    timeout_seconds: float,
    interval_seconds: float,
) -> None:
    """Wait until every named resource in ``expected`` is listed again."""
    for kind, names in expected.items():
        if not names:
            continue
        kubectl.wait_for_jsonpath(
            kind,
            "",
            "{.items[*].metadata.name}",
            lambda output, names=names: set(names).issubset(output.split()),
            namespace=namespace,
            timeout_seconds=timeout_seconds,
            interval_seconds=interval_seconds,
        )
