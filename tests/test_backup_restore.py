from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace
from unittest.mock import Mock, call

import pytest
import yaml

from kubewarden_backup_e2e import backup_restore
from kubewarden_backup_e2e.backup_restore import (
    BACKUP_DONE_MESSAGE,
    RESTORE_DONE_MESSAGE,
    BackupRestoreError,
    check_backup_restore,
    copy_backup_in,
    copy_backup_out,
    create_backup,
    create_restore,
    delete_resources,
    operator_logs,
    read_backup_filename,
    wait_for_backup,
    wait_for_resources,
    wait_for_restore,
)
from kubewarden_backup_e2e.config import E2EConfig
from kubewarden_backup_e2e.k8s import KubernetesQueryError
from kubewarden_backup_e2e.manifest import BACKUP_TEMPLATE
from kubewarden_backup_e2e.models import BackupArtifact, CommandResult
from kubewarden_backup_e2e.poll import PollTimeoutError
from kubewarden_backup_e2e.shell import CommandError


def _config(**overrides) -> E2EConfig:
    values = {
        "operation_timeout_seconds": 0.2,
        "operation_interval_seconds": 0.01,
        "restore_appear_timeout_seconds": 0.2,
        "restore_appear_interval_seconds": 0.01,
        "timeout_scale": 1,
        "backup_operator_namespace": "cattle-resources-system",
    }
    values.update(overrides)
    return E2EConfig(**values)


def _log_error() -> CommandError:
    return CommandError(CommandResult(args=("kubectl", "logs"), returncode=1, stdout="", stderr="pod initializing"))


def test_check_backup_restore_with_growing_log_returns_once_message_appears() -> None:
    kubectl = Mock()
    kubectl.logs.side_effect = [
        _log_error(),
        "Processing controllerRef apps/v1/deployments/kubewarden-controller\n",
        "Processing controllerRef apps/v1/deployments/kubewarden-controller\nDone with backup\n",
    ]

    result = check_backup_restore(kubectl, _config(), BACKUP_DONE_MESSAGE)

    assert result.attempts == 3
    assert kubectl.logs.call_args_list == [
        call("app.kubernetes.io/name=rancher-backup", namespace="cattle-resources-system")
    ] * 3


def test_check_backup_restore_without_message_times_out() -> None:
    kubectl = Mock()
    kubectl.logs.return_value = "Processing backup kubewarden-backup\n"

    with pytest.raises(PollTimeoutError, match="Done restoring"):
        check_backup_restore(kubectl, _config(), RESTORE_DONE_MESSAGE)


def test_check_backup_restore_with_timeout_scale_extends_deadline() -> None:
    config = _config(operation_timeout_seconds=10, timeout_scale=3)

    assert config.scaled(config.operation_timeout_seconds) == 30


def test_create_backup_with_applied_resource_returns_name() -> None:
    kubectl = Mock()
    kubectl.get_jsonpath.return_value = "kubewarden-backup"

    name = create_backup(kubectl, namespace="kubewarden")

    assert name == "kubewarden-backup"
    kubectl.apply.assert_called_once_with(BACKUP_TEMPLATE, namespace="kubewarden")
    kubectl.get_jsonpath.assert_called_once_with("backup", "kubewarden-backup", "{.metadata.name}", namespace="")


def test_create_backup_with_missing_resource_raises_backup_restore_error() -> None:
    kubectl = Mock()
    kubectl.get_jsonpath.return_value = ""

    with pytest.raises(BackupRestoreError, match="was not found after apply"):
        create_backup(kubectl, namespace="kubewarden")


def test_read_backup_filename_with_status_returns_filename() -> None:
    kubectl = Mock()
    kubectl.get_jsonpath.return_value = "kubewarden-backup-5f1c-2025-03-01T10-00-00Z.tar.gz"

    assert read_backup_filename(kubectl) == "kubewarden-backup-5f1c-2025-03-01T10-00-00Z.tar.gz"
    kubectl.get_jsonpath.assert_called_once_with("backup", "kubewarden-backup", "{.status.filename}", namespace="")


def test_read_backup_filename_without_status_raises_backup_restore_error() -> None:
    kubectl = Mock()
    kubectl.get_jsonpath.return_value = ""

    with pytest.raises(BackupRestoreError, match="no .status.filename"):
        read_backup_filename(kubectl)


def test_wait_for_backup_with_completed_backup_returns_artifact() -> None:
    kubectl = Mock()
    kubectl.logs.return_value = "Done with backup\n"
    kubectl.get_jsonpath.return_value = "kubewarden-backup-1.tar.gz"

    artifact = wait_for_backup(kubectl, _config())

    assert artifact == BackupArtifact(resource_name="kubewarden-backup", filename="kubewarden-backup-1.tar.gz")


def test_copy_backup_out_with_storage_volume_records_storage_dir_and_local_copy(
    monkeypatch: pytest.MonkeyPatch,
    tmp_path: Path,
) -> None:
    copy = Mock()
    monkeypatch.setattr(backup_restore, "get_backup_dir", Mock(return_value="/var/lib/rancher/k3s/storage/pvc-1"))
    monkeypatch.setattr(backup_restore, "copy_file_with_sudo", copy)
    artifact = BackupArtifact(resource_name="kubewarden-backup", filename="kubewarden-backup-1.tar.gz")

    saved = copy_backup_out(Mock(), _config(work_dir=tmp_path), artifact)

    assert saved.storage_dir == "/var/lib/rancher/k3s/storage/pvc-1"
    assert saved.local_copy == tmp_path / "kubewarden-backup-1.tar.gz"
    copy.assert_called_once_with(
        Path("/var/lib/rancher/k3s/storage/pvc-1/kubewarden-backup-1.tar.gz"),
        tmp_path / "kubewarden-backup-1.tar.gz",
    )


def test_copy_backup_in_with_local_copy_targets_new_storage_dir(monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    copy = Mock()
    monkeypatch.setattr(backup_restore, "get_backup_dir", Mock(return_value="/var/lib/rancher/k3s/storage/pvc-2"))
    monkeypatch.setattr(backup_restore, "copy_file_with_sudo", copy)
    artifact = BackupArtifact(
        resource_name="kubewarden-backup",
        filename="kubewarden-backup-1.tar.gz",
        storage_dir="/var/lib/rancher/k3s/storage/pvc-1",
        local_copy=tmp_path / "kubewarden-backup-1.tar.gz",
    )

    restored = copy_backup_in(Mock(), _config(work_dir=tmp_path), artifact)

    assert restored.storage_dir == "/var/lib/rancher/k3s/storage/pvc-2"
    assert restored.local_copy == artifact.local_copy
    copy.assert_called_once_with(
        tmp_path / "kubewarden-backup-1.tar.gz",
        Path("/var/lib/rancher/k3s/storage/pvc-2/kubewarden-backup-1.tar.gz"),
    )


def test_copy_backup_in_without_local_copy_raises_backup_restore_error(monkeypatch: pytest.MonkeyPatch) -> None:
    copy = Mock()
    monkeypatch.setattr(backup_restore, "copy_file_with_sudo", copy)
    artifact = BackupArtifact(resource_name="kubewarden-backup", filename="kubewarden-backup-1.tar.gz")

    with pytest.raises(BackupRestoreError, match="has no local copy"):
        copy_backup_in(Mock(), _config(), artifact)
    copy.assert_not_called()


def test_operator_logs_with_api_source_reads_pod_logs_with_kubectl_kubeconfig(monkeypatch: pytest.MonkeyPatch) -> None:
    clients = SimpleNamespace(api_client=Mock())
    load = Mock(return_value=clients)
    read_logs = Mock(return_value="Done with backup\n")
    monkeypatch.setattr(backup_restore, "load_kubernetes_clients", load)
    monkeypatch.setattr(backup_restore, "read_pod_logs", read_logs)
    kubectl = Mock(kubeconfig_path=Path("/home/tester/.kube/config"))

    logs = operator_logs(kubectl, _config(log_source="api"))

    assert logs == "Done with backup\n"
    load.assert_called_once_with(kubeconfig_path="/home/tester/.kube/config")
    read_logs.assert_called_once_with(
        clients,
        namespace="cattle-resources-system",
        label_selector="app.kubernetes.io/name=rancher-backup",
    )
    clients.api_client.close.assert_called_once_with()
    kubectl.logs.assert_not_called()


def test_operator_logs_with_api_source_falls_back_to_kubeconfig_env(monkeypatch: pytest.MonkeyPatch) -> None:
    load = Mock(return_value=SimpleNamespace(api_client=Mock()))
    monkeypatch.setattr(backup_restore, "load_kubernetes_clients", load)
    monkeypatch.setattr(backup_restore, "read_pod_logs", Mock(return_value=""))
    monkeypatch.setenv("KUBECONFIG", "/etc/rancher/k3s/k3s.yaml")

    operator_logs(Mock(kubeconfig_path=None), _config(log_source="api"))

    load.assert_called_once_with(kubeconfig_path="/etc/rancher/k3s/k3s.yaml")


def test_operator_logs_with_unknown_source_raises_value_error() -> None:
    with pytest.raises(ValueError, match="Unsupported log source 'journal'"):
        operator_logs(Mock(), _config(log_source="journal"))


def test_check_backup_restore_with_api_source_retries_query_errors(monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setattr(backup_restore, "load_kubernetes_clients", Mock(return_value=SimpleNamespace(api_client=Mock())))
    monkeypatch.setattr(
        backup_restore,
        "read_pod_logs",
        Mock(side_effect=[KubernetesQueryError("container creating"), "Done restoring\n"]),
    )

    result = check_backup_restore(Mock(kubeconfig_path=None), _config(log_source="api"), RESTORE_DONE_MESSAGE)

    assert result.attempts == 2


def test_create_restore_with_backup_file_renders_and_applies_manifest(tmp_path: Path) -> None:
    kubectl = Mock()

    manifest = create_restore(
        kubectl,
        backup_file="kubewarden-backup-1.tar.gz",
        prune=False,
        destination=tmp_path / "restore.yaml",
        namespace="kubewarden",
    )

    document = yaml.safe_load(manifest.read_text(encoding="utf-8"))
    assert document["spec"] == {"backupFilename": "kubewarden-backup-1.tar.gz", "prune": False}
    kubectl.apply.assert_called_once_with(manifest, namespace="kubewarden")


def test_wait_for_restore_with_restore_resource_waits_for_name_then_logs() -> None:
    kubectl = Mock()
    kubectl.logs.return_value = "Done restoring\n"
    config = _config(restore_appear_timeout_seconds=300, restore_appear_interval_seconds=10, timeout_scale=2)

    result = wait_for_restore(kubectl, config)

    assert result.value == "Done restoring\n"
    args, kwargs = kubectl.wait_for_jsonpath.call_args
    assert args[:3] == ("restore", "kubewarden-restore", "{.metadata.name}")
    assert args[3]("kubewarden-restore") is True
    assert args[3]("") is False
    assert kwargs["timeout_seconds"] == 600
    assert kwargs["interval_seconds"] == 10


def test_delete_resources_with_existing_policies_deletes_each_one() -> None:
    kubectl = Mock()
    kubectl.list_names.side_effect = [["no-privileged-pod", "no-host-namespace"], []]

    deleted = delete_resources(kubectl, ("ClusterAdmissionPolicy", "AdmissionPolicy"), namespace="kubewarden")

    assert deleted == {
        "ClusterAdmissionPolicy": ["no-privileged-pod", "no-host-namespace"],
        "AdmissionPolicy": [],
    }
    assert kubectl.delete.call_args_list == [
        call("ClusterAdmissionPolicy", "no-privileged-pod", namespace="kubewarden"),
        call("ClusterAdmissionPolicy", "no-host-namespace", namespace="kubewarden"),
    ]


def test_wait_for_resources_with_restored_names_skips_empty_kinds() -> None:
    kubectl = Mock()

    wait_for_resources(
        kubectl,
        {"ClusterAdmissionPolicy": ["a", "b"], "AdmissionPolicy": []},
        namespace="kubewarden",
        timeout_seconds=30,
        interval_seconds=1,
    )

    kubectl.wait_for_jsonpath.assert_called_once()
    args, kwargs = kubectl.wait_for_jsonpath.call_args
    condition = args[3]
    assert args[0] == "ClusterAdmissionPolicy"
    assert condition("b a c") is True
    assert condition("a") is False
    assert kwargs["namespace"] == "kubewarden"


def test_kubewarden_resource_kinds_with_defaults_cover_policies() -> None:
    assert backup_restore.KUBEWARDEN_RESOURCE_KINDS == ("ClusterAdmissionPolicy", "AdmissionPolicy")
