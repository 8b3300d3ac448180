from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable, TypeVar

from kubernetes import client, config
from kubernetes.client import ApiException

from .models import PollResult
from .poll import wait_for

T = TypeVar("T")


@dataclass(frozen=True)
class KubernetesClients:
    api_client: client.ApiClient
    core_api: client.CoreV1Api
    version_api: client.VersionApi


class KubernetesAuthenticationError(RuntimeError):
    """Raised when Kubernetes authentication configuration fails."""


class KubernetesQueryError(RuntimeError):
    """Raised when a read against the Kubernetes API fails."""


def load_kubernetes_clients(*, kubeconfig_path: str | None, context: str | None = None) -> KubernetesClients:
    expanded = _expand_kubeconfig_path(kubeconfig_path)
    api_client = client.ApiClient(configuration=client.Configuration())
    try:
        config.load_kube_config(
            config_file=expanded,
            context=context,
            client_configuration=api_client.configuration,
        )
    except Exception as error:  # pylint: disable=broad-except
        api_client.close()
        raise KubernetesAuthenticationError(
            _format_authentication_error(kubeconfig_path=expanded, context=context, error=error)
        ) from error

    return KubernetesClients(
        api_client=api_client,
        core_api=client.CoreV1Api(api_client),
        version_api=client.VersionApi(api_client),
    )


def get_server_version(clients: KubernetesClients) -> str:
    version = _safe_kubernetes_call(
        operation="read the API server version",
        hint="Confirm the API server is running and reachable from this host.",
        func=lambda: clients.version_api.get_code(),
    )
    return version.git_version or ""


def wait_for_api_server(
    *,
    kubeconfig_path: str | None,
    timeout_seconds: float,
    interval_seconds: float,
) -> PollResult:
    """Block until the API server behind ``kubeconfig_path`` answers a version request.

    The kubeconfig itself may not exist yet while the distribution is still
    starting, so authentication errors are retried like query errors.
    """

    def _probe() -> str:
        clients = load_kubernetes_clients(kubeconfig_path=kubeconfig_path)
        try:
            return get_server_version(clients)
        finally:
            clients.api_client.close()

    return wait_for(
        _probe,
        lambda version: bool(version),
        timeout_seconds=timeout_seconds,
        interval_seconds=interval_seconds,
        description="the Kubernetes API server to respond",
        ignored_errors=(KubernetesAuthenticationError, KubernetesQueryError),
    )


def list_unready_pods(clients: KubernetesClients, *, namespace: str, label_selector: str | None = None) -> list[str]:
    pods = _list_pods(clients, namespace=namespace, label_selector=label_selector)
    if not pods:
        return [f"no pods matching '{label_selector or '*'}'"]

    unready: list[str] = []
    for pod in pods:
        if not _pod_is_ready(pod):
            phase = pod.status.phase if pod.status and pod.status.phase else "Unknown"
            unready.append(f"{pod.metadata.name}={phase}")
    return sorted(unready)


def wait_for_pods_ready(
    *,
    kubeconfig_path: str | None,
    namespace: str,
    label_selector: str | None,
    timeout_seconds: float,
    interval_seconds: float,
) -> PollResult:
    """Block until every pod matching ``label_selector`` is Ready (or Succeeded)."""

    def _probe() -> str:
        clients = load_kubernetes_clients(kubeconfig_path=kubeconfig_path)
        try:
            return ", ".join(list_unready_pods(clients, namespace=namespace, label_selector=label_selector))
        finally:
            clients.api_client.close()

    target = f"pods in namespace '{namespace}'" + (f" matching '{label_selector}'" if label_selector else "")
    return wait_for(
        _probe,
        lambda unready: unready == "",
        timeout_seconds=timeout_seconds,
        interval_seconds=interval_seconds,
        description=f"{target} to be Ready",
        ignored_errors=(KubernetesAuthenticationError, KubernetesQueryError),
    )


def read_pod_logs(clients: KubernetesClients, *, namespace: str, label_selector: str) -> str:
    pods = _list_pods(clients, namespace=namespace, label_selector=label_selector)
    sections: list[str] = []
    for pod in sorted(pods, key=lambda item: item.metadata.name):
        name = pod.metadata.name
        sections.append(
            _safe_kubernetes_call(
                operation=f"read logs of Pod '{namespace}/{name}'",
                hint="Check RBAC verbs for pods/log and that the container has started.",
                func=lambda name=name: clients.core_api.read_namespaced_pod_log(name=name, namespace=namespace),
            )
            or ""
        )
    return "\n".join(sections)


def _list_pods(clients: KubernetesClients, *, namespace: str, label_selector: str | None) -> list:
    return _safe_kubernetes_call(
        operation=f"list Pods in namespace '{namespace}'",
        hint="Check RBAC verbs for pods and confirm the namespace exists.",
        func=lambda: clients.core_api.list_namespaced_pod(namespace=namespace, label_selector=label_selector or "").items,
    )


def _pod_is_ready(pod: client.V1Pod) -> bool:
    status = pod.status
    phase = status.phase if status and status.phase else "Unknown"
    if phase == "Succeeded":
        return True
    if phase != "Running":
        return False
    conditions = status.conditions or []
    return any(condition.type == "Ready" and condition.status == "True" for condition in conditions)


def _safe_kubernetes_call(*, operation: str, hint: str, func: Callable[[], T]) -> T:
    try:
        return func()
    except ApiException as error:
        status = error.status if error.status is not None else "unknown"
        reason = error.reason or "no reason provided"
        raise KubernetesQueryError(
            f"Kubernetes query failed while trying to {operation}: API status {status} ({reason}). {hint}"
        ) from error
    except Exception as error:
        raise KubernetesQueryError(f"Kubernetes query failed while trying to {operation}: {error}. {hint}") from error


def _expand_kubeconfig_path(kubeconfig_path: str | None) -> str | None:
    if kubeconfig_path is None:
        return None
    stripped = kubeconfig_path.strip()
    if not stripped:
        return None
    return str(Path(stripped).expanduser())


def _format_authentication_error(*, kubeconfig_path: str | None, context: str | None, error: Exception) -> str:
    reason = str(error).strip() or error.__class__.__name__
    kubeconfig_source = kubeconfig_path or "default kubeconfig search path"
    context_message = f" with context '{context}'" if context else ""
    return (
        "Kubernetes authentication setup failed while loading kubeconfig "
        f"from '{kubeconfig_source}'{context_message}: {reason}. "
        "Verify the kubeconfig path and context are valid."
    )
