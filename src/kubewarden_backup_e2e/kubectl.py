from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from typing import Callable
import logging

from .models import CommandResult, PollResult
from .poll import wait_for
from .shell import CommandError, run_command

logger = logging.getLogger(__name__)

DEFAULT_KUBECTL_TIMEOUT_SECONDS = 120
POD_READINESS_JSONPATH = (
    '{range .items[*]}{.status.phase}={.status.conditions[?(@.type=="Ready")].status} {end}'
)


@dataclass(frozen=True)
class Kubectl:
    """Thin wrapper around the ``kubectl`` binary.

    When ``kubeconfig_path`` is unset kubectl resolves its configuration from
    ``KUBECONFIG`` at call time, so switching clusters mid-run only needs the
    environment variable to be updated.
    """

    namespace: str = ""
    kubeconfig_path: Path | None = None
    poll_timeout_seconds: float = 300
    poll_interval_seconds: float = 0.5
    command_timeout_seconds: float = DEFAULT_KUBECTL_TIMEOUT_SECONDS
    binary: str = "kubectl"

    def run(
        self,
        *args: str,
        timeout_seconds: float | None = None,
        check: bool = True,
    ) -> CommandResult:
        command = [self.binary]
        if self.kubeconfig_path is not None:
            command.extend(["--kubeconfig", str(self.kubeconfig_path)])
        command.extend(args)
        return run_command(
            command,
            timeout_seconds=self.command_timeout_seconds if timeout_seconds is None else timeout_seconds,
            check=check,
        )

    def run_without_err(self, *args: str) -> str:
        return self.run(*args).stdout.strip()

    def apply(self, path: Path | str, *, namespace: str | None = None) -> None:
        target_namespace = self.namespace if namespace is None else namespace
        args = ["apply"]
        if target_namespace:
            args.extend(["--namespace", target_namespace])
        args.extend(["-f", str(path)])
        logger.info("Applying %s", path)
        self.run(*args)

    def get_jsonpath(self, kind: str, name: str, jsonpath: str, *, namespace: str | None = None) -> str:
        args = ["get", kind]
        if name:
            args.append(name)
        args.extend(self._namespace_args(namespace))
        args.extend(["-o", f"jsonpath={jsonpath}"])
        return self.run_without_err(*args)

    def list_names(self, kind: str, *, namespace: str | None = None) -> list[str]:
        output = self.get_jsonpath(kind, "", "{.items[*].metadata.name}", namespace=namespace)
        return output.split()

    def delete(self, kind: str, name: str, *, namespace: str | None = None) -> None:
        self.run("delete", kind, *self._namespace_args(namespace), name)

    def logs(self, selector: str, *, namespace: str | None = None, tail: int = -1) -> str:
        return self.run(
            "logs",
            *self._namespace_args(namespace),
            "-l",
            selector,
            f"--tail={tail}",
        ).stdout

    def wait_for_jsonpath(
        self,
        kind: str,
        name: str,
        jsonpath: str,
        condition: Callable[[str], bool],
        *,
        namespace: str | None = None,
        timeout_seconds: float | None = None,
        interval_seconds: float | None = None,
    ) -> PollResult:
        return wait_for(
            lambda: self.get_jsonpath(kind, name, jsonpath, namespace=namespace),
            condition,
            timeout_seconds=self.poll_timeout_seconds if timeout_seconds is None else timeout_seconds,
            interval_seconds=self.poll_interval_seconds if interval_seconds is None else interval_seconds,
            description=f"{kind}/{name} {jsonpath}",
            ignored_errors=(CommandError,),
        )

    def wait_for_namespace_with_pods(self, namespace: str, selector: str | None = None) -> PollResult:
        """Block until ``namespace`` has pods and every one of them is Ready or Succeeded.

        A Running pod only counts once its ``Ready`` condition is ``True``.
        """
        args = ["get", "pods", "--namespace", namespace]
        if selector:
            args.extend(["-l", selector])
        args.extend(["-o", f"jsonpath={POD_READINESS_JSONPATH}"])

        target = f"pods in namespace '{namespace}'" + (f" matching '{selector}'" if selector else "")
        return wait_for(
            lambda: self.run_without_err(*args),
            _all_pods_ready,
            timeout_seconds=self.poll_timeout_seconds,
            interval_seconds=self.poll_interval_seconds,
            description=f"{target} to be ready",
            ignored_errors=(CommandError,),
        )

    def _namespace_args(self, namespace: str | None) -> list[str]:
        target_namespace = self.namespace if namespace is None else namespace
        return ["--namespace", target_namespace] if target_namespace else []


def _all_pods_ready(output: str) -> bool:
    observed = output.split()
    return bool(observed) and all(_pod_ready(entry) for entry in observed)


def _pod_ready(entry: str) -> bool:
    # entry is "<phase>=<Ready condition status>"
    phase, _, ready = entry.partition("=")
    if phase == "Succeeded":
        return True
    return phase == "Running" and ready == "True"
