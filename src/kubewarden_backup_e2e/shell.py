from __future__ import annotations

from typing import Mapping, Sequence
import logging
import shlex
import shutil
import subprocess

from .models import CommandResult

logger = logging.getLogger(__name__)

DEFAULT_COMMAND_TIMEOUT_SECONDS = 600


class CommandError(RuntimeError):
    """Raised when an external command exits with a non-zero status."""

    def __init__(self, result: CommandResult) -> None:
        stdout = result.stdout.strip() or "<empty>"
        stderr = result.stderr.strip() or "<empty>"
        super().__init__(
            f"Command failed with exit code {result.returncode}: {render_command(result.args)}\n"
            f"stdout:\n{stdout}\n"
            f"stderr:\n{stderr}"
        )
        self.result = result


class E2EPrerequisiteError(RuntimeError):
    """Raised when a binary required by a step is not available."""


def render_command(command: Sequence[str]) -> str:
    return " ".join(shlex.quote(token) for token in command)


def run_command(
    command: Sequence[str],
    *,
    timeout_seconds: float = DEFAULT_COMMAND_TIMEOUT_SECONDS,
    check: bool = True,
    env: Mapping[str, str] | None = None,
    input_text: str | None = None,
) -> CommandResult:
    logger.debug("Running %s", render_command(command))
    completed = subprocess.run(
        list(command),
        check=False,
        capture_output=True,
        text=True,
        timeout=timeout_seconds,
        env=dict(env) if env is not None else None,
        input=input_text,
    )
    result = CommandResult(
        args=tuple(command),
        returncode=completed.returncode,
        stdout=completed.stdout or "",
        stderr=completed.stderr or "",
    )

    if check and result.returncode != 0:
        raise CommandError(result)

    return result


def require_binaries(*binaries: str) -> None:
    missing = sorted(binary for binary in binaries if shutil.which(binary) is None)
    if missing:
        raise E2EPrerequisiteError(f"Required commands are missing from PATH: {', '.join(missing)}.")
