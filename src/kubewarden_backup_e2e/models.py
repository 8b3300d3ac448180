from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path


@dataclass(frozen=True)
class CommandResult:
    args: tuple[str, ...]
    returncode: int
    stdout: str
    stderr: str


@dataclass(frozen=True)
class PollResult:
    value: str
    elapsed_seconds: float
    attempts: int


@dataclass(frozen=True)
class BackupArtifact:
    resource_name: str
    filename: str
    storage_dir: str = ""
    local_copy: Path | None = None
