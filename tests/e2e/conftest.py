from __future__ import annotations

import os
import shutil

import pytest

from kubewarden_backup_e2e.config import E2EConfig
from kubewarden_backup_e2e.kubectl import Kubectl

_ENV_RUN_FLAG = "KBE2E_RUN_E2E"
_REQUIRED_BINARIES = ("bash", "curl", "helm", "kubectl", "sudo")


def _flag_enabled(value: str | None) -> bool:
    if value is None:
        return False
    return value.strip().lower() in {"1", "true", "yes", "on"}


def _verify_prerequisites() -> None:
    if not _flag_enabled(os.getenv(_ENV_RUN_FLAG)):
        pytest.skip(
            "End-to-end backup/restore tests change the host and are disabled by default. "
            f"Set {_ENV_RUN_FLAG}=1 to run them."
        )

    missing = [binary for binary in _REQUIRED_BINARIES if shutil.which(binary) is None]
    if missing:
        pytest.skip(f"End-to-end prerequisites are missing: {', '.join(sorted(missing))}.")


@pytest.fixture(scope="session")
def e2e_config() -> E2EConfig:
    _verify_prerequisites()
    config = E2EConfig()
    config.work_dir.mkdir(parents=True, exist_ok=True)
    return config


@pytest.fixture(scope="session")
def kubectl(e2e_config: E2EConfig) -> Kubectl:
    # The default poll timeout is too short for a freshly installed cluster.
    return Kubectl(
        namespace="",
        poll_timeout_seconds=e2e_config.scaled(e2e_config.poll_timeout_seconds),
        poll_interval_seconds=e2e_config.poll_interval_seconds,
    )
