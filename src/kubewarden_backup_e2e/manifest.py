from __future__ import annotations

from pathlib import Path
from typing import Iterable
import logging
import shutil

logger = logging.getLogger(__name__)

ASSETS_DIR = Path(__file__).parent / "assets"
BACKUP_TEMPLATE = ASSETS_DIR / "backup.yaml"
RESTORE_TEMPLATE = ASSETS_DIR / "restore.yaml"
RESOURCE_SET_MANIFEST = ASSETS_DIR / "resourceset.yaml"

BACKUP_FILE_TOKEN = "%BACKUP_FILE%"
PRUNE_TOKEN = "%PRUNE%"


def sed(token: str, replacement: str, path: Path | str) -> int:
    """Replace every literal occurrence of ``token`` in ``path`` in place.

    No escaping and no validation: a file without the token is left untouched
    and 0 is returned. Running it twice is only a no-op when ``replacement``
    does not contain ``token`` itself.
    """
    if not token:
        raise ValueError("token must not be empty")

    target = Path(path)
    content = target.read_text(encoding="utf-8")
    count = content.count(token)
    if count:
        target.write_text(content.replace(token, replacement), encoding="utf-8")
    logger.debug("Replaced %d occurrence(s) of %s in %s", count, token, target)
    return count


def render_manifest(
    template: Path | str,
    destination: Path | str,
    substitutions: Iterable[tuple[str, str]] = (),
) -> Path:
    destination_path = Path(destination)
    destination_path.parent.mkdir(parents=True, exist_ok=True)
    shutil.copyfile(template, destination_path)
    for token, replacement in substitutions:
        sed(token, replacement, destination_path)
    return destination_path


def render_restore_manifest(destination: Path | str, *, backup_file: str, prune: bool) -> Path:
    return render_manifest(
        RESTORE_TEMPLATE,
        destination,
        (
            (BACKUP_FILE_TOKEN, backup_file),
            (PRUNE_TOKEN, "true" if prune else "false"),
        ),
    )
