from __future__ import annotations

from contextlib import contextmanager
from typing import Iterator
import logging
import time

logger = logging.getLogger(__name__)


@contextmanager
def step(description: str) -> Iterator[None]:
    """Log a named step of a scenario and how long it took."""
    logger.info("STEP: %s", description)
    started = time.monotonic()
    try:
        yield
    except BaseException:
        logger.error("STEP FAILED after %.1fs: %s", time.monotonic() - started, description)
        raise
    logger.info("STEP DONE in %.1fs: %s", time.monotonic() - started, description)
