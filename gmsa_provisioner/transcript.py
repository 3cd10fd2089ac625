"""Audit transcript for a provisioning run."""
from __future__ import annotations

import contextlib
import logging
import sys
from pathlib import Path
from typing import Iterator, Optional

PACKAGE_LOGGER = "gmsa_provisioner"
TRANSCRIPT_FORMAT = "%(asctime)s %(levelname)s %(message)s"
CONSOLE_HANDLER_NAME = "gmsa_provisioner.console"

logger = logging.getLogger(__name__)


@contextlib.contextmanager
def session_transcript(
    path: Optional[Path], logger_name: str = PACKAGE_LOGGER, level: int = logging.INFO
) -> Iterator[Optional[logging.FileHandler]]:
    """Record every message of ``logger_name`` to ``path`` for the duration of the block.

    The transcript is best-effort: when the file cannot be opened the block
    still runs and ``None`` is yielded. The handler is always detached and
    closed on exit, whether the block completes or raises.
    """

    if path is None:
        yield None
        return

    path = Path(path)
    target_logger = logging.getLogger(logger_name)
    handler: Optional[logging.FileHandler] = None
    try:
        path.parent.mkdir(parents=True, exist_ok=True)
        handler = logging.FileHandler(path, mode="a", encoding="utf-8")
    except OSError as exc:
        logger.warning("Transcript unavailable (%s); continuing without it.", exc)

    if handler is None:
        yield None
        return

    handler.setFormatter(logging.Formatter(TRANSCRIPT_FORMAT))
    handler.setLevel(level)
    previous_level = target_logger.level
    if target_logger.getEffectiveLevel() > level:
        target_logger.setLevel(level)
    target_logger.addHandler(handler)
    logger.info("Transcript started, output file is %s", path)
    try:
        yield handler
    finally:
        logger.info("Transcript stopped, output file is %s", path)
        target_logger.removeHandler(handler)
        target_logger.setLevel(previous_level)
        handler.close()


def configure_console_logging(level: str = "INFO", logger_name: str = PACKAGE_LOGGER) -> logging.Logger:
    """Send the package's messages to the current stdout as plain lines.

    Calling it again replaces the existing console handler.
    """

    target_logger = logging.getLogger(logger_name)
    target_logger.setLevel(getattr(logging, level.upper(), logging.INFO))
    for existing in [h for h in target_logger.handlers if h.get_name() == CONSOLE_HANDLER_NAME]:
        target_logger.removeHandler(existing)
    handler = logging.StreamHandler(sys.stdout)
    handler.set_name(CONSOLE_HANDLER_NAME)
    handler.setFormatter(logging.Formatter("%(message)s"))
    target_logger.addHandler(handler)
    return target_logger


__all__ = ["configure_console_logging", "session_transcript"]
