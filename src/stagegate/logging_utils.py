"""Configure loguru sinks for workflow runs."""

from __future__ import annotations

import sys
from pathlib import Path
from typing import Optional

from loguru import logger

from .constants import CONTEXT_DIR_NAME, LOGS_DIR

_STDERR_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
    "<level>{level: <8}</level> | "
    "<cyan>{module}</cyan>:<cyan>{line}</cyan> - "
    "{message}"
)


def configure_logging(
    level: str = "INFO",
    *,
    project_dir: Optional[Path] = None,
    file_level: str = "DEBUG",
) -> Optional[Path]:
    """Replace loguru's sinks with a stderr sink and, optionally, a file sink.

    Args:
        level: Minimum level for stderr output.
        project_dir: When given, also log to ``.ai-context/logs/stagegate.log``
            with rotation.
        file_level: Minimum level for the file sink.

    Returns:
        The log file path, or None when no file sink was added.
    """
    logger.remove()
    logger.add(sys.stderr, level=level.upper(), format=_STDERR_FORMAT)
    if project_dir is None:
        return None
    log_path = project_dir / CONTEXT_DIR_NAME / LOGS_DIR / "stagegate.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    logger.add(
        log_path,
        level=file_level.upper(),
        rotation="5 MB",
        retention=5,
        encoding="utf-8",
    )
    return log_path
