"""Loguru sinks for the scheduler.

Modules log with bracket tags and keyword context, e.g.
`logger.info("[BULK] Commit started", client_id=..., caregiver_id=...)`.
The keyword context lands in `extra`, which both sinks print.
"""

import sys
from pathlib import Path

from loguru import logger

CONSOLE_FORMAT = (
    "<green>{time:YYYY-MM-DD HH:mm:ss}</green> | <level>{level: <8}</level> | "
    "<cyan>{name}</cyan>:<cyan>{line}</cyan> - <level>{message}</level> {extra}"
)
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function}:{line} | {message} | {extra}"


def setup_logger(
    level: str = "INFO",
    log_file: str | None = None,
    *,
    json_logs: bool = False,
    rotation: str = "10 MB",
    retention: str = "14 days",
) -> None:
    """Replace loguru's default sink with the scheduler's sinks.

    Args:
        level: Minimum level for every sink
        log_file: Optional path for a rotating file sink
        json_logs: Emit one JSON object per record on the console, for log shippers
        rotation: File rotation trigger (e.g., "10 MB", "1 day")
        retention: How long rotated files are kept
    """
    logger.remove()

    if json_logs:
        logger.add(sys.stderr, level=level, serialize=True)
    else:
        logger.add(sys.stderr, format=CONSOLE_FORMAT, level=level, colorize=True)

    if log_file:
        log_path = Path(log_file)
        log_path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            log_path,
            format=FILE_FORMAT,
            level=level,
            rotation=rotation,
            retention=retention,
            compression="zip",
            enqueue=True,
            diagnose=False,
        )

    logger.info("[LOGGER] Sinks configured", level=level, log_file=log_file, json_logs=json_logs)
