"""
Process-level logging for the health monitor.

Console output is meant for operators watching devices live; the optional
log file keeps an audit trail of transitions and recovery actions across
restarts.
"""

import sys
from pathlib import Path
from typing import Optional, Union

from loguru import logger

_CONSOLE_FORMAT = (
    "<cyan>{time:MM-DD at HH:mm:ss}</cyan> | <level>{level:7}</level> | "
    "{name}:{line:4} | <level>{message}</level>"
)
_ERROR_FORMAT = (
    "<green>{time:HH:mm:ss}</green> | <level>{level}</level> | "
    "{function}:{line} - <level>{message}</level>"
)
_FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level:7} | {name}:{function}:{line} | {message}"


def init_logger(
    log_level: str = "INFO",
    *,
    log_file: Optional[Union[str, Path]] = None,
    rotation: str = "10 MB",
    retention: int = 5,
    errors_to_stderr: bool = True,
) -> None:
    """
    Replace all loguru sinks with the monitor's console and file sinks.

    Parameters
    ----------
    log_level : str, optional
        Minimum level for console and file output, by default ``"INFO"``.
    log_file : str | Path | None, optional
        Audit log path. Rotated by size and pruned to ``retention`` files.
    rotation : str, optional
        Loguru rotation rule for the audit log, by default ``"10 MB"``.
    retention : int, optional
        Rotated audit logs kept, by default 5.
    errors_to_stderr : bool, optional
        Also route ``ERROR`` and above to stderr, by default True.
    """
    logger.remove()
    logger.add(
        sys.stdout,
        colorize=True,
        format=_CONSOLE_FORMAT,
        level=log_level,
        diagnose=False,
    )
    if errors_to_stderr:
        logger.add(
            sys.stderr,
            colorize=True,
            format=_ERROR_FORMAT,
            level="ERROR",
            diagnose=False,
        )
    if log_file is not None:
        path = Path(log_file).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        logger.add(
            str(path),
            format=_FILE_FORMAT,
            level=log_level,
            rotation=rotation,
            retention=retention,
            enqueue=True,
            diagnose=False,
        )
    logger.success(
        'Health monitor logging at "{}"{}.',
        log_level,
        f", audit log {log_file}" if log_file is not None else "",
    )
