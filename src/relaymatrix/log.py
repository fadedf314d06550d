"""Structured diagnostics channel (loguru)."""

from __future__ import annotations

import sys
from typing import Any, Optional

from loguru import logger

LOG_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "job={extra[job]} case={extra[case]} | {message}"
)


def configure_logging(
    level: str = "INFO",
    *,
    json_logs: bool = False,
    sink: Optional[Any] = None,
) -> int:
    """
    Replace loguru's default handler with the relaymatrix one.

    Every record carries `job` and `case` (default "-"). Loguru guards each
    sink with a lock, so records from concurrent workers stay one per line.
    Returns the handler id.
    """
    logger.remove()
    logger.configure(extra={"job": "-", "case": "-"})
    return logger.add(
        sink if sink is not None else sys.stderr,
        level=level.upper(),
        format=LOG_FORMAT,
        serialize=json_logs,
        colorize=False,
        backtrace=False,
        diagnose=False,
    )
