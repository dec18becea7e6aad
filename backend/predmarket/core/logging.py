import sys

from loguru import logger


def configure_logging(level: str = "INFO") -> None:
    """Route loguru output to a single stderr sink at ``level``."""

    logger.remove()
    logger.add(
        sys.stderr,
        level=level.upper(),
        backtrace=False,
        diagnose=False,
        format="{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | {name}:{function} - {message}",
    )
