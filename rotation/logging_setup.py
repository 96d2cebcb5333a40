"""Structured logging setup using loguru."""
import sys
from pathlib import Path
from loguru import logger as _logger


def setup_logging(
    log_file: str = "rotation.log",
    level: str = "INFO",
    enable_console: bool = True,
) -> None:
    """Configure structured logging for the rotation engine.

    Args:
        log_file: Path to log file (in project root by default)
        level: Log level (DEBUG, INFO, WARNING, ERROR, CRITICAL)
        enable_console: Whether to log to console as well
    """
    _logger.remove()

    # component is bound by the long-lived services; plain module logs fall back to "-"
    log_format = (
        "<green>{time:YYYY-MM-DD HH:mm:ss.SSS}</green> | "
        "<level>{level: <8}</level> | "
        "<magenta>{extra[component]}</magenta> | "
        "<cyan>{name}</cyan>:<cyan>{function}</cyan>:<cyan>{line}</cyan> - "
        "<level>{message}</level>"
    )
    _logger.configure(extra={"component": "-"})

    log_path = Path(log_file)
    log_path.parent.mkdir(parents=True, exist_ok=True)
    _logger.add(
        str(log_path),
        format=log_format,
        level=level,
        rotation="100 MB",
        retention="7 days",
    )

    if enable_console:
        _logger.add(
            sys.stdout,
            format=log_format,
            level=level,
            colorize=True,
        )


def component_logger(name: str):
    """Return the shared logger bound to a component name."""
    return _logger.bind(component=name)


logger = _logger
