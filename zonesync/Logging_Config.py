# Logging_Config.py
# Description: Configuration for logging
#
# Imports
import logging
import sys
from pathlib import Path
from typing import Optional, Union
#
# 3rd-Party Imports
from loguru import logger as loguru_logger
#
# Local Imports
from zonesync.config import get_cli_setting, get_log_file_path, get_metrics_log_file_path
from zonesync.Metrics.metrics_logger import METRIC_LEVEL
#
########################################################################################################################
#
# Functions:

CONSOLE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} - {level} - {message}"
FILE_FORMAT = "{time:YYYY-MM-DD HH:mm:ss} | {level: <8} | {name}:{function}:{line} - {message}"

_UNSET = object()


class InterceptHandler(logging.Handler):
    """Routes standard `logging` records (httpx, httpcore, sqlite helpers) into Loguru."""

    def emit(self, record: logging.LogRecord):
        try:
            level = loguru_logger.level(record.levelname).name
        except ValueError:
            level = record.levelno
        frame, depth = logging.currentframe(), 2
        while frame and frame.f_code.co_filename == logging.__file__:
            frame = frame.f_back
            depth += 1
        loguru_logger.opt(depth=depth, exception=record.exc_info).log(level, record.getMessage())


def _only_metrics(record) -> bool:
    return record["level"].name == METRIC_LEVEL


def _without_metrics(record) -> bool:
    return record["level"].name != METRIC_LEVEL


def configure_logging(
        log_level: Optional[str] = None,
        console: bool = True,
        app_log_path: Union[str, Path, None, object] = _UNSET,
        metrics_log_path: Union[str, Path, None, object] = _UNSET,
):
    """
    Sets up Loguru sinks: console, a rotating application log and a JSON metrics log.

    Args:
        log_level: Console level; defaults to [logging] log_level from the config.
        console: Whether to add the stderr sink.
        app_log_path: Text log file. Defaults to the configured path; None disables it.
        metrics_log_path: JSON metrics file (METRIC level only). Defaults to the
            configured path; None disables it.

    Returns:
        The configured logger.
    """
    level = (log_level or get_cli_setting("logging", "log_level", "INFO")).upper()
    loguru_logger.remove()

    if console:
        loguru_logger.add(sys.stderr, level=level, format=CONSOLE_FORMAT, filter=_without_metrics)

    if app_log_path is _UNSET:
        app_log_path = get_log_file_path()
    if app_log_path:
        path = Path(app_log_path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        file_level = str(get_cli_setting("logging", "file_log_level", "DEBUG")).upper()
        max_bytes = int(get_cli_setting("logging", "log_max_bytes", 10485760))
        backup_count = int(get_cli_setting("logging", "log_backup_count", 5))
        loguru_logger.add(
            str(path),
            level=file_level,
            format=FILE_FORMAT,
            filter=_without_metrics,
            rotation=max_bytes,
            retention=backup_count,
            enqueue=True,
            backtrace=True,
        )
        loguru_logger.debug(f"Application logs will be written to: {path}")

    if metrics_log_path is _UNSET:
        metrics_log_path = get_metrics_log_file_path()
    if metrics_log_path:
        path = Path(metrics_log_path).expanduser()
        path.parent.mkdir(parents=True, exist_ok=True)
        loguru_logger.add(
            str(path),
            level=METRIC_LEVEL,
            filter=_only_metrics,
            serialize=True,
            rotation="10 MB",
            retention=5,
            enqueue=True,
        )
        loguru_logger.debug(f"JSON metrics logs will be written to: {path}")

    logging.basicConfig(handlers=[InterceptHandler()], level=logging.INFO, force=True)
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    return loguru_logger

#
# End of Logging_Config.py
########################################################################################################################
