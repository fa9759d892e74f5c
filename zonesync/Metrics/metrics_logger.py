# metrics_logger.py
#
# Imports
import functools
import time
from datetime import datetime, timezone
from typing import Any, Optional, Dict, Union, Callable
#
# Third-party Imports
from loguru import logger
#
############################################################################################################
#
# Functions:

LabelValue = Union[str, int, float, bool]
LabelDict = Dict[str, LabelValue]

# Custom level so sinks can separate metrics from regular application logs
METRIC_LEVEL = "METRIC"
try:
    logger.level(METRIC_LEVEL)
except ValueError:
    logger.level(METRIC_LEVEL, no=25, color="<blue>")


def _log_metric(
        metric_name: str,
        metric_type: str,
        value: Any,
        labels: Optional[LabelDict] = None,
):
    """
    Logs a structured metric; the data is bound at the top level of `extra`.
    """
    bound_logger = logger.bind(
        event=metric_name,
        type=metric_type,
        value=value,
        labels=labels or {},
        timestamp=datetime.now(timezone.utc).isoformat(),
    )
    bound_logger.log(METRIC_LEVEL, f"{metric_type.capitalize()} '{metric_name}': {value}")


def timeit(
        metric_name: Optional[str] = None,
        labels: Optional[LabelDict] = None,
        log_summary: bool = False,
        log_call_count: bool = False,
):
    """
    Decorator that times a function, logging a histogram tagged with its status.

    Args:
        metric_name (str, optional): Custom name for the metric. Defaults to "<function>_duration_seconds".
        labels (dict, optional): Extra labels to add to the metric.
        log_summary (bool): If True, logs a human-readable summary at DEBUG level.
        log_call_count (bool): If True, also logs a counter metric for each call.
    """

    def decorator(func: Callable) -> Callable:
        @functools.wraps(func)
        def wrapper(*args, **kwargs):
            m_name = metric_name or f"{func.__name__}_duration_seconds"
            all_labels = {"function": func.__name__}
            if labels:
                all_labels.update(labels)

            start_time = time.perf_counter()
            status = "success"
            try:
                return func(*args, **kwargs)
            except Exception:
                status = "failure"
                raise
            finally:
                elapsed_time = time.perf_counter() - start_time
                final_labels = {**all_labels, "status": status}
                _log_metric(m_name, "histogram", elapsed_time, final_labels)
                if log_call_count:
                    _log_metric(f"{func.__name__}_calls_total", "counter", 1, final_labels)
                if log_summary:
                    logger.debug(f"Function '{func.__name__}' finished in {elapsed_time:.4f}s with status '{status}'.")

        return wrapper

    return decorator


class MetricsLogger:
    """
    Class-based API carrying base labels for a group of metrics
    (e.g. everything emitted by one sync engine instance).
    """

    def __init__(self, base_labels: Optional[LabelDict] = None):
        self._base_labels = base_labels or {}

    def _get_labels(self, labels: Optional[LabelDict]) -> LabelDict:
        final_labels = self._base_labels.copy()
        if labels:
            final_labels.update(labels)
        return final_labels

    def log_counter(self, name: str, value: int = 1, labels: Optional[LabelDict] = None):
        _log_metric(name, "counter", value, self._get_labels(labels))

    def log_gauge(self, name: str, value: float, labels: Optional[LabelDict] = None):
        _log_metric(name, "gauge", value, self._get_labels(labels))

    def log_histogram(self, name: str, value: float, labels: Optional[LabelDict] = None):
        _log_metric(name, "histogram", value, self._get_labels(labels))


default_metrics = MetricsLogger()
log_counter = default_metrics.log_counter
log_gauge = default_metrics.log_gauge
log_histogram = default_metrics.log_histogram

#
# End of metrics_logger.py
############################################################################################################
