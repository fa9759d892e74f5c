from .metrics_logger import MetricsLogger, timeit, log_counter, log_gauge, log_histogram, METRIC_LEVEL

__all__ = ["MetricsLogger", "timeit", "log_counter", "log_gauge", "log_histogram", "METRIC_LEVEL"]
