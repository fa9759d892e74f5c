# throttle.py
# Self-throttling for the sync engine: minimum spacing between server
# operations, exponential backoff on failure and gradual recovery on success.
#
# Imports
import math
import threading
import time
from typing import Callable, Optional
#
# Third-Party Imports
from loguru import logger
#
#######################################################################################################################
#
# Functions:

class SyncThrottle:
    """
    Tracks when the next server operation may start.

    The effective delay is `max(min_interval, backoff)`. Failures double the
    backoff (starting at `backoff_base`, capped at `backoff_max`, never below a
    server-suggested `retry_after`); successes shrink it by `recovery_factor`.
    """

    def __init__(self, min_interval: float = 0.0, backoff_base: float = 1.0, backoff_max: float = 300.0,
                 recovery_factor: float = 0.5, clock: Callable[[], float] = time.monotonic):
        if min_interval < 0 or backoff_base < 0 or backoff_max < 0:
            raise ValueError("Throttle intervals cannot be negative.")
        if not 0.0 <= recovery_factor < 1.0:
            raise ValueError("recovery_factor must be in [0, 1).")
        self.min_interval = min_interval
        self.backoff_base = backoff_base
        self.backoff_max = backoff_max
        self.recovery_factor = recovery_factor
        self._clock = clock
        self._lock = threading.Lock()
        self.backoff = 0.0
        self.consecutive_failures = 0
        self._last_operation_at: Optional[float] = None

    @property
    def current_delay(self) -> float:
        return max(self.min_interval, self.backoff)

    def delay_remaining(self) -> float:
        """Seconds until the next operation may start."""
        with self._lock:
            if self._last_operation_at is None:
                return 0.0 if self.backoff == 0 else self.backoff
            elapsed = self._clock() - self._last_operation_at
            return max(0.0, self.current_delay - elapsed)

    def wait(self, cancel_event: Optional[threading.Event] = None) -> bool:
        """
        Blocks until the next operation may start.

        Returns:
            False if `cancel_event` was set while (or before) waiting, True otherwise.
        """
        remaining = self.delay_remaining()
        if cancel_event is not None:
            if cancel_event.is_set():
                return False
            if remaining > 0:
                logger.debug(f"Throttle: waiting {remaining:.2f}s before next operation")
                if cancel_event.wait(remaining):
                    return False
        elif remaining > 0:
            logger.debug(f"Throttle: waiting {remaining:.2f}s before next operation")
            time.sleep(remaining)
        with self._lock:
            self._last_operation_at = self._clock()
        return True

    def record_success(self):
        with self._lock:
            self.consecutive_failures = 0
            self.backoff *= self.recovery_factor
            if self.backoff < 0.05:
                self.backoff = 0.0

    def record_failure(self, retry_after: Optional[float] = None):
        with self._lock:
            self.consecutive_failures += 1
            self.backoff = min(self.backoff_max, max(self.backoff_base, self.backoff * 2))
            if retry_after is not None and math.isfinite(retry_after):
                self.backoff = max(self.backoff, retry_after)
            if self._last_operation_at is None:
                self._last_operation_at = self._clock()
            logger.info(f"Throttle: backing off {self.backoff:.2f}s after {self.consecutive_failures} consecutive failure(s)")

    def reset(self):
        with self._lock:
            self.backoff = 0.0
            self.consecutive_failures = 0
            self._last_operation_at = None

#
# End of throttle.py
#######################################################################################################################
