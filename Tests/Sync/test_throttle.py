# test_throttle.py
#
# Imports
import threading

import pytest
#
# Local Imports
from zonesync.Sync.throttle import SyncThrottle


class FakeClock:
    def __init__(self, now: float = 1000.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


class TestSyncThrottle:
    @pytest.mark.parametrize("kwargs", [
        {"min_interval": -1}, {"backoff_base": -0.1}, {"backoff_max": -5},
        {"recovery_factor": 1.0}, {"recovery_factor": -0.5},
    ])
    def test_rejects_bad_arguments(self, kwargs):
        with pytest.raises(ValueError):
            SyncThrottle(**kwargs)

    def test_first_operation_is_not_delayed(self, clock):
        throttle = SyncThrottle(min_interval=5, clock=clock)
        assert throttle.delay_remaining() == 0.0

    def test_min_interval_spaces_operations(self, clock):
        throttle = SyncThrottle(min_interval=5, clock=clock)
        assert throttle.wait() is True
        assert throttle.delay_remaining() == 5
        clock.advance(2)
        assert throttle.delay_remaining() == 3
        clock.advance(4)
        assert throttle.delay_remaining() == 0

    def test_failures_double_backoff_up_to_max(self, clock):
        throttle = SyncThrottle(backoff_base=1, backoff_max=6, clock=clock)
        delays = []
        for _ in range(5):
            throttle.record_failure()
            delays.append(throttle.backoff)
        assert delays == [1, 2, 4, 6, 6]
        assert throttle.consecutive_failures == 5

    def test_retry_after_raises_backoff(self, clock):
        throttle = SyncThrottle(backoff_base=1, backoff_max=10, clock=clock)
        throttle.record_failure(retry_after=30)
        assert throttle.backoff == 30
        assert throttle.delay_remaining() == 30

    def test_non_finite_retry_after_is_ignored(self, clock):
        throttle = SyncThrottle(backoff_base=1, backoff_max=10, clock=clock)
        throttle.record_failure(retry_after=float("inf"))
        assert throttle.backoff == 1
        throttle.record_failure(retry_after=float("nan"))
        assert throttle.backoff == 2
        assert throttle.delay_remaining() == 2

    def test_success_recovers_gradually(self, clock):
        throttle = SyncThrottle(backoff_base=8, recovery_factor=0.5, clock=clock)
        throttle.record_failure()
        throttle.record_success()
        assert throttle.backoff == 4
        assert throttle.consecutive_failures == 0
        for _ in range(10):
            throttle.record_success()
        assert throttle.backoff == 0

    def test_reset(self, clock):
        throttle = SyncThrottle(backoff_base=2, clock=clock)
        throttle.record_failure()
        throttle.reset()
        assert throttle.backoff == 0
        assert throttle.consecutive_failures == 0
        assert throttle.delay_remaining() == 0

    def test_wait_returns_false_when_cancelled(self, clock):
        throttle = SyncThrottle(min_interval=60, clock=clock)
        cancel = threading.Event()
        cancel.set()
        assert throttle.wait(cancel) is False

    def test_wait_is_interrupted_by_cancel(self, mocker):
        throttle = SyncThrottle(min_interval=60)
        throttle.wait()
        cancel = threading.Event()
        mocker.patch.object(cancel, "wait", return_value=True)
        assert throttle.wait(cancel) is False
        cancel.wait.assert_called_once()
        assert 0 < cancel.wait.call_args.args[0] <= 60

    def test_wait_sleeps_without_cancel_event(self, mocker, clock):
        sleep = mocker.patch("zonesync.Sync.throttle.time.sleep")
        throttle = SyncThrottle(min_interval=3, clock=clock)
        throttle.wait()
        throttle.wait()
        sleep.assert_called_once_with(3)
