import pytest

from meeting_pipeline.services.request_throttle import RequestThrottle


class _FakeClock:
    def __init__(self) -> None:
        self.now = 100.0
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds


def test_request_throttle_spaces_requests_by_rate() -> None:
    clock = _FakeClock()
    throttle = RequestThrottle(2.0, clock=clock, sleeper=clock.sleep)

    waits = [throttle.acquire() for _ in range(3)]

    assert waits == [0.0, 0.5, 0.5]
    assert clock.sleeps == [0.5, 0.5]


def test_request_throttle_allows_burst_then_waits() -> None:
    clock = _FakeClock()
    throttle = RequestThrottle(1.0, burst=3, clock=clock, sleeper=clock.sleep)

    waits = [throttle.acquire() for _ in range(4)]

    assert waits == [0.0, 0.0, 0.0, 1.0]


def test_request_throttle_refills_while_idle() -> None:
    clock = _FakeClock()
    throttle = RequestThrottle(4.0, clock=clock, sleeper=clock.sleep)

    throttle.acquire()
    clock.now += 10

    assert throttle.acquire() == 0.0
    assert clock.sleeps == []


def test_request_throttle_rejects_non_positive_rate() -> None:
    with pytest.raises(ValueError):
        RequestThrottle(0)
