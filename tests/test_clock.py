from datetime import datetime, timedelta, timezone

import pytest

from roundflow_core import FixedClock, RealClock, SimulatedClock, StateStorage

UTC = timezone.utc


class _Wall:
    def __init__(self, current):
        self.current = current

    def __call__(self, tz):
        return self.current.astimezone(tz)


def test_real_clock_is_aware_and_not_simulated():
    clock = RealClock(UTC)
    assert clock.now().tzinfo is not None
    assert clock.is_simulated is False


def test_simulated_clock_keeps_advancing_from_target():
    wall = _Wall(datetime(2024, 1, 1, 9, 0, tzinfo=UTC))
    clock = SimulatedClock(UTC, wall=wall)
    assert clock.is_simulated is False

    clock.set_simulated_time(datetime(2024, 1, 10, 13, 55, tzinfo=UTC))
    assert clock.is_simulated is True
    assert clock.now() == datetime(2024, 1, 10, 13, 55, tzinfo=UTC)

    wall.current += timedelta(minutes=2)
    assert clock.now() == datetime(2024, 1, 10, 13, 57, tzinfo=UTC)

    clock.clear_simulation()
    assert clock.now() == wall.current


def test_simulated_offset_survives_restart():
    storage = StateStorage()
    wall = _Wall(datetime(2024, 1, 1, 9, 0, tzinfo=UTC))
    SimulatedClock(UTC, storage=storage, wall=wall).set_simulated_time(datetime(2024, 1, 1, 10, 0, tzinfo=UTC))

    restored = SimulatedClock(UTC, storage=storage, wall=wall)
    assert restored.is_simulated is True
    assert restored.offset == timedelta(hours=1)

    restored.clear_simulation()
    assert SimulatedClock(UTC, storage=storage, wall=wall).is_simulated is False


def test_naive_target_is_read_in_clock_timezone():
    wall = _Wall(datetime(2024, 1, 1, 9, 0, tzinfo=UTC))
    clock = SimulatedClock(UTC, wall=wall)
    clock.set_simulated_time(datetime(2024, 1, 1, 12, 0))
    assert clock.now() == datetime(2024, 1, 1, 12, 0, tzinfo=UTC)


def test_fixed_clock_requires_aware_datetime():
    with pytest.raises(ValueError):
        FixedClock(datetime(2024, 1, 1))
    clock = FixedClock(datetime(2024, 1, 1, tzinfo=UTC))
    assert clock.advance(minutes=5) == datetime(2024, 1, 1, 0, 5, tzinfo=UTC)
