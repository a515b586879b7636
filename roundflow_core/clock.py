"""Clock sources.

Every component takes a clock and calls ``now()``; nothing reads the system
time directly. ``SimulatedClock`` stores an offset from the wall clock rather
than a frozen instant, so simulated time keeps advancing at real speed.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta, tzinfo
from typing import Callable, Optional, Protocol
from zoneinfo import ZoneInfo

from .storage import StateStorage

logger = logging.getLogger(__name__)

OFFSET_KEY = "simulated_time_offset_ms"


class Clock(Protocol):
    @property
    def tz(self) -> tzinfo:
        ...

    @property
    def is_simulated(self) -> bool:
        ...

    def now(self) -> datetime:
        ...


def resolve_timezone(name: str | tzinfo) -> tzinfo:
    if isinstance(name, tzinfo):
        return name
    return ZoneInfo(name)


class RealClock:
    def __init__(self, tz: str | tzinfo = "UTC", wall: Optional[Callable[[tzinfo], datetime]] = None):
        self._tz = resolve_timezone(tz)
        self._wall = wall or (lambda zone: datetime.now(zone))

    @property
    def tz(self) -> tzinfo:
        return self._tz

    @property
    def is_simulated(self) -> bool:
        return False

    def now(self) -> datetime:
        return self._wall(self._tz)


class SimulatedClock(RealClock):
    """
    Wall clock plus a fixed offset.

    The offset is loaded from and saved to ``storage`` (when given), so a
    simulation set by an operator survives restarts. ``wall`` lets tests
    drive the underlying wall clock.
    """

    def __init__(
        self,
        tz: str | tzinfo = "UTC",
        storage: Optional[StateStorage] = None,
        wall: Optional[Callable[[tzinfo], datetime]] = None,
    ):
        super().__init__(tz, wall)
        self._storage = storage
        self._offset: Optional[timedelta] = None
        if storage is not None:
            stored = storage.get_value(OFFSET_KEY)
            if isinstance(stored, (int, float)):
                self._offset = timedelta(milliseconds=stored)
                logger.info(f"Restored simulated clock offset of {self._offset}")

    @property
    def is_simulated(self) -> bool:
        return self._offset is not None

    @property
    def offset(self) -> Optional[timedelta]:
        return self._offset

    def now(self) -> datetime:
        wall_now = self._wall(self._tz)
        if self._offset is None:
            return wall_now
        return wall_now + self._offset

    def set_simulated_time(self, target: datetime) -> None:
        if target.tzinfo is None:
            target = target.replace(tzinfo=self._tz)
        self._offset = target - self._wall(self._tz)
        if self._storage is not None:
            self._storage.set_value(OFFSET_KEY, int(self._offset / timedelta(milliseconds=1)))
        logger.info(f"Simulated time set to {target.isoformat()} (offset {self._offset})")

    def clear_simulation(self) -> None:
        self._offset = None
        if self._storage is not None:
            self._storage.delete_value(OFFSET_KEY)
        logger.info("Simulated time cleared")


class FixedClock:
    """Clock pinned to an instant until moved; used by tests and replays."""

    def __init__(self, current: datetime, simulated: bool = False):
        if current.tzinfo is None:
            raise ValueError("FixedClock requires a timezone-aware datetime")
        self._current = current
        self._simulated = simulated

    @property
    def tz(self) -> tzinfo:
        return self._current.tzinfo

    @property
    def is_simulated(self) -> bool:
        return self._simulated

    def now(self) -> datetime:
        return self._current

    def set(self, current: datetime) -> None:
        self._current = current

    def advance(self, **delta: float) -> datetime:
        self._current = self._current + timedelta(**delta)
        return self._current
