"""Next-upcoming-round selection and dashboard bucketing.

``next_upcoming`` picks the single registered, not yet completed round with
the earliest start strictly after ``now`` across all sessions; ties keep the
first round seen. The selector recomputes it on every store change and, only
while the clock is simulated, once per tick: with real time the value can
only change when a round starts or ends, which a data change or the
reconciliation loop already covers.
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from datetime import datetime
from typing import Callable, Dict, Iterable, List, Optional

from .clock import Clock
from .completion import is_completed, round_start
from .models import DashboardSnapshot, Registration, RoundRef, Session
from .store import DashboardStore
from .ticker import Ticker

logger = logging.getLogger(__name__)


def _status_by_round(registrations: Iterable[Registration]) -> Dict[str, str]:
    return {r.round_id: r.status for r in registrations}


def next_upcoming(
    sessions: Iterable[Session],
    registrations: Iterable[Registration],
    now: datetime,
) -> Optional[RoundRef]:
    statuses = _status_by_round(registrations)
    best: Optional[datetime] = None
    best_ref: Optional[RoundRef] = None
    for session in sessions:
        for rnd in session.rounds:
            if rnd.id not in statuses:
                continue
            start = round_start(rnd, now)
            if start is None or start <= now:
                continue
            if is_completed(rnd, statuses[rnd.id], now):
                continue
            # Strict comparison keeps the first-seen round on ties
            if best is None or start < best:
                best = start
                best_ref = RoundRef(session_id=session.id, round_id=rnd.id)
    return best_ref


@dataclass(frozen=True)
class DashboardBuckets:
    # Sessions with a registered round still ahead, earliest first
    upcoming: tuple[Session, ...] = ()
    # Sessions with at least one registered round in the completion bucket
    past: tuple[Session, ...] = ()


def bucket_sessions(
    sessions: Iterable[Session],
    registrations: Iterable[Registration],
    now: datetime,
) -> DashboardBuckets:
    statuses = _status_by_round(registrations)
    upcoming: List[tuple[float, int, Session]] = []
    past: List[Session] = []
    for index, session in enumerate(sessions):
        registered = [r for r in session.rounds if r.id in statuses]
        if not registered:
            continue
        pending = [r for r in registered if not is_completed(r, statuses[r.id], now)]
        if pending:
            starts = [round_start(r, now) for r in pending]
            earliest = min((s.timestamp() for s in starts if s is not None), default=float("inf"))
            upcoming.append((earliest, index, session))
        if len(pending) < len(registered):
            past.append(session)
    upcoming.sort(key=lambda item: (item[0], item[1]))
    return DashboardBuckets(upcoming=tuple(s for _, _, s in upcoming), past=tuple(past))


class UpcomingRoundSelector:
    def __init__(self, store: DashboardStore, clock: Clock, *, tick_interval: float = 1.0):
        self._store = store
        self._clock = clock
        self._lock = threading.Lock()
        self._current: Optional[RoundRef] = None
        self._listeners: List[Callable[[Optional[RoundRef]], None]] = []
        self._ticker = Ticker("upcoming-round", tick_interval, self._tick)
        store.subscribe(self._on_snapshot)

    @property
    def current(self) -> Optional[RoundRef]:
        with self._lock:
            return self._current

    def subscribe(self, listener: Callable[[Optional[RoundRef]], None]) -> None:
        self._listeners.append(listener)

    def recompute(self, snapshot: Optional[DashboardSnapshot] = None) -> Optional[RoundRef]:
        snapshot = snapshot or self._store.snapshot
        selected = next_upcoming(snapshot.sessions, snapshot.registrations, self._clock.now())
        with self._lock:
            changed = selected != self._current
            self._current = selected
        if changed:
            logger.debug(f"Next upcoming round is now {selected}")
            for listener in list(self._listeners):
                listener(selected)
        return selected

    def sync_ticking(self) -> None:
        """Tick only while the clock is simulated."""
        if self._clock.is_simulated:
            self._ticker.start()
        else:
            self._ticker.stop()

    def stop(self) -> None:
        self._ticker.stop()

    def _tick(self) -> None:
        if self._clock.is_simulated:
            self.recompute()

    def _on_snapshot(self, snapshot: DashboardSnapshot) -> None:
        self.recompute(snapshot)
