"""Session lifecycle automaton.

States: draft → scheduled → published → completed.

Automatic transitions, evaluated on every sweep:
- scheduled → published once ``now >= registration_start``
- published → completed once the session has an end time and
  ``now >= date + end_time``

Both steps can happen in the same sweep. draft → scheduled and any manual
override belong to the organizer. A transition is applied to the store
first and persisted afterwards; a failed persist is retried on the next
sweep and never reverts the local status, since the same clock computation
re-derives it anyway.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import Executor
from dataclasses import dataclass
from datetime import date, datetime
from typing import Dict, Iterable, List, Optional, Set

from .clock import Clock
from .client import SessionStatusWriter
from .models import Session
from .store import DashboardStore
from .ticker import Ticker

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SessionTransition:
    session_id: str
    from_status: str
    to_status: str


def _registration_opens(session: Session, now: datetime) -> Optional[datetime]:
    start = session.registration_start
    if start is None:
        return None
    if isinstance(start, datetime):
        return start if start.tzinfo is not None else start.replace(tzinfo=now.tzinfo)
    if isinstance(start, date):
        return datetime.combine(start, datetime.min.time(), tzinfo=now.tzinfo)
    return None


def _session_ends(session: Session, now: datetime) -> Optional[datetime]:
    if session.date is None or session.end_time is None:
        return None
    return datetime.combine(session.date, session.end_time, tzinfo=now.tzinfo)


def next_status(session: Session, now: datetime) -> str:
    """Status ``session`` should have at ``now``; never earlier than its current one."""
    status = session.status

    if status == "scheduled":
        opens = _registration_opens(session, now)
        if opens is not None and now >= opens:
            status = "published"

    if status == "published":
        ends = _session_ends(session, now)
        if ends is not None and now >= ends:
            status = "completed"

    return status


def compute_transitions(sessions: Iterable[Session], now: datetime) -> List[SessionTransition]:
    transitions = []
    for session in sessions:
        target = next_status(session, now)
        if target != session.status:
            transitions.append(SessionTransition(session.id, session.status, target))
    return transitions


class SessionLifecycleAutomaton:
    def __init__(
        self,
        store: DashboardStore,
        client: SessionStatusWriter,
        clock: Clock,
        *,
        executor: Optional[Executor] = None,
        interval: float = 60.0,
    ):
        self._store = store
        self._client = client
        self._clock = clock
        self._executor = executor
        self._lock = threading.Lock()
        # session_id -> status still to be written to the backend
        self._pending: Dict[str, str] = {}
        self._in_flight: Set[str] = set()
        self._ticker = Ticker("session-lifecycle", interval, self.sweep)

    @property
    def pending(self) -> Dict[str, str]:
        with self._lock:
            return dict(self._pending)

    def start(self) -> None:
        self._ticker.start()

    def stop(self) -> None:
        self._ticker.stop()

    def sweep(self) -> List[SessionTransition]:
        now = self._clock.now()
        transitions = compute_transitions(self._store.snapshot.sessions, now)
        if transitions:
            self._store.apply_session_statuses({t.session_id: t.to_status for t in transitions})
            for t in transitions:
                logger.info(f"Session {t.session_id} transitioned from {t.from_status} to {t.to_status}")
            with self._lock:
                for t in transitions:
                    self._pending[t.session_id] = t.to_status
        self._flush()
        return transitions

    def _flush(self) -> None:
        with self._lock:
            batch = [(sid, status) for sid, status in self._pending.items() if sid not in self._in_flight]
            self._in_flight.update(sid for sid, _ in batch)
        for session_id, status in batch:
            if self._executor is None:
                self._persist(session_id, status)
            else:
                self._executor.submit(self._persist, session_id, status)

    def _persist(self, session_id: str, status: str) -> None:
        try:
            self._client.update_session_status(session_id, status)
        except Exception as e:
            logger.warning(f"Persisting status {status} for session {session_id} failed, retrying next sweep: {e}")
        else:
            with self._lock:
                if self._pending.get(session_id) == status:
                    del self._pending[session_id]
        finally:
            with self._lock:
                self._in_flight.discard(session_id)
