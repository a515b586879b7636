"""Single-writer owner of the dashboard state.

The reconciliation loop, the mutation coordinator and the lifecycle automaton
all change state through this store; each method holds the lock for the
whole update, so a fetch merge can never interleave with an optimistic write.

Merge rule (last writer wins, keyed by timestamp):
- every optimistic write records ``written_at`` and a suppression deadline
  on the local clock, and the backend ``updated_at`` of the record it
  replaced as its ``baseline``
- a fetched registration replaces the local one unless the local write is
  still inside its window and the fetched record is not fresher (its
  ``updated_at`` or the baseline is missing, or it is not later than the
  baseline). Backend timestamps are only ever compared with backend
  timestamps, so a skewed or simulated local clock cannot make a stale row
  look new
- once the window has passed the fetched record wins even if it looks
  older; that residual staleness is expected and reported, not corrected
- session statuses never move backwards during a merge
"""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, replace
from datetime import datetime, timedelta, timezone
from typing import Callable, Dict, List, Optional

from .clock import Clock
from .models import DashboardSnapshot, Registration, Session, session_status_rank
from .types import MutationAction

logger = logging.getLogger(__name__)

Listener = Callable[[DashboardSnapshot], None]


@dataclass(frozen=True)
class LocalWrite:
    action: MutationAction
    written_at: datetime
    suppress_until: datetime
    # Optimistic status, or None when the write removed the registration
    status: Optional[str] = None
    removed: bool = False
    # Backend updated_at of the record this write replaced
    baseline: Optional[datetime] = None

    def protects(self, now: datetime) -> bool:
        return now < self.suppress_until


@dataclass(frozen=True)
class MergeReport:
    snapshot: DashboardSnapshot
    # Rounds whose local optimistic value survived the merge
    kept_local: tuple[str, ...] = ()
    # Rounds where an expired optimistic value was overwritten by an older-looking fetch
    stale_overrides: tuple[str, ...] = ()
    # Sessions whose local status was kept because the fetch would regress it
    kept_session_status: tuple[str, ...] = ()


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


def _is_fresher(fetched: Optional[Registration], write: LocalWrite) -> bool:
    # Without a backend baseline only the suppression window decides
    if fetched is None or fetched.updated_at is None or write.baseline is None:
        return False
    return _aware(fetched.updated_at) > _aware(write.baseline)


class DashboardStore:
    def __init__(self, clock: Clock, snapshot: Optional[DashboardSnapshot] = None):
        self._clock = clock
        self._lock = threading.RLock()
        self._snapshot = snapshot or DashboardSnapshot()
        self._has_data = snapshot is not None
        self._writes: Dict[str, LocalWrite] = {}
        self._listeners: List[Listener] = []

    # ------------------------------------------------------------------ reads

    @property
    def snapshot(self) -> DashboardSnapshot:
        with self._lock:
            return self._snapshot

    @property
    def has_data(self) -> bool:
        """True once a fetch or a cached snapshot populated the store."""
        with self._lock:
            return self._has_data

    def local_write(self, round_id: str) -> Optional[LocalWrite]:
        with self._lock:
            return self._writes.get(round_id)

    def last_write_at(self) -> Optional[datetime]:
        with self._lock:
            if not self._writes:
                return None
            return max(w.written_at for w in self._writes.values())

    def subscribe(self, listener: Listener) -> None:
        with self._lock:
            self._listeners.append(listener)

    # ----------------------------------------------------------------- writes

    def load_cached(self, snapshot: DashboardSnapshot) -> None:
        """Seed the store from a durable cache before the first fetch."""
        with self._lock:
            if self._has_data:
                return
            self._snapshot = snapshot
            self._has_data = True
        self._notify(snapshot)

    def merge_snapshot(self, fetched: DashboardSnapshot) -> MergeReport:
        now = self._clock.now()
        with self._lock:
            current = self._snapshot
            sessions, kept_sessions = self._merge_sessions(current.sessions, fetched.sessions)
            registrations, kept_local, stale = self._merge_registrations(
                current, fetched.registrations, now
            )
            profile = fetched.profile if fetched.profile.participant_id else current.profile
            merged = DashboardSnapshot(sessions=sessions, registrations=registrations, profile=profile)
            self._snapshot = merged
            self._has_data = True
        if kept_local:
            logger.debug(f"Kept optimistic state for rounds {list(kept_local)}")
        for round_id in stale:
            logger.info(
                f"Suppression window for round {round_id} expired; applying fetched state "
                f"(expected staleness)"
            )
        self._notify(merged)
        return MergeReport(
            snapshot=merged,
            kept_local=kept_local,
            stale_overrides=stale,
            kept_session_status=kept_sessions,
        )

    def apply_optimistic_status(
        self, round_id: str, status: str, action: MutationAction, suppress_for: timedelta
    ) -> Optional[Registration]:
        """
        Set ``status`` locally before the backend confirms it.

        Returns the registration as it was, or None if there is none (in which
        case nothing changes).
        """
        now = self._clock.now()
        with self._lock:
            previous = self._snapshot.find_registration(round_id)
            if previous is None:
                return None
            self._writes[round_id] = LocalWrite(
                action=action,
                written_at=now,
                suppress_until=now + suppress_for,
                status=status,
                baseline=previous.updated_at,
            )
            self._snapshot = self._with_registration(round_id, previous.with_status(status))
            snapshot = self._snapshot
        self._notify(snapshot)
        return previous

    def remove_optimistic(
        self, round_id: str, action: MutationAction, suppress_for: timedelta
    ) -> Optional[Registration]:
        now = self._clock.now()
        with self._lock:
            previous = self._snapshot.find_registration(round_id)
            self._writes[round_id] = LocalWrite(
                action=action,
                written_at=now,
                suppress_until=now + suppress_for,
                removed=True,
                baseline=previous.updated_at if previous is not None else None,
            )
            if previous is None:
                return None
            self._snapshot = replace(
                self._snapshot,
                registrations=tuple(r for r in self._snapshot.registrations if r.round_id != round_id),
            )
            snapshot = self._snapshot
        self._notify(snapshot)
        return previous

    def apply_canonical_status(self, round_id: str, status: str) -> Optional[Registration]:
        """
        Apply the status a mutation response reported as authoritative.

        The write timestamp is refreshed so the merge keeps this value for the
        rest of the window.
        """
        now = self._clock.now()
        with self._lock:
            current = self._snapshot.find_registration(round_id)
            if current is None:
                return None
            write = self._writes.get(round_id)
            if write is not None:
                self._writes[round_id] = replace(write, written_at=now, status=status)
            updated = current.with_status(status)
            self._snapshot = self._with_registration(round_id, updated)
            snapshot = self._snapshot
        self._notify(snapshot)
        return updated

    def upsert_registration(self, registration: Registration) -> None:
        with self._lock:
            existing = self._snapshot.find_registration(registration.round_id)
            if existing is None:
                self._snapshot = replace(
                    self._snapshot,
                    registrations=self._snapshot.registrations + (registration,),
                )
            else:
                self._snapshot = self._with_registration(registration.round_id, registration)
            # A fresh registration replaces any earlier removal
            write = self._writes.get(registration.round_id)
            if write is not None and write.removed:
                del self._writes[registration.round_id]
            snapshot = self._snapshot
        self._notify(snapshot)

    def clear_write(self, round_id: str) -> None:
        with self._lock:
            self._writes.pop(round_id, None)

    def apply_session_statuses(self, updates: Dict[str, str]) -> DashboardSnapshot:
        """Advance session statuses; moves that would regress are ignored."""
        if not updates:
            return self.snapshot
        with self._lock:
            sessions = []
            changed = False
            for session in self._snapshot.sessions:
                target = updates.get(session.id)
                if target and session_status_rank(target) > session_status_rank(session.status):
                    sessions.append(session.with_status(target))
                    changed = True
                else:
                    sessions.append(session)
            if changed:
                self._snapshot = replace(self._snapshot, sessions=tuple(sessions))
            snapshot = self._snapshot
        if changed:
            self._notify(snapshot)
        return snapshot

    # -------------------------------------------------------------- internals

    def _with_registration(self, round_id: str, registration: Registration) -> DashboardSnapshot:
        return replace(
            self._snapshot,
            registrations=tuple(
                registration if r.round_id == round_id else r for r in self._snapshot.registrations
            ),
        )

    @staticmethod
    def _merge_sessions(
        local: tuple[Session, ...], fetched: tuple[Session, ...]
    ) -> tuple[tuple[Session, ...], tuple[str, ...]]:
        local_by_id = {s.id: s for s in local}
        merged: List[Session] = []
        kept: List[str] = []
        for session in fetched:
            previous = local_by_id.get(session.id)
            if previous is not None and session_status_rank(previous.status) > session_status_rank(session.status):
                merged.append(session.with_status(previous.status))
                kept.append(session.id)
            else:
                merged.append(session)
        return tuple(merged), tuple(kept)

    def _merge_registrations(
        self,
        current: DashboardSnapshot,
        fetched: tuple[Registration, ...],
        now: datetime,
    ) -> tuple[tuple[Registration, ...], tuple[str, ...], tuple[str, ...]]:
        local_by_round = {r.round_id: r for r in current.registrations}
        fetched_by_round = {r.round_id: r for r in fetched}
        merged: List[Registration] = []
        kept_local: List[str] = []
        stale: List[str] = []

        # Fetched order first, then local rows the fetch does not know about yet
        order = list(dict.fromkeys(r.round_id for r in fetched))
        order += [rid for rid in local_by_round if rid not in fetched_by_round]

        for round_id in order:
            incoming = fetched_by_round.get(round_id)
            local = local_by_round.get(round_id)
            write = self._writes.get(round_id)

            if write is not None and write.protects(now) and not _is_fresher(incoming, write):
                if write.removed:
                    if incoming is not None or local is not None:
                        kept_local.append(round_id)
                    continue
                if local is not None:
                    merged.append(local)
                    if incoming is None or incoming.status != local.status:
                        kept_local.append(round_id)
                    continue

            if write is not None and not write.protects(now):
                if not _is_fresher(incoming, write) and self._disagrees(write, incoming):
                    stale.append(round_id)
                del self._writes[round_id]
            elif write is not None and _is_fresher(incoming, write):
                del self._writes[round_id]

            if incoming is not None:
                merged.append(incoming)

        return tuple(merged), tuple(kept_local), tuple(stale)

    @staticmethod
    def _disagrees(write: LocalWrite, incoming: Optional[Registration]) -> bool:
        if write.removed:
            return incoming is not None
        return incoming is None or incoming.status != write.status

    def _notify(self, snapshot: DashboardSnapshot) -> None:
        with self._lock:
            listeners = list(self._listeners)
        for listener in listeners:
            try:
                listener(snapshot)
            except Exception:
                logger.exception("Dashboard listener failed")
