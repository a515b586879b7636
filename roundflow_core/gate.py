"""One-time notification gate.

A matched (or no-match) status is re-observed on every reconciliation cycle,
but the redirect it triggers must happen once per participant and round.
The gate answers True at most once per (kind, participant, round) by
atomically creating a durable marker.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Iterable, List, Optional

from .clock import Clock
from .completion import round_end
from .models import DashboardSnapshot, Match, Registration
from .storage import StateStorage
from .types import NotificationKind

logger = logging.getLogger(__name__)

NAMESPACE = "notification"

# Scan priority: a no-match redirect wins over a matched one in the same pass
SCAN_ORDER: tuple[NotificationKind, ...] = ("no-match", "matched")


@dataclass(frozen=True)
class NotificationEvent:
    kind: NotificationKind
    registration: Registration

    @property
    def match(self) -> Optional[Match]:
        return self.registration.match


class NotificationGate:
    def __init__(self, storage: StateStorage, clock: Clock, retention_days: Optional[int] = 7):
        self._storage = storage
        self._clock = clock
        self._retention = timedelta(days=retention_days) if retention_days is not None else None

    def should_fire(self, kind: NotificationKind, participant_id: str, round_id: str, expires_at=None) -> bool:
        fired = self._storage.set_marker(
            NAMESPACE,
            participant_id,
            round_id,
            kind,
            created_at=self._clock.now(),
            expires_at=expires_at,
        )
        if fired:
            logger.info(f"First {kind} observation for round {round_id}")
        else:
            logger.debug(f"{kind} for round {round_id} already shown, skipping")
        return fired

    def scan(self, snapshot: DashboardSnapshot) -> List[NotificationEvent]:
        """
        Fire at most one event per scan, mirroring a single redirect.

        Unseen no-match registrations are checked before unseen matched ones.
        """
        for kind in SCAN_ORDER:
            for reg in self._candidates(snapshot.registrations, kind):
                if self.should_fire(kind, reg.participant_id, reg.round_id, self._expiry(snapshot, reg)):
                    return [NotificationEvent(kind=kind, registration=reg)]
        return []

    @staticmethod
    def _candidates(registrations: Iterable[Registration], kind: NotificationKind) -> Iterable[Registration]:
        return (r for r in registrations if r.status == kind)

    def _expiry(self, snapshot: DashboardSnapshot, reg: Registration):
        # Evictable once the round is over plus the retention period
        if self._retention is None:
            return None
        session = snapshot.find_session(reg.session_id)
        rnd = session.find_round(reg.round_id) if session else None
        if rnd is None:
            return None
        end = round_end(rnd, self._clock.now())
        return end + self._retention if end is not None else None
