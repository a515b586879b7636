"""Domain model for sessions, rounds, registrations and matches.

All records are frozen dataclasses. State changes produce new instances via
``dataclasses.replace`` so the store can hand out snapshots without copying.
"""
from __future__ import annotations

from dataclasses import dataclass, field, replace
from datetime import date, datetime, time
from typing import Optional

from .types import MATCH_STATUSES, SESSION_STATUS_ORDER


@dataclass(frozen=True)
class Round:
    id: str
    session_id: str
    name: str = ""
    # Falls back to the session date at parse time; None if neither is known.
    date: Optional[date] = None
    # None means the start time is a placeholder or could not be parsed.
    start_time: Optional[time] = None
    duration: int = 0
    status: Optional[str] = None


@dataclass(frozen=True)
class Session:
    id: str
    name: str = ""
    date: Optional[date] = None
    registration_start: Optional[datetime | date] = None
    end_time: Optional[time] = None
    status: str = "draft"
    rounds: tuple[Round, ...] = ()
    enable_teams: bool = False
    teams: tuple[str, ...] = ()
    enable_topics: bool = False
    allow_multiple_topics: bool = False
    topics: tuple[str, ...] = ()

    def find_round(self, round_id: str) -> Optional[Round]:
        for rnd in self.rounds:
            if rnd.id == round_id:
                return rnd
        return None

    def with_status(self, status: str) -> "Session":
        return replace(self, status=status)


@dataclass(frozen=True)
class Registration:
    participant_id: str
    round_id: str
    session_id: str
    status: str = "registered"
    registered_at: Optional[datetime] = None
    # Backend write time; lets a fresher record win over a local optimistic write.
    updated_at: Optional[datetime] = None
    match_id: Optional[str] = None
    match_partner_ids: tuple[str, ...] = ()
    match_partner_names: tuple[str, ...] = ()
    meeting_point_id: Optional[str] = None

    @property
    def key(self) -> tuple[str, str]:
        return (self.participant_id, self.round_id)

    def with_status(self, status: str) -> "Registration":
        return replace(self, status=status)

    @property
    def match(self) -> Optional["Match"]:
        """The pairing while a match is live for this registration, else None."""
        if not self.match_id or self.status not in MATCH_STATUSES:
            return None
        return Match(
            id=self.match_id,
            round_id=self.round_id,
            partner_ids=self.match_partner_ids,
            partner_names=self.match_partner_names,
            meeting_point_id=self.meeting_point_id,
        )


@dataclass(frozen=True)
class Match:
    """A participant's pairing for one round, as carried on their registration."""

    id: str
    round_id: str
    partner_ids: tuple[str, ...] = ()
    partner_names: tuple[str, ...] = ()
    meeting_point_id: Optional[str] = None


@dataclass(frozen=True)
class RoundRef:
    session_id: str
    round_id: str

    def __str__(self) -> str:
        return f"{self.session_id}:{self.round_id}"


@dataclass(frozen=True)
class ParticipantProfile:
    participant_id: str = ""
    email: str = ""
    first_name: str = ""
    last_name: str = ""


@dataclass(frozen=True)
class DashboardSnapshot:
    """Authoritative view of one participant's dashboard."""

    sessions: tuple[Session, ...] = ()
    registrations: tuple[Registration, ...] = ()
    profile: ParticipantProfile = field(default_factory=ParticipantProfile)

    def find_session(self, session_id: str) -> Optional[Session]:
        for session in self.sessions:
            if session.id == session_id:
                return session
        return None

    def find_registration(self, round_id: str) -> Optional[Registration]:
        for reg in self.registrations:
            if reg.round_id == round_id:
                return reg
        return None

    @property
    def is_empty(self) -> bool:
        return not self.sessions and not self.registrations


def session_status_rank(status: Optional[str]) -> int:
    """Position in the forward-only session lifecycle; unknown statuses rank lowest."""
    try:
        return SESSION_STATUS_ORDER.index(status or "")
    except ValueError:
        return -1
