"""Type definitions for backend payloads and status vocabularies."""
from __future__ import annotations

from typing import List, Literal, Optional, TypedDict

SessionStatus = Literal["draft", "scheduled", "published", "completed"]

# Forward-only order used by the lifecycle automaton and snapshot merges.
SESSION_STATUS_ORDER: tuple[str, ...] = ("draft", "scheduled", "published", "completed")

RegistrationStatus = Literal[
    "registered",
    "confirmed",
    "unconfirmed",
    "waiting-for-match",
    "matched",
    "walking-to-meeting-point",
    "waiting-for-meet-confirmation",
    "met",
    "no-show",
    "no-match",
    "missed",
    "excluded",
    "cancelled",
    "verification_pending",
]

RoundPhase = Literal[
    "draft",
    "scheduled",
    "open-to-registration",
    "registration-safety-window",
    "running",
    "completed",
]

MutationAction = Literal["confirm", "register", "unregister", "expired"]
NotificationKind = Literal["matched", "no-match"]
LoadState = Literal["loading", "ready", "error"]

# Registration statuses that carry a live match (partner and meeting point)
MATCH_STATUSES = frozenset(
    {"matched", "walking-to-meeting-point", "waiting-for-meet-confirmation", "met"}
)

# Start times the organizer has not filled in yet.
PLACEHOLDER_START_TIMES = frozenset({"", "TBD", "To be set"})


class RoundDict(TypedDict, total=False):
    """A round as returned inside a dashboard session."""
    id: str
    name: str
    date: Optional[str]
    startTime: Optional[str]
    duration: int
    status: Optional[str]


class SessionDict(TypedDict, total=False):
    """A session as returned by the dashboard endpoint."""
    id: str
    name: str
    date: Optional[str]
    registrationStart: Optional[str]
    endTime: Optional[str]
    status: str
    rounds: List[RoundDict]
    enableTeams: bool
    teams: List[str]
    enableTopics: bool
    allowMultipleTopics: bool
    topics: List[str]


class RegistrationDict(TypedDict, total=False):
    """A participant registration row."""
    participantId: str
    roundId: str
    sessionId: str
    status: str
    registeredAt: Optional[str]
    updatedAt: Optional[str]
    matchId: Optional[str]
    matchPartnerIds: List[str]
    matchPartnerNames: List[str]
    meetingPointId: Optional[str]


class DashboardDict(TypedDict, total=False):
    """
    Body of ``GET /participant/{token}/dashboard``.

    A superseded token yields only ``redirect`` and ``correctToken``.
    """
    sessions: List[SessionDict]
    registrations: List[RegistrationDict]
    email: str
    firstName: str
    lastName: str
    participantId: str
    redirect: bool
    correctToken: str
