"""
Backend payload schemas using Pydantic v2.

Dashboard payloads are parsed leniently: malformed times become
"unresolvable" instead of failing the whole snapshot, because one bad round
must not blank out a participant's dashboard. Register requests are strict
and reject missing selections before anything is sent.
"""

import logging
import datetime as dt
from typing import Any, List, Optional, Self

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator, model_validator

from .exceptions import RegistrationValidationError
from .models import DashboardSnapshot, ParticipantProfile, Registration, Round, Session
from .types import PLACEHOLDER_START_TIMES, DashboardDict, RegistrationDict, RoundDict, SessionDict

logger = logging.getLogger(__name__)

# ==================== PARSERS ====================


def parse_time_of_day(value: Any) -> Optional[dt.time]:
    """Parse ``HH:MM`` (or ``HH:MM:SS``); placeholders and garbage give None.

    Examples:
        - "14:00" → time(14, 0)
        - "9:05" → time(9, 5)
        - "TBD" → None
        - "25:00" → None
    """
    if isinstance(value, dt.time):
        return value
    if not isinstance(value, str):
        return None
    stripped = value.strip()
    if stripped in PLACEHOLDER_START_TIMES:
        return None
    parts = stripped.split(":")
    if len(parts) not in (2, 3):
        return None
    try:
        numbers = [int(p) for p in parts]
        return dt.time(*numbers)
    except ValueError:
        logger.debug(f"Unresolvable time of day: {value!r}")
        return None


def parse_day(value: Any) -> Optional[dt.date]:
    if isinstance(value, dt.datetime):
        return value.date()
    if isinstance(value, dt.date):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    try:
        return dt.date.fromisoformat(value.strip()[:10])
    except ValueError:
        logger.debug(f"Unresolvable calendar day: {value!r}")
        return None


def parse_instant(value: Any) -> Optional[dt.datetime | dt.date]:
    """Parse a registration start: a bare day stays a ``date``, anything longer a ``datetime``."""
    if isinstance(value, (dt.datetime, dt.date)):
        return value
    if not isinstance(value, str) or not value.strip():
        return None
    stripped = value.strip()
    if len(stripped) == 10:
        return parse_day(stripped)
    try:
        return dt.datetime.fromisoformat(stripped.replace("Z", "+00:00"))
    except ValueError:
        logger.debug(f"Unresolvable instant: {value!r}")
        return None


def _lenient_datetime(value: Any) -> Optional[dt.datetime]:
    parsed = parse_instant(value)
    return parsed if isinstance(parsed, dt.datetime) else None


# ==================== DASHBOARD PAYLOADS ====================


class RoundPayload(BaseModel):
    id: str
    name: str = ""
    date: Optional[str] = None
    startTime: Optional[str] = None
    duration: int = 0
    status: Optional[str] = None

    @field_validator("duration", mode="before")
    @classmethod
    def coerce_duration(cls, v: Any) -> int:
        if isinstance(v, bool):
            return 0
        try:
            return max(int(v), 0)
        except (TypeError, ValueError):
            return 0

    def to_domain(self, session_id: str, session_date: Optional[dt.date]) -> Round:
        # Rounds past midnight carry their own date; older rounds inherit the session's
        return Round(
            id=self.id,
            session_id=session_id,
            name=self.name,
            date=parse_day(self.date) or session_date,
            start_time=parse_time_of_day(self.startTime),
            duration=self.duration,
            status=self.status,
        )

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class SessionPayload(BaseModel):
    id: str
    name: str = ""
    date: Optional[str] = None
    registrationStart: Optional[str] = None
    endTime: Optional[str] = None
    status: str = "draft"
    rounds: List[RoundPayload] = Field(default_factory=list)
    enableTeams: bool = False
    teams: List[str] = Field(default_factory=list)
    enableTopics: bool = False
    allowMultipleTopics: bool = False
    topics: List[str] = Field(default_factory=list)

    @field_validator("rounds", "teams", "topics", mode="before")
    @classmethod
    def none_as_empty(cls, v: Any) -> Any:
        return [] if v is None else v

    def to_domain(self) -> Session:
        session_date = parse_day(self.date)
        return Session(
            id=self.id,
            name=self.name,
            date=session_date,
            registration_start=parse_instant(self.registrationStart),
            end_time=parse_time_of_day(self.endTime),
            status=self.status,
            rounds=tuple(r.to_domain(self.id, session_date) for r in self.rounds),
            enable_teams=self.enableTeams,
            teams=tuple(self.teams),
            enable_topics=self.enableTopics,
            allow_multiple_topics=self.allowMultipleTopics,
            topics=tuple(self.topics),
        )

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class RegistrationPayload(BaseModel):
    participantId: Optional[str] = None
    roundId: str
    sessionId: str
    status: str = "registered"
    registeredAt: Optional[dt.datetime] = None
    updatedAt: Optional[dt.datetime] = None
    matchId: Optional[str] = None
    matchPartnerIds: List[str] = Field(default_factory=list)
    matchPartnerNames: List[str] = Field(default_factory=list)
    meetingPointId: Optional[str] = None

    @field_validator("registeredAt", "updatedAt", mode="before")
    @classmethod
    def lenient_datetime(cls, v: Any) -> Optional[dt.datetime]:
        return _lenient_datetime(v)

    @field_validator("matchPartnerIds", "matchPartnerNames", mode="before")
    @classmethod
    def none_as_empty(cls, v: Any) -> Any:
        return [] if v is None else v

    def to_domain(self, participant_id: str = "") -> Registration:
        return Registration(
            participant_id=self.participantId or participant_id,
            round_id=self.roundId,
            session_id=self.sessionId,
            status=self.status,
            registered_at=self.registeredAt,
            updated_at=self.updatedAt,
            match_id=self.matchId,
            match_partner_ids=tuple(self.matchPartnerIds),
            match_partner_names=tuple(self.matchPartnerNames),
            meeting_point_id=self.meetingPointId,
        )

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class DashboardPayload(BaseModel):
    sessions: List[SessionPayload] = Field(default_factory=list)
    registrations: List[RegistrationPayload] = Field(default_factory=list)
    email: str = ""
    firstName: str = ""
    lastName: str = ""
    participantId: str = ""

    # Superseded token
    redirect: bool = False
    correctToken: Optional[str] = None

    @field_validator("sessions", "registrations", mode="before")
    @classmethod
    def none_as_empty(cls, v: Any) -> Any:
        return [] if v is None else v

    @field_validator("email", "firstName", "lastName", "participantId", mode="before")
    @classmethod
    def none_as_blank(cls, v: Any) -> Any:
        return "" if v is None else v

    def to_snapshot(self) -> DashboardSnapshot:
        return DashboardSnapshot(
            sessions=tuple(s.to_domain() for s in self.sessions),
            registrations=tuple(r.to_domain(self.participantId) for r in self.registrations),
            profile=ParticipantProfile(
                participant_id=self.participantId,
                email=self.email,
                first_name=self.firstName,
                last_name=self.lastName,
            ),
        )

    model_config = ConfigDict(populate_by_name=True, extra="allow")


class ConfirmResponse(BaseModel):
    """Authoritative post-confirm status; may already be ``matched``."""

    status: str

    model_config = ConfigDict(extra="allow")


class RegisterResponse(BaseModel):
    registration: Optional[RegistrationPayload] = None

    model_config = ConfigDict(extra="allow")


class ErrorBody(BaseModel):
    error: str = ""
    message: Optional[str] = None
    details: Optional[Any] = None
    currentStatus: Optional[str] = None

    def describe(self, fallback: str) -> str:
        text = self.message or self.error or fallback
        if self.currentStatus:
            text = f"{text} (Current status: {self.currentStatus})"
        return text

    model_config = ConfigDict(extra="allow")


def _iso(value: Optional[dt.date | dt.datetime | dt.time]) -> Optional[str]:
    return value.isoformat() if value is not None else None


def _dump_round(rnd: Round) -> RoundDict:
    return {
        "id": rnd.id,
        "name": rnd.name,
        "date": _iso(rnd.date),
        "startTime": _iso(rnd.start_time),
        "duration": rnd.duration,
        "status": rnd.status,
    }


def _dump_session(session: Session) -> SessionDict:
    return {
        "id": session.id,
        "name": session.name,
        "date": _iso(session.date),
        "registrationStart": _iso(session.registration_start),
        "endTime": _iso(session.end_time),
        "status": session.status,
        "rounds": [_dump_round(r) for r in session.rounds],
        "enableTeams": session.enable_teams,
        "teams": list(session.teams),
        "enableTopics": session.enable_topics,
        "allowMultipleTopics": session.allow_multiple_topics,
        "topics": list(session.topics),
    }


def _dump_registration(reg: Registration) -> RegistrationDict:
    return {
        "participantId": reg.participant_id,
        "roundId": reg.round_id,
        "sessionId": reg.session_id,
        "status": reg.status,
        "registeredAt": _iso(reg.registered_at),
        "updatedAt": _iso(reg.updated_at),
        "matchId": reg.match_id,
        "matchPartnerIds": list(reg.match_partner_ids),
        "matchPartnerNames": list(reg.match_partner_names),
        "meetingPointId": reg.meeting_point_id,
    }


def dump_snapshot(snapshot: DashboardSnapshot) -> DashboardDict:
    """Serialize a snapshot into the dashboard payload shape, for the durable cache."""
    profile = snapshot.profile
    return {
        "participantId": profile.participant_id,
        "email": profile.email,
        "firstName": profile.first_name,
        "lastName": profile.last_name,
        "sessions": [_dump_session(s) for s in snapshot.sessions],
        "registrations": [_dump_registration(r) for r in snapshot.registrations],
    }


def load_snapshot(data: Any) -> Optional[DashboardSnapshot]:
    """Inverse of ``dump_snapshot``; an unreadable cache entry gives None."""
    if not isinstance(data, dict):
        return None
    try:
        return DashboardPayload.model_validate(data).to_snapshot()
    except ValidationError as e:
        logger.warning(f"Discarding unreadable cached dashboard: {e}")
        return None


# ==================== REGISTER REQUEST ====================


class RegisterRequest(BaseModel):
    """Body of ``POST /participant/{token}/register`` with selection checks."""

    sessionId: str = Field(..., min_length=1)
    roundId: str = Field(..., min_length=1)
    team: Optional[str] = None
    topic: Optional[str] = None
    topics: Optional[List[str]] = None

    # Requirements derived from the session; never sent
    requiresTeam: bool = Field(False, exclude=True)
    requiresTopic: bool = Field(False, exclude=True)
    allowMultipleTopics: bool = Field(False, exclude=True)

    @field_validator("team", "topic")
    @classmethod
    def blank_as_none(cls, v: Optional[str]) -> Optional[str]:
        if v is None:
            return v
        v = v.strip()
        return v or None

    @model_validator(mode="after")
    def validate_selections(self) -> Self:
        """Validate required selections based on the session settings"""
        if self.requiresTeam and not self.team:
            raise ValueError("Please select a group first")
        if self.requiresTopic:
            if self.allowMultipleTopics:
                if not self.topics:
                    raise ValueError("Please select at least one topic first")
            elif not self.topic:
                raise ValueError("Please select a topic first")
        return self

    def to_body(self) -> dict:
        return self.model_dump(exclude_none=True)

    @classmethod
    def for_session(
        cls,
        session: Session,
        round_id: str,
        *,
        team: Optional[str] = None,
        topic: Optional[str] = None,
        topics: Optional[List[str]] = None,
    ) -> "RegisterRequest":
        """
        Build and validate a register request for ``session``.

        Raises:
            RegistrationValidationError: a required selection is missing
        """
        try:
            return cls(
                sessionId=session.id,
                roundId=round_id,
                team=team,
                topic=topic,
                topics=topics,
                requiresTeam=session.enable_teams and bool(session.teams),
                requiresTopic=session.enable_topics and bool(session.topics),
                allowMultipleTopics=session.allow_multiple_topics,
            )
        except ValidationError as e:
            messages = [err.get("msg", "") for err in e.errors()]
            # pydantic prefixes validator messages with "Value error, "
            first = (messages[0] if messages else str(e)).removeprefix("Value error, ")
            logger.warning(f"Register request rejected: {first}")
            raise RegistrationValidationError(first) from e


# ==================== EXPORT ====================

__all__ = [
    "ConfirmResponse",
    "DashboardPayload",
    "ErrorBody",
    "RegisterRequest",
    "RegisterResponse",
    "RegistrationPayload",
    "RoundPayload",
    "SessionPayload",
    "dump_snapshot",
    "load_snapshot",
    "parse_day",
    "parse_instant",
    "parse_time_of_day",
]
