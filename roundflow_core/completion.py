"""Round timing and the registration completion predicate (pure, no I/O).

Round instants are wall-clock times in the event timezone. The predicate
takes the timezone from ``now`` so the same function serves the lifecycle
sweep, the upcoming-round selector and dashboard bucketing.

Completion rules, first match wins:
1. round status override ``completed`` → completed
2. registration status ``no-match`` → completed (the round never convened
   for this participant)
3. no resolvable start time → not completed
4. ``unconfirmed`` → completed once the round has ended (a no-show),
   still actionable before that
5. otherwise → completed once ``now >= round_end``
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Optional

from .models import Round, Session
from .types import RoundPhase

# Statuses during which matching is under way or done; unregistering is locked.
UNREGISTER_LOCKED_STATUSES = frozenset(
    {
        "unconfirmed",
        "waiting-for-match",
        "matched",
        "walking-to-meeting-point",
        "waiting-for-meet-confirmation",
        "met",
    }
)


@dataclass(frozen=True)
class RoundTiming:
    """Organizer-wide timing parameters, in minutes."""

    confirmation_window_minutes: int = 5
    safety_window_minutes: int = 6
    walking_time_minutes: int = 3


def round_start(rnd: Round, now: datetime) -> Optional[datetime]:
    """Start instant of ``rnd`` in the timezone of ``now``, or None if unresolvable."""
    if rnd.date is None or rnd.start_time is None:
        return None
    try:
        return datetime.combine(rnd.date, rnd.start_time, tzinfo=now.tzinfo)
    except (TypeError, ValueError):
        return None


def round_end(rnd: Round, now: datetime) -> Optional[datetime]:
    start = round_start(rnd, now)
    if start is None:
        return None
    try:
        return start + timedelta(minutes=int(rnd.duration or 0))
    except (TypeError, ValueError, OverflowError):
        return None


def is_completed(rnd: Round, registration_status: Optional[str], now: datetime) -> bool:
    if rnd.status == "completed":
        return True

    if registration_status == "no-match":
        return True

    end = round_end(rnd, now)
    if end is None:
        return False

    # unconfirmed included: a no-show only once the round is over
    return now >= end


def round_phase(
    session: Session,
    rnd: Round,
    now: datetime,
    timing: RoundTiming = RoundTiming(),
) -> RoundPhase:
    """
    Derive the phase of a round from the session status and the clock.

    The latest possible end is start + walking time + duration: matching is
    instant, then participants walk to the meeting point, then network.
    """
    if session.status == "draft":
        return "draft"

    start = round_start(rnd, now)
    if start is None:
        return "draft"

    max_end = start + timedelta(minutes=timing.walking_time_minutes + int(rnd.duration or 0))
    safety_start = start - timedelta(minutes=timing.safety_window_minutes)

    if now >= max_end:
        return "completed"
    if now >= start:
        return "running"
    if now >= safety_start:
        return "registration-safety-window"
    if session.status == "published":
        return "open-to-registration"
    if session.status == "scheduled":
        return "scheduled"
    return "draft"


def is_open_for_registration(rnd: Round, now: datetime, timing: RoundTiming = RoundTiming()) -> bool:
    """Registration closes ``safety_window_minutes`` before the round starts."""
    start = round_start(rnd, now)
    if start is None:
        return False
    return now < start - timedelta(minutes=timing.safety_window_minutes)


def is_awaiting_confirmation(rnd: Round, now: datetime, timing: RoundTiming = RoundTiming()) -> bool:
    """True inside the attendance-confirmation window just before the start."""
    start = round_start(rnd, now)
    if start is None:
        return False
    return start - timedelta(minutes=timing.confirmation_window_minutes) <= now < start


def can_unregister(registration_status: Optional[str]) -> bool:
    return (registration_status or "") not in UNREGISTER_LOCKED_STATUSES
