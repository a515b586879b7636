from datetime import date, datetime, time, timezone

from roundflow_core import (
    Round,
    RoundTiming,
    Session,
    can_unregister,
    is_awaiting_confirmation,
    is_completed,
    is_open_for_registration,
    round_end,
    round_phase,
    round_start,
)

UTC = timezone.utc


def _round(start="14:00", duration=30, **kwargs):
    return Round(
        id=kwargs.pop("id", "r1"),
        session_id="s1",
        date=kwargs.pop("day", date(2024, 1, 10)),
        start_time=time.fromisoformat(start) if start else None,
        duration=duration,
        **kwargs,
    )


def _at(hour, minute, second=0):
    return datetime(2024, 1, 10, hour, minute, second, tzinfo=UTC)


def test_round_start_and_end_use_now_timezone():
    rnd = _round()
    assert round_start(rnd, _at(9, 0)) == datetime(2024, 1, 10, 14, 0, tzinfo=UTC)
    assert round_end(rnd, _at(9, 0)) == datetime(2024, 1, 10, 14, 30, tzinfo=UTC)


def test_confirmed_round_completes_after_end():
    # 14:00 + 30 min, now 14:31
    rnd = _round()
    assert is_completed(rnd, "confirmed", _at(14, 31)) is True
    assert is_completed(rnd, "confirmed", _at(14, 29)) is False


def test_completion_flips_exactly_at_round_end():
    rnd = _round()
    assert is_completed(rnd, "matched", _at(14, 29, 59)) is False
    assert is_completed(rnd, "matched", _at(14, 30)) is True


def test_no_match_is_always_completed():
    rnd = _round()
    assert is_completed(rnd, "no-match", _at(8, 0)) is True
    assert is_completed(_round(start=None), "no-match", _at(8, 0)) is True


def test_unconfirmed_stays_actionable_until_round_ends():
    rnd = _round()
    assert is_completed(rnd, "unconfirmed", _at(14, 10)) is False
    assert is_completed(rnd, "unconfirmed", _at(14, 30)) is True


def test_round_status_override_wins():
    rnd = _round(status="completed")
    assert is_completed(rnd, "registered", _at(8, 0)) is True


def test_unresolvable_start_is_never_completed():
    assert is_completed(_round(start=None), "registered", _at(23, 59)) is False
    assert is_completed(_round(day=None), "confirmed", _at(23, 59)) is False
    assert round_start(_round(start=None), _at(8, 0)) is None


def test_round_phase_walks_through_the_day():
    session = Session(id="s1", status="published", rounds=(_round(),))
    rnd = session.rounds[0]
    assert round_phase(session, rnd, _at(13, 0)) == "open-to-registration"
    assert round_phase(session, rnd, _at(13, 55)) == "registration-safety-window"
    assert round_phase(session, rnd, _at(14, 10)) == "running"
    # walking time (3 min) is added to the duration
    assert round_phase(session, rnd, _at(14, 32)) == "running"
    assert round_phase(session, rnd, _at(14, 33)) == "completed"


def test_round_phase_respects_session_status():
    rnd = _round()
    assert round_phase(Session(id="s1", status="draft"), rnd, _at(15, 0)) == "draft"
    assert round_phase(Session(id="s1", status="scheduled"), rnd, _at(10, 0)) == "scheduled"
    assert round_phase(Session(id="s1", status="published"), _round(start=None), _at(10, 0)) == "draft"


def test_registration_window_and_confirmation_window():
    rnd = _round()
    timing = RoundTiming(confirmation_window_minutes=5, safety_window_minutes=6)
    assert is_open_for_registration(rnd, _at(13, 53), timing) is True
    assert is_open_for_registration(rnd, _at(13, 54), timing) is False
    assert is_awaiting_confirmation(rnd, _at(13, 54), timing) is False
    assert is_awaiting_confirmation(rnd, _at(13, 55), timing) is True
    assert is_awaiting_confirmation(rnd, _at(14, 0), timing) is False


def test_unregister_locked_once_matching_starts():
    assert can_unregister("registered") is True
    assert can_unregister("confirmed") is True
    assert can_unregister("matched") is False
    assert can_unregister("waiting-for-match") is False
