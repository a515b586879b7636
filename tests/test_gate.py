from datetime import date, datetime, time, timedelta, timezone

from roundflow_core import (
    DashboardSnapshot,
    FixedClock,
    NotificationGate,
    Registration,
    Round,
    Session,
    StateStorage,
)

UTC = timezone.utc
NOW = datetime(2024, 1, 10, 14, 1, tzinfo=UTC)


def _snapshot(*statuses):
    rounds = tuple(
        Round(id=f"r{i}", session_id="s1", date=date(2024, 1, 10), start_time=time(14, 0), duration=30)
        for i in range(len(statuses))
    )
    regs = tuple(
        Registration(participant_id="p1", round_id=f"r{i}", session_id="s1", status=status)
        for i, status in enumerate(statuses)
    )
    return DashboardSnapshot(sessions=(Session(id="s1", rounds=rounds),), registrations=regs)


def test_should_fire_once_per_key():
    gate = NotificationGate(StateStorage(), FixedClock(NOW))
    assert gate.should_fire("matched", "p1", "r1") is True
    assert gate.should_fire("matched", "p1", "r1") is False
    assert gate.should_fire("no-match", "p1", "r1") is True
    assert gate.should_fire("matched", "p1", "r2") is True


def test_scan_fires_no_match_before_matched_one_per_pass():
    gate = NotificationGate(StateStorage(), FixedClock(NOW))
    snapshot = _snapshot("matched", "no-match")

    first = gate.scan(snapshot)
    assert [(e.kind, e.registration.round_id) for e in first] == [("no-match", "r1")]

    second = gate.scan(snapshot)
    assert [(e.kind, e.registration.round_id) for e in second] == [("matched", "r0")]

    assert gate.scan(snapshot) == []


def test_scan_ignores_other_statuses():
    gate = NotificationGate(StateStorage(), FixedClock(NOW))
    assert gate.scan(_snapshot("confirmed", "registered")) == []


def test_gate_survives_restart_with_shared_storage():
    storage = StateStorage()
    NotificationGate(storage, FixedClock(NOW)).scan(_snapshot("matched"))
    assert NotificationGate(storage, FixedClock(NOW)).scan(_snapshot("matched")) == []


def test_markers_expire_after_round_end_plus_retention():
    storage = StateStorage()
    gate = NotificationGate(storage, FixedClock(NOW), retention_days=7)
    gate.scan(_snapshot("matched"))

    round_end = datetime(2024, 1, 10, 14, 30, tzinfo=UTC)
    assert storage.evict_expired(round_end + timedelta(days=6)) == 0
    assert storage.evict_expired(round_end + timedelta(days=7)) == 1


def test_matched_event_carries_partner_and_meeting_point():
    reg = Registration(
        participant_id="p1",
        round_id="r0",
        session_id="s1",
        status="matched",
        match_id="m1",
        match_partner_ids=("p2",),
        match_partner_names=("Bo",),
        meeting_point_id="mp-3",
    )
    snapshot = DashboardSnapshot(sessions=_snapshot("matched").sessions, registrations=(reg,))

    (event,) = NotificationGate(StateStorage(), FixedClock(NOW)).scan(snapshot)

    assert event.match.id == "m1"
    assert event.match.partner_names == ("Bo",)
    assert event.match.meeting_point_id == "mp-3"


def test_no_live_match_without_match_status():
    reg = Registration(participant_id="p1", round_id="r0", session_id="s1", status="no-match", match_id="m1")
    assert reg.match is None
    assert Registration(participant_id="p1", round_id="r0", session_id="s1", status="met").match is None
