from datetime import date, datetime, time, timedelta, timezone

from roundflow_core import (
    BackendError,
    DashboardSnapshot,
    DashboardStore,
    FixedClock,
    OptimisticMutationCoordinator,
    ParticipantProfile,
    Registration,
    Round,
    Session,
    StateStorage,
    TransientBackendError,
)

UTC = timezone.utc
T0 = datetime(2024, 1, 10, 13, 56, tzinfo=UTC)


class _FakeClient:
    def __init__(self, confirm_status="confirmed", error=None):
        self.confirm_status = confirm_status
        self.error = error
        self.calls = []

    def confirm_attendance(self, round_id, session_id):
        self.calls.append(("confirm", round_id, session_id))
        if self.error:
            raise self.error
        return self.confirm_status

    def register(self, request, participant_id=""):
        self.calls.append(("register", request.roundId, request.to_body()))
        if self.error:
            raise self.error
        return Registration(participant_id, request.roundId, request.sessionId, status="registered")

    def unregister(self, round_id, session_id):
        self.calls.append(("unregister", round_id, session_id))
        if self.error:
            raise self.error


def _session(**kwargs):
    rounds = (
        Round(id="r1", session_id="s1", name="Round 1", date=date(2024, 1, 10), start_time=time(14, 0), duration=30),
        Round(id="r2", session_id="s1", name="Round 2", date=date(2024, 1, 10), start_time=time(15, 0), duration=30),
    )
    return Session(id="s1", status="published", rounds=rounds, **kwargs)


def _setup(client, *regs, session=None):
    clock = FixedClock(T0)
    storage = StateStorage()
    snapshot = DashboardSnapshot(
        sessions=(session or _session(),),
        registrations=regs,
        profile=ParticipantProfile(participant_id="p1"),
    )
    store = DashboardStore(clock, snapshot)
    calls = {"reconcile": 0, "request": 0, "after": 0}

    def bump(name):
        def _inc():
            calls[name] += 1
        return _inc

    coordinator = OptimisticMutationCoordinator(
        store,
        client,
        storage,
        clock,
        reconcile=bump("reconcile"),
        request_reconcile=bump("request"),
        after_mutation=bump("after"),
    )
    return coordinator, store, storage, clock, calls


def _reg(status="registered", round_id="r1"):
    return Registration(participant_id="p1", round_id=round_id, session_id="s1", status=status)


def test_confirm_applies_optimistically_and_keeps_canonical_status():
    client = _FakeClient()
    coordinator, store, storage, _, calls = _setup(client, _reg())

    outcome = coordinator.confirm_attendance("r1")

    assert outcome.kind == "applied"
    assert outcome.ok
    assert store.snapshot.find_registration("r1").status == "confirmed"
    assert client.calls == [("confirm", "r1", "s1")]
    assert storage.has_marker("mutation", "p1", "r1", "confirm")
    assert calls == {"reconcile": 0, "request": 1, "after": 1}


def test_duplicate_confirm_sends_one_request():
    client = _FakeClient()
    coordinator, store, _, _, _ = _setup(client, _reg())
    seen = []
    store.subscribe(lambda snapshot: seen.append(snapshot.find_registration("r1").status))

    first = coordinator.confirm_attendance("r1")
    second = coordinator.confirm_attendance("r1")

    assert first.kind == "applied"
    assert second.kind == "duplicate"
    assert "already confirmed" in second.message
    assert len(client.calls) == 1
    # optimistic write plus canonical status, nothing from the repeat
    assert seen == ["confirmed", "confirmed"]


def test_confirm_conflict_takes_backend_status_without_error():
    client = _FakeClient(confirm_status="matched")
    coordinator, store, _, _, _ = _setup(client, _reg())

    outcome = coordinator.confirm_attendance("r1")

    assert outcome.kind == "conflict"
    assert outcome.ok
    assert outcome.message is None
    assert store.snapshot.find_registration("r1").status == "matched"


def test_confirm_failure_clears_marker_and_forces_reconcile():
    client = _FakeClient(error=BackendError(400, "Confirmation window is closed"))
    coordinator, store, storage, _, calls = _setup(client, _reg())

    outcome = coordinator.confirm_attendance("r1")

    assert outcome.kind == "failed"
    assert outcome.message == "Failed to confirm: Confirmation window is closed"
    assert not storage.has_marker("mutation", "p1", "r1", "confirm")
    assert store.local_write("r1") is None
    assert calls["reconcile"] == 1

    # Without the suppression window the reconciled state wins at once
    store.merge_snapshot(DashboardSnapshot(sessions=store.snapshot.sessions, registrations=(_reg(),)))
    assert store.snapshot.find_registration("r1").status == "registered"

    # and the action can be tried again
    client.error = None
    assert coordinator.confirm_attendance("r1").kind == "applied"


def test_transient_failure_reports_network_error():
    client = _FakeClient(error=TransientBackendError("connection refused"))
    coordinator, _, _, _, _ = _setup(client, _reg())
    outcome = coordinator.confirm_attendance("r1")
    assert outcome.kind == "failed"
    assert "Network error" in outcome.message


def test_confirm_without_registration_fails_without_request():
    client = _FakeClient()
    coordinator, _, _, _, _ = _setup(client)
    outcome = coordinator.confirm_attendance("r1")
    assert (outcome.kind, outcome.message) == ("failed", "Registration not found")
    assert client.calls == []


def test_register_validates_topic_before_sending():
    client = _FakeClient()
    session = _session(enable_topics=True, topics=("AI", "Climate"))
    coordinator, store, storage, _, _ = _setup(client, session=session)

    outcome = coordinator.register("s1", "r1")

    assert outcome.kind == "invalid"
    assert outcome.message == "Please select a topic first"
    assert client.calls == []
    assert not storage.has_marker("mutation", "p1", "r1", "register")
    assert store.snapshot.registrations == ()


def test_register_adds_backend_registration():
    client = _FakeClient()
    session = _session(enable_teams=True, teams=("Red", "Blue"))
    coordinator, store, _, _, calls = _setup(client, session=session)

    outcome = coordinator.register("s1", "r2", team="Red")

    assert outcome.kind == "applied"
    assert client.calls == [("register", "r2", {"sessionId": "s1", "roundId": "r2", "team": "Red"})]
    assert store.snapshot.find_registration("r2").status == "registered"
    assert calls["after"] == 1


def test_register_twice_is_a_duplicate():
    client = _FakeClient()
    coordinator, _, _, _, _ = _setup(client)
    coordinator.register("s1", "r1")
    assert coordinator.register("s1", "r1").kind == "duplicate"
    assert len(client.calls) == 1


def test_unregister_removes_and_allows_registering_again():
    client = _FakeClient()
    coordinator, store, storage, clock, _ = _setup(client, _reg())
    coordinator.confirm_attendance("r1")

    outcome = coordinator.unregister("r1")

    assert outcome.kind == "applied"
    assert store.snapshot.find_registration("r1") is None
    assert ("unregister", "r1", "s1") in client.calls
    assert not storage.has_marker("mutation", "p1", "r1", "confirm")
    assert not storage.has_marker("mutation", "p1", "r1", "register")

    clock.advance(seconds=1)
    assert coordinator.register("s1", "r1").kind == "applied"
    assert not storage.has_marker("mutation", "p1", "r1", "unregister")
    assert store.snapshot.find_registration("r1") is not None


def test_unregister_locked_once_matched():
    client = _FakeClient()
    coordinator, store, _, _, _ = _setup(client, _reg("matched"))
    outcome = coordinator.unregister("r1")
    assert outcome.kind == "invalid"
    assert client.calls == []
    assert store.snapshot.find_registration("r1").status == "matched"


def test_unregister_failure_restores_through_reconcile():
    client = _FakeClient(error=BackendError(404, "Registration not found"))
    coordinator, store, storage, _, calls = _setup(client, _reg())

    outcome = coordinator.unregister("r1")

    assert outcome.kind == "failed"
    assert outcome.message == "Registration not found"
    assert calls["reconcile"] == 1
    assert not storage.has_marker("mutation", "p1", "r1", "unregister")
    store.merge_snapshot(DashboardSnapshot(sessions=store.snapshot.sessions, registrations=(_reg(),)))
    assert store.snapshot.find_registration("r1") is not None


def test_expiry_refetch_waits_out_recent_writes():
    client = _FakeClient()
    coordinator, _, _, clock, calls = _setup(client, _reg())
    coordinator.confirm_attendance("r1")
    requests_after_confirm = calls["request"]

    clock.advance(seconds=10)
    assert coordinator.confirmation_window_expired("r1").kind == "skipped"
    assert calls["request"] == requests_after_confirm

    clock.advance(seconds=10)
    assert coordinator.confirmation_window_expired("r1").kind == "applied"
    assert calls["request"] == requests_after_confirm + 1


def test_idempotency_markers_expire_after_round_plus_retention():
    client = _FakeClient()
    coordinator, _, storage, _, _ = _setup(client, _reg())
    coordinator.confirm_attendance("r1")

    round_end = datetime(2024, 1, 10, 14, 30, tzinfo=UTC)
    assert storage.evict_expired(round_end + timedelta(days=6)) == 0
    assert storage.evict_expired(round_end + timedelta(days=7)) == 1
