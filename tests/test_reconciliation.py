from datetime import datetime, timezone

from roundflow_core import (
    BackendError,
    DashboardSnapshot,
    DashboardStore,
    FixedClock,
    ParticipantProfile,
    ReconciliationLoop,
    Registration,
    StateStorage,
    TokenSuperseded,
    TransientBackendError,
)

UTC = timezone.utc
NOW = datetime(2024, 1, 10, 13, 0, tzinfo=UTC)


def _snapshot(status="registered"):
    return DashboardSnapshot(
        registrations=(Registration("p1", "r1", "s1", status=status),),
        profile=ParticipantProfile(participant_id="p1"),
    )


class _FakeClient:
    def __init__(self, *results):
        self.results = list(results)
        self.token = "tok"
        self.fetches = 0

    def get_dashboard(self):
        self.fetches += 1
        result = self.results.pop(0)
        if isinstance(result, Exception):
            raise result
        return result

    def switch_token(self, token):
        self.token = token


def test_successful_fetch_merges_and_runs_hooks_in_order():
    store = DashboardStore(FixedClock(NOW))
    order = []
    loop = ReconciliationLoop(
        store,
        _FakeClient(_snapshot()),
        hooks=[lambda s: order.append("lifecycle"), lambda s: order.append("selector"), lambda s: order.append("gate")],
    )

    assert loop.fetch_once() is True
    assert loop.load_state == "ready"
    assert store.snapshot.find_registration("r1") is not None
    assert order == ["lifecycle", "selector", "gate"]


def test_first_load_error_then_retry():
    store = DashboardStore(FixedClock(NOW))
    loop = ReconciliationLoop(store, _FakeClient(BackendError(404, "Invalid link"), _snapshot()))

    assert loop.fetch_once() is False
    assert loop.load_state == "error"
    assert loop.error == "Invalid link"

    assert loop.retry() is True
    assert loop.load_state == "ready"
    assert loop.error is None


def test_background_error_keeps_last_known_state():
    store = DashboardStore(FixedClock(NOW))
    loop = ReconciliationLoop(store, _FakeClient(_snapshot("confirmed"), TransientBackendError("timed out")))

    loop.fetch_once()
    assert loop.fetch_once() is False
    assert loop.load_state == "ready"
    assert store.snapshot.find_registration("r1").status == "confirmed"


def test_hook_failure_does_not_stop_later_hooks():
    store = DashboardStore(FixedClock(NOW))
    ran = []

    def broken(snapshot):
        raise RuntimeError("boom")

    loop = ReconciliationLoop(store, _FakeClient(_snapshot()), hooks=[broken, lambda s: ran.append(True)])
    assert loop.fetch_once() is True
    assert ran == [True]


def test_superseded_token_switches_and_refetches():
    client = _FakeClient(TokenSuperseded("new-token"), _snapshot())
    store = DashboardStore(FixedClock(NOW))
    loop = ReconciliationLoop(store, client)

    assert loop.fetch_once() is True
    assert client.token == "new-token"
    assert client.fetches == 2


def test_cycle_skipped_while_fetch_in_flight():
    store = DashboardStore(FixedClock(NOW))
    client = _FakeClient(_snapshot())
    loop = ReconciliationLoop(store, client)

    loop._in_flight.acquire()
    try:
        assert loop.fetch_once() is False
    finally:
        loop._in_flight.release()
    assert client.fetches == 0


def test_hidden_dashboard_pauses_ticks_but_poll_now_still_fetches():
    store = DashboardStore(FixedClock(NOW))
    client = _FakeClient(_snapshot(), _snapshot())
    loop = ReconciliationLoop(store, client)

    loop.set_visible(False)
    loop._tick()
    assert client.fetches == 0

    loop.poll_now()
    assert client.fetches == 1

    loop.set_visible(True)
    assert client.fetches == 2


def test_cached_snapshot_shown_before_first_fetch():
    storage = StateStorage()
    first = ReconciliationLoop(DashboardStore(FixedClock(NOW)), _FakeClient(_snapshot("matched")), storage=storage)
    first.fetch_once()

    store = DashboardStore(FixedClock(NOW))
    loop = ReconciliationLoop(store, _FakeClient(TransientBackendError("offline")), storage=storage)
    assert loop.restore_cached() is True
    assert store.snapshot.find_registration("r1").status == "matched"

    # A failing first fetch keeps the cached view instead of the error state
    assert loop.fetch_once() is False
    assert loop.load_state == "ready"
