"""Participant-facing engine: wires the store, loop, automaton, selector and gate."""
from __future__ import annotations

import logging
from concurrent.futures import Executor, Future, ThreadPoolExecutor
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional

from .client import BackendApi, BackendClient
from .clock import Clock, SimulatedClock
from .completion import RoundTiming, round_phase
from .config import Settings, get_settings
from .coordinator import MutationOutcome, OptimisticMutationCoordinator
from .gate import NotificationEvent, NotificationGate
from .lifecycle import SessionLifecycleAutomaton
from .models import DashboardSnapshot, Match, RoundRef
from .reconciliation import ReconciliationLoop
from .storage import StateStorage
from .store import DashboardStore
from .ticker import Ticker
from .types import LoadState, RoundPhase
from .upcoming import DashboardBuckets, UpcomingRoundSelector, bucket_sessions

logger = logging.getLogger(__name__)

NotificationListener = Callable[[NotificationEvent], None]


class ParticipantEngine:
    """
    One participant's dashboard engine.

    Collaborators default to what ``settings`` describes; tests pass their
    own clock, client, storage or executor.
    """

    def __init__(
        self,
        settings: Optional[Settings] = None,
        *,
        clock: Optional[Clock] = None,
        client: Optional[BackendApi] = None,
        storage: Optional[StateStorage] = None,
        executor: Optional[Executor] = None,
    ):
        self.settings = settings or get_settings()
        s = self.settings

        self.storage = storage or StateStorage(s.storage_url)
        self.clock = clock or SimulatedClock(s.timezone, storage=self.storage)
        self.client = client or BackendClient(
            s.api_base_url,
            s.participant_token,
            s.bearer_token,
            clock=self.clock,
            timeout=s.fetch_timeout_seconds,
        )
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(max_workers=4, thread_name_prefix="roundflow")
        self.timing = RoundTiming(
            confirmation_window_minutes=s.confirmation_window_minutes,
            safety_window_minutes=s.safety_window_minutes,
            walking_time_minutes=s.walking_time_minutes,
        )

        self.store = DashboardStore(self.clock)
        self.lifecycle = SessionLifecycleAutomaton(
            self.store,
            self.client,
            self.clock,
            executor=self._executor,
            interval=s.lifecycle_interval_seconds,
        )
        self.selector = UpcomingRoundSelector(self.store, self.clock, tick_interval=s.selector_tick_seconds)
        self.gate = NotificationGate(self.storage, self.clock, s.marker_retention_days)
        self.loop = ReconciliationLoop(
            self.store,
            self.client,
            storage=self.storage,
            interval=s.poll_interval_seconds,
            hooks=(self._sweep_lifecycle, self.selector.recompute, self._scan_notifications),
        )
        retention = s.marker_retention_days
        self.coordinator = OptimisticMutationCoordinator(
            self.store,
            self.client,
            self.storage,
            self.clock,
            confirm_suppression=timedelta(seconds=s.confirm_suppression_seconds),
            unregister_suppression=timedelta(seconds=s.unregister_suppression_seconds),
            marker_retention=timedelta(days=retention) if retention is not None else None,
            reconcile=self.loop.fetch_once,
            request_reconcile=self.loop.poll_now,
            after_mutation=self._sweep_lifecycle,
        )
        self._housekeeping = Ticker("marker-eviction", s.lifecycle_interval_seconds, self._evict_markers)
        self._notification_listeners: List[NotificationListener] = []

    # -------------------------------------------------------------- lifecycle

    def start(self) -> None:
        logger.info(f"Starting engine against {self.settings.api_base_url}")
        self._evict_markers()
        self.loop.start()
        self.lifecycle.start()
        self.selector.sync_ticking()
        self._housekeeping.start()

    def stop(self) -> None:
        self.loop.stop()
        self.lifecycle.stop()
        self.selector.stop()
        self._housekeeping.stop()
        if self._owns_executor:
            # Pending backend writes still complete
            self._executor.shutdown(wait=True)
        logger.info("Engine stopped")

    def set_visible(self, visible: bool) -> None:
        self.loop.set_visible(visible)

    def poll_now(self) -> None:
        self.loop.poll_now()

    def retry(self) -> bool:
        return self.loop.retry()

    @property
    def load_state(self) -> LoadState:
        return self.loop.load_state

    @property
    def error(self) -> Optional[str]:
        return self.loop.error

    # --------------------------------------------------------------- actions

    def confirm_attendance(self, round_id: str) -> MutationOutcome:
        return self.coordinator.confirm_attendance(round_id)

    def register(
        self,
        session_id: str,
        round_id: str,
        *,
        team: Optional[str] = None,
        topic: Optional[str] = None,
        topics: Optional[List[str]] = None,
    ) -> MutationOutcome:
        return self.coordinator.register(session_id, round_id, team=team, topic=topic, topics=topics)

    def unregister(self, round_id: str, session_id: Optional[str] = None) -> MutationOutcome:
        return self.coordinator.unregister(round_id, session_id)

    def confirmation_window_expired(self, round_id: str) -> MutationOutcome:
        return self.coordinator.confirmation_window_expired(round_id)

    def submit(self, action: Callable[..., MutationOutcome], *args: Any, **kwargs: Any) -> Future:
        """Run an action on the worker pool, e.g. ``engine.submit(engine.confirm_attendance, rid)``."""
        return self._executor.submit(action, *args, **kwargs)

    # ----------------------------------------------------------------- views

    @property
    def snapshot(self) -> DashboardSnapshot:
        return self.store.snapshot

    def next_upcoming(self) -> Optional[RoundRef]:
        return self.selector.current

    def buckets(self) -> DashboardBuckets:
        snapshot = self.store.snapshot
        return bucket_sessions(snapshot.sessions, snapshot.registrations, self.clock.now())

    def round_phase(self, session_id: str, round_id: str) -> Optional[RoundPhase]:
        session = self.store.snapshot.find_session(session_id)
        rnd = session.find_round(round_id) if session else None
        if rnd is None:
            return None
        return round_phase(session, rnd, self.clock.now(), self.timing)

    def current_match(self, round_id: str) -> Optional[Match]:
        registration = self.store.snapshot.find_registration(round_id)
        return registration.match if registration else None

    def on_notification(self, listener: NotificationListener) -> None:
        self._notification_listeners.append(listener)

    # ------------------------------------------------------------- simulation

    def set_simulated_time(self, target: datetime) -> None:
        self._simulated_clock().set_simulated_time(target)
        self._time_changed()

    def clear_simulation(self) -> None:
        self._simulated_clock().clear_simulation()
        self._time_changed()

    # ------------------------------------------------------------- internals

    def _simulated_clock(self) -> SimulatedClock:
        if not isinstance(self.clock, SimulatedClock):
            raise TypeError(f"{type(self.clock).__name__} does not support simulated time")
        return self.clock

    def _time_changed(self) -> None:
        self.selector.sync_ticking()
        self.selector.recompute()
        self._sweep_lifecycle()
        self.loop.poll_now()

    def _sweep_lifecycle(self, snapshot: Optional[DashboardSnapshot] = None) -> None:
        self.lifecycle.sweep()

    def _scan_notifications(self, snapshot: DashboardSnapshot) -> None:
        for event in self.gate.scan(snapshot):
            logger.info(f"Notifying {event.kind} for round {event.registration.round_id}")
            for listener in list(self._notification_listeners):
                listener(event)

    def _evict_markers(self) -> None:
        self.storage.evict_expired(self.clock.now())
