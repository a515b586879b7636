"""Periodic reconciliation with the backend.

Fetches the dashboard every few seconds while the dashboard is visible,
merges it through the store and then runs the post-merge hooks in the order
they were given (lifecycle sweep, selector recompute, notification gate).

Errors keep the last known state and are retried on the next cycle. Only a
first load with nothing cached ends in the ``error`` state, from which
``retry()`` starts over.
"""
from __future__ import annotations

import logging
import threading
from typing import Callable, List, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError

from .client import DashboardSource
from .exceptions import BackendError, RoundflowError, TokenSuperseded
from .models import DashboardSnapshot
from .storage import StateStorage
from .store import DashboardStore
from .ticker import Ticker
from .types import LoadState
from .validation import dump_snapshot, load_snapshot

logger = logging.getLogger(__name__)

SNAPSHOT_KEY = "dashboard_snapshot"

Hook = Callable[[DashboardSnapshot], None]


class ReconciliationLoop:
    def __init__(
        self,
        store: DashboardStore,
        client: DashboardSource,
        *,
        storage: Optional[StateStorage] = None,
        interval: float = 5.0,
        hooks: Sequence[Hook] = (),
    ):
        self._store = store
        self._client = client
        self._storage = storage
        self._hooks: List[Hook] = list(hooks)
        self._in_flight = threading.Lock()
        self._state_lock = threading.Lock()
        self._visible = True
        self._poll_requested = False
        self._load_state: LoadState = "loading"
        self._error: Optional[str] = None
        self._ticker = Ticker("reconciliation", interval, self._tick, run_immediately=True)

    # ------------------------------------------------------------------ state

    @property
    def load_state(self) -> LoadState:
        with self._state_lock:
            return self._load_state

    @property
    def error(self) -> Optional[str]:
        with self._state_lock:
            return self._error

    @property
    def visible(self) -> bool:
        return self._visible

    def add_hook(self, hook: Hook) -> None:
        self._hooks.append(hook)

    # -------------------------------------------------------------- lifecycle

    def start(self) -> None:
        self.restore_cached()
        self._ticker.start()

    def stop(self) -> None:
        self._ticker.stop()

    def set_visible(self, visible: bool) -> None:
        was_visible = self._visible
        self._visible = visible
        if visible and not was_visible:
            logger.debug("Dashboard visible again, fetching now")
            self.poll_now()
        elif not visible and was_visible:
            logger.debug("Dashboard hidden, pausing reconciliation")

    def poll_now(self) -> None:
        """Run a cycle out of band; on the loop thread when it is running."""
        if self._ticker.running:
            self._poll_requested = True
            self._ticker.wake()
        else:
            self.fetch_once()

    def retry(self) -> bool:
        with self._state_lock:
            self._load_state = "loading"
            self._error = None
        return self.fetch_once()

    def restore_cached(self) -> bool:
        """Seed the store from the last successful fetch, if one was cached."""
        if self._storage is None or self._store.has_data:
            return False
        try:
            cached = load_snapshot(self._storage.get_value(SNAPSHOT_KEY))
        except SQLAlchemyError as e:
            logger.warning(f"Could not read cached dashboard: {e}")
            return False
        if cached is None:
            return False
        self._store.load_cached(cached)
        with self._state_lock:
            self._load_state = "ready"
        logger.debug("Showing cached dashboard until the first fetch completes")
        return True

    # ------------------------------------------------------------------ cycle

    def fetch_once(self) -> bool:
        """
        Fetch, merge and run the hooks.

        Returns False when the cycle was skipped (another fetch in flight) or
        failed; True after a successful merge.
        """
        if not self._in_flight.acquire(blocking=False):
            logger.debug("Fetch already in flight, skipping cycle")
            return False
        try:
            try:
                fetched = self._fetch()
            except RoundflowError as e:
                self._fail(e)
                return False

            report = self._store.merge_snapshot(fetched)
            with self._state_lock:
                self._load_state = "ready"
                self._error = None
            self._cache(fetched)
        finally:
            self._in_flight.release()

        for hook in list(self._hooks):
            try:
                hook(report.snapshot)
            except Exception:
                logger.exception(f"Post-merge hook {getattr(hook, '__name__', hook)} failed")
        return True

    def _tick(self) -> None:
        requested, self._poll_requested = self._poll_requested, False
        if not self._visible and not requested:
            return
        self.fetch_once()

    def _fetch(self) -> DashboardSnapshot:
        try:
            return self._client.get_dashboard()
        except TokenSuperseded as e:
            logger.info("Participant token superseded, switching and refetching")
            self._client.switch_token(e.correct_token)
            return self._client.get_dashboard()

    def _fail(self, error: RoundflowError) -> None:
        message = error.message if isinstance(error, BackendError) else str(error)
        if self._store.has_data:
            logger.warning(f"Reconciliation failed, keeping last known state: {message}")
            return
        logger.error(f"Initial dashboard load failed: {message}")
        with self._state_lock:
            self._load_state = "error"
            self._error = message or "Failed to load dashboard"

    def _cache(self, snapshot: DashboardSnapshot) -> None:
        if self._storage is None:
            return
        try:
            self._storage.set_value(SNAPSHOT_KEY, dump_snapshot(snapshot))
        except SQLAlchemyError as e:
            logger.warning(f"Could not cache dashboard snapshot: {e}")
