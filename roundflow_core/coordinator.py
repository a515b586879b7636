"""Optimistic mutation coordinator.

Every participant action (confirm attendance, register, unregister) runs
the same protocol:

1. check the durable idempotency marker for (participant, round, action);
   a repeat is a no-op with an informational notice
2. set the marker and stamp the write time
3. apply the expected state locally (confirm → ``confirmed``,
   unregister → removal); register waits for the backend's row
4. send the request
5. on success apply the backend's canonical status, which may already be
   further along (e.g. ``matched`` when matching won the race)
6. on failure clear the marker, drop the local write and force a full
   reconciliation fetch, then report the backend's message

The store keeps the optimistic value through reconciliation for the
suppression window: 20 s after a confirm, 15 s after an unregister.
Errors never escape; callers get a ``MutationOutcome``.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Callable, List, Literal, Optional

from .clock import Clock
from .client import MutationBackend
from .completion import can_unregister, round_end
from .exceptions import (
    BackendError,
    RegistrationNotFound,
    RegistrationValidationError,
    RoundflowError,
)
from .models import Registration
from .storage import StateStorage
from .store import DashboardStore
from .types import MutationAction
from .validation import RegisterRequest

logger = logging.getLogger(__name__)

NAMESPACE = "mutation"

OutcomeKind = Literal["applied", "conflict", "duplicate", "invalid", "failed", "skipped"]


@dataclass
class MutationOutcome:
    """Result of a participant action, ready to show as a notice."""

    kind: OutcomeKind
    round_id: str
    status: Optional[str] = None
    message: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.kind in ("applied", "conflict")


def _noop() -> None:
    return None


class OptimisticMutationCoordinator:
    def __init__(
        self,
        store: DashboardStore,
        client: MutationBackend,
        storage: StateStorage,
        clock: Clock,
        *,
        confirm_suppression: timedelta = timedelta(seconds=20),
        unregister_suppression: timedelta = timedelta(seconds=15),
        marker_retention: Optional[timedelta] = timedelta(days=7),
        reconcile: Callable[[], None] = _noop,
        request_reconcile: Callable[[], None] = _noop,
        after_mutation: Callable[[], None] = _noop,
    ):
        self._store = store
        self._client = client
        self._storage = storage
        self._clock = clock
        self.confirm_suppression = confirm_suppression
        self.unregister_suppression = unregister_suppression
        self._marker_retention = marker_retention
        # Synchronous full fetch that bypasses suppression (used to revert)
        self._reconcile = reconcile
        # Asynchronous "poll now" hint for the loop
        self._request_reconcile = request_reconcile
        # Re-run the session lifecycle sweep
        self._after_mutation = after_mutation

    # ---------------------------------------------------------------- confirm

    def confirm_attendance(self, round_id: str) -> MutationOutcome:
        try:
            registration = self._require_registration(round_id)
        except RegistrationNotFound as e:
            logger.warning(f"Cannot confirm attendance: {e}")
            return MutationOutcome("failed", round_id, message="Registration not found")

        participant_id = self._participant_id(registration)
        if not self._claim(participant_id, registration, "confirm"):
            logger.debug(f"Confirm for round {round_id} already applied, skipping")
            return MutationOutcome(
                "duplicate",
                round_id,
                status=registration.status,
                message="You already confirmed attendance for this round",
            )

        self._store.apply_optimistic_status(round_id, "confirmed", "confirm", self.confirm_suppression)

        try:
            status = self._client.confirm_attendance(round_id, registration.session_id)
        except RoundflowError as e:
            logger.error(f"Confirm for round {round_id} failed: {e}")
            self._revert(participant_id, round_id, "confirm")
            return MutationOutcome("failed", round_id, message=f"Failed to confirm: {self._describe(e)}")

        self._store.apply_canonical_status(round_id, status)
        self._after_mutation()
        self._request_reconcile()
        if status != "confirmed":
            logger.info(f"Confirm for round {round_id} answered with {status}; backend status wins")
            return MutationOutcome("conflict", round_id, status=status)
        return MutationOutcome(
            "applied",
            round_id,
            status=status,
            message="Attendance confirmed! You will be matched at the start time.",
        )

    # --------------------------------------------------------------- register

    def register(
        self,
        session_id: str,
        round_id: str,
        *,
        team: Optional[str] = None,
        topic: Optional[str] = None,
        topics: Optional[List[str]] = None,
    ) -> MutationOutcome:
        snapshot = self._store.snapshot
        session = snapshot.find_session(session_id)
        if session is None or session.find_round(round_id) is None:
            return MutationOutcome("failed", round_id, message="Round not found")

        try:
            request = RegisterRequest.for_session(session, round_id, team=team, topic=topic, topics=topics)
        except RegistrationValidationError as e:
            return MutationOutcome("invalid", round_id, message=str(e))

        participant_id = snapshot.profile.participant_id
        existing = snapshot.find_registration(round_id)
        placeholder = existing or Registration(participant_id, round_id, session_id)
        if existing is not None or not self._claim(participant_id, placeholder, "register"):
            return MutationOutcome(
                "duplicate",
                round_id,
                status=existing.status if existing else None,
                message="You are already registered for this round",
            )

        try:
            registration = self._client.register(request, participant_id)
        except RoundflowError as e:
            logger.error(f"Register for round {round_id} failed: {e}")
            self._revert(participant_id, round_id, "register")
            return MutationOutcome("failed", round_id, message=self._describe(e, "Failed to register"))

        self._storage.clear_marker(NAMESPACE, participant_id, round_id, "unregister")
        if registration is not None:
            self._store.upsert_registration(registration)
        self._after_mutation()
        self._request_reconcile()
        return MutationOutcome(
            "applied",
            round_id,
            status=registration.status if registration else "registered",
            message=f"Registered for {session.find_round(round_id).name or round_id}",
        )

    # ------------------------------------------------------------- unregister

    def unregister(self, round_id: str, session_id: Optional[str] = None) -> MutationOutcome:
        snapshot = self._store.snapshot
        registration = snapshot.find_registration(round_id)
        if registration is None and session_id is None:
            return MutationOutcome("failed", round_id, message="Registration not found")
        if registration is not None and not can_unregister(registration.status):
            return MutationOutcome(
                "invalid",
                round_id,
                status=registration.status,
                message="Unregistering is not possible once matching has started",
            )

        session_id = registration.session_id if registration else session_id
        participant_id = self._participant_id(registration)
        target = registration or Registration(participant_id, round_id, session_id)
        if not self._claim(participant_id, target, "unregister"):
            return MutationOutcome("duplicate", round_id, message="You already unregistered from this round")

        self._store.remove_optimistic(round_id, "unregister", self.unregister_suppression)

        try:
            self._client.unregister(round_id, session_id)
        except RoundflowError as e:
            logger.error(f"Unregister from round {round_id} failed: {e}")
            self._revert(participant_id, round_id, "unregister")
            return MutationOutcome("failed", round_id, message=self._describe(e, "Failed to unregister"))

        # A later re-registration starts from a clean slate
        for action in ("register", "confirm"):
            self._storage.clear_marker(NAMESPACE, participant_id, round_id, action)
        self._after_mutation()
        return MutationOutcome("applied", round_id, message="Unregistered")

    # ---------------------------------------------------------------- expiry

    def confirmation_window_expired(self, round_id: str) -> MutationOutcome:
        """
        The confirmation window of a round just closed; refresh unless a
        local write happened within the unregister/expiry window.
        """
        last = self._store.last_write_at()
        now = self._clock.now()
        if last is not None and now - last < self.unregister_suppression:
            logger.debug(f"Confirmation window for round {round_id} expired; recent write, not refetching")
            return MutationOutcome("skipped", round_id)
        logger.debug(f"Confirmation window for round {round_id} expired, refetching")
        self._request_reconcile()
        return MutationOutcome("applied", round_id)

    # ------------------------------------------------------------- internals

    def _require_registration(self, round_id: str) -> Registration:
        registration = self._store.snapshot.find_registration(round_id)
        if registration is None:
            raise RegistrationNotFound(round_id)
        return registration

    def _participant_id(self, registration: Optional[Registration]) -> str:
        if registration is not None and registration.participant_id:
            return registration.participant_id
        return self._store.snapshot.profile.participant_id

    def _claim(self, participant_id: str, registration: Registration, action: MutationAction) -> bool:
        return self._storage.set_marker(
            NAMESPACE,
            participant_id,
            registration.round_id,
            action,
            created_at=self._clock.now(),
            expires_at=self._marker_expiry(registration),
        )

    def _marker_expiry(self, registration: Registration):
        if self._marker_retention is None:
            return None
        session = self._store.snapshot.find_session(registration.session_id)
        rnd = session.find_round(registration.round_id) if session else None
        end = round_end(rnd, self._clock.now()) if rnd else None
        return end + self._marker_retention if end is not None else None

    def _revert(self, participant_id: str, round_id: str, action: MutationAction) -> None:
        self._storage.clear_marker(NAMESPACE, participant_id, round_id, action)
        self._store.clear_write(round_id)
        self._reconcile()

    @staticmethod
    def _describe(error: RoundflowError, fallback: str = "Request failed") -> str:
        if isinstance(error, BackendError):
            return error.message or fallback
        return f"Network error: {error}" if str(error) else fallback
