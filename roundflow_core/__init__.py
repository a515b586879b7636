from .client import BackendApi, BackendClient
from .clock import Clock, FixedClock, RealClock, SimulatedClock
from .completion import (
    RoundTiming,
    can_unregister,
    is_awaiting_confirmation,
    is_completed,
    is_open_for_registration,
    round_end,
    round_phase,
    round_start,
)
from .config import Settings, get_settings
from .coordinator import MutationOutcome, OptimisticMutationCoordinator
from .engine import ParticipantEngine
from .exceptions import (
    BackendError,
    RegistrationNotFound,
    RegistrationValidationError,
    RoundflowError,
    TokenSuperseded,
    TransientBackendError,
)
from .gate import NotificationEvent, NotificationGate
from .lifecycle import SessionLifecycleAutomaton, SessionTransition, compute_transitions, next_status
from .models import DashboardSnapshot, Match, ParticipantProfile, Registration, Round, RoundRef, Session
from .reconciliation import ReconciliationLoop
from .storage import StateStorage
from .store import DashboardStore, LocalWrite, MergeReport
from .types import DashboardDict, RegistrationDict, RoundDict, SessionDict
from .upcoming import DashboardBuckets, UpcomingRoundSelector, bucket_sessions, next_upcoming

__all__ = [
    "BackendApi",
    "BackendClient",
    "BackendError",
    "Clock",
    "DashboardBuckets",
    "DashboardDict",
    "DashboardSnapshot",
    "DashboardStore",
    "FixedClock",
    "LocalWrite",
    "Match",
    "MergeReport",
    "MutationOutcome",
    "NotificationEvent",
    "NotificationGate",
    "OptimisticMutationCoordinator",
    "ParticipantEngine",
    "ParticipantProfile",
    "RealClock",
    "ReconciliationLoop",
    "Registration",
    "RegistrationDict",
    "RegistrationNotFound",
    "RegistrationValidationError",
    "Round",
    "RoundDict",
    "RoundRef",
    "RoundTiming",
    "RoundflowError",
    "Session",
    "SessionDict",
    "SessionLifecycleAutomaton",
    "SessionTransition",
    "Settings",
    "SimulatedClock",
    "StateStorage",
    "TokenSuperseded",
    "TransientBackendError",
    "UpcomingRoundSelector",
    "bucket_sessions",
    "can_unregister",
    "compute_transitions",
    "get_settings",
    "is_awaiting_confirmation",
    "is_completed",
    "is_open_for_registration",
    "next_status",
    "next_upcoming",
    "round_end",
    "round_phase",
    "round_start",
]
