"""
Exceptions raised at the engine's I/O boundaries.

Pure logic (completion, lifecycle, selection) never raises; only the backend
client and the request validators do. The coordinator and the reconciliation
loop catch these and turn them into outcomes or load state.
"""
from __future__ import annotations

from typing import Any, Optional


class RoundflowError(Exception):
    """Base class for all engine errors"""
    pass


# ============ Backend ============

class TransientBackendError(RoundflowError):
    """Timeout or connection failure; the next reconciliation cycle retries"""
    pass


class BackendError(RoundflowError):
    """Non-2xx response carrying the backend's ``{error}`` body"""
    def __init__(self, status_code: int, message: str, details: Optional[Any] = None):
        self.status_code = status_code
        self.message = message
        self.details = details
        super().__init__(f"{status_code}: {message}")


class TokenSuperseded(RoundflowError):
    """The participant token was replaced; the backend names the new one"""
    def __init__(self, correct_token: str):
        self.correct_token = correct_token
        super().__init__(f"Participant token superseded by {correct_token}")


# ============ Registration ============

class RegistrationValidationError(RoundflowError):
    """A required selection (team, topic) is missing"""
    pass


class RegistrationNotFound(RoundflowError):
    """No local registration for the round"""
    def __init__(self, round_id: str):
        self.round_id = round_id
        super().__init__(f"Registration for round {round_id} not found")
