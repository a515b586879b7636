"""HTTP client for the participant and session endpoints.

Every call carries the bearer credential, sends and expects JSON, and is
bounded by a timeout. Failures are mapped onto the engine's exceptions:

- timeouts and connection errors → ``TransientBackendError``
- non-2xx responses → ``BackendError`` with the body's ``error``/``message``
- a superseded participant token → ``TokenSuperseded``

``requests`` bounds the connect and each socket read by ``timeout``. The
body is streamed so the response as a whole must also arrive within
``timeout`` of the request start; that deadline is checked between chunks.
"""
from __future__ import annotations

import json
import logging
import time
from typing import Any, Optional, Protocol

import requests
from pydantic import ValidationError

from .clock import Clock
from .exceptions import BackendError, TokenSuperseded, TransientBackendError
from .models import DashboardSnapshot, Registration
from .validation import (
    ConfirmResponse,
    DashboardPayload,
    ErrorBody,
    RegisterRequest,
    RegisterResponse,
)

logger = logging.getLogger(__name__)

# Default timeout for all HTTP requests (in seconds)
REQUEST_TIMEOUT = 15


class DashboardSource(Protocol):
    def get_dashboard(self) -> DashboardSnapshot:
        ...

    def switch_token(self, token: str) -> None:
        ...


class MutationBackend(Protocol):
    def confirm_attendance(self, round_id: str, session_id: str) -> str:
        ...

    def register(self, request: RegisterRequest, participant_id: str = "") -> Optional[Registration]:
        ...

    def unregister(self, round_id: str, session_id: str) -> None:
        ...


class SessionStatusWriter(Protocol):
    def update_session_status(self, session_id: str, status: str) -> None:
        ...


class BackendApi(DashboardSource, MutationBackend, SessionStatusWriter, Protocol):
    """Everything the engine needs from the backend; ``BackendClient`` is the HTTP one."""


class BackendClient:
    def __init__(
        self,
        base_url: str,
        token: str,
        bearer_token: str = "",
        *,
        clock: Optional[Clock] = None,
        timeout: float = REQUEST_TIMEOUT,
        http: Optional[requests.Session] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.timeout = timeout
        self._clock = clock
        self._http = http or requests.Session()
        self._http.headers.update({"Content-Type": "application/json"})
        if bearer_token:
            self._http.headers.update({"Authorization": f"Bearer {bearer_token}"})

    def switch_token(self, token: str) -> None:
        logger.info("Switching to superseding participant token")
        self.token = token

    # ---------------------------------------------------------------- reads

    def get_dashboard(self) -> DashboardSnapshot:
        """
        Fetch the authoritative dashboard for the current token.

        Raises:
            TokenSuperseded: the backend answered with ``redirect`` and a new token
        """
        data = self._request("GET", f"/participant/{self.token}/dashboard", params=self._time_params())
        try:
            payload = DashboardPayload.model_validate(data or {})
        except ValidationError as e:
            raise BackendError(200, f"Malformed dashboard payload: {e}") from e
        if payload.redirect and payload.correctToken:
            raise TokenSuperseded(payload.correctToken)
        return payload.to_snapshot()

    # ------------------------------------------------------------ mutations

    def confirm_attendance(self, round_id: str, session_id: str) -> str:
        """Returns the post-confirm status, which may already be past ``confirmed``."""
        data = self._request(
            "POST",
            f"/participant/{self.token}/confirm/{round_id}",
            json={"sessionId": session_id},
        )
        try:
            return ConfirmResponse.model_validate(data or {}).status
        except ValidationError as e:
            raise BackendError(200, f"Malformed confirm response: {e}") from e

    def register(self, request: RegisterRequest, participant_id: str = "") -> Optional[Registration]:
        data = self._request("POST", f"/participant/{self.token}/register", json=request.to_body())
        try:
            response = RegisterResponse.model_validate(data or {})
        except ValidationError as e:
            raise BackendError(200, f"Malformed register response: {e}") from e
        if response.registration is None:
            return None
        return response.registration.to_domain(participant_id)

    def unregister(self, round_id: str, session_id: str) -> None:
        self._request(
            "DELETE",
            f"/participant/{self.token}/unregister/{round_id}",
            params={"sessionId": session_id},
        )

    def update_session_status(self, session_id: str, status: str) -> None:
        self._request("PUT", f"/sessions/{session_id}", json={"status": status})

    # ------------------------------------------------------------ internals

    def _time_params(self) -> dict:
        # Let the backend evaluate time-driven statuses on the same simulated clock
        if self._clock is not None and self._clock.is_simulated:
            return {"simulatedTime": int(self._clock.now().timestamp() * 1000)}
        return {}

    def _request(self, method: str, path: str, **kwargs: Any) -> Any:
        url = f"{self.base_url}{path}"
        deadline = time.monotonic() + self.timeout
        try:
            response = self._http.request(method, url, timeout=self.timeout, stream=True, **kwargs)
            try:
                content = self._read_body(response, deadline, f"{method} {path}")
            finally:
                response.close()
        except requests.Timeout as e:
            raise TransientBackendError(f"{method} {path} timed out after {self.timeout}s") from e
        except requests.RequestException as e:
            raise TransientBackendError(f"Service communication error: {str(e)}") from e

        if not response.ok:
            raise self._error_from(response.status_code, content)

        if not content:
            return None
        try:
            return json.loads(content)
        except ValueError as e:
            raise BackendError(response.status_code, "Response was not JSON") from e

    def _read_body(self, response: requests.Response, deadline: float, label: str) -> bytes:
        chunks = []
        for chunk in response.iter_content(chunk_size=8192):
            chunks.append(chunk)
            if time.monotonic() > deadline:
                raise TransientBackendError(f"{label} exceeded {self.timeout}s while reading the response")
        return b"".join(chunks)

    @staticmethod
    def _error_from(status_code: int, content: bytes) -> BackendError:
        fallback = f"Server returned {status_code}"
        try:
            body = ErrorBody.model_validate(json.loads(content))
        except (ValueError, ValidationError):
            if status_code == 404:
                fallback = "Invalid or expired participant link. Please use the latest link from your email."
            return BackendError(status_code, fallback)
        return BackendError(status_code, body.describe(fallback), body.details)


__all__ = [
    "BackendApi",
    "BackendClient",
    "DashboardSource",
    "MutationBackend",
    "REQUEST_TIMEOUT",
    "SessionStatusWriter",
]
