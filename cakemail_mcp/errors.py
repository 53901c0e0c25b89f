from __future__ import annotations

# Error taxonomy for the Cakemail REST API.

import copy
from typing import Any, Optional

import httpx


class CakemailError(RuntimeError):
    """Raised when a Cakemail API call fails. Carries the HTTP status and response body."""

    default_status_code = 0

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Any = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.status_code = self.default_status_code if status_code is None else status_code
        self.response = response

    def with_message(self, message: str) -> "CakemailError":
        """Return a copy of this error with a new message, keeping status and response."""
        clone = copy.copy(self)
        clone.args = (message,)
        clone.message = message
        return clone


class AuthenticationError(CakemailError):
    default_status_code = 401


class ClientError(CakemailError):
    """A 4xx response other than 401 and 429. Never retried."""

    default_status_code = 400


class BadRequestError(ClientError):
    default_status_code = 400


class ForbiddenError(ClientError):
    default_status_code = 403


class NotFoundError(ClientError):
    default_status_code = 404


class ConflictError(ClientError):
    default_status_code = 409


class ValidationError(ClientError):
    default_status_code = 422

    @property
    def validation_errors(self) -> list[dict[str, Any]]:
        detail = self.response.get("detail") if isinstance(self.response, dict) else None
        return detail if isinstance(detail, list) else []

    def get_field_errors(self, field_name: str) -> list[dict[str, Any]]:
        return [error for error in self.validation_errors if field_name in error.get("loc", [])]


class RateLimitError(CakemailError):
    default_status_code = 429

    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        response: Any = None,
        retry_after: Optional[float] = None,
    ) -> None:
        super().__init__(message, status_code, response)
        self.retry_after = retry_after


class ServerError(CakemailError):
    default_status_code = 500


class NetworkError(CakemailError):
    """Connection-level failure; no HTTP status was received."""


class RequestTimeoutError(NetworkError):
    """A single network attempt exceeded the configured timeout."""


class CircuitOpenError(CakemailError):
    """Raised without attempting the call while the circuit breaker is open."""


def parse_error_body(response: httpx.Response) -> Any:
    """Decode an error response as JSON, falling back to a ``detail`` wrapper around the text."""
    try:
        return response.json()
    except ValueError:
        return {"detail": response.text or response.reason_phrase}


def describe_error_body(body: Any, fallback: str) -> str:
    """Human-readable detail from an error body (FastAPI-style ``detail`` lists included)."""
    if isinstance(body, dict):
        detail = body.get("detail")
        if isinstance(detail, list):
            return "; ".join(
                f"{'.'.join(str(part) for part in item.get('loc', []))}: {item.get('msg', '')}"
                for item in detail
                if isinstance(item, dict)
            )
        for key in ("detail", "error_description", "message", "error"):
            if body.get(key):
                return str(body[key])
    elif body:
        return str(body)
    return fallback


def _parse_retry_after(value: Optional[str]) -> Optional[float]:
    if not value:
        return None
    try:
        return float(value)
    except ValueError:
        return None


def create_error_from_response(
    response: httpx.Response,
    body: Any = None,
    *,
    endpoint: Optional[str] = None,
) -> CakemailError:
    """Map an HTTP error response to the matching CakemailError subclass."""
    if body is None:
        body = parse_error_body(response)
    status = response.status_code
    detail = describe_error_body(body, response.reason_phrase or "Unknown error")
    suffix = f" [{endpoint}]" if endpoint else ""

    if status == 400:
        return BadRequestError(f"Bad Request: {detail}{suffix}", status, body)
    if status == 401:
        return AuthenticationError(f"Authentication failed: {detail}{suffix}", status, body)
    if status == 403:
        return ForbiddenError(f"Forbidden: {detail}{suffix}", status, body)
    if status == 404:
        return NotFoundError(f"Not found: {detail}{suffix}", status, body)
    if status == 409:
        return ConflictError(f"Conflict: {detail}{suffix}", status, body)
    if status == 422:
        return ValidationError(f"Validation Error: {detail}{suffix}", status, body)
    if status == 429:
        return RateLimitError(
            f"Rate limit exceeded: {detail}{suffix}",
            status,
            body,
            retry_after=_parse_retry_after(response.headers.get("Retry-After")),
        )
    if status >= 500:
        return ServerError(f"Server error ({status}): {detail}{suffix}", status, body)
    if 400 <= status < 500:
        return ClientError(f"HTTP {status}: {detail}{suffix}", status, body)
    return CakemailError(f"HTTP {status}: {detail}{suffix}", status, body)
