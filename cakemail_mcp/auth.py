"""Access/refresh token lifecycle for the Cakemail API."""

from __future__ import annotations

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Any, Callable, Optional

import httpx
from pydantic import BaseModel, ConfigDict, Field

from cakemail_mcp.config import CakemailConfig
from cakemail_mcp.errors import (
    AuthenticationError,
    CakemailError,
    NetworkError,
    RequestTimeoutError,
    create_error_from_response,
    describe_error_body,
    parse_error_body,
)
from cakemail_mcp.retry import RetryManager, with_timeout

logger = logging.getLogger(__name__)

# Permissions implied by having at least one account on the token; the token
# endpoint does not return scopes.
ACCOUNT_PERMISSIONS = (
    "account_access",
    "email_send",
    "campaign_management",
    "contact_management",
    "list_management",
    "template_management",
    "analytics_access",
)


class Token(BaseModel):
    model_config = ConfigDict(extra="ignore")

    access_token: str
    token_type: str = "Bearer"
    expires_in: Optional[float] = None
    refresh_token: Optional[str] = None
    accounts: list[Any] = Field(default_factory=list)
    # Wall-clock time the token was received; set by TokenManager
    issued_at: float = 0.0

    @property
    def expires_at(self) -> Optional[float]:
        if self.expires_in is None:
            return None
        return self.issued_at + self.expires_in


def _as_datetime(timestamp: Optional[float]) -> Optional[datetime]:
    if timestamp is None:
        return None
    return datetime.fromtimestamp(timestamp, tz=timezone.utc)


class TokenManager:
    """Owns the current token. Authenticates and refreshes on demand.

    Concurrent callers that find the token missing or close to expiry share a
    single authentication call: the first one takes the lock and renews, the
    rest re-check the token once they get the lock and reuse the new one.
    """

    def __init__(
        self,
        config: CakemailConfig,
        http_client: httpx.AsyncClient,
        retry_manager: RetryManager,
        *,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self._config = config
        self._http = http_client
        self._retry = retry_manager
        self._clock = clock
        self.refresh_margin = config.token_refresh_margin
        self._token: Optional[Token] = None
        self._lock = asyncio.Lock()

    @property
    def token(self) -> Optional[Token]:
        return self._token

    @property
    def can_renew(self) -> bool:
        """False when running on a static API key that cannot be renewed."""
        return not self._config.api_key

    def _is_expired(self, token: Token) -> bool:
        expires_at = token.expires_at
        return expires_at is not None and self._clock() >= expires_at

    def _needs_refresh(self, token: Optional[Token]) -> bool:
        if token is None:
            return True
        expires_at = token.expires_at
        if expires_at is None:
            return False
        return self._clock() >= expires_at - self.refresh_margin

    async def ensure_valid_token(self) -> str:
        token = self._token
        if not self._needs_refresh(token):
            return token.access_token  # type: ignore[union-attr]

        async with self._lock:
            token = self._token
            if not self._needs_refresh(token):
                return token.access_token  # type: ignore[union-attr]
            return (await self._renew(token)).access_token

    async def renew(self, stale_access_token: Optional[str] = None) -> str:
        """Renew after the server rejected ``stale_access_token``.

        If another caller already replaced that token, its replacement is
        returned instead of authenticating again. Otherwise the rejected token
        is dropped before renewing, so a failed renewal leaves no current token.
        """
        async with self._lock:
            token = self._token
            if (
                token is not None
                and stale_access_token is not None
                and token.access_token != stale_access_token
                and not self._needs_refresh(token)
            ):
                return token.access_token
            self._token = None
            return (await self._renew(token)).access_token

    def invalidate(self, access_token: Optional[str] = None) -> None:
        """Drop the current token, or only ``access_token`` if it is still the current one."""
        if access_token is None or (self._token and self._token.access_token == access_token):
            self._token = None

    async def _renew(self, current: Optional[Token]) -> Token:
        if not self.can_renew:
            token = Token(access_token=self._config.api_key or "", issued_at=self._clock())
        elif current is not None and current.refresh_token:
            try:
                token = await self._refresh(current.refresh_token)
            except AuthenticationError as exc:
                logger.info("Refresh token rejected, falling back to password authentication: %s", exc)
                self._token = None
                token = await self._password_authenticate()
        else:
            token = await self._password_authenticate()
        self._token = token
        return token

    async def _password_authenticate(self) -> Token:
        token = await self._request_token(
            {
                "grant_type": "password",
                "username": self._config.username or "",
                "password": self._config.password or "",
            },
            "password authentication",
        )
        logger.info("Token obtained, expires at %s", _as_datetime(token.expires_at))
        return token

    async def _refresh(self, refresh_token: str) -> Token:
        token = await self._request_token(
            {"grant_type": "refresh_token", "refresh_token": refresh_token},
            "token refresh",
        )
        logger.info("Token refreshed, expires at %s", _as_datetime(token.expires_at))
        return token

    async def _request_token(self, form: dict[str, str], context: str) -> Token:
        async def attempt() -> Token:
            try:
                response = await with_timeout(
                    self._http.post(
                        "/token",
                        data=form,
                        headers={
                            "Accept": "application/json",
                            "Content-Type": "application/x-www-form-urlencoded",
                        },
                    ),
                    self._config.timeout,
                    f"{context} timed out after {self._config.timeout}s",
                )
            except httpx.TimeoutException as exc:
                raise RequestTimeoutError(f"{context} timed out: {exc}") from exc
            except httpx.TransportError as exc:
                raise NetworkError(f"Network error during {context}: {exc}") from exc

            if response.status_code >= 400:
                body = parse_error_body(response)
                if response.status_code < 500 and response.status_code != 429:
                    detail = describe_error_body(body, response.reason_phrase or "Unknown error")
                    raise AuthenticationError(
                        f"Authentication failed ({response.status_code}): {detail}",
                        response.status_code,
                        body,
                    )
                raise create_error_from_response(response, body, endpoint="POST /token")

            try:
                payload = response.json()
                if not isinstance(payload, dict):
                    raise ValueError("token response is not a JSON object")
                return Token.model_validate({**payload, "issued_at": self._clock()})
            except ValueError as exc:
                # pydantic's ValidationError is a ValueError too
                raise AuthenticationError(
                    f"Invalid token response during {context} ({response.status_code}): {response.text[:200]}",
                    response.status_code,
                    response.text,
                ) from exc

        return await self._retry.execute_with_retry(attempt, context)

    async def force_refresh_token(self) -> dict[str, Any]:
        """Refresh unconditionally. Never raises; the outcome is reported in the result."""
        previous_expiry = _as_datetime(self._token.expires_at) if self._token else None
        try:
            async with self._lock:
                token = await self._renew(self._token)
        except CakemailError as exc:
            logger.warning("Forced token refresh failed: %s", exc)
            return {
                "success": False,
                "previous_expiry": previous_expiry,
                "new_expiry": _as_datetime(self._token.expires_at) if self._token else None,
                "error": str(exc),
            }
        return {
            "success": True,
            "token_type": token.token_type,
            "expires_in": token.expires_in,
            "previous_expiry": previous_expiry,
            "new_expiry": _as_datetime(token.expires_at),
        }

    def get_token_status(self) -> dict[str, Any]:
        token = self._token
        expires_at = token.expires_at if token else None
        return {
            "has_token": token is not None,
            "is_expired": self._is_expired(token) if token else True,
            "expires_at": _as_datetime(expires_at),
            "time_until_expiry": expires_at - self._clock() if expires_at is not None else None,
            "needs_refresh": self._needs_refresh(token),
            "token_type": token.token_type if token else None,
            "has_refresh_token": bool(token and token.refresh_token),
        }

    def get_token_scopes(self) -> dict[str, Any]:
        accounts = list(self._token.accounts) if self._token else []
        return {
            "accounts": accounts,
            "scopes": None,
            "permissions": list(ACCOUNT_PERMISSIONS) if accounts else [],
        }
