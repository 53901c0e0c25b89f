from __future__ import annotations

# Cakemail REST client: authentication, retries, rate limiting, circuit
# breaking and bounded concurrency around a single request primitive.

import logging
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, Mapping, Optional

import httpx

from cakemail_mcp.auth import TokenManager
from cakemail_mcp.circuit_breaker import CircuitBreaker
from cakemail_mcp.config import CakemailConfig, RetryConfig
from cakemail_mcp.errors import (
    AuthenticationError,
    CakemailError,
    ClientError,
    NetworkError,
    RequestTimeoutError,
    create_error_from_response,
    parse_error_body,
)
from cakemail_mcp.pagination import Page, PageIterator, get_pagination
from cakemail_mcp.rate_limiter import RateLimiter
from cakemail_mcp.request_queue import RequestQueue
from cakemail_mcp.retry import RetryManager, with_timeout

logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[Any]]


def _counts_as_service_failure(exc: Exception) -> bool:
    # Rejected input or credentials say nothing about the health of the API.
    return not isinstance(exc, (ClientError, AuthenticationError))


@dataclass(frozen=True)
class ClientContext:
    """What a resource API needs to issue scoped requests: the client and its account."""

    client: "CakemailClient"
    account_id: Optional[int] = None

    def scoped_params(self, params: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        scoped = dict(params or {})
        if self.account_id is not None:
            scoped.setdefault("account_id", self.account_id)
        return scoped


class CakemailClient:
    """Async client for the Cakemail REST API.

    Every call goes through :meth:`make_request`: token check, request queue,
    circuit breaker, retry manager, rate limiter, then the HTTP call.
    """

    def __init__(
        self,
        config: CakemailConfig,
        *,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        http_client: Optional[httpx.AsyncClient] = None,
        sleep: Optional[Sleep] = None,
        clock: Optional[Callable[[], float]] = None,
    ) -> None:
        self.config = config
        self.debug = config.debug
        if config.debug:
            logging.getLogger("cakemail_mcp").setLevel(logging.DEBUG)

        self._client = http_client or httpx.AsyncClient(
            base_url=config.base_url.rstrip("/"),
            headers={"Accept": "application/json"},
            timeout=config.timeout,
            transport=transport,
        )

        # Tests substitute a fake clock and sleep to control time
        sleeping: Dict[str, Any] = {"sleep": sleep} if sleep is not None else {}
        clocked: Dict[str, Any] = {"clock": clock} if clock is not None else {}

        self.retry_manager = RetryManager(
            config.retry,
            respect_server_limits=config.rate_limit.respect_server_limits,
            **sleeping,
        )
        self.rate_limiter = RateLimiter(config.rate_limit, **sleeping, **clocked)
        self.circuit_breaker: Optional[CircuitBreaker] = None
        if config.circuit_breaker.enabled:
            self.circuit_breaker = CircuitBreaker(
                config.circuit_breaker.failure_threshold,
                config.circuit_breaker.reset_timeout,
                counts_as_failure=_counts_as_service_failure,
                **clocked,
            )
        self.request_queue = RequestQueue(config.max_concurrent_requests)
        self.tokens = TokenManager(config, self._client, self.retry_manager, **clocked)
        self._current_account_id: Optional[int] = None

    @property
    def client(self) -> httpx.AsyncClient:
        return self._client

    async def close(self) -> None:
        await self._client.aclose()

    async def __aenter__(self) -> "CakemailClient":
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()

    async def make_request(
        self,
        endpoint: str,
        *,
        method: str = "GET",
        params: Optional[Mapping[str, Any]] = None,
        json_body: Any = None,
        headers: Optional[Mapping[str, str]] = None,
    ) -> Any:
        """Execute an API call and return the parsed body. Raises CakemailError on failure."""
        access_token = await self.tokens.ensure_valid_token()
        try:
            return await self._dispatch(endpoint, method, params, json_body, headers, access_token)
        except AuthenticationError as exc:
            if exc.status_code != 401 or not self.tokens.can_renew:
                raise
            logger.info("%s %s returned 401, re-authenticating once", method, endpoint)
            access_token = await self.tokens.renew(access_token)
            try:
                return await self._dispatch(endpoint, method, params, json_body, headers, access_token)
            except AuthenticationError as retry_exc:
                if retry_exc.status_code == 401:
                    self.tokens.invalidate(access_token)
                raise

    async def _dispatch(
        self,
        endpoint: str,
        method: str,
        params: Optional[Mapping[str, Any]],
        json_body: Any,
        headers: Optional[Mapping[str, str]],
        access_token: str,
    ) -> Any:
        context = f"{method} {endpoint}"

        async def attempt() -> Any:
            await self.rate_limiter.acquire()
            return await self._send(endpoint, method, params, json_body, headers, access_token)

        async def with_retries() -> Any:
            return await self.retry_manager.execute_with_retry(attempt, context)

        async def guarded() -> Any:
            if self.circuit_breaker is None:
                return await with_retries()
            return await self.circuit_breaker.execute(with_retries, f"API request to {endpoint}")

        return await self.request_queue.add(guarded)

    async def _send(
        self,
        endpoint: str,
        method: str,
        params: Optional[Mapping[str, Any]],
        json_body: Any,
        headers: Optional[Mapping[str, str]],
        access_token: str,
    ) -> Any:
        request_headers = {"Authorization": f"Bearer {access_token}"}
        if headers:
            request_headers.update(headers)

        logger.debug("[Cakemail API] %s %s", method, endpoint)
        if json_body is not None:
            logger.debug("[Cakemail API] Request body: %s", json_body)

        try:
            response = await with_timeout(
                self._client.request(
                    method,
                    endpoint,
                    params=dict(params) if params else None,
                    json=json_body,
                    headers=request_headers,
                ),
                self.config.timeout,
                f"Request to {endpoint} timed out after {self.config.timeout}s",
            )
        except httpx.TimeoutException as exc:
            raise RequestTimeoutError(f"Request to {endpoint} timed out: {exc}") from exc
        except httpx.TransportError as exc:
            raise NetworkError(f"Network error: {exc}") from exc

        logger.debug("[Cakemail API] Response: %s %s", response.status_code, response.reason_phrase)

        if response.status_code >= 400:
            body = parse_error_body(response)
            logger.debug("[Cakemail API] Error response for %s %s: %s", method, endpoint, body)
            raise create_error_from_response(response, body, endpoint=f"{method} {endpoint}")

        # Empty bodies (DELETE and friends) are reported as a bare success
        if "application/json" in response.headers.get("Content-Type", "") and response.content:
            try:
                return response.json()
            except ValueError as exc:
                raise CakemailError(
                    f"Invalid JSON in response ({response.status_code}): {response.text[:200]} "
                    f"[{method} {endpoint}]",
                    response.status_code,
                    response.text,
                ) from exc
        return {"success": True, "status": response.status_code}

    async def get_current_account_id(self) -> Optional[int]:
        """Return the authenticated account id, fetching it once from ``/accounts/self``."""
        if self._current_account_id is not None:
            return self._current_account_id
        try:
            account = await self.make_request("/accounts/self")
        except CakemailError as exc:
            logger.warning("Could not fetch account ID: %s", exc)
            return None
        data = account.get("data") if isinstance(account, dict) else None
        self._current_account_id = data.get("id") if isinstance(data, dict) else None
        return self._current_account_id

    async def context(self, account_id: Optional[int] = None) -> ClientContext:
        if account_id is None:
            account_id = await self.get_current_account_id()
        return ClientContext(client=self, account_id=account_id)

    def get_token_status(self) -> Dict[str, Any]:
        return self.tokens.get_token_status()

    def get_token_scopes(self) -> Dict[str, Any]:
        return self.tokens.get_token_scopes()

    async def force_refresh_token(self) -> Dict[str, Any]:
        return await self.tokens.force_refresh_token()

    async def validate_token(self) -> Dict[str, Any]:
        """Check the token against a lightweight endpoint."""
        try:
            response = await self.make_request("/accounts/self")
        except CakemailError as exc:
            return {"is_valid": False, "status_code": exc.status_code, "error": str(exc)}
        data = response.get("data") if isinstance(response, dict) else None
        data = data if isinstance(data, dict) else {}
        return {
            "is_valid": True,
            "status_code": 200,
            "account_info": {
                "id": data.get("id"),
                "email": data.get("email"),
                "name": data.get("name"),
            },
        }

    def get_retry_config(self) -> RetryConfig:
        return self.retry_manager.get_config()

    def update_retry_config(self, **changes: Any) -> RetryConfig:
        return self.retry_manager.update_config(**changes)

    def get_circuit_breaker_state(self) -> Optional[Dict[str, Any]]:
        return self.circuit_breaker.get_state() if self.circuit_breaker else None

    def get_request_queue_stats(self) -> Dict[str, int]:
        return self.request_queue.get_stats()

    def get_rate_limiter_stats(self) -> Dict[str, Any]:
        return self.rate_limiter.get_stats()

    def _component_status(self) -> Dict[str, Any]:
        return {
            "retry_manager": self.get_retry_config().model_dump(mode="json"),
            "rate_limiter": self.get_rate_limiter_stats(),
            "circuit_breaker": self.get_circuit_breaker_state() or "disabled",
            "request_queue": self.get_request_queue_stats(),
            "timeout": self.config.timeout,
        }

    async def health_check(self) -> Dict[str, Any]:
        try:
            account = await self.make_request("/accounts/self")
        except CakemailError as exc:
            return {
                "status": "unhealthy",
                "error": str(exc),
                "error_type": type(exc).__name__,
                "status_code": exc.status_code,
                "authenticated": exc.status_code != 401,
                "components": self._component_status(),
            }
        data = account.get("data") if isinstance(account, dict) else None
        return {
            "status": "healthy",
            "authenticated": True,
            "account_id": data.get("id") if isinstance(data, dict) else None,
            "components": self._component_status(),
        }

    async def fetch_paginated(
        self,
        endpoint: str,
        endpoint_name: str,
        options: Optional[Mapping[str, Any]] = None,
        extra_params: Optional[Mapping[str, Any]] = None,
    ) -> Page:
        """Fetch a single page of ``endpoint`` using the pagination rules for ``endpoint_name``."""
        pagination = get_pagination(endpoint_name)
        params = {**pagination.build_params(options), **(extra_params or {})}
        return pagination.parse_page(await self.make_request(endpoint, params=params), params)

    def iterate(
        self,
        endpoint: str,
        endpoint_name: str,
        options: Optional[Mapping[str, Any]] = None,
        extra_params: Optional[Mapping[str, Any]] = None,
        *,
        max_results: Optional[int] = None,
    ) -> PageIterator:
        async def fetch(params: Dict[str, Any]) -> Any:
            return await self.make_request(endpoint, params={**params, **(extra_params or {})})

        return PageIterator(fetch, get_pagination(endpoint_name), options, max_results=max_results)
