"""Shared fixtures: a controllable clock and an in-memory Cakemail API."""

import asyncio
from typing import Any, Callable, Optional, Union
from urllib.parse import parse_qs

import httpx
import pytest

from cakemail_mcp.client import CakemailClient
from cakemail_mcp.config import CakemailConfig

BASE_URL = "https://api.cakemail.test"
START_TIME = 1_700_000_000.0


class FakeClock:
    """Callable clock whose ``sleep`` advances time instantly and records the delay."""

    def __init__(self, start: float = START_TIME):
        self.now = start
        self.sleeps: list[float] = []

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds

    async def sleep(self, seconds: float) -> None:
        self.sleeps.append(seconds)
        self.now += seconds
        await asyncio.sleep(0)


def token_payload(
    access_token: str = "token-1",
    *,
    expires_in: int = 3600,
    refresh_token: Optional[str] = "refresh-1",
    accounts: Optional[list] = None,
) -> dict[str, Any]:
    payload: dict[str, Any] = {
        "access_token": access_token,
        "token_type": "bearer",
        "expires_in": expires_in,
        "accounts": [123] if accounts is None else accounts,
    }
    if refresh_token is not None:
        payload["refresh_token"] = refresh_token
    return payload


Reply = Union[httpx.Response, Exception, Callable[[httpx.Request], httpx.Response]]


class FakeCakemailAPI:
    """httpx.MockTransport handler with scripted replies per (method, path).

    Each route holds a list of replies consumed in order; the last one repeats.
    ``/token`` issues a fresh token per call unless replies are scripted for it.
    """

    def __init__(self):
        self.requests: list[httpx.Request] = []
        self.routes: dict[tuple[str, str], list[Reply]] = {}
        self.token_requests: list[dict[str, list[str]]] = []

    def add(self, method: str, path: str, *replies: Reply) -> None:
        self.routes.setdefault((method, path), []).extend(replies)

    def api_requests(self) -> list[httpx.Request]:
        return [request for request in self.requests if request.url.path != "/token"]

    def _next(self, key: tuple[str, str]) -> Optional[Reply]:
        replies = self.routes.get(key)
        if not replies:
            return None
        return replies.pop(0) if len(replies) > 1 else replies[0]

    async def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        await asyncio.sleep(0)

        if request.url.path == "/token":
            self.token_requests.append(parse_qs(request.content.decode()))

        reply = self._next((request.method, request.url.path))
        if reply is None:
            if request.url.path == "/token":
                return httpx.Response(
                    200, json=token_payload(f"token-{len(self.token_requests)}")
                )
            return httpx.Response(404, json={"detail": "Not Found"})
        if isinstance(reply, Exception):
            raise reply
        if callable(reply):
            return reply(request)
        return reply


def json_reply(status: int, body: Any = None, headers: Optional[dict] = None) -> Callable:
    """Build a fresh response per call so a reply can repeat."""

    def reply(request: httpx.Request) -> httpx.Response:
        return httpx.Response(status, json=body, headers=headers, request=request)

    return reply


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def fake_api() -> FakeCakemailAPI:
    return FakeCakemailAPI()


@pytest.fixture
def make_config():
    def factory(**overrides: Any) -> CakemailConfig:
        values: dict[str, Any] = {
            "username": "user@example.com",
            "password": "secret",
            "base_url": BASE_URL,
            "retry": {"max_retries": 2, "base_delay": 0.1, "exponential_base": 2, "jitter": False},
            "rate_limit": {"enabled": False},
        }
        values.update(overrides)
        return CakemailConfig.model_validate(values)

    return factory


@pytest.fixture
def make_client(fake_api, clock, make_config):
    def factory(**overrides: Any) -> CakemailClient:
        return CakemailClient(
            make_config(**overrides),
            transport=httpx.MockTransport(fake_api),
            sleep=clock.sleep,
            clock=clock,
        )

    return factory
