"""Unified pagination over Cakemail list endpoints.

Each endpoint is configured once with a strategy (offset, cursor or token).
``PageIterator`` walks the pages lazily and can be iterated more than once;
every ``async for`` starts again from the initial options.
"""

from __future__ import annotations

from enum import Enum
from typing import Any, AsyncIterator, Awaitable, Callable, Mapping, Optional

from pydantic import BaseModel, ConfigDict, Field


class PaginationStrategy(str, Enum):
    OFFSET = "offset"
    CURSOR = "cursor"
    TOKEN = "token"


class Page(BaseModel):
    data: list[Any] = Field(default_factory=list)
    has_more: bool = False
    next_options: Optional[dict[str, Any]] = None
    page: Optional[int] = None
    per_page: Optional[int] = None
    total_count: Optional[int] = None
    raw: Any = None


def _extract_data(raw: Any) -> list[Any]:
    if not isinstance(raw, Mapping):
        return []
    data = raw.get("data")
    if isinstance(data, list):
        return data
    if isinstance(data, Mapping) and isinstance(data.get("data"), list):
        return data["data"]
    return []


class EndpointPagination(BaseModel):
    model_config = ConfigDict(frozen=True)

    strategy: PaginationStrategy = PaginationStrategy.OFFSET
    default_limit: int = 50
    max_limit: int = 100
    page_param: str = "page"
    size_param: str = "per_page"
    cursor_param: str = "cursor"
    token_param: str = "next_token"

    def _limit(self, requested: Optional[int]) -> int:
        return min(requested or self.default_limit, self.max_limit)

    def build_params(self, options: Optional[Mapping[str, Any]] = None) -> dict[str, Any]:
        options = options or {}
        params: dict[str, Any] = {}

        if self.strategy == PaginationStrategy.OFFSET:
            if options.get("page") is not None:
                params[self.page_param] = options["page"]
            params[self.size_param] = self._limit(options.get("per_page"))
            if options.get("with_count") is not None:
                params["with_count"] = str(bool(options["with_count"])).lower()
        elif self.strategy == PaginationStrategy.CURSOR:
            if options.get("cursor"):
                params[self.cursor_param] = options["cursor"]
            for key in ("before", "after"):
                if options.get(key):
                    params[key] = options[key]
            params["per_page"] = self._limit(options.get("limit") or options.get("per_page"))
        else:
            if options.get("next_token"):
                params[self.token_param] = options["next_token"]
            if options.get("page_token"):
                params["page_token"] = options["page_token"]
            params["limit"] = self._limit(options.get("limit"))
        return params

    def parse_page(self, raw: Any, params: Optional[Mapping[str, Any]] = None) -> Page:
        """Parse one response. ``params`` are the request's query parameters; they
        stand in for page metadata the server does not echo back.
        """
        data = _extract_data(raw)
        pagination = raw.get("pagination") if isinstance(raw, Mapping) else None
        pagination = pagination if isinstance(pagination, Mapping) else {}

        if self.strategy == PaginationStrategy.OFFSET:
            params = params or {}
            page = int(pagination.get("page") or params.get(self.page_param) or 1)
            per_page = int(pagination.get("per_page") or params.get(self.size_param) or self.default_limit)
            count = pagination.get("count")
            if count is not None:
                has_more = page * per_page < int(count)
            else:
                has_more = len(data) >= per_page
            return Page(
                data=data,
                has_more=has_more,
                next_options={"page": page + 1, "per_page": per_page} if has_more else None,
                page=page,
                per_page=per_page,
                total_count=count,
                raw=raw,
            )

        if self.strategy == PaginationStrategy.CURSOR:
            cursor = pagination.get("cursor")
            next_cursor = cursor.get("next") if isinstance(cursor, Mapping) else None
            return Page(
                data=data,
                has_more=bool(next_cursor),
                next_options={"cursor": next_cursor} if next_cursor else None,
                total_count=pagination.get("count"),
                raw=raw,
            )

        body = raw if isinstance(raw, Mapping) else {}
        next_token = body.get("next_token") or body.get("page_token")
        return Page(
            data=data,
            has_more=bool(next_token),
            next_options={"next_token": next_token} if next_token else None,
            total_count=body.get("total_count"),
            raw=raw,
        )


ENDPOINT_PAGINATION: dict[str, EndpointPagination] = {
    "lists": EndpointPagination(),
    "contacts": EndpointPagination(),
    "campaigns": EndpointPagination(default_limit=10, max_limit=50),
    "templates": EndpointPagination(),
    "senders": EndpointPagination(),
    "sub_accounts": EndpointPagination(),
    "email_logs": EndpointPagination(),
    "logs": EndpointPagination(strategy=PaginationStrategy.CURSOR),
    "campaign_logs": EndpointPagination(strategy=PaginationStrategy.CURSOR),
}


def get_pagination(endpoint_name: str) -> EndpointPagination:
    """Return the pagination settings for ``endpoint_name``; unknown names use offset defaults."""
    return ENDPOINT_PAGINATION.get(endpoint_name, EndpointPagination())


class PageIterator:
    def __init__(
        self,
        fetch: Callable[[dict[str, Any]], Awaitable[Any]],
        pagination: EndpointPagination,
        options: Optional[Mapping[str, Any]] = None,
        *,
        max_results: Optional[int] = None,
    ) -> None:
        self._fetch = fetch
        self._pagination = pagination
        self._options = dict(options or {})
        self._max_results = max_results

    def __aiter__(self) -> AsyncIterator[Page]:
        return self._pages()

    async def _pages(self) -> AsyncIterator[Page]:
        options = dict(self._options)
        remaining = self._max_results
        while True:
            params = self._pagination.build_params(options)
            page = self._pagination.parse_page(await self._fetch(params), params)
            if remaining is not None:
                page = page.model_copy(update={"data": page.data[:remaining]})
                remaining -= len(page.data)
            yield page
            if not page.has_more or not page.data or page.next_options is None:
                return
            if remaining is not None and remaining <= 0:
                return
            options = {**options, **page.next_options}

    async def items(self) -> AsyncIterator[Any]:
        async for page in self:
            for item in page.data:
                yield item

    async def to_list(self) -> list[Any]:
        return [item async for item in self.items()]
