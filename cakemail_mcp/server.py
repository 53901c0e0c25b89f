"""Model Context Protocol server exposing Cakemail tools."""

from __future__ import annotations

import json
import logging
import os
import sys
from contextlib import asynccontextmanager
from datetime import datetime
from pathlib import Path
from typing import Any

import anyio
from dotenv import load_dotenv
from mcp import types
from mcp.server import Server
from mcp.server.stdio import stdio_server

from cakemail_mcp.client import CakemailClient
from cakemail_mcp.client_manager import ClientManager, ClientManagerError
from cakemail_mcp.config import DEFAULT_BASE_URL, CakemailConfig
from cakemail_mcp.errors import CakemailError

logger = logging.getLogger(__name__)


def _json_default(value: Any) -> Any:
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, (set, frozenset)):
        return sorted(value)
    return str(value)


def _json(data: Any) -> str:
    return json.dumps(data, indent=2, sort_keys=True, default=_json_default)


def _result(payload: dict[str, Any], heading: str | None = None) -> tuple[list[types.TextContent], dict[str, Any]]:
    text = _json(payload)
    if heading:
        text = f"{heading}:\n{text}"
    return [types.TextContent(type="text", text=text)], json.loads(_json(payload))


def _build_client_manager() -> ClientManager:
    """Multi-account mode when CAKEMAIL_CONFIG (or ./config.json) exists, else environment variables."""
    defaults: dict[str, Any] = {
        "base_url": os.getenv("CAKEMAIL_BASE_URL", DEFAULT_BASE_URL),
        "timeout": float(os.getenv("CAKEMAIL_TIMEOUT_SECONDS", "30")),
        "debug": os.getenv("CAKEMAIL_DEBUG", "false").lower() == "true",
    }
    config_path = os.getenv("CAKEMAIL_CONFIG") or str(Path.cwd() / "config.json")

    if Path(config_path).exists():
        try:
            return ClientManager(config_path=config_path, defaults=defaults)
        except ClientManagerError as e:
            raise RuntimeError(f"Failed to load configuration: {e}") from e

    try:
        config = CakemailConfig.from_env()
    except ValueError as e:
        raise RuntimeError(
            "Neither a config.json nor CAKEMAIL_USERNAME/CAKEMAIL_PASSWORD (or CAKEMAIL_API_KEY) found. "
            f"Please create a config.json file or set the environment variables. ({e})"
        ) from e

    return ClientManager(
        config_dict={
            "clients": {"default": config.model_dump(exclude_none=True)},
            "default_client": "default",
        }
    )


@asynccontextmanager
async def lifespan(app: Server):
    """Configure the Cakemail clients for the server lifecycle."""
    load_dotenv(override=True)
    client_manager = _build_client_manager()
    app.client_manager = client_manager  # type: ignore[attr-defined]
    logger.info("Cakemail MCP server started with clients: %s", ", ".join(client_manager.list_clients()))

    try:
        yield
    finally:
        await client_manager.close_all_clients()


server = Server(
    name="cakemail-mcp",
    version="0.1.0",
    instructions=(
        "Tools for the Cakemail email-marketing API. Requests are authenticated automatically; "
        "use the token tools to inspect or refresh authentication and the diagnostic tools to "
        "inspect retry, rate-limit and circuit-breaker state. List tools are paginated: check "
        "`has_more` and request the next `page`, or pass `max_results` to fetch several pages at once. "
        "When several accounts are configured, pick one with the `client_name` parameter."
    ),
    lifespan=lifespan,
)


_PAGE_PROPERTIES: dict[str, Any] = {
    "page": {"type": "integer", "minimum": 1, "description": "Page number (starts at 1)."},
    "per_page": {"type": "integer", "minimum": 1, "description": "Results per page."},
    "max_results": {
        "type": "integer",
        "minimum": 1,
        "description": "Fetch pages until this many results are collected.",
    },
    "account_id": {
        "type": "integer",
        "description": "Sub-account to scope the request to. Defaults to the authenticated account.",
    },
}


def _no_arguments() -> dict[str, Any]:
    return {"type": "object", "properties": {}, "additionalProperties": False}


TOOL_DEFINITIONS: list[types.Tool] = [
    types.Tool(
        name="cakemail_health_check",
        description="Check API connectivity and report retry, rate-limit, circuit-breaker and queue state.",
        inputSchema=_no_arguments(),
    ),
    types.Tool(
        name="cakemail_get_token_status",
        description="Report whether a token is held, when it expires and whether a refresh is due.",
        inputSchema=_no_arguments(),
    ),
    types.Tool(
        name="cakemail_refresh_token",
        description="Refresh the access token. Skipped when not yet due unless force is true.",
        inputSchema={
            "type": "object",
            "properties": {
                "force": {
                    "type": "boolean",
                    "description": "Refresh even if the current token is still valid.",
                }
            },
            "additionalProperties": False,
        },
    ),
    types.Tool(
        name="cakemail_validate_token",
        description="Validate the current token with a lightweight API call.",
        inputSchema=_no_arguments(),
    ),
    types.Tool(
        name="cakemail_get_token_scopes",
        description="List the accounts attached to the token and the permissions they imply.",
        inputSchema=_no_arguments(),
    ),
    types.Tool(
        name="cakemail_get_retry_config",
        description="Show the retry policy currently in effect.",
        inputSchema=_no_arguments(),
    ),
    types.Tool(
        name="cakemail_update_retry_config",
        description="Change the retry policy at runtime. Omitted fields keep their current value.",
        inputSchema={
            "type": "object",
            "properties": {
                "max_retries": {"type": "integer", "minimum": 0},
                "base_delay": {"type": "number", "minimum": 0, "description": "Seconds."},
                "max_delay": {"type": "number", "minimum": 0, "description": "Seconds."},
                "exponential_base": {"type": "number", "minimum": 1},
                "jitter": {"type": "boolean"},
            },
            "additionalProperties": False,
        },
    ),
    types.Tool(
        name="cakemail_get_circuit_breaker_state",
        description="Show circuit breaker, request queue and rate limiter state.",
        inputSchema=_no_arguments(),
    ),
    types.Tool(
        name="cakemail_get_account",
        description="Get the authenticated account's details.",
        inputSchema=_no_arguments(),
    ),
    types.Tool(
        name="cakemail_list_campaigns",
        description="List campaigns, optionally filtered by status.",
        inputSchema={
            "type": "object",
            "properties": {
                **_PAGE_PROPERTIES,
                "status": {
                    "type": "string",
                    "description": "Campaign status filter (e.g. active, scheduled, delivered).",
                },
            },
            "additionalProperties": False,
        },
    ),
    types.Tool(
        name="cakemail_list_lists",
        description="List contact lists.",
        inputSchema={
            "type": "object",
            "properties": dict(_PAGE_PROPERTIES),
            "additionalProperties": False,
        },
    ),
    types.Tool(
        name="cakemail_list_senders",
        description="List sender identities.",
        inputSchema={
            "type": "object",
            "properties": dict(_PAGE_PROPERTIES),
            "additionalProperties": False,
        },
    ),
]


def _add_client_name_to_tool_schemas(tools: list[types.Tool]) -> None:
    """Add the optional client_name parameter to all tool input schemas."""
    client_name_property = {
        "client_name": {
            "type": "string",
            "description": (
                "Name of the configured account to use. If not provided, uses the default account. "
                "An invalid name produces an error listing the available accounts."
            ),
        }
    }

    for tool in tools:
        if tool.inputSchema and isinstance(tool.inputSchema, dict):
            properties = tool.inputSchema.setdefault("properties", {})
            if isinstance(properties, dict):
                properties.update(client_name_property)


_add_client_name_to_tool_schemas(TOOL_DEFINITIONS)


@server.list_tools()
async def list_tools(_req: types.ListToolsRequest | None = None) -> types.ListToolsResult:
    return types.ListToolsResult(tools=TOOL_DEFINITIONS)


def _get_client_manager() -> ClientManager:
    client_manager = getattr(server, "client_manager", None)
    if client_manager is None:
        raise RuntimeError("ClientManager not initialised.")
    return client_manager


def _get_client_for_account(client_name: str | None = None) -> CakemailClient:
    client_manager = _get_client_manager()
    try:
        return client_manager.get_or_create_client(client_name)
    except ClientManagerError as e:
        raise ValueError(str(e)) from e


async def _list_resource(
    client: CakemailClient,
    endpoint: str,
    endpoint_name: str,
    arguments: dict[str, Any],
    extra_params: dict[str, Any] | None = None,
) -> dict[str, Any]:
    context = await client.context(arguments.get("account_id"))
    params = context.scoped_params(extra_params)
    options = {key: arguments[key] for key in ("page", "per_page") if arguments.get(key) is not None}

    max_results = arguments.get("max_results")
    if max_results:
        items = await client.iterate(
            endpoint, endpoint_name, options, params, max_results=int(max_results)
        ).to_list()
        return {"data": items, "count": len(items)}

    page = await client.fetch_paginated(endpoint, endpoint_name, options, params)
    return {
        "data": page.data,
        "page": page.page,
        "per_page": page.per_page,
        "total_count": page.total_count,
        "has_more": page.has_more,
    }


async def dispatch_tool(
    client: CakemailClient,
    tool_name: str,
    arguments: dict[str, Any],
) -> types.CallToolResult | tuple[Any, Any]:
    if tool_name == "cakemail_health_check":
        return _result(await client.health_check(), "Health Status")

    if tool_name == "cakemail_get_token_status":
        status = client.get_token_status()
        time_until_expiry = status.get("time_until_expiry")
        status["time_until_expiry_minutes"] = (
            round(time_until_expiry / 60) if time_until_expiry is not None else None
        )
        return _result(status, "Token Status")

    if tool_name == "cakemail_refresh_token":
        if not arguments.get("force"):
            status = client.get_token_status()
            if status["has_token"] and not status["needs_refresh"]:
                expires_at = status["expires_at"]
                return _result(
                    {
                        "refreshed": False,
                        "expires_at": expires_at,
                        "message": "Token refresh not needed. Use force=true to refresh anyway.",
                    },
                    "Token Refresh Result",
                )
        return _result(await client.force_refresh_token(), "Token Refresh Result")

    if tool_name == "cakemail_validate_token":
        return _result(await client.validate_token(), "Token Validation")

    if tool_name == "cakemail_get_token_scopes":
        return _result(client.get_token_scopes(), "Token Scopes and Permissions")

    if tool_name == "cakemail_get_retry_config":
        return _result(client.get_retry_config().model_dump(mode="json"), "Retry Configuration")

    if tool_name == "cakemail_update_retry_config":
        changes = {key: value for key, value in arguments.items() if value is not None}
        if not changes:
            raise ValueError("Provide at least one retry setting to change.")
        config = client.update_retry_config(**changes)
        return _result(config.model_dump(mode="json"), "Retry Configuration Updated")

    if tool_name == "cakemail_get_circuit_breaker_state":
        payload = {
            "circuit_breaker": client.get_circuit_breaker_state() or "disabled",
            "request_queue": client.get_request_queue_stats(),
            "rate_limiter": client.get_rate_limiter_stats(),
        }
        return _result(payload, "Resilience State")

    if tool_name == "cakemail_get_account":
        payload = await client.make_request("/accounts/self")
        return _result(payload if isinstance(payload, dict) else {"data": payload})

    if tool_name == "cakemail_list_campaigns":
        extra = {"status": arguments["status"]} if arguments.get("status") else None
        return _result(await _list_resource(client, "/campaigns", "campaigns", arguments, extra))

    if tool_name == "cakemail_list_lists":
        return _result(await _list_resource(client, "/lists", "lists", arguments))

    if tool_name == "cakemail_list_senders":
        return _result(await _list_resource(client, "/brands/default/senders", "senders", arguments))

    return types.CallToolResult(
        content=[types.TextContent(type="text", text=f"Unknown tool: {tool_name}")],
        isError=True,
    )


@server.call_tool()
async def call_tool(tool_name: str, arguments: dict[str, Any]) -> types.CallToolResult | tuple[Any, Any]:
    arguments_copy = dict(arguments or {})
    client_name = arguments_copy.pop("client_name", None)

    try:
        client = _get_client_for_account(client_name)
        return await dispatch_tool(client, tool_name, arguments_copy)
    except CakemailError as exc:
        return types.CallToolResult(
            content=[
                types.TextContent(
                    type="text",
                    text=f"Cakemail API error ({exc.status_code}, {type(exc).__name__}): {exc}",
                )
            ],
            isError=True,
        )
    except Exception as exc:  # noqa: BLE001
        logger.exception("Tool %s failed", tool_name)
        return types.CallToolResult(
            content=[types.TextContent(type="text", text=f"Tool execution error: {exc}")],
            isError=True,
        )


async def _run() -> None:
    initialization_options = server.create_initialization_options()
    async with stdio_server() as (read_stream, write_stream):
        await server.run(read_stream, write_stream, initialization_options)


def main() -> None:
    # stdout carries the protocol; logs go to stderr.
    logging.basicConfig(
        stream=sys.stderr,
        level=logging.DEBUG if os.getenv("CAKEMAIL_DEBUG", "false").lower() == "true" else logging.INFO,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    anyio.run(_run)


if __name__ == "__main__":
    main()
