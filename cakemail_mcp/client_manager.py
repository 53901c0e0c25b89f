"""Per-account Cakemail clients built from a multi-account configuration.

The configuration is a JSON object::

    {
        "default_client": "agency",
        "clients": {
            "agency": {"username": "...", "password": "..."},
            "shop": {"api_key": "...", "circuit_breaker": {"enabled": true}}
        }
    }

Every entry is validated into a ``CakemailConfig`` up front, so a broken
account is reported at startup rather than on its first tool call.
"""

from __future__ import annotations

import json
from pathlib import Path
from typing import Any, Optional

import httpx
from pydantic import ValidationError as ConfigValidationError

from cakemail_mcp.client import CakemailClient
from cakemail_mcp.config import CakemailConfig


class ClientManagerError(RuntimeError):
    """Raised for unreadable or invalid account configuration and unknown account names."""


def _read_json(path: str) -> Any:
    config_file = Path(path)
    if not config_file.exists():
        raise ClientManagerError(
            f"Configuration file not found: {path}\n"
            "Create it or set CAKEMAIL_USERNAME and CAKEMAIL_PASSWORD (or CAKEMAIL_API_KEY)."
        )
    try:
        return json.loads(config_file.read_text(encoding="utf-8"))
    except json.JSONDecodeError as e:
        raise ClientManagerError(f"Invalid JSON in configuration file {path}: {e}") from e
    except OSError as e:
        raise ClientManagerError(f"Error reading configuration file {path}: {e}") from e


class ClientManager:
    """Holds one independent CakemailClient per configured account.

    Accounts share nothing: each client owns its token, rate limiter,
    circuit breaker and request queue. ``defaults`` are merged under every
    account's own settings (e.g. a common ``base_url`` or ``retry`` policy).
    """

    def __init__(
        self,
        config_path: str | None = None,
        *,
        config_dict: dict[str, Any] | None = None,
        defaults: dict[str, Any] | None = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ) -> None:
        if config_dict is None and config_path is None:
            raise ClientManagerError("Either config_path or config_dict is required.")

        self.config_path = None if config_dict is not None else config_path
        self.config = config_dict if config_dict is not None else _read_json(config_path or "")
        self.defaults = dict(defaults or {})
        self._transport = transport
        self._accounts: dict[str, CakemailConfig] = {}
        self._clients: dict[str, CakemailClient] = {}

        self.validate_config()

    def validate_config(self) -> None:
        """Check the document shape and validate every account's settings."""
        if not isinstance(self.config, dict):
            raise ClientManagerError("Configuration must be a JSON object.")

        clients = self.config.get("clients")
        if not isinstance(clients, dict):
            raise ClientManagerError('Configuration must contain a "clients" object.')
        if not clients:
            raise ClientManagerError('Configuration must contain at least one client in "clients".')

        self._accounts = {name: self._build_account(name, raw) for name, raw in clients.items()}

        if "default_client" in self.config:
            default = self.config["default_client"]
            if not isinstance(default, str):
                raise ClientManagerError('"default_client" must be a string.')
            if default not in self._accounts:
                raise ClientManagerError(
                    f'Default client "{default}" not found in clients. {self._available()}'
                )

    def _build_account(self, name: str, raw: Any) -> CakemailConfig:
        if not isinstance(raw, dict):
            raise ClientManagerError(f'Client "{name}" configuration must be an object.')
        try:
            return CakemailConfig.model_validate({**self.defaults, **raw})
        except ConfigValidationError as e:
            raise ClientManagerError(f'Client "{name}" configuration is invalid: {e}') from e

    def _available(self) -> str:
        return f"Available clients: {', '.join(self.list_clients())}"

    def list_clients(self) -> list[str]:
        return sorted(self._accounts)

    def get_default_client_name(self) -> str | None:
        """The configured ``default_client``, or the only account when there is just one."""
        default = self.config.get("default_client")
        if default is None and len(self._accounts) == 1:
            return next(iter(self._accounts))
        return default

    def _resolve_name(self, client_name: str | None) -> str:
        name = client_name if client_name is not None else self.get_default_client_name()
        if name is None:
            raise ClientManagerError(
                f"No client_name provided and no default_client specified in config. {self._available()}"
            )
        if name not in self._accounts:
            raise ClientManagerError(f'Client "{name}" not found in configuration. {self._available()}')
        return name

    def get_client_config(self, client_name: str | None = None) -> CakemailConfig:
        return self._accounts[self._resolve_name(client_name)]

    def get_or_create_client(self, client_name: str | None = None) -> CakemailClient:
        """Return the account's client, creating it on first use."""
        name = self._resolve_name(client_name)
        client = self._clients.get(name)
        if client is None:
            client = CakemailClient(self._accounts[name], transport=self._transport)
            self._clients[name] = client
        return client

    async def close_all_clients(self) -> None:
        clients, self._clients = list(self._clients.values()), {}
        for client in clients:
            await client.close()
