"""Tests for ClientManager: configuration loading, validation and client caching."""

import json

import httpx
import pytest

from cakemail_mcp.client import CakemailClient
from cakemail_mcp.client_manager import ClientManager, ClientManagerError

CLIENTS = {
    "agency": {"username": "agency@example.com", "password": "a-secret"},
    "shop": {"api_key": "shop-key", "timeout": 10},
}


def manager(**config):
    return ClientManager(config_dict={"clients": dict(CLIENTS), **config})


class TestConfiguration:
    def test_lists_clients_and_default(self):
        clients = manager(default_client="shop")
        assert clients.list_clients() == ["agency", "shop"]
        assert clients.get_default_client_name() == "shop"

    def test_single_client_is_the_default(self):
        clients = ClientManager(config_dict={"clients": {"only": CLIENTS["agency"]}})
        assert clients.get_default_client_name() == "only"
        assert clients.get_client_config().username == "agency@example.com"

    def test_no_default_with_several_clients(self):
        clients = manager()
        assert clients.get_default_client_name() is None
        with pytest.raises(ClientManagerError, match="Available clients: agency, shop"):
            clients.get_or_create_client()

    def test_unknown_client(self):
        with pytest.raises(ClientManagerError, match='Client "nope" not found'):
            manager().get_client_config("nope")

    def test_defaults_apply_unless_overridden(self):
        clients = ClientManager(
            config_dict={"clients": dict(CLIENTS)},
            defaults={"base_url": "https://api.cakemail.test", "timeout": 5},
        )
        agency = clients.get_client_config("agency")
        shop = clients.get_client_config("shop")
        assert agency.base_url == shop.base_url == "https://api.cakemail.test"
        assert agency.timeout == 5
        assert shop.timeout == 10

    @pytest.mark.parametrize(
        "config, message",
        [
            ({}, '"clients" object'),
            ({"clients": {}}, "at least one client"),
            ({"clients": {"x": "not-an-object"}}, "must be an object"),
            ({"clients": {"x": {"username": "only-user"}}}, "configuration is invalid"),
            ({"clients": CLIENTS, "default_client": "missing"}, 'Default client "missing" not found'),
            ({"clients": CLIENTS, "default_client": 3}, "must be a string"),
        ],
    )
    def test_invalid_configuration(self, config, message):
        with pytest.raises(ClientManagerError, match=message):
            ClientManager(config_dict=config)

    def test_requires_a_source(self):
        with pytest.raises(ClientManagerError):
            ClientManager()


class TestConfigFile:
    def test_loads_json_file(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text(json.dumps({"clients": CLIENTS, "default_client": "agency"}), encoding="utf-8")
        clients = ClientManager(config_path=str(path))
        assert clients.get_default_client_name() == "agency"

    def test_missing_file(self, tmp_path):
        with pytest.raises(ClientManagerError, match="Configuration file not found"):
            ClientManager(config_path=str(tmp_path / "absent.json"))

    def test_invalid_json(self, tmp_path):
        path = tmp_path / "config.json"
        path.write_text("{not json", encoding="utf-8")
        with pytest.raises(ClientManagerError, match="Invalid JSON"):
            ClientManager(config_path=str(path))


class TestClients:
    @pytest.mark.asyncio
    async def test_clients_are_cached_and_independent(self):
        clients = manager(default_client="agency")

        agency = clients.get_or_create_client("agency")
        assert isinstance(agency, CakemailClient)
        assert clients.get_or_create_client() is agency

        shop = clients.get_or_create_client("shop")
        assert shop is not agency
        assert shop.tokens is not agency.tokens
        assert shop.rate_limiter is not agency.rate_limiter
        assert shop.request_queue is not agency.request_queue

        await clients.close_all_clients()
        assert agency.client.is_closed and shop.client.is_closed
        assert clients.get_or_create_client("agency") is not agency
        await clients.close_all_clients()

    @pytest.mark.asyncio
    async def test_transport_is_shared_with_clients(self, fake_api):
        clients = ClientManager(
            config_dict={"clients": {"shop": CLIENTS["shop"]}},
            defaults={"base_url": "https://api.cakemail.test", "rate_limit": {"enabled": False}},
            transport=httpx.MockTransport(fake_api),
        )
        fake_api.add("GET", "/lists", httpx.Response(200, json={"data": []}))

        client = clients.get_or_create_client()
        assert await client.make_request("/lists") == {"data": []}
        assert fake_api.requests[0].headers["Authorization"] == "Bearer shop-key"
        await clients.close_all_clients()
