import json

import httpx
import pytest

from aitool_cli.config import LocalConfig, OidcDiscovery, read_config, to_iso_timestamp
from aitool_cli.discovery import (
    DiscoveryError,
    fetch_oidc_discovery,
    fetch_remote_config,
    get_discovery,
    is_discovery_cache_stale,
    load_remote_config_from_file,
)

NOW = 1_800_000_000.0
DISCOVERY_URL = "https://idp.example.com/.well-known/openid-configuration"

DISCOVERY_DOC = {
    "issuer": "https://idp.example.com",
    "authorization_endpoint": "https://idp.example.com/authorize",
    "token_endpoint": "https://idp.example.com/token",
    "device_authorization_endpoint": "https://idp.example.com/device",
    "jwks_uri": "https://idp.example.com/jwks",
}


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


@pytest.mark.asyncio
async def test_fetch_oidc_discovery_parses_document():
    async with _client(lambda request: httpx.Response(200, json=DISCOVERY_DOC)) as client:
        discovery = await fetch_oidc_discovery(DISCOVERY_URL, client=client)

    assert discovery.issuer == "https://idp.example.com"
    assert discovery.device_authorization_endpoint == "https://idp.example.com/device"
    assert discovery.userinfo_endpoint is None


@pytest.mark.asyncio
async def test_fetch_oidc_discovery_http_error():
    async with _client(lambda request: httpx.Response(404)) as client:
        with pytest.raises(DiscoveryError) as exc:
            await fetch_oidc_discovery(DISCOVERY_URL, client=client)

    assert "(404)" in str(exc.value)
    assert DISCOVERY_URL in str(exc.value)


@pytest.mark.asyncio
async def test_fetch_oidc_discovery_rejects_incomplete_document():
    doc = dict(DISCOVERY_DOC)
    del doc["device_authorization_endpoint"]

    async with _client(lambda request: httpx.Response(200, json=doc)) as client:
        with pytest.raises(DiscoveryError, match="device_authorization_endpoint"):
            await fetch_oidc_discovery(DISCOVERY_URL, client=client)


@pytest.mark.asyncio
async def test_fetch_remote_config_defaults_scopes():
    payload = {"discoveryUrl": DISCOVERY_URL, "clientId": "aitool-cli"}

    async with _client(lambda request: httpx.Response(200, json=payload)) as client:
        remote = await fetch_remote_config("https://config.example.com/aitool.json", client=client)

    assert remote.client_id == "aitool-cli"
    assert remote.scopes == ["openid", "profile", "email", "offline_access"]


def test_load_remote_config_from_file(tmp_path):
    path = tmp_path / "remote.json"
    path.write_text(json.dumps({
        "discoveryUrl": DISCOVERY_URL,
        "clientId": "aitool-cli",
        "scopes": ["openid"],
    }), encoding="utf-8")

    remote = load_remote_config_from_file(str(path))

    assert remote.discovery_url == DISCOVERY_URL
    assert remote.scopes == ["openid"]


def test_load_remote_config_from_missing_file(tmp_path):
    with pytest.raises(DiscoveryError, match="Failed to read config file"):
        load_remote_config_from_file(str(tmp_path / "nope.json"))


@pytest.mark.parametrize(
    "fetched_at,stale",
    [
        (None, True),
        ("not a date", True),
        (to_iso_timestamp(NOW - 60), False),
        (to_iso_timestamp(NOW - 25 * 3600), True),
    ],
)
def test_discovery_cache_staleness(fetched_at, stale):
    assert is_discovery_cache_stale(fetched_at, clock=lambda: NOW) is stale


@pytest.mark.asyncio
async def test_get_discovery_uses_fresh_cache(tmp_path):
    cached = OidcDiscovery.from_dict(DISCOVERY_DOC)
    config = LocalConfig(DISCOVERY_URL, "aitool-cli", ["openid"], cached, to_iso_timestamp(NOW - 60))

    def handler(request):
        raise AssertionError("cache should have been used")

    async with _client(handler) as client:
        discovery = await get_discovery(config, tmp_path, client=client, clock=lambda: NOW)

    assert discovery is cached


@pytest.mark.asyncio
async def test_get_discovery_refreshes_stale_cache(tmp_path):
    stale = OidcDiscovery.from_dict(dict(DISCOVERY_DOC, issuer="https://old.example.com"))
    config = LocalConfig(DISCOVERY_URL, "aitool-cli", ["openid"], stale, to_iso_timestamp(NOW - 2 * 86400))

    async with _client(lambda request: httpx.Response(200, json=DISCOVERY_DOC)) as client:
        discovery = await get_discovery(config, tmp_path, client=client, clock=lambda: NOW)

    assert discovery.issuer == "https://idp.example.com"
    persisted = read_config(tmp_path)
    assert persisted.cached_discovery.issuer == "https://idp.example.com"
    assert persisted.discovery_fetched_at == to_iso_timestamp(NOW)
