import json
from urllib.parse import parse_qs

import httpx
import pytest

from aitool_cli.auth import (
    AuthError,
    fetch_userinfo,
    format_auth_error,
    get_auth_status,
    logout,
    refresh_credentials,
    token_expiry_warning,
)
from aitool_cli.config import (
    Credentials,
    LocalConfig,
    OidcDiscovery,
    credentials_exist,
    read_credentials,
    to_iso_timestamp,
    write_config,
    write_credentials,
)

NOW = 1_800_000_000.0


def clock():
    return NOW


def _discovery(userinfo=True):
    return OidcDiscovery(
        issuer="https://idp.example.com",
        authorization_endpoint="https://idp.example.com/authorize",
        token_endpoint="https://idp.example.com/token",
        device_authorization_endpoint="https://idp.example.com/device",
        userinfo_endpoint="https://idp.example.com/userinfo" if userinfo else None,
    )


def _setup_config(config_dir, *, userinfo=True):
    write_config(
        LocalConfig(
            discovery_url="https://idp.example.com/.well-known/openid-configuration",
            client_id="aitool-cli",
            scopes=["openid", "offline_access"],
            cached_discovery=_discovery(userinfo),
            discovery_fetched_at=to_iso_timestamp(NOW - 60),
        ),
        config_dir,
    )


def _setup_credentials(config_dir, *, expires_in=None, refresh_token="r1"):
    write_credentials(
        Credentials(
            access_token="old",
            token_type="Bearer",
            refresh_token=refresh_token,
            id_token="id-1",
            scope="openid offline_access",
            expires_at=to_iso_timestamp(NOW + expires_in) if expires_in is not None else None,
        ),
        config_dir,
    )


def _client(handler):
    return httpx.AsyncClient(transport=httpx.MockTransport(handler))


def _no_network(request):
    raise AssertionError(f"unexpected request: {request.method} {request.url}")


# =============================================================================
# refresh_credentials
# =============================================================================

@pytest.mark.asyncio
async def test_refresh_not_needed_when_token_is_fresh(tmp_path):
    _setup_config(tmp_path)
    _setup_credentials(tmp_path, expires_in=3600)

    async with _client(_no_network) as client:
        outcome = await refresh_credentials(tmp_path, client=client, clock=clock)

    assert outcome == "not_needed"


@pytest.mark.asyncio
async def test_refresh_preserves_fields_the_provider_omits(tmp_path):
    _setup_config(tmp_path)
    _setup_credentials(tmp_path, expires_in=60)
    seen = []

    def handler(request):
        seen.append({k: v[0] for k, v in parse_qs(request.content.decode()).items()})
        return httpx.Response(200, json={"access_token": "new", "token_type": "Bearer", "expires_in": 3600})

    async with _client(handler) as client:
        outcome = await refresh_credentials(tmp_path, client=client, clock=clock)

    assert outcome == "refreshed"
    assert seen == [{"grant_type": "refresh_token", "refresh_token": "r1", "client_id": "aitool-cli"}]

    stored = read_credentials(tmp_path)
    assert stored.access_token == "new"
    assert stored.refresh_token == "r1"
    assert stored.id_token == "id-1"
    assert stored.scope == "openid offline_access"
    assert stored.expires_at == to_iso_timestamp(NOW + 3600)


@pytest.mark.asyncio
async def test_refresh_attempted_when_expiry_unknown(tmp_path):
    _setup_config(tmp_path)
    _setup_credentials(tmp_path, expires_in=None)

    def handler(request):
        return httpx.Response(200, json={"access_token": "new", "token_type": "Bearer",
                                         "refresh_token": "r2"})

    async with _client(handler) as client:
        assert await refresh_credentials(tmp_path, client=client, clock=clock) == "refreshed"

    stored = read_credentials(tmp_path)
    assert stored.refresh_token == "r2"
    assert stored.expires_at is None


@pytest.mark.asyncio
async def test_refresh_without_refresh_token_requires_relogin(tmp_path):
    _setup_config(tmp_path)
    _setup_credentials(tmp_path, expires_in=-10, refresh_token=None)

    async with _client(_no_network) as client:
        with pytest.raises(AuthError) as exc:
            await refresh_credentials(tmp_path, client=client, clock=clock)

    assert exc.value.relogin_required is True
    assert format_auth_error(exc.value).endswith("Run `aitool auth login` to re-authenticate.")


@pytest.mark.asyncio
async def test_refresh_http_error_wraps_with_relogin(tmp_path):
    _setup_config(tmp_path)
    _setup_credentials(tmp_path, expires_in=-10)

    def handler(request):
        return httpx.Response(400, json={"error": "invalid_grant"})

    async with _client(handler) as client:
        with pytest.raises(AuthError) as exc:
            await refresh_credentials(tmp_path, client=client, clock=clock)

    assert "Token refresh failed" in str(exc.value)
    assert exc.value.code == "invalid_grant"
    assert exc.value.relogin_required is True
    assert read_credentials(tmp_path).access_token == "old"


@pytest.mark.asyncio
async def test_refresh_transport_error_wraps_with_relogin(tmp_path):
    _setup_config(tmp_path)
    _setup_credentials(tmp_path, expires_in=-10)

    def handler(request):
        raise httpx.ConnectError("connection refused", request=request)

    async with _client(handler) as client:
        with pytest.raises(AuthError) as exc:
            await refresh_credentials(tmp_path, client=client, clock=clock)

    assert "connection refused" in str(exc.value)
    assert exc.value.relogin_required is True


@pytest.mark.asyncio
async def test_refresh_without_credentials(tmp_path):
    _setup_config(tmp_path)

    with pytest.raises(AuthError) as exc:
        await refresh_credentials(tmp_path, clock=clock)

    assert exc.value.code == "not_authenticated"


# =============================================================================
# status / warning / logout
# =============================================================================

def test_status_when_not_configured(tmp_path):
    assert get_auth_status(tmp_path, clock=clock) == {
        "configured": False,
        "authenticated": False,
        "token_status": "unknown",
    }


def test_status_configured_without_credentials(tmp_path):
    _setup_config(tmp_path)

    status = get_auth_status(tmp_path, clock=clock)

    assert status["configured"] is True
    assert status["authenticated"] is False
    assert status["issuer"] == "https://idp.example.com"
    assert status["client_id"] == "aitool-cli"
    assert status["token_status"] == "unknown"


@pytest.mark.parametrize(
    "expires_in,token_status,authenticated",
    [
        (3600, "valid", True),
        (120, "expiring_soon", True),
        (-1, "expired", False),
        (None, "unknown", True),
    ],
)
def test_status_token_states(tmp_path, expires_in, token_status, authenticated):
    _setup_config(tmp_path)
    _setup_credentials(tmp_path, expires_in=expires_in)

    status = get_auth_status(tmp_path, clock=clock)

    assert status["token_status"] == token_status
    assert status["authenticated"] is authenticated


@pytest.mark.parametrize(
    "expires_in,expected",
    [
        (None, None),
        (3600, None),
        (120, "Warning: Your token expires in 2 minutes."),
        (45, "Warning: Your token expires in 1 minute."),
        (0, "Warning: Your token has expired."),
    ],
)
def test_token_expiry_warning(tmp_path, expires_in, expected):
    _setup_credentials(tmp_path, expires_in=expires_in)

    warning = token_expiry_warning(tmp_path, clock=clock)

    if expected is None:
        assert warning is None
    else:
        assert warning.startswith(expected)


def test_token_expiry_warning_without_credentials(tmp_path):
    assert token_expiry_warning(tmp_path, clock=clock) is None


def test_logout_removes_credentials(tmp_path):
    _setup_credentials(tmp_path, expires_in=3600)

    assert logout(tmp_path) is True
    assert not credentials_exist(tmp_path)
    assert logout(tmp_path) is False


# =============================================================================
# userinfo
# =============================================================================

@pytest.mark.asyncio
async def test_userinfo_sends_stored_token(tmp_path):
    _setup_config(tmp_path)
    _setup_credentials(tmp_path, expires_in=3600)
    headers = []

    def handler(request):
        headers.append(request.headers["Authorization"])
        return httpx.Response(200, json={"sub": "u1", "email": "dev@example.com"})

    async with _client(handler) as client:
        info = await fetch_userinfo(tmp_path, client=client, clock=clock)

    assert info == {"sub": "u1", "email": "dev@example.com"}
    assert headers == ["Bearer old"]


@pytest.mark.asyncio
async def test_userinfo_unauthorized_requires_relogin(tmp_path):
    _setup_config(tmp_path)
    _setup_credentials(tmp_path, expires_in=3600)

    async with _client(lambda request: httpx.Response(401)) as client:
        with pytest.raises(AuthError) as exc:
            await fetch_userinfo(tmp_path, client=client, clock=clock)

    assert exc.value.relogin_required is True


@pytest.mark.asyncio
async def test_userinfo_requires_endpoint(tmp_path):
    _setup_config(tmp_path, userinfo=False)
    _setup_credentials(tmp_path, expires_in=3600)

    async with _client(_no_network) as client:
        with pytest.raises(AuthError, match="userinfo endpoint"):
            await fetch_userinfo(tmp_path, client=client, clock=clock)


def test_credentials_file_is_camel_case(tmp_path):
    _setup_credentials(tmp_path, expires_in=3600)

    raw = json.loads((tmp_path / "credentials.json").read_text(encoding="utf-8"))

    assert raw["accessToken"] == "old"
    assert raw["refreshToken"] == "r1"
    assert raw["expiresAt"].endswith("Z")
