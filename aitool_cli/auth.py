"""
OAuth 2.0 device authorization (RFC 8628) against the configured OIDC provider.

Provides:
- DeviceAuthFlow         - start the flow and poll the token endpoint
- refresh_credentials    - refresh-token grant when the access token is near expiry
- get_auth_status        - local view of config + credentials (no network)
- fetch_userinfo         - GET the provider's userinfo endpoint
- logout                 - delete stored credentials

Credentials are written to credentials.json via aitool_cli.config.
"""

from __future__ import annotations

import asyncio
import enum
import json
import logging
import math
import os
import sys
import time
import webbrowser
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional

import httpx

from aitool_cli.colors import Colors, check_mark, color
from aitool_cli.config import (
    ConfigStoreError,
    Credentials,
    LocalConfig,
    OidcDiscovery,
    config_exists,
    credentials_exist,
    get_credentials_path,
    parse_iso_timestamp,
    read_config,
    read_credentials,
    to_iso_timestamp,
    write_credentials,
)
from aitool_cli.discovery import DiscoveryError, get_discovery, http_client

logger = logging.getLogger(__name__)

DEVICE_CODE_GRANT_TYPE = "urn:ietf:params:oauth:grant-type:device_code"
DEFAULT_POLL_INTERVAL_SECONDS = 5
SLOW_DOWN_INCREMENT_SECONDS = 5
ACCESS_TOKEN_REFRESH_SKEW_SECONDS = 5 * 60
EXPIRING_SOON_SECONDS = 5 * 60

DEVICE_CODE_EXPIRED_MESSAGE = "Device code expired. Please run `aitool auth login` again."


# =============================================================================
# Errors
# =============================================================================

class AuthError(RuntimeError):
    """Structured auth error with UX mapping hints."""

    def __init__(
        self,
        message: str,
        *,
        code: Optional[str] = None,
        relogin_required: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.relogin_required = relogin_required


class DeviceAuthRequestFailed(AuthError):
    """The device authorization endpoint answered with a non-2xx status."""

    def __init__(self, status: int, endpoint: str) -> None:
        super().__init__(
            f"Device authorization request failed ({status}): {endpoint}",
            code="device_authorization_failed",
        )
        self.status = status
        self.endpoint = endpoint


def format_auth_error(error: Exception) -> str:
    """Map auth failures to concise user-facing guidance."""
    if not isinstance(error, AuthError):
        return str(error)

    if error.relogin_required:
        return f"{error} Run `aitool auth login` to re-authenticate."

    if error.code == "temporarily_unavailable":
        return f"{error} Please retry in a few seconds."

    return str(error)


# =============================================================================
# Types
# =============================================================================

class DeviceAuthState(enum.Enum):
    NOT_STARTED = "not_started"
    AUTHORIZATION_REQUESTED = "authorization_requested"
    POLLING = "polling"
    SUCCESS = "success"
    EXPIRED = "expired"
    DENIED = "denied"
    FAILED = "failed"


@dataclass
class DeviceAuthSession:
    device_code: str
    user_code: str
    verification_uri: str
    expires_in: int
    interval: int = DEFAULT_POLL_INTERVAL_SECONDS
    verification_uri_complete: Optional[str] = None

    @classmethod
    def from_response(cls, data: Dict[str, Any]) -> "DeviceAuthSession":
        required_fields = ["device_code", "user_code", "verification_uri", "expires_in"]
        missing = [f for f in required_fields if f not in data]
        if missing:
            raise AuthError(
                f"Device authorization response missing fields: {', '.join(missing)}",
                code="invalid_response",
            )
        try:
            expires_in = int(data["expires_in"])
            interval = int(data.get("interval") or DEFAULT_POLL_INTERVAL_SECONDS)
        except (TypeError, ValueError) as exc:
            raise AuthError("Device authorization response has invalid timing fields",
                            code="invalid_response") from exc
        return cls(
            device_code=str(data["device_code"]),
            user_code=str(data["user_code"]),
            verification_uri=str(data["verification_uri"]),
            expires_in=expires_in,
            interval=max(1, interval),
            verification_uri_complete=data.get("verification_uri_complete") or None,
        )


@dataclass
class AuthLoginResult:
    token_type: str
    scope: Optional[str] = None
    expires_at: Optional[str] = None


def _response_json(response: httpx.Response) -> Dict[str, Any]:
    try:
        data = response.json()
    except ValueError:
        return {}
    return data if isinstance(data, dict) else {}


def _credentials_from_token_response(
    data: Dict[str, Any],
    now: float,
    previous: Optional[Credentials] = None,
) -> Credentials:
    access_token = data.get("access_token")
    if not isinstance(access_token, str) or not access_token:
        raise AuthError("Token response missing access_token", code="invalid_response")

    expires_at = None
    expires_in = data.get("expires_in")
    if expires_in:
        try:
            expires_at = to_iso_timestamp(now + float(expires_in))
        except (TypeError, ValueError):
            logger.debug("Ignoring non-numeric expires_in: %r", expires_in)

    return Credentials(
        access_token=access_token,
        token_type=str(data.get("token_type") or "Bearer"),
        refresh_token=data.get("refresh_token") or (previous.refresh_token if previous else None),
        id_token=data.get("id_token") or (previous.id_token if previous else None),
        scope=data.get("scope") or (previous.scope if previous else None),
        expires_at=expires_at,
    )


# =============================================================================
# Device authorization flow
# =============================================================================

class DeviceAuthFlow:
    """One device-authorization login attempt.

    ``start()`` requests a device code; ``poll()`` waits for the user to approve
    it and persists the resulting credentials exactly once.
    """

    def __init__(
        self,
        config: LocalConfig,
        discovery: OidcDiscovery,
        *,
        client: httpx.AsyncClient,
        config_dir: Optional[Path] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
        logger: Optional[logging.Logger] = None,
    ) -> None:
        self.config = config
        self.discovery = discovery
        self.client = client
        self.config_dir = config_dir
        self._sleep = sleep
        self._clock = clock
        self._log = logger or logging.getLogger(__name__)
        self.state = DeviceAuthState.NOT_STARTED
        self.session: Optional[DeviceAuthSession] = None

    def _fail(self, state: DeviceAuthState, error: AuthError) -> AuthError:
        self.state = state
        return error

    async def _post_form(self, url: str, data: Dict[str, str]) -> httpx.Response:
        self._log.debug("POST %s", url)
        response = await self.client.post(url, data=data)
        self._log.debug("Response: %s %s", response.status_code, response.reason_phrase)
        return response

    async def start(self) -> DeviceAuthSession:
        if self.state is not DeviceAuthState.NOT_STARTED:
            raise RuntimeError("Device authorization has already been started")

        endpoint = self.discovery.device_authorization_endpoint
        try:
            response = await self._post_form(endpoint, {
                "client_id": self.config.client_id,
                "scope": " ".join(self.config.scopes),
            })
        except httpx.HTTPError as exc:
            raise self._fail(
                DeviceAuthState.FAILED,
                AuthError(f"Device authorization request failed: {exc}", code="network_error"),
            ) from exc

        if not response.is_success:
            raise self._fail(DeviceAuthState.FAILED,
                             DeviceAuthRequestFailed(response.status_code, endpoint))

        try:
            self.session = DeviceAuthSession.from_response(_response_json(response))
        except AuthError as exc:
            raise self._fail(DeviceAuthState.FAILED, exc)

        self.state = DeviceAuthState.AUTHORIZATION_REQUESTED
        return self.session

    async def poll(self, on_attempt: Optional[Callable[[], Any]] = None) -> AuthLoginResult:
        """Poll the token endpoint until approval, denial or expiry."""
        if self.session is None or self.state is not DeviceAuthState.AUTHORIZATION_REQUESTED:
            raise RuntimeError("poll() requires a started device authorization")

        session = self.session
        token_endpoint = self.discovery.token_endpoint
        self.state = DeviceAuthState.POLLING
        deadline = self._clock() + session.expires_in

        while self._clock() < deadline:
            await self._sleep(session.interval)
            if on_attempt is not None:
                on_attempt()

            try:
                response = await self._post_form(token_endpoint, {
                    "grant_type": DEVICE_CODE_GRANT_TYPE,
                    "device_code": session.device_code,
                    "client_id": self.config.client_id,
                })
            except httpx.HTTPError as exc:
                raise self._fail(
                    DeviceAuthState.FAILED,
                    AuthError(f"Token request failed: {exc}", code="network_error"),
                ) from exc

            payload = _response_json(response)

            if response.is_success:
                try:
                    credentials = _credentials_from_token_response(payload, self._clock())
                except AuthError as exc:
                    raise self._fail(DeviceAuthState.FAILED, exc)
                write_credentials(credentials, self.config_dir)
                self.state = DeviceAuthState.SUCCESS
                return AuthLoginResult(
                    token_type=credentials.token_type,
                    scope=credentials.scope,
                    expires_at=credentials.expires_at,
                )

            error_code = payload.get("error")
            if error_code == "authorization_pending":
                self._log.debug("Authorization pending; polling again in %ss", session.interval)
                continue
            if error_code == "slow_down":
                session.interval += SLOW_DOWN_INCREMENT_SECONDS
                self._log.debug("Server asked to slow down; interval is now %ss", session.interval)
                continue
            if error_code == "expired_token":
                raise self._fail(DeviceAuthState.EXPIRED,
                                 AuthError(DEVICE_CODE_EXPIRED_MESSAGE, code=error_code))
            if error_code == "access_denied":
                raise self._fail(DeviceAuthState.DENIED,
                                 AuthError("Access denied.", code=error_code))
            raise self._fail(
                DeviceAuthState.FAILED,
                AuthError(f"Token request failed: {error_code or response.reason_phrase}",
                          code=error_code),
            )

        raise self._fail(DeviceAuthState.EXPIRED,
                         AuthError(DEVICE_CODE_EXPIRED_MESSAGE, code="expired_token"))


async def run_auth_login(
    config_dir: Optional[Path] = None,
    *,
    client: Optional[httpx.AsyncClient] = None,
    sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    clock: Callable[[], float] = time.time,
    on_session: Optional[Callable[[DeviceAuthSession], Any]] = None,
    on_attempt: Optional[Callable[[], Any]] = None,
) -> AuthLoginResult:
    """Run the full device flow using the stored config."""
    config = read_config(config_dir)
    async with http_client(client) as http:
        discovery = await get_discovery(config, config_dir, client=http, clock=clock)
        flow = DeviceAuthFlow(
            config,
            discovery,
            client=http,
            config_dir=config_dir,
            sleep=sleep,
            clock=clock,
        )
        session = await flow.start()
        if on_session is not None:
            on_session(session)
        return await flow.poll(on_attempt)


# =============================================================================
# Refresh / status / userinfo / logout
# =============================================================================

async def refresh_credentials(
    config_dir: Optional[Path] = None,
    *,
    client: Optional[httpx.AsyncClient] = None,
    clock: Callable[[], float] = time.time,
) -> str:
    """Refresh the access token if it expires within five minutes.

    Returns ``"refreshed"`` or ``"not_needed"``.
    """
    if not credentials_exist(config_dir):
        raise AuthError("Not authenticated. Run `aitool auth login` to authenticate.",
                        code="not_authenticated")

    credentials = read_credentials(config_dir)
    expires_epoch = parse_iso_timestamp(credentials.expires_at)
    if expires_epoch is not None and clock() < expires_epoch - ACCESS_TOKEN_REFRESH_SKEW_SECONDS:
        return "not_needed"

    if not credentials.refresh_token:
        raise AuthError("No refresh token available.", code="no_refresh_token",
                        relogin_required=True)

    config = read_config(config_dir)
    async with http_client(client) as http:
        discovery = await get_discovery(config, config_dir, client=http, clock=clock)
        url = discovery.token_endpoint
        logger.debug("POST %s", url)
        try:
            response = await http.post(url, data={
                "grant_type": "refresh_token",
                "refresh_token": credentials.refresh_token,
                "client_id": config.client_id,
            })
        except httpx.HTTPError as exc:
            raise AuthError(f"Token refresh failed: {exc}.", code="network_error",
                            relogin_required=True) from exc
        logger.debug("Response: %s %s", response.status_code, response.reason_phrase)

    if not response.is_success:
        detail = response.text.strip() or response.reason_phrase
        raise AuthError(
            f"Token refresh failed: {detail}.",
            code=_response_json(response).get("error"),
            relogin_required=True,
        )

    try:
        updated = _credentials_from_token_response(_response_json(response), clock(), credentials)
    except AuthError as exc:
        exc.relogin_required = True
        raise
    write_credentials(updated, config_dir)
    return "refreshed"


def token_status(expires_at: Optional[str], now: float) -> str:
    expires_epoch = parse_iso_timestamp(expires_at)
    if expires_epoch is None:
        return "unknown"
    remaining = expires_epoch - now
    if remaining <= 0:
        return "expired"
    if remaining <= EXPIRING_SOON_SECONDS:
        return "expiring_soon"
    return "valid"


def get_auth_status(
    config_dir: Optional[Path] = None,
    *,
    clock: Callable[[], float] = time.time,
) -> Dict[str, Any]:
    """Summarize local auth state without touching the network."""
    if not config_exists(config_dir):
        return {"configured": False, "authenticated": False, "token_status": "unknown"}

    config = read_config(config_dir)
    status: Dict[str, Any] = {
        "configured": True,
        "authenticated": False,
        "issuer": config.cached_discovery.issuer if config.cached_discovery else None,
        "client_id": config.client_id,
        "scopes": list(config.scopes),
        "token_status": "unknown",
    }
    if not credentials_exist(config_dir):
        return status

    credentials = read_credentials(config_dir)
    state = token_status(credentials.expires_at, clock())
    status.update({
        "authenticated": state != "expired",
        "token_status": state,
        "expires_at": credentials.expires_at,
        "scope": credentials.scope,
    })
    return status


def token_expiry_warning(
    config_dir: Optional[Path] = None,
    *,
    clock: Callable[[], float] = time.time,
) -> Optional[str]:
    """Warning text when the stored token is expired or about to expire."""
    if not credentials_exist(config_dir):
        return None
    expires_epoch = parse_iso_timestamp(read_credentials(config_dir).expires_at)
    if expires_epoch is None:
        return None

    remaining = expires_epoch - clock()
    if remaining <= 0:
        return "Warning: Your token has expired. Run `aitool auth login` to re-authenticate."

    minutes = math.ceil(remaining / 60)
    if minutes <= EXPIRING_SOON_SECONDS // 60:
        plural = "" if minutes == 1 else "s"
        return (
            f"Warning: Your token expires in {minutes} minute{plural}. "
            "Run `aitool auth login` to re-authenticate."
        )
    return None


async def fetch_userinfo(
    config_dir: Optional[Path] = None,
    *,
    client: Optional[httpx.AsyncClient] = None,
    clock: Callable[[], float] = time.time,
) -> Dict[str, Any]:
    if not credentials_exist(config_dir):
        raise AuthError("Not authenticated. Run `aitool auth login` first.",
                        code="not_authenticated")

    async with http_client(client) as http:
        await refresh_credentials(config_dir, client=http, clock=clock)

        config = read_config(config_dir)
        discovery = await get_discovery(config, config_dir, client=http, clock=clock)
        endpoint = discovery.userinfo_endpoint
        if not endpoint:
            raise AuthError(
                "The configured identity provider does not expose a userinfo endpoint.",
                code="no_userinfo_endpoint",
            )

        credentials = read_credentials(config_dir)
        logger.debug("GET %s", endpoint)
        try:
            response = await http.get(
                endpoint,
                headers={"Authorization": f"{credentials.token_type} {credentials.access_token}"},
            )
        except httpx.HTTPError as exc:
            raise AuthError(f"Userinfo request failed: {exc}", code="network_error") from exc
        logger.debug("Response: %s %s", response.status_code, response.reason_phrase)

    if response.status_code == 401:
        raise AuthError("Access token is invalid or expired.", code="invalid_token",
                        relogin_required=True)
    if not response.is_success:
        raise AuthError(f"Userinfo request failed ({response.status_code}): {endpoint}")
    try:
        return response.json()
    except ValueError as exc:
        raise AuthError("Userinfo response is not valid JSON", code="invalid_response") from exc


def logout(config_dir: Optional[Path] = None) -> bool:
    """Delete stored credentials. Returns False when there was nothing to delete."""
    path = get_credentials_path(config_dir)
    try:
        path.unlink()
    except FileNotFoundError:
        return False
    logger.debug("Removed %s", path)
    return True


# =============================================================================
# CLI commands
# =============================================================================

_AUTH_ERRORS = (AuthError, DiscoveryError, ConfigStoreError)


def _is_remote_session() -> bool:
    """Detect if running in an SSH session where webbrowser.open() won't work."""
    return bool(os.getenv("SSH_CLIENT") or os.getenv("SSH_TTY"))


def _format_iso_timestamp(value: Optional[str]) -> str:
    """Format ISO timestamps for status output, converting to local timezone."""
    epoch = parse_iso_timestamp(value)
    if epoch is None:
        return "(unknown)"
    return datetime.fromtimestamp(epoch).astimezone().strftime("%Y-%m-%d %H:%M:%S %Z")


def auth_login_command(args):
    """Device authorization login."""
    config_dir = getattr(args, "config_dir", None)
    open_browser = not getattr(args, "no_browser", False)

    # Skip browser open in SSH sessions
    if _is_remote_session():
        open_browser = False

    def _on_session(session: DeviceAuthSession) -> None:
        url = session.verification_uri_complete or session.verification_uri
        print()
        print("To continue:")
        print(f"  1. Open: {url}")
        print(f"  2. If prompted, enter code: {color(session.user_code, Colors.BOLD)}")
        if open_browser:
            if webbrowser.open(url):
                print("  (Opened browser for verification)")
            else:
                print("  Could not open browser automatically - use the URL above.")
        print(f"Waiting for approval (polling every {session.interval}s)...")

    print("Starting aitool login...")
    try:
        result = asyncio.run(run_auth_login(config_dir, on_session=_on_session))
    except KeyboardInterrupt:
        print("\nLogin cancelled.")
        sys.exit(130)
    except _AUTH_ERRORS as exc:
        print(f"Login failed: {format_auth_error(exc)}", file=sys.stderr)
        sys.exit(1)

    print()
    print(color("Login successful!", Colors.GREEN))
    print(f"  Token type: {result.token_type}")
    if result.scope:
        print(f"  Scope:      {result.scope}")
    print(f"  Expires:    {_format_iso_timestamp(result.expires_at)}")


def auth_status_command(args):
    """Show local auth state."""
    config_dir = getattr(args, "config_dir", None)
    try:
        status = get_auth_status(config_dir)
    except ConfigStoreError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    if getattr(args, "json", False):
        print(json.dumps(status, indent=2))
        return

    if not status["configured"]:
        print(f"Configured:    {check_mark(False)} not configured")
        print("  Run `aitool setup` first.")
        return

    token_colors = {
        "valid": Colors.GREEN,
        "expiring_soon": Colors.YELLOW,
        "expired": Colors.RED,
    }
    state = status["token_status"]
    print(f"Configured:    {check_mark(True)}")
    print(f"Issuer:        {status.get('issuer') or '(not fetched)'}")
    print(f"Client ID:     {status['client_id']}")
    print(f"Scopes:        {' '.join(status['scopes'])}")
    print(f"Authenticated: {check_mark(status['authenticated'])}")
    if status.get("expires_at") or state != "unknown":
        print(f"Token:         {color(state.replace('_', ' '), token_colors.get(state, Colors.DIM))}")
        print(f"Expires:       {_format_iso_timestamp(status.get('expires_at'))}")
    if not status["authenticated"]:
        print("  Run `aitool auth login` to sign in.")


def auth_refresh_command(args):
    config_dir = getattr(args, "config_dir", None)
    try:
        outcome = asyncio.run(refresh_credentials(config_dir))
    except _AUTH_ERRORS as exc:
        print(f"Error: {format_auth_error(exc)}", file=sys.stderr)
        sys.exit(1)

    if outcome == "refreshed":
        print(color("Token refreshed.", Colors.GREEN))
    else:
        print("Token is still valid; no refresh needed.")


def auth_userinfo_command(args):
    config_dir = getattr(args, "config_dir", None)
    try:
        info = asyncio.run(fetch_userinfo(config_dir))
    except _AUTH_ERRORS as exc:
        print(f"Error: {format_auth_error(exc)}", file=sys.stderr)
        sys.exit(1)
    print(json.dumps(info, indent=2, ensure_ascii=False))


def auth_logout_command(args):
    """Clear stored credentials."""
    if logout(getattr(args, "config_dir", None)):
        print("Logged out.")
    else:
        print("Not logged in.")
