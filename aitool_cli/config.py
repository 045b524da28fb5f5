"""
Configuration management for aitool.

Files live in the aitool config directory:
- config.json       - discovery URL, client id, scopes, cached OIDC discovery
- credentials.json  - tokens from the last successful login or refresh
- .env              - optional environment overrides (AITOOL_AUTH_DISCOVERY, ...)

This module provides:
- aitool config show     - Show current configuration
- aitool config get KEY  - Print a single value
- aitool config set      - Set a specific value
"""

import json
import logging
import os
import stat
import sys
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from aitool_cli.colors import Colors, color

logger = logging.getLogger(__name__)

DEFAULT_SCOPES = ["openid", "profile", "email", "offline_access"]
ALLOWED_CONFIG_KEYS = ("clientId", "scopes", "discoveryUrl")


class ConfigStoreError(RuntimeError):
    """config.json or credentials.json is missing or malformed."""


# =============================================================================
# Config paths
# =============================================================================

def get_aitool_home() -> Path:
    """Get the aitool config directory for this platform."""
    override = os.getenv("AITOOL_HOME", "").strip()
    if override:
        return Path(override).expanduser()

    if sys.platform == "darwin":
        return Path.home() / "Library" / "Application Support" / "aitool"
    if sys.platform == "win32":
        return Path(os.getenv("APPDATA") or Path.home()) / "aitool"
    xdg = os.getenv("XDG_CONFIG_HOME") or str(Path.home() / ".config")
    return Path(xdg) / "aitool"


def _config_dir(config_dir: Optional[Path] = None) -> Path:
    return Path(config_dir) if config_dir else get_aitool_home()


def get_config_path(config_dir: Optional[Path] = None) -> Path:
    """Get the main config file path."""
    return _config_dir(config_dir) / "config.json"


def get_credentials_path(config_dir: Optional[Path] = None) -> Path:
    """Get the credentials file path."""
    return _config_dir(config_dir) / "credentials.json"


def get_env_path(config_dir: Optional[Path] = None) -> Path:
    """Get the .env file path."""
    return _config_dir(config_dir) / ".env"


# =============================================================================
# Timestamps (ISO-8601, UTC, "Z" suffix)
# =============================================================================

def parse_iso_timestamp(value: Any) -> Optional[float]:
    if not isinstance(value, str) or not value:
        return None
    text = value.strip()
    if not text:
        return None
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed.timestamp()


def to_iso_timestamp(epoch_seconds: float) -> str:
    return datetime.fromtimestamp(epoch_seconds, tz=timezone.utc).isoformat().replace("+00:00", "Z")


# =============================================================================
# Documents
# =============================================================================

def _require_str(data: Dict[str, Any], key: str, source: str) -> str:
    value = data.get(key)
    if not isinstance(value, str) or not value.strip():
        raise ConfigStoreError(f"{source} is missing '{key}'.")
    return value


def _optional_str(data: Dict[str, Any], key: str) -> Optional[str]:
    value = data.get(key)
    return value if isinstance(value, str) and value else None


def _str_list(value: Any, default: List[str]) -> List[str]:
    if value is None:
        return list(default)
    if not isinstance(value, list) or not all(isinstance(v, str) for v in value):
        raise ConfigStoreError("'scopes' must be a list of strings.")
    return list(value)


@dataclass
class OidcDiscovery:
    issuer: str
    authorization_endpoint: str
    token_endpoint: str
    device_authorization_endpoint: str
    userinfo_endpoint: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "OidcDiscovery":
        if not isinstance(data, dict):
            raise ConfigStoreError("OIDC discovery document must be a JSON object.")
        source = "OIDC discovery document"
        return cls(
            issuer=_require_str(data, "issuer", source),
            authorization_endpoint=_require_str(data, "authorization_endpoint", source),
            token_endpoint=_require_str(data, "token_endpoint", source),
            device_authorization_endpoint=_require_str(data, "device_authorization_endpoint", source),
            userinfo_endpoint=_optional_str(data, "userinfo_endpoint"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {
            "issuer": self.issuer,
            "authorization_endpoint": self.authorization_endpoint,
            "token_endpoint": self.token_endpoint,
            "device_authorization_endpoint": self.device_authorization_endpoint,
        }
        if self.userinfo_endpoint:
            data["userinfo_endpoint"] = self.userinfo_endpoint
        return data


@dataclass
class RemoteConfig:
    """The corp-provided document that bootstraps `aitool setup`."""
    discovery_url: str
    client_id: str
    scopes: List[str] = field(default_factory=lambda: list(DEFAULT_SCOPES))

    @classmethod
    def from_dict(cls, data: Any) -> "RemoteConfig":
        if not isinstance(data, dict):
            raise ConfigStoreError("Remote config must be a JSON object.")
        return cls(
            discovery_url=_require_str(data, "discoveryUrl", "Remote config"),
            client_id=_require_str(data, "clientId", "Remote config"),
            scopes=_str_list(data.get("scopes"), DEFAULT_SCOPES),
        )


@dataclass
class LocalConfig:
    discovery_url: str
    client_id: str
    scopes: List[str]
    cached_discovery: Optional[OidcDiscovery] = None
    discovery_fetched_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "LocalConfig":
        if not isinstance(data, dict):
            raise ConfigStoreError("config.json must contain a JSON object.")
        cached = data.get("cachedDiscovery")
        return cls(
            discovery_url=_require_str(data, "discoveryUrl", "config.json"),
            client_id=_require_str(data, "clientId", "config.json"),
            scopes=_str_list(data.get("scopes"), []),
            cached_discovery=OidcDiscovery.from_dict(cached) if cached else None,
            discovery_fetched_at=_optional_str(data, "discoveryFetchedAt"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "discoveryUrl": self.discovery_url,
            "clientId": self.client_id,
            "scopes": list(self.scopes),
        }
        if self.cached_discovery:
            data["cachedDiscovery"] = self.cached_discovery.to_dict()
        if self.discovery_fetched_at:
            data["discoveryFetchedAt"] = self.discovery_fetched_at
        return data


@dataclass
class Credentials:
    access_token: str
    token_type: str
    refresh_token: Optional[str] = None
    id_token: Optional[str] = None
    scope: Optional[str] = None
    expires_at: Optional[str] = None

    @classmethod
    def from_dict(cls, data: Any) -> "Credentials":
        if not isinstance(data, dict):
            raise ConfigStoreError("credentials.json must contain a JSON object.")
        return cls(
            access_token=_require_str(data, "accessToken", "credentials.json"),
            token_type=_require_str(data, "tokenType", "credentials.json"),
            refresh_token=_optional_str(data, "refreshToken"),
            id_token=_optional_str(data, "idToken"),
            scope=_optional_str(data, "scope"),
            expires_at=_optional_str(data, "expiresAt"),
        )

    def to_dict(self) -> Dict[str, Any]:
        data = {"accessToken": self.access_token, "tokenType": self.token_type}
        optional = {
            "refreshToken": self.refresh_token,
            "idToken": self.id_token,
            "scope": self.scope,
            "expiresAt": self.expires_at,
        }
        data.update({k: v for k, v in optional.items() if v is not None})
        return data


# =============================================================================
# Store
# =============================================================================

def _read_json(path: Path) -> Any:
    logger.debug("Reading %s", path)
    try:
        return json.loads(path.read_text(encoding="utf-8"))
    except FileNotFoundError as exc:
        raise ConfigStoreError(f"{path} not found. Run `aitool setup` first.") from exc
    except json.JSONDecodeError as exc:
        raise ConfigStoreError(f"Failed to parse {path}: {exc}") from exc


def atomic_write_text(path: Path, text: str) -> None:
    """Write ``text`` to a sibling temp file, fsync it, then rename over ``path``."""
    path.parent.mkdir(parents=True, exist_ok=True)
    tmp_path = path.parent / f".{path.name}.{os.getpid()}.{time.time_ns()}.tmp"
    try:
        with tmp_path.open("w", encoding="utf-8") as tmp_file:
            tmp_file.write(text)
            tmp_file.flush()
            os.fsync(tmp_file.fileno())
        os.replace(tmp_path, path)
    finally:
        if tmp_path.exists():
            try:
                tmp_path.unlink()
            except OSError:
                pass


def _write_private_json(path: Path, payload: Dict[str, Any]) -> Path:
    logger.debug("Writing %s", path)
    atomic_write_text(path, json.dumps(payload, indent=2, ensure_ascii=False) + "\n")
    # Restrict file permissions to owner only
    try:
        path.chmod(stat.S_IRUSR | stat.S_IWUSR)
    except OSError:
        pass
    return path


def config_exists(config_dir: Optional[Path] = None) -> bool:
    return get_config_path(config_dir).exists()


def read_config(config_dir: Optional[Path] = None) -> LocalConfig:
    return LocalConfig.from_dict(_read_json(get_config_path(config_dir)))


def write_config(config: LocalConfig, config_dir: Optional[Path] = None) -> Path:
    return _write_private_json(get_config_path(config_dir), config.to_dict())


def credentials_exist(config_dir: Optional[Path] = None) -> bool:
    return get_credentials_path(config_dir).exists()


def read_credentials(config_dir: Optional[Path] = None) -> Credentials:
    return Credentials.from_dict(_read_json(get_credentials_path(config_dir)))


def write_credentials(credentials: Credentials, config_dir: Optional[Path] = None) -> Path:
    return _write_private_json(get_credentials_path(config_dir), credentials.to_dict())


# =============================================================================
# `aitool config` command
# =============================================================================

def show_config(config_dir: Optional[Path] = None):
    """Display current configuration."""
    config = read_config(config_dir)

    print()
    print(color("◆ Paths", Colors.CYAN, Colors.BOLD))
    print(f"  Config:       {get_config_path(config_dir)}")
    print(f"  Credentials:  {get_credentials_path(config_dir)}")

    print()
    print(color("◆ Identity Provider", Colors.CYAN, Colors.BOLD))
    print(f"  Discovery:    {config.discovery_url}")
    print(f"  Client ID:    {config.client_id}")
    print(f"  Scopes:       {' '.join(config.scopes)}")

    if config.cached_discovery:
        discovery = config.cached_discovery
        print()
        print(color("◆ Cached Discovery", Colors.CYAN, Colors.BOLD))
        print(f"  Issuer:       {discovery.issuer}")
        print(f"  Device auth:  {discovery.device_authorization_endpoint}")
        print(f"  Token:        {discovery.token_endpoint}")
        print(f"  Fetched at:   {config.discovery_fetched_at or '(unknown)'}")
    print()


def get_config_value(key: str, config_dir: Optional[Path] = None) -> str:
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(
            f'"{key}" is not a readable config key. Allowed keys: {", ".join(ALLOWED_CONFIG_KEYS)}'
        )
    value = read_config(config_dir).to_dict().get(key)
    if isinstance(value, list):
        return " ".join(value)
    return str(value)


def set_config_value(key: str, value: str, config_dir: Optional[Path] = None) -> str:
    """Set a configuration value and return its display form."""
    if key not in ALLOWED_CONFIG_KEYS:
        raise ValueError(
            f'"{key}" is not a settable config key. Allowed keys: {", ".join(ALLOWED_CONFIG_KEYS)}'
        )

    config = read_config(config_dir)
    if key == "scopes":
        config.scopes = [s for s in value.replace(",", " ").split() if s]
        display = " ".join(config.scopes)
    elif key == "clientId":
        config.client_id = value
        display = value
    else:
        config.discovery_url = value
        # Cached discovery belongs to the previous provider.
        config.cached_discovery = None
        config.discovery_fetched_at = None
        display = value

    write_config(config, config_dir)
    return display


def config_command(args):
    """Handle config subcommands."""
    config_dir = getattr(args, "config_dir", None)
    subcmd = getattr(args, "config_command", None)

    try:
        if subcmd is None or subcmd == "show":
            show_config(config_dir)
        elif subcmd == "get":
            print(get_config_value(args.key, config_dir))
        elif subcmd == "set":
            display = set_config_value(args.key, args.value, config_dir)
            print(f"Set {args.key} = {display}")
        elif subcmd == "path":
            print(get_config_path(config_dir))
        else:
            print(f"Unknown config command: {subcmd}")
            sys.exit(1)
    except (ValueError, ConfigStoreError) as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)
