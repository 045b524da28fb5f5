"""
Remote config and OIDC discovery fetching.

The discovery document is cached in config.json and refreshed once it is more
than a day old.
"""

from __future__ import annotations

import json
import logging
import time
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Any, AsyncIterator, Callable, Optional

import httpx

from aitool_cli.config import (
    ConfigStoreError,
    LocalConfig,
    OidcDiscovery,
    RemoteConfig,
    parse_iso_timestamp,
    to_iso_timestamp,
    write_config,
)

logger = logging.getLogger(__name__)

DEFAULT_HTTP_TIMEOUT_SECONDS = 15.0
DISCOVERY_TTL_SECONDS = 24 * 60 * 60


class DiscoveryError(RuntimeError):
    """Remote config or OIDC discovery could not be fetched or validated."""


@asynccontextmanager
async def http_client(client: Optional[httpx.AsyncClient] = None) -> AsyncIterator[httpx.AsyncClient]:
    """Yield ``client`` unchanged, or a short-lived client that is closed on exit."""
    if client is not None:
        yield client
        return
    async with httpx.AsyncClient(
        timeout=httpx.Timeout(DEFAULT_HTTP_TIMEOUT_SECONDS),
        headers={"Accept": "application/json"},
        follow_redirects=True,
    ) as owned:
        yield owned


async def _get_json(client: httpx.AsyncClient, url: str, what: str) -> Any:
    logger.debug("GET %s", url)
    try:
        response = await client.get(url)
    except httpx.HTTPError as exc:
        raise DiscoveryError(f"Failed to fetch {what}: {exc}") from exc
    logger.debug("Response: %s", response.status_code)

    if response.status_code < 200 or response.status_code >= 300:
        raise DiscoveryError(f"Failed to fetch {what} ({response.status_code}): {url}")
    try:
        return response.json()
    except json.JSONDecodeError as exc:
        raise DiscoveryError(f"Invalid JSON in {what} from {url}") from exc


async def fetch_remote_config(url: str, *, client: Optional[httpx.AsyncClient] = None) -> RemoteConfig:
    async with http_client(client) as http:
        data = await _get_json(http, url, "config")
    try:
        return RemoteConfig.from_dict(data)
    except ConfigStoreError as exc:
        raise DiscoveryError(str(exc)) from exc


def load_remote_config_from_file(file_path: str) -> RemoteConfig:
    path = Path(file_path).expanduser().resolve()
    try:
        data = json.loads(path.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as exc:
        raise DiscoveryError(f"Failed to read config file: {path}") from exc
    try:
        return RemoteConfig.from_dict(data)
    except ConfigStoreError as exc:
        raise DiscoveryError(str(exc)) from exc


async def fetch_oidc_discovery(
    discovery_url: str,
    *,
    client: Optional[httpx.AsyncClient] = None,
) -> OidcDiscovery:
    async with http_client(client) as http:
        data = await _get_json(http, discovery_url, "OIDC discovery document")
    try:
        return OidcDiscovery.from_dict(data)
    except ConfigStoreError as exc:
        raise DiscoveryError(str(exc)) from exc


def is_discovery_cache_stale(
    fetched_at: Optional[str],
    *,
    clock: Callable[[], float] = time.time,
) -> bool:
    fetched_epoch = parse_iso_timestamp(fetched_at)
    if fetched_epoch is None:
        return True
    return clock() - fetched_epoch > DISCOVERY_TTL_SECONDS


async def get_discovery(
    config: LocalConfig,
    config_dir: Optional[Path] = None,
    *,
    client: Optional[httpx.AsyncClient] = None,
    clock: Callable[[], float] = time.time,
) -> OidcDiscovery:
    """Return the cached discovery document while fresh, otherwise re-fetch and persist it."""
    if config.cached_discovery and not is_discovery_cache_stale(config.discovery_fetched_at, clock=clock):
        logger.debug("Using cached discovery document from %s", config.discovery_fetched_at)
        return config.cached_discovery

    discovery = await fetch_oidc_discovery(config.discovery_url, client=client)
    config.cached_discovery = discovery
    config.discovery_fetched_at = to_iso_timestamp(clock())
    write_config(config, config_dir)
    return discovery
