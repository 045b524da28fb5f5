"""
`aitool setup` - bootstrap config.json from the identity provider settings.

The settings come from a URL, a local JSON file, or the environment
(AITOOL_AUTH_DISCOVERY / AITOOL_AUTH_CLIENT_ID). Setup fetches the OIDC
discovery document once so the first `aitool auth login` does not have to.
"""

from __future__ import annotations

import asyncio
import logging
import os
import sys
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

import httpx

from aitool_cli.colors import print_error, print_header, print_info, print_success
from aitool_cli.config import (
    DEFAULT_SCOPES,
    LocalConfig,
    RemoteConfig,
    get_config_path,
    get_credentials_path,
    to_iso_timestamp,
    write_config,
)
from aitool_cli.discovery import (
    DiscoveryError,
    fetch_oidc_discovery,
    fetch_remote_config,
    load_remote_config_from_file,
)

logger = logging.getLogger(__name__)


@dataclass
class SetupResult:
    issuer: str
    client_id: str
    config_file: Path


def reset_config(config_dir: Optional[Path] = None) -> None:
    """Remove config.json and credentials.json if present."""
    for path in (get_config_path(config_dir), get_credentials_path(config_dir)):
        try:
            path.unlink()
            logger.debug("Removed %s", path)
        except FileNotFoundError:
            pass


async def run_setup(
    remote_config: RemoteConfig,
    config_dir: Optional[Path] = None,
    *,
    reset: bool = False,
    client: Optional[httpx.AsyncClient] = None,
    clock: Callable[[], float] = time.time,
) -> SetupResult:
    discovery = await fetch_oidc_discovery(remote_config.discovery_url, client=client)
    # Only wipe the old files once the new provider has answered.
    if reset:
        reset_config(config_dir)
    config = LocalConfig(
        discovery_url=remote_config.discovery_url,
        client_id=remote_config.client_id,
        scopes=list(remote_config.scopes),
        cached_discovery=discovery,
        discovery_fetched_at=to_iso_timestamp(clock()),
    )
    config_file = write_config(config, config_dir)
    return SetupResult(issuer=discovery.issuer, client_id=config.client_id, config_file=config_file)


async def setup_from_url(
    url: str,
    config_dir: Optional[Path] = None,
    *,
    reset: bool = False,
    client: Optional[httpx.AsyncClient] = None,
) -> SetupResult:
    remote_config = await fetch_remote_config(url, client=client)
    return await run_setup(remote_config, config_dir, reset=reset, client=client)


async def setup_from_file(
    file_path: str,
    config_dir: Optional[Path] = None,
    *,
    reset: bool = False,
    client: Optional[httpx.AsyncClient] = None,
) -> SetupResult:
    remote_config = load_remote_config_from_file(file_path)
    return await run_setup(remote_config, config_dir, reset=reset, client=client)


async def setup_from_env(
    config_dir: Optional[Path] = None,
    *,
    reset: bool = False,
    client: Optional[httpx.AsyncClient] = None,
) -> SetupResult:
    discovery_url = os.getenv("AITOOL_AUTH_DISCOVERY", "").strip()
    client_id = os.getenv("AITOOL_AUTH_CLIENT_ID", "").strip()
    if not discovery_url:
        raise DiscoveryError("Environment variable AITOOL_AUTH_DISCOVERY is not set.")
    if not client_id:
        raise DiscoveryError("Environment variable AITOOL_AUTH_CLIENT_ID is not set.")

    remote_config = RemoteConfig(
        discovery_url=discovery_url,
        client_id=client_id,
        scopes=list(DEFAULT_SCOPES),
    )
    return await run_setup(remote_config, config_dir, reset=reset, client=client)


def setup_command(args):
    """Handle `aitool setup`."""
    config_dir = getattr(args, "config_dir", None)
    reset = getattr(args, "reset", False)

    if args.url:
        coro = setup_from_url(args.url, config_dir, reset=reset)
    elif args.file:
        coro = setup_from_file(args.file, config_dir, reset=reset)
    else:
        coro = setup_from_env(config_dir, reset=reset)

    try:
        result = asyncio.run(coro)
    except DiscoveryError as exc:
        print_error(f"Setup failed: {exc}")
        sys.exit(1)

    print_header("Setup complete")
    print_success(f"Identity provider: {result.issuer}")
    print_info(f"Client ID: {result.client_id}")
    print_info(f"Config saved to {result.config_file}")
    print()
    print("Next: run `aitool auth login` to sign in.")
