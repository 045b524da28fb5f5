#!/usr/bin/env python3
"""
aitool CLI - Main entry point.

Usage:
    aitool setup --url URL         # Bootstrap config from a hosted config document
    aitool setup --file PATH       # ... or from a local file
    aitool setup --from-env        # ... or from AITOOL_AUTH_DISCOVERY / AITOOL_AUTH_CLIENT_ID
    aitool auth login              # Sign in with the device authorization flow
    aitool auth status             # Show local auth state
    aitool auth refresh            # Refresh the access token if needed
    aitool auth userinfo           # Show the signed-in user's claims
    aitool auth logout             # Delete stored credentials
    aitool config show             # Show configuration
    aitool agent list              # List supported coding agents
    aitool agent check [AGENT]     # Check which agents are installed
    aitool agent install AGENT     # Show how to install an agent
    aitool agent configure [AGENT] # Compare/overwrite an agent's config with the template
    aitool version                 # Show version
"""

import argparse
import logging
import os
import sys
from pathlib import Path

from dotenv import load_dotenv

from aitool_cli import __version__

logger = logging.getLogger(__name__)


def _configure_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format='%(asctime)s - %(name)s - %(levelname)s - %(message)s',
        datefmt='%H:%M:%S',
    )
    # httpx logs every request at INFO
    logging.getLogger('httpx').setLevel(logging.DEBUG if verbose else logging.WARNING)
    logging.getLogger('httpcore').setLevel(logging.INFO if verbose else logging.WARNING)


def _load_env_files(config_dir) -> None:
    """Load .env from the config directory, then the working directory."""
    from aitool_cli.config import get_env_path

    for env_path in (get_env_path(config_dir), Path.cwd() / '.env'):
        if env_path.exists():
            load_dotenv(dotenv_path=env_path)


def cmd_setup(args):
    """Bootstrap config.json."""
    from aitool_cli.setup import setup_command
    setup_command(args)


def cmd_auth(args):
    """Authentication commands."""
    from aitool_cli import auth

    handlers = {
        "login": auth.auth_login_command,
        "logout": auth.auth_logout_command,
        "status": auth.auth_status_command,
        "refresh": auth.auth_refresh_command,
        "userinfo": auth.auth_userinfo_command,
    }
    handler = handlers.get(getattr(args, "auth_command", None), auth.auth_status_command)
    handler(args)


def cmd_config(args):
    """Configuration management."""
    from aitool_cli.config import config_command
    config_command(args)


def cmd_agent(args):
    """Coding agent commands."""
    from aitool_cli import agents

    action = getattr(args, "agent_command", None)
    if action == "configure":
        from aitool_cli.configure import agent_configure_command
        agent_configure_command(args)
    elif action == "check":
        agents.agent_check_command(args)
    elif action == "install":
        agents.agent_install_command(args)
    else:
        agents.agent_list_command(args)


def cmd_version(args):
    """Show version."""
    print(f"aitool v{__version__}")
    print(f"Python: {sys.version.split()[0]}")


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="aitool",
        description="aitool - sign in to the corporate identity provider and manage AI coding agents",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
    aitool setup --url https://example.com/aitool.json
    aitool auth login                      Sign in
    aitool agent configure claude-code     Compare ~/.claude/settings.json with the template
    aitool agent configure opencode --dry-run

For more help on a command:
    aitool <command> --help
"""
    )
    parser.add_argument(
        "--version", "-V",
        action="store_true",
        help="Show version and exit"
    )
    parser.add_argument(
        "--config-dir",
        type=Path,
        default=None,
        help="Override the aitool config directory"
    )
    parser.add_argument(
        "--verbose", "-v",
        action="store_true",
        help="Enable debug logging (also AITOOL_VERBOSE=1)"
    )

    subparsers = parser.add_subparsers(dest="command", help="Command to run")

    # =========================================================================
    # setup command
    # =========================================================================
    setup_parser = subparsers.add_parser(
        "setup",
        help="Configure the identity provider",
        description="Write config.json from a hosted config document, a file, or the environment"
    )
    source = setup_parser.add_mutually_exclusive_group(required=True)
    source.add_argument("--url", help="URL of the remote config document")
    source.add_argument("--file", help="Path to a local config document")
    source.add_argument(
        "--from-env",
        action="store_true",
        help="Use AITOOL_AUTH_DISCOVERY and AITOOL_AUTH_CLIENT_ID"
    )
    setup_parser.add_argument(
        "--reset",
        action="store_true",
        help="Delete existing config and credentials first"
    )
    setup_parser.set_defaults(func=cmd_setup)

    # =========================================================================
    # auth command
    # =========================================================================
    auth_parser = subparsers.add_parser(
        "auth",
        help="Sign in and manage credentials"
    )
    auth_subparsers = auth_parser.add_subparsers(dest="auth_command")

    auth_login = auth_subparsers.add_parser("login", help="Sign in with the device authorization flow")
    auth_login.add_argument(
        "--no-browser",
        action="store_true",
        help="Do not attempt to open the verification URL in a browser"
    )
    auth_subparsers.add_parser("logout", help="Delete stored credentials")
    auth_status = auth_subparsers.add_parser("status", help="Show local auth state")
    auth_status.add_argument("--json", action="store_true", help="Output as JSON")
    auth_subparsers.add_parser("refresh", help="Refresh the access token if it is about to expire")
    auth_subparsers.add_parser("userinfo", help="Show claims from the userinfo endpoint")
    auth_parser.set_defaults(func=cmd_auth)

    # =========================================================================
    # config command
    # =========================================================================
    config_parser = subparsers.add_parser(
        "config",
        help="View and edit configuration"
    )
    config_subparsers = config_parser.add_subparsers(dest="config_command")
    config_subparsers.add_parser("show", help="Show current configuration")
    config_get = config_subparsers.add_parser("get", help="Print a configuration value")
    config_get.add_argument("key", help="clientId, scopes or discoveryUrl")
    config_set = config_subparsers.add_parser("set", help="Set a configuration value")
    config_set.add_argument("key", help="clientId, scopes or discoveryUrl")
    config_set.add_argument("value", help="New value (scopes: space or comma separated)")
    config_subparsers.add_parser("path", help="Print config file path")
    config_parser.set_defaults(func=cmd_config)

    # =========================================================================
    # agent command
    # =========================================================================
    agent_parser = subparsers.add_parser(
        "agent",
        help="Manage AI coding agents"
    )
    agent_subparsers = agent_parser.add_subparsers(dest="agent_command")

    agent_list = agent_subparsers.add_parser("list", help="List supported agents")
    agent_list.add_argument("--json", action="store_true", help="Output as JSON")

    agent_check = agent_subparsers.add_parser("check", help="Check which agents are installed")
    agent_check.add_argument("agent", nargs="?", help="Agent id (default: all)")
    agent_check.add_argument("--json", action="store_true", help="Output as JSON")

    agent_install = agent_subparsers.add_parser("install", help="Show how to install an agent")
    agent_install.add_argument("agent", help="Agent id")
    agent_install.add_argument("--json", action="store_true", help="Output as JSON")

    agent_configure = agent_subparsers.add_parser(
        "configure",
        help="Compare an agent's config with the template and optionally overwrite it"
    )
    agent_configure.add_argument("agent", nargs="?", help="Agent id (prompted when omitted)")
    agent_configure.add_argument("--config-file", help="Local config file to compare against")
    agent_configure.add_argument("--yes", "-y", action="store_true", help="Apply without prompting")
    agent_configure.add_argument("--dry-run", action="store_true", help="Show the diff and exit")
    agent_configure.add_argument("--json", action="store_true", help="Output as JSON")
    agent_parser.set_defaults(func=cmd_agent)

    # =========================================================================
    # version command
    # =========================================================================
    version_parser = subparsers.add_parser(
        "version",
        help="Show version information"
    )
    version_parser.set_defaults(func=cmd_version)

    return parser


def main(argv=None):
    """Main entry point for aitool CLI."""
    parser = build_parser()
    args = parser.parse_args(argv)

    _load_env_files(args.config_dir)
    verbose = args.verbose or os.getenv("AITOOL_VERBOSE") == "1"
    _configure_logging(verbose)

    if args.version:
        cmd_version(args)
        return

    if not hasattr(args, "func"):
        parser.print_help()
        return

    from aitool_cli.agents import ConfigureError
    from aitool_cli.auth import AuthError, format_auth_error
    from aitool_cli.config import ConfigStoreError
    from aitool_cli.discovery import DiscoveryError

    try:
        args.func(args)
    except KeyboardInterrupt:
        print("\nCancelled.", file=sys.stderr)
        sys.exit(130)
    except (AuthError, DiscoveryError, ConfigStoreError, ConfigureError) as exc:
        logger.debug("Command failed", exc_info=True)
        print(f"Error: {format_auth_error(exc)}", file=sys.stderr)
        sys.exit(1)


if __name__ == "__main__":
    main()
