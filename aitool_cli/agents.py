"""
Registry of the AI coding agents aitool knows how to check, install and configure.

Each agent is a static, immutable descriptor. Detection shells out to
``<binary> --version`` and falls back to a PATH lookup; it never raises.
"""

import json
import logging
import os
import shutil
import subprocess
import sys
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, Dict, List, Optional

from rich.console import Console
from rich.table import Table

logger = logging.getLogger(__name__)

_console = Console()

CHECK_TIMEOUT_SECONDS = 10


class ConfigureError(RuntimeError):
    """Base class for agent lookup and configuration failures."""


class UnknownAgentError(ConfigureError):
    """Raised when an agent id is not in the registry."""

    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(
            f'Unknown agent "{agent_id}". Valid options: {", ".join(AGENT_REGISTRY)}'
        )


def _home_config(*parts: str) -> Callable[[], Path]:
    return lambda: Path.home().joinpath(*parts)


def _crush_config_path() -> Path:
    if sys.platform == "win32":
        local_app_data = os.getenv("LOCALAPPDATA") or str(Path.home() / "AppData" / "Local")
        return Path(local_app_data) / "crush" / "crush.json"
    return Path.home() / ".config" / "crush" / "crush.json"


@dataclass(frozen=True)
class AgentDescriptor:
    id: str
    display_name: str
    binary: str
    url: str
    github_url: Optional[str] = None
    install_url: Optional[str] = None
    install_commands: Dict[str, str] = field(default_factory=dict)
    template: Optional[str] = None
    default_config_path: Optional[Callable[[], Path]] = None

    def resolve_default_config_path(self) -> Optional[Path]:
        return self.default_config_path() if self.default_config_path else None

    def to_dict(self) -> Dict[str, object]:
        default_path = self.resolve_default_config_path()
        return {
            "id": self.id,
            "displayName": self.display_name,
            "binary": self.binary,
            "url": self.url,
            "githubUrl": self.github_url,
            "installUrl": self.install_url,
            "template": self.template,
            "defaultConfigPath": str(default_path) if default_path else None,
        }


_CONTINUE_INSTALL = (
    "curl -fsSL https://raw.githubusercontent.com/continuedev/continue/main/"
    "extensions/cli/scripts/install.sh | bash"
)

AGENT_REGISTRY: Dict[str, AgentDescriptor] = {
    "claude-code": AgentDescriptor(
        id="claude-code",
        display_name="Claude Code",
        binary="claude",
        url="https://www.anthropic.com/claude-code",
        github_url="https://github.com/anthropics/claude-code",
        install_url="https://docs.anthropic.com/en/docs/claude-code/setup",
        install_commands={
            "mac": "curl -fsSL https://claude.ai/install.sh | bash",
            "linux": "curl -fsSL https://claude.ai/install.sh | bash",
            "windows": "irm https://claude.ai/install.ps1 | iex",
        },
        template="claudeCode.json",
        default_config_path=_home_config(".claude", "settings.json"),
    ),
    "opencode": AgentDescriptor(
        id="opencode",
        display_name="Open Code",
        binary="opencode",
        url="https://opencode.ai",
        github_url="https://github.com/sst/opencode",
        install_url="https://opencode.ai/docs",
        install_commands={
            "mac": "brew install opencode",
            "linux": "curl -fsSL https://opencode.ai/install | bash",
            "windows": "npm i -g opencode-ai@latest",
        },
        template="opencode.json",
        default_config_path=_home_config(".config", "opencode", "opencode.json"),
    ),
    "crush": AgentDescriptor(
        id="crush",
        display_name="Crush",
        binary="crush",
        url="https://charm.land",
        github_url="https://github.com/charmbracelet/crush",
        install_commands={
            "mac": "brew install charmbracelet/tap/crush",
            "linux": "go install github.com/charmbracelet/crush@latest",
            "windows": "winget install charmbracelet.crush",
        },
        template="crush.json",
        default_config_path=_crush_config_path,
    ),
    "continue": AgentDescriptor(
        id="continue",
        display_name="Continue",
        binary="cn",
        url="https://continue.dev",
        github_url="https://github.com/continuedev/continue",
        install_url="https://docs.continue.dev/cli/quickstart",
        install_commands={
            "mac": _CONTINUE_INSTALL,
            "linux": _CONTINUE_INSTALL,
            "windows": (
                "irm https://raw.githubusercontent.com/continuedev/continue/main/"
                "extensions/cli/scripts/install.ps1 | iex"
            ),
        },
    ),
}


def get_agent(agent_id: str) -> AgentDescriptor:
    try:
        return AGENT_REGISTRY[agent_id]
    except KeyError:
        raise UnknownAgentError(agent_id) from None


def _platform_key() -> str:
    if sys.platform == "darwin":
        return "mac"
    if sys.platform == "win32":
        return "windows"
    return "linux"


# =============================================================================
# Detection
# =============================================================================

@dataclass
class AgentCheckResult:
    id: str
    display_name: str
    installed: bool
    version: Optional[str] = None
    path: Optional[str] = None
    error: Optional[str] = None

    def to_dict(self) -> Dict[str, object]:
        data = {"id": self.id, "displayName": self.display_name, "installed": self.installed}
        for key, value in (("version", self.version), ("path", self.path), ("error", self.error)):
            if value is not None:
                data[key] = value
        return data


def check_agent(
    agent: AgentDescriptor,
    *,
    runner: Callable[..., subprocess.CompletedProcess] = subprocess.run,
    which: Callable[[str], Optional[str]] = shutil.which,
) -> AgentCheckResult:
    """Detect whether ``agent`` is installed. Never raises."""
    try:
        result = runner(
            [agent.binary, "--version"],
            capture_output=True,
            text=True,
            timeout=CHECK_TIMEOUT_SECONDS,
        )
        if result.returncode == 0:
            lines = (result.stdout or "").strip().splitlines()
            version = lines[0].strip() if lines else None
            return AgentCheckResult(agent.id, agent.display_name, True, version=version)
        logger.debug("%s --version exited with %s", agent.binary, result.returncode)
    except (OSError, subprocess.SubprocessError) as exc:
        logger.debug("%s --version failed: %s", agent.binary, exc)

    path = which(agent.binary)
    if path:
        return AgentCheckResult(agent.id, agent.display_name, True, path=path)
    return AgentCheckResult(
        agent.id,
        agent.display_name,
        False,
        error=f'binary "{agent.binary}" not found in PATH',
    )


# =============================================================================
# CLI commands
# =============================================================================

def agent_list_command(args):
    """List registered agents."""
    agents = list(AGENT_REGISTRY.values())
    if getattr(args, "json", False):
        print(json.dumps([a.to_dict() for a in agents], indent=2))
        return

    table = Table(title="Supported Agents")
    table.add_column("ID", style="bold cyan")
    table.add_column("Name")
    table.add_column("Binary", style="dim")
    table.add_column("Configurable", style="dim")
    table.add_column("Website", style="dim")
    for agent in agents:
        table.add_row(
            agent.id,
            agent.display_name,
            agent.binary,
            "[green]yes[/]" if agent.template else "no",
            agent.url,
        )
    _console.print(table)


def agent_check_command(args):
    """Check whether one or all agents are installed."""
    agent_id = getattr(args, "agent", None)
    try:
        agents = [get_agent(agent_id)] if agent_id else list(AGENT_REGISTRY.values())
    except UnknownAgentError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    results = [check_agent(agent) for agent in agents]

    if getattr(args, "json", False):
        print(json.dumps([r.to_dict() for r in results], indent=2))
        return

    table = Table()
    table.add_column("Agent", style="bold")
    table.add_column("Status")
    table.add_column("Details", style="dim")
    for r in results:
        status = "[green]✓ installed[/]" if r.installed else "[red]✗ not installed[/]"
        table.add_row(r.display_name, status, r.version or r.path or r.error or "")
    _console.print(table)


def agent_install_command(args):
    """Show how to install an agent."""
    try:
        agent = get_agent(args.agent)
    except UnknownAgentError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    command = agent.install_commands.get(_platform_key())
    if getattr(args, "json", False):
        print(json.dumps({
            "id": agent.id,
            "displayName": agent.display_name,
            "url": agent.url,
            "installUrl": agent.install_url,
            "installCommand": command,
        }, indent=2))
        return

    _console.print(f"[bold]{agent.display_name}[/]")
    if command:
        _console.print("\n  Install with:")
        _console.print(f"    [cyan]{command}[/]", soft_wrap=True)
    if agent.install_url:
        _console.print(f"\n  Install guide: {agent.install_url}")
    else:
        _console.print(f"\n  No install page is registered. See the website instead: {agent.url}")
    _console.print()
