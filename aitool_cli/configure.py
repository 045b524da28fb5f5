"""
`aitool agent configure` - compare an agent's local config with the bundled
template and optionally overwrite it.

The diff is computed as ``diff(template, local)``, so keys that exist only in
the local file are reported as added and keys that exist only in the template
as removed. Applying always writes the template document; the original file is
kept next to it as ``<file>.bak``.
"""

import json
import logging
import os
import sys
from dataclasses import dataclass
from importlib import resources
from pathlib import Path
from typing import Any, Dict, List, Optional, Union

from aitool_cli import structural_diff
from aitool_cli.agents import (
    AGENT_REGISTRY,
    AgentDescriptor,
    ConfigureError,
    UnknownAgentError,
    get_agent,
)
from aitool_cli.colors import Colors, color
from aitool_cli.config import atomic_write_text
from aitool_cli.structural_diff import (
    DELTA_TYPES,
    Added,
    ArrayNode,
    ChangeCounts,
    Changed,
    Delta,
    DiffNode,
    ObjectNode,
    Removed,
)
from aitool_cli.unified_diff import colorize_diff, unified_diff

logger = logging.getLogger(__name__)

__all__ = [
    "AgentConfigureResult",
    "ConfigureError",
    "UnknownAgentError",
    "ConfigurationError",
    "TemplateNotFoundError",
    "ConfigNotFoundError",
    "ConfigParseError",
    "load_template",
    "resolve_local_config_path",
    "load_local_config",
    "configure",
    "apply_patch",
    "preview_patch",
    "format_diff_lines",
    "agent_configure_command",
]


class ConfigurationError(ConfigureError):
    """The agent or its files are not set up in a way aitool can work with."""


class TemplateNotFoundError(ConfigurationError):
    pass


class ConfigNotFoundError(ConfigurationError):
    def __init__(self, path: Path, hint: Optional[str] = None):
        self.path = path
        message = f"Local config not found: {path}"
        if hint:
            message = f"{message}. {hint}"
        super().__init__(message)


class ConfigParseError(ConfigurationError):
    def __init__(self, path: Path, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(f"Failed to parse local config at {path}: {reason}")


@dataclass
class AgentConfigureResult:
    agent_id: str
    display_name: str
    template_path: str
    local_config_path: Path
    diff: Optional[Dict[str, DiffNode]]
    counts: ChangeCounts
    raw_delta: Optional[Delta]

    @property
    def has_differences(self) -> bool:
        return self.diff is not None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "agent": self.agent_id,
            "displayName": self.display_name,
            "template": self.template_path,
            "localConfig": str(self.local_config_path),
            "counts": self.counts.to_dict(),
            "diff": (
                {key: node.to_dict() for key, node in self.diff.items()}
                if self.diff is not None else None
            ),
        }


# =============================================================================
# Loading
# =============================================================================

def _template_resource(agent: AgentDescriptor):
    if not agent.template:
        raise TemplateNotFoundError(f'Agent "{agent.id}" has no configuration template.')
    resource = resources.files("aitool_cli") / "templates" / agent.template
    if not resource.is_file():
        raise TemplateNotFoundError(f"Template file not found: {resource}")
    return resource


def load_template(agent: AgentDescriptor) -> Dict[str, Any]:
    """Load the bundled template for ``agent``."""
    resource = _template_resource(agent)
    logger.debug("Loading template %s", resource)
    return json.loads(resource.read_text(encoding="utf-8"))


def resolve_local_config_path(agent: AgentDescriptor, override: Optional[str] = None) -> Path:
    if override:
        return Path(override).expanduser()
    default_path = agent.resolve_default_config_path()
    if default_path is None:
        raise ConfigurationError(
            f'Agent "{agent.id}" has no known default config file location. '
            "Use --config-file to specify one."
        )
    return default_path


def _parse_document(raw: bytes, path: Path) -> Dict[str, Any]:
    try:
        document = json.loads(raw.decode("utf-8"))
    except (UnicodeDecodeError, json.JSONDecodeError) as exc:
        raise ConfigParseError(path, str(exc)) from exc
    if not isinstance(document, dict):
        raise ConfigParseError(path, "top-level value must be a JSON object")
    return document


def load_local_config(path: Path) -> Dict[str, Any]:
    path = Path(path)
    try:
        raw = path.read_bytes()
    except FileNotFoundError as exc:
        raise ConfigNotFoundError(path) from exc
    return _parse_document(raw, path)


# =============================================================================
# Diff / apply
# =============================================================================

def configure(
    agent_id: str,
    template: Optional[Dict[str, Any]] = None,
    local_config_path: Optional[Union[str, Path]] = None,
) -> AgentConfigureResult:
    """Diff the agent's local config against its template."""
    agent = get_agent(agent_id)
    if template is None:
        template = load_template(agent)

    path = resolve_local_config_path(agent, str(local_config_path) if local_config_path else None)
    if not local_config_path and not path.exists():
        raise ConfigNotFoundError(
            path,
            f"{agent.display_name} does not appear to be configured here. "
            "Use --config-file to point at its config file.",
        )
    local = load_local_config(path)

    delta = structural_diff.diff(template, local)
    node = structural_diff.parse(delta)
    if node is not None and not isinstance(node, ObjectNode):
        # Both documents are objects, so the root can only be an object diff.
        raise ConfigureError(f"Unexpected root diff: {node.kind}")

    return AgentConfigureResult(
        agent_id=agent.id,
        display_name=agent.display_name,
        template_path=agent.template or "",
        local_config_path=path,
        diff=node.children if node is not None else None,
        counts=structural_diff.count_changes(node),
        raw_delta=delta,
    )


def _render_document(document: Any) -> str:
    return json.dumps(document, indent=2, ensure_ascii=False) + "\n"


def apply_patch(local_config_path: Union[str, Path], patch: Any) -> Path:
    """
    Overwrite the local config and return the backup path.

    ``patch`` is either a raw delta from ``diff(template, local)``, which is
    applied to the file's current contents, or the full document to write.
    The original bytes are saved to ``<file>.bak`` before anything is replaced.
    """
    path = Path(local_config_path)
    try:
        original = path.read_bytes()
    except FileNotFoundError as exc:
        raise ConfigNotFoundError(path) from exc

    if isinstance(patch, DELTA_TYPES):
        document = structural_diff.apply(_parse_document(original, path), patch)
    else:
        document = patch

    backup_path = path.with_name(path.name + ".bak")
    with open(backup_path, "wb") as backup:
        backup.write(original)
        backup.flush()
        os.fsync(backup.fileno())
    logger.debug("Backed up %s to %s", path, backup_path)

    atomic_write_text(path, _render_document(document))
    logger.info("Wrote %s", path)
    return backup_path


def preview_patch(result: AgentConfigureResult, template: Dict[str, Any]) -> str:
    """Unified diff between the local file and what `apply_patch` would write."""
    path = result.local_config_path
    current = path.read_text(encoding="utf-8")
    return unified_diff(current, _render_document(template), str(path), f"{path} (template)")


def _fmt_value(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False)


def _format_node(label: Optional[str], node: DiffNode, depth: int) -> List[str]:
    pad = "  " * depth
    prefix = f"{label}: " if label is not None else ""

    if isinstance(node, Added):
        return [f"{pad}+ {prefix}{_fmt_value(node.value)}"]
    if isinstance(node, Removed):
        return [f"{pad}- {prefix}{_fmt_value(node.value)}"]
    if isinstance(node, Changed):
        return [
            f"{pad}~ {prefix}{_fmt_value(node.template_value)} → {_fmt_value(node.local_value)}"
        ]
    if isinstance(node, ObjectNode):
        lines = [f"{pad}  {prefix}{{"]
        for key, child in node.children.items():
            lines.extend(_format_node(key, child, depth + 1))
        lines.append(f"{pad}  }}")
        return lines
    if isinstance(node, ArrayNode):
        lines = [f"{pad}  {prefix}["]
        for child in node.items:
            lines.extend(_format_node(None, child, depth + 1))
        lines.append(f"{pad}  ]")
        return lines
    raise TypeError(f"Unsupported diff node: {type(node).__name__}")


def format_diff_lines(children: Dict[str, DiffNode]) -> List[str]:
    """Render top-level diff children as indented, kind-prefixed lines."""
    lines: List[str] = []
    for key, node in children.items():
        lines.extend(_format_node(key, node, 0))
    return lines


# =============================================================================
# CLI
# =============================================================================

_LINE_COLORS = {"+": Colors.GREEN, "-": Colors.RED, "~": Colors.YELLOW}


def _print_diff(children: Dict[str, DiffNode]) -> None:
    for line in format_diff_lines(children):
        marker = line.lstrip()[:1]
        line_color = _LINE_COLORS.get(marker)
        print(color(line, line_color) if line_color else line)


def _prompt_agent_selection() -> Optional[str]:
    """Numbered agent picker. Returns the chosen agent id or None."""
    choices = [agent for agent in AGENT_REGISTRY.values() if agent.template]
    print("Select an agent to configure:")
    for i, agent in enumerate(choices, 1):
        print(f"  {i}. {agent.display_name} ({agent.id})")
    print()

    while True:
        choice = input(f"Choice [1-{len(choices)}]: ").strip()
        if not choice:
            return None
        try:
            idx = int(choice) - 1
        except ValueError:
            print("Please enter a number.")
            continue
        if 0 <= idx < len(choices):
            return choices[idx].id
        print(f"Please enter a number between 1 and {len(choices)}.")


def _confirm(question: str) -> bool:
    answer = input(f"{question} [y/N]: ").strip().lower()
    return answer in ("y", "yes")


def agent_configure_command(args):
    """Handle `aitool agent configure`."""
    from aitool_cli.auth import token_expiry_warning

    as_json = getattr(args, "json", False)
    interactive = sys.stdin.isatty() and not as_json

    agent_id = getattr(args, "agent", None)
    if not agent_id:
        if not interactive:
            print("Error: an agent id is required when not running interactively.", file=sys.stderr)
            sys.exit(1)
        agent_id = _prompt_agent_selection()
        if not agent_id:
            print("No agent selected.")
            return

    warning = token_expiry_warning(getattr(args, "config_dir", None))
    if warning:
        print(color(warning, Colors.YELLOW), file=sys.stderr)

    try:
        agent = get_agent(agent_id)
        template = load_template(agent)
        result = configure(agent.id, template, getattr(args, "config_file", None))
    except ConfigureError as exc:
        print(f"Error: {exc}", file=sys.stderr)
        sys.exit(1)

    if as_json:
        payload = result.to_dict()
        if result.has_differences and args.yes and not args.dry_run:
            payload["backup"] = str(apply_patch(result.local_config_path, template))
            payload["applied"] = True
        print(json.dumps(payload, indent=2, ensure_ascii=False))
        if result.has_differences and "applied" not in payload:
            sys.exit(1)
        return

    print(f"Agent:        {result.display_name}")
    print(f"Template:     {result.template_path}")
    print(f"Local config: {result.local_config_path}")
    print()

    if not result.has_differences:
        print(color("✓ No differences - local config matches template.", Colors.GREEN))
        return

    counts = result.counts
    print(color("+ only in local config   - only in template   ~ differs", Colors.DIM))
    _print_diff(result.diff)
    print()
    print(f"{counts.added} added, {counts.changed} changed, {counts.removed} removed")

    if args.dry_run:
        print()
        print(colorize_diff(preview_patch(result, template)))
        sys.exit(1)

    if not args.yes:
        if not interactive:
            print("Re-run with --yes to overwrite the local config with the template.")
            sys.exit(1)
        print()
        if not _confirm(f"Overwrite {result.local_config_path} with the template?"):
            print("No changes written.")
            return

    backup_path = apply_patch(result.local_config_path, template)
    print()
    print(color(f"✓ Updated {result.local_config_path}", Colors.GREEN))
    print(f"  Backup: {backup_path}")
