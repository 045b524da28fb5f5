import json
import subprocess
from pathlib import Path
from types import SimpleNamespace

import pytest

from aitool_cli import agents
from aitool_cli.agents import (
    AGENT_REGISTRY,
    AgentCheckResult,
    UnknownAgentError,
    check_agent,
    get_agent,
)


def _completed(returncode=0, stdout=""):
    return subprocess.CompletedProcess(args=[], returncode=returncode, stdout=stdout, stderr="")


def _no_which(binary):
    return None


class TestCheckAgent:
    def test_reports_first_line_of_version_output(self):
        calls = []

        def runner(cmd, **kwargs):
            calls.append((cmd, kwargs))
            return _completed(stdout="2.1.0 (Claude Code)\nextra\n")

        result = check_agent(AGENT_REGISTRY["claude-code"], runner=runner, which=_no_which)

        assert result.installed is True
        assert result.version == "2.1.0 (Claude Code)"
        assert result.path is None
        assert calls[0][0] == ["claude", "--version"]
        assert calls[0][1]["timeout"] == 10

    def test_nonzero_exit_falls_back_to_path_lookup(self):
        result = check_agent(
            AGENT_REGISTRY["opencode"],
            runner=lambda cmd, **kw: _completed(returncode=2),
            which=lambda binary: f"/usr/local/bin/{binary}",
        )

        assert result.installed is True
        assert result.version is None
        assert result.path == "/usr/local/bin/opencode"

    def test_missing_binary_is_not_installed(self):
        def runner(cmd, **kwargs):
            raise FileNotFoundError(cmd[0])

        result = check_agent(AGENT_REGISTRY["continue"], runner=runner, which=_no_which)

        assert result.installed is False
        assert result.error == 'binary "cn" not found in PATH'

    def test_timeout_is_not_an_error(self):
        def runner(cmd, **kwargs):
            raise subprocess.TimeoutExpired(cmd, 10)

        result = check_agent(AGENT_REGISTRY["crush"], runner=runner, which=_no_which)

        assert result.installed is False

    def test_to_dict_omits_missing_fields(self):
        result = AgentCheckResult("crush", "Crush", True, version="v0.7")
        assert result.to_dict() == {
            "id": "crush",
            "displayName": "Crush",
            "installed": True,
            "version": "v0.7",
        }


def test_get_agent_unknown():
    with pytest.raises(UnknownAgentError) as exc:
        get_agent("emacs")
    assert str(exc.value) == 'Unknown agent "emacs". Valid options: claude-code, opencode, crush, continue'


def test_only_continue_lacks_template():
    without = [a.id for a in AGENT_REGISTRY.values() if a.template is None]
    assert without == ["continue"]
    assert AGENT_REGISTRY["continue"].resolve_default_config_path() is None


def test_crush_path_on_windows(monkeypatch, tmp_path):
    monkeypatch.setattr(agents.sys, "platform", "win32")
    monkeypatch.setenv("LOCALAPPDATA", str(tmp_path))

    path = AGENT_REGISTRY["crush"].resolve_default_config_path()

    assert path == Path(tmp_path) / "crush" / "crush.json"


def test_crush_path_on_linux(monkeypatch, tmp_path):
    monkeypatch.setattr(agents.sys, "platform", "linux")
    monkeypatch.setenv("HOME", str(tmp_path))

    path = AGENT_REGISTRY["crush"].resolve_default_config_path()

    assert path == tmp_path / ".config" / "crush" / "crush.json"


# =============================================================================
# CLI
# =============================================================================

def test_list_json(capsys):
    agents.agent_list_command(SimpleNamespace(json=True))

    payload = json.loads(capsys.readouterr().out)
    assert [a["id"] for a in payload] == ["claude-code", "opencode", "crush", "continue"]
    assert payload[0]["template"] == "claudeCode.json"


def test_check_json_single_agent(monkeypatch, capsys):
    monkeypatch.setattr(
        agents,
        "check_agent",
        lambda agent: AgentCheckResult(agent.id, agent.display_name, False, error="missing"),
    )

    agents.agent_check_command(SimpleNamespace(agent="opencode", json=True))

    payload = json.loads(capsys.readouterr().out)
    assert payload == [{"id": "opencode", "displayName": "Open Code", "installed": False, "error": "missing"}]


def test_check_unknown_agent_exits(capsys):
    with pytest.raises(SystemExit) as exc:
        agents.agent_check_command(SimpleNamespace(agent="vim", json=False))

    assert exc.value.code == 1
    assert 'Unknown agent "vim"' in capsys.readouterr().err


def test_install_json_uses_platform_command(monkeypatch, capsys):
    monkeypatch.setattr(agents.sys, "platform", "darwin")

    agents.agent_install_command(SimpleNamespace(agent="opencode", json=True))

    payload = json.loads(capsys.readouterr().out)
    assert payload["installCommand"] == "brew install opencode"
    assert payload["installUrl"] == "https://opencode.ai/docs"
