"""Tests for the `teammate` CLI."""

import json
import re
from pathlib import Path

import pytest
from click.testing import CliRunner

from teammate_agents.cli.main import cli
from teammate_agents.core.config import ENABLE_ENV_VARS, clear_config_cache, load_config


# ── fixtures ──────────────────────────────────────────────────────────────────


AGENTS_YAML = """\
agents:
  - id: backend-1
    agent_type: backend
    capabilities: [api, testing]
    languages: [python]
    frameworks: [fastapi]
    success_rate: 0.8
    tasks_completed: 10
"""


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in ENABLE_ENV_VARS:
        monkeypatch.delenv(var, raising=False)
    clear_config_cache()
    yield
    clear_config_cache()


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def workspace(tmp_path):
    (tmp_path / "config").mkdir()
    (tmp_path / "config" / "agents.yaml").write_text(AGENTS_YAML)
    return tmp_path


def _run(runner, workspace, *args):
    return runner.invoke(cli, ["--workspace", str(workspace), "--teammate-mode", *args])


def _create_epic(runner, workspace, title="Billing revamp") -> str:
    result = _run(runner, workspace, "epic", "create", *title.split())
    assert result.exit_code == 0, result.output
    return re.search(r"ID: (epic-\S+)", result.output).group(1)


# ── teammate mode switch ──────────────────────────────────────────────────────


class TestDisabled:
    def test_disabled_prints_guidance_and_succeeds(self, runner, workspace):
        result = runner.invoke(cli, ["--workspace", str(workspace), "epic", "list"])

        assert result.exit_code == 0
        assert "Teammate mode is currently disabled" in result.output
        assert "teammate --teammate-mode epic list" in result.output

    def test_environment_enables(self, runner, workspace, monkeypatch):
        monkeypatch.setenv("TEAMMATE_MODE", "true")

        result = runner.invoke(cli, ["--workspace", str(workspace), "epic", "list"])

        assert result.exit_code == 0
        assert "No epics found" in result.output

    def test_config_file_enables(self, runner, workspace):
        (workspace / "config" / "teammate.yaml").write_text("enabled: true\n")

        result = runner.invoke(cli, ["--workspace", str(workspace), "teammate", "status"])

        assert result.exit_code == 0
        assert "Teammate Mode Status" in result.output

    def test_flag_overrides_environment(self, runner, workspace, monkeypatch):
        monkeypatch.setenv("TEAMMATE_MODE", "true")

        result = runner.invoke(cli, ["--workspace", str(workspace), "--no-teammate-mode", "epic", "list"])

        assert "Teammate mode is currently disabled" in result.output


class TestStartup:
    def test_malformed_agents_file_exits_cleanly(self, runner, workspace):
        (workspace / "config" / "agents.yaml").write_text("agents: [backend-1\n  - id: x\n")

        result = _run(runner, workspace, "epic", "list")

        assert result.exit_code == 1
        assert "Invalid configuration" in result.output
        assert isinstance(result.exception, SystemExit)

    def test_invalid_config_values_exit_cleanly(self, runner, workspace):
        (workspace / "config" / "teammate.yaml").write_text("enabled: true\nbalancer:\n  max_workload: lots\n")

        result = runner.invoke(cli, ["--workspace", str(workspace), "epic", "list"])

        assert result.exit_code == 1
        assert "Traceback" not in result.output

    def test_cached_config_keeps_its_workspace(self, runner, workspace):
        config_path = workspace / "config" / "teammate.yaml"
        config_path.write_text("enabled: true\n")

        result = runner.invoke(cli, ["--workspace", str(workspace), "epic", "list"])

        assert result.exit_code == 0
        assert load_config(config_path).workspace == Path(".")


# ── epic commands ─────────────────────────────────────────────────────────────


class TestEpicCommands:
    def test_create_and_list(self, runner, workspace):
        _create_epic(runner, workspace)

        result = _run(runner, workspace, "epic", "list")

        assert result.exit_code == 0
        assert "Billing" in result.output

    def test_show_json(self, runner, workspace):
        epic_id = _create_epic(runner, workspace)

        result = _run(runner, workspace, "epic", "show", epic_id, "--json")

        data = json.loads(result.output)
        assert data["epic"]["id"] == epic_id
        assert data["epic"]["state"] == "active"
        assert data["progress"]["total"] == 0

    def test_show_unknown_epic_fails(self, runner, workspace):
        result = _run(runner, workspace, "epic", "show", "epic-missing")

        assert result.exit_code == 1
        assert "Epic not found" in result.output

    def test_update_state(self, runner, workspace):
        epic_id = _create_epic(runner, workspace)

        result = _run(runner, workspace, "epic", "update", epic_id, "--state", "paused", "--phase", "design")

        assert result.exit_code == 0
        assert "paused" in result.output
        assert "v3" in result.output

    def test_invalid_transition_reported(self, runner, workspace):
        epic_id = _create_epic(runner, workspace)

        result = _run(runner, workspace, "epic", "update", epic_id, "--state", "completed")

        assert result.exit_code == 1
        assert "active -> completed" in result.output

    def test_update_without_changes(self, runner, workspace):
        epic_id = _create_epic(runner, workspace)

        result = _run(runner, workspace, "epic", "update", epic_id)

        assert "Nothing to update" in result.output

    def test_add_issue_and_auto_assign(self, runner, workspace):
        epic_id = _create_epic(runner, workspace)
        added = _run(runner, workspace, "epic", "add-issue", epic_id, "Build invoice API", "--label", "lang:python")
        assert added.exit_code == 0, added.output

        result = _run(runner, workspace, "epic", "assign", epic_id, "--auto-assign")

        assert result.exit_code == 0, result.output
        assert "Auto-assigned 1 issue(s)" in result.output
        assert "-> backend-1" in result.output

    def test_assign_requires_target(self, runner, workspace):
        epic_id = _create_epic(runner, workspace)

        result = _run(runner, workspace, "epic", "assign", epic_id)

        assert result.exit_code == 2

    def test_sync_without_tracker(self, runner, workspace):
        epic_id = _create_epic(runner, workspace)

        result = _run(runner, workspace, "epic", "sync", epic_id)

        assert result.exit_code == 0
        assert "no issue tracker configured" in result.output


# ── context commands ──────────────────────────────────────────────────────────


class TestContextCommands:
    def test_save_then_restore(self, runner, workspace):
        epic_id = _create_epic(runner, workspace)

        saved = _run(runner, workspace, "teammate", "context-save", "--epic", epic_id, "--data", '{"db": "postgres"}')
        restored = _run(runner, workspace, "teammate", "context-restore", "--epic", epic_id, "--json")

        assert saved.exit_code == 0
        assert "Context saved" in saved.output
        assert json.loads(restored.output)["context"] == {"db": "postgres"}

    def test_restore_summary(self, runner, workspace):
        epic_id = _create_epic(runner, workspace)

        result = _run(runner, workspace, "teammate", "context-restore", "--epic", epic_id)

        assert result.exit_code == 0
        assert "Context restored" in result.output
        assert "Strategy: summary" in result.output

    def test_save_invalid_json(self, runner, workspace):
        epic_id = _create_epic(runner, workspace)

        result = _run(runner, workspace, "teammate", "context-save", "--epic", epic_id, "--data", "{oops")

        assert result.exit_code == 1

    def test_clear_requires_confirmation(self, runner, workspace):
        epic_id = _create_epic(runner, workspace)

        result = _run(runner, workspace, "teammate", "context-clear", "--epic", epic_id)

        assert "Use --confirm to proceed" in result.output

    def test_clear_with_confirmation(self, runner, workspace):
        epic_id = _create_epic(runner, workspace)
        _run(runner, workspace, "teammate", "context-save", "--epic", epic_id, "--data", '{"a": 1}')

        result = _run(runner, workspace, "teammate", "context-clear", "--epic", epic_id, "--confirm")

        assert result.exit_code == 0
        assert "Context cleared" in result.output


class TestStatus:
    def test_status_lists_agents(self, runner, workspace):
        result = _run(runner, workspace, "teammate", "status")

        assert result.exit_code == 0
        assert "Total Agents: 1" in result.output
        assert "backend-1" in result.output
