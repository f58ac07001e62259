"""Tests for the CLI."""

import json

import httpx
import pytest
from click.testing import CliRunner

from agent_queue import cli as cli_mod
from agent_queue.cli import main
from agent_queue.core import worktrees as worktrees_mod
from agent_queue.core.metadata import metadata_block
from agent_queue.integrations.tracker import TrackerClient

from conftest import API_URL


@pytest.fixture
def cli_env(monkeypatch, fake):
    """A CliRunner whose commands talk to the fake tracker."""
    monkeypatch.setenv("AQ_AGENT_NAME", "bot")
    monkeypatch.setenv("AQ_TRACKER_TOKEN", "test-token")
    monkeypatch.setenv("AQ_TRACKER_REPO", "octo/repo")

    def make_client(config):
        # Each command closes its client when done
        return TrackerClient(
            config.tracker_token,
            config.tracker_repo,
            api_url=API_URL,
            transport=httpx.MockTransport(fake.handler),
            sleep=lambda seconds: None,
        )

    monkeypatch.setattr(cli_mod, "_make_client", make_client)
    return CliRunner()


class TestCLI:
    def test_help(self, cli_env):
        result = cli_env.invoke(main, ["--help"])
        assert result.exit_code == 0
        for command in ("run", "task", "worktree", "mcp"):
            assert command in result.output


class TestTaskCommands:
    def test_task_add(self, cli_env, fake):
        result = cli_env.invoke(main, ["task", "add", "Fix the build", "-p", "high", "-b", "CI is red"])
        assert result.exit_code == 0, result.output
        assert "Created task: #1" in result.output
        assert "Assignee: bot" in result.output
        assert set(fake.labels(1)) == {"task", "agent:bot", "status:assigned", "priority:high"}

    def test_task_add_requires_assignee(self, cli_env, monkeypatch, fake):
        monkeypatch.delenv("AQ_AGENT_NAME")
        result = cli_env.invoke(main, ["task", "add", "Orphan"])
        assert result.exit_code == 1
        assert fake.issues == {}

    def test_task_list(self, cli_env, fake):
        fake.add_issue(
            "Retry me", ["task", "agent:bot", "status:assigned", "priority:low"],
            body=metadata_block("meta", {"retries": 2}),
        )
        fake.add_issue("Busy", ["task", "agent:other", "status:in-progress"])

        result = cli_env.invoke(main, ["task", "list"])
        assert result.exit_code == 0
        assert "○ #1: Retry me (assigned, bot) [low] [retries: 2]" in result.output
        assert "● #2: Busy (in-progress, other)" in result.output

        result = cli_env.invoke(main, ["task", "list", "-a", "other"])
        assert "Retry me" not in result.output

    def test_task_list_empty(self, cli_env):
        result = cli_env.invoke(main, ["task", "list"])
        assert result.exit_code == 0
        assert "No tasks found." in result.output

    def test_task_list_json(self, cli_env, fake):
        fake.add_issue("One", ["task", "agent:bot", "status:assigned"])
        result = cli_env.invoke(main, ["task", "list", "--json"])
        data = json.loads(result.output)
        assert data[0]["id"] == 1
        assert data[0]["status"] == "assigned"

    def test_task_show(self, cli_env, fake):
        number = fake.add_issue(
            "Planned", ["task", "agent:bot", "status:planned"],
            body=metadata_block("meta", {"workspace": "~/proj", "delegated_from": "lead"}),
        )
        fake.add_comment(number, metadata_block("plan", {"goals": ["Do A"], "effort": "small"}))

        result = cli_env.invoke(main, ["task", "show", str(number)])
        assert result.exit_code == 0
        assert "Workspace: ~/proj" in result.output
        assert "Delegated from: lead" in result.output
        assert "Plan (small):" in result.output
        assert "- Do A" in result.output

        data = json.loads(cli_env.invoke(main, ["task", "show", str(number), "--json"]).output)
        assert data["plan"]["goals"] == ["Do A"]
        assert data["comments"] == 1

    def test_task_show_missing(self, cli_env):
        result = cli_env.invoke(main, ["task", "show", "404"])
        assert result.exit_code == 1
        assert "Error:" in result.output

    def test_task_status(self, cli_env, fake):
        number = fake.add_issue("t", ["task", "agent:bot", "status:assigned"])
        result = cli_env.invoke(main, ["task", "status", str(number), "failed"])
        assert result.exit_code == 0
        assert f"Task #{number} -> failed" in result.output
        assert "status:failed" in fake.labels(number)

    def test_task_status_invalid(self, cli_env, fake):
        number = fake.add_issue("t", ["task", "status:assigned"])
        result = cli_env.invoke(main, ["task", "status", str(number), "done"])
        assert result.exit_code == 1
        assert "invalid status" in result.output
        assert fake.calls("PUT") == []

    def test_task_plan_and_complete(self, cli_env, fake):
        number = fake.add_issue("t", ["task", "agent:bot", "status:in-progress"])
        result = cli_env.invoke(
            main, ["task", "plan", str(number), "-g", "One", "-g", "Two", "-f", "x.py"]
        )
        assert result.exit_code == 0
        assert "2 goal(s), effort medium" in result.output

        result = cli_env.invoke(main, ["task", "complete", str(number), "All done", "-m", "x.py"])
        assert result.exit_code == 0
        assert "status:completed" in fake.labels(number)
        assert fake.issues[number]["state"] == "closed"

    def test_task_comment(self, cli_env, fake):
        number = fake.add_issue("t", ["task"])
        result = cli_env.invoke(main, ["task", "comment", str(number), "Looks good"])
        assert result.exit_code == 0
        assert fake.comment_bodies(number) == ["Looks good"]

    def test_missing_tracker_config(self, cli_env, monkeypatch):
        monkeypatch.delenv("AQ_TRACKER_TOKEN")
        result = cli_env.invoke(main, ["task", "list"])
        assert result.exit_code == 1
        assert "must be configured" in result.output


class TestRunCommand:
    def test_run_without_config_exits_1(self, monkeypatch):
        monkeypatch.delenv("AQ_AGENT_NAME", raising=False)
        result = CliRunner().invoke(main, ["run"])
        assert result.exit_code == 1
        assert "Missing required configuration" in result.output

    def test_run_passes_overrides(self, cli_env, monkeypatch, tmp_path):
        seen = {}

        class StubDaemon:
            def __init__(self, config):
                seen["config"] = config

            def run(self):
                return 0

        monkeypatch.setattr("agent_queue.core.daemon.Daemon", StubDaemon)
        monkeypatch.setattr("agent_queue.log.setup_logging", lambda config: None)

        result = cli_env.invoke(
            main,
            ["run", "--agent-name", "other", "--branch", "--webhook-port", "0",
             "--work-dir", str(tmp_path), "--timeout", "60"],
        )
        assert result.exit_code == 0, result.output
        config = seen["config"]
        assert config.agent_name == "other"
        assert config.use_worktree is False
        assert config.webhook_port == 0
        assert config.work_dir == tmp_path.resolve()
        assert config.execution_timeout == 60


class TestWorktreeCommands:
    def test_clean(self, git_repo):
        worktrees_mod.create_worktree(git_repo, "bot", 1)
        result = CliRunner().invoke(main, ["worktree", "clean", str(git_repo)])
        assert result.exit_code == 0
        assert "Removed:" in result.output
        assert not (git_repo / ".worktrees" / "bot").exists()

    def test_clean_nothing(self, tmp_path):
        result = CliRunner().invoke(main, ["worktree", "clean", str(tmp_path)])
        assert result.exit_code == 0
        assert "No stale worktrees." in result.output
