"""Tests for the CLI."""

import json
import logging
import os
import re
import tempfile
from pathlib import Path

import pytest
from click.testing import CliRunner

from taskboard.cli import main


@pytest.fixture
def cli_env():
    """Set up a temp environment for CLI testing."""
    with tempfile.TemporaryDirectory() as tmp:
        env = {
            "TB_DB_PATH": str(Path(tmp) / "test.db"),
            "TB_REDIS_URL": "",
            "TB_USER": "alice",
        }
        old_env = {}
        for k, v in env.items():
            old_env[k] = os.environ.get(k)
            os.environ[k] = v
        root = logging.getLogger()
        old_handlers, old_level = list(root.handlers), root.level

        runner = CliRunner()
        runner.invoke(main, ["user", "add", "alice", "--role", "developer"])
        runner.invoke(main, ["user", "add", "bob", "--role", "developer"])
        yield runner

        root.handlers[:] = old_handlers
        root.setLevel(old_level)
        for k, v in old_env.items():
            if v is None:
                os.environ.pop(k, None)
            else:
                os.environ[k] = v


def _task_id(output):
    return re.search(r"Created task: (\w+)", output).group(1)


class TestCLI:
    def test_help(self, cli_env):
        result = cli_env.invoke(main, ["--help"])
        assert result.exit_code == 0
        assert "Taskboard CLI" in result.output

    def test_users(self, cli_env):
        result = cli_env.invoke(main, ["user", "list"])
        assert result.exit_code == 0
        assert "alice [developer]" in result.output
        assert "bob [developer]" in result.output

    def test_duplicate_user(self, cli_env):
        result = cli_env.invoke(main, ["user", "add", "alice"])
        assert result.exit_code == 1
        assert "already taken" in result.output

    def test_task_flow(self, cli_env):
        result = cli_env.invoke(main, ["task", "add", "Fix bug", "--priority", "high", "--label", "ui"])
        assert result.exit_code == 0, result.output
        assert "Position: 1" in result.output
        task_id = _task_id(result.output)

        result = cli_env.invoke(main, ["task", "list"])
        assert result.exit_code == 0
        assert "Fix bug" in result.output
        assert "1 of 1 tasks" in result.output

        result = cli_env.invoke(main, ["task", "status", task_id, "done"])
        assert result.exit_code == 0
        assert f"Updated {task_id} status to done" in result.output

        result = cli_env.invoke(main, ["task", "show", task_id])
        assert result.exit_code == 0
        assert "Completed:" in result.output
        assert "status_changed" in result.output
        assert "Labels: ui" in result.output

    def test_list_json(self, cli_env):
        cli_env.invoke(main, ["task", "add", "First"])
        cli_env.invoke(main, ["task", "add", "Second", "--priority", "critical"])
        result = cli_env.invoke(main, ["task", "list", "--json", "--sort", "priority"])
        assert result.exit_code == 0
        data = json.loads(result.output)
        assert data["total"] == 2
        assert [t["title"] for t in data["tasks"]] == ["Second", "First"]

    def test_log_time(self, cli_env):
        task_id = _task_id(cli_env.invoke(main, ["task", "add", "Work"]).output)
        cli_env.invoke(main, ["task", "log-time", task_id, "2"])
        result = cli_env.invoke(main, ["task", "log-time", task_id, "5"])
        assert result.exit_code == 0
        assert "total 7.0h" in result.output

        result = cli_env.invoke(main, ["task", "log-time", task_id, "--", "-1"])
        assert result.exit_code == 1
        assert "Hours must be greater than 0" in result.output

    def test_acting_user_option(self, cli_env):
        task_id = _task_id(cli_env.invoke(main, ["task", "add", "Private"]).output)
        result = cli_env.invoke(main, ["--as", "bob", "task", "show", task_id])
        assert result.exit_code == 1
        assert "do not have access" in result.output

        result = cli_env.invoke(main, ["--as", "bob", "task", "delete", task_id])
        assert result.exit_code == 1

        result = cli_env.invoke(main, ["task", "delete", task_id])
        assert result.exit_code == 0
        assert f"Deleted task: {task_id}" in result.output

    def test_unknown_acting_user(self, cli_env):
        result = cli_env.invoke(main, ["--as", "nobody", "task", "list"])
        assert result.exit_code == 1
        assert "User not found: nobody" in result.output

    def test_assign_and_overdue(self, cli_env):
        result = cli_env.invoke(
            main, ["--as", "bob", "task", "add", "Late", "--assignee", "alice", "--due", "2020-01-01T00:00:00Z"]
        )
        assert result.exit_code == 0, result.output
        result = cli_env.invoke(main, ["task", "overdue"])
        assert "Late" in result.output

    def test_projects(self, cli_env):
        result = cli_env.invoke(main, ["project", "add", "Web"])
        assert result.exit_code == 0
        project_id = re.search(r"Project created: (\w+)", result.output).group(1)

        result = cli_env.invoke(main, ["--as", "bob", "task", "add", "Nope", "--project", project_id])
        assert result.exit_code == 1

        cli_env.invoke(main, ["project", "add-member", project_id, "bob"])
        result = cli_env.invoke(main, ["--as", "bob", "task", "add", "Yes", "--project", project_id])
        assert result.exit_code == 0
        assert "Position: 1" in result.output

    def test_bulk_and_stats(self, cli_env):
        ids = [_task_id(cli_env.invoke(main, ["task", "add", f"T{i}"]).output) for i in range(3)]
        result = cli_env.invoke(main, ["task", "bulk", *ids, "--status", "done"])
        assert result.exit_code == 0
        assert "Updated 3 tasks" in result.output

        result = cli_env.invoke(main, ["task", "stats", "--json"])
        stats = json.loads(result.output)
        assert stats["total"] == 3
        assert stats["completed"] == 3
