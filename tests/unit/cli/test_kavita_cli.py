"""Tests for the kavita command line interface.

Commands run through click's CliRunner against a temporary data directory;
only commands that do not need a live server are exercised end to end.
"""

import json
import re
from unittest.mock import AsyncMock, patch

import pytest
from click.testing import CliRunner

from kavita_client.api_clients.network_error_handler import AuthenticationError
from kavita_client.cli import cli, run_async


@pytest.fixture
def runner():
    return CliRunner()


@pytest.fixture
def home(tmp_path, monkeypatch):
    monkeypatch.setenv("KAVITA_CLIENT_HOME", str(tmp_path))
    return tmp_path


def add_server(runner, name, url, *extra):
    result = runner.invoke(cli, ["server", "add", name, url, "--skip-check", *extra])
    assert result.exit_code == 0, result.output
    return re.search(r"Server id: (\d+)", result.output).group(1)


def stored_servers(home):
    return json.loads(json.loads((home / "store.json").read_text())["kavita_servers"])


class TestServerCommands:
    def test_add_and_list(self, runner, home):
        server_id = add_server(runner, "Home", "192.168.1.50:5000")

        result = runner.invoke(cli, ["server", "list"])

        assert result.exit_code == 0
        assert "Home" in result.output
        assert stored_servers(home)[0]["id"] == server_id
        assert stored_servers(home)[0]["base_url"] == "http://192.168.1.50:5000"

    def test_add_with_port_and_https(self, runner, home):
        add_server(runner, "Home", "https://kavita.lan:1234/", "--port", "5000", "--https")

        assert stored_servers(home)[0]["base_url"] == "https://kavita.lan:5000"

    def test_list_empty(self, runner, home):
        result = runner.invoke(cli, ["server", "list"])

        assert result.exit_code == 0
        assert "No servers registered" in result.output

    def test_use_and_remove(self, runner, home):
        first = add_server(runner, "A", "http://a")
        second = add_server(runner, "B", "http://b")

        result = runner.invoke(cli, ["server", "use", second])
        assert result.exit_code == 0

        result = runner.invoke(cli, ["server", "remove", second])
        assert result.exit_code == 0
        assert first in result.output
        assert [s["name"] for s in stored_servers(home)] == ["A"]

    def test_update(self, runner, home):
        server_id = add_server(runner, "A", "http://a")

        result = runner.invoke(cli, ["server", "update", server_id, "--url", "http://b/"])

        assert result.exit_code == 0
        assert stored_servers(home)[0]["base_url"] == "http://b"

    def test_update_requires_a_change(self, runner, home):
        server_id = add_server(runner, "A", "http://a")

        result = runner.invoke(cli, ["server", "update", server_id])

        assert result.exit_code != 0

    def test_unknown_server_exits_nonzero(self, runner, home):
        result = runner.invoke(cli, ["server", "remove", "12345"])

        assert result.exit_code == 1
        assert "No server registered" in result.output

    def test_invalid_url_exits_nonzero(self, runner, home):
        result = runner.invoke(cli, ["server", "add", "Bad", "ftp://x", "--skip-check"])

        assert result.exit_code == 1
        assert "Unsupported protocol" in result.output

    def test_unreachable_server_is_not_registered(self, runner, home):
        with patch(
            "kavita_client.cli.KavitaAPIClient.test_connection",
            new=AsyncMock(return_value=False),
        ):
            result = runner.invoke(cli, ["server", "add", "Home", "http://home"])

        assert result.exit_code == 1
        assert "Cannot reach the server" in result.output
        assert not (home / "store.json").exists()


class TestAuthCommands:
    def test_status_when_logged_out(self, runner, home):
        add_server(runner, "Home", "http://home")

        result = runner.invoke(cli, ["auth", "status"])

        assert result.exit_code == 0
        assert "Not logged in" in result.output

    def test_commands_need_a_server(self, runner, home):
        result = runner.invoke(cli, ["libraries"])

        assert result.exit_code == 1
        assert "No servers registered" in result.output

    def test_login_failure_shows_guidance(self, runner, home):
        add_server(runner, "Home", "http://home")
        error = AuthenticationError("Unauthorized. Please log in again.", 401, "Check your password")

        with patch(
            "kavita_client.cli.KavitaAPIClient.login", new=AsyncMock(side_effect=error)
        ):
            result = runner.invoke(
                cli, ["auth", "login", "--username", "alice", "--password", "bad"]
            )

        assert result.exit_code == 1
        assert "Unauthorized" in result.output
        assert "Check your password" in result.output

    def test_login_rejects_blank_username(self, runner, home):
        add_server(runner, "Home", "http://home")

        result = runner.invoke(cli, ["auth", "login", "--username", " ", "--password", "x"])

        assert result.exit_code == 1
        assert "cannot be empty" in result.output


class TestProgressCommand:
    def test_saved(self, runner, home):
        add_server(runner, "Home", "http://home")

        with patch(
            "kavita_client.cli.KavitaAPIClient.record_progress",
            new=AsyncMock(return_value=True),
        ) as record:
            result = runner.invoke(cli, ["progress", "1", "2", "3", "4"])

        assert result.exit_code == 0
        assert "Progress saved: chapter 3, page 4" in result.output
        record.assert_awaited_once_with(1, 2, 3, 4)

    def test_failed_save_exits_nonzero(self, runner, home):
        add_server(runner, "Home", "http://home")

        with patch(
            "kavita_client.cli.KavitaAPIClient.record_progress",
            new=AsyncMock(return_value=False),
        ):
            result = runner.invoke(cli, ["progress", "1", "2", "3", "4"])

        assert result.exit_code == 1
        assert "Progress not saved for chapter 3" in result.output
        assert "Progress saved" not in result.output


class TestRunAsync:
    def test_without_running_loop(self):
        async def answer():
            return 42

        assert run_async(answer()) == 42

    @pytest.mark.asyncio
    async def test_inside_running_loop(self):
        async def answer():
            return 7

        assert run_async(answer()) == 7

    def test_exceptions_propagate(self):
        async def fail():
            raise RuntimeError("boom")

        with pytest.raises(RuntimeError, match="boom"):
            run_async(fail())
