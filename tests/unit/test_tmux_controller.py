"""Unit tests for TmuxController against a patched subprocess.run."""

import subprocess
from unittest.mock import patch

import pytest

from threadrunner.tmux_controller import HostCreationError, TmuxController


def completed(returncode=0, stdout="", stderr=""):
    return subprocess.CompletedProcess(args=["tmux"], returncode=returncode, stdout=stdout, stderr=stderr)


@pytest.fixture
def tmux():
    return TmuxController({"tmux": {"command_timeout_seconds": 3}})


class TestCreateSession:
    def test_runs_new_session_in_directory(self, tmux, tmp_path):
        with patch("subprocess.run", return_value=completed()) as mock_run:
            tmux.create_session("claude_chat_001", str(tmp_path))

        cmd = mock_run.call_args.args[0]
        assert cmd == ["tmux", "new-session", "-d", "-s", "claude_chat_001", "-c", str(tmp_path.resolve())]
        assert mock_run.call_args.kwargs["timeout"] == 3
        assert mock_run.call_args.kwargs["check"] is True

    def test_missing_directory(self, tmux, tmp_path):
        with patch("subprocess.run") as mock_run:
            with pytest.raises(HostCreationError, match="Working directory does not exist"):
                tmux.create_session("claude_chat_001", str(tmp_path / "missing"))
        mock_run.assert_not_called()

    def test_tmux_failure_carries_stderr(self, tmux):
        error = subprocess.CalledProcessError(1, ["tmux"], stderr="duplicate session: claude_chat_001\n")
        with patch("subprocess.run", side_effect=error):
            with pytest.raises(HostCreationError, match="duplicate session: claude_chat_001"):
                tmux.create_session("claude_chat_001")

    def test_timeout(self, tmux):
        with patch("subprocess.run", side_effect=subprocess.TimeoutExpired(["tmux"], 3)):
            with pytest.raises(HostCreationError):
                tmux.create_session("claude_chat_001")

    def test_tmux_not_installed(self, tmux):
        with patch("subprocess.run", side_effect=FileNotFoundError("tmux")):
            with pytest.raises(HostCreationError):
                tmux.create_session("claude_chat_001")


class TestSessionQueries:
    def test_session_exists(self, tmux):
        with patch("subprocess.run", return_value=completed(0)):
            assert tmux.session_exists("a")
        with patch("subprocess.run", return_value=completed(1)):
            assert not tmux.session_exists("a")
        with patch("subprocess.run", side_effect=subprocess.TimeoutExpired(["tmux"], 3)):
            assert not tmux.session_exists("a")

    def test_list_sessions(self, tmux):
        with patch("subprocess.run", return_value=completed(stdout="claude_chat_001\nclaude_slack_002\n")) as mock_run:
            assert tmux.list_sessions() == ["claude_chat_001", "claude_slack_002"]
        assert mock_run.call_args.args[0] == ["tmux", "list-sessions", "-F", "#{session_name}"]

    def test_list_sessions_without_server(self, tmux):
        with patch("subprocess.run", return_value=completed(1, stderr="no server running")):
            assert tmux.list_sessions() == []
        with patch("subprocess.run", side_effect=FileNotFoundError("tmux")):
            assert tmux.list_sessions() == []

    def test_get_working_directory(self, tmux):
        with patch("subprocess.run", return_value=completed(stdout="/srv/app\n")):
            assert tmux.get_working_directory("a") == "/srv/app"

    def test_get_working_directory_errors(self, tmux):
        error = subprocess.CalledProcessError(1, ["tmux"], stderr="can't find session")
        with patch("subprocess.run", side_effect=error):
            assert tmux.get_working_directory("ghost") is None
        with patch("subprocess.run", side_effect=subprocess.TimeoutExpired(["tmux"], 3)):
            assert tmux.get_working_directory("ghost") is None


class TestSessionControl:
    def test_send_input(self, tmux):
        with patch("subprocess.run", return_value=completed()) as mock_run:
            assert tmux.send_input("a", "cd '/srv/my project'")
        assert mock_run.call_args.args[0] == ["tmux", "send-keys", "-t", "a", "cd '/srv/my project'", "Enter"]

    def test_send_input_failure(self, tmux):
        error = subprocess.CalledProcessError(1, ["tmux"], stderr="can't find session")
        with patch("subprocess.run", side_effect=error):
            assert tmux.send_input("ghost", "ls") is False

    def test_kill_session(self, tmux):
        with patch("subprocess.run", side_effect=[completed(0), completed(0)]) as mock_run:
            assert tmux.kill_session("a")
        assert mock_run.call_args.args[0] == ["tmux", "kill-session", "-t", "a"]

    def test_kill_missing_session_is_success(self, tmux):
        with patch("subprocess.run", return_value=completed(1)) as mock_run:
            assert tmux.kill_session("gone")
        assert mock_run.call_count == 1

    def test_kill_failure(self, tmux):
        error = subprocess.CalledProcessError(1, ["tmux"], stderr="permission denied")
        with patch("subprocess.run", side_effect=[completed(0), error]):
            assert tmux.kill_session("a") is False
        with patch("subprocess.run", side_effect=[completed(0), subprocess.TimeoutExpired(["tmux"], 3)]):
            assert tmux.kill_session("a") is False

    def test_capture_pane(self, tmux):
        with patch("subprocess.run", side_effect=[completed(0), completed(stdout="$ make\nok\n")]) as mock_run:
            assert tmux.capture_pane("a", lines=50) == "$ make\nok\n"
        assert mock_run.call_args.args[0] == ["tmux", "capture-pane", "-t", "a", "-p", "-S", "-50"]
