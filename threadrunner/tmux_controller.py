"""tmux operations for the persistent execution hosts bound to threads."""

import subprocess
from pathlib import Path
from typing import Optional
import logging

logger = logging.getLogger(__name__)


class HostCreationError(RuntimeError):
    """Raised when tmux fails to start a new session."""


class HostNotFoundError(LookupError):
    """Raised when a command references a tmux session that does not exist."""


class TmuxController:
    """Controls the tmux sessions that back conversation threads."""

    def __init__(self, config: Optional[dict] = None):
        self.config = config or {}
        tmux_config = self.config.get("tmux", {})
        self.command_timeout_seconds = tmux_config.get("command_timeout_seconds", 5)

    def _run_tmux(self, *args: str, check: bool = True) -> subprocess.CompletedProcess:
        """Run a tmux command."""
        cmd = ["tmux"] + list(args)
        logger.debug(f"Running tmux command: {' '.join(cmd)}")
        return subprocess.run(
            cmd,
            capture_output=True,
            text=True,
            check=check,
            timeout=self.command_timeout_seconds,
        )

    def session_exists(self, session_name: str) -> bool:
        """Check if a tmux session exists."""
        try:
            result = self._run_tmux("has-session", "-t", session_name, check=False)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"has-session check for {session_name} failed: {e}")
            return False
        return result.returncode == 0

    def create_session(self, session_name: str, working_dir: Optional[str] = None):
        """
        Create a new detached tmux session.

        Args:
            session_name: Name for the tmux session
            working_dir: Directory the shell starts in (tmux default if None)

        Raises:
            HostCreationError: If the directory is missing or tmux fails
        """
        args = ["new-session", "-d", "-s", session_name]
        if working_dir:
            working_path = Path(working_dir).expanduser().resolve()
            if not working_path.is_dir():
                raise HostCreationError(f"Working directory does not exist: {working_dir}")
            args += ["-c", str(working_path)]

        try:
            self._run_tmux(*args)
        except subprocess.CalledProcessError as e:
            stderr = (e.stderr or "").strip()
            logger.error(f"Failed to create tmux session {session_name}: {stderr}")
            raise HostCreationError(f"Failed to create tmux session: {stderr or e}") from e
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.error(f"Failed to create tmux session {session_name}: {e}")
            raise HostCreationError(f"Failed to create tmux session: {e}") from e

        logger.info(f"Created tmux session {session_name} in {working_dir or '(default)'}")

    def list_sessions(self) -> list[str]:
        """Names of all running tmux sessions (empty if the tmux server is down)."""
        try:
            result = self._run_tmux("list-sessions", "-F", "#{session_name}", check=False)
        except (OSError, subprocess.TimeoutExpired) as e:
            logger.warning(f"Failed to list tmux sessions: {e}")
            return []
        if result.returncode != 0:
            return []
        return [line for line in result.stdout.splitlines() if line]

    def send_input(self, session_name: str, text: str) -> bool:
        """Type a line into the session's active pane and press Enter."""
        try:
            self._run_tmux("send-keys", "-t", session_name, text, "Enter")
        except (subprocess.CalledProcessError, OSError, subprocess.TimeoutExpired) as e:
            logger.error(f"Failed to send input to {session_name}: {getattr(e, 'stderr', None) or e}")
            return False
        logger.debug(f"Sent input to {session_name}: {text[:100]}")
        return True

    def kill_session(self, session_name: str) -> bool:
        """
        Kill a tmux session.

        Returns:
            True if the session is gone afterwards
        """
        if not self.session_exists(session_name):
            logger.warning(f"Session {session_name} does not exist")
            return True  # Already gone

        try:
            self._run_tmux("kill-session", "-t", session_name)
            logger.info(f"Killed session {session_name}")
            return True
        except (subprocess.CalledProcessError, OSError, subprocess.TimeoutExpired) as e:
            logger.error(f"Failed to kill session {session_name}: {getattr(e, 'stderr', e)}")
            return False

    def capture_pane(self, session_name: str, lines: int = 100) -> Optional[str]:
        """
        Capture recent output from a session's pane.

        Args:
            session_name: Session to capture from
            lines: Number of scrollback lines to include

        Returns:
            Captured text or None on error
        """
        if not self.session_exists(session_name):
            return None

        try:
            result = self._run_tmux("capture-pane", "-t", session_name, "-p", "-S", f"-{lines}")
            return result.stdout
        except (subprocess.CalledProcessError, OSError, subprocess.TimeoutExpired) as e:
            logger.error(f"Failed to capture pane for {session_name}: {getattr(e, 'stderr', e)}")
            return None

    def get_working_directory(self, session_name: str) -> Optional[str]:
        """Current directory of the session's active pane."""
        try:
            result = self._run_tmux(
                "display-message", "-t", session_name, "-p", "#{pane_current_path}"
            )
        except (subprocess.CalledProcessError, OSError, subprocess.TimeoutExpired) as e:
            logger.error(f"Failed to get working directory for {session_name}: {getattr(e, 'stderr', e)}")
            return None
        return result.stdout.strip() or None
