"""Thread -> tmux session registry, persisted across restarts."""

import json
import logging
from datetime import datetime
from pathlib import Path
from typing import Optional

from .models import SessionMapping
from .tmux_controller import TmuxController, HostCreationError

logger = logging.getLogger(__name__)


class SessionRegistry:
    """
    Maps conversation threads to named tmux sessions.

    The whole table plus the name counter is rewritten to a single JSON file
    on every mutation and reloaded on start. There is no cross-process
    locking: two processes writing at once can lose an update.
    """

    def __init__(
        self,
        tmux: TmuxController,
        state_file: str = "/tmp/threadrunner/sessions.json",
        session_prefix: str = "claude_chat",
    ):
        self.tmux = tmux
        self.state_file = Path(state_file).expanduser()
        self.state_file.parent.mkdir(parents=True, exist_ok=True)
        self.session_prefix = session_prefix
        self.sessions: dict[str, SessionMapping] = {}  # thread_key -> mapping
        self.counter = 0

        self._load_state()

    def _load_state(self) -> bool:
        """
        Load the session table from disk.

        Returns:
            True if state loaded successfully (or no state file exists),
            False if an error occurred during loading.
        """
        if not self.state_file.exists():
            return True

        try:
            with open(self.state_file) as f:
                data = json.load(f)
            sessions: dict[str, SessionMapping] = {}
            for thread_key, mapping_data in data.get("sessions", []):
                sessions[thread_key] = SessionMapping.from_dict(mapping_data)
            self.sessions = sessions
            self.counter = int(data.get("counter", 0))
            logger.info(f"Loaded {len(self.sessions)} session mappings (counter={self.counter})")
            return True
        except Exception as e:
            logger.error(f"CRITICAL: Failed to load session mappings from {self.state_file}: {e}")
            return False

    def _save_state(self) -> bool:
        """
        Rewrite the whole session table.

        Returns:
            True if state saved successfully, False if an error occurred.
        """
        temp_file = self.state_file.with_suffix(".tmp")
        try:
            data = {
                "sessions": [[key, m.to_dict()] for key, m in self.sessions.items()],
                "counter": self.counter,
            }
            with open(temp_file, "w") as f:
                json.dump(data, f, indent=2)
            temp_file.rename(self.state_file)
            return True
        except Exception as e:
            logger.error(f"CRITICAL: Failed to save session mappings to {self.state_file}: {e}")
            try:
                if temp_file.exists():
                    temp_file.unlink()
            except OSError:
                pass
            return False

    def _allocate_name(self) -> str:
        """Next `prefix_NNN` name not already held by a mapping."""
        taken = {m.session_name for m in self.sessions.values()}
        while True:
            self.counter += 1
            name = f"{self.session_prefix}_{self.counter:03d}"
            if name not in taken:
                return name

    def create_or_get(self, thread_key: str, working_directory: Optional[str] = None) -> str:
        """
        Return the thread's live session, creating a new one if needed.

        Raises:
            HostCreationError: If tmux could not start the session. No
                mapping is recorded in that case.
        """
        existing = self.sessions.get(thread_key)
        if existing and self.tmux.session_exists(existing.session_name):
            logger.info(f"Thread {thread_key} already has session {existing.session_name}")
            return existing.session_name

        session_name = self._allocate_name()
        try:
            self.tmux.create_session(session_name, working_directory)
        except HostCreationError:
            logger.error(f"Not recording mapping for {thread_key}: {session_name} failed to start")
            raise

        self.sessions[thread_key] = SessionMapping(
            thread_key=thread_key,
            session_name=session_name,
            created_at=datetime.now(),
            working_directory=working_directory,
        )
        self._save_state()
        logger.info(f"Created session {session_name} for thread {thread_key} (cwd={working_directory})")
        return session_name

    def get_mapping(self, thread_key: str) -> Optional[SessionMapping]:
        """The thread's mapping, only if its tmux session is still alive."""
        mapping = self.sessions.get(thread_key)
        if mapping and self.tmux.session_exists(mapping.session_name):
            return mapping
        return None

    def find(self, thread_key: str) -> Optional[str]:
        """Session name bound to a thread, checking tmux on every call."""
        mapping = self.get_mapping(thread_key)
        return mapping.session_name if mapping else None

    def find_by_name(self, session_name: str) -> Optional[SessionMapping]:
        """Earliest mapping that points at a session name."""
        matches = [m for m in self.sessions.values() if m.session_name == session_name]
        if not matches:
            return None
        return min(matches, key=lambda m: m.created_at)

    def remap_thread(self, thread_key: str, session_name: str) -> bool:
        """
        Point a thread at an existing session (the "connect" operation).

        The working directory is copied from the target's mapping, or read
        from tmux when the session was started outside this registry.

        Returns:
            False if the target session does not exist
        """
        if not self.tmux.session_exists(session_name):
            logger.warning(f"Cannot map thread {thread_key} to missing session {session_name}")
            return False

        target = self.find_by_name(session_name)
        if target:
            working_directory = target.working_directory
        else:
            working_directory = self.tmux.get_working_directory(session_name)

        self.sessions[thread_key] = SessionMapping(
            thread_key=thread_key,
            session_name=session_name,
            created_at=datetime.now(),
            working_directory=working_directory,
        )
        self._save_state()
        logger.info(f"Mapped thread {thread_key} to session {session_name} (cwd={working_directory})")
        return True

    def close(self, session_name: str) -> bool:
        """
        Kill a session and drop every mapping that points at it.

        Returns:
            False if the session is unknown or tmux refused to kill it
        """
        keys = [k for k, m in self.sessions.items() if m.session_name == session_name]
        if not keys and not self.tmux.session_exists(session_name):
            logger.warning(f"Close requested for unknown session {session_name}")
            return False

        if not self.tmux.kill_session(session_name):
            return False

        for key in keys:
            del self.sessions[key]
        if keys:
            self._save_state()
        logger.info(f"Closed session {session_name} ({len(keys)} thread mapping(s) removed)")
        return True

    def list_live(self) -> list[SessionMapping]:
        """Snapshot of mappings whose sessions are still alive (one tmux call)."""
        live = set(self.tmux.list_sessions())
        return [m for m in list(self.sessions.values()) if m.session_name in live]
