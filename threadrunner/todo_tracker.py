"""Tracks the agent's task list per external session and renders it."""

import logging
from typing import Optional

logger = logging.getLogger(__name__)

STATUS_ICONS = {
    "completed": "✅",
    "in_progress": "🔄",
    "pending": "⬜",
}

PRIORITY_ICONS = {
    "high": "🔴",
    "medium": "🟡",
    "low": "🟢",
}


class TodoTracker:
    """Last known todo list for each agent session id."""

    def __init__(self):
        self._todos: dict[str, list[dict]] = {}

    def get_todos(self, session_id: str) -> list[dict]:
        return self._todos.get(session_id, [])

    def update_todos(self, session_id: str, todos: list[dict]):
        self._todos[session_id] = list(todos)

    def cleanup_session(self, session_id: str):
        if self._todos.pop(session_id, None) is not None:
            logger.debug(f"Dropped todo state for agent session {session_id}")

    @staticmethod
    def _key(todo: dict, index: int) -> str:
        return str(todo.get("id") or index)

    def has_significant_change(self, old: list[dict], new: list[dict]) -> bool:
        """True when count, ids, content, or status differ."""
        if len(old) != len(new):
            return True
        for index, (before, after) in enumerate(zip(old, new)):
            if self._key(before, index) != self._key(after, index):
                return True
            if before.get("content") != after.get("content"):
                return True
            if before.get("status") != after.get("status"):
                return True
        return False

    def get_status_change(self, old: list[dict], new: list[dict]) -> Optional[str]:
        """Human-readable transitions between two lists, or None if nothing moved."""
        previous = {self._key(t, i): t for i, t in enumerate(old)}
        changes = []

        for index, todo in enumerate(new):
            key = self._key(todo, index)
            content = todo.get("content", "")
            before = previous.pop(key, None)
            if before is None:
                changes.append(f"➕ Added: {content}")
            elif before.get("status") != todo.get("status"):
                status = todo.get("status")
                if status == "completed":
                    changes.append(f"✅ Completed: {content}")
                elif status == "in_progress":
                    changes.append(f"🔄 Started: {content}")
                else:
                    changes.append(f"↩️ {content}: {before.get('status')} → {status}")

        for todo in previous.values():
            changes.append(f"➖ Removed: {todo.get('content', '')}")

        return "\n".join(changes) if changes else None

    def format_todo_list(self, todos: list[dict]) -> str:
        if not todos:
            return "📋 Task List\n\nNo tasks defined yet."

        completed = sum(1 for t in todos if t.get("status") == "completed")
        lines = [f"📋 Task List ({completed}/{len(todos)} completed)", ""]

        for status in ("in_progress", "pending", "completed"):
            for todo in todos:
                if todo.get("status", "pending") != status:
                    continue
                parts = [STATUS_ICONS.get(status, "⬜")]
                priority = PRIORITY_ICONS.get(todo.get("priority", ""))
                if priority:
                    parts.append(priority)
                parts.append(todo.get("content", ""))
                lines.append(" ".join(parts))

        return "\n".join(lines)

    @staticmethod
    def progress_state(todos: list[dict]) -> Optional[str]:
        """"completed", "in_progress", or "pending" for the list as a whole."""
        if not todos:
            return None
        if all(t.get("status") == "completed" for t in todos):
            return "completed"
        if any(t.get("status") == "in_progress" for t in todos):
            return "in_progress"
        return "pending"
