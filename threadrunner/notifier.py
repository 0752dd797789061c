"""Posts execution status to conversation threads and formats agent activity."""

import json
import logging
import re
from abc import ABC, abstractmethod
from typing import Any, Optional

from .models import ThreadKey, ToolInvocation

logger = logging.getLogger(__name__)

TELEGRAM_MAX_MESSAGE = 4096

# Regex to match ANSI escape codes
ANSI_ESCAPE_RE = re.compile(
    r'\x1b\[[0-9;?]*[a-zA-Z]|'  # CSI sequences
    r'\x1b\][^\x07]*\x07|'       # OSC sequences (title, etc.)
    r'\x1b[\(\)][AB012]|'        # Character set selection
    r'[\x00-\x08\x0b\x0c\x0e-\x1f]'  # Other control characters
)


def strip_ansi(text: str) -> str:
    """Remove ANSI escape codes and control characters from captured pane output."""
    text = ANSI_ESCAPE_RE.sub('', text)
    return re.sub(r'\n{3,}', '\n\n', text)


def truncate(text: Optional[str], max_length: int) -> str:
    if not text:
        return ""
    if len(text) <= max_length:
        return text
    return text[:max_length] + "..."


def _format_edit(tool: ToolInvocation) -> str:
    data = tool.input
    if tool.name == "MultiEdit":
        edits = data.get("edits") or []
    else:
        edits = [{"old_string": data.get("old_string"), "new_string": data.get("new_string")}]

    result = f"📝 Editing `{data.get('file_path', '?')}`\n"
    for edit in edits:
        result += (
            "\n```diff\n"
            f"- {truncate(edit.get('old_string'), 200)}\n"
            f"+ {truncate(edit.get('new_string'), 200)}\n"
            "```"
        )
    return result


def format_tool_use(tools: list[ToolInvocation], text: str = "") -> str:
    """
    Render one assistant turn's tool calls for the thread.

    The task-list tool renders nothing; it is shown through the todo message.
    """
    parts = [text] if text else []

    for tool in tools:
        data = tool.input
        if tool.name in ("Edit", "MultiEdit"):
            parts.append(_format_edit(tool))
        elif tool.name == "Write":
            parts.append(f"📄 Creating `{data.get('file_path', '?')}`\n```\n{truncate(data.get('content'), 300)}\n```")
        elif tool.name == "Read":
            parts.append(f"👁️ Reading `{data.get('file_path', '?')}`")
        elif tool.name == "Bash":
            parts.append(f"🖥️ Running command:\n```bash\n{data.get('command', '')}\n```")
        elif tool.name == "TodoWrite":
            continue
        else:
            parts.append(f"🔧 Using {tool.name}")

    if not any(t.name != "TodoWrite" for t in tools):
        return ""
    return "\n\n".join(parts)


def format_permission_prompt(tool_name: str, input_payload: dict[str, Any]) -> str:
    params = truncate(json.dumps(input_payload, indent=2), 3000)
    return (
        "🔐 BLOCKED - Permission Request\n\n"
        f"The agent wants to use the tool: `{tool_name}`\n\n"
        f"Tool Parameters:\n```\n{params}\n```"
    )


class ThreadNotifier(ABC):
    """
    What the coordinator needs from a chat binding.

    Every method is best effort: implementations log failures and return
    None/False rather than raising into the execution.
    """

    @abstractmethod
    async def post(self, thread: ThreadKey, text: str) -> Optional[int]:
        """Post a new message into the thread. Returns its id, or None on failure."""

    @abstractmethod
    async def edit(self, thread: ThreadKey, message_id: int, text: str) -> bool:
        """Replace the text of a message posted earlier."""

    @abstractmethod
    async def set_reaction(self, thread: ThreadKey, message_id: int, emoji: str) -> bool:
        """Put the status emoji on a message."""

    @abstractmethod
    async def clear_reaction(self, thread: ThreadKey, message_id: int) -> bool:
        """Remove our emoji from a message."""

    def delivery_env(self, thread: ThreadKey) -> dict[str, str]:
        """Environment the permission server needs to post into this thread."""
        return {}


class Notifier(ThreadNotifier):
    """Routes thread notifications to Telegram."""

    def __init__(self, telegram_bot=None):
        self.telegram = telegram_bot

    async def post(self, thread: ThreadKey, text: str) -> Optional[int]:
        if not self.telegram:
            logger.warning("Telegram not configured")
            return None
        chat_id, topic_id, reply_to = self.telegram.thread_route(thread)
        return await self.telegram.send_notification(
            chat_id=chat_id,
            message=truncate(text, TELEGRAM_MAX_MESSAGE - 3),
            reply_to_message_id=reply_to,
            message_thread_id=topic_id,
        )

    async def edit(self, thread: ThreadKey, message_id: int, text: str) -> bool:
        if not self.telegram:
            return False
        chat_id, _, _ = self.telegram.thread_route(thread)
        return await self.telegram.edit_notification(chat_id, message_id, truncate(text, TELEGRAM_MAX_MESSAGE - 3))

    async def set_reaction(self, thread: ThreadKey, message_id: int, emoji: str) -> bool:
        if not self.telegram:
            return False
        chat_id, _, _ = self.telegram.thread_route(thread)
        return await self.telegram.set_reaction(chat_id, message_id, emoji)

    async def clear_reaction(self, thread: ThreadKey, message_id: int) -> bool:
        if not self.telegram:
            return False
        chat_id, _, _ = self.telegram.thread_route(thread)
        return await self.telegram.set_reaction(chat_id, message_id, None)

    def delivery_env(self, thread: ThreadKey) -> dict[str, str]:
        if not self.telegram:
            return {}
        chat_id, topic_id, reply_to = self.telegram.thread_route(thread)
        env = {"THREADRUNNER_CHAT_ID": str(chat_id)}
        if topic_id is not None:
            env["THREADRUNNER_MESSAGE_THREAD_ID"] = str(topic_id)
        if reply_to is not None:
            env["THREADRUNNER_REPLY_TO"] = str(reply_to)
        return env
