"""Inbound command vocabulary for thread messages."""

from dataclasses import dataclass
from enum import Enum
from typing import Optional


class CommandType(Enum):
    INTERRUPT = "interrupt"
    COMPLETE_DELETE = "complete_delete"
    COMPLETE_KEEP = "complete_keep"
    CONNECT = "connect"
    SHOW_HISTORY = "show_history"
    NORMAL = "normal"


# Emoji prefix and its textual alias, checked in this order
COMMAND_PREFIXES: list[tuple[CommandType, str, str]] = [
    (CommandType.INTERRUPT, "🛑", ":octagonal_sign:"),
    (CommandType.COMPLETE_DELETE, "🗑️", ":wastebasket:"),
    (CommandType.COMPLETE_KEEP, "✅", ":white_check_mark:"),
    (CommandType.CONNECT, "🔌", ":electric_plug:"),
    (CommandType.SHOW_HISTORY, "📜", ":scroll:"),
]


@dataclass
class ParsedCommand:
    type: CommandType
    message_text: str  # Text with the command prefix removed
    session_name: Optional[str] = None  # Only for connect


def _match_prefix(text: str, emoji: str, alias: str) -> Optional[str]:
    for prefix in (emoji, alias):
        if text.startswith(prefix):
            return prefix
    # The wastebasket emoji is often sent without its variation selector
    bare = emoji.rstrip("\ufe0f")
    if bare != emoji and text.startswith(bare):
        return bare
    return None


def parse_session_command(text: str) -> ParsedCommand:
    """Classify a message by its leading command prefix."""
    trimmed = (text or "").strip()

    for command_type, emoji, alias in COMMAND_PREFIXES:
        prefix = _match_prefix(trimmed, emoji, alias)
        if prefix is None:
            continue

        rest = trimmed[len(prefix):].strip()
        if command_type == CommandType.CONNECT:
            parts = rest.split(None, 1)
            return ParsedCommand(
                type=command_type,
                session_name=parts[0] if parts else None,
                message_text=parts[1] if len(parts) > 1 else "",
            )
        return ParsedCommand(type=command_type, message_text=rest)

    return ParsedCommand(type=CommandType.NORMAL, message_text=trimmed)


def format_session_info(session_name: str) -> str:
    """Banner posted when a thread is bound to a session."""
    return (
        f"📦 Session: `{session_name}`\n\n"
        f"This thread is now connected to tmux session `{session_name}`.\n\n"
        "Commands:\n"
        "• 🛑 or `:octagonal_sign:` - Interrupt current execution\n"
        "• 🗑️ or `:wastebasket:` - Complete & delete thread\n"
        "• ✅ or `:white_check_mark:` - Complete & keep thread\n"
        "• 🔌 or `:electric_plug:` session_name - Connect to existing session\n"
        "• 📜 or `:scroll:` - Show recent session output"
    )
