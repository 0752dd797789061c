"""
Permission prompt MCP server, run by the agent subprocess over stdio.

The agent calls `permission_prompt` before a privileged tool runs. We post
Approve/Deny buttons to the requesting thread, then block on the approval
mailbox until the orchestrator writes the decision. stdout is the MCP
channel, so all logging goes to stderr.
"""

import json
import logging
import os
from dataclasses import dataclass
from typing import Any, Optional

from mcp.server.fastmcp import FastMCP
from telegram import Bot, InlineKeyboardButton, InlineKeyboardMarkup

from .models import PermissionDecision, PermissionExchange
from .notifier import format_permission_prompt
from .permission_gateway import ApprovalMailbox, PermissionGateway

logger = logging.getLogger(__name__)


def create_approval_keyboard(approval_id: str) -> InlineKeyboardMarkup:
    """Approve/Deny buttons tagged with the approval id."""
    keyboard = [
        [
            InlineKeyboardButton("✅ Approve", callback_data=f"perm:{approval_id}:allow"),
            InlineKeyboardButton("❌ Deny", callback_data=f"perm:{approval_id}:deny"),
        ]
    ]
    return InlineKeyboardMarkup(keyboard)


def _int_or_none(value: Optional[str]) -> Optional[int]:
    try:
        return int(value) if value else None
    except ValueError:
        return None


def _float_or(value: Optional[str], default: float) -> float:
    try:
        return float(value) if value else default
    except ValueError:
        return default


@dataclass
class PromptContext:
    """Where the requesting thread lives, passed down through the environment."""
    session_key: Optional[str] = None
    chat_id: Optional[int] = None
    message_thread_id: Optional[int] = None
    reply_to_message_id: Optional[int] = None
    user_id: Optional[str] = None
    ipc_dir: str = "/tmp/threadrunner/permissions"
    poll_interval: float = 0.5
    token: Optional[str] = None

    @classmethod
    def from_env(cls, environ: Optional[dict] = None) -> "PromptContext":
        env = os.environ if environ is None else environ
        return cls(
            session_key=env.get("THREADRUNNER_SESSION_KEY"),
            chat_id=_int_or_none(env.get("THREADRUNNER_CHAT_ID")),
            message_thread_id=_int_or_none(env.get("THREADRUNNER_MESSAGE_THREAD_ID")),
            reply_to_message_id=_int_or_none(env.get("THREADRUNNER_REPLY_TO")),
            user_id=env.get("THREADRUNNER_USER_ID"),
            ipc_dir=env.get("THREADRUNNER_IPC_DIR", cls.ipc_dir),
            poll_interval=_float_or(env.get("THREADRUNNER_POLL_INTERVAL"), cls.poll_interval),
            token=env.get("TELEGRAM_BOT_TOKEN"),
        )


class PermissionServer:
    """Presents approval requests in Telegram and waits for the decision."""

    def __init__(self, context: PromptContext, bot: Optional[Bot] = None, poll_interval: float = 0.5):
        self.context = context
        self.bot = bot if bot is not None else (Bot(context.token) if context.token else None)
        self._bot_ready = False
        self._prompt_messages: dict[str, int] = {}  # approval_id -> message_id
        self.gateway = PermissionGateway(
            ApprovalMailbox(context.ipc_dir),
            poll_interval=poll_interval,
            notify=self._post_prompt,
        )

    async def _ensure_bot(self) -> Bot:
        if not self.bot:
            raise RuntimeError("No Telegram bot token configured for permission prompts")
        if self.context.chat_id is None:
            raise RuntimeError("No chat id configured for permission prompts")
        if not self._bot_ready:
            await self.bot.initialize()
            self._bot_ready = True
        return self.bot

    async def _post_prompt(self, exchange: PermissionExchange):
        bot = await self._ensure_bot()
        msg = await bot.send_message(
            chat_id=self.context.chat_id,
            text=format_permission_prompt(exchange.tool_name, exchange.input_payload),
            message_thread_id=self.context.message_thread_id,
            reply_to_message_id=self.context.reply_to_message_id,
            reply_markup=create_approval_keyboard(exchange.approval_id),
        )
        self._prompt_messages[exchange.approval_id] = msg.message_id
        logger.info(f"Posted permission prompt {exchange.approval_id} for {exchange.tool_name}")

    async def _show_outcome(self, exchange: PermissionExchange, decision: PermissionDecision):
        message_id = self._prompt_messages.pop(exchange.approval_id, None)
        if message_id is None or not self.bot:
            return
        outcome = "✅ Approved" if decision.allowed else "❌ Denied"
        text = format_permission_prompt(exchange.tool_name, exchange.input_payload).replace(
            "BLOCKED - Permission Request", f"Permission Request - {outcome}", 1
        )
        try:
            await self.bot.edit_message_text(chat_id=self.context.chat_id, message_id=message_id, text=text)
        except Exception as e:
            logger.warning(f"Failed to update permission prompt {exchange.approval_id}: {e}")

    async def handle(self, tool_name: str, input_payload: dict[str, Any]) -> PermissionDecision:
        exchange, decision = await self.gateway.request(
            tool_name,
            input_payload,
            session_key=self.context.session_key,
        )
        await self._show_outcome(exchange, decision)
        return decision


def create_server(permission_server: PermissionServer) -> FastMCP:
    mcp = FastMCP("permission-prompt")

    @mcp.tool()
    async def permission_prompt(tool_name: str, input: dict[str, Any], tool_use_id: Optional[str] = None) -> str:
        """Request user permission for tool execution via Telegram buttons."""
        decision = await permission_server.handle(tool_name, input or {})
        return json.dumps(decision.to_dict())

    return mcp


def main():
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    context = PromptContext.from_env()
    logger.info(f"Permission server starting (session={context.session_key}, ipc_dir={context.ipc_dir})")
    create_server(PermissionServer(context, poll_interval=context.poll_interval)).run()


if __name__ == "__main__":
    main()
