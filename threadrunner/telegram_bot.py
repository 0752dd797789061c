"""Telegram bot binding conversation threads to agent sessions."""

import asyncio
import logging
import re
from pathlib import Path
from typing import Optional

from telegram import Bot, Message, Update
from telegram.ext import (
    Application,
    CallbackQueryHandler,
    CommandHandler,
    ContextTypes,
    MessageHandler,
    filters,
)

from .coordinator import ExecutionCoordinator, SubmitOutcome, CancelOutcome
from .models import Attachment, QueuedMessage, SessionKey, ThreadKey
from .permission_gateway import APPROVAL_ID_PATTERN, ApprovalIOError, ApprovalMailbox
from .session_commands import CommandType, ParsedCommand, format_session_info, parse_session_command
from .tmux_controller import HostCreationError, HostNotFoundError

logger = logging.getLogger(__name__)

HISTORY_LINES = 100
HISTORY_MAX_CHARS = 3500
MESSAGE_THREAD_CACHE_SIZE = 10000

HELP_TEXT = (
    "threadrunner\n\n"
    "Every thread (forum topic or reply chain) gets its own tmux session and agent conversation.\n\n"
    "/cwd [path] - Show or set this thread's working directory\n"
    "/sessions - List live sessions\n"
    "/stop - Cancel the current execution in this thread\n"
    "/help - Show this message\n\n"
    "In-thread commands:\n"
    "🛑 <text> - Interrupt and run <text> instead\n"
    "🗑️ - Close the session and delete the thread\n"
    "✅ - Close the session and keep the thread\n"
    "🔌 <session> - Connect this thread to an existing session\n"
    "📜 - Show recent session output"
)


def _safe_filename(name: str) -> str:
    return re.sub(r"[^A-Za-z0-9._-]", "_", name) or "file"


class TelegramBot:
    """Telegram bot for threadrunner."""

    def __init__(
        self,
        token: str,
        allowed_chat_ids: Optional[list[int]] = None,
        allowed_user_ids: Optional[list[int]] = None,
        base_directory: Optional[str] = None,
        default_working_dir: Optional[str] = None,
        attachments_dir: str = "/tmp/threadrunner/attachments",
    ):
        """
        Initialize the Telegram bot.

        Args:
            token: Telegram bot token from BotFather
            allowed_chat_ids: List of chat IDs allowed to use the bot (None = allow all)
            allowed_user_ids: List of user IDs allowed to use the bot (None = allow all)
            base_directory: Root that relative /cwd paths resolve against
            default_working_dir: Working directory for threads that never set one
            attachments_dir: Where uploaded files are downloaded
        """
        self.token = token
        self.allowed_chat_ids = set(allowed_chat_ids) if allowed_chat_ids else None
        self.allowed_user_ids = set(allowed_user_ids) if allowed_user_ids else None
        self.base_directory = base_directory
        self.default_working_dir = default_working_dir
        self.attachments_dir = Path(attachments_dir).expanduser()
        self.application: Optional[Application] = None
        self.bot: Optional[Bot] = None

        self.coordinator: Optional[ExecutionCoordinator] = None
        self.mailbox: Optional[ApprovalMailbox] = None

        # Threads that are forum topics (post with message_thread_id instead of replying)
        self._forum_threads: set[ThreadKey] = set()
        # Per-thread working directory set with /cwd or by connecting
        self._thread_dirs: dict[ThreadKey, str] = {}
        # (chat_id, message_id) -> reply-chain thread, for replies to replies
        self._message_threads: dict[tuple[str, int], ThreadKey] = {}

    def _is_allowed(self, chat_id: int, user_id: Optional[int] = None) -> bool:
        """Check if a chat/user is allowed to use the bot."""
        if self.allowed_user_ids is not None:
            if user_id is None or user_id not in self.allowed_user_ids:
                return False

        if self.allowed_chat_ids is not None:
            if chat_id not in self.allowed_chat_ids:
                return False

        return True

    # -----------------------
    # Thread identity
    # -----------------------
    def thread_for_message(self, message: Message) -> ThreadKey:
        """
        Forum topics are threads; elsewhere the thread is the root of the reply
        chain, and a message that replies to nothing starts a new one.
        """
        chat = message.chat
        if getattr(chat, "is_forum", False) and message.is_topic_message and message.message_thread_id:
            thread = ThreadKey(str(chat.id), str(message.message_thread_id))
            self._forum_threads.add(thread)
            return thread
        if message.message_thread_id:
            return ThreadKey(str(chat.id), str(message.message_thread_id))
        if message.reply_to_message:
            # reply_to_message is never nested, so the root comes from what we've seen
            parent_id = message.reply_to_message.message_id
            thread = self._message_threads.get((str(chat.id), parent_id)) or ThreadKey(str(chat.id), str(parent_id))
        else:
            thread = ThreadKey(str(chat.id), str(message.message_id))
        self._remember_message(str(chat.id), message.message_id, thread)
        return thread

    def _remember_message(self, chat_id: str, message_id: int, thread: ThreadKey):
        self._message_threads[(chat_id, message_id)] = thread
        while len(self._message_threads) > MESSAGE_THREAD_CACHE_SIZE:
            self._message_threads.pop(next(iter(self._message_threads)))

    def session_key_for(self, update: Update, thread: ThreadKey) -> SessionKey:
        return SessionKey(
            user_id=str(update.effective_user.id),
            chat_id=thread.chat_id,
            thread_id=thread.thread_id,
        )

    def thread_route(self, thread: ThreadKey) -> tuple[int, Optional[int], Optional[int]]:
        """(chat_id, message_thread_id, reply_to_message_id) for posting into a thread."""
        chat_id = int(thread.chat_id)
        try:
            thread_id = int(thread.thread_id)
        except ValueError:
            return chat_id, None, None
        if thread in self._forum_threads:
            return chat_id, thread_id, None
        return chat_id, None, thread_id

    def working_directory_for(self, thread: ThreadKey) -> Optional[str]:
        if thread in self._thread_dirs:
            return self._thread_dirs[thread]
        if self.coordinator:
            mapping = self.coordinator.registry.sessions.get(str(thread))
            if mapping and mapping.working_directory:
                return mapping.working_directory
        return self.default_working_dir

    def resolve_directory(self, path: str) -> Optional[str]:
        """Absolute directory for a /cwd argument, or None if it does not exist."""
        candidate = Path(path).expanduser()
        if not candidate.is_absolute() and self.base_directory:
            candidate = Path(self.base_directory).expanduser() / candidate
        candidate = candidate.resolve()
        return str(candidate) if candidate.is_dir() else None

    # -----------------------
    # Outbound
    # -----------------------
    def _record_sent(
        self,
        chat_id: int,
        message_id: int,
        reply_to_message_id: Optional[int],
        message_thread_id: Optional[int],
    ) -> int:
        """Remember which reply chain a bot message belongs to, so replies to it stay there."""
        if reply_to_message_id is not None and message_thread_id is None:
            chat = str(chat_id)
            thread = self._message_threads.get((chat, reply_to_message_id)) or ThreadKey(chat, str(reply_to_message_id))
            self._remember_message(chat, message_id, thread)
        return message_id

    async def send_notification(
        self,
        chat_id: int,
        message: str,
        reply_to_message_id: Optional[int] = None,
        message_thread_id: Optional[int] = None,
        parse_mode: Optional[str] = None,
    ) -> Optional[int]:
        """
        Send a message.

        Returns:
            Message ID of sent message, or None on failure
        """
        if not self.bot:
            logger.error("Bot not initialized")
            return None

        try:
            msg = await self.bot.send_message(
                chat_id=chat_id,
                text=message,
                reply_to_message_id=reply_to_message_id,
                message_thread_id=message_thread_id,
                parse_mode=parse_mode,
            )
            return self._record_sent(chat_id, msg.message_id, reply_to_message_id, message_thread_id)

        except Exception as e:
            # If markdown parsing fails, retry without parse_mode
            if parse_mode:
                logger.warning(f"Markdown parsing failed, retrying as plain text: {e}")
                try:
                    msg = await self.bot.send_message(
                        chat_id=chat_id,
                        text=message.replace('\\', ''),
                        reply_to_message_id=reply_to_message_id,
                        message_thread_id=message_thread_id,
                    )
                    return self._record_sent(chat_id, msg.message_id, reply_to_message_id, message_thread_id)
                except Exception as e2:
                    logger.error(f"Failed to send plain text message: {e2}")
                    return None
            logger.error(f"Failed to send Telegram message: {e}")
            return None

    async def edit_notification(self, chat_id: int, message_id: int, message: str) -> bool:
        if not self.bot:
            return False
        try:
            await self.bot.edit_message_text(chat_id=chat_id, message_id=message_id, text=message)
            return True
        except Exception as e:
            logger.debug(f"Could not edit message {message_id}: {e}")
            return False

    async def set_reaction(self, chat_id: int, message_id: int, emoji: Optional[str]) -> bool:
        """Replace the bot's reaction on a message; None clears it."""
        if not self.bot:
            return False
        try:
            await self.bot.set_message_reaction(chat_id=chat_id, message_id=message_id, reaction=emoji)
            return True
        except Exception as e:
            logger.debug(f"Could not set reaction {emoji} on {message_id}: {e}")
            return False

    # -----------------------
    # Commands
    # -----------------------
    async def _cmd_start(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /start and /help."""
        if not self._is_allowed(update.effective_chat.id, update.effective_user.id):
            logger.warning(f"Unauthorized: chat_id={update.effective_chat.id}, user_id={update.effective_user.id}")
            await update.message.reply_text("Unauthorized.")
            return
        await update.message.reply_text(HELP_TEXT)

    async def _cmd_cwd(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /cwd [path]."""
        if not self._is_allowed(update.effective_chat.id, update.effective_user.id):
            return

        thread = self.thread_for_message(update.message)
        if not context.args:
            current = self.working_directory_for(thread)
            if current:
                await update.message.reply_text(f"📁 Working directory for this thread: `{current}`")
            else:
                await update.message.reply_text("⚠️ No working directory set. Use /cwd <path>.")
            return

        requested = " ".join(context.args)
        resolved = self.resolve_directory(requested)
        if not resolved:
            await update.message.reply_text(f"❌ Directory not found: `{requested}`")
            return

        self._thread_dirs[thread] = resolved
        logger.info(f"Working directory for {thread} set to {resolved}")
        reply = f"✅ Working directory set for this thread: `{resolved}`"
        if self.coordinator:
            session_name = await self.coordinator.change_directory(thread, resolved)
            if session_name:
                reply += f"\n📦 Session `{session_name}` moved there too."
        await update.message.reply_text(reply)

    async def _cmd_sessions(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /sessions."""
        if not self._is_allowed(update.effective_chat.id, update.effective_user.id):
            return
        if not self.coordinator:
            await update.message.reply_text("Coordinator not configured.")
            return
        await update.message.reply_text(await self.format_available_sessions())

    async def _cmd_stop(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle /stop: cancel this user's execution in the thread."""
        if not self._is_allowed(update.effective_chat.id, update.effective_user.id):
            return
        if not self.coordinator:
            return

        thread = self.thread_for_message(update.message)
        outcome = self.coordinator.cancel(self.session_key_for(update, thread))
        if outcome == CancelOutcome.CANCELLED:
            await update.message.reply_text("⏹️ Cancelling current execution...")
        elif outcome == CancelOutcome.REFUSED:
            await update.message.reply_text(
                "⚠️ The current request is waiting for your permission approval. "
                "Please approve or deny it first."
            )
        else:
            await update.message.reply_text("Nothing is running in this thread.")

    async def format_available_sessions(self) -> str:
        mappings = await asyncio.to_thread(self.coordinator.registry.list_live)
        names = sorted({m.session_name for m in mappings})
        if not names:
            return "No active sessions"
        return "\n".join(f"• `{name}`" for name in names)

    # -----------------------
    # Messages
    # -----------------------
    async def _download_attachments(self, update: Update, context: ContextTypes.DEFAULT_TYPE) -> list[Attachment]:
        message = update.message
        targets = []
        if message.document:
            doc = message.document
            targets.append((doc.file_id, doc.file_name or f"document_{message.message_id}", doc.mime_type, doc.file_size))
        if message.photo:
            photo = message.photo[-1]  # Largest size
            targets.append((photo.file_id, f"photo_{message.message_id}.jpg", "image/jpeg", photo.file_size))

        attachments = []
        for file_id, name, mimetype, size in targets:
            try:
                self.attachments_dir.mkdir(parents=True, exist_ok=True)
                path = self.attachments_dir / f"{message.message_id}_{_safe_filename(name)}"
                tg_file = await context.bot.get_file(file_id)
                await tg_file.download_to_drive(custom_path=path)
                attachments.append(Attachment(name=name, path=str(path), mimetype=mimetype, size=size or 0))
            except Exception as e:
                logger.error(f"Failed to download attachment {name}: {e}")
        return attachments

    async def _handle_message(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle thread messages: session commands, or work for the agent."""
        if not self._is_allowed(update.effective_chat.id, update.effective_user.id):
            return
        if not self.coordinator or not update.message:
            return

        message = update.message
        thread = self.thread_for_message(message)
        text = message.text or message.caption or ""

        attachments = await self._download_attachments(update, context)
        if attachments:
            names = ", ".join(a.name for a in attachments)
            await message.reply_text(f"📎 Processing {len(attachments)} file(s): {names}")

        if not text.strip() and not attachments:
            return

        command = parse_session_command(text)
        try:
            if command.type in (CommandType.COMPLETE_DELETE, CommandType.COMPLETE_KEEP):
                await self._complete_thread(update, thread, delete=command.type == CommandType.COMPLETE_DELETE)
                return
            if command.type == CommandType.CONNECT:
                await self._connect_thread(update, thread, command)
                return
            if command.type == CommandType.SHOW_HISTORY:
                await self._show_history(update, thread)
                return
            await self._submit(update, thread, command, attachments)
        except Exception as e:
            logger.error(f"Error handling message in {thread}: {e}", exc_info=True)
            await message.reply_text(f"Error: {e}")

    async def _submit(self, update: Update, thread: ThreadKey, command: ParsedCommand, attachments: list[Attachment]):
        message = update.message
        working_dir = self.working_directory_for(thread)
        if not working_dir:
            await message.reply_text(
                "⚠️ No working directory set. Set one for this thread with /cwd <path>"
                + (f" (relative to `{self.base_directory}`)" if self.base_directory else "")
            )
            return

        queued = QueuedMessage(
            text=command.message_text,
            attachments=attachments,
            is_interrupt=command.type == CommandType.INTERRUPT,
            source_message_id=message.message_id,
        )
        try:
            receipt = await self.coordinator.submit(self.session_key_for(update, thread), queued, working_dir)
        except HostCreationError as e:
            await message.reply_text(f"❌ Failed to start session: {e}")
            return

        if receipt.is_new_session:
            await message.reply_text(format_session_info(receipt.session_name))

        if receipt.outcome == SubmitOutcome.REFUSED:
            await message.reply_text(
                "⚠️ A previous request is waiting for your permission approval. "
                "Please approve or deny it before interrupting."
            )
        elif receipt.outcome == SubmitOutcome.INTERRUPTED:
            preview = command.message_text[:100] + ("..." if len(command.message_text) > 100 else "")
            await message.reply_text(f"🛑 Interrupted\nProcessing new message: {preview}")
        elif receipt.outcome == SubmitOutcome.QUEUED and receipt.queue_size > 0:
            await message.reply_text(f"📬 Message queued ({receipt.queue_size} message(s) in queue)")

    async def _complete_thread(self, update: Update, thread: ThreadKey, delete: bool):
        session_name = await self.coordinator.close_thread(thread)
        if not session_name:
            await update.message.reply_text("❌ No active session found for this thread.")
            return

        self._thread_dirs.pop(thread, None)
        if not delete:
            await update.message.reply_text(f"✅ Session `{session_name}` closed. Thread preserved.")
            return

        if thread in self._forum_threads:
            chat_id, topic_id, _ = self.thread_route(thread)
            try:
                await self.bot.delete_forum_topic(chat_id=chat_id, message_thread_id=topic_id)
                self._forum_threads.discard(thread)
                return
            except Exception as e:
                logger.error(f"Failed to delete topic for {thread}: {e}")
        await update.message.reply_text(f"🗑️ Session `{session_name}` closed.")

    async def _connect_thread(self, update: Update, thread: ThreadKey, command: ParsedCommand):
        if not command.session_name:
            await update.message.reply_text("❌ Please provide a session name: 🔌 session_name")
            return

        try:
            mapping = await self.coordinator.connect_thread(thread, command.session_name)
        except HostNotFoundError:
            await update.message.reply_text(
                f"❌ Session `{command.session_name}` not found. Available sessions:\n"
                f"{await self.format_available_sessions()}"
            )
            return

        if mapping.working_directory:
            self._thread_dirs[thread] = mapping.working_directory
        await update.message.reply_text(
            format_session_info(mapping.session_name)
            + f"\n\n📁 Working Directory: `{mapping.working_directory or 'Not set'}`"
        )

    async def _show_history(self, update: Update, thread: ThreadKey):
        output = await self.coordinator.capture_history(thread, HISTORY_LINES)
        if output is None:
            await update.message.reply_text("❌ No active session found for this thread.")
            return
        if len(output) > HISTORY_MAX_CHARS:
            output = "..." + output[-HISTORY_MAX_CHARS:]
        await update.message.reply_text(f"📜 Recent output:\n```\n{output or '(empty)'}\n```")

    async def _handle_permission_callback(self, update: Update, context: ContextTypes.DEFAULT_TYPE):
        """Handle Approve/Deny button presses: write the decision for the waiting agent."""
        query = update.callback_query
        if not self._is_allowed(query.message.chat_id, query.from_user.id if query.from_user else None):
            await query.answer("Unauthorized.")
            return

        # Format: "perm:<approval_id>:allow|deny"
        parts = query.data.split(":", 2)
        if len(parts) != 3 or parts[2] not in ("allow", "deny"):
            logger.error(f"Invalid permission callback data: {query.data}")
            await query.answer("Invalid button data.")
            return

        _, approval_id, choice = parts
        if not APPROVAL_ID_PATTERN.fullmatch(approval_id):
            logger.error(f"Invalid approval id in callback: {approval_id!r}")
            await query.answer("Invalid button data.")
            return
        approved = choice == "allow"
        logger.info(f"Permission callback: approval={approval_id}, approved={approved}")

        if not self.mailbox:
            logger.error("Approval mailbox not configured!")
            await query.answer("Approvals are not configured.")
            return

        pending_ids = {r["approval_id"] for r in await asyncio.to_thread(self.mailbox.list_pending)}
        if approval_id not in pending_ids:
            logger.info(f"Ignoring callback for resolved approval {approval_id}")
            await query.answer("This request is no longer pending")
            return

        try:
            self.mailbox.write_response(approval_id, approved)
        except ApprovalIOError as e:
            logger.error(f"Failed to record approval {approval_id}: {e}")
            await query.answer(f"Error: {e}")
            return

        await query.answer("✅ Tool execution approved" if approved else "❌ Tool execution denied")

    # -----------------------
    # Lifecycle
    # -----------------------
    async def start(self):
        """Start the bot."""
        self.application = (
            Application.builder()
            .token(self.token)
            .build()
        )

        self.bot = self.application.bot

        self.application.add_handler(CommandHandler("start", self._cmd_start))
        self.application.add_handler(CommandHandler("help", self._cmd_start))
        self.application.add_handler(CommandHandler("cwd", self._cmd_cwd))
        self.application.add_handler(CommandHandler("sessions", self._cmd_sessions))
        self.application.add_handler(CommandHandler("stop", self._cmd_stop))

        self.application.add_handler(CallbackQueryHandler(self._handle_permission_callback, pattern="^perm:"))

        self.application.add_handler(
            MessageHandler(
                (filters.TEXT & ~filters.COMMAND) | filters.Document.ALL | filters.PHOTO,
                self._handle_message,
            )
        )

        await self.application.initialize()
        await self.application.start()
        await self.application.updater.start_polling()

        logger.info("Telegram bot started")

    async def stop(self):
        """Stop the bot."""
        if self.application:
            await self.application.updater.stop()
            await self.application.stop()
            await self.application.shutdown()
            logger.info("Telegram bot stopped")
