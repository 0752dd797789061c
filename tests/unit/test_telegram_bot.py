"""Unit tests for TelegramBot thread routing and handlers."""

import json
from unittest.mock import AsyncMock, MagicMock

import pytest

from conftest import write_pending_marker
from threadrunner.coordinator import CancelOutcome, SubmitOutcome, SubmitReceipt
from threadrunner.models import SessionKey, SessionMapping, ThreadKey
from threadrunner.telegram_bot import TelegramBot
from threadrunner.tmux_controller import HostCreationError, HostNotFoundError


def make_message(
    chat_id=-1001,
    message_id=100,
    text="build the API",
    is_forum=False,
    topic_id=None,
    reply_to=None,
):
    message = MagicMock()
    message.chat.id = chat_id
    message.chat.is_forum = is_forum
    message.is_topic_message = topic_id is not None
    message.message_thread_id = topic_id
    message.message_id = message_id
    message.reply_to_message = MagicMock(message_id=reply_to) if reply_to else None
    message.text = text
    message.caption = None
    message.document = None
    message.photo = []
    message.reply_text = AsyncMock()
    return message


def make_update(message, user_id=42):
    update = MagicMock()
    update.message = message
    update.effective_chat.id = message.chat.id
    update.effective_user.id = user_id
    return update


@pytest.fixture
def bot():
    tg = TelegramBot(token="test-token", default_working_dir="/srv/app")
    tg.coordinator = MagicMock()
    tg.coordinator.registry.sessions = {}
    tg.coordinator.submit = AsyncMock(
        return_value=SubmitReceipt(outcome=SubmitOutcome.STARTED, session_name="claude_chat_001")
    )
    return tg


def replies(message) -> list[str]:
    return [c.args[0] for c in message.reply_text.await_args_list]


class TestThreadIdentity:
    def test_forum_topic(self, bot):
        thread = bot.thread_for_message(make_message(is_forum=True, topic_id=55))
        assert thread == ThreadKey("-1001", "55")
        assert bot.thread_route(thread) == (-1001, 55, None)

    def test_reply_chain_root(self, bot):
        thread = bot.thread_for_message(make_message(message_id=120, reply_to=100))
        assert thread == ThreadKey("-1001", "100")
        assert bot.thread_route(thread) == (-1001, None, 100)

    def test_new_message_starts_thread(self, bot):
        assert bot.thread_for_message(make_message(message_id=100)) == ThreadKey("-1001", "100")

    def test_direct_thread_route(self, bot):
        assert bot.thread_route(ThreadKey("-1001", "direct")) == (-1001, None, None)

    def test_reply_to_bot_answer_stays_in_root_thread(self, bot):
        root = bot.thread_for_message(make_message(message_id=100))
        bot._record_sent(-1001, 101, reply_to_message_id=100, message_thread_id=None)

        follow_up = bot.thread_for_message(make_message(message_id=102, reply_to=101))
        second = bot.thread_for_message(make_message(message_id=103, reply_to=102))

        assert root == follow_up == second == ThreadKey("-1001", "100")

    @pytest.mark.asyncio
    async def test_send_notification_records_reply_chain(self, bot):
        bot.bot = MagicMock()
        bot.bot.send_message = AsyncMock(return_value=MagicMock(message_id=101))
        bot.thread_for_message(make_message(message_id=100))

        assert await bot.send_notification(chat_id=-1001, message="answer", reply_to_message_id=100) == 101

        assert bot.thread_for_message(make_message(message_id=102, reply_to=101)) == ThreadKey("-1001", "100")


class TestAccess:
    def test_allow_all_by_default(self, bot):
        assert bot._is_allowed(1, 2)

    def test_user_and_chat_lists(self):
        tg = TelegramBot(token="t", allowed_chat_ids=[-1001], allowed_user_ids=[42])
        assert tg._is_allowed(-1001, 42)
        assert not tg._is_allowed(-1001, 7)
        assert not tg._is_allowed(-2002, 42)
        assert not tg._is_allowed(-1001, None)


class TestWorkingDirectory:
    def test_default(self, bot):
        assert bot.working_directory_for(ThreadKey("c", "t")) == "/srv/app"

    def test_from_mapping(self, bot):
        bot.coordinator.registry.sessions = {
            "c-t": SessionMapping(thread_key="c-t", session_name="s", working_directory="/srv/other"),
        }
        assert bot.working_directory_for(ThreadKey("c", "t")) == "/srv/other"

    def test_resolve_relative_to_base(self, tmp_path):
        (tmp_path / "proj").mkdir()
        tg = TelegramBot(token="t", base_directory=str(tmp_path))
        assert tg.resolve_directory("proj") == str((tmp_path / "proj").resolve())
        assert tg.resolve_directory("missing") is None


class TestHandleMessage:
    @pytest.mark.asyncio
    async def test_normal_message_is_submitted(self, bot):
        message = make_message()
        await bot._handle_message(make_update(message), MagicMock())

        key, queued, working_dir = bot.coordinator.submit.await_args.args
        assert key == SessionKey(user_id="42", chat_id="-1001", thread_id="100")
        assert queued.text == "build the API"
        assert not queued.is_interrupt
        assert queued.source_message_id == 100
        assert working_dir == "/srv/app"

    @pytest.mark.asyncio
    async def test_new_session_banner(self, bot):
        bot.coordinator.submit.return_value = SubmitReceipt(
            outcome=SubmitOutcome.STARTED, session_name="claude_chat_001", is_new_session=True
        )
        message = make_message()
        await bot._handle_message(make_update(message), MagicMock())
        assert "📦 Session: `claude_chat_001`" in replies(message)[0]

    @pytest.mark.asyncio
    async def test_interrupt_refused_reply(self, bot):
        bot.coordinator.submit.return_value = SubmitReceipt(outcome=SubmitOutcome.REFUSED)
        message = make_message(text="🛑 stop now")
        await bot._handle_message(make_update(message), MagicMock())

        queued = bot.coordinator.submit.await_args.args[1]
        assert queued.is_interrupt
        assert queued.text == "stop now"
        assert "waiting for your permission approval" in replies(message)[0]

    @pytest.mark.asyncio
    async def test_queued_reply(self, bot):
        bot.coordinator.submit.return_value = SubmitReceipt(outcome=SubmitOutcome.QUEUED, queue_size=2)
        message = make_message()
        await bot._handle_message(make_update(message), MagicMock())
        assert replies(message) == ["📬 Message queued (2 message(s) in queue)"]

    @pytest.mark.asyncio
    async def test_missing_working_directory(self, bot):
        bot.default_working_dir = None
        message = make_message()
        await bot._handle_message(make_update(message), MagicMock())

        bot.coordinator.submit.assert_not_awaited()
        assert "/cwd" in replies(message)[0]

    @pytest.mark.asyncio
    async def test_host_creation_error_is_reported(self, bot):
        bot.coordinator.submit.side_effect = HostCreationError("tmux missing")
        message = make_message()
        await bot._handle_message(make_update(message), MagicMock())
        assert replies(message) == ["❌ Failed to start session: tmux missing"]

    @pytest.mark.asyncio
    async def test_unauthorized_user_is_ignored(self):
        tg = TelegramBot(token="t", allowed_user_ids=[1])
        tg.coordinator = MagicMock()
        tg.coordinator.submit = AsyncMock()
        await tg._handle_message(make_update(make_message(), user_id=42), MagicMock())
        tg.coordinator.submit.assert_not_awaited()

    @pytest.mark.asyncio
    async def test_complete_keep(self, bot):
        bot.coordinator.close_thread = AsyncMock(return_value="claude_chat_001")
        message = make_message(text="✅")
        await bot._handle_message(make_update(message), MagicMock())

        bot.coordinator.close_thread.assert_awaited_once_with(ThreadKey("-1001", "100"))
        assert replies(message) == ["✅ Session `claude_chat_001` closed. Thread preserved."]

    @pytest.mark.asyncio
    async def test_complete_delete_removes_forum_topic(self, bot):
        bot.bot = MagicMock()
        bot.bot.delete_forum_topic = AsyncMock()
        bot.coordinator.close_thread = AsyncMock(return_value="claude_chat_001")
        message = make_message(text=":wastebasket:", is_forum=True, topic_id=55)
        await bot._handle_message(make_update(message), MagicMock())

        bot.bot.delete_forum_topic.assert_awaited_once_with(chat_id=-1001, message_thread_id=55)
        assert replies(message) == []

    @pytest.mark.asyncio
    async def test_connect_sets_thread_directory(self, bot):
        bot.coordinator.connect_thread = AsyncMock(return_value=SessionMapping(
            thread_key="-1001-100", session_name="claude_slack_002", working_directory="/srv/slack",
        ))
        message = make_message(text="🔌 claude_slack_002")
        await bot._handle_message(make_update(message), MagicMock())

        bot.coordinator.connect_thread.assert_awaited_once_with(ThreadKey("-1001", "100"), "claude_slack_002")
        assert bot.working_directory_for(ThreadKey("-1001", "100")) == "/srv/slack"
        assert "📁 Working Directory: `/srv/slack`" in replies(message)[0]

    @pytest.mark.asyncio
    async def test_connect_unknown_session_lists_available(self, bot):
        bot.coordinator.connect_thread = AsyncMock(side_effect=HostNotFoundError("ghost"))
        bot.coordinator.registry.list_live.return_value = [
            SessionMapping(thread_key="x", session_name="claude_chat_004"),
        ]
        message = make_message(text="🔌 ghost")
        await bot._handle_message(make_update(message), MagicMock())

        reply = replies(message)[0]
        assert "Session `ghost` not found" in reply
        assert "`claude_chat_004`" in reply

    @pytest.mark.asyncio
    async def test_show_history_trims_output(self, bot):
        bot.coordinator.capture_history = AsyncMock(return_value="x" * 5000)
        message = make_message(text="📜")
        await bot._handle_message(make_update(message), MagicMock())

        reply = replies(message)[0]
        assert reply.startswith("📜 Recent output:\n```\n...")
        assert len(reply) < 3600


class TestStop:
    @pytest.mark.asyncio
    async def test_refused_while_awaiting_approval(self, bot):
        bot.coordinator.cancel.return_value = CancelOutcome.REFUSED
        message = make_message(text="/stop")
        await bot._cmd_stop(make_update(message), MagicMock())
        assert "waiting for your permission approval" in replies(message)[0]

    @pytest.mark.asyncio
    async def test_cancelled(self, bot):
        bot.coordinator.cancel.return_value = CancelOutcome.CANCELLED
        message = make_message(text="/stop")
        await bot._cmd_stop(make_update(message), MagicMock())
        assert replies(message) == ["⏹️ Cancelling current execution..."]


class TestCwd:
    @pytest.mark.asyncio
    async def test_set_moves_running_session(self, bot, tmp_path):
        bot.coordinator.change_directory = AsyncMock(return_value="claude_chat_001")
        message = make_message(text=f"/cwd {tmp_path}")
        context = MagicMock()
        context.args = [str(tmp_path)]

        await bot._cmd_cwd(make_update(message), context)

        thread = ThreadKey("-1001", "100")
        assert bot.working_directory_for(thread) == str(tmp_path.resolve())
        bot.coordinator.change_directory.assert_awaited_once_with(thread, str(tmp_path.resolve()))
        assert "Session `claude_chat_001` moved there too" in replies(message)[0]

    @pytest.mark.asyncio
    async def test_missing_directory(self, bot, tmp_path):
        bot.coordinator.change_directory = AsyncMock()
        message = make_message(text="/cwd nope")
        context = MagicMock()
        context.args = [str(tmp_path / "nope")]

        await bot._cmd_cwd(make_update(message), context)

        bot.coordinator.change_directory.assert_not_awaited()
        assert replies(message)[0].startswith("❌ Directory not found")


class TestPermissionCallback:
    def make_query(self, data, user_id=42):
        query = MagicMock()
        query.data = data
        query.message.chat_id = -1001
        query.from_user.id = user_id
        query.answer = AsyncMock()
        update = MagicMock()
        update.callback_query = query
        return update, query

    @pytest.mark.asyncio
    async def test_approve_writes_response(self, bot, mailbox):
        bot.mailbox = mailbox
        write_pending_marker(mailbox, "approval_123_abc")
        update, query = self.make_query("perm:approval_123_abc:allow")

        await bot._handle_permission_callback(update, MagicMock())

        data = json.loads(mailbox.response_path("approval_123_abc").read_text())
        assert data["behavior"] == "allow"
        query.answer.assert_awaited_once_with("✅ Tool execution approved")

    @pytest.mark.asyncio
    async def test_deny_writes_response(self, bot, mailbox):
        bot.mailbox = mailbox
        write_pending_marker(mailbox, "approval_123_abc")
        update, query = self.make_query("perm:approval_123_abc:deny")

        await bot._handle_permission_callback(update, MagicMock())

        assert mailbox.read_response("approval_123_abc").behavior == "deny"

    @pytest.mark.asyncio
    async def test_late_click_after_resolution_writes_nothing(self, bot, mailbox):
        bot.mailbox = mailbox
        update, query = self.make_query("perm:approval_123_abc:allow")

        await bot._handle_permission_callback(update, MagicMock())

        assert not mailbox.response_path("approval_123_abc").exists()
        query.answer.assert_awaited_once_with("This request is no longer pending")

    @pytest.mark.asyncio
    async def test_malformed_approval_id_is_rejected(self, bot, mailbox, tmp_path):
        bot.mailbox = mailbox
        update, query = self.make_query("perm:../escaped:allow")

        await bot._handle_permission_callback(update, MagicMock())

        assert not (tmp_path / "escaped.response").exists()
        assert list(mailbox.ipc_dir.iterdir()) == []
        query.answer.assert_awaited_once_with("Invalid button data.")

    @pytest.mark.asyncio
    async def test_invalid_data(self, bot, mailbox):
        bot.mailbox = mailbox
        update, query = self.make_query("perm:approval_1:maybe")

        await bot._handle_permission_callback(update, MagicMock())

        assert not mailbox.response_path("approval_1").exists()
        query.answer.assert_awaited_once_with("Invalid button data.")

    @pytest.mark.asyncio
    async def test_unauthorized(self, mailbox):
        tg = TelegramBot(token="t", allowed_user_ids=[1])
        tg.mailbox = mailbox
        update, query = self.make_query("perm:approval_1:allow", user_id=42)

        await tg._handle_permission_callback(update, MagicMock())

        assert not mailbox.response_path("approval_1").exists()


class TestOutbound:
    @pytest.mark.asyncio
    async def test_send_notification_without_bot(self, bot):
        assert await bot.send_notification(chat_id=1, message="x") is None

    @pytest.mark.asyncio
    async def test_send_notification_markdown_fallback(self, bot):
        bot.bot = MagicMock()
        bot.bot.send_message = AsyncMock(side_effect=[Exception("can't parse"), MagicMock(message_id=9)])

        result = await bot.send_notification(chat_id=1, message="a\\_b", parse_mode="MarkdownV2")

        assert result == 9
        assert bot.bot.send_message.await_args.kwargs["text"] == "a_b"

    @pytest.mark.asyncio
    async def test_set_reaction_failure_returns_false(self, bot):
        bot.bot = MagicMock()
        bot.bot.set_message_reaction = AsyncMock(side_effect=Exception("REACTION_INVALID"))
        assert await bot.set_reaction(1, 2, "🤔") is False
