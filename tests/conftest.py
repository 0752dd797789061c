"""Shared pytest fixtures for threadrunner tests."""

import asyncio
import json
from pathlib import Path
from typing import Optional
from unittest.mock import MagicMock, AsyncMock

import pytest
from fastapi.testclient import TestClient

from threadrunner.coordinator import ExecutionCoordinator
from threadrunner.message_queue import MessageQueue
from threadrunner.models import AgentEvent, AgentEventType, SessionKey, ToolInvocation
from threadrunner.notifier import ThreadNotifier
from threadrunner.permission_gateway import ApprovalMailbox
from threadrunner.server import create_app
from threadrunner.session_registry import SessionRegistry
from threadrunner.tmux_controller import TmuxController


@pytest.fixture
def mock_tmux() -> MagicMock:
    """
    Mock TmuxController for testing without actual tmux sessions.

    Sessions "exist" once created; kill_session removes them.
    """
    mock = MagicMock(spec=TmuxController)
    live: set[str] = set()
    mock.live_sessions = live

    mock.session_exists.side_effect = lambda name: name in live
    mock.list_sessions.side_effect = lambda: sorted(live)
    mock.create_session.side_effect = lambda name, working_dir=None: live.add(name)

    def _kill(name):
        live.discard(name)
        return True

    mock.kill_session.side_effect = _kill
    mock.capture_pane.return_value = "Mock tmux output"
    mock.get_working_directory.return_value = "/tmp/external"
    return mock


@pytest.fixture
def temp_state_file(tmp_path) -> Path:
    """Path for a registry state file that does not exist yet."""
    return tmp_path / "state" / "sessions.json"


@pytest.fixture
def registry(mock_tmux, temp_state_file) -> SessionRegistry:
    return SessionRegistry(mock_tmux, state_file=str(temp_state_file), session_prefix="claude_chat")


@pytest.fixture
def ipc_dir(tmp_path) -> Path:
    return tmp_path / "permissions"


@pytest.fixture
def mailbox(ipc_dir) -> ApprovalMailbox:
    return ApprovalMailbox(str(ipc_dir))


@pytest.fixture
def session_key() -> SessionKey:
    return SessionKey(user_id="42", chat_id="-1001", thread_id="7")


class FakeStream:
    """Agent stream fed from a list of events, or from a queue when gated."""

    def __init__(self, events: Optional[list[AgentEvent]] = None, gated: bool = False, error: Optional[Exception] = None):
        self.events = list(events or [])
        self.error = error
        self.gate: Optional[asyncio.Queue] = asyncio.Queue() if gated else None
        self.closed = False

    def __aiter__(self):
        return self

    async def __anext__(self) -> AgentEvent:
        if self.gate is not None:
            event = await self.gate.get()
            if event is None:
                raise StopAsyncIteration
            return event
        if self.events:
            return self.events.pop(0)
        if self.error:
            raise self.error
        raise StopAsyncIteration

    async def close(self):
        self.closed = True


class FakeAgent:
    """Returns prepared FakeStreams in order and records each prompt."""

    def __init__(self):
        self.streams: list[FakeStream] = []
        self.calls: list[dict] = []

    def add(self, stream: FakeStream) -> FakeStream:
        self.streams.append(stream)
        return stream

    async def stream(self, prompt, session_key, working_dir=None, session_id=None, delivery_env=None):
        self.calls.append({
            "prompt": prompt,
            "session_key": session_key,
            "working_dir": working_dir,
            "session_id": session_id,
        })
        if not self.streams:
            return FakeStream(completed_run())
        return self.streams.pop(0)


class RecordingNotifier(ThreadNotifier):
    """Keeps every post, edit, and reaction in memory."""

    def __init__(self):
        self.posts: list[tuple] = []
        self.edits: list[tuple] = []
        self.reactions: list[tuple] = []
        self._next_id = 1000

    async def post(self, thread, text):
        self._next_id += 1
        self.posts.append((thread, text))
        return self._next_id

    async def edit(self, thread, message_id, text):
        self.edits.append((thread, message_id, text))
        return True

    async def set_reaction(self, thread, message_id, emoji):
        self.reactions.append((message_id, emoji))
        return True

    async def clear_reaction(self, thread, message_id):
        self.reactions.append((message_id, None))
        return True

    def texts(self) -> list[str]:
        return [text for _, text in self.posts]


def init_event(session_id: str = "agent-session-1") -> AgentEvent:
    return AgentEvent(type=AgentEventType.SYSTEM_INIT, session_id=session_id)


def text_event(text: str) -> AgentEvent:
    return AgentEvent(type=AgentEventType.ASSISTANT_TEXT, text=text)


def tool_event(name: str, **tool_input) -> AgentEvent:
    return AgentEvent(type=AgentEventType.TOOL_USE, tool_uses=[ToolInvocation(name=name, input=tool_input)])


def result_event(text: str = "", success: bool = True) -> AgentEvent:
    return AgentEvent(
        type=AgentEventType.RESULT,
        text=text,
        is_success=success,
        raw={"subtype": "success" if success else "error_during_execution"},
    )


def completed_run(reply: str = "Done.") -> list[AgentEvent]:
    return [init_event(), text_event(reply), result_event(reply)]


@pytest.fixture
def fake_agent() -> FakeAgent:
    return FakeAgent()


@pytest.fixture
def notifier() -> RecordingNotifier:
    return RecordingNotifier()


@pytest.fixture
def coordinator(registry, fake_agent, notifier, mailbox) -> ExecutionCoordinator:
    return ExecutionCoordinator(
        queue=MessageQueue(),
        registry=registry,
        agent=fake_agent,
        notifier=notifier,
        mailbox=mailbox,
        cleanup_delay_seconds=0.05,
        attachment_cleanup=MagicMock(),
    )


def write_pending_marker(mailbox: ApprovalMailbox, approval_id: str, session_key: Optional[str] = None):
    """Drop a pending marker the way a permission server would."""
    record = {"approval_id": approval_id, "tool_name": "Bash"}
    if session_key is not None:
        record["session_key"] = session_key
    mailbox.pending_path(approval_id).write_text(json.dumps(record))


async def wait_until(predicate, timeout: float = 2.0):
    """Yield to the loop until predicate() holds."""
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.005)


@pytest.fixture
def test_client(coordinator, mailbox) -> TestClient:
    """FastAPI TestClient wired to a real coordinator over mocked tmux."""
    app = create_app(coordinator=coordinator, mailbox=mailbox, config={})
    return TestClient(app)
