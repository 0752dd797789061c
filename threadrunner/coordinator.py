"""
Per-thread execution: drains each thread's queue through the agent, one
message at a time, with interrupts and status reporting.
"""

import asyncio
import logging
import os
import shlex
from dataclasses import dataclass
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, AsyncIterator, Callable, Optional

from .agent_client import AgentClient, AgentStream, StreamError
from .message_queue import MessageQueue
from .models import (
    AgentEvent,
    AgentEventType,
    Attachment,
    ExecutionContext,
    ExecutionState,
    QueuedMessage,
    SessionKey,
    SessionMapping,
    SessionState,
    ThreadKey,
)
from .notifier import ThreadNotifier, format_tool_use, strip_ansi
from .permission_gateway import ApprovalMailbox
from .session_registry import SessionRegistry
from .tmux_controller import HostNotFoundError
from .todo_tracker import TodoTracker

logger = logging.getLogger(__name__)

STATUS_TEXT = {
    ExecutionState.THINKING: "🤔 Thinking...",
    ExecutionState.WORKING: "⚙️ Working...",
    ExecutionState.COMPLETED: "✅ Task completed",
    ExecutionState.CANCELLED: "⏹️ Cancelled",
    ExecutionState.FAILED: "❌ Error occurred",
}

# Telegram only accepts reactions from a fixed emoji set
STATUS_REACTIONS = {
    ExecutionState.THINKING: "🤔",
    ExecutionState.WORKING: "👨‍💻",
    ExecutionState.COMPLETED: "👍",
    ExecutionState.CANCELLED: "🤷‍♂",
    ExecutionState.FAILED: "👎",
}

TODO_REACTIONS = {
    "completed": "👍",
    "in_progress": "✍",
    "pending": "👀",
}


class ExecutionCancelled(Exception):
    """The execution's cancellation token fired. Not a failure."""


class SubmitOutcome(Enum):
    STARTED = "started"  # A new drain loop was started
    QUEUED = "queued"  # The running loop will pick it up
    INTERRUPTED = "interrupted"  # Queue replaced and the active execution cancelled
    REFUSED = "refused"  # Interrupt refused: an approval is pending


class CancelOutcome(Enum):
    NONE_ACTIVE = "none_active"
    CANCELLED = "cancelled"
    REFUSED = "refused"


@dataclass
class SubmitReceipt:
    outcome: SubmitOutcome
    session_name: Optional[str] = None
    is_new_session: bool = False
    queue_size: int = 0


def build_prompt(message: QueuedMessage) -> str:
    """Message text plus references to any downloaded attachments."""
    if not message.attachments:
        return message.text
    lines = [message.text, "", "Attached files:"]
    for attachment in message.attachments:
        kind = f" ({attachment.mimetype})" if attachment.mimetype else ""
        lines.append(f"- {attachment.name}{kind}: {attachment.path}")
    return "\n".join(lines).strip()


def remove_attachment_files(attachments: list[Attachment]):
    """Delete downloaded attachment files. Best effort."""
    for attachment in attachments:
        try:
            os.unlink(attachment.path)
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning(f"Failed to remove attachment {attachment.path}: {e}")


class ExecutionCoordinator:
    """
    Owns one drain loop per busy thread and one SessionState per session key.

    A thread's loop is started only after MessageQueue.try_acquire succeeds and
    releases the processing flag when it exits, so at most one loop dequeues
    from a thread at any time.
    """

    def __init__(
        self,
        queue: MessageQueue,
        registry: SessionRegistry,
        agent: AgentClient,
        notifier: ThreadNotifier,
        todo_tracker: Optional[TodoTracker] = None,
        mailbox: Optional[ApprovalMailbox] = None,
        cleanup_delay_seconds: float = 300,
        attachment_cleanup: Callable[[list[Attachment]], None] = remove_attachment_files,
    ):
        self.queue = queue
        self.registry = registry
        self.agent = agent
        self.notifier = notifier
        self.todo_tracker = todo_tracker or TodoTracker()
        self.mailbox = mailbox
        self.cleanup_delay_seconds = cleanup_delay_seconds
        self.attachment_cleanup = attachment_cleanup

        self._sessions: dict[SessionKey, SessionState] = {}
        self._loops: dict[ThreadKey, asyncio.Task] = {}
        self._host_locks: dict[ThreadKey, asyncio.Lock] = {}
        self._closing = False

    # -----------------------
    # Session state
    # -----------------------
    def get_session(self, key: SessionKey) -> Optional[SessionState]:
        return self._sessions.get(key)

    def _session(self, key: SessionKey) -> SessionState:
        state = self._sessions.get(key)
        if state is None:
            state = SessionState(key=key)
            self._sessions[key] = state
            logger.debug(f"Created session state for {key}")
        return state

    def active_execution(self, key: SessionKey) -> Optional[ExecutionContext]:
        state = self._sessions.get(key)
        if state and state.execution and not state.execution.state.is_terminal:
            return state.execution
        return None

    def is_awaiting_approval(self, key: SessionKey) -> bool:
        """Whether an approval marker is outstanding for this session key."""
        pending = bool(self.mailbox and self.mailbox.has_pending_approval(str(key)))
        execution = self.active_execution(key)
        if execution:
            execution.awaiting_approval = pending
        return pending

    def cleanup_inactive_sessions(self, max_age_seconds: float = 1800) -> int:
        """Forget idle session states (and their agent session ids) older than max_age."""
        cutoff = datetime.now() - timedelta(seconds=max_age_seconds)
        stale = [
            key for key, state in self._sessions.items()
            if state.execution is None and state.last_activity < cutoff
        ]
        for key in stale:
            state = self._sessions.pop(key)
            if state.cleanup_task and not state.cleanup_task.done():
                state.cleanup_task.cancel()
            if state.external_session_id:
                self.todo_tracker.cleanup_session(state.external_session_id)
        if stale:
            logger.info(f"Cleaned up {len(stale)} inactive session(s)")
        return len(stale)

    # -----------------------
    # Inbound work
    # -----------------------
    async def submit(
        self,
        key: SessionKey,
        message: QueuedMessage,
        working_directory: Optional[str] = None,
    ) -> SubmitReceipt:
        """
        Queue a message for the key's thread and make sure a loop drains it.

        Raises:
            HostCreationError: If the thread had no session and one could not be started
        """
        thread = key.thread
        message.session_key = key
        if message.working_directory is None:
            message.working_directory = working_directory

        if message.is_interrupt and self.active_execution(key) and self.is_awaiting_approval(key):
            logger.info(f"Interrupt for {key} refused: waiting for permission approval")
            return SubmitReceipt(outcome=SubmitOutcome.REFUSED, queue_size=self.queue.size(thread))

        # Concurrent first messages on one thread must not start two hosts
        async with self._host_locks.setdefault(thread, asyncio.Lock()):
            session_name = await asyncio.to_thread(self.registry.find, str(thread))
            is_new_session = session_name is None
            if is_new_session:
                session_name = await asyncio.to_thread(
                    self.registry.create_or_get, str(thread), message.working_directory
                )

        self.queue.enqueue(thread, message)
        outcome = SubmitOutcome.QUEUED
        if message.is_interrupt:
            outcome = SubmitOutcome.INTERRUPTED
            if self.cancel(key) == CancelOutcome.CANCELLED:
                logger.info(f"Interrupt cancelled the active execution for {key}")

        if self._ensure_loop(thread) and outcome == SubmitOutcome.QUEUED:
            outcome = SubmitOutcome.STARTED

        return SubmitReceipt(
            outcome=outcome,
            session_name=session_name,
            is_new_session=is_new_session,
            queue_size=self.queue.size(thread),
        )

    def _ensure_loop(self, thread: ThreadKey) -> bool:
        """Start a drain loop unless one already owns the thread. Returns True if started."""
        if not self.queue.try_acquire(thread):
            logger.debug(f"Loop already draining {thread}")
            return False
        self._loops[thread] = asyncio.create_task(self._drain(thread))
        return True

    def cancel(self, key: SessionKey) -> CancelOutcome:
        """
        Request cancellation of the key's active execution.

        Refused while an approval is pending: the agent would abandon the
        approval record. The approval state is left untouched in that case.
        """
        execution = self.active_execution(key)
        if execution is None:
            return CancelOutcome.NONE_ACTIVE
        if self.is_awaiting_approval(key):
            logger.info(f"Not cancelling {key}: waiting for permission approval")
            return CancelOutcome.REFUSED
        execution.cancel()
        logger.info(f"Cancellation requested for {key}")
        return CancelOutcome.CANCELLED

    # -----------------------
    # Drain loop
    # -----------------------
    async def _drain(self, thread: ThreadKey):
        logger.info(f"Draining queue for {thread}")
        try:
            # Re-check after every execution so messages queued meanwhile are not left behind
            while self.queue.has_pending(thread):
                message = self.queue.dequeue(thread)
                if message is None:
                    break
                logger.info(f"Processing queued message for {thread} ({self.queue.size(thread)} remaining)")
                await self._execute(message)
        finally:
            self.queue.set_processing(thread, False)
            if self._loops.get(thread) is asyncio.current_task():
                del self._loops[thread]
            logger.info(f"Queue drained for {thread}")

    async def _execute(self, message: QueuedMessage):
        """Run one message through the agent. Only asyncio.CancelledError escapes."""
        key = message.session_key
        state = self._session(key)
        thread = key.thread

        if state.execution and not state.execution.state.is_terminal:
            raise RuntimeError(f"Second concurrent execution for {key}")

        execution = ExecutionContext(session_key=key)
        state.execution = execution
        state.last_activity = datetime.now()
        if state.cleanup_task and not state.cleanup_task.done():
            state.cleanup_task.cancel()
        if message.source_message_id is not None and message.source_message_id != state.anchor_message_id:
            state.anchor_message_id = message.source_message_id
            state.reaction = None

        try:
            execution.status_message_id = await self.notifier.post(thread, STATUS_TEXT[ExecutionState.THINKING])
            await self._set_reaction(state, STATUS_REACTIONS[ExecutionState.THINKING])

            logger.info(
                f"Sending prompt for {key} (agent session={state.external_session_id}, "
                f"cwd={message.working_directory}, files={len(message.attachments)})"
            )
            stream = await self.agent.stream(
                build_prompt(message),
                key,
                working_dir=message.working_directory,
                session_id=state.external_session_id,
                delivery_env=self.notifier.delivery_env(thread),
            )
            try:
                await self._consume(state, execution, stream)
            finally:
                await stream.close()

            await self._finish(state, execution, ExecutionState.COMPLETED)
            logger.info(f"Completed processing message for {key}")
        except ExecutionCancelled:
            logger.info(f"Execution for {key} was cancelled")
            await self._finish(state, execution, ExecutionState.CANCELLED)
        except asyncio.CancelledError:
            execution.state = ExecutionState.CANCELLED
            raise
        except Exception as e:
            if isinstance(e, StreamError):
                logger.error(f"Execution failed for {key}: {e}" + (f"\n{e.detail}" if e.detail else ""))
            else:
                logger.error(f"Execution failed for {key}: {e}", exc_info=True)
            await self._finish(state, execution, ExecutionState.FAILED)
            await self.notifier.post(thread, f"Error: {str(e) or 'Something went wrong'}")
        finally:
            await self._finalize(state, execution, message)

    async def _consume(self, state: SessionState, execution: ExecutionContext, stream: AgentStream):
        emitted: list[str] = []
        thread = state.key.thread

        while True:
            event = await self._next_event(stream, execution)
            if event is None:
                return
            execution.touch()
            state.last_activity = execution.last_activity
            if event.session_id:
                state.external_session_id = event.session_id

            if event.type == AgentEventType.SYSTEM_INIT:
                logger.info(f"Agent session initialized for {state.key}: {event.session_id}")

            elif event.type == AgentEventType.TOOL_USE:
                await self._set_state(state, execution, ExecutionState.WORKING)
                await self._forward_todos(state, event)
                content = format_tool_use(event.tool_uses, event.text)
                if content:
                    await self.notifier.post(thread, content)

            elif event.type == AgentEventType.ASSISTANT_TEXT:
                emitted.append(event.text)
                await self.notifier.post(thread, event.text)

            elif event.type == AgentEventType.RESULT:
                logger.info(
                    f"Result for {state.key}: success={event.is_success} "
                    f"cost={event.cost_usd} duration_ms={event.duration_ms}"
                )
                if not event.is_success:
                    raise StreamError(event.text or f"Agent finished with {event.raw.get('subtype', 'an error')}")
                if event.text and event.text not in emitted:
                    emitted.append(event.text)
                    await self.notifier.post(thread, event.text)

            elif event.type == AgentEventType.ERROR:
                raise StreamError(event.text)

    async def _next_event(self, stream: AsyncIterator[AgentEvent], execution: ExecutionContext) -> Optional[AgentEvent]:
        """
        Pull the next event, racing the pull against the cancellation token.

        Returns None when the stream ends.

        Raises:
            ExecutionCancelled: If the token fires before or while waiting
        """
        if execution.cancelled:
            raise ExecutionCancelled()

        async def pull() -> Optional[AgentEvent]:
            try:
                return await stream.__anext__()
            except StopAsyncIteration:
                return None

        pull_task = asyncio.ensure_future(pull())
        cancel_task = asyncio.ensure_future(execution.cancel_event.wait())
        try:
            done, _ = await asyncio.wait({pull_task, cancel_task}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_task.cancel()
            if not pull_task.done():
                pull_task.cancel()
                await asyncio.gather(pull_task, return_exceptions=True)

        if pull_task in done and not pull_task.cancelled():
            return pull_task.result()
        raise ExecutionCancelled()

    async def _forward_todos(self, state: SessionState, event: AgentEvent):
        todo_tool = next((t for t in event.tool_uses if t.name == "TodoWrite"), None)
        if todo_tool is None or not state.external_session_id:
            return
        new_todos = todo_tool.input.get("todos")
        if not isinstance(new_todos, list):
            return

        session_id = state.external_session_id
        old_todos = self.todo_tracker.get_todos(session_id)
        if not self.todo_tracker.has_significant_change(old_todos, new_todos):
            return
        self.todo_tracker.update_todos(session_id, new_todos)

        thread = state.key.thread
        todo_list = self.todo_tracker.format_todo_list(new_todos)
        edited = False
        if state.todo_message_id is not None:
            edited = await self.notifier.edit(thread, state.todo_message_id, todo_list)
            if not edited:
                logger.warning(f"Failed to update todo message for {state.key}, posting a new one")
        if not edited:
            state.todo_message_id = await self.notifier.post(thread, todo_list)

        change = self.todo_tracker.get_status_change(old_todos, new_todos)
        if change:
            await self.notifier.post(thread, f"🔄 Task Update:\n{change}")

        progress = self.todo_tracker.progress_state(new_todos)
        if progress:
            await self._set_reaction(state, TODO_REACTIONS[progress])

    async def _set_state(self, state: SessionState, execution: ExecutionContext, new_state: ExecutionState):
        if execution.state == new_state:
            return
        execution.state = new_state
        if execution.status_message_id is not None:
            await self.notifier.edit(state.key.thread, execution.status_message_id, STATUS_TEXT[new_state])
        await self._set_reaction(state, STATUS_REACTIONS[new_state])

    async def _finish(self, state: SessionState, execution: ExecutionContext, outcome: ExecutionState):
        try:
            await self._set_state(state, execution, outcome)
        except Exception as e:
            execution.state = outcome
            logger.warning(f"Failed to report {outcome.value} for {state.key}: {e}")

    async def _set_reaction(self, state: SessionState, emoji: str):
        if state.anchor_message_id is None or state.reaction == emoji:
            return
        if await self.notifier.set_reaction(state.key.thread, state.anchor_message_id, emoji):
            state.reaction = emoji

    async def _finalize(self, state: SessionState, execution: ExecutionContext, message: QueuedMessage):
        if message.attachments:
            try:
                await asyncio.to_thread(self.attachment_cleanup, message.attachments)
            except Exception as e:
                logger.warning(f"Attachment cleanup failed for {state.key}: {e}")
        if state.execution is execution:
            state.execution = None
        self._schedule_cleanup(state)

    def _schedule_cleanup(self, state: SessionState):
        """Reclaim todo and reaction tracking after the grace delay."""
        if state.cleanup_task and not state.cleanup_task.done():
            state.cleanup_task.cancel()
        if self._closing:
            return

        async def _cleanup_later():
            await asyncio.sleep(self.cleanup_delay_seconds)
            if state.execution is not None:
                return
            if state.external_session_id:
                self.todo_tracker.cleanup_session(state.external_session_id)
            state.todo_message_id = None
            state.anchor_message_id = None
            state.reaction = None
            logger.debug(f"Reclaimed tracking state for {state.key}")

        state.cleanup_task = asyncio.create_task(_cleanup_later())

    # -----------------------
    # Thread commands
    # -----------------------
    async def close_thread(self, thread: ThreadKey) -> Optional[str]:
        """
        Close the thread's session and drop its queue.

        Returns:
            The closed session name, or None if the thread had no live session
        """
        mapping = await asyncio.to_thread(self.registry.get_mapping, str(thread))
        if mapping is None:
            return None

        for key in [k for k in self._sessions if k.thread == thread]:
            self.cancel(key)

        if not await asyncio.to_thread(self.registry.close, mapping.session_name):
            raise HostNotFoundError(f"Failed to close session {mapping.session_name}")

        self.queue.clear(thread)
        self._host_locks.pop(thread, None)
        loop_task = self._loops.get(thread)
        if loop_task and not loop_task.done():
            # The loop still owns the thread until its current execution ends
            self.queue.set_processing(thread, True)

        logger.info(f"Closed session {mapping.session_name} for thread {thread}")
        return mapping.session_name

    async def connect_thread(self, thread: ThreadKey, session_name: str) -> SessionMapping:
        """
        Bind the thread to an existing session.

        Raises:
            HostNotFoundError: If no live session has that name
        """
        if not await asyncio.to_thread(self.registry.remap_thread, str(thread), session_name):
            raise HostNotFoundError(f"Session {session_name} not found")
        return self.registry.sessions[str(thread)]

    async def change_directory(self, thread: ThreadKey, path: str) -> Optional[str]:
        """Move the thread's tmux shell to path. Returns the session name if one was running."""
        session_name = await asyncio.to_thread(self.registry.find, str(thread))
        if not session_name:
            return None
        sent = await asyncio.to_thread(self.registry.tmux.send_input, session_name, f"cd {shlex.quote(path)}")
        return session_name if sent else None

    async def capture_history(self, thread: ThreadKey, lines: int = 100) -> Optional[str]:
        """Recent output of the thread's session, or None if it has none."""
        session_name = await asyncio.to_thread(self.registry.find, str(thread))
        if not session_name:
            return None
        output = await asyncio.to_thread(self.registry.tmux.capture_pane, session_name, lines)
        return strip_ansi(output).strip() if output is not None else None

    def thread_status(self, thread: ThreadKey) -> dict[str, Any]:
        """Queue and execution snapshot for one thread."""
        mapping = self.registry.sessions.get(str(thread))
        executions = []
        for key, state in self._sessions.items():
            if key.thread != thread or state.execution is None:
                continue
            self.is_awaiting_approval(key)
            executions.append({
                "session_key": str(key),
                "state": state.execution.state.value,
                "awaiting_approval": state.execution.awaiting_approval,
                "started_at": state.execution.started_at.isoformat(),
                "last_activity": state.execution.last_activity.isoformat(),
            })
        return {
            "thread_key": str(thread),
            "session_name": mapping.session_name if mapping else None,
            "queue_size": self.queue.size(thread),
            "processing": self.queue.is_processing(thread),
            "executions": executions,
        }

    async def shutdown(self):
        """Cancel drain loops and pending cleanup tasks."""
        self._closing = True
        tasks = [t for t in self._loops.values() if not t.done()]
        tasks += [
            s.cleanup_task for s in self._sessions.values()
            if s.cleanup_task and not s.cleanup_task.done()
        ]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"Coordinator stopped ({len(tasks)} task(s) cancelled)")
