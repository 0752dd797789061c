"""Data models for threadrunner."""

import asyncio
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional


@dataclass(frozen=True)
class ThreadKey:
    """Identifies a conversation thread: a chat plus a topic/root message id."""
    chat_id: str
    thread_id: str

    def __str__(self) -> str:
        return f"{self.chat_id}-{self.thread_id}"


@dataclass(frozen=True)
class SessionKey:
    """Identifies one user's conversation inside a thread."""
    user_id: str
    chat_id: str
    thread_id: Optional[str] = None

    @property
    def thread(self) -> ThreadKey:
        return ThreadKey(self.chat_id, self.thread_id or "direct")

    def __str__(self) -> str:
        return f"{self.user_id}-{self.chat_id}-{self.thread_id or 'direct'}"


class ExecutionState(Enum):
    """Streaming sub-states of one execution."""
    THINKING = "thinking"
    WORKING = "working"
    COMPLETED = "completed"
    CANCELLED = "cancelled"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self in (ExecutionState.COMPLETED, ExecutionState.CANCELLED, ExecutionState.FAILED)


class ApprovalOutcome(Enum):
    """Lifecycle of a permission exchange."""
    PENDING = "pending"
    ALLOW = "allow"
    DENY = "deny"


@dataclass
class SessionMapping:
    """Binds a thread to a named tmux session."""
    thread_key: str
    session_name: str
    created_at: datetime = field(default_factory=datetime.now)
    working_directory: Optional[str] = None

    def to_dict(self) -> dict:
        """Convert mapping to dictionary for JSON serialization."""
        return {
            "thread_key": self.thread_key,
            "session_name": self.session_name,
            "created_at": self.created_at.isoformat(),
            "working_directory": self.working_directory,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "SessionMapping":
        """Create mapping from dictionary."""
        return cls(
            thread_key=data["thread_key"],
            session_name=data["session_name"],
            created_at=datetime.fromisoformat(data["created_at"]) if data.get("created_at") else datetime.now(),
            working_directory=data.get("working_directory"),
        )


@dataclass
class Attachment:
    """A file uploaded alongside a message, already downloaded to local disk."""
    name: str
    path: str
    mimetype: Optional[str] = None
    size: int = 0


@dataclass
class QueuedMessage:
    """A unit of work waiting for a thread's drain loop."""
    text: str
    attachments: list[Attachment] = field(default_factory=list)
    enqueued_at: datetime = field(default_factory=datetime.now)
    is_interrupt: bool = False
    session_key: Optional[SessionKey] = None
    working_directory: Optional[str] = None
    # Set by the chat binding; lets status reactions target the right message
    source_message_id: Optional[int] = None


@dataclass
class ThreadQueueState:
    """Pending work for one thread plus its single-flight flag."""
    queue: list[QueuedMessage] = field(default_factory=list)
    processing: bool = False


@dataclass
class ExecutionContext:
    """An in-flight execution for one session key. Doubles as its cancellation token."""
    session_key: SessionKey
    cancel_event: asyncio.Event = field(default_factory=asyncio.Event)
    state: ExecutionState = ExecutionState.THINKING
    started_at: datetime = field(default_factory=datetime.now)
    last_activity: datetime = field(default_factory=datetime.now)
    awaiting_approval: bool = False
    status_message_id: Optional[int] = None

    def cancel(self):
        self.cancel_event.set()

    @property
    def cancelled(self) -> bool:
        return self.cancel_event.is_set()

    def touch(self):
        self.last_activity = datetime.now()


@dataclass
class SessionState:
    """Everything the coordinator tracks for one session key."""
    key: SessionKey
    external_session_id: Optional[str] = None  # Assigned by the agent on init
    last_activity: datetime = field(default_factory=datetime.now)
    execution: Optional[ExecutionContext] = None
    anchor_message_id: Optional[int] = None  # Message that carries the status reaction
    reaction: Optional[str] = None
    todo_message_id: Optional[int] = None
    cleanup_task: Optional[asyncio.Task] = None


@dataclass
class ToolInvocation:
    """A single tool call requested by the agent."""
    name: str
    input: dict[str, Any] = field(default_factory=dict)
    id: Optional[str] = None


class AgentEventType(Enum):
    """Typed events produced by the agent stream."""
    SYSTEM_INIT = "system_init"
    ASSISTANT_TEXT = "assistant_text"
    TOOL_USE = "tool_use"
    RESULT = "result"
    ERROR = "error"


@dataclass
class AgentEvent:
    """One event from the agent's streaming output."""
    type: AgentEventType
    text: str = ""
    tool_uses: list[ToolInvocation] = field(default_factory=list)
    session_id: Optional[str] = None
    is_success: bool = True
    cost_usd: Optional[float] = None
    duration_ms: Optional[int] = None
    raw: dict[str, Any] = field(default_factory=dict)


@dataclass
class PermissionDecision:
    """Outcome of an approval handshake, in the shape the agent expects back."""
    behavior: str  # "allow" or "deny"
    updated_input: Optional[dict[str, Any]] = None
    message: Optional[str] = None

    @property
    def allowed(self) -> bool:
        return self.behavior == "allow"

    def to_dict(self) -> dict:
        data: dict[str, Any] = {"behavior": self.behavior}
        if self.updated_input is not None:
            data["updatedInput"] = self.updated_input
        if self.message is not None:
            data["message"] = self.message
        return data

    @classmethod
    def from_dict(cls, data: Any) -> "PermissionDecision":
        """Parse a response record. Raises ValueError on anything malformed."""
        if not isinstance(data, dict):
            raise ValueError("Permission response must be a JSON object")
        behavior = data.get("behavior")
        if behavior not in ("allow", "deny"):
            raise ValueError(f"Invalid permission behavior: {behavior!r}")
        updated_input = data.get("updatedInput")
        if updated_input is not None and not isinstance(updated_input, dict):
            raise ValueError("updatedInput must be an object")
        return cls(behavior=behavior, updated_input=updated_input, message=data.get("message"))

    @classmethod
    def deny(cls, message: str) -> "PermissionDecision":
        return cls(behavior="deny", message=message)


@dataclass
class PermissionExchange:
    """A privileged action waiting on a human decision."""
    approval_id: str
    tool_name: str
    input_payload: dict[str, Any] = field(default_factory=dict)
    session_key: Optional[str] = None
    requested_at: datetime = field(default_factory=datetime.now)
    outcome: ApprovalOutcome = ApprovalOutcome.PENDING

    def resolve(self, decision: PermissionDecision):
        """Record the human decision. An exchange resolves exactly once."""
        if self.outcome != ApprovalOutcome.PENDING:
            raise ValueError(f"Approval {self.approval_id} already resolved ({self.outcome.value})")
        self.outcome = ApprovalOutcome.ALLOW if decision.allowed else ApprovalOutcome.DENY
