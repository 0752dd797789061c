"""Agent CLI integration (stream-json over stdout)."""

import asyncio
import json
import logging
import os
import signal
import sys
from collections import deque
from dataclasses import dataclass, field
from typing import Any, Optional

from .models import AgentEvent, AgentEventType, SessionKey, ToolInvocation

logger = logging.getLogger(__name__)

PERMISSION_SERVER_NAME = "permission-prompt"
PERMISSION_TOOL = f"mcp__{PERMISSION_SERVER_NAME}__permission_prompt"


class StreamError(RuntimeError):
    """Raised when the agent process fails to start or exits with an error.

    The message is short enough to show in a thread; `detail` holds the
    stderr tail, which is only logged.
    """

    def __init__(self, message: str, detail: str = ""):
        super().__init__(message)
        self.detail = detail


@dataclass
class AgentClientConfig:
    """Configuration for agent invocations."""
    command: str = "claude"
    args: list[str] = field(default_factory=list)
    model: Optional[str] = None
    skip_permissions: bool = False
    permission_server_command: list[str] = field(
        default_factory=lambda: [sys.executable, "-m", "threadrunner.permission_server"]
    )
    ipc_dir: str = "/tmp/threadrunner/permissions"
    poll_interval: float = 0.5
    telegram_token: Optional[str] = None
    stderr_tail_lines: int = 20

    @classmethod
    def from_config(cls, config: dict) -> "AgentClientConfig":
        agent = config.get("agent", {})
        permissions = config.get("permissions", {})
        defaults = cls()
        server_command = permissions.get("server_command") or defaults.permission_server_command
        if isinstance(server_command, str):
            server_command = server_command.split()
        return cls(
            command=agent.get("command", defaults.command),
            args=list(agent.get("args", [])),
            model=agent.get("model"),
            skip_permissions=bool(agent.get("skip_permissions", False)),
            permission_server_command=list(server_command),
            ipc_dir=config.get("paths", {}).get("ipc_dir", defaults.ipc_dir),
            poll_interval=float(permissions.get("poll_interval_seconds", defaults.poll_interval)),
            telegram_token=config.get("telegram", {}).get("token"),
        )


def parse_event(data: Any) -> Optional[AgentEvent]:
    """Map one stream-json record to a typed event. Returns None for records we ignore."""
    if not isinstance(data, dict):
        return None
    kind = data.get("type")

    if kind == "system" and data.get("subtype") == "init":
        return AgentEvent(type=AgentEventType.SYSTEM_INIT, session_id=data.get("session_id"), raw=data)

    if kind == "assistant":
        content = (data.get("message") or {}).get("content") or []
        texts = [p.get("text", "") for p in content if isinstance(p, dict) and p.get("type") == "text"]
        tools = [
            ToolInvocation(name=p.get("name", ""), input=p.get("input") or {}, id=p.get("id"))
            for p in content
            if isinstance(p, dict) and p.get("type") == "tool_use"
        ]
        text = "".join(texts)
        if tools:
            return AgentEvent(
                type=AgentEventType.TOOL_USE,
                text=text,
                tool_uses=tools,
                session_id=data.get("session_id"),
                raw=data,
            )
        if text:
            return AgentEvent(type=AgentEventType.ASSISTANT_TEXT, text=text, session_id=data.get("session_id"), raw=data)
        return None

    if kind == "result":
        is_success = data.get("subtype") == "success" and not data.get("is_error", False)
        return AgentEvent(
            type=AgentEventType.RESULT,
            text=data.get("result") or "",
            session_id=data.get("session_id"),
            is_success=is_success,
            cost_usd=data.get("total_cost_usd"),
            duration_ms=data.get("duration_ms"),
            raw=data,
        )

    if kind == "error":
        error = data.get("error")
        message = error.get("message") if isinstance(error, dict) else error
        return AgentEvent(type=AgentEventType.ERROR, text=str(message or "Unknown agent error"), is_success=False, raw=data)

    return None


class AgentStream:
    """
    One running agent invocation, consumed as an async iterator of events.

    Closing a stream that is still running sends SIGINT and waits for the
    process to exit on its own.
    """

    def __init__(self, cmd: list[str], cwd: Optional[str], env: dict[str, str], stderr_tail_lines: int = 20):
        self.cmd = cmd
        self.cwd = cwd
        self.env = env
        self._proc: Optional[asyncio.subprocess.Process] = None
        self._stderr_task: Optional[asyncio.Task] = None
        self._stderr_tail: deque[str] = deque(maxlen=stderr_tail_lines)
        self._finished = False

    async def start(self):
        try:
            self._proc = await asyncio.create_subprocess_exec(
                *self.cmd,
                cwd=self.cwd,
                env=self.env,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
                limit=16 * 1024 * 1024,
            )
        except OSError as e:
            raise StreamError(f"Failed to launch agent ({self.cmd[0]}): {e}") from e

        self._stderr_task = asyncio.create_task(self._read_stderr())
        logger.info(f"Agent process started (pid={self._proc.pid}, cwd={self.cwd})")

    def __aiter__(self):
        return self

    async def __anext__(self) -> AgentEvent:
        if self._finished or not self._proc:
            raise StopAsyncIteration

        assert self._proc.stdout
        while True:
            line = await self._proc.stdout.readline()
            if not line:
                await self._finish()
                raise StopAsyncIteration
            try:
                data = json.loads(line.decode("utf-8"))
            except (json.JSONDecodeError, UnicodeDecodeError):
                logger.debug("Agent stream: invalid JSON line")
                continue
            event = parse_event(data)
            if event is not None:
                return event

    async def _finish(self):
        self._finished = True
        returncode = await self._proc.wait()
        if self._stderr_task:
            await asyncio.gather(self._stderr_task, return_exceptions=True)
        if returncode != 0:
            tail = "\n".join(self._stderr_tail).strip()
            raise StreamError(f"Agent exited with code {returncode}", detail=tail)
        logger.debug(f"Agent process {self._proc.pid} exited cleanly")

    async def _read_stderr(self):
        assert self._proc and self._proc.stderr
        while True:
            line = await self._proc.stderr.readline()
            if not line:
                break
            decoded = line.decode("utf-8", errors="replace").rstrip()
            self._stderr_tail.append(decoded)
            logger.debug(f"agent stderr: {decoded}")

    async def close(self):
        """Ask a still-running agent to stop, then wait for it."""
        self._finished = True
        if self._proc and self._proc.returncode is None:
            logger.info(f"Sending SIGINT to agent process {self._proc.pid}")
            try:
                self._proc.send_signal(signal.SIGINT)
            except ProcessLookupError:
                pass
            await self._proc.wait()
        if self._stderr_task and not self._stderr_task.done():
            self._stderr_task.cancel()
            await asyncio.gather(self._stderr_task, return_exceptions=True)


class AgentClient:
    """Builds and launches agent invocations for session keys."""

    def __init__(self, config: Optional[AgentClientConfig] = None):
        self.config = config or AgentClientConfig()

    def build_mcp_config(self, context_env: dict[str, str]) -> dict:
        command = self.config.permission_server_command
        return {
            "mcpServers": {
                PERMISSION_SERVER_NAME: {
                    "command": command[0],
                    "args": command[1:],
                    "env": context_env,
                }
            }
        }

    def build_command(
        self,
        prompt: str,
        session_id: Optional[str] = None,
        context_env: Optional[dict[str, str]] = None,
    ) -> list[str]:
        cmd = [self.config.command, "-p", prompt, "--output-format", "stream-json", "--verbose"]
        if session_id:
            cmd += ["--resume", session_id]
        if self.config.model:
            cmd += ["--model", self.config.model]
        if self.config.skip_permissions:
            cmd.append("--dangerously-skip-permissions")
        else:
            cmd += [
                "--mcp-config", json.dumps(self.build_mcp_config(context_env or {})),
                "--permission-prompt-tool", PERMISSION_TOOL,
            ]
        cmd += self.config.args
        return cmd

    def build_context_env(self, session_key: SessionKey, delivery_env: Optional[dict[str, str]] = None) -> dict[str, str]:
        """Variables the permission server needs to reach the right thread."""
        env = {
            "THREADRUNNER_SESSION_KEY": str(session_key),
            "THREADRUNNER_USER_ID": session_key.user_id,
            "THREADRUNNER_CHAT_ID": session_key.chat_id,
            "THREADRUNNER_IPC_DIR": self.config.ipc_dir,
            "THREADRUNNER_POLL_INTERVAL": str(self.config.poll_interval),
        }
        if self.config.telegram_token:
            env["TELEGRAM_BOT_TOKEN"] = self.config.telegram_token
        env.update(delivery_env or {})
        return env

    async def stream(
        self,
        prompt: str,
        session_key: SessionKey,
        working_dir: Optional[str] = None,
        session_id: Optional[str] = None,
        delivery_env: Optional[dict[str, str]] = None,
    ) -> AgentStream:
        """
        Start the agent and return its event stream.

        Raises:
            StreamError: If the process cannot be launched
        """
        context_env = self.build_context_env(session_key, delivery_env)
        cmd = self.build_command(prompt, session_id=session_id, context_env=context_env)
        env = {**os.environ, **context_env}

        if session_id:
            logger.debug(f"Resuming agent session {session_id} for {session_key}")
        else:
            logger.debug(f"Starting new agent conversation for {session_key}")

        stream = AgentStream(cmd, working_dir, env, stderr_tail_lines=self.config.stderr_tail_lines)
        await stream.start()
        return stream
