"""
Cross-process approval handshake over a shared directory.

The agent subprocess (requester) writes `<approval_id>.pending`, asks a
human, then polls for `<approval_id>.response`. The orchestrator process
writes the response file when the human decides and never touches the
pending marker. Any failure along the way resolves to deny.
"""

import asyncio
import json
import logging
import re
import time
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Optional

from .models import PermissionDecision, PermissionExchange

logger = logging.getLogger(__name__)

PENDING_SUFFIX = ".pending"
RESPONSE_SUFFIX = ".response"
ERROR_MESSAGE = "Error occurred while requesting permission"
APPROVAL_ID_PATTERN = re.compile(r"approval_\d+_[0-9a-f]+")


class ApprovalIOError(RuntimeError):
    """Raised when the approval mailbox cannot be read or written."""


def generate_approval_id() -> str:
    """Millisecond timestamp plus a random suffix."""
    return f"approval_{int(time.time() * 1000)}_{uuid.uuid4().hex[:10]}"


class ApprovalMailbox:
    """The shared IPC directory, one file per pending or resolved approval."""

    def __init__(self, ipc_dir: str = "/tmp/threadrunner/permissions"):
        self.ipc_dir = Path(ipc_dir).expanduser()
        try:
            self.ipc_dir.mkdir(parents=True, exist_ok=True)
        except OSError as e:
            logger.warning(f"Could not create IPC directory {self.ipc_dir}: {e}")

    def pending_path(self, approval_id: str) -> Path:
        return self.ipc_dir / f"{approval_id}{PENDING_SUFFIX}"

    def response_path(self, approval_id: str) -> Path:
        return self.ipc_dir / f"{approval_id}{RESPONSE_SUFFIX}"

    def _write_json(self, path: Path, data: dict):
        # Temp file + rename so a poller never sees a half-written record
        temp_path = path.with_name(path.name + ".tmp")
        try:
            with open(temp_path, "w") as f:
                json.dump(data, f)
            temp_path.rename(path)
        except OSError as e:
            raise ApprovalIOError(f"Failed to write {path.name}: {e}") from e

    def write_pending(self, exchange: PermissionExchange):
        """Requester side: announce that an approval is outstanding."""
        self._write_json(
            self.pending_path(exchange.approval_id),
            {
                "approval_id": exchange.approval_id,
                "requested_at": exchange.requested_at.isoformat(),
                "session_key": exchange.session_key,
                "tool_name": exchange.tool_name,
            },
        )
        logger.debug(f"Wrote pending marker for {exchange.approval_id}")

    def write_response(
        self,
        approval_id: str,
        approved: bool,
        updated_input: Optional[dict[str, Any]] = None,
        message: Optional[str] = None,
    ) -> PermissionDecision:
        """
        Orchestrator side: record the human decision.

        Raises:
            ApprovalIOError: If the response file could not be written
        """
        decision = PermissionDecision(
            behavior="allow" if approved else "deny",
            updated_input=updated_input,
            message=message or ("Approved by user" if approved else "Denied by user"),
        )
        self._write_json(self.response_path(approval_id), decision.to_dict())
        logger.info(f"Wrote approval response for {approval_id}: {decision.behavior}")
        return decision

    def read_response(self, approval_id: str) -> Optional[PermissionDecision]:
        """
        Requester side: the decision, or None while still waiting.

        Raises:
            ApprovalIOError: If the response exists but cannot be read or parsed
        """
        path = self.response_path(approval_id)
        try:
            raw = path.read_text()
        except FileNotFoundError:
            return None
        except OSError as e:
            raise ApprovalIOError(f"Failed to read {path.name}: {e}") from e

        try:
            return PermissionDecision.from_dict(json.loads(raw))
        except ValueError as e:
            raise ApprovalIOError(f"Malformed response for {approval_id}: {e}") from e

    def remove(self, approval_id: str):
        """Delete both records. Best effort; a missing pending file is expected."""
        for path in (self.response_path(approval_id), self.pending_path(approval_id)):
            try:
                path.unlink()
            except FileNotFoundError:
                pass
            except OSError as e:
                logger.warning(f"Failed to clean up IPC file {path.name}: {e}")

    def list_pending(self) -> list[dict]:
        """Records of every outstanding approval. Unreadable markers get a bare record."""
        try:
            paths = sorted(self.ipc_dir.glob(f"*{PENDING_SUFFIX}"))
        except OSError as e:
            logger.warning(f"Failed to list IPC directory {self.ipc_dir}: {e}")
            return []

        records = []
        for path in paths:
            approval_id = path.name[: -len(PENDING_SUFFIX)]
            try:
                data = json.loads(path.read_text())
                if not isinstance(data, dict):
                    raise ValueError("not an object")
            except FileNotFoundError:
                continue  # Resolved while we were listing
            except (OSError, ValueError) as e:
                logger.debug(f"Unreadable pending marker {path.name}: {e}")
                data = {}
            data.setdefault("approval_id", approval_id)
            records.append(data)
        return records

    def has_pending_approval(self, session_key: Optional[str] = None) -> bool:
        """
        Whether an approval is outstanding.

        With a session key, only markers recorded for that key count, plus
        markers that carry no key at all (they could belong to anyone).
        """
        for record in self.list_pending():
            owner = record.get("session_key")
            if session_key is None or owner is None or owner == session_key:
                return True
        return False


class PermissionGateway:
    """Requester side of the handshake: ask, then block until a human decides."""

    def __init__(
        self,
        mailbox: ApprovalMailbox,
        poll_interval: float = 0.5,
        notify: Optional[Callable[[PermissionExchange], Awaitable[None]]] = None,
    ):
        """
        Args:
            mailbox: Shared IPC directory
            poll_interval: Seconds between checks for a response file
            notify: Presents the request to a human (buttons tagged with the approval id)
        """
        self.mailbox = mailbox
        self.poll_interval = poll_interval
        self.notify = notify

    async def request(
        self,
        tool_name: str,
        input_payload: dict[str, Any],
        session_key: Optional[str] = None,
        abort: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
    ) -> tuple[PermissionExchange, PermissionDecision]:
        """
        Run one approval handshake. Never raises; failures resolve to deny.

        Args:
            tool_name: Tool the agent wants to run
            input_payload: The tool's input
            session_key: Requesting session, recorded in the pending marker
            abort: Optional event that ends the wait with a deny
            timeout: Optional deadline in seconds (default: wait forever)
        """
        exchange = PermissionExchange(
            approval_id=generate_approval_id(),
            tool_name=tool_name,
            input_payload=input_payload,
            session_key=session_key,
        )
        try:
            self.mailbox.write_pending(exchange)
            if self.notify:
                await self.notify(exchange)
            decision = await self.wait_for_response(exchange.approval_id, abort=abort, timeout=timeout)
        except Exception as e:
            logger.error(f"Permission request {exchange.approval_id} for {tool_name} failed: {e}", exc_info=True)
            self.mailbox.remove(exchange.approval_id)
            decision = PermissionDecision.deny(ERROR_MESSAGE)

        exchange.resolve(decision)
        logger.info(f"Permission {exchange.approval_id} for {tool_name}: {decision.behavior}")
        return exchange, decision

    async def wait_for_response(
        self,
        approval_id: str,
        abort: Optional[asyncio.Event] = None,
        timeout: Optional[float] = None,
    ) -> PermissionDecision:
        """
        Poll for the response record. Indefinite unless abort or timeout is given.

        Raises:
            ApprovalIOError: If the response cannot be read or parsed
        """
        deadline = time.monotonic() + timeout if timeout is not None else None

        while True:
            decision = self.mailbox.read_response(approval_id)
            if decision is not None:
                self.mailbox.remove(approval_id)
                logger.info(f"Received approval response via IPC: {approval_id} -> {decision.behavior}")
                return decision

            if deadline is not None and time.monotonic() >= deadline:
                self.mailbox.remove(approval_id)
                return PermissionDecision.deny("Approval request timed out")

            if await self._sleep_or_abort(abort):
                self.mailbox.remove(approval_id)
                return PermissionDecision.deny("Approval request aborted")

    async def _sleep_or_abort(self, abort: Optional[asyncio.Event]) -> bool:
        """Sleep one poll interval. Returns True if the abort event fired."""
        if abort is None:
            await asyncio.sleep(self.poll_interval)
            return False
        try:
            await asyncio.wait_for(abort.wait(), timeout=self.poll_interval)
            return True
        except asyncio.TimeoutError:
            return False
