"""threadrunner CLI - run the orchestrator and act on pending approvals."""

import argparse
import os
import sys
from typing import Optional

import httpx

from .main import load_config, run
from .permission_gateway import ApprovalIOError, ApprovalMailbox

DEFAULT_API_URL = "http://127.0.0.1:8430"
API_TIMEOUT = 2  # seconds
DEFAULT_IPC_DIR = "/tmp/threadrunner/permissions"


class ThreadRunnerClient:
    """Client for the threadrunner HTTP API."""

    def __init__(self, api_url: Optional[str] = None):
        self.api_url = api_url or os.environ.get("THREADRUNNER_API_URL", DEFAULT_API_URL)

    def _request(
        self,
        method: str,
        path: str,
        data: Optional[dict] = None,
        timeout: Optional[float] = None,
    ) -> tuple[Optional[dict], bool, bool]:
        """
        Make an HTTP request.

        Returns:
            Tuple of (response_data, success, unavailable)
            - success=True, unavailable=False: Request succeeded
            - success=False, unavailable=True: Connection error (server not running)
            - success=False, unavailable=False: API error (4xx, 5xx response)
        """
        url = f"{self.api_url}{path}"
        try:
            response = httpx.request(
                method,
                url,
                json=data,
                timeout=timeout if timeout is not None else API_TIMEOUT,
            )
        except httpx.TransportError:
            return None, False, True

        try:
            body = response.json()
        except ValueError:
            body = None

        if response.is_error:
            return body, False, False
        return body, True, False

    def list_sessions(self) -> tuple[Optional[list], bool, bool]:
        return self._request("GET", "/sessions")

    def thread_status(self, chat_id: str, thread_id: str) -> tuple[Optional[dict], bool, bool]:
        return self._request("GET", f"/threads/{chat_id}/{thread_id}")


def _mailbox_for(args) -> ApprovalMailbox:
    ipc_dir = args.ipc_dir
    if not ipc_dir:
        config = load_config(args.config)
        ipc_dir = config.get("paths", {}).get("ipc_dir", DEFAULT_IPC_DIR)
    return ApprovalMailbox(ipc_dir)


def cmd_sessions(client: ThreadRunnerClient) -> int:
    data, success, unavailable = client.list_sessions()
    if unavailable:
        print("threadrunner is not running", file=sys.stderr)
        return 2
    if not success:
        print(f"Error: {data}", file=sys.stderr)
        return 1

    if not data:
        print("No active sessions")
        return 0
    for mapping in data:
        cwd = mapping.get("working_directory") or "-"
        print(f"{mapping['session_name']}  thread={mapping['thread_key']}  cwd={cwd}")
    return 0


def cmd_status(client: ThreadRunnerClient, chat_id: str, thread_id: str) -> int:
    data, success, unavailable = client.thread_status(chat_id, thread_id)
    if unavailable:
        print("threadrunner is not running", file=sys.stderr)
        return 2
    if not success:
        print(f"Error: {data}", file=sys.stderr)
        return 1

    print(f"Thread:     {data['thread_key']}")
    print(f"Session:    {data.get('session_name') or '(none)'}")
    print(f"Queue:      {data['queue_size']} pending")
    print(f"Processing: {'yes' if data['processing'] else 'no'}")
    for execution in data.get("executions", []):
        flag = " (awaiting approval)" if execution["awaiting_approval"] else ""
        print(f"  {execution['session_key']}: {execution['state']}{flag}")
    return 0


def cmd_pending(mailbox: ApprovalMailbox) -> int:
    records = mailbox.list_pending()
    if not records:
        print("No pending approvals")
        return 0
    for record in records:
        tool = record.get("tool_name") or "?"
        owner = record.get("session_key") or "?"
        print(f"{record['approval_id']}  tool={tool}  session={owner}")
    return 0


def cmd_resolve(mailbox: ApprovalMailbox, approval_id: str, approved: bool, message: Optional[str] = None) -> int:
    pending_ids = {r["approval_id"] for r in mailbox.list_pending()}
    if approval_id not in pending_ids:
        print(f"No pending approval {approval_id}", file=sys.stderr)
        return 1

    try:
        decision = mailbox.write_response(approval_id, approved, message=message)
    except ApprovalIOError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1

    print(f"{approval_id}: {decision.behavior}")
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="threadrunner",
        description="Chat-thread agent sessions with human approval",
    )
    parser.add_argument("--config", default="config.yaml", help="Path to config file")
    parser.add_argument("--api-url", help="API base URL (default: $THREADRUNNER_API_URL)")
    subparsers = parser.add_subparsers(dest="command", help="Commands")

    subparsers.add_parser("serve", help="Run the orchestrator")
    subparsers.add_parser("sessions", help="List live thread sessions")

    status_parser = subparsers.add_parser("status", help="Show a thread's queue and executions")
    status_parser.add_argument("chat_id", help="Chat ID")
    status_parser.add_argument("thread_id", help="Thread ID")

    for name, help_text in (
        ("pending", "List outstanding approval requests"),
        ("approve", "Approve a pending request"),
        ("deny", "Deny a pending request"),
    ):
        sub = subparsers.add_parser(name, help=help_text)
        sub.add_argument("--ipc-dir", help="Approval directory (default: paths.ipc_dir from config)")
        if name != "pending":
            sub.add_argument("approval_id", help="Approval ID")
            sub.add_argument("--message", help="Message returned to the agent")

    return parser


def main(argv: Optional[list[str]] = None):
    parser = build_parser()
    args = parser.parse_args(argv)

    if not args.command:
        parser.print_help()
        sys.exit(1)

    if args.command == "serve":
        run(args.config)
        sys.exit(0)

    client = ThreadRunnerClient(args.api_url)

    if args.command == "sessions":
        sys.exit(cmd_sessions(client))
    elif args.command == "status":
        sys.exit(cmd_status(client, args.chat_id, args.thread_id))
    elif args.command == "pending":
        sys.exit(cmd_pending(_mailbox_for(args)))
    elif args.command in ("approve", "deny"):
        sys.exit(cmd_resolve(_mailbox_for(args), args.approval_id, args.command == "approve", args.message))


if __name__ == "__main__":
    main()
