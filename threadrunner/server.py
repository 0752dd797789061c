"""FastAPI server for operator endpoints."""

import asyncio
import logging
import time
from typing import Any, Optional

from fastapi import FastAPI, HTTPException, Request
from pydantic import BaseModel
from starlette.middleware.base import BaseHTTPMiddleware

from .models import ThreadKey
from .permission_gateway import ApprovalIOError

logger = logging.getLogger(__name__)


class RequestTimingMiddleware(BaseHTTPMiddleware):
    """Log slow requests."""

    def __init__(self, app, slow_threshold: float = 1.0):
        super().__init__(app)
        self.slow_threshold = slow_threshold

    async def dispatch(self, request: Request, call_next):
        start = time.monotonic()
        response = await call_next(request)
        elapsed = time.monotonic() - start
        if elapsed > self.slow_threshold:
            logger.warning(f"SLOW REQUEST: {request.method} {request.url.path} took {elapsed:.2f}s")
        return response


class SessionMappingResponse(BaseModel):
    thread_key: str
    session_name: str
    created_at: str
    working_directory: Optional[str] = None


class ExecutionResponse(BaseModel):
    session_key: str
    state: str
    awaiting_approval: bool
    started_at: str
    last_activity: str


class ThreadStatusResponse(BaseModel):
    thread_key: str
    session_name: Optional[str] = None
    queue_size: int
    processing: bool
    executions: list[ExecutionResponse]


class ApprovalRequest(BaseModel):
    """An operator's decision on a pending approval."""
    approved: bool
    updated_input: Optional[dict[str, Any]] = None
    message: Optional[str] = None


class ApprovalResponse(BaseModel):
    approval_id: str
    behavior: str


def create_app(
    coordinator=None,
    mailbox=None,
    config: Optional[dict] = None,
    lifespan=None,
) -> FastAPI:
    """
    Create the FastAPI application.

    Args:
        coordinator: ExecutionCoordinator instance
        mailbox: ApprovalMailbox shared with permission servers
        config: Configuration dictionary
        lifespan: Optional ASGI lifespan context manager
    """
    app = FastAPI(
        title="threadrunner",
        description="Thread-bound agent sessions with human approval",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.config = config or {}
    app.state.coordinator = coordinator
    app.state.mailbox = mailbox

    server_config = app.state.config.get("server", {})
    app.add_middleware(
        RequestTimingMiddleware,
        slow_threshold=server_config.get("slow_request_threshold_seconds", 1.0),
    )

    def _require_coordinator():
        if not app.state.coordinator:
            raise HTTPException(status_code=503, detail="Coordinator not configured")
        return app.state.coordinator

    def _require_mailbox():
        if not app.state.mailbox:
            raise HTTPException(status_code=503, detail="Approval mailbox not configured")
        return app.state.mailbox

    @app.get("/")
    async def root():
        return {"status": "ok", "service": "threadrunner"}

    @app.get("/health")
    async def health():
        """Health check endpoint."""
        return {"status": "healthy"}

    @app.get("/sessions", response_model=list[SessionMappingResponse])
    async def list_sessions():
        """Thread mappings whose tmux sessions are alive."""
        coordinator = _require_coordinator()
        mappings = await asyncio.to_thread(coordinator.registry.list_live)
        return [
            SessionMappingResponse(
                thread_key=m.thread_key,
                session_name=m.session_name,
                created_at=m.created_at.isoformat(),
                working_directory=m.working_directory,
            )
            for m in mappings
        ]

    @app.get("/threads/{chat_id}/{thread_id}", response_model=ThreadStatusResponse)
    async def thread_status(chat_id: str, thread_id: str):
        coordinator = _require_coordinator()
        return coordinator.thread_status(ThreadKey(chat_id, thread_id))

    @app.get("/approvals")
    async def list_approvals():
        """Outstanding approval requests."""
        mailbox = _require_mailbox()
        return {"pending": await asyncio.to_thread(mailbox.list_pending)}

    @app.post("/approvals/{approval_id}", response_model=ApprovalResponse)
    async def resolve_approval(approval_id: str, request: ApprovalRequest):
        """Write the decision for a waiting permission request."""
        mailbox = _require_mailbox()
        pending_ids = {p["approval_id"] for p in await asyncio.to_thread(mailbox.list_pending)}
        if approval_id not in pending_ids:
            raise HTTPException(status_code=404, detail=f"No pending approval {approval_id}")

        try:
            decision = mailbox.write_response(
                approval_id,
                request.approved,
                updated_input=request.updated_input,
                message=request.message,
            )
        except ApprovalIOError as e:
            logger.error(f"Failed to write approval {approval_id}: {e}")
            raise HTTPException(status_code=500, detail=str(e))

        logger.info(f"Approval {approval_id} resolved via API: {decision.behavior}")
        return ApprovalResponse(approval_id=approval_id, behavior=decision.behavior)

    return app
