"""FastAPI route definitions for the agent workspace API."""

from __future__ import annotations

import logging
from collections.abc import AsyncIterator

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from fastapi.responses import StreamingResponse

from agent_workspace.api.schemas import (
    HealthResponse,
    MessageRequest,
    MessageResponse,
    RetrievalCheckRequest,
    RetrievalCheckResponse,
    StorefrontActionResponse,
    StorefrontExecuteRequest,
    StorefrontExecuteResponse,
    StorefrontStatusResponse,
)
from agent_workspace.config import SSE_KEEPALIVE_SECONDS
from agent_workspace.errors import (
    AgentNotFoundError,
    ConversationNotFoundError,
    CredentialError,
    EmptyMessageError,
    ModelCallError,
    PersistenceError,
    WorkerAlreadyRunningError,
    WorkerError,
    WorkerNotRunningError,
    WorkerRPCError,
    WorkerStartError,
    WorkerTimeoutError,
)
from agent_workspace.services.process_manager import ProcessManager
from agent_workspace.services.progress import ProgressChannel
from agent_workspace.turns import TurnService

logger = logging.getLogger(__name__)

router = APIRouter()

INTERNAL_ERROR_DETAIL = "An internal error occurred. Please try again."


# ── Dependencies ─────────────────────────────────────────────────────


def _from_state(request: Request, name: str):
    """Fetch a component built by the lifespan, or 503 while starting up."""
    component = getattr(request.app.state, name, None)
    if component is None:
        raise HTTPException(
            status_code=503,
            detail="The service is still starting up. Please try again in a moment.",
        )
    return component


def get_turn_service(request: Request) -> TurnService:
    return _from_state(request, "turn_service")


def get_progress_channel(request: Request) -> ProgressChannel:
    return _from_state(request, "progress")


def get_process_manager(request: Request) -> ProcessManager:
    return _from_state(request, "process_manager")


def get_user_id(x_user_id: str | None = Header(None, alias="X-User-ID")) -> str:
    """Identity set by the upstream authentication layer."""
    if not x_user_id or not x_user_id.strip():
        raise HTTPException(status_code=401, detail="Authentication required.")
    return x_user_id.strip()


# ── Endpoints ────────────────────────────────────────────────────────


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """Health check endpoint."""
    return HealthResponse()


@router.post("/agents/{agent_id}/messages", response_model=MessageResponse)
async def send_message(
    agent_id: str,
    body: MessageRequest,
    request: Request,
    user_id: str = Depends(get_user_id),
    turns: TurnService = Depends(get_turn_service),
):
    """Run one chat turn and return the assistant's reply.

    Progress (tool activity, text chunks) is published to the stream the
    client opened under ``sessionId``; this response is the authoritative
    result either way.
    """
    request_id = getattr(request.state, "request_id", "?")
    try:
        reply = await turns.handle_turn(
            agent_id=agent_id,
            user_id=user_id,
            message=body.message,
            conversation_id=body.conversation_id,
            session_id=body.session_id,
            history=body.history,
        )
    except EmptyMessageError as e:
        raise HTTPException(status_code=400, detail="Message is required.") from e
    except AgentNotFoundError as e:
        raise HTTPException(status_code=404, detail="Agent not found.") from e
    except ConversationNotFoundError as e:
        raise HTTPException(status_code=404, detail="Conversation not found.") from e
    except ModelCallError as e:
        logger.error("[%s] Model unavailable for agent %s: %s", request_id, agent_id, e.__cause__)
        raise HTTPException(
            status_code=503,
            detail="The AI service is temporarily unavailable. Please try again.",
        ) from e
    except PersistenceError as e:
        raise HTTPException(status_code=500, detail=INTERNAL_ERROR_DETAIL) from e
    except Exception as e:
        logger.exception("[%s] Error processing message for agent %s", request_id, agent_id)
        raise HTTPException(status_code=500, detail=INTERNAL_ERROR_DETAIL) from e

    return MessageResponse(
        id=reply.id,
        content=reply.content,
        role=reply.role,
        timestamp=reply.timestamp,
        conversation_id=reply.conversation_id,
        tools_executed=reply.tools_executed,
        rag_context=reply.rag_context,
    )


@router.post("/agents/{agent_id}/test-rag", response_model=RetrievalCheckResponse)
async def check_retrieval(
    agent_id: str,
    body: RetrievalCheckRequest,
    user_id: str = Depends(get_user_id),
    turns: TurnService = Depends(get_turn_service),
):
    """Show which knowledge chunks a message to this agent would pull in."""
    try:
        context = await turns.check_retrieval(agent_id=agent_id, user_id=user_id, query=body.query)
    except EmptyMessageError as e:
        raise HTTPException(status_code=400, detail="Query is required.") from e
    except AgentNotFoundError as e:
        raise HTTPException(status_code=404, detail="Agent not found.") from e

    return RetrievalCheckResponse(
        query=body.query,
        has_context=context.has_context,
        context=context.context,
        chunks=context.chunks,
        chunks_count=len(context.chunks),
    )


@router.get("/agents/{agent_id}/progress/{session_id}")
async def progress_stream(
    agent_id: str,
    session_id: str,
    channel: ProgressChannel = Depends(get_progress_channel),
) -> StreamingResponse:
    """Server-Sent Events stream of one turn's progress.

    Browsers' ``EventSource`` cannot send headers, so the stream is not
    tied to ``X-User-ID``; the unguessable session id scopes it.  The
    stream ends after ``text_complete``/``text_error`` or on disconnect.
    """
    session = channel.open(session_id)
    logger.info("Progress stream opened for agent %s session %s", agent_id, session_id)

    async def _event_generator() -> AsyncIterator[str]:
        try:
            async for frame in session.frames(SSE_KEEPALIVE_SECONDS):
                yield frame
        finally:
            channel.close(session_id, session)
            logger.info("Progress stream closed for session %s", session_id)

    return StreamingResponse(
        _event_generator(),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",
        },
    )


# ── Storefront worker management ────────────────────────────────────


def _status(manager: ProcessManager, user_id: str) -> StorefrontStatusResponse:
    return StorefrontStatusResponse.model_validate(manager.status(user_id))


@router.post("/storefront/start", response_model=StorefrontActionResponse)
async def start_storefront(
    user_id: str = Depends(get_user_id),
    manager: ProcessManager = Depends(get_process_manager),
):
    try:
        await manager.start(user_id)
    except WorkerAlreadyRunningError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except CredentialError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except WorkerStartError as e:
        logger.error("Storefront worker failed to start for user %s: %s", user_id, e)
        raise HTTPException(status_code=500, detail="Could not start the storefront worker.") from e
    return StorefrontActionResponse(message="Storefront worker started.", status=_status(manager, user_id))


@router.post("/storefront/stop", response_model=StorefrontActionResponse)
async def stop_storefront(
    user_id: str = Depends(get_user_id),
    manager: ProcessManager = Depends(get_process_manager),
):
    if not await manager.stop(user_id):
        raise HTTPException(status_code=400, detail="Storefront worker is not running.")
    return StorefrontActionResponse(message="Storefront worker stopped.")


@router.get("/storefront/status", response_model=StorefrontStatusResponse)
async def storefront_status(
    user_id: str = Depends(get_user_id),
    manager: ProcessManager = Depends(get_process_manager),
):
    return _status(manager, user_id)


@router.post("/storefront/execute", response_model=StorefrontExecuteResponse)
async def execute_storefront(
    body: StorefrontExecuteRequest,
    user_id: str = Depends(get_user_id),
    manager: ProcessManager = Depends(get_process_manager),
):
    """Send one request to a running worker.  Never starts it implicitly."""
    try:
        result = await manager.send_request(user_id, body.method, body.params)
    except WorkerNotRunningError as e:
        raise HTTPException(status_code=400, detail=str(e)) from e
    except WorkerTimeoutError as e:
        raise HTTPException(status_code=504, detail=str(e)) from e
    except WorkerRPCError as e:
        raise HTTPException(status_code=502, detail=str(e)) from e
    except WorkerError as e:
        logger.warning("Storefront request %s failed for user %s: %s", body.method, user_id, e)
        raise HTTPException(status_code=502, detail="The storefront worker failed.") from e
    return StorefrontExecuteResponse(result=result)
