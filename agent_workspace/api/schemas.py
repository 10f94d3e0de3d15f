"""Pydantic schemas for the FastAPI endpoints (camelCase on the wire)."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from agent_workspace.models import HistoryMessage, KnowledgeChunk


class _Schema(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class MessageRequest(_Schema):
    """A user message sent to an agent.

    An empty ``message`` is accepted here and rejected by the turn service
    with a 400, so the client gets one consistent error shape.
    """

    message: str = Field("", max_length=10_000, description="The user's message")
    conversation_id: str | None = Field(None, description="Existing conversation to continue")
    session_id: str | None = Field(
        None, max_length=200, description="Progress stream session opened by the client",
    )
    history: list[HistoryMessage] | None = Field(
        None, description="Prior messages; loaded from the conversation when omitted",
    )


class RagContextSummary(_Schema):
    has_context: bool = False
    chunks_count: int = 0
    sources: list[str] = Field(default_factory=list)


class MessageResponse(_Schema):
    """The assistant's reply: the authoritative result of the turn."""

    id: str
    content: str
    role: str = "assistant"
    timestamp: str
    conversation_id: str
    tools_executed: list[dict[str, Any]] = Field(default_factory=list)
    rag_context: RagContextSummary


class RetrievalCheckRequest(_Schema):
    query: str = Field("", max_length=10_000, description="Text to look up in the agent's knowledge base")


class RetrievalCheckResponse(_Schema):
    """What the knowledge lookup of a turn would return for ``query``."""

    query: str
    has_context: bool
    context: str
    chunks: list[KnowledgeChunk]
    chunks_count: int


class HealthResponse(BaseModel):
    status: str = "ok"
    service: str = "agent-workspace"


# ── Storefront worker management ────────────────────────────────────


class StorefrontExecuteRequest(_Schema):
    method: str = Field(..., min_length=1, max_length=100, description="Worker method, e.g. get_products")
    params: dict[str, Any] = Field(default_factory=dict)


class StorefrontStatusResponse(_Schema):
    running: bool
    pid: int | None = None
    pending_requests: int = 0
    started_at: str | None = None


class StorefrontActionResponse(_Schema):
    success: bool = True
    message: str
    status: StorefrontStatusResponse | None = None


class StorefrontExecuteResponse(_Schema):
    success: bool = True
    result: Any = None
