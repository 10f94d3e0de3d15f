"""FastAPI server for the Agent Workspace backend.

Run with:
    uvicorn agent_workspace.server:app --reload --host 0.0.0.0 --port 5000
"""

from __future__ import annotations

import logging
import uuid
from contextlib import asynccontextmanager

import uvicorn
from fastapi import FastAPI, Request, Response
from fastapi.middleware.cors import CORSMiddleware
from langchain_anthropic import ChatAnthropic
from langchain_openai import OpenAIEmbeddings

from agent_workspace.api.routes import router
from agent_workspace.config import (
    ANTHROPIC_API_KEY,
    CHAT_MODEL_NAME,
    CORS_ORIGINS,
    EMBEDDING_MODEL_NAME,
    FALLBACK_EMBEDDING_MODEL_NAME,
    MODEL_MAX_TOKENS,
    MODEL_TEMPERATURE,
    OPENAI_API_KEY,
    SERVER_HOST,
    SERVER_PORT,
    WORKSPACE_SEED_FILE,
)
from agent_workspace.orchestrator import TurnOrchestrator
from agent_workspace.services.metrics import metrics
from agent_workspace.services.process_manager import ProcessManager
from agent_workspace.services.progress import ProgressChannel
from agent_workspace.services.retriever import InMemoryChunkIndex, KnowledgeRetriever
from agent_workspace.services.store import InMemoryWorkspaceStore, load_seed
from agent_workspace.services.vault import InMemoryCredentialVault
from agent_workspace.tools.registry import ToolRegistry
from agent_workspace.turns import TurnService

# ── Logging ──────────────────────────────────────────────────────────
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s %(levelname)-8s %(name)s - %(message)s",
)
logger = logging.getLogger(__name__)


def build_chat_model() -> ChatAnthropic:
    return ChatAnthropic(
        model=CHAT_MODEL_NAME,
        api_key=ANTHROPIC_API_KEY,
        temperature=MODEL_TEMPERATURE,
        max_tokens=MODEL_MAX_TOKENS,
    )


def build_retriever(index: InMemoryChunkIndex) -> KnowledgeRetriever:
    """Retrieval is disabled (always empty context) without an OpenAI key."""
    if not OPENAI_API_KEY:
        logger.warning("OPENAI_API_KEY not set; knowledge retrieval is disabled")
        return KnowledgeRetriever(None, index)
    return KnowledgeRetriever(
        OpenAIEmbeddings(model=EMBEDDING_MODEL_NAME, api_key=OPENAI_API_KEY),
        index,
        fallback_embeddings=OpenAIEmbeddings(model=FALLBACK_EMBEDDING_MODEL_NAME, api_key=OPENAI_API_KEY),
    )


# ── Lifespan: initialise / tear-down shared resources ────────────────
@asynccontextmanager
async def lifespan(application: FastAPI):
    """Build the collaborators once and hang them on app state.

    The progress channel and the process manager are the only in-memory
    registries; both are owned here and injected where they are used.
    """
    store = InMemoryWorkspaceStore()
    vault = InMemoryCredentialVault()
    index = InMemoryChunkIndex()
    if WORKSPACE_SEED_FILE:
        load_seed(WORKSPACE_SEED_FILE, store, vault, index)

    progress = ProgressChannel()
    process_manager = ProcessManager(vault)
    registry = ToolRegistry(vault, process_manager)

    logger.info("Compiling turn graph…")
    orchestrator = TurnOrchestrator(build_chat_model(), registry)

    application.state.store = store
    application.state.vault = vault
    application.state.progress = progress
    application.state.process_manager = process_manager
    application.state.turn_service = TurnService(
        agents=store,
        conversations=store,
        retriever=build_retriever(index),
        orchestrator=orchestrator,
        progress=progress,
    )
    logger.info("Agent workspace ready (%d tools).", len(registry.names))
    yield
    await process_manager.stop_all()
    metrics.flush()


# ── FastAPI application ──────────────────────────────────────────────
app = FastAPI(
    title="Agent Workspace",
    description=(
        "Chat with user-configured agents backed by document retrieval, "
        "Google Drive/Sheets and storefront tools."
    ),
    version="1.0.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


# ── Request-ID middleware ────────────────────────────────────────────
@app.middleware("http")
async def add_request_id(request: Request, call_next) -> Response:
    """Tag every request with ``X-Request-ID`` (client-supplied or generated)."""
    request_id = request.headers.get("X-Request-ID", str(uuid.uuid4()))
    request.state.request_id = request_id
    logger.info("[%s] %s %s", request_id, request.method, request.url.path)
    response = await call_next(request)
    response.headers["X-Request-ID"] = request_id
    return response


# ── Register routes ──────────────────────────────────────────────────
app.include_router(router, prefix="/api")


@app.get("/")
async def root():
    """Root endpoint with API info."""
    return {
        "service": "Agent Workspace",
        "version": "1.0.0",
        "docs": "/docs",
        "health": "/api/health",
    }


if __name__ == "__main__":
    logger.info("Starting Agent Workspace API server on %s:%d", SERVER_HOST, SERVER_PORT)
    uvicorn.run(
        "agent_workspace.server:app",
        host=SERVER_HOST,
        port=SERVER_PORT,
        reload=True,
    )
