"""The turn endpoint's application service.

``TurnService.handle_turn`` is the single source of truth for a turn's
result: it resolves the agent, loads history, retrieves knowledge, runs
the orchestrator to completion (publishing progress along the way) and
persists the exchange.  The progress stream is only an observer.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from typing import Any

from agent_workspace.config import HISTORY_WINDOW
from agent_workspace.errors import (
    AgentNotFoundError,
    ConversationNotFoundError,
    EmptyMessageError,
    PersistenceError,
)
from agent_workspace.models import HistoryMessage, RetrievedContext, utcnow
from agent_workspace.orchestrator import TurnOrchestrator
from agent_workspace.services.progress import ProgressChannel
from agent_workspace.services.retriever import KnowledgeRetriever
from agent_workspace.services.store import AgentStore, ConversationStore

logger = logging.getLogger(__name__)


@dataclass
class TurnReply:
    """Authoritative outcome of one turn, shaped for the HTTP response."""

    id: str
    content: str
    timestamp: str
    conversation_id: str
    tools_executed: list[dict[str, Any]]
    rag_context: dict[str, Any]
    role: str = "assistant"


class TurnService:
    def __init__(
        self,
        *,
        agents: AgentStore,
        conversations: ConversationStore,
        retriever: KnowledgeRetriever,
        orchestrator: TurnOrchestrator,
        progress: ProgressChannel,
        history_window: int = HISTORY_WINDOW,
    ) -> None:
        self._agents = agents
        self._conversations = conversations
        self._retriever = retriever
        self._orchestrator = orchestrator
        self._progress = progress
        self._history_window = history_window

    async def handle_turn(
        self,
        *,
        agent_id: str,
        user_id: str,
        message: str,
        conversation_id: str | None = None,
        session_id: str | None = None,
        history: list[HistoryMessage] | None = None,
    ) -> TurnReply:
        if not message or not message.strip():
            raise EmptyMessageError("Message is required.")

        agent = await self._agents.get_agent(agent_id, user_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)

        if conversation_id and not await self._conversations.conversation_belongs_to(
            conversation_id, user_id, agent.id,
        ):
            logger.warning("User %s asked for conversation %s it does not own", user_id, conversation_id)
            raise ConversationNotFoundError(conversation_id)

        if history is None and conversation_id:
            history = await self._load_history(conversation_id, user_id, agent.id)

        context = await self._retriever.retrieve(message, agent.id, user_id)
        emit = self._progress.emitter(session_id)

        # ModelCallError propagates; the route maps it to 503.
        result = await self._orchestrator.run_turn(
            agent=agent,
            user_id=user_id,
            message=message,
            context=context,
            history=history,
            emit=emit,
        )

        try:
            conversation_id = await self._conversations.ensure_conversation(agent, user_id, conversation_id)
        except ConversationNotFoundError:
            raise
        except Exception as exc:
            logger.exception("Could not create conversation for agent %s", agent.id)
            raise PersistenceError("Could not create the conversation.") from exc

        await self._save(conversation_id, "user", message)
        reply_id = await self._save(conversation_id, "assistant", result.content)

        return TurnReply(
            id=reply_id or str(uuid.uuid4()),
            content=result.content,
            timestamp=utcnow().isoformat(),
            conversation_id=conversation_id,
            tools_executed=[r.model_dump(mode="json", by_alias=True) for r in result.tools_executed],
            rag_context=context.summary(),
        )

    async def check_retrieval(self, *, agent_id: str, user_id: str, query: str) -> RetrievedContext:
        """Run only the knowledge lookup a turn would make for ``query``."""
        if not query or not query.strip():
            raise EmptyMessageError("Query is required.")
        agent = await self._agents.get_agent(agent_id, user_id)
        if agent is None:
            raise AgentNotFoundError(agent_id)
        context = await self._retriever.retrieve(query, agent.id, user_id)
        logger.info("Retrieval check for agent %s matched %d chunks", agent.id, len(context.chunks))
        return context

    async def _load_history(self, conversation_id: str, user_id: str, agent_id: str) -> list[HistoryMessage]:
        try:
            return await self._conversations.recent_messages(
                conversation_id, self._history_window, user_id=user_id, agent_id=agent_id,
            )
        except Exception:
            logger.warning("Could not load history for conversation %s", conversation_id, exc_info=True)
            return []

    async def _save(self, conversation_id: str, role: str, content: str) -> str | None:
        try:
            return await self._conversations.append_message(conversation_id, role, content)
        except Exception:
            logger.exception("Could not save %s message to conversation %s", role, conversation_id)
            return None
