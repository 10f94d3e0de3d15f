"""Agent and conversation persistence.

The relational store is an external collaborator; the turn pipeline only
needs the two narrow protocols below.  ``InMemoryWorkspaceStore``
implements both and backs the dev server, the CLI and the tests.
"""

from __future__ import annotations

import asyncio
import json
import logging
import uuid
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

from agent_workspace.errors import ConversationNotFoundError
from agent_workspace.models import Agent, CredentialSet, HistoryMessage, utcnow

if TYPE_CHECKING:
    from agent_workspace.services.retriever import InMemoryChunkIndex
    from agent_workspace.services.vault import InMemoryCredentialVault

logger = logging.getLogger(__name__)


class AgentStore(Protocol):
    async def get_agent(self, agent_id: str, user_id: str) -> Agent | None: ...


class ConversationStore(Protocol):
    async def conversation_belongs_to(self, conversation_id: str, user_id: str, agent_id: str) -> bool: ...

    async def ensure_conversation(
        self, agent: Agent, user_id: str, conversation_id: str | None,
    ) -> str: ...

    async def append_message(self, conversation_id: str, role: str, content: str) -> str: ...

    async def recent_messages(
        self, conversation_id: str, limit: int, *, user_id: str, agent_id: str,
    ) -> list[HistoryMessage]: ...


class InMemoryWorkspaceStore:
    """Dict-backed agents and conversations for a single process.

    A conversation is visible only to the (user, agent) pair that created
    it; an id nobody has used yet is free to adopt.
    """

    def __init__(self) -> None:
        self._agents: dict[str, Agent] = {}
        self._conversations: dict[str, dict] = {}
        self._lock = asyncio.Lock()

    def add_agent(self, agent: Agent) -> Agent:
        self._agents[agent.id] = agent
        return agent

    async def get_agent(self, agent_id: str, user_id: str) -> Agent | None:
        agent = self._agents.get(agent_id)
        # Agents owned by another user are reported as missing.
        if agent is None or agent.user_id != user_id:
            return None
        return agent

    def _owned(self, conversation: dict, user_id: str, agent_id: str) -> bool:
        return conversation["user_id"] == user_id and conversation["agent_id"] == agent_id

    async def conversation_belongs_to(self, conversation_id: str, user_id: str, agent_id: str) -> bool:
        conversation = self._conversations.get(conversation_id)
        return conversation is None or self._owned(conversation, user_id, agent_id)

    async def ensure_conversation(
        self, agent: Agent, user_id: str, conversation_id: str | None,
    ) -> str:
        async with self._lock:
            existing = self._conversations.get(conversation_id) if conversation_id else None
            if existing is not None:
                if not self._owned(existing, user_id, agent.id):
                    raise ConversationNotFoundError(conversation_id)
                return conversation_id
            conversation_id = conversation_id or str(uuid.uuid4())
            self._conversations[conversation_id] = {
                "agent_id": agent.id,
                "user_id": user_id,
                "title": f"Conversation with {agent.name}",
                "created_at": utcnow(),
                "messages": [],
            }
            logger.info("Created conversation %s for agent %s", conversation_id, agent.id)
            return conversation_id

    async def append_message(self, conversation_id: str, role: str, content: str) -> str:
        conversation = self._conversations.get(conversation_id)
        if conversation is None:
            raise KeyError(f"Unknown conversation {conversation_id}")
        message_id = str(uuid.uuid4())
        conversation["messages"].append(
            {"id": message_id, "role": role, "content": content, "created_at": utcnow()}
        )
        return message_id

    async def recent_messages(
        self, conversation_id: str, limit: int, *, user_id: str, agent_id: str,
    ) -> list[HistoryMessage]:
        conversation = self._conversations.get(conversation_id)
        if conversation is None or limit <= 0 or not self._owned(conversation, user_id, agent_id):
            return []
        return [
            HistoryMessage(role=m["role"], content=m["content"])
            for m in conversation["messages"][-limit:]
        ]

    def conversation_title(self, conversation_id: str) -> str | None:
        conversation = self._conversations.get(conversation_id)
        return conversation["title"] if conversation else None


# ── Seed loading ─────────────────────────────────────────────────────


def load_seed(
    path: str | Path,
    store: InMemoryWorkspaceStore,
    vault: InMemoryCredentialVault,
    index: InMemoryChunkIndex,
) -> dict[str, int]:
    """Populate the in-memory collaborators from a JSON seed file.

    Expected shape (camelCase keys)::

        {
          "agents":      [{"id", "userId", "name", "description", "prompt"}],
          "credentials": [{"userId", "family", "secrets": {...}, "isValid", "expiresAt"}],
          "chunks":      [{"agentId", "userId", "content", "fileName", "embedding": [...]}]
        }

    Returns the number of records loaded per section.
    """
    data = json.loads(Path(path).read_text(encoding="utf-8"))

    for raw in data.get("agents", []):
        store.add_agent(Agent.model_validate(raw))

    for raw in data.get("credentials", []):
        user_id = raw["userId"]
        creds = CredentialSet.model_validate({k: v for k, v in raw.items() if k != "userId"})
        vault.put(user_id, creds)

    for raw in data.get("chunks", []):
        index.add(
            agent_id=raw["agentId"],
            user_id=raw["userId"],
            content=raw["content"],
            embedding=raw["embedding"],
            file_name=raw.get("fileName"),
        )

    counts = {
        "agents": len(data.get("agents", [])),
        "credentials": len(data.get("credentials", [])),
        "chunks": len(data.get("chunks", [])),
    }
    # Credential values stay out of the log; only counts are reported.
    logger.info("Loaded workspace seed %s: %s", path, counts)
    return counts
