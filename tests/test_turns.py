"""Tests for the turn service, the in-memory store and seed loading."""

from __future__ import annotations

import json
from unittest.mock import AsyncMock

import pytest
from langchain_core.messages import AIMessage

from agent_workspace.errors import (
    AgentNotFoundError,
    CredentialsInvalidError,
    ConversationNotFoundError,
    CredentialsNotFoundError,
    EmptyMessageError,
    ModelCallError,
    PersistenceError,
)
from agent_workspace.models import Agent, HistoryMessage, RetrievedContext
from agent_workspace.orchestrator import TurnOrchestrator
from agent_workspace.services.progress import ProgressChannel
from agent_workspace.services.retriever import InMemoryChunkIndex, KnowledgeRetriever
from agent_workspace.services.store import InMemoryWorkspaceStore, load_seed
from agent_workspace.services.vault import GOOGLE, STOREFRONT, InMemoryCredentialVault
from agent_workspace.turns import TurnService

AGENT = Agent(id="agent-1", user_id="user-1", name="Analyst", prompt="You analyse spreadsheets.")


class StaticRetriever:
    def __init__(self, context: RetrievedContext | None = None) -> None:
        self.context = context or RetrievedContext()
        self.queries: list[tuple[str, str, str]] = []

    async def retrieve(self, query, agent_id, user_id, limit=None):
        self.queries.append((query, agent_id, user_id))
        return self.context


@pytest.fixture
def store() -> InMemoryWorkspaceStore:
    store = InMemoryWorkspaceStore()
    store.add_agent(AGENT)
    return store


@pytest.fixture
def build_service(store, make_registry):
    def _build(model, *, retriever=None, progress=None, handlers=None, conversations=None):
        orchestrator = TurnOrchestrator(model, make_registry(handlers or {}), stream=False, chunk_delay=0)
        return TurnService(
            agents=store,
            conversations=conversations or store,
            retriever=retriever or StaticRetriever(),
            orchestrator=orchestrator,
            progress=progress or ProgressChannel(),
        )

    return _build


# ── Turn service ─────────────────────────────────────────────────────


class TestHandleTurn:
    async def test_reply_is_persisted_with_title(self, store, build_service, make_model):
        service = build_service(make_model(AIMessage(content="Hello!")))

        reply = await service.handle_turn(agent_id="agent-1", user_id="user-1", message="Hi")

        assert reply.content == "Hello!"
        assert reply.role == "assistant"
        assert store.conversation_title(reply.conversation_id) == "Conversation with Analyst"
        saved = await store.recent_messages(reply.conversation_id, 10, user_id="user-1", agent_id="agent-1")
        assert [(m.role, m.content) for m in saved] == [("user", "Hi"), ("assistant", "Hello!")]

    async def test_history_loaded_from_conversation(self, store, build_service, make_model):
        model = make_model(AIMessage(content="first answer"), AIMessage(content="second answer"))
        service = build_service(model)

        first = await service.handle_turn(agent_id="agent-1", user_id="user-1", message="first question")
        second = await service.handle_turn(
            agent_id="agent-1", user_id="user-1", message="second question",
            conversation_id=first.conversation_id,
        )

        assert second.conversation_id == first.conversation_id
        sent = [m.content for m in model.calls[1][1:]]
        assert sent == ["first question", "first answer", "second question"]

    async def test_explicit_history_wins(self, store, build_service, make_model):
        model = make_model(AIMessage(content="ok"))
        service = build_service(model)

        await service.handle_turn(
            agent_id="agent-1", user_id="user-1", message="now",
            history=[HistoryMessage(role="user", content="from the client")],
        )
        assert [m.content for m in model.calls[0][1:]] == ["from the client", "now"]

    async def test_rag_summary_and_tool_records(self, build_service, make_model, make_tool_call):
        async def list_files():
            return {"files": [], "total": 0}

        context = RetrievedContext(has_context=True, context="[Source: a.pdf] x")
        model = make_model(
            AIMessage(content="", tool_calls=[make_tool_call("gdrive_list_files")]),
            AIMessage(content="Your Drive is empty."),
        )
        service = build_service(
            model, retriever=StaticRetriever(context), handlers={"gdrive_list_files": list_files},
        )

        reply = await service.handle_turn(agent_id="agent-1", user_id="user-1", message="files?")

        assert reply.rag_context == {"hasContext": True, "chunksCount": 0, "sources": []}
        record = reply.tools_executed[0]
        assert record["name"] == "gdrive_list_files"
        assert record["status"] == "success"
        assert record["isAdditional"] is False
        assert record["displayName"] == "Gdrive List Files"

    async def test_progress_published_to_session(self, build_service, make_model):
        progress = ProgressChannel()
        session = progress.open("sess-1")
        service = build_service(make_model(AIMessage(content="Hi there")), progress=progress)

        await service.handle_turn(agent_id="agent-1", user_id="user-1", message="Hi", session_id="sess-1")

        frames = [frame async for frame in session.frames(1.0)]
        assert frames[0].startswith("event: connected")
        assert frames[-1].startswith("event: text_complete")

    @pytest.mark.parametrize("message", ["", "   "])
    async def test_empty_message(self, build_service, make_model, message):
        model = make_model(AIMessage(content="never"))
        with pytest.raises(EmptyMessageError):
            await build_service(model).handle_turn(agent_id="agent-1", user_id="user-1", message=message)
        assert model.calls == []

    async def test_agent_of_another_user_is_not_found(self, build_service, make_model):
        with pytest.raises(AgentNotFoundError):
            await build_service(make_model(AIMessage(content="x"))).handle_turn(
                agent_id="agent-1", user_id="intruder", message="hi",
            )

    async def test_model_failure_persists_nothing(self, store, build_service, make_model):
        service = build_service(make_model(fail=RuntimeError("down")))
        with pytest.raises(ModelCallError):
            await service.handle_turn(agent_id="agent-1", user_id="user-1", message="hi")
        assert store._conversations == {}

    async def test_conversation_creation_failure(self, build_service, make_model):
        conversations = AsyncMock()
        conversations.ensure_conversation.side_effect = RuntimeError("db down")
        service = build_service(make_model(AIMessage(content="x")), conversations=conversations)

        with pytest.raises(PersistenceError):
            await service.handle_turn(agent_id="agent-1", user_id="user-1", message="hi")

    async def test_message_save_failure_still_returns_reply(self, build_service, make_model):
        conversations = AsyncMock()
        conversations.ensure_conversation.return_value = "conv-9"
        conversations.recent_messages.return_value = []
        conversations.append_message.side_effect = RuntimeError("db down")
        service = build_service(make_model(AIMessage(content="still here")), conversations=conversations)

        reply = await service.handle_turn(agent_id="agent-1", user_id="user-1", message="hi", conversation_id="conv-9")

        assert reply.content == "still here"
        assert reply.conversation_id == "conv-9"
        assert reply.id

    async def test_foreign_conversation_is_rejected(self, store, build_service, make_model):
        model = make_model(AIMessage(content="ok"), AIMessage(content="should not run"))
        service = build_service(model)
        first = await service.handle_turn(
            agent_id="agent-1", user_id="user-1", message="my secret sheet id is S-123",
        )
        store.add_agent(Agent(id="agent-2", user_id="user-2", name="Snoop"))

        with pytest.raises(ConversationNotFoundError):
            await service.handle_turn(
                agent_id="agent-2", user_id="user-2", message="what did I say?",
                conversation_id=first.conversation_id,
            )

        assert len(model.calls) == 1
        saved = await store.recent_messages(first.conversation_id, 10, user_id="user-1", agent_id="agent-1")
        assert [m.content for m in saved] == ["my secret sheet id is S-123", "ok"]

    async def test_conversation_of_another_agent_is_rejected(self, store, build_service, make_model):
        model = make_model(AIMessage(content="ok"))
        service = build_service(model)
        first = await service.handle_turn(agent_id="agent-1", user_id="user-1", message="hi")
        store.add_agent(Agent(id="agent-3", user_id="user-1", name="Second"))

        with pytest.raises(ConversationNotFoundError):
            await service.handle_turn(
                agent_id="agent-3", user_id="user-1", message="hi",
                conversation_id=first.conversation_id,
            )

    async def test_retrieval_check(self, build_service, make_model):
        context = RetrievedContext(has_context=True, context="[Source: a.pdf] x")
        retriever = StaticRetriever(context)
        model = make_model(AIMessage(content="never"))
        service = build_service(model, retriever=retriever)

        result = await service.check_retrieval(agent_id="agent-1", user_id="user-1", query="returns?")

        assert result is context
        assert retriever.queries == [("returns?", "agent-1", "user-1")]
        assert model.calls == []

    async def test_retrieval_check_rejects_other_users_and_empty_query(self, build_service, make_model):
        service = build_service(make_model(AIMessage(content="never")))
        with pytest.raises(AgentNotFoundError):
            await service.check_retrieval(agent_id="agent-1", user_id="intruder", query="x")
        with pytest.raises(EmptyMessageError):
            await service.check_retrieval(agent_id="agent-1", user_id="user-1", query="  ")


# ── Store ────────────────────────────────────────────────────────────


class TestInMemoryWorkspaceStore:
    async def test_ensure_conversation_reuses_existing(self, store):
        cid = await store.ensure_conversation(AGENT, "user-1", None)
        assert await store.ensure_conversation(AGENT, "user-1", cid) == cid

    async def test_ensure_conversation_adopts_client_id(self, store):
        assert await store.ensure_conversation(AGENT, "user-1", "client-chosen") == "client-chosen"
        assert store.conversation_title("client-chosen") == "Conversation with Analyst"

    async def test_append_to_unknown_conversation(self, store):
        with pytest.raises(KeyError):
            await store.append_message("missing", "user", "hi")

    async def test_recent_messages_window(self, store):
        cid = await store.ensure_conversation(AGENT, "user-1", None)
        for n in range(5):
            await store.append_message(cid, "user", f"m{n}")
        assert [m.content for m in await store.recent_messages(cid, 2, user_id="user-1", agent_id="agent-1")] == [
            "m3", "m4",
        ]
        assert await store.recent_messages("missing", 2, user_id="user-1", agent_id="agent-1") == []

    async def test_recent_messages_hidden_from_other_owners(self, store):
        cid = await store.ensure_conversation(AGENT, "user-1", None)
        await store.append_message(cid, "user", "private")
        assert await store.recent_messages(cid, 5, user_id="user-2", agent_id="agent-1") == []
        assert await store.recent_messages(cid, 5, user_id="user-1", agent_id="agent-2") == []

    async def test_foreign_conversation_is_not_reused(self, store):
        cid = await store.ensure_conversation(AGENT, "user-1", None)
        intruder_agent = Agent(id="agent-2", user_id="user-2", name="Other")

        assert await store.conversation_belongs_to(cid, "user-1", "agent-1") is True
        assert await store.conversation_belongs_to(cid, "user-2", "agent-2") is False
        assert await store.conversation_belongs_to("unused-id", "user-2", "agent-2") is True
        with pytest.raises(ConversationNotFoundError):
            await store.ensure_conversation(intruder_agent, "user-2", cid)


# ── Seed loading ─────────────────────────────────────────────────────


class TestLoadSeed:
    async def test_seed_populates_collaborators(self, tmp_path, caplog):
        seed = {
            "agents": [{"id": "a1", "userId": "u1", "name": "Shop helper", "prompt": "Be brief."}],
            "credentials": [
                {"userId": "u1", "family": "google", "secrets": {"access_token": "ya29.very-secret"}},
                {"userId": "u1", "family": "woocommerce", "secrets": {"site_url": "https://s"}, "isValid": False},
            ],
            "chunks": [
                {"agentId": "a1", "userId": "u1", "content": "Returns within 30 days.",
                 "fileName": "policy.md", "embedding": [1.0, 0.0]},
            ],
        }
        path = tmp_path / "seed.json"
        path.write_text(json.dumps(seed), encoding="utf-8")

        store, vault, index = InMemoryWorkspaceStore(), InMemoryCredentialVault(), InMemoryChunkIndex()
        with caplog.at_level("INFO"):
            counts = load_seed(path, store, vault, index)

        assert counts == {"agents": 1, "credentials": 2, "chunks": 1}
        assert (await store.get_agent("a1", "u1")).prompt == "Be brief."
        assert (await vault.get_credentials("u1", GOOGLE)).require("access_token") == "ya29.very-secret"
        assert len(index) == 1
        assert "ya29.very-secret" not in caplog.text

        with pytest.raises(CredentialsInvalidError, match="marked invalid"):
            await vault.get_credentials("u1", STOREFRONT)

    async def test_seeded_chunks_are_retrievable(self, tmp_path):
        from langchain_core.embeddings import Embeddings

        class UnitEmbeddings(Embeddings):
            def embed_documents(self, texts):
                return [[1.0, 0.0] for _ in texts]

            def embed_query(self, text):
                return [1.0, 0.0]

        path = tmp_path / "seed.json"
        path.write_text(json.dumps({
            "chunks": [{"agentId": "a1", "userId": "u1", "content": "Returns within 30 days.",
                        "fileName": "policy.md", "embedding": [1.0, 0.0]}],
        }), encoding="utf-8")
        index = InMemoryChunkIndex()
        load_seed(path, InMemoryWorkspaceStore(), InMemoryCredentialVault(), index)

        context = await KnowledgeRetriever(UnitEmbeddings(), index).retrieve("returns?", "a1", "u1")
        assert context.sources == ["policy.md"]


class TestVault:
    async def test_missing_family(self):
        vault = InMemoryCredentialVault()
        with pytest.raises(CredentialsNotFoundError, match="No woocommerce credentials"):
            await vault.get_credentials("u1", STOREFRONT)

    def test_secrets_hidden_in_repr(self):
        from agent_workspace.models import CredentialSet

        creds = CredentialSet(family=GOOGLE, secrets={"access_token": "ya29.very-secret"})
        assert "ya29.very-secret" not in repr(creds)
        assert "ya29.very-secret" not in creds.model_dump_json()
