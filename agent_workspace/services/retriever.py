"""Knowledge retrieval for retrieval-augmented prompting.

Embeds the user's message, looks up the nearest stored chunks for the
agent, and formats them as a cited context block.  Retrieval is
best-effort: any failure yields an empty context and the turn goes on.
"""

from __future__ import annotations

import logging
from collections.abc import Sequence
from dataclasses import dataclass
from typing import Protocol

import numpy as np
from langchain_core.embeddings import Embeddings

from agent_workspace.config import RETRIEVAL_MATCH_COUNT, RETRIEVAL_MATCH_THRESHOLD
from agent_workspace.models import KnowledgeChunk, RetrievedContext
from agent_workspace.services.metrics import metrics

logger = logging.getLogger(__name__)

DEFAULT_SOURCE_NAME = "Document"


class ChunkSearch(Protocol):
    async def search(
        self,
        embedding: Sequence[float],
        *,
        agent_id: str,
        user_id: str,
        threshold: float,
        limit: int,
    ) -> list[KnowledgeChunk]: ...


# ── In-memory similarity index ──────────────────────────────────────


@dataclass
class _IndexedChunk:
    agent_id: str
    user_id: str
    content: str
    file_name: str | None
    embedding: np.ndarray


def cosine_similarities(query: np.ndarray, vectors: np.ndarray) -> np.ndarray:
    """Cosine similarity of ``query`` against each row of ``vectors``; zero vectors score 0."""
    if vectors.shape[1] != query.shape[0]:
        raise ValueError(f"dimension mismatch: {vectors.shape[1]} != {query.shape[0]}")
    norms = np.linalg.norm(vectors, axis=1) * np.linalg.norm(query)
    dots = np.dot(vectors, query)
    return np.divide(dots, norms, out=np.zeros_like(dots), where=norms != 0)


class InMemoryChunkIndex:
    """Brute-force cosine search over chunks scoped by (agent, user).

    Chunks embedded with a model of a different dimension than the query
    (e.g. after an embedding-model fallback) are skipped, not compared.
    """

    def __init__(self) -> None:
        self._chunks: list[_IndexedChunk] = []

    def __len__(self) -> int:
        return len(self._chunks)

    def add(
        self,
        *,
        agent_id: str,
        user_id: str,
        content: str,
        embedding: Sequence[float],
        file_name: str | None = None,
    ) -> None:
        self._chunks.append(
            _IndexedChunk(
                agent_id=agent_id,
                user_id=user_id,
                content=content,
                file_name=file_name,
                embedding=np.asarray(embedding, dtype=np.float64),
            )
        )

    async def search(
        self,
        embedding: Sequence[float],
        *,
        agent_id: str,
        user_id: str,
        threshold: float,
        limit: int,
    ) -> list[KnowledgeChunk]:
        query = np.asarray(embedding, dtype=np.float64)
        scoped = [c for c in self._chunks if c.agent_id == agent_id and c.user_id == user_id]
        candidates = [c for c in scoped if c.embedding.shape == query.shape]
        if len(candidates) < len(scoped):
            logger.debug(
                "Skipped %d chunks with mismatched embedding dimension", len(scoped) - len(candidates),
            )
        if not candidates or limit <= 0:
            return []

        similarities = cosine_similarities(query, np.vstack([c.embedding for c in candidates]))
        ranked = np.argsort(-similarities, kind="stable")
        results: list[KnowledgeChunk] = []
        for idx in ranked[:limit]:
            similarity = float(similarities[idx])
            if similarity <= threshold:
                break
            chunk = candidates[idx]
            results.append(KnowledgeChunk(content=chunk.content, file_name=chunk.file_name, similarity=similarity))
        return results


# ── Retriever ───────────────────────────────────────────────────────


def format_context(chunks: Sequence[KnowledgeChunk]) -> str:
    return "\n\n".join(
        f"[Source: {chunk.file_name or DEFAULT_SOURCE_NAME}] {chunk.content}" for chunk in chunks
    )


class KnowledgeRetriever:
    """Embeds a query and assembles the context block for one agent.

    When ``embeddings`` is ``None`` (no embedding provider configured)
    every call returns an empty context.
    """

    def __init__(
        self,
        embeddings: Embeddings | None,
        search: ChunkSearch,
        *,
        fallback_embeddings: Embeddings | None = None,
        threshold: float = RETRIEVAL_MATCH_THRESHOLD,
        limit: int = RETRIEVAL_MATCH_COUNT,
    ) -> None:
        self._embeddings = embeddings
        self._fallback = fallback_embeddings
        self._search = search
        self._threshold = threshold
        self._limit = limit

    @property
    def enabled(self) -> bool:
        return self._embeddings is not None

    async def embed(self, text: str) -> list[float]:
        """Embed with the primary model, switching to the fallback on failure."""
        try:
            with metrics.track("embeddings", "embed_primary"):
                return await self._embeddings.aembed_query(text)
        except Exception as exc:
            if self._fallback is None:
                raise
            logger.warning("Primary embedding model failed (%s); using fallback model", type(exc).__name__)
        with metrics.track("embeddings", "embed_fallback"):
            return await self._fallback.aembed_query(text)

    async def retrieve(
        self, query: str, agent_id: str, user_id: str, limit: int | None = None,
    ) -> RetrievedContext:
        if not self.enabled:
            return RetrievedContext()
        try:
            vector = await self.embed(query)
            chunks = await self._search.search(
                vector,
                agent_id=agent_id,
                user_id=user_id,
                threshold=self._threshold,
                limit=self._limit if limit is None else limit,
            )
        except Exception:
            logger.warning(
                "Knowledge retrieval failed for agent %s; answering without context",
                agent_id, exc_info=True,
            )
            return RetrievedContext()

        if not chunks:
            logger.debug("No knowledge chunks matched for agent %s", agent_id)
            return RetrievedContext()

        logger.info("Retrieved %d knowledge chunks for agent %s", len(chunks), agent_id)
        return RetrievedContext(has_context=True, context=format_context(chunks), chunks=list(chunks))
