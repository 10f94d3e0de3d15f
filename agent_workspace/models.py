"""Domain records that flow through a chat turn.

All records serialize with camelCase keys (``model_dump(by_alias=True)``)
because that is what the browser client and the progress stream expect.
"""

from __future__ import annotations

from datetime import UTC, datetime
from enum import StrEnum
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, SecretStr
from pydantic.alias_generators import to_camel

from agent_workspace.errors import CredentialsInvalidError


class _CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


def utcnow() -> datetime:
    return datetime.now(UTC)


# ── Agents & conversations ───────────────────────────────────────────


class Agent(_CamelModel):
    """A user-configured assistant: persona text plus its own knowledge base."""

    id: str
    user_id: str
    name: str
    description: str = ""
    prompt: str = Field(default="", max_length=1000)


class HistoryMessage(_CamelModel):
    role: Literal["user", "assistant"]
    content: str


# ── Retrieval ────────────────────────────────────────────────────────


class KnowledgeChunk(_CamelModel):
    content: str
    file_name: str | None = None
    similarity: float = 0.0


class RetrievedContext(_CamelModel):
    """Context assembled for one turn.  Empty when nothing matched."""

    has_context: bool = False
    context: str = ""
    chunks: list[KnowledgeChunk] = Field(default_factory=list)

    @property
    def sources(self) -> list[str]:
        """Distinct source file names, in retrieval order."""
        seen: list[str] = []
        for chunk in self.chunks:
            name = chunk.file_name or "Document"
            if name not in seen:
                seen.append(name)
        return seen

    def summary(self) -> dict[str, Any]:
        return {
            "hasContext": self.has_context,
            "chunksCount": len(self.chunks),
            "sources": self.sources,
        }


# ── Tool execution ───────────────────────────────────────────────────


class ToolStatus(StrEnum):
    PENDING = "pending"
    EXECUTING = "executing"
    SUCCESS = "success"
    ERROR = "error"


class ToolExecutionRecord(_CamelModel):
    """One tool call as seen by the client.

    A record leaves the orchestrator with exactly one terminal status:
    ``success`` (``result`` set) or ``error`` (``error`` set).
    """

    name: str
    display_name: str
    description: str
    status: ToolStatus = ToolStatus.PENDING
    args: dict[str, Any] = Field(default_factory=dict)
    result: Any = None
    error: str | None = None
    started_at: datetime | None = None
    finished_at: datetime | None = None
    is_additional: bool = False
    tool_call_id: str | None = None

    def mark_executing(self) -> None:
        self.status = ToolStatus.EXECUTING
        self.started_at = utcnow()

    def mark_success(self, result: Any) -> None:
        self.status = ToolStatus.SUCCESS
        self.result = result
        self.finished_at = utcnow()

    def mark_error(self, message: str) -> None:
        self.status = ToolStatus.ERROR
        self.error = message
        self.finished_at = utcnow()


# ── Credentials ──────────────────────────────────────────────────────


class CredentialSet(_CamelModel):
    """Decrypted secrets for one tool family of one user.

    Values are ``SecretStr`` so that reprs, logs and accidental dumps
    show ``**********`` instead of the secret.
    """

    family: str
    secrets: dict[str, SecretStr] = Field(default_factory=dict)
    is_valid: bool = True
    expires_at: datetime | None = None

    def get(self, key: str) -> str | None:
        value = self.secrets.get(key)
        return value.get_secret_value() if value is not None else None

    def require(self, key: str) -> str:
        value = self.get(key)
        if not value:
            raise CredentialsInvalidError(
                f"{self.family} credentials are incomplete (missing {key})."
            )
        return value

    def ensure_usable(self) -> None:
        """Raise ``CredentialsInvalidError`` if the set is flagged or expired."""
        if not self.is_valid:
            raise CredentialsInvalidError(
                f"{self.family} credentials are marked invalid. Reconnect the account."
            )
        expires_at = self.expires_at
        if expires_at is not None and expires_at.tzinfo is None:
            expires_at = expires_at.replace(tzinfo=UTC)
        if expires_at is not None and expires_at <= utcnow():
            raise CredentialsInvalidError(
                f"{self.family} credentials have expired. Reconnect the account."
            )
