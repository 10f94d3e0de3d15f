"""Exception hierarchy shared by the orchestration pipeline.

Only ``ModelCallError`` is allowed to abort a turn.  Everything raised by a
tool executor (including credential and worker failures) is caught by the
orchestrator and handed back to the model as ``{"error": message}``.
"""

from __future__ import annotations


class AgentWorkspaceError(Exception):
    """Base class for every error raised by this package."""


# ── Tool execution ───────────────────────────────────────────────────


class ToolError(AgentWorkspaceError):
    """A single tool call failed; the turn continues."""


class UnknownToolError(ToolError):
    def __init__(self, name: str):
        self.name = name
        super().__init__(f"Unknown tool: {name}")


class ToolArgumentsError(ToolError):
    """The model sent arguments that do not match the tool's parameters."""


class SheetNotFoundError(ToolError):
    """Spreadsheet (or range) does not exist; the model should re-list files."""


class SheetAccessDeniedError(ToolError):
    """The user's Google account cannot access the spreadsheet."""


class UnsupportedFileTypeError(ToolError):
    """The Drive file is a native type with no text export."""


# ── Credentials ──────────────────────────────────────────────────────


class CredentialError(AgentWorkspaceError):
    """Credentials for a tool family are missing, invalid or undecryptable."""


class CredentialsNotFoundError(CredentialError):
    def __init__(self, family: str):
        self.family = family
        super().__init__(f"No {family} credentials are configured for this user.")


class CredentialsInvalidError(CredentialError):
    pass


# ── Storefront worker process ────────────────────────────────────────


class WorkerError(AgentWorkspaceError):
    """Base class for storefront worker failures."""


class WorkerNotRunningError(WorkerError):
    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__("Storefront worker is not running. Start it first.")


class WorkerAlreadyRunningError(WorkerError):
    def __init__(self, user_id: str):
        self.user_id = user_id
        super().__init__("Storefront worker is already running for this user.")


class WorkerStartError(WorkerError):
    pass


class WorkerTimeoutError(WorkerError):
    def __init__(self, method: str, timeout: float):
        self.method = method
        self.timeout = timeout
        super().__init__(
            f"Storefront worker request '{method}' timed out after {timeout:g}s"
        )


class WorkerRPCError(WorkerError):
    """The worker answered with a JSON-RPC ``error`` object."""

    def __init__(self, message: str, code: int | None = None):
        self.code = code
        super().__init__(message)


class WorkerExitedError(WorkerError):
    pass


# ── Turn-level errors ────────────────────────────────────────────────


class ModelCallError(AgentWorkspaceError):
    """The language model could not be reached or returned nothing usable."""


class EmptyMessageError(AgentWorkspaceError):
    pass


class AgentNotFoundError(AgentWorkspaceError):
    def __init__(self, agent_id: str):
        self.agent_id = agent_id
        super().__init__(f"Agent {agent_id} not found")


class ConversationNotFoundError(AgentWorkspaceError):
    """The conversation id belongs to another user or another agent."""

    def __init__(self, conversation_id: str):
        self.conversation_id = conversation_id
        super().__init__(f"Conversation {conversation_id} not found")


class PersistenceError(AgentWorkspaceError):
    pass
