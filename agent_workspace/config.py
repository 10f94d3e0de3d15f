"""Centralized configuration for the Agent Workspace backend.

Secret resolution order (per variable):
  1. Environment variable / ``.env`` file  (local dev)
  2. AWS SSM Parameter Store SecureString  (when ``AWS_EXECUTION_ENV`` is set)

The SSM paths follow the convention ``/agent-workspace/<VARIABLE_NAME>``.
"""

from __future__ import annotations

import logging
import os
import shlex

from dotenv import load_dotenv

load_dotenv()

logger = logging.getLogger(__name__)

# ── Feature flag: running on AWS? ────────────────────────────────────
_ON_AWS = bool(os.getenv("AWS_EXECUTION_ENV"))


# ── Secret resolution ────────────────────────────────────────────────

def _get_ssm_parameter(name: str) -> str | None:
    """Fetch a SecureString from SSM Parameter Store.

    Returns ``None`` if the parameter does not exist or boto3 is
    unavailable.  Errors are logged but never raised so that local-dev
    fallback still works.
    """
    try:
        import boto3  # noqa: PLC0415 (only needed on AWS)

        ssm = boto3.client("ssm")
        resp = ssm.get_parameter(Name=f"/agent-workspace/{name}", WithDecryption=True)
        return resp["Parameter"]["Value"]
    except Exception:
        logger.debug("SSM lookup for %s failed (expected locally)", name)
        return None


def _get_secret(name: str) -> str | None:
    """Return a secret from env-var or SSM, or ``None`` when unset."""
    value = os.getenv(name)
    if value and not value.startswith("your_"):
        return value
    if _ON_AWS:
        return _get_ssm_parameter(name)
    return None


def _require_env(name: str) -> str:
    """Return a config value from env-var or SSM, or raise a clear error."""
    value = _get_secret(name)
    if value:
        return value
    raise OSError(
        f"Missing required configuration: {name}. "
        f"Set it in .env (local) or SSM Parameter Store /agent-workspace/{name} (AWS)."
    )


def _env_bool(name: str, default: str) -> bool:
    return os.getenv(name, default).strip().lower() in ("1", "true", "yes", "on")


# ── Chat model ──────────────────────────────────────────────────────
ANTHROPIC_API_KEY: str = _require_env("ANTHROPIC_API_KEY")
CHAT_MODEL_NAME: str = os.getenv("CHAT_MODEL_NAME", "claude-sonnet-4-5")
MODEL_MAX_TOKENS: int = int(os.getenv("MODEL_MAX_TOKENS", "1000"))
FOLLOWUP_MAX_TOKENS: int = int(os.getenv("FOLLOWUP_MAX_TOKENS", "1500"))
MODEL_TEMPERATURE: float = float(os.getenv("MODEL_TEMPERATURE", "0.7"))

# Tool-call escalations after the first model call (2 → at most 3 model calls)
MAX_TOOL_ROUNDS: int = int(os.getenv("MAX_TOOL_ROUNDS", "2"))
HISTORY_WINDOW: int = int(os.getenv("HISTORY_WINDOW", "20"))

# ── Streaming ───────────────────────────────────────────────────────
STREAM_RESPONSES: bool = _env_bool("STREAM_RESPONSES", "true")
STREAM_CHUNK_DELAY_SECONDS: float = float(os.getenv("STREAM_CHUNK_DELAY_SECONDS", "0.03"))
SSE_KEEPALIVE_SECONDS: float = float(os.getenv("SSE_KEEPALIVE_SECONDS", "15"))

# ── Retrieval (RAG) ─────────────────────────────────────────────────
OPENAI_API_KEY: str | None = _get_secret("OPENAI_API_KEY")
EMBEDDING_MODEL_NAME: str = os.getenv("EMBEDDING_MODEL_NAME", "text-embedding-3-large")
FALLBACK_EMBEDDING_MODEL_NAME: str = os.getenv(
    "FALLBACK_EMBEDDING_MODEL_NAME", "text-embedding-3-small",
)
RETRIEVAL_MATCH_THRESHOLD: float = float(os.getenv("RETRIEVAL_MATCH_THRESHOLD", "0.1"))
RETRIEVAL_MATCH_COUNT: int = int(os.getenv("RETRIEVAL_MATCH_COUNT", "5"))

# ── Storefront worker ───────────────────────────────────────────────
STOREFRONT_WORKER_COMMAND: list[str] = shlex.split(
    os.getenv(
        "STOREFRONT_WORKER_COMMAND",
        "node ./mcps/woocommerce-mcp-server/build/index.js",
    )
)
WORKER_REQUEST_TIMEOUT_SECONDS: float = float(
    os.getenv("WORKER_REQUEST_TIMEOUT_SECONDS", "30"),
)

# ── Google Drive / Sheets ───────────────────────────────────────────
GOOGLE_DRIVE_BASE_URL: str = os.getenv(
    "GOOGLE_DRIVE_BASE_URL", "https://www.googleapis.com/drive/v3",
)
GOOGLE_SHEETS_BASE_URL: str = os.getenv(
    "GOOGLE_SHEETS_BASE_URL", "https://sheets.googleapis.com/v4",
)
MAX_FILE_CONTENT_CHARS: int = int(os.getenv("MAX_FILE_CONTENT_CHARS", "50000"))

# ── In-memory collaborators ─────────────────────────────────────────
WORKSPACE_SEED_FILE: str | None = os.getenv("WORKSPACE_SEED_FILE")

# ── Server ──────────────────────────────────────────────────────────
SERVER_HOST: str = os.getenv("SERVER_HOST", "0.0.0.0")
SERVER_PORT: int = int(os.getenv("SERVER_PORT", "5000"))
CORS_ORIGINS: list[str] = os.getenv(
    "CORS_ORIGINS",
    "http://localhost:3000,http://localhost:5173",
).split(",")
