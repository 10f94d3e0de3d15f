"""Shared test fixtures for the Agent Workspace test suite."""

from __future__ import annotations

import json
import os
from collections.abc import AsyncIterator, Callable
from typing import Any

import pytest
from langchain_core.language_models import BaseChatModel
from langchain_core.messages import AIMessage, AIMessageChunk, BaseMessage
from langchain_core.outputs import ChatGeneration, ChatGenerationChunk, ChatResult
from pydantic import Field


def pytest_configure(config):
    """Set test environment variables BEFORE collection starts.

    This runs before any imports, so config.py won't fail on module load.
    """
    os.environ.setdefault("ANTHROPIC_API_KEY", "test-anthropic-key-123")
    os.environ.setdefault("STREAM_CHUNK_DELAY_SECONDS", "0")
    os.environ.setdefault("METRICS_ENABLED", "false")


# ── Scripted chat model ──────────────────────────────────────────────


class ScriptedChatModel(BaseChatModel):
    """Chat model that replays scripted responses.

    ``responses`` are returned in order (the last one repeats); a
    ``responder(messages, call_index)`` callable takes precedence.  Every
    call's messages and kwargs are recorded.  With ``fail`` set, every call
    raises it.
    """

    responses: list[AIMessage] = Field(default_factory=list)
    responder: Callable[[list[BaseMessage], int], AIMessage] | None = None
    fail: Exception | None = None
    calls: list[list[BaseMessage]] = Field(default_factory=list)
    call_kwargs: list[dict[str, Any]] = Field(default_factory=list)
    bound_tools: list[Any] = Field(default_factory=list)

    @property
    def _llm_type(self) -> str:
        return "scripted"

    def bind_tools(self, tools, *, tool_choice=None, **kwargs):
        self.bound_tools = list(tools)
        return self.bind(tools=list(tools), tool_choice=tool_choice, **kwargs)

    def _next(self, messages: list[BaseMessage], kwargs: dict[str, Any]) -> AIMessage:
        self.calls.append(list(messages))
        self.call_kwargs.append(dict(kwargs))
        if self.fail is not None:
            raise self.fail
        index = len(self.calls) - 1
        if self.responder is not None:
            return self.responder(list(messages), index)
        return self.responses[min(index, len(self.responses) - 1)].model_copy(deep=True)

    def _generate(self, messages, stop=None, run_manager=None, **kwargs) -> ChatResult:
        return ChatResult(generations=[ChatGeneration(message=self._next(messages, kwargs))])

    async def _agenerate(self, messages, stop=None, run_manager=None, **kwargs) -> ChatResult:
        return self._generate(messages, stop=stop, **kwargs)


class StreamingScriptedChatModel(ScriptedChatModel):
    """Scripted model that streams text word by word, then any tool calls."""

    async def _astream(
        self, messages, stop=None, run_manager=None, **kwargs,
    ) -> AsyncIterator[ChatGenerationChunk]:
        message = self._next(messages, kwargs)
        text = message.content if isinstance(message.content, str) else ""
        for word in text.split(" "):
            if word:
                yield ChatGenerationChunk(message=AIMessageChunk(content=word + " "))
        for index, call in enumerate(message.tool_calls):
            yield ChatGenerationChunk(
                message=AIMessageChunk(
                    content="",
                    tool_call_chunks=[{
                        "name": call["name"],
                        "args": json.dumps(call["args"]),
                        "id": call["id"],
                        "index": index,
                    }],
                )
            )


def tool_call(name: str, args: dict[str, Any] | None = None, call_id: str | None = None) -> dict:
    return {"name": name, "args": args or {}, "id": call_id or f"call_{name}", "type": "tool_call"}


@pytest.fixture
def make_model():
    """Factory: ``make_model(AIMessage(...), ...)`` or ``make_model(responder=fn)``."""

    def _make(*responses: AIMessage, streaming: bool = False, **kwargs) -> ScriptedChatModel:
        cls = StreamingScriptedChatModel if streaming else ScriptedChatModel
        return cls(responses=list(responses), **kwargs)

    return _make


@pytest.fixture
def make_tool_call():
    return tool_call


# ── Fake tool registry ───────────────────────────────────────────────


class FakeRegistry:
    """Duck-typed stand-in for ``ToolRegistry`` backed by async handlers."""

    def __init__(self, handlers: dict[str, Callable[..., Any]]) -> None:
        self.handlers = handlers
        self.executed: list[tuple[str, dict[str, Any], str]] = []

    @property
    def names(self) -> list[str]:
        return list(self.handlers)

    def schemas(self) -> list[dict[str, Any]]:
        return [
            {
                "type": "function",
                "function": {
                    "name": name,
                    "description": f"{name} tool",
                    "parameters": {"type": "object", "properties": {}},
                },
            }
            for name in self.handlers
        ]

    def catalog_lines(self) -> list[str]:
        return [f"- {name}: {name} tool" for name in self.handlers]

    def display_name(self, name: str, args: dict[str, Any]) -> str:
        return name.replace("_", " ").title()

    def describe(self, name: str, args: dict[str, Any]) -> str:
        return f"Running {name}"

    async def execute(self, name: str, args: dict[str, Any] | None, user_id: str) -> Any:
        from agent_workspace.errors import UnknownToolError

        self.executed.append((name, dict(args or {}), user_id))
        handler = self.handlers.get(name)
        if handler is None:
            raise UnknownToolError(name)
        return await handler(**(args or {}))


@pytest.fixture
def make_registry():
    return FakeRegistry


# ── Progress recording ───────────────────────────────────────────────


class RecordingEmitter:
    def __init__(self) -> None:
        self.events: list[tuple[str, dict[str, Any]]] = []

    def __call__(self, event: str, payload: dict[str, Any]) -> None:
        self.events.append((event, payload))

    @property
    def names(self) -> list[str]:
        return [event for event, _ in self.events]

    def payloads(self, event: str) -> list[dict[str, Any]]:
        return [payload for name, payload in self.events if name == event]


@pytest.fixture
def emitter() -> RecordingEmitter:
    return RecordingEmitter()
