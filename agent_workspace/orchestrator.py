"""Turn orchestration: the bounded model ⇄ tools loop.

Architecture:
  A LangGraph ``StateGraph`` with two nodes, compiled once per process:

    1. **model**  calls the chat model with the full tool catalog bound
                  (``tool_choice="auto"``)
    2. **tools**  runs the requested tool calls one after another and
                  appends a ``ToolMessage`` per call

  Routing:
    model → (tool calls and round ≤ MAX_TOOL_ROUNDS?) → tools → model (loop)
          → (otherwise)                                → END

  With the default cap of 2 a turn makes at most three model calls.  Tool
  calls requested by the last allowed round are ignored and that round's
  text is returned as the answer.

  Per-turn collaborators (user id, progress emitter, text streamer) travel
  in ``config["configurable"]`` so that one compiled graph serves every
  concurrent turn.
"""

from __future__ import annotations

import json
import logging
import operator
import time
import uuid
from collections.abc import Sequence
from dataclasses import dataclass, field
from typing import Annotated, Any

from langchain_core.language_models import BaseChatModel
from langchain_core.messages import (
    AIMessage,
    AnyMessage,
    BaseMessage,
    HumanMessage,
    SystemMessage,
    ToolMessage,
)
from langchain_core.runnables import RunnableConfig
from langgraph.graph import END, StateGraph
from typing_extensions import TypedDict

from agent_workspace.config import (
    FOLLOWUP_MAX_TOKENS,
    HISTORY_WINDOW,
    MAX_TOOL_ROUNDS,
    STREAM_CHUNK_DELAY_SECONDS,
    STREAM_RESPONSES,
)
from agent_workspace.errors import ModelCallError
from agent_workspace.models import Agent, HistoryMessage, RetrievedContext, ToolExecutionRecord
from agent_workspace.prompts import build_system_prompt
from agent_workspace.services.metrics import metrics
from agent_workspace.services.progress import ProgressEmitter, noop_emitter
from agent_workspace.streaming import TextStreamer, make_streamer, message_text
from agent_workspace.tools.registry import ToolRegistry

logger = logging.getLogger(__name__)

MODEL_ERROR_MESSAGE = "The AI service is temporarily unavailable. Please try again."


# ── State schema ─────────────────────────────────────────────────────


class TurnState(TypedDict):
    """State flowing through the turn graph.

    ``messages`` and ``records`` are append-only (``operator.add``);
    ``round`` counts model calls made so far.
    """

    messages: Annotated[list[AnyMessage], operator.add]
    round: int
    records: Annotated[list[ToolExecutionRecord], operator.add]


@dataclass
class TurnResult:
    content: str
    tools_executed: list[ToolExecutionRecord] = field(default_factory=list)
    rounds: int = 0


def _safe_emitter(emit: ProgressEmitter) -> ProgressEmitter:
    """Progress delivery must never break a turn."""

    def safe_emit(event: str, payload: dict[str, Any]) -> None:
        try:
            emit(event, payload)
        except Exception:
            logger.debug("Progress emit failed for %s", event, exc_info=True)

    return safe_emit


def _dump_tool_content(content: Any) -> str:
    return json.dumps(content, ensure_ascii=False, default=str)


def history_to_messages(history: Sequence[HistoryMessage]) -> list[BaseMessage]:
    return [
        HumanMessage(content=m.content) if m.role == "user" else AIMessage(content=m.content)
        for m in history
    ]


# ── Node: model ─────────────────────────────────────────────────────


def _make_model_node(model: BaseChatModel, tool_schemas: list[dict[str, Any]], max_tool_rounds: int):
    """Create the model node.

    Both bindings are built once: the first round uses the model's own
    ``max_tokens``; follow-up rounds, which carry tool results, get
    ``FOLLOWUP_MAX_TOKENS``.
    """
    first_round = model.bind_tools(tool_schemas, tool_choice="auto") if tool_schemas else model
    followup_round = first_round.bind(max_tokens=FOLLOWUP_MAX_TOKENS)

    async def model_node(state: TurnState, config: RunnableConfig) -> dict:
        streamer: TextStreamer = config["configurable"]["streamer"]
        round_no = state["round"] + 1
        bound = first_round if round_no == 1 else followup_round
        t0 = time.perf_counter()
        try:
            response = await streamer.call_model(
                bound, state["messages"], final=not tool_schemas or round_no > max_tool_rounds,
            )
        except Exception as exc:
            elapsed = (time.perf_counter() - t0) * 1000
            metrics.record_failure(
                "anthropic", "model_round", error_type=type(exc).__name__, latency_ms=elapsed,
            )
            logger.error("Model call failed in round %d: %s", round_no, type(exc).__name__)
            raise ModelCallError(MODEL_ERROR_MESSAGE) from exc

        elapsed = (time.perf_counter() - t0) * 1000
        metrics.record_success("anthropic", "model_round", latency_ms=elapsed)
        logger.debug(
            "Round %d: model answered in %.0fms with %d tool call(s)",
            round_no, elapsed, len(response.tool_calls),
        )
        return {"messages": [response], "round": round_no}

    return model_node


# ── Node: tools ─────────────────────────────────────────────────────


def _make_tools_node(registry: ToolRegistry):
    """Create the tools node.

    Calls run strictly in the order the model listed them, each awaited
    before the next starts, so a read issued after a write in the same
    round observes the write.  A failing call becomes an ``{"error": ...}``
    tool result; it never aborts the round.
    """

    async def run_call(
        call: dict[str, Any], user_id: str, is_additional: bool, emit: ProgressEmitter,
    ) -> tuple[ToolExecutionRecord, ToolMessage]:
        name = call["name"]
        args = call.get("args") or {}
        record = ToolExecutionRecord(
            name=name,
            display_name=registry.display_name(name, args),
            description=registry.describe(name, args),
            args=args,
            is_additional=is_additional,
            tool_call_id=call.get("id") or f"call_{uuid.uuid4().hex[:12]}",
        )
        record.mark_executing()
        emit("tool_start", {
            "name": name,
            "displayName": record.display_name,
            "description": record.description,
            "args": args,
            "isAdditional": is_additional,
        })

        try:
            result = await registry.execute(name, args, user_id)
        except Exception as exc:
            error = str(exc) or type(exc).__name__
            logger.warning("Tool %s failed for user %s: %s", name, user_id, error)
            record.mark_error(error)
            emit("tool_error", {
                "name": name,
                "displayName": record.display_name,
                "error": error,
                "isAdditional": is_additional,
            })
            message = ToolMessage(
                content=_dump_tool_content({"error": error}),
                tool_call_id=record.tool_call_id,
                name=name,
                status="error",
            )
            return record, message

        record.mark_success(result)
        emit("tool_success", {
            "name": name,
            "displayName": record.display_name,
            "result": result,
            "isAdditional": is_additional,
        })
        message = ToolMessage(
            content=_dump_tool_content(result),
            tool_call_id=record.tool_call_id,
            name=name,
        )
        return record, message

    async def tools_node(state: TurnState, config: RunnableConfig) -> dict:
        configurable = config["configurable"]
        emit: ProgressEmitter = configurable["emit"]
        user_id: str = configurable["user_id"]

        calls = state["messages"][-1].tool_calls
        is_additional = state["round"] > 1
        emit(
            "additional_tools_requested" if is_additional else "tools_requested",
            {"count": len(calls), "names": [c["name"] for c in calls]},
        )
        logger.info(
            "Round %d: executing %d tool call(s): %s",
            state["round"], len(calls), ", ".join(c["name"] for c in calls),
        )

        records: list[ToolExecutionRecord] = []
        messages: list[ToolMessage] = []
        for call in calls:
            record, message = await run_call(call, user_id, is_additional, emit)
            records.append(record)
            messages.append(message)
        return {"messages": messages, "records": records}

    return tools_node


# ── Conditional edge ─────────────────────────────────────────────────


def _make_round_router(max_tool_rounds: int):
    def should_run_tools(state: TurnState) -> str:
        last_message = state["messages"][-1]
        if not getattr(last_message, "tool_calls", None):
            return END
        if state["round"] > max_tool_rounds:
            logger.warning(
                "Tool round cap (%d) reached; ignoring %d further tool call(s)",
                max_tool_rounds, len(last_message.tool_calls),
            )
            return END
        return "tools"

    return should_run_tools


# ── Graph assembly ───────────────────────────────────────────────────


def create_turn_graph(
    model: BaseChatModel,
    registry: ToolRegistry,
    max_tool_rounds: int = MAX_TOOL_ROUNDS,
):
    graph = StateGraph(TurnState)
    graph.add_node("model", _make_model_node(model, registry.schemas(), max_tool_rounds))
    graph.add_node("tools", _make_tools_node(registry))
    graph.set_entry_point("model")
    graph.add_conditional_edges(
        "model", _make_round_router(max_tool_rounds), {"tools": "tools", END: END},
    )
    graph.add_edge("tools", "model")
    return graph.compile()


class TurnOrchestrator:
    """Runs one chat turn: prompt assembly, model ⇄ tools rounds, text delivery."""

    def __init__(
        self,
        model: BaseChatModel,
        registry: ToolRegistry,
        *,
        max_tool_rounds: int = MAX_TOOL_ROUNDS,
        history_window: int = HISTORY_WINDOW,
        stream: bool = STREAM_RESPONSES,
        chunk_delay: float = STREAM_CHUNK_DELAY_SECONDS,
    ) -> None:
        self._registry = registry
        self._max_tool_rounds = max_tool_rounds
        self._history_window = history_window
        self._stream = stream
        self._chunk_delay = chunk_delay
        self._graph = create_turn_graph(model, registry, max_tool_rounds)
        logger.debug(
            "Turn graph compiled: %d tools, round cap %d, streaming=%s",
            len(registry.names), max_tool_rounds, stream,
        )

    def build_messages(
        self,
        agent: Agent,
        message: str,
        context: RetrievedContext,
        history: Sequence[HistoryMessage] | None,
    ) -> list[BaseMessage]:
        """System prompt, then the bounded history verbatim, then the new message."""
        system_prompt = build_system_prompt(agent.prompt, context, self._registry.catalog_lines())
        window = list(history or [])[-self._history_window:] if self._history_window > 0 else []
        return [
            SystemMessage(content=system_prompt),
            *history_to_messages(window),
            HumanMessage(content=message),
        ]

    async def run_turn(
        self,
        *,
        agent: Agent,
        user_id: str,
        message: str,
        context: RetrievedContext,
        history: Sequence[HistoryMessage] | None = None,
        emit: ProgressEmitter | None = None,
    ) -> TurnResult:
        """Drive the turn to completion.

        Raises ``ModelCallError`` if any model round fails; every other
        failure is confined to the tool call that caused it.
        """
        emit = _safe_emitter(emit or noop_emitter)
        if self._stream:
            streamer = make_streamer(emit, incremental=True)
        else:
            streamer = make_streamer(emit, incremental=False, delay=self._chunk_delay)

        initial: TurnState = {
            "messages": self.build_messages(agent, message, context, history),
            "round": 0,
            "records": [],
        }
        config: RunnableConfig = {
            "configurable": {"user_id": user_id, "emit": emit, "streamer": streamer},
            "recursion_limit": 2 * (self._max_tool_rounds + 1) + 2,
        }

        try:
            final_state = await self._graph.ainvoke(initial, config=config)
        except ModelCallError as exc:
            streamer.fail(str(exc))
            raise

        content = message_text(final_state["messages"][-1])
        await streamer.finish(content)
        records = final_state["records"]
        logger.info(
            "Turn for agent %s finished: %d round(s), %d tool call(s)",
            agent.id, final_state["round"], len(records),
        )
        return TurnResult(content=content, tools_executed=records, rounds=final_state["round"])
