"""Text delivery to the progress channel.

Two interchangeable streamers produce the same event sequence::

    text_start → text_chunk{content, fullContentSoFar} … → text_complete{fullContent}

``IncrementalTextStreamer`` forwards the model's own token stream; text
from a round that requests tools never reaches the channel.
``SimulatedTextStreamer`` makes a plain (non-streaming) model call and
replays the final answer word by word with a small delay.
Either way a failed model call ends the stream with ``text_error``.
"""

from __future__ import annotations

import asyncio
import re
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

from langchain_core.language_models import LanguageModelInput
from langchain_core.messages import AIMessage, AIMessageChunk, BaseMessage, message_chunk_to_message
from langchain_core.runnables import Runnable

from agent_workspace.config import STREAM_CHUNK_DELAY_SECONDS
from agent_workspace.services.progress import ProgressEmitter

_WORD_BOUNDARY = re.compile(r"(?<=\s)(?=\S)")


def message_text(message: BaseMessage) -> str:
    """Plain text of a message whose content may be a list of content blocks."""
    content = message.content
    if isinstance(content, str):
        return content
    parts = []
    for block in content:
        if isinstance(block, str):
            parts.append(block)
        elif isinstance(block, dict) and block.get("type") == "text":
            parts.append(block.get("text", ""))
    return "".join(parts)


def split_words(text: str) -> list[str]:
    """Split into word chunks that concatenate back to ``text`` exactly."""
    return [part for part in _WORD_BOUNDARY.split(text) if part]


class TextStreamer(ABC):
    """One instance per turn; owns the turn's text-event state."""

    def __init__(self, emit: ProgressEmitter) -> None:
        self._emit = emit
        self._started = False
        self._so_far = ""

    def _chunk(self, content: str) -> None:
        if not content:
            return
        if not self._started:
            self._started = True
            self._emit("text_start", {})
        self._so_far += content
        self._emit("text_chunk", {"content": content, "fullContentSoFar": self._so_far})

    @abstractmethod
    async def call_model(
        self,
        model: Runnable[LanguageModelInput, BaseMessage],
        messages: Sequence[BaseMessage],
        *,
        final: bool = False,
    ) -> AIMessage:
        """Run one model round and return the complete response message.

        ``final`` marks the last round of the turn, whose tool calls will
        not be executed.
        """

    @abstractmethod
    async def finish(self, final_text: str) -> None:
        """Deliver whatever text is still pending, then ``text_complete``."""

    def fail(self, error: str) -> None:
        self._emit("text_error", {"error": error})


class IncrementalTextStreamer(TextStreamer):
    """Forwards model tokens as they arrive.

    Only a round that cannot lead to tool execution is forwarded live.
    Any other round is held until it ends: its text is replayed when it
    turned out to be the answer and dropped when it requested tools.
    """

    async def call_model(
        self,
        model: Runnable[LanguageModelInput, BaseMessage],
        messages: Sequence[BaseMessage],
        *,
        final: bool = False,
    ) -> AIMessage:
        full: AIMessageChunk | None = None
        held: list[str] = []
        async for chunk in model.astream(list(messages)):
            full = chunk if full is None else full + chunk
            if final:
                self._chunk(message_text(chunk))
            else:
                held.append(message_text(chunk))
        if full is None:
            return AIMessage(content="")
        response = message_chunk_to_message(full)
        if response.tool_calls:
            return response
        for text in held:
            self._chunk(text)
        return response

    async def finish(self, final_text: str) -> None:
        if not self._so_far:
            self._chunk(final_text)
        if not self._started:
            self._emit("text_start", {})
        self._emit("text_complete", {"fullContent": final_text})


class SimulatedTextStreamer(TextStreamer):
    def __init__(self, emit: ProgressEmitter, delay: float = STREAM_CHUNK_DELAY_SECONDS) -> None:
        super().__init__(emit)
        self._delay = delay

    async def call_model(
        self,
        model: Runnable[LanguageModelInput, BaseMessage],
        messages: Sequence[BaseMessage],
        *,
        final: bool = False,
    ) -> AIMessage:
        return await model.ainvoke(list(messages))

    async def finish(self, final_text: str) -> None:
        if not final_text:
            self._emit("text_start", {})
        for word in split_words(final_text):
            self._chunk(word)
            if self._delay > 0:
                await asyncio.sleep(self._delay)
        self._emit("text_complete", {"fullContent": final_text})


def make_streamer(emit: ProgressEmitter, *, incremental: bool, **kwargs: Any) -> TextStreamer:
    if incremental:
        return IncrementalTextStreamer(emit)
    return SimulatedTextStreamer(emit, **kwargs)
