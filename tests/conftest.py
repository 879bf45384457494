"""Shared fixtures: scripted providers, mock tools, event helpers."""

from __future__ import annotations

import asyncio
import json
from collections.abc import AsyncIterator
from typing import Any

import pytest

from helmsman.api.models import Message, StreamChunk, ToolCall, ToolResult
from helmsman.config import Settings
from helmsman.events import AgentEvent, EventType

# ---------------------------------------------------------------------------
# Providers
# ---------------------------------------------------------------------------


def text_reply(text: str, tool_calls: list[ToolCall] | None = None) -> list[StreamChunk]:
    """One provider turn: a single delta followed by the done chunk."""
    chunks = [StreamChunk(delta=text)] if text else []
    chunks.append(StreamChunk(done=True, tool_calls=list(tool_calls or [])))
    return chunks


def tool_reply(*calls: tuple[str, str, dict[str, Any] | str]) -> list[StreamChunk]:
    """A turn with native tool calls given as (id, name, args)."""
    tool_calls = [
        ToolCall(id=cid, name=name, arguments=args if isinstance(args, str) else json.dumps(args))
        for cid, name, args in calls
    ]
    return [StreamChunk(done=True, tool_calls=tool_calls)]


class ScriptedProvider:
    """Replays canned turns; an exhausted script answers with an empty turn.

    A script entry may also be an Exception, raised from chat().
    """

    name = "mock"
    model = "mock-model"

    def __init__(self, turns: list[list[StreamChunk] | Exception] | None = None) -> None:
        self.turns = list(turns or [])
        self.calls: list[tuple[list[Message], list[dict[str, Any]]]] = []

    async def chat(self, messages: list[Message], tool_defs: list[dict[str, Any]]) -> AsyncIterator[StreamChunk]:
        self.calls.append((messages, tool_defs))
        turn = self.turns.pop(0) if self.turns else [StreamChunk(done=True)]
        if isinstance(turn, Exception):
            raise turn

        async def stream() -> AsyncIterator[StreamChunk]:
            for chunk in turn:
                yield chunk

        return stream()

    async def models(self) -> list[str]:
        return [self.model]


class BlockingProvider(ScriptedProvider):
    """Holds every chat() call until ``release`` is set."""

    def __init__(self, turns: list[list[StreamChunk] | Exception] | None = None) -> None:
        super().__init__(turns)
        self.release = asyncio.Event()

    async def chat(self, messages: list[Message], tool_defs: list[dict[str, Any]]) -> AsyncIterator[StreamChunk]:
        await self.release.wait()
        return await super().chat(messages, tool_defs)


# ---------------------------------------------------------------------------
# Tools
# ---------------------------------------------------------------------------


class MockTool:
    """Configurable tool that records its calls."""

    description = "mock tool"

    def __init__(
        self,
        name: str,
        output: str = "ok",
        *,
        error: str = "",
        raises: Exception | None = None,
        needs_confirmation: bool = False,
        parameters: dict[str, Any] | None = None,
        delay: float = 0.0,
        parallel_safe: bool | None = None,
    ) -> None:
        self.name = name
        self.output = output
        self.error = error
        self.raises = raises
        self.needs_confirmation = needs_confirmation
        self.parameters = parameters
        self.delay = delay
        self.parallel_safe = parallel_safe
        self.calls: list[str] = []
        self.cancelled = 0

    async def execute(self, args_json: str) -> ToolResult:
        self.calls.append(args_json)
        if self.delay:
            try:
                await asyncio.sleep(self.delay)
            except asyncio.CancelledError:
                self.cancelled += 1
                raise
        if self.raises is not None:
            raise self.raises
        return ToolResult(output=self.output, error=self.error)


class StreamingMockTool(MockTool):
    """Streams its output in pieces when given a chunk callback."""

    def __init__(self, name: str, pieces: list[str], **kwargs: Any) -> None:
        super().__init__(name, "".join(pieces), **kwargs)
        self.pieces = pieces
        self.streamed = False

    async def execute_stream(self, args_json: str, on_chunk) -> ToolResult:
        self.streamed = True
        self.calls.append(args_json)
        for piece in self.pieces:
            await on_chunk(piece)
        return ToolResult(output=self.output)


class VerdictTool(MockTool):
    """judge_output stand-in returning scripted verdicts in order."""

    def __init__(self, verdicts: list[tuple[str, str]]) -> None:
        super().__init__("judge_output")
        self.verdicts = list(verdicts)

    async def execute(self, args_json: str) -> ToolResult:
        self.calls.append(args_json)
        status, feedback = self.verdicts.pop(0) if len(self.verdicts) > 1 else self.verdicts[0]
        return ToolResult(output=json.dumps({"status": status, "feedback": feedback}))


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def drain(events: asyncio.Queue[AgentEvent]) -> list[AgentEvent]:
    out = []
    while not events.empty():
        out.append(events.get_nowait())
    return out


def of_type(events: list[AgentEvent], type: EventType) -> list[AgentEvent]:
    return [e for e in events if e.type is type]


def terminal(events: list[AgentEvent]) -> list[AgentEvent]:
    return [e for e in events if e.done]


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(interval)


@pytest.fixture
def settings(tmp_path) -> Settings:
    return Settings(
        _env_file=None,
        sessions_dir=str(tmp_path / "sessions"),
        emit_timeout=2.0,
        judge_poll_interval=0.01,
        subagent_poll_interval=0.01,
    )
