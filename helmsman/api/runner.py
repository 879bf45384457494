"""Agent runtime: the think -> act -> observe loop.

One ``send()`` call drives the model until it answers without tool calls
(optionally approved by the Quality Gate), a bound is hit, or the calling
task is cancelled. Every run ends with exactly one terminal event
(DONE, or ERROR with ``done=True``) unless it is cancelled.

Per turn:
1. Send the wire snapshot plus an ephemeral turn reminder to the provider.
2. Stream thinking/delta chunks out as events, collect native tool calls.
3. Fall back to ``[TOOL:name|{json}]`` markers or a bare JSON call when the
   model has no native function calling.
4. Run parallel-safe tools concurrently, then the rest in order, asking for
   confirmation where the registry requires it.
"""

from __future__ import annotations

import asyncio
import contextlib
import json
import logging
import os
import platform
import re
import time
from collections.abc import Container
from typing import Any

from helmsman.agents.judge import JUDGE_TOOL_NAME, parse_verdict
from helmsman.api.conversation import ConversationLog
from helmsman.api.failures import FailureCatalogue
from helmsman.api.models import ROLE_SYSTEM, Message, ToolCall, ToolResult, Usage
from helmsman.api.provider import Provider
from helmsman.api.tools import InteractiveTool, ToolRegistry
from helmsman.config import Settings
from helmsman.events import (
    AgentEvent,
    EventSinkStalled,
    EventType,
    emit,
    is_bounded_queue,
    reject_sink,
)
from helmsman.utils import strip_code_fence, truncate

logger = logging.getLogger(__name__)

TOOL_MARKER_RE = re.compile(r"\[TOOL:(\w+)\|(.+?)\]", re.DOTALL)
THOUGHT_RE = re.compile(r"<thought>(.*?)</thought>", re.DOTALL)

TURN_REMINDER = (
    "Turn {turn}/{max_turns}. Review the history. If you just ran a command, did it work? "
    "If it failed, try a DIFFERENT approach. Do not repeat mistakes."
)
DENIED_RESULT = "User denied this operation."
QUALITY_GATE_REJECTION = (
    "QUALITY GATE FAILED.\n"
    "Your response was rejected by the Critic.\n"
    "Feedback: {feedback}\n\n"
    "You MUST fix these issues and try again. Do not repeat the same mistake."
)
SINK_NOT_BUFFERED = "event queue must be buffered: pass an asyncio.Queue with maxsize > 0"

# (substring of the bad name, real tool name), checked in order
_NAME_HINTS = (
    ("fetch", "web_fetch"),
    ("crawl", "web_crawl"),
    ("write", "file_write"),
    ("read", "file_read"),
)
_UNKNOWN_TOOL_HINT = ". Please check the 'Available Tools' list and retry with a valid tool name."
_INVALID_JSON_HINT = (
    ". Your JSON structure was malformed. Please ensure all quotes are escaped properly and retry."
)

_ARG_DISPLAY_KEYS = {
    "bash": ("command",),
    "file_read": ("path",),
    "file_write": ("path",),
    "web_search": ("query",),
    "web_fetch": ("url",),
    "web_crawl": ("url",),
    "spawn_agent": ("task",),
}


def build_system_prompt() -> str:
    """Default system prompt: identity, environment and working rules."""
    return f"""\
You are Helmsman, an AI coding assistant running in the user's terminal. You help with \
software engineering tasks including writing code, debugging, explaining code, running \
commands, and managing files.

## Environment
- Working directory: {os.getcwd()}
- OS: {platform.system().lower()}/{platform.machine().lower()}

## Guidelines
- Read files before editing them.
- Use the bash tool for git, build, and run commands.
- Use file_search to find files and search code.
- Be concise and direct. Focus on solving the user's problem.
- Ask for confirmation before destructive operations.
- Never execute dangerous commands (rm -rf /, etc.) without explicit user approval.
"""


def format_tool_args(name: str, raw: str) -> str:
    """Short human-readable rendering of tool arguments for events."""
    try:
        args = json.loads(raw) if raw else {}
    except json.JSONDecodeError:
        args = None

    if isinstance(args, dict):
        if name == "file_search":
            parts = []
            if args.get("pattern"):
                parts.append(f"pattern={args['pattern']}")
            if args.get("grep"):
                parts.append(f"grep={args['grep']}")
            if parts:
                return " ".join(parts)
        for key in _ARG_DISPLAY_KEYS.get(name, ()):
            if isinstance(args.get(key), str):
                return args[key]
    return truncate(raw, 80)


def extract_thoughts(text: str) -> list[str]:
    """Stripped contents of every <thought>...</thought> block."""
    return [t.strip() for t in THOUGHT_RE.findall(text) if t.strip()]


def extract_marker_calls(text: str) -> list[ToolCall]:
    """Tool calls written as ``[TOOL:name|{json}]`` in plain text.

    The match is non-greedy, so a ``]`` inside the JSON ends it early.
    """
    stamp = time.time_ns()
    return [
        ToolCall(id=f"fallback-{stamp}-{i}", name=name, arguments=args.strip())
        for i, (name, args) in enumerate(TOOL_MARKER_RE.findall(text))
    ]


def extract_json_call(text: str, known_tools: Container[str]) -> ToolCall | None:
    """A whole reply that is one JSON object naming a known tool."""
    body = strip_code_fence(THOUGHT_RE.sub("", text))
    if not (body.startswith("{") and body.endswith("}")):
        return None
    try:
        data = json.loads(body)
    except json.JSONDecodeError:
        return None
    name = data.get("name") or data.get("tool")
    if not isinstance(name, str) or name not in known_tools:
        return None
    args = data.get("arguments", data.get("parameters", {}))
    arguments = args if isinstance(args, str) else json.dumps(args)
    return ToolCall(id=f"fallback-{time.time_ns()}", name=name, arguments=arguments)


# ---------------------------------------------------------------------------
# AgentRuntime
# ---------------------------------------------------------------------------


class AgentRuntime:
    """Drives one conversation with a provider and a tool registry.

    The host answers confirmation requests by putting a bool into
    ``confirmations`` and feeds interactive tools through ``inputs``.
    """

    def __init__(
        self,
        provider: Provider,
        registry: ToolRegistry,
        system_prompt: str = "",
        *,
        settings: Settings | None = None,
        depth: int = 0,
        failures: FailureCatalogue | None = None,
        conversation: ConversationLog | None = None,
    ) -> None:
        self._settings = settings or Settings()
        self._provider = provider
        self._registry = registry
        self._failures = failures or FailureCatalogue()
        # consecutive failures per tool within one send()
        self._failure_counts: dict[str, int] = {}

        self.depth = depth
        self.max_turns = self._settings.max_turns
        self.max_quality_gate_retries = self._settings.max_quality_gate_retries
        self.quality_gate_enabled = self._settings.quality_gate_enabled
        self.original_goal = ""
        self.last_usage: Usage | None = None

        self.confirmations: asyncio.Queue[bool] = asyncio.Queue(maxsize=1)
        self.inputs: asyncio.Queue[str] = asyncio.Queue(maxsize=1)

        if conversation is None:
            conversation = ConversationLog(
                max_tokens=self._settings.conversation_max_tokens,
                keep_recent=self._settings.compaction_keep_recent,
                sessions_dir=self._settings.sessions_dir,
            )
        self.conversation = conversation
        if len(self.conversation) == 0:
            self.conversation.append_system(system_prompt or build_system_prompt())

    @property
    def provider(self) -> Provider:
        return self._provider

    @property
    def registry(self) -> ToolRegistry:
        return self._registry

    @property
    def failures(self) -> FailureCatalogue:
        """Corrective-hint catalogue; hosts may teach it new patterns with learn()."""
        return self._failures

    async def _emit(self, events: asyncio.Queue[AgentEvent], type: EventType, **fields: Any) -> None:
        await emit(events, AgentEvent(type=type, **fields), self._settings.emit_timeout)

    # ------------------------------------------------------------------
    # Entry point
    # ------------------------------------------------------------------

    async def send(self, user_msg: str, events: asyncio.Queue[AgentEvent]) -> None:
        """Run the agent loop for one user message, reporting through events."""
        if not is_bounded_queue(events):
            reject_sink(events, SINK_NOT_BUFFERED)
            return

        self.conversation.append_user(user_msg)
        if not self.original_goal:
            self.original_goal = user_msg
        self._failure_counts.clear()

        try:
            await self._loop(events)
        except EventSinkStalled as e:
            logger.error("Aborting agent run: %s", e)

    async def _loop(self, events: asyncio.Queue[AgentEvent]) -> None:
        rejections = 0
        for turn in range(1, self.max_turns + 1):
            streamed = await self._stream_turn(turn, events)
            if streamed is None:
                return
            text, tool_calls = streamed

            for thought in extract_thoughts(text):
                await self._emit(events, EventType.THINKING, text=thought)

            if not tool_calls:
                tool_calls = self._fallback_calls(text)
            if text or tool_calls:
                self.conversation.append_assistant(text, tool_calls)

            if tool_calls:
                await self._run_tools(tool_calls, events)
                continue

            if self.quality_gate_enabled and self.original_goal:
                passed, feedback = await self._quality_gate(text, events)
                if not passed:
                    rejections += 1
                    self.conversation.append_system(QUALITY_GATE_REJECTION.format(feedback=feedback))
                    logger.info("Quality Gate rejection %d/%d: %s", rejections, self.max_quality_gate_retries, feedback)
                    if rejections >= self.max_quality_gate_retries:
                        await self._emit(
                            events,
                            EventType.ERROR,
                            error=(
                                f"Quality Gate rejected the response {rejections} times "
                                f"(max {self.max_quality_gate_retries} retries), giving up. "
                                f"Last feedback: {feedback}"
                            ),
                            done=True,
                        )
                        return
                    await self._emit(events, EventType.ERROR, error=f"Quality Gate Rejected: {feedback}", done=False)
                    continue

            await self._emit(events, EventType.DONE, done=True)
            return

        await self._emit(
            events,
            EventType.ERROR,
            error=f"reached maximum of {self.max_turns} turns, stopping to prevent an infinite loop",
            done=True,
        )

    # ------------------------------------------------------------------
    # Provider turn
    # ------------------------------------------------------------------

    async def _stream_turn(
        self, turn: int, events: asyncio.Queue[AgentEvent]
    ) -> tuple[str, list[ToolCall]] | None:
        """Stream one completion. None means a terminal error was emitted."""
        messages = self.conversation.wire_messages()
        messages.append(
            Message(role=ROLE_SYSTEM, content=TURN_REMINDER.format(turn=turn, max_turns=self.max_turns))
        )

        try:
            stream = await self._provider.chat(messages, self._registry.tool_definitions())
        except Exception as e:
            logger.warning("Provider call failed: %s", e)
            await self._emit(events, EventType.ERROR, error=str(e), done=True)
            return None

        parts: list[str] = []
        tool_calls: list[ToolCall] = []
        async with contextlib.aclosing(stream) as chunks:
            async for chunk in chunks:
                if chunk.error:
                    await self._emit(events, EventType.ERROR, error=chunk.error, done=True)
                    return None
                if chunk.thinking:
                    await self._emit(events, EventType.THINKING, text=chunk.thinking)
                if chunk.delta:
                    parts.append(chunk.delta)
                    await self._emit(events, EventType.DELTA, text=chunk.delta)
                if chunk.done:
                    tool_calls = list(chunk.tool_calls)
                    self.last_usage = chunk.usage
                    break
        return "".join(parts), tool_calls

    def _fallback_calls(self, text: str) -> list[ToolCall]:
        calls = extract_marker_calls(text)
        if calls:
            logger.debug("Extracted %d tool call(s) from text markers", len(calls))
            return calls
        call = extract_json_call(text, self._registry)
        return [call] if call else []

    # ------------------------------------------------------------------
    # Quality Gate
    # ------------------------------------------------------------------

    async def _quality_gate(self, text: str, events: asyncio.Queue[AgentEvent]) -> tuple[bool, str]:
        """Ask the judge tool about the final answer. Returns (passed, feedback)."""
        await self._emit(
            events, EventType.JUDGE_CALL, text="Evaluating response against goal...", tool_name=JUDGE_TOOL_NAME
        )
        args = json.dumps({"original_goal": self.original_goal, "content": text})
        try:
            result = await self._registry.execute(JUDGE_TOOL_NAME, args)
        except Exception as e:
            logger.exception("Quality Gate judge raised")
            return False, f"Quality Gate execution failed: {e}"

        if result.error:
            return False, f"Quality Gate execution failed: {result.error}"
        verdict = parse_verdict(result.output)
        if verdict is None:
            return False, f"Judge returned malformed output: {truncate(result.output, 200)}"
        if not verdict.passed:
            return False, verdict.feedback or "no feedback given"

        await self._emit(events, EventType.JUDGE_CALL, text="Quality Gate passed.", tool_name=JUDGE_TOOL_NAME)
        return True, verdict.feedback

    # ------------------------------------------------------------------
    # Tool execution
    # ------------------------------------------------------------------

    async def _run_tools(self, tool_calls: list[ToolCall], events: asyncio.Queue[AgentEvent]) -> None:
        parallel = [tc for tc in tool_calls if self._registry.is_parallel_safe(tc.name)]
        sequential = [tc for tc in tool_calls if not self._registry.is_parallel_safe(tc.name)]

        if parallel:
            await asyncio.gather(*(self._run_parallel_call(tc, events) for tc in parallel))
        for tc in sequential:
            await self._run_sequential_call(tc, events)

    async def _run_parallel_call(self, tc: ToolCall, events: asyncio.Queue[AgentEvent]) -> None:
        await self._emit(
            events,
            EventType.TOOL_CALL,
            tool_name=tc.name,
            tool_args=format_tool_args(tc.name, tc.arguments),
            tool_id=tc.id,
        )
        try:
            result = await self._registry.execute(tc.name, tc.arguments)
        except Exception as e:
            await self._record_hard_error(tc, e, events)
            return
        await self._record_result(tc, result, events)

    async def _run_sequential_call(self, tc: ToolCall, events: asyncio.Queue[AgentEvent]) -> None:
        pretty = format_tool_args(tc.name, tc.arguments)
        await self._emit(events, EventType.TOOL_CALL, tool_name=tc.name, tool_args=pretty, tool_id=tc.id)

        if self._registry.needs_confirmation(tc.name):
            await self._emit(
                events, EventType.CONFIRM_REQUEST, tool_name=tc.name, tool_args=pretty, tool_id=tc.id
            )
            approved = await self.confirmations.get()
            if not approved:
                self.conversation.append_tool_result(tc.id, DENIED_RESULT)
                await self._emit(
                    events, EventType.TOOL_RESULT, tool_name=tc.name, tool_id=tc.id, result=DENIED_RESULT
                )
                return

        tool = self._registry.get(tc.name)
        if isinstance(tool, InteractiveTool):

            async def request_input() -> None:
                await self._emit(events, EventType.INPUT_REQUEST, tool_name=tc.name, tool_id=tc.id)

            tool.set_input_queue(self.inputs)
            tool.set_input_request_callback(request_input)

        async def on_chunk(text: str) -> None:
            await self._emit(events, EventType.TOOL_OUTPUT, tool_name=tc.name, tool_id=tc.id, text=text)

        try:
            result = await self._registry.execute(tc.name, tc.arguments, on_chunk)
        except Exception as e:
            await self._record_hard_error(tc, e, events)
            return
        await self._record_result(tc, result, events)

    async def _record_result(self, tc: ToolCall, result: ToolResult, events: asyncio.Queue[AgentEvent]) -> None:
        if not result.error:
            self._failure_counts.pop(tc.name, None)
            self.conversation.append_tool_result(tc.id, result.output)
            await self._emit(events, EventType.TOOL_RESULT, tool_name=tc.name, tool_id=tc.id, result=result.output)
            return

        error = self.nudge(tc.name, result.error)
        content = f"{result.output}\nError: {error}" if result.output else f"Error: {error}"
        self.conversation.append_tool_result(tc.id, content)
        await self._emit(
            events, EventType.TOOL_RESULT, tool_name=tc.name, tool_id=tc.id, result=result.output, error=error
        )

    async def _record_hard_error(self, tc: ToolCall, exc: Exception, events: asyncio.Queue[AgentEvent]) -> None:
        logger.warning("Tool %s (%s) raised: %s", tc.name, tc.id, exc)
        content = f"tool execution error: {self.nudge(tc.name, str(exc) or type(exc).__name__)}"
        self.conversation.append_tool_result(tc.id, content)
        await self._emit(events, EventType.TOOL_RESULT, tool_name=tc.name, tool_id=tc.id, error=content)

    def nudge(self, tool_name: str, error: str) -> str:
        """Append self-correction hints to a tool error."""
        lowered = error.lower()
        if "unknown tool" in lowered:
            name = tool_name.lower()
            suggestion = next((real for needle, real in _NAME_HINTS if needle in name), None)
            if suggestion:
                error += f". Did you mean '{suggestion}'? Please retry with the correct name."
            else:
                error += _UNKNOWN_TOOL_HINT
        elif "invalid json" in lowered:
            error += _INVALID_JSON_HINT

        attempts = self._failure_counts.get(tool_name, 0)
        self._failure_counts[tool_name] = attempts + 1
        action = self._failures.analyze(tool_name, error, attempts)
        if action is not None:
            error += "\n" + action.as_hint()
        return error
