"""Conversation compaction: token estimation, cut points and summaries.

History compaction replaces the oldest part of the conversation with a
locally synthesised summary (no LLM call):

    [system] [user: summary] [assistant: acknowledgement] [kept messages...]

The cut never separates an assistant tool call from its tool result, and at
least ``keep_recent`` trailing messages survive verbatim.

This module is independent of ConversationLog so the cut logic can be
tested on plain message lists.
"""

from __future__ import annotations

import logging
from typing import Any

from helmsman.api.models import ROLE_ASSISTANT, ROLE_SYSTEM, ROLE_TOOL, ROLE_USER, Message
from helmsman.utils import truncate

logger = logging.getLogger(__name__)

SUMMARY_SENTINEL = "[Conversation summary]"
SUMMARY_ACK = "I have the context. Let's continue."
SUMMARY_LINE_CHARS = 200
SUMMARY_MAX_LINES = 60
MESSAGE_OVERHEAD_TOKENS = 4


# ------------------------------------------------------------------
# Token Estimator
# ------------------------------------------------------------------


class TokenEstimator:
    """Estimates token counts with the chars/4 heuristic.

    Provider-agnostic on purpose: no tokenizer is consulted.
    """

    def __init__(self, ratio: float = 0.25) -> None:
        self._ratio = ratio  # tokens per char

    @property
    def ratio(self) -> float:
        return self._ratio

    def estimate(self, text: str | Any) -> int:
        """Estimate token count for text content."""
        if not isinstance(text, str):
            text = str(text)
        return max(1, int(len(text) * self._ratio))

    def estimate_message(self, message: Message) -> int:
        chars = len(message.content)
        for tc in message.tool_calls:
            chars += len(tc.name) + len(tc.arguments)
        return max(1, int(chars * self._ratio)) + MESSAGE_OVERHEAD_TOKENS

    def estimate_messages(self, messages: list[Message]) -> int:
        return sum(self.estimate_message(m) for m in messages)


# ------------------------------------------------------------------
# Cut point
# ------------------------------------------------------------------


def is_safe_cut(messages: list[Message], cut: int) -> bool:
    """True if no tool-call chain crosses the boundary before ``messages[cut]``.

    Unsafe when a kept tool result answers a call made in the prefix, or when
    a prefix assistant call is still unanswered at the cut.
    """
    called: set[str] = set()
    answered: set[str] = set()
    for m in messages[:cut]:
        if m.role == ROLE_ASSISTANT:
            called.update(tc.id for tc in m.tool_calls)
        elif m.role == ROLE_TOOL:
            answered.add(m.tool_call_id)
    if called - answered:
        return False
    return not any(m.role == ROLE_TOOL and m.tool_call_id in called for m in messages[cut:])


def find_cut_point(messages: list[Message], keep_recent: int) -> int | None:
    """Index of the first kept message, or None if nothing can be compacted.

    Index 0 is the system message and is always kept. The prefix
    ``messages[1:cut]`` must contain at least two messages, otherwise the
    summary would not shrink anything. User-message boundaries are preferred;
    any safe boundary is accepted otherwise.
    """
    start = 1 if messages and messages[0].role == ROLE_SYSTEM else 0
    latest = len(messages) - keep_recent
    earliest = start + 2
    if latest < earliest:
        return None

    fallback: int | None = None
    for cut in range(latest, earliest - 1, -1):
        if _is_summary_only(messages[start:cut]):
            break
        if not is_safe_cut(messages, cut):
            continue
        if messages[cut].role == ROLE_USER:
            return cut
        if fallback is None:
            fallback = cut
    return fallback


# ------------------------------------------------------------------
# Summary
# ------------------------------------------------------------------


def _summary_body(message: Message) -> list[str] | None:
    """Lines carried over from an earlier summary, if message is one."""
    if message.role == ROLE_USER and message.content.startswith(SUMMARY_SENTINEL):
        body = message.content[len(SUMMARY_SENTINEL):].strip()
        return [line for line in body.splitlines() if line.strip()]
    return None


def _is_summary_only(prefix: list[Message]) -> bool:
    """A prefix holding nothing but an earlier summary and its acknowledgement."""
    if len(prefix) != 2:
        return False
    return _summary_body(prefix[0]) is not None and prefix[1].content == SUMMARY_ACK


def _describe(message: Message) -> str:
    text = " ".join(message.content.split())
    if message.role == ROLE_TOOL:
        label = f"tool result ({message.tool_call_id})"
    else:
        label = message.role
    if message.tool_calls:
        calls = ", ".join(tc.name for tc in message.tool_calls)
        text = f"{text} [called: {calls}]".strip()
    return f"- {label}: {truncate(text, SUMMARY_LINE_CHARS)}"


def build_summary(prefix: list[Message]) -> str:
    """One role-tagged line per compacted message, oldest first.

    Earlier summaries are folded in; the acknowledgement messages that
    follow them are dropped. Only the newest SUMMARY_MAX_LINES survive.
    """
    lines: list[str] = []
    skip_ack = False
    for m in prefix:
        carried = _summary_body(m)
        if carried is not None:
            lines.extend(carried)
            skip_ack = True
            continue
        if skip_ack and m.role == ROLE_ASSISTANT and m.content == SUMMARY_ACK:
            skip_ack = False
            continue
        skip_ack = False
        lines.append(_describe(m))

    if len(lines) > SUMMARY_MAX_LINES:
        dropped = len(lines) - SUMMARY_MAX_LINES
        lines = [f"- ({dropped} earlier entries omitted)"] + lines[-SUMMARY_MAX_LINES:]
    return SUMMARY_SENTINEL + "\n" + "\n".join(lines)


def compact_messages(messages: list[Message], keep_recent: int) -> list[Message] | None:
    """Return the compacted list, or None when no safe cut exists."""
    cut = find_cut_point(messages, keep_recent)
    if cut is None:
        return None
    start = 1 if messages[0].role == ROLE_SYSTEM else 0
    summary = build_summary(messages[start:cut])
    head = messages[:start]
    logger.info("Compacting %d messages into a summary, keeping %d", cut - start, len(messages) - cut)
    return head + [
        Message(role=ROLE_USER, content=summary),
        Message(role=ROLE_ASSISTANT, content=SUMMARY_ACK),
    ] + messages[cut:]
