"""Conversation log shared by the runtime and its tool workers.

All mutations go through one lock, so parallel tool workers (or threads)
can append results concurrently. Reads return copies.

Persistence comes in two shapes:
- JSON (save/load) for resuming sessions.
- Markdown (export/import_markdown) for humans; each message is preceded by
  an HTML comment carrying its metadata so the file can be read back.
"""

from __future__ import annotations

import copy
import json
import logging
import re
import threading
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from helmsman.api.compaction import TokenEstimator, compact_messages
from helmsman.api.models import (
    ROLE_ASSISTANT,
    ROLE_SYSTEM,
    ROLE_TOOL,
    ROLE_USER,
    Message,
    ToolCall,
)

logger = logging.getLogger(__name__)

DEFAULT_SESSIONS_DIR = "~/.helmsman/sessions"

_MARKER_RE = re.compile(r"^<!-- helmsman:(message|tool_call) (\{.*\}) -->$")
_HEADINGS = {
    ROLE_SYSTEM: "System",
    ROLE_USER: "User",
    ROLE_ASSISTANT: "Assistant",
    ROLE_TOOL: "Tool result",
}


def _marker(kind: str, data: dict[str, Any]) -> str:
    # '>' is escaped so the payload can never terminate the comment early
    payload = json.dumps(data, ensure_ascii=False).replace(">", "\\u003e")
    return f"<!-- helmsman:{kind} {payload} -->"


class ConversationLog:
    """Ordered, lock-guarded list of role-tagged messages.

    Appending triggers compact() once the estimate reaches ``max_tokens``.
    """

    def __init__(
        self,
        max_tokens: int = 100_000,
        keep_recent: int = 6,
        *,
        session_id: str | None = None,
        sessions_dir: str | Path = DEFAULT_SESSIONS_DIR,
    ) -> None:
        self.max_tokens = max_tokens
        self.keep_recent = keep_recent
        self.session_id = session_id or uuid.uuid4().hex[:12]
        self.sessions_dir = Path(sessions_dir).expanduser()
        self.compaction_count = 0
        self._messages: list[Message] = []
        self._tokens = 0
        self._lock = threading.RLock()
        self._estimator = TokenEstimator()

    # ------------------------------------------------------------------
    # Appends
    # ------------------------------------------------------------------

    def _append(self, message: Message) -> None:
        with self._lock:
            self._messages.append(message)
            self._tokens += self._estimator.estimate_message(message)
            if self._tokens >= self.max_tokens:
                self.compact()

    def _replace(self, messages: list[Message]) -> None:
        with self._lock:
            self._messages = messages
            self._tokens = self._estimator.estimate_messages(messages)

    def append_system(self, content: str) -> None:
        self._append(Message(role=ROLE_SYSTEM, content=content))

    def append_user(self, content: str) -> None:
        self._append(Message(role=ROLE_USER, content=content))

    def append_assistant(self, content: str, tool_calls: list[ToolCall] | None = None) -> None:
        calls = [copy.copy(tc) for tc in tool_calls or []]
        self._append(Message(role=ROLE_ASSISTANT, content=content, tool_calls=calls))

    def append_tool_result(self, tool_call_id: str, content: str) -> None:
        self._append(Message(role=ROLE_TOOL, content=content, tool_call_id=tool_call_id))

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def __len__(self) -> int:
        with self._lock:
            return len(self._messages)

    def snapshot(self) -> list[Message]:
        """Deep copy of the current messages."""
        with self._lock:
            return copy.deepcopy(self._messages)

    @property
    def messages(self) -> list[Message]:
        return self.snapshot()

    def estimate_tokens(self) -> int:
        with self._lock:
            return self._tokens

    def wire_messages(self) -> list[Message]:
        """Snapshot without tool results that answer no earlier tool call."""
        messages = self.snapshot()
        called: set[str] = set()
        kept: list[Message] = []
        for m in messages:
            if m.role == ROLE_ASSISTANT:
                called.update(tc.id for tc in m.tool_calls)
            elif m.role == ROLE_TOOL and m.tool_call_id not in called:
                logger.warning("Dropping dangling tool result %r", m.tool_call_id)
                continue
            kept.append(m)
        return kept

    def check_invariants(self) -> list[str]:
        """Human-readable descriptions of every violated log invariant."""
        problems: list[str] = []
        messages = self.snapshot()
        first = next((m for m in messages if m.content or m.tool_calls), None)
        if first is not None and first.role != ROLE_SYSTEM:
            problems.append(f"first message is {first.role}, expected system")

        called: set[str] = set()
        pending: set[str] = set()
        for i, m in enumerate(messages):
            if m.role == ROLE_ASSISTANT:
                if pending:
                    problems.append(
                        f"message {i}: assistant turn before results for {sorted(pending)}"
                    )
                    pending.clear()
                ids = [tc.id for tc in m.tool_calls]
                called.update(ids)
                pending.update(ids)
            elif m.role == ROLE_TOOL:
                if m.tool_call_id not in called:
                    problems.append(f"message {i}: dangling tool result {m.tool_call_id!r}")
                pending.discard(m.tool_call_id)
        return problems

    # ------------------------------------------------------------------
    # Compaction
    # ------------------------------------------------------------------

    def compact(self) -> bool:
        """Summarise the oldest messages. Returns True if anything changed."""
        with self._lock:
            compacted = compact_messages(self._messages, self.keep_recent)
            if compacted is None:
                logger.debug("No safe compaction point in %d messages", len(self._messages))
                return False
            self._replace(compacted)
            self.compaction_count += 1
            return True

    # ------------------------------------------------------------------
    # JSON persistence
    # ------------------------------------------------------------------

    def to_dict(self) -> dict[str, Any]:
        return {
            "session_id": self.session_id,
            "saved_at": datetime.now(UTC).isoformat(),
            "max_tokens": self.max_tokens,
            "keep_recent": self.keep_recent,
            "compaction_count": self.compaction_count,
            "messages": [m.to_dict() for m in self.wire_messages()],
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any], **kwargs: Any) -> ConversationLog:
        log = cls(
            max_tokens=data.get("max_tokens", 100_000),
            keep_recent=data.get("keep_recent", 6),
            session_id=data.get("session_id"),
            **kwargs,
        )
        log.compaction_count = data.get("compaction_count", 0)
        log._replace([Message.from_dict(m) for m in data.get("messages", [])])
        return log

    def default_path(self) -> Path:
        return self.sessions_dir / f"{self.session_id}.json"

    def save(self, path: str | Path | None = None) -> Path:
        target = Path(path).expanduser() if path else self.default_path()
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(json.dumps(self.to_dict(), indent=2, ensure_ascii=False), encoding="utf-8")
        logger.info("Saved conversation %s (%d messages) to %s", self.session_id, len(self), target)
        return target

    @classmethod
    def load(cls, path: str | Path, **kwargs: Any) -> ConversationLog:
        data = json.loads(Path(path).expanduser().read_text(encoding="utf-8"))
        return cls.from_dict(data, **kwargs)

    # ------------------------------------------------------------------
    # Markdown export / import
    # ------------------------------------------------------------------

    def to_markdown(self) -> str:
        lines = [f"# Conversation {self.session_id}", ""]
        for m in self.wire_messages():
            meta: dict[str, Any] = {"role": m.role}
            if m.tool_call_id:
                meta["tool_call_id"] = m.tool_call_id
            heading = _HEADINGS[m.role]
            if m.tool_call_id:
                heading += f" `{m.tool_call_id}`"
            lines += [_marker("message", meta), f"## {heading}", "", m.content, ""]
            for tc in m.tool_calls:
                lines += [
                    _marker("tool_call", tc.to_dict()),
                    f"**Tool call** `{tc.name}` (`{tc.id}`)",
                    "",
                    "```json",
                    tc.arguments,
                    "```",
                    "",
                ]
        return "\n".join(lines)

    def export(self, path: str | Path) -> Path:
        target = Path(path).expanduser()
        target.parent.mkdir(parents=True, exist_ok=True)
        target.write_text(self.to_markdown(), encoding="utf-8")
        return target

    @classmethod
    def from_markdown(cls, text: str, **kwargs: Any) -> ConversationLog:
        messages: list[Message] = []
        body: list[str] | None = None  # lines of the current message content

        def close_body() -> None:
            if body is not None and messages:
                content = "\n".join(body[1:] if body and body[0].startswith("## ") else body)
                messages[-1].content = content.strip()

        for line in text.splitlines():
            match = _MARKER_RE.match(line.strip())
            if not match:
                if body is not None:
                    body.append(line)
                continue
            kind, payload = match.groups()
            data = json.loads(payload)
            if kind == "message":
                close_body()
                messages.append(Message.from_dict({**data, "content": ""}))
                body = []
            else:
                close_body()
                body = None
                if not messages or messages[-1].role != ROLE_ASSISTANT:
                    raise ValueError("tool call marker outside an assistant message")
                messages[-1].tool_calls.append(ToolCall.from_dict(data))
        close_body()

        log = cls(**kwargs)
        log._replace(messages)
        return log

    @classmethod
    def import_markdown(cls, path: str | Path, **kwargs: Any) -> ConversationLog:
        return cls.from_markdown(Path(path).expanduser().read_text(encoding="utf-8"), **kwargs)
