"""Shared data models for the API layer.

Kept free of imports from the rest of the package so the provider,
conversation log and runtime can all depend on it.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any

ROLE_SYSTEM = "system"
ROLE_USER = "user"
ROLE_ASSISTANT = "assistant"
ROLE_TOOL = "tool"

ROLES = frozenset({ROLE_SYSTEM, ROLE_USER, ROLE_ASSISTANT, ROLE_TOOL})


@dataclass
class ToolCall:
    """A model-issued request to run a tool. ``arguments`` is raw JSON text."""

    id: str
    name: str
    arguments: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "arguments": self.arguments}

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> ToolCall:
        return cls(id=data["id"], name=data["name"], arguments=data.get("arguments", ""))


@dataclass
class Message:
    """A single role-tagged entry in the conversation."""

    role: str
    content: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)  # assistant only
    tool_call_id: str = ""  # tool only

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"role": self.role, "content": self.content}
        if self.tool_calls:
            data["tool_calls"] = [tc.to_dict() for tc in self.tool_calls]
        if self.tool_call_id:
            data["tool_call_id"] = self.tool_call_id
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> Message:
        role = data["role"]
        if role not in ROLES:
            raise ValueError(f"unknown message role: {role!r}")
        return cls(
            role=role,
            content=data.get("content") or "",
            tool_calls=[ToolCall.from_dict(tc) for tc in data.get("tool_calls") or []],
            tool_call_id=data.get("tool_call_id") or "",
        )


@dataclass
class Usage:
    input_tokens: int = 0
    output_tokens: int = 0
    total_tokens: int = 0
    estimated: bool = False  # True when computed client-side


@dataclass
class StreamChunk:
    """One unit of provider output.

    At most one of ``delta``/``thinking`` is set. Tool calls and usage only
    arrive on the chunk with ``done=True``.
    """

    delta: str = ""
    thinking: str = ""
    tool_calls: list[ToolCall] = field(default_factory=list)
    done: bool = False
    error: str | None = None
    usage: Usage | None = None


@dataclass
class ToolResult:
    """Outcome of a tool run. ``error`` is a soft failure the model gets to see."""

    output: str = ""
    error: str = ""
