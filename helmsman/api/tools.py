"""Tool registry: catalogue, argument validation, confirmation policy.

Tools are plain objects satisfying the Tool protocol. Extra capabilities
are optional protocols checked at dispatch time:

- StreamingTool: ``execute_stream(args_json, on_chunk)`` for live output
- InteractiveTool: accepts an input queue and an input-request callback
- ``parallel_safe`` attribute: overrides name-based classification

A tool signals a soft failure by returning ToolResult(error=...), which the
model gets to see, and a hard failure by raising.
"""

from __future__ import annotations

import json
import logging
import threading
from collections.abc import Awaitable, Callable, Iterable
from typing import Any, Protocol, runtime_checkable

from jsonschema import Draft7Validator
from jsonschema.exceptions import SchemaError

from helmsman.api.models import ToolResult

logger = logging.getLogger(__name__)

ChunkCallback = Callable[[str], Awaitable[None]]
InputRequestCallback = Callable[[], Awaitable[None]]

# Read-only tools that may run concurrently with each other
PARALLEL_SAFE_TOOLS = frozenset({"web_search", "web_fetch", "web_crawl", "file_read", "file_search"})

MAX_REPORTED_VIOLATIONS = 3


@runtime_checkable
class Tool(Protocol):
    name: str
    description: str
    parameters: dict[str, Any] | None
    needs_confirmation: bool

    async def execute(self, args_json: str) -> ToolResult: ...


@runtime_checkable
class StreamingTool(Protocol):
    async def execute_stream(self, args_json: str, on_chunk: ChunkCallback) -> ToolResult: ...


@runtime_checkable
class InteractiveTool(Protocol):
    def set_input_queue(self, queue: Any) -> None: ...

    def set_input_request_callback(self, callback: InputRequestCallback) -> None: ...


# ---------------------------------------------------------------------------
# Schema validation
# ---------------------------------------------------------------------------


class SchemaValidator:
    """Validates tool arguments against JSON schemas.

    Compiled validators are cached under the canonical JSON of their schema,
    so tools sharing a schema share a validator.
    """

    def __init__(self) -> None:
        self._cache: dict[str, Draft7Validator] = {}
        self._lock = threading.Lock()

    def __len__(self) -> int:
        return len(self._cache)

    def _compiled(self, schema: dict[str, Any]) -> Draft7Validator:
        key = json.dumps(schema, sort_keys=True, separators=(",", ":"))
        with self._lock:
            validator = self._cache.get(key)
            if validator is None:
                Draft7Validator.check_schema(schema)
                validator = Draft7Validator(schema)
                self._cache[key] = validator
            return validator

    def validate(self, schema: dict[str, Any] | None, args_json: str) -> str | None:
        """Return None when valid, else a readable description of the problems."""
        if not schema:
            return None
        try:
            document = json.loads(args_json) if args_json.strip() else {}
        except json.JSONDecodeError as e:
            return f"invalid json: {e}"

        try:
            validator = self._compiled(schema)
        except SchemaError as e:
            return f"invalid schema definition: {e.message}"

        errors = sorted(validator.iter_errors(document), key=lambda item: [str(p) for p in item.path])
        if not errors:
            return None

        lines = ["schema validation failed:"]
        for error in errors[:MAX_REPORTED_VIOLATIONS]:
            path = ".".join(str(segment) for segment in error.path) or "$"
            lines.append(f"- {path}: {error.message}")
        if len(errors) > MAX_REPORTED_VIOLATIONS:
            lines.append(f"... and {len(errors) - MAX_REPORTED_VIOLATIONS} more")
        return "\n".join(lines)


# ---------------------------------------------------------------------------
# ToolRegistry
# ---------------------------------------------------------------------------


class ToolRegistry:
    """Named tool catalogue consulted by the agent runtime."""

    def __init__(self, auto_approve: Iterable[str] = (), allow_all: bool = False) -> None:
        self._tools: dict[str, Tool] = {}
        self._auto_approve: set[str] = set(auto_approve)
        self.allow_all = allow_all
        self.validator = SchemaValidator()

    def register(self, tool: Tool) -> None:
        """Register a tool, replacing any previous tool with the same name."""
        if tool.name in self._tools:
            logger.debug("Replacing tool '%s'", tool.name)
        self._tools[tool.name] = tool

    def get(self, name: str) -> Tool | None:
        return self._tools.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._tools

    def names(self) -> list[str]:
        return list(self._tools)

    def auto_approve(self, name: str) -> None:
        self._auto_approve.add(name)

    def tool_definitions(self) -> list[dict[str, Any]]:
        """All tool definitions, in registration order."""
        return [
            {
                "name": tool.name,
                "description": tool.description,
                "parameters": tool.parameters or {"type": "object", "properties": {}},
            }
            for tool in self._tools.values()
        ]

    def needs_confirmation(self, name: str) -> bool:
        if self.allow_all or name in self._auto_approve:
            return False
        tool = self._tools.get(name)
        if tool is None:
            return True
        return bool(tool.needs_confirmation)

    def is_parallel_safe(self, name: str) -> bool:
        tool = self._tools.get(name)
        flag = getattr(tool, "parallel_safe", None) if tool is not None else None
        if flag is not None:
            return bool(flag)
        return name in PARALLEL_SAFE_TOOLS

    async def execute(self, name: str, args_json: str, on_chunk: ChunkCallback | None = None) -> ToolResult:
        """Run a tool by name.

        Unknown tools and invalid arguments come back as soft errors; anything
        the tool raises propagates to the caller.
        """
        tool = self._tools.get(name)
        if tool is None:
            return ToolResult(error=f"unknown tool: {name}")

        problem = self.validator.validate(tool.parameters, args_json)
        if problem:
            return ToolResult(error=f"invalid arguments for tool {name}: {problem}")

        if on_chunk is not None and isinstance(tool, StreamingTool):
            return await tool.execute_stream(args_json, on_chunk)
        return await tool.execute(args_json)
