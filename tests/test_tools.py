"""Tests for ToolRegistry and SchemaValidator.

Tests cover:
- Unknown tools and argument validation as soft errors
- Violation reporting (first three, then a count)
- Validator cache shared across equal schemas
- Streaming dispatch only when a chunk callback is given
- Confirmation policy and parallel-safety classification
- Exceptions from tools propagate
"""

import json

import pytest

from helmsman.api.tools import SchemaValidator, ToolRegistry
from tests.conftest import MockTool, StreamingMockTool

FIVE_REQUIRED = {
    "type": "object",
    "properties": {
        "a": {"type": "string"},
        "b": {"type": "integer"},
        "c": {"type": "boolean"},
        "d": {"type": "number"},
        "e": {"type": "string"},
    },
    "required": ["a", "b", "c", "d", "e"],
}

PATH_SCHEMA = {
    "type": "object",
    "properties": {"path": {"type": "string"}},
    "required": ["path"],
}


# ---------------------------------------------------------------------------
# SchemaValidator
# ---------------------------------------------------------------------------


class TestSchemaValidator:
    def test_no_schema_is_valid(self):
        assert SchemaValidator().validate(None, "anything") is None

    def test_valid_arguments(self):
        assert SchemaValidator().validate(PATH_SCHEMA, '{"path": "a.txt"}') is None

    def test_reports_first_three_violations(self):
        problem = SchemaValidator().validate(FIVE_REQUIRED, "{}")
        lines = problem.splitlines()
        assert lines[0] == "schema validation failed:"
        assert len([line for line in lines if line.startswith("- ")]) == 3
        assert lines[-1] == "... and 2 more"

    def test_violation_path(self):
        problem = SchemaValidator().validate(PATH_SCHEMA, '{"path": 3}')
        assert "- path: 3 is not of type 'string'" in problem

    def test_invalid_json(self):
        problem = SchemaValidator().validate(PATH_SCHEMA, "{not json")
        assert problem.startswith("invalid json:")

    def test_blank_arguments_are_an_empty_object(self):
        validator = SchemaValidator()
        assert validator.validate({"type": "object"}, "   ") is None
        assert "'path' is a required property" in validator.validate(PATH_SCHEMA, "")

    def test_invalid_schema(self):
        problem = SchemaValidator().validate({"type": 12}, "{}")
        assert problem.startswith("invalid schema definition")

    def test_cache_shared_by_equal_schemas(self):
        validator = SchemaValidator()
        reordered = {"required": ["path"], "properties": {"path": {"type": "string"}}, "type": "object"}
        validator.validate(PATH_SCHEMA, '{"path": "x"}')
        validator.validate(reordered, '{"path": "y"}')
        assert len(validator) == 1


# ---------------------------------------------------------------------------
# ToolRegistry.execute
# ---------------------------------------------------------------------------


class TestExecute:
    @pytest.mark.asyncio
    async def test_unknown_tool(self):
        result = await ToolRegistry().execute("nope", "{}")
        assert result.error == "unknown tool: nope"

    @pytest.mark.asyncio
    async def test_invalid_arguments_never_reach_the_tool(self):
        tool = MockTool("file_read", parameters=PATH_SCHEMA)
        registry = ToolRegistry()
        registry.register(tool)

        result = await registry.execute("file_read", "{}")

        assert result.error.startswith("invalid arguments for tool file_read: schema validation failed:")
        assert tool.calls == []

    @pytest.mark.asyncio
    async def test_valid_call(self):
        tool = MockTool("file_read", "contents", parameters=PATH_SCHEMA)
        registry = ToolRegistry()
        registry.register(tool)

        result = await registry.execute("file_read", json.dumps({"path": "a.txt"}))

        assert result.output == "contents"
        assert not result.error
        assert tool.calls == ['{"path": "a.txt"}']

    @pytest.mark.asyncio
    async def test_soft_error_returned(self):
        registry = ToolRegistry()
        registry.register(MockTool("bash", "partial", error="exit status 1"))
        result = await registry.execute("bash", "{}")
        assert (result.output, result.error) == ("partial", "exit status 1")

    @pytest.mark.asyncio
    async def test_raised_exception_propagates(self):
        registry = ToolRegistry()
        registry.register(MockTool("bash", raises=OSError("disk gone")))
        with pytest.raises(OSError, match="disk gone"):
            await registry.execute("bash", "{}")

    @pytest.mark.asyncio
    async def test_streaming_only_with_callback(self):
        tool = StreamingMockTool("bash", ["a", "b"])
        registry = ToolRegistry()
        registry.register(tool)

        result = await registry.execute("bash", "{}")
        assert result.output == "ab"
        assert not tool.streamed

        pieces = []

        async def on_chunk(text):
            pieces.append(text)

        await registry.execute("bash", "{}", on_chunk)
        assert tool.streamed
        assert pieces == ["a", "b"]

    @pytest.mark.asyncio
    async def test_callback_ignored_for_plain_tool(self):
        registry = ToolRegistry()
        registry.register(MockTool("bash", "done"))

        async def on_chunk(text):
            raise AssertionError("not a streaming tool")

        result = await registry.execute("bash", "{}", on_chunk)
        assert result.output == "done"


# ---------------------------------------------------------------------------
# Catalogue and policy
# ---------------------------------------------------------------------------


class TestPolicy:
    def test_confirmation_matrix(self):
        registry = ToolRegistry(auto_approve=["file_write"])
        registry.register(MockTool("bash", needs_confirmation=True))
        registry.register(MockTool("file_write", needs_confirmation=True))
        registry.register(MockTool("file_read"))

        assert registry.needs_confirmation("bash")
        assert not registry.needs_confirmation("file_write")
        assert not registry.needs_confirmation("file_read")
        assert registry.needs_confirmation("unknown_tool")

        registry.auto_approve("bash")
        assert not registry.needs_confirmation("bash")

    def test_allow_all(self):
        registry = ToolRegistry(allow_all=True)
        registry.register(MockTool("bash", needs_confirmation=True))
        assert not registry.needs_confirmation("bash")
        assert not registry.needs_confirmation("unknown_tool")

    def test_parallel_safe_by_name_and_flag(self):
        registry = ToolRegistry()
        registry.register(MockTool("web_fetch"))
        registry.register(MockTool("bash"))
        registry.register(MockTool("file_read", parallel_safe=False))
        registry.register(MockTool("lookup", parallel_safe=True))

        assert registry.is_parallel_safe("web_fetch")
        assert registry.is_parallel_safe("file_search")
        assert not registry.is_parallel_safe("bash")
        assert not registry.is_parallel_safe("file_read")
        assert registry.is_parallel_safe("lookup")

    def test_definitions_in_registration_order(self):
        registry = ToolRegistry()
        registry.register(MockTool("bash"))
        registry.register(MockTool("file_read", parameters=PATH_SCHEMA))

        definitions = registry.tool_definitions()

        assert [d["name"] for d in definitions] == ["bash", "file_read"]
        assert definitions[0]["parameters"] == {"type": "object", "properties": {}}
        assert definitions[1]["parameters"] == PATH_SCHEMA
        assert definitions[1]["description"] == "mock tool"

    def test_register_replaces_same_name(self):
        registry = ToolRegistry()
        registry.register(MockTool("bash", "first"))
        second = MockTool("bash", "second")
        registry.register(second)
        assert registry.get("bash") is second
        assert registry.names() == ["bash"]
        assert "bash" in registry
