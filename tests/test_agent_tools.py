"""Tests for spawn_agent, list_agents and wait_all_agents.

Tests cover:
- Registration and spawner injection
- spawn_agent without review, with a passing review, and review exhaustion
- Persona wrapping of the task text and spawn errors surfaced as tool errors
- list_agents and wait_all_agents formatting
"""

import json

import pytest

from helmsman.agents.manager import SubAgentManager
from helmsman.agents.tools import (
    ListAgentsTool,
    SpawnAgentTool,
    WaitAllAgentsTool,
    inject_spawner,
    register_agent_tools,
)
from helmsman.api.errors import ProviderError
from helmsman.api.tools import ToolRegistry
from tests.conftest import BlockingProvider, ScriptedProvider, text_reply, wait_until

PASS = '{"status": "pass", "feedback": "LGTM"}'
FAIL = '{"status": "fail", "feedback": "nope"}'


def _setup(turns, settings):
    provider = ScriptedProvider(turns)
    registry = ToolRegistry()
    tools = register_agent_tools(registry, None, settings)
    manager = SubAgentManager(provider, registry, settings)
    inject_spawner(tools, manager)
    return provider, registry, tools, manager


def _user_messages(provider, call_index):
    return [m.content for m in provider.calls[call_index][0] if m.role == "user"]


class TestRegistration:
    def test_tools_registered(self, settings):
        registry = ToolRegistry()
        tools = register_agent_tools(registry, None, settings)
        assert set(tools) == {"judge_output", "spawn_agent", "list_agents", "wait_all_agents"}
        assert set(registry.names()) == set(tools)
        assert registry.needs_confirmation("spawn_agent")
        assert not registry.needs_confirmation("list_agents")

    @pytest.mark.asyncio
    async def test_uninjected_tools_report_error(self, settings):
        tools = register_agent_tools(ToolRegistry(), None, settings)
        result = await tools["spawn_agent"].execute(json.dumps({"task": "x"}))
        assert result.error == "agent manager not initialized"
        result = await tools["list_agents"].execute("{}")
        assert result.error == "agent manager not initialized"


# ---------------------------------------------------------------------------
# spawn_agent
# ---------------------------------------------------------------------------


class TestSpawnAgent:
    @pytest.mark.asyncio
    async def test_without_review(self, settings):
        provider, registry, _, _ = _setup([text_reply("child says hi")], settings)

        result = await registry.execute("spawn_agent", json.dumps({"task": "say hi"}))

        assert result.output == "child says hi"
        assert len(provider.calls) == 1

    @pytest.mark.asyncio
    async def test_review_pass(self, settings):
        provider, registry, _, manager = _setup([text_reply("the answer"), text_reply(PASS)], settings)

        result = await registry.execute("spawn_agent", json.dumps({"task": "answer", "require_review": True}))

        assert result.output == "the answer\n\n[Verified PASS by Critic]"
        assert [a.agent_name for a in manager.list()] == ["", "Critic"]

    @pytest.mark.asyncio
    async def test_review_retries_with_feedback(self, settings):
        provider, registry, _, _ = _setup(
            [text_reply("v1"), text_reply(FAIL), text_reply("v2"), text_reply(PASS)], settings
        )

        result = await registry.execute("spawn_agent", json.dumps({"task": "answer", "require_review": True}))

        assert result.output == "v2\n\n[Verified PASS by Critic]"
        retry_task = _user_messages(provider, 2)[0]
        assert retry_task.startswith("answer")
        assert "This is attempt #2" in retry_task
        assert retry_task.endswith("nope")

    @pytest.mark.asyncio
    async def test_review_exhaustion(self, settings):
        turns = []
        for i in range(3):
            turns += [text_reply(f"v{i}"), text_reply(FAIL)]
        provider, registry, _, manager = _setup(turns, settings)

        result = await registry.execute("spawn_agent", json.dumps({"task": "answer", "require_review": True}))

        assert result.error == "Auto-Verification failed after 3 attempts. Last feedback: nope"
        assert len(manager.list()) == 6

    @pytest.mark.asyncio
    async def test_malformed_review_is_a_warning(self, settings):
        _, registry, _, _ = _setup([text_reply("the answer"), text_reply("sure, fine")], settings)

        result = await registry.execute("spawn_agent", json.dumps({"task": "answer", "require_review": True}))

        assert result.output.startswith("the answer\n\n(Warning: Malformed verification:")

    @pytest.mark.asyncio
    async def test_child_failure(self, settings):
        _, registry, _, _ = _setup([ProviderError("provider mock: boom")], settings)

        result = await registry.execute("spawn_agent", json.dumps({"task": "x"}))

        assert result.error == "Agent #1 failed: provider mock: boom"

    @pytest.mark.asyncio
    async def test_persona_wrapping(self, settings):
        provider, registry, _, _ = _setup([text_reply("found it")], settings)

        await registry.execute("spawn_agent", json.dumps({"task": "find the bug", "agent_name": "researcher"}))

        task = _user_messages(provider, 0)[-1]
        assert task.startswith("You are acting as the 'researcher' agent.")
        assert "find the bug" in task

    @pytest.mark.asyncio
    async def test_spawn_error_surfaces(self, settings):
        registry = ToolRegistry()
        tools = register_agent_tools(registry, None, settings)
        inject_spawner(tools, SubAgentManager(ScriptedProvider(), registry, settings, depth=3))

        result = await registry.execute("spawn_agent", json.dumps({"task": "x"}))

        assert result.error == "maximum agent nesting depth (3) reached, cannot spawn sub-agent"

    @pytest.mark.asyncio
    async def test_schema_enforced(self, settings):
        _, registry, _, _ = _setup([], settings)
        result = await registry.execute("spawn_agent", json.dumps({"context_files": "not a list"}))
        assert result.error.startswith("invalid arguments for tool spawn_agent: schema validation failed:")


# ---------------------------------------------------------------------------
# list_agents / wait_all_agents
# ---------------------------------------------------------------------------


class TestListAndWait:
    @pytest.mark.asyncio
    async def test_list_empty(self, settings):
        manager = SubAgentManager(ScriptedProvider(), ToolRegistry(), settings)
        result = await ListAgentsTool(manager).execute("{}")
        assert result.output == "No sub-agents have been spawned."

    @pytest.mark.asyncio
    async def test_list(self, settings):
        manager = SubAgentManager(ScriptedProvider([text_reply("ok")]), ToolRegistry(), settings)
        agent_id = await manager.spawn("t" * 100)
        await wait_until(lambda: manager.get(agent_id).finished)

        result = await ListAgentsTool(manager).execute("{}")

        assert result.output == f"Agent #1 [done]: {'t' * 80}...\n"

    @pytest.mark.asyncio
    async def test_wait_all(self, settings):
        provider = ScriptedProvider([text_reply("first"), ProviderError("provider mock: boom")])
        manager = SubAgentManager(provider, ToolRegistry(), settings)
        ids = [await manager.spawn("a"), await manager.spawn("b")]
        tool = WaitAllAgentsTool(manager, poll_interval=0.01, timeout=2)

        result = await tool.execute(json.dumps({"agent_ids": ids}))

        assert result.output == (
            "All agents completed:\n\n"
            "Agent #1: SUCCESS\nfirst\n\n---\n"
            "Agent #2: FAILED\nError: Agent #2 failed: provider mock: boom\n\n---\n"
        )

    @pytest.mark.asyncio
    async def test_wait_all_timeout_cancels(self, settings):
        manager = SubAgentManager(BlockingProvider(), ToolRegistry(), settings)
        agent_id = await manager.spawn("slow")
        tool = WaitAllAgentsTool(manager, poll_interval=0.01, timeout=0.05)

        result = await tool.execute(json.dumps({"agent_ids": [agent_id]}))

        assert "Error: Agent #1 timed out" in result.output
        assert manager.get(agent_id).status.value == "cancelled"

    @pytest.mark.asyncio
    async def test_wait_all_invalid_arguments(self, settings):
        tool = WaitAllAgentsTool(SubAgentManager(ScriptedProvider(), ToolRegistry(), settings))
        assert (await tool.execute('{"agent_ids": "x"}')).error.startswith("invalid arguments:")
        assert (await tool.execute('{"agent_ids": []}')).output == "No agents to wait for."

    def test_spawn_tool_shares_judge_spawner(self, settings):
        tool = SpawnAgentTool()
        manager = SubAgentManager(ScriptedProvider(), ToolRegistry(), settings)
        tool.set_spawner(manager)
        assert tool._judge._spawner is manager
