"""Tools that let the model delegate work to sub-agents.

- spawn_agent: run a task in a child agent, optionally reviewed by the Critic
- list_agents: status of every sub-agent
- wait_all_agents: block until several background agents finish

All of them talk to the manager through the AgentSpawner protocol, injected
with set_spawner() once the manager exists.
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any

from helmsman.agents.judge import JudgeTool, parse_verdict
from helmsman.agents.types import AgentSpawner, SpawnError, SubAgentNotFound, SubAgentStatus
from helmsman.api.models import ToolResult
from helmsman.api.tools import ToolRegistry
from helmsman.config import Settings
from helmsman.utils import truncate

logger = logging.getLogger(__name__)

REVIEW_ATTEMPTS = 3


async def wait_for_agent(
    spawner: AgentSpawner,
    agent_id: int,
    *,
    poll_interval: float = 1.0,
    timeout: float = 600.0,
) -> ToolResult:
    """Poll an agent until it leaves the running state.

    On timeout or cancellation of the waiting task the agent is cancelled.
    """
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    try:
        while loop.time() < deadline:
            await asyncio.sleep(poll_interval)
            info = spawner.get(agent_id)
            if info is None or info.status is SubAgentStatus.RUNNING:
                continue
            if info.status is SubAgentStatus.FAILED:
                return ToolResult(error=f"Agent #{agent_id} failed: {info.output}")
            if info.status is SubAgentStatus.CANCELLED:
                return ToolResult(error=f"Agent #{agent_id} was cancelled")
            return ToolResult(output=info.output)
    except asyncio.CancelledError:
        _cancel_quietly(spawner, agent_id)
        raise

    _cancel_quietly(spawner, agent_id)
    return ToolResult(error=f"Agent #{agent_id} timed out")


def _cancel_quietly(spawner: AgentSpawner, agent_id: int) -> None:
    try:
        spawner.cancel(agent_id)
    except SubAgentNotFound:
        pass


class _SpawnerTool:
    def __init__(self, spawner: AgentSpawner | None = None) -> None:
        self._spawner = spawner

    def set_spawner(self, spawner: AgentSpawner) -> None:
        self._spawner = spawner


# ---------------------------------------------------------------------------
# spawn_agent
# ---------------------------------------------------------------------------


class SpawnAgentTool(_SpawnerTool):
    name = "spawn_agent"
    description = (
        "Spawn a sub-agent to handle a complex task autonomously. "
        "Optionally specify 'agent_name' to use a custom persona."
    )
    needs_confirmation = True
    parameters: dict[str, Any] = {
        "type": "object",
        "properties": {
            "task": {
                "type": "string",
                "description": "The task description for the sub-agent to accomplish",
            },
            "context_files": {
                "type": "array",
                "items": {"type": "string"},
                "description": "List of absolute file paths to load into the sub-agent's context immediately.",
            },
            "agent_name": {
                "type": "string",
                "description": "Optional name of a custom agent persona to use (e.g. 'researcher', 'coder').",
            },
            "require_review": {
                "type": "boolean",
                "description": "If true, a 'Critic' agent verifies the output and requests corrections if needed.",
            },
        },
        "required": ["task"],
    }

    def __init__(
        self,
        spawner: AgentSpawner | None = None,
        judge: JudgeTool | None = None,
        *,
        poll_interval: float = 1.0,
        timeout: float = 600.0,
    ) -> None:
        super().__init__(spawner)
        self._judge = judge or JudgeTool(spawner)
        self.poll_interval = poll_interval
        self.timeout = timeout

    def set_spawner(self, spawner: AgentSpawner) -> None:
        super().set_spawner(spawner)
        self._judge.set_spawner(spawner)

    def _task_text(self, task: str, agent_name: str, attempt: int, feedback: str) -> str:
        text = task
        if agent_name:
            text = (
                f"You are acting as the '{agent_name}' agent. Your specific objective is:\n{task}\n\n"
                "INSTRUCTIONS:\n1. Analyze the request.\n2. Create a plan in a <thought> block.\n"
                "3. Execute the plan effectively."
            )
        if attempt > 1:
            text += (
                f"\n\n[SYSTEM]: This is attempt #{attempt}. Your previous output was REJECTED. "
                f"Please fix the following issues:\n{feedback}"
            )
        return text

    async def execute(self, args_json: str) -> ToolResult:
        try:
            args = json.loads(args_json)
            task = str(args["task"])
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            return ToolResult(error=f"invalid arguments: {e}")
        if self._spawner is None:
            return ToolResult(error="agent manager not initialized")

        context_files = [str(p) for p in args.get("context_files") or []]
        agent_name = str(args.get("agent_name") or "")
        require_review = bool(args.get("require_review"))
        attempts = REVIEW_ATTEMPTS if require_review else 1

        feedback = ""
        for attempt in range(1, attempts + 1):
            try:
                agent_id = await self._spawner.spawn(
                    self._task_text(task, agent_name, attempt, feedback),
                    context_files,
                    agent_name or None,
                )
            except SpawnError as e:
                return ToolResult(error=str(e))

            result = await wait_for_agent(
                self._spawner, agent_id, poll_interval=self.poll_interval, timeout=self.timeout
            )
            if result.error or not require_review:
                return result

            review = await self._judge.execute(json.dumps({"original_goal": task, "content": result.output}))
            if review.error:
                return ToolResult(output=f"{result.output}\n\n(Warning: Verification error: {review.error})")
            verdict = parse_verdict(review.output)
            if verdict is None:
                return ToolResult(output=f"{result.output}\n\n(Warning: Malformed verification: {review.output})")
            if verdict.passed:
                return ToolResult(output=f"{result.output}\n\n[Verified PASS by Critic]")

            feedback = verdict.feedback
            logger.info("Sub-agent #%d rejected by Critic (attempt %d/%d)", agent_id, attempt, attempts)

        return ToolResult(
            error=f"Auto-Verification failed after {attempts} attempts. Last feedback: {feedback}"
        )


# ---------------------------------------------------------------------------
# list_agents / wait_all_agents
# ---------------------------------------------------------------------------


class ListAgentsTool(_SpawnerTool):
    name = "list_agents"
    description = "List all sub-agents and their current status (running, done, failed, cancelled)."
    needs_confirmation = False
    parameters: dict[str, Any] = {"type": "object", "properties": {}}

    async def execute(self, args_json: str) -> ToolResult:
        if self._spawner is None:
            return ToolResult(error="agent manager not initialized")
        agents = self._spawner.list()
        if not agents:
            return ToolResult(output="No sub-agents have been spawned.")
        lines = [f"Agent #{a.id} [{a.status.value}]: {truncate(a.task, 80)}" for a in agents]
        return ToolResult(output="\n".join(lines) + "\n")


class WaitAllAgentsTool(_SpawnerTool):
    name = "wait_all_agents"
    description = "Wait for multiple background sub-agents to complete and get their aggregated outputs."
    needs_confirmation = False
    parameters: dict[str, Any] = {
        "type": "object",
        "properties": {
            "agent_ids": {
                "type": "array",
                "items": {"type": "integer"},
                "description": "List of Agent IDs to wait for.",
            },
        },
        "required": ["agent_ids"],
    }

    def __init__(
        self,
        spawner: AgentSpawner | None = None,
        *,
        poll_interval: float = 1.0,
        timeout: float = 600.0,
    ) -> None:
        super().__init__(spawner)
        self.poll_interval = poll_interval
        self.timeout = timeout

    async def execute(self, args_json: str) -> ToolResult:
        try:
            agent_ids = [int(i) for i in json.loads(args_json)["agent_ids"]]
        except (json.JSONDecodeError, KeyError, TypeError, ValueError) as e:
            return ToolResult(error=f"invalid arguments: {e}")
        if self._spawner is None:
            return ToolResult(error="agent manager not initialized")
        if not agent_ids:
            return ToolResult(output="No agents to wait for.")

        results = await asyncio.gather(
            *(
                wait_for_agent(self._spawner, i, poll_interval=self.poll_interval, timeout=self.timeout)
                for i in agent_ids
            )
        )

        parts = ["All agents completed:\n\n"]
        for agent_id, result in zip(agent_ids, results):
            if result.error:
                parts.append(f"Agent #{agent_id}: FAILED\nError: {result.error}\n\n")
            else:
                parts.append(f"Agent #{agent_id}: SUCCESS\n{result.output}\n\n")
            parts.append("---\n")
        return ToolResult(output="".join(parts))


def register_agent_tools(
    registry: ToolRegistry,
    spawner: AgentSpawner | None = None,
    settings: Settings | None = None,
) -> dict[str, Any]:
    """Register the sub-agent tools; returns them by name for later injection."""
    settings = settings or Settings()
    judge = JudgeTool(spawner, poll_interval=settings.judge_poll_interval, timeout=settings.judge_timeout)
    tools: dict[str, Any] = {
        judge.name: judge,
        SpawnAgentTool.name: SpawnAgentTool(
            spawner,
            judge,
            poll_interval=settings.subagent_poll_interval,
            timeout=settings.subagent_wait_timeout,
        ),
        ListAgentsTool.name: ListAgentsTool(spawner),
        WaitAllAgentsTool.name: WaitAllAgentsTool(
            spawner,
            poll_interval=settings.subagent_poll_interval,
            timeout=settings.subagent_wait_timeout,
        ),
    }
    for tool in tools.values():
        registry.register(tool)
    return tools


def inject_spawner(tools: dict[str, Any], spawner: AgentSpawner) -> None:
    for tool in tools.values():
        tool.set_spawner(spawner)
