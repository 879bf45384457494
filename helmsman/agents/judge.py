"""judge_output: review content with a Critic sub-agent.

The tool spawns an agent named "Critic" with a strict review prompt, polls
its record until it finishes, and hands back the verdict as compact JSON:

    {"status": "pass" | "fail", "feedback": "..."}
"""

from __future__ import annotations

import asyncio
import json
import logging
from typing import Any, Literal

from pydantic import BaseModel, ValidationError, field_validator

from helmsman.agents.types import AgentSpawner, SpawnError, SubAgentNotFound, SubAgentStatus
from helmsman.api.models import ToolResult
from helmsman.utils import strip_code_fence

logger = logging.getLogger(__name__)

JUDGE_TOOL_NAME = "judge_output"
CRITIC_AGENT_NAME = "Critic"

CRITIC_PROMPT = """\
You are a STRICT CRITIC and CODE REVIEWER.
Your job is to evaluate if the CONTENT satisfies the ORIGINAL GOAL.

ORIGINAL GOAL:
"{goal}"

CONTENT TO REVIEW:
\"\"\"
{content}
\"\"\"

INSTRUCTIONS:
1. Analyze the content for logic errors, security flaws, missing requirements, or hallucinations.
2. Ignore minor formatting issues unless requested.
3. Be harsh but fair.

OUTPUT FORMAT:
Return ONLY a JSON object with this format (no markdown):
{{
  "status": "pass" | "fail",
  "feedback": "..."
}}
If valid, feedback should be "LGTM".
If invalid, feedback must explain the specific defect."""


class Verdict(BaseModel):
    status: Literal["pass", "fail"]
    feedback: str = ""

    @field_validator("status", mode="before")
    @classmethod
    def _normalise_status(cls, v: Any) -> Any:
        if isinstance(v, str):
            return v.strip().lower()
        return v

    @property
    def passed(self) -> bool:
        return self.status == "pass"


def parse_verdict(text: str) -> Verdict | None:
    """Parse a critic verdict, tolerating a Markdown fence. None if malformed."""
    try:
        return Verdict.model_validate_json(strip_code_fence(text))
    except ValidationError:
        return None


class JudgeTool:
    """Spawns a Critic and waits for its pass/fail verdict."""

    name = JUDGE_TOOL_NAME
    description = (
        "Submit content (code, text, plans) to a specialized Critic Agent for review. "
        "Returns PASS or FAIL with specific feedback."
    )
    needs_confirmation = False
    parameters: dict[str, Any] = {
        "type": "object",
        "properties": {
            "original_goal": {
                "type": "string",
                "description": "The original request or goal that the content attempts to satisfy.",
            },
            "content": {
                "type": "string",
                "description": "The actual content, code, or output to be reviewed.",
            },
        },
        "required": ["original_goal", "content"],
    }

    def __init__(
        self,
        spawner: AgentSpawner | None = None,
        *,
        poll_interval: float = 0.5,
        timeout: float = 120.0,
    ) -> None:
        self._spawner = spawner
        self.poll_interval = poll_interval
        self.timeout = timeout

    def set_spawner(self, spawner: AgentSpawner) -> None:
        self._spawner = spawner

    async def execute(self, args_json: str) -> ToolResult:
        try:
            args = json.loads(args_json)
            goal = str(args["original_goal"])
            content = str(args["content"])
        except (json.JSONDecodeError, KeyError, TypeError) as e:
            return ToolResult(error=f"invalid arguments: {e}")

        if self._spawner is None:
            return ToolResult(error="agent system not initialized")

        prompt = CRITIC_PROMPT.format(goal=goal, content=content)
        try:
            agent_id = await self._spawner.spawn(prompt, None, CRITIC_AGENT_NAME)
        except SpawnError as e:
            return ToolResult(error=f"failed to spawn critic: {e}")

        return await self._await_verdict(agent_id)

    async def _await_verdict(self, agent_id: int) -> ToolResult:
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.timeout
        try:
            while True:
                await asyncio.sleep(self.poll_interval)
                info = self._spawner.get(agent_id)
                if info is None:
                    if loop.time() >= deadline:
                        break
                    continue
                if info.status is SubAgentStatus.DONE:
                    verdict = parse_verdict(info.output)
                    if verdict is None:
                        logger.warning("Critic #%d returned malformed verdict", agent_id)
                        return ToolResult(
                            output=f"Critic finished but returned malformed JSON. Raw Output:\n{info.output}"
                        )
                    return ToolResult(output=verdict.model_dump_json())
                if info.status is SubAgentStatus.FAILED:
                    return ToolResult(error=f"critic failed: {info.output}")
                if info.status is SubAgentStatus.CANCELLED:
                    return ToolResult(error="critic was cancelled")
                if loop.time() >= deadline:
                    break
        except asyncio.CancelledError:
            self._cancel_quietly(agent_id)
            raise

        self._cancel_quietly(agent_id)
        logger.warning("Critic #%d timed out after %.0fs", agent_id, self.timeout)
        return ToolResult(error="critic timed out")

    def _cancel_quietly(self, agent_id: int) -> None:
        try:
            self._spawner.cancel(agent_id)
        except SubAgentNotFound:
            logger.debug("Critic #%d already gone", agent_id)
