"""Shared sub-agent types.

Tools that spawn agents depend on the AgentSpawner protocol only, so the
manager can be injected after both sides are constructed.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Protocol


class SubAgentStatus(str, Enum):
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass(frozen=True)
class AgentInfo:
    """Read-only view of a sub-agent record."""

    id: int
    task: str
    status: SubAgentStatus
    output: str
    depth: int
    created_at: datetime
    agent_name: str = ""

    @property
    def finished(self) -> bool:
        return self.status is not SubAgentStatus.RUNNING


class SpawnError(RuntimeError):
    """The manager refused to start a sub-agent (depth or concurrency cap)."""


class SubAgentNotFound(LookupError):
    pass


class AgentSpawner(Protocol):
    async def spawn(
        self,
        task: str,
        context_files: list[str] | None = None,
        agent_name: str | None = None,
    ) -> int: ...

    def cancel(self, agent_id: int) -> None: ...

    def get(self, agent_id: int) -> AgentInfo | None: ...

    def list(self) -> list[AgentInfo]: ...
