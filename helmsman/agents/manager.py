"""Sub-agent manager -- runs child agent runtimes as background tasks.

Each spawned agent is an AgentRuntime sharing the parent's provider and tool
registry, driven by its own asyncio task. The manager tracks a record per
child, caps how many run at once and how deep spawning may nest, and
auto-approves every tool confirmation the child asks for.

Nesting depth follows the task doing the spawning: each child task stores
its depth in a context variable, so a spawn_agent call made by a child
(through the shared registry) is counted one level deeper.
"""

from __future__ import annotations

import asyncio
import contextvars
import functools
import logging
import threading
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path

from helmsman.agents.personas import InMemoryPersonaStore, PersonaStore
from helmsman.agents.types import AgentInfo, SpawnError, SubAgentNotFound, SubAgentStatus
from helmsman.api.provider import Provider
from helmsman.api.runner import AgentRuntime, build_system_prompt
from helmsman.api.tools import ToolRegistry
from helmsman.config import Settings
from helmsman.events import AgentEvent, EventType

logger = logging.getLogger(__name__)

CHILD_EVENT_BUFFER = 64
CONTEXT_FILES_HEADER = "I have loaded the following context files for you:\n\n"

# Depth of the agent running in the current task (0 = top level)
_current_depth: contextvars.ContextVar[int] = contextvars.ContextVar("helmsman_agent_depth", default=0)


def current_agent_depth() -> int:
    return _current_depth.get()


def load_context_files(paths: list[str], max_chars: int = 5000) -> str:
    """Concatenate files into one message, each cut to ``max_chars``."""
    parts = [CONTEXT_FILES_HEADER]
    for path in paths:
        try:
            content = Path(path).expanduser().read_text(encoding="utf-8", errors="replace")
        except OSError as e:
            parts.append(f"Error reading {path}: {e}\n")
            continue
        if len(content) > max_chars:
            content = content[:max_chars] + "\n... (truncated)"
        parts.append(f"--- {path} ---\n{content}\n\n")
    return "".join(parts)


@dataclass
class SubAgentRecord:
    id: int
    task: str
    depth: int
    agent_name: str = ""
    status: SubAgentStatus = SubAgentStatus.RUNNING
    output: str = ""
    created_at: datetime = field(default_factory=lambda: datetime.now(UTC))
    handle: asyncio.Task | None = field(default=None, repr=False)

    def info(self) -> AgentInfo:
        return AgentInfo(
            id=self.id,
            task=self.task,
            status=self.status,
            output=self.output,
            depth=self.depth,
            created_at=self.created_at,
            agent_name=self.agent_name,
        )


class SubAgentManager:
    """Spawns, tracks and cancels child agents."""

    def __init__(
        self,
        provider: Provider,
        registry: ToolRegistry,
        settings: Settings | None = None,
        *,
        depth: int = 0,
        personas: PersonaStore | None = None,
        max_concurrent: int | None = None,
    ) -> None:
        self._settings = settings or Settings()
        self._provider = provider
        self._registry = registry
        self._personas = personas if personas is not None else InMemoryPersonaStore()
        self.depth = depth
        self.max_depth = self._settings.max_agent_depth
        self.max_concurrent = max_concurrent or self._settings.max_concurrent_subagents
        # Children never run their own Quality Gate
        self._child_settings = self._settings.model_copy(update={"quality_gate_enabled": False})

        self._agents: dict[int, SubAgentRecord] = {}
        self._next_id = 0
        self._lock = threading.Lock()

    # ------------------------------------------------------------------
    # Spawning
    # ------------------------------------------------------------------

    async def spawn(
        self,
        task: str,
        context_files: list[str] | None = None,
        agent_name: str | None = None,
    ) -> int:
        """Start a child agent on ``task`` and return its id.

        Raises SpawnError when the depth or concurrency cap is reached.
        """
        parent_depth = max(self.depth, _current_depth.get())
        if parent_depth >= self.max_depth:
            raise SpawnError(f"maximum agent nesting depth ({self.max_depth}) reached, cannot spawn sub-agent")

        with self._lock:
            if self._running_locked() >= self.max_concurrent:
                raise SpawnError(f"max concurrent agents ({self.max_concurrent}) reached")
            self._next_id += 1
            record = SubAgentRecord(
                id=self._next_id,
                task=task,
                depth=parent_depth + 1,
                agent_name=agent_name or "",
            )
            self._agents[record.id] = record

        record.handle = asyncio.create_task(
            self._run_child(record, list(context_files or [])), name=f"subagent-{record.id}"
        )
        parent = asyncio.current_task()
        if parent is not None:
            parent.add_done_callback(functools.partial(self._on_parent_done, record.id))

        logger.info(
            "Spawned sub-agent #%d (depth %d, %s): %s",
            record.id,
            record.depth,
            agent_name or "default",
            task[:80],
        )
        return record.id

    def _on_parent_done(self, agent_id: int, parent: asyncio.Task) -> None:
        if not parent.cancelled():
            return
        with self._lock:
            record = self._agents.get(agent_id)
            if record is None or record.status is not SubAgentStatus.RUNNING:
                return
            record.status = SubAgentStatus.CANCELLED
            handle = record.handle
        logger.info("Parent task cancelled, cancelling sub-agent #%d", agent_id)
        if handle is not None:
            handle.cancel()

    def _system_prompt_for(self, agent_name: str) -> str:
        if agent_name:
            persona = self._personas.get(agent_name)
            if persona is not None:
                return persona.system_prompt
            logger.debug("No persona named %r, using default prompt", agent_name)
        return build_system_prompt()

    # ------------------------------------------------------------------
    # Child worker
    # ------------------------------------------------------------------

    async def _run_child(self, record: SubAgentRecord, context_files: list[str]) -> None:
        _current_depth.set(record.depth)
        child = AgentRuntime(
            self._provider,
            self._registry,
            self._system_prompt_for(record.agent_name),
            settings=self._child_settings,
            depth=record.depth,
        )
        if context_files:
            preamble = await asyncio.to_thread(
                load_context_files, context_files, self._settings.context_file_max_chars
            )
            child.conversation.append_user(preamble)

        events: asyncio.Queue[AgentEvent] = asyncio.Queue(maxsize=CHILD_EVENT_BUFFER)
        approver = asyncio.create_task(self._auto_approve(child), name=f"subagent-{record.id}-approver")
        collector = asyncio.create_task(self._collect(record, events), name=f"subagent-{record.id}-events")
        try:
            await child.send(record.task, events)
            await events.join()
            self._finish(record, SubAgentStatus.DONE)
        except asyncio.CancelledError:
            self._finish(record, SubAgentStatus.CANCELLED)
            raise
        except Exception as exc:
            logger.exception("Sub-agent #%d crashed", record.id)
            self._finish(record, SubAgentStatus.FAILED, f"{type(exc).__name__}: {exc}")
        finally:
            approver.cancel()
            collector.cancel()
            await asyncio.gather(approver, collector, return_exceptions=True)

    async def _auto_approve(self, child: AgentRuntime) -> None:
        while True:
            await child.confirmations.put(True)

    async def _collect(self, record: SubAgentRecord, events: asyncio.Queue[AgentEvent]) -> None:
        while True:
            event = await events.get()
            try:
                if event.type is EventType.DELTA:
                    with self._lock:
                        record.output += event.text
                elif event.type is EventType.ERROR and event.done:
                    self._finish(record, SubAgentStatus.FAILED, event.error)
            finally:
                events.task_done()

    def _finish(self, record: SubAgentRecord, status: SubAgentStatus, output: str | None = None) -> None:
        """Move a running record to a final status; later outcomes never overwrite it."""
        with self._lock:
            if record.status is not SubAgentStatus.RUNNING:
                return
            record.status = status
            if output is not None:
                record.output = output
        logger.info("Sub-agent #%d finished: %s", record.id, status.value)

    # ------------------------------------------------------------------
    # Queries and control
    # ------------------------------------------------------------------

    def _running_locked(self) -> int:
        return sum(1 for r in self._agents.values() if r.status is SubAgentStatus.RUNNING)

    def running_count(self) -> int:
        with self._lock:
            return self._running_locked()

    def get(self, agent_id: int) -> AgentInfo | None:
        with self._lock:
            record = self._agents.get(agent_id)
            return record.info() if record is not None else None

    def list(self) -> list[AgentInfo]:
        with self._lock:
            return [r.info() for r in sorted(self._agents.values(), key=lambda r: r.id)]

    def cancel(self, agent_id: int) -> None:
        with self._lock:
            record = self._agents.get(agent_id)
            if record is None:
                raise SubAgentNotFound(f"agent #{agent_id} not found")
            if record.status is not SubAgentStatus.RUNNING:
                return
            record.status = SubAgentStatus.CANCELLED
            handle = record.handle
        logger.info("Cancelling sub-agent #%d", agent_id)
        if handle is not None:
            handle.cancel()

    def cleanup(self, max_age: float) -> int:
        """Forget finished records older than ``max_age`` seconds. Returns how many."""
        now = datetime.now(UTC)
        with self._lock:
            stale = [
                agent_id
                for agent_id, r in self._agents.items()
                if r.status is not SubAgentStatus.RUNNING and (now - r.created_at).total_seconds() > max_age
            ]
            for agent_id in stale:
                del self._agents[agent_id]
        if stale:
            logger.debug("Cleaned up %d sub-agent records", len(stale))
        return len(stale)

    async def shutdown(self) -> None:
        """Cancel every running child and wait for them to stop."""
        with self._lock:
            handles = []
            for record in self._agents.values():
                if record.status is SubAgentStatus.RUNNING:
                    record.status = SubAgentStatus.CANCELLED
                if record.handle is not None and not record.handle.done():
                    handles.append(record.handle)
        for handle in handles:
            handle.cancel()
        await asyncio.gather(*handles, return_exceptions=True)
        logger.info("Sub-agent manager stopped (%d cancelled)", len(handles))
