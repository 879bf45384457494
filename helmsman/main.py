"""Helmsman headless entry point.

Builds the components and runs one task, printing events to stdout:
  Settings -> Provider (+ retry) -> ToolRegistry -> SubAgentManager -> AgentRuntime

Tool confirmations are asked on stdin unless --yes is given.
"""

from __future__ import annotations

import argparse
import asyncio
import logging
import sys

from helmsman.agents.manager import SubAgentManager
from helmsman.agents.tools import inject_spawner, register_agent_tools
from helmsman.api.provider import OpenAIChatProvider
from helmsman.api.retry import RetryProvider
from helmsman.api.runner import AgentRuntime
from helmsman.api.tools import ToolRegistry
from helmsman.config import Settings
from helmsman.events import AgentEvent, EventType

logger = logging.getLogger(__name__)

EVENT_BUFFER = 256


async def create_components(settings: Settings) -> dict:
    """Initialize all components in dependency order."""
    provider = OpenAIChatProvider.from_settings(settings)
    await provider.start()
    retrying = RetryProvider.from_settings(provider, settings)

    registry = ToolRegistry(auto_approve=settings.auto_approve, allow_all=settings.allow_all)
    agent_tools = register_agent_tools(registry, None, settings)
    manager = SubAgentManager(retrying, registry, settings)
    inject_spawner(agent_tools, manager)

    runtime = AgentRuntime(retrying, registry, settings=settings)
    return {"provider": provider, "registry": registry, "manager": manager, "runtime": runtime}


async def shutdown_components(components: dict) -> None:
    """Graceful shutdown in reverse order."""
    manager = components.get("manager")
    if manager:
        await manager.shutdown()
    provider = components.get("provider")
    if provider:
        await provider.close()
    logger.info("Helmsman shutdown complete.")


def _print_event(event: AgentEvent) -> None:
    if event.type is EventType.DELTA:
        sys.stdout.write(event.text)
    elif event.type is EventType.THINKING:
        sys.stdout.write(f"\n[thinking] {event.text}\n")
    elif event.type is EventType.TOOL_CALL:
        sys.stdout.write(f"\n> {event.tool_name}: {event.tool_args}\n")
    elif event.type is EventType.TOOL_OUTPUT:
        sys.stdout.write(event.text)
    elif event.type is EventType.TOOL_RESULT:
        sys.stdout.write(f"< {event.tool_name}: {event.error or event.result[:500]}\n")
    elif event.type is EventType.JUDGE_CALL:
        sys.stdout.write(f"\n[quality gate] {event.text}\n")
    elif event.type is EventType.ERROR:
        sys.stdout.write(f"\n[error] {event.error}\n")
    elif event.type is EventType.DONE:
        sys.stdout.write("\n")
    sys.stdout.flush()


async def _drive(runtime: AgentRuntime, task: str, assume_yes: bool) -> int:
    events: asyncio.Queue[AgentEvent] = asyncio.Queue(maxsize=EVENT_BUFFER)
    run = asyncio.create_task(runtime.send(task, events), name="agent-send")
    exit_code = 0
    while True:
        get = asyncio.create_task(events.get())
        done, _ = await asyncio.wait({get, run}, return_when=asyncio.FIRST_COMPLETED)
        if get not in done:
            get.cancel()
            while not events.empty():
                _print_event(events.get_nowait())
            break
        event = get.result()
        _print_event(event)
        if event.type is EventType.CONFIRM_REQUEST:
            if assume_yes:
                approved = True
            else:
                answer = await asyncio.to_thread(input, f"Allow {event.tool_name} ({event.tool_args})? [y/N] ")
                approved = answer.strip().lower() in ("y", "yes")
            await runtime.confirmations.put(approved)
        elif event.type is EventType.INPUT_REQUEST:
            line = await asyncio.to_thread(input, f"{event.tool_name} needs input: ")
            await runtime.inputs.put(line)
        if event.done:
            exit_code = 1 if event.type is EventType.ERROR else 0
            break
    await run
    return exit_code


async def run(settings: Settings, task: str, assume_yes: bool) -> int:
    components = await create_components(settings)
    try:
        return await _drive(components["runtime"], task, assume_yes)
    finally:
        await shutdown_components(components)


def main() -> None:
    """Entry point -- parse arguments and settings, run one task."""
    parser = argparse.ArgumentParser(prog="helmsman", description="Run a single agent task headlessly.")
    parser.add_argument("task", help="what the agent should do")
    parser.add_argument("--model", help="model name (overrides HELMSMAN_MODEL)")
    parser.add_argument("--base-url", help="provider base URL (overrides HELMSMAN_API_BASE_URL)")
    parser.add_argument("--quality-gate", action="store_true", help="review the final answer with a Critic")
    parser.add_argument("--yes", action="store_true", help="approve every tool call without asking")
    args = parser.parse_args()

    overrides: dict = {}
    if args.model:
        overrides["model"] = args.model
    if args.base_url:
        overrides["api_base_url"] = args.base_url
    if args.quality_gate:
        overrides["quality_gate_enabled"] = True
    settings = Settings(**overrides)

    logging.basicConfig(
        level=getattr(logging, settings.log_level.upper(), logging.INFO),
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    logger.info("Starting Helmsman: provider=%s model=%s", settings.provider_name, settings.model)

    try:
        sys.exit(asyncio.run(run(settings, args.task, args.yes)))
    except KeyboardInterrupt:
        sys.exit(130)


if __name__ == "__main__":
    main()
