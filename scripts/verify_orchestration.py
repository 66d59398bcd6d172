#!/usr/bin/env python3
"""Verification script for the orchestration engine.

Runs every workflow pattern offline against the scripted provider:
- Run Engine: echo tool round trip
- Workflow Engine: sequential pipeline, parallel fan-out, feedback loop

Usage:
    python scripts/verify_orchestration.py
"""

import asyncio
import json
import sys
from pathlib import Path

# Add project root to path
project_root = Path(__file__).parent.parent
sys.path.insert(0, str(project_root))

from agentflow.core.config import Settings, configure_logging  # noqa: E402
from agentflow.services.agents import AgentConfig, AgentRegistry  # noqa: E402
from agentflow.services.capabilities import (  # noqa: E402
    CapabilityRegistry,
    register_builtin_capabilities,
)
from agentflow.services.providers import (  # noqa: E402
    PROVIDER_SCRIPTED,
    ScriptStep,
    resolve_provider,
)
from agentflow.services.runs import ToolCall  # noqa: E402
from agentflow.services.runs.engine import RunEngine  # noqa: E402
from agentflow.services.threads import NewMessage, ThreadStore  # noqa: E402
from agentflow.services.workflows import (  # noqa: E402
    ParallelTask,
    PipelineStep,
    WorkflowEngine,
)


def build_engines():
    """Wire registries, store, scripted provider and engines together."""
    settings = Settings(run_poll_interval=0.05, run_timeout=10.0)
    capabilities = register_builtin_capabilities(CapabilityRegistry())
    agents = AgentRegistry(capabilities, settings=settings)
    threads = ThreadStore()
    provider = resolve_provider(PROVIDER_SCRIPTED)
    runs = RunEngine(agents, capabilities, threads, provider, settings=settings)
    workflows = WorkflowEngine(agents, threads, runs, settings=settings)
    return agents, threads, provider, runs, workflows


async def check_echo(agents, threads, provider, runs):
    print("\n🔧 Checking tool round trip...")
    assistant = agents.register(AgentConfig(
        name="assistant",
        instructions="Use the echo tool when asked.",
        capabilities=["echo"],
    ))
    provider.add_turn(
        "assistant",
        ScriptStep.call_tools(ToolCall("call_1", "echo", '{"msg": "ping"}')),
        ScriptStep.reply(lambda run: run.tool_outputs[-1][0].output),
    )

    thread_id = threads.create()
    await threads.append(thread_id, NewMessage.user("Echo ping please"))
    run_id = await runs.start(assistant, thread_id)
    snapshot = await runs.await_completion(
        run_id,
        on_status_change=lambda e: print(f"  ↪ {e.previous.value} -> {e.status.value}"),
    )

    answer = snapshot.last_agent_message().content
    passed = json.loads(answer) == {"msg": "ping"}
    print(f"  {'✅' if passed else '❌'} Agent answered {answer}")
    return passed


async def check_pipeline(agents, provider, workflows):
    print("\n📋 Checking sequential pipeline...")
    summarizer = agents.register(AgentConfig(name="summarizer", instructions="Summarize."))
    translator = agents.register(AgentConfig(name="translator", instructions="Translate."))

    result = await workflows.run_pipeline(
        [
            PipelineStep(summarizer, "Summarize: Hello world"),
            PipelineStep(translator, lambda prior: f"Translate: {prior[-1]}"),
        ],
        progress_callback=lambda percent, message: print(f"  [{percent:3d}%] {message}"),
    )

    passed = len(result.outputs) == 2 and result.final_output.startswith("[translator]")
    print(f"  {'✅' if passed else '❌'} Final output: {result.final_output}")
    return passed


async def check_parallel(agents, provider, workflows):
    print("\n⚡ Checking parallel fan-out...")
    researcher = agents.register(AgentConfig(name="researcher", instructions="Research."))
    analyst = agents.register(AgentConfig(name="analyst", instructions="Analyze."))
    provider.add_turn("analyst", ScriptStep.fail("simulated outage"))

    results = await workflows.run_parallel([
        ParallelTask(researcher, "Find sources", key="research"),
        ParallelTask(analyst, "Analyze trends", key="analysis"),
    ])

    for key, result in results.items():
        detail = result.output if result.success else result.error
        print(f"  {'✅' if result.success else '⚠️ '} {key}: {detail}")
    return results["research"].success and not results["analysis"].success


async def check_feedback(agents, provider, workflows):
    print("\n🔁 Checking feedback loop...")
    writer = agents.register(AgentConfig(name="writer", instructions="Write haiku."))
    judge = agents.register(AgentConfig(name="judge", instructions="Judge haiku."))
    provider.add_turn("judge", ScriptStep.reply('{"approved": false, "feedback": "Add a season word"}'))
    provider.add_turn("judge", ScriptStep.reply('{"approved": true, "feedback": "Good"}'))

    result = await workflows.run_feedback_loop(writer, judge, "Write a haiku", "5-7-5 syllables")

    passed = result.approved and result.iterations == 2
    print(f"  {'✅' if passed else '❌'} approved={result.approved} after {result.iterations} iteration(s)")
    for index, feedback in enumerate(result.feedback, start=1):
        print(f"     {index}. {feedback}")
    return passed


async def main():
    print("=" * 60)
    print("Orchestration Engine Verification")
    print("=" * 60)

    agents, threads, provider, runs, workflows = build_engines()
    results = [
        await check_echo(agents, threads, provider, runs),
        await check_pipeline(agents, provider, workflows),
        await check_parallel(agents, provider, workflows),
        await check_feedback(agents, provider, workflows),
    ]
    await runs.drain()

    print("\n" + "=" * 60)
    if all(results):
        print("✅ All checks passed!")
        return 0
    print(f"❌ {results.count(False)} check(s) failed")
    return 1


if __name__ == "__main__":
    configure_logging("WARNING")
    sys.exit(asyncio.run(main()))
