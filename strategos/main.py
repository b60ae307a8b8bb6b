"""Demo entry point: one MCTS decision, then an HTN plan executed end to end."""

from __future__ import annotations

import asyncio
import logging
import random
import sys

from strategos.config import MCTSConfig, build_config
from strategos.core.actions import Action, DecisionState
from strategos.core.world_state import Effect, WorldState
from strategos.planning.executor import ExecutionContext
from strategos.planning.factory import HierarchicalPlannerFactory
from strategos.planning.task import CompoundTask, Method, PrimitiveTask, RecoveryPolicy, Subtask
from strategos.report import Reporter
from strategos.search.engine import MCTSDecisionEngine
from strategos.search.policies import EffectTransitionModel, RandomRolloutPolicy


def build_route_problem(rng: random.Random) -> tuple[EffectTransitionModel, list[Action]]:
    """Three delivery routes; the scenic one is slow, the highway is risky."""
    actions = [
        Action("highway", effects=(Effect.increment("hours", 2), Effect.increment("risk", 3))),
        Action("backroad", effects=(Effect.increment("hours", 3), Effect.increment("risk", 1))),
        Action("scenic", effects=(Effect.increment("hours", 5),)),
    ]

    def reward(world: WorldState) -> float:
        delay_penalty = world.get("hours", 0) / 6
        accident = rng.random() < world.get("risk", 0) / 10
        return (-1.0 if accident else 1.0) - delay_penalty

    model = EffectTransitionModel(actions, max_depth=1, reward_fn=reward)
    return model, actions


def build_deploy_task(rng: random.Random, flaky_rate: float) -> CompoundTask:
    """Fetch, then build and lint in parallel, then publish (with a fallback)."""

    async def succeed(context: ExecutionContext) -> bool:
        await asyncio.sleep(0.01)
        return True

    async def flaky_upload(context: ExecutionContext) -> dict:
        await asyncio.sleep(0.01)
        if rng.random() < flaky_rate:
            return {"success": False, "error": "registry unavailable"}
        return {"success": True, "data": "uploaded"}

    fetch = PrimitiveTask("fetch", execute=succeed, effects=(Effect.set("sources", True),))
    build = PrimitiveTask(
        "build",
        precondition=lambda s: s.get("sources", False),
        execute=succeed,
        effects=(Effect.set("artifact", True),),
    )
    lint = PrimitiveTask("lint", execute=succeed, idempotent=True, max_retries=2, retry_backoff_s=0.01)
    upload = PrimitiveTask(
        "upload",
        precondition=lambda s: s.get("artifact", False),
        execute=flaky_upload,
        recovery=RecoveryPolicy.REPLAN,
    )
    mirror = PrimitiveTask(
        "mirror", precondition=lambda s: s.get("artifact", False), execute=succeed, cost=3.0
    )
    publish = CompoundTask(
        "publish",
        methods=(
            Method("via-registry", subtasks=(upload,), priority=1),
            Method("via-mirror", subtasks=(mirror,)),
        ),
    )
    return CompoundTask(
        "deploy",
        methods=(
            Method(
                "standard",
                subtasks=(fetch, Subtask(build), Subtask(lint, parallel_with=("build",)), publish),
            ),
        ),
    )


async def run(iterations: int, seed: int) -> bool:
    rng = random.Random(seed)
    reporter = Reporter()

    reporter.console.print("\n  [bold cyan]=== strategos: route decision ===[/bold cyan]")
    model, actions = build_route_problem(rng)
    config = build_config(MCTSConfig, max_iterations=iterations, seed=seed, use_rave=True)
    engine = MCTSDecisionEngine(RandomRolloutPolicy(model, rng=rng), config, transition_model=model)
    decision = await engine.decide(DecisionState.initial({"hours": 0, "risk": 0}), actions)
    reporter.print_decision(decision)

    reporter.console.print("\n  [bold cyan]=== strategos: deploy plan ===[/bold cyan]")
    planner = HierarchicalPlannerFactory.create_fast()
    root = build_deploy_task(rng, flaky_rate=0.5)
    planning = await planner.plan(root, WorldState())
    reporter.print_planning(planning)
    if not planning.success or planning.plan is None:
        return False

    execution = await planner.execute_plan(
        planning.plan, ExecutionContext(available_resources={"concurrency": 2})
    )
    reporter.print_execution(execution)
    return execution.success


def main():
    """Run the demo."""
    iterations = 500
    seed = 42
    verbose = False

    for arg in sys.argv[1:]:
        if arg.startswith("--iterations="):
            iterations = int(arg.split("=")[1])
        elif arg.startswith("--seed="):
            seed = int(arg.split("=")[1])
        elif arg == "--verbose":
            verbose = True
        elif arg == "--help" or arg == "-h":
            print("strategos v0.1.0")
            print()
            print("Usage: python -m strategos [OPTIONS]")
            print()
            print("Options:")
            print("  --iterations=N        MCTS iterations for the demo decision (default: 500)")
            print("  --seed=N              Random seed (default: 42)")
            print("  --verbose             Debug logging")
            print()
            print("Environment variables (override any setting):")
            print("  STRATEGOS_MCTS_*, STRATEGOS_PLANNER_*, STRATEGOS_EXECUTOR_*")
            sys.exit(0)

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(name)s %(levelname)s %(message)s",
    )
    ok = asyncio.run(run(iterations, seed))
    sys.exit(0 if ok else 1)


if __name__ == "__main__":
    main()
