"""Plan repair: re-decompose the unexecuted subtree around a failed step."""

from __future__ import annotations

import logging
from dataclasses import replace
from typing import TYPE_CHECKING

from strategos.core.world_state import WorldState
from strategos.errors import ReplanExhaustedError
from strategos.planning.plan import DecompositionNode, Plan, PlanStep, StepStatus
from strategos.planning.task import CompoundTask

if TYPE_CHECKING:
    from strategos.planning.planner import HTNPlanner

logger = logging.getLogger(__name__)

# Steps in these states have had (or are having) real effects and are never replaced
_COMMITTED = frozenset({StepStatus.COMPLETED, StepStatus.RUNNING})


class Replanner:
    """Repairs a plan after a step failure.

    Starting from the failed step's nearest compound ancestor and walking up,
    the first ancestor whose subtree has no committed step is re-planned from
    the current WorldState. Every method that ancestor used in earlier
    revisions is excluded, so a failed method is never tried twice. The new
    fragment is spliced into a copy of the plan in place of that subtree.
    Repairs leave ``planner.statistics`` untouched.

    Args:
        planner: Planner used to decompose the replacement subtree
        max_replans: Repairs allowed per plan execution
    """

    def __init__(self, planner: HTNPlanner, max_replans: int = 3):
        self.planner = planner
        self.max_replans = max_replans

    async def repair(self, plan: Plan, failed_step_id: str, state: WorldState) -> Plan:
        """Return a new plan that routes around ``failed_step_id``.

        Raises:
            ReplanExhaustedError: If no ancestor can be re-decomposed
        """
        if plan.decomposition is None or failed_step_id not in plan.steps:
            raise ReplanExhaustedError(f"Cannot locate step '{failed_step_id}' in the plan")

        step = plan.steps[failed_step_id]
        attempts: list[str] = []
        for node_id in reversed(step.path[:-1]):
            node = plan.decomposition.find(node_id)
            if node is None or not isinstance(node.task, CompoundTask):
                continue
            subtree = node.step_ids()
            if any(plan.steps[s].status in _COMMITTED for s in subtree if s in plan.steps):
                # Every higher ancestor contains this subtree too
                break

            excluded = set(node.failed_methods)
            if node.method_id:
                excluded.add(node.method_id)
            prefix = f"{node.id}~r{plan.revision_count + 1}"
            result = await self.planner.plan(
                node.task,
                state,
                excluded_methods=excluded,
                id_prefix=prefix,
                record_statistics=False,
            )
            attempts.append(f"{node.id}: {result.failure_reason or 'ok'}")
            if result.success and result.plan is not None:
                logger.info(
                    f"Repaired '{node.id}' with {len(result.plan)} new steps "
                    f"(excluded methods {sorted(excluded)})"
                )
                ancestors = step.path[: step.path.index(node.id)]
                return self._splice(plan, node, result.plan, ancestors, frozenset(excluded))

        raise ReplanExhaustedError(
            f"No repair for step '{failed_step_id}'"
            + (f" (tried {'; '.join(attempts)})" if attempts else "")
        )

    @staticmethod
    def _splice(
        plan: Plan,
        node: DecompositionNode,
        fragment: Plan,
        ancestors: tuple[str, ...],
        failed_methods: frozenset[str],
    ) -> Plan:
        """Copy of ``plan`` with ``node``'s steps replaced by ``fragment``'s."""
        new_plan = plan.copy()
        new_plan.revision_count = plan.revision_count + 1
        removed = set(node.step_ids()) & set(plan.steps)

        external_preds: set[str] = set()
        external_succs: set[str] = set()
        for step_id in removed:
            old = plan.steps[step_id]
            external_preds |= old.predecessors - removed
            external_succs |= old.successors - removed
        for step_id in removed:
            del new_plan.steps[step_id]
        for step in new_plan.steps.values():
            step.predecessors -= removed
            step.successors -= removed

        # Keep declaration order: new steps take the slot of the replaced subtree
        base = min((plan.steps[s].order for s in removed), default=len(plan.steps))
        shift = len(fragment.steps)
        for step in new_plan.steps.values():
            if step.order >= base:
                step.order += shift

        added = {}
        for offset, frag_step in enumerate(sorted(fragment.steps.values(), key=lambda s: s.order)):
            copy = PlanStep(
                id=frag_step.id,
                task=frag_step.task,
                predecessors=set(frag_step.predecessors),
                successors=set(frag_step.successors),
                order=base + offset,
                path=ancestors + frag_step.path,
            )
            added[copy.id] = copy
        new_plan.steps.update(added)

        entries = [s for s in added.values() if not s.predecessors]
        exits = [s for s in added.values() if not s.successors]
        if added:
            for pred in external_preds:
                for entry in entries:
                    entry.predecessors.add(pred)
                    new_plan.steps[pred].successors.add(entry.id)
            for succ in external_succs:
                for exit_step in exits:
                    exit_step.successors.add(succ)
                    new_plan.steps[succ].predecessors.add(exit_step.id)
        else:
            # Empty repair: bridge the gap directly
            for pred in external_preds:
                for succ in external_succs:
                    new_plan.steps[pred].successors.add(succ)
                    new_plan.steps[succ].predecessors.add(pred)

        if plan.decomposition is not None and fragment.decomposition is not None:
            # The replacement remembers every method that already failed for this task
            new_root = replace(fragment.decomposition, failed_methods=failed_methods)
            new_plan.decomposition = plan.decomposition.replace(node.id, new_root)
        new_plan.validate()
        return new_plan
