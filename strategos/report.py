"""Rich terminal reports for decisions, plans and executions."""

from __future__ import annotations

import io
import sys

from rich.console import Console
from rich.table import Table

from strategos.planning.executor import ExecutionResult
from strategos.planning.plan import Plan, StepStatus
from strategos.planning.planner import PlanningResult
from strategos.search.engine import DecisionResult


def _make_console() -> Console:
    """Create a Rich Console that works on Windows (force UTF-8)."""
    if sys.platform == "win32" and hasattr(sys.stdout, "buffer"):
        utf8_stdout = io.TextIOWrapper(sys.stdout.buffer, encoding="utf-8", errors="replace")
        return Console(file=utf8_stdout, force_terminal=True)
    return Console()


STATUS_STYLE = {
    StepStatus.PENDING: "grey50",
    StepStatus.READY: "cyan",
    StepStatus.RUNNING: "yellow",
    StepStatus.COMPLETED: "green",
    StepStatus.FAILED: "bold red",
    StepStatus.SKIPPED: "magenta",
}


class Reporter:
    """Prints engine results as Rich tables."""

    def __init__(self, console: Console | None = None):
        self.console = console or _make_console()

    def decision_table(self, result: DecisionResult) -> Table:
        table = Table(title="MCTS decision")
        table.add_column("Action")
        table.add_column("Visits", justify="right")
        table.add_column("Share", justify="right")
        table.add_column("Q", justify="right")
        table.add_column("Prior", justify="right")

        total = max(1, result.visit_count)
        ranked = sorted(result.visit_stats.values(), key=lambda s: s.visits, reverse=True)
        for stats in ranked:
            chosen = stats.action_id == result.selected_action.id
            table.add_row(
                f"[bold green]{stats.action_id}[/bold green]" if chosen else stats.action_id,
                str(stats.visits),
                f"{stats.visits / total:.1%}",
                f"{stats.value:+.3f}",
                f"{stats.prior:.2f}",
            )
        return table

    def print_decision(self, result: DecisionResult) -> None:
        self.console.print(self.decision_table(result))
        self.console.print(
            f"  Selected [bold]{result.selected_action.id}[/bold] "
            f"(confidence {result.confidence:.1%}, {result.iterations} iterations, "
            f"{result.elapsed_ms:.1f}ms, stopped by {result.stopped_by})"
        )
        if result.simulation_faults:
            self.console.print(f"  [yellow]Simulation faults absorbed: {result.simulation_faults}[/yellow]")
        if result.tree_stats:
            ts = result.tree_stats
            self.console.print(
                f"  Tree: {ts.total_nodes} nodes, max depth {ts.max_depth}, {ts.leaf_nodes} leaves"
            )

    def plan_table(self, plan: Plan) -> Table:
        table = Table(title=f"Plan for {plan.root_task_id} (revision {plan.revision_count})")
        table.add_column("#", justify="right")
        table.add_column("Step")
        table.add_column("After")
        table.add_column("Status")
        table.add_column("Attempts", justify="right")

        for index, step in enumerate(plan.linearize(), start=1):
            style = STATUS_STYLE[step.status]
            table.add_row(
                str(index),
                step.id,
                ", ".join(sorted(step.predecessors)) or "-",
                f"[{style}]{step.status.value}[/{style}]",
                str(step.attempts),
            )
        return table

    def print_planning(self, result: PlanningResult) -> None:
        stats = result.statistics
        if result.success and result.plan is not None:
            self.console.print(self.plan_table(result.plan))
            self.console.print(
                f"  Cost {result.plan.total_cost:.1f}, {stats.nodes_explored} nodes explored, "
                f"{stats.backtracks} backtracks, {stats.planning_time_s * 1000:.1f}ms"
            )
        else:
            code = result.error_code.value if result.error_code else "unknown"
            self.console.print(f"  [bold red]PLANNING FAILED[/bold red] ({code}): {result.failure_reason}")

    def print_execution(self, result: ExecutionResult) -> None:
        self.console.print(self.plan_table(result.plan))
        if result.success:
            self.console.print(
                f"\n  [bold green]PLAN COMPLETE[/bold green] in {result.elapsed_s:.3f}s "
                f"({len(result.completed_steps)} steps, {result.replans} replans)"
            )
        else:
            code = result.error_code.value if result.error_code else "unknown"
            self.console.print(f"\n  [bold red]PLAN FAILED[/bold red] ({code}): {result.failure_reason}")
        for failure in result.failures:
            self.console.print(
                f"    {failure.step_id} attempt {failure.attempt}: "
                f"{failure.error} -> {failure.recovery.value}"
            )
