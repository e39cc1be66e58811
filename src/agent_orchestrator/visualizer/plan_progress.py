"""Rich views for plan progress visualization."""

from typing import Optional

from rich.console import Console
from rich.panel import Panel
from rich.tree import Tree

from ..plans.models import PlanStatus, StepStatus, TaskPlan
from .utils import format_duration, format_timestamp, truncate

STEP_STYLES = {
	StepStatus.PENDING: "dim",
	StepStatus.RUNNING: "yellow",
	StepStatus.COMPLETED: "green",
	StepStatus.FAILED: "red",
	StepStatus.SKIPPED: "dim",
}

PLAN_STYLES = {
	PlanStatus.COMPLETED: "green",
	PlanStatus.FAILED: "red",
	PlanStatus.REJECTED: "red",
	PlanStatus.RUNNING: "yellow",
}


def build_plan_tree(plan: TaskPlan) -> Tree:
	"""Plan as a Rich Tree: one branch per step, dependencies and errors nested."""
	progress = plan.progress()
	tree = Tree(
		f"[bold]{plan.title or truncate(plan.request)}[/bold]  "
		f"[dim]({progress['completed']}/{progress['total_steps']} steps, "
		f"{progress['percent_complete']:.0f}%, {plan.mode.value})[/dim]"
	)

	for step in plan.steps:
		style = STEP_STYLES[step.status]
		worker = f" [cyan]\\[{step.preferred_worker.value}][/cyan]" if step.preferred_worker else ""
		label = step.active_description if step.status == StepStatus.RUNNING else step.description
		duration = f" [dim]{format_duration(step.duration_ms / 1000)}[/dim]" if step.duration_ms else ""
		branch = tree.add(
			f"[{style}]{step.status_icon}[/{style}] [bold]{step.id}[/bold] {label}{worker}"
			f" [dim]({step.complexity.value})[/dim]{duration}"
		)
		if step.dependencies:
			branch.add(f"[dim]after {', '.join(step.dependencies)}[/dim]")
		if step.error:
			branch.add(f"[red]{truncate(step.error, 100)}[/red]")

	return tree


def render_plan_progress(plan: TaskPlan, console: Optional[Console] = None) -> None:
	"""Render a plan as a Rich Tree with its steps."""
	console = console or Console()
	console.print(build_plan_tree(plan))


def render_plan_summary(plan: TaskPlan, console: Optional[Console] = None) -> None:
	"""Render a summary panel for a plan."""
	console = console or Console()
	progress = plan.progress()
	style = PLAN_STYLES.get(plan.status, "cyan")

	lines = [
		f"[bold]Request:[/bold] {truncate(plan.request, 100)}",
		f"[bold]Mode:[/bold] {plan.mode.value}",
		f"[bold]Status:[/bold] [{style}]{plan.status.value}[/{style}]",
		f"[bold]Created:[/bold] {format_timestamp(plan.created_at)}",
		"",
		f"[bold]Progress:[/bold] {plan.summary} ({progress['percent_complete']:.0f}%)",
	]
	if plan.rejection_reason:
		lines.extend(["", f"[bold]Rejected:[/bold] {plan.rejection_reason}"])

	failed = [s for s in plan.steps if s.status == StepStatus.FAILED]
	if failed:
		lines.append("")
		lines.append("[bold]Failures:[/bold]")
		for step in failed:
			lines.append(f"  - {step.id}: {truncate(step.error, 80)}")

	console.print(Panel("\n".join(lines), title=f"Plan: {plan.id}", border_style=style))
