"""Rich views for live worker status."""

from typing import Optional

from rich.console import Console
from rich.table import Table

from .utils import format_duration, truncate

STATE_STYLES = {
	"starting": "cyan",
	"running": "yellow",
	"completed": "green",
	"failed": "red",
	"cancelled": "dim",
}


def build_worker_table(status: dict) -> Table:
	"""Table of worker records from a manager/service status snapshot."""
	table = Table(title=f"Workers ({status.get('active', 0)} active)")
	table.add_column("Worker", style="cyan")
	table.add_column("Step")
	table.add_column("Kind")
	table.add_column("State", justify="center")
	table.add_column("Elapsed", justify="right")
	table.add_column("Exit", justify="right")
	table.add_column("Last Output")

	for w in status.get("workers", []):
		style = STATE_STYLES.get(w["state"], "white")
		exit_code = w.get("exit_code")
		table.add_row(
			w["worker_id"],
			w["step_id"],
			w["kind"],
			f"[{style}]{w['state']}[/{style}]",
			format_duration(w.get("elapsed_seconds")),
			"" if exit_code is None else str(exit_code),
			truncate(w.get("error") or w.get("last_output"), 50),
		)
	return table


def render_worker_status(status: dict, console: Optional[Console] = None) -> None:
	"""Render worker records plus pool usage."""
	console = console or Console()

	if not status.get("workers"):
		console.print("[dim]No workers have run yet.[/dim]")
	else:
		console.print(build_worker_table(status))

	pool = status.get("pool")
	if pool:
		running = ", ".join(f"{k}={v}" for k, v in pool["running_by_kind"].items()) or "none"
		console.print(
			f"[bold]Pool:[/bold] {pool['running_total']}/{pool['max_workers']} running "
			f"({running}), strategy {pool['strategy']}, "
			f"start delay {pool['start_delay_ms']}ms"
		)
	if status.get("dropped_events"):
		console.print(f"[dim]{status['dropped_events']} event(s) dropped for slow subscribers[/dim]")
