"""CLI for agent-orchestrator: plan, execute, status, configure, and serve commands."""

import argparse
import asyncio
import json
import sys
from pathlib import Path
from typing import Any

from rich.console import Console
from rich.markup import escape

from .config import Config, load_config
from .errors import AgentOrchestratorError
from .logging_config import setup_logging
from .orchestrator.events import EventType, Subscription
from .plans.models import PlanStatus, TaskPlan
from .service import OrchestrationService
from .visualizer import render_plan_progress, render_plan_summary, render_worker_status

STEP_EVENTS = {
	EventType.STEP_STARTED: "[yellow]started[/yellow]",
	EventType.STEP_COMPLETED: "[green]done[/green]",
	EventType.STEP_SKIPPED: "[dim]skipped[/dim]",
}


def _service(args: argparse.Namespace, config: Config) -> OrchestrationService:
	project = getattr(args, "project", None)
	return OrchestrationService(
		app_config=config,
		project_path=Path(project).resolve() if project else config.project_path,
	)


def _fail(message: str) -> None:
	print(f"Error: {message}", file=sys.stderr)
	sys.exit(1)


def _print_plan(plan: TaskPlan, as_json: bool, console: Console) -> None:
	if as_json:
		print(json.dumps(plan.model_dump(mode="json"), indent=2))
		return
	render_plan_progress(plan, console=console)
	render_plan_summary(plan, console=console)


async def _stream_events(sub: Subscription, console: Console) -> None:
	"""Print worker output and step transitions until the subscription closes."""
	async for event in sub:
		if event.type == EventType.WORKER_OUTPUT:
			stream = "err" if event.data.get("is_stderr") else "out"
			console.print(f"[dim]{event.step_id} {stream}|[/dim] {escape(event.message)}")
		elif event.type in STEP_EVENTS:
			detail = f" {escape(event.message)}" if event.message else ""
			console.print(f"[bold]{event.step_id}[/bold] {STEP_EVENTS[event.type]}{detail}")
		elif event.type == EventType.ERROR:
			console.print(f"[red]error[/red] {escape(event.message)}")


def cmd_plan(args: argparse.Namespace) -> None:
	"""Create a plan for a request and print it without running it."""
	config = load_config()
	console = Console()
	overrides: dict[str, Any] = {}
	if args.execution_mode:
		overrides["execution_mode"] = args.execution_mode

	try:
		service = _service(args, config)
		plan = asyncio.run(service.create_plan(args.request, overrides))
	except AgentOrchestratorError as e:
		_fail(str(e))
		return
	_print_plan(plan, args.json, console)


async def _execute(service: OrchestrationService, request: str, overrides: dict, console: Console, stream: bool) -> TaskPlan:
	sub = service.subscribe() if stream else None
	printer = asyncio.create_task(_stream_events(sub, console)) if sub else None
	try:
		return await service.execute(request, overrides)
	finally:
		if sub is not None:
			sub.close()
			await printer
		await service.manager.stop()


def cmd_execute(args: argparse.Namespace) -> None:
	"""Plan a request and run it, streaming worker output."""
	config = load_config()
	console = Console(stderr=args.json)
	overrides: dict[str, Any] = {"mode": args.mode}
	if args.instances:
		overrides["instances"] = args.instances
	if args.worker:
		overrides["workers"] = args.worker
	if args.execution_mode:
		overrides["execution_mode"] = args.execution_mode

	try:
		service = _service(args, config)
		plan = asyncio.run(_execute(service, args.request, overrides, console, stream=not args.json))
	except AgentOrchestratorError as e:
		_fail(str(e))
		return
	except KeyboardInterrupt:
		_fail("Interrupted")
		return

	_print_plan(plan, args.json, console)
	if plan.status == PlanStatus.FAILED:
		sys.exit(1)


def cmd_status(args: argparse.Namespace) -> None:
	"""Show settings and pool limits."""
	config = load_config()
	try:
		status = _service(args, config).status()
	except AgentOrchestratorError as e:
		_fail(str(e))
		return

	if args.json:
		print(json.dumps(status, indent=2, default=str))
		return

	console = Console()
	settings = status["config"]
	console.print(f"[bold]Config file:[/bold] {config.config_file}")
	console.print(
		f"[bold]Workers:[/bold] {', '.join(settings['enabled_workers'])} "
		f"(default {settings['default_worker']}, strategy {settings['worker_strategy']})"
	)
	console.print(
		f"[bold]Mode:[/bold] {settings['execution_mode']}  "
		f"[bold]Max workers:[/bold] {settings['max_workers']}  "
		f"[bold]Depth:[/bold] {status['depth']}/{status['max_depth']}"
	)
	render_worker_status(status, console=console)


def cmd_configure(args: argparse.Namespace) -> None:
	"""Update and save orchestration settings."""
	config = load_config()
	options: dict[str, Any] = {"save_config": True}
	if args.instances is not None:
		options["max_instances"] = args.instances
	if args.strategy:
		options["strategy"] = args.strategy
	if args.start_delay_ms is not None:
		options["start_delay_ms"] = args.start_delay_ms
	if args.workers:
		options["enabled_workers"] = [w.strip() for w in args.workers.split(",") if w.strip()]
	if args.default_worker:
		options["default_worker"] = args.default_worker
	if args.execution_mode:
		options["execution_mode"] = args.execution_mode
	if args.auto_roles is not None:
		options["auto_roles"] = args.auto_roles
	if args.hierarchical is not None:
		options["hierarchical"] = args.hierarchical

	try:
		updated = _service(args, config).configure(options)
	except AgentOrchestratorError as e:
		_fail(str(e))
		return

	if args.json:
		print(json.dumps(updated.to_dict(), indent=2))
	else:
		print(f"Saved settings to {config.config_file}")
		for key, val in updated.to_dict().items():
			if not isinstance(val, dict):
				print(f"  {key}: {val}")


def cmd_serve(args: argparse.Namespace) -> None:
	"""Run the MCP server (stdio transport)."""
	from .server import mcp
	mcp.run()


def main() -> None:
	"""CLI entry point."""
	parser = argparse.ArgumentParser(
		prog="agent-orchestrator",
		description="Plan coding requests and run them across parallel CLI agents",
	)
	parser.add_argument("--log-level", type=str, default=None, help="DEBUG, INFO, WARNING or ERROR")
	subparsers = parser.add_subparsers(dest="command")

	modes = ["direct", "subagent", "orchestration"]

	# plan
	plan_parser = subparsers.add_parser("plan", help="Create a plan without running it")
	plan_parser.add_argument("request", help="What needs to be done")
	plan_parser.add_argument("--execution-mode", choices=modes, default=None)
	plan_parser.add_argument("--project", type=str, default=None, help="Project path (default: cwd)")
	plan_parser.add_argument("--json", action="store_true", help="Print the plan as JSON")
	plan_parser.set_defaults(func=cmd_plan)

	# execute
	exec_parser = subparsers.add_parser("execute", help="Plan and run a request")
	exec_parser.add_argument("request", help="What needs to be done")
	exec_parser.add_argument("--mode", choices=["plan", "act"], default="act", help="'plan' stops at approval")
	exec_parser.add_argument("--instances", type=int, default=None, help="Maximum concurrent workers")
	exec_parser.add_argument(
		"--worker",
		action="append",
		default=None,
		help="Force a worker for this run (repeatable: claude, gemini, self, copilot)",
	)
	exec_parser.add_argument("--execution-mode", choices=modes, default=None)
	exec_parser.add_argument("--project", type=str, default=None, help="Project path (default: cwd)")
	exec_parser.add_argument("--json", action="store_true", help="Print the final plan as JSON")
	exec_parser.set_defaults(func=cmd_execute)

	# status
	status_parser = subparsers.add_parser("status", help="Show settings and worker status")
	status_parser.add_argument("--json", action="store_true", help="Print status as JSON")
	status_parser.set_defaults(func=cmd_status)

	# configure
	conf_parser = subparsers.add_parser("configure", help="Update and save settings")
	conf_parser.add_argument("--instances", type=int, default=None, help="Maximum concurrent workers")
	conf_parser.add_argument(
		"--strategy",
		choices=["single", "round-robin", "task-based", "load-balanced"],
		default=None,
	)
	conf_parser.add_argument("--start-delay-ms", type=int, default=None, help="Minimum gap between launches")
	conf_parser.add_argument("--workers", type=str, default=None, help="Comma-separated enabled workers")
	conf_parser.add_argument("--default-worker", type=str, default=None)
	conf_parser.add_argument("--execution-mode", choices=modes, default=None)
	conf_parser.add_argument("--auto-roles", action=argparse.BooleanOptionalAction, default=None)
	conf_parser.add_argument("--hierarchical", action=argparse.BooleanOptionalAction, default=None)
	conf_parser.add_argument("--json", action="store_true", help="Print the new settings as JSON")
	conf_parser.set_defaults(func=cmd_configure)

	# serve
	serve_parser = subparsers.add_parser("serve", help="Run MCP server (stdio)")
	serve_parser.set_defaults(func=cmd_serve)

	args = parser.parse_args()

	if not args.command:
		parser.print_help()
		sys.exit(1)

	setup_logging(level=args.log_level, log_dir=load_config().log_dir, console=args.command != "serve")
	args.func(args)
