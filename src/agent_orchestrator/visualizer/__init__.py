"""Visualizer package - Rich terminal views for plans and workers."""

from .plan_progress import build_plan_tree, render_plan_progress, render_plan_summary
from .worker_status import build_worker_table, render_worker_status

__all__ = [
	"build_plan_tree",
	"render_plan_progress",
	"render_plan_summary",
	"build_worker_table",
	"render_worker_status",
]
