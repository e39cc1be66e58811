"""agent-orchestrator: task planning and multi-worker orchestration for coding agents."""
