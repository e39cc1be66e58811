"""Tests for agent-orchestrator."""
