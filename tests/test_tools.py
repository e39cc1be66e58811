"""Tests for the orchestrator_* MCP tools."""

import json
from pathlib import Path
from unittest.mock import MagicMock, patch

import pytest

from agent_orchestrator.config import Config
from agent_orchestrator.tools import register_all_tools
from agent_orchestrator.tools.orchestration import register_orchestration_tools
from agent_orchestrator.service import OrchestrationService

from .helpers import capture_tools, python_config

REQUEST = "Add a login page and then write tests for it"


@pytest.fixture
def service(tmp_path: Path) -> OrchestrationService:
	return OrchestrationService(
		config=python_config(),
		project_path=tmp_path,
		app_config=Config(config_dir=tmp_path / "config", data_dir=tmp_path / "data"),
		depth=0,
	)


@pytest.fixture
def tools(service: OrchestrationService) -> dict:
	return capture_tools(
		MagicMock(),
		lambda mcp, config: register_orchestration_tools(mcp, config, service=service),
	)


def test_all_tools_registered():
	tools = capture_tools(MagicMock(), register_all_tools)
	assert set(tools) == {
		"orchestrator_configure",
		"orchestrator_plan",
		"orchestrator_approve",
		"orchestrator_execute",
		"orchestrator_status",
		"orchestrator_stop",
	}


def test_service_created_lazily(tmp_path: Path):
	with patch("agent_orchestrator.tools.orchestration.get_service") as get_service:
		capture_tools(MagicMock(), register_orchestration_tools)
		get_service.assert_not_called()


class TestPlanAndExecute:
	@pytest.mark.asyncio
	async def test_plan_then_approve(self, tools: dict):
		planned = json.loads(await tools["orchestrator_plan"](REQUEST))
		assert planned["success"] is True
		assert planned["status"] == "awaiting_approval"
		assert [s["id"] for s in planned["steps"]] == ["step-1", "step-2"]
		assert planned["steps"][1]["dependencies"] == ["step-1"]
		assert "# " in planned["markdown"]

		approved = json.loads(await tools["orchestrator_approve"](planned["plan_id"]))
		assert approved["status"] == "completed"
		assert approved["progress"]["completed"] == 2

	@pytest.mark.asyncio
	async def test_reject(self, tools: dict):
		planned = json.loads(await tools["orchestrator_plan"](REQUEST))
		rejected = json.loads(await tools["orchestrator_approve"](planned["plan_id"], approve=False, reason="later"))
		assert rejected["status"] == "rejected"

	@pytest.mark.asyncio
	async def test_execute_act(self, tools: dict):
		result = json.loads(await tools["orchestrator_execute"](REQUEST, execution_mode="direct"))
		assert result["success"] is True
		assert result["mode"] == "direct"
		assert result["status"] == "completed"

	@pytest.mark.asyncio
	async def test_execute_plan_mode(self, tools: dict):
		result = json.loads(await tools["orchestrator_execute"](REQUEST, mode="plan"))
		assert result["status"] == "awaiting_approval"

	@pytest.mark.asyncio
	async def test_errors_are_reported(self, tools: dict):
		result = json.loads(await tools["orchestrator_execute"](REQUEST, workers="cursor"))
		assert result["success"] is False
		assert result["error_type"] == "ConfigurationError"
		assert "cursor" in result["error"]

		missing = json.loads(await tools["orchestrator_approve"]("plan-missing"))
		assert missing["error_type"] == "PlanStateError"

		empty = json.loads(await tools["orchestrator_plan"]("  "))
		assert empty["error_type"] == "PlanValidationError"


class TestConfigureStatusStop:
	@pytest.mark.asyncio
	async def test_configure(self, tools: dict, service: OrchestrationService):
		result = json.loads(await tools["orchestrator_configure"](
			max_instances=4,
			strategy="load-balanced",
			workers="claude,gemini",
			start_delay_ms=0,
		))
		assert result["success"] is True
		assert result["config"]["max_workers"] == 4
		assert result["config"]["enabled_workers"] == ["claude", "gemini"]
		assert service.config.worker_strategy.value == "load-balanced"

	@pytest.mark.asyncio
	async def test_configure_invalid(self, tools: dict):
		result = json.loads(await tools["orchestrator_configure"](strategy="random"))
		assert result["success"] is False
		assert result["error_type"] == "ConfigurationError"

	@pytest.mark.asyncio
	async def test_configure_saves(self, tools: dict, service: OrchestrationService):
		await tools["orchestrator_configure"](hierarchical=True, save_config=True)
		assert service.app_config.config_file.exists()

	@pytest.mark.asyncio
	async def test_status(self, tools: dict):
		await tools["orchestrator_execute"](REQUEST)
		status = json.loads(await tools["orchestrator_status"]())
		assert status["success"] is True
		assert status["depth"] == 0
		assert len(status["workers"]) == 2
		assert status["plans"][0]["status"] == "completed"

	@pytest.mark.asyncio
	async def test_stop(self, tools: dict):
		result = json.loads(await tools["orchestrator_stop"](force=True))
		assert result == {"success": True, "cancelled_plans": [], "stopped_workers": []}
