"""MCP tool registration."""

from mcp.server.fastmcp import FastMCP

from ..config import Config
from .orchestration import register_orchestration_tools


def register_all_tools(mcp: FastMCP, config: Config) -> None:
	"""Register all MCP tools."""
	register_orchestration_tools(mcp, config)
