"""agent-orchestrator MCP server."""

from mcp.server.fastmcp import FastMCP

from .config import load_config
from .logging_config import setup_logging
from .tools import register_all_tools

mcp = FastMCP("agent-orchestrator")
config = load_config()
setup_logging(log_dir=config.log_dir, console=False)
register_all_tools(mcp, config)
