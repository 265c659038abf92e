"""Package initialization for workflow_mcp_server."""

__version__ = "0.1.0"
__author__ = "Workflow MCP Server contributors"
__description__ = "Workflow dispatch and external MCP tool orchestration server"

from .cache import ToolCache
from .config import Config
from .dispatcher import WorkflowDispatcher, register_workflows
from .registry import ServerRegistry

__all__ = [
    "Config",
    "ServerRegistry",
    "ToolCache",
    "WorkflowDispatcher",
    "register_workflows",
]
