"""Protocol host adapter: exposes dispatcher handlers as fastmcp tools."""

import json
import logging
from contextvars import ContextVar
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, Dict, List, Optional, Protocol

from fastmcp import FastMCP
from fastmcp.exceptions import ToolError
from fastmcp.tools import Tool
from fastmcp.tools.tool import ToolResult
from mcp.types import (
    AudioContent,
    CallToolRequest,
    CallToolResult,
    EmbeddedResource,
    ImageContent,
    ServerResult,
    TextContent,
)
from pydantic import Field, ValidationError

logger = logging.getLogger(__name__)

ToolHandler = Callable[[Dict[str, Any]], Awaitable[Dict[str, Any]]]

_CONTENT_MODELS = {
    "text": TextContent,
    "image": ImageContent,
    "audio": AudioContent,
    "resource": EmbeddedResource,
}
ContentBlock = Any


@dataclass
class _CallOutcome:
    is_error: bool = False


# Set for the duration of one tools/call request handled through FastMCPToolHost.
_current_outcome: ContextVar[Optional[_CallOutcome]] = ContextVar(
    "workflow_call_outcome", default=None
)


class ToolHost(Protocol):
    """Anything the dispatcher can register workflow tools on."""

    def add_workflow_tool(
        self,
        name: str,
        description: str,
        parameters_schema: Dict[str, Any],
        handler: ToolHandler,
    ) -> None: ...


def to_content_block(item: Any) -> ContentBlock:
    """Convert a wire-shaped content dict into an ``mcp.types`` block."""
    if isinstance(item, (TextContent, ImageContent, AudioContent, EmbeddedResource)):
        return item
    if isinstance(item, dict):
        model = _CONTENT_MODELS.get(item.get("type", ""))
        if model is not None:
            try:
                return model.model_validate(item)
            except ValidationError as e:
                logger.debug(f"Passing malformed {item.get('type')} block as text: {e}")
    text = item if isinstance(item, str) else json.dumps(item, default=str)
    return TextContent(type="text", text=text)


class WorkflowTool(Tool):
    """A fastmcp tool whose schema and behaviour come from a workflow handler.

    Error results keep every content block. The error flag travels through
    ``_current_outcome`` and is applied by the request handler that
    ``FastMCPToolHost`` installs; outside that handler the text blocks are
    raised as a ``ToolError``.
    """

    handler: ToolHandler = Field(exclude=True)

    async def run(self, arguments: Dict[str, Any]) -> ToolResult:
        result = await self.handler(arguments or {})
        blocks: List[ContentBlock] = [
            to_content_block(item) for item in result.get("content") or []
        ]
        if result.get("isError"):
            outcome = _current_outcome.get()
            if outcome is None:
                message = "\n\n".join(
                    block.text for block in blocks if isinstance(block, TextContent)
                )
                raise ToolError(message or f"Tool '{self.name}' failed")
            outcome.is_error = True
        return ToolResult(content=blocks)


def _install_error_passthrough(mcp: FastMCP) -> None:
    """Wrap the server's tools/call handler so error results keep their content."""
    handlers = mcp._mcp_server.request_handlers
    original = handlers.get(CallToolRequest)
    if original is None or getattr(original, "workflow_passthrough", False) is True:
        return

    async def call_tool(request: CallToolRequest) -> ServerResult:
        outcome = _CallOutcome()
        token = _current_outcome.set(outcome)
        try:
            response = await original(request)
        finally:
            _current_outcome.reset(token)
        result = getattr(response, "root", None)
        if outcome.is_error and isinstance(result, CallToolResult):
            return ServerResult(result.model_copy(update={"isError": True}))
        return response

    call_tool.workflow_passthrough = True
    handlers[CallToolRequest] = call_tool


class FastMCPToolHost:
    """``ToolHost`` backed by a ``FastMCP`` server instance."""

    def __init__(self, mcp: FastMCP):
        self.mcp = mcp
        _install_error_passthrough(mcp)

    def add_workflow_tool(
        self,
        name: str,
        description: str,
        parameters_schema: Dict[str, Any],
        handler: ToolHandler,
    ) -> None:
        tool = WorkflowTool(
            name=name,
            description=description,
            parameters=parameters_schema,
            handler=handler,
        )
        self.mcp.add_tool(tool)
        logger.info(f"Registered tool {name}")
