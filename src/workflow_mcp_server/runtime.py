"""Remote-call primitive used to reach external MCP servers."""

import logging
from typing import Any, Dict, List, Optional, Protocol
from urllib.parse import urlparse

from fastmcp import Client
from fastmcp.client.transports import (
    ClientTransport,
    SSETransport,
    StdioTransport,
    StreamableHttpTransport,
)

from .cache import ToolDescriptor
from .registry import ServerAlias, ServerRegistry

logger = logging.getLogger(__name__)


class RemoteToolRuntime(Protocol):
    """What the cache and pipeline need from a remote server connection."""

    async def list_tools(
        self, alias: str, include_schema: bool = True
    ) -> List[ToolDescriptor]: ...

    async def call_tool(
        self, alias: str, tool: str, args: Optional[Dict[str, Any]] = None
    ) -> Any: ...


class ExternalRuntime:
    """Opens a fastmcp ``Client`` per call against a registry alias."""

    def __init__(self, registry: ServerRegistry):
        self.registry = registry

    def build_transport(self, server: ServerAlias) -> ClientTransport:
        if server.transport == "stdio":
            return StdioTransport(
                command=server.command or "",
                args=list(server.args),
                env=self.registry.child_env(server.name),
                cwd=server.cwd,
            )

        url = server.url or ""
        headers = dict(server.headers) or None
        if urlparse(url).path.rstrip("/").endswith("/sse"):
            return SSETransport(url, headers=headers, auth=server.auth)
        return StreamableHttpTransport(url, headers=headers, auth=server.auth)

    def _client(self, alias: str) -> Client:
        server = self.registry.get(alias)
        timeout = server.timeout_ms / 1000 if server.timeout_ms else None
        return Client(self.build_transport(server), timeout=timeout)

    async def list_tools(
        self, alias: str, include_schema: bool = True
    ) -> List[ToolDescriptor]:
        logger.debug(f"Listing tools on '{alias}'")
        async with self._client(alias) as client:
            tools = await client.list_tools()

        descriptors = []
        for tool in tools:
            data = tool.model_dump(by_alias=True, exclude_none=True, mode="json")
            if not include_schema:
                data.pop("inputSchema", None)
                data.pop("outputSchema", None)
            descriptors.append(ToolDescriptor.model_validate(data))
        return descriptors

    async def call_tool(
        self, alias: str, tool: str, args: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        logger.debug(f"Calling {alias}:{tool}")
        async with self._client(alias) as client:
            result = await client.call_tool_mcp(tool, args or {})
        return result.model_dump(by_alias=True, exclude_none=True, mode="json")
