"""In-memory collaborators shared by the test suite."""

import asyncio
from collections import Counter
from typing import Any, Dict, List, Optional

from workflow_mcp_server.cache import ToolDescriptor

JIRA_TOOLS = [
    {
        "name": "jira_search",
        "description": "Search Jira issues with JQL",
        "inputSchema": {
            "type": "object",
            "properties": {
                "jql": {"type": "string"},
                "limit": {"type": "integer", "minimum": 1, "maximum": 50},
            },
            "required": ["jql"],
        },
    },
    {
        "name": "jira_get_issue",
        "description": "Fetch one Jira issue by key",
        "inputSchema": {
            "type": "object",
            "properties": {"key": {"type": "string"}},
            "required": ["key"],
        },
    },
    {
        "name": "confluence_search",
        "description": "Search Confluence pages",
        "inputSchema": {"type": "object", "properties": {"query": {"type": "string"}}},
    },
]


class FakeRuntime:
    """In-memory stand-in for the remote-call primitive."""

    def __init__(self, tools: Optional[Dict[str, List[Dict[str, Any]]]] = None):
        self.tools: Dict[str, List[Dict[str, Any]]] = tools or {}
        self.responses: Dict[str, Any] = {}
        self.list_errors: Dict[str, Exception] = {}
        self.call_errors: Dict[str, Exception] = {}
        self.list_calls: Counter = Counter()
        self.calls: List[tuple] = []
        self.list_delay = 0.0

    async def list_tools(self, alias: str, include_schema: bool = True) -> List[ToolDescriptor]:
        self.list_calls[alias] += 1
        if self.list_delay:
            await asyncio.sleep(self.list_delay)
        if alias in self.list_errors:
            raise self.list_errors[alias]
        return [ToolDescriptor.model_validate(tool) for tool in self.tools.get(alias, [])]

    async def call_tool(self, alias: str, tool: str, args: Optional[Dict[str, Any]] = None) -> Any:
        key = f"{alias}:{tool}"
        self.calls.append((alias, tool, args))
        if key in self.call_errors:
            raise self.call_errors[key]
        response = self.responses.get(
            key, {"content": [{"type": "text", "text": f"{key} ok"}]}
        )
        if callable(response):
            return response(args)
        return response


class FakeClock:
    """Controllable clock returning seconds, like ``time.time``."""

    def __init__(self, start: float = 1_700_000_000.0):
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance_ms(self, ms: float) -> None:
        self.now += ms / 1000


class RecordingHost:
    """``ToolHost`` that keeps registrations for inspection."""

    def __init__(self):
        self.tools: Dict[str, Dict[str, Any]] = {}
        self.order: List[str] = []

    def add_workflow_tool(self, name, description, parameters_schema, handler) -> None:
        self.tools[name] = {
            "description": description,
            "schema": parameters_schema,
            "handler": handler,
        }
        self.order.append(name)

    async def call(self, name: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return await self.tools[name]["handler"](params or {})


def result_text(result: Dict[str, Any]) -> str:
    return "\n".join(item.get("text", "") for item in result.get("content", []))


class MemoryPersistence:
    """Cache persistence adapter holding the snapshot in memory."""

    def __init__(self, snapshot=None, fail_save=False):
        self.snapshot = snapshot
        self.saved = []
        self.fail_save = fail_save
        self.loads = 0

    async def load(self):
        self.loads += 1
        return self.snapshot

    async def save(self, snapshot):
        if self.fail_save:
            raise OSError("disk full")
        self.saved.append(snapshot)
