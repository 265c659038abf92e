"""Test fixtures and configuration."""

import json
import os
from pathlib import Path
from typing import Any, Dict, Optional

import pytest

from fakes import JIRA_TOOLS, FakeClock, FakeRuntime, RecordingHost
from workflow_mcp_server.cache import ToolCache


@pytest.fixture(scope="session", autouse=True)
def test_environment():
    """Set up test environment."""
    # Ensure we're in the right directory
    original_cwd = os.getcwd()
    repo_root = Path(__file__).parent.parent
    os.chdir(repo_root)

    yield

    # Cleanup
    os.chdir(original_cwd)


@pytest.fixture
def runtime():
    """Fake runtime with an 'atlassian' alias exposing Jira/Confluence tools."""
    return FakeRuntime({"atlassian": [dict(tool) for tool in JIRA_TOOLS]})


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def cache(runtime, clock):
    return ToolCache(runtime, ttl_ms=60_000, clock=clock)


@pytest.fixture
def host():
    return RecordingHost()


@pytest.fixture
def write_servers(tmp_path):
    """Write a servers.json into ``tmp_path`` and return the directory."""

    def _write(servers: Dict[str, Any], directory: Optional[Path] = None) -> Path:
        target = directory or tmp_path
        target.mkdir(parents=True, exist_ok=True)
        (target / "servers.json").write_text(json.dumps({"servers": servers}))
        return target

    return _write
