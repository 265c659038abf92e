"""Main entry point for the Workflow MCP Server."""

import asyncio
import logging
from typing import List, Optional, Sequence

import click
from fastmcp import FastMCP

from .cache import DEFAULT_CACHE_TTL_MS, FileCachePersistence, ToolCache
from .config import Config
from .dispatcher import WorkflowDispatcher
from .host import FastMCPToolHost
from .presets import PresetCatalog
from .registry import ServerRegistry
from .runtime import ExternalRuntime

# Set up logging
logger = logging.getLogger(__name__)


def _configure_logging(log_level: str):
    """Configure logging with the specified level and suppress third-party library noise"""
    logging.basicConfig(
        level=getattr(logging, log_level.upper()),
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        force=True,
    )

    # Set specific levels for noisy third-party libraries
    logging.getLogger("httpx").setLevel(logging.WARNING)
    logging.getLogger("httpcore").setLevel(logging.WARNING)
    logging.getLogger("mcp").setLevel(logging.WARNING)


class WorkflowMCPServer:
    """Serves declared workflows as MCP tools over stdio."""

    def __init__(
        self,
        config_dir: str,
        presets: Sequence[str] = (),
        presets_dir: Optional[str] = None,
        cache_ttl_ms: int = DEFAULT_CACHE_TTL_MS,
        cache_file: Optional[str] = None,
    ):
        self.config_dir = config_dir
        self.preset_catalog = PresetCatalog.load(presets_dir)
        self.config = Config.load(config_dir, presets, self.preset_catalog)
        self.cache_ttl_ms = cache_ttl_ms
        self.cache_file = cache_file

        self.registry: Optional[ServerRegistry] = None
        self.runtime: Optional[ExternalRuntime] = None
        self.cache: Optional[ToolCache] = None
        self.mcp: Optional[FastMCP] = None
        self.dispatcher: Optional[WorkflowDispatcher] = None

    def _load_external(self) -> None:
        if not self.config.referenced_aliases():
            logger.info("No workflow references external servers")
            return
        self.registry = ServerRegistry.load(self.config_dir)
        self.runtime = ExternalRuntime(self.registry)
        persistence = FileCachePersistence(self.cache_file) if self.cache_file else None
        self.cache = ToolCache(
            self.runtime,
            ttl_ms=self.cache_ttl_ms,
            persistence=persistence,
            registry=self.registry,
        )

    async def initialize(self) -> None:
        """Initialize the server components."""
        logger.info("Initializing Workflow MCP Server...")
        self._load_external()

        self.mcp = FastMCP(
            name="Workflow MCP Server",
            instructions=(
                "This server exposes declared workflows as tools. Prompt workflows "
                "return guidance, scripted workflows chain external MCP tools and "
                "proxy workflows forward calls to external MCP servers."
            ),
        )
        self.dispatcher = WorkflowDispatcher(
            FastMCPToolHost(self.mcp),
            cache=self.cache,
            runtime=self.runtime,
            presets=self.preset_catalog,
        )
        names = await self.dispatcher.register(self.config)
        logger.info(f"Server ready with tools: {', '.join(names) or '(none)'}")

    async def warm(self) -> List[str]:
        """Refresh every referenced alias and return one summary line per alias."""
        self._load_external()
        if self.cache is None:
            return ["No external servers referenced"]

        await self.cache.restore()
        lines: List[str] = []
        for alias in self.config.referenced_aliases():
            try:
                await self.cache.ensure_alias(alias, force_refresh=True)
            except Exception as e:
                lines.append(f"{alias}: failed ({e})")
                continue
            view = self.cache.get_alias_view(alias)
            count = view.tool_count if view else 0
            lines.append(f"{alias}: {count} tools")
        await self.cache.flush()
        return lines

    async def run(self) -> None:
        """Run the MCP server."""
        await self.initialize()
        assert self.mcp is not None, "MCP server must be initialized first"

        try:
            await self.mcp.run_stdio_async(show_banner=True)
        finally:
            if self.cache is not None:
                await self.cache.flush()


@click.command()
@click.option(
    "--config", "-c", required=True, help="Workflow configuration directory"
)
@click.option(
    "--preset", "-p", "presets", multiple=True, help="Preset to load (repeatable)"
)
@click.option("--presets-dir", default=None, help="Directory of preset YAML files")
@click.option(
    "--cache-ttl-ms",
    default=DEFAULT_CACHE_TTL_MS,
    show_default=True,
    type=int,
    help="Tool catalog cache TTL in milliseconds (0 disables expiry)",
)
@click.option(
    "--cache-file", default=None, help="Persist the tool catalog cache to this YAML file"
)
@click.option(
    "--log-level",
    default="INFO",
    type=click.Choice(["DEBUG", "INFO", "WARNING", "ERROR"], case_sensitive=False),
    help="Logging level",
)
@click.option(
    "--warm-only",
    is_flag=True,
    help="Refresh external tool catalogs, print a summary and exit",
)
def main(
    config: str,
    presets: Sequence[str],
    presets_dir: Optional[str],
    cache_ttl_ms: int,
    cache_file: Optional[str],
    log_level: str,
    warm_only: bool,
) -> None:
    """Start the Workflow MCP Server."""
    _configure_logging(log_level)

    async def _main() -> None:
        server = WorkflowMCPServer(
            config,
            presets=presets,
            presets_dir=presets_dir,
            cache_ttl_ms=cache_ttl_ms,
            cache_file=cache_file,
        )

        if warm_only:
            for line in await server.warm():
                click.echo(line)
            return

        await server.run()

    asyncio.run(_main())


if __name__ == "__main__":
    main()
