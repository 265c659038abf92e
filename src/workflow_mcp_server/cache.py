"""Per-alias cache of remote tool catalogs.

Each alias maps to one immutable ``CacheEntry``. Refreshes replace the entry
as a whole, concurrent refreshes of the same alias share one remote
``list_tools`` call, and a failed refresh keeps the previous entry with the
error attached. Snapshots can be persisted through a ``CachePersistence``
adapter without blocking callers.
"""

import asyncio
import dataclasses
import difflib
import hashlib
import json
import logging
import re
import time
import unicodedata
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING, Any, Callable, Dict, Iterable, List, Mapping
from typing import Optional, Protocol, Set, Tuple, Union

import aiofiles
import aiofiles.os
import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError

from .exceptions import ExternalServerError, PersistenceError, ToolNotFoundError

if TYPE_CHECKING:
    from .registry import ServerRegistry
    from .runtime import RemoteToolRuntime

logger = logging.getLogger(__name__)

DEFAULT_CACHE_TTL_MS = 5 * 60 * 1000
SUGGESTION_LIMIT = 3
SUGGESTION_CUTOFF = 0.6


class ToolDescriptor(BaseModel):
    """A tool exposed by a remote MCP server."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: str = Field(..., min_length=1)
    description: Optional[str] = None
    input_schema: Optional[Dict[str, Any]] = Field(default=None, alias="inputSchema")
    output_schema: Optional[Dict[str, Any]] = Field(default=None, alias="outputSchema")

    @classmethod
    def coerce(cls, value: Union["ToolDescriptor", Mapping[str, Any]]) -> "ToolDescriptor":
        if isinstance(value, ToolDescriptor):
            return value
        return cls.model_validate(value)

    def to_wire(self) -> Dict[str, Any]:
        return self.model_dump(by_alias=True, exclude_none=True, mode="json")


class AliasSnapshot(BaseModel):
    """Persisted form of one cache entry."""

    model_config = ConfigDict(populate_by_name=True)

    alias: str
    version_hash: str = Field(..., min_length=1, alias="versionHash")
    refreshed_at: float = Field(..., ge=0, alias="refreshedAt")
    tools: List[ToolDescriptor]


@dataclass(frozen=True)
class CacheErrorState:
    message: str
    timestamp: float


@dataclass(frozen=True)
class CacheEntry:
    """Immutable catalog snapshot for one alias."""

    alias: str
    version_hash: str
    refreshed_at: float
    tools: Dict[str, ToolDescriptor]
    names: Tuple[str, ...] = ()
    names_norm: Tuple[str, ...] = ()
    fields_norm: Tuple[str, ...] = ()
    last_error: Optional[CacheErrorState] = None

    @classmethod
    def build(
        cls,
        alias: str,
        tools: Iterable[ToolDescriptor],
        refreshed_at: float,
        version_hash: Optional[str] = None,
    ) -> "CacheEntry":
        tool_list = list(tools)
        by_name: Dict[str, ToolDescriptor] = {}
        for tool in tool_list:
            by_name[tool.name] = tool
        names = tuple(by_name)
        return cls(
            alias=alias,
            version_hash=version_hash or hash_tools(tool_list),
            refreshed_at=refreshed_at,
            tools=by_name,
            names=names,
            names_norm=tuple(normalize_text(name) for name in names),
            fields_norm=tuple(
                normalize_text(f"{tool.name} {tool.description or ''}")
                for tool in by_name.values()
            ),
        )


@dataclass(frozen=True)
class AliasView:
    """Read-only view of a cache entry for introspection."""

    alias: str
    version_hash: str
    refreshed_at: float
    stale: bool
    tool_count: int
    tools: List[ToolDescriptor] = field(default_factory=list)
    last_error: Optional[CacheErrorState] = None


class CachePersistence(Protocol):
    """Storage for serialized cache snapshots."""

    async def load(self) -> Optional[Dict[str, Any]]: ...

    async def save(self, snapshot: Dict[str, Any]) -> None: ...


class FileCachePersistence:
    """Stores the cache snapshot as a YAML file."""

    def __init__(self, path: Union[str, Path]):
        self.path = Path(path)

    async def load(self) -> Optional[Dict[str, Any]]:
        if not self.path.exists():
            return None
        async with aiofiles.open(self.path, "r") as f:
            content = await f.read()
        return yaml.safe_load(content)

    async def save(self, snapshot: Dict[str, Any]) -> None:
        self.path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self.path.with_name(f"{self.path.name}.tmp")
        async with aiofiles.open(tmp_path, "w") as f:
            await f.write(yaml.safe_dump(snapshot, sort_keys=True))
        await aiofiles.os.replace(tmp_path, self.path)


def normalize_text(value: str) -> str:
    """Lowercase and strip combining diacritics."""
    decomposed = unicodedata.normalize("NFD", value.lower())
    return "".join(ch for ch in decomposed if not unicodedata.combining(ch))


def hash_tools(tools: Iterable[Union[ToolDescriptor, Mapping[str, Any]]]) -> str:
    """Order-independent sha256 over the observable shape of a tool list."""
    serialized = sorted(
        (
            {
                "name": tool.name,
                "description": tool.description or "",
                "inputSchema": tool.input_schema,
                "outputSchema": tool.output_schema,
            }
            for tool in (ToolDescriptor.coerce(t) for t in tools)
        ),
        key=lambda item: item["name"],
    )
    payload = json.dumps(serialized, sort_keys=True, separators=(",", ":"), default=str)
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


class ToolCache:
    """TTL cache of remote tool catalogs keyed by server alias."""

    def __init__(
        self,
        runtime: "RemoteToolRuntime",
        ttl_ms: int = DEFAULT_CACHE_TTL_MS,
        persistence: Optional[CachePersistence] = None,
        registry: Optional["ServerRegistry"] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.runtime = runtime
        self.ttl_ms = ttl_ms
        self.persistence = persistence
        self.registry = registry
        self._clock = clock
        self._entries: Dict[str, CacheEntry] = {}
        self._inflight: Dict[str, "asyncio.Task[CacheEntry]"] = {}
        self._pending_writes: Set["asyncio.Task[Optional[PersistenceError]]"] = set()
        self._write_lock = asyncio.Lock()
        self._restored = False

    # Public API

    async def restore(self) -> None:
        """Load a persisted snapshot, dropping entries that fail validation.

        Runs once per cache; aliases already held in memory are never replaced.
        """
        if self.persistence is None or self._restored:
            return
        self._restored = True
        try:
            snapshot = await self.persistence.load()
        except Exception as e:
            logger.error(f"Failed to load external tool cache snapshot: {e}")
            return
        if not snapshot:
            return
        if not isinstance(snapshot, dict):
            logger.warning("Cached external tool snapshot is not a mapping, ignoring it")
            return

        restored = 0
        for key, raw in snapshot.items():
            try:
                parsed = AliasSnapshot.model_validate(raw)
            except ValidationError as e:
                logger.debug(f"Dropping cached entry for '{key}': {e}")
                continue
            alias = (parsed.alias or str(key)).strip()
            if not alias or alias in self._entries:
                continue
            self._entries[alias] = CacheEntry.build(
                alias,
                parsed.tools,
                parsed.refreshed_at,
                version_hash=parsed.version_hash,
            )
            restored += 1
        logger.info(f"Restored {restored} cached tool catalogs")

    async def ensure_alias(self, alias: str, force_refresh: bool = False) -> None:
        await self._ensure_entry(alias, force_refresh)

    async def ensure_aliases(
        self, aliases: Iterable[str], force_refresh: bool = False
    ) -> None:
        unique: List[str] = []
        for alias in aliases:
            normalized = alias.strip()
            if normalized and normalized not in unique:
                unique.append(normalized)
        results = await asyncio.gather(
            *(self.ensure_alias(alias, force_refresh) for alias in unique),
            return_exceptions=True,
        )
        for result in results:
            if isinstance(result, BaseException):
                raise result

    async def get_tool(
        self,
        alias: str,
        tool_name: str,
        force_refresh: bool = False,
        refresh_if_missing: bool = True,
    ) -> ToolDescriptor:
        """Look up one tool, refreshing once if it is missing."""
        name = tool_name.strip()
        if not name:
            raise ExternalServerError("Tool name must be a non-empty string")

        entry, refreshed = await self._ensure_entry(alias, force_refresh)
        tool = entry.tools.get(name)
        if tool is None and refresh_if_missing and not refreshed:
            entry = await self._refresh_alias(entry.alias)
            tool = entry.tools.get(name)
        if tool is None:
            raise ToolNotFoundError(entry.alias, name, self.suggest_tools(entry, name))
        return tool

    def get_alias_view(self, alias: str) -> Optional[AliasView]:
        entry = self._entries.get(alias.strip())
        if entry is None:
            return None
        return AliasView(
            alias=entry.alias,
            version_hash=entry.version_hash,
            refreshed_at=entry.refreshed_at,
            stale=self.is_expired(entry),
            tool_count=len(entry.tools),
            tools=list(entry.tools.values()),
            last_error=entry.last_error,
        )

    def known_aliases(self) -> List[str]:
        return list(self._entries.keys())

    def snapshot(self) -> Dict[str, Dict[str, Any]]:
        return {
            entry.alias: {
                "alias": entry.alias,
                "versionHash": entry.version_hash,
                "refreshedAt": entry.refreshed_at,
                "tools": [tool.to_wire() for tool in entry.tools.values()],
            }
            for entry in self._entries.values()
        }

    async def flush(self) -> None:
        """Wait for pending snapshot writes."""
        while self._pending_writes:
            await asyncio.gather(*list(self._pending_writes))

    def is_expired(self, entry: CacheEntry) -> bool:
        if self.ttl_ms <= 0:
            return False
        return self._now_ms() - entry.refreshed_at > self.ttl_ms

    def suggest_tools(
        self, entry: CacheEntry, query: str, limit: int = SUGGESTION_LIMIT
    ) -> List[str]:
        """Closest tool names to ``query``; name matches rank first."""
        normalized = normalize_text(query.strip())
        if not normalized:
            return []

        suggestions: List[str] = []
        for match in difflib.get_close_matches(
            normalized, list(entry.names_norm), n=limit, cutoff=SUGGESTION_CUTOFF
        ):
            name = entry.names[entry.names_norm.index(match)]
            if name not in suggestions:
                suggestions.append(name)

        if len(suggestions) < limit:
            tokens = _words(normalized)
            scored = []
            for index, haystack in enumerate(entry.fields_norm):
                score = _haystack_score(tokens, _words(haystack))
                if score < SUGGESTION_CUTOFF:
                    continue
                ratio = difflib.SequenceMatcher(
                    None, normalized, entry.names_norm[index]
                ).ratio()
                scored.append((-score, -ratio, index))
            for _, _, index in sorted(scored):
                name = entry.names[index]
                if name not in suggestions:
                    suggestions.append(name)
                if len(suggestions) >= limit:
                    break

        return suggestions[:limit]

    # Internals

    def _now_ms(self) -> float:
        return self._clock() * 1000

    def _normalize_alias(self, alias: str) -> str:
        normalized = alias.strip() if isinstance(alias, str) else ""
        if not normalized:
            raise ExternalServerError("Server alias must be a non-empty string")
        if self.registry is not None and normalized not in self.registry:
            raise ExternalServerError(
                f"Server alias '{normalized}' is not defined in "
                f"{self.registry.registry_path}"
            )
        return normalized

    async def _ensure_entry(
        self, alias: str, force_refresh: bool = False
    ) -> Tuple[CacheEntry, bool]:
        normalized = self._normalize_alias(alias)
        existing = self._entries.get(normalized)
        if existing is not None and not force_refresh and not self.is_expired(existing):
            return existing, False
        return await self._refresh_alias(normalized), True

    async def _refresh_alias(self, alias: str) -> CacheEntry:
        task = self._inflight.get(alias)
        if task is None:
            task = asyncio.get_running_loop().create_task(self._fetch(alias))
            task.add_done_callback(_consume_exception)
            self._inflight[alias] = task
        else:
            logger.debug(f"Joining in-flight tool refresh for '{alias}'")
        return await asyncio.shield(task)

    async def _fetch(self, alias: str) -> CacheEntry:
        try:
            tools = await self.runtime.list_tools(alias, include_schema=True)
        except Exception as e:
            message = str(e) or e.__class__.__name__
            current = self._entries.get(alias)
            if current is not None:
                self._entries[alias] = dataclasses.replace(
                    current, last_error=CacheErrorState(message, self._now_ms())
                )
                logger.warning(
                    f"Refreshing tools for '{alias}' failed, keeping cached entry: {message}"
                )
            else:
                logger.warning(f"Refreshing tools for '{alias}' failed: {message}")
            raise
        finally:
            self._inflight.pop(alias, None)

        entry = CacheEntry.build(
            alias, (ToolDescriptor.coerce(tool) for tool in tools), self._now_ms()
        )
        self._entries[alias] = entry
        logger.info(
            f"Cached {len(entry.tools)} tools for '{alias}' "
            f"(version {entry.version_hash[:12]})"
        )
        self._schedule_persist()
        return entry

    def _schedule_persist(self) -> None:
        if self.persistence is None:
            return
        snapshot = self.snapshot()
        task = asyncio.get_running_loop().create_task(self._write_snapshot(snapshot))
        self._pending_writes.add(task)
        task.add_done_callback(self._on_write_done)

    async def _write_snapshot(
        self, snapshot: Dict[str, Any]
    ) -> Optional[PersistenceError]:
        async with self._write_lock:
            try:
                await self.persistence.save(snapshot)  # type: ignore[union-attr]
            except Exception as e:
                return PersistenceError(f"Failed to persist external tool cache: {e}")
        return None

    def _on_write_done(self, task: "asyncio.Task[Optional[PersistenceError]]") -> None:
        self._pending_writes.discard(task)
        if task.cancelled():
            return
        error = task.result()
        if error is not None:
            logger.error(error.message)


def _consume_exception(task: "asyncio.Task[Any]") -> None:
    if not task.cancelled():
        task.exception()


def _words(text: str) -> List[str]:
    return [word for word in re.split(r"[^a-z0-9]+", text) if word]


def _haystack_score(tokens: List[str], words: List[str]) -> float:
    """Mean over query tokens of the closest word ratio in a name+description haystack."""
    if not tokens or not words:
        return 0.0
    total = 0.0
    for token in tokens:
        total += max(difflib.SequenceMatcher(None, token, word).ratio() for word in words)
    return total / len(tokens)
