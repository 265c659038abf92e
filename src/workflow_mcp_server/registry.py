"""Remote MCP server registry (``servers.json``) loading and validation."""

import json
import logging
import os
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Annotated, Dict, Iterator, List, Literal, Mapping, Optional, Tuple, Union
from urllib.parse import urlparse

from dotenv import dotenv_values
from pydantic import BaseModel, ConfigDict, Field, ValidationError, conint, field_validator

from .exceptions import ConfigurationError, ExternalServerError
from .exceptions import MissingEnvironmentVariableError

logger = logging.getLogger(__name__)

REGISTRY_FILENAME = "servers.json"
ENV_NAME_VARIABLE = "WORKFLOW_MCP_ENV"
PLACEHOLDER_PATTERN = re.compile(r"\$\{([A-Z0-9_]+)\}", re.IGNORECASE)


class _ServerEntryBase(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    description: Optional[str] = None
    package: Optional[str] = None
    env: Optional[Dict[str, str]] = None
    headers: Optional[Dict[str, str]] = None
    token_cache_dir: Optional[str] = Field(default=None, alias="tokenCacheDir")
    client_name: Optional[str] = Field(default=None, alias="clientName")
    oauth_redirect_url: Optional[str] = Field(default=None, alias="oauthRedirectUrl")
    auth: Optional[Literal["oauth"]] = None
    timeout_ms: Optional[conint(strict=True, gt=0)] = Field(  # type: ignore[valid-type]
        default=None, alias="timeoutMs"
    )


class StdioServerEntry(_ServerEntryBase):
    type: Literal["stdio"]
    command: str = Field(..., min_length=1)
    args: Optional[List[str]] = None
    cwd: Optional[str] = None


class HttpServerEntry(_ServerEntryBase):
    type: Literal["http"]
    url: str

    @field_validator("url")
    @classmethod
    def _check_url(cls, value: str) -> str:
        # Placeholders are expanded later; validate the shape around them.
        candidate = PLACEHOLDER_PATTERN.sub("placeholder", value)
        parsed = urlparse(candidate)
        if parsed.scheme not in ("http", "https") or not parsed.netloc:
            raise ValueError("http server requires valid url")
        return value


ServerEntry = Annotated[
    Union[StdioServerEntry, HttpServerEntry], Field(discriminator="type")
]


class RegistryFile(BaseModel):
    servers: Dict[str, ServerEntry]


@dataclass(frozen=True)
class ServerAlias:
    """A resolved, immutable remote server declaration."""

    name: str
    transport: Literal["stdio", "http"]
    command: Optional[str] = None
    args: Tuple[str, ...] = ()
    cwd: Optional[str] = None
    url: Optional[str] = None
    headers: Dict[str, str] = field(default_factory=dict)
    env: Dict[str, str] = field(default_factory=dict)
    auth: Optional[str] = None
    token_cache_dir: Optional[str] = None
    client_name: Optional[str] = None
    oauth_redirect_url: Optional[str] = None
    timeout_ms: Optional[int] = None
    description: Optional[str] = None


def load_env_for_config_dir(
    config_dir: Union[str, Path], env_name: Optional[str] = None
) -> Dict[str, str]:
    """Merge the ``.env`` family of files found in ``config_dir``.

    Files are read lowest precedence first: ``.env``, ``.env.local``,
    ``.env.{ENV}``, ``.env.{ENV}.local``. A later file overrides keys of an
    earlier one. The process environment is neither read nor modified here.
    """
    directory = Path(config_dir)
    name = (env_name or os.environ.get(ENV_NAME_VARIABLE) or "").strip()

    candidates = [".env", ".env.local"]
    if name:
        candidates += [f".env.{name}", f".env.{name}.local"]

    merged: Dict[str, str] = {}
    for candidate in candidates:
        path = directory / candidate
        if not path.is_file():
            continue
        try:
            values = dotenv_values(path)
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(f"Failed parsing {path}: {e}")
            continue
        loaded = {key: value for key, value in values.items() if value is not None}
        logger.debug(f"Loaded {len(loaded)} variables from {path}")
        merged.update(loaded)
    return merged


def expand_placeholders(
    value: str, alias: str, source: str, environ: Mapping[str, str]
) -> str:
    """Replace ``${VAR}`` placeholders using ``environ``."""

    def _substitute(match: "re.Match[str]") -> str:
        variable = match.group(1)
        if variable not in environ:
            raise MissingEnvironmentVariableError(variable, alias, source)
        return environ[variable]

    return PLACEHOLDER_PATTERN.sub(_substitute, value)


class ServerRegistry:
    """Validated remote server aliases for one configuration directory."""

    def __init__(
        self,
        config_dir: str,
        registry_path: str,
        aliases: Dict[str, ServerAlias],
        file_env: Optional[Dict[str, str]] = None,
    ):
        self.config_dir = config_dir
        self.registry_path = registry_path
        self.aliases = aliases
        self.file_env = file_env or {}

    @classmethod
    def load(
        cls,
        config_dir: Union[str, Path],
        env_name: Optional[str] = None,
        environ: Optional[Mapping[str, str]] = None,
    ) -> "ServerRegistry":
        """Load ``servers.json`` from ``config_dir``.

        ``environ`` defaults to the live process environment, which always
        takes precedence over values read from ``.env`` files.
        """
        directory = Path(config_dir).resolve()
        registry_path = directory / REGISTRY_FILENAME

        file_env = load_env_for_config_dir(directory, env_name)
        resolved_env: Dict[str, str] = {**file_env, **(environ if environ is not None else os.environ)}

        try:
            with open(registry_path, "r") as f:
                raw = f.read()
        except OSError as e:
            raise ConfigurationError(
                f"Missing MCP server registry at {registry_path}. Create "
                f"{REGISTRY_FILENAME} with your server definitions."
            ) from e

        try:
            parsed = RegistryFile.model_validate(json.loads(raw))
        except (json.JSONDecodeError, ValidationError) as e:
            raise ConfigurationError(
                f"{REGISTRY_FILENAME} at {registry_path} is invalid: {e}"
            ) from e

        aliases: Dict[str, ServerAlias] = {}
        for alias, entry in parsed.servers.items():
            normalized = alias.strip()
            if not normalized:
                raise ConfigurationError(
                    "Server aliases must be non-empty strings without whitespace."
                )
            if ":" in normalized:
                raise ConfigurationError(
                    f"Server alias '{alias}' must not contain ':'. Use the alias "
                    "without namespaces; the tool suffix is added automatically."
                )
            if normalized in aliases:
                raise ConfigurationError(
                    f"Duplicate server alias '{normalized}' detected in {REGISTRY_FILENAME}."
                )
            aliases[normalized] = _build_alias(
                normalized, entry, directory, str(registry_path), resolved_env
            )
            logger.info(f"Registered external server '{normalized}' ({entry.type})")

        if not aliases:
            raise ConfigurationError(
                f"No servers declared in {registry_path}. Add at least one MCP "
                "server to register external tools."
            )

        return cls(str(directory), str(registry_path), aliases, file_env)

    def __contains__(self, alias: object) -> bool:
        return isinstance(alias, str) and alias.strip() in self.aliases

    def __iter__(self) -> Iterator[str]:
        return iter(self.aliases)

    def __len__(self) -> int:
        return len(self.aliases)

    def names(self) -> List[str]:
        return list(self.aliases.keys())

    def get(self, alias: str) -> ServerAlias:
        server = self.aliases.get(alias.strip())
        if server is None:
            raise ExternalServerError(
                f"Server alias '{alias}' is not defined in {self.registry_path}"
            )
        return server

    def child_env(self, alias: str) -> Dict[str, str]:
        """Environment handed to a stdio server process."""
        return {**self.file_env, **os.environ, **self.get(alias).env}


def _build_alias(
    alias: str,
    entry: Union[StdioServerEntry, HttpServerEntry],
    config_dir: Path,
    source: str,
    environ: Mapping[str, str],
) -> ServerAlias:
    def expand(value: str) -> str:
        return expand_placeholders(value, alias, source, environ)

    env = {key: expand(value) for key, value in (entry.env or {}).items()}
    token_cache_dir = (
        str((config_dir / expand(entry.token_cache_dir)).resolve())
        if entry.token_cache_dir
        else None
    )
    common = dict(
        name=alias,
        env=env,
        auth=entry.auth,
        token_cache_dir=token_cache_dir,
        client_name=entry.client_name,
        oauth_redirect_url=entry.oauth_redirect_url,
        timeout_ms=entry.timeout_ms,
        description=entry.description,
    )

    if isinstance(entry, HttpServerEntry):
        return ServerAlias(
            transport="http",
            url=expand(entry.url),
            headers={key: expand(value) for key, value in (entry.headers or {}).items()},
            **common,
        )

    cwd = (
        str((config_dir / expand(entry.cwd)).resolve()) if entry.cwd else str(config_dir)
    )
    return ServerAlias(
        transport="stdio",
        command=expand(entry.command),
        args=tuple(expand(arg) for arg in entry.args or []),
        cwd=cwd,
        **common,
    )
