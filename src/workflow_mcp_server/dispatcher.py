"""Workflow classification, registration and the built-in utility tools."""

import json
import logging
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Set, Tuple, Union

from pydantic import BaseModel, ConfigDict, Field, ValidationError, conint
from pydantic import model_validator

from .cache import ToolCache, normalize_text
from .config import Config, WorkflowConfig, WorkflowKind
from .exceptions import ConfigurationError, ExternalServerError
from .exceptions import ParameterValidationError, WorkflowServerError
from .host import ToolHandler, ToolHost
from .pipeline import prepare_steps, response_to_result, run_pipeline, text_content
from .presets import PresetCatalog
from .runtime import RemoteToolRuntime
from .schema_bridge import model_name_for, parameters_to_validator
from .schema_bridge import parameters_to_wire_schema, wire_schema_to_validator
from .templates import append_formatted_tools, format_tools_list, process_template

logger = logging.getLogger(__name__)

DESCRIBE_TOOLS = "describe_tools"
EXTERNAL_AUTH_SETUP = "external_auth_setup"
UTILITY_TOOL_NAMES = (DESCRIBE_TOOLS, EXTERNAL_AUTH_SETUP)
AUTH_KEYWORDS = (
    "oauth",
    "authorize",
    "authorization",
    "authenticate",
    "credentials",
    "login",
)
DEFAULT_DESCRIBE_LIMIT = 50
MAX_DESCRIBE_LIMIT = 200


class DescribeToolsRequest(BaseModel):
    """Arguments accepted by ``describe_tools``."""

    model_config = ConfigDict(populate_by_name=True)

    workflow: Optional[str] = Field(
        default=None,
        description="Workflow name to inspect (required unless 'workflows' is provided)",
    )
    workflows: Optional[List[str]] = Field(
        default=None, description="Array of workflow names to inspect"
    )
    aliases: Optional[List[str]] = Field(
        default=None, description="Optional list of server aliases to filter"
    )
    search: Optional[str] = Field(
        default=None,
        description="Full-text filter applied to tool names and descriptions",
    )
    refresh: bool = Field(
        default=False, description="Force cache refresh before returning results"
    )
    include_schemas: bool = Field(
        default=True,
        alias="includeSchemas",
        description="Include JSON input schemas in the response (default true)",
    )
    limit: conint(strict=True, gt=0, le=MAX_DESCRIBE_LIMIT) = Field(  # type: ignore[valid-type]
        default=DEFAULT_DESCRIBE_LIMIT,
        description=f"Maximum tools per alias (default {DEFAULT_DESCRIBE_LIMIT})",
    )

    @model_validator(mode="after")
    def _check_scope(self) -> "DescribeToolsRequest":
        has_single = bool(self.workflow)
        has_many = bool(self.workflows)
        if has_single == has_many:
            raise ValueError(
                "Specify exactly one of 'workflow' or 'workflows' to scope describe_tools"
            )
        return self


class AuthSetupRequest(BaseModel):
    """Arguments accepted by ``external_auth_setup``."""

    aliases: Optional[List[str]] = Field(
        default=None, description="Subset of aliases to initialize"
    )
    refresh: bool = Field(
        default=True, description="Force discovery even if cache is warm"
    )


@dataclass
class WorkflowCatalogEntry:
    """What ``describe_tools`` knows about one registered workflow."""

    name: str
    runtime: WorkflowKind
    description: str
    aliases: List[str] = field(default_factory=list)
    scripted_tool_hints: Dict[str, Set[str]] = field(default_factory=dict)
    auto_aliases: Set[str] = field(default_factory=set)


@dataclass
class _Registration:
    name: str
    description: str
    parameters_schema: Dict[str, Any]
    handler: ToolHandler


def error_result(error: Union[BaseException, str]) -> Dict[str, Any]:
    message = error if isinstance(error, str) else _error_message(error)
    return {
        "content": [text_content(f"Error executing tool: {message}")],
        "isError": True,
    }


def is_auth_error(message: str) -> bool:
    normalized = message.lower()
    return any(keyword in normalized for keyword in AUTH_KEYWORDS)


def build_auth_reminder(workflow_name: str, alias: str, detail: str) -> Dict[str, Any]:
    instructions = (
        f"Authentication is required for server '{alias}' ({detail}). Run "
        f'describe_tools({{ "workflow": "{workflow_name}", "refresh": true }}) or call '
        f"{EXTERNAL_AUTH_SETUP} to start the login flow."
    )
    return {"content": [text_content(instructions)]}


class WorkflowDispatcher:
    """Registers declared workflows as tools on a ``ToolHost``.

    Registration is all-or-nothing: every declaration is validated, names are
    checked for collisions and scripted steps are resolved before the first
    tool reaches the host.
    """

    def __init__(
        self,
        host: ToolHost,
        cache: Optional[ToolCache] = None,
        runtime: Optional[RemoteToolRuntime] = None,
        presets: Optional[PresetCatalog] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.host = host
        self.cache = cache
        self.runtime = runtime if runtime is not None else (cache.runtime if cache else None)
        self.presets = presets
        self._clock = clock
        self.registered_names: List[str] = []
        self.catalog: Dict[str, WorkflowCatalogEntry] = {}
        self.known_aliases: List[str] = []

    async def register(
        self, workflows: Union[Config, Mapping[str, Any]]
    ) -> List[str]:
        """Register every enabled workflow; returns the registered tool names."""
        declarations = workflows.workflows if isinstance(workflows, Config) else workflows

        plans: List[Tuple[str, str, WorkflowConfig]] = []
        names: List[str] = []
        for key, raw in declarations.items():
            if raw is None or _is_disabled(raw):
                continue
            workflow = WorkflowConfig.from_declaration(key, raw)
            name = workflow.tool_name(key)
            if name in names or name in self.registered_names:
                raise ConfigurationError(f"Tool name '{name}' is already registered.")
            names.append(name)
            plans.append((key, name, workflow))

        aliases: List[str] = []
        catalog: Dict[str, WorkflowCatalogEntry] = {}
        for key, name, workflow in plans:
            entry = _catalog_entry(name, workflow.kind, workflow.description_for(key), workflow)
            catalog[name] = entry
            for alias in entry.aliases:
                if alias not in aliases:
                    aliases.append(alias)

        if aliases:
            for utility in UTILITY_TOOL_NAMES:
                if utility in names or utility in self.registered_names:
                    raise ConfigurationError(
                        f"Tool name '{utility}' is reserved for the built-in utility tool."
                    )
            if self.cache is None or self.runtime is None:
                raise ConfigurationError(
                    "External MCP workflows require --config <dir> with a servers.json "
                    "so external servers can be loaded"
                )

        if self.cache is not None:
            await self.cache.restore()
            if aliases:
                try:
                    await self.cache.ensure_aliases(aliases)
                except Exception as e:
                    logger.warning(
                        "Failed to initialize external aliases at startup. You can run "
                        f"{EXTERNAL_AUTH_SETUP} or {DESCRIBE_TOOLS} later. Details: {e}"
                    )

        registrations: List[_Registration] = []
        for key, name, workflow in plans:
            registrations.append(await self._build_registration(key, name, workflow))
        if aliases:
            registrations.extend(self._utility_registrations())

        self.catalog.update(catalog)
        for alias in aliases:
            if alias not in self.known_aliases:
                self.known_aliases.append(alias)
        for registration in registrations:
            self.host.add_workflow_tool(
                registration.name,
                registration.description,
                registration.parameters_schema,
                registration.handler,
            )
            self.registered_names.append(registration.name)

        logger.info(f"Registered {len(registrations)} tools")
        return [registration.name for registration in registrations]

    async def _build_registration(
        self, key: str, name: str, workflow: WorkflowConfig
    ) -> _Registration:
        description = workflow.description_for(key)
        if workflow.kind == "scripted":
            handler, schema = await self._scripted_handler(name, workflow)
        elif workflow.kind == "external":
            handler, schema = self._external_handler(name, workflow)
        else:
            handler, schema = self._prompt_handler(key, name, workflow)
        return _Registration(name, description, schema, handler)

    # Prompt workflows

    def _prompt_handler(
        self, key: str, name: str, workflow: WorkflowConfig
    ) -> Tuple[ToolHandler, Dict[str, Any]]:
        validator = parameters_to_validator(
            workflow.parameters, model_name_for(name, "Parameters")
        )

        async def handler(params: Dict[str, Any]) -> Dict[str, Any]:
            try:
                values = validator.validate(params) if validator else dict(params or {})
                return {"content": [text_content(self.render_prompt(key, workflow, values))]}
            except Exception as e:
                logger.error(f"Error executing {name}: {e}")
                return error_result(e)

        return handler, parameters_to_wire_schema(workflow.parameters)

    def render_prompt(
        self, key: str, workflow: WorkflowConfig, params: Mapping[str, Any]
    ) -> str:
        base = workflow.prompt
        if not base and self.presets is not None:
            base = self.presets.default_prompt(key)
        if not base:
            logger.warning(f"Tool '{key}' has no prompt defined")
            base = f"# {key}\n\nNo prompt defined for this tool."
        else:
            if workflow.context:
                base += f"\n\n{workflow.context}"
            if workflow.tools:
                base = append_formatted_tools(
                    base, format_tools_list(workflow.tools), workflow.tool_mode
                )
        return process_template(base, params)[0]

    # Scripted workflows

    async def _scripted_handler(
        self, name: str, workflow: WorkflowConfig
    ) -> Tuple[ToolHandler, Dict[str, Any]]:
        steps = workflow.steps or []
        prepared = await prepare_steps(name, steps, self.cache) if steps else []
        validator = parameters_to_validator(
            workflow.parameters, model_name_for(name, "Parameters")
        )
        runtime = self.runtime

        async def handler(params: Dict[str, Any]) -> Dict[str, Any]:
            try:
                values = validator.validate(params) if validator else dict(params or {})
                return await run_pipeline(name, prepared, values, runtime)
            except Exception as e:
                logger.error(f"Error executing {name}: {e}")
                return error_result(e)

        return handler, parameters_to_wire_schema(workflow.parameters)

    # External proxy workflows

    def _external_handler(
        self, name: str, workflow: WorkflowConfig
    ) -> Tuple[ToolHandler, Dict[str, Any]]:
        aliases = list(workflow.external_servers or [])
        describe_call = _describe_call_snippet(name, aliases)
        prompt = _ensure_describe_hint(
            workflow.prompt, _describe_hint(name, aliases, describe_call)
        )

        properties: Dict[str, Any] = {
            "tool": {
                "type": "string",
                "description": (
                    f"External tool to invoke (run {describe_call} first, then set "
                    "this field to the tool name)"
                ),
            },
            "args": {
                "type": "object",
                "additionalProperties": True,
                "description": "Arguments object forwarded to the external tool",
            },
        }
        if len(aliases) > 1:
            properties["server"] = {
                "type": "string",
                "enum": aliases,
                "description": "Server alias to use (omit if specifying alias in tool)",
            }

        async def handler(params: Dict[str, Any]) -> Dict[str, Any]:
            return await self.call_external(name, aliases, prompt, params)

        return handler, {"type": "object", "properties": properties}

    async def call_external(
        self,
        name: str,
        aliases: List[str],
        prompt: str,
        params: Optional[Dict[str, Any]],
    ) -> Dict[str, Any]:
        """Forward one proxy call to the selected alias and tool."""
        params = params or {}
        requested = params.get("tool")
        if not requested or not isinstance(requested, str):
            return {"content": [text_content(prompt)]}

        alias: Optional[str] = params.get("server")
        if ":" in requested:
            maybe_alias, _, tool_part = requested.partition(":")
            if tool_part.strip():
                alias, requested = maybe_alias.strip(), tool_part.strip()

        called: Optional[str] = None
        try:
            if not alias:
                alias = aliases[0] if len(aliases) == 1 else None
            if not alias:
                raise ExternalServerError(
                    "Parameter 'server' is required when multiple aliases are "
                    f"available ({', '.join(aliases)})"
                )
            if alias not in aliases:
                raise ExternalServerError(
                    f"Server '{alias}' is not available to workflow '{name}' "
                    f"(expected one of: {', '.join(aliases)})"
                )

            descriptor = await self.cache.get_tool(alias, requested)  # type: ignore[union-attr]
            called = f"{alias}:{descriptor.name}"

            raw_args = params.get("args")
            if raw_args is None:
                raw_args = params.get("arguments")
            if raw_args is None:
                raw_args = {}
            if not isinstance(raw_args, dict):
                raise ParameterValidationError(
                    [{"loc": ("args",), "msg": "must be an object if provided"}]
                )
            validator = wire_schema_to_validator(
                descriptor.input_schema, model_name_for(descriptor.name, "Arguments")
            )
            arguments = validator.validate(raw_args) if validator else raw_args

            response = await self.runtime.call_tool(alias, descriptor.name, arguments)  # type: ignore[union-attr]
            return response_to_result(response)
        except Exception as e:
            message = _error_message(e)
            if is_auth_error(message):
                target = alias or aliases[0]
                logger.warning(f"Authentication required for '{target}': {message}")
                return build_auth_reminder(name, target, message)
            if called:
                message = f"Failed calling {called}: {message}"
            logger.error(f"Error executing {name}: {message}")
            return error_result(message)

    # Utility tools

    def _utility_registrations(self) -> List[_Registration]:
        return [
            _Registration(
                DESCRIBE_TOOLS,
                "Describe cached MCP tool metadata for a workflow",
                DescribeToolsRequest.model_json_schema(by_alias=True),
                self.describe_tools,
            ),
            _Registration(
                EXTERNAL_AUTH_SETUP,
                "Warm up OAuth tokens and cached metadata for external MCP servers.",
                AuthSetupRequest.model_json_schema(by_alias=True),
                self.external_auth_setup,
            ),
        ]

    async def describe_tools(self, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Report cached tool catalogs for the requested workflows."""
        try:
            request = _parse_request(DescribeToolsRequest, params)
            names = [request.workflow] if request.workflow else list(
                dict.fromkeys(request.workflows or [])
            )
            alias_filter = {
                alias.strip() for alias in request.aliases or [] if alias.strip()
            }
            search = normalize_text(request.search.strip()) if request.search else ""

            responses = []
            for workflow_name in names:
                meta = self.catalog.get(workflow_name)
                if meta is None:
                    raise WorkflowServerError(
                        f"Workflow '{workflow_name}' is not registered or has no configuration"
                    )
                responses.append(
                    await self._describe_workflow(meta, request, alias_filter, search)
                )

            payload = {"generatedAt": self._isoformat(self._clock() * 1000), "workflows": responses}
            return {"content": [text_content(json.dumps(payload, indent=2, default=str))]}
        except Exception as e:
            logger.error(f"Error executing {DESCRIBE_TOOLS}: {e}")
            return error_result(e)

    async def _describe_workflow(
        self,
        meta: WorkflowCatalogEntry,
        request: DescribeToolsRequest,
        alias_filter: Set[str],
        search: str,
    ) -> Dict[str, Any]:
        summary: Dict[str, Any] = {
            "workflow": meta.name,
            "runtime": meta.runtime,
            "description": meta.description,
        }
        aliases = [a for a in meta.aliases if not alias_filter or a in alias_filter]
        if not aliases:
            summary["aliases"] = []
            summary["warning"] = (
                "Workflow does not reference external MCP servers"
                if not meta.aliases
                else "No aliases matched the provided filters"
            )
            return summary

        entries = []
        for alias in aliases:
            try:
                await self.cache.ensure_alias(alias, force_refresh=request.refresh)  # type: ignore[union-attr]
            except Exception as e:
                entries.append({"alias": alias, "error": _error_message(e)})
                continue

            view = self.cache.get_alias_view(alias)  # type: ignore[union-attr]
            tools = view.tools if view else []
            if search:
                tools = [
                    tool
                    for tool in tools
                    if search in normalize_text(f"{tool.name} {tool.description or ''}")
                ]
            limited = tools[: request.limit]
            auto = alias in meta.auto_aliases
            recommended = meta.scripted_tool_hints.get(alias, set())

            entry: Dict[str, Any] = {
                "alias": alias,
                "mode": "auto" if auto else "scripted",
            }
            if view is not None:
                entry["cache"] = {
                    "refreshedAt": self._isoformat(view.refreshed_at),
                    "stale": view.stale,
                    "versionHash": view.version_hash,
                    "toolCount": view.tool_count,
                }
                if view.last_error is not None:
                    entry["lastError"] = {
                        "message": view.last_error.message,
                        "timestamp": self._isoformat(view.last_error.timestamp),
                    }
            entry["truncated"] = len(tools) > len(limited)
            entry["tools"] = []
            for tool in limited:
                item: Dict[str, Any] = {
                    "name": tool.name,
                    "description": tool.description or "",
                    "recommended": auto or tool.name in recommended,
                }
                if request.include_schemas:
                    item["inputSchema"] = tool.input_schema
                entry["tools"].append(item)
            entries.append(entry)

        summary["aliases"] = entries
        return summary

    async def external_auth_setup(
        self, params: Optional[Dict[str, Any]] = None
    ) -> Dict[str, Any]:
        """Force-initialize aliases so credential flows run before first use."""
        try:
            request = _parse_request(AuthSetupRequest, params)
        except ParameterValidationError as e:
            return error_result(e)

        source = request.aliases if request.aliases is not None else self.known_aliases
        requested = [alias.strip() for alias in source if alias.strip()]
        unknown = [alias for alias in requested if alias not in self.known_aliases]
        if unknown:
            return {
                "content": [text_content(f"Unknown server alias(es): {', '.join(unknown)}")],
                "isError": True,
            }

        successes: List[str] = []
        failures: List[Tuple[str, str]] = []
        for alias in requested:
            try:
                await self.cache.ensure_alias(alias, force_refresh=request.refresh)  # type: ignore[union-attr]
                successes.append(alias)
            except Exception as e:
                logger.warning(f"Initializing '{alias}' failed: {e}")
                failures.append((alias, _error_message(e)))

        lines = [
            f"Initialized {len(successes)}/{len(requested)} aliases"
            f"{' (forced refresh)' if request.refresh else ''}.",
            f'After this step, run {DESCRIBE_TOOLS}({{ "workflow": "<name>" }}) in your '
            "client so agents can see the latest schemas.",
        ]
        if successes:
            lines.append(f"Ready: {', '.join(successes)}")
        if failures:
            details = "\n".join(f"- {alias}: {message}" for alias, message in failures)
            lines.append(f"Failed aliases:\n{details}")

        result: Dict[str, Any] = {"content": [text_content("\n\n".join(lines))]}
        if failures:
            result["isError"] = True
        return result

    @staticmethod
    def _isoformat(timestamp_ms: float) -> str:
        moment = datetime.fromtimestamp(timestamp_ms / 1000, tz=timezone.utc)
        return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


async def register_workflows(
    host: ToolHost,
    workflows: Union[Config, Mapping[str, Any]],
    cache: Optional[ToolCache] = None,
    presets: Optional[PresetCatalog] = None,
) -> WorkflowDispatcher:
    """Build a dispatcher and register ``workflows`` on ``host``."""
    dispatcher = WorkflowDispatcher(host, cache=cache, presets=presets)
    await dispatcher.register(workflows)
    return dispatcher


def _is_disabled(raw: Any) -> bool:
    if isinstance(raw, WorkflowConfig):
        return raw.disabled
    return isinstance(raw, dict) and bool(raw.get("disabled"))


def _catalog_entry(
    name: str, kind: WorkflowKind, description: str, workflow: WorkflowConfig
) -> WorkflowCatalogEntry:
    entry = WorkflowCatalogEntry(name=name, runtime=kind, description=description)
    if kind == "scripted":
        for step in workflow.steps or []:
            if step.alias not in entry.aliases:
                entry.aliases.append(step.alias)
            entry.scripted_tool_hints.setdefault(step.alias, set()).add(step.tool)
    elif kind == "external":
        entry.aliases = list(workflow.external_servers or [])
        entry.auto_aliases = set(entry.aliases)
    return entry


def _parse_request(model: Any, params: Optional[Dict[str, Any]]) -> Any:
    try:
        return model.model_validate(params or {})
    except ValidationError as e:
        raise ParameterValidationError(e.errors()) from e


def _describe_call_snippet(workflow_name: str, aliases: List[str]) -> str:
    alias_fragment = ""
    if len(aliases) > 1:
        quoted = ", ".join(f'"{alias}"' for alias in aliases)
        alias_fragment = f', "aliases": [{quoted}]'
    return f'{DESCRIBE_TOOLS}({{ "workflow": "{workflow_name}"{alias_fragment} }})'


def _describe_hint(workflow_name: str, aliases: List[str], call_snippet: str) -> str:
    alias_prefix = f"{aliases[0]}:" if len(aliases) > 1 else ""
    return (
        f"Start by running {call_snippet} to inspect available commands, then call "
        f'{workflow_name}({{ "tool": "{alias_prefix}tool_name", "args": {{ ... }} }}) '
        f"with the details returned by {DESCRIBE_TOOLS}."
    )


def _ensure_describe_hint(prompt: Optional[str], hint: str) -> str:
    if not prompt:
        return hint
    if DESCRIBE_TOOLS in prompt.lower():
        return prompt
    return f"{prompt.rstrip()}\n\n{hint}"


def _error_message(error: BaseException) -> str:
    if isinstance(error, WorkflowServerError):
        return error.message
    return str(error) or error.__class__.__name__
