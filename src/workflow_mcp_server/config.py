"""Configuration management for the Workflow MCP Server.

This module handles loading and validating workflow declarations. A workflow
directory holds any number of YAML files; each maps workflow names to their
definition. Files are merged into one declaration map, optionally layered on
top of preset declarations, and validated into ``WorkflowConfig`` models.
"""

import logging
from pathlib import Path
from typing import Any, Dict, Iterable, List, Literal, Optional, Tuple, Union

import yaml
from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator
from pydantic import model_validator

from .exceptions import ConfigurationError
from .presets import PresetCatalog

logger = logging.getLogger(__name__)

ParameterType = Literal["string", "number", "boolean", "array", "object", "enum"]
WorkflowKind = Literal["prompt", "scripted", "external"]


def parse_call_reference(reference: str) -> Tuple[str, str]:
    """Split an ``alias:tool`` reference into its two trimmed parts."""
    tokens = reference.split(":")
    if len(tokens) != 2:
        raise ConfigurationError(
            f"External tool key '{reference}' must contain exactly one ':' "
            "separating server and tool"
        )
    alias, tool = (token.strip() for token in tokens)
    if not alias or not tool:
        raise ConfigurationError(
            f"External tool key '{reference}' must include both server and tool segments"
        )
    return alias, tool


class ParameterConfig(BaseModel):
    """Declarative description of one workflow parameter."""

    model_config = ConfigDict(extra="allow")

    type: ParameterType = Field(..., description="Parameter kind")
    description: Optional[str] = Field(default=None)
    required: bool = Field(default=False)
    default: Any = Field(default=None, description="Value used when omitted")
    enum: Optional[List[Any]] = Field(
        default=None, description="Allowed values for enum parameters"
    )
    items: Optional["ParameterConfig"] = Field(
        default=None, description="Item schema for array parameters"
    )
    properties: Optional[Dict[str, "ParameterConfig"]] = Field(
        default=None, description="Nested parameters for object parameters"
    )

    @model_validator(mode="after")
    def _check_enum_values(self) -> "ParameterConfig":
        if self.type == "enum" and not self.enum:
            raise ValueError('parameter of type "enum" must have a non-empty enum array')
        return self

    @property
    def has_default(self) -> bool:
        return "default" in self.model_fields_set


class ToolHintConfig(BaseModel):
    """Advisory tool entry listed under a prompt workflow."""

    description: Optional[str] = None
    prompt: Optional[str] = None
    optional: bool = False


class StepConfig(BaseModel):
    """One remote call of a scripted workflow."""

    model_config = ConfigDict(populate_by_name=True, extra="forbid")

    call: str = Field(..., description="Remote tool reference in alias:tool form")
    args: Optional[Dict[str, Any]] = Field(
        default=None, description="Argument template rendered against the context"
    )
    save_as: Optional[str] = Field(
        default=None, alias="saveAs", description="Context name for the raw response"
    )
    requires: Optional[str] = Field(
        default=None, description="Skip the step unless this context value is truthy"
    )
    quiet: bool = Field(default=False, description="Omit the step marker from output")

    @field_validator("call")
    @classmethod
    def _check_call(cls, value: str) -> str:
        try:
            alias, tool = parse_call_reference(value)
        except ConfigurationError as e:
            raise ValueError(e.message) from e
        return f"{alias}:{tool}"

    @property
    def alias(self) -> str:
        return parse_call_reference(self.call)[0]

    @property
    def tool(self) -> str:
        return parse_call_reference(self.call)[1]


class WorkflowConfig(BaseModel):
    """A single declared workflow (prompt, scripted or external proxy)."""

    model_config = ConfigDict(populate_by_name=True, extra="allow")

    name: Optional[str] = Field(
        default=None, description="Registered tool name (defaults to the config key)"
    )
    description: Optional[str] = None
    prompt: Optional[str] = None
    context: Optional[str] = None
    tools: Optional[Union[str, Dict[str, Union[str, ToolHintConfig, None]]]] = None
    tool_mode: Optional[Literal["sequential", "situational"]] = Field(
        default=None, alias="toolMode"
    )
    disabled: bool = False
    parameters: Optional[Dict[str, ParameterConfig]] = None
    external_servers: Optional[List[str]] = Field(default=None, alias="externalServers")
    runtime: Optional[WorkflowKind] = None
    steps: Optional[List[StepConfig]] = None

    @field_validator("name")
    @classmethod
    def _check_name(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and ":" in value:
            raise ValueError("custom name must not contain ':'")
        return value

    @field_validator("external_servers")
    @classmethod
    def _check_external_servers(
        cls, value: Optional[List[str]]
    ) -> Optional[List[str]]:
        if value is None:
            return None
        if len(value) == 0:
            raise ValueError(
                "externalServers must be a non-empty array of server aliases"
            )
        seen: List[str] = []
        for entry in value:
            normalized = entry.strip()
            if not normalized:
                raise ValueError("externalServers contains an empty server alias")
            if ":" in normalized:
                raise ValueError(
                    f"external server alias '{entry}' must not contain ':'"
                )
            if normalized in seen:
                raise ValueError(f"duplicate external server alias '{normalized}'")
            seen.append(normalized)
        return seen

    @model_validator(mode="after")
    def _check_runtime(self) -> "WorkflowConfig":
        if self.runtime == "scripted" and self.steps is None:
            raise ValueError("scripted workflows must declare steps")
        return self

    @classmethod
    def from_declaration(cls, key: str, data: Any) -> "WorkflowConfig":
        """Validate one raw declaration, naming the workflow on failure."""
        if isinstance(data, WorkflowConfig):
            return data
        if not isinstance(data, dict):
            raise ConfigurationError(
                f"Workflow '{key}' must be a mapping, got {type(data).__name__}"
            )
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise ConfigurationError(
                f"Invalid workflow '{key}': {_summarize_validation_error(e)}"
            ) from e

    @property
    def kind(self) -> WorkflowKind:
        """Runtime kind derived from the declaration shape."""
        if self.steps is not None:
            return "scripted"
        if self.external_servers:
            return "external"
        return "prompt"

    def tool_name(self, key: str) -> str:
        return self.name or key

    def description_for(self, key: str) -> str:
        return self.description or f"{key.replace('_', ' ')} tool"

    def referenced_aliases(self) -> List[str]:
        if self.kind == "scripted":
            aliases: List[str] = []
            for step in self.steps or []:
                if step.alias not in aliases:
                    aliases.append(step.alias)
            return aliases
        if self.kind == "external":
            return list(self.external_servers or [])
        return []


class Config(BaseModel):
    """Merged workflow declarations for one server process."""

    config_dir: Optional[str] = Field(
        default=None, description="Directory the declarations were loaded from"
    )
    workflows: Dict[str, WorkflowConfig] = Field(default_factory=dict)

    @classmethod
    def load(
        cls,
        config_dir: str,
        preset_names: Iterable[str] = (),
        presets: Optional[PresetCatalog] = None,
    ) -> "Config":
        """Load and merge every YAML file in a workflow directory."""
        path = Path(config_dir)
        if not path.is_dir():
            raise ConfigurationError(
                f"Workflow configuration directory not found: {config_dir}"
            )

        declarations: Dict[str, Any] = {}
        if presets is not None:
            declarations = presets.declarations(preset_names)
            logger.info(f"Loaded {len(declarations)} workflows from presets")

        user_declarations: Dict[str, Any] = {}
        files = sorted(
            p for p in path.iterdir() if p.is_file() and p.suffix.lower() in (".yaml", ".yml")
        )
        if not files:
            logger.warning(f"No YAML files found in {path}")
        for file_path in files:
            logger.info(f"Loading workflows from: {file_path}")
            try:
                with open(file_path, "r") as f:
                    file_data = yaml.safe_load(f)
            except yaml.YAMLError as e:
                logger.error(f"YAML parsing error in {file_path}: {e}, skipping")
                continue
            if file_data is None:
                continue
            if not isinstance(file_data, dict):
                logger.error(f"Config in {file_path} must be a mapping, skipping")
                continue
            merge_configs(user_declarations, file_data)

        merge_configs(declarations, user_declarations)
        config = cls.from_declarations(declarations, config_dir=str(path.resolve()))
        logger.info(f"Final configuration contains {len(config.workflows)} workflows")
        return config

    @classmethod
    def from_declarations(
        cls, declarations: Dict[str, Any], config_dir: Optional[str] = None
    ) -> "Config":
        """Validate an already merged declaration map."""
        workflows: Dict[str, WorkflowConfig] = {}
        for key, data in declarations.items():
            if data is None:
                continue
            workflows[key] = WorkflowConfig.from_declaration(key, data)
        return cls(config_dir=config_dir, workflows=workflows)

    def get_workflow_names(self) -> List[str]:
        return list(self.workflows.keys())

    def get_workflow(self, name: str) -> Optional[WorkflowConfig]:
        return self.workflows.get(name)

    def referenced_aliases(self) -> List[str]:
        """Aliases referenced by any enabled workflow, in declaration order."""
        aliases: List[str] = []
        for workflow in self.workflows.values():
            if workflow.disabled:
                continue
            for alias in workflow.referenced_aliases():
                if alias not in aliases:
                    aliases.append(alias)
        return aliases


def merge_configs(target: Dict[str, Any], source: Dict[str, Any]) -> Dict[str, Any]:
    """Merge ``source`` declarations into ``target`` (source wins).

    Existing workflows are merged key by key; their ``tools`` entries are
    combined instead of replaced.
    """
    for key, value in source.items():
        existing = target.get(key)
        if isinstance(existing, dict) and isinstance(value, dict):
            merged = {**existing, **value}
            tools = _merge_tools(existing.get("tools"), value.get("tools"))
            if tools is not None:
                merged["tools"] = tools
            target[key] = merged
        else:
            target[key] = value
    return target


def _merge_tools(target_tools: Any, source_tools: Any) -> Any:
    if not target_tools:
        return source_tools
    if not source_tools:
        return target_tools

    if isinstance(target_tools, str) and isinstance(source_tools, str):
        names: List[str] = []
        for name in target_tools.split(",") + source_tools.split(","):
            name = name.strip()
            if name not in names:
                names.append(name)
        return ", ".join(names)

    target_map = _tools_as_mapping(target_tools)
    result = dict(target_map)
    for name, value in _tools_as_mapping(source_tools).items():
        if isinstance(result.get(name), dict) and isinstance(value, dict):
            result[name] = {**result[name], **value}
        else:
            result[name] = value
    return result


def _tools_as_mapping(tools: Any) -> Dict[str, Any]:
    if isinstance(tools, str):
        return {name.strip(): "" for name in tools.split(",")}
    return dict(tools)


def _summarize_validation_error(error: ValidationError) -> str:
    parts = []
    for err in error.errors():
        loc = ".".join(str(part) for part in err.get("loc", ()))
        msg = err.get("msg", "invalid")
        parts.append(f"{loc}: {msg}" if loc else msg)
    return "; ".join(parts)
