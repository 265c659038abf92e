"""Bridge between declarative parameters, JSON Schema and pydantic validators.

Workflows either declare their parameters by hand (``ParameterConfig``) or
inherit them from a remote tool's ``inputSchema``. Both sources are turned into
the same ``Validator`` so callers never need to know which one produced it.
"""

import copy
import keyword
import logging
import re
from enum import Enum
from typing import Annotated, Any, Dict, List, Literal, Mapping, Optional, Tuple, Type

from pydantic import (
    BaseModel,
    BeforeValidator,
    ConfigDict,
    Field,
    StrictBool,
    StrictStr,
    ValidationError,
    conint,
    conlist,
    constr,
    create_model,
)
from pydantic import confloat

from .config import ParameterConfig
from .exceptions import ParameterValidationError, SchemaConversionError

logger = logging.getLogger(__name__)

_MODEL_CONFIG = ConfigDict(regex_engine="python-re", extra="ignore")

FieldDefinition = Tuple[Any, Any]


class SchemaKind(str, Enum):
    """JSON Schema node kinds understood by the bridge."""

    STRING = "string"
    NUMBER = "number"
    INTEGER = "integer"
    BOOLEAN = "boolean"
    ARRAY = "array"
    OBJECT = "object"
    ENUM = "enum"
    CONST = "const"
    UNKNOWN = "unknown"


class Validator:
    """Validates argument dicts against a generated pydantic model.

    ``validate`` returns the caller's dict with declared defaults filled in for
    omitted top-level fields; values themselves are never coerced.
    """

    def __init__(
        self,
        model: Type[BaseModel],
        defaults: Optional[Dict[str, Any]] = None,
        subject: str = "parameters",
    ):
        self.model = model
        self.defaults = defaults or {}
        self.subject = subject

    @property
    def field_names(self) -> List[str]:
        return [info.alias or name for name, info in self.model.model_fields.items()]

    def validate(self, value: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        data = {} if value is None else value
        try:
            self.model.model_validate(data)
        except ValidationError as e:
            raise ParameterValidationError(e.errors(), subject=self.subject) from e

        result = dict(data)
        for name, default in self.defaults.items():
            if name not in result:
                result[name] = copy.deepcopy(default)
        return result


# Declarative parameters


def parameters_to_validator(
    parameters: Optional[Mapping[str, ParameterConfig]],
    model_name: str = "WorkflowParameters",
) -> Optional[Validator]:
    """Build a validator from declared workflow parameters (None if empty)."""
    if not parameters:
        return None
    fields, defaults = _parameter_fields(parameters, model_name)
    model = create_model(model_name, __config__=_MODEL_CONFIG, **fields)
    return Validator(model, defaults, subject="parameters")


def _parameter_fields(
    parameters: Mapping[str, ParameterConfig], model_name: str
) -> Tuple[Dict[str, FieldDefinition], Dict[str, Any]]:
    fields: Dict[str, FieldDefinition] = {}
    defaults: Dict[str, Any] = {}
    for index, (name, param) in enumerate(parameters.items()):
        annotation = _parameter_type(param, f"{model_name}_{index}")
        field_name, alias = _field_name(name, index, fields)
        if param.has_default:
            defaults[name] = param.default
            info = Field(default=param.default, alias=alias, description=param.description)
        elif param.required:
            info = Field(..., alias=alias, description=param.description)
        else:
            info = Field(default=None, alias=alias, description=param.description)
        fields[field_name] = (annotation, info)
    return fields, defaults


def _parameter_type(param: ParameterConfig, model_name: str) -> Any:
    if param.type == "string":
        return StrictStr
    if param.type == "number":
        return confloat(strict=True)
    if param.type == "boolean":
        return StrictBool
    if param.type == "array":
        item = _parameter_type(param.items, f"{model_name}Item") if param.items else StrictStr
        return List[item]  # type: ignore[valid-type]
    if param.type == "object":
        if not param.properties:
            return Dict[str, Any]
        fields, _ = _parameter_fields(param.properties, model_name)
        return create_model(model_name, __config__=_MODEL_CONFIG, **fields)
    if param.type == "enum":
        return _enum_type(param.enum or [], numeric_only=True)
    return StrictStr


def parameters_to_wire_schema(
    parameters: Optional[Mapping[str, ParameterConfig]],
) -> Dict[str, Any]:
    """Render declared parameters as an object-rooted JSON Schema."""
    properties: Dict[str, Any] = {}
    required: List[str] = []
    for name, param in (parameters or {}).items():
        properties[name] = parameter_to_wire_schema(param)
        if param.required and not param.has_default:
            required.append(name)
    schema: Dict[str, Any] = {"type": "object", "properties": properties}
    if required:
        schema["required"] = required
    return schema


def parameter_to_wire_schema(param: ParameterConfig) -> Dict[str, Any]:
    node: Dict[str, Any]
    if param.type == "array":
        node = {
            "type": "array",
            "items": parameter_to_wire_schema(param.items)
            if param.items
            else {"type": "string"},
        }
    elif param.type == "object":
        if param.properties:
            node = parameters_to_wire_schema(param.properties)
        else:
            node = {"type": "object", "additionalProperties": True}
    elif param.type == "enum":
        values = list(param.enum or [])
        if values and all(_is_number(v) for v in values):
            node = {"type": "number", "enum": values}
        else:
            node = {"type": "string", "enum": [str(v) for v in values]}
    else:
        node = {"type": param.type}

    if param.description:
        node["description"] = param.description
    if param.has_default:
        node["default"] = param.default
    return node


# Wire-level JSON Schema


def wire_schema_to_validator(
    schema: Any, model_name: str = "ToolArguments", subject: str = "arguments"
) -> Optional[Validator]:
    """Build a validator from a remote tool's ``inputSchema``.

    Returns None when the schema describes "no parameters" (no type, ``null``
    or ``object``/``null`` without properties). Raises
    ``SchemaConversionError`` for non-object roots.
    """
    result = _wire_object_fields(schema, model_name)
    if result is None:
        return None
    fields, defaults = result
    model = create_model(model_name, __config__=_MODEL_CONFIG, **fields)
    return Validator(model, defaults, subject=subject)


def classify_node(schema: Any) -> SchemaKind:
    """Tag a JSON Schema node with the kind used to convert it."""
    if not isinstance(schema, dict):
        return SchemaKind.UNKNOWN
    if isinstance(schema.get("enum"), list) and schema["enum"]:
        return SchemaKind.ENUM
    if "const" in schema:
        return SchemaKind.CONST
    types = _type_list(schema.get("type"))
    if (not types or "object" in types) and schema.get("properties"):
        return SchemaKind.OBJECT
    for kind in (
        SchemaKind.STRING,
        SchemaKind.INTEGER,
        SchemaKind.NUMBER,
        SchemaKind.BOOLEAN,
        SchemaKind.ARRAY,
        SchemaKind.OBJECT,
    ):
        if kind.value in types:
            return kind
    return SchemaKind.UNKNOWN


def _wire_object_fields(
    schema: Any, model_name: str
) -> Optional[Tuple[Dict[str, FieldDefinition], Dict[str, Any]]]:
    if not isinstance(schema, dict):
        return None
    types = _type_list(schema.get("type"))
    properties = schema.get("properties")
    no_parameters = not types or types == ["null"] or sorted(types) == ["null", "object"]
    if no_parameters and not properties:
        return None
    if types and "object" not in types and not properties:
        raise SchemaConversionError(
            f"Unsupported input schema type '{','.join(types)}' for external tool; "
            "expected object schema"
        )

    required = set(schema.get("required") or [])
    fields: Dict[str, FieldDefinition] = {}
    defaults: Dict[str, Any] = {}
    for index, (name, prop) in enumerate((properties or {}).items()):
        annotation = _wire_node_type(prop, f"{model_name}_{index}")
        field_name, alias = _field_name(name, index, fields)
        description = prop.get("description") if isinstance(prop, dict) else None
        if name in required:
            info = Field(..., alias=alias, description=description)
        elif isinstance(prop, dict) and "default" in prop:
            defaults[name] = prop["default"]
            info = Field(default=prop["default"], alias=alias, description=description)
        else:
            info = Field(default=None, alias=alias, description=description)
        fields[field_name] = (annotation, info)
    return fields, defaults


def _wire_node_type(schema: Any, model_name: str) -> Any:
    kind = classify_node(schema)

    if kind is SchemaKind.ENUM:
        return _enum_type(schema["enum"], numeric_only=False)
    if kind is SchemaKind.CONST:
        return _literal_type([schema["const"]])
    if kind is SchemaKind.STRING:
        pattern = schema.get("pattern")
        if isinstance(pattern, str) and not _compiles(pattern):
            logger.debug(f"Ignoring invalid pattern {pattern!r} in {model_name}")
            pattern = None
        return constr(
            strict=True,
            min_length=_int_or_none(schema.get("minLength")),
            max_length=_int_or_none(schema.get("maxLength")),
            pattern=pattern if isinstance(pattern, str) else None,
        )
    if kind is SchemaKind.INTEGER:
        return conint(
            strict=True,
            ge=_number_or_none(schema.get("minimum")),
            le=_number_or_none(schema.get("maximum")),
        )
    if kind is SchemaKind.NUMBER:
        return confloat(
            strict=True,
            ge=_number_or_none(schema.get("minimum")),
            le=_number_or_none(schema.get("maximum")),
        )
    if kind is SchemaKind.BOOLEAN:
        return StrictBool
    if kind is SchemaKind.ARRAY:
        items = schema.get("items")
        if isinstance(items, list):
            items = items[0] if items else None
        return conlist(
            _wire_node_type(items, f"{model_name}Item"),
            min_length=_int_or_none(schema.get("minItems")),
            max_length=_int_or_none(schema.get("maxItems")),
        )
    if kind is SchemaKind.OBJECT:
        if not schema.get("properties"):
            return Dict[str, Any]
        result = _wire_object_fields(schema, model_name)
        fields = result[0] if result else {}
        return create_model(model_name, __config__=_MODEL_CONFIG, **fields)
    return Any


# Helpers


def _enum_type(values: List[Any], numeric_only: bool) -> Any:
    unique: List[Any] = []
    for value in values:
        if value not in unique:
            unique.append(value)
    if numeric_only and not all(_is_number(v) for v in unique):
        return _literal_type([str(v) for v in unique])
    return _literal_type(unique)


def _literal_type(values: List[Any]) -> Any:
    try:
        for value in values:
            hash(value)
    except TypeError:
        return Any
    literal = Literal[tuple(values)]  # type: ignore[valid-type]
    if values and all(_is_number(v) for v in values):
        return Annotated[literal, BeforeValidator(_require_number)]
    return literal


def _require_number(value: Any) -> Any:
    if not _is_number(value):
        raise ValueError(f"expected a number, got {type(value).__name__}")
    return value


def _field_name(
    name: str, index: int, existing: Mapping[str, Any]
) -> Tuple[str, Optional[str]]:
    usable = (
        name.isidentifier()
        and not keyword.iskeyword(name)
        and not name.startswith("_")
        and not name.startswith("model_")
        and not hasattr(BaseModel, name)
        and name not in existing
    )
    if usable:
        return name, None
    return f"field_{index}", name


def _type_list(value: Any) -> List[str]:
    if not value:
        return []
    if isinstance(value, list):
        return [str(v) for v in value]
    return [str(value)]


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def _int_or_none(value: Any) -> Optional[int]:
    return value if isinstance(value, int) and not isinstance(value, bool) else None


def _number_or_none(value: Any) -> Optional[float]:
    return value if _is_number(value) else None


def _compiles(pattern: str) -> bool:
    try:
        re.compile(pattern)
    except re.error:
        return False
    return True


def model_name_for(name: str, suffix: str) -> str:
    """CamelCase model name derived from a workflow or tool name."""
    parts = re.split(r"[^0-9A-Za-z]+", name)
    return "".join(part[:1].upper() + part[1:] for part in parts if part) + suffix
