"""Template rendering helpers shared by prompt and scripted workflows."""

import json
import re
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

PLACEHOLDER_PATTERN = re.compile(r"\{\{\s*([^}]+?)\s*\}\}")
_LONE_PLACEHOLDER_PATTERN = re.compile(r"^\{\{\s*([^}]+?)\s*\}\}$")


@dataclass
class ToolItem:
    """One advisory tool entry rendered under ``## Available Tools``."""

    name: str
    description: str = ""
    prompt: str = ""
    optional: bool = False


def stringify(value: Any) -> str:
    """Render a context value as template text."""
    if isinstance(value, str):
        return value
    if isinstance(value, bool):
        return "true" if value else "false"
    if value is None:
        return "null"
    if isinstance(value, (dict, list)):
        return json.dumps(value, default=str)
    return str(value)


def process_template(
    template: Optional[str], params: Optional[Mapping[str, Any]]
) -> Tuple[str, Set[str]]:
    """Replace ``{{ name }}`` placeholders with parameter values.

    Unknown placeholders are left untouched. Returns the rendered text and the
    set of parameter names that were substituted.
    """
    used: Set[str] = set()
    if template is None:
        return "", used
    if not params:
        return template, used

    def _substitute(match: "re.Match[str]") -> str:
        name = match.group(1).strip()
        if name in params:
            used.add(name)
            return stringify(params[name])
        return match.group(0)

    return PLACEHOLDER_PATTERN.sub(_substitute, template), used


def render_value(value: Any, context: Mapping[str, Any]) -> Any:
    """Render one argument template against the execution context.

    A string that is exactly one known placeholder yields the raw context
    value with its type intact. Any other string renders to text. Lists and
    dicts are rendered element by element; other values pass through.
    """
    if isinstance(value, str):
        lone = _LONE_PLACEHOLDER_PATTERN.match(value.strip())
        if lone:
            name = lone.group(1).strip()
            if name in context:
                return context[name]
        return process_template(value, context)[0]
    if isinstance(value, list):
        return [render_value(item, context) for item in value]
    if isinstance(value, dict):
        return {key: render_value(item, context) for key, item in value.items()}
    return value


def render_args(
    args: Optional[Mapping[str, Any]], context: Mapping[str, Any]
) -> Dict[str, Any]:
    if not args:
        return {}
    return {key: render_value(value, context) for key, value in args.items()}


def format_tools_list(tools: Any) -> List[ToolItem]:
    """Normalize a ``tools`` declaration into a list of ``ToolItem``."""
    if tools is None:
        return []
    if isinstance(tools, str):
        if not tools.strip():
            return [ToolItem(name="")]
        return [ToolItem(name=name.strip()) for name in tools.split(",")]

    items: List[ToolItem] = []
    for name, value in tools.items():
        if isinstance(value, str):
            items.append(ToolItem(name=name, description=value))
        elif value is not None:
            data = value if isinstance(value, dict) else value.model_dump()
            items.append(
                ToolItem(
                    name=name,
                    description=data.get("description") or "",
                    prompt=data.get("prompt") or "",
                    optional=bool(data.get("optional")),
                )
            )
        else:
            items.append(ToolItem(name=name))
    return items


def _format_tool_line(tool: ToolItem) -> str:
    line = tool.name
    if tool.description:
        line += f": {tool.description}"
        if tool.prompt:
            line += f" - {tool.prompt}"
    elif tool.prompt:
        line += f": {tool.prompt}"
    if tool.optional:
        line += " (Optional)"
    return line


def append_formatted_tools(
    base_text: str, tools: List[ToolItem], tool_mode: Optional[str] = None
) -> str:
    """Append the ``## Available Tools`` guidance section to a prompt."""
    if not tools:
        return base_text

    text = f"{base_text}\n\n## Available Tools\n"
    if tool_mode == "sequential":
        text += (
            "If all required user input/feedback is acquired or if no input/feedback "
            "is needed, execute this exact sequence of tools to complete this task:\n\n"
        )
        for index, tool in enumerate(tools, start=1):
            text += f"{index}. {_format_tool_line(tool)}\n"
    else:
        text += "Use these tools as needed to complete the user's request:\n\n"
        for tool in tools:
            text += f"- {_format_tool_line(tool)}\n"

    text += (
        "\nAfter using each tool, return a 'Next Steps' section with a list of the "
        "next steps to take / remaining tools to invoke along with each tool's "
        "prompt/description and 'optional' flag if present."
    )
    return text
