"""Scripted pipeline preparation and execution."""

import json
import logging
from dataclasses import dataclass
from typing import TYPE_CHECKING, Any, Dict, List, Mapping, Optional, Sequence

from .config import StepConfig, parse_call_reference
from .exceptions import ConfigurationError, ParameterValidationError
from .exceptions import StepExecutionError, StepValidationError
from .schema_bridge import Validator, model_name_for, wire_schema_to_validator
from .templates import render_args

if TYPE_CHECKING:
    from .cache import ToolCache
    from .runtime import RemoteToolRuntime

logger = logging.getLogger(__name__)

__all__ = [
    "PreparedStep",
    "append_step_result",
    "response_content",
    "response_to_result",
    "parse_call_reference",
    "prepare_steps",
    "run_pipeline",
    "text_content",
]


def text_content(text: str) -> Dict[str, Any]:
    return {"type": "text", "text": text}


@dataclass(frozen=True)
class PreparedStep:
    """A step bound to its resolved remote tool and argument validator."""

    index: int
    alias: str
    tool: str
    config: StepConfig
    validator: Optional[Validator] = None

    @property
    def target(self) -> str:
        return f"{self.alias}:{self.tool}"


async def prepare_steps(
    workflow_name: str, steps: Sequence[StepConfig], cache: "ToolCache"
) -> List[PreparedStep]:
    """Resolve every step against the tool cache before registration.

    Raises ``ConfigurationError`` naming the step when a referenced tool
    cannot be found.
    """
    prepared: List[PreparedStep] = []
    for index, step in enumerate(steps):
        alias, tool = parse_call_reference(step.call)
        try:
            descriptor = await cache.get_tool(alias, tool)
        except Exception as e:
            raise ConfigurationError(
                f"Tool '{workflow_name}' step #{index + 1} references unknown tool "
                f"'{alias}:{tool}' ({e})"
            ) from e

        validator = wire_schema_to_validator(
            descriptor.input_schema,
            model_name=model_name_for(workflow_name, f"Step{index + 1}Arguments"),
        )
        prepared.append(
            PreparedStep(
                index=index,
                alias=alias,
                tool=descriptor.name,
                config=step,
                validator=validator,
            )
        )
    return prepared


async def run_pipeline(
    workflow_name: str,
    steps: Sequence[PreparedStep],
    params: Mapping[str, Any],
    runtime: "RemoteToolRuntime",
) -> Dict[str, Any]:
    """Execute prepared steps in order, threading results through a context."""
    context: Dict[str, Any] = dict(params)
    content: List[Any] = []
    encountered_error = False

    for step in steps:
        requires = step.config.requires
        if requires and not context.get(requires):
            logger.debug(f"Skipping step #{step.index + 1} ({step.target}): '{requires}' unset")
            continue

        rendered = render_args(step.config.args, context) if step.config.args else None
        if step.validator is not None:
            try:
                step.validator.validate(rendered or {})
            except ParameterValidationError as e:
                raise StepValidationError(step.index, step.target, e.message) from e

        logger.debug(f"Running step #{step.index + 1} ({step.target}) of {workflow_name}")
        try:
            response = await runtime.call_tool(step.alias, step.tool, rendered)
        except Exception as e:
            raise StepExecutionError(step.index, step.target, str(e)) from e

        if isinstance(response, dict) and response.get("isError"):
            encountered_error = True
        append_step_result(content, step, response)
        if step.config.save_as:
            context[step.config.save_as] = response

    if not content:
        content.append(
            text_content(f"Workflow '{workflow_name}' completed but produced no step output")
        )

    result: Dict[str, Any] = {"content": content}
    if encountered_error:
        result["isError"] = True
    return result


def append_step_result(content: List[Any], step: PreparedStep, response: Any) -> None:
    if not step.config.quiet:
        content.append(text_content(f"Step {step.index + 1}: {step.target}"))
    content.extend(response_content(response))


def response_content(response: Any) -> List[Any]:
    """Content blocks of a remote response, or a text rendering of it."""
    items = response.get("content") if isinstance(response, dict) else None
    if isinstance(items, list) and items:
        return list(items)
    if response is None:
        return [text_content("(no response)")]
    if isinstance(response, str):
        return [text_content(response)]
    if isinstance(response, (dict, list)):
        return [text_content(json.dumps(response, indent=2, default=str))]
    return [text_content(str(response))]


def response_to_result(response: Any) -> Dict[str, Any]:
    """Shape a raw remote response as a tool result."""
    result: Dict[str, Any] = {"content": response_content(response)}
    if isinstance(response, dict) and response.get("isError"):
        result["isError"] = True
    return result
