"""Exception hierarchy for the Workflow MCP Server.

Startup problems (bad declarations, bad servers.json, missing environment
variables) raise ``ConfigurationError`` subclasses and abort the server.
Call-time problems raise the remaining classes; the dispatcher turns them into
``isError`` tool results so the protocol session stays alive.
"""

from typing import Any, Dict, List, Optional, Sequence


class WorkflowServerError(Exception):
    """Base class for every error raised by this package."""

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)


# Configuration errors


class ConfigurationError(WorkflowServerError):
    """Invalid workflow declaration, registry entry or duplicate name."""


class MissingEnvironmentVariableError(ConfigurationError):
    """A ``${VAR}`` placeholder references an undefined variable."""

    def __init__(self, variable: str, alias: str, source: str) -> None:
        self.variable = variable
        self.alias = alias
        self.source = source
        super().__init__(
            f"Missing environment variable '{variable}' referenced by server "
            f"'{alias}' in {source}"
        )


class SchemaConversionError(ConfigurationError):
    """A JSON Schema cannot be turned into an argument validator."""


# Remote server errors


class ExternalServerError(WorkflowServerError):
    """Problem reaching or addressing a remote MCP server alias."""


class ToolNotFoundError(ExternalServerError):
    """The alias catalog does not contain the requested tool."""

    def __init__(
        self, alias: str, tool: str, suggestions: Optional[Sequence[str]] = None
    ) -> None:
        self.alias = alias
        self.tool = tool
        self.suggestions: List[str] = list(suggestions or [])
        hint = (
            f" Did you mean: {', '.join(self.suggestions)}?" if self.suggestions else ""
        )
        super().__init__(
            f"Server '{alias}' does not expose tool '{tool}'. Use the "
            "'describe_tools' helper to see cached tools, or inspect the server "
            f"directly.{hint}"
        )


# Call-time errors


class ParameterValidationError(WorkflowServerError):
    """Arguments do not match the declared or discovered schema."""

    def __init__(self, errors: List[Dict[str, Any]], subject: str = "parameters"):
        self.errors = errors
        details = "; ".join(
            f"{_format_location(err.get('loc', ()))}: {err.get('msg', 'invalid')}"
            for err in errors
        )
        super().__init__(f"Invalid {subject}: {details}")


class StepExecutionError(WorkflowServerError):
    """A scripted pipeline step failed while calling its remote tool."""

    def __init__(self, index: int, target: str, message: str) -> None:
        self.index = index
        self.target = target
        super().__init__(f"Step #{index + 1} ({target}) failed: {message}")


class StepValidationError(StepExecutionError):
    """Rendered step arguments were rejected before the remote call."""

    def __init__(self, index: int, target: str, message: str) -> None:
        self.index = index
        self.target = target
        WorkflowServerError.__init__(
            self, f"Step #{index + 1} ({target}) argument validation failed: {message}"
        )


class PersistenceError(WorkflowServerError):
    """The cache snapshot could not be loaded or saved."""


def _format_location(loc: Sequence[Any]) -> str:
    if not loc:
        return "(root)"
    return ".".join(str(part) for part in loc)
