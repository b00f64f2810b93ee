"""Tool registry and base tool class."""

import asyncio
from abc import ABC, abstractmethod
from pathlib import Path
from typing import Any

from pydantic import BaseModel, model_validator

from opendev_agent.exceptions import ToolExecutionError, ToolNotFoundError
from opendev_agent.llm import ToolDefinition
from opendev_agent.logging import get_logger
from opendev_agent.models import ActionResult, ToolApprovalSettings

log = get_logger(__name__)


class ToolResult(BaseModel):
    """Result from tool execution."""

    success: bool = True
    output: str = ""
    error: str | None = None

    @model_validator(mode="after")
    def _normalize_failure_error(self) -> "ToolResult":
        """Ensure failed results always provide an error message."""
        if not self.success and not (self.error or "").strip():
            fallback = (self.output or "").strip()
            self.error = fallback or "Tool execution failed"
        return self

    def to_action_result(self) -> ActionResult:
        if self.success:
            return ActionResult(success=True, output=self.output)
        return ActionResult(success=False, output=self.output or None, error=self.error)

    def for_model(self) -> str:
        """Text handed back to the model as the tool's return value."""
        if self.success:
            return self.output
        return f"Error: {self.error}"


class Tool(ABC):
    """Base class for all tools."""

    name: str = ""
    description: str = ""
    parameters: dict[str, Any] = {}
    timeout_seconds: float = 30.0

    @abstractmethod
    async def execute(self, **kwargs: Any) -> ToolResult:
        """Execute the tool.

        Args:
            **kwargs: Tool-specific arguments plus ``_working_directory``

        Returns:
            ToolResult with success status and output
        """
        pass

    def describe(self, requires_approval: bool) -> str:
        """Model-facing description reflecting the approval policy."""
        suffix = (
            "This requires user approval before execution."
            if requires_approval
            else "This executes immediately without approval."
        )
        return f"{self.description} {suffix}"

    def get_definition(self, requires_approval: bool = False) -> ToolDefinition:
        return ToolDefinition(
            name=self.name,
            description=self.describe(requires_approval),
            parameters=self.parameters,
        )

    def validate_arguments(self, arguments: dict[str, Any]) -> None:
        """Check required arguments are present and string-typed fields are strings.

        Raises:
            ToolExecutionError if invalid
        """
        if not isinstance(arguments, dict):
            raise ToolExecutionError(self.name, "Arguments must be an object")
        properties = self.parameters.get("properties", {})
        for field_name in self.parameters.get("required", []):
            if field_name not in arguments:
                raise ToolExecutionError(
                    self.name,
                    f"Missing required argument: {field_name}",
                )
        for field_name, value in arguments.items():
            expected = properties.get(field_name, {}).get("type")
            if expected == "string" and value is not None and not isinstance(value, str):
                raise ToolExecutionError(
                    self.name,
                    f"Argument '{field_name}' must be a string",
                )


class ToolRegistry:
    """Registry for managing available tools."""

    def __init__(self):
        self._tools: dict[str, Tool] = {}

    def register(self, tool: Tool) -> None:
        """Register a tool.

        Args:
            tool: Tool instance to register
        """
        if not tool.name:
            raise ValueError("Tool must have a name")

        log.debug("Registering tool", tool=tool.name)
        self._tools[tool.name] = tool

    def has_tool(self, name: str) -> bool:
        """Return whether a tool name is currently registered."""
        return name in self._tools

    def get(self, name: str) -> Tool:
        """Get a tool by name.

        Raises:
            ToolNotFoundError if not found
        """
        if name not in self._tools:
            raise ToolNotFoundError(name)
        return self._tools[name]

    def get_definitions(self, approval: ToolApprovalSettings | None = None) -> list[ToolDefinition]:
        """Tool definitions for the model, described per approval policy."""
        settings = approval or ToolApprovalSettings()
        return [
            tool.get_definition(settings.requires_approval(tool.name))
            for tool in self._tools.values()
        ]

    async def execute(
        self,
        name: str,
        arguments: dict[str, Any],
        working_directory: Path | str,
    ) -> ToolResult:
        """Execute a tool by name against a working directory.

        Raises:
            ToolNotFoundError if tool not found
            ToolExecutionError if arguments are invalid, the tool times out
                or raises unexpectedly
        """
        tool = self.get(name)
        tool.validate_arguments(arguments)

        timeout_seconds = max(1.0, float(getattr(tool, "timeout_seconds", 30.0) or 30.0))
        try:
            log.info("Executing tool", tool=name, args=arguments)
            result = await asyncio.wait_for(
                tool.execute(**arguments, _working_directory=Path(working_directory)),
                timeout=timeout_seconds,
            )
        except asyncio.TimeoutError:
            timeout_label = int(timeout_seconds) if timeout_seconds.is_integer() else timeout_seconds
            raise ToolExecutionError(name, f"Execution timed out after {timeout_label}s")
        except ToolExecutionError:
            raise
        except Exception as e:
            log.error("Tool execution failed", tool=name, error=str(e))
            raise ToolExecutionError(name, str(e))

        if not isinstance(result, ToolResult):
            raise ToolExecutionError(name, "Tool returned invalid result payload")
        log.info("Tool executed", tool=name, success=result.success)
        return result
