"""Custom exceptions for OpenDev Agent."""


class OpenDevAgentError(Exception):
    """Base exception for OpenDev Agent."""

    pass


class ConfigurationError(OpenDevAgentError):
    """Configuration-related errors."""

    pass


class LLMError(OpenDevAgentError):
    """LLM-related errors."""

    pass


class LLMAPIError(LLMError):
    """LLM API errors (rate limit, auth, etc.)."""

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.status_code = status_code


class ToolError(OpenDevAgentError):
    """Tool execution errors."""

    pass


class ToolExecutionError(ToolError):
    """Tool execution failed."""

    def __init__(self, tool_name: str, message: str):
        super().__init__(f"Tool '{tool_name}' failed: {message}")
        self.tool_name = tool_name


class ToolNotFoundError(ToolError):
    """Tool not found in registry."""

    def __init__(self, tool_name: str):
        super().__init__(f"Tool not found: {tool_name}")
        self.tool_name = tool_name


class PathTraversalError(ToolError):
    """A tool path resolved outside of the working directory."""

    def __init__(self, relative_path: str, root: str):
        super().__init__(f'Path "{relative_path}" is outside the working directory')
        self.relative_path = relative_path
        self.root = root


class LimitExceededError(OpenDevAgentError):
    """A sandbox budget was exceeded during an activation."""

    def __init__(self, limit_type: str, limit_value: int, current_value: int, message: str | None = None):
        super().__init__(
            message or f"Sandbox limit exceeded: {limit_type} ({current_value} / {limit_value})"
        )
        self.limit_type = limit_type
        self.limit_value = limit_value
        self.current_value = current_value

    def to_dict(self) -> dict[str, object]:
        return {
            "limitType": self.limit_type,
            "limitValue": self.limit_value,
            "currentValue": self.current_value,
            "message": str(self),
        }


class ExecutionError(OpenDevAgentError):
    """Execution lifecycle errors."""

    pass


class ExecutionNotFoundError(ExecutionError):
    """Execution not found."""

    def __init__(self, execution_id: str):
        super().__init__(f"Execution not found: {execution_id}")
        self.execution_id = execution_id


class InvalidExecutionStateError(ExecutionError):
    """Operation not allowed in the execution's current status."""

    def __init__(self, execution_id: str, status: str, message: str):
        super().__init__(message)
        self.execution_id = execution_id
        self.status = status


class InvalidTransitionError(ExecutionError):
    """Illegal execution status transition."""

    def __init__(self, current: str, target: str):
        super().__init__(f"Invalid execution transition: {current} -> {target}")
        self.current = current
        self.target = target


class ExecutionCancelledError(ExecutionError):
    """Raised at a checkpoint once the execution has been cancelled."""

    def __init__(self, execution_id: str):
        super().__init__(f"Execution cancelled: {execution_id}")
        self.execution_id = execution_id


class QuestionNotFoundError(ExecutionError):
    """Question not found."""

    def __init__(self, question_id: str):
        super().__init__(f"Question not found: {question_id}")
        self.question_id = question_id


class NotFoundError(OpenDevAgentError):
    """Referenced project or task does not exist."""

    def __init__(self, kind: str, identifier: str):
        super().__init__(f"{kind.capitalize()} not found: {identifier}")
        self.kind = kind
        self.identifier = identifier
