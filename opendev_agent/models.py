"""Execution, action and question records plus typed sandbox settings."""

import json
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from opendev_agent.logging import get_logger

log = get_logger(__name__)


def utcnow_iso() -> str:
    """Return current UTC timestamp in ISO format."""
    return datetime.now(UTC).isoformat()


class ExecutionStatus(str, Enum):
    PENDING = "pending"
    ANALYZING = "analyzing"
    AWAITING_APPROVAL = "awaiting_approval"
    AWAITING_QUESTION = "awaiting_question"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset(
    {ExecutionStatus.COMPLETED, ExecutionStatus.FAILED, ExecutionStatus.CANCELLED}
)

# Allowed lifecycle edges; cancellation is handled separately.
EXECUTION_TRANSITIONS: dict[ExecutionStatus, frozenset[ExecutionStatus]] = {
    ExecutionStatus.PENDING: frozenset({ExecutionStatus.ANALYZING}),
    ExecutionStatus.ANALYZING: frozenset(
        {
            ExecutionStatus.AWAITING_QUESTION,
            ExecutionStatus.AWAITING_APPROVAL,
            ExecutionStatus.FAILED,
        }
    ),
    ExecutionStatus.AWAITING_QUESTION: frozenset({ExecutionStatus.ANALYZING, ExecutionStatus.FAILED}),
    ExecutionStatus.AWAITING_APPROVAL: frozenset({ExecutionStatus.EXECUTING}),
    ExecutionStatus.EXECUTING: frozenset({ExecutionStatus.COMPLETED, ExecutionStatus.FAILED}),
    ExecutionStatus.COMPLETED: frozenset(),
    ExecutionStatus.FAILED: frozenset(),
    ExecutionStatus.CANCELLED: frozenset(),
}


def can_transition(current: ExecutionStatus, target: ExecutionStatus) -> bool:
    """Return whether ``current -> target`` is a legal lifecycle edge."""
    if target == ExecutionStatus.CANCELLED:
        return current not in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)
    return target in EXECUTION_TRANSITIONS.get(current, frozenset())


class ActionType(str, Enum):
    READ_FILE = "readFile"
    LIST_DIRECTORY = "listDirectory"
    WRITE_FILE = "writeFile"
    EDIT_FILE = "editFile"
    DELETE_FILE = "deleteFile"
    EXECUTE_COMMAND = "executeCommand"
    COMPLETE_TASK = "completeTask"
    ASK_QUESTION = "askQuestion"


FILE_ACTION_TYPES = frozenset(
    {
        ActionType.READ_FILE,
        ActionType.LIST_DIRECTORY,
        ActionType.WRITE_FILE,
        ActionType.EDIT_FILE,
        ActionType.DELETE_FILE,
    }
)


class ActionStatus(str, Enum):
    PROPOSED = "proposed"
    APPROVED = "approved"
    REJECTED = "rejected"
    EXECUTING = "executing"
    COMPLETED = "completed"
    FAILED = "failed"


class QuestionStatus(str, Enum):
    PENDING = "pending"
    ANSWERED = "answered"


TASK_STATUS_VALIDATION = "validation"


@dataclass
class Execution:
    """One end-to-end run of the agent against a task."""

    id: str
    task_id: str
    project_id: str
    status: ExecutionStatus = ExecutionStatus.PENDING
    error_message: str | None = None
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    completed_at: str | None = None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "taskId": self.task_id,
            "projectId": self.project_id,
            "status": self.status.value,
            "errorMessage": self.error_message,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "completedAt": self.completed_at,
        }


@dataclass
class ActionResult:
    """Outcome of running a tool executor."""

    success: bool
    output: str | None = None
    error: str | None = None

    def to_dict(self) -> dict[str, Any]:
        data: dict[str, Any] = {"success": self.success}
        if self.output is not None:
            data["output"] = self.output
        if self.error is not None:
            data["error"] = self.error
        return data

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "ActionResult | None":
        if not isinstance(data, dict):
            return None
        return cls(
            success=bool(data.get("success")),
            output=data.get("output"),
            error=data.get("error"),
        )


@dataclass
class Action:
    """A single proposed or executed tool invocation."""

    id: str
    execution_id: str
    action_type: ActionType
    params: dict[str, Any]
    status: ActionStatus
    sequence: int = 0
    result: ActionResult | None = None
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "executionId": self.execution_id,
            "type": self.action_type.value,
            "params": self.params,
            "status": self.status.value,
            "result": self.result.to_dict() if self.result else None,
            "sequence": self.sequence,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class Question:
    """A clarifying question asked by the agent."""

    id: str
    execution_id: str
    question: str
    context: str | None = None
    response: str | None = None
    status: QuestionStatus = QuestionStatus.PENDING
    created_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "executionId": self.execution_id,
            "question": self.question,
            "context": self.context,
            "response": self.response,
            "status": self.status.value,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
        }


@dataclass
class Project:
    """Project fields the orchestrator reads."""

    id: str
    name: str
    description: str = ""
    guidelines: str = ""
    working_directory: str | None = None
    working_directory_confirmed: bool = False
    tool_approval_settings: str | None = None
    sandbox_limits: str | None = None


@dataclass
class Task:
    """Task fields the orchestrator reads and updates."""

    id: str
    project_id: str
    title: str
    description: str = ""
    priority: str = "medium"
    status: str = "todo"


class SandboxLimits(BaseModel):
    """Six independent resource budgets; 0 disables a dimension."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    max_execution_time_seconds: int = Field(default=300, ge=0, alias="maxExecutionTimeSeconds")
    max_tokens: int = Field(default=100000, ge=0, alias="maxTokens")
    max_file_operations: int = Field(default=50, ge=0, alias="maxFileOperations")
    max_commands: int = Field(default=10, ge=0, alias="maxCommands")
    max_file_size_bytes: int = Field(default=1048576, ge=0, alias="maxFileSizeBytes")
    max_steps: int = Field(default=20, ge=0, alias="maxSteps")

    def to_wire(self) -> dict[str, int]:
        return self.model_dump(by_alias=True)

    @classmethod
    def parse_stored(
        cls,
        raw: str | dict[str, Any] | None,
        defaults: "SandboxLimits | None" = None,
    ) -> "SandboxLimits":
        """Merge stored overrides onto defaults, falling back to defaults on bad input."""
        base = defaults or cls()
        if raw is None or raw == "":
            return base
        try:
            data = json.loads(raw) if isinstance(raw, str) else dict(raw)
            if not isinstance(data, dict):
                raise ValueError("sandbox limits must be an object")
            merged = base.to_wire()
            for key, value in data.items():
                merged[key] = value
            return cls.model_validate(merged)
        except (ValueError, TypeError, ValidationError) as e:
            log.warning("Invalid stored sandbox limits, using defaults", error=str(e))
            return base


class SandboxUsage(BaseModel):
    """Per-activation usage counters."""

    execution_start_time: float
    tokens_used: int = 0
    file_operations_count: int = 0
    commands_count: int = 0
    steps_count: int = 0


APPROVAL_TOOL_NAMES = (
    ActionType.READ_FILE.value,
    ActionType.LIST_DIRECTORY.value,
    ActionType.WRITE_FILE.value,
    ActionType.EDIT_FILE.value,
    ActionType.DELETE_FILE.value,
    ActionType.EXECUTE_COMMAND.value,
    ActionType.COMPLETE_TASK.value,
)


class ToolApprovalSettings(BaseModel):
    """Per-project map of tool name to "requires approval"."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    read_file: bool = Field(default=False, alias="readFile")
    list_directory: bool = Field(default=False, alias="listDirectory")
    write_file: bool = Field(default=True, alias="writeFile")
    edit_file: bool = Field(default=True, alias="editFile")
    delete_file: bool = Field(default=True, alias="deleteFile")
    execute_command: bool = Field(default=True, alias="executeCommand")
    complete_task: bool = Field(default=True, alias="completeTask")

    def to_wire(self) -> dict[str, bool]:
        return self.model_dump(by_alias=True)

    def requires_approval(self, tool_name: str) -> bool:
        """askQuestion and unknown tools are always gated."""
        return bool(self.to_wire().get(tool_name, True))

    @classmethod
    def parse_stored(
        cls,
        raw: str | dict[str, Any] | None,
        defaults: "ToolApprovalSettings | None" = None,
    ) -> "ToolApprovalSettings":
        """Overlay stored settings on defaults; bad input degrades to defaults."""
        base = defaults or cls()
        if raw is None or raw == "":
            return base
        try:
            data = json.loads(raw) if isinstance(raw, str) else dict(raw)
            if not isinstance(data, dict):
                raise ValueError("tool approval settings must be an object")
            merged = base.to_wire()
            for key, value in data.items():
                if key in merged and value is not None:
                    merged[key] = value
            return cls.model_validate(merged)
        except (ValueError, TypeError, ValidationError) as e:
            log.warning("Invalid stored tool approval settings, using defaults", error=str(e))
            return base
