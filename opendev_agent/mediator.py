"""Approval-gated mediation between model tool calls and tool executors."""

from collections.abc import Awaitable, Callable
from pathlib import Path
from typing import Any

from opendev_agent.events import EventChannel, EventKind
from opendev_agent.exceptions import (
    ExecutionCancelledError,
    PathTraversalError,
    ToolExecutionError,
)
from opendev_agent.limits import SandboxLimitsTracker
from opendev_agent.llm import ToolCall
from opendev_agent.logging import get_logger
from opendev_agent.models import (
    Action,
    ActionResult,
    ActionStatus,
    ActionType,
    ExecutionStatus,
    FILE_ACTION_TYPES,
    TASK_STATUS_VALIDATION,
    ToolApprovalSettings,
)
from opendev_agent.paths import validate_path
from opendev_agent.store import ExecutionStore
from opendev_agent.tools.registry import ToolRegistry, ToolResult

log = get_logger(__name__)

APPROVAL_SUFFIX = "Waiting for user approval."
PAUSED_MESSAGE = (
    "Not executed: execution is paused waiting for answers to your questions. "
    "Call this tool again after the answers arrive."
)


def proposal_message(action_type: ActionType, params: dict[str, Any]) -> str:
    """Sentinel returned to the model instead of a real result."""
    path = params.get("path", "")
    descriptions = {
        ActionType.READ_FILE: f"Read file at {path}",
        ActionType.LIST_DIRECTORY: f"List directory at {path}",
        ActionType.WRITE_FILE: f"Write file at {path}",
        ActionType.EDIT_FILE: f"Edit file at {path}",
        ActionType.DELETE_FILE: f"Delete file at {path}",
        ActionType.EXECUTE_COMMAND: f'Execute command "{params.get("command", "")}"',
        ActionType.COMPLETE_TASK: "Mark task as complete",
    }
    return f"Proposed: {descriptions.get(action_type, action_type.value)}. {APPROVAL_SUFFIX}"


def question_message(question: str) -> str:
    return (
        f"Question asked: {question}\n"
        "Execution is now paused until the user answers. The answer is not available "
        "in this turn; do not assume one. Stop and wait."
    )


StatusSetter = Callable[[str, ExecutionStatus], Awaitable[Any]]


class ToolMediator:
    """Dispatches one activation's tool calls per the project's approval policy.

    Immediate tools run now and their output goes back to the model. Gated
    tools are persisted as proposals with no side effect. ``askQuestion``
    records a question and pauses the execution.
    """

    def __init__(
        self,
        *,
        execution_id: str,
        task_id: str,
        working_directory: Path | str,
        approval: ToolApprovalSettings,
        registry: ToolRegistry,
        tracker: SandboxLimitsTracker,
        store: ExecutionStore,
        channel: EventChannel,
        set_status: StatusSetter,
    ):
        self.execution_id = execution_id
        self.task_id = task_id
        self.working_directory = Path(working_directory)
        self.approval = approval
        self.registry = registry
        self.tracker = tracker
        self.store = store
        self.channel = channel
        self._set_status = set_status
        self.paused = False
        self.actions_recorded = 0

    async def _checkpoint(self) -> None:
        execution = await self.store.get_execution(self.execution_id)
        if execution.status == ExecutionStatus.CANCELLED:
            raise ExecutionCancelledError(self.execution_id)

    async def _record(
        self,
        action_type: ActionType,
        params: dict[str, Any],
        status: ActionStatus,
        result: ActionResult | None = None,
    ) -> Action:
        action = await self.store.append_action(self.execution_id, action_type, params, status, result)
        self.actions_recorded += 1
        self.channel.emit(EventKind.ACTION, action.to_dict())
        return action

    def _count_budget(self, action_type: ActionType, params: dict[str, Any]) -> None:
        if action_type == ActionType.WRITE_FILE:
            self.tracker.validate_file_size(len(str(params.get("content", "")).encode("utf-8")))
        if action_type in FILE_ACTION_TYPES:
            self.tracker.track_file_operation()
        elif action_type == ActionType.EXECUTE_COMMAND:
            self.tracker.track_command()

    async def dispatch(self, call: ToolCall) -> str:
        """Mediate one tool call and return the text the model sees.

        Raises:
            LimitExceededError: a sandbox budget was exceeded
            ExecutionCancelledError: the execution was cancelled
        """
        await self._checkpoint()
        name = call.name
        if self.paused and name != ActionType.ASK_QUESTION.value:
            log.info("Skipping tool call while paused", tool=name, execution_id=self.execution_id)
            return PAUSED_MESSAGE

        self.tracker.check_time_limit()

        arguments = dict(call.arguments or {})
        if not self.registry.has_tool(name):
            log.warning("Model requested unknown tool", tool=name, execution_id=self.execution_id)
            return f"Error: Unknown tool: {name}"
        try:
            self.registry.get(name).validate_arguments(arguments)
        except ToolExecutionError as e:
            return f"Error: {e}"

        action_type = ActionType(name)
        if action_type == ActionType.ASK_QUESTION:
            return await self._ask_question(arguments)

        gated = self.approval.requires_approval(name)

        if "path" in arguments:
            try:
                validate_path(self.working_directory, arguments["path"])
            except PathTraversalError as e:
                log.warning("Rejected path outside working directory", tool=name, path=arguments["path"])
                if not gated:
                    await self._record(
                        action_type,
                        arguments,
                        ActionStatus.FAILED,
                        ActionResult(success=False, error=str(e)),
                    )
                return f"Error: {e}"

        self._count_budget(action_type, arguments)

        if gated:
            await self._record(action_type, arguments, ActionStatus.PROPOSED)
            log.info("Proposed action", tool=name, execution_id=self.execution_id)
            return proposal_message(action_type, arguments)

        if action_type == ActionType.COMPLETE_TASK:
            return await self._complete_task_now(arguments)

        try:
            result = await self.registry.execute(name, arguments, self.working_directory)
        except ToolExecutionError as e:
            result = ToolResult(success=False, error=str(e))

        status = ActionStatus.COMPLETED if result.success else ActionStatus.FAILED
        await self._record(action_type, arguments, status, result.to_action_result())
        return result.for_model()

    async def _complete_task_now(self, arguments: dict[str, Any]) -> str:
        summary = str(arguments.get("summary", ""))
        await self._record(
            ActionType.COMPLETE_TASK,
            arguments,
            ActionStatus.COMPLETED,
            ActionResult(success=True, output=summary),
        )
        await self.store.set_task_status(self.task_id, TASK_STATUS_VALIDATION)
        self.channel.emit(EventKind.TASK_COMPLETED, {"taskId": self.task_id})
        return f"Task moved to validation: {summary}"

    async def _ask_question(self, arguments: dict[str, Any]) -> str:
        text = str(arguments.get("question", "")).strip()
        context = arguments.get("context")
        question = await self.store.create_question(self.execution_id, text, context)
        await self._record(
            ActionType.ASK_QUESTION,
            {**arguments, "questionId": question.id},
            ActionStatus.COMPLETED,
            ActionResult(success=True, output=f"Question asked: {text}"),
        )

        if not self.paused:
            await self._set_status(self.execution_id, ExecutionStatus.AWAITING_QUESTION)
            self.channel.emit(
                EventKind.STATUS,
                {"executionId": self.execution_id, "status": ExecutionStatus.AWAITING_QUESTION.value},
            )
            self.paused = True

        self.channel.emit(EventKind.QUESTION, question.to_dict())
        log.info("Question asked, pausing execution", execution_id=self.execution_id, question_id=question.id)
        return question_message(text)
