"""Execution state machine driving the agent's tool-calling loop.

One ``ExecutionOrchestrator`` owns every run it starts: each activation (a
start, or a resume after questions are answered) and each approved-batch
execution runs as its own asyncio task, keyed by execution id. Within a run
everything is sequential; the model is never called again until the previous
step's tool results are known.
"""

import asyncio
import time
from collections.abc import Callable
from typing import Any

from opendev_agent.config import Config, get_config
from opendev_agent.events import EventChannel, EventKind
from opendev_agent.exceptions import (
    ConfigurationError,
    ExecutionCancelledError,
    InvalidExecutionStateError,
    InvalidTransitionError,
    LimitExceededError,
    LLMError,
    ToolExecutionError,
)
from opendev_agent.limits import SandboxLimitsTracker
from opendev_agent.llm import LLMProvider, Message
from opendev_agent.logging import get_logger
from opendev_agent.mediator import ToolMediator
from opendev_agent.models import (
    Action,
    ActionResult,
    ActionStatus,
    ActionType,
    Execution,
    ExecutionStatus,
    Project,
    Question,
    QuestionStatus,
    SandboxLimits,
    TASK_STATUS_VALIDATION,
    Task,
    ToolApprovalSettings,
    can_transition,
)
from opendev_agent.prompts import build_answers_turn, build_system_prompt, build_task_prompt
from opendev_agent.store import ExecutionStore
from opendev_agent.tools import create_default_registry
from opendev_agent.tools.registry import ToolRegistry, ToolResult

log = get_logger(__name__)


class ExecutionOrchestrator:
    """Start, pause, resume, approve and execute agent runs."""

    def __init__(
        self,
        store: ExecutionStore,
        provider: LLMProvider,
        registry: ToolRegistry | None = None,
        config: Config | None = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.store = store
        self.provider = provider
        self.registry = registry or create_default_registry()
        self.config = config or get_config()
        self._runs: dict[str, asyncio.Task[None]] = {}
        self._clock = clock

    # Settings

    def default_approval_settings(self) -> ToolApprovalSettings:
        return ToolApprovalSettings.parse_stored(dict(self.config.tools.require_approval))

    def default_sandbox_limits(self) -> SandboxLimits:
        return SandboxLimits.model_validate(self.config.sandbox.model_dump())

    def approval_settings_for(self, project: Project) -> ToolApprovalSettings:
        return ToolApprovalSettings.parse_stored(
            project.tool_approval_settings,
            defaults=self.default_approval_settings(),
        )

    def sandbox_limits_for(self, project: Project) -> SandboxLimits:
        return SandboxLimits.parse_stored(
            project.sandbox_limits,
            defaults=self.default_sandbox_limits(),
        )

    async def get_tool_approval_settings(self, project_id: str) -> ToolApprovalSettings:
        return self.approval_settings_for(await self.store.get_project(project_id))

    async def update_tool_approval_settings(
        self,
        project_id: str,
        updates: dict[str, Any],
    ) -> ToolApprovalSettings:
        """Merge partial settings into the project's stored approval map."""
        current = await self.get_tool_approval_settings(project_id)
        merged = ToolApprovalSettings.model_validate({**current.to_wire(), **updates})
        await self.store.update_project_settings(project_id, tool_approval_settings=merged.to_wire())
        return merged

    async def get_sandbox_limits(self, project_id: str) -> SandboxLimits:
        return self.sandbox_limits_for(await self.store.get_project(project_id))

    async def update_sandbox_limits(self, project_id: str, updates: dict[str, Any]) -> SandboxLimits:
        """Merge partial limits into the project's stored limits.

        Raises:
            pydantic.ValidationError: a value is negative or not an integer
        """
        current = await self.get_sandbox_limits(project_id)
        merged = SandboxLimits.model_validate({**current.to_wire(), **updates})
        await self.store.update_project_settings(project_id, sandbox_limits=merged.to_wire())
        return merged

    @staticmethod
    def _working_directory(project: Project) -> str:
        if not project.working_directory or not project.working_directory_confirmed:
            raise ConfigurationError("Working directory not configured or confirmed")
        return project.working_directory

    # Run bookkeeping

    def _spawn(self, execution_id: str, coro: Any) -> None:
        task = asyncio.create_task(coro, name=f"execution-{execution_id}")
        self._runs[execution_id] = task

        def _forget(done: asyncio.Task[None]) -> None:
            if self._runs.get(execution_id) is done:
                self._runs.pop(execution_id, None)

        task.add_done_callback(_forget)

    def is_running(self, execution_id: str) -> bool:
        task = self._runs.get(execution_id)
        return task is not None and not task.done()

    async def wait(self, execution_id: str) -> None:
        """Wait for the active run of an execution, if any."""
        task = self._runs.get(execution_id)
        if task is not None:
            await task

    async def aclose(self) -> None:
        """Wait for every active run to finish."""
        tasks = list(self._runs.values())
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)
        self._runs.clear()

    # State machine

    async def _transition(
        self,
        execution_id: str,
        target: ExecutionStatus,
        error_message: str | None = None,
    ) -> Execution:
        execution = await self.store.get_execution(execution_id)
        if execution.status == target:
            return execution
        if not can_transition(execution.status, target):
            raise InvalidTransitionError(execution.status.value, target.value)
        updated = await self.store.update_execution_status(execution_id, target, error_message=error_message)
        log.info(
            "Execution status changed",
            execution_id=execution_id,
            previous=execution.status.value,
            status=target.value,
        )
        return updated

    async def _fail(self, execution_id: str, channel: EventChannel, message: str) -> None:
        try:
            await self._transition(execution_id, ExecutionStatus.FAILED, error_message=message)
        except InvalidTransitionError as e:
            log.warning("Could not mark execution failed", execution_id=execution_id, error=str(e))
            return
        channel.emit(EventKind.STATUS, {"executionId": execution_id, "status": ExecutionStatus.FAILED.value})

    def _emit_status(self, channel: EventChannel, execution_id: str, status: ExecutionStatus) -> None:
        channel.emit(EventKind.STATUS, {"executionId": execution_id, "status": status.value})

    # Queries

    async def get_execution(self, execution_id: str) -> tuple[Execution, list[Action]]:
        execution = await self.store.get_execution(execution_id)
        actions = await self.store.list_actions(execution_id)
        return execution, actions

    async def list_questions(self, execution_id: str, pending_only: bool = False) -> list[Question]:
        await self.store.get_execution(execution_id)
        status = QuestionStatus.PENDING if pending_only else None
        return await self.store.list_questions(execution_id, status=status)

    # Analysis loop

    async def start_execution(self, task_id: str) -> EventChannel:
        """Create an execution for a task and start its first activation.

        Raises:
            NotFoundError: unknown task or project
            ConfigurationError: working directory not configured or confirmed
        """
        task = await self.store.get_task(task_id)
        project = await self.store.get_project(task.project_id)
        self._working_directory(project)

        execution = await self.store.create_execution(task.id, project.id)
        channel = EventChannel(execution.id)
        approval = self.approval_settings_for(project)
        messages = [
            Message(role="system", content=build_system_prompt(project, task, approval)),
            Message(role="user", content=build_task_prompt(task)),
        ]
        self._spawn(execution.id, self._run_activation(execution.id, project, task, messages, channel))
        return channel

    async def resume_execution(self, execution_id: str) -> EventChannel:
        """Re-enter the loop once every question has been answered.

        The conversation restarts from the task prompt plus one turn with all
        question/answer pairs, and a fresh limits tracker is used.
        """
        execution = await self.store.get_execution(execution_id)
        pending = await self.store.count_pending_questions(execution_id)
        if pending > 0:
            raise InvalidExecutionStateError(
                execution_id,
                execution.status.value,
                f"Execution has {pending} unanswered question(s)",
            )
        if execution.status != ExecutionStatus.ANALYZING or self.is_running(execution_id):
            raise InvalidExecutionStateError(
                execution_id,
                execution.status.value,
                "Execution is not waiting to resume",
            )

        task = await self.store.get_task(execution.task_id)
        project = await self.store.get_project(execution.project_id)
        self._working_directory(project)
        answered = await self.store.list_questions(execution_id, status=QuestionStatus.ANSWERED)

        approval = self.approval_settings_for(project)
        messages = [
            Message(role="system", content=build_system_prompt(project, task, approval)),
            Message(role="user", content=build_task_prompt(task)),
            Message(role="user", content=build_answers_turn(answered)),
        ]
        channel = EventChannel(execution_id)
        self._spawn(execution_id, self._run_activation(execution_id, project, task, messages, channel))
        log.info("Resuming execution", execution_id=execution_id, answered=len(answered))
        return channel

    async def _run_activation(
        self,
        execution_id: str,
        project: Project,
        task: Task,
        messages: list[Message],
        channel: EventChannel,
    ) -> None:
        tracker = SandboxLimitsTracker(self.sandbox_limits_for(project), clock=self._clock)
        approval = self.approval_settings_for(project)
        try:
            await self._transition(execution_id, ExecutionStatus.ANALYZING)
            self._emit_status(channel, execution_id, ExecutionStatus.ANALYZING)
            channel.emit(EventKind.SANDBOX_LIMITS, tracker.get_limits().to_wire())

            mediator = ToolMediator(
                execution_id=execution_id,
                task_id=task.id,
                working_directory=self._working_directory(project),
                approval=approval,
                registry=self.registry,
                tracker=tracker,
                store=self.store,
                channel=channel,
                set_status=self._transition,
            )
            await self._model_loop(execution_id, messages, approval, tracker, mediator, channel)

            if mediator.paused:
                log.info("Execution paused for questions", execution_id=execution_id)
            elif (await self.store.get_execution(execution_id)).status == ExecutionStatus.CANCELLED:
                raise ExecutionCancelledError(execution_id)
            else:
                await self._transition(execution_id, ExecutionStatus.AWAITING_APPROVAL)
                self._emit_status(channel, execution_id, ExecutionStatus.AWAITING_APPROVAL)
        except LimitExceededError as e:
            log.warning("Activation stopped by sandbox limit", execution_id=execution_id, limit=e.limit_type)
            channel.emit(EventKind.LIMIT_EXCEEDED, {"executionId": execution_id, **e.to_dict()})
            channel.emit(EventKind.SANDBOX_USAGE, tracker.get_usage_summary())
            await self._fail(execution_id, channel, f"{e.limit_type}: {e}")
            channel.emit(EventKind.ERROR, {"executionId": execution_id, "error": str(e)})
        except ExecutionCancelledError:
            log.info("Execution cancelled during analysis", execution_id=execution_id)
            self._emit_status(channel, execution_id, ExecutionStatus.CANCELLED)
        except Exception as e:
            log.error("Agent execution error", execution_id=execution_id, error=str(e))
            await self._fail(execution_id, channel, str(e))
            channel.emit(EventKind.ERROR, {"executionId": execution_id, "error": str(e)})
        finally:
            channel.done()

    async def _model_loop(
        self,
        execution_id: str,
        messages: list[Message],
        approval: ToolApprovalSettings,
        tracker: SandboxLimitsTracker,
        mediator: ToolMediator,
        channel: EventChannel,
    ) -> None:
        tools = self.registry.get_definitions(approval)
        produced_output = False

        while True:
            execution = await self.store.get_execution(execution_id)
            if execution.status == ExecutionStatus.CANCELLED:
                raise ExecutionCancelledError(execution_id)

            response = await self.provider.complete(messages, tools=tools)
            tracker.track_tokens(response.prompt_tokens, response.completion_tokens)
            tracker.track_step()

            if response.reasoning:
                channel.emit(EventKind.REASONING, {"content": response.reasoning})
            if response.content:
                produced_output = True
                channel.emit(EventKind.TEXT, {"content": response.content})

            messages.append(
                Message(role="assistant", content=response.content, tool_calls=list(response.tool_calls))
            )
            for call in response.tool_calls:
                produced_output = True
                output = await mediator.dispatch(call)
                messages.append(
                    Message(role="tool", content=output, tool_call_id=call.id, tool_name=call.name)
                )

            tracker.check_time_limit()
            channel.emit(EventKind.SANDBOX_USAGE, tracker.get_usage_summary())

            if mediator.paused or not response.tool_calls:
                break

        if not produced_output and mediator.actions_recorded == 0:
            raise LLMError(
                "No response from AI model - the model may not support tool calling "
                "or there was an API error"
            )

    # Questions

    async def answer_question(self, question_id: str, response: str) -> Question:
        """Record an answer; the last answer moves the execution back to analyzing."""
        question = await self.store.get_question(question_id)
        execution = await self.store.get_execution(question.execution_id)
        if execution.status != ExecutionStatus.AWAITING_QUESTION:
            raise InvalidExecutionStateError(
                execution.id,
                execution.status.value,
                "Execution is not awaiting an answer",
            )

        answered = await self.store.answer_question(question_id, response)
        remaining = await self.store.count_pending_questions(execution.id)
        if remaining == 0:
            await self._transition(execution.id, ExecutionStatus.ANALYZING)
        log.info("Question answered", question_id=question_id, remaining=remaining)
        return answered

    # Approval and batch execution

    async def update_action_status(
        self,
        execution_id: str,
        action_ids: list[str],
        status: ActionStatus,
    ) -> list[Action]:
        """Approve or reject proposed actions; repeating a decision is a no-op."""
        if status not in (ActionStatus.APPROVED, ActionStatus.REJECTED):
            raise ValueError(f"Unsupported action decision: {status}")
        execution = await self.store.get_execution(execution_id)
        if execution.status != ExecutionStatus.AWAITING_APPROVAL:
            raise InvalidExecutionStateError(
                execution_id,
                execution.status.value,
                "Execution is not awaiting approval",
            )

        decidable = (ActionStatus.PROPOSED, ActionStatus.APPROVED, ActionStatus.REJECTED)
        by_id = {action.id: action for action in await self.store.list_actions(execution_id)}
        updated: list[Action] = []
        for action_id in action_ids:
            action = by_id.get(action_id)
            if action is None or action.status not in decidable:
                log.warning("Skipping undecidable action", action_id=action_id, execution_id=execution_id)
                continue
            if action.status != status:
                action = await self.store.update_action(action_id, status)
            updated.append(action)
        return updated

    async def execute_approved_actions(self, execution_id: str) -> EventChannel:
        """Run approved actions in sequence order as one batch.

        Raises:
            InvalidExecutionStateError: not awaiting approval, or nothing approved
            ConfigurationError: working directory not configured or confirmed
        """
        execution = await self.store.get_execution(execution_id)
        if execution.status != ExecutionStatus.AWAITING_APPROVAL:
            raise InvalidExecutionStateError(
                execution_id,
                execution.status.value,
                "Execution is not awaiting approval",
            )
        project = await self.store.get_project(execution.project_id)
        working_directory = self._working_directory(project)
        approved = await self.store.list_actions(execution_id, status=ActionStatus.APPROVED)
        if not approved:
            raise InvalidExecutionStateError(
                execution_id,
                execution.status.value,
                "No approved actions to execute",
            )

        claimed = await self.store.claim_execution_status(
            execution_id,
            ExecutionStatus.AWAITING_APPROVAL,
            ExecutionStatus.EXECUTING,
        )
        if not claimed:
            current = await self.store.get_execution(execution_id)
            raise InvalidExecutionStateError(
                execution_id,
                current.status.value,
                "Execution is not awaiting approval",
            )
        log.info("Execution status changed", execution_id=execution_id, status=ExecutionStatus.EXECUTING.value)
        channel = EventChannel(execution_id)
        self._spawn(
            execution_id,
            self._run_batch(execution, project, working_directory, approved, channel),
        )
        return channel

    async def _run_batch(
        self,
        execution: Execution,
        project: Project,
        working_directory: str,
        approved: list[Action],
        channel: EventChannel,
    ) -> None:
        tracker = SandboxLimitsTracker(self.sandbox_limits_for(project), clock=self._clock)
        try:
            self._emit_status(channel, execution.id, ExecutionStatus.EXECUTING)
            all_succeeded = True
            has_complete_task = False

            for action in sorted(approved, key=lambda item: item.sequence):
                current = await self.store.get_execution(execution.id)
                if current.status == ExecutionStatus.CANCELLED:
                    raise ExecutionCancelledError(execution.id)

                channel.emit(EventKind.EXECUTING, {"actionId": action.id})
                await self.store.update_action(action.id, ActionStatus.EXECUTING)

                if action.action_type == ActionType.COMPLETE_TASK:
                    has_complete_task = True
                    result = ActionResult(success=True, output=str(action.params.get("summary", "")))
                else:
                    result = await self._execute_action(action, working_directory, tracker)
                    if not result.success:
                        all_succeeded = False

                status = ActionStatus.COMPLETED if result.success else ActionStatus.FAILED
                await self.store.update_action(action.id, status, result)
                channel.emit(
                    EventKind.ACTION_COMPLETE,
                    {"actionId": action.id, "success": result.success, "result": result.to_dict()},
                )

            if has_complete_task and all_succeeded:
                await self.store.set_task_status(execution.task_id, TASK_STATUS_VALIDATION)
                channel.emit(EventKind.TASK_COMPLETED, {"taskId": execution.task_id})

            final = ExecutionStatus.COMPLETED if all_succeeded else ExecutionStatus.FAILED
            error_message = None if all_succeeded else "One or more approved actions failed"
            await self._transition(execution.id, final, error_message=error_message)
            self._emit_status(channel, execution.id, final)
        except ExecutionCancelledError:
            log.info("Execution cancelled during batch", execution_id=execution.id)
            self._emit_status(channel, execution.id, ExecutionStatus.CANCELLED)
        except Exception as e:
            log.error("Action execution error", execution_id=execution.id, error=str(e))
            await self._fail(execution.id, channel, str(e))
            channel.emit(EventKind.ERROR, {"executionId": execution.id, "error": str(e)})
        finally:
            channel.done()

    async def _execute_action(
        self,
        action: Action,
        working_directory: str,
        tracker: SandboxLimitsTracker,
    ) -> ActionResult:
        if action.action_type == ActionType.WRITE_FILE:
            try:
                tracker.validate_file_size(len(str(action.params.get("content", "")).encode("utf-8")))
            except LimitExceededError as e:
                return ActionResult(success=False, error=str(e))
        try:
            result = await self.registry.execute(action.action_type.value, action.params, working_directory)
        except ToolExecutionError as e:
            result = ToolResult(success=False, error=str(e))
        return result.to_action_result()

    # Cancellation

    async def cancel_execution(self, execution_id: str) -> Execution:
        """Record cancellation; an active run stops at its next checkpoint."""
        execution = await self.store.get_execution(execution_id)
        if execution.status in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED):
            raise InvalidExecutionStateError(
                execution_id,
                execution.status.value,
                "Cannot cancel completed or failed execution",
            )
        if execution.status == ExecutionStatus.CANCELLED:
            return execution
        return await self._transition(execution_id, ExecutionStatus.CANCELLED)
