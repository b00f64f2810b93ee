from pathlib import Path

import pytest

from opendev_agent.events import EventChannel, EventKind
from opendev_agent.exceptions import ExecutionCancelledError, LimitExceededError
from opendev_agent.limits import SandboxLimitsTracker
from opendev_agent.mediator import PAUSED_MESSAGE, ToolMediator
from opendev_agent.models import (
    ActionStatus,
    ActionType,
    ExecutionStatus,
    SandboxLimits,
    ToolApprovalSettings,
)
from opendev_agent.tools import create_default_registry


async def _mediator(store, workdir: Path, approval=None, limits=None):
    execution = await store.create_execution("task-1", "proj-1", status=ExecutionStatus.ANALYZING)
    channel = EventChannel(execution.id)
    statuses: list[ExecutionStatus] = []

    async def set_status(execution_id, status):
        statuses.append(status)
        return await store.update_execution_status(execution_id, status)

    mediator = ToolMediator(
        execution_id=execution.id,
        task_id="task-1",
        working_directory=workdir,
        approval=approval or ToolApprovalSettings(),
        registry=create_default_registry(),
        tracker=SandboxLimitsTracker(limits or SandboxLimits()),
        store=store,
        channel=channel,
        set_status=set_status,
    )
    return execution, channel, mediator, statuses


async def _kinds(channel: EventChannel) -> list[EventKind]:
    channel.done()
    return [event.kind for event in await channel.collect()]


@pytest.mark.asyncio
async def test_gated_write_is_proposed_without_touching_disk(store, workdir, tool_call):
    execution, channel, mediator, _ = await _mediator(
        store, workdir, approval=ToolApprovalSettings.parse_stored({"writeFile": True})
    )

    output = await mediator.dispatch(tool_call("writeFile", path="hello.txt", content="hi"))

    assert output == "Proposed: Write file at hello.txt. Waiting for user approval."
    assert not (workdir / "hello.txt").exists()
    actions = await store.list_actions(execution.id)
    assert len(actions) == 1
    assert actions[0].action_type == ActionType.WRITE_FILE
    assert actions[0].status == ActionStatus.PROPOSED
    assert actions[0].result is None
    assert (await _kinds(channel))[0] == EventKind.ACTION


@pytest.mark.asyncio
async def test_immediate_read_returns_content_and_records_completed(store, workdir, tool_call):
    (workdir / "notes.md").write_text("remember", encoding="utf-8")
    execution, _, mediator, _ = await _mediator(store, workdir)

    output = await mediator.dispatch(tool_call("readFile", path="notes.md"))

    assert output == "remember"
    actions = await store.list_actions(execution.id)
    assert actions[0].status == ActionStatus.COMPLETED
    assert actions[0].result.output == "remember"
    assert mediator.tracker.get_usage().file_operations_count == 1


@pytest.mark.asyncio
async def test_immediate_failure_is_fed_back_to_model(store, workdir, tool_call):
    execution, _, mediator, _ = await _mediator(store, workdir)

    output = await mediator.dispatch(tool_call("readFile", path="missing.txt"))

    assert output == "Error: File not found: missing.txt"
    actions = await store.list_actions(execution.id)
    assert actions[0].status == ActionStatus.FAILED


@pytest.mark.asyncio
async def test_path_escape_records_failed_action_for_immediate_tool(store, workdir, tool_call):
    execution, _, mediator, _ = await _mediator(store, workdir)

    output = await mediator.dispatch(tool_call("readFile", path="../secret.txt"))

    assert output.startswith("Error: ")
    assert "outside the working directory" in output
    actions = await store.list_actions(execution.id)
    assert actions[0].status == ActionStatus.FAILED


@pytest.mark.asyncio
async def test_path_escape_for_gated_tool_records_nothing(store, workdir, tool_call):
    execution, _, mediator, _ = await _mediator(store, workdir)

    output = await mediator.dispatch(tool_call("deleteFile", path="../../etc/passwd"))

    assert "outside the working directory" in output
    assert await store.list_actions(execution.id) == []


@pytest.mark.asyncio
async def test_unknown_tool_and_bad_arguments(store, workdir, tool_call):
    execution, _, mediator, _ = await _mediator(store, workdir)

    assert await mediator.dispatch(tool_call("formatDisk")) == "Error: Unknown tool: formatDisk"
    missing = await mediator.dispatch(tool_call("writeFile", path="x.txt"))
    assert "Missing required argument: content" in missing
    assert await store.list_actions(execution.id) == []


@pytest.mark.asyncio
async def test_proposals_count_against_command_budget(store, workdir, tool_call):
    limits = SandboxLimits.model_validate({"maxCommands": 1})
    _, _, mediator, _ = await _mediator(store, workdir, limits=limits)

    await mediator.dispatch(tool_call("executeCommand", command="make", description="build"))
    with pytest.raises(LimitExceededError) as exc_info:
        await mediator.dispatch(tool_call("executeCommand", command="make test", description="test"))
    assert exc_info.value.limit_type == "maxCommands"


@pytest.mark.asyncio
async def test_oversized_write_proposal_raises(store, workdir, tool_call):
    limits = SandboxLimits.model_validate({"maxFileSizeBytes": 4})
    execution, _, mediator, _ = await _mediator(store, workdir, limits=limits)

    with pytest.raises(LimitExceededError) as exc_info:
        await mediator.dispatch(tool_call("writeFile", path="big.txt", content="é" * 3))
    assert exc_info.value.current_value == 6
    assert await store.list_actions(execution.id) == []


@pytest.mark.asyncio
async def test_ask_question_pauses_once(store, workdir, tool_call):
    execution, channel, mediator, statuses = await _mediator(store, workdir)

    first = await mediator.dispatch(tool_call("askQuestion", question="Which port?", context="server"))
    await mediator.dispatch(tool_call("askQuestion", call_id="call_2", question="Which host?"))

    assert first.startswith("Question asked: Which port?")
    assert mediator.paused is True
    assert statuses == [ExecutionStatus.AWAITING_QUESTION]
    assert await store.count_pending_questions(execution.id) == 2

    actions = await store.list_actions(execution.id)
    assert [action.action_type for action in actions] == [ActionType.ASK_QUESTION, ActionType.ASK_QUESTION]
    assert all(action.status == ActionStatus.COMPLETED for action in actions)
    assert "questionId" in actions[0].params

    kinds = await _kinds(channel)
    assert kinds.count(EventKind.STATUS) == 1
    assert kinds.count(EventKind.QUESTION) == 2


@pytest.mark.asyncio
async def test_immediate_complete_task_moves_task_to_validation(store, workdir, tool_call, seed_project):
    await seed_project(store, workdir)
    approval = ToolApprovalSettings.parse_stored({"completeTask": False})
    execution, channel, mediator, _ = await _mediator(store, workdir, approval=approval)

    output = await mediator.dispatch(tool_call("completeTask", summary="Added hello.txt"))

    assert output == "Task moved to validation: Added hello.txt"
    assert (await store.get_task("task-1")).status == "validation"
    assert EventKind.TASK_COMPLETED in (await _kinds(channel))


@pytest.mark.asyncio
async def test_dispatch_stops_when_cancelled(store, workdir, tool_call):
    execution, _, mediator, _ = await _mediator(store, workdir)
    await store.update_execution_status(execution.id, ExecutionStatus.CANCELLED)

    with pytest.raises(ExecutionCancelledError):
        await mediator.dispatch(tool_call("readFile", path="a.txt"))


@pytest.mark.asyncio
async def test_tools_after_question_are_not_run_while_paused(store, workdir, tool_call):
    (workdir / "notes.md").write_text("remember", encoding="utf-8")
    limits = SandboxLimits.model_validate({"maxFileOperations": 1})
    execution, _, mediator, _ = await _mediator(store, workdir, limits=limits)

    await mediator.dispatch(tool_call("askQuestion", question="Which file?"))
    first = await mediator.dispatch(tool_call("readFile", "call_2", path="notes.md"))
    second = await mediator.dispatch(tool_call("writeFile", "call_3", path="x.txt", content="x"))

    assert first == PAUSED_MESSAGE
    assert second == PAUSED_MESSAGE
    assert mediator.tracker.get_usage().file_operations_count == 0
    actions = await store.list_actions(execution.id)
    assert [action.action_type for action in actions] == [ActionType.ASK_QUESTION]
