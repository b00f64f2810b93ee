import asyncio
import json
from pathlib import Path

import pytest

from opendev_agent.exceptions import (
    ExecutionNotFoundError,
    InvalidExecutionStateError,
    NotFoundError,
    QuestionNotFoundError,
)
from opendev_agent.models import ActionResult, ActionStatus, ActionType, ExecutionStatus, QuestionStatus
from opendev_agent.store import ExecutionStore


@pytest.mark.asyncio
async def test_store_uses_db_path_override(tmp_path: Path):
    db_path = tmp_path / "custom" / "log.db"
    store = ExecutionStore(db_path=db_path)
    try:
        await store.create_execution("task-1", "proj-1")
        assert db_path.exists()
    finally:
        await store.close()


@pytest.mark.asyncio
async def test_project_settings_round_trip(store, seed_project, workdir):
    project, task = await seed_project(store, workdir)
    await store.update_project_settings(
        project.id,
        tool_approval_settings={"writeFile": False},
        sandbox_limits={"maxSteps": 3},
    )

    loaded = await store.get_project(project.id)
    assert json.loads(loaded.tool_approval_settings) == {"writeFile": False}
    assert json.loads(loaded.sandbox_limits) == {"maxSteps": 3}
    assert loaded.working_directory_confirmed is True

    await store.set_task_status(task.id, "validation")
    assert (await store.get_task(task.id)).status == "validation"

    with pytest.raises(NotFoundError):
        await store.get_project("nope")


@pytest.mark.asyncio
async def test_execution_status_updates_and_completion_stamp(store):
    execution = await store.create_execution("task-1", "proj-1")
    assert execution.status == ExecutionStatus.PENDING

    analyzing = await store.update_execution_status(execution.id, ExecutionStatus.ANALYZING)
    assert analyzing.completed_at is None

    failed = await store.update_execution_status(
        execution.id,
        ExecutionStatus.FAILED,
        error_message="maxSteps: Step limit exceeded",
    )
    assert failed.completed_at is not None
    assert failed.error_message == "maxSteps: Step limit exceeded"

    with pytest.raises(ExecutionNotFoundError):
        await store.get_execution("missing")


@pytest.mark.asyncio
async def test_claim_status_succeeds_only_once(store):
    execution = await store.create_execution("task-1", "proj-1", status=ExecutionStatus.AWAITING_APPROVAL)

    results = await asyncio.gather(
        store.claim_execution_status(execution.id, ExecutionStatus.AWAITING_APPROVAL, ExecutionStatus.EXECUTING),
        store.claim_execution_status(execution.id, ExecutionStatus.AWAITING_APPROVAL, ExecutionStatus.EXECUTING),
    )

    assert sorted(results) == [False, True]
    assert (await store.get_execution(execution.id)).status == ExecutionStatus.EXECUTING


@pytest.mark.asyncio
async def test_action_sequence_is_monotonic_per_execution(store):
    first = await store.create_execution("task-1", "proj-1")
    second = await store.create_execution("task-1", "proj-1")

    for idx in range(3):
        await store.append_action(first.id, ActionType.READ_FILE, {"path": f"f{idx}"}, ActionStatus.COMPLETED)
    other = await store.append_action(second.id, ActionType.WRITE_FILE, {"path": "x"}, ActionStatus.PROPOSED)

    sequences = [action.sequence for action in await store.list_actions(first.id)]
    assert sequences == [1, 2, 3]
    assert other.sequence == 1
    assert await store.last_sequence(first.id) == 3


@pytest.mark.asyncio
async def test_concurrent_appends_never_share_a_sequence(store):
    execution = await store.create_execution("task-1", "proj-1")

    await asyncio.gather(
        *(
            store.append_action(execution.id, ActionType.LIST_DIRECTORY, {"path": "."}, ActionStatus.COMPLETED)
            for _ in range(10)
        )
    )

    sequences = [action.sequence for action in await store.list_actions(execution.id)]
    assert sequences == list(range(1, 11))


@pytest.mark.asyncio
async def test_append_rejected_for_terminal_execution(store):
    execution = await store.create_execution("task-1", "proj-1")
    await store.update_execution_status(execution.id, ExecutionStatus.CANCELLED)

    with pytest.raises(InvalidExecutionStateError):
        await store.append_action(execution.id, ActionType.READ_FILE, {"path": "a"}, ActionStatus.COMPLETED)


@pytest.mark.asyncio
async def test_update_action_keeps_result_json(store):
    execution = await store.create_execution("task-1", "proj-1")
    action = await store.append_action(execution.id, ActionType.WRITE_FILE, {"path": "a"}, ActionStatus.PROPOSED)

    updated = await store.update_action(
        action.id,
        ActionStatus.COMPLETED,
        ActionResult(success=True, output="File written: a"),
    )
    assert updated.result is not None
    assert updated.result.output == "File written: a"

    approved = await store.list_actions(execution.id, status=ActionStatus.COMPLETED)
    assert [item.id for item in approved] == [action.id]


@pytest.mark.asyncio
async def test_questions_pending_and_answered(store):
    execution = await store.create_execution("task-1", "proj-1")
    q1 = await store.create_question(execution.id, "Which port?", "config")
    await store.create_question(execution.id, "Which name?")
    assert await store.count_pending_questions(execution.id) == 2

    answered = await store.answer_question(q1.id, "8080")
    assert answered.status == QuestionStatus.ANSWERED
    assert answered.response == "8080"
    assert await store.count_pending_questions(execution.id) == 1

    pending = await store.list_questions(execution.id, status=QuestionStatus.PENDING)
    assert [item.question for item in pending] == ["Which name?"]

    with pytest.raises(QuestionNotFoundError):
        await store.answer_question("missing", "x")
