"""Execution, action and question log with SQLite storage."""

import json
import uuid
from pathlib import Path
from typing import Any

import aiosqlite

from opendev_agent.config import get_config
from opendev_agent.exceptions import (
    ExecutionNotFoundError,
    InvalidExecutionStateError,
    NotFoundError,
    QuestionNotFoundError,
)
from opendev_agent.logging import get_logger
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
    Task,
    TERMINAL_STATUSES,
    utcnow_iso,
)

log = get_logger(__name__)

_SCHEMA = (
    """
    CREATE TABLE IF NOT EXISTS projects (
        id TEXT PRIMARY KEY,
        name TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        guidelines TEXT NOT NULL DEFAULT '',
        working_directory TEXT,
        working_directory_confirmed INTEGER NOT NULL DEFAULT 0,
        tool_approval_settings TEXT,
        sandbox_limits TEXT,
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS tasks (
        id TEXT PRIMARY KEY,
        project_id TEXT NOT NULL,
        title TEXT NOT NULL,
        description TEXT NOT NULL DEFAULT '',
        priority TEXT NOT NULL DEFAULT 'medium',
        status TEXT NOT NULL DEFAULT 'todo',
        updated_at TEXT NOT NULL
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS executions (
        id TEXT PRIMARY KEY,
        task_id TEXT NOT NULL,
        project_id TEXT NOT NULL,
        status TEXT NOT NULL,
        error_message TEXT,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        completed_at TEXT
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS actions (
        id TEXT PRIMARY KEY,
        execution_id TEXT NOT NULL,
        action_type TEXT NOT NULL,
        params TEXT NOT NULL DEFAULT '{}',
        status TEXT NOT NULL,
        result TEXT,
        sequence INTEGER NOT NULL,
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL,
        UNIQUE (execution_id, sequence)
    )
    """,
    """
    CREATE TABLE IF NOT EXISTS questions (
        id TEXT PRIMARY KEY,
        execution_id TEXT NOT NULL,
        question TEXT NOT NULL,
        context TEXT,
        response TEXT,
        status TEXT NOT NULL DEFAULT 'pending',
        created_at TEXT NOT NULL,
        updated_at TEXT NOT NULL
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_executions_task ON executions(task_id, created_at)",
    "CREATE INDEX IF NOT EXISTS idx_actions_execution ON actions(execution_id, sequence)",
    "CREATE INDEX IF NOT EXISTS idx_questions_execution ON questions(execution_id, status)",
)


def _new_id() -> str:
    return uuid.uuid4().hex


def _execution_from_row(row: aiosqlite.Row) -> Execution:
    return Execution(
        id=row["id"],
        task_id=row["task_id"],
        project_id=row["project_id"],
        status=ExecutionStatus(row["status"]),
        error_message=row["error_message"],
        created_at=row["created_at"],
        updated_at=row["updated_at"],
        completed_at=row["completed_at"],
    )


def _action_from_row(row: aiosqlite.Row) -> Action:
    result = ActionResult.from_dict(json.loads(row["result"])) if row["result"] else None
    return Action(
        id=row["id"],
        execution_id=row["execution_id"],
        action_type=ActionType(row["action_type"]),
        params=json.loads(row["params"] or "{}"),
        status=ActionStatus(row["status"]),
        sequence=row["sequence"],
        result=result,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _question_from_row(row: aiosqlite.Row) -> Question:
    return Question(
        id=row["id"],
        execution_id=row["execution_id"],
        question=row["question"],
        context=row["context"],
        response=row["response"],
        status=QuestionStatus(row["status"]),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


class ExecutionStore:
    """Append-only log of executions, actions and questions keyed by id."""

    def __init__(self, db_path: Path | str | None = None):
        """Initialize the store.

        Args:
            db_path: Optional database path override
        """
        if db_path is None:
            self.db_path = Path(get_config().store.path).expanduser()
        else:
            self.db_path = Path(db_path).expanduser()

        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._db: aiosqlite.Connection | None = None

    async def _ensure_db(self) -> aiosqlite.Connection:
        """Ensure database is initialized."""
        if self._db is None:
            self._db = await aiosqlite.connect(str(self.db_path))
            self._db.row_factory = aiosqlite.Row
            for statement in _SCHEMA:
                await self._db.execute(statement)
            await self._db.commit()
        return self._db

    async def close(self) -> None:
        """Close the database connection."""
        if self._db:
            await self._db.close()
            self._db = None

    async def _fetchone(self, query: str, params: tuple[Any, ...]) -> aiosqlite.Row | None:
        db = await self._ensure_db()
        async with db.execute(query, params) as cursor:
            return await cursor.fetchone()

    async def _fetchall(self, query: str, params: tuple[Any, ...]) -> list[aiosqlite.Row]:
        db = await self._ensure_db()
        async with db.execute(query, params) as cursor:
            return list(await cursor.fetchall())

    # Projects and tasks

    async def save_project(self, project: Project) -> None:
        db = await self._ensure_db()
        await db.execute(
            """
            INSERT OR REPLACE INTO projects (
                id, name, description, guidelines, working_directory,
                working_directory_confirmed, tool_approval_settings, sandbox_limits, updated_at
            ) VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                project.id,
                project.name,
                project.description,
                project.guidelines,
                project.working_directory,
                1 if project.working_directory_confirmed else 0,
                project.tool_approval_settings,
                project.sandbox_limits,
                utcnow_iso(),
            ),
        )
        await db.commit()

    async def get_project(self, project_id: str) -> Project:
        row = await self._fetchone("SELECT * FROM projects WHERE id = ?", (project_id,))
        if row is None:
            raise NotFoundError("project", project_id)
        return Project(
            id=row["id"],
            name=row["name"],
            description=row["description"],
            guidelines=row["guidelines"],
            working_directory=row["working_directory"],
            working_directory_confirmed=bool(row["working_directory_confirmed"]),
            tool_approval_settings=row["tool_approval_settings"],
            sandbox_limits=row["sandbox_limits"],
        )

    async def update_project_settings(
        self,
        project_id: str,
        *,
        tool_approval_settings: dict[str, Any] | None = None,
        sandbox_limits: dict[str, Any] | None = None,
    ) -> None:
        """Store settings as JSON text columns."""
        await self.get_project(project_id)
        db = await self._ensure_db()
        if tool_approval_settings is not None:
            await db.execute(
                "UPDATE projects SET tool_approval_settings = ?, updated_at = ? WHERE id = ?",
                (json.dumps(tool_approval_settings), utcnow_iso(), project_id),
            )
        if sandbox_limits is not None:
            await db.execute(
                "UPDATE projects SET sandbox_limits = ?, updated_at = ? WHERE id = ?",
                (json.dumps(sandbox_limits), utcnow_iso(), project_id),
            )
        await db.commit()

    async def save_task(self, task: Task) -> None:
        db = await self._ensure_db()
        await db.execute(
            """
            INSERT OR REPLACE INTO tasks (id, project_id, title, description, priority, status, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?)
            """,
            (task.id, task.project_id, task.title, task.description, task.priority, task.status, utcnow_iso()),
        )
        await db.commit()

    async def get_task(self, task_id: str) -> Task:
        row = await self._fetchone("SELECT * FROM tasks WHERE id = ?", (task_id,))
        if row is None:
            raise NotFoundError("task", task_id)
        return Task(
            id=row["id"],
            project_id=row["project_id"],
            title=row["title"],
            description=row["description"],
            priority=row["priority"],
            status=row["status"],
        )

    async def set_task_status(self, task_id: str, status: str) -> None:
        db = await self._ensure_db()
        await db.execute(
            "UPDATE tasks SET status = ?, updated_at = ? WHERE id = ?",
            (status, utcnow_iso(), task_id),
        )
        await db.commit()
        log.info("Task status updated", task_id=task_id, status=status)

    # Executions

    async def create_execution(
        self,
        task_id: str,
        project_id: str,
        status: ExecutionStatus = ExecutionStatus.PENDING,
    ) -> Execution:
        execution = Execution(id=_new_id(), task_id=task_id, project_id=project_id, status=status)
        db = await self._ensure_db()
        await db.execute(
            """
            INSERT INTO executions (id, task_id, project_id, status, error_message, created_at, updated_at, completed_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                execution.id,
                execution.task_id,
                execution.project_id,
                execution.status.value,
                None,
                execution.created_at,
                execution.updated_at,
                None,
            ),
        )
        await db.commit()
        log.info("Created execution", execution_id=execution.id, task_id=task_id)
        return execution

    async def get_execution(self, execution_id: str) -> Execution:
        row = await self._fetchone("SELECT * FROM executions WHERE id = ?", (execution_id,))
        if row is None:
            raise ExecutionNotFoundError(execution_id)
        return _execution_from_row(row)

    async def list_executions(self, task_id: str) -> list[Execution]:
        rows = await self._fetchall(
            "SELECT * FROM executions WHERE task_id = ? ORDER BY created_at DESC",
            (task_id,),
        )
        return [_execution_from_row(row) for row in rows]

    async def update_execution_status(
        self,
        execution_id: str,
        status: ExecutionStatus,
        *,
        error_message: str | None = None,
    ) -> Execution:
        """Persist a status change; terminal statuses stamp ``completed_at``."""
        now = utcnow_iso()
        completed_at = now if status in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED) else None
        db = await self._ensure_db()
        cursor = await db.execute(
            """
            UPDATE executions
            SET status = ?,
                error_message = COALESCE(?, error_message),
                updated_at = ?,
                completed_at = COALESCE(?, completed_at)
            WHERE id = ?
            """,
            (status.value, error_message, now, completed_at, execution_id),
        )
        await db.commit()
        if cursor.rowcount == 0:
            raise ExecutionNotFoundError(execution_id)
        return await self.get_execution(execution_id)

    async def claim_execution_status(
        self,
        execution_id: str,
        expected: ExecutionStatus,
        target: ExecutionStatus,
    ) -> bool:
        """Move ``expected -> target`` only if the row is still ``expected``.

        Returns whether this caller won the transition.
        """
        db = await self._ensure_db()
        cursor = await db.execute(
            "UPDATE executions SET status = ?, updated_at = ? WHERE id = ? AND status = ?",
            (target.value, utcnow_iso(), execution_id, expected.value),
        )
        await db.commit()
        return cursor.rowcount == 1

    # Actions

    async def append_action(
        self,
        execution_id: str,
        action_type: ActionType,
        params: dict[str, Any],
        status: ActionStatus,
        result: ActionResult | None = None,
    ) -> Action:
        """Append an action with the next sequence number for its execution.

        Raises:
            InvalidExecutionStateError: if the execution is already terminal
        """
        execution = await self.get_execution(execution_id)
        if execution.status in TERMINAL_STATUSES:
            raise InvalidExecutionStateError(
                execution_id,
                execution.status.value,
                f"Cannot append actions to a {execution.status.value} execution",
            )

        action_id = _new_id()
        now = utcnow_iso()
        db = await self._ensure_db()
        await db.execute(
            """
            INSERT INTO actions (id, execution_id, action_type, params, status, result, sequence, created_at, updated_at)
            SELECT ?, ?, ?, ?, ?, ?, COALESCE(MAX(sequence), 0) + 1, ?, ?
            FROM actions WHERE execution_id = ?
            """,
            (
                action_id,
                execution_id,
                action_type.value,
                json.dumps(params),
                status.value,
                json.dumps(result.to_dict()) if result else None,
                now,
                now,
                execution_id,
            ),
        )
        await db.commit()
        return await self.get_action(action_id)

    async def get_action(self, action_id: str) -> Action:
        row = await self._fetchone("SELECT * FROM actions WHERE id = ?", (action_id,))
        if row is None:
            raise NotFoundError("action", action_id)
        return _action_from_row(row)

    async def list_actions(
        self,
        execution_id: str,
        status: ActionStatus | None = None,
    ) -> list[Action]:
        """Actions of an execution in ascending sequence order."""
        if status is None:
            rows = await self._fetchall(
                "SELECT * FROM actions WHERE execution_id = ? ORDER BY sequence ASC",
                (execution_id,),
            )
        else:
            rows = await self._fetchall(
                "SELECT * FROM actions WHERE execution_id = ? AND status = ? ORDER BY sequence ASC",
                (execution_id, status.value),
            )
        return [_action_from_row(row) for row in rows]

    async def last_sequence(self, execution_id: str) -> int:
        row = await self._fetchone(
            "SELECT COALESCE(MAX(sequence), 0) AS last FROM actions WHERE execution_id = ?",
            (execution_id,),
        )
        return int(row["last"]) if row else 0

    async def update_action(
        self,
        action_id: str,
        status: ActionStatus,
        result: ActionResult | None = None,
    ) -> Action:
        db = await self._ensure_db()
        await db.execute(
            """
            UPDATE actions
            SET status = ?, result = COALESCE(?, result), updated_at = ?
            WHERE id = ?
            """,
            (
                status.value,
                json.dumps(result.to_dict()) if result else None,
                utcnow_iso(),
                action_id,
            ),
        )
        await db.commit()
        return await self.get_action(action_id)

    # Questions

    async def create_question(
        self,
        execution_id: str,
        question: str,
        context: str | None = None,
    ) -> Question:
        execution = await self.get_execution(execution_id)
        if execution.status in TERMINAL_STATUSES:
            raise InvalidExecutionStateError(
                execution_id,
                execution.status.value,
                f"Cannot ask questions on a {execution.status.value} execution",
            )
        record = Question(id=_new_id(), execution_id=execution_id, question=question, context=context)
        db = await self._ensure_db()
        await db.execute(
            """
            INSERT INTO questions (id, execution_id, question, context, response, status, created_at, updated_at)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                record.id,
                record.execution_id,
                record.question,
                record.context,
                None,
                record.status.value,
                record.created_at,
                record.updated_at,
            ),
        )
        await db.commit()
        return record

    async def get_question(self, question_id: str) -> Question:
        row = await self._fetchone("SELECT * FROM questions WHERE id = ?", (question_id,))
        if row is None:
            raise QuestionNotFoundError(question_id)
        return _question_from_row(row)

    async def list_questions(
        self,
        execution_id: str,
        status: QuestionStatus | None = None,
    ) -> list[Question]:
        if status is None:
            rows = await self._fetchall(
                "SELECT * FROM questions WHERE execution_id = ? ORDER BY created_at ASC, rowid ASC",
                (execution_id,),
            )
        else:
            rows = await self._fetchall(
                "SELECT * FROM questions WHERE execution_id = ? AND status = ? ORDER BY created_at ASC, rowid ASC",
                (execution_id, status.value),
            )
        return [_question_from_row(row) for row in rows]

    async def count_pending_questions(self, execution_id: str) -> int:
        row = await self._fetchone(
            "SELECT COUNT(*) AS pending FROM questions WHERE execution_id = ? AND status = ?",
            (execution_id, QuestionStatus.PENDING.value),
        )
        return int(row["pending"]) if row else 0

    async def answer_question(self, question_id: str, response: str) -> Question:
        db = await self._ensure_db()
        cursor = await db.execute(
            "UPDATE questions SET response = ?, status = ?, updated_at = ? WHERE id = ?",
            (response, QuestionStatus.ANSWERED.value, utcnow_iso(), question_id),
        )
        await db.commit()
        if cursor.rowcount == 0:
            raise QuestionNotFoundError(question_id)
        return await self.get_question(question_id)
