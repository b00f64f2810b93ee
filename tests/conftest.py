from pathlib import Path

import pytest
import pytest_asyncio
import structlog

from opendev_agent.config import Config, set_config
from opendev_agent.llm import LLMProvider, LLMResponse, Message, ToolCall, ToolDefinition
from opendev_agent.models import Project, Task
from opendev_agent.store import ExecutionStore


@pytest.fixture(autouse=True)
def default_config(monkeypatch, tmp_path: Path):
    monkeypatch.chdir(tmp_path)
    cfg = Config()
    cfg.store.path = str(tmp_path / "executions.db")
    set_config(cfg)
    yield cfg
    set_config(Config())


@pytest.fixture(autouse=True)
def reset_structlog():
    # CLI tests call configure_logging() under CliRunner, which binds the
    # logger to a temporary stderr; restore global structlog state afterwards.
    yield
    structlog.reset_defaults()


@pytest.fixture
def workdir(tmp_path: Path) -> Path:
    root = tmp_path / "project"
    root.mkdir()
    return root


@pytest_asyncio.fixture
async def store(tmp_path: Path):
    execution_store = ExecutionStore(db_path=tmp_path / "executions.db")
    try:
        yield execution_store
    finally:
        await execution_store.close()


async def _seed_project(
    store: ExecutionStore,
    workdir: Path | None,
    *,
    approval: str | None = None,
    limits: str | None = None,
    confirmed: bool = True,
) -> tuple[Project, Task]:
    project = Project(
        id="proj-1",
        name="demo",
        description="Demo project",
        working_directory=str(workdir) if workdir is not None else None,
        working_directory_confirmed=confirmed,
        tool_approval_settings=approval,
        sandbox_limits=limits,
    )
    task = Task(id="task-1", project_id=project.id, title="Add greeting", description="Create hello.txt")
    await store.save_project(project)
    await store.save_task(task)
    return project, task


def _tool_call(name: str, call_id: str = "call_1", **arguments) -> ToolCall:
    return ToolCall(id=call_id, name=name, arguments=arguments)


class ScriptedProvider(LLMProvider):
    """Replays canned responses; repeats the last one once the script runs out."""

    def __init__(self, responses: list[LLMResponse]):
        self.responses = list(responses)
        self.calls: list[list[Message]] = []
        self.tools_seen: list[list[ToolDefinition] | None] = []

    async def complete(self, messages, tools=None, temperature=None, max_tokens=None):
        self.calls.append(list(messages))
        self.tools_seen.append(tools)
        index = min(len(self.calls) - 1, len(self.responses) - 1)
        return self.responses[index]


@pytest.fixture
def seed_project():
    return _seed_project


@pytest.fixture
def tool_call():
    return _tool_call


@pytest.fixture
def scripted_provider():
    return ScriptedProvider
