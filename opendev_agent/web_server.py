"""HTTP routes over the execution orchestrator, with SSE run streams."""

import asyncio
import signal
from typing import Any

from aiohttp import web
from pydantic import ValidationError

from opendev_agent.config import Config, get_config
from opendev_agent.events import EventChannel, format_sse
from opendev_agent.exceptions import (
    ConfigurationError,
    ExecutionError,
    ExecutionNotFoundError,
    InvalidExecutionStateError,
    InvalidTransitionError,
    NotFoundError,
    QuestionNotFoundError,
)
from opendev_agent.llm import provider_from_config
from opendev_agent.logging import get_logger
from opendev_agent.models import ActionStatus
from opendev_agent.orchestrator import ExecutionOrchestrator
from opendev_agent.store import ExecutionStore

log = get_logger(__name__)

SSE_HEADERS = {
    "Content-Type": "text/event-stream; charset=utf-8",
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}


def _error(message: str, status: int) -> web.Response:
    return web.json_response({"error": message}, status=status)


async def _read_json(request: web.Request) -> dict[str, Any]:
    try:
        body = await request.json()
    except ValueError:
        raise web.HTTPBadRequest(text='{"error": "Invalid JSON body"}', content_type="application/json")
    if not isinstance(body, dict):
        raise web.HTTPBadRequest(text='{"error": "Expected a JSON object"}', content_type="application/json")
    return body


@web.middleware
async def error_middleware(request: web.Request, handler: Any) -> web.StreamResponse:
    """Map domain exceptions onto HTTP status codes."""
    try:
        return await handler(request)
    except (NotFoundError, ExecutionNotFoundError, QuestionNotFoundError) as e:
        return _error(str(e), 404)
    except (InvalidExecutionStateError, InvalidTransitionError, ConfigurationError) as e:
        return _error(str(e), 400)
    except ValidationError as e:
        return _error(str(e), 400)
    except ExecutionError as e:
        log.error("Execution request failed", path=request.path, error=str(e))
        return _error(str(e), 500)


class WebServer:
    """aiohttp application exposing one orchestrator."""

    def __init__(self, orchestrator: ExecutionOrchestrator, config: Config | None = None):
        self.orchestrator = orchestrator
        self.config = config or get_config()

    async def _stream(self, request: web.Request, channel: EventChannel) -> web.StreamResponse:
        resp = web.StreamResponse(status=200, reason="OK", headers=SSE_HEADERS)
        await resp.prepare(request)
        async for event in channel:
            try:
                await resp.write(format_sse(event).encode("utf-8"))
            except ConnectionResetError:
                # The run keeps going; only the subscriber is gone.
                log.info("SSE subscriber disconnected", execution_id=channel.execution_id)
                break
        return resp

    # Executions

    async def start_execution(self, request: web.Request) -> web.StreamResponse:
        channel = await self.orchestrator.start_execution(request.match_info["task_id"])
        return await self._stream(request, channel)

    async def get_execution(self, request: web.Request) -> web.Response:
        execution, actions = await self.orchestrator.get_execution(request.match_info["execution_id"])
        return web.json_response({
            **execution.to_dict(),
            "actions": [action.to_dict() for action in actions],
        })

    async def update_actions(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        action_ids = body.get("actionIds")
        try:
            status = ActionStatus(body.get("status"))
        except ValueError:
            return _error("status must be 'approved' or 'rejected'", 400)
        if not isinstance(action_ids, list) or status not in (ActionStatus.APPROVED, ActionStatus.REJECTED):
            return _error("actionIds (list) and status ('approved' or 'rejected') are required", 400)
        updated = await self.orchestrator.update_action_status(
            request.match_info["execution_id"],
            [str(action_id) for action_id in action_ids],
            status,
        )
        return web.json_response({"actions": [action.to_dict() for action in updated]})

    async def execute_actions(self, request: web.Request) -> web.StreamResponse:
        channel = await self.orchestrator.execute_approved_actions(request.match_info["execution_id"])
        return await self._stream(request, channel)

    async def cancel_execution(self, request: web.Request) -> web.Response:
        execution = await self.orchestrator.cancel_execution(request.match_info["execution_id"])
        return web.json_response(execution.to_dict())

    async def resume_execution(self, request: web.Request) -> web.StreamResponse:
        channel = await self.orchestrator.resume_execution(request.match_info["execution_id"])
        return await self._stream(request, channel)

    # Questions

    async def list_questions(self, request: web.Request) -> web.Response:
        pending_only = request.query.get("pending", "").lower() in ("1", "true", "yes")
        questions = await self.orchestrator.list_questions(
            request.match_info["execution_id"],
            pending_only=pending_only,
        )
        return web.json_response({"questions": [question.to_dict() for question in questions]})

    async def answer_question(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        response = body.get("response")
        if not isinstance(response, str) or not response.strip():
            return _error("response is required", 400)
        question = await self.orchestrator.answer_question(request.match_info["question_id"], response)
        return web.json_response(question.to_dict())

    # Project settings

    async def get_tool_approval(self, request: web.Request) -> web.Response:
        settings = await self.orchestrator.get_tool_approval_settings(request.match_info["project_id"])
        return web.json_response(settings.to_wire())

    async def put_tool_approval(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        settings = await self.orchestrator.update_tool_approval_settings(request.match_info["project_id"], body)
        return web.json_response(settings.to_wire())

    async def get_sandbox_limits(self, request: web.Request) -> web.Response:
        limits = await self.orchestrator.get_sandbox_limits(request.match_info["project_id"])
        return web.json_response(limits.to_wire())

    async def put_sandbox_limits(self, request: web.Request) -> web.Response:
        body = await _read_json(request)
        limits = await self.orchestrator.update_sandbox_limits(request.match_info["project_id"], body)
        return web.json_response(limits.to_wire())

    # App setup

    def create_app(self) -> web.Application:
        app = web.Application(middlewares=[error_middleware])
        app.router.add_post("/api/tasks/{task_id}/executions", self.start_execution)
        app.router.add_get("/api/executions/{execution_id}", self.get_execution)
        app.router.add_post("/api/executions/{execution_id}/actions", self.update_actions)
        app.router.add_post("/api/executions/{execution_id}/execute", self.execute_actions)
        app.router.add_post("/api/executions/{execution_id}/cancel", self.cancel_execution)
        app.router.add_post("/api/executions/{execution_id}/resume", self.resume_execution)
        app.router.add_get("/api/executions/{execution_id}/questions", self.list_questions)
        app.router.add_post("/api/questions/{question_id}/answer", self.answer_question)
        app.router.add_get("/api/projects/{project_id}/tool-approval", self.get_tool_approval)
        app.router.add_put("/api/projects/{project_id}/tool-approval", self.put_tool_approval)
        app.router.add_get("/api/projects/{project_id}/sandbox-limits", self.get_sandbox_limits)
        app.router.add_put("/api/projects/{project_id}/sandbox-limits", self.put_sandbox_limits)
        return app


async def _run_server(config: Config) -> None:
    """Start the web server and block until SIGINT/SIGTERM."""
    store = ExecutionStore(config.store.path)
    provider = provider_from_config()
    orchestrator = ExecutionOrchestrator(store, provider, config=config)
    server = WebServer(orchestrator, config)

    loop = asyncio.get_running_loop()
    stop_event = asyncio.Event()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except (NotImplementedError, OSError):
            # Windows doesn't support add_signal_handler for SIGTERM.
            pass

    runner = web.AppRunner(server.create_app())
    await runner.setup()
    site = web.TCPSite(runner, config.web.host, config.web.port)
    await site.start()
    log.info("Web server started", host=config.web.host, port=config.web.port)
    print(f"\n  OpenDev Agent API running at http://{config.web.host}:{config.web.port}")
    print("  Press Ctrl+C to stop.\n")

    try:
        await stop_event.wait()
    finally:
        print("\nShutting down...")
        await orchestrator.aclose()
        await runner.cleanup()
        await provider.close()
        await store.close()


def run_web_server(config: Config) -> None:
    """Entry point for running the web server."""
    try:
        asyncio.run(_run_server(config))
    except KeyboardInterrupt:
        pass  # Signal handler handles graceful shutdown.
