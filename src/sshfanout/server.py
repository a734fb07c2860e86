"""HTTP transport: submit a batch as a Server-Sent Events stream, cancel it by id."""

from __future__ import annotations

import asyncio
from collections.abc import AsyncIterator, Callable
from typing import Any

import uvicorn
from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse, StreamingResponse
from pydantic import BaseModel, ConfigDict

from sshfanout import __version__
from sshfanout.cancellation import ExecutionRegistry
from sshfanout.config import Configuration
from sshfanout.credentials import CredentialStore, StaticCredentialStore
from sshfanout.events import Event, format_sse
from sshfanout.executor import SessionExecutor, SSHSessionExecutor
from sshfanout.logger import get_logger
from sshfanout.models import ExecutionSettings, Host
from sshfanout.scheduler import Batch, Dispatcher
from sshfanout.validation import ValidationError, validate_request

__all__ = [
    "ExecutionRequest",
    "ExecutorFactory",
    "create_app",
    "run_server",
]

logger = get_logger(__name__)

# After the wall-clock ceiling the batch is cancelled; in-flight sessions get
# this long to settle before the batch is stopped outright.
DEADLINE_GRACE_SECONDS = 5.0

SSE_HEADERS = {
    "Cache-Control": "no-cache",
    "Connection": "keep-alive",
    "X-Accel-Buffering": "no",
}

ExecutorFactory = Callable[[ExecutionSettings], SessionExecutor]


class HostModel(BaseModel):
    model_config = ConfigDict(coerce_numbers_to_str=True)

    id: str
    address: str
    port: int = 22
    username: str
    credential_ref: str | None = None
    name: str | None = None

    def to_host(self) -> Host:
        return Host(
            id=self.id,
            address=self.address,
            port=self.port,
            username=self.username,
            credential_ref=self.credential_ref,
            name=self.name,
        )


class SettingsModel(BaseModel):
    """Raw settings. Every field is optional; the sanitizer fills and clamps them."""

    model_config = ConfigDict(allow_inf_nan=False)

    connection_timeout: float | None = None
    command_timeout: float | None = None
    max_concurrent: int | None = None
    retry_enabled: bool | None = None
    retry_attempts: int | None = None
    retry_delay: float | None = None
    retry_infinite: bool | None = None


class ExecutionRequest(BaseModel):
    hosts: list[HostModel]
    command: str
    settings: SettingsModel | None = None


def create_app(
    config: Configuration | None = None,
    credentials: CredentialStore | None = None,
    executor_factory: ExecutorFactory | None = None,
) -> FastAPI:
    """Build the HTTP application.

    Args:
        config: Limits, defaults and server settings (defaults if omitted)
        credentials: Store for the credential_ref of submitted hosts
        executor_factory: Builds the session executor for a batch's settings;
            defaults to an SSH executor over `credentials`
    """
    config = config or Configuration()
    store: CredentialStore = credentials if credentials is not None else StaticCredentialStore()

    def default_factory(settings: ExecutionSettings) -> SessionExecutor:
        return SSHSessionExecutor(store, connection_timeout=settings.connection_timeout)

    make_executor = executor_factory or default_factory
    registry = ExecutionRegistry()
    background: set[asyncio.Task[Any]] = set()

    app = FastAPI(title="ssh-fanout", version=__version__)
    app.state.registry = registry
    app.state.config = config

    @app.exception_handler(RequestValidationError)
    async def invalid_body(request: Request, exc: RequestValidationError) -> JSONResponse:
        details = [f"{'.'.join(str(p) for p in err['loc'])}: {err['msg']}" for err in exc.errors()]
        return JSONResponse(status_code=400, content={"error": "Invalid request body", "details": details})

    @app.get("/health")
    async def health() -> dict[str, Any]:
        return {"status": "ok", "version": __version__, "active": len(registry)}

    @app.get("/executions")
    async def list_executions() -> dict[str, Any]:
        executions = []
        for execution_id in registry.active_ids():
            ctx = registry.get(execution_id)
            if ctx is None:
                continue
            executions.append(
                {
                    "execution_id": execution_id,
                    "total": ctx.total,
                    "completed": ctx.completed,
                    "success": ctx.success,
                    "error": ctx.error,
                    "skipped": ctx.skipped,
                    "in_flight": ctx.in_flight,
                    "cancelled": ctx.cancelled,
                }
            )
        return {"executions": executions}

    @app.post("/executions", response_model=None)
    async def submit(body: ExecutionRequest) -> StreamingResponse | JSONResponse:
        raw_settings = body.settings.model_dump(exclude_none=True) if body.settings else {}
        try:
            validated = validate_request(
                [h.to_host() for h in body.hosts],
                body.command,
                raw_settings,
                limits=config.limits,
                defaults=config.defaults,
            )
        except ValidationError as e:
            logger.info("Batch rejected", error=e.message, hosts=len(body.hosts))
            return JSONResponse(status_code=400, content={"error": e.message, "details": e.details})

        dispatcher = Dispatcher(make_executor(validated.settings), registry)
        batch = dispatcher.create_batch(validated.hosts, validated.command, validated.settings)
        queue = batch.bus.subscribe()
        runner = asyncio.create_task(dispatcher.run(batch), name=f"batch-{batch.execution_id}")
        background.add(runner)
        runner.add_done_callback(background.discard)
        _arm_deadline(dispatcher, batch, runner, config.server.max_duration)
        logger.info("Batch accepted", execution_id=batch.execution_id, hosts=len(validated.hosts))

        return StreamingResponse(
            _stream_batch(batch, queue),
            media_type="text/event-stream",
            headers=SSE_HEADERS,
        )

    @app.delete("/executions/{execution_id}")
    async def cancel(execution_id: str) -> JSONResponse:
        if registry.cancel(execution_id):
            return JSONResponse(content={"success": True, "message": "Execution cancelled"})
        return JSONResponse(status_code=404, content={"success": False, "error": "Execution not found"})

    return app


def _arm_deadline(dispatcher: Dispatcher, batch: Batch, runner: asyncio.Task[Any], max_duration: float) -> None:
    """Enforce the wall-clock ceiling on a running batch.

    Both timers are disarmed when the batch task finishes.
    """
    loop = asyncio.get_running_loop()
    soft_deadline = loop.call_later(max_duration, dispatcher.cancel, batch.execution_id, "deadline exceeded")
    hard_deadline = loop.call_later(max_duration + DEADLINE_GRACE_SECONDS, runner.cancel)

    def disarm(task: asyncio.Task[Any]) -> None:
        soft_deadline.cancel()
        hard_deadline.cancel()

    runner.add_done_callback(disarm)


async def _stream_batch(batch: Batch, queue: asyncio.Queue[Event | None]) -> AsyncIterator[str]:
    """Relay a batch's events as SSE frames until the bus closes.

    Cancels the batch if the client goes away first.
    """
    try:
        while (event := await queue.get()) is not None:
            yield format_sse(event)
    finally:
        if not batch.bus.closed:
            batch.context.token.cancel("client disconnected")


def run_server(config: Configuration, credentials: CredentialStore | None = None) -> None:
    """Serve the application with uvicorn until interrupted.

    uvicorn's own log configuration is disabled so its records go through the
    structlog handlers installed by configure_logging().
    """
    app = create_app(config, credentials)
    logger.info("Starting server", host=config.server.host, port=config.server.port)
    uvicorn.run(app, host=config.server.host, port=config.server.port, log_config=None)
