"""HTTP command surface for the workstream runtime."""

import asyncio
import contextlib
import logging
from typing import Any

from fastapi import FastAPI, HTTPException  # type: ignore[import-untyped]
from fastapi.middleware.cors import CORSMiddleware  # type: ignore[import-untyped]
from pydantic import BaseModel, Field

from . import __version__
from .errors import (
    ConfigurationError,
    InvalidMessage,
    PermanentWorkerFailure,
    StoreFailure,
    TransientWorkerFailure,
    UnknownWorkstream,
    WorkstreamError,
)
from .logging_manager import LoggingManager
from .models import AdapterConfig, AgentKind, FileChangeType, parse_timestamp, utc_now
from .runtime import WorkstreamRuntime
from .settings import WorkstreamSettings

logger = logging.getLogger(__name__)


class CreateAgentRequest(BaseModel):
    name: str
    project_id: str = "default"
    kind: AgentKind = AgentKind.MOCK
    function_tag: str = "general"
    working_directory: str | None = None


class SendMessageRequest(BaseModel):
    kind: str = "instruction"
    content: str = ""
    reply_to: str | None = None
    metadata: dict[str, Any] | None = None


class AdapterConfigRequest(BaseModel):
    adapter_type: str = "mock"
    session_name: str | None = None
    endpoint: str | None = None
    command: str | None = None
    env: dict[str, str] = Field(default_factory=dict)
    restart_policy: str | None = None
    launch_command: str | None = None


class FileChangeRequest(BaseModel):
    path: str
    change_type: FileChangeType


def http_error(error: WorkstreamError) -> HTTPException:
    """Map a workstream error to the HTTP status it is reported with."""
    if isinstance(error, UnknownWorkstream):
        return HTTPException(status_code=404, detail=str(error))
    if isinstance(error, (ConfigurationError, InvalidMessage)):
        return HTTPException(status_code=400, detail=str(error))
    if isinstance(error, TransientWorkerFailure):
        headers = None
        if error.retry_after_seconds is not None:
            headers = {"Retry-After": str(error.retry_after_seconds)}
        return HTTPException(status_code=503, detail=str(error), headers=headers)
    if isinstance(error, PermanentWorkerFailure):
        return HTTPException(status_code=409, detail=str(error))
    if isinstance(error, StoreFailure):
        return HTTPException(status_code=500, detail=str(error))
    return HTTPException(status_code=500, detail=str(error))


class WorkstreamServer:
    """FastAPI application exposing the runtime's commands."""

    def __init__(
        self,
        runtime: WorkstreamRuntime,
        settings: WorkstreamSettings | None = None,
        logging_manager: LoggingManager | None = None,
    ):
        """Initialize the server.

        Args:
            runtime: Runtime that owns every workstream
            settings: Host, port and background poll settings
            logging_manager: Source of per-workstream log files
        """
        self.runtime = runtime
        self.settings = settings or runtime.settings
        self.logging_manager = logging_manager or runtime.logging_manager

        self.app = FastAPI(
            title="Workstreams",
            description="Supervises one worker per workstream and records its conversation",
            version=__version__,
            lifespan=self._lifespan,
        )
        self.app.add_middleware(
            CORSMiddleware,
            allow_origins=["*"],
            allow_credentials=True,
            allow_methods=["*"],
            allow_headers=["*"],
        )
        self._setup_routes()

    @contextlib.asynccontextmanager
    async def _lifespan(self, app: FastAPI):
        task = None
        if self.settings.health_poll_interval_seconds > 0:
            task = asyncio.create_task(self._health_check_loop())
        try:
            yield
        finally:
            if task is not None:
                task.cancel()
                with contextlib.suppress(asyncio.CancelledError):
                    await task
            await self.runtime.shutdown()

    async def _health_check_loop(self):
        """Background health poll of every configured workstream."""
        interval = self.settings.health_poll_interval_seconds
        while True:
            try:
                await self.runtime.poll_all()
            except Exception as e:
                logger.error(f"Error in health check loop: {e}")
            await asyncio.sleep(interval)

    def _setup_routes(self):
        """Register the HTTP routes."""
        runtime = self.runtime

        @self.app.get("/health")
        async def health_check():
            """Service liveness check."""
            agents = runtime.list_agents()
            return {
                "status": "healthy",
                "timestamp": utc_now().isoformat(),
                "version": __version__,
                "workstreams": {
                    "total": len(agents),
                    "configured": len(runtime.store.list_adapter_configs()),
                },
            }

        @self.app.post("/agents", status_code=201)
        async def create_agent(request: CreateAgentRequest):
            try:
                agent = runtime.create_agent(
                    request.name,
                    request.project_id,
                    kind=request.kind,
                    function_tag=request.function_tag,
                    working_directory=request.working_directory,
                )
            except WorkstreamError as e:
                raise http_error(e) from e
            return agent.to_dict()

        @self.app.get("/agents")
        async def list_agents():
            return {"agents": [a.to_dict() for a in runtime.list_agents()]}

        @self.app.get("/agents/{agent_id}")
        async def get_agent(agent_id: str):
            try:
                return runtime.get_agent(agent_id).to_dict()
            except WorkstreamError as e:
                raise http_error(e) from e

        @self.app.post("/agents/{agent_id}/messages")
        async def send_message(agent_id: str, request: SendMessageRequest):
            """Record a message to the workstream and deliver it to the worker."""
            try:
                message = await runtime.send(
                    agent_id,
                    request.kind,
                    request.content,
                    reply_to=request.reply_to,
                    metadata=request.metadata,
                )
            except WorkstreamError as e:
                raise http_error(e) from e
            return message.to_dict()

        @self.app.get("/agents/{agent_id}/messages")
        async def get_conversation(
            agent_id: str,
            limit: int | None = None,
            before: str | None = None,
            before_id: str | None = None,
        ):
            """Page through the conversation, oldest first within a page."""
            try:
                before_ts = parse_timestamp(before) if before else None
            except ValueError as e:
                raise HTTPException(status_code=400, detail=f"Invalid before timestamp: {before}") from e
            try:
                page = runtime.get_conversation(
                    agent_id, limit=limit, before=before_ts, before_id=before_id
                )
            except WorkstreamError as e:
                raise http_error(e) from e
            return page.to_dict(agent_id)

        @self.app.put("/agents/{agent_id}/adapter")
        async def set_adapter_config(agent_id: str, request: AdapterConfigRequest):
            try:
                config = AdapterConfig.from_dict(request.model_dump())
                await runtime.configure(agent_id, config)
            except WorkstreamError as e:
                raise http_error(e) from e
            return {}

        @self.app.get("/agents/{agent_id}/adapter")
        async def get_adapter_config(agent_id: str):
            try:
                config = runtime.get_adapter_config(agent_id)
            except WorkstreamError as e:
                raise http_error(e) from e
            return config.to_dict() if config else None

        @self.app.get("/agents/{agent_id}/health")
        async def get_adapter_health(agent_id: str):
            try:
                health = await runtime.health(agent_id)
            except WorkstreamError as e:
                raise http_error(e) from e
            return health.to_dict() if health else None

        @self.app.post("/agents/{agent_id}/restart")
        async def restart_adapter(agent_id: str):
            try:
                health = await runtime.restart(agent_id)
            except WorkstreamError as e:
                raise http_error(e) from e
            return health.to_dict() if health else None

        @self.app.post("/agents/{agent_id}/stop")
        async def stop_adapter(agent_id: str):
            try:
                await runtime.stop(agent_id)
            except WorkstreamError as e:
                raise http_error(e) from e
            return {}

        @self.app.get("/agents/{agent_id}/runs")
        async def list_runs(agent_id: str, limit: int = 20):
            try:
                runs = runtime.list_runs(agent_id, limit)
            except WorkstreamError as e:
                raise http_error(e) from e
            return {"agent_id": agent_id, "runs": [r.to_dict() for r in runs]}

        @self.app.post("/agents/{agent_id}/file-changes")
        async def record_file_change(agent_id: str, request: FileChangeRequest):
            try:
                run = runtime.record_file_change(agent_id, request.path, request.change_type)
            except WorkstreamError as e:
                raise http_error(e) from e
            return run.to_dict()

        @self.app.get("/agents/{agent_id}/logs")
        async def get_agent_logs(agent_id: str, log_type: str = "agent", tail: int = 100):
            """Read lines from the per-workstream log files."""
            try:
                runtime.get_agent(agent_id)
            except WorkstreamError as e:
                raise http_error(e) from e
            if log_type not in ("agent", "communication", "terminal_output"):
                raise HTTPException(status_code=400, detail=f"Unknown log type: {log_type}")
            if self.logging_manager is None:
                return {"agent_id": agent_id, "log_type": log_type, "lines": []}
            lines = self.logging_manager.get_agent_logs(agent_id, log_type=log_type, tail=tail)
            return {"agent_id": agent_id, "log_type": log_type, "lines": [line.rstrip("\n") for line in lines]}

    async def start_server(self):
        """Serve the app with uvicorn until interrupted."""
        import uvicorn  # type: ignore[import-untyped]

        logger.info(f"Starting Workstreams server on {self.settings.server_host}:{self.settings.server_port}")
        config = uvicorn.Config(
            self.app,
            host=self.settings.server_host,
            port=self.settings.server_port,
            log_level=self.settings.log_level.lower(),
        )
        server = uvicorn.Server(config)
        await server.serve()
