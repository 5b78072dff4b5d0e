"""Workstream runtime: binds each workstream to exactly one live adapter.

The runtime owns an explicit registry of supervision units keyed by agent id.
Every operation on one workstream runs under that unit's ``asyncio.Lock``, so a
restart can never race a send for the same workstream, while units for
different workstreams proceed independently.

Blocking adapter work runs on a bounded thread pool owned by the runtime. A
workstream has at most one health poll in flight: while an earlier poll is
still stuck, later polls count a failure instead of taking another thread.
Stop and restart are bounded by ``stop_timeout_seconds``, after which the
worker is aborted without waiting for the adapter lock.
"""

import asyncio
import concurrent.futures
import logging
import threading
from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from functools import partial
from typing import Any

from .adapters import WorkerAdapter, create_adapter
from .errors import (
    ConfigurationError,
    PermanentWorkerFailure,
    StoreFailure,
    TransientWorkerFailure,
    UnknownWorkstream,
    WorkstreamError,
)
from .logging_manager import LoggingManager
from .models import (
    AdapterConfig,
    AdapterHealth,
    AdapterType,
    Agent,
    AgentKind,
    AgentStatus,
    ConversationPage,
    FileChange,
    FileChangeType,
    Message,
    MessageKind,
    Run,
    RunStatus,
    utc_now,
)
from .runs import RunLedger
from .settings import WorkstreamSettings
from .store import WorkstreamStore
from .supervisor import HealthSupervisor

logger = logging.getLogger(__name__)

# Agent status after a message the user sends
OUTBOUND_STATUS = {
    MessageKind.INSTRUCTION: AgentStatus.RUNNING,
    MessageKind.RESUME: AgentStatus.RUNNING,
    MessageKind.PAUSE: AgentStatus.BLOCKED,
    MessageKind.CANCEL: AgentStatus.IDLE,
}

# Agent status after a message the worker sends; status updates and
# heartbeats are informational and leave the status alone
INBOUND_STATUS = {
    MessageKind.OUTPUT: AgentStatus.RUNNING,
    MessageKind.ERROR: AgentStatus.ERRORED,
    MessageKind.BLOCKED: AgentStatus.BLOCKED,
    MessageKind.COMPLETED: AgentStatus.COMPLETED,
}

KIND_RUN_STATUS = {
    MessageKind.COMPLETED: RunStatus.COMPLETED,
    MessageKind.ERROR: RunStatus.FAILED,
    MessageKind.BLOCKED: RunStatus.NEEDS_REVIEW,
}

RUN_AGENT_STATUS = {
    RunStatus.COMPLETED: AgentStatus.COMPLETED,
    RunStatus.FAILED: AgentStatus.ERRORED,
    RunStatus.NEEDS_REVIEW: AgentStatus.BLOCKED,
}


@dataclass
class _PendingOutput:
    """Worker message waiting to be stored, with its bookkeeping still to do."""

    message: Message
    stored: Message | None = None
    # Remaining bookkeeping steps; a retry resumes at the first one
    steps: deque[Callable[[], Any]] = field(default_factory=deque)


@dataclass
class _Workstream:
    """Supervision unit for one agent."""

    agent_id: str
    supervisor: HealthSupervisor
    config: AdapterConfig | None = None
    adapter: WorkerAdapter | None = None
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    # Worker output waiting to be stored; drained in order
    pending: deque[_PendingOutput] = field(default_factory=deque)
    pending_lock: threading.Lock = field(default_factory=threading.Lock)
    poll: asyncio.Future | None = None


class WorkstreamRuntime:
    """Composition root for adapters, health supervision and the message store."""

    def __init__(
        self,
        store: WorkstreamStore,
        settings: WorkstreamSettings | None = None,
        logging_manager: LoggingManager | None = None,
        clock: Callable[[], datetime] = utc_now,
        adapter_factory: Callable[..., WorkerAdapter] = create_adapter,
    ):
        """Initialize the runtime.

        Args:
            store: Durable store shared by all workstreams
            settings: Supervision and adapter settings
            logging_manager: Audit and per-workstream logging, optional
            clock: Time source for messages, runs and supervisors
            adapter_factory: Builds an adapter from a config
        """
        self.store = store
        self.settings = settings or WorkstreamSettings()
        self.logging_manager = logging_manager
        self.clock = clock
        self.adapter_factory = adapter_factory
        self.runs = RunLedger(store, clock)
        self._workstreams: dict[str, _Workstream] = {}
        self._executor: concurrent.futures.ThreadPoolExecutor | None = None

    # ── Blocking adapter calls ──────────────────────────────────────────

    @property
    def executor(self) -> concurrent.futures.ThreadPoolExecutor:
        """Thread pool for adapter calls, created on first use."""
        if self._executor is None:
            self._executor = concurrent.futures.ThreadPoolExecutor(
                max_workers=self.settings.max_worker_threads,
                thread_name_prefix="workstream-adapter",
            )
        return self._executor

    def _submit(self, fn: Callable[..., Any], *args, **kwargs) -> asyncio.Future:
        loop = asyncio.get_running_loop()
        return loop.run_in_executor(self.executor, partial(fn, *args, **kwargs))

    async def _run_bounded(self, ws: _Workstream, fn: Callable[[], Any], action: str) -> bool:
        """Run a stop or restart call, aborting the worker if it overruns.

        Returns:
            True if the call finished within ``stop_timeout_seconds``
        """
        timeout = self.settings.stop_timeout_seconds
        try:
            await asyncio.wait_for(self._submit(fn), timeout=timeout)
        except TimeoutError:
            reason = f"{action.capitalize()} did not finish within {timeout}s; worker aborted"
            logger.error(f"{reason} ({ws.agent_id})", extra={"agent_id": ws.agent_id})
            ws.adapter.abort()
            ws.supervisor.note_error(reason)
            ws.supervisor.mark_stopped()
            self._audit("abort", ws.agent_id, {"action": action, "timeout": timeout})
            return False
        return True

    # ── Agents ──────────────────────────────────────────────────────────

    def create_agent(
        self,
        name: str,
        project_id: str,
        kind: AgentKind = AgentKind.MOCK,
        function_tag: str = "general",
        working_directory: str | None = None,
    ) -> Agent:
        agent = Agent.new(name, project_id, kind, function_tag, working_directory)
        agent.created_at = agent.last_active_at = self.clock()
        self.store.create_agent(agent)
        self._audit("create_agent", agent.id, {"name": name, "kind": agent.kind.value})
        if self.logging_manager is not None:
            self.logging_manager.get_agent_logger(agent.id, name).info(
                f"Workstream created in project {project_id}"
            )
        return agent

    def get_agent(self, agent_id: str) -> Agent:
        """Return the workstream record.

        Raises:
            UnknownWorkstream: If no such workstream exists
        """
        agent = self.store.get_agent(agent_id)
        if agent is None:
            raise UnknownWorkstream(agent_id)
        return agent

    def list_agents(self) -> list[Agent]:
        return self.store.list_agents()

    # ── Registry ────────────────────────────────────────────────────────

    def _new_supervisor(self, agent_id: str) -> HealthSupervisor:
        return HealthSupervisor(
            agent_id,
            failure_threshold=self.settings.failure_threshold,
            backoff_base_seconds=self.settings.backoff_base_seconds,
            backoff_cap_seconds=self.settings.backoff_cap_seconds,
            clock=self.clock,
        )

    def _entry(self, agent_id: str) -> _Workstream:
        """Get the supervision unit, rehydrating a persisted config on first use."""
        ws = self._workstreams.get(agent_id)
        if ws is not None:
            return ws

        agent = self.get_agent(agent_id)
        ws = _Workstream(agent_id=agent_id, supervisor=self._new_supervisor(agent_id))
        config = self.store.get_adapter_config(agent_id)
        if config is not None:
            try:
                ws.adapter = self._build_adapter(ws, agent, config)
                ws.config = config
                ws.supervisor.mark_configured()
                logger.info(
                    f"Rehydrated {config.adapter_type.value} adapter for {agent_id}",
                    extra={"agent_id": agent_id},
                )
            except ConfigurationError as e:
                ws.supervisor.note_error(str(e))
                logger.error(f"Stored adapter config for {agent_id} is invalid: {e}")
        self._workstreams[agent_id] = ws
        return ws

    def _build_adapter(self, ws: _Workstream, agent: Agent, config: AdapterConfig) -> WorkerAdapter:
        output_logger = None
        if self.logging_manager is not None:
            output_logger = partial(self.logging_manager.log_terminal_output, agent.id)
        return self.adapter_factory(
            agent.id,
            config,
            ws.supervisor,
            partial(self._publish, ws),
            settings=self.settings,
            working_directory=agent.working_directory,
            output_logger=output_logger,
        )

    @staticmethod
    def validate_config(config: AdapterConfig):
        """Reject configs that can never work.

        Raises:
            ConfigurationError: If a required field is missing
        """
        if config.adapter_type is AdapterType.PROCESS and not (config.command or "").strip():
            raise ConfigurationError("Process adapter requires a command")
        if config.adapter_type is AdapterType.TERMINAL_SESSION and not config.session_name:
            raise ConfigurationError("Terminal session adapter requires a session_name")

    # ── Publishing worker output ────────────────────────────────────────

    def _publish(
        self,
        ws: _Workstream,
        kind: MessageKind,
        content: str,
        metadata: dict[str, Any] | None = None,
    ):
        """Sink handed to adapters; may be called from reader threads.

        The message is queued first and the queue is drained in order, so a
        store outage never loses output: undelivered messages stay queued
        and are retried on the next operation for this workstream.
        """
        message = Message.from_agent(ws.agent_id, kind, content, metadata, now=self.clock())
        with ws.pending_lock:
            ws.pending.append(_PendingOutput(message))
            self._drain(ws)

    def _flush_pending(self, ws: _Workstream):
        with ws.pending_lock:
            self._drain(ws)

    def _drain(self, ws: _Workstream):
        while ws.pending:
            entry = ws.pending[0]
            try:
                if entry.stored is None:
                    entry.stored = self.store.append(entry.message)
                    self._log_communication(entry.stored)
                    entry.steps.extend(self._inbound_steps(entry.stored))
                while entry.steps:
                    entry.steps[0]()
                    entry.steps.popleft()
            except StoreFailure as e:
                ws.supervisor.note_error(f"Store unavailable: {e}")
                logger.error(
                    f"Could not store output for {ws.agent_id}, "
                    f"{len(ws.pending)} message(s) pending: {e}",
                    extra={"agent_id": ws.agent_id, "pending": len(ws.pending)},
                )
                self._audit("store_failure", ws.agent_id, {"pending": len(ws.pending), "error": str(e)})
                return
            ws.pending.popleft()

    def _inbound_steps(self, message: Message) -> list[Callable[[], Any]]:
        """Run and agent-status bookkeeping for one stored worker message.

        Each step is a separate store write, so a step that fails is retried
        alone and earlier steps are not repeated.
        """
        agent_id = message.agent_id
        kind = message.kind
        metadata = message.metadata or {}
        stderr_line = kind is MessageKind.ERROR and metadata.get("stream") == "stderr"
        steps = []

        if kind is not MessageKind.HEARTBEAT:
            steps.append(
                partial(
                    self.runs.append_run_output,
                    agent_id,
                    "stderr" if stderr_line else kind.value,
                    message.content,
                )
            )

        run_status = None
        explicit = metadata.get("run_status")
        if explicit in {s.value for s in RUN_AGENT_STATUS}:
            run_status = RunStatus(explicit)
        elif not stderr_line:
            run_status = KIND_RUN_STATUS.get(kind)
        if run_status is not None:
            steps.append(partial(self.runs.finalize_latest_run, agent_id, run_status, message.content))

        if stderr_line:
            status = AgentStatus.RUNNING
        elif explicit and run_status is not None:
            status = RUN_AGENT_STATUS[run_status]
        else:
            status = INBOUND_STATUS.get(kind)
        if status is not None:
            steps.append(partial(self.store.update_agent_status, agent_id, status))
        return steps

    def _track_outbound(self, message: Message):
        agent_id = message.agent_id
        kind = message.kind
        if kind in (MessageKind.INSTRUCTION, MessageKind.RESUME):
            self.runs.start_instruction_run(agent_id, message.content)
        elif kind is MessageKind.PAUSE:
            self.runs.append_run_output(agent_id, "pause", message.content)
        elif kind is MessageKind.CANCEL:
            self.runs.append_run_output(agent_id, "cancel", message.content)
            self.runs.finalize_latest_run(agent_id, RunStatus.FAILED, "Cancelled by operator")

        status = OUTBOUND_STATUS.get(kind)
        if status is not None:
            self.store.update_agent_status(agent_id, status)

    def _check_escalation(self, ws: _Workstream, was_escalated: bool):
        """Announce a newly reached failure-streak suspension once."""
        supervisor = ws.supervisor
        if was_escalated or not supervisor.is_escalated:
            return

        failures = supervisor.consecutive_failures
        backoff = supervisor.backoff_seconds()
        reason = supervisor.last_error or "unknown error"
        summary = (
            f"Adapter suspended after {failures} consecutive failures: {reason}. "
            f"Auto-restart paused; restart manually or send a new instruction "
            f"(backoff {backoff}s)."
        )
        self._publish(
            ws,
            MessageKind.ERROR,
            summary,
            {
                "source": "adapter_supervisor",
                "retry_after_seconds": backoff,
                "consecutive_failures": failures,
                "reason": reason,
            },
        )
        self._audit("suspend", ws.agent_id, {"consecutive_failures": failures, "reason": reason})
        self._agent_log(ws.agent_id, logging.WARNING, summary)

    # ── Commands ────────────────────────────────────────────────────────

    async def configure(self, agent_id: str, config: AdapterConfig):
        """Replace a workstream's adapter config.

        The current adapter is stopped before the new config is stored, and
        the new adapter is built but not started. The supervisor is kept, so
        a failure streak and auto-restart suppression survive a reconfigure;
        only a restart or a delivered instruction clears them.

        Raises:
            UnknownWorkstream: If the workstream does not exist
            ConfigurationError: If the config is invalid (nothing is changed)
        """
        agent = self.get_agent(agent_id)
        ws = self._entry(agent_id)
        async with ws.lock:
            try:
                self.validate_config(config)
            except ConfigurationError as e:
                ws.supervisor.note_error(str(e))
                raise

            if ws.adapter is not None:
                await self._run_bounded(ws, ws.adapter.stop, "stop")
                logger.info(
                    f"Stopped {ws.adapter.adapter_type.value} adapter for {agent_id} before reconfigure",
                    extra={"agent_id": agent_id},
                )

            self.store.set_adapter_config(agent_id, config)
            ws.supervisor.observe(False, False, "")
            ws.config = config
            ws.poll = None
            try:
                ws.adapter = self._build_adapter(ws, agent, config)
            except ConfigurationError as e:
                ws.adapter = None
                ws.supervisor.note_error(str(e))
                raise
            ws.supervisor.mark_configured()

        self._audit("configure", agent_id, config.to_dict())
        self._agent_log(agent_id, logging.INFO, f"Adapter configured: {config.adapter_type.value}")

    def get_adapter_config(self, agent_id: str) -> AdapterConfig | None:
        self.get_agent(agent_id)
        return self.store.get_adapter_config(agent_id)

    async def send(
        self,
        agent_id: str,
        kind: MessageKind | str,
        content: str,
        reply_to: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> Message:
        """Record a message to the workstream and deliver it to its adapter.

        Instructions are delivered with ``send_instruction`` and, on success,
        clear the failure streak and any auto-restart suppression. Control
        kinds are forwarded best-effort and never fail the call.

        Raises:
            UnknownWorkstream: If the workstream does not exist
            InvalidMessage: If ``kind`` is not a known message kind
            StoreFailure: If the message cannot be recorded
            TransientWorkerFailure: If the instruction could not be delivered
            PermanentWorkerFailure: If the instruction could not be delivered
                and the workstream is suspended after its failure streak
        """
        kind = MessageKind.parse(kind)
        ws = self._entry(agent_id)
        async with ws.lock:
            self._flush_pending(ws)
            try:
                message = self.store.append(
                    Message.to_agent(
                        agent_id, kind, content, reply_to=reply_to, metadata=metadata, now=self.clock()
                    )
                )
                self._log_communication(message)
                self._track_outbound(message)
            except StoreFailure as e:
                ws.supervisor.note_error(f"Store unavailable: {e}")
                raise

            self._audit("send", agent_id, {"kind": kind.value, "message_id": message.id})

            if ws.adapter is None:
                logger.warning(
                    f"No adapter configured for {agent_id}; {kind.value} recorded only",
                    extra={"agent_id": agent_id, "message_id": message.id},
                )
                return message

            was_escalated = ws.supervisor.is_escalated
            if kind is MessageKind.INSTRUCTION:
                try:
                    await self._submit(
                        ws.adapter.send_instruction,
                        content,
                        message.id,
                        reply_to=reply_to,
                        metadata=metadata,
                    )
                except WorkstreamError as e:
                    ws.supervisor.note_error(str(e))
                    self.store.update_agent_status(agent_id, AgentStatus.ERRORED)
                    self._check_escalation(ws, was_escalated)
                    if ws.supervisor.is_escalated:
                        raise PermanentWorkerFailure(
                            f"Workstream {agent_id} suspended after "
                            f"{ws.supervisor.consecutive_failures} consecutive failures; "
                            f"restart it to resume: {e}"
                        ) from e
                    raise
                ws.supervisor.record_success()
            elif kind.is_control:
                try:
                    await self._submit(
                        ws.adapter.send_signal,
                        kind,
                        content,
                        message.id,
                        reply_to=reply_to,
                        metadata=metadata,
                    )
                except WorkstreamError as e:
                    ws.supervisor.note_error(f"{kind.value} not delivered: {e}")
                    logger.warning(
                        f"Best-effort {kind.value} for {agent_id} failed: {e}",
                        extra={"agent_id": agent_id, "message_id": message.id},
                    )
                    self._check_escalation(ws, was_escalated)
        return message

    async def health(self, agent_id: str) -> AdapterHealth | None:
        """Poll the adapter once, bounded by ``poll_timeout_seconds``.

        A poll that times out keeps running in its thread. Until it returns,
        each further call counts a failure without polling again.

        Returns:
            Health snapshot, or None if the workstream has no adapter config
        """
        ws = self._entry(agent_id)
        if ws.adapter is None:
            return None

        async with ws.lock:
            self._flush_pending(ws)
            was_escalated = ws.supervisor.is_escalated
            timeout = self.settings.poll_timeout_seconds
            if ws.poll is not None and not ws.poll.done():
                logger.warning(
                    f"Earlier health poll for {agent_id} is still running",
                    extra={"agent_id": agent_id},
                )
                ws.supervisor.record_failure("Previous health poll still running; worker unresponsive")
            else:
                ws.poll = self._submit(ws.adapter.poll_health)
                try:
                    await asyncio.wait_for(asyncio.shield(ws.poll), timeout=timeout)
                except TimeoutError:
                    logger.warning(
                        f"Health poll for {agent_id} timed out after {timeout}s",
                        extra={"agent_id": agent_id},
                    )
                    ws.supervisor.record_failure(f"Health poll timed out after {timeout}s")
                except Exception as e:
                    logger.error(f"Health poll for {agent_id} failed: {e}", extra={"agent_id": agent_id})
                    ws.supervisor.record_failure(f"Health poll failed: {e}")
            self._check_escalation(ws, was_escalated)
            return ws.supervisor.snapshot()

    async def restart(self, agent_id: str) -> AdapterHealth | None:
        """Tear down and re-establish the worker, clearing suppression.

        A worker that fails to come back, or a restart that overruns
        ``stop_timeout_seconds``, is reported through the returned snapshot's
        ``last_error`` rather than raised.

        Returns:
            Health snapshot, or None if the workstream has no adapter config

        Raises:
            ConfigurationError: If the config cannot start any worker
        """
        ws = self._entry(agent_id)
        if ws.adapter is None:
            return None

        async with ws.lock:
            self._flush_pending(ws)
            try:
                restarted = await self._run_bounded(ws, ws.adapter.restart, "restart")
            except TransientWorkerFailure as e:
                ws.supervisor.note_error(str(e))
                logger.warning(f"Restart of {agent_id} failed: {e}", extra={"agent_id": agent_id})
            except ConfigurationError as e:
                ws.supervisor.note_error(str(e))
                raise
            else:
                if restarted:
                    self.store.update_agent_status(agent_id, AgentStatus.IDLE)
            health = ws.supervisor.snapshot()

        self._audit("restart", agent_id, {"state": health.state.value, "last_error": health.last_error})
        self._agent_log(agent_id, logging.INFO, f"Adapter restarted, state {health.state.value}")
        return health

    async def stop(self, agent_id: str):
        """Stop the workstream's worker without restarting it.

        Returns within ``stop_timeout_seconds`` even when an earlier adapter
        call is stuck; the worker is then aborted.
        """
        ws = self._entry(agent_id)
        if ws.adapter is None:
            return
        async with ws.lock:
            await self._run_bounded(ws, ws.adapter.stop, "stop")
            self._flush_pending(ws)
        self._audit("stop", agent_id)
        self._agent_log(agent_id, logging.INFO, "Adapter stopped")

    async def shutdown(self):
        """Stop every live adapter and release the adapter thread pool."""
        agent_ids = [a for a, ws in self._workstreams.items() if ws.adapter is not None]
        results = await asyncio.gather(
            *(self.stop(agent_id) for agent_id in agent_ids), return_exceptions=True
        )
        for agent_id, result in zip(agent_ids, results, strict=True):
            if isinstance(result, Exception):
                logger.error(f"Failed to stop {agent_id} during shutdown: {result}")
        if self._executor is not None:
            # Threads stuck in a hung adapter call are left behind
            self._executor.shutdown(wait=False, cancel_futures=True)
            self._executor = None
        logger.info(f"Workstream runtime shut down ({len(agent_ids)} adapters stopped)")

    async def poll_all(self) -> dict[str, AdapterHealth | None]:
        """Poll every workstream that has an adapter config, concurrently."""
        agent_ids = list(self.store.list_adapter_configs())
        results = await asyncio.gather(
            *(self.health(agent_id) for agent_id in agent_ids), return_exceptions=True
        )
        snapshots = {}
        for agent_id, result in zip(agent_ids, results, strict=True):
            if isinstance(result, Exception):
                logger.error(f"Health poll for {agent_id} raised: {result}")
                snapshots[agent_id] = None
            else:
                snapshots[agent_id] = result
        return snapshots

    # ── Queries ─────────────────────────────────────────────────────────

    def get_conversation(
        self,
        agent_id: str,
        limit: int | None = None,
        before: datetime | str | None = None,
        before_id: str | None = None,
    ) -> ConversationPage:
        """Return one page of the conversation, oldest first.

        Raises:
            UnknownWorkstream: If the workstream does not exist
        """
        self.get_agent(agent_id)
        ws = self._workstreams.get(agent_id)
        if ws is not None:
            self._flush_pending(ws)
        return self.store.list_messages(agent_id, limit=limit, before=before, before_id=before_id)

    def list_runs(self, agent_id: str, limit: int = 20) -> list[Run]:
        self.get_agent(agent_id)
        return self.runs.list_runs(agent_id, limit)

    def record_file_change(
        self, agent_id: str, path: str, change_type: FileChangeType | str
    ) -> Run:
        """Attach a file-system observation to the workstream's active run."""
        self.get_agent(agent_id)
        change = FileChange(path=path, change_type=FileChangeType(change_type), timestamp=self.clock())
        return self.runs.record_file_change(agent_id, change)

    # ── Logging helpers ─────────────────────────────────────────────────

    def _audit(self, event_type: str, agent_id: str | None, details: dict[str, Any] | None = None):
        if self.logging_manager is not None:
            self.logging_manager.log_audit_event(event_type, agent_id=agent_id, details=details)

    def _log_communication(self, message: Message):
        if self.logging_manager is not None:
            self.logging_manager.log_communication(
                message.agent_id,
                message.id,
                message.direction.value,
                message.kind.value,
                message.content,
                reply_to=message.reply_to,
            )

    def _agent_log(self, agent_id: str, level: int, text: str):
        if self.logging_manager is not None:
            self.logging_manager.get_agent_logger(agent_id).log(level, text)
