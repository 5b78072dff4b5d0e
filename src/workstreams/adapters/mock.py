"""Deterministic in-process adapter for tests and demos."""

import logging
from typing import Any

from ..models import AdapterConfig, AdapterHealth, AdapterType, MessageKind
from ..supervisor import HealthSupervisor
from .base import MessageSink

logger = logging.getLogger(__name__)

MOCK_DETAILS = "Mock adapter ready"


class MockAdapter:
    """Simulated worker that answers every instruction with one output message.

    There is no randomness: a heartbeat is emitted on every
    ``heartbeat_every``-th poll while started (0 disables heartbeats).
    """

    adapter_type = AdapterType.MOCK

    def __init__(
        self,
        agent_id: str,
        config: AdapterConfig,
        supervisor: HealthSupervisor,
        sink: MessageSink,
        heartbeat_every: int = 5,
    ):
        self.agent_id = agent_id
        self.config = config
        self.supervisor = supervisor
        self.sink = sink
        self.heartbeat_every = heartbeat_every
        self.started = False
        self.polls = 0

    def start(self, config: AdapterConfig | None = None) -> AdapterHealth:
        if config is not None:
            self.config = config
        if not self.started:
            self.supervisor.mark_starting()
            self.started = True
            logger.debug(f"Mock adapter started for {self.agent_id}", extra={"agent_id": self.agent_id})
        return self.supervisor.record_started(MOCK_DETAILS)

    def stop(self):
        self.started = False
        self.supervisor.mark_stopped()

    def abort(self):
        self.stop()

    def send_instruction(
        self,
        text: str,
        message_id: str | None = None,
        reply_to: str | None = None,
        metadata: dict[str, Any] | None = None,
    ):
        if not self.started:
            self.start()
        self.sink(MessageKind.OUTPUT, f"[mock] Processed: {text}", None)

    def send_signal(
        self,
        kind: MessageKind,
        content: str = "",
        message_id: str | None = None,
        reply_to: str | None = None,
        metadata: dict[str, Any] | None = None,
    ):
        if kind is MessageKind.STATUS_REQUEST:
            self.sink(
                MessageKind.STATUS_UPDATE, "Mock adapter healthy; waiting for instructions.", None
            )
        elif kind is MessageKind.PAUSE:
            self.sink(MessageKind.BLOCKED, "Paused by operator", None)
        elif kind is MessageKind.RESUME:
            self.sink(MessageKind.STATUS_UPDATE, "Resumed", None)
        elif kind is MessageKind.CANCEL:
            # run bookkeeping for cancel is done by the runtime
            logger.debug(f"Mock adapter cancelled for {self.agent_id}")

    def poll_health(self) -> AdapterHealth:
        self.polls += 1
        if self.started and self.heartbeat_every and self.polls % self.heartbeat_every == 0:
            self.supervisor.heartbeat()
            self.sink(MessageKind.HEARTBEAT, "Mock adapter heartbeat", None)
        return self.supervisor.record_poll(True, True, details=MOCK_DETAILS)

    def restart(self) -> AdapterHealth:
        self.stop()
        self.supervisor.reset()
        return self.start()
