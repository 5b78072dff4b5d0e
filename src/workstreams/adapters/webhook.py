"""Adapter that forwards messages to an HTTP webhook worker."""

import logging
import threading
from typing import Any

import httpx

from ..errors import InvalidMessage
from ..models import (
    DEFAULT_WEBHOOK_ENDPOINT,
    AdapterConfig,
    AdapterHealth,
    AdapterType,
    MessageKind,
    RunStatus,
)
from ..supervisor import HealthSupervisor
from .base import MessageSink, worker_failure

logger = logging.getLogger(__name__)

AUTH_HEADER_ENV_KEY = "AUTH_HEADER"
_RUN_STATUSES = {RunStatus.COMPLETED.value, RunStatus.FAILED.value, RunStatus.NEEDS_REVIEW.value}


class WebhookAdapter:
    """POSTs each instruction or signal as JSON and publishes the reply.

    Request body: ``{agent_id, message_id, kind, content, reply_to, metadata}``.
    A JSON reply ``{kind?, status?, content?}`` becomes one from-agent message;
    a terminal ``status`` is passed on as ``run_status`` metadata.
    """

    adapter_type = AdapterType.HTTP_WEBHOOK

    def __init__(
        self,
        agent_id: str,
        config: AdapterConfig,
        supervisor: HealthSupervisor,
        sink: MessageSink,
        timeout: float = 8.0,
        client: httpx.Client | None = None,
    ):
        self.agent_id = agent_id
        self.config = config
        self.supervisor = supervisor
        self.sink = sink
        self.timeout = timeout
        self._client = client
        self._owns_client = client is None
        self.started = False
        self._lock = threading.RLock()

    @property
    def endpoint(self) -> str:
        return self.config.endpoint or DEFAULT_WEBHOOK_ENDPOINT

    @property
    def client(self) -> httpx.Client:
        if self._client is None:
            self._client = httpx.Client(timeout=self.timeout)
            self._owns_client = True
        return self._client

    def _headers(self) -> dict[str, str]:
        auth = self.config.env.get(AUTH_HEADER_ENV_KEY)
        return {"Authorization": auth} if auth else {}

    def start(self, config: AdapterConfig | None = None) -> AdapterHealth:
        with self._lock:
            if config is not None:
                self.config = config
            if self.started:
                return self.supervisor.snapshot()
            self.supervisor.mark_starting()
            self.started = True
            return self.supervisor.record_started(f"Webhook endpoint: {self.endpoint}")

    def stop(self):
        with self._lock:
            self.started = False
            if self._client is not None and self._owns_client:
                self._client.close()
                self._client = None
            self.supervisor.mark_stopped()

    def abort(self):
        # The client may be mid-request in another thread; stop() closes it later
        self.started = False
        self.supervisor.mark_stopped()

    def restart(self) -> AdapterHealth:
        with self._lock:
            self.stop()
            self.supervisor.reset()
            return self.start()

    def _post(
        self,
        kind: MessageKind,
        content: str,
        message_id: str | None,
        reply_to: str | None = None,
        metadata: dict[str, Any] | None = None,
    ):
        payload: dict[str, Any] = {
            "agent_id": self.agent_id,
            "message_id": message_id,
            "kind": kind.value,
            "content": content,
            "reply_to": reply_to,
            "metadata": metadata or {},
        }
        try:
            response = self.client.post(self.endpoint, json=payload, headers=self._headers())
            response.raise_for_status()
        except httpx.HTTPError as e:
            raise worker_failure(
                self.supervisor,
                f"Webhook request to {self.endpoint} failed: {e}",
                reason=f"Webhook request failed: {e}",
            ) from e

        logger.debug(
            f"Delivered {kind.value} to webhook {self.endpoint}",
            extra={"agent_id": self.agent_id, "message_id": message_id},
        )
        self._handle_reply(response)

    def _handle_reply(self, response: httpx.Response):
        if not response.content:
            return
        try:
            data = response.json()
        except ValueError:
            self.sink(MessageKind.OUTPUT, response.text, None)
            return
        if not isinstance(data, dict):
            self.sink(MessageKind.OUTPUT, response.text, None)
            return

        try:
            kind = MessageKind.parse(data.get("kind") or MessageKind.OUTPUT)
        except InvalidMessage:
            kind = MessageKind.OUTPUT
        content = str(data.get("content") or "")
        status = str(data.get("status") or "").strip().lower()
        metadata = {"run_status": status} if status in _RUN_STATUSES else None

        if content or metadata:
            self.sink(kind, content, metadata)

    def send_instruction(
        self,
        text: str,
        message_id: str | None = None,
        reply_to: str | None = None,
        metadata: dict[str, Any] | None = None,
    ):
        """POST an instruction.

        Raises:
            TransientWorkerFailure: On any network or HTTP error
        """
        with self._lock:
            if not self.started:
                self.start()
            self._post(MessageKind.INSTRUCTION, text, message_id, reply_to, metadata)

    def send_signal(
        self,
        kind: MessageKind,
        content: str = "",
        message_id: str | None = None,
        reply_to: str | None = None,
        metadata: dict[str, Any] | None = None,
    ):
        with self._lock:
            if not self.started:
                logger.debug(f"Ignoring {kind.value} for {self.agent_id}: webhook not started")
                return
            self._post(kind, content, message_id, reply_to, metadata)

    def poll_health(self) -> AdapterHealth:
        with self._lock:
            details = f"Webhook endpoint: {self.endpoint}"
            if not self.started:
                return self.supervisor.record_poll(False, False, details=details)
            try:
                response = self.client.get(self.endpoint, headers=self._headers())
            except httpx.HTTPError as e:
                return self.supervisor.record_poll(
                    False, False, details=details, error=f"Webhook unreachable: {e}"
                )
            if response.status_code >= 500:
                return self.supervisor.record_poll(
                    True,
                    False,
                    details=details,
                    error=f"Webhook returned HTTP {response.status_code}",
                )
            return self.supervisor.record_poll(True, True, details=details)
