"""Shared adapter contract and output helpers."""

import threading
from collections import deque
from collections.abc import Callable
from typing import Any, Protocol

from ..errors import TransientWorkerFailure
from ..models import AdapterConfig, AdapterHealth, AdapterType, MessageKind
from ..supervisor import HealthSupervisor

MessageSink = Callable[[MessageKind, str, dict[str, Any] | None], None]
"""Publishes one worker-originated message: ``sink(kind, content, metadata)``."""


class WorkerAdapter(Protocol):
    """Capability every adapter variant implements.

    Adapters are synchronous; the runtime moves their blocking calls off the
    event loop. Worker output is published through the ``MessageSink`` given
    at construction, and every health transition goes through the adapter's
    ``supervisor``.
    """

    adapter_type: AdapterType
    supervisor: HealthSupervisor

    def start(self, config: AdapterConfig | None = None) -> AdapterHealth:
        """Establish the worker, reusing a live one."""
        ...

    def stop(self) -> None:
        """Tear down (or detach from) the worker. Safe to call at any time."""
        ...

    def abort(self) -> None:
        """Tear down without waiting for calls in flight.

        Called when ``stop()`` or ``restart()`` is stuck behind a hung call.
        Must not take the adapter's lock.
        """
        ...

    def send_instruction(
        self,
        text: str,
        message_id: str | None = None,
        reply_to: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Deliver an instruction, starting the worker first if needed."""
        ...

    def send_signal(
        self,
        kind: MessageKind,
        content: str = "",
        message_id: str | None = None,
        reply_to: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> None:
        """Forward a control message (pause/resume/cancel/status_request), best-effort."""
        ...

    def poll_health(self) -> AdapterHealth:
        """Inspect liveness and collect pending worker output."""
        ...

    def restart(self) -> AdapterHealth:
        """Tear down and re-establish the worker, clearing suppression."""
        ...


def worker_failure(
    supervisor: HealthSupervisor, message: str, reason: str | None = None
) -> TransientWorkerFailure:
    """Count a failure and build the error to raise for it.

    The error carries the supervisor's backoff for the new streak length as
    its ``retry_after_seconds``.

    Args:
        supervisor: Supervisor that records the failure
        message: Error message for the caller
        reason: ``last_error`` text, when it differs from ``message``
    """
    supervisor.record_failure(reason or message)
    return TransientWorkerFailure(message, retry_after_seconds=supervisor.backoff_seconds())


def truncate_line(line: str, max_chars: int) -> str:
    """Clip a line to ``max_chars``, marking how much was dropped."""
    if len(line) <= max_chars:
        return line
    omitted = len(line) - max_chars
    return f"{line[:max_chars]} ... [line truncated: {omitted} chars omitted]"


class OutputRingBuffer:
    """Fixed-capacity buffer of recent output lines; the oldest line is dropped on overflow."""

    def __init__(self, capacity: int = 200):
        if capacity < 1:
            raise ValueError("capacity must be at least 1")
        self.capacity = capacity
        self._lines: deque[str] = deque(maxlen=capacity)
        self.dropped = 0
        self._lock = threading.Lock()

    def push(self, line: str):
        with self._lock:
            if len(self._lines) == self.capacity:
                self.dropped += 1
            self._lines.append(line)

    def lines(self) -> list[str]:
        with self._lock:
            return list(self._lines)

    def tail(self, count: int) -> list[str]:
        with self._lock:
            if count <= 0:
                return []
            return list(self._lines)[-count:]

    def render_tail(self, count: int = 8) -> str:
        """Recent lines as text, noting how many earlier lines are not shown."""
        with self._lock:
            lines = list(self._lines)
            dropped = self.dropped
        shown = lines[-count:] if count > 0 else []
        hidden = dropped + len(lines) - len(shown)
        if hidden > 0:
            shown = [f"... [{hidden} earlier lines truncated]"] + shown
        return "\n".join(shown)

    def clear(self):
        with self._lock:
            self._lines.clear()
            self.dropped = 0

    def __len__(self) -> int:
        with self._lock:
            return len(self._lines)
