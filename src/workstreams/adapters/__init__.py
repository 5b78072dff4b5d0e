"""Adapter variants and the factory that maps an AdapterConfig to one."""

from collections.abc import Callable

from ..models import DEFAULT_CODEX_COMMAND, AdapterConfig, AdapterType
from ..settings import WorkstreamSettings
from ..supervisor import HealthSupervisor
from .base import MessageSink, OutputRingBuffer, WorkerAdapter, truncate_line, worker_failure
from .mock import MockAdapter
from .process import ProcessAdapter
from .terminal import TerminalSessionAdapter, diff_new_lines
from .webhook import WebhookAdapter

__all__ = [
    "MessageSink",
    "MockAdapter",
    "OutputRingBuffer",
    "ProcessAdapter",
    "TerminalSessionAdapter",
    "WebhookAdapter",
    "WorkerAdapter",
    "create_adapter",
    "diff_new_lines",
    "truncate_line",
    "worker_failure",
]


def create_adapter(
    agent_id: str,
    config: AdapterConfig,
    supervisor: HealthSupervisor,
    sink: MessageSink,
    settings: WorkstreamSettings | None = None,
    working_directory: str | None = None,
    output_logger: Callable[[str], None] | None = None,
) -> WorkerAdapter:
    """Build the adapter variant for ``config.adapter_type``.

    The set of variants is closed; a new type means a new branch here.

    Raises:
        ConfigurationError: If the config is invalid for its variant
    """
    settings = settings or WorkstreamSettings()
    adapter_type = config.adapter_type

    if adapter_type is AdapterType.MOCK:
        return MockAdapter(
            agent_id, config, supervisor, sink, heartbeat_every=settings.mock_heartbeat_every
        )

    if adapter_type in (AdapterType.PROCESS, AdapterType.CODEX):
        return ProcessAdapter(
            agent_id,
            config,
            supervisor,
            sink,
            working_directory=working_directory,
            max_line_chars=settings.max_line_chars,
            ring_buffer_lines=settings.ring_buffer_lines,
            default_command=DEFAULT_CODEX_COMMAND if adapter_type is AdapterType.CODEX else None,
            adapter_type=adapter_type,
        )

    if adapter_type is AdapterType.TERMINAL_SESSION:
        return TerminalSessionAdapter(
            agent_id,
            config,
            supervisor,
            sink,
            working_directory=working_directory,
            keystroke_delay=settings.keystroke_delay,
            output_logger=output_logger,
        )

    if adapter_type is AdapterType.HTTP_WEBHOOK:
        return WebhookAdapter(
            agent_id, config, supervisor, sink, timeout=settings.webhook_timeout_seconds
        )

    raise AssertionError(f"Unhandled adapter type: {adapter_type}")
