"""Workstreams: adapter supervision and message bus."""

__version__ = "0.1.0"

from .errors import (  # noqa: E402
    ConfigurationError,
    InvalidMessage,
    PermanentWorkerFailure,
    StoreFailure,
    TransientWorkerFailure,
    UnknownWorkstream,
    WorkstreamError,
)
from .models import AdapterConfig, AdapterHealth, AdapterType, Message, MessageKind  # noqa: E402
from .runtime import WorkstreamRuntime  # noqa: E402
from .settings import WorkstreamSettings, load_settings  # noqa: E402
from .store import WorkstreamStore  # noqa: E402

__all__ = [
    "AdapterConfig",
    "AdapterHealth",
    "AdapterType",
    "ConfigurationError",
    "InvalidMessage",
    "Message",
    "MessageKind",
    "PermanentWorkerFailure",
    "StoreFailure",
    "TransientWorkerFailure",
    "UnknownWorkstream",
    "WorkstreamError",
    "WorkstreamRuntime",
    "WorkstreamSettings",
    "WorkstreamStore",
    "load_settings",
]
