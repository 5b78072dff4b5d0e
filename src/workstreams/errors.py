"""Error taxonomy for the workstream supervision core."""


class WorkstreamError(Exception):
    """Base class for all workstream errors."""


class ConfigurationError(WorkstreamError, ValueError):
    """Adapter or service configuration is missing or invalid.

    Never retried automatically; surfaced to whoever called configure/send.
    """


class TransientWorkerFailure(WorkstreamError, RuntimeError):
    """Worker crashed or became temporarily unreachable."""

    def __init__(self, message: str, retry_after_seconds: int | None = None):
        super().__init__(message)
        self.retry_after_seconds = retry_after_seconds


class PermanentWorkerFailure(WorkstreamError, RuntimeError):
    """Worker failed past the failure-streak threshold and needs a manual restart."""


class StoreFailure(WorkstreamError, OSError):
    """Persistence medium unavailable."""


class UnknownWorkstream(WorkstreamError, KeyError):
    """No workstream with the given id exists."""

    def __init__(self, agent_id: str):
        super().__init__(agent_id)
        self.agent_id = agent_id

    def __str__(self) -> str:
        return f"Workstream not found: {self.agent_id}"


class InvalidMessage(WorkstreamError, ValueError):
    """Message kind or direction not recognized."""
