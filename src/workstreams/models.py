"""Data models for workstreams, adapters, messages and runs.

Timestamps are always timezone-aware UTC. When written to the store they are
rendered with a fixed width (microsecond precision, ``Z`` suffix) so that
lexicographic order of the stored strings equals chronological order.
"""

import threading
import time
import uuid
from dataclasses import dataclass, field
from datetime import UTC, datetime
from enum import Enum
from typing import Any

from .errors import ConfigurationError, InvalidMessage

RESTART_POLICY_ENV_KEY = "restart_policy"
DEFAULT_WEBHOOK_ENDPOINT = "http://localhost:8765/webhook"
DEFAULT_CODEX_COMMAND = "codex"

_TIMESTAMP_FORMAT = "%Y-%m-%dT%H:%M:%S.%fZ"


def utc_now() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(UTC)


def format_timestamp(value: datetime) -> str:
    """Render a datetime as a fixed-width UTC string.

    Naive datetimes are assumed to already be in UTC.
    """
    if value.tzinfo is None:
        value = value.replace(tzinfo=UTC)
    return value.astimezone(UTC).strftime(_TIMESTAMP_FORMAT)


def parse_timestamp(value: datetime | str) -> datetime:
    """Parse an ISO-8601 string (or pass through a datetime) into aware UTC.

    Raises:
        ValueError: If the string is not a valid ISO-8601 timestamp
    """
    if isinstance(value, datetime):
        parsed = value
    else:
        parsed = datetime.fromisoformat(value.strip())
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed.astimezone(UTC)


_id_lock = threading.Lock()
_last_id_ns = 0


def new_message_id() -> str:
    """Generate a time-ordered message id.

    Ids generated by one process are strictly increasing, so they break ties
    between messages that share a ``created_at`` in insertion order.
    """
    global _last_id_ns
    with _id_lock:
        now_ns = time.time_ns()
        if now_ns <= _last_id_ns:
            now_ns = _last_id_ns + 1
        _last_id_ns = now_ns
    return f"{now_ns:020d}-{uuid.uuid4().hex[:12]}"


class AgentStatus(str, Enum):
    """Lifecycle status of a workstream."""

    IDLE = "idle"
    RUNNING = "running"
    BLOCKED = "blocked"
    ERRORED = "errored"
    COMPLETED = "completed"


class AgentKind(str, Enum):
    """What kind of worker backs a workstream."""

    CLAUDE_CODE = "claude_code"
    PROCESS = "process"
    MOCK = "mock"
    TERMINAL = "terminal"
    CUSTOM = "custom"


class AutonomyLevel(str, Enum):
    FULL = "full"
    SUPERVISED = "supervised"
    MANUAL = "manual"


class MessageDirection(str, Enum):
    TO_AGENT = "to_agent"
    FROM_AGENT = "from_agent"


class MessageKind(str, Enum):
    """Kind of a message on the bus."""

    # to_agent
    INSTRUCTION = "instruction"
    PAUSE = "pause"
    RESUME = "resume"
    CANCEL = "cancel"
    STATUS_REQUEST = "status_request"
    # from_agent
    STATUS_UPDATE = "status_update"
    OUTPUT = "output"
    ERROR = "error"
    BLOCKED = "blocked"
    COMPLETED = "completed"
    HEARTBEAT = "heartbeat"

    @classmethod
    def parse(cls, value: "str | MessageKind") -> "MessageKind":
        """Parse a kind string.

        Raises:
            InvalidMessage: If the kind is not recognized
        """
        if isinstance(value, cls):
            return value
        try:
            return cls(str(value).strip().lower())
        except ValueError as e:
            raise InvalidMessage(f"Unknown message kind: {value!r}") from e

    @property
    def is_control(self) -> bool:
        """True for out-of-band control signals forwarded best-effort."""
        return self in CONTROL_KINDS


CONTROL_KINDS = frozenset(
    {MessageKind.PAUSE, MessageKind.RESUME, MessageKind.CANCEL, MessageKind.STATUS_REQUEST}
)


class AdapterType(str, Enum):
    """Closed set of adapter variants."""

    MOCK = "mock"
    PROCESS = "process"
    TERMINAL_SESSION = "terminal_session"
    HTTP_WEBHOOK = "http_webhook"
    CODEX = "codex"

    @classmethod
    def parse(cls, value: "str | AdapterType") -> "AdapterType":
        """Parse an adapter type string.

        Accepts ``claude_code`` and ``tmux`` as aliases for terminal sessions.

        Raises:
            ConfigurationError: If the type is not recognized
        """
        if isinstance(value, cls):
            return value
        normalized = str(value).strip().lower().replace("-", "_")
        if normalized in ("claude_code", "tmux", "terminal"):
            return cls.TERMINAL_SESSION
        if normalized == "webhook":
            return cls.HTTP_WEBHOOK
        try:
            return cls(normalized)
        except ValueError as e:
            raise ConfigurationError(f"Unknown adapter type: {value!r}") from e


class RestartPolicy(str, Enum):
    """When a process adapter respawns its worker after exit."""

    NEVER = "never"
    ON_FAILURE = "on_failure"
    ALWAYS = "always"

    @classmethod
    def parse(cls, value: "str | RestartPolicy | None") -> "RestartPolicy":
        """Lenient parse: unknown or empty values fall back to ``on_failure``."""
        if isinstance(value, cls):
            return value
        if value is None:
            return cls.ON_FAILURE
        normalized = str(value).strip().lower().replace("-", "_")
        try:
            return cls(normalized)
        except ValueError:
            return cls.ON_FAILURE

    def should_suppress(self, exit_code: int | None) -> bool:
        """Whether an exit with ``exit_code`` must not be followed by a respawn."""
        if self is RestartPolicy.NEVER:
            return True
        if self is RestartPolicy.ON_FAILURE:
            return exit_code is None or exit_code == 0
        return False


class RunStatus(str, Enum):
    IN_PROGRESS = "in_progress"
    COMPLETED = "completed"
    FAILED = "failed"
    NEEDS_REVIEW = "needs_review"


class FileChangeType(str, Enum):
    CREATED = "created"
    MODIFIED = "modified"
    DELETED = "deleted"
    RENAMED = "renamed"


class SupervisorState(str, Enum):
    """Health supervisor state machine states."""

    NOT_CONFIGURED = "not_configured"
    CONFIGURED = "configured"
    STARTING = "starting"
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    SUSPENDED = "suspended"
    STOPPED = "stopped"


@dataclass
class AgentConfig:
    """Behavioural settings of a workstream."""

    autonomy_level: AutonomyLevel = AutonomyLevel.SUPERVISED
    watch_paths: list[str] = field(default_factory=list)
    schedule: str | None = None
    notify_on: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "autonomy_level": self.autonomy_level.value,
            "watch_paths": list(self.watch_paths),
            "schedule": self.schedule,
            "notify_on": list(self.notify_on),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "AgentConfig":
        data = data or {}
        return cls(
            autonomy_level=AutonomyLevel(data.get("autonomy_level", "supervised")),
            watch_paths=list(data.get("watch_paths") or []),
            schedule=data.get("schedule"),
            notify_on=list(data.get("notify_on") or []),
        )


@dataclass
class Agent:
    """A workstream record.

    Attributes:
        id: Unique workstream id
        name: Display name
        project_id: Owning project (collaborator concept)
        kind: Kind of worker backing the workstream
        function_tag: Free-form functional area tag
        status: Current status, driven by the runtime
        working_directory: Directory processes and sessions start in
        config: Behavioural settings
        last_active_at: Last status change
        created_at: Creation time
    """

    id: str
    name: str
    project_id: str
    kind: AgentKind
    function_tag: str
    status: AgentStatus = AgentStatus.IDLE
    working_directory: str | None = None
    config: AgentConfig = field(default_factory=AgentConfig)
    last_active_at: datetime = field(default_factory=utc_now)
    created_at: datetime = field(default_factory=utc_now)

    @classmethod
    def new(
        cls,
        name: str,
        project_id: str,
        kind: AgentKind = AgentKind.MOCK,
        function_tag: str = "general",
        working_directory: str | None = None,
    ) -> "Agent":
        """Create a new idle agent with a fresh id."""
        return cls(
            id=str(uuid.uuid4()),
            name=name,
            project_id=project_id,
            kind=kind,
            function_tag=function_tag,
            working_directory=working_directory,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "project_id": self.project_id,
            "kind": self.kind.value,
            "function_tag": self.function_tag,
            "status": self.status.value,
            "working_directory": self.working_directory,
            "config": self.config.to_dict(),
            "last_active_at": format_timestamp(self.last_active_at),
            "created_at": format_timestamp(self.created_at),
        }


@dataclass
class AdapterConfig:
    """How a workstream's worker is reached.

    ``restart_policy`` is a typed field. Payloads that still carry it as an
    ``env`` key are migrated on construction: the key is removed from ``env``
    and, unless a policy was given explicitly, parsed into the field.
    """

    adapter_type: AdapterType = AdapterType.MOCK
    session_name: str | None = None
    endpoint: str | None = None
    command: str | None = None
    env: dict[str, str] = field(default_factory=dict)
    restart_policy: RestartPolicy | None = None
    launch_command: str | None = None

    def __post_init__(self):
        self.adapter_type = AdapterType.parse(self.adapter_type)
        self.env = {str(k): str(v) for k, v in (self.env or {}).items()}
        legacy_policy = self.env.pop(RESTART_POLICY_ENV_KEY, None)
        if self.restart_policy is None and legacy_policy is not None:
            self.restart_policy = RestartPolicy.parse(legacy_policy)
        if self.restart_policy is None:
            if self.adapter_type in (AdapterType.PROCESS, AdapterType.CODEX):
                self.restart_policy = RestartPolicy.ON_FAILURE
            else:
                self.restart_policy = RestartPolicy.NEVER
        else:
            self.restart_policy = RestartPolicy.parse(self.restart_policy)

    def to_dict(self) -> dict[str, Any]:
        return {
            "adapter_type": self.adapter_type.value,
            "session_name": self.session_name,
            "endpoint": self.endpoint,
            "command": self.command,
            "env": dict(self.env),
            "restart_policy": self.restart_policy.value,
            "launch_command": self.launch_command,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "AdapterConfig":
        return cls(
            adapter_type=data.get("adapter_type", AdapterType.MOCK),
            session_name=data.get("session_name") or None,
            endpoint=data.get("endpoint") or None,
            command=data.get("command") or None,
            env=dict(data.get("env") or {}),
            restart_policy=data.get("restart_policy"),
            launch_command=data.get("launch_command") or None,
        )


@dataclass
class AdapterHealth:
    """Current-state health snapshot for one workstream."""

    connected: bool = False
    session_active: bool = False
    last_heartbeat: datetime | None = None
    details: str = ""
    last_error: str | None = None
    consecutive_failures: int = 0
    retry_after_seconds: int | None = None
    suppress_auto_restart: bool = False
    state: SupervisorState = SupervisorState.NOT_CONFIGURED

    def to_dict(self) -> dict[str, Any]:
        return {
            "connected": self.connected,
            "session_active": self.session_active,
            "last_heartbeat": (
                format_timestamp(self.last_heartbeat) if self.last_heartbeat else None
            ),
            "details": self.details,
            "last_error": self.last_error,
            "consecutive_failures": self.consecutive_failures,
            "retry_after_seconds": self.retry_after_seconds,
            "suppress_auto_restart": self.suppress_auto_restart,
            "state": self.state.value,
        }


@dataclass(frozen=True)
class Message:
    """One unit of communication on the bus. Immutable once created.

    ``id`` and ``created_at`` may be left unset; the store assigns them on
    append. Supplying an id makes the append idempotent.
    """

    agent_id: str
    direction: MessageDirection
    kind: MessageKind
    content: str
    id: str | None = None
    metadata: dict[str, Any] | None = None
    reply_to: str | None = None
    created_at: datetime | None = None
    delivered_at: datetime | None = None
    acknowledged_at: datetime | None = None

    @classmethod
    def to_agent(
        cls,
        agent_id: str,
        kind: MessageKind,
        content: str,
        reply_to: str | None = None,
        metadata: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> "Message":
        """Build a user-originated message; the store stamps it if ``now`` is None."""
        return cls(
            agent_id=agent_id,
            direction=MessageDirection.TO_AGENT,
            kind=kind,
            content=content,
            reply_to=reply_to,
            metadata=metadata,
            created_at=now,
        )

    @classmethod
    def from_agent(
        cls,
        agent_id: str,
        kind: MessageKind,
        content: str,
        metadata: dict[str, Any] | None = None,
        now: datetime | None = None,
    ) -> "Message":
        """Build a worker-originated message with a pre-generated id.

        The id is fixed up front so a publish retried after an unacknowledged
        write does not create a second row.
        """
        now = now or utc_now()
        return cls(
            id=new_message_id(),
            agent_id=agent_id,
            direction=MessageDirection.FROM_AGENT,
            kind=kind,
            content=content,
            metadata=metadata,
            created_at=now,
            delivered_at=now,
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "direction": self.direction.value,
            "kind": self.kind.value,
            "content": self.content,
            "metadata": self.metadata,
            "reply_to": self.reply_to,
            "created_at": format_timestamp(self.created_at) if self.created_at else None,
            "delivered_at": format_timestamp(self.delivered_at) if self.delivered_at else None,
            "acknowledged_at": (
                format_timestamp(self.acknowledged_at) if self.acknowledged_at else None
            ),
        }


@dataclass
class ConversationPage:
    """A page of messages, oldest first."""

    messages: list[Message]
    has_more: bool

    def to_dict(self, agent_id: str) -> dict[str, Any]:
        return {
            "agent_id": agent_id,
            "messages": [m.to_dict() for m in self.messages],
            "has_more": self.has_more,
        }


@dataclass
class RunOutput:
    kind: str
    content: str
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kind": self.kind,
            "content": self.content,
            "timestamp": format_timestamp(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "RunOutput":
        return cls(
            kind=data["kind"],
            content=data["content"],
            timestamp=parse_timestamp(data["timestamp"]),
        )


@dataclass
class FileChange:
    path: str
    change_type: FileChangeType
    timestamp: datetime = field(default_factory=utc_now)

    def to_dict(self) -> dict[str, Any]:
        return {
            "path": self.path,
            "change_type": FileChangeType(self.change_type).value,
            "timestamp": format_timestamp(self.timestamp),
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "FileChange":
        return cls(
            path=data["path"],
            change_type=FileChangeType(data["change_type"]),
            timestamp=parse_timestamp(data["timestamp"]),
        )


@dataclass
class Run:
    """A span of agent activity aggregating outputs and file changes."""

    id: str
    agent_id: str
    status: RunStatus = RunStatus.IN_PROGRESS
    started_at: datetime = field(default_factory=utc_now)
    ended_at: datetime | None = None
    summary: str | None = None
    outputs: list[RunOutput] = field(default_factory=list)
    file_changes: list[FileChange] = field(default_factory=list)

    @property
    def is_active(self) -> bool:
        return self.status == RunStatus.IN_PROGRESS and self.ended_at is None

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "agent_id": self.agent_id,
            "status": self.status.value,
            "started_at": format_timestamp(self.started_at),
            "ended_at": format_timestamp(self.ended_at) if self.ended_at else None,
            "summary": self.summary,
            "outputs": [o.to_dict() for o in self.outputs],
            "file_changes": [c.to_dict() for c in self.file_changes],
        }
