"""SQLite persistence for workstreams, adapter configs, messages and runs.

The message table is an append-only log. Rows are never updated or deleted;
the total order of one workstream's conversation is ``(created_at, id)``.
"""

import contextlib
import json
import logging
import sqlite3
import threading
from collections.abc import Callable, Iterator
from dataclasses import replace
from datetime import datetime
from pathlib import Path

from .errors import StoreFailure
from .models import (
    AdapterConfig,
    Agent,
    AgentConfig,
    AgentKind,
    AgentStatus,
    ConversationPage,
    FileChange,
    Message,
    MessageDirection,
    MessageKind,
    Run,
    RunOutput,
    RunStatus,
    format_timestamp,
    new_message_id,
    parse_timestamp,
    utc_now,
)

logger = logging.getLogger(__name__)

SCHEMA = """
CREATE TABLE IF NOT EXISTS agents (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    project_id TEXT NOT NULL,
    kind TEXT NOT NULL,
    function_tag TEXT NOT NULL,
    status TEXT NOT NULL DEFAULT 'idle',
    working_directory TEXT,
    config TEXT NOT NULL DEFAULT '{}',
    last_active_at TEXT NOT NULL,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS adapter_configs (
    agent_id TEXT PRIMARY KEY,
    adapter_type TEXT NOT NULL,
    session_name TEXT,
    endpoint TEXT,
    command TEXT,
    env TEXT NOT NULL DEFAULT '{}',
    restart_policy TEXT,
    launch_command TEXT,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS messages (
    id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL,
    direction TEXT NOT NULL,
    kind TEXT NOT NULL,
    content TEXT NOT NULL,
    metadata TEXT,
    reply_to TEXT,
    created_at TEXT NOT NULL,
    delivered_at TEXT,
    acknowledged_at TEXT
);

CREATE INDEX IF NOT EXISTS idx_messages_agent_order ON messages (agent_id, created_at, id);

CREATE TABLE IF NOT EXISTS runs (
    id TEXT PRIMARY KEY,
    agent_id TEXT NOT NULL,
    status TEXT NOT NULL,
    started_at TEXT NOT NULL,
    ended_at TEXT,
    summary TEXT,
    outputs TEXT NOT NULL DEFAULT '[]',
    file_changes TEXT NOT NULL DEFAULT '[]'
);

CREATE INDEX IF NOT EXISTS idx_runs_agent ON runs (agent_id, started_at);
"""


def _ts(value: datetime | None) -> str | None:
    return format_timestamp(value) if value else None


def _parse_optional(value: str | None) -> datetime | None:
    return parse_timestamp(value) if value else None


class WorkstreamStore:
    """Durable store shared by every workstream.

    A single connection is shared between threads and guarded by a lock, so
    appends from many workstreams never interleave inside one statement.
    """

    def __init__(
        self,
        db_path: str | Path = ":memory:",
        clock: Callable[[], datetime] = utc_now,
        default_limit: int = 50,
        max_limit: int = 500,
    ):
        """Open (and create if needed) the database.

        Args:
            db_path: SQLite file path, or ":memory:"
            clock: Source of ``created_at`` for messages appended without one
            default_limit: Page size when the caller passes no limit
            max_limit: Upper bound for any page size

        Raises:
            StoreFailure: If the database cannot be opened
        """
        self.db_path = str(db_path)
        self.clock = clock
        self.default_limit = default_limit
        self.max_limit = max_limit
        self._lock = threading.RLock()

        try:
            if self.db_path != ":memory:":
                Path(self.db_path).parent.mkdir(parents=True, exist_ok=True)
            self._conn = sqlite3.connect(
                self.db_path, check_same_thread=False, isolation_level=None
            )
            self._conn.row_factory = sqlite3.Row
            self._conn.execute("PRAGMA journal_mode=WAL")
            self._conn.executescript(SCHEMA)
        except (sqlite3.Error, OSError) as e:
            raise StoreFailure(f"Cannot open store at {self.db_path}: {e}") from e

        logger.info(f"Opened workstream store at {self.db_path}")

    @contextlib.contextmanager
    def _connection(self, operation: str) -> Iterator[sqlite3.Connection]:
        with self._lock:
            try:
                yield self._conn
            except sqlite3.Error as e:
                logger.error(
                    f"Store operation {operation} failed: {e}",
                    extra={"db_path": self.db_path, "operation": operation},
                )
                raise StoreFailure(f"Store operation {operation} failed: {e}") from e

    def close(self):
        with self._lock:
            self._conn.close()

    # ── Messages ────────────────────────────────────────────────────────

    def clamp_limit(self, limit: int | None) -> int:
        if limit is None:
            return self.default_limit
        return max(1, min(int(limit), self.max_limit))

    def append(self, message: Message) -> Message:
        """Append a message to its workstream's log.

        Assigns ``id`` and ``created_at`` when absent. If a message with the
        same id is already stored, the stored row is returned unchanged.

        Raises:
            StoreFailure: If the write fails
        """
        if message.id is None:
            message = replace(message, id=new_message_id())
        if message.created_at is None:
            message = replace(message, created_at=self.clock())

        with self._connection("append") as conn:
            cursor = conn.execute(
                "INSERT OR IGNORE INTO messages (id, agent_id, direction, kind, content, "
                "metadata, reply_to, created_at, delivered_at, acknowledged_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    message.id,
                    message.agent_id,
                    message.direction.value,
                    message.kind.value,
                    message.content,
                    json.dumps(message.metadata) if message.metadata is not None else None,
                    message.reply_to,
                    format_timestamp(message.created_at),
                    _ts(message.delivered_at),
                    _ts(message.acknowledged_at),
                ),
            )
            if cursor.rowcount == 0:
                row = conn.execute("SELECT * FROM messages WHERE id = ?", (message.id,)).fetchone()
                logger.debug(
                    f"Message {message.id} already stored, returning existing row",
                    extra={"agent_id": message.agent_id, "message_id": message.id},
                )
                return self._row_to_message(row)

        # Round-trip through the stored representation so callers see exactly
        # what a later read returns.
        return replace(message, created_at=parse_timestamp(format_timestamp(message.created_at)))

    def list_messages(
        self,
        agent_id: str,
        limit: int | None = None,
        before: datetime | str | None = None,
        before_id: str | None = None,
    ) -> ConversationPage:
        """Return one page of a workstream's conversation, oldest first.

        Args:
            agent_id: Workstream id
            limit: Page size, clamped to 1..max_limit
            before: Only messages created strictly before this timestamp
            before_id: With ``before``, also include messages at exactly
                ``before`` whose id sorts below this one

        Returns:
            Page with ``has_more`` set when older messages exist

        Raises:
            ValueError: If ``before`` is not a valid timestamp
            StoreFailure: If the read fails
        """
        limit = self.clamp_limit(limit)
        sql = "SELECT * FROM messages WHERE agent_id = ?"
        params: list = [agent_id]

        if before is not None:
            cursor_ts = format_timestamp(parse_timestamp(before))
            if before_id:
                sql += " AND (created_at < ? OR (created_at = ? AND id < ?))"
                params.extend([cursor_ts, cursor_ts, before_id])
            else:
                sql += " AND created_at < ?"
                params.append(cursor_ts)

        sql += " ORDER BY created_at DESC, id DESC LIMIT ?"
        params.append(limit + 1)

        with self._connection("list_messages") as conn:
            rows = conn.execute(sql, params).fetchall()

        has_more = len(rows) > limit
        rows = rows[:limit]
        return ConversationPage(
            messages=[self._row_to_message(row) for row in reversed(rows)],
            has_more=has_more,
        )

    def get_message(self, message_id: str) -> Message | None:
        with self._connection("get_message") as conn:
            row = conn.execute("SELECT * FROM messages WHERE id = ?", (message_id,)).fetchone()
        return self._row_to_message(row) if row else None

    @staticmethod
    def _row_to_message(row: sqlite3.Row) -> Message:
        return Message(
            id=row["id"],
            agent_id=row["agent_id"],
            direction=MessageDirection(row["direction"]),
            kind=MessageKind(row["kind"]),
            content=row["content"],
            metadata=json.loads(row["metadata"]) if row["metadata"] else None,
            reply_to=row["reply_to"],
            created_at=parse_timestamp(row["created_at"]),
            delivered_at=_parse_optional(row["delivered_at"]),
            acknowledged_at=_parse_optional(row["acknowledged_at"]),
        )

    # ── Agents ──────────────────────────────────────────────────────────

    def create_agent(self, agent: Agent) -> Agent:
        with self._connection("create_agent") as conn:
            conn.execute(
                "INSERT INTO agents (id, name, project_id, kind, function_tag, status, "
                "working_directory, config, last_active_at, created_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    agent.id,
                    agent.name,
                    agent.project_id,
                    agent.kind.value,
                    agent.function_tag,
                    agent.status.value,
                    agent.working_directory,
                    json.dumps(agent.config.to_dict()),
                    format_timestamp(agent.last_active_at),
                    format_timestamp(agent.created_at),
                ),
            )
        logger.info(f"Created workstream {agent.name}", extra={"agent_id": agent.id})
        return agent

    def get_agent(self, agent_id: str) -> Agent | None:
        with self._connection("get_agent") as conn:
            row = conn.execute("SELECT * FROM agents WHERE id = ?", (agent_id,)).fetchone()
        return self._row_to_agent(row) if row else None

    def list_agents(self) -> list[Agent]:
        with self._connection("list_agents") as conn:
            rows = conn.execute("SELECT * FROM agents ORDER BY created_at, id").fetchall()
        return [self._row_to_agent(row) for row in rows]

    def update_agent_status(self, agent_id: str, status: AgentStatus) -> bool:
        """Set a workstream's status and stamp ``last_active_at``.

        Returns:
            False if no such workstream exists
        """
        with self._connection("update_agent_status") as conn:
            cursor = conn.execute(
                "UPDATE agents SET status = ?, last_active_at = ? WHERE id = ?",
                (status.value, format_timestamp(self.clock()), agent_id),
            )
        return cursor.rowcount > 0

    @staticmethod
    def _row_to_agent(row: sqlite3.Row) -> Agent:
        return Agent(
            id=row["id"],
            name=row["name"],
            project_id=row["project_id"],
            kind=AgentKind(row["kind"]),
            function_tag=row["function_tag"],
            status=AgentStatus(row["status"]),
            working_directory=row["working_directory"],
            config=AgentConfig.from_dict(json.loads(row["config"] or "{}")),
            last_active_at=parse_timestamp(row["last_active_at"]),
            created_at=parse_timestamp(row["created_at"]),
        )

    # ── Adapter configs ─────────────────────────────────────────────────

    def set_adapter_config(self, agent_id: str, config: AdapterConfig):
        """Persist a workstream's adapter config; the latest write wins."""
        with self._connection("set_adapter_config") as conn:
            conn.execute(
                "INSERT OR REPLACE INTO adapter_configs (agent_id, adapter_type, session_name, "
                "endpoint, command, env, restart_policy, launch_command, updated_at) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    agent_id,
                    config.adapter_type.value,
                    config.session_name,
                    config.endpoint,
                    config.command,
                    json.dumps(config.env),
                    config.restart_policy.value,
                    config.launch_command,
                    format_timestamp(self.clock()),
                ),
            )

    def get_adapter_config(self, agent_id: str) -> AdapterConfig | None:
        with self._connection("get_adapter_config") as conn:
            row = conn.execute(
                "SELECT * FROM adapter_configs WHERE agent_id = ?", (agent_id,)
            ).fetchone()
        return self._row_to_adapter_config(row) if row else None

    def list_adapter_configs(self) -> dict[str, AdapterConfig]:
        with self._connection("list_adapter_configs") as conn:
            rows = conn.execute("SELECT * FROM adapter_configs").fetchall()
        return {row["agent_id"]: self._row_to_adapter_config(row) for row in rows}

    @staticmethod
    def _row_to_adapter_config(row: sqlite3.Row) -> AdapterConfig:
        # Rows written before restart_policy had its own column still carry
        # it in env; AdapterConfig migrates it.
        return AdapterConfig.from_dict(
            {
                "adapter_type": row["adapter_type"],
                "session_name": row["session_name"],
                "endpoint": row["endpoint"],
                "command": row["command"],
                "env": json.loads(row["env"] or "{}"),
                "restart_policy": row["restart_policy"],
                "launch_command": row["launch_command"],
            }
        )

    # ── Runs ────────────────────────────────────────────────────────────

    def save_run(self, run: Run):
        """Insert a run, or update it in place if it already exists."""
        with self._connection("save_run") as conn:
            conn.execute(
                "INSERT INTO runs (id, agent_id, status, started_at, ended_at, "
                "summary, outputs, file_changes) VALUES (?, ?, ?, ?, ?, ?, ?, ?) "
                "ON CONFLICT(id) DO UPDATE SET status = excluded.status, "
                "started_at = excluded.started_at, ended_at = excluded.ended_at, "
                "summary = excluded.summary, outputs = excluded.outputs, "
                "file_changes = excluded.file_changes",
                (
                    run.id,
                    run.agent_id,
                    run.status.value,
                    format_timestamp(run.started_at),
                    _ts(run.ended_at),
                    run.summary,
                    json.dumps([o.to_dict() for o in run.outputs]),
                    json.dumps([c.to_dict() for c in run.file_changes]),
                ),
            )

    def get_latest_run(self, agent_id: str) -> Run | None:
        with self._connection("get_latest_run") as conn:
            row = conn.execute(
                "SELECT * FROM runs WHERE agent_id = ? ORDER BY started_at DESC, rowid DESC LIMIT 1",
                (agent_id,),
            ).fetchone()
        return self._row_to_run(row) if row else None

    def list_runs(self, agent_id: str, limit: int = 20) -> list[Run]:
        with self._connection("list_runs") as conn:
            rows = conn.execute(
                "SELECT * FROM runs WHERE agent_id = ? ORDER BY started_at DESC, rowid DESC LIMIT ?",
                (agent_id, max(1, limit)),
            ).fetchall()
        return [self._row_to_run(row) for row in rows]

    @staticmethod
    def _row_to_run(row: sqlite3.Row) -> Run:
        return Run(
            id=row["id"],
            agent_id=row["agent_id"],
            status=RunStatus(row["status"]),
            started_at=parse_timestamp(row["started_at"]),
            ended_at=_parse_optional(row["ended_at"]),
            summary=row["summary"],
            outputs=[RunOutput.from_dict(o) for o in json.loads(row["outputs"] or "[]")],
            file_changes=[FileChange.from_dict(c) for c in json.loads(row["file_changes"] or "[]")],
        )
