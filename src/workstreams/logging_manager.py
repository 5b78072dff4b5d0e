"""Structured logging manager for workstreams.

Provides the service log, a JSONL audit trail, and per-workstream logs
(lifecycle, communication and raw terminal captures).
"""

import json
import logging
import logging.handlers
import shutil
from datetime import datetime
from pathlib import Path
from typing import Any

ROOT_LOGGER = "workstreams"

# LogRecord attributes that are not user-supplied extras
_RESERVED_ATTRS = frozenset(
    {
        "name",
        "msg",
        "args",
        "created",
        "filename",
        "funcName",
        "levelname",
        "levelno",
        "lineno",
        "module",
        "msecs",
        "message",
        "pathname",
        "process",
        "processName",
        "relativeCreated",
        "thread",
        "threadName",
        "exc_info",
        "exc_text",
        "stack_info",
        "asctime",
        "taskName",
        "extras",
    }
)


def _record_extras(record: logging.LogRecord) -> dict[str, Any]:
    extras = {}
    for key, value in record.__dict__.items():
        if key in _RESERVED_ATTRS:
            continue
        try:
            json.dumps(value)
            extras[key] = value
        except (TypeError, ValueError):
            extras[key] = str(value)
    return extras


class JsonExtraFilter(logging.Filter):
    """Renders extra record fields as a JSON fragment for the file formatter."""

    def filter(self, record):
        extras = _record_extras(record)
        if extras:
            record.extras = ", " + ", ".join(f'"{k}": {json.dumps(v)}' for k, v in extras.items())
        else:
            record.extras = ""
        return True


class JsonLineFormatter(logging.Formatter):
    """One JSON object per line, including all extras."""

    def format(self, record):
        log_obj = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "level": record.levelname,
            "event": record.getMessage(),
            "logger": record.name,
        }
        log_obj.update(_record_extras(record))
        return json.dumps(log_obj)


class CommunicationFormatter(logging.Formatter):
    """JSONL formatter for the per-workstream communication log."""

    FIELDS = ("message_id", "direction", "kind", "content", "reply_to", "metadata")

    def format(self, record):
        log_obj = {
            "timestamp": datetime.fromtimestamp(record.created).isoformat(),
            "event_type": getattr(record, "event_type", "unknown"),
            "message": record.getMessage(),
        }
        for key in self.FIELDS:
            if hasattr(record, key):
                log_obj[key] = getattr(record, key)
        return json.dumps(log_obj, default=str)


class AgentLoggerAdapter(logging.LoggerAdapter):
    """Logger adapter that adds workstream context to all log messages."""

    def process(self, msg, kwargs):
        extra = kwargs.get("extra", {})
        extra.update(self.extra)
        kwargs["extra"] = extra
        return msg, kwargs


class LoggingManager:
    """Manages structured logging for the service and each workstream."""

    def __init__(self, log_dir: str | Path = "/tmp/workstreams_logs", log_level: str = "INFO"):
        """Initialize logging manager.

        Args:
            log_dir: Base directory for all logs
            log_level: Console log level
        """
        self.log_dir = Path(log_dir)
        self.log_level = getattr(logging, log_level.upper())

        self.log_dir.mkdir(parents=True, exist_ok=True)
        self.agents_dir = self.log_dir / "agents"
        self.agents_dir.mkdir(exist_ok=True)
        self.audit_dir = self.log_dir / "audit"
        self.audit_dir.mkdir(exist_ok=True)

        self._agent_loggers: dict[str, AgentLoggerAdapter] = {}

        self._setup_service_logger()
        self._setup_audit_logger()

        # Modules using logging.getLogger(__name__) may have been imported
        # before us; route them through the service logger's handlers.
        for name in list(logging.Logger.manager.loggerDict.keys()):
            if name.startswith(f"{ROOT_LOGGER}.") and name != f"{ROOT_LOGGER}.audit":
                child_logger = logging.getLogger(name)
                if isinstance(child_logger, logging.Logger):
                    child_logger.setLevel(logging.NOTSET)
                    child_logger.propagate = True
                    child_logger.handlers.clear()

    def _setup_service_logger(self):
        """Setup the service logger with console and rotating JSON file handlers."""
        logger = logging.getLogger(ROOT_LOGGER)
        logger.setLevel(logging.DEBUG)
        logger.propagate = False
        logger.handlers.clear()

        console_handler = logging.StreamHandler()
        console_handler.setLevel(self.log_level)
        console_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(console_handler)

        file_handler = logging.handlers.RotatingFileHandler(
            self.log_dir / "workstreams.log",
            maxBytes=10 * 1024 * 1024,
            backupCount=5,
        )
        file_handler.setLevel(logging.DEBUG)
        file_handler.addFilter(JsonExtraFilter())
        file_handler.setFormatter(
            logging.Formatter(
                '{"timestamp": "%(asctime)s", "level": "%(levelname)s", "logger": "%(name)s", '
                '"message": "%(message)s", "module": "%(module)s", "function": "%(funcName)s", '
                '"line": %(lineno)d%(extras)s}',
                datefmt="%Y-%m-%dT%H:%M:%S",
            )
        )
        logger.addHandler(file_handler)

        self.service_logger = logger

    def _setup_audit_logger(self):
        """Setup audit trail logger (JSON Lines, rotated daily)."""
        logger = logging.getLogger(f"{ROOT_LOGGER}.audit")
        logger.setLevel(logging.INFO)
        logger.propagate = False
        logger.handlers.clear()

        audit_file = self.audit_dir / f"audit_{datetime.now().strftime('%Y%m%d')}.jsonl"
        file_handler = logging.handlers.TimedRotatingFileHandler(
            audit_file,
            when="midnight",
            interval=1,
            backupCount=30,
        )
        file_handler.setLevel(logging.INFO)
        file_handler.setFormatter(JsonLineFormatter())
        logger.addHandler(file_handler)

        self.audit_logger = logger

    def get_agent_logger(self, agent_id: str, agent_name: str | None = None) -> AgentLoggerAdapter:
        """Get or create the logger for one workstream.

        Args:
            agent_id: Workstream id
            agent_name: Human-readable name, recorded in metadata.json

        Returns:
            Logger adapter with workstream context
        """
        if agent_id in self._agent_loggers:
            return self._agent_loggers[agent_id]

        agent_dir = self.agents_dir / agent_id
        agent_dir.mkdir(parents=True, exist_ok=True)

        logger = logging.getLogger(f"agent.{agent_id}")
        logger.setLevel(logging.DEBUG)
        logger.propagate = False
        logger.handlers.clear()

        lifecycle_handler = logging.handlers.RotatingFileHandler(
            agent_dir / "agent.log",
            maxBytes=5 * 1024 * 1024,
            backupCount=3,
        )
        lifecycle_handler.setLevel(logging.DEBUG)
        lifecycle_handler.setFormatter(
            logging.Formatter(
                "%(asctime)s - %(levelname)s - %(message)s",
                datefmt="%Y-%m-%d %H:%M:%S",
            )
        )
        logger.addHandler(lifecycle_handler)

        comm_handler = logging.FileHandler(agent_dir / "communication.jsonl")
        comm_handler.setLevel(logging.DEBUG)
        comm_handler.setFormatter(CommunicationFormatter())
        # Only communication records belong in the JSONL file
        comm_handler.addFilter(lambda record: getattr(record, "event_type", None) == "communication")
        logger.addHandler(comm_handler)

        metadata = {
            "agent_id": agent_id,
            "agent_name": agent_name,
            "created_at": datetime.now().isoformat(),
            "log_directory": str(agent_dir),
        }
        (agent_dir / "metadata.json").write_text(json.dumps(metadata, indent=2))

        adapter = AgentLoggerAdapter(logger, {"agent_id": agent_id, "agent_name": agent_name})
        self._agent_loggers[agent_id] = adapter
        return adapter

    def log_audit_event(
        self,
        event_type: str,
        agent_id: str | None = None,
        details: dict[str, Any] | None = None,
        **kwargs,
    ):
        """Log an audit event.

        Args:
            event_type: Type of event (configure, send, restart, stop, suspend, store_failure)
            agent_id: Related workstream id if applicable
            details: Additional event details
            **kwargs: Additional fields to include
        """
        extra = {
            "event_type": event_type,
            "agent_id": agent_id,
            "details": details or {},
        }
        extra.update(kwargs)
        self.audit_logger.info(event_type, extra=extra)

    def log_communication(
        self,
        agent_id: str,
        message_id: str | None,
        direction: str,
        kind: str,
        content: str,
        **kwargs,
    ):
        """Record one bus message in the workstream's communication log."""
        agent_logger = self.get_agent_logger(agent_id)
        extra = {
            "event_type": "communication",
            "message_id": message_id,
            "direction": direction,
            "kind": kind,
            "content": content,
        }
        extra.update(kwargs)
        agent_logger.info(f"Communication: {direction} {kind}", extra=extra)

    def log_terminal_output(self, agent_id: str, output: str):
        """Append a raw terminal capture to the workstream's terminal log."""
        agent_dir = self.agents_dir / agent_id
        agent_dir.mkdir(parents=True, exist_ok=True)

        with (agent_dir / "terminal_output.log").open("a") as f:
            f.write(f"\n{'=' * 80}\n")
            f.write(f"[{datetime.now().isoformat()}]\n")
            f.write(f"{'=' * 80}\n")
            f.write(output)
            f.write("\n")

    def get_agent_logs(self, agent_id: str, log_type: str = "agent", tail: int = 100) -> list[str]:
        """Retrieve log lines for a workstream.

        Args:
            agent_id: Workstream id
            log_type: One of agent, communication, terminal_output
            tail: Number of recent lines to return (0 for all)

        Returns:
            List of log lines
        """
        agent_dir = self.agents_dir / agent_id
        log_files = {
            "agent": "agent.log",
            "communication": "communication.jsonl",
            "terminal_output": "terminal_output.log",
        }
        log_file = agent_dir / log_files.get(log_type, "agent.log")
        if not log_file.exists():
            return []

        try:
            with log_file.open("r") as f:
                lines = f.readlines()
        except OSError as e:
            self.service_logger.error(f"Failed to read logs for {agent_id}: {e}")
            return []
        return lines[-tail:] if tail else lines

    def get_all_agent_ids(self) -> list[str]:
        """Return ids of all workstreams that have logs."""
        return sorted(d.name for d in self.agents_dir.iterdir() if d.is_dir())

    def cleanup_agent_logs(self, agent_id: str):
        """Remove the logs of a workstream and close its handlers."""
        adapter = self._agent_loggers.pop(agent_id, None)
        if adapter is not None:
            for handler in list(adapter.logger.handlers):
                handler.close()
                adapter.logger.removeHandler(handler)

        agent_dir = self.agents_dir / agent_id
        if agent_dir.exists():
            try:
                shutil.rmtree(agent_dir)
                self.service_logger.info(f"Cleaned up logs for workstream {agent_id}")
            except OSError as e:
                self.service_logger.error(f"Failed to cleanup logs for {agent_id}: {e}")
