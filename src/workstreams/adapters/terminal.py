"""Adapter that drives a persistent tmux session per workstream.

Sessions are user-visible and outlive the supervising process: ``stop()``
only detaches, and a later poll re-attaches to the same named session.
Only ``restart()`` kills and recreates it.
"""

import logging
import threading
import time
from collections.abc import Callable
from pathlib import Path
from typing import Any

import libtmux
from libtmux.exc import LibTmuxException

from ..errors import ConfigurationError
from ..models import AdapterConfig, AdapterHealth, AdapterType, MessageKind
from ..supervisor import HealthSupervisor
from .base import MessageSink, worker_failure

logger = logging.getLogger(__name__)

STATUS_TAIL_LINES = 20


def diff_new_lines(previous: list[str], current: list[str]) -> list[str]:
    """Return the lines of ``current`` that were not on screen in ``previous``.

    The pane scrolls, so new content is whatever follows the longest overlap
    between the end of the previous capture and the start of the current one.
    The previous capture's last line is also tried without itself, since an
    in-progress prompt line is usually rewritten in place.
    """
    if not previous:
        return list(current)
    if current == previous:
        return []

    for candidate in (previous, previous[:-1]):
        for size in range(min(len(candidate), len(current)), 0, -1):
            if candidate[-size:] == current[:size]:
                return current[size:]
    return list(current)


class TerminalSessionAdapter:
    """Sends keystrokes to a named tmux session and scrapes its pane."""

    adapter_type = AdapterType.TERMINAL_SESSION

    def __init__(
        self,
        agent_id: str,
        config: AdapterConfig,
        supervisor: HealthSupervisor,
        sink: MessageSink,
        working_directory: str | None = None,
        keystroke_delay: float = 0.05,
        capture_lines: int = 200,
        server: libtmux.Server | None = None,
        output_logger: Callable[[str], None] | None = None,
    ):
        if not config.session_name:
            raise ConfigurationError("Terminal session adapter requires a session_name")

        self.agent_id = agent_id
        self.config = config
        self.supervisor = supervisor
        self.sink = sink
        self.working_directory = working_directory
        self.keystroke_delay = keystroke_delay
        self.capture_lines = capture_lines
        self.output_logger = output_logger

        self._server = server
        self._session: libtmux.Session | None = None
        self._stopped = False
        self._last_capture: list[str] = []
        self._lock = threading.RLock()

    @property
    def session_name(self) -> str:
        return self.config.session_name

    @property
    def server(self) -> libtmux.Server:
        if self._server is None:
            self._server = libtmux.Server()
        return self._server

    @property
    def attached(self) -> bool:
        return self._session is not None

    def _start_directory(self) -> str | None:
        # For terminal sessions the command field is a working-directory hint
        for candidate in (self.config.command, self.working_directory):
            if candidate:
                path = Path(candidate).expanduser()
                if path.is_dir():
                    return str(path)
        return None

    def _pane(self):
        window = self._session.windows[0]
        return window.panes[0]

    # ── Lifecycle ───────────────────────────────────────────────────────

    def start(self, config: AdapterConfig | None = None) -> AdapterHealth:
        """Attach to the named session, creating it only if it does not exist.

        Raises:
            ConfigurationError: If the config has no session name
            TransientWorkerFailure: If tmux is unavailable
        """
        with self._lock:
            if config is not None:
                if not config.session_name:
                    raise ConfigurationError("Terminal session adapter requires a session_name")
                if config.session_name != self.session_name:
                    self._detach()
                self.config = config

            if self.attached and self._session_exists():
                return self.supervisor.snapshot()

            self.supervisor.mark_starting()
            try:
                created = self._attach_or_create()
                self._last_capture = self._capture()
                if created and self.config.launch_command:
                    self._type(self.config.launch_command)
            except LibTmuxException as e:
                self._detach()
                raise worker_failure(
                    self.supervisor,
                    f"Cannot open tmux session {self.session_name}: {e}",
                    reason=f"tmux error: {e}",
                ) from e

            self._stopped = False
            return self.supervisor.record_started(self._details(True, True))

    def _session_exists(self) -> bool:
        return bool(self.server.has_session(self.session_name))

    def _attach_or_create(self) -> bool:
        """Bind to the named session; returns True if it had to be created."""
        if self._session_exists():
            session = self.server.sessions.get(session_name=self.session_name, default=None)
            if session is not None:
                self._session = session
                logger.info(
                    f"Attached to existing tmux session {self.session_name}",
                    extra={"agent_id": self.agent_id, "session_name": self.session_name},
                )
                return False

        self._session = self.server.new_session(
            session_name=self.session_name,
            start_directory=self._start_directory(),
            attach=False,
        )
        logger.info(
            f"Created tmux session {self.session_name}",
            extra={"agent_id": self.agent_id, "session_name": self.session_name},
        )
        return True

    def _detach(self):
        self._session = None
        self._last_capture = []

    def stop(self):
        """Detach from the session and leave it running."""
        with self._lock:
            self._detach()
            self._stopped = True
            self.supervisor.mark_stopped()
            logger.info(
                f"Detached from tmux session {self.session_name}",
                extra={"agent_id": self.agent_id, "session_name": self.session_name},
            )

    def abort(self):
        """Drop the session handle without the lock; the tmux session keeps running."""
        self._detach()
        self._stopped = True
        self.supervisor.mark_stopped()

    def restart(self) -> AdapterHealth:
        """Kill the session and create it again."""
        with self._lock:
            self._detach()
            try:
                if self._session_exists():
                    self.server.kill_session(self.session_name)
                    logger.info(
                        f"Killed tmux session {self.session_name}",
                        extra={"agent_id": self.agent_id, "session_name": self.session_name},
                    )
            except LibTmuxException as e:
                raise worker_failure(
                    self.supervisor,
                    f"Cannot restart tmux session {self.session_name}: {e}",
                    reason=f"tmux error: {e}",
                ) from e
            self.supervisor.reset()
            return self.start()

    # ── Messaging ───────────────────────────────────────────────────────

    def _type(self, text: str):
        """Type text into the pane line by line, then submit with Enter.

        Lines are joined with C-j (newline without submit) and each keystroke
        is followed by a short delay so the CLI does not treat it as a paste.
        """
        pane = self._pane()
        lines = text.split("\n")
        for i, line in enumerate(lines):
            if line:
                pane.send_keys(line, enter=False, literal=True)
                time.sleep(self.keystroke_delay)
            if i < len(lines) - 1:
                pane.send_keys("C-j", enter=False, literal=False)
                time.sleep(self.keystroke_delay)
        pane.send_keys("Enter", enter=False, literal=False)

    def send_instruction(
        self,
        text: str,
        message_id: str | None = None,
        reply_to: str | None = None,
        metadata: dict[str, Any] | None = None,
    ):
        """Type the instruction into the session.

        Raises:
            TransientWorkerFailure: If the session cannot be reached
        """
        with self._lock:
            if not self.attached or not self._session_exists():
                self._detach()
                self.start()
            try:
                self._type(text)
            except LibTmuxException as e:
                raise worker_failure(
                    self.supervisor,
                    f"Failed to send keys to {self.session_name}: {e}",
                    reason=f"Failed to send keys: {e}",
                ) from e
            logger.debug(
                f"Sent {len(text)} chars to tmux session {self.session_name}",
                extra={"agent_id": self.agent_id, "message_id": message_id},
            )

    def send_signal(
        self,
        kind: MessageKind,
        content: str = "",
        message_id: str | None = None,
        reply_to: str | None = None,
        metadata: dict[str, Any] | None = None,
    ):
        with self._lock:
            if kind is MessageKind.STATUS_REQUEST:
                if self.attached:
                    tail = "\n".join(self._capture()[-STATUS_TAIL_LINES:])
                    text = f"Session {self.session_name} is attached.\n{tail}".rstrip()
                else:
                    text = f"Session {self.session_name} is not attached."
                self.sink(MessageKind.STATUS_UPDATE, text, {"session_name": self.session_name})
                return

            if not self.attached:
                logger.debug(
                    f"Ignoring {kind.value} for {self.agent_id}: session not attached",
                    extra={"agent_id": self.agent_id},
                )
                return

            pane = self._pane()
            if kind is MessageKind.PAUSE:
                pane.send_keys("C-c", enter=False, literal=False)
            elif kind is MessageKind.CANCEL:
                pane.send_keys("C-c", enter=False, literal=False)
                time.sleep(self.keystroke_delay)
                self._type("/exit")
            elif kind is MessageKind.RESUME and content.strip():
                self._type(content)

    # ── Health ──────────────────────────────────────────────────────────

    def _capture(self) -> list[str]:
        result = self._pane().cmd("capture-pane", "-p", "-S", f"-{self.capture_lines}")
        lines = list(result.stdout)
        while lines and not lines[-1].strip():
            lines.pop()
        return lines

    def _details(self, connected: bool, session_active: bool) -> str:
        return (
            f"Session: {self.session_name}\n"
            f"Session active: {'yes' if session_active else 'no'}\n"
            f"Attached: {'yes' if connected else 'no'}"
        )

    def poll_health(self) -> AdapterHealth:
        """Check that the session exists, re-attach if needed and scrape new output."""
        with self._lock:
            try:
                active = self._session_exists()
            except LibTmuxException as e:
                return self.supervisor.record_poll(
                    False, False, details=self._details(False, False), error=f"tmux unavailable: {e}"
                )

            if not active:
                self._detach()
                return self.supervisor.record_poll(
                    False,
                    False,
                    details=self._details(False, False),
                    error=f"Session {self.session_name} not found",
                )

            try:
                if not self.attached and not self._stopped:
                    self._attach_or_create()
                    self._last_capture = self._capture()
                    self.supervisor.mark_starting()
                if self.attached:
                    self._scrape()
            except LibTmuxException as e:
                self._detach()
                return self.supervisor.record_poll(
                    False, True, details=self._details(False, True), error=f"tmux error: {e}"
                )

            return self.supervisor.record_poll(
                self.attached, True, details=self._details(self.attached, True)
            )

    def _scrape(self):
        current = self._capture()
        new_lines = diff_new_lines(self._last_capture, current)
        self._last_capture = current
        if not new_lines:
            return
        text = "\n".join(new_lines)
        if self.output_logger is not None:
            self.output_logger(text)
        self.sink(MessageKind.OUTPUT, text, {"session_name": self.session_name})
