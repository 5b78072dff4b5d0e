"""Adapter that supervises one local child process per workstream."""

import contextlib
import logging
import os
import signal
import subprocess
import threading
from pathlib import Path
from typing import IO, Any

import psutil

from ..errors import ConfigurationError, TransientWorkerFailure
from ..models import AdapterConfig, AdapterHealth, AdapterType, MessageKind, RestartPolicy
from ..supervisor import POLICY_SUPPRESSION_REASON, HealthSupervisor
from .base import MessageSink, OutputRingBuffer, truncate_line, worker_failure

logger = logging.getLogger(__name__)


class ProcessAdapter:
    """Runs ``sh -lc <command>`` and turns its output into messages.

    stdout lines become ``output`` messages and stderr lines become ``error``
    messages tagged ``{"stream": "stderr"}``. Process exits are observed on
    ``poll_health``; each spawned process reports its exit exactly once, after
    all of its output, and the restart policy is applied right after.
    """

    def __init__(
        self,
        agent_id: str,
        config: AdapterConfig,
        supervisor: HealthSupervisor,
        sink: MessageSink,
        working_directory: str | None = None,
        max_line_chars: int = 4096,
        ring_buffer_lines: int = 200,
        stop_timeout: float = 5.0,
        default_command: str | None = None,
        adapter_type: AdapterType = AdapterType.PROCESS,
    ):
        self.agent_id = agent_id
        self.config = config
        self.supervisor = supervisor
        self.sink = sink
        self.working_directory = working_directory
        self.max_line_chars = max_line_chars
        self.stop_timeout = stop_timeout
        self.default_command = default_command
        self.adapter_type = adapter_type

        self.output = OutputRingBuffer(ring_buffer_lines)
        self._lock = threading.RLock()
        self._process: subprocess.Popen | None = None
        self._readers: list[threading.Thread] = []
        self._exit_reported = True
        self._stopped = False
        self.spawn_count = 0

        if not self.command:
            raise ConfigurationError("Process adapter requires a command")

    @property
    def command(self) -> str | None:
        return (self.config.command or "").strip() or self.default_command

    @property
    def restart_policy(self) -> RestartPolicy:
        return self.config.restart_policy

    @property
    def pid(self) -> int | None:
        return self._process.pid if self._process else None

    def is_running(self) -> bool:
        return self._process is not None and self._process.poll() is None

    # ── Lifecycle ───────────────────────────────────────────────────────

    def start(self, config: AdapterConfig | None = None) -> AdapterHealth:
        """Spawn the process unless one is already running.

        Raises:
            ConfigurationError: If the config has no command
            TransientWorkerFailure: If the process cannot be spawned
        """
        with self._lock:
            if config is not None:
                self.config = config
                if not self.command:
                    raise ConfigurationError("Process adapter requires a command")

            if self.is_running():
                logger.debug(
                    f"Reusing running process {self._process.pid} for {self.agent_id}",
                    extra={"agent_id": self.agent_id, "pid": self._process.pid},
                )
                return self.supervisor.snapshot()

            # A previous process died without being polled; report it first
            if self._process is not None and not self._exit_reported:
                self._report_exit(self._process.returncode, apply_policy=False)

            self.supervisor.mark_starting()
            self._spawn()
            return self.supervisor.record_started(self._details())

    def _resolve_cwd(self) -> str | None:
        if not self.working_directory:
            return None
        path = Path(self.working_directory).expanduser()
        if not path.is_dir():
            logger.warning(
                f"Working directory {path} does not exist, using current directory",
                extra={"agent_id": self.agent_id},
            )
            return None
        return str(path)

    def _spawn(self):
        command = self.command
        env = os.environ.copy()
        env.update(self.config.env)

        try:
            process = subprocess.Popen(
                ["sh", "-lc", command],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                cwd=self._resolve_cwd(),
                env=env,
                text=True,
                encoding="utf-8",
                errors="replace",
                bufsize=1,
                start_new_session=True,
            )
        except OSError as e:
            raise worker_failure(self.supervisor, f"Failed to spawn `{command}`: {e}") from e

        self._process = process
        self._exit_reported = False
        self._stopped = False
        self.spawn_count += 1
        self._readers = []
        for stream, kind in ((process.stdout, MessageKind.OUTPUT), (process.stderr, MessageKind.ERROR)):
            reader = threading.Thread(
                target=self._read_stream,
                args=(stream, kind),
                daemon=True,
                name=f"process-{self.agent_id[:8]}-{kind.value}",
            )
            reader.start()
            self._readers.append(reader)

        logger.info(
            f"Spawned process {process.pid} for {self.agent_id}: {command}",
            extra={"agent_id": self.agent_id, "pid": process.pid, "spawn_count": self.spawn_count},
        )

    def _read_stream(self, stream: IO[str], kind: MessageKind):
        """Background thread: publish each line of one output stream."""
        metadata = {"stream": "stderr"} if kind is MessageKind.ERROR else None
        try:
            for raw in iter(stream.readline, ""):
                line = truncate_line(raw.rstrip("\r\n"), self.max_line_chars)
                self.output.push(f"[stderr] {line}" if metadata else line)
                self.sink(kind, line, metadata)
        except (OSError, ValueError) as e:
            # Stream closed underneath us during stop
            logger.debug(f"Output reader for {self.agent_id} ended: {e}")
        except Exception as e:
            logger.error(
                f"Error publishing process output for {self.agent_id}: {e}",
                extra={"agent_id": self.agent_id},
            )
        finally:
            with contextlib.suppress(OSError):
                stream.close()

    def _join_readers(self, timeout: float = 2.0):
        for reader in self._readers:
            if reader.is_alive() and reader is not threading.current_thread():
                reader.join(timeout=timeout)

    def stop(self):
        """Terminate the process and everything it spawned."""
        with self._lock:
            process = self._process
            if process is not None:
                if process.poll() is None:
                    self._terminate_tree(process)
                with contextlib.suppress(OSError, ValueError):
                    if process.stdin:
                        process.stdin.close()
                self._join_readers()
            # A stopped process is not an exit to report
            self._exit_reported = True
            self._stopped = True
            self.supervisor.mark_stopped()
            self.supervisor.observe(False, False, self._details())

    def _terminate_tree(self, process: subprocess.Popen):
        try:
            parent = psutil.Process(process.pid)
            procs = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            procs = []

        for proc in procs:
            with contextlib.suppress(psutil.NoSuchProcess):
                proc.terminate()
        _, alive = psutil.wait_procs(procs, timeout=self.stop_timeout)
        for proc in alive:
            logger.warning(
                f"Process {proc.pid} ignored SIGTERM, killing",
                extra={"agent_id": self.agent_id, "pid": proc.pid},
            )
            with contextlib.suppress(psutil.NoSuchProcess):
                proc.kill()

        # Sweep anything left in the session's process group
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(process.pid, signal.SIGKILL)

        try:
            process.wait(timeout=self.stop_timeout)
        except subprocess.TimeoutExpired:
            logger.error(
                f"Process {process.pid} did not exit after kill",
                extra={"agent_id": self.agent_id, "pid": process.pid},
            )
        logger.info(f"Terminated process tree of {process.pid}", extra={"agent_id": self.agent_id})

    def abort(self):
        """SIGKILL the process tree without taking the adapter lock.

        Nothing is joined or waited for; a ``stop()`` queued behind the
        stuck call finishes the cleanup once it gets the lock.
        """
        process = self._process
        self._stopped = True
        self._exit_reported = True
        self.supervisor.mark_stopped()
        if process is None or process.poll() is not None:
            return

        try:
            parent = psutil.Process(process.pid)
            procs = parent.children(recursive=True) + [parent]
        except psutil.NoSuchProcess:
            procs = []
        for proc in procs:
            with contextlib.suppress(psutil.NoSuchProcess):
                proc.kill()
        with contextlib.suppress(ProcessLookupError, PermissionError):
            os.killpg(process.pid, signal.SIGKILL)
        logger.warning(
            f"Aborted process tree of {process.pid}",
            extra={"agent_id": self.agent_id, "pid": process.pid},
        )

    def restart(self) -> AdapterHealth:
        with self._lock:
            self.stop()
            self.supervisor.reset()
            return self.start()

    def wait(self, timeout: float | None = None) -> int | None:
        """Block until the current process exits.

        Returns:
            Exit code, or None if there is no process or it is still running
        """
        process = self._process
        if process is None:
            return None
        try:
            return process.wait(timeout=timeout)
        except subprocess.TimeoutExpired:
            return None

    # ── Messaging ───────────────────────────────────────────────────────

    def send_instruction(
        self,
        text: str,
        message_id: str | None = None,
        reply_to: str | None = None,
        metadata: dict[str, Any] | None = None,
    ):
        """Write ``text`` as one line to the process's stdin.

        Raises:
            TransientWorkerFailure: If the process cannot be started or written to
        """
        with self._lock:
            if not self.is_running():
                self.start()
            self._write_stdin(text)

    def _write_stdin(self, text: str):
        try:
            self._process.stdin.write(text if text.endswith("\n") else text + "\n")
            self._process.stdin.flush()
        except (OSError, ValueError) as e:
            raise worker_failure(self.supervisor, f"Failed to write to process stdin: {e}") from e

    def _tree(self) -> list[psutil.Process]:
        try:
            parent = psutil.Process(self._process.pid)
            return [parent] + parent.children(recursive=True)
        except psutil.NoSuchProcess:
            return []

    def _signal_tree(self, kind: MessageKind):
        """Suspend (pause) or continue (resume) every process in the tree.

        Raises:
            TransientWorkerFailure: If a live process refuses the signal
        """
        for proc in self._tree():
            try:
                if kind is MessageKind.PAUSE:
                    proc.suspend()
                else:
                    proc.resume()
            except psutil.NoSuchProcess:
                continue
            except psutil.Error as e:
                raise TransientWorkerFailure(f"Cannot {kind.value} process {proc.pid}: {e}") from e

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
                state = "is running" if self.is_running() else "is not running"
                last_output = self.output.render_tail(8) or "(none)"
                self.sink(
                    MessageKind.STATUS_UPDATE,
                    f"Process command `{self.command}` {state}.\nLast output: {last_output}",
                    None,
                )
                return

            if kind is MessageKind.CANCEL:
                self.stop()
                self.sink(MessageKind.STATUS_UPDATE, "Process terminated.", None)
                return

            if not self.is_running():
                logger.debug(
                    f"Ignoring {kind.value} for {self.agent_id}: process not running",
                    extra={"agent_id": self.agent_id},
                )
                return

            if kind is MessageKind.PAUSE:
                self._signal_tree(kind)
                self.sink(MessageKind.STATUS_UPDATE, "Process paused.", None)
            elif kind is MessageKind.RESUME:
                self._signal_tree(kind)
                if content.strip():
                    self._write_stdin(content)
                self.sink(MessageKind.STATUS_UPDATE, "Process resumed.", None)

    # ── Health ──────────────────────────────────────────────────────────

    def _state_text(self) -> str:
        process = self._process
        if process is None:
            return "not started"
        code = process.poll()
        if code is None:
            return f"running (pid {process.pid})"
        if self._stopped:
            return "stopped"
        return f"exited (code {code})"

    def _details(self) -> str:
        return (
            f"Process command: {self.command}\n"
            f"Restart policy: {self.restart_policy.value}\n"
            f"State: {self._state_text()}\n"
            f"Last output: {self.output.render_tail(8) or '(none)'}"
        )

    def poll_health(self) -> AdapterHealth:
        with self._lock:
            process = self._process
            if process is None or self._stopped:
                return self.supervisor.record_poll(False, False, details=self._details())

            exit_code = process.poll()
            if exit_code is None:
                return self.supervisor.record_poll(True, True, details=self._details())

            if not self._exit_reported:
                self._report_exit(exit_code, apply_policy=True)
                return self.supervisor.snapshot()

            return self.supervisor.record_poll(False, False, details=self._details())

    def _report_exit(self, exit_code: int | None, apply_policy: bool):
        """Publish the exit of the current process and apply the restart policy."""
        self._exit_reported = True
        self._join_readers()

        abnormal = exit_code != 0
        policy_suppresses = self.restart_policy.should_suppress(exit_code)
        reason = (
            f"Process exited with failure (code {exit_code})."
            if abnormal
            else "Process exited normally (code 0)."
        )

        # A clean exit that the policy treats as final is not a failure
        if abnormal or not policy_suppresses:
            self.supervisor.record_failure(reason)
        else:
            self.supervisor.observe(False, False)

        respawn = False
        message = reason
        if apply_policy:
            if policy_suppresses:
                self.supervisor.suppress(POLICY_SUPPRESSION_REASON)
                message += f" {POLICY_SUPPRESSION_REASON}."
            elif self.supervisor.should_auto_restart():
                respawn = True
            else:
                message += (
                    f" Auto-restart suspended after {self.supervisor.consecutive_failures} "
                    "consecutive failures."
                )

        logger.info(
            f"Process for {self.agent_id} exited with code {exit_code}",
            extra={"agent_id": self.agent_id, "exit_code": exit_code, "respawn": respawn},
        )
        self.sink(
            MessageKind.ERROR if abnormal else MessageKind.COMPLETED,
            message,
            {"exit_code": exit_code, "restart_policy": self.restart_policy.value},
        )
        self.supervisor.observe(False, False, self._details())

        if respawn:
            try:
                self._spawn()
            except TransientWorkerFailure as e:
                logger.warning(f"Automatic respawn failed for {self.agent_id}: {e}")
                return
            self.supervisor.observe(True, True, self._details())
