"""Tests for the process adapter.

These spawn real ``sh`` children; every adapter is stopped on teardown.
"""

import os
import subprocess
import threading
import time
from unittest.mock import patch

import psutil
import pytest

from workstreams.adapters import ProcessAdapter
from workstreams.errors import ConfigurationError, TransientWorkerFailure
from workstreams.models import AdapterConfig, AdapterType, MessageKind, RestartPolicy, SupervisorState


def _wait_for(predicate, timeout: float = 5.0) -> bool:
    deadline = time.monotonic() + timeout
    while time.monotonic() < deadline:
        if predicate():
            return True
        time.sleep(0.02)
    return predicate()


def _stdout(sink) -> list[str]:
    return sink.contents(MessageKind.OUTPUT)


def _exit_messages(sink):
    return [(k, c, m) for k, c, m in sink.messages if m and "exit_code" in m]


def _is_gone(pid: int) -> bool:
    try:
        return psutil.Process(pid).status() == psutil.STATUS_ZOMBIE
    except psutil.NoSuchProcess:
        return True


@pytest.fixture
def make_adapter(supervisor, sink):
    created = []

    def factory(command: str, policy: RestartPolicy = RestartPolicy.NEVER, **kwargs) -> ProcessAdapter:
        supervisor.mark_configured()
        config = AdapterConfig(AdapterType.PROCESS, command=command, restart_policy=policy)
        adapter = ProcessAdapter("agent-1", config, supervisor, sink, stop_timeout=2.0, **kwargs)
        created.append(adapter)
        return adapter

    yield factory
    for adapter in created:
        adapter.stop()


def _run_to_exit(adapter: ProcessAdapter):
    adapter.start()
    assert adapter.wait(timeout=10) is not None
    return adapter.poll_health()


class TestConfiguration:
    def test_missing_command(self, supervisor, sink):
        with pytest.raises(ConfigurationError):
            ProcessAdapter("agent-1", AdapterConfig(AdapterType.PROCESS), supervisor, sink)

    def test_codex_uses_default_command(self, supervisor, sink):
        adapter = ProcessAdapter(
            "agent-1",
            AdapterConfig(AdapterType.CODEX),
            supervisor,
            sink,
            default_command="codex",
            adapter_type=AdapterType.CODEX,
        )
        assert adapter.command == "codex"

    def test_spawn_error_is_transient(self, make_adapter, supervisor):
        adapter = make_adapter("true")
        with patch("workstreams.adapters.process.subprocess.Popen", side_effect=OSError("no sh")):
            with pytest.raises(TransientWorkerFailure, match="no sh"):
                adapter.start()
        assert supervisor.snapshot().consecutive_failures == 1


class TestOutput:
    def test_stdout_lines_become_output(self, make_adapter, sink):
        adapter = make_adapter("printf 'one\\ntwo\\n'")
        _run_to_exit(adapter)
        assert _stdout(sink)[-2:] == ["one", "two"]

    def test_stderr_lines_become_tagged_errors(self, make_adapter, sink):
        adapter = make_adapter("echo oops 1>&2")
        _run_to_exit(adapter)
        stderr = [(c, m) for k, c, m in sink.messages if k is MessageKind.ERROR and m == {"stream": "stderr"}]
        assert ("oops", {"stream": "stderr"}) in stderr

    def test_long_lines_are_truncated(self, make_adapter, sink):
        adapter = make_adapter("printf '%0300d\\n' 0", max_line_chars=50)
        _run_to_exit(adapter)
        assert _stdout(sink)[-1] == "0" * 50 + " ... [line truncated: 250 chars omitted]"

    def test_output_precedes_exit_message(self, make_adapter, sink):
        adapter = make_adapter("echo first; echo second; exit 1")
        _run_to_exit(adapter)
        relevant = [c for k, c, m in sink.messages if k is MessageKind.OUTPUT or (m and "exit_code" in m)]
        assert relevant[-3:-1] == ["first", "second"]
        assert relevant[-1].startswith("Process exited with failure (code 1).")

    def test_instruction_written_to_stdin(self, make_adapter, sink):
        adapter = make_adapter("cat")
        adapter.send_instruction("ping")
        assert _wait_for(lambda: "ping" in _stdout(sink))

    def test_working_directory(self, make_adapter, sink, tmp_path):
        adapter = make_adapter("pwd", working_directory=str(tmp_path))
        _run_to_exit(adapter)
        assert os.path.realpath(_stdout(sink)[-1]) == os.path.realpath(tmp_path)

    def test_config_env_is_passed(self, supervisor, sink):
        supervisor.mark_configured()
        config = AdapterConfig(
            AdapterType.PROCESS,
            command="echo $GREETING",
            env={"GREETING": "bonjour"},
            restart_policy=RestartPolicy.NEVER,
        )
        adapter = ProcessAdapter("agent-1", config, supervisor, sink)
        try:
            _run_to_exit(adapter)
        finally:
            adapter.stop()
        assert _stdout(sink)[-1] == "bonjour"

    def test_ring_buffer_keeps_recent_lines(self, make_adapter):
        adapter = make_adapter("seq 1 20", ring_buffer_lines=5)
        _run_to_exit(adapter)
        lines = adapter.output.lines()
        assert lines[-1] == "20"
        assert len(lines) == 5


class TestRestartPolicy:
    def test_never_clean_exit_is_not_a_failure(self, make_adapter, supervisor, sink):
        adapter = make_adapter("true", RestartPolicy.NEVER)
        health = _run_to_exit(adapter)

        assert adapter.spawn_count == 1
        assert health.consecutive_failures == 0
        assert health.suppress_auto_restart is True
        assert health.state is SupervisorState.SUSPENDED
        kind, content, metadata = _exit_messages(sink)[-1]
        assert kind is MessageKind.COMPLETED
        assert content == "Process exited normally (code 0). Auto-restart paused by policy."
        assert metadata == {"exit_code": 0, "restart_policy": "never"}

    def test_never_failed_exit_does_not_respawn(self, make_adapter, sink):
        adapter = make_adapter("exit 1", RestartPolicy.NEVER)
        health = _run_to_exit(adapter)

        assert adapter.spawn_count == 1
        assert health.consecutive_failures == 1
        assert not adapter.is_running()
        assert health.connected is False
        assert health.session_active is False
        kind, content, _ = _exit_messages(sink)[-1]
        assert kind is MessageKind.ERROR
        assert content == "Process exited with failure (code 1). Auto-restart paused by policy."

    def test_on_failure_respawns_after_crash(self, make_adapter):
        adapter = make_adapter("sleep 0.2; exit 3", RestartPolicy.ON_FAILURE)
        health = _run_to_exit(adapter)
        assert adapter.spawn_count == 2
        assert health.suppress_auto_restart is False
        assert health.consecutive_failures == 1

    def test_on_failure_clean_exit_is_final(self, make_adapter):
        adapter = make_adapter("true", RestartPolicy.ON_FAILURE)
        health = _run_to_exit(adapter)
        assert adapter.spawn_count == 1
        assert health.suppress_auto_restart is True
        assert health.consecutive_failures == 0

    def test_always_suspends_at_threshold_and_restart_clears(self, make_adapter, sink):
        adapter = make_adapter("true", RestartPolicy.ALWAYS)
        adapter.start()
        for _ in range(3):
            assert adapter.wait(timeout=10) is not None
            health = adapter.poll_health()

        assert adapter.spawn_count == 3
        assert health.consecutive_failures == 3
        assert health.suppress_auto_restart is True
        assert health.state is SupervisorState.SUSPENDED
        assert _exit_messages(sink)[-1][1].endswith("Auto-restart suspended after 3 consecutive failures.")

        health = adapter.restart()
        assert adapter.spawn_count == 4
        assert health.consecutive_failures == 0
        assert health.suppress_auto_restart is False

    def test_exit_reported_once(self, make_adapter, sink):
        adapter = make_adapter("exit 2", RestartPolicy.NEVER)
        _run_to_exit(adapter)
        adapter.poll_health()
        adapter.poll_health()
        assert len(_exit_messages(sink)) == 1


class TestLifecycle:
    def test_start_reuses_running_process(self, make_adapter):
        adapter = make_adapter("sleep 30")
        adapter.start()
        pid = adapter.pid
        adapter.start()
        assert adapter.pid == pid
        assert adapter.spawn_count == 1

    def test_poll_running_process_is_healthy(self, make_adapter):
        adapter = make_adapter("sleep 30")
        adapter.start()
        health = adapter.poll_health()
        assert health.state is SupervisorState.HEALTHY
        assert "Process command: sleep 30" in health.details
        assert "State: running" in health.details

    def test_stop_kills_process_tree(self, make_adapter):
        adapter = make_adapter("sleep 30 & sleep 30; wait")
        adapter.start()
        parent = psutil.Process(adapter.pid)
        assert _wait_for(lambda: len(parent.children(recursive=True)) >= 2)
        pids = [parent.pid] + [p.pid for p in parent.children(recursive=True)]

        adapter.stop()

        assert all(_is_gone(pid) for pid in pids)

    def test_stop_is_not_an_exit(self, make_adapter, supervisor, sink):
        adapter = make_adapter("sleep 30")
        adapter.start()
        adapter.stop()
        health = adapter.poll_health()
        assert health.state is SupervisorState.STOPPED
        assert health.consecutive_failures == 0
        assert _exit_messages(sink) == []

    def test_abort_does_not_wait_for_the_lock(self, make_adapter, supervisor):
        adapter = make_adapter("sleep 30")
        adapter.start()
        pid = adapter.pid
        held, release = threading.Event(), threading.Event()

        def hold_lock():
            with adapter._lock:
                held.set()
                release.wait(10)

        holder = threading.Thread(target=hold_lock)
        holder.start()
        try:
            assert held.wait(5)
            adapter.abort()
            assert adapter.wait(timeout=5) is not None
            assert _is_gone(pid)
        finally:
            release.set()
            holder.join()

        # Exit after abort is not reported as a crash
        assert adapter.poll_health().consecutive_failures == 0

    def test_restart_replaces_process(self, make_adapter):
        adapter = make_adapter("sleep 30")
        adapter.start()
        old_pid = adapter.pid
        adapter.restart()
        assert adapter.pid != old_pid
        assert adapter.is_running()
        assert _is_gone(old_pid)


class TestSignals:
    def test_status_request(self, make_adapter, sink):
        adapter = make_adapter("sleep 30")
        adapter.start()
        adapter.send_signal(MessageKind.STATUS_REQUEST)
        kind, content, _ = sink.messages[-1]
        assert kind is MessageKind.STATUS_UPDATE
        assert content.startswith("Process command `sleep 30` is running.")

    def test_cancel_terminates(self, make_adapter, sink):
        adapter = make_adapter("sleep 30")
        adapter.start()
        adapter.send_signal(MessageKind.CANCEL)
        assert not adapter.is_running()
        assert sink.messages[-1][:2] == (MessageKind.STATUS_UPDATE, "Process terminated.")

    def test_pause_and_resume(self, make_adapter, sink):
        adapter = make_adapter("sleep 30")
        adapter.start()
        process = psutil.Process(adapter.pid)
        adapter.send_signal(MessageKind.PAUSE)
        assert _wait_for(lambda: process.status() == psutil.STATUS_STOPPED)
        adapter.send_signal(MessageKind.RESUME)
        assert _wait_for(lambda: process.status() != psutil.STATUS_STOPPED)
        assert sink.contents(MessageKind.STATUS_UPDATE)[-2:] == ["Process paused.", "Process resumed."]

    def test_signal_to_stopped_process_is_ignored(self, make_adapter, sink):
        adapter = make_adapter("sleep 30")
        adapter.send_signal(MessageKind.PAUSE)
        assert sink.messages == []

    @pytest.mark.parametrize("kind,method", [(MessageKind.PAUSE, "suspend"), (MessageKind.RESUME, "resume")])
    def test_access_denied_is_transient(self, make_adapter, supervisor, sink, kind, method):
        adapter = make_adapter("sleep 30")
        adapter.start()
        pid = adapter.pid

        with patch.object(psutil.Process, method, side_effect=psutil.AccessDenied(pid)):
            with pytest.raises(TransientWorkerFailure, match=f"Cannot {kind.value} process {pid}"):
                adapter.send_signal(kind)

        # A refused signal is not a worker failure
        assert supervisor.consecutive_failures == 0
        assert MessageKind.STATUS_UPDATE not in sink.kinds()

    def test_vanished_child_is_skipped(self, make_adapter, sink):
        adapter = make_adapter("sleep 30")
        adapter.start()

        with patch.object(psutil.Process, "suspend", side_effect=psutil.NoSuchProcess(adapter.pid)):
            adapter.send_signal(MessageKind.PAUSE)

        assert sink.contents(MessageKind.STATUS_UPDATE)[-1] == "Process paused."


def test_subprocess_is_own_session(make_adapter):
    adapter = make_adapter("sleep 30")
    adapter.start()
    assert os.getsid(adapter.pid) == adapter.pid
    assert isinstance(adapter._process, subprocess.Popen)
