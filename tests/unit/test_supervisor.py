"""Unit tests for the health supervisor state machine."""

import pytest

from workstreams.models import SupervisorState
from workstreams.supervisor import POLICY_SUPPRESSION_REASON, HealthSupervisor


@pytest.fixture
def running(supervisor):
    """A supervisor whose worker has started."""
    supervisor.mark_configured()
    supervisor.mark_starting()
    supervisor.record_started("ready")
    return supervisor


class TestLifecycle:
    def test_initial_state(self, supervisor):
        health = supervisor.snapshot()
        assert health.state is SupervisorState.NOT_CONFIGURED
        assert health.connected is False
        assert health.consecutive_failures == 0

    def test_started_is_healthy(self, running):
        health = running.snapshot()
        assert health.state is SupervisorState.HEALTHY
        assert health.connected and health.session_active
        assert health.details == "ready"
        assert health.last_heartbeat is not None

    def test_configured_polls_do_not_count_failures(self, supervisor):
        supervisor.mark_configured()
        health = supervisor.record_poll(False, False)
        assert health.state is SupervisorState.CONFIGURED
        assert health.consecutive_failures == 0

    def test_stopped_ignores_failures(self, running):
        running.mark_stopped()
        health = running.record_failure("late crash")
        assert health.state is SupervisorState.STOPPED
        assert health.consecutive_failures == 0
        assert health.last_error == "late crash"


class TestFailures:
    def test_failure_below_threshold_degrades(self, running):
        health = running.record_poll(False, False, error="gone")
        assert health.state is SupervisorState.DEGRADED
        assert health.consecutive_failures == 1
        assert health.last_error == "gone"

    def test_missing_error_text_is_filled_in(self, running):
        assert running.record_poll(False, True).last_error == "Worker not connected"
        assert running.record_poll(True, False).last_error == "Session not active"

    def test_successful_poll_recovers_but_keeps_streak(self, running):
        running.record_failure("crash")
        health = running.record_poll(True, True)
        assert health.state is SupervisorState.HEALTHY
        assert health.consecutive_failures == 1

    def test_threshold_suspends(self, running):
        for _ in range(3):
            health = running.record_failure("crash")
        assert health.state is SupervisorState.SUSPENDED
        assert health.suppress_auto_restart is True
        assert health.consecutive_failures == 3
        assert running.is_escalated
        assert running.should_auto_restart() is False

    def test_streak_is_frozen_while_suppressed(self, running):
        for _ in range(3):
            running.record_failure("crash")
        health = running.record_failure("still down")
        assert health.consecutive_failures == 3
        assert health.last_error == "still down"

    def test_successful_poll_does_not_clear_suppression(self, running):
        for _ in range(3):
            running.record_failure("crash")
        health = running.record_poll(True, True)
        assert health.state is SupervisorState.SUSPENDED
        assert health.suppress_auto_restart is True

    def test_note_error_does_not_count(self, running):
        running.note_error("store hiccup")
        health = running.snapshot()
        assert health.last_error == "store hiccup"
        assert health.consecutive_failures == 0
        assert health.state is SupervisorState.HEALTHY


class TestRecovery:
    def test_reset_clears_streak_and_suppression(self, running):
        for _ in range(3):
            running.record_failure("crash")
        running.reset()
        health = running.snapshot()
        assert health.consecutive_failures == 0
        assert health.suppress_auto_restart is False
        assert health.last_error is None
        assert health.retry_after_seconds is None

    def test_record_success_goes_healthy(self, running):
        for _ in range(3):
            running.record_failure("crash")
        health = running.record_success()
        assert health.state is SupervisorState.HEALTHY
        assert health.consecutive_failures == 0
        assert not running.is_escalated


class TestPolicySuppression:
    def test_suppress_without_streak(self, running):
        running.suppress()
        health = running.snapshot()
        assert health.state is SupervisorState.SUSPENDED
        assert health.suppress_auto_restart is True
        assert health.last_error == POLICY_SUPPRESSION_REASON
        assert health.retry_after_seconds is None
        assert not running.is_escalated

    def test_started_while_suppressed_stays_suspended(self, running):
        running.suppress()
        assert running.record_started().state is SupervisorState.SUSPENDED


class TestBackoff:
    def test_backoff_doubles_and_caps(self, clock):
        supervisor = HealthSupervisor("a", backoff_base_seconds=5, backoff_cap_seconds=60, clock=clock)
        assert [supervisor.backoff_seconds(n) for n in range(0, 6)] == [5, 5, 10, 20, 40, 60]

    def test_huge_streak_does_not_overflow(self, supervisor):
        assert supervisor.backoff_seconds(10_000) == 300

    def test_retry_after_counts_down(self, running, clock):
        for _ in range(3):
            running.record_failure("crash")
        # 3 failures -> 5 * 2**2 = 20s
        assert running.snapshot().retry_after_seconds == 20
        clock.advance(12.5)
        assert running.snapshot().retry_after_seconds == 8
        clock.advance(10)
        assert running.snapshot().retry_after_seconds is None

    def test_no_retry_after_when_degraded(self, running):
        running.record_failure("crash")
        assert running.snapshot().retry_after_seconds is None


def test_snapshot_to_dict(running):
    data = running.snapshot().to_dict()
    assert data["state"] == "healthy"
    assert data["last_heartbeat"].endswith("Z")
    assert set(data) >= {
        "connected",
        "session_active",
        "details",
        "last_error",
        "consecutive_failures",
        "retry_after_seconds",
        "suppress_auto_restart",
    }
