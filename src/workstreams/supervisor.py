"""Health supervision for one workstream's adapter.

The supervisor is a passive state machine: it owns no timers and never
restarts anything itself. Callers feed it poll results and lifecycle events
and read back an ``AdapterHealth`` snapshot.

States::

    not_configured -> configured -> starting -> healthy <-> degraded -> suspended
                                                   \\______________________/
                                                     stopped (explicit stop only)

Rules:
    - Every failing poll or failure event increments ``consecutive_failures``.
    - Reaching ``failure_threshold`` moves to ``suspended`` and sets
      ``suppress_auto_restart``.
    - A successful poll returns ``degraded`` to ``healthy`` but never resets the
      streak and never clears suppression.
    - Only ``reset()`` (manual restart) or ``record_success()`` (a delivered
      instruction) clears the streak and suppression.
    - While suppressed the streak is frozen; further failures only update
      ``last_error``.
"""

import logging
import math
import threading
from collections.abc import Callable
from datetime import datetime

from .models import AdapterHealth, SupervisorState, utc_now

logger = logging.getLogger(__name__)

POLICY_SUPPRESSION_REASON = "Auto-restart paused by policy"


class HealthSupervisor:
    """Tracks connectivity, failure streaks and auto-restart suppression."""

    def __init__(
        self,
        agent_id: str,
        failure_threshold: int = 3,
        backoff_base_seconds: int = 5,
        backoff_cap_seconds: int = 300,
        clock: Callable[[], datetime] = utc_now,
    ):
        self.agent_id = agent_id
        self.failure_threshold = failure_threshold
        self.backoff_base_seconds = backoff_base_seconds
        self.backoff_cap_seconds = backoff_cap_seconds
        self.clock = clock

        # Reader threads and the runtime both report into the supervisor
        self._lock = threading.RLock()

        self.state = SupervisorState.NOT_CONFIGURED
        self.connected = False
        self.session_active = False
        self.last_heartbeat: datetime | None = None
        self.details = ""
        self.last_error: str | None = None
        self.consecutive_failures = 0
        self.suppress_auto_restart = False
        self._last_failure_at: datetime | None = None

    # ── Lifecycle events ────────────────────────────────────────────────

    def mark_configured(self):
        with self._lock:
            self.state = SupervisorState.CONFIGURED

    def mark_starting(self):
        with self._lock:
            self.state = SupervisorState.STARTING

    def record_started(self, details: str | None = None) -> AdapterHealth:
        """The worker was established (spawned, attached or created)."""
        with self._lock:
            self.connected = True
            self.session_active = True
            self.last_heartbeat = self.clock()
            if details is not None:
                self.details = details
            self.state = (
                SupervisorState.SUSPENDED if self.suppress_auto_restart else SupervisorState.HEALTHY
            )
            return self.snapshot()

    def mark_stopped(self):
        with self._lock:
            self.state = SupervisorState.STOPPED
            self.connected = False
            self.session_active = False

    # ── Poll results and failures ───────────────────────────────────────

    def record_poll(
        self,
        connected: bool,
        session_active: bool,
        details: str | None = None,
        error: str | None = None,
    ) -> AdapterHealth:
        """Apply one poll result.

        Args:
            connected: Whether the worker is reachable
            session_active: Whether the worker's session/process exists
            details: Human-readable detail text for display
            error: Failure description, if the poll itself failed

        Returns:
            Snapshot after applying the result
        """
        with self._lock:
            self.connected = connected
            self.session_active = session_active
            if details is not None:
                self.details = details

            if self.state in (
                SupervisorState.NOT_CONFIGURED,
                SupervisorState.CONFIGURED,
                SupervisorState.STOPPED,
            ):
                return self.snapshot()

            if connected and session_active and error is None:
                self.last_heartbeat = self.clock()
                if self.suppress_auto_restart:
                    self.state = SupervisorState.SUSPENDED
                else:
                    self.state = SupervisorState.HEALTHY
                return self.snapshot()

            if error is None:
                error = "Worker not connected" if not connected else "Session not active"
            self._fail(error)
            return self.snapshot()

    def record_failure(self, reason: str) -> AdapterHealth:
        """Record a worker failure (crash, spawn error, unreachable session)."""
        with self._lock:
            self.connected = False
            self.session_active = False
            if self.state is SupervisorState.STOPPED:
                self.last_error = reason
            else:
                self._fail(reason)
            return self.snapshot()

    def note_error(self, reason: str):
        """Record ``last_error`` without counting a failure."""
        with self._lock:
            self.last_error = reason

    def observe(self, connected: bool, session_active: bool, details: str | None = None):
        """Update liveness flags without any state transition."""
        with self._lock:
            self.connected = connected
            self.session_active = session_active
            if details is not None:
                self.details = details

    def heartbeat(self):
        with self._lock:
            self.last_heartbeat = self.clock()

    def _fail(self, reason: str):
        self.last_error = reason
        if self.suppress_auto_restart:
            self.state = SupervisorState.SUSPENDED
            return

        self.consecutive_failures += 1
        self._last_failure_at = self.clock()

        if self.consecutive_failures >= self.failure_threshold:
            self.suppress_auto_restart = True
            self.state = SupervisorState.SUSPENDED
            logger.warning(
                f"Workstream {self.agent_id} suspended after "
                f"{self.consecutive_failures} consecutive failures: {reason}",
                extra={
                    "agent_id": self.agent_id,
                    "consecutive_failures": self.consecutive_failures,
                },
            )
        else:
            self.state = SupervisorState.DEGRADED
            logger.info(
                f"Workstream {self.agent_id} degraded "
                f"({self.consecutive_failures}/{self.failure_threshold}): {reason}",
                extra={"agent_id": self.agent_id},
            )

    # ── Suppression ─────────────────────────────────────────────────────

    def suppress(self, reason: str = POLICY_SUPPRESSION_REASON):
        """Stop automatic restarts until a manual restart or new instruction."""
        with self._lock:
            self.suppress_auto_restart = True
            self.last_error = reason
            if self.state is not SupervisorState.STOPPED:
                self.state = SupervisorState.SUSPENDED

    def should_auto_restart(self) -> bool:
        with self._lock:
            return not self.suppress_auto_restart and self.state is not SupervisorState.STOPPED

    def reset(self):
        """Clear the failure streak and suppression (manual restart)."""
        with self._lock:
            self.consecutive_failures = 0
            self.suppress_auto_restart = False
            self.last_error = None
            self._last_failure_at = None

    def record_success(self) -> AdapterHealth:
        """A new instruction was delivered: clear the streak and go healthy."""
        with self._lock:
            self.reset()
            self.state = SupervisorState.HEALTHY
            self.last_heartbeat = self.clock()
            return self.snapshot()

    # ── Reporting ───────────────────────────────────────────────────────

    def backoff_seconds(self, failures: int | None = None) -> int:
        """Exponential backoff for a failure count, capped."""
        failures = self.consecutive_failures if failures is None else failures
        exponent = max(failures - 1, 0)
        # Cap the exponent too; 2**n for a long streak is pointless to compute
        exponent = min(exponent, 16)
        return min(self.backoff_cap_seconds, self.backoff_base_seconds * 2**exponent)

    def retry_after_seconds(self) -> int | None:
        """Remaining backoff while suspended after a failure streak, else None."""
        with self._lock:
            if self.state is not SupervisorState.SUSPENDED or self._last_failure_at is None:
                return None
            if self.consecutive_failures < self.failure_threshold:
                return None
            elapsed = (self.clock() - self._last_failure_at).total_seconds()
            remaining = self.backoff_seconds() - elapsed
            if remaining <= 0:
                return None
            return math.ceil(remaining)

    @property
    def is_escalated(self) -> bool:
        """Suspended because the failure streak reached the threshold."""
        with self._lock:
            return (
                self.state is SupervisorState.SUSPENDED
                and self.consecutive_failures >= self.failure_threshold
            )

    def snapshot(self) -> AdapterHealth:
        with self._lock:
            return AdapterHealth(
                connected=self.connected,
                session_active=self.session_active,
                last_heartbeat=self.last_heartbeat,
                details=self.details,
                last_error=self.last_error,
                consecutive_failures=self.consecutive_failures,
                retry_after_seconds=self.retry_after_seconds(),
                suppress_auto_restart=self.suppress_auto_restart,
                state=self.state,
            )
