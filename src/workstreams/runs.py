"""Run ledger: groups workstream activity into runs for display.

Runs are never consulted by adapters or the health supervisor.
"""

import logging
import threading
import uuid
from collections.abc import Callable
from datetime import datetime

from .models import FileChange, Run, RunOutput, RunStatus, utc_now
from .store import WorkstreamStore

logger = logging.getLogger(__name__)

SUMMARY_PREVIEW_CHARS = 96


def summarize_instruction(instruction: str) -> str:
    """Build the run summary for an instruction."""
    trimmed = instruction.strip()
    if not trimmed:
        return "Running instruction"
    preview = trimmed[:SUMMARY_PREVIEW_CHARS]
    if len(trimmed) > SUMMARY_PREVIEW_CHARS:
        preview += "..."
    return f"Running: {preview}"


class RunLedger:
    """Maintains each workstream's runs on top of the store."""

    def __init__(self, store: WorkstreamStore, clock: Callable[[], datetime] = utc_now):
        self.store = store
        self.clock = clock
        # read-modify-write of a run row must not interleave
        self._lock = threading.Lock()

    def _new_run(self, agent_id: str, **kwargs) -> Run:
        return Run(id=str(uuid.uuid4()), agent_id=agent_id, started_at=self.clock(), **kwargs)

    def _ensure_in_progress(self, agent_id: str, summary: str) -> Run:
        run = self.store.get_latest_run(agent_id)
        if run is not None and run.is_active:
            return run
        run = self._new_run(agent_id, summary=summary)
        logger.debug(f"Opened run {run.id}", extra={"agent_id": agent_id, "run_id": run.id})
        return run

    def start_instruction_run(self, agent_id: str, instruction: str) -> Run:
        """Open (or reuse) the active run and record an instruction in it."""
        summary = summarize_instruction(instruction)
        with self._lock:
            run = self._ensure_in_progress(agent_id, summary)
            run.outputs.append(RunOutput("instruction", instruction, self.clock()))
            run.summary = summary
            self.store.save_run(run)
        return run

    def append_run_output(self, agent_id: str, kind: str, content: str) -> Run:
        with self._lock:
            run = self._ensure_in_progress(agent_id, "Agent activity")
            run.outputs.append(RunOutput(kind, content, self.clock()))
            if run.summary is None:
                run.summary = "Agent activity"
            self.store.save_run(run)
        return run

    def finalize_latest_run(
        self, agent_id: str, status: RunStatus, summary: str | None = None
    ) -> Run:
        """Close the active run with ``status``.

        An already closed latest run is returned untouched. With no run at
        all, a closed run is created so the outcome stays traceable.
        """
        with self._lock:
            run = self.store.get_latest_run(agent_id)
            if run is not None:
                if run.is_active:
                    run.status = status
                    run.ended_at = self.clock()
                    if summary and summary.strip():
                        run.summary = summary
                    self.store.save_run(run)
                    logger.debug(
                        f"Closed run {run.id} as {status.value}",
                        extra={"agent_id": agent_id, "run_id": run.id},
                    )
                return run

            now = self.clock()
            run = self._new_run(agent_id, status=status, ended_at=now, summary=summary)
            self.store.save_run(run)
        return run

    def record_file_change(self, agent_id: str, change: FileChange) -> Run:
        with self._lock:
            run = self.store.get_latest_run(agent_id)
            if run is not None and run.is_active:
                run.file_changes.append(change)
                run.summary = f"{len(run.file_changes)} file changes detected"
            else:
                run = self._new_run(
                    agent_id, summary="File changes detected", file_changes=[change]
                )
            self.store.save_run(run)
        return run

    def latest_run(self, agent_id: str) -> Run | None:
        return self.store.get_latest_run(agent_id)

    def list_runs(self, agent_id: str, limit: int = 20) -> list[Run]:
        return self.store.list_runs(agent_id, limit)
