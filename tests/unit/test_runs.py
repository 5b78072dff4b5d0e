"""Unit tests for the run ledger."""

import pytest

from workstreams.models import FileChange, FileChangeType, RunStatus
from workstreams.runs import RunLedger, summarize_instruction


@pytest.fixture
def ledger(store, clock):
    return RunLedger(store, clock)


class TestSummarizeInstruction:
    def test_short_instruction(self):
        assert summarize_instruction("  fix the tests ") == "Running: fix the tests"

    def test_blank_instruction(self):
        assert summarize_instruction("   ") == "Running instruction"

    def test_long_instruction_is_clipped(self):
        summary = summarize_instruction("x" * 200)
        assert summary == "Running: " + "x" * 96 + "..."


class TestInstructionRuns:
    def test_opens_run_with_instruction_output(self, ledger, agent):
        run = ledger.start_instruction_run(agent.id, "write docs")
        assert run.status is RunStatus.IN_PROGRESS
        assert run.summary == "Running: write docs"
        assert [(o.kind, o.content) for o in run.outputs] == [("instruction", "write docs")]

    def test_reuses_active_run(self, ledger, agent):
        first = ledger.start_instruction_run(agent.id, "one")
        second = ledger.start_instruction_run(agent.id, "two")
        assert second.id == first.id
        assert second.summary == "Running: two"
        assert len(second.outputs) == 2

    def test_new_run_after_finalize(self, ledger, agent):
        first = ledger.start_instruction_run(agent.id, "one")
        ledger.finalize_latest_run(agent.id, RunStatus.COMPLETED)
        second = ledger.start_instruction_run(agent.id, "two")
        assert second.id != first.id
        assert len(ledger.list_runs(agent.id)) == 2


class TestOutputs:
    def test_output_without_run_opens_agent_activity(self, ledger, agent):
        run = ledger.append_run_output(agent.id, "output", "hello")
        assert run.summary == "Agent activity"
        assert run.is_active

    def test_output_appends_to_active_run(self, ledger, agent):
        started = ledger.start_instruction_run(agent.id, "go")
        run = ledger.append_run_output(agent.id, "output", "went")
        assert run.id == started.id
        assert run.summary == "Running: go"
        assert [o.kind for o in ledger.latest_run(agent.id).outputs] == ["instruction", "output"]


class TestFinalize:
    def test_closes_active_run(self, ledger, agent):
        ledger.start_instruction_run(agent.id, "go")
        run = ledger.finalize_latest_run(agent.id, RunStatus.FAILED, "Cancelled by operator")
        assert run.status is RunStatus.FAILED
        assert run.ended_at is not None
        assert run.summary == "Cancelled by operator"

    def test_blank_summary_keeps_previous(self, ledger, agent):
        ledger.start_instruction_run(agent.id, "go")
        run = ledger.finalize_latest_run(agent.id, RunStatus.COMPLETED, "  ")
        assert run.summary == "Running: go"

    def test_closed_run_is_not_touched_again(self, ledger, agent):
        ledger.start_instruction_run(agent.id, "go")
        first = ledger.finalize_latest_run(agent.id, RunStatus.COMPLETED, "done")
        second = ledger.finalize_latest_run(agent.id, RunStatus.FAILED, "late error")
        assert second.id == first.id
        assert second.status is RunStatus.COMPLETED
        assert second.summary == "done"

    def test_without_any_run_creates_closed_run(self, ledger, agent):
        run = ledger.finalize_latest_run(agent.id, RunStatus.NEEDS_REVIEW, "Paused by operator")
        assert run.status is RunStatus.NEEDS_REVIEW
        assert run.ended_at is not None
        assert ledger.latest_run(agent.id).id == run.id


class TestFileChanges:
    def test_counts_changes_in_active_run(self, ledger, agent, clock):
        ledger.start_instruction_run(agent.id, "refactor")
        ledger.record_file_change(agent.id, FileChange("a.py", FileChangeType.MODIFIED, clock()))
        run = ledger.record_file_change(agent.id, FileChange("b.py", FileChangeType.CREATED, clock()))
        assert run.summary == "2 file changes detected"
        assert [c.path for c in run.file_changes] == ["a.py", "b.py"]

    def test_change_without_run_opens_one(self, ledger, agent, clock):
        run = ledger.record_file_change(agent.id, FileChange("a.py", FileChangeType.DELETED, clock()))
        assert run.summary == "File changes detected"
        assert run.is_active
