"""Shared fixtures for workstreams tests."""

from datetime import UTC, datetime, timedelta

import pytest

from workstreams.models import Agent, AgentKind, MessageKind
from workstreams.settings import WorkstreamSettings
from workstreams.store import WorkstreamStore
from workstreams.supervisor import HealthSupervisor


class FakeClock:
    """Manually advanced clock; every call returns a strictly later time."""

    def __init__(self, start: datetime | None = None, step: timedelta = timedelta(milliseconds=1)):
        self.now = start or datetime(2025, 1, 15, 10, 0, 0, tzinfo=UTC)
        self.step = step

    def __call__(self) -> datetime:
        current = self.now
        self.now = self.now + self.step
        return current

    def advance(self, seconds: float):
        self.now = self.now + timedelta(seconds=seconds)


class SinkRecorder:
    """Collects ``(kind, content, metadata)`` tuples published by an adapter."""

    def __init__(self):
        self.messages: list[tuple[MessageKind, str, dict | None]] = []

    def __call__(self, kind, content, metadata=None):
        self.messages.append((kind, content, metadata))

    def kinds(self) -> list[MessageKind]:
        return [kind for kind, _, _ in self.messages]

    def contents(self, kind: MessageKind | None = None) -> list[str]:
        return [c for k, c, _ in self.messages if kind is None or k is kind]


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def store():
    """In-memory store, closed after the test."""
    s = WorkstreamStore(":memory:")
    yield s
    s.close()


@pytest.fixture
def agent(store) -> Agent:
    """A registered mock workstream."""
    a = Agent.new("Test agent", "project-1", AgentKind.MOCK)
    store.create_agent(a)
    return a


@pytest.fixture
def supervisor(clock) -> HealthSupervisor:
    return HealthSupervisor("agent-1", failure_threshold=3, clock=clock)


@pytest.fixture
def sink() -> SinkRecorder:
    return SinkRecorder()


@pytest.fixture
def settings() -> WorkstreamSettings:
    """Fast settings for tests: no background polling, short timeouts."""
    return WorkstreamSettings(
        database_path=":memory:",
        poll_timeout_seconds=2.0,
        health_poll_interval_seconds=0,
        keystroke_delay=0,
        mock_heartbeat_every=0,
    )
