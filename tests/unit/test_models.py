"""Unit tests for workstreams.models."""

from datetime import UTC, datetime, timedelta, timezone

import pytest

from workstreams.errors import ConfigurationError, InvalidMessage
from workstreams.models import (
    AdapterConfig,
    AdapterType,
    Agent,
    AgentKind,
    Message,
    MessageDirection,
    MessageKind,
    RestartPolicy,
    Run,
    RunOutput,
    RunStatus,
    format_timestamp,
    new_message_id,
    parse_timestamp,
)


class TestTimestamps:
    def test_format_is_fixed_width_utc(self):
        ts = datetime(2025, 1, 2, 3, 4, 5, tzinfo=UTC)
        assert format_timestamp(ts) == "2025-01-02T03:04:05.000000Z"

    def test_format_converts_other_timezones(self):
        ts = datetime(2025, 1, 2, 5, 0, 0, tzinfo=timezone(timedelta(hours=2)))
        assert format_timestamp(ts) == "2025-01-02T03:00:00.000000Z"

    def test_string_order_matches_time_order(self):
        base = datetime(2025, 1, 1, tzinfo=UTC)
        times = [base + timedelta(microseconds=n) for n in (1, 10, 999_999, 1_000_000)]
        rendered = [format_timestamp(t) for t in times]
        assert rendered == sorted(rendered)

    def test_parse_accepts_z_suffix_and_naive(self):
        assert parse_timestamp("2025-01-02T03:04:05.000000Z") == datetime(
            2025, 1, 2, 3, 4, 5, tzinfo=UTC
        )
        assert parse_timestamp("2025-01-02T03:04:05").tzinfo is not None

    def test_parse_rejects_garbage(self):
        with pytest.raises(ValueError):
            parse_timestamp("yesterday")


def test_message_ids_strictly_increase():
    ids = [new_message_id() for _ in range(500)]
    assert ids == sorted(ids)
    assert len(set(ids)) == len(ids)


class TestMessageKind:
    def test_parse_is_case_insensitive(self):
        assert MessageKind.parse(" Instruction ") is MessageKind.INSTRUCTION

    def test_parse_unknown_kind(self):
        with pytest.raises(InvalidMessage, match="Unknown message kind"):
            MessageKind.parse("shout")

    def test_control_kinds(self):
        assert MessageKind.PAUSE.is_control
        assert MessageKind.STATUS_REQUEST.is_control
        assert not MessageKind.INSTRUCTION.is_control
        assert not MessageKind.OUTPUT.is_control


class TestAdapterType:
    @pytest.mark.parametrize(
        "raw,expected",
        [
            ("mock", AdapterType.MOCK),
            ("process", AdapterType.PROCESS),
            ("tmux", AdapterType.TERMINAL_SESSION),
            ("claude_code", AdapterType.TERMINAL_SESSION),
            ("webhook", AdapterType.HTTP_WEBHOOK),
            ("http-webhook", AdapterType.HTTP_WEBHOOK),
            ("codex", AdapterType.CODEX),
        ],
    )
    def test_parse(self, raw, expected):
        assert AdapterType.parse(raw) is expected

    def test_unknown_type_is_a_configuration_error(self):
        with pytest.raises(ConfigurationError):
            AdapterType.parse("carrier-pigeon")


class TestRestartPolicy:
    def test_lenient_parse(self):
        assert RestartPolicy.parse("ALWAYS") is RestartPolicy.ALWAYS
        assert RestartPolicy.parse("on-failure") is RestartPolicy.ON_FAILURE
        assert RestartPolicy.parse("sometimes") is RestartPolicy.ON_FAILURE
        assert RestartPolicy.parse(None) is RestartPolicy.ON_FAILURE

    @pytest.mark.parametrize(
        "policy,exit_code,suppressed",
        [
            (RestartPolicy.NEVER, 0, True),
            (RestartPolicy.NEVER, 1, True),
            (RestartPolicy.ON_FAILURE, 0, True),
            (RestartPolicy.ON_FAILURE, None, True),
            (RestartPolicy.ON_FAILURE, 2, False),
            (RestartPolicy.ALWAYS, 0, False),
            (RestartPolicy.ALWAYS, 1, False),
        ],
    )
    def test_should_suppress(self, policy, exit_code, suppressed):
        assert policy.should_suppress(exit_code) is suppressed


class TestAdapterConfig:
    def test_default_policy_depends_on_type(self):
        assert AdapterConfig(AdapterType.PROCESS, command="x").restart_policy is RestartPolicy.ON_FAILURE
        assert AdapterConfig(AdapterType.CODEX).restart_policy is RestartPolicy.ON_FAILURE
        assert AdapterConfig(AdapterType.MOCK).restart_policy is RestartPolicy.NEVER

    def test_legacy_env_policy_is_promoted(self):
        config = AdapterConfig.from_dict(
            {
                "adapter_type": "process",
                "command": "run.sh",
                "env": {"restart_policy": "always", "TOKEN": "abc"},
            }
        )
        assert config.restart_policy is RestartPolicy.ALWAYS
        assert config.env == {"TOKEN": "abc"}

    def test_explicit_policy_wins_over_legacy_env(self):
        config = AdapterConfig(
            AdapterType.PROCESS,
            command="run.sh",
            env={"restart_policy": "always"},
            restart_policy=RestartPolicy.NEVER,
        )
        assert config.restart_policy is RestartPolicy.NEVER
        assert "restart_policy" not in config.env

    def test_from_dict_parses_type_string(self):
        config = AdapterConfig.from_dict({"adapter_type": "tmux", "session_name": "s1"})
        assert config.adapter_type is AdapterType.TERMINAL_SESSION
        assert config.to_dict()["adapter_type"] == "terminal_session"

    def test_env_values_are_stringified(self):
        config = AdapterConfig(AdapterType.MOCK, env={"PORT": 8080})
        assert config.env == {"PORT": "8080"}


class TestMessage:
    def test_to_agent_leaves_id_unset(self):
        message = Message.to_agent("a1", MessageKind.INSTRUCTION, "hi")
        assert message.direction is MessageDirection.TO_AGENT
        assert message.id is None
        assert message.created_at is None

    def test_from_agent_pregenerates_id_and_delivery(self):
        now = datetime(2025, 1, 1, tzinfo=UTC)
        message = Message.from_agent("a1", MessageKind.OUTPUT, "done", now=now)
        assert message.direction is MessageDirection.FROM_AGENT
        assert message.id is not None
        assert message.created_at == now
        assert message.delivered_at == now

    def test_message_is_immutable(self):
        message = Message.to_agent("a1", MessageKind.INSTRUCTION, "hi")
        with pytest.raises(AttributeError):
            message.content = "changed"

    def test_to_dict(self):
        now = datetime(2025, 1, 1, tzinfo=UTC)
        data = Message.from_agent("a1", MessageKind.ERROR, "boom", {"exit_code": 1}, now=now).to_dict()
        assert data["kind"] == "error"
        assert data["direction"] == "from_agent"
        assert data["metadata"] == {"exit_code": 1}
        assert data["created_at"] == "2025-01-01T00:00:00.000000Z"
        assert data["acknowledged_at"] is None


def test_agent_new_defaults():
    agent = Agent.new("Writer", "proj", AgentKind.PROCESS)
    data = agent.to_dict()
    assert data["status"] == "idle"
    assert data["kind"] == "process"
    assert data["config"]["autonomy_level"] == "supervised"


def test_run_is_active_only_while_in_progress():
    run = Run(id="r1", agent_id="a1")
    assert run.is_active
    run.status = RunStatus.COMPLETED
    assert not run.is_active


def test_run_output_from_dict():
    output = RunOutput.from_dict(
        {"kind": "output", "content": "x", "timestamp": "2025-01-01T00:00:00.000000Z"}
    )
    assert output.timestamp == datetime(2025, 1, 1, tzinfo=UTC)
