import json

import pytest
from pydantic import ValidationError

from opendev_agent.models import (
    ExecutionStatus,
    SandboxLimits,
    ToolApprovalSettings,
    can_transition,
)


def test_approval_defaults_gate_mutations_only():
    settings = ToolApprovalSettings()
    assert settings.requires_approval("readFile") is False
    assert settings.requires_approval("listDirectory") is False
    for name in ("writeFile", "editFile", "deleteFile", "executeCommand", "completeTask"):
        assert settings.requires_approval(name) is True


def test_approval_unknown_tool_is_gated():
    assert ToolApprovalSettings().requires_approval("formatDisk") is True


def test_approval_parse_stored_overlays_known_keys():
    raw = json.dumps({"writeFile": False, "somethingElse": False})
    settings = ToolApprovalSettings.parse_stored(raw)
    assert settings.requires_approval("writeFile") is False
    assert settings.requires_approval("editFile") is True
    assert "somethingElse" not in settings.to_wire()


@pytest.mark.parametrize("raw", ["not json", "[1, 2]", '{"writeFile": "maybe"}'])
def test_approval_parse_stored_falls_back_on_bad_input(raw):
    assert ToolApprovalSettings.parse_stored(raw) == ToolApprovalSettings()


def test_limits_parse_stored_merges_partial_overrides():
    limits = SandboxLimits.parse_stored('{"maxSteps": 5}')
    assert limits.max_steps == 5
    assert limits.max_tokens == 100000
    assert limits.max_execution_time_seconds == 300


def test_limits_parse_stored_uses_given_defaults():
    defaults = SandboxLimits(max_commands=3)
    assert SandboxLimits.parse_stored(None, defaults=defaults).max_commands == 3
    assert SandboxLimits.parse_stored("{broken", defaults=defaults).max_commands == 3


def test_limits_reject_negative_values():
    with pytest.raises(ValidationError):
        SandboxLimits.model_validate({"maxSteps": -1})
    assert SandboxLimits.parse_stored('{"maxSteps": -1}') == SandboxLimits()


def test_limits_wire_names():
    assert SandboxLimits().to_wire() == {
        "maxExecutionTimeSeconds": 300,
        "maxTokens": 100000,
        "maxFileOperations": 50,
        "maxCommands": 10,
        "maxFileSizeBytes": 1048576,
        "maxSteps": 20,
    }


def test_transition_table():
    assert can_transition(ExecutionStatus.PENDING, ExecutionStatus.ANALYZING)
    assert can_transition(ExecutionStatus.ANALYZING, ExecutionStatus.AWAITING_QUESTION)
    assert can_transition(ExecutionStatus.AWAITING_QUESTION, ExecutionStatus.ANALYZING)
    assert can_transition(ExecutionStatus.AWAITING_QUESTION, ExecutionStatus.FAILED)
    assert can_transition(ExecutionStatus.AWAITING_APPROVAL, ExecutionStatus.EXECUTING)
    assert not can_transition(ExecutionStatus.PENDING, ExecutionStatus.EXECUTING)
    assert not can_transition(ExecutionStatus.COMPLETED, ExecutionStatus.ANALYZING)


def test_cancel_allowed_until_completed_or_failed():
    for status in ExecutionStatus:
        expected = status not in (ExecutionStatus.COMPLETED, ExecutionStatus.FAILED)
        assert can_transition(status, ExecutionStatus.CANCELLED) is expected
