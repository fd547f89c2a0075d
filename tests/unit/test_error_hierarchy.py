"""Tests for error hierarchy."""

from conductor.errors import (
    ConductorError,
    ConfigError,
    DelegationError,
    DepthExceeded,
    InvalidArgumentsError,
    ProviderError,
    SandboxViolation,
    ToolDenied,
    ToolError,
    ToolErrorKind,
    ToolTimeout,
    UnknownToolError,
)


def test_hierarchy() -> None:
    assert issubclass(ProviderError, ConductorError)
    assert issubclass(ToolError, ConductorError)
    assert issubclass(ConfigError, ConductorError)
    tool_errors = (UnknownToolError, InvalidArgumentsError, SandboxViolation, ToolTimeout)
    for cls in (*tool_errors, ToolDenied):
        assert issubclass(cls, ToolError)
    assert issubclass(DelegationError, ToolError)
    assert issubclass(DepthExceeded, DelegationError)


def test_retryable_default() -> None:
    assert ConductorError("test").retryable is False
    assert ProviderError("test").retryable is True
    assert ToolError("test").retryable is False
    assert ToolTimeout("test").retryable is True


def test_tool_error_kinds() -> None:
    assert ToolError("x").kind is ToolErrorKind.EXECUTION_FAILURE
    assert ToolError("x", kind=ToolErrorKind.DENIED).kind is ToolErrorKind.DENIED
    assert UnknownToolError("x").kind is ToolErrorKind.UNKNOWN_TOOL
    assert SandboxViolation("x", rule="fork bomb").kind is ToolErrorKind.SANDBOX_VIOLATION
    assert DelegationError("x").kind is ToolErrorKind.DELEGATION_REJECTED
    assert ToolErrorKind.TIMEOUT == "timeout"


def test_sandbox_violation_keeps_rule() -> None:
    err = SandboxViolation("blocked", rule="fork bomb")
    assert err.rule == "fork bomb"
    assert str(err) == "blocked"


def test_depth_exceeded_message() -> None:
    err = DepthExceeded(4, 3)
    assert err.depth == 4
    assert err.max_depth == 3
    assert err.kind is ToolErrorKind.DEPTH_EXCEEDED
    assert "Maximum delegation depth (3) reached" in str(err)
    assert "directly" in str(err)


def test_catch_as_conductor_error() -> None:
    try:
        raise DepthExceeded(2, 1)
    except ConductorError as exc:
        assert exc.retryable is False
