"""Conductor exception hierarchy.

All conductor-specific exceptions inherit from ConductorError,
enabling structured error handling and cleaner catch clauses.
Tool failures carry a ToolErrorKind so the invocation pipeline can
surface them to the model as error results instead of raising.
"""

from enum import StrEnum


class ToolErrorKind(StrEnum):
    UNKNOWN_TOOL = "unknown_tool"
    INVALID_ARGUMENTS = "invalid_arguments"
    EXECUTION_FAILURE = "execution_failure"
    SANDBOX_VIOLATION = "sandbox_violation"
    DEPTH_EXCEEDED = "depth_exceeded"
    TIMEOUT = "timeout"
    DENIED = "denied"
    DELEGATION_REJECTED = "delegation_rejected"


class ConductorError(Exception):
    """Base exception for all conductor errors."""

    def __init__(self, message: str = "", *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class ProviderError(ConductorError):
    """Error communicating with the model client. Fatal for a run."""

    def __init__(self, message: str = "", *, retryable: bool = True) -> None:
        super().__init__(message, retryable=retryable)


class ToolError(ConductorError):
    """Error executing a tool."""

    kind: ToolErrorKind = ToolErrorKind.EXECUTION_FAILURE

    def __init__(
        self,
        message: str = "",
        *,
        kind: ToolErrorKind | None = None,
        retryable: bool = False,
    ) -> None:
        super().__init__(message, retryable=retryable)
        if kind is not None:
            self.kind = kind


class UnknownToolError(ToolError):
    kind = ToolErrorKind.UNKNOWN_TOOL


class InvalidArgumentsError(ToolError):
    kind = ToolErrorKind.INVALID_ARGUMENTS


class SandboxViolation(ToolError):
    """Operation rejected by a sandbox pattern or path rule."""

    kind = ToolErrorKind.SANDBOX_VIOLATION

    def __init__(self, message: str = "", *, rule: str = "") -> None:
        super().__init__(message)
        self.rule = rule


class ToolTimeout(ToolError):
    kind = ToolErrorKind.TIMEOUT

    def __init__(self, message: str = "", *, retryable: bool = True) -> None:
        super().__init__(message, retryable=retryable)


class ToolDenied(ToolError):
    """Tool call vetoed by an approval hook."""

    kind = ToolErrorKind.DENIED


class DelegationError(ToolError):
    """Delegation rejected or failed."""

    kind = ToolErrorKind.DELEGATION_REJECTED


class DepthExceeded(DelegationError):
    kind = ToolErrorKind.DEPTH_EXCEEDED

    def __init__(self, depth: int, max_depth: int) -> None:
        super().__init__(
            f"Maximum delegation depth ({max_depth}) reached at depth {depth}. "
            "Complete the task directly instead of delegating further."
        )
        self.depth = depth
        self.max_depth = max_depth


class ConfigError(ConductorError):
    """Invalid or missing configuration."""
