"""agentrt exception hierarchy.

All runtime exceptions inherit from AgentRuntimeError,
enabling structured error handling and cleaner catch clauses.
"""

from __future__ import annotations


class AgentRuntimeError(Exception):
    """Base exception for all agentrt errors."""

    def __init__(self, message: str = "", *, retryable: bool = False) -> None:
        super().__init__(message)
        self.retryable = retryable


class ParseError(AgentRuntimeError):
    """Source text does not follow the notation grammar."""

    def __init__(self, message: str = "", *, line: int = 0, column: int = 0) -> None:
        location = f"line {line}, column {column}: " if line else ""
        super().__init__(f"{location}{message}")
        self.line = line
        self.column = column


class ValidationError(AgentRuntimeError):
    """A definition or a write violates a static or declared rule."""

    def __init__(self, message: str = "", *, construct: str = "", line: int = 0) -> None:
        prefix = f"{construct}: " if construct else ""
        suffix = f" (line {line})" if line else ""
        super().__init__(f"{prefix}{message}{suffix}")
        self.construct = construct
        self.line = line


class TransitionError(ValidationError):
    """A behavior requested a transition that its state does not allow."""


class StateWriteError(ValidationError):
    """A conversation-state write names an undeclared field or mistyped value."""


class StaleStateError(AgentRuntimeError):
    """A save carried a version older than the stored one."""


class DecisionError(AgentRuntimeError):
    """A decision could not be resolved by the reasoner or any fallback."""

    def __init__(
        self,
        message: str = "",
        *,
        decision_id: str = "",
        failure: str = "invalid",
        retryable: bool | None = None,
    ) -> None:
        super().__init__(
            message,
            retryable=failure == "timeout" if retryable is None else retryable,
        )
        self.decision_id = decision_id
        self.failure = failure


EXECUTION_ERROR_KINDS = ("network", "validation", "permission", "not_found", "generic")


class ExecutionError(AgentRuntimeError):
    """A capability invocation failed."""

    def __init__(
        self,
        message: str = "",
        *,
        kind: str = "generic",
        capability: str = "",
        attempts: int = 0,
    ) -> None:
        if kind not in EXECUTION_ERROR_KINDS:
            kind = "generic"
        super().__init__(message, retryable=kind == "network")
        self.kind = kind
        self.capability = capability
        self.attempts = attempts


class ConstraintViolation(AgentRuntimeError):
    """An action hit a prohibition or left an obligation undischarged."""

    def __init__(self, message: str = "", *, rule: str = "", action: str = "") -> None:
        super().__init__(message)
        self.rule = rule
        self.action = action


class StateTimeoutError(AgentRuntimeError):
    """A state exceeded its declared dwell time."""

    def __init__(self, message: str = "", *, state: str = "", timeout: float = 0.0) -> None:
        super().__init__(message)
        self.state = state
        self.timeout = timeout


class ModuleLoadError(AgentRuntimeError):
    """A module could not be resolved, validated or merged."""


class ConfigError(AgentRuntimeError):
    """Invalid or missing configuration."""
