"""
Error taxonomy for graph execution.

Every engine error derives from WeftError so callers can catch the whole
family. Schema violations, routing errors, and node failures are fatal to
the run that raised them; RunInterrupted subclasses signal a cooperative
stop (cancellation or deadline) rather than a defect.
"""

from typing import Any


class WeftError(Exception):
    """Base class for all engine errors."""


class GraphValidationError(WeftError):
    """Raised by GraphBuilder.compile() when the graph structure is invalid."""

    def __init__(self, errors: list[str]):
        self.errors = list(errors)
        summary = "; ".join(self.errors)
        super().__init__(f"Graph validation failed ({len(self.errors)} errors): {summary}")


class StateError(WeftError):
    """A merge into the state container was rejected."""

    def __init__(self, message: str, field: str, source: str | None = None):
        super().__init__(message)
        self.field = field
        self.source = source


class UnknownFieldError(StateError):
    """An update referenced a field that the schema does not declare."""

    def __init__(self, field: str, source: str | None = None):
        super().__init__(f"Unknown state field '{field}'", field=field, source=source)


class TypeMismatchError(StateError):
    """A value did not match the declared type of its field."""

    def __init__(self, field: str, expected: Any, detail: str = "", source: str | None = None):
        expected_name = getattr(expected, "__name__", None) or repr(expected)
        message = f"Value for field '{field}' does not match declared type {expected_name}"
        if detail:
            message = f"{message}: {detail}"
        super().__init__(message, field=field, source=source)
        self.expected = expected


class ReducerError(StateError):
    """A reducer raised while combining values."""

    def __init__(self, field: str, detail: str, source: str | None = None):
        super().__init__(f"Reducer for field '{field}' failed: {detail}", field=field, source=source)


class RoutingError(WeftError):
    """A router or dispatch request named a target that was not declared."""

    def __init__(self, source: str, outcome: Any, allowed: list[str] | None = None):
        message = f"Node '{source}' routed to undeclared target {outcome!r}"
        if allowed is not None:
            message = f"{message} (declared: {sorted(allowed)})"
        super().__init__(message)
        self.source = source
        self.outcome = outcome
        self.allowed = allowed or []


class NodeExecutionError(WeftError):
    """A node executable raised or returned an error result."""

    def __init__(self, node: str, kind: str, message: str):
        super().__init__(f"Node '{node}' failed ({kind}): {message}")
        self.node = node
        self.kind = kind
        self.message = message


class JoinMismatchError(WeftError):
    """A fan-out batch's expected and received counts could not be reconciled."""

    def __init__(self, batch_id: str, detail: str):
        super().__init__(f"Join barrier for batch '{batch_id}' is inconsistent: {detail}")
        self.batch_id = batch_id


class StepLimitError(WeftError):
    """The run exceeded its step limit or a node exceeded its visit cap."""

    def __init__(self, limit: int, node: str | None = None):
        if node:
            message = f"Node '{node}' exceeded its visit limit of {limit}"
        else:
            message = f"Run exceeded the step limit of {limit}"
        super().__init__(message)
        self.limit = limit
        self.node = node


class CheckpointError(WeftError):
    """The persistence hook raised after a merge."""


class RunInterrupted(WeftError):
    """Base class for cooperative stops."""


class Cancelled(RunInterrupted):
    """The run was cancelled through its handle."""

    def __init__(self, reason: str = "cancelled"):
        super().__init__(f"Run cancelled: {reason}")
        self.reason = reason


class DeadlineExceeded(RunInterrupted):
    """A run-level or node-level deadline expired."""

    def __init__(self, scope: str, timeout: float, node: str | None = None):
        super().__init__(f"Deadline of {timeout}s exceeded for {scope}")
        self.scope = scope
        self.timeout = timeout
        self.node = node
