"""Graph structures: State, Nodes, Edges, and the superstep Executor."""

from weft.graph.builder import GraphBuilder
from weft.graph.edge import END, EdgeKind, EdgeSpec, GraphSpec
from weft.graph.errors import (
    Cancelled,
    CheckpointError,
    DeadlineExceeded,
    GraphValidationError,
    JoinMismatchError,
    NodeExecutionError,
    ReducerError,
    RoutingError,
    RunInterrupted,
    StateError,
    StepLimitError,
    TypeMismatchError,
    UnknownFieldError,
    WeftError,
)
from weft.graph.executor import GraphExecutor
from weft.graph.node import (
    NodeProtocol,
    NodeRegistry,
    NodeResult,
    NodeSpec,
    Send,
    cancellation_requested,
)
from weft.graph.reducers import append, append_unique, merge_dicts, replace
from weft.graph.resolver import EdgeResolver, Step
from weft.graph.run import CancellationToken, JoinBarrier, Run, RunStatus
from weft.graph.state import StateContainer, StateField, StateSchema

__all__ = [
    # State
    "StateField",
    "StateSchema",
    "StateContainer",
    # Reducers
    "replace",
    "append",
    "append_unique",
    "merge_dicts",
    # Node
    "NodeSpec",
    "NodeResult",
    "NodeProtocol",
    "NodeRegistry",
    "Send",
    "cancellation_requested",
    # Edge
    "END",
    "EdgeKind",
    "EdgeSpec",
    "GraphSpec",
    "GraphBuilder",
    # Execution
    "EdgeResolver",
    "Step",
    "GraphExecutor",
    "Run",
    "RunStatus",
    "JoinBarrier",
    "CancellationToken",
    # Errors
    "WeftError",
    "GraphValidationError",
    "StateError",
    "UnknownFieldError",
    "TypeMismatchError",
    "ReducerError",
    "RoutingError",
    "NodeExecutionError",
    "JoinMismatchError",
    "StepLimitError",
    "CheckpointError",
    "RunInterrupted",
    "Cancelled",
    "DeadlineExceeded",
]
