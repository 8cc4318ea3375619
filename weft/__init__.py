"""
weft - A stateful workflow graph orchestrator.

Build a graph of nodes over a typed shared state, then run it:

    schema = StateSchema({"messages": StateField(list[str], reducer=append)})
    builder = GraphBuilder(schema)
    builder.add_node("greet", lambda state: {"messages": ["hello"]})
    builder.chain("greet")
    result = GraphRunner(builder.compile()).run()
"""

from weft.config import ExecutionConfig
from weft.graph import (
    END,
    GraphBuilder,
    GraphSpec,
    NodeResult,
    Send,
    StateField,
    StateSchema,
    WeftError,
    append,
    append_unique,
    cancellation_requested,
    merge_dicts,
    replace,
)
from weft.runtime.controller import FailureKind, GraphRunner, RunError, RunHandle, RunResult
from weft.runtime.event_bus import EventBus, EventType, GraphEvent
from weft.storage.checkpoint_hook import CheckpointHook, InMemoryCheckpointer

__version__ = "0.1.0"

__all__ = [
    # Building
    "StateField",
    "StateSchema",
    "GraphBuilder",
    "GraphSpec",
    "END",
    "Send",
    "NodeResult",
    "replace",
    "append",
    "append_unique",
    "merge_dicts",
    # Running
    "GraphRunner",
    "RunHandle",
    "RunResult",
    "RunError",
    "FailureKind",
    "ExecutionConfig",
    "cancellation_requested",
    # Observability and persistence
    "EventBus",
    "EventType",
    "GraphEvent",
    "CheckpointHook",
    "InMemoryCheckpointer",
    # Errors
    "WeftError",
]
