"""
Run Controller - Public entry point for executing a compiled graph.

GraphRunner validates the initial state, creates a Run with its own
state container, and drives the GraphExecutor until the run terminates
or fails. Failures come back as data: a RunResult carries the final
state (or the last consistent state before the failure) and a RunError.

Example:
    runner = GraphRunner(graph)
    result = runner.run({"question": "..."}, run_config={"model": "small"})
    if result.success:
        print(result.state["answer"])

    state, error = result  # tuple-style unpacking also works
"""

import asyncio
import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from weft.config import ExecutionConfig
from weft.graph.edge import GraphSpec
from weft.graph.errors import (
    Cancelled,
    CheckpointError,
    DeadlineExceeded,
    GraphValidationError,
    JoinMismatchError,
    NodeExecutionError,
    ReducerError,
    RoutingError,
    StateError,
    StepLimitError,
    TypeMismatchError,
    UnknownFieldError,
    WeftError,
)
from weft.graph.executor import GraphExecutor
from weft.graph.run import CancellationToken, Run, RunStatus
from weft.graph.state import StateContainer
from weft.observability import get_trace_context
from weft.observability.logging import trace_context
from weft.runtime.event_bus import EventBus
from weft.storage.checkpoint_hook import CheckpointCallable, CheckpointHook

logger = logging.getLogger(__name__)


class FailureKind(StrEnum):
    """Category of a failed run."""

    UNKNOWN_FIELD = "unknown_field"
    TYPE_MISMATCH = "type_mismatch"
    REDUCER = "reducer"
    ROUTING = "routing"
    NODE_EXECUTION = "node_execution"
    JOIN_MISMATCH = "join_mismatch"
    STEP_LIMIT = "step_limit"
    CHECKPOINT = "checkpoint"
    CANCELLED = "cancelled"
    DEADLINE_EXCEEDED = "deadline_exceeded"
    VALIDATION = "validation"


_KIND_BY_TYPE: list[tuple[type[WeftError], FailureKind]] = [
    (UnknownFieldError, FailureKind.UNKNOWN_FIELD),
    (TypeMismatchError, FailureKind.TYPE_MISMATCH),
    (ReducerError, FailureKind.REDUCER),
    (RoutingError, FailureKind.ROUTING),
    (NodeExecutionError, FailureKind.NODE_EXECUTION),
    (JoinMismatchError, FailureKind.JOIN_MISMATCH),
    (StepLimitError, FailureKind.STEP_LIMIT),
    (CheckpointError, FailureKind.CHECKPOINT),
    (Cancelled, FailureKind.CANCELLED),
    (DeadlineExceeded, FailureKind.DEADLINE_EXCEEDED),
    (GraphValidationError, FailureKind.VALIDATION),
]


@dataclass
class RunError:
    """Structured description of why a run failed."""

    kind: FailureKind
    message: str
    node: str | None = None
    exception: WeftError | None = None

    @property
    def interrupted(self) -> bool:
        """True for cooperative stops rather than defects."""
        return self.kind in (FailureKind.CANCELLED, FailureKind.DEADLINE_EXCEEDED)

    @classmethod
    def from_exception(cls, error: WeftError) -> "RunError":
        kind = next(
            (k for t, k in _KIND_BY_TYPE if isinstance(error, t)), FailureKind.NODE_EXECUTION
        )
        node = getattr(error, "node", None)
        if node is None and isinstance(error, StateError | RoutingError):
            node = error.source
        return cls(kind=kind, message=str(error), node=node, exception=error)


@dataclass
class RunResult:
    """Outcome of one run: the final state and, on failure, the error."""

    state: dict[str, Any]
    error: RunError | None = None
    run_id: str = ""
    steps: int = 0
    path: list[str] = field(default_factory=list)
    node_visit_counts: dict[str, int] = field(default_factory=dict)
    state_version: int = 0

    @property
    def success(self) -> bool:
        return self.error is None

    def raise_for_error(self) -> None:
        """Re-raise the underlying exception if the run failed."""
        if self.error is not None and self.error.exception is not None:
            raise self.error.exception

    def __iter__(self):
        yield self.state
        yield self.error


class RunHandle:
    """
    Cancellation handle for a run.

    Create one before starting the run and call cancel() from any thread
    or task. A handle drives at most one run.
    """

    def __init__(self):
        self.token = CancellationToken()
        self._run: Run | None = None

    def attach(self, run: Run) -> None:
        if self._run is not None:
            raise RuntimeError("RunHandle is already attached to a run")
        self._run = run

    def cancel(self, reason: str = "cancelled by caller") -> None:
        self.token.cancel(reason)

    @property
    def cancelled(self) -> bool:
        return self.token.cancelled

    @property
    def run_id(self) -> str | None:
        return self._run.run_id if self._run else None

    @property
    def status(self) -> RunStatus | None:
        return self._run.status if self._run else None


def _cancel_remaining_tasks(loop: asyncio.AbstractEventLoop) -> None:
    pending = asyncio.all_tasks(loop)
    if not pending:
        return
    for task in pending:
        task.cancel()
    loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))


class GraphRunner:
    """
    Runs a compiled graph.

    A runner is reusable and safe to share: every call to run()/arun()
    gets its own Run and state container, so concurrent runs over the
    same graph never see each other's state.
    """

    def __init__(
        self,
        graph: GraphSpec,
        event_bus: EventBus | None = None,
        checkpoint_hook: CheckpointHook | CheckpointCallable | None = None,
        config: ExecutionConfig | None = None,
    ):
        self.graph = graph
        self.config = config or ExecutionConfig.load()
        self._executor = GraphExecutor(event_bus=event_bus, checkpoint_hook=checkpoint_hook)

    def run(
        self,
        initial_state: dict[str, Any] | None = None,
        run_config: Any = None,
        **kwargs: Any,
    ) -> RunResult:
        """
        Synchronous wrapper around arun(). Must not be called from a running event loop.

        Plain function nodes run on a thread pool owned by this call. When a
        deadline or cancellation abandons a node that is still blocking its
        worker thread, run() returns without joining that thread.
        """
        try:
            asyncio.get_running_loop()
        except RuntimeError:
            pass
        else:
            raise RuntimeError("GraphRunner.run() cannot be called from a running event loop")

        loop = asyncio.new_event_loop()
        pool = ThreadPoolExecutor(thread_name_prefix="weft-node")
        loop.set_default_executor(pool)
        try:
            return loop.run_until_complete(self.arun(initial_state, run_config, **kwargs))
        finally:
            try:
                _cancel_remaining_tasks(loop)
                loop.run_until_complete(loop.shutdown_asyncgens())
            finally:
                pool.shutdown(wait=False, cancel_futures=True)
                loop.close()

    async def arun(
        self,
        initial_state: dict[str, Any] | None = None,
        run_config: Any = None,
        *,
        handle: RunHandle | None = None,
        max_steps: int | None = None,
        run_timeout: float | None = None,
        node_timeout: float | None = None,
        max_concurrency: int | None = None,
    ) -> RunResult:
        """
        Execute the graph from its entry node.

        Args:
            initial_state: Values for declared fields; the rest take defaults
            run_config: Opaque value passed unchanged to every node
            handle: Cancellation handle for this run
            max_steps: Superstep limit (defaults to the configured limit)
            run_timeout: Deadline for the whole run in seconds
            node_timeout: Default deadline for each node invocation
            max_concurrency: Cap on tasks of one batch running at once

        Returns:
            RunResult; never raises for engine errors
        """
        max_steps = max_steps if max_steps is not None else self.config.max_steps
        run_timeout = run_timeout if run_timeout is not None else self.config.run_timeout
        node_timeout = node_timeout if node_timeout is not None else self.config.node_timeout
        if max_concurrency is None:
            max_concurrency = self.config.max_concurrency

        try:
            container = StateContainer(self.graph.state_schema, initial_state)
        except StateError as e:
            logger.error(f"Initial state rejected: {e}")
            return RunResult(state=dict(initial_state or {}), error=RunError.from_exception(e))

        run = Run(graph_id=self.graph.id, state=container)
        handle = handle or RunHandle()
        handle.attach(run)
        token = handle.token
        token.bind(asyncio.get_running_loop())

        context_token = trace_context.set(
            {**get_trace_context(), "run_id": run.run_id, "graph_id": self.graph.id}
        )

        deadline = None
        if run_timeout is not None:
            deadline = asyncio.get_running_loop().call_later(
                run_timeout, token.expire, "run", run_timeout
            )

        error: RunError | None = None
        try:
            await self._executor.execute(
                self.graph,
                run,
                run_config=run_config,
                token=token,
                max_steps=max_steps,
                node_timeout=node_timeout,
                max_concurrency=max_concurrency,
            )
        except WeftError as e:
            error = RunError.from_exception(e)
        finally:
            if deadline is not None:
                deadline.cancel()
            trace_context.reset(context_token)

        if error is not None:
            logger.warning(f"Run {run.run_id[:8]} ended with {error.kind}: {error.message}")

        return RunResult(
            state=run.state.snapshot(),
            error=error,
            run_id=run.run_id,
            steps=run.step,
            path=list(run.path),
            node_visit_counts=dict(run.node_visit_counts),
            state_version=run.state.version,
        )
