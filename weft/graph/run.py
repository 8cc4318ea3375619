"""
Run - One execution of a graph from entry to exhaustion.

A Run owns its StateContainer exclusively. The scheduler drives its
status through READY -> RUNNING -> MERGING -> READY ... and finally to
TERMINAL or FAILED.
"""

import asyncio
import logging
import threading
import uuid
from dataclasses import dataclass, field
from enum import StrEnum
from typing import Any

from weft.graph.errors import Cancelled, DeadlineExceeded, JoinMismatchError, RunInterrupted
from weft.graph.resolver import Step
from weft.graph.state import StateContainer

logger = logging.getLogger(__name__)


class CancellationToken:
    """
    Cooperative stop signal for one run.

    Safe to trigger from any thread. The first trigger wins: a run that
    was cancelled keeps its Cancelled reason even if a deadline expires
    afterwards.
    """

    def __init__(self):
        self._flag = threading.Event()
        self._lock = threading.Lock()
        self._error: RunInterrupted | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._event: asyncio.Event | None = None

    @property
    def bound(self) -> bool:
        return self._loop is not None

    def bind(self, loop: asyncio.AbstractEventLoop) -> None:
        """Attach to the event loop that runs the scheduler."""
        with self._lock:
            self._loop = loop
            self._event = asyncio.Event()
            if self._flag.is_set():
                self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._flag.is_set()

    @property
    def error(self) -> RunInterrupted | None:
        return self._error

    def cancel(self, reason: str = "cancelled") -> None:
        self._trigger(Cancelled(reason))

    def expire(self, scope: str, timeout: float) -> None:
        self._trigger(DeadlineExceeded(scope, timeout))

    def _trigger(self, error: RunInterrupted) -> None:
        with self._lock:
            if self._flag.is_set():
                return
            self._error = error
            self._flag.set()
            loop, event = self._loop, self._event
        logger.info(f"Stop requested: {error}")
        if loop is not None and event is not None and not loop.is_closed():
            loop.call_soon_threadsafe(event.set)

    async def wait(self) -> None:
        if self._event is None:
            raise RuntimeError("CancellationToken is not bound to an event loop")
        await self._event.wait()

    def raise_if_cancelled(self) -> None:
        if self._error is not None:
            raise self._error


class RunStatus(StrEnum):
    """Scheduler state of a run."""

    READY = "ready"  # Steps queued
    RUNNING = "running"  # Invocations in flight
    MERGING = "merging"  # Folding finished results into state
    TERMINAL = "terminal"  # No further steps
    FAILED = "failed"  # Unrecoverable error, cancellation, or deadline


class JoinBarrier:
    """
    Counting barrier for one batch of concurrently running steps.

    Each task reports exactly once with its dispatch index. Results are
    released in dispatch order, and only once every task has reported.
    """

    def __init__(self, batch_id: str, expected: int):
        if expected < 1:
            raise JoinMismatchError(batch_id, f"expected count must be positive, got {expected}")
        self.batch_id = batch_id
        self.expected = expected
        self._results: dict[int, Any] = {}

    @property
    def received(self) -> int:
        return len(self._results)

    @property
    def complete(self) -> bool:
        return self.received == self.expected

    def arrive(self, index: int, result: Any) -> None:
        """
        Record the completion of task ``index``.

        Raises:
            JoinMismatchError: index out of range or reported twice
        """
        if not 0 <= index < self.expected:
            raise JoinMismatchError(
                self.batch_id, f"index {index} outside batch of {self.expected}"
            )
        if index in self._results:
            raise JoinMismatchError(self.batch_id, f"duplicate completion for index {index}")
        self._results[index] = result

    def ordered_results(self) -> list[Any]:
        """
        Results in dispatch order.

        Raises:
            JoinMismatchError: not every task has reported
        """
        if not self.complete:
            raise JoinMismatchError(
                self.batch_id, f"received {self.received} of {self.expected} completions"
            )
        return [self._results[i] for i in range(self.expected)]


@dataclass
class Run:
    """Live bookkeeping for one execution."""

    graph_id: str
    state: StateContainer
    run_id: str = field(default_factory=lambda: uuid.uuid4().hex)
    status: RunStatus = RunStatus.READY
    step: int = 0
    pending: list[Step] = field(default_factory=list)
    active_batch: JoinBarrier | None = None
    path: list[str] = field(default_factory=list)
    node_visit_counts: dict[str, int] = field(default_factory=dict)

    @property
    def terminal(self) -> bool:
        return self.status == RunStatus.TERMINAL

    def open_batch(self, size: int) -> JoinBarrier:
        """
        Open the join barrier for the current step.

        Raises:
            JoinMismatchError: a batch is already active
        """
        if self.active_batch is not None:
            raise JoinMismatchError(
                self.active_batch.batch_id, "a new batch was opened before the join completed"
            )
        self.active_batch = JoinBarrier(f"{self.run_id[:8]}-{self.step}", size)
        return self.active_batch

    def close_batch(self) -> None:
        self.active_batch = None

    def record_visit(self, node_id: str) -> int:
        count = self.node_visit_counts.get(node_id, 0) + 1
        self.node_visit_counts[node_id] = count
        self.path.append(node_id)
        return count
