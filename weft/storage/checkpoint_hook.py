"""
Persistence extension point.

After every successful merge the executor hands the new state to a
checkpoint hook. Two shapes are accepted:

- a plain callable ``hook(run_id, step, state)`` (sync or async)
- a CheckpointHook object, which receives a full Checkpoint

No storage backend ships with the engine. InMemoryCheckpointer keeps
checkpoints in a list for diagnostics and tests.
"""

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Awaitable, Callable
from typing import Any

from weft.schemas.checkpoint import Checkpoint, CheckpointSummary

logger = logging.getLogger(__name__)

CheckpointCallable = Callable[[str, int, dict[str, Any]], Awaitable[None] | None]


class CheckpointHook(ABC):
    """Receives a Checkpoint after every successful merge."""

    @abstractmethod
    async def save(self, checkpoint: Checkpoint) -> None:
        """Persist or record the checkpoint. Exceptions fail the run."""


class InMemoryCheckpointer(CheckpointHook):
    """Keeps every checkpoint in memory, grouped by run."""

    def __init__(self):
        self._checkpoints: dict[str, list[Checkpoint]] = {}
        self._lock = asyncio.Lock()

    async def save(self, checkpoint: Checkpoint) -> None:
        async with self._lock:
            self._checkpoints.setdefault(checkpoint.run_id, []).append(checkpoint)
        logger.debug(f"Recorded checkpoint {checkpoint.checkpoint_id}")

    def get_checkpoints(self, run_id: str) -> list[Checkpoint]:
        return list(self._checkpoints.get(run_id, []))

    def latest(self, run_id: str) -> Checkpoint | None:
        checkpoints = self._checkpoints.get(run_id)
        return checkpoints[-1] if checkpoints else None

    def list_checkpoints(self, run_id: str | None = None) -> list[CheckpointSummary]:
        runs = [run_id] if run_id else list(self._checkpoints)
        return [
            CheckpointSummary.from_checkpoint(cp)
            for rid in runs
            for cp in self._checkpoints.get(rid, [])
        ]

    def clear(self, run_id: str | None = None) -> None:
        if run_id is None:
            self._checkpoints.clear()
        else:
            self._checkpoints.pop(run_id, None)


async def deliver_checkpoint(
    hook: CheckpointHook | CheckpointCallable, checkpoint: Checkpoint
) -> None:
    """Send a checkpoint to whichever hook shape the caller supplied."""
    if isinstance(hook, CheckpointHook):
        await hook.save(checkpoint)
        return
    result = hook(checkpoint.run_id, checkpoint.step, checkpoint.state)
    if inspect.isawaitable(result):
        await result
