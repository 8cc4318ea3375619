"""
Checkpoint Schema - State snapshots taken after every successful merge.

The engine builds a Checkpoint after each merge and hands it to the
persistence hook. Snapshots are for diagnostics and external stores; the
engine itself never resumes from them.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field


class Checkpoint(BaseModel):
    """Snapshot of a run's state at one step."""

    checkpoint_id: str  # Format: cp_{run_id}_{step}
    run_id: str
    graph_id: str
    step: int
    state_version: int

    created_at: str  # ISO 8601 format

    state: dict[str, Any] = Field(default_factory=dict)
    execution_path: list[str] = Field(default_factory=list)  # Nodes executed so far
    completed_nodes: list[str] = Field(default_factory=list)  # Nodes merged at this step

    model_config = {"extra": "allow"}

    @classmethod
    def create(
        cls,
        run_id: str,
        graph_id: str,
        step: int,
        state_version: int,
        state: dict[str, Any],
        execution_path: list[str],
        completed_nodes: list[str] | None = None,
    ) -> "Checkpoint":
        """Create a checkpoint with generated ID and timestamp."""
        return cls(
            checkpoint_id=f"cp_{run_id}_{step}",
            run_id=run_id,
            graph_id=graph_id,
            step=step,
            state_version=state_version,
            created_at=datetime.now().isoformat(),
            state=state,
            execution_path=list(execution_path),
            completed_nodes=list(completed_nodes or []),
        )


class CheckpointSummary(BaseModel):
    """Lightweight checkpoint metadata for listings."""

    checkpoint_id: str
    run_id: str
    step: int
    created_at: str
    completed_nodes: list[str] = Field(default_factory=list)

    @classmethod
    def from_checkpoint(cls, checkpoint: Checkpoint) -> "CheckpointSummary":
        return cls(
            checkpoint_id=checkpoint.checkpoint_id,
            run_id=checkpoint.run_id,
            step=checkpoint.step,
            created_at=checkpoint.created_at,
            completed_nodes=checkpoint.completed_nodes,
        )
