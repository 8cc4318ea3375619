"""
Reducer Engine - Field-level merge rules for state updates.

A reducer is a pure function ``merge(existing, incoming) -> combined``.
The engine applies the declared reducer of every field present in an
update and carries all other fields over unchanged. Fields without a
declared reducer use ``replace``.

Concurrent updates from one fan-out batch are folded with
``merge_in_order`` in dispatch order, never completion order, so that
``append`` produces the same ordering on every run.
"""

from __future__ import annotations

from collections.abc import Callable, Mapping, Sequence
from typing import TYPE_CHECKING, Any

from weft.graph.errors import ReducerError, StateError, TypeMismatchError, UnknownFieldError

if TYPE_CHECKING:
    from weft.graph.state import StateSchema

Reducer = Callable[[Any, Any], Any]


def replace(existing: Any, incoming: Any) -> Any:
    """Last write wins."""
    return incoming


def append(existing: Any, incoming: Any) -> list[Any]:
    """Ordered concatenation of ``existing`` followed by ``incoming``."""
    if existing is None:
        return list(incoming)
    return [*existing, *incoming]


def append_unique(existing: Any, incoming: Any) -> list[Any]:
    """Concatenate, skipping incoming items already present."""
    combined = list(existing or [])
    for item in incoming:
        if item not in combined:
            combined.append(item)
    return combined


def merge_dicts(existing: Any, incoming: Any) -> dict[str, Any]:
    """Shallow dict union, incoming keys win on collision."""
    if not existing:
        return dict(incoming or {})
    return {**existing, **incoming}


def apply_reducers(
    schema: StateSchema,
    current: Mapping[str, Any],
    update: Mapping[str, Any],
    source: str | None = None,
) -> dict[str, Any]:
    """
    Compute the next state from ``current`` and one partial update.

    Pure: ``current`` is not modified. Every incoming value is checked
    against its declared type before the reducer runs, and the combined
    value is checked again afterwards so a custom reducer cannot smuggle
    in a mismatched type.

    Raises:
        UnknownFieldError: update names a field outside the schema
        TypeMismatchError: incoming or combined value has the wrong type
        ReducerError: the reducer itself raised
    """
    nxt = dict(current)
    for name, incoming in update.items():
        spec = schema.fields.get(name)
        if spec is None:
            raise UnknownFieldError(name, source=source)

        try:
            incoming = spec.validate(incoming)
        except TypeMismatchError as e:
            e.source = source
            raise

        if name not in nxt:
            existing = None
        else:
            existing = nxt[name]

        try:
            combined = spec.reducer(existing, incoming)
        except StateError:
            raise
        except Exception as e:
            raise ReducerError(name, f"{type(e).__name__}: {e}", source=source) from e

        try:
            nxt[name] = spec.validate(combined)
        except TypeMismatchError as e:
            e.source = source
            raise
    return nxt


def merge_in_order(
    schema: StateSchema,
    current: Mapping[str, Any],
    updates: Sequence[Mapping[str, Any]],
    sources: Sequence[str | None] | None = None,
) -> dict[str, Any]:
    """
    Fold several partial updates into ``current`` in the given order.

    The caller passes updates ordered by dispatch index. Either every
    update applies or an error is raised and nothing is returned.
    """
    if sources is None:
        sources = [None] * len(updates)
    state = dict(current)
    for update, source in zip(updates, sources, strict=True):
        state = apply_reducers(schema, state, update, source=source)
    return state
