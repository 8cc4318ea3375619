"""
State Container - Typed, versioned state owned by a single run.

The schema declares every field with a type and a reducer. Updates are
validated with pydantic in strict mode so a reducer is never applied to a
value of the wrong type. Merges are all-or-nothing: the next state is
computed on a copy and swapped in only when every field succeeded.

Example:
    schema = StateSchema({
        "question": StateField(str, default=""),
        "results": StateField(list[str], reducer=append, default_factory=list),
    })
    state = StateContainer(schema, {"question": "why?"})
    state.merge({"results": ["a"]})
    state.get("results")  # ["a"]
"""

import copy
import logging
import threading
from collections.abc import Callable, Mapping, Sequence
from dataclasses import dataclass, field, replace
from types import MappingProxyType
from typing import Annotated, Any, ClassVar, get_args, get_origin, get_type_hints

from pydantic import BaseModel, ConfigDict, TypeAdapter, ValidationError
from pydantic.errors import PydanticSchemaGenerationError
from pydantic.fields import FieldInfo
from pydantic_core import PydanticUndefined

from weft.graph import reducers
from weft.graph.errors import TypeMismatchError, UnknownFieldError
from weft.graph.reducers import Reducer

logger = logging.getLogger(__name__)


class _Missing:
    def __repr__(self) -> str:
        return "MISSING"


MISSING: Any = _Missing()


def _build_adapter(type_: Any) -> TypeAdapter:
    try:
        return TypeAdapter(type_)
    except PydanticSchemaGenerationError:
        # Plain classes need arbitrary_types_allowed; models and
        # dataclasses carry their own config and reject this one.
        return TypeAdapter(type_, config=ConfigDict(arbitrary_types_allowed=True))


@dataclass(frozen=True)
class StateField:
    """Declaration of one state field: type, reducer, and default."""

    type: Any = Any
    reducer: Reducer = reducers.replace
    default: Any = MISSING
    default_factory: Callable[[], Any] | None = None
    description: str = ""
    name: str = ""
    _adapter: TypeAdapter | None = field(default=None, repr=False, compare=False)

    def bind(self, name: str) -> "StateField":
        """Return a copy bound to its field name with a ready validator."""
        return replace(self, name=name, _adapter=_build_adapter(self.type))

    def has_default(self) -> bool:
        return self.default is not MISSING or self.default_factory is not None

    def make_default(self) -> Any:
        if self.default_factory is not None:
            return self.default_factory()
        return copy.deepcopy(self.default)

    def validate(self, value: Any) -> Any:
        """Strictly validate ``value`` against the declared type."""
        adapter = self._adapter or _build_adapter(self.type)
        try:
            return adapter.validate_python(value, strict=True)
        except ValidationError as e:
            detail = "; ".join(err["msg"] for err in e.errors())
            raise TypeMismatchError(self.name, self.type, detail) from e


def _reducer_from_metadata(metadata: Sequence[Any]) -> Reducer:
    for item in metadata:
        if callable(item):
            return item
    return reducers.replace


def _field_from_model(info: FieldInfo) -> StateField:
    # pydantic strips Annotated and keeps the extra items in metadata
    default: Any = MISSING
    if info.default_factory is None and info.default is not PydanticUndefined:
        default = info.default
    return StateField(
        type=info.annotation,
        reducer=_reducer_from_metadata(info.metadata),
        default=default,
        default_factory=info.default_factory,
        description=info.description or "",
    )


class StateSchema:
    """
    The declared fields of a graph's state.

    Accepts either StateField declarations or bare types (which become
    Replace fields with no default).
    """

    def __init__(self, fields: Mapping[str, "StateField | Any"]):
        bound: dict[str, StateField] = {}
        for name, spec in fields.items():
            if not isinstance(spec, StateField):
                spec = StateField(type=spec)
            bound[name] = spec.bind(name)
        self.fields: Mapping[str, StateField] = MappingProxyType(bound)

    @classmethod
    def from_annotations(cls, model: type) -> "StateSchema":
        """
        Derive a schema from an annotated class.

        ``Annotated[list[str], append]`` attaches a reducer; the first
        callable in the metadata is used. Defaults come from pydantic
        field info for models and from class attributes otherwise.

        Example:
            class ResearchState(BaseModel):
                query: str = ""
                results: Annotated[list[str], append] = []

            schema = StateSchema.from_annotations(ResearchState)
        """
        if isinstance(model, type) and issubclass(model, BaseModel):
            return cls(
                {name: _field_from_model(info) for name, info in model.model_fields.items()}
            )

        fields: dict[str, StateField] = {}
        for name, hint in get_type_hints(model, include_extras=True).items():
            if name.startswith("_") or get_origin(hint) is ClassVar:
                continue
            type_, metadata = hint, []
            if get_origin(hint) is Annotated:
                type_, *metadata = get_args(hint)
            fields[name] = StateField(
                type=type_,
                reducer=_reducer_from_metadata(metadata),
                default=getattr(model, name, MISSING),
            )
        return cls(fields)

    def __contains__(self, name: object) -> bool:
        return name in self.fields

    def __iter__(self):
        return iter(self.fields)

    def __len__(self) -> int:
        return len(self.fields)

    def initial_state(self, values: Mapping[str, Any] | None = None) -> dict[str, Any]:
        """
        Build a validated starting state.

        Declared defaults fill fields the caller omits. Initial values
        replace defaults outright; reducers only apply to merges.
        """
        state = {name: spec.make_default() for name, spec in self.fields.items() if spec.has_default()}
        for name, value in (values or {}).items():
            spec = self.fields.get(name)
            if spec is None:
                raise UnknownFieldError(name)
            state[name] = spec.validate(value)
        return state


class StateContainer:
    """
    Live state of one run.

    Only the scheduler writes here, through merge()/merge_many(). Nodes
    receive read-only views built by view(), each a private deep copy so
    concurrent tasks cannot observe each other through shared nested
    objects. The lock is held only while swapping in a merged state.
    """

    def __init__(self, schema: StateSchema, initial: Mapping[str, Any] | None = None):
        self._schema = schema
        self._data = schema.initial_state(initial)
        self._version = 0
        self._lock = threading.Lock()

    @property
    def schema(self) -> StateSchema:
        return self._schema

    @property
    def version(self) -> int:
        """Number of successful merges so far. Observability only."""
        return self._version

    def get(self, name: str, default: Any = None) -> Any:
        if name not in self._schema:
            raise UnknownFieldError(name)
        return self._data.get(name, default)

    def snapshot(self) -> dict[str, Any]:
        """Deep copy of the current state."""
        with self._lock:
            return copy.deepcopy(self._data)

    def view(self, overlay: Mapping[str, Any] | None = None) -> Mapping[str, Any]:
        """Read-only view of the state, optionally overlaid with scoped input."""
        data = self.snapshot()
        if overlay:
            data.update(copy.deepcopy(dict(overlay)))
        return MappingProxyType(data)

    def merge(self, updates: Mapping[str, Any], source: str | None = None) -> int:
        """
        Apply one partial update atomically.

        Returns:
            The new state version

        Raises:
            UnknownFieldError, TypeMismatchError, ReducerError. State is
            unchanged when any of these is raised.
        """
        return self.merge_many([updates], [source])

    def merge_many(
        self,
        updates: Sequence[Mapping[str, Any]],
        sources: Sequence[str | None] | None = None,
    ) -> int:
        """Apply several updates, in order, as a single atomic merge."""
        with self._lock:
            merged = reducers.merge_in_order(self._schema, self._data, updates, sources)
            self._data = merged
            self._version += 1
            version = self._version
        logger.debug(f"State merged to version {version} ({len(updates)} updates)")
        return version
