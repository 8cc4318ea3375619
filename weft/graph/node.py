"""
Node Protocol - The contract between the engine and work units.

A node executable takes ``(state, config)`` and returns one of:
- a mapping: a partial state update
- a Send or a list of Sends: dispatch requests (dynamic fan-out)
- a NodeResult: update and/or dispatch, or an error
- None: no update

The engine never lets node code write state directly. Nodes read an
immutable view and the scheduler merges what they return.

Executables may be plain functions or coroutines. Plain functions run in
a worker thread so that every task of a fan-out batch executes in
parallel; coroutines run on the event loop.
"""

import asyncio
import inspect
import logging
from abc import ABC, abstractmethod
from collections.abc import Callable, Mapping
from contextvars import ContextVar
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any

from pydantic import BaseModel, Field

from weft.graph.errors import NodeExecutionError

logger = logging.getLogger(__name__)

# Set by the scheduler for every invocation; copied into worker threads.
_cancel_probe: ContextVar[Callable[[], bool] | None] = ContextVar("weft_cancel_probe", default=None)


def cancellation_requested() -> bool:
    """
    Return True when the current run has been cancelled or timed out.

    Long-running node code should poll this and return early. The engine
    never kills node code; it only stops scheduling and discards results.
    """
    probe = _cancel_probe.get()
    return bool(probe and probe())


@dataclass(frozen=True)
class Send:
    """A dispatch request: run ``node`` with ``scoped_input`` as its task input."""

    node: str
    scoped_input: Mapping[str, Any] = field(default_factory=dict)


@dataclass
class NodeResult:
    """
    Result of one node invocation.

    Tagged by content: ``error`` set means failure; otherwise ``update``
    is merged first and ``dispatch`` expanded afterwards.
    """

    update: dict[str, Any] = field(default_factory=dict)
    dispatch: list[Send] = field(default_factory=list)
    error: str | None = None
    error_kind: str | None = None

    @property
    def success(self) -> bool:
        return self.error is None

    @classmethod
    def fail(cls, kind: str, message: str) -> "NodeResult":
        return cls(error=message, error_kind=kind)


class NodeSpec(BaseModel):
    """
    Declaration of a node in a graph.

    ``input_keys`` is informational. ``output_keys`` must name declared
    state fields and is checked when the graph is compiled.
    """

    id: str
    description: str = ""
    input_keys: list[str] = Field(default_factory=list)
    output_keys: list[str] = Field(default_factory=list)
    max_visits: int = Field(
        default=0, description="Maximum invocations per run (0 = unlimited)"
    )
    timeout: float | None = Field(
        default=None, description="Per-invocation deadline in seconds"
    )

    model_config = {"extra": "allow", "frozen": True}


class NodeProtocol(ABC):
    """Interface for node implementations that are objects rather than functions."""

    @abstractmethod
    async def execute(self, state: Mapping[str, Any], config: Any) -> Any:
        """Run the node against a read-only state view."""


class FunctionNode(NodeProtocol):
    """Adapts a plain function or coroutine function to NodeProtocol."""

    def __init__(self, func: Callable[..., Any]):
        self.func = func
        self.is_async = inspect.iscoroutinefunction(func) or inspect.iscoroutinefunction(
            getattr(func, "__call__", None)
        )
        self._arity = self._positional_arity(func)

    @staticmethod
    def _positional_arity(func: Callable[..., Any]) -> int:
        try:
            params = inspect.signature(func).parameters.values()
        except (TypeError, ValueError):
            return 2
        count = 0
        for p in params:
            if p.kind == p.VAR_POSITIONAL:
                return 2
            if p.kind in (p.POSITIONAL_ONLY, p.POSITIONAL_OR_KEYWORD):
                count += 1
        return min(count, 2)

    def _args(self, state: Mapping[str, Any], config: Any) -> tuple:
        return (state, config)[: self._arity]

    async def execute(self, state: Mapping[str, Any], config: Any) -> Any:
        if self.is_async:
            result = await self.func(*self._args(state, config))
        else:
            result = await asyncio.to_thread(self.func, *self._args(state, config))
        if inspect.isawaitable(result):
            result = await result
        return result


def normalize_result(node_id: str, raw: Any) -> NodeResult:
    """
    Convert whatever a node returned into a NodeResult.

    Raises:
        NodeExecutionError: the node returned an error result or a value
            the engine cannot interpret
    """
    if raw is None:
        result = NodeResult()
    elif isinstance(raw, NodeResult):
        result = raw
    elif isinstance(raw, Send):
        result = NodeResult(dispatch=[raw])
    elif isinstance(raw, Mapping):
        result = NodeResult(update=dict(raw))
    elif isinstance(raw, list | tuple) and all(isinstance(s, Send) for s in raw):
        result = NodeResult(dispatch=list(raw))
    else:
        raise NodeExecutionError(
            node_id,
            "invalid_result",
            f"Unsupported return type {type(raw).__name__}; "
            "expected a mapping, Send, list of Send, NodeResult, or None",
        )

    if not result.success:
        raise NodeExecutionError(node_id, result.error_kind or "error", result.error or "")
    return result


class NodeRegistry:
    """
    Maps node ids to executables and their declarations.

    Registries are mutable while a graph is being built and frozen when
    it is compiled; a frozen registry is shared read-only by every run.

    Example:
        registry = NodeRegistry()
        registry.register("search", search_fn, output_keys=["results"])
        result = await registry.invoke("search", state_view, run_config)
    """

    def __init__(self):
        self._specs: dict[str, NodeSpec] = {}
        self._impls: dict[str, NodeProtocol] = {}
        self._frozen = False

    def register(
        self,
        name: str,
        executable: Callable[..., Any] | NodeProtocol,
        output_keys: list[str] | None = None,
        input_keys: list[str] | None = None,
        description: str = "",
        max_visits: int = 0,
        timeout: float | None = None,
    ) -> NodeSpec:
        """
        Register a node.

        Raises:
            RuntimeError: the registry is frozen
            ValueError: the name is empty or already registered
        """
        if self._frozen:
            raise RuntimeError("Cannot register nodes on a frozen registry")
        if not name:
            raise ValueError("Node must have a name")
        if name in self._specs:
            raise ValueError(f"Node '{name}' is already registered")
        if not isinstance(executable, NodeProtocol) and not callable(executable):
            raise ValueError(f"Executable for node '{name}' is not callable")

        spec = NodeSpec(
            id=name,
            description=description,
            input_keys=input_keys or [],
            output_keys=output_keys or [],
            max_visits=max_visits,
            timeout=timeout,
        )
        impl = executable if isinstance(executable, NodeProtocol) else FunctionNode(executable)
        self._specs[name] = spec
        self._impls[name] = impl
        logger.debug(f"Registered node: {name} ({type(impl).__name__})")
        return spec

    def frozen_copy(self) -> "NodeRegistry":
        copy = NodeRegistry()
        copy._specs = dict(self._specs)
        copy._impls = dict(self._impls)
        copy._frozen = True
        return copy

    @property
    def specs(self) -> Mapping[str, NodeSpec]:
        return MappingProxyType(self._specs)

    def __contains__(self, name: object) -> bool:
        return name in self._specs

    def __len__(self) -> int:
        return len(self._specs)

    def get_spec(self, name: str) -> NodeSpec | None:
        return self._specs.get(name)

    async def invoke(self, name: str, state: Mapping[str, Any], config: Any) -> NodeResult:
        """
        Invoke a node and normalise its return value.

        Raises:
            KeyError: no node with this name
            NodeExecutionError: the executable raised or returned an error
        """
        impl = self._impls[name]
        try:
            raw = await impl.execute(state, config)
        except NodeExecutionError:
            raise
        except asyncio.CancelledError:
            raise
        except Exception as e:
            raise NodeExecutionError(name, type(e).__name__, str(e)) from e
        return normalize_result(name, raw)
