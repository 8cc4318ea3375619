"""
Edge Protocol - How nodes connect in a graph.

Edges are a tagged variant with three kinds:
- static: always traverse from source to target after source completes
- conditional: a router reads the state and returns one outcome from a
  closed, declared set; each outcome maps to a target node (or END)
- dynamic: the source node returns Send requests at run time; the edge
  declares which nodes it may dispatch to

Conditional routers are checked when the graph is compiled. A router
whose return annotation is ``Literal[...]`` must not be able to return
a value outside its declared outcomes, so a routing bug surfaces at
construction time rather than mid-run.

Example:
    def after_reflect(state) -> Literal["generate", "finalize"]:
        return "finalize" if state["sufficient"] else "generate"

    EdgeSpec(
        id="reflect-route",
        kind=EdgeKind.CONDITIONAL,
        source="reflect",
        router=after_reflect,
        path_map={"generate": "generate", "finalize": "finalize"},
    )
"""

import types
import typing
from collections.abc import Callable
from enum import StrEnum
from typing import Any, Literal, get_args, get_origin

from pydantic import BaseModel, ConfigDict, Field

from weft.graph.node import NodeRegistry, NodeSpec
from weft.graph.state import StateSchema

END = "__end__"


class EdgeKind(StrEnum):
    """How an edge chooses its target."""

    STATIC = "static"
    CONDITIONAL = "conditional"
    DYNAMIC = "dynamic"


def router_outcomes(router: Callable[..., Any]) -> set[str] | None:
    """
    Read the closed outcome set from a router's return annotation.

    Returns:
        The Literal values, or None when the router is not annotated
        with a Literal (or a union of Literals)
    """
    target = router
    if not isinstance(router, types.FunctionType | types.MethodType) and hasattr(router, "__call__"):
        target = router.__call__
    try:
        hints = typing.get_type_hints(target)
    except (NameError, TypeError):
        return None

    annotation = hints.get("return")
    if annotation is None:
        return None
    return _literal_values(annotation)


def _literal_values(annotation: Any) -> set[str] | None:
    origin = get_origin(annotation)
    if origin is Literal:
        return {str(v) for v in get_args(annotation)}
    if origin in (typing.Union, types.UnionType):
        values: set[str] = set()
        for arg in get_args(annotation):
            if arg is type(None):
                continue
            nested = _literal_values(arg)
            if nested is None:
                return None
            values |= nested
        return values
    return None


class EdgeSpec(BaseModel):
    """Specification for one edge leaving ``source``."""

    id: str
    kind: EdgeKind
    source: str = Field(description="Source node ID")

    # STATIC
    target: str | None = Field(default=None, description="Target node ID or END")

    # CONDITIONAL
    router: Callable[..., Any] | None = Field(default=None, exclude=True)
    path_map: dict[str, str] = Field(
        default_factory=dict,
        description="Router outcome -> target node ID (or END)",
    )

    # DYNAMIC
    targets: list[str] = Field(
        default_factory=list, description="Nodes the source may dispatch to"
    )

    description: str = ""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    @property
    def outcomes(self) -> set[str]:
        """Declared router outcomes of a conditional edge."""
        return set(self.path_map)

    def declared_targets(self) -> list[str]:
        """Every node this edge can lead to, END excluded."""
        if self.kind == EdgeKind.STATIC:
            candidates = [self.target] if self.target else []
        elif self.kind == EdgeKind.CONDITIONAL:
            candidates = list(self.path_map.values())
        else:
            candidates = list(self.targets)
        return [t for t in candidates if t and t != END]


class GraphSpec(BaseModel):
    """
    Complete, immutable specification of a graph.

    Built and validated once by GraphBuilder.compile(); shared read-only
    by any number of concurrent runs.
    """

    id: str
    entry_node: str = Field(description="ID of the first node to execute")
    state_schema: StateSchema
    registry: NodeRegistry
    edges: tuple[EdgeSpec, ...] = ()
    description: str = ""

    model_config = ConfigDict(arbitrary_types_allowed=True, frozen=True)

    @property
    def nodes(self) -> dict[str, NodeSpec]:
        return dict(self.registry.specs)

    def get_node(self, node_id: str) -> NodeSpec | None:
        return self.registry.get_spec(node_id)

    def get_outgoing_edges(self, node_id: str) -> list[EdgeSpec]:
        """Edges leaving a node, in the order they were added."""
        return [e for e in self.edges if e.source == node_id]

    def get_incoming_edges(self, node_id: str) -> list[EdgeSpec]:
        return [e for e in self.edges if node_id in e.declared_targets()]

    def dispatch_targets(self, node_id: str) -> set[str]:
        """Nodes ``node_id`` is allowed to dispatch to."""
        allowed: set[str] = set()
        for edge in self.get_outgoing_edges(node_id):
            if edge.kind == EdgeKind.DYNAMIC:
                allowed.update(edge.targets)
        return allowed

    def validate(self) -> list[str]:
        """Validate the graph structure. Returns error messages (empty if valid)."""
        errors: list[str] = []

        if not len(self.registry):
            errors.append("Graph has no nodes")
            return errors

        if not self.get_node(self.entry_node):
            errors.append(f"Entry node '{self.entry_node}' not found")

        for node_id, spec in self.registry.specs.items():
            for key in spec.output_keys:
                if key not in self.state_schema:
                    errors.append(
                        f"Node '{node_id}' declares output field '{key}' "
                        "which is not in the state schema"
                    )

        for edge in self.edges:
            errors.extend(self._validate_edge(edge))

        errors.extend(self._find_unreachable())
        errors.extend(self._find_static_cycles())
        return errors

    def _validate_edge(self, edge: EdgeSpec) -> list[str]:
        errors: list[str] = []
        if not self.get_node(edge.source):
            errors.append(f"Edge '{edge.id}' references missing source '{edge.source}'")

        if edge.kind == EdgeKind.STATIC:
            if not edge.target:
                errors.append(f"Static edge '{edge.id}' has no target")
            elif edge.target != END and not self.get_node(edge.target):
                errors.append(f"Edge '{edge.id}' references missing target '{edge.target}'")

        elif edge.kind == EdgeKind.CONDITIONAL:
            if edge.router is None or not callable(edge.router):
                errors.append(f"Conditional edge '{edge.id}' has no callable router")
                return errors
            if not edge.path_map:
                errors.append(f"Conditional edge '{edge.id}' declares no outcomes")
            for outcome, target in edge.path_map.items():
                if target != END and not self.get_node(target):
                    errors.append(
                        f"Conditional edge '{edge.id}' maps outcome '{outcome}' "
                        f"to missing node '{target}'"
                    )
            possible = router_outcomes(edge.router)
            if possible is not None:
                undeclared = possible - edge.outcomes
                if undeclared:
                    errors.append(
                        f"Router of conditional edge '{edge.id}' can return undeclared "
                        f"outcomes {sorted(undeclared)} (declared: {sorted(edge.outcomes)})"
                    )

        elif edge.kind == EdgeKind.DYNAMIC:
            if not edge.targets:
                errors.append(f"Dynamic edge '{edge.id}' declares no dispatch targets")
            for target in edge.targets:
                if target == END or not self.get_node(target):
                    errors.append(
                        f"Dynamic edge '{edge.id}' declares missing dispatch target '{target}'"
                    )
        return errors

    def _find_unreachable(self) -> list[str]:
        reachable: set[str] = set()
        to_visit = [self.entry_node]
        while to_visit:
            current = to_visit.pop()
            if current in reachable:
                continue
            reachable.add(current)
            for edge in self.get_outgoing_edges(current):
                to_visit.extend(edge.declared_targets())

        return [
            f"Node '{node_id}' is unreachable from entry"
            for node_id in self.registry.specs
            if node_id not in reachable
        ]

    def _find_static_cycles(self) -> list[str]:
        """
        Find cycles made only of static edges.

        Static edges always fire, so such a cycle can never be left.
        """
        adjacency: dict[str, list[str]] = {}
        for edge in self.edges:
            if edge.kind == EdgeKind.STATIC and edge.target and edge.target != END:
                adjacency.setdefault(edge.source, []).append(edge.target)

        errors: list[str] = []
        visiting: list[str] = []
        done: set[str] = set()
        reported: set[frozenset[str]] = set()

        def visit(node_id: str) -> None:
            visiting.append(node_id)
            for nxt in adjacency.get(node_id, []):
                if nxt in visiting:
                    cycle = visiting[visiting.index(nxt) :]
                    key = frozenset(cycle)
                    if key not in reported:
                        reported.add(key)
                        loop = " -> ".join([*cycle, nxt])
                        errors.append(f"Cycle through unconditional edges has no exit: {loop}")
                elif nxt not in done:
                    visit(nxt)
            visiting.pop()
            done.add(node_id)

        for node_id in list(adjacency):
            if node_id not in done:
                visit(node_id)
        return errors
