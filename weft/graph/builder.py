"""
Graph Builder - Mutable construction API that compiles to a GraphSpec.

Example:
    builder = GraphBuilder(schema, graph_id="research")
    builder.add_node("generate", generate_queries)
    builder.add_node("search", run_search, output_keys=["results"])
    builder.add_node("summarize", summarize)

    builder.set_entry_point("generate")
    builder.add_dispatch_edge("generate", ["search"])
    builder.add_edge("search", "summarize")
    builder.add_edge("summarize", END)

    graph = builder.compile()
"""

import logging
from collections.abc import Callable, Mapping, Sequence
from typing import Any

from weft.graph.edge import END, EdgeKind, EdgeSpec, GraphSpec, router_outcomes
from weft.graph.errors import GraphValidationError
from weft.graph.node import NodeProtocol, NodeRegistry, NodeSpec
from weft.graph.state import StateSchema

logger = logging.getLogger(__name__)


class GraphBuilder:
    """Collects nodes and edges, then validates them into an immutable GraphSpec."""

    def __init__(self, state_schema: StateSchema, graph_id: str = "graph", description: str = ""):
        self.state_schema = state_schema
        self.graph_id = graph_id
        self.description = description
        self.registry = NodeRegistry()
        self.edges: list[EdgeSpec] = []
        self.entry_node: str | None = None

    def _next_edge_id(self, source: str, kind: EdgeKind) -> str:
        return f"{source}:{kind.value}:{len(self.edges)}"

    def add_node(
        self,
        name: str,
        executable: Callable[..., Any] | NodeProtocol,
        output_keys: list[str] | None = None,
        input_keys: list[str] | None = None,
        description: str = "",
        max_visits: int = 0,
        timeout: float | None = None,
    ) -> NodeSpec:
        """Register a node. See NodeRegistry.register()."""
        if name == END:
            raise ValueError(f"'{END}' is reserved and cannot be used as a node name")
        spec = self.registry.register(
            name,
            executable,
            output_keys=output_keys,
            input_keys=input_keys,
            description=description,
            max_visits=max_visits,
            timeout=timeout,
        )
        logger.info(f"Added node: {name}")
        return spec

    def add_edge(self, source: str, target: str) -> EdgeSpec:
        """Add a static edge. ``target`` may be END."""
        edge = EdgeSpec(
            id=self._next_edge_id(source, EdgeKind.STATIC),
            kind=EdgeKind.STATIC,
            source=source,
            target=target,
        )
        self.edges.append(edge)
        logger.info(f"Added edge: {source} --> {target}")
        return edge

    def add_conditional_edges(
        self,
        source: str,
        router: Callable[..., Any],
        targets: Sequence[str] | Mapping[str, str] | None = None,
    ) -> EdgeSpec:
        """
        Add a conditional edge.

        Args:
            source: Node whose completion triggers the router
            router: ``route(state) -> outcome``
            targets: Either a list of outcomes that are also node names (or
                END), or a mapping of outcome -> node. When omitted the
                router's ``Literal`` return annotation supplies the outcomes.

        Raises:
            ValueError: no targets given and the router has no Literal annotation
        """
        if targets is None:
            outcomes = router_outcomes(router)
            if outcomes is None:
                raise ValueError(
                    f"Conditional edge from '{source}' needs declared targets or a "
                    "router annotated with a Literal return type"
                )
            path_map = {o: o for o in sorted(outcomes)}
        elif isinstance(targets, Mapping):
            path_map = dict(targets)
        else:
            path_map = {t: t for t in targets}

        edge = EdgeSpec(
            id=self._next_edge_id(source, EdgeKind.CONDITIONAL),
            kind=EdgeKind.CONDITIONAL,
            source=source,
            router=router,
            path_map=path_map,
        )
        self.edges.append(edge)
        logger.info(f"Added conditional edge: {source} --[{', '.join(path_map)}]--> ...")
        return edge

    def add_dispatch_edge(self, source: str, targets: Sequence[str]) -> EdgeSpec:
        """Declare that ``source`` may fan out to ``targets`` with Send requests."""
        edge = EdgeSpec(
            id=self._next_edge_id(source, EdgeKind.DYNAMIC),
            kind=EdgeKind.DYNAMIC,
            source=source,
            targets=list(targets),
        )
        self.edges.append(edge)
        logger.info(f"Added dispatch edge: {source} ==> {list(targets)}")
        return edge

    def set_entry_point(self, node_id: str) -> None:
        self.entry_node = node_id

    def chain(self, *node_ids: str, finish: bool = True) -> None:
        """
        Connect already-registered nodes in sequence with static edges.

        The first node becomes the entry point if none is set. With
        ``finish`` the last node is connected to END.
        """
        if not node_ids:
            return
        for source, target in zip(node_ids, node_ids[1:]):
            self.add_edge(source, target)
        if finish:
            self.add_edge(node_ids[-1], END)
        if self.entry_node is None:
            self.set_entry_point(node_ids[0])

    def compile(self) -> GraphSpec:
        """
        Validate and freeze the graph.

        Raises:
            GraphValidationError: listing every structural problem found
        """
        if self.entry_node is None:
            raise GraphValidationError(["No entry point set"])

        graph = GraphSpec(
            id=self.graph_id,
            entry_node=self.entry_node,
            state_schema=self.state_schema,
            registry=self.registry.frozen_copy(),
            edges=tuple(self.edges),
            description=self.description,
        )
        errors = graph.validate()
        if errors:
            for error in errors:
                logger.error(f"Graph '{self.graph_id}': {error}")
            raise GraphValidationError(errors)

        for edge in graph.edges:
            if edge.kind == EdgeKind.CONDITIONAL and router_outcomes(edge.router) is None:
                logger.warning(
                    f"Graph '{self.graph_id}': router on edge '{edge.id}' has no Literal "
                    f"return annotation; outcomes outside {sorted(edge.path_map)} "
                    "fail only at run time"
                )

        logger.info(
            f"Compiled graph '{self.graph_id}': {len(graph.registry)} nodes, "
            f"{len(graph.edges)} edges, entry '{graph.entry_node}'"
        )
        return graph
