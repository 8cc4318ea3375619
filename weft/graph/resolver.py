"""
Edge Resolver - Decides which steps run after a node completes.

Resolution order for one completed node:
1. Dispatch requests the node returned, in the order returned
2. Its declared edges, in the order they were added

Dispatch requests are only honoured for targets declared by a dynamic
edge from the same source. Routers must return one of their declared
outcomes; anything else is a RoutingError.
"""

import inspect
import logging
from collections.abc import Mapping, Sequence
from dataclasses import dataclass
from typing import Any

from weft.graph.edge import END, EdgeKind, GraphSpec
from weft.graph.errors import NodeExecutionError, RoutingError
from weft.graph.node import Send

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Step:
    """A node scheduled to run, with the scoped input of a dispatch if any."""

    node: str
    scoped_input: Mapping[str, Any] | None = None
    origin: str | None = None
    kind: EdgeKind = EdgeKind.STATIC


class EdgeResolver:
    """Stateless; one instance may serve any number of runs."""

    async def next_steps(
        self,
        graph: GraphSpec,
        node_id: str,
        state: Mapping[str, Any],
        dispatch: Sequence[Send] = (),
    ) -> list[Step]:
        """
        Resolve the steps that follow ``node_id``.

        Args:
            graph: The compiled graph
            node_id: Node that just completed
            state: Read-only view of the post-merge state
            dispatch: Send requests the node returned

        Raises:
            RoutingError: undeclared dispatch target or router outcome
            NodeExecutionError: a router raised
        """
        steps: list[Step] = []

        if dispatch:
            allowed = graph.dispatch_targets(node_id)
            for send in dispatch:
                if send.node not in allowed:
                    raise RoutingError(node_id, send.node, sorted(allowed))
                steps.append(
                    Step(
                        node=send.node,
                        scoped_input=dict(send.scoped_input),
                        origin=node_id,
                        kind=EdgeKind.DYNAMIC,
                    )
                )

        for edge in graph.get_outgoing_edges(node_id):
            if edge.kind == EdgeKind.STATIC:
                if edge.target and edge.target != END:
                    steps.append(Step(node=edge.target, origin=node_id))

            elif edge.kind == EdgeKind.CONDITIONAL:
                outcome = await self._route(node_id, edge.router, state)
                if not isinstance(outcome, str) or outcome not in edge.path_map:
                    raise RoutingError(node_id, outcome, list(edge.path_map))
                target = edge.path_map[outcome]
                logger.debug(f"Router of '{node_id}' chose '{outcome}' -> {target}")
                if target != END:
                    steps.append(Step(node=target, origin=node_id, kind=EdgeKind.CONDITIONAL))

        return steps

    async def _route(self, node_id: str, router: Any, state: Mapping[str, Any]) -> Any:
        try:
            outcome = router(state)
            if inspect.isawaitable(outcome):
                outcome = await outcome
        except Exception as e:
            raise NodeExecutionError(node_id, f"router.{type(e).__name__}", str(e)) from e
        return outcome


def dedupe_steps(steps: Sequence[Step]) -> list[Step]:
    """
    Collapse repeated plain steps to their first occurrence.

    Steps carrying scoped input are dispatch tasks and are always kept.
    This is what makes the siblings of a fan-out reconverge on a single
    invocation of their join node.
    """
    seen: set[str] = set()
    result: list[Step] = []
    for step in steps:
        if step.scoped_input is None:
            if step.node in seen:
                continue
            seen.add(step.node)
        result.append(step)
    return result
