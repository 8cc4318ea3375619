"""
Tests for graph construction and compile-time validation.

A graph that compiles must never hit a structural routing error at run
time: undeclared router outcomes, missing targets, unreachable nodes and
inescapable static cycles are all reported by compile().
"""

import logging
from typing import Literal

import pytest

from weft.graph.builder import GraphBuilder
from weft.graph.edge import END, EdgeKind, router_outcomes
from weft.graph.errors import GraphValidationError
from weft.graph.state import StateField, StateSchema


def noop(state):
    return None


@pytest.fixture
def schema():
    return StateSchema(
        {
            "draft": StateField(str, default=""),
            "sufficient": StateField(bool, default=False),
        }
    )


class TestRouterOutcomes:
    def test_literal_annotation(self):
        def route(state) -> Literal["a", "b"]:
            return "a"

        assert router_outcomes(route) == {"a", "b"}

    def test_union_of_literals(self):
        def route(state) -> Literal["a"] | Literal["b", "c"]:
            return "a"

        assert router_outcomes(route) == {"a", "b", "c"}

    def test_unannotated_router(self):
        assert router_outcomes(lambda state: "a") is None

    def test_plain_str_annotation_is_open(self):
        def route(state) -> str:
            return "a"

        assert router_outcomes(route) is None

    def test_callable_object(self):
        class Router:
            def __call__(self, state) -> Literal["x"]:
                return "x"

        assert router_outcomes(Router()) == {"x"}


class TestCompile:
    def test_linear_graph_compiles(self, schema):
        builder = GraphBuilder(schema, graph_id="linear")
        builder.add_node("a", noop)
        builder.add_node("b", noop)
        builder.chain("a", "b")

        graph = builder.compile()

        assert graph.entry_node == "a"
        assert [e.target for e in graph.get_outgoing_edges("a")] == ["b"]
        assert [e.target for e in graph.get_outgoing_edges("b")] == [END]
        assert set(graph.nodes) == {"a", "b"}

    def test_no_entry_point(self, schema):
        builder = GraphBuilder(schema)
        builder.add_node("a", noop)

        with pytest.raises(GraphValidationError, match="No entry point"):
            builder.compile()

    def test_missing_entry_node(self, schema):
        builder = GraphBuilder(schema)
        builder.add_node("a", noop)
        builder.set_entry_point("ghost")

        with pytest.raises(GraphValidationError) as exc_info:
            builder.compile()
        assert any("Entry node 'ghost' not found" in e for e in exc_info.value.errors)

    def test_reserved_end_name(self, schema):
        builder = GraphBuilder(schema)
        with pytest.raises(ValueError):
            builder.add_node(END, noop)

    def test_duplicate_node(self, schema):
        builder = GraphBuilder(schema)
        builder.add_node("a", noop)
        with pytest.raises(ValueError):
            builder.add_node("a", noop)

    def test_missing_static_target(self, schema):
        builder = GraphBuilder(schema)
        builder.add_node("a", noop)
        builder.set_entry_point("a")
        builder.add_edge("a", "nowhere")

        with pytest.raises(GraphValidationError) as exc_info:
            builder.compile()
        assert any("missing target 'nowhere'" in e for e in exc_info.value.errors)

    def test_output_keys_must_be_declared_fields(self, schema):
        builder = GraphBuilder(schema)
        builder.add_node("a", noop, output_keys=["draft", "summary"])
        builder.chain("a")

        with pytest.raises(GraphValidationError) as exc_info:
            builder.compile()
        assert any("'summary'" in e for e in exc_info.value.errors)

    def test_unreachable_node(self, schema):
        builder = GraphBuilder(schema)
        builder.add_node("a", noop)
        builder.add_node("island", noop)
        builder.chain("a")

        with pytest.raises(GraphValidationError) as exc_info:
            builder.compile()
        assert exc_info.value.errors == ["Node 'island' is unreachable from entry"]

    def test_static_cycle_without_exit(self, schema):
        builder = GraphBuilder(schema)
        builder.add_node("a", noop)
        builder.add_node("b", noop)
        builder.set_entry_point("a")
        builder.add_edge("a", "b")
        builder.add_edge("b", "a")

        with pytest.raises(GraphValidationError) as exc_info:
            builder.compile()
        assert any("Cycle through unconditional edges" in e for e in exc_info.value.errors)

    def test_conditional_loop_is_allowed(self, schema):
        def after_reflect(state) -> Literal["generate", "finalize"]:
            return "finalize" if state["sufficient"] else "generate"

        builder = GraphBuilder(schema)
        builder.add_node("generate", noop)
        builder.add_node("reflect", noop)
        builder.add_node("finalize", noop)
        builder.set_entry_point("generate")
        builder.add_edge("generate", "reflect")
        builder.add_conditional_edges("reflect", after_reflect)
        builder.add_edge("finalize", END)

        graph = builder.compile()

        edge = graph.get_outgoing_edges("reflect")[0]
        assert edge.kind == EdgeKind.CONDITIONAL
        assert edge.path_map == {"finalize": "finalize", "generate": "generate"}


class TestRoutingClosure:
    def test_router_can_return_undeclared_outcome(self, schema):
        def route(state) -> Literal["a", "b", "c"]:
            return "c"

        builder = GraphBuilder(schema)
        builder.add_node("src", noop)
        builder.add_node("a", noop)
        builder.add_node("b", noop)
        builder.set_entry_point("src")
        builder.add_conditional_edges("src", route, ["a", "b"])
        builder.add_edge("a", END)
        builder.add_edge("b", END)

        with pytest.raises(GraphValidationError) as exc_info:
            builder.compile()
        assert any("undeclared outcomes ['c']" in e for e in exc_info.value.errors)

    def test_outcome_mapped_to_missing_node(self, schema):
        def route(state) -> Literal["yes", "no"]:
            return "yes"

        builder = GraphBuilder(schema)
        builder.add_node("src", noop)
        builder.add_node("accept", noop)
        builder.set_entry_point("src")
        builder.add_conditional_edges("src", route, {"yes": "accept", "no": "reject"})
        builder.add_edge("accept", END)

        with pytest.raises(GraphValidationError) as exc_info:
            builder.compile()
        assert any("missing node 'reject'" in e for e in exc_info.value.errors)

    def test_outcome_may_map_to_end(self, schema):
        def route(state) -> Literal["again", "done"]:
            return "done"

        builder = GraphBuilder(schema)
        builder.add_node("work", noop)
        builder.set_entry_point("work")
        builder.add_conditional_edges("work", route, {"again": "work", "done": END})

        graph = builder.compile()
        assert graph.get_outgoing_edges("work")[0].declared_targets() == ["work"]

    def test_unchecked_router_warns_at_compile(self, schema, caplog):
        def route(state) -> str:
            return "a"

        builder = GraphBuilder(schema, graph_id="loose")
        builder.add_node("src", noop)
        builder.add_node("a", noop)
        builder.set_entry_point("src")
        builder.add_conditional_edges("src", route, ["a", END])
        builder.add_edge("a", END)

        with caplog.at_level(logging.WARNING, logger="weft.graph.builder"):
            builder.compile()

        warnings = [r.getMessage() for r in caplog.records if r.levelno == logging.WARNING]
        assert len(warnings) == 1
        assert "no Literal return annotation" in warnings[0]

    def test_literal_router_compiles_without_warning(self, schema, caplog):
        def route(state) -> Literal["a", "__end__"]:
            return "a"

        builder = GraphBuilder(schema)
        builder.add_node("src", noop)
        builder.add_node("a", noop)
        builder.set_entry_point("src")
        builder.add_conditional_edges("src", route, {"a": "a", "__end__": END})
        builder.add_edge("a", END)

        with caplog.at_level(logging.WARNING, logger="weft.graph.builder"):
            builder.compile()

        assert not [r for r in caplog.records if r.levelno >= logging.WARNING]

    def test_unannotated_router_needs_targets(self, schema):
        builder = GraphBuilder(schema)
        builder.add_node("src", noop)
        with pytest.raises(ValueError):
            builder.add_conditional_edges("src", lambda state: "a")

    def test_dispatch_target_must_exist(self, schema):
        builder = GraphBuilder(schema)
        builder.add_node("plan", noop)
        builder.chain("plan")
        builder.add_dispatch_edge("plan", ["worker"])

        with pytest.raises(GraphValidationError) as exc_info:
            builder.compile()
        assert any("missing dispatch target 'worker'" in e for e in exc_info.value.errors)

    def test_all_errors_reported_together(self, schema):
        builder = GraphBuilder(schema)
        builder.add_node("a", noop)
        builder.add_node("island", noop)
        builder.set_entry_point("a")
        builder.add_edge("a", "ghost")

        with pytest.raises(GraphValidationError) as exc_info:
            builder.compile()
        assert len(exc_info.value.errors) == 2


def test_compiled_registry_is_frozen(schema):
    builder = GraphBuilder(schema)
    builder.add_node("a", noop)
    builder.chain("a")
    graph = builder.compile()

    with pytest.raises(RuntimeError):
        graph.registry.register("b", noop)

    # Later builder changes do not leak into the compiled graph
    builder.add_node("b", noop)
    assert "b" not in graph.registry
