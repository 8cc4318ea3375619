"""Tests for the state schema, state container, and reducer engine."""

from typing import Annotated, ClassVar

import pytest
from pydantic import BaseModel, Field

from weft.graph.errors import ReducerError, TypeMismatchError, UnknownFieldError
from weft.graph.reducers import (
    append,
    append_unique,
    apply_reducers,
    merge_dicts,
    merge_in_order,
    replace,
)
from weft.graph.state import StateContainer, StateField, StateSchema


@pytest.fixture
def schema():
    return StateSchema(
        {
            "query": StateField(str, default=""),
            "results": StateField(list[str], reducer=append, default_factory=list),
            "count": StateField(int, default=0),
            "meta": StateField(dict[str, int], reducer=merge_dicts, default_factory=dict),
        }
    )


# === REDUCERS ===


class TestBuiltinReducers:
    def test_replace_returns_incoming(self):
        assert replace([1, 2], [3]) == [3]

    def test_append_concatenates_in_order(self):
        assert append(["a"], ["b", "c"]) == ["a", "b", "c"]

    def test_append_onto_missing_value(self):
        assert append(None, ["x"]) == ["x"]

    def test_append_unique_skips_duplicates(self):
        assert append_unique(["a", "b"], ["b", "c", "a"]) == ["a", "b", "c"]

    def test_merge_dicts_incoming_wins(self):
        assert merge_dicts({"a": 1, "b": 2}, {"b": 3}) == {"a": 1, "b": 3}


class TestApplyReducers:
    def test_untouched_fields_carry_over(self, schema):
        current = schema.initial_state({"query": "q", "count": 2})
        nxt = apply_reducers(schema, current, {"results": ["r1"]})

        assert nxt["query"] == "q"
        assert nxt["count"] == 2
        assert nxt["results"] == ["r1"]

    def test_does_not_mutate_current(self, schema):
        current = schema.initial_state({"results": ["a"]})
        apply_reducers(schema, current, {"results": ["b"], "count": 5})

        assert current["results"] == ["a"]
        assert current["count"] == 0

    def test_unknown_field_rejected(self, schema):
        current = schema.initial_state()
        with pytest.raises(UnknownFieldError) as exc_info:
            apply_reducers(schema, current, {"bogus": 1}, source="writer")

        assert exc_info.value.field == "bogus"
        assert exc_info.value.source == "writer"

    def test_type_mismatch_rejected_before_reducer_runs(self, schema):
        calls = []

        def spy(existing, incoming):
            calls.append(incoming)
            return incoming

        spied = StateSchema({"count": StateField(int, reducer=spy, default=0)})
        with pytest.raises(TypeMismatchError) as exc_info:
            apply_reducers(spied, spied.initial_state(), {"count": "seven"}, source="n")

        assert calls == []
        assert exc_info.value.field == "count"
        assert exc_info.value.source == "n"

    def test_reducer_exception_becomes_reducer_error(self):
        def broken(existing, incoming):
            raise RuntimeError("boom")

        s = StateSchema({"x": StateField(int, reducer=broken, default=0)})
        with pytest.raises(ReducerError) as exc_info:
            apply_reducers(s, s.initial_state(), {"x": 1})

        assert "boom" in str(exc_info.value)
        assert isinstance(exc_info.value.__cause__, RuntimeError)

    def test_reducer_result_is_type_checked(self):
        def to_string(existing, incoming):
            return str(incoming)

        s = StateSchema({"x": StateField(int, reducer=to_string, default=0)})
        with pytest.raises(TypeMismatchError):
            apply_reducers(s, s.initial_state(), {"x": 3})

    def test_merge_in_order_folds_by_position(self, schema):
        current = schema.initial_state()
        nxt = merge_in_order(
            schema,
            current,
            [{"results": ["first"]}, {"results": ["second"]}, {"results": ["third"]}],
            sources=["a", "b", "c"],
        )
        assert nxt["results"] == ["first", "second", "third"]

    def test_merge_in_order_replace_collision_last_wins(self, schema):
        nxt = merge_in_order(schema, schema.initial_state(), [{"count": 1}, {"count": 2}])
        assert nxt["count"] == 2


# === SCHEMA ===


class TestStateSchema:
    def test_bare_types_become_replace_fields(self):
        s = StateSchema({"name": str})
        assert s.fields["name"].reducer is replace
        assert s.fields["name"].name == "name"

    def test_initial_state_fills_defaults(self, schema):
        state = schema.initial_state({"query": "hello"})
        assert state == {"query": "hello", "results": [], "count": 0, "meta": {}}

    def test_default_factories_not_shared(self, schema):
        a = schema.initial_state()
        b = schema.initial_state()
        a["results"].append("x")
        assert b["results"] == []

    def test_initial_state_rejects_unknown_field(self, schema):
        with pytest.raises(UnknownFieldError):
            schema.initial_state({"nope": 1})

    def test_initial_state_rejects_wrong_type(self, schema):
        with pytest.raises(TypeMismatchError):
            schema.initial_state({"count": "three"})

    def test_from_pydantic_model(self):
        class ResearchState(BaseModel):
            query: str = ""
            results: Annotated[list[str], append] = Field(default_factory=list)
            rounds: int = 0

        s = StateSchema.from_annotations(ResearchState)

        assert set(s) == {"query", "results", "rounds"}
        assert s.fields["results"].reducer is append
        assert s.fields["rounds"].reducer is replace
        assert s.initial_state() == {"query": "", "results": [], "rounds": 0}

    def test_from_plain_class_skips_private_and_classvars(self):
        class Plain:
            label: str = "x"
            tags: Annotated[list[str], append_unique]
            _hidden: int = 0
            registry: ClassVar[dict] = {}

        s = StateSchema.from_annotations(Plain)

        assert set(s) == {"label", "tags"}
        assert s.fields["tags"].reducer is append_unique
        assert not s.fields["tags"].has_default()


# === CONTAINER ===


class TestStateContainer:
    def test_merge_bumps_version(self, schema):
        state = StateContainer(schema)
        assert state.version == 0
        assert state.merge({"count": 1}) == 1
        assert state.merge({"count": 2}) == 2
        assert state.get("count") == 2

    def test_failed_merge_leaves_state_unchanged(self, schema):
        state = StateContainer(schema, {"query": "q", "results": ["a"]})
        before = state.snapshot()

        with pytest.raises(UnknownFieldError):
            state.merge({"results": ["b"], "bogus": True}, source="writer")

        assert state.snapshot() == before
        assert state.version == 0

    def test_merge_many_is_atomic(self, schema):
        state = StateContainer(schema)
        with pytest.raises(TypeMismatchError):
            state.merge_many([{"results": ["ok"]}, {"count": "bad"}], ["a", "b"])

        assert state.get("results") == []
        assert state.version == 0

    def test_get_unknown_field(self, schema):
        state = StateContainer(schema)
        with pytest.raises(UnknownFieldError):
            state.get("missing")

    def test_view_is_read_only_and_detached(self, schema):
        state = StateContainer(schema, {"results": ["a"]})
        view = state.view()

        with pytest.raises(TypeError):
            view["query"] = "changed"  # type: ignore[index]

        view["results"].append("leak")
        assert state.get("results") == ["a"]

    def test_view_overlay(self, schema):
        state = StateContainer(schema, {"query": "global"})
        view = state.view({"query": "scoped"})

        assert view["query"] == "scoped"
        assert state.get("query") == "global"
