"""Tests for the node registry and return-value normalisation."""

import threading

import pytest

from weft.graph.errors import NodeExecutionError
from weft.graph.node import (
    FunctionNode,
    NodeProtocol,
    NodeRegistry,
    NodeResult,
    Send,
    normalize_result,
)


class EchoNode(NodeProtocol):
    async def execute(self, state, config):
        return {"echo": state["value"], "config": config}


class TestNormalizeResult:
    def test_none_is_empty_update(self):
        result = normalize_result("n", None)
        assert result.update == {}
        assert result.dispatch == []

    def test_mapping(self):
        assert normalize_result("n", {"a": 1}).update == {"a": 1}

    def test_single_send(self):
        send = Send("worker", {"i": 1})
        assert normalize_result("n", send).dispatch == [send]

    def test_list_of_sends(self):
        sends = [Send("w", {"i": i}) for i in range(3)]
        assert normalize_result("n", sends).dispatch == sends

    def test_node_result_passthrough(self):
        result = NodeResult(update={"a": 1}, dispatch=[Send("w")])
        assert normalize_result("n", result) is result

    def test_error_result_raises(self):
        with pytest.raises(NodeExecutionError) as exc_info:
            normalize_result("n", NodeResult.fail("validation", "bad output"))
        assert exc_info.value.node == "n"
        assert exc_info.value.kind == "validation"

    def test_mixed_list_rejected(self):
        with pytest.raises(NodeExecutionError):
            normalize_result("n", [Send("w"), {"a": 1}])


class TestFunctionNode:
    @pytest.mark.asyncio
    async def test_zero_arg_function(self):
        node = FunctionNode(lambda: {"a": 1})
        assert await node.execute({}, None) == {"a": 1}

    @pytest.mark.asyncio
    async def test_state_and_config(self):
        node = FunctionNode(lambda state, config: {"a": state["x"], "b": config["y"]})
        assert await node.execute({"x": 1}, {"y": 2}) == {"a": 1, "b": 2}

    @pytest.mark.asyncio
    async def test_sync_function_runs_off_loop(self):
        loop_thread = threading.get_ident()
        node = FunctionNode(lambda state: {"thread": threading.get_ident()})

        result = await node.execute({}, None)
        assert result["thread"] != loop_thread

    @pytest.mark.asyncio
    async def test_coroutine_function(self):
        async def fn(state):
            return {"a": state["x"] * 2}

        node = FunctionNode(fn)
        assert node.is_async
        assert await node.execute({"x": 4}, None) == {"a": 8}


class TestNodeRegistry:
    @pytest.mark.asyncio
    async def test_register_and_invoke(self):
        registry = NodeRegistry()
        spec = registry.register("echo", EchoNode(), output_keys=["echo"], description="Echo")

        assert spec.id == "echo"
        assert "echo" in registry
        result = await registry.invoke("echo", {"value": 3}, "cfg")
        assert result.update == {"echo": 3, "config": "cfg"}

    @pytest.mark.asyncio
    async def test_exception_wrapped(self):
        def fail(state):
            raise ZeroDivisionError("division by zero")

        registry = NodeRegistry()
        registry.register("fail", fail)

        with pytest.raises(NodeExecutionError) as exc_info:
            await registry.invoke("fail", {}, None)
        assert exc_info.value.kind == "ZeroDivisionError"
        assert isinstance(exc_info.value.__cause__, ZeroDivisionError)

    def test_duplicate_name(self):
        registry = NodeRegistry()
        registry.register("a", lambda s: None)
        with pytest.raises(ValueError):
            registry.register("a", lambda s: None)

    def test_non_callable_rejected(self):
        with pytest.raises(ValueError):
            NodeRegistry().register("a", "not callable")

    def test_frozen_copy(self):
        registry = NodeRegistry()
        registry.register("a", lambda s: None, max_visits=3, timeout=1.5)
        frozen = registry.frozen_copy()

        with pytest.raises(RuntimeError):
            frozen.register("b", lambda s: None)
        assert frozen.get_spec("a").max_visits == 3
        assert frozen.get_spec("a").timeout == 1.5
        assert len(frozen) == 1
