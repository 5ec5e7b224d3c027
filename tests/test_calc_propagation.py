"""Tests for per-row change propagation through computed columns."""

from __future__ import annotations

import asyncio
from typing import Any

from sheetflow._cache import RowCache
from sheetflow._columns import ArgumentBinding, Column, ColumnRegistry, DataType
from sheetflow._errors import ComputationError, ResolutionError
from sheetflow._options import EngineOptions
from sheetflow._store import InMemoryRowStore
from sheetflow._writer import BatchedWriter
from sheetflow.calc import (
    CellStatus,
    ChangePropagator,
    FunctionRegistry,
    FunctionResolver,
)

MANUAL = EngineOptions(debounce_seconds=60, max_flush_latency_seconds=60)


def _plain(name: str) -> Column:
    return Column(name.lower(), name, DataType.NUMBER)


def _computed(name: str, ref: str, *sources: str) -> Column:
    return Column(
        name.lower(),
        name,
        DataType.FUNCTION,
        computation=ref,
        arguments=tuple(ArgumentBinding(column_reference=s) for s in sources),
    )


def _engine(
    columns: list[Column],
    rows: list[dict[str, Any]],
    functions: FunctionRegistry,
    options: EngineOptions = MANUAL,
) -> ChangePropagator:
    store = InMemoryRowStore(rows)
    cache = RowCache(rows)
    writer = BatchedWriter(store, options)
    return ChangePropagator(
        ColumnRegistry(columns), FunctionResolver(functions), cache, writer, options
    )


def _functions() -> FunctionRegistry:
    functions = FunctionRegistry()
    functions.register("add", lambda a, b: (a or 0) + (b or 0))
    functions.register("subtract", lambda a, b: a - b)
    return functions


class TestScenarios:
    def test_total_after_discount_edit(self) -> None:
        p = _engine(
            [_plain("price"), _plain("discount"), _computed("total", "subtract", "price", "discount")],
            [{"id": "1", "price": 100, "discount": 10}],
            _functions(),
        )
        p.cache.apply("1", "discount", 30)
        result = asyncio.run(p.propagate("1", "discount", 30))

        assert p.cache.value("1", "total") == 70
        assert p.writer.pending == {"1": {"total": 70}}
        assert result.propagated_cells == 1
        delta = result.deltas[0]
        assert (delta.row_id, delta.column_id, delta.old_value, delta.new_value) == (
            "1", "total", None, 70,
        )
        assert delta.computation == "subtract"

    def test_chain_uses_fresh_subtotal(self) -> None:
        p = _engine(
            [
                _plain("a"), _plain("b"), _plain("c"),
                _computed("grandTotal", "add", "subtotal", "c"),
                _computed("subtotal", "add", "a", "b"),
            ],
            [{"id": "r", "a": 1, "b": 2, "c": 10, "subtotal": 3, "grandtotal": 13}],
            _functions(),
        )
        result = asyncio.run(p.propagate("r", "a", 5))

        assert result.evaluated == ("subtotal", "grandtotal")
        assert p.cache.value("r", "subtotal") == 7
        assert p.cache.value("r", "grandtotal") == 17
        assert p.writer.pending == {"r": {"subtotal": 7, "grandtotal": 17}}

    def test_deleted_reference_keeps_prior_value(self) -> None:
        p = _engine(
            [_plain("price"), _computed("total", "subtract", "price", "discount")],
            [{"id": "1", "price": 100, "total": 90}],
            _functions(),
        )
        result = asyncio.run(p.propagate("1", "price", 120))

        assert p.cache.value("1", "total") == 90
        assert p.writer.pending == {}
        assert len(result.failures) == 1
        assert isinstance(result.failures[0].error, ComputationError)


class TestEvaluation:
    def test_diamond_evaluates_each_column_once(self) -> None:
        calls: list[str] = []
        functions = FunctionRegistry()

        def tracked(tag: str):
            def fn(*args: Any) -> Any:
                calls.append(tag)
                return sum(a or 0 for a in args)
            return fn

        for tag in ("b", "c", "d"):
            functions.register(tag, tracked(tag))
        p = _engine(
            [_plain("A"), _computed("B", "b", "A"), _computed("C", "c", "A"), _computed("D", "d", "B", "C")],
            [{"id": "1", "a": 0}],
            functions,
        )
        asyncio.run(p.propagate("1", "a", 2))

        assert calls == ["b", "c", "d"]
        assert p.cache.value("1", "d") == 4

    def test_unchanged_result_queues_nothing(self) -> None:
        p = _engine(
            [_plain("a"), _plain("b"), _computed("sum", "add", "a", "b")],
            [{"id": "1", "a": 1, "b": 2, "sum": 3}],
            _functions(),
        )
        result = asyncio.run(p.propagate("1", "a", 1))
        assert result.evaluated == ("sum",)
        assert result.deltas == ()
        assert p.writer.pending == {}

    def test_failure_does_not_block_independent_column(self) -> None:
        functions = _functions()
        functions.register("boom", lambda a: 1 / 0)
        p = _engine(
            [_plain("a"), _computed("broken", "boom", "a"), _computed("double", "add", "a", "a")],
            [{"id": "1", "a": 1}],
            functions,
        )
        result = asyncio.run(p.propagate("1", "a", 4))

        assert p.cache.value("1", "double") == 8
        assert [f.column_id for f in result.failures] == ["broken"]
        assert "broken" not in (p.cache.get("1") or {})

    def test_failed_column_does_not_feed_dependents(self) -> None:
        functions = _functions()
        functions.register("boom", lambda a: 1 / 0)
        p = _engine(
            [_plain("a"), _computed("broken", "boom", "a"), _computed("after", "add", "broken", "broken")],
            [{"id": "1", "a": 1, "broken": 5, "after": 10}],
            functions,
        )
        result = asyncio.run(p.propagate("1", "a", 2))

        assert result.evaluated == ("broken",)
        assert p.cache.value("1", "after") == 10

    def test_unresolvable_computation_reported(self) -> None:
        p = _engine(
            [_plain("a"), _computed("x", "nowhere", "a")],
            [{"id": "1", "a": 1}],
            _functions(),
        )
        result = asyncio.run(p.propagate("1", "a", 2))
        assert result.failures[0].status is CellStatus.FAILED
        assert isinstance(result.failures[0].error, ResolutionError)

    def test_unknown_column_is_a_noop(self) -> None:
        p = _engine([_plain("a"), _computed("x", "add", "a", "a")], [{"id": "1", "a": 1}], _functions())
        result = asyncio.run(p.propagate("1", "ghost", 2))
        assert result.evaluated == ()
        assert p.writer.pending == {}

    def test_column_without_dependents(self) -> None:
        p = _engine([_plain("a"), _plain("b"), _computed("x", "add", "a", "a")], [{"id": "1"}], _functions())
        result = asyncio.run(p.propagate("1", "b", 2))
        assert result.evaluated == ()

    def test_base_row_overrides_cache(self) -> None:
        p = _engine(
            [_plain("a"), _plain("b"), _computed("sum", "add", "a", "b")],
            [{"id": "1", "a": 1, "b": 1}],
            _functions(),
        )
        asyncio.run(p.propagate("1", "a", 1, base_row={"id": "1", "a": 1, "b": 9}))
        assert p.cache.value("1", "sum") == 10


class TestAsyncComputations:
    def test_awaitable_result(self) -> None:
        functions = FunctionRegistry()

        async def slow_add(a: Any, b: Any) -> Any:
            await asyncio.sleep(0)
            return a + b

        functions.register("slow_add", slow_add)
        p = _engine(
            [_plain("a"), _plain("b"), _computed("sum", "slow_add", "a", "b")],
            [{"id": "1", "a": 1, "b": 2}],
            functions,
        )
        asyncio.run(p.propagate("1", "a", 5))
        assert p.cache.value("1", "sum") == 7

    def test_timeout_becomes_failure(self) -> None:
        functions = FunctionRegistry()

        async def hang(a: Any) -> Any:
            await asyncio.sleep(10)
            return a

        functions.register("hang", hang)
        options = EngineOptions(
            debounce_seconds=60, max_flush_latency_seconds=60, computation_timeout=0.01
        )
        p = _engine([_plain("a"), _computed("x", "hang", "a")], [{"id": "1", "a": 1}], functions, options)
        result = asyncio.run(p.propagate("1", "a", 2))

        assert "timed out" in str(result.failures[0].error)
        assert p.writer.pending == {}


class TestGraphRebuild:
    def test_new_column_participates(self) -> None:
        p = _engine([_plain("a")], [{"id": "1", "a": 1}], _functions())
        p.registry.add(_computed("double", "add", "a", "a"))
        asyncio.run(p.propagate("1", "a", 3))
        assert p.cache.value("1", "double") == 6

    def test_closed_propagator_stops_following(self) -> None:
        p = _engine([_plain("a")], [{"id": "1", "a": 1}], _functions())
        p.close()
        p.registry.add(_computed("double", "add", "a", "a"))
        assert p.graph.computed == {}
