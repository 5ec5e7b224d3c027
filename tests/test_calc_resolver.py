"""Tests for sheetflow.calc function resolution and argument building."""

from __future__ import annotations

import asyncio
import math
from typing import Any

import pytest
from sheetflow._columns import ArgumentBinding, Column, DataType
from sheetflow._errors import ResolutionError
from sheetflow.calc._functions import FunctionRegistry
from sheetflow.calc._resolver import FunctionResolver, build_arguments, coerce_literal

COLUMNS = [
    Column("price", "Price", DataType.CURRENCY),
    Column("discount", "Discount", DataType.CURRENCY),
    Column("tour", "Tour Name", DataType.TEXT),
]


def _computed(*arguments: ArgumentBinding, ref: str | None = "fn") -> Column:
    return Column("out", "Out", DataType.FUNCTION, computation=ref, arguments=arguments)


class _CountingCompiler:
    def __init__(self, functions: dict[str, Any]) -> None:
        self.functions = functions
        self.calls: list[str] = []

    def get_callable(self, ref: str) -> Any:
        self.calls.append(ref)
        if ref not in self.functions:
            raise KeyError(ref)
        return self.functions[ref]


class _AsyncCompiler:
    async def get_callable(self, ref: str) -> Any:
        await asyncio.sleep(0)
        return lambda *args: ref


class TestBuildArguments:
    def test_single_references_in_order(self) -> None:
        col = _computed(
            ArgumentBinding(column_reference="Discount"),
            ArgumentBinding(column_reference="Price"),
        )
        row = {"id": "1", "price": 100, "discount": 10}
        assert build_arguments(col, row, COLUMNS) == [10, 100]

    def test_fan_in_reference_list(self) -> None:
        col = _computed(ArgumentBinding(column_references=("Price", "Discount")))
        row = {"id": "1", "price": 100, "discount": 10}
        assert build_arguments(col, row, COLUMNS) == [[100, 10]]

    def test_literal_passes_through(self) -> None:
        col = _computed(ArgumentBinding(value="EUR"), ArgumentBinding(column_reference="Price"))
        assert build_arguments(col, {"id": "1", "price": 5}, COLUMNS) == ["EUR", 5]

    def test_unset_field_is_none(self) -> None:
        col = _computed(ArgumentBinding(column_reference="Tour Name"))
        assert build_arguments(col, {"id": "1"}, COLUMNS) == [None]

    def test_missing_single_reference_keeps_position(self) -> None:
        col = _computed(
            ArgumentBinding(column_reference="Ghost"),
            ArgumentBinding(column_reference="Price"),
        )
        assert build_arguments(col, {"id": "1", "price": 7}, COLUMNS) == [None, 7]

    def test_missing_names_keep_their_slot_in_list(self) -> None:
        col = _computed(ArgumentBinding(column_references=("Price", "Ghost", "Discount")))
        row = {"id": "1", "price": 1, "discount": 2}
        assert build_arguments(col, row, COLUMNS) == [[1, None, 2]]

    def test_no_source_yields_none(self) -> None:
        col = _computed(ArgumentBinding(name="optional"))
        assert build_arguments(col, {"id": "1"}, COLUMNS) == [None]

    def test_references_use_names_not_ids(self) -> None:
        col = _computed(ArgumentBinding(column_reference="price"))
        assert build_arguments(col, {"id": "1", "price": 3}, COLUMNS) == [None]


class TestCoerceLiteral:
    def test_array_type_splits_commas(self) -> None:
        arg = ArgumentBinding(type="string[]", value="a, b,, c ")
        assert coerce_literal(arg) == ["a", "b", "c"]

    def test_list_value_kept(self) -> None:
        arg = ArgumentBinding(type="string[]", value=["x", "y"])
        assert coerce_literal(arg) == ["x", "y"]

    def test_number(self) -> None:
        assert coerce_literal(ArgumentBinding(type="number", value="2.5")) == 2.5

    def test_bad_number_is_nan(self) -> None:
        assert math.isnan(coerce_literal(ArgumentBinding(type="number", value="abc")))

    def test_boolean(self) -> None:
        assert coerce_literal(ArgumentBinding(type="boolean", value="true")) is True
        assert coerce_literal(ArgumentBinding(type="boolean", value="1")) is False

    def test_untyped(self) -> None:
        assert coerce_literal(ArgumentBinding(value="plain")) == "plain"


class TestFunctionResolver:
    def test_memoized_per_reference(self) -> None:
        compiler = _CountingCompiler({"fn": lambda: 1})
        resolver = FunctionResolver(compiler)
        col = _computed()

        async def run() -> None:
            first = await resolver.resolve(col)
            second = await resolver.resolve(col)
            assert first is second

        asyncio.run(run())
        assert compiler.calls == ["fn"]

    def test_invalidate_forces_reload(self) -> None:
        compiler = _CountingCompiler({"fn": lambda: 1})
        resolver = FunctionResolver(compiler)
        col = _computed()

        async def run() -> None:
            await resolver.resolve(col)
            resolver.invalidate("fn")
            assert not resolver.is_cached("fn")
            await resolver.resolve(col)

        asyncio.run(run())
        assert compiler.calls == ["fn", "fn"]

    def test_invalidate_many_and_clear(self) -> None:
        compiler = _CountingCompiler({"a": lambda: 1, "b": lambda: 2})
        resolver = FunctionResolver(compiler)

        async def run() -> None:
            await resolver.resolve(_computed(ref="a"))
            await resolver.resolve(_computed(ref="b"))

        asyncio.run(run())
        resolver.invalidate_many(["a"])
        assert not resolver.is_cached("a")
        assert resolver.is_cached("b")
        resolver.clear()
        assert not resolver.is_cached("b")

    def test_unknown_reference_raises_resolution_error(self) -> None:
        resolver = FunctionResolver(_CountingCompiler({}))
        with pytest.raises(ResolutionError, match="missing"):
            asyncio.run(resolver.resolve(_computed(ref="missing")))

    def test_failure_is_not_cached(self) -> None:
        compiler = _CountingCompiler({})
        resolver = FunctionResolver(compiler)
        for _ in range(2):
            with pytest.raises(ResolutionError):
                asyncio.run(resolver.resolve(_computed(ref="nope")))
        assert compiler.calls == ["nope", "nope"]

    def test_non_callable_rejected(self) -> None:
        resolver = FunctionResolver(_CountingCompiler({"fn": 42}))
        with pytest.raises(ResolutionError, match="non-callable"):
            asyncio.run(resolver.resolve(_computed()))

    def test_column_without_computation(self) -> None:
        resolver = FunctionResolver(_CountingCompiler({}))
        with pytest.raises(ResolutionError, match="no computation"):
            asyncio.run(resolver.resolve(_computed(ref=None)))

    def test_async_compiler(self) -> None:
        resolver = FunctionResolver(_AsyncCompiler())
        func = asyncio.run(resolver.resolve(_computed(ref="remote")))
        assert func() == "remote"

    def test_registry_as_compiler(self) -> None:
        registry = FunctionRegistry()
        registry.register("double", lambda x: x * 2)
        resolver = FunctionResolver(registry)
        func = asyncio.run(resolver.resolve(_computed(ref="double")))
        assert func(21) == 42
