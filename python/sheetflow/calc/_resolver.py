"""Resolve computed columns to callables and build their argument lists."""

from __future__ import annotations

import inspect
import logging
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any

from sheetflow._errors import ResolutionError
from sheetflow.calc._protocol import Computation, FunctionCompiler

if TYPE_CHECKING:
    from sheetflow._columns import ArgumentBinding, Column

logger = logging.getLogger(__name__)


def _is_array_type(t: str) -> bool:
    return "[]" in t or t == "{}" or "array" in t


def coerce_literal(arg: ArgumentBinding) -> Any:
    """Apply the binding's declared ``type`` to its literal value."""
    value = arg.value
    t = (arg.type or "").lower()
    if isinstance(value, (list, tuple)):
        return list(value)
    if _is_array_type(t) and isinstance(value, str):
        return [s.strip() for s in value.split(",") if s.strip()]
    if "number" in t:
        try:
            return float(value)
        except (TypeError, ValueError):
            return float("nan")
    if "boolean" in t:
        return str(value) == "true"
    return value


def build_arguments(
    column: Column,
    row: Mapping[str, Any],
    columns: Iterable[Column],
) -> list[Any]:
    """Resolve *column*'s argument bindings against *row*, in order.

    A ``column_references`` binding yields the list of referenced values and
    a ``column_reference`` yields one value; a name that no longer exists
    yields ``None`` in its position.
    """
    by_name: dict[str, Column] = {}
    for col in columns:
        by_name.setdefault(col.name, col)

    args: list[Any] = []
    for arg in column.arguments:
        if arg.column_references:
            values = []
            for name in arg.column_references:
                ref = by_name.get(name) if name else None
                if ref is None:
                    logger.debug("%s: missing reference %r passed as None", column.name, name)
                    values.append(None)
                else:
                    values.append(row.get(ref.id))
            args.append(values)
        elif arg.column_reference:
            ref = by_name.get(arg.column_reference)
            if ref is None:
                logger.debug(
                    "%s: missing reference %r passed as None", column.name, arg.column_reference
                )
                args.append(None)
            else:
                args.append(row.get(ref.id))
        elif arg.value is not None:
            args.append(coerce_literal(arg))
        else:
            args.append(None)
    return args


class FunctionResolver:
    """Memoizing adapter over a :class:`FunctionCompiler`.

    Callables are cached per computation reference; call :meth:`invalidate`
    when the stored source behind a reference changes.
    """

    __slots__ = ("_compiler", "_cache")

    def __init__(self, compiler: FunctionCompiler) -> None:
        self._compiler = compiler
        self._cache: dict[str, Computation] = {}

    async def resolve(self, column: Column) -> Computation:
        """Return the callable for *column*; raises ResolutionError."""
        ref = column.computation
        if not ref:
            raise ResolutionError(ref, f"column '{column.id}' has no computation bound")

        cached = self._cache.get(ref)
        if cached is not None:
            return cached

        try:
            func = self._compiler.get_callable(ref)
            if inspect.isawaitable(func):
                func = await func
        except ResolutionError:
            raise
        except Exception as e:
            raise ResolutionError(ref, str(e) or type(e).__name__) from e

        if not callable(func):
            raise ResolutionError(ref, f"resolved to non-callable {type(func).__name__}")

        self._cache[ref] = func
        return func

    def build_arguments(
        self,
        column: Column,
        row: Mapping[str, Any],
        columns: Iterable[Column],
    ) -> list[Any]:
        return build_arguments(column, row, columns)

    def invalidate(self, ref: str) -> None:
        self._cache.pop(ref, None)

    def invalidate_many(self, refs: Iterable[str]) -> None:
        for ref in refs:
            self._cache.pop(ref, None)

    def clear(self) -> None:
        self._cache.clear()

    def is_cached(self, ref: str) -> bool:
        return ref in self._cache
