"""ChangePropagator: per-row incremental recomputation of computed columns.

A field change for one row walks the dependency graph from the changed
column's name, evaluating each reachable computed column once against a
working snapshot of the row, so chained columns see the new values of the
columns they read.  Results land in the row cache and the batched writer.
"""

from __future__ import annotations

import asyncio
import inspect
import logging
from collections.abc import Mapping
from typing import TYPE_CHECKING, Any

from sheetflow._errors import ComputationError, ResolutionError
from sheetflow._options import EngineOptions
from sheetflow._values import values_equal
from sheetflow.calc._graph import DependencyGraph
from sheetflow.calc._protocol import (
    CellDelta,
    CellResult,
    CellStatus,
    Computation,
    PropagationResult,
)

if TYPE_CHECKING:
    from sheetflow._cache import RowCache
    from sheetflow._columns import Column, ColumnRegistry
    from sheetflow._writer import BatchedWriter
    from sheetflow.calc._resolver import FunctionResolver

logger = logging.getLogger(__name__)


class ChangePropagator:
    """Recomputes computed columns for one row when one of its fields changes.

    Usage::

        propagator = ChangePropagator(registry, resolver, cache, writer)
        result = await propagator.propagate("row-1", "discount", 30)
        result.deltas  # computed fields whose value changed
    """

    def __init__(
        self,
        registry: ColumnRegistry,
        resolver: FunctionResolver,
        cache: RowCache,
        writer: BatchedWriter,
        options: EngineOptions | None = None,
    ) -> None:
        self._registry = registry
        self._resolver = resolver
        self._cache = cache
        self._writer = writer
        self._options = options or EngineOptions()
        self._graph = DependencyGraph.build(registry.list_columns())
        self._unsubscribe = registry.on_columns_changed(self._rebuild)

    @property
    def graph(self) -> DependencyGraph:
        return self._graph

    @property
    def registry(self) -> ColumnRegistry:
        return self._registry

    @property
    def resolver(self) -> FunctionResolver:
        return self._resolver

    @property
    def cache(self) -> RowCache:
        return self._cache

    @property
    def writer(self) -> BatchedWriter:
        return self._writer

    def _rebuild(self, columns: tuple[Column, ...]) -> None:
        self._graph = DependencyGraph.build(columns)
        logger.debug(
            "Rebuilt dependency graph: %d computed columns, %d sources",
            len(self._graph.computed),
            len(self._graph.dependents),
        )

    def close(self) -> None:
        self._unsubscribe()

    # ------------------------------------------------------------------
    # Single cell
    # ------------------------------------------------------------------

    async def compute_function_for_row(
        self,
        row: Mapping[str, Any],
        column: Column,
    ) -> CellResult:
        """Evaluate *column* against *row* and record the value if it changed.

        Never raises for resolution or computation problems: those come back
        as a ``FAILED`` result with the prior value left in place.
        """
        row_id = str(row.get("id"))
        previous = row.get(column.id)
        if not column.is_computed or not column.computation:
            return CellResult(row_id, column.id, CellStatus.SKIPPED, previous, previous)

        try:
            func = await self._resolver.resolve(column)
            args = self._resolver.build_arguments(column, row, self._registry.list_columns())
            value = await self._invoke(func, args, column, row_id)
        except (ResolutionError, ComputationError) as e:
            logger.warning("Column %r on row %s: %s", column.name, row_id, e)
            return CellResult(
                row_id, column.id, CellStatus.FAILED, previous, previous, error=e
            )

        if values_equal(previous, value):
            return CellResult(row_id, column.id, CellStatus.UNCHANGED, value, previous)

        self._cache.apply(row_id, column.id, value)
        self._writer.queue_field_update(row_id, column.id, value)
        return CellResult(row_id, column.id, CellStatus.UPDATED, value, previous)

    async def _invoke(
        self,
        func: Computation,
        args: list[Any],
        column: Column,
        row_id: str,
    ) -> Any:
        timeout = self._options.computation_timeout
        try:
            result = func(*args)
            if inspect.isawaitable(result):
                if timeout is not None:
                    result = await asyncio.wait_for(result, timeout)
                else:
                    result = await result
        except asyncio.TimeoutError as e:
            raise ComputationError(column.id, row_id, f"timed out after {timeout}s") from e
        except Exception as e:
            raise ComputationError(column.id, row_id, e) from e
        return result

    # ------------------------------------------------------------------
    # Propagation pass
    # ------------------------------------------------------------------

    async def propagate(
        self,
        row_id: str,
        column_id: str,
        value: Any,
        base_row: Mapping[str, Any] | None = None,
    ) -> PropagationResult:
        """Recompute every computed column reachable from *column_id* for one row.

        Each affected column is evaluated at most once.  A column whose
        computation fails does not feed its dependents in this pass.
        """
        changed = self._registry.get(column_id)
        if changed is None:
            logger.debug("Propagation skipped: column %r no longer exists", column_id)
            return PropagationResult(row_id=row_id, changed_column=column_id)

        if base_row is None:
            base_row = self._cache.get(row_id) or {"id": row_id}
        snapshot = dict(base_row)
        snapshot["id"] = row_id
        snapshot[column_id] = value

        graph = self._graph
        reached = {changed.name}
        evaluated: list[str] = []
        deltas: list[CellDelta] = []
        failures: list[CellResult] = []

        for col in graph.affected_columns(changed.name):
            if not any(src in reached for src in graph.dependencies_of(col.id)):
                continue
            evaluated.append(col.id)
            result = await self.compute_function_for_row(snapshot, col)
            if result.ok:
                snapshot[col.id] = result.value
                reached.add(col.name)
                if result.changed:
                    deltas.append(result.as_delta(col.computation))
            elif result.status is CellStatus.FAILED:
                failures.append(result)

        if deltas or failures:
            logger.debug(
                "Row %s: %s changed, %d evaluated, %d updated, %d failed",
                row_id, changed.name, len(evaluated), len(deltas), len(failures),
            )

        return PropagationResult(
            row_id=row_id,
            changed_column=column_id,
            evaluated=tuple(evaluated),
            deltas=tuple(deltas),
            failures=tuple(failures),
        )
