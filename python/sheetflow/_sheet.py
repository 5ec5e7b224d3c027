"""Sheet — the engine facade consumed by the bookings UI.

Owns one instance of every engine component (no module-level state), so
several sheets can live side by side::

    sheet = Sheet(store, columns, functions)
    await sheet.load()
    await sheet.on_field_changed("row-1", "discount", "30")
    sheet.snapshot()
    await sheet.aclose()
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
from collections.abc import AsyncIterator, Callable, Coroutine, Iterable, Mapping
from dataclasses import dataclass, field
from typing import Any

from sheetflow._cache import MISSING, RowCache
from sheetflow._columns import Column, ColumnRegistry
from sheetflow._errors import PersistenceError, UnknownColumnError
from sheetflow._options import EngineOptions
from sheetflow._store import RowStore
from sheetflow._values import coerce_value, values_equal
from sheetflow._writer import BatchedWriter, FlushResult
from sheetflow.calc._graph import DependencyGraph
from sheetflow.calc._propagator import ChangePropagator
from sheetflow.calc._protocol import FunctionCompiler, PropagationResult, RecomputeSummary
from sheetflow.calc._recompute import recompute_all
from sheetflow.calc._resolver import FunctionResolver

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class WriteFailure:
    """Notification that a row's writes were rejected by the store."""

    error: PersistenceError
    reverted: dict[str, Any] = field(default_factory=dict)  # field -> restored value

    @property
    def row_id(self) -> str:
        return self.error.row_id

    @property
    def fields(self) -> list[str]:
        return sorted(self.error.fields)


WriteFailureHandler = Callable[[WriteFailure], None]


class _RowLock:
    """Per-row lock plus the number of edits holding or awaiting it."""

    __slots__ = ("lock", "users")

    def __init__(self) -> None:
        self.lock = asyncio.Lock()
        self.users = 0


class Sheet:
    """Computed-column engine over one row store."""

    def __init__(
        self,
        store: RowStore,
        columns: ColumnRegistry | Iterable[Column],
        compiler: FunctionCompiler,
        options: EngineOptions | None = None,
    ) -> None:
        self._options = options or EngineOptions()
        self._store = store
        if isinstance(columns, ColumnRegistry):
            self._registry = columns
        else:
            self._registry = ColumnRegistry(columns)
        self._cache = RowCache()
        self._resolver = FunctionResolver(compiler)
        self._writer = BatchedWriter(store, self._options)
        self._propagator = ChangePropagator(
            self._registry, self._resolver, self._cache, self._writer, self._options
        )
        self._row_locks: dict[str, _RowLock] = {}
        self._failure_handlers: list[WriteFailureHandler] = []
        self._tasks: set[asyncio.Task[Any]] = set()
        self._unsubscribe_store: Callable[[], None] | None = None

        self._writer.on_committed(self._cache.confirm)
        self._writer.on_failed(self._handle_write_failure)

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def load(self) -> None:
        """Fill the cache from the store and follow its change feed."""
        rows = await self._store.get_all_rows()
        self._cache.load(rows)
        if self._unsubscribe_store is None:
            self._unsubscribe_store = self._store.subscribe(self._on_store_change)
        logger.debug("Loaded %d rows, %d columns", len(self._cache), len(self._registry))

    async def flush(self) -> FlushResult:
        return await self._writer.flush()

    async def aclose(self) -> FlushResult:
        if self._unsubscribe_store is not None:
            self._unsubscribe_store()
            self._unsubscribe_store = None
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        result = await self._writer.aclose()
        self._propagator.close()
        return result

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    @property
    def store(self) -> RowStore:
        return self._store

    @property
    def registry(self) -> ColumnRegistry:
        return self._registry

    @property
    def cache(self) -> RowCache:
        return self._cache

    @property
    def writer(self) -> BatchedWriter:
        return self._writer

    @property
    def resolver(self) -> FunctionResolver:
        return self._resolver

    @property
    def propagator(self) -> ChangePropagator:
        return self._propagator

    @property
    def graph(self) -> DependencyGraph:
        return self._propagator.graph

    def snapshot(self) -> list[dict[str, Any]]:
        return self._cache.snapshot()

    def get_row(self, row_id: str) -> dict[str, Any] | None:
        return self._cache.get(row_id)

    # ------------------------------------------------------------------
    # Edits
    # ------------------------------------------------------------------

    @contextlib.asynccontextmanager
    async def _row_guard(self, row_id: str) -> AsyncIterator[None]:
        if not self._options.serialize_row_edits:
            yield
            return
        entry = self._row_locks.get(row_id)
        if entry is None:
            entry = self._row_locks[row_id] = _RowLock()
        entry.users += 1
        try:
            async with entry.lock:
                yield
        finally:
            entry.users -= 1
            if entry.users == 0:
                del self._row_locks[row_id]

    async def on_field_changed(
        self,
        row_id: str,
        column_id: str,
        raw_value: Any,
    ) -> PropagationResult:
        """Apply a user edit: coerce, update the cache, queue it, propagate.

        Raises UnknownColumnError for an unknown column and ValueError for a
        malformed date, before anything is changed.
        """
        column = self._registry.get(column_id)
        if column is None:
            raise UnknownColumnError(column_id)
        value = coerce_value(column.data_type, raw_value)

        async with self._row_guard(row_id):
            current = self._cache.value(row_id, column_id, MISSING)
            if row_id in self._cache and values_equal(current, value):
                return PropagationResult(row_id=row_id, changed_column=column_id)
            self._cache.apply(row_id, column_id, value)
            self._writer.queue_field_update(row_id, column_id, value)
            return await self._propagator.propagate(row_id, column_id, value)

    async def clear_row(self, row_id: str) -> list[PropagationResult]:
        """Blank every plain field of a row; the row itself stays."""
        if row_id not in self._cache:
            raise KeyError(f"Row '{row_id}' does not exist")
        results = []
        for column in self._registry.list_columns():
            if column.is_computed:
                continue
            if self._cache.value(row_id, column.id) is None:
                continue
            results.append(await self.on_field_changed(row_id, column.id, None))
        return results

    # ------------------------------------------------------------------
    # Maintenance
    # ------------------------------------------------------------------

    async def recompute_all(
        self,
        rows: Iterable[Mapping[str, Any]] | None = None,
        columns: Iterable[Column] | None = None,
    ) -> RecomputeSummary:
        return await recompute_all(self._propagator, rows, columns)

    async def recompute_for_function(self, ref: str) -> RecomputeSummary:
        """Reload computation *ref* and recompute the columns bound to it.

        Changed results propagate to their dependents; writes are flushed
        before returning.
        """
        self._resolver.invalidate(ref)
        summary = RecomputeSummary()
        impacted = [c for c in self._registry.computed_columns() if c.computation == ref]
        if not impacted:
            return summary

        for row_id in self._cache.row_ids():
            summary.rows += 1
            async with self._row_guard(row_id):
                for column in impacted:
                    row = self._cache.get(row_id) or {"id": row_id}
                    result = await self._propagator.compute_function_for_row(row, column)
                    summary.record(result)
                    if result.changed:
                        await self._propagator.propagate(row_id, column.id, result.value)

        await self._writer.flush()
        return summary

    # ------------------------------------------------------------------
    # External changes
    # ------------------------------------------------------------------

    def _spawn(self, coro: Coroutine[Any, Any, Any], what: str) -> bool:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            coro.close()
            logger.debug("Dropping %s: no running event loop", what)
            return False
        task = loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._task_done)
        return True

    def _task_done(self, task: asyncio.Task[Any]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background sheet task failed", exc_info=task.exception())

    def _on_store_change(self, row: dict[str, Any]) -> None:
        self._spawn(self.apply_external_change(row), f"change for row {row.get('id')}")

    async def apply_external_change(self, row: Mapping[str, Any]) -> list[PropagationResult]:
        """Merge a row changed by another writer and recompute its dependents.

        Fields with an unconfirmed local edit keep the local value.  Merged
        fields are already persisted and are not queued again.
        """
        row_id = str(row["id"])
        async with self._row_guard(row_id):
            changed = self._cache.merge_confirmed(row)
            results = []
            for column_id, value in changed.items():
                if column_id not in self._registry:
                    continue
                results.append(await self._propagator.propagate(row_id, column_id, value))
        return results

    # ------------------------------------------------------------------
    # Persistence failures
    # ------------------------------------------------------------------

    def on_write_failed(self, handler: WriteFailureHandler) -> Callable[[], None]:
        self._failure_handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._failure_handlers:
                self._failure_handlers.remove(handler)

        return unsubscribe

    def _handle_write_failure(self, error: PersistenceError) -> None:
        reverted: dict[str, Any] = {}
        if self._options.rollback_on_failure:
            newer = self._writer.pending_fields(error.row_id)
            stale = [c for c in error.fields if c not in newer]
            reverted = self._cache.revert(error.row_id, stale)
            self._writer.discard_failed(error.row_id)
            logger.warning(
                "Reverted %s on row %s after rejected write",
                ", ".join(sorted(reverted)) or "nothing", error.row_id,
            )
            sources = [
                c for c in reverted
                if c in self._registry and not self._registry[c].is_computed
            ]
            if sources:
                self._spawn(
                    self._rederive(error.row_id, sources),
                    f"re-derivation for row {error.row_id}",
                )
        notice = WriteFailure(error=error, reverted=reverted)
        for handler in list(self._failure_handlers):
            handler(notice)

    async def _rederive(self, row_id: str, column_ids: list[str]) -> None:
        # Computed fields written after the failed batch may still reflect the
        # rejected inputs.
        async with self._row_guard(row_id):
            for column_id in column_ids:
                await self._propagator.propagate(
                    row_id, column_id, self._cache.value(row_id, column_id)
                )
