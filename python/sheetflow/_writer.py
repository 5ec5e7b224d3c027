"""Debounced, coalescing writer that persists field updates per row."""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import TYPE_CHECKING, Any

from sheetflow._errors import PersistenceError
from sheetflow._options import EngineOptions

if TYPE_CHECKING:
    from sheetflow._store import RowStore

logger = logging.getLogger(__name__)

CommittedHandler = Callable[[str, dict[str, Any]], None]
FailedHandler = Callable[[PersistenceError], None]


def _subscribe(handlers: list[Any], handler: Any) -> Callable[[], None]:
    handlers.append(handler)

    def unsubscribe() -> None:
        if handler in handlers:
            handlers.remove(handler)

    return unsubscribe


@dataclass
class FlushResult:
    """Rows written by one flush, and the rows the store rejected."""

    committed: dict[str, dict[str, Any]] = field(default_factory=dict)
    failed: dict[str, PersistenceError] = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return not self.failed

    @property
    def writes(self) -> int:
        return sum(len(f) for f in self.committed.values())


class BatchedWriter:
    """Accumulates ``(row, field) -> value`` writes and flushes them per row.

    Writes to the same field collapse until the next flush (last value wins).
    The flush timer restarts on every enqueue but never beyond
    ``max_flush_latency_seconds`` after the first write of a cycle, and a
    queue holding ``max_rows_per_flush`` rows flushes at once.  Without a
    running event loop nothing is scheduled and the caller must ``flush()``.

    Rows the store rejects are parked in :attr:`failed` rather than retried;
    :meth:`requeue_failed` or :meth:`discard_failed` settles them.
    """

    def __init__(self, store: RowStore, options: EngineOptions | None = None) -> None:
        self._store = store
        self._options = options or EngineOptions()
        self._pending: dict[str, dict[str, Any]] = {}
        self._failed: dict[str, dict[str, Any]] = {}
        self._timer: asyncio.TimerHandle | None = None
        self._first_queued_at: float | None = None
        self._tasks: set[asyncio.Task[FlushResult]] = set()
        self._flush_lock = asyncio.Lock()
        self._committed_handlers: list[CommittedHandler] = []
        self._failed_handlers: list[FailedHandler] = []

    # ------------------------------------------------------------------
    # Queue
    # ------------------------------------------------------------------

    def queue_field_update(self, row_id: str, column_id: str, value: Any) -> None:
        self._pending.setdefault(row_id, {})[column_id] = value
        self._schedule()

    @property
    def pending(self) -> dict[str, dict[str, Any]]:
        return {row_id: dict(fields) for row_id, fields in self._pending.items()}

    def pending_fields(self, row_id: str) -> dict[str, Any]:
        return dict(self._pending.get(row_id, {}))

    @property
    def pending_count(self) -> int:
        return sum(len(f) for f in self._pending.values())

    @property
    def failed(self) -> dict[str, dict[str, Any]]:
        return {row_id: dict(fields) for row_id, fields in self._failed.items()}

    def requeue_failed(self, row_id: str) -> bool:
        """Queue a rejected row's writes again; newer pending values win."""
        fields = self._failed.pop(row_id, None)
        if not fields:
            return False
        pending = self._pending.setdefault(row_id, {})
        for column_id, value in fields.items():
            pending.setdefault(column_id, value)
        self._schedule()
        return True

    def discard_failed(self, row_id: str) -> dict[str, Any]:
        return self._failed.pop(row_id, {})

    # ------------------------------------------------------------------
    # Listeners
    # ------------------------------------------------------------------

    def on_committed(self, handler: CommittedHandler) -> Callable[[], None]:
        return _subscribe(self._committed_handlers, handler)

    def on_failed(self, handler: FailedHandler) -> Callable[[], None]:
        return _subscribe(self._failed_handlers, handler)

    # ------------------------------------------------------------------
    # Scheduling
    # ------------------------------------------------------------------

    def _schedule(self) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.debug("No running event loop; %d rows wait for flush()", len(self._pending))
            return

        now = loop.time()
        if self._first_queued_at is None:
            self._first_queued_at = now

        opts = self._options
        if len(self._pending) >= opts.max_rows_per_flush:
            delay = 0.0
        else:
            remaining = self._first_queued_at + opts.max_flush_latency_seconds - now
            delay = max(0.0, min(opts.debounce_seconds, remaining))

        if self._timer is not None:
            self._timer.cancel()
        self._timer = loop.call_later(delay, self._on_timer)

    def _on_timer(self) -> None:
        self._timer = None
        task = asyncio.ensure_future(self.flush())
        self._tasks.add(task)
        task.add_done_callback(self._task_done)

    def _task_done(self, task: asyncio.Task[FlushResult]) -> None:
        self._tasks.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error("Background flush failed", exc_info=task.exception())

    # ------------------------------------------------------------------
    # Flush
    # ------------------------------------------------------------------

    async def flush(self) -> FlushResult:
        """Write every pending row now, one multi-field update per row.

        Flushes run one at a time, so a newer value for a field never
        reaches the store before an older one.
        """
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None
        self._first_queued_at = None

        async with self._flush_lock:
            return await self._flush_pending()

    async def _flush_pending(self) -> FlushResult:
        result = FlushResult()
        if not self._pending:
            return result

        entries = list(self._pending.items())
        self._pending = {}

        size = self._options.max_batch_size
        chunks = [entries[i : i + size] for i in range(0, len(entries), size)]
        logger.debug("Flushing %d rows in %d chunks", len(entries), len(chunks))

        try:
            await asyncio.gather(*(self._write_chunk(chunk, result) for chunk in chunks))
        finally:
            unsettled = [
                (row_id, fields) for row_id, fields in entries
                if row_id not in result.committed and row_id not in result.failed
            ]
            if unsettled:
                # Interrupted flush: rows without an outcome go back to the queue.
                for row_id, fields in unsettled:
                    pending = self._pending.setdefault(row_id, {})
                    for column_id, value in fields.items():
                        pending.setdefault(column_id, value)
                logger.warning("Flush interrupted; %d rows requeued", len(unsettled))

        if result.failed:
            logger.error(
                "Flush finished with %d of %d rows rejected", len(result.failed), len(entries)
            )
        return result

    async def _write_chunk(
        self,
        chunk: list[tuple[str, dict[str, Any]]],
        result: FlushResult,
    ) -> None:
        outcomes = await asyncio.gather(
            *(self._store.write_fields(row_id, dict(fields)) for row_id, fields in chunk),
            return_exceptions=True,
        )
        for (row_id, fields), outcome in zip(chunk, outcomes):
            if isinstance(outcome, BaseException) and not isinstance(outcome, Exception):
                raise outcome
            if isinstance(outcome, Exception):
                error = PersistenceError(row_id, fields, outcome)
                logger.error("%s", error)
                self._failed.setdefault(row_id, {}).update(fields)
                result.failed[row_id] = error
                for failed_handler in list(self._failed_handlers):
                    failed_handler(error)
            else:
                result.committed[row_id] = fields
                for handler in list(self._committed_handlers):
                    handler(row_id, fields)

    async def aclose(self) -> FlushResult:
        """Flush what is pending and wait for background flushes to finish."""
        result = await self.flush()
        if self._tasks:
            await asyncio.gather(*list(self._tasks), return_exceptions=True)
        return result
