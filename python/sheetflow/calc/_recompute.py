"""Full recompute: every computed column for every row, then an immediate flush."""

from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping
from typing import TYPE_CHECKING, Any

from sheetflow.calc._protocol import RecomputeSummary

if TYPE_CHECKING:
    from sheetflow._columns import Column
    from sheetflow.calc._propagator import ChangePropagator

logger = logging.getLogger(__name__)


def _dependency_ordered(propagator: ChangePropagator, columns: list[Column]) -> list[Column]:
    # Chained columns read their source's fresh value within one pass.
    wanted = {c.id for c in columns}
    try:
        ordered = [c for c in propagator.graph.topological_order() if c.id in wanted]
    except ValueError:
        return columns
    seen = {c.id for c in ordered}
    return ordered + [c for c in columns if c.id not in seen]


async def recompute_all(
    propagator: ChangePropagator,
    rows: Iterable[Mapping[str, Any]] | None = None,
    columns: Iterable[Column] | None = None,
    flush: bool = True,
) -> RecomputeSummary:
    """Recompute *columns* (default: all computed) for *rows* (default: the cache).

    No graph pruning: every pair is evaluated.  A failing cell is recorded
    and skipped.  Unchanged values produce no writes, so an immediate second
    run writes nothing.
    """
    if rows is None:
        rows = propagator.cache.snapshot()
    if columns is None:
        cols = list(propagator.registry.computed_columns())
    else:
        cols = [c for c in columns if c.is_computed]
    cols = _dependency_ordered(propagator, cols)

    summary = RecomputeSummary()
    for row in rows:
        summary.rows += 1
        current = dict(row)
        for col in cols:
            result = await propagator.compute_function_for_row(current, col)
            summary.record(result)
            if result.changed:
                current[col.id] = result.value

    logger.info(
        "Recomputed %d cells over %d rows: %d updated, %d failed",
        summary.cells, summary.rows, summary.updated, summary.failed,
    )

    if flush:
        await propagator.writer.flush()
    return summary
