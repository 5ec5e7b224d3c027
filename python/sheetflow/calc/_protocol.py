"""Collaborator protocols and result dataclasses for the calc engine."""

from __future__ import annotations

import enum
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from typing import Any, Protocol, runtime_checkable

from sheetflow._errors import SheetflowError

Computation = Callable[..., Any]


@runtime_checkable
class FunctionCompiler(Protocol):
    """External service turning a stored computation reference into a callable.

    May return the callable directly or an awaitable resolving to it; raises
    (any exception) when the reference is unknown or fails to compile.
    """

    def get_callable(self, ref: str) -> Computation | Awaitable[Computation]:
        ...


class CellStatus(enum.Enum):
    UPDATED = "updated"  # value changed; cache updated and write queued
    UNCHANGED = "unchanged"  # structurally equal to the stored value
    FAILED = "failed"  # resolution or computation error; prior value kept
    SKIPPED = "skipped"  # not a computed column, or no computation bound


@dataclass(frozen=True)
class CellDelta:
    """A single field's value change from recomputation."""

    row_id: str
    column_id: str
    old_value: Any
    new_value: Any
    computation: str | None = None


@dataclass(frozen=True)
class CellResult:
    """Outcome of computing one computed column for one row."""

    row_id: str
    column_id: str
    status: CellStatus
    value: Any = None
    previous: Any = None
    error: SheetflowError | None = None

    @property
    def ok(self) -> bool:
        return self.status in (CellStatus.UPDATED, CellStatus.UNCHANGED)

    @property
    def changed(self) -> bool:
        return self.status is CellStatus.UPDATED

    def as_delta(self, computation: str | None = None) -> CellDelta:
        return CellDelta(
            row_id=self.row_id,
            column_id=self.column_id,
            old_value=self.previous,
            new_value=self.value,
            computation=computation,
        )


@dataclass(frozen=True)
class PropagationResult:
    """Result of one propagation pass for one row."""

    row_id: str
    changed_column: str
    evaluated: tuple[str, ...] = ()  # computed column ids, evaluation order
    deltas: tuple[CellDelta, ...] = ()
    failures: tuple[CellResult, ...] = ()

    @property
    def propagated_cells(self) -> int:
        return len(self.deltas)


@dataclass
class RecomputeSummary:
    """Counters from a full recompute."""

    rows: int = 0
    cells: int = 0
    updated: int = 0
    unchanged: int = 0
    skipped: int = 0
    failures: list[CellResult] = field(default_factory=list)

    def record(self, result: CellResult) -> None:
        self.cells += 1
        if result.status is CellStatus.UPDATED:
            self.updated += 1
        elif result.status is CellStatus.UNCHANGED:
            self.unchanged += 1
        elif result.status is CellStatus.SKIPPED:
            self.skipped += 1
        else:
            self.failures.append(result)

    @property
    def failed(self) -> int:
        return len(self.failures)
