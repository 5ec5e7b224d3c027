"""Exception types raised and reported by the sheetflow engine."""

from __future__ import annotations

from typing import Any


class SheetflowError(Exception):
    """Base class for every error the engine raises or reports."""


class UnknownColumnError(SheetflowError, KeyError):
    """A column id or name that the registry does not know."""

    def __init__(self, key: str) -> None:
        super().__init__(key)
        self.key = key

    def __str__(self) -> str:
        return f"Column '{self.key}' does not exist"


class CircularReferenceError(SheetflowError, ValueError):
    """The column set would make the dependency graph cyclic."""

    def __init__(self, cycle: list[str]) -> None:
        self.cycle = list(cycle)
        super().__init__(
            f"Circular reference detected involving: {' -> '.join(self.cycle)}"
        )


class ResolutionError(SheetflowError):
    """A computed column's callable could not be obtained."""

    def __init__(self, computation: str | None, reason: str) -> None:
        self.computation = computation
        self.reason = reason
        super().__init__(f"Cannot resolve computation {computation!r}: {reason}")


class ComputationError(SheetflowError):
    """A computation raised, timed out, or produced an error value."""

    def __init__(self, column_id: str, row_id: str, cause: BaseException | str) -> None:
        self.column_id = column_id
        self.row_id = row_id
        self.cause = cause
        super().__init__(
            f"Computation for column '{column_id}' failed on row '{row_id}': {cause}"
        )


class PersistenceError(SheetflowError):
    """A row's multi-field write was rejected by the row store."""

    def __init__(
        self,
        row_id: str,
        fields: dict[str, Any],
        cause: BaseException,
    ) -> None:
        self.row_id = row_id
        self.fields = dict(fields)
        self.cause = cause
        names = ", ".join(sorted(self.fields))
        super().__init__(f"Failed to persist row '{row_id}' ({names}): {cause}")
