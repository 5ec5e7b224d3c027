"""Optimistic in-memory mirror of all rows.

Every local edit or computed result lands here immediately.  Each field
written locally carries a :class:`TentativeWrite` that moves from
``APPLIED`` to ``CONFIRMED`` once the store accepts it, or to ``REVERTED``
when the store rejects it and the last known-good value is restored.
"""

from __future__ import annotations

import enum
from collections.abc import Iterable, Iterator, Mapping
from dataclasses import dataclass
from typing import Any

from sheetflow._values import values_equal


class _Missing:
    __slots__ = ()

    def __repr__(self) -> str:
        return "<missing>"


MISSING: Any = _Missing()


class WriteState(enum.Enum):
    APPLIED = "applied"
    CONFIRMED = "confirmed"
    REVERTED = "reverted"


@dataclass
class TentativeWrite:
    """One optimistic field value awaiting confirmation."""

    row_id: str
    column_id: str
    value: Any
    previous: Any = MISSING  # last known-good value
    state: WriteState = WriteState.APPLIED

    def confirm(self) -> None:
        if self.state is not WriteState.APPLIED:
            raise RuntimeError(f"Cannot confirm a {self.state.value} write")
        self.state = WriteState.CONFIRMED

    def revert(self) -> None:
        if self.state is not WriteState.APPLIED:
            raise RuntimeError(f"Cannot revert a {self.state.value} write")
        self.state = WriteState.REVERTED


class RowCache:
    """Row id -> field map, plus the confirmed values behind it."""

    __slots__ = ("_rows", "_confirmed", "_tentative")

    def __init__(self, rows: Iterable[Mapping[str, Any]] = ()) -> None:
        self._rows: dict[str, dict[str, Any]] = {}
        self._confirmed: dict[str, dict[str, Any]] = {}
        self._tentative: dict[str, dict[str, TentativeWrite]] = {}
        self.load(rows)

    def load(self, rows: Iterable[Mapping[str, Any]]) -> None:
        """Replace the cache with rows known to be persisted."""
        self._rows.clear()
        self._confirmed.clear()
        self._tentative.clear()
        for row in rows:
            row_id = str(row["id"])
            data = dict(row)
            data["id"] = row_id
            self._rows[row_id] = data
            self._confirmed[row_id] = dict(data)

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    def get(self, row_id: str) -> dict[str, Any] | None:
        row = self._rows.get(row_id)
        return dict(row) if row is not None else None

    def value(self, row_id: str, column_id: str, default: Any = None) -> Any:
        return self._rows.get(row_id, {}).get(column_id, default)

    def known_good(self, row_id: str, column_id: str, default: Any = None) -> Any:
        return self._confirmed.get(row_id, {}).get(column_id, default)

    def snapshot(self) -> list[dict[str, Any]]:
        return [dict(r) for r in self._rows.values()]

    def row_ids(self) -> list[str]:
        return list(self._rows)

    def tentative(self, row_id: str) -> dict[str, TentativeWrite]:
        return dict(self._tentative.get(row_id, {}))

    def has_tentative(self, row_id: str, column_id: str) -> bool:
        return column_id in self._tentative.get(row_id, {})

    def __contains__(self, row_id: object) -> bool:
        return row_id in self._rows

    def __iter__(self) -> Iterator[dict[str, Any]]:
        return iter(self.snapshot())

    def __len__(self) -> int:
        return len(self._rows)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def ensure_row(self, row_id: str) -> dict[str, Any]:
        row = self._rows.get(row_id)
        if row is None:
            row = {"id": row_id}
            self._rows[row_id] = row
            self._confirmed[row_id] = {"id": row_id}
        return row

    def apply(self, row_id: str, column_id: str, value: Any) -> TentativeWrite:
        """Optimistically set one field; returns its tentative write."""
        row = self.ensure_row(row_id)
        pending = self._tentative.setdefault(row_id, {})
        prior = pending.get(column_id)
        previous = (
            prior.previous if prior is not None
            else self._confirmed[row_id].get(column_id, MISSING)
        )
        row[column_id] = value
        write = TentativeWrite(row_id, column_id, value, previous)
        pending[column_id] = write
        return write

    def merge_confirmed(self, row: Mapping[str, Any]) -> dict[str, Any]:
        """Merge values read back from the store.

        Fields with an unconfirmed local edit are left alone.  Returns the
        fields whose cached value actually changed.
        """
        row_id = str(row["id"])
        current = self.ensure_row(row_id)
        confirmed = self._confirmed[row_id]
        pending = self._tentative.get(row_id, {})
        changed: dict[str, Any] = {}
        for column_id, value in row.items():
            if column_id == "id" or column_id in pending:
                continue
            confirmed[column_id] = value
            if column_id not in current or not values_equal(current[column_id], value):
                current[column_id] = value
                changed[column_id] = value
        return changed

    def confirm(self, row_id: str, fields: Mapping[str, Any]) -> list[TentativeWrite]:
        """Record *fields* as persisted; confirms matching tentative writes."""
        confirmed = self._confirmed.setdefault(row_id, {"id": row_id})
        pending = self._tentative.get(row_id, {})
        done: list[TentativeWrite] = []
        for column_id, value in fields.items():
            confirmed[column_id] = value
            write = pending.get(column_id)
            if write is None:
                continue
            if values_equal(write.value, value):
                write.confirm()
                del pending[column_id]
                done.append(write)
            else:
                # A newer edit is still in flight; its fallback is now this value.
                write.previous = value
        if not pending:
            self._tentative.pop(row_id, None)
        return done

    def revert(self, row_id: str, column_ids: Iterable[str]) -> dict[str, Any]:
        """Restore the last known-good value of each field; returns what was restored."""
        row = self._rows.get(row_id)
        pending = self._tentative.get(row_id, {})
        restored: dict[str, Any] = {}
        if row is None:
            return restored
        for column_id in column_ids:
            write = pending.pop(column_id, None)
            if write is None:
                continue
            write.revert()
            if write.previous is MISSING:
                row.pop(column_id, None)
                restored[column_id] = None
            else:
                row[column_id] = write.previous
                restored[column_id] = write.previous
        if not pending:
            self._tentative.pop(row_id, None)
        return restored
