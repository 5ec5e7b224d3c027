"""Row stores: the persistence collaborators the engine reads from and writes to."""

from __future__ import annotations

import logging
import os
from collections.abc import Callable, Iterable, Mapping
from typing import Any, Protocol, runtime_checkable

from sheetflow._values import values_equal

logger = logging.getLogger(__name__)

RowListener = Callable[[dict[str, Any]], None]


@runtime_checkable
class RowStore(Protocol):
    """Backing store for sheet rows.

    ``write_fields`` is an atomic multi-field update for one row that creates
    the row when it does not exist.  ``subscribe`` delivers full rows changed
    by other writers and returns a callable that unsubscribes.
    """

    async def get_all_rows(self) -> list[dict[str, Any]]:
        ...

    def subscribe(self, on_change: RowListener) -> Callable[[], None]:
        ...

    async def write_fields(self, row_id: str, fields: dict[str, Any]) -> None:
        ...


class _ListenerMixin:
    def __init__(self) -> None:
        self._listeners: list[RowListener] = []

    def subscribe(self, on_change: RowListener) -> Callable[[], None]:
        self._listeners.append(on_change)

        def unsubscribe() -> None:
            if on_change in self._listeners:
                self._listeners.remove(on_change)

        return unsubscribe

    def _notify(self, row: dict[str, Any]) -> None:
        for listener in list(self._listeners):
            listener(dict(row))


class InMemoryRowStore(_ListenerMixin):
    """Dict-backed store; ``push`` simulates a change made by another client."""

    def __init__(self, rows: Iterable[Mapping[str, Any]] = ()) -> None:
        super().__init__()
        self._rows: dict[str, dict[str, Any]] = {}
        self.writes: list[tuple[str, dict[str, Any]]] = []
        for row in rows:
            data = dict(row)
            data["id"] = str(data["id"])
            self._rows[data["id"]] = data

    async def get_all_rows(self) -> list[dict[str, Any]]:
        return [dict(r) for r in self._rows.values()]

    async def write_fields(self, row_id: str, fields: dict[str, Any]) -> None:
        row = self._rows.setdefault(row_id, {"id": row_id})
        row.update(fields)
        self.writes.append((row_id, dict(fields)))

    def row(self, row_id: str) -> dict[str, Any] | None:
        data = self._rows.get(row_id)
        return dict(data) if data is not None else None

    def push(self, row_id: str, fields: Mapping[str, Any]) -> None:
        row = self._rows.setdefault(row_id, {"id": row_id})
        row.update(fields)
        self._notify(row)


class XlsxRowStore(_ListenerMixin):
    """Rows kept in one worksheet of an .xlsx workbook (openpyxl).

    Row 1 holds column ids; the ``id_column`` header marks the row key.
    Writes update the in-memory workbook, appending unseen rows and columns;
    :meth:`save` writes it to disk and :meth:`reload` re-reads the file,
    notifying subscribers of rows that changed underneath.
    """

    def __init__(
        self,
        filename: str | os.PathLike[str],
        sheet: str | None = None,
        id_column: str = "id",
    ) -> None:
        super().__init__()
        self._filename = str(filename)
        self._sheet_name = sheet
        self._id_column = id_column
        self._workbook: Any = None
        self._ws: Any = None
        self._headers: list[str] = []
        self._row_index: dict[str, int] = {}
        self._open()

    @classmethod
    def create(
        cls,
        filename: str | os.PathLike[str],
        rows: Iterable[Mapping[str, Any]],
        columns: Iterable[str] | None = None,
        sheet: str = "Bookings",
        id_column: str = "id",
    ) -> XlsxRowStore:
        """Write *rows* to a new workbook at *filename* and open it."""
        from openpyxl import Workbook

        data = [dict(r) for r in rows]
        headers = [id_column]
        for name in columns or ():
            if name not in headers:
                headers.append(name)
        for row in data:
            for name in row:
                if name not in headers:
                    headers.append(name)

        wb = Workbook()
        ws = wb.active
        ws.title = sheet
        ws.append(headers)
        for row in data:
            ws.append([row.get(h) for h in headers])
        wb.save(str(filename))
        wb.close()
        return cls(filename, sheet=sheet, id_column=id_column)

    def _open(self) -> None:
        from openpyxl import load_workbook

        self._workbook = load_workbook(self._filename)
        if self._sheet_name is not None:
            if self._sheet_name not in self._workbook.sheetnames:
                raise KeyError(f"Worksheet '{self._sheet_name}' does not exist")
            self._ws = self._workbook[self._sheet_name]
        else:
            self._ws = self._workbook.active

        header_row = next(self._ws.iter_rows(min_row=1, max_row=1, values_only=True), ())
        self._headers = [str(h) if h is not None else "" for h in header_row]
        if self._id_column not in self._headers:
            raise ValueError(
                f"Worksheet '{self._ws.title}' has no '{self._id_column}' header column"
            )

        id_idx = self._headers.index(self._id_column)
        self._row_index = {}
        for r, values in enumerate(self._ws.iter_rows(min_row=2, values_only=True), start=2):
            if id_idx < len(values) and values[id_idx] is not None:
                self._row_index[str(values[id_idx])] = r

    def _read_row(self, r: int) -> dict[str, Any]:
        row: dict[str, Any] = {}
        for c, name in enumerate(self._headers, start=1):
            if not name:
                continue
            value = self._ws.cell(row=r, column=c).value
            if name == self._id_column:
                row["id"] = str(value)
            elif value is not None:
                row[name] = value
        return row

    def _read_all(self) -> dict[str, dict[str, Any]]:
        return {row_id: self._read_row(r) for row_id, r in self._row_index.items()}

    @property
    def headers(self) -> list[str]:
        return list(self._headers)

    async def get_all_rows(self) -> list[dict[str, Any]]:
        return list(self._read_all().values())

    async def write_fields(self, row_id: str, fields: dict[str, Any]) -> None:
        r = self._row_index.get(row_id)
        if r is None:
            r = self._ws.max_row + 1
            id_col = self._headers.index(self._id_column) + 1
            self._ws.cell(row=r, column=id_col, value=row_id)
            self._row_index[row_id] = r
        for name, value in fields.items():
            if name == "id":
                continue
            if name not in self._headers:
                self._headers.append(name)
                self._ws.cell(row=1, column=len(self._headers), value=name)
            self._ws.cell(row=r, column=self._headers.index(name) + 1, value=value)

    def save(self, filename: str | os.PathLike[str] | None = None) -> None:
        target = str(filename) if filename is not None else self._filename
        self._workbook.save(target)
        logger.debug("Saved %d rows to %s", len(self._row_index), target)

    def reload(self) -> list[dict[str, Any]]:
        """Re-read the file; notify subscribers of changed rows and return them."""
        before = self._read_all()
        self._workbook.close()
        self._open()
        changed: list[dict[str, Any]] = []
        for row_id, row in self._read_all().items():
            old = before.get(row_id)
            if old is None or not values_equal(old, row):
                changed.append(row)
                self._notify(row)
        return changed

    def close(self) -> None:
        if self._workbook is not None:
            self._workbook.close()
