"""sheetflow — incremental computed columns for row-oriented booking sheets.

Usage::

    from sheetflow import ArgumentBinding, Column, DataType, InMemoryRowStore, Sheet
    from sheetflow.calc import FunctionRegistry

    functions = FunctionRegistry()
    functions.register("subtract", lambda a, b: (a or 0) - (b or 0))

    columns = [
        Column("price", "Price", DataType.CURRENCY),
        Column("discount", "Discount", DataType.CURRENCY),
        Column("total", "Total", DataType.FUNCTION, computation="subtract",
               arguments=(ArgumentBinding(column_reference="Price"),
                          ArgumentBinding(column_reference="Discount"))),
    ]
    sheet = Sheet(InMemoryRowStore([{"id": "1", "price": 100, "discount": 10}]),
                  columns, functions)
    await sheet.load()
    await sheet.on_field_changed("1", "discount", "30")   # total -> 70
"""

import os
from collections.abc import Iterable

from sheetflow._cache import RowCache, TentativeWrite, WriteState
from sheetflow._columns import ArgumentBinding, Column, ColumnKind, ColumnRegistry, DataType
from sheetflow._errors import (
    CircularReferenceError,
    ComputationError,
    PersistenceError,
    ResolutionError,
    SheetflowError,
    UnknownColumnError,
)
from sheetflow._options import EngineOptions
from sheetflow._sheet import Sheet, WriteFailure
from sheetflow._store import InMemoryRowStore, RowStore, XlsxRowStore
from sheetflow._values import coerce_value, values_equal
from sheetflow._writer import BatchedWriter, FlushResult
from sheetflow.calc._protocol import FunctionCompiler

__version__ = "0.1.0"

__all__ = [
    "__version__",
    "ArgumentBinding",
    "BatchedWriter",
    "CircularReferenceError",
    "Column",
    "ColumnKind",
    "ColumnRegistry",
    "ComputationError",
    "DataType",
    "EngineOptions",
    "FlushResult",
    "InMemoryRowStore",
    "PersistenceError",
    "ResolutionError",
    "RowCache",
    "RowStore",
    "Sheet",
    "SheetflowError",
    "TentativeWrite",
    "UnknownColumnError",
    "WriteFailure",
    "WriteState",
    "XlsxRowStore",
    "coerce_value",
    "open_xlsx_sheet",
    "values_equal",
]


async def open_xlsx_sheet(
    filename: str | os.PathLike[str],
    columns: ColumnRegistry | Iterable[Column],
    compiler: FunctionCompiler,
    sheet: str | None = None,
    options: EngineOptions | None = None,
) -> Sheet:
    """Open a worksheet of bookings as a loaded :class:`Sheet`.

    Writes land in the in-memory workbook; call ``await sheet.flush()`` and
    then ``sheet.store.save()`` to write the file.
    """
    store = XlsxRowStore(filename, sheet=sheet)
    result = Sheet(store, columns, compiler, options)
    await result.load()
    return result
