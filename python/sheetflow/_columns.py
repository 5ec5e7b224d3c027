"""Column definitions and the registry that owns the current column set."""

from __future__ import annotations

import enum
import logging
from collections.abc import Callable, Iterable, Iterator, Mapping
from dataclasses import dataclass, field, replace
from typing import Any

from sheetflow._errors import CircularReferenceError, UnknownColumnError

logger = logging.getLogger(__name__)


class ColumnKind(enum.Enum):
    PLAIN = "plain"
    COMPUTED = "computed"


class DataType(enum.Enum):
    """Declared value type of a column; drives edit coercion."""

    TEXT = "string"
    NUMBER = "number"
    CURRENCY = "currency"
    DATE = "date"
    BOOLEAN = "boolean"
    SELECT = "select"
    EMAIL = "email"
    FUNCTION = "function"

    @classmethod
    def parse(cls, raw: str | DataType | None) -> DataType:
        if isinstance(raw, DataType):
            return raw
        if not raw:
            return cls.TEXT
        canon = raw.strip().lower()
        if canon == "text":
            return cls.TEXT
        for member in cls:
            if member.value == canon:
                return member
        logger.debug("Unknown data type %r, treating as text", raw)
        return cls.TEXT


@dataclass(frozen=True)
class ArgumentBinding:
    """One positional argument of a computed column.

    Exactly one source applies, checked in this order: ``column_references``
    (a list of column names, fan-in), ``column_reference`` (one column
    name), ``value`` (a literal). With none of them the argument is ``None``.
    """

    name: str = ""
    type: str = ""
    value: Any = None
    column_reference: str | None = None
    column_references: tuple[str, ...] = ()

    @property
    def referenced_names(self) -> tuple[str, ...]:
        if self.column_references:
            return tuple(n for n in self.column_references if n)
        if self.column_reference:
            return (self.column_reference,)
        return ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> ArgumentBinding:
        refs = data.get("columnReferences") or ()
        return cls(
            name=str(data.get("name") or ""),
            type=str(data.get("type") or ""),
            value=data.get("value"),
            column_reference=data.get("columnReference") or None,
            column_references=tuple(str(r) for r in refs),
        )


@dataclass(frozen=True)
class Column:
    """A sheet column. ``id`` keys row fields; ``name`` is what references use."""

    id: str
    name: str
    data_type: DataType = DataType.TEXT
    computation: str | None = None
    arguments: tuple[ArgumentBinding, ...] = field(default=())

    @property
    def kind(self) -> ColumnKind:
        if self.computation or self.data_type is DataType.FUNCTION:
            return ColumnKind.COMPUTED
        return ColumnKind.PLAIN

    @property
    def is_computed(self) -> bool:
        return self.kind is ColumnKind.COMPUTED

    @property
    def referenced_names(self) -> tuple[str, ...]:
        """Column names this column reads, in argument order, duplicates removed."""
        seen: dict[str, None] = {}
        for arg in self.arguments:
            for name in arg.referenced_names:
                seen.setdefault(name, None)
        return tuple(seen)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> Column:
        """Build a column from its stored metadata document."""
        col_id = data.get("id")
        if not col_id:
            raise ValueError("Column metadata is missing 'id'")
        name = data.get("columnName") or data.get("name") or col_id
        return cls(
            id=str(col_id),
            name=str(name),
            data_type=DataType.parse(data.get("dataType")),
            computation=data.get("function") or data.get("computation") or None,
            arguments=tuple(
                ArgumentBinding.from_dict(a) for a in data.get("arguments") or ()
            ),
        )


ColumnsChangedHandler = Callable[[tuple[Column, ...]], None]


class ColumnRegistry:
    """Ordered, mutable set of column definitions.

    Every change is validated (unique ids, acyclic references) before it is
    installed; a rejected change leaves the previous set in place.  Handlers
    registered with :meth:`on_columns_changed` run after each installed change.
    """

    __slots__ = ("_columns", "_by_id", "_by_name", "_handlers")

    def __init__(self, columns: Iterable[Column] = ()) -> None:
        self._columns: tuple[Column, ...] = ()
        self._by_id: dict[str, Column] = {}
        self._by_name: dict[str, Column] = {}
        self._handlers: list[ColumnsChangedHandler] = []
        cols = tuple(columns)
        if cols:
            self._install(cols)

    # ------------------------------------------------------------------
    # Read access
    # ------------------------------------------------------------------

    def list_columns(self) -> tuple[Column, ...]:
        return self._columns

    def computed_columns(self) -> tuple[Column, ...]:
        return tuple(c for c in self._columns if c.is_computed)

    def get(self, column_id: str) -> Column | None:
        return self._by_id.get(column_id)

    def by_name(self, name: str) -> Column | None:
        return self._by_name.get(name)

    def __getitem__(self, column_id: str) -> Column:
        col = self._by_id.get(column_id)
        if col is None:
            raise UnknownColumnError(column_id)
        return col

    def __contains__(self, column_id: object) -> bool:
        return column_id in self._by_id

    def __iter__(self) -> Iterator[Column]:
        return iter(self._columns)

    def __len__(self) -> int:
        return len(self._columns)

    # ------------------------------------------------------------------
    # Mutation
    # ------------------------------------------------------------------

    def set_columns(self, columns: Iterable[Column]) -> None:
        self._install(tuple(columns))

    def add(self, column: Column) -> None:
        if column.id in self._by_id:
            raise ValueError(f"Column '{column.id}' already exists")
        self._install(self._columns + (column,))

    def update(self, column: Column) -> None:
        """Replace the definition with the same id, keeping its position."""
        if column.id not in self._by_id:
            raise UnknownColumnError(column.id)
        self._install(tuple(column if c.id == column.id else c for c in self._columns))

    def rename(self, column_id: str, new_name: str) -> None:
        self.update(replace(self[column_id], name=new_name))

    def remove(self, column_id: str) -> Column:
        col = self[column_id]
        self._install(tuple(c for c in self._columns if c.id != column_id))
        return col

    def on_columns_changed(self, handler: ColumnsChangedHandler) -> Callable[[], None]:
        """Register *handler*; returns a callable that unregisters it."""
        self._handlers.append(handler)

        def unsubscribe() -> None:
            if handler in self._handlers:
                self._handlers.remove(handler)

        return unsubscribe

    def _install(self, columns: tuple[Column, ...]) -> None:
        # Local import: sheetflow.calc imports this module.
        from sheetflow.calc._graph import DependencyGraph

        by_id: dict[str, Column] = {}
        by_name: dict[str, Column] = {}
        for col in columns:
            if col.id in by_id:
                raise ValueError(f"Duplicate column id '{col.id}'")
            by_id[col.id] = col
            if col.name in by_name:
                logger.debug("Column name %r is shared; references use the first", col.name)
            by_name.setdefault(col.name, col)

        cycle = DependencyGraph.build(columns).find_cycle()
        if cycle is not None:
            raise CircularReferenceError(cycle)

        self._columns = columns
        self._by_id = by_id
        self._by_name = by_name
        for handler in list(self._handlers):
            handler(columns)
