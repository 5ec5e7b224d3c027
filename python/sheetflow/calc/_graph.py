"""Dependency graph from source column names to the computed columns reading them."""

from __future__ import annotations

import heapq
import logging
from collections import deque
from collections.abc import Iterable
from typing import TYPE_CHECKING

from sheetflow._errors import CircularReferenceError

if TYPE_CHECKING:
    from sheetflow._columns import Column

logger = logging.getLogger(__name__)


class DependencyGraph:
    """Direct-dependent edges between columns, keyed by column *name*.

    Only direct dependents are stored; transitive reach is walked on demand.
    Rebuild with :meth:`build` whenever the column set changes.
    """

    __slots__ = ("dependents", "sources", "computed")

    def __init__(self) -> None:
        # source column name -> computed columns reading it, insertion order
        self.dependents: dict[str, list[Column]] = {}
        # computed column id -> source names it reads (existing columns only)
        self.sources: dict[str, tuple[str, ...]] = {}
        # computed column id -> definition
        self.computed: dict[str, Column] = {}

    @classmethod
    def build(cls, columns: Iterable[Column]) -> DependencyGraph:
        """Scan column definitions for references and record the edges."""
        graph = cls()
        cols = list(columns)
        known_names = {c.name for c in cols}

        for col in cols:
            if not col.is_computed:
                continue
            graph.computed[col.id] = col
            names: list[str] = []
            for ref in col.referenced_names:
                if ref not in known_names:
                    logger.debug("Column %r references missing column %r", col.name, ref)
                    continue
                names.append(ref)
                deps = graph.dependents.setdefault(ref, [])
                if all(d.id != col.id for d in deps):
                    deps.append(col)
            graph.sources[col.id] = tuple(names)

        return graph

    def dependents_of(self, name: str) -> list[Column]:
        return list(self.dependents.get(name, ()))

    def dependencies_of(self, column_id: str) -> tuple[str, ...]:
        return self.sources.get(column_id, ())

    def affected_columns(self, name: str) -> list[Column]:
        """Computed columns transitively reachable from *name*, in evaluation order.

        Columns are discovered breadth-first (dependents in insertion order)
        and each appears once.  The returned order follows discovery order
        except where a later-discovered column feeds an earlier one, in which
        case the feeder is moved ahead so every column sees fresh inputs.
        """
        discovered: list[Column] = []
        index: dict[str, int] = {}
        queue: deque[str] = deque([name])

        while queue:
            current = queue.popleft()
            for dep in self.dependents.get(current, ()):
                if dep.id not in index:
                    index[dep.id] = len(discovered)
                    discovered.append(dep)
                    queue.append(dep.name)

        if len(discovered) < 2:
            return discovered

        by_name: dict[str, list[Column]] = {}
        for col in discovered:
            by_name.setdefault(col.name, []).append(col)

        in_degree: dict[str, int] = {}
        for col in discovered:
            feeders = {
                f.id
                for src in self.sources.get(col.id, ())
                for f in by_name.get(src, ())
                if f.id != col.id
            }
            in_degree[col.id] = len(feeders)

        ready = [(index[c.id], c.id) for c in discovered if in_degree[c.id] == 0]
        heapq.heapify(ready)
        order: list[Column] = []
        placed: set[str] = set()

        while ready:
            _, col_id = heapq.heappop(ready)
            col = discovered[index[col_id]]
            order.append(col)
            placed.add(col_id)
            for dep in self.dependents.get(col.name, ()):
                if dep.id in in_degree and dep.id not in placed:
                    in_degree[dep.id] -= 1
                    if in_degree[dep.id] == 0:
                        heapq.heappush(ready, (index[dep.id], dep.id))

        if len(order) != len(discovered):
            # Cyclic remainder: keep discovery order, still once each.
            order.extend(c for c in discovered if c.id not in placed)

        return order

    def topological_order(self) -> list[Column]:
        """Return all computed columns in evaluation order (Kahn's algorithm).

        Raises CircularReferenceError if the graph has a cycle.
        """
        if not self.computed:
            return []

        names = {c.name for c in self.computed.values()}
        in_degree: dict[str, int] = {}
        for col_id, srcs in self.sources.items():
            in_degree[col_id] = sum(1 for s in srcs if s in names)

        queue: deque[Column] = deque(
            c for c in self.computed.values() if in_degree[c.id] == 0
        )
        order: list[Column] = []
        while queue:
            col = queue.popleft()
            order.append(col)
            for dep in self.dependents.get(col.name, ()):
                in_degree[dep.id] -= 1
                if in_degree[dep.id] == 0:
                    queue.append(dep)

        if len(order) != len(self.computed):
            cycle = self.find_cycle() or sorted(
                c.name for c in self.computed.values() if c not in order
            )
            raise CircularReferenceError(cycle)

        return order

    def find_cycle(self) -> list[str] | None:
        """Return one cycle as a closed list of names (``[a, b, a]``), or None."""
        white, grey, black = 0, 1, 2
        color: dict[str, int] = {}

        for start in list(self.dependents):
            if color.get(start, white) != white:
                continue
            path: list[str] = [start]
            color[start] = grey
            stack = [iter([d.name for d in self.dependents.get(start, ())])]
            while stack:
                nxt = next(stack[-1], None)
                if nxt is None:
                    stack.pop()
                    color[path.pop()] = black
                    continue
                state = color.get(nxt, white)
                if state == grey:
                    return path[path.index(nxt):] + [nxt]
                if state == white:
                    color[nxt] = grey
                    path.append(nxt)
                    stack.append(iter([d.name for d in self.dependents.get(nxt, ())]))

        return None

    def max_depth(self, name: str) -> int:
        """Longest chain of computed columns reachable from *name*."""
        depth: dict[str, int] = {name: 0}
        queue: deque[str] = deque([name])
        limit = len(self.computed)
        max_d = 0

        while queue:
            current = queue.popleft()
            current_depth = depth[current]
            for dep in self.dependents.get(current, ()):
                new_depth = current_depth + 1
                if new_depth > limit:
                    continue
                if dep.name not in depth or new_depth > depth[dep.name]:
                    depth[dep.name] = new_depth
                    max_d = max(max_d, new_depth)
                    queue.append(dep.name)

        return max_d
