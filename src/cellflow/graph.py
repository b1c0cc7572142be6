"""Dependency Graph — ordered cell registry, edges, cycles and run order.

Edge A -> B exists iff A writes a name that B reads and A is not B. The
graph is derived state: rebuild() recomputes it from the cells' reads and
writes after any structural change or re-analysis.
"""

from __future__ import annotations

import heapq
from collections import defaultdict, deque
from typing import Iterable, Iterator

from cellflow.cells import Cell
from cellflow.errors import CycleError, InvalidCellError, UnknownCellError


class DependencyGraph:
    """Cells in declaration order plus the dependency edges between them."""

    def __init__(self, cells: Iterable[Cell] = ()) -> None:
        self._cells: list[Cell] = []
        self._by_id: dict[str, Cell] = {}
        self._producers: dict[str, list[str]] = {}
        self._edges: dict[str, set[str]] = {}
        self._reverse: dict[str, set[str]] = {}
        self._cycles: tuple[CycleError, ...] = ()
        self._cycle_of: dict[str, CycleError] = {}
        self._rank: dict[str, int] = {}
        for cell in cells:
            self.insert(cell)
        self.rebuild()

    # --- Registry ---

    def insert(self, cell: Cell, index: int | None = None) -> None:
        if cell.id in self._by_id:
            raise InvalidCellError(f"Duplicate cell id: {cell.id!r}")
        if index is None or index >= len(self._cells):
            self._cells.append(cell)
        else:
            self._cells.insert(max(index, 0), cell)
        self._by_id[cell.id] = cell
        self._renumber()

    def remove(self, cell_id: str) -> Cell:
        cell = self.get(cell_id)
        self._cells.remove(cell)
        del self._by_id[cell_id]
        self._renumber()
        return cell

    def replace(self, cell: Cell) -> Cell:
        """Swap in a new definition for an existing id, keeping its position."""
        old = self.get(cell.id)
        index = self._cells.index(old)
        self._cells[index] = cell
        self._by_id[cell.id] = cell
        self._renumber()
        return old

    def move(self, cell_id: str, index: int) -> None:
        cell = self.get(cell_id)
        self._cells.remove(cell)
        self._cells.insert(max(0, min(index, len(self._cells))), cell)
        self._renumber()

    def get(self, cell_id: str) -> Cell:
        try:
            return self._by_id[cell_id]
        except KeyError:
            raise UnknownCellError(cell_id) from None

    @property
    def cells(self) -> tuple[Cell, ...]:
        return tuple(self._cells)

    def _renumber(self) -> None:
        for position, cell in enumerate(self._cells):
            cell.position = position

    def __contains__(self, cell_id: object) -> bool:
        return cell_id in self._by_id

    def __len__(self) -> int:
        return len(self._cells)

    def __iter__(self) -> Iterator[Cell]:
        return iter(self.cells)

    # --- Derivation ---

    def rebuild(self) -> None:
        """Recompute producers, edges, cycles and the topological rank."""
        producers: dict[str, list[str]] = defaultdict(list)
        for cell in self._cells:
            for name in sorted(cell.writes):
                producers[name].append(cell.id)

        edges: dict[str, set[str]] = {cell.id: set() for cell in self._cells}
        reverse: dict[str, set[str]] = {cell.id: set() for cell in self._cells}
        for cell in self._cells:
            for name in cell.reads:
                for producer in producers.get(name, ()):
                    if producer != cell.id:
                        edges[producer].add(cell.id)
                        reverse[cell.id].add(producer)

        self._producers = dict(producers)
        self._edges = edges
        self._reverse = reverse
        self._find_cycles()
        self._rank_cells()

    def _find_cycles(self) -> None:
        """Tarjan's strongly connected components, iterative."""
        index_of: dict[str, int] = {}
        lowlink: dict[str, int] = {}
        on_stack: set[str] = set()
        stack: list[str] = []
        components: list[list[str]] = []
        counter = 0

        for root in (cell.id for cell in self._cells):
            if root in index_of:
                continue
            work = [(root, iter(sorted(self._edges[root], key=self._position)))]
            index_of[root] = lowlink[root] = counter
            counter += 1
            stack.append(root)
            on_stack.add(root)
            while work:
                node, children = work[-1]
                advanced = False
                for child in children:
                    if child not in index_of:
                        index_of[child] = lowlink[child] = counter
                        counter += 1
                        stack.append(child)
                        on_stack.add(child)
                        work.append((child, iter(sorted(self._edges[child], key=self._position))))
                        advanced = True
                        break
                    if child in on_stack:
                        lowlink[node] = min(lowlink[node], index_of[child])
                if advanced:
                    continue
                work.pop()
                if work:
                    parent = work[-1][0]
                    lowlink[parent] = min(lowlink[parent], lowlink[node])
                if lowlink[node] == index_of[node]:
                    component = []
                    while True:
                        member = stack.pop()
                        on_stack.discard(member)
                        component.append(member)
                        if member == node:
                            break
                    if len(component) > 1:
                        components.append(component)

        cycles = []
        cycle_of: dict[str, CycleError] = {}
        for component in components:
            members = frozenset(component)
            error = CycleError(self._cycle_path(members), members)
            cycles.append(error)
            for member in members:
                cycle_of[member] = error
        cycles.sort(key=lambda error: self._position(error.cycle[0]))
        self._cycles = tuple(cycles)
        self._cycle_of = cycle_of

    def _cycle_path(self, members: frozenset[str]) -> tuple[str, ...]:
        """Shortest cycle through the component's first cell."""
        start = min(members, key=self._position)
        parents: dict[str, str | None] = {start: None}
        queue = deque([start])
        while queue:
            node = queue.popleft()
            for successor in sorted(self._edges[node] & members, key=self._position):
                if successor == start:
                    path = [node]
                    while parents[path[-1]] is not None:
                        path.append(parents[path[-1]])
                    return tuple(reversed(path))
                if successor not in parents:
                    parents[successor] = node
                    queue.append(successor)
        return (start,)

    def _rank_cells(self) -> None:
        """Kahn's algorithm over acyclic cells, ties broken by position."""
        acyclic = [cell.id for cell in self._cells if cell.id not in self._cycle_of]
        indegree = {
            cell_id: sum(1 for p in self._reverse[cell_id] if p not in self._cycle_of)
            for cell_id in acyclic
        }
        heap = [(self._position(c), c) for c in acyclic if indegree[c] == 0]
        heapq.heapify(heap)
        rank: dict[str, int] = {}
        while heap:
            _, cell_id = heapq.heappop(heap)
            rank[cell_id] = len(rank)
            for consumer in self._edges[cell_id]:
                if consumer in indegree:
                    indegree[consumer] -= 1
                    if indegree[consumer] == 0:
                        heapq.heappush(heap, (self._position(consumer), consumer))
        self._rank = rank

    def _position(self, cell_id: str) -> int:
        return self._by_id[cell_id].position

    # --- Queries ---

    def producers(self, name: str) -> tuple[str, ...]:
        return tuple(self._producers.get(name, ()))

    def consumers(self, name: str) -> tuple[str, ...]:
        """Cells that read name, in declaration order."""
        return tuple(cell.id for cell in self._cells if name in cell.reads)

    def upstream(self, cell_id: str) -> frozenset[str]:
        return frozenset(self._reverse.get(cell_id, ()))

    def downstream(self, cell_id: str) -> frozenset[str]:
        return frozenset(self._edges.get(cell_id, ()))

    def affected(self, names: Iterable[str]) -> frozenset[str]:
        """Every cell that transitively depends on any of names."""
        seen: set[str] = set()
        frontier = [c for name in names for c in self.consumers(name)]
        while frontier:
            cell_id = frontier.pop()
            if cell_id in seen:
                continue
            seen.add(cell_id)
            frontier.extend(self._edges.get(cell_id, ()))
        return frozenset(seen)

    @property
    def cycles(self) -> tuple[CycleError, ...]:
        return self._cycles

    @property
    def cycle_members(self) -> frozenset[str]:
        return frozenset(self._cycle_of)

    def cycle_error(self, cell_id: str) -> CycleError | None:
        return self._cycle_of.get(cell_id)

    def rank(self, cell_id: str) -> int:
        """Global run order of an acyclic cell. Cycle cells sort last.

        Raises UnknownCellError for a cell that is not in the graph.
        """
        rank = self._rank.get(cell_id)
        if rank is None:
            rank = len(self._cells) + self.get(cell_id).position
        return rank

    def order(self, cell_ids: Iterable[str]) -> list[str]:
        return sorted((c for c in cell_ids if c in self._by_id), key=self.rank)

    def __repr__(self) -> str:
        edges = sum(len(targets) for targets in self._edges.values())
        return f"DependencyGraph({len(self._cells)} cells, {edges} edges, {len(self._cycles)} cycles)"
