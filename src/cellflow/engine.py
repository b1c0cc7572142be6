"""NotebookEngine — composition root and public entry points.

    engine = NotebookEngine()
    engine.load_notebook({"cells": [
        {"type": "input", "id": "a", "variableName": "a", "content": 2},
        {"type": "formula", "id": "f", "variableName": "c", "formula": "a * 10"},
    ]})
    asyncio.run(engine.run_until_idle())
    engine.store.get("c")   # 20

Each engine owns its Store, DependencyGraph, Scheduler and NotebookStorage;
nothing is shared between engines. Structural entry points (add, edit,
remove, move) are synchronous: they update the graph and mark cells dirty.
Execution happens when the scheduler is driven, either explicitly with
run_until_idle()/settle() or automatically on a running asyncio loop.
"""

from __future__ import annotations

import logging
from typing import Any, Callable, Iterable, Mapping

from cellflow.analysis import analyze_cell
from cellflow.cells import Cell, CellResult, FormulaCell, MarkdownCell, ScriptCell
from cellflow.config import EngineConfig
from cellflow.errors import InvalidCellError
from cellflow.executors import default_executors
from cellflow.functions import FunctionRegistry
from cellflow.graph import DependencyGraph
from cellflow.notebook import CellRecord, NotebookModel, cell_from_record, cell_to_record, parse_notebook
from cellflow.sandbox import ModuleResolver
from cellflow.scheduler import CellEvent, Clock, ExecutionPass, Scheduler
from cellflow.storage import NotebookStorage
from cellflow.store import Store
from cellflow.stream import EventStream

logger = logging.getLogger("cellflow.engine")

CellDefinition = Cell | CellRecord | Mapping[str, Any]


class NotebookEngine:
    def __init__(
        self,
        config: EngineConfig | None = None,
        *,
        clock: Clock | None = None,
        store: Store | None = None,
        graph: DependencyGraph | None = None,
        scheduler: Scheduler | None = None,
        storage: NotebookStorage | None = None,
        functions: Mapping[str, Callable[..., Any]] | None = None,
    ) -> None:
        self.config = config if config is not None else EngineConfig()
        self.store = store if store is not None else Store()
        self.graph = graph if graph is not None else DependencyGraph()
        self.storage = storage if storage is not None else NotebookStorage()
        self.modules = ModuleResolver(self.config.allowed_modules)
        self.functions = FunctionRegistry(functions)
        if scheduler is None:
            executors = default_executors(
                self.store,
                self.modules,
                self.storage,
                missing=self.config.missing_placeholder,
                error=self.config.error_placeholder,
                functions=self.functions,
            )
            scheduler = Scheduler(
                self.store,
                self.graph,
                executors,
                clock=clock,
                settle_window=self.config.settle_window,
                auto_drive=self.config.auto_drive,
            )
        self.scheduler = scheduler
        self.title: str | None = None

    # --- Cells ---

    @property
    def cells(self) -> tuple[Cell, ...]:
        return self.graph.cells

    def get_cell(self, cell_id: str) -> Cell:
        return self.graph.get(cell_id)

    def add_cell(self, definition: CellDefinition, at_index: int | None = None) -> Cell:
        """Insert a cell (at the end by default) and schedule it."""
        cell = _to_cell(definition)
        self._analyze(cell)
        self.graph.insert(cell, at_index)
        self.scheduler.rebuild_graph()
        self.scheduler.mark_dirty({cell.id})
        logger.debug("Added %r", cell)
        return cell

    def remove_cell(self, cell_id: str) -> Cell:
        """Delete a cell. Variables no other cell declares are removed."""
        cell = self.graph.remove(cell_id)
        self.scheduler.forget(cell_id)
        self.scheduler.rebuild_graph()
        self._release(cell.writes)
        logger.debug("Removed %r", cell)
        return cell

    def set_cell_content(self, cell_id: str, content: Any) -> bool:
        """Edit a cell's content. Returns False (and does nothing) if unchanged."""
        cell = self.graph.get(cell_id)
        if not cell.edit(content):
            return False
        previous = cell.writes
        self._analyze(cell)
        self.scheduler.rebuild_graph()
        self._release(previous - cell.writes)
        self.scheduler.mark_dirty({cell.id})
        return True

    def update_cell(self, definition: CellDefinition) -> Cell:
        """Replace a cell's whole definition, e.g. to rename its output."""
        cell = _to_cell(definition)
        old = self.graph.get(cell.id)
        cell.content_version = old.content_version + 1
        if isinstance(cell, ScriptCell) and isinstance(old, ScriptCell):
            cell.write_set = old.write_set
        self._analyze(cell)
        self.graph.replace(cell)
        self.scheduler.rebuild_graph()
        self._release(old.writes - cell.writes)
        self.scheduler.mark_dirty({cell.id})
        return cell

    def move_cell(self, cell_id: str, to_index: int) -> None:
        self.graph.move(cell_id, to_index)
        self.scheduler.rebuild_graph()

    def run_all(self) -> None:
        """Schedule every cell."""
        self.scheduler.mark_dirty(cell.id for cell in self.graph.cells)

    def _analyze(self, cell: Cell) -> Cell:
        return analyze_cell(cell, self.functions.custom_names)

    def _release(self, names: Iterable[str]) -> None:
        """Forget outputs a cell stopped declaring.

        A name still declared by another cell is re-derived from that cell;
        otherwise the variable is removed and its readers re-run.
        """
        for name in sorted(names):
            producers = self.graph.producers(name)
            if producers:
                self.scheduler.mark_dirty(producers)
            elif self.store.remove(name):
                self.scheduler.mark_dirty(self.graph.consumers(name))

    # --- Formula functions ---

    def add_formula_function(self, name: str, function: Callable[..., Any]) -> None:
        """Make function callable by name from formulas and placeholders."""
        self.functions.add(name, function)
        self._reanalyze_expressions()

    def remove_formula_function(self, name: str) -> bool:
        """Forget a custom function. Returns False if it was not registered."""
        if not self.functions.remove(name):
            return False
        self._reanalyze_expressions()
        return True

    def _reanalyze_expressions(self) -> None:
        cells = [cell for cell in self.graph.cells if isinstance(cell, (FormulaCell, MarkdownCell))]
        for cell in cells:
            self._analyze(cell)
        self.scheduler.rebuild_graph()
        self.scheduler.mark_dirty(cell.id for cell in cells)

    # --- Notebooks ---

    def load_notebook(self, model: NotebookModel | Mapping[str, Any] | list) -> list[Cell]:
        """Replace the current notebook. Every cell runs in the next drive."""
        notebook = parse_notebook(model)
        cells = [cell_from_record(record) for record in notebook.cells]
        ids = [cell.id for cell in cells]
        if len(set(ids)) != len(ids):
            raise InvalidCellError("Duplicate cell ids in notebook")

        for cell in self.graph.cells:
            self.graph.remove(cell.id)
        self.reset()
        self.title = notebook.title
        self.storage.load(notebook.storage)
        for cell in cells:
            self._analyze(cell)
            self.graph.insert(cell)
        self.scheduler.rebuild_graph()
        self.scheduler.mark_dirty(ids)
        logger.debug("Loaded notebook with %d cells", len(cells))
        return cells

    def export_notebook(self) -> dict[str, Any]:
        data: dict[str, Any] = {}
        if self.title is not None:
            data["title"] = self.title
        data["cells"] = [cell_to_record(cell) for cell in self.graph.cells]
        data["storage"] = self.storage.export()
        return data

    def reset(self) -> None:
        """Forget all values, results and cached modules. Cells stay."""
        self.scheduler.reset()
        self.store.clear()
        self.modules.clear()

    # --- Results ---

    def result(self, cell_id: str) -> CellResult:
        self.graph.get(cell_id)
        return self.scheduler.result(cell_id)

    def results(self) -> dict[str, CellResult]:
        return {cell.id: self.scheduler.result(cell.id) for cell in self.graph.cells}

    @property
    def events(self) -> EventStream[CellEvent]:
        return self.scheduler.events

    # --- Driving ---

    async def run_until_idle(self) -> list[ExecutionPass]:
        return await self.scheduler.run_until_idle()

    async def settle(self) -> list[ExecutionPass]:
        return await self.scheduler.settle()

    # --- Storage ---

    def get_storage_value(self, key: str, default: Any = None) -> Any:
        return self.storage.get(key, default)

    def has_storage_key(self, key: str) -> bool:
        return self.storage.has(key)

    def get_storage_keys(self) -> list[str]:
        return self.storage.keys()

    def __repr__(self) -> str:
        return f"NotebookEngine({len(self.graph)} cells, {len(self.store)} variables)"


def _to_cell(definition: CellDefinition) -> Cell:
    if isinstance(definition, Cell):
        return definition
    return cell_from_record(definition)
