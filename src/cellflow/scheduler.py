"""Execution Scheduler — turns committed writes into ordered cell executions.

State machine:

    IDLE -> COLLECTING      a write commits or a cell is marked dirty
    COLLECTING -> ORDERING  a drive begins (run_until_idle / settle)
    ORDERING -> EXECUTING   the dirty set is frozen into a pass
    EXECUTING -> COMMITTING every cell of the pass has run
    COMMITTING -> COLLECTING | IDLE

All store writes that are not made by a running executor come through
submit(). With a settle window they wait in the coalescing queue until
their deadline; a later write to the same name replaces the value and
pushes the deadline back. Writes made while a pass runs are committed in
COMMITTING, so a pass never sees writes from outside itself.

Within a pass cells run one at a time in global topological order. After
a cell commits, the consumers of every name whose value changed join the
same pass; a cell runs at most once per pass.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Mapping, Protocol

from cellflow._tracking import execution_scope
from cellflow.cells import Cell, CellResult, CellStatus, FormulaCell, ScriptCell, WriteSet
from cellflow.errors import CellError, StaleResultDiscarded, is_error
from cellflow.executors import CellExecutor, ExecutionOutcome, executor_for
from cellflow.graph import DependencyGraph
from cellflow.store import Store
from cellflow.stream import EventStream

logger = logging.getLogger("cellflow.scheduler")


class SchedulerState(str, Enum):
    IDLE = "idle"
    COLLECTING = "collecting"
    ORDERING = "ordering"
    EXECUTING = "executing"
    COMMITTING = "committing"


# --- Clocks ---


class Clock(Protocol):
    def now(self) -> float: ...

    async def sleep(self, seconds: float) -> None: ...


class MonotonicClock:
    def now(self) -> float:
        return time.monotonic()

    async def sleep(self, seconds: float) -> None:
        await asyncio.sleep(seconds)


class VirtualClock:
    """Manually advanced clock. sleep() jumps time forward instead of waiting."""

    def __init__(self, start: float = 0.0) -> None:
        self._now = start

    def now(self) -> float:
        return self._now

    def advance(self, seconds: float) -> None:
        self._now += seconds

    async def sleep(self, seconds: float) -> None:
        self._now += max(seconds, 0.0)
        await asyncio.sleep(0)


# --- Records ---


@dataclass
class PendingWrite:
    value: Any
    deadline: float
    force: bool = False


@dataclass(frozen=True)
class CellEvent:
    cell_id: str
    status: CellStatus
    generation: int
    error: CellError | None = None


@dataclass
class ExecutionPass:
    """Report of one pass: what was dirty, what ran, and how it went."""

    generation: int
    dirty: frozenset[str]
    order: list[str] = field(default_factory=list)
    results: dict[str, CellResult] = field(default_factory=dict)


class Scheduler:
    def __init__(
        self,
        store: Store,
        graph: DependencyGraph,
        executors: Mapping[type[Cell], CellExecutor],
        *,
        clock: Clock | None = None,
        settle_window: float = 0.0,
        auto_drive: bool = True,
    ) -> None:
        self.store = store
        self.graph = graph
        self.executors = executors
        self.clock = clock if clock is not None else MonotonicClock()
        self.settle_window = settle_window
        self.auto_drive = auto_drive
        self.events: EventStream[CellEvent] = EventStream()
        self._state = SchedulerState.IDLE
        self._queue: dict[str, PendingWrite] = {}
        self._dirty: set[str] = set()
        self._results: dict[str, CellResult] = {}
        self._generation = 0
        self._pass: ExecutionPass | None = None
        self._draining: asyncio.Future | None = None
        self._drain_owner: asyncio.Task | None = None
        self._driver: asyncio.Task | None = None
        store.attach(self)

    # --- State ---

    @property
    def state(self) -> SchedulerState:
        return self._state

    @property
    def generation(self) -> int:
        return self._generation

    @property
    def pending_writes(self) -> frozenset[str]:
        return frozenset(self._queue)

    @property
    def dirty(self) -> frozenset[str]:
        return frozenset(self._dirty)

    def is_idle(self) -> bool:
        return self._state is SchedulerState.IDLE and not self._queue and not self._dirty

    def _transition(self, state: SchedulerState) -> None:
        if state is not self._state:
            logger.debug("Scheduler %s -> %s", self._state.value, state.value)
            self._state = state

    # --- Collecting ---

    def submit(self, name: str, value: Any, *, force: bool = False, immediate: bool = False) -> None:
        """Accept a write from Store.set()."""
        now = self.clock.now()
        if self.settle_window > 0 and not immediate:
            previous = self._queue.pop(name, None)
            self._queue[name] = PendingWrite(
                value, now + self.settle_window, force or (previous is not None and previous.force)
            )
            self._kick()
            return
        if self._state in (SchedulerState.IDLE, SchedulerState.COLLECTING):
            self._queue.pop(name, None)
            self._commit(name, value, force)
        else:
            self._queue[name] = PendingWrite(value, now, force)
        self._kick()

    def mark_dirty(self, cell_ids) -> None:
        """Schedule cells to run in the next pass."""
        ids = {cell_ids} if isinstance(cell_ids, str) else set(cell_ids)
        if not ids:
            return
        self._dirty |= ids
        if self._state is SchedulerState.IDLE:
            self._transition(SchedulerState.COLLECTING)
        self._kick()

    def _commit(self, name: str, value: Any, force: bool = False) -> bool:
        changed = self.store.commit(name, value, force=force)
        if changed:
            consumers = self.graph.consumers(name)
            if consumers:
                self._dirty.update(consumers)
                if self._state is SchedulerState.IDLE:
                    self._transition(SchedulerState.COLLECTING)
        return changed

    def _take_due(self) -> list[tuple[str, PendingWrite]]:
        now = self.clock.now()
        due = [(name, write) for name, write in self._queue.items() if write.deadline <= now]
        for name, _ in due:
            del self._queue[name]
        return due

    # --- Driving ---

    def _kick(self) -> None:
        if not self.auto_drive:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            return
        if self._driver is None or self._driver.done() or self._driver.get_loop() is not loop:
            self._driver = loop.create_task(self.settle())
            self._driver.add_done_callback(_log_driver_failure)

    async def run_until_idle(self) -> list[ExecutionPass]:
        """Commit every due write and run passes until nothing is dirty.

        Concurrent callers wait for the drain in flight (not for the task
        that started it), then drain again.
        """
        current = asyncio.current_task()
        if self._drain_owner is not None and self._drain_owner is current:
            raise RuntimeError("run_until_idle() cannot be awaited from inside a pass")
        loop = asyncio.get_running_loop()
        while (
            self._draining is not None
            and not self._draining.done()
            and self._draining.get_loop() is loop
        ):
            await asyncio.wait({self._draining})
        done = self._draining = loop.create_future()
        self._drain_owner = current
        try:
            return await self._drain()
        finally:
            self._drain_owner = None
            done.set_result(None)

    async def settle(self) -> list[ExecutionPass]:
        """Drain, then wait out the coalescing queue until everything has run."""
        passes: list[ExecutionPass] = []
        while True:
            passes.extend(await self.run_until_idle())
            if self._dirty:
                continue
            if not self._queue:
                break
            delay = min(write.deadline for write in self._queue.values()) - self.clock.now()
            await self.clock.sleep(max(delay, 0.0))
        driver = self._driver
        if (
            driver is not None
            and driver is not asyncio.current_task()
            and not driver.done()
            and driver.get_loop() is asyncio.get_running_loop()
        ):
            await asyncio.wait({driver})
        return passes

    async def _drain(self) -> list[ExecutionPass]:
        passes = []
        while True:
            for name, write in self._take_due():
                self._commit(name, write.value, write.force)
            if not self._dirty:
                break
            passes.append(await self._run_pass())
            if self._dirty or any(w.deadline <= self.clock.now() for w in self._queue.values()):
                self._transition(SchedulerState.COLLECTING)
        self._transition(SchedulerState.IDLE)
        return passes

    # --- Passes ---

    async def _run_pass(self) -> ExecutionPass:
        self._transition(SchedulerState.ORDERING)
        self._generation += 1
        report = ExecutionPass(self._generation, frozenset(self._dirty))
        pending = {cell_id for cell_id in self._dirty if cell_id in self.graph}
        self._dirty.clear()
        self._pass = report
        ran: set[str] = set()

        self._transition(SchedulerState.EXECUTING)
        try:
            while pending:
                # Cells can be removed while an async cell is suspended.
                pending = {cell_id for cell_id in pending if cell_id in self.graph}
                if not pending:
                    break
                cell_id = min(pending, key=self.graph.rank)
                pending.discard(cell_id)
                ran.add(cell_id)
                for name in await self._run_cell(cell_id):
                    for consumer in self.graph.consumers(name):
                        if consumer == cell_id:
                            continue
                        if consumer in ran:
                            self._dirty.add(consumer)
                        else:
                            pending.add(consumer)
        finally:
            self._pass = None
        self._transition(SchedulerState.COMMITTING)
        logger.debug("Pass %d ran %s", report.generation, report.order)
        return report

    async def _run_cell(self, cell_id: str) -> set[str]:
        """Run one cell and commit its writes. Returns the names that changed."""
        if cell_id not in self.graph:
            return set()
        cell = self.graph.get(cell_id)

        cycle = self.graph.cycle_error(cell_id)
        if cycle is not None:
            marker = CellError.from_cycle(cell_id, cycle)
            self._record(CellResult(cell_id, CellStatus.CYCLE, error=marker))
            return self._write_markers(cell, marker)

        inputs = self.store.snapshot(cell.reads)
        upstream = next((value for value in inputs.values() if is_error(value)), None)
        if upstream is not None:
            marker = upstream.downstream(cell_id)
            self._record(CellResult(cell_id, CellStatus.BLOCKED, error=marker))
            return self._write_markers(cell, marker)

        if isinstance(cell, FormulaCell):
            missing = sorted(name for name in cell.reads if name not in inputs)
            if missing:
                logger.debug("Formula %r waiting for %s", cell_id, missing)
                previous = self._results.get(cell_id)
                count = previous.execution_count if previous else 0
                self._record(CellResult(cell_id, CellStatus.IDLE, execution_count=count))
                return self._unset_outputs(cell)

        version = cell.content_version
        self._emit(cell_id, CellStatus.RUNNING)
        executor = executor_for(self.executors, cell)
        start = time.perf_counter()
        error: CellError | None = None
        with execution_scope(cell_id) as buffer:
            try:
                outcome = await executor.execute(cell, inputs)
            except Exception as exc:
                outcome = getattr(exc, "outcome", None) or ExecutionOutcome()
                error = CellError.from_exception(cell_id, exc)
                logger.debug("Cell %r failed: %s", cell_id, error.message)
        duration_ms = int((time.perf_counter() - start) * 1000)

        current = self.graph.get(cell_id) if cell_id in self.graph else None
        if current is not cell or cell.content_version != version:
            stale = StaleResultDiscarded(cell_id, version, current.content_version if current else None)
            logger.debug("%s", stale)
            return set()

        previous = self._results.get(cell_id)
        result = CellResult(
            cell_id,
            CellStatus.ERROR if error else CellStatus.SUCCESS,
            value=outcome.value,
            error=error,
            exports=dict(outcome.exports or {}),
            outputs=list(outcome.outputs),
            console=list(outcome.console),
            execution_count=(previous.execution_count if previous else 0) + 1,
            duration_ms=duration_ms,
        )

        if error is not None:
            changed = self._write_markers(cell, error)
        else:
            changed = self.store.commit_buffer(buffer)
            if isinstance(cell, ScriptCell):
                changed |= self._reconcile_exports(cell, frozenset(outcome.exports or ()))
        self._record(result)
        return changed

    def _write_markers(self, cell: Cell, marker: CellError) -> set[str]:
        return {name for name in sorted(cell.writes) if self.store.commit(name, marker)}

    def _unset_outputs(self, cell: Cell) -> set[str]:
        """Forget outputs only this cell declares. Returns the names forgotten."""
        return {
            name
            for name in sorted(cell.writes)
            if self.graph.producers(name) == (cell.id,) and self.store.unset(name)
        }

    def _reconcile_exports(self, cell: ScriptCell, confirmed: frozenset[str]) -> set[str]:
        """Replace a script's estimated outputs with what it actually exported.

        Names it no longer exports, and that no other cell declares, are
        removed from the store. Returns those removed names.
        """
        previous = cell.writes
        cell.write_set = WriteSet.confirmed(confirmed)
        removed = set()
        for name in sorted(previous - confirmed):
            if any(producer != cell.id for producer in self.graph.producers(name)):
                continue
            if self.store.remove(name):
                removed.add(name)
        if confirmed != previous:
            self.rebuild_graph()
        return removed

    def rebuild_graph(self) -> None:
        """Rebuild the graph; cells entering or leaving a cycle become dirty."""
        before = self.graph.cycle_members
        self.graph.rebuild()
        moved = before ^ self.graph.cycle_members
        if moved:
            logger.debug("Cycle membership changed for %s", sorted(moved))
            self.mark_dirty(cell_id for cell_id in moved if cell_id in self.graph)

    # --- Results ---

    def _record(self, result: CellResult) -> None:
        result.generation = self._generation
        self._results[result.cell_id] = result
        if self._pass is not None:
            self._pass.order.append(result.cell_id)
            self._pass.results[result.cell_id] = result
        self._emit(result.cell_id, result.status, result.error)

    def _emit(self, cell_id: str, status: CellStatus, error: CellError | None = None) -> None:
        if status is CellStatus.RUNNING and cell_id in self._results:
            self._results[cell_id].status = status
        self.events.emit(CellEvent(cell_id, status, self._generation, error))

    def result(self, cell_id: str) -> CellResult:
        return self._results.get(cell_id) or CellResult(cell_id)

    @property
    def results(self) -> dict[str, CellResult]:
        return dict(self._results)

    def forget(self, cell_id: str) -> None:
        self._results.pop(cell_id, None)
        self._dirty.discard(cell_id)

    def reset(self) -> None:
        """Drop queued writes, dirty cells and results."""
        self._queue.clear()
        self._dirty.clear()
        self._results.clear()
        self._transition(SchedulerState.IDLE)

    def __repr__(self) -> str:
        return f"Scheduler(state={self._state.value}, dirty={len(self._dirty)}, queued={len(self._queue)})"


def _log_driver_failure(task: asyncio.Task) -> None:
    if task.cancelled():
        return
    exc = task.exception()
    if exc is not None:
        logger.error("Scheduler drive failed", exc_info=exc)
