"""Error taxonomy and the error marker value.

Exceptions describe what went wrong while analyzing, ordering or running
cells. The scheduler never lets them escape a pass: a failing cell instead
publishes a CellError marker on each of its outputs, through the same Store
subscription channel used for values, so consumers can tell "value" from
"error" and the failure is visible along the whole affected chain.
"""

from __future__ import annotations

import traceback as _traceback
from dataclasses import dataclass
from typing import Any


class CellflowError(Exception):
    """Base class for all engine errors."""


class AnalysisError(CellflowError):
    """A cell's content could not be analyzed. Non-fatal: reads degrade to empty."""

    def __init__(self, message: str, *, cell_id: str | None = None, offset: int | None = None) -> None:
        super().__init__(message)
        self.cell_id = cell_id
        self.offset = offset


class CycleError(CellflowError):
    """Cells whose dependencies form a cycle. None of them execute."""

    def __init__(self, cycle: tuple[str, ...], members: frozenset[str] | None = None) -> None:
        self.cycle = cycle
        self.members = members if members is not None else frozenset(cycle)
        path = " -> ".join(cycle + cycle[:1])
        super().__init__(f"Circular dependency detected: {path}")


class ExecutionError(CellflowError):
    """A cell's executor raised or its coroutine failed.

    outcome carries whatever the cell produced before failing (console
    lines, outputs), when the executor collected any.
    """

    def __init__(self, cell_id: str, cause: BaseException, outcome: Any = None) -> None:
        self.cell_id = cell_id
        self.cause = cause
        self.outcome = outcome
        super().__init__(f"{type(cause).__name__}: {cause}")


class StaleResultDiscarded(CellflowError):
    """An async result arrived after its cell was edited or removed."""

    def __init__(self, cell_id: str, expected_version: int, actual_version: int | None) -> None:
        self.cell_id = cell_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Discarded stale result for cell {cell_id!r} "
            f"(ran version {expected_version}, current {actual_version})"
        )


class UnknownCellError(CellflowError, KeyError):
    """No cell with the given id."""

    def __str__(self) -> str:
        return f"Unknown cell: {self.args[0]!r}"


class InvalidCellError(CellflowError, ValueError):
    """A cell definition is missing required fields or has an unknown type."""


class ModuleNotAllowedError(CellflowError, ImportError):
    """A script asked for a module outside the allowlist."""


# --- Marker values ---

EXECUTION = "execution"
CYCLE = "cycle"
UPSTREAM = "upstream"


@dataclass(frozen=True)
class CellError:
    """Error marker stored in place of a cell output.

    kind is one of "execution", "cycle" or "upstream". cell_id is the cell
    that owns the output; origin is the cell where the failure started.
    """

    kind: str
    cell_id: str
    origin: str
    message: str
    exc_type: str = ""
    traceback: str = ""

    @classmethod
    def from_exception(cls, cell_id: str, exc: BaseException) -> CellError:
        if isinstance(exc, ExecutionError):
            exc = exc.cause
        return cls(
            kind=EXECUTION,
            cell_id=cell_id,
            origin=cell_id,
            message=str(exc) or type(exc).__name__,
            exc_type=type(exc).__name__,
            traceback="".join(_traceback.format_exception(type(exc), exc, exc.__traceback__)),
        )

    @classmethod
    def from_cycle(cls, cell_id: str, error: CycleError) -> CellError:
        return cls(kind=CYCLE, cell_id=cell_id, origin=cell_id, message=str(error), exc_type="CycleError")

    def downstream(self, cell_id: str) -> CellError:
        """The marker a dependent cell carries for this failure."""
        return CellError(
            kind=UPSTREAM,
            cell_id=cell_id,
            origin=self.origin,
            message=f"Upstream cell {self.origin!r} failed: {self.root_message}",
            exc_type=self.exc_type,
        )

    @property
    def root_message(self) -> str:
        if self.kind == UPSTREAM:
            return self.message.split(": ", 1)[-1]
        return self.message

    def __str__(self) -> str:
        return self.message


def is_error(value: Any) -> bool:
    """True if value is an error marker rather than a real value."""
    return isinstance(value, CellError)
