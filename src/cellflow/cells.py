"""Cell variants and their derived dependency data.

Cells are a closed set of variants: ScriptCell, FormulaCell, MarkdownCell
and InputCell. Executors and analyzers are selected by class, never by a
type string. The persisted type tags live in cellflow.notebook.

reads and write_set are derived by cellflow.analysis and rebuilt on every
edit; they are never persisted.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from cellflow.errors import AnalysisError, CellError, InvalidCellError


class WriteSetState(str, Enum):
    UNANALYZED = "unanalyzed"
    PROVISIONAL = "provisional"
    CONFIRMED = "confirmed"


@dataclass(frozen=True)
class WriteSet:
    """The names a cell writes, tagged with how sure we are about them.

    Script outputs are only known after a run, so a script starts
    PROVISIONAL (a static estimate) and becomes CONFIRMED once executed.
    """

    state: WriteSetState = WriteSetState.UNANALYZED
    names: frozenset[str] = frozenset()

    @classmethod
    def provisional(cls, names) -> WriteSet:
        return cls(WriteSetState.PROVISIONAL, frozenset(names))

    @classmethod
    def confirmed(cls, names) -> WriteSet:
        return cls(WriteSetState.CONFIRMED, frozenset(names))

    @property
    def is_confirmed(self) -> bool:
        return self.state is WriteSetState.CONFIRMED


UNANALYZED = WriteSet()


@dataclass(eq=False)
class Cell:
    """Common cell attributes. Use one of the variants."""

    id: str
    content: Any = ""
    position: int = 0
    content_version: int = 0
    reads: frozenset[str] = field(default=frozenset(), init=False)
    write_set: WriteSet = field(default=UNANALYZED, init=False)
    analysis_error: AnalysisError | None = field(default=None, init=False)

    def __post_init__(self) -> None:
        if not self.id:
            raise InvalidCellError("Cell id must not be empty")

    @property
    def writes(self) -> frozenset[str]:
        return self.write_set.names

    def edit(self, content: Any) -> bool:
        """Replace the content. Returns False when nothing changed."""
        if content == self.content and type(content) is type(self.content):
            return False
        self.content = content
        self.content_version += 1
        return True

    def __repr__(self) -> str:
        return f"{type(self).__name__}({self.id!r}, position={self.position})"


@dataclass(eq=False, repr=False)
class ScriptCell(Cell):
    """Python source. Outputs are whatever it attaches to `exports`."""


@dataclass(eq=False, repr=False)
class FormulaCell(Cell):
    """An expression whose result is written to variable_name."""

    variable_name: str = ""
    label: str | None = None

    def __post_init__(self) -> None:
        super().__post_init__()
        if not self.variable_name:
            raise InvalidCellError(f"Formula cell {self.id!r} needs a variable name")


@dataclass(eq=False, repr=False)
class MarkdownCell(Cell):
    """Template text with {{ expression | filter }} placeholders. Writes nothing."""


INPUT_TYPES = ("number", "text", "range", "checkbox", "select")


@dataclass(eq=False, repr=False)
class InputCell(Cell):
    """A literal value written to variable_name."""

    variable_name: str = ""
    input_type: str = "number"
    props: dict[str, Any] = field(default_factory=dict)
    label: str | None = None

    def __post_init__(self) -> None:
        super().__post_init__()
        if not self.variable_name:
            raise InvalidCellError(f"Input cell {self.id!r} needs a variable name")
        if self.input_type not in INPUT_TYPES:
            raise InvalidCellError(f"Input cell {self.id!r} has unknown input type {self.input_type!r}")


# --- Execution results ---


class CellStatus(str, Enum):
    IDLE = "idle"
    RUNNING = "running"
    SUCCESS = "success"
    ERROR = "error"
    BLOCKED = "blocked"
    CYCLE = "cycle"


@dataclass(frozen=True)
class ConsoleLine:
    level: str
    text: str


@dataclass
class CellResult:
    """Latest execution state of a cell."""

    cell_id: str
    status: CellStatus = CellStatus.IDLE
    value: Any = None
    error: CellError | None = None
    exports: dict[str, Any] = field(default_factory=dict)
    outputs: list[Any] = field(default_factory=list)
    console: list[ConsoleLine] = field(default_factory=list)
    execution_count: int = 0
    generation: int = 0
    duration_ms: int = 0

    @property
    def failed(self) -> bool:
        return self.status in (CellStatus.ERROR, CellStatus.BLOCKED, CellStatus.CYCLE)
