"""cellflow: a reactive notebook engine.

Cells share one namespace of named values; editing a cell re-derives
everything that depends on it, in dependency order.
"""

from importlib.metadata import version as _version

__version__ = _version("cellflow")

from cellflow.cells import (
    Cell,
    CellResult,
    CellStatus,
    FormulaCell,
    InputCell,
    MarkdownCell,
    ScriptCell,
    WriteSet,
    WriteSetState,
)
from cellflow.config import EngineConfig, load_config
from cellflow.engine import NotebookEngine
from cellflow.errors import (
    AnalysisError,
    CellError,
    CellflowError,
    CycleError,
    ExecutionError,
    InvalidCellError,
    ModuleNotAllowedError,
    UnknownCellError,
    is_error,
)
from cellflow.functions import FunctionRegistry
from cellflow.graph import DependencyGraph
from cellflow.scheduler import CellEvent, ExecutionPass, Scheduler, SchedulerState, VirtualClock
from cellflow.storage import NotebookStorage
from cellflow.store import REMOVED, Store
from cellflow.stream import EventStream
# cellflow.textual is opt-in and not imported here

__all__ = [
    "NotebookEngine",
    "EngineConfig",
    "load_config",
    "FunctionRegistry",
    "Store",
    "REMOVED",
    "DependencyGraph",
    "Scheduler",
    "SchedulerState",
    "VirtualClock",
    "ExecutionPass",
    "CellEvent",
    "NotebookStorage",
    "EventStream",
    "Cell",
    "ScriptCell",
    "FormulaCell",
    "MarkdownCell",
    "InputCell",
    "WriteSet",
    "WriteSetState",
    "CellStatus",
    "CellResult",
    "CellError",
    "is_error",
    "CellflowError",
    "AnalysisError",
    "CycleError",
    "ExecutionError",
    "InvalidCellError",
    "ModuleNotAllowedError",
    "UnknownCellError",
]
