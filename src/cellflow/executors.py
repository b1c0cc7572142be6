"""Cell Executors — one per cell variant.

Every executor exposes ``async execute(cell, inputs) -> ExecutionOutcome``.
inputs is the read-only snapshot of the cell's reads taken when the cell
started. Outputs are written with store.set(); the scheduler runs executors
inside an execution scope, so those writes are buffered and committed only
once the executor has finished and its result is still current.
"""

from __future__ import annotations

import ast
import inspect
import numbers
from dataclasses import dataclass, field
from typing import Any, Mapping, Protocol

from cellflow.analysis import convert_legacy_syntax
from cellflow.cells import Cell, ConsoleLine, FormulaCell, InputCell, MarkdownCell, ScriptCell
from cellflow.errors import ExecutionError, InvalidCellError
from cellflow.functions import FORMULA_FUNCTIONS, FunctionRegistry
from cellflow.markdown import ERROR, MISSING, render
from cellflow.sandbox import ModuleResolver, Sandbox
from cellflow.storage import NotebookStorage
from cellflow.store import Store

_RESULT = "__cell_result__"


@dataclass
class ExecutionOutcome:
    """What one execution produced.

    exports is the confirmed write surface of a script (None for other
    variants, whose writes are fixed by analysis).
    """

    value: Any = None
    exports: dict[str, Any] | None = None
    outputs: list[Any] = field(default_factory=list)
    console: list[ConsoleLine] = field(default_factory=list)


class CellExecutor(Protocol):
    async def execute(self, cell: Any, inputs: Mapping[str, Any]) -> ExecutionOutcome: ...


def compile_script(source: str, filename: str = "<cell>"):
    """Compile a script body. A trailing expression's value is kept as the result."""
    tree = ast.parse(source, filename, mode="exec")
    if tree.body and isinstance(tree.body[-1], ast.Expr):
        last = tree.body[-1]
        assign = ast.Assign(targets=[ast.Name(_RESULT, ast.Store())], value=last.value)
        tree.body[-1] = ast.copy_location(assign, last)
        ast.fix_missing_locations(tree)
    return compile(tree, filename, "exec", flags=ast.PyCF_ALLOW_TOP_LEVEL_AWAIT)


def formula_namespace(inputs: Mapping[str, Any], functions: Mapping[str, Any] = FORMULA_FUNCTIONS) -> dict[str, Any]:
    namespace: dict[str, Any] = {"__builtins__": {}}
    namespace.update(functions)
    namespace.update(inputs)
    return namespace


def evaluate_expression(
    expression: str,
    inputs: Mapping[str, Any],
    functions: Mapping[str, Any] = FORMULA_FUNCTIONS,
) -> Any:
    """Evaluate a formula expression against inputs and the helper functions."""
    source = convert_legacy_syntax(expression).strip()
    if not source:
        raise ValueError("Formula is empty")
    code = compile(source, "<formula>", "eval")
    return eval(code, formula_namespace(inputs, functions))


class ScriptExecutor:
    def __init__(self, store: Store, resolver: ModuleResolver, storage: NotebookStorage) -> None:
        self.store = store
        self.resolver = resolver
        self.storage = storage

    async def execute(self, cell: ScriptCell, inputs: Mapping[str, Any]) -> ExecutionOutcome:
        sandbox = Sandbox(cell.id, self.resolver, self.storage)
        # Reads with no committed value yet are None.
        namespace = sandbox.namespace({**dict.fromkeys(cell.reads), **inputs})
        try:
            code = compile_script(cell.content or "", f"<cell {cell.id}>")
            result = eval(code, namespace)
            if inspect.iscoroutine(result):
                await result
        except Exception as exc:
            partial = ExecutionOutcome(outputs=sandbox.output.items, console=sandbox.console.lines)
            raise ExecutionError(cell.id, exc, partial) from exc

        exports = sandbox.exports.to_dict()
        for name, value in exports.items():
            self.store.set(name, value)
        return ExecutionOutcome(
            value=namespace.get(_RESULT),
            exports=exports,
            outputs=sandbox.output.items,
            console=sandbox.console.lines,
        )


class FormulaEvaluator:
    def __init__(self, store: Store, functions: FunctionRegistry | None = None) -> None:
        self.store = store
        self.functions = functions if functions is not None else FunctionRegistry()

    async def execute(self, cell: FormulaCell, inputs: Mapping[str, Any]) -> ExecutionOutcome:
        value = evaluate_expression(str(cell.content or ""), inputs, self.functions.namespace())
        self.store.set(cell.variable_name, value)
        return ExecutionOutcome(value=value)


class MarkdownRenderer:
    def __init__(
        self,
        missing: str = MISSING,
        error: str = ERROR,
        functions: FunctionRegistry | None = None,
    ) -> None:
        self.missing = missing
        self.error = error
        self.functions = functions if functions is not None else FunctionRegistry()

    async def execute(self, cell: MarkdownCell, inputs: Mapping[str, Any]) -> ExecutionOutcome:
        functions = self.functions.namespace()
        text = render(
            str(cell.content or ""),
            lambda expression: evaluate_expression(expression, inputs, functions),
            missing=self.missing,
            error=self.error,
        )
        return ExecutionOutcome(value=text)


def coerce_input(cell: InputCell) -> Any:
    """Convert an input cell's literal to the type its widget produces."""
    value = cell.content
    if cell.input_type in ("number", "range"):
        number = _to_number(value)
        if cell.input_type == "range" and number is not None:
            low, high = cell.props.get("min"), cell.props.get("max")
            if low is not None:
                number = max(number, low)
            if high is not None:
                number = min(number, high)
        return number
    if cell.input_type == "checkbox":
        if isinstance(value, str):
            return value.strip().lower() in ("true", "1", "yes", "on")
        return bool(value)
    if cell.input_type == "text":
        return "" if value is None else str(value)
    return value


def _to_number(value: Any) -> int | float | None:
    if value is None or value == "":
        return None
    if isinstance(value, bool):
        return int(value)
    if isinstance(value, numbers.Number):
        return value
    text = str(value).strip()
    try:
        return int(text)
    except ValueError:
        pass
    try:
        return float(text)
    except ValueError:
        raise InvalidCellError(f"Not a number: {value!r}") from None


class InputExecutor:
    def __init__(self, store: Store) -> None:
        self.store = store

    async def execute(self, cell: InputCell, inputs: Mapping[str, Any]) -> ExecutionOutcome:
        value = coerce_input(cell)
        self.store.set(cell.variable_name, value)
        return ExecutionOutcome(value=value)


def default_executors(
    store: Store,
    resolver: ModuleResolver,
    storage: NotebookStorage,
    *,
    missing: str = MISSING,
    error: str = ERROR,
    functions: FunctionRegistry | None = None,
) -> dict[type[Cell], CellExecutor]:
    """Executor registry keyed by cell class."""
    if functions is None:
        functions = FunctionRegistry()
    return {
        ScriptCell: ScriptExecutor(store, resolver, storage),
        FormulaCell: FormulaEvaluator(store, functions),
        MarkdownCell: MarkdownRenderer(missing, error, functions),
        InputCell: InputExecutor(store),
    }


def executor_for(executors: Mapping[type[Cell], CellExecutor], cell: Cell) -> CellExecutor:
    for cls in type(cell).__mro__:
        executor = executors.get(cls)
        if executor is not None:
            return executor
    raise InvalidCellError(f"No executor for {type(cell).__name__}")
