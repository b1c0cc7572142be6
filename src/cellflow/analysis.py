"""Dependency Analyzer — derive a cell's reads and write set from its content.

Everything here is a pure function of the cell content. analyze_cell()
dispatches on the cell variant and fills in cell.reads, cell.write_set and
cell.analysis_error; nothing is executed.

Reads are the free identifiers of the code: names that are loaded but not
bound by the code itself before use, minus the built-in allowlist. Module
level is flow-sensitive (a name used before its first assignment is a read),
function and lambda bodies are resolved against every module-level binding
because they run later.
"""

from __future__ import annotations

import ast
import builtins
import keyword
import logging
import re
from dataclasses import dataclass
from functools import singledispatch
from typing import Iterable, Iterator

from cellflow.cells import Cell, FormulaCell, InputCell, MarkdownCell, ScriptCell, WriteSet
from cellflow.errors import AnalysisError, InvalidCellError
from cellflow.functions import FORMULA_FUNCTIONS

logger = logging.getLogger("cellflow.analysis")

# Names injected into every script namespace.
CAPABILITY_NAMES = frozenset({"exports", "storage", "require", "output", "console", "math"})

ALLOWED_NAMES = frozenset(
    set(keyword.kwlist)
    | set(keyword.softkwlist)
    | set(dir(builtins))
    | CAPABILITY_NAMES
    | set(FORMULA_FUNCTIONS)
)

_LEGACY_VARIABLE = re.compile(r"\$([A-Za-z_]\w*)")

_COMPREHENSIONS = (ast.ListComp, ast.SetComp, ast.DictComp, ast.GeneratorExp)
_FUNCTIONS = (ast.FunctionDef, ast.AsyncFunctionDef)


def convert_legacy_syntax(expression: str) -> str:
    """Rewrite the legacy `$name` sigil to a bare `name`."""
    return _LEGACY_VARIABLE.sub(r"\1", expression)


# --- Free-name collection ---


class _Scope:
    __slots__ = ("kind", "names", "globals")

    def __init__(self, kind: str, names: set[str] | None = None, declared_globals: set[str] | None = None) -> None:
        self.kind = kind
        self.names = names if names is not None else set()
        self.globals = declared_globals or set()


def _alias_binding(alias: ast.alias) -> str:
    if alias.asname:
        return alias.asname
    return alias.name.split(".", 1)[0]


def _local_bindings(body: list[ast.stmt]) -> tuple[set[str], set[str]]:
    """Names a function body binds locally, and names it declares global.

    Does not descend into nested functions, classes or lambdas. Walrus
    targets inside comprehensions bind in the function, so they count.
    """
    names: set[str] = set()
    declared: set[str] = set()
    nonlocal_names: set[str] = set()
    stack: list[ast.AST] = list(body)
    while stack:
        node = stack.pop()
        if isinstance(node, (*_FUNCTIONS, ast.ClassDef)):
            names.add(node.name)
            continue
        if isinstance(node, ast.Lambda):
            continue
        if isinstance(node, _COMPREHENSIONS):
            names.update(n.target.id for n in ast.walk(node) if isinstance(n, ast.NamedExpr))
            continue
        if isinstance(node, ast.Name) and isinstance(node.ctx, (ast.Store, ast.Del)):
            names.add(node.id)
        elif isinstance(node, ast.Global):
            declared.update(node.names)
        elif isinstance(node, ast.Nonlocal):
            nonlocal_names.update(node.names)
        elif isinstance(node, (ast.Import, ast.ImportFrom)):
            names.update(_alias_binding(a) for a in node.names if a.name != "*")
        elif isinstance(node, ast.ExceptHandler) and node.name:
            names.add(node.name)
        elif isinstance(node, (ast.MatchAs, ast.MatchStar)) and node.name:
            names.add(node.name)
        elif isinstance(node, ast.MatchMapping) and node.rest:
            names.add(node.rest)
        stack.extend(ast.iter_child_nodes(node))
    return names - declared - nonlocal_names, declared


class FreeNameCollector(ast.NodeVisitor):
    """Collect the names a piece of code reads from outside itself."""

    def __init__(self, allowed: Iterable[str] = ALLOWED_NAMES) -> None:
        self.allowed = frozenset(allowed)
        self.reads: set[str] = set()
        self.module_bound: set[str] = set()
        self._scopes: list[_Scope] = []
        self._deferred: list[tuple[ast.AST, list[_Scope]]] = []
        self._module_done = False

    def collect(self, tree: ast.AST) -> frozenset[str]:
        self.visit(tree)
        self._module_done = True
        while self._deferred:
            node, scopes = self._deferred.pop(0)
            saved, self._scopes = self._scopes, scopes
            self._enter_function(node)
            self._scopes = saved
        return frozenset(self.reads - self.allowed)

    # --- Name resolution ---

    def _load(self, name: str) -> None:
        innermost = len(self._scopes) - 1
        for index in range(innermost, -1, -1):
            scope = self._scopes[index]
            if scope.kind == "class" and index != innermost:
                continue
            if name in scope.globals:
                break
            if name in scope.names:
                return
        if name in self.module_bound:
            return
        self.reads.add(name)

    def _bind(self, name: str, *, skip_comprehensions: bool = False) -> None:
        for scope in reversed(self._scopes):
            if skip_comprehensions and scope.kind == "comprehension":
                continue
            if name in scope.globals:
                break
            scope.names.add(name)
            return
        self.module_bound.add(name)

    def visit_Name(self, node: ast.Name) -> None:
        if isinstance(node.ctx, ast.Load):
            self._load(node.id)
        else:
            self._bind(node.id)

    # --- Statements evaluated right-hand side first ---

    def visit_Assign(self, node: ast.Assign) -> None:
        self.visit(node.value)
        for target in node.targets:
            self.visit(target)

    def visit_AugAssign(self, node: ast.AugAssign) -> None:
        self.visit(node.value)
        if isinstance(node.target, ast.Name):
            self._load(node.target.id)
            self._bind(node.target.id)
        else:
            self.visit(node.target)

    def visit_AnnAssign(self, node: ast.AnnAssign) -> None:
        self.visit(node.annotation)
        if node.value is not None:
            self.visit(node.value)
            self.visit(node.target)
        elif not isinstance(node.target, ast.Name):
            self.visit(node.target)

    def visit_NamedExpr(self, node: ast.NamedExpr) -> None:
        self.visit(node.value)
        self._bind(node.target.id, skip_comprehensions=True)

    def visit_For(self, node: ast.For | ast.AsyncFor) -> None:
        self.visit(node.iter)
        self.visit(node.target)
        for stmt in node.body + node.orelse:
            self.visit(stmt)

    visit_AsyncFor = visit_For

    def visit_Import(self, node: ast.Import | ast.ImportFrom) -> None:
        for alias in node.names:
            if alias.name != "*":
                self._bind(_alias_binding(alias))

    visit_ImportFrom = visit_Import

    def visit_ExceptHandler(self, node: ast.ExceptHandler) -> None:
        if node.type is not None:
            self.visit(node.type)
        if node.name:
            self._bind(node.name)
        for stmt in node.body:
            self.visit(stmt)

    def visit_MatchAs(self, node: ast.MatchAs) -> None:
        if node.pattern is not None:
            self.visit(node.pattern)
        if node.name:
            self._bind(node.name)

    def visit_MatchStar(self, node: ast.MatchStar) -> None:
        if node.name:
            self._bind(node.name)

    def visit_MatchMapping(self, node: ast.MatchMapping) -> None:
        self.generic_visit(node)
        if node.rest:
            self._bind(node.rest)

    # --- Scopes ---

    def _visit_signature(self, node: ast.FunctionDef | ast.AsyncFunctionDef | ast.Lambda) -> None:
        args = node.args
        for default in args.defaults + [d for d in args.kw_defaults if d is not None]:
            self.visit(default)
        if isinstance(node, ast.Lambda):
            return
        for decorator in node.decorator_list:
            self.visit(decorator)
        for arg in args.posonlyargs + args.args + args.kwonlyargs + [args.vararg, args.kwarg]:
            if arg is not None and arg.annotation is not None:
                self.visit(arg.annotation)
        if node.returns is not None:
            self.visit(node.returns)

    def _defer_or_enter(self, node: ast.AST) -> None:
        if self._module_done:
            self._enter_function(node)
        else:
            self._deferred.append((node, list(self._scopes)))

    def _enter_function(self, node: ast.FunctionDef | ast.AsyncFunctionDef | ast.Lambda) -> None:
        args = node.args
        params = {
            a.arg
            for a in args.posonlyargs + args.args + args.kwonlyargs + [args.vararg, args.kwarg]
            if a is not None
        }
        if isinstance(node, ast.Lambda):
            self._scopes.append(_Scope("function", params))
            self.visit(node.body)
        else:
            local, declared = _local_bindings(node.body)
            self._scopes.append(_Scope("function", params | local, declared))
            for stmt in node.body:
                self.visit(stmt)
        self._scopes.pop()

    def visit_FunctionDef(self, node: ast.FunctionDef | ast.AsyncFunctionDef) -> None:
        self._visit_signature(node)
        self._bind(node.name)
        self._defer_or_enter(node)

    visit_AsyncFunctionDef = visit_FunctionDef

    def visit_Lambda(self, node: ast.Lambda) -> None:
        self._visit_signature(node)
        self._defer_or_enter(node)

    def visit_ClassDef(self, node: ast.ClassDef) -> None:
        for expr in node.decorator_list + node.bases + [k.value for k in node.keywords]:
            self.visit(expr)
        self._scopes.append(_Scope("class"))
        for stmt in node.body:
            self.visit(stmt)
        self._scopes.pop()
        self._bind(node.name)

    def _visit_comprehension(self, node: ast.AST, elements: list[ast.expr]) -> None:
        generators: list[ast.comprehension] = node.generators
        # The first iterable is evaluated in the enclosing scope.
        self.visit(generators[0].iter)
        self._scopes.append(_Scope("comprehension"))
        for index, generator in enumerate(generators):
            if index:
                self.visit(generator.iter)
            self.visit(generator.target)
            for condition in generator.ifs:
                self.visit(condition)
        for element in elements:
            self.visit(element)
        self._scopes.pop()

    def visit_ListComp(self, node: ast.ListComp | ast.SetComp | ast.GeneratorExp) -> None:
        self._visit_comprehension(node, [node.elt])

    visit_SetComp = visit_ListComp
    visit_GeneratorExp = visit_ListComp

    def visit_DictComp(self, node: ast.DictComp) -> None:
        self._visit_comprehension(node, [node.key, node.value])


def free_names(tree: ast.AST, functions: Iterable[str] = ()) -> frozenset[str]:
    """Free identifiers of a parsed module or expression.

    Names on the allowlist or in functions are not reads.
    """
    return FreeNameCollector(ALLOWED_NAMES | frozenset(functions)).collect(tree)


def script_exports(tree: ast.AST) -> frozenset[str]:
    """Static estimate of the names a script attaches to `exports`.

    Recognizes `exports.NAME = ...`, `exports["NAME"] = ...` and
    `exports.update(NAME=..., **{"NAME": ...})`.
    """
    names = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.Attribute) and isinstance(node.ctx, ast.Store):
            if isinstance(node.value, ast.Name) and node.value.id == "exports":
                names.add(node.attr)
        elif isinstance(node, ast.Subscript) and isinstance(node.ctx, ast.Store):
            if (
                isinstance(node.value, ast.Name)
                and node.value.id == "exports"
                and isinstance(node.slice, ast.Constant)
                and isinstance(node.slice.value, str)
            ):
                names.add(node.slice.value)
        elif (
            isinstance(node, ast.Call)
            and isinstance(node.func, ast.Attribute)
            and node.func.attr == "update"
            and isinstance(node.func.value, ast.Name)
            and node.func.value.id == "exports"
        ):
            for kw in node.keywords:
                if kw.arg is not None:
                    names.add(kw.arg)
                elif isinstance(kw.value, ast.Dict):
                    names.update(
                        k.value for k in kw.value.keys if isinstance(k, ast.Constant) and isinstance(k.value, str)
                    )
            for arg in node.args:
                if isinstance(arg, ast.Dict):
                    names.update(
                        k.value for k in arg.keys if isinstance(k, ast.Constant) and isinstance(k.value, str)
                    )
    return frozenset(names)


def parse_expression(expression: str) -> ast.Expression:
    """Parse a formula or placeholder expression, legacy `$` syntax included."""
    return ast.parse(convert_legacy_syntax(expression).strip(), mode="eval")


def expression_reads(expression: str, functions: Iterable[str] = ()) -> frozenset[str]:
    return free_names(parse_expression(expression), functions)


# --- Markdown placeholders ---


@dataclass(frozen=True)
class Placeholder:
    """One {{ expression | filter, args }} occurrence."""

    start: int
    end: int
    expression: str
    filter_name: str | None = None
    filter_args: tuple[str, ...] = ()


def parse_placeholder(inner: str, start: int = 0, end: int = 0) -> Placeholder:
    expression, bar, filter_part = inner.partition("|")
    if not bar:
        return Placeholder(start, end, expression.strip())
    name, *args = (part.strip() for part in filter_part.split(","))
    return Placeholder(start, end, expression.strip(), name or None, tuple(a for a in args if a))


def iter_placeholders(template: str) -> Iterator[Placeholder]:
    """Yield placeholders in order. Stops at an unterminated `{{`."""
    position = 0
    while True:
        start = template.find("{{", position)
        if start < 0:
            return
        close = template.find("}}", start + 2)
        if close < 0:
            return
        end = close + 2
        yield parse_placeholder(template[start + 2:close], start, end)
        position = end


def unterminated_placeholder(template: str) -> int | None:
    """Offset of the first `{{` with no matching `}}`, if any."""
    position = 0
    for placeholder in iter_placeholders(template):
        position = placeholder.end
    start = template.find("{{", position)
    return start if start >= 0 else None


# --- Per-variant analysis ---


@singledispatch
def analyze_cell(cell: Cell, functions: Iterable[str] = ()) -> Cell:
    """Recompute reads, write_set and analysis_error for cell, in place.

    functions names custom formula functions; formulas and placeholders do
    not read them.
    """
    raise InvalidCellError(f"Cannot analyze {type(cell).__name__}")


def _syntax_error(cell: Cell, exc: SyntaxError) -> AnalysisError:
    error = AnalysisError(f"Syntax error: {exc.msg}", cell_id=cell.id, offset=exc.offset)
    logger.debug("Analysis of cell %r failed: %s", cell.id, error)
    return error


@analyze_cell.register
def _(cell: ScriptCell, functions: Iterable[str] = ()) -> Cell:
    previous = cell.writes if cell.write_set.is_confirmed else frozenset()
    cell.analysis_error = None
    try:
        tree = ast.parse(cell.content or "")
    except SyntaxError as exc:
        cell.reads = frozenset()
        cell.analysis_error = _syntax_error(cell, exc)
        cell.write_set = WriteSet.provisional(previous)
        return cell
    cell.reads = free_names(tree)
    cell.write_set = WriteSet.provisional(script_exports(tree) | previous)
    return cell


@analyze_cell.register
def _(cell: FormulaCell, functions: Iterable[str] = ()) -> Cell:
    cell.write_set = WriteSet.confirmed({cell.variable_name})
    cell.analysis_error = None
    try:
        cell.reads = expression_reads(str(cell.content or ""), functions)
    except SyntaxError as exc:
        cell.reads = frozenset()
        cell.analysis_error = _syntax_error(cell, exc)
    return cell


@analyze_cell.register
def _(cell: MarkdownCell, functions: Iterable[str] = ()) -> Cell:
    template = str(cell.content or "")
    reads: set[str] = set()
    for placeholder in iter_placeholders(template):
        try:
            reads |= expression_reads(placeholder.expression, functions)
        except SyntaxError:
            logger.debug("Skipping unparsable placeholder %r in cell %r", placeholder.expression, cell.id)
    cell.reads = frozenset(reads)
    cell.write_set = WriteSet.confirmed(())
    cell.analysis_error = None
    offset = unterminated_placeholder(template)
    if offset is not None:
        cell.analysis_error = AnalysisError("Unterminated placeholder", cell_id=cell.id, offset=offset)
        logger.debug("Cell %r has an unterminated placeholder at %d", cell.id, offset)
    return cell


@analyze_cell.register
def _(cell: InputCell, functions: Iterable[str] = ()) -> Cell:
    cell.reads = frozenset()
    cell.write_set = WriteSet.confirmed({cell.variable_name})
    cell.analysis_error = None
    return cell
