"""Capabilities exposed to script cells.

A script body sees exactly these names besides its inputs:

- exports: the cell's outputs (exports.total = 3, exports["total"] = 3)
- require(name) / import: modules from the configured allowlist
- storage: the notebook's non-reactive key/value area
- output(*values), output.table(rows): displayable results
- console.log/info/warn/error/debug and print: captured text
- math

plus a reduced builtins module. This is a capability boundary for
well-behaved notebooks, not a security sandbox.
"""

from __future__ import annotations

import builtins
import importlib
import logging
import math
from dataclasses import dataclass, field
from types import ModuleType
from typing import Any, Iterable, Iterator, Mapping

from cellflow.cells import ConsoleLine
from cellflow.errors import ModuleNotAllowedError
from cellflow.functions import SAFE_BUILTINS
from cellflow.storage import NotebookStorage

logger = logging.getLogger("cellflow.sandbox")
script_logger = logging.getLogger("cellflow.script")


class Exports:
    """Named outputs of a script cell. Keys are variable names."""

    __slots__ = ("_values",)

    def __init__(self) -> None:
        object.__setattr__(self, "_values", {})

    def __setattr__(self, name: str, value: Any) -> None:
        self[name] = value

    def __getattr__(self, name: str) -> Any:
        try:
            return self._values[name]
        except KeyError:
            raise AttributeError(name) from None

    def __delattr__(self, name: str) -> None:
        del self[name]

    def __setitem__(self, name: str, value: Any) -> None:
        if not isinstance(name, str):
            raise TypeError(f"Export names must be str, not {type(name).__name__}")
        self._values[name] = value

    def __getitem__(self, name: str) -> Any:
        return self._values[name]

    def __delitem__(self, name: str) -> None:
        del self._values[name]

    def __contains__(self, name: object) -> bool:
        return name in self._values

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._values))

    def __len__(self) -> int:
        return len(self._values)

    def update(self, values: Mapping[str, Any] | None = None, **kwargs: Any) -> None:
        for name, value in {**(values or {}), **kwargs}.items():
            self[name] = value

    def to_dict(self) -> dict[str, Any]:
        return dict(self._values)

    def __repr__(self) -> str:
        return f"Exports({self._values!r})"


@dataclass(frozen=True)
class TableOutput:
    rows: tuple[Any, ...]
    columns: tuple[str, ...] = ()


class OutputCollector:
    """output(value) and output.table(rows), collected in call order."""

    def __init__(self) -> None:
        self.items: list[Any] = []

    def __call__(self, *values: Any) -> None:
        if len(values) == 1:
            self.items.append(values[0])
        elif values:
            self.items.append(values)

    def table(self, rows: Iterable[Any]) -> None:
        rows = tuple(rows)
        columns: dict[str, None] = {}
        for row in rows:
            if isinstance(row, Mapping):
                columns.update(dict.fromkeys(str(key) for key in row))
        self.items.append(TableOutput(rows, tuple(columns)))


class ScriptConsole:
    """Captures console calls as ConsoleLine records."""

    def __init__(self, cell_id: str = "") -> None:
        self.cell_id = cell_id
        self.lines: list[ConsoleLine] = []

    def _write(self, level: str, args: tuple[Any, ...], sep: str = " ") -> None:
        text = sep.join(str(arg) for arg in args)
        self.lines.append(ConsoleLine(level, text))
        script_logger.debug("[%s] %s: %s", self.cell_id, level, text)

    def log(self, *args: Any) -> None:
        self._write("log", args)

    def info(self, *args: Any) -> None:
        self._write("info", args)

    def warn(self, *args: Any) -> None:
        self._write("warn", args)

    warning = warn

    def error(self, *args: Any) -> None:
        self._write("error", args)

    def debug(self, *args: Any) -> None:
        self._write("debug", args)

    def print(self, *args: Any, sep: str | None = " ", end: str = "\n", file: Any = None, flush: bool = False) -> None:
        self._write("log", args, " " if sep is None else sep)


class ModuleResolver:
    """Resolves require() and import statements against an allowlist.

    Only the top-level package name is checked: allowing "collections"
    allows "collections.abc". Modules loaded through require() are cached
    until clear() is called.
    """

    def __init__(self, allowed: Iterable[str]) -> None:
        self.allowed = frozenset(allowed)
        self._cache: dict[str, ModuleType] = {}

    def is_allowed(self, name: str) -> bool:
        return name.split(".", 1)[0] in self.allowed

    def _check(self, name: str) -> None:
        if not self.is_allowed(name):
            logger.warning("Module %r is not allowed", name)
            raise ModuleNotAllowedError(f"Module {name!r} is not available in this notebook")

    def require(self, name: str) -> ModuleType:
        module = self._cache.get(name)
        if module is None:
            self._check(name)
            module = self._cache[name] = importlib.import_module(name)
        return module

    def import_module(
        self,
        name: str,
        globals: Mapping[str, Any] | None = None,
        locals: Mapping[str, Any] | None = None,
        fromlist: tuple[str, ...] | None = (),
        level: int = 0,
    ) -> ModuleType:
        """Replacement for __import__ inside scripts."""
        if level:
            raise ModuleNotAllowedError("Relative imports are not available in notebooks")
        self._check(name)
        return builtins.__import__(name, globals, locals, fromlist, level)

    def clear(self) -> None:
        self._cache.clear()


class StorageAccessor:
    """The script's view of NotebookStorage: data operations only."""

    __slots__ = ("_storage",)

    def __init__(self, storage: NotebookStorage) -> None:
        self._storage = storage

    def get(self, key: str, default: Any = None) -> Any:
        return self._storage.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._storage.set(key, value)

    def has(self, key: str) -> bool:
        return self._storage.has(key)

    def delete(self, key: str) -> bool:
        return self._storage.delete(key)

    def keys(self) -> list[str]:
        return self._storage.keys()

    def clear(self) -> None:
        self._storage.clear()


@dataclass
class Sandbox:
    """Per-run capability set for one script cell."""

    cell_id: str
    resolver: ModuleResolver
    storage: NotebookStorage
    exports: Exports = field(default_factory=Exports)
    output: OutputCollector = field(default_factory=OutputCollector)
    console: ScriptConsole = field(init=False)

    def __post_init__(self) -> None:
        self.console = ScriptConsole(self.cell_id)

    def namespace(self, inputs: Mapping[str, Any]) -> dict[str, Any]:
        """Globals for the script body: inputs first, capabilities win."""
        script_builtins = dict(SAFE_BUILTINS)
        script_builtins["__import__"] = self.resolver.import_module
        script_builtins["print"] = self.console.print
        namespace = dict(inputs)
        namespace.update(
            __builtins__=script_builtins,
            __name__=f"cell_{self.cell_id}",
            exports=self.exports,
            require=self.resolver.require,
            storage=StorageAccessor(self.storage),
            output=self.output,
            console=self.console,
            math=math,
        )
        return namespace
