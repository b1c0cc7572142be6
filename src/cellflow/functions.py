"""Names available to formulas, placeholders and scripts without a read.

FORMULA_FUNCTIONS is the namespace a formula evaluates in besides its inputs;
a FunctionRegistry adds per-engine custom functions on top. SAFE_BUILTINS is
the builtins module a script sees. All of them feed the analyzer's allowlist:
a name found here is never treated as a variable read.
"""

from __future__ import annotations

import builtins
import keyword
import math
import random
from collections.abc import Iterable
from typing import Any, Callable, Mapping


def _flatten(args: tuple[Any, ...]) -> list[Any]:
    if len(args) == 1 and isinstance(args[0], Iterable) and not isinstance(args[0], (str, bytes)):
        return list(args[0])
    return list(args)


def total(*args: Any) -> Any:
    """sum(1, 2, 3) or sum([1, 2, 3])."""
    return builtins.sum(_flatten(args))


def avg(*args: Any) -> float:
    values = _flatten(args)
    return builtins.sum(values) / len(values) if values else 0


def count(*args: Any) -> int:
    return len(_flatten(args))


def when(condition: Any, if_true: Any, if_false: Any) -> Any:
    return if_true if condition else if_false


def _minimum(*args: Any) -> Any:
    return builtins.min(_flatten(args))


def _maximum(*args: Any) -> Any:
    return builtins.max(_flatten(args))


FORMULA_FUNCTIONS: dict[str, Any] = {
    "sum": total,
    "avg": avg,
    "count": count,
    "when": when,
    "min": _minimum,
    "max": _maximum,
    "round": builtins.round,
    "abs": builtins.abs,
    "pow": builtins.pow,
    "floor": math.floor,
    "ceil": math.ceil,
    "sqrt": math.sqrt,
    "log": math.log,
    "log10": math.log10,
    "exp": math.exp,
    "sin": math.sin,
    "cos": math.cos,
    "tan": math.tan,
    "asin": math.asin,
    "acos": math.acos,
    "atan": math.atan,
    "atan2": math.atan2,
    "isnan": math.isnan,
    "isfinite": math.isfinite,
    "random": random.random,
    "pi": math.pi,
    "e": math.e,
    "inf": math.inf,
    "nan": math.nan,
    "math": math,
    # Conversions and small helpers
    "int": int,
    "float": float,
    "str": str,
    "bool": bool,
    "len": len,
    "list": list,
    "dict": dict,
    "tuple": tuple,
    "range": range,
    "sorted": sorted,
    "any": any,
    "all": all,
    "zip": zip,
    "enumerate": enumerate,
    "isinstance": isinstance,
    "True": True,
    "False": False,
    "None": None,
}

_DENIED_BUILTINS = frozenset({
    "open",
    "exec",
    "eval",
    "compile",
    "input",
    "breakpoint",
    "globals",
    "locals",
    "vars",
    "exit",
    "quit",
    "help",
    "memoryview",
})

SAFE_BUILTINS: dict[str, Any] = {
    name: value
    for name, value in vars(builtins).items()
    if name not in _DENIED_BUILTINS and not name.startswith("_")
}
# Class statements inside scripts need the class builder.
SAFE_BUILTINS["__build_class__"] = builtins.__build_class__


class FunctionRegistry:
    """Formula helpers for one engine: FORMULA_FUNCTIONS plus custom ones.

    A custom function shadows a built-in helper of the same name until it
    is removed.
    """

    def __init__(self, custom: Mapping[str, Callable[..., Any]] | None = None) -> None:
        self._custom: dict[str, Callable[..., Any]] = {}
        for name, function in (custom or {}).items():
            self.add(name, function)

    def add(self, name: str, function: Callable[..., Any]) -> None:
        if not name.isidentifier() or keyword.iskeyword(name):
            raise ValueError(f"Not a valid function name: {name!r}")
        if not callable(function):
            raise TypeError(f"Formula function {name!r} must be callable")
        self._custom[name] = function

    def remove(self, name: str) -> bool:
        """Drop a custom function. Built-in helpers cannot be removed."""
        return self._custom.pop(name, None) is not None

    @property
    def custom_names(self) -> frozenset[str]:
        return frozenset(self._custom)

    def names(self) -> frozenset[str]:
        return frozenset(FORMULA_FUNCTIONS) | frozenset(self._custom)

    def namespace(self) -> dict[str, Any]:
        return {**FORMULA_FUNCTIONS, **self._custom}

    def __contains__(self, name: object) -> bool:
        return name in self._custom or name in FORMULA_FUNCTIONS
