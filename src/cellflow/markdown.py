"""Placeholder interpolation for markdown cells.

    Revenue: {{ revenue | currency }}, margin {{ margin | percent }}
    Total: {{ a + b | round, 2 }}

Text before the first `|` is an expression, evaluated by the caller; after
it comes a filter name with optional comma-separated numeric arguments.
"""

from __future__ import annotations

import logging
from typing import Any, Callable

from cellflow.analysis import Placeholder, iter_placeholders
from cellflow.errors import is_error

logger = logging.getLogger("cellflow.markdown")

MISSING = "—"
ERROR = "#ERROR"

Filter = Callable[..., str]


def _round(value: Any, decimals: float = 0) -> str:
    return f"{float(value):.{int(decimals)}f}"


def _currency(value: Any) -> str:
    amount = float(value)
    sign = "-" if amount < 0 else ""
    return f"{sign}${abs(amount):,.2f}"


def _percent(value: Any) -> str:
    return f"{float(value) * 100:.1f}%"


FILTERS: dict[str, Filter] = {
    "round": _round,
    "currency": _currency,
    "percent": _percent,
}


def _number(arg: str) -> float:
    try:
        return float(arg)
    except ValueError:
        return float("nan")


def apply_filter(value: Any, name: str, args: tuple[str, ...] = ()) -> str:
    """Format value with the named filter.

    Unknown filters, and filters that cannot format the value, fall back to
    str(value).
    """
    function = FILTERS.get(name)
    if function is None:
        logger.warning("Unknown filter: %s", name)
        return str(value)
    try:
        return function(value, *(_number(arg) for arg in args))
    except (TypeError, ValueError, OverflowError):
        logger.debug("Filter %s could not format %r", name, value)
        return str(value)


def render(
    template: str,
    evaluate: Callable[[str], Any],
    *,
    missing: str = MISSING,
    error: str = ERROR,
) -> str:
    """Replace every placeholder in template with its formatted value.

    evaluate(expression) returns the value of a placeholder expression. A
    NameError or a None result renders as missing; an error marker or any
    other exception renders as error.
    """
    parts = []
    position = 0
    for placeholder in iter_placeholders(template):
        parts.append(template[position:placeholder.start])
        parts.append(_render_one(placeholder, evaluate, missing, error))
        position = placeholder.end
    parts.append(template[position:])
    return "".join(parts)


def _render_one(placeholder: Placeholder, evaluate: Callable[[str], Any], missing: str, error: str) -> str:
    try:
        value = evaluate(placeholder.expression)
    except NameError:
        return missing
    except Exception:
        logger.debug("Placeholder %r failed to evaluate", placeholder.expression, exc_info=True)
        return error
    if value is None:
        return missing
    if is_error(value):
        return error
    if placeholder.filter_name:
        return apply_filter(value, placeholder.filter_name, placeholder.filter_args)
    return str(value)

