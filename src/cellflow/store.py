"""Variable Store — named, versioned values with per-name subscribers.

The Store is the leaf of the engine: a mapping from variable name to its
current value, a version counter and an ordered subscriber list. It knows
nothing about cells. Where a write goes depends on who is writing:

- inside a cell executor, writes are buffered (see _tracking) and committed
  by the scheduler once the executor completes;
- with a dispatcher attached (the scheduler), writes go through its
  coalescing queue;
- a standalone Store commits directly.

Subscribers are only ever notified for committed writes, in subscription
order.

Thread safety: call set_thread_scheduler() once from the owning thread.
After that, set() from any other thread is marshaled through it.
"""

from __future__ import annotations

import logging
import math
import threading
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Any, Callable, Iterable, Mapping, Protocol

from cellflow._tracking import WriteBuffer, current_execution

logger = logging.getLogger("cellflow.store")

Subscriber = Callable[[Any], None]
Unsubscribe = Callable[[], None]


class _Sentinel:
    __slots__ = ("_name",)

    def __init__(self, name: str) -> None:
        self._name = name

    def __repr__(self) -> str:
        return self._name


# Delivered to subscribers when their variable is removed or cleared.
REMOVED = _Sentinel("REMOVED")

# Value slot of a variable that has subscribers but no committed write yet.
_UNSET = _Sentinel("UNSET")


class WriteDispatcher(Protocol):
    def submit(self, name: str, value: Any, *, force: bool, immediate: bool) -> None: ...


@dataclass
class Variable:
    name: str
    value: Any = _UNSET
    version: int = 0
    subscribers: list[Subscriber] = field(default_factory=list)

    @property
    def defined(self) -> bool:
        return self.value is not _UNSET


def values_differ(old: Any, new: Any) -> bool:
    """Change test for committed writes.

    Identity first, then type, then equality: 1, 1.0 and True are three
    different values. NaN compared with NaN counts as unchanged; values
    whose comparison raises or is not a plain bool count as changed.
    """
    if old is new:
        return False
    if type(old) is not type(new):
        return True
    if isinstance(old, float) and math.isnan(old) and math.isnan(new):
        return False
    try:
        equal = old == new
    except Exception:
        return True
    if not isinstance(equal, bool):
        return True
    return not equal


class Store:
    """Named, versioned values with ordered per-name subscribers."""

    def __init__(self, initial: Mapping[str, Any] | None = None) -> None:
        self._variables: dict[str, Variable] = {}
        self._dispatcher: WriteDispatcher | None = None
        self._thread_scheduler: Callable[[Callable[[], None]], Any] | None = None
        self._owner_thread: threading.Thread | None = None
        for name, value in (initial or {}).items():
            self.commit(name, value)

    # --- Wiring ---

    def attach(self, dispatcher: WriteDispatcher | None) -> None:
        """Route non-executor writes through dispatcher (None detaches)."""
        self._dispatcher = dispatcher

    def set_thread_scheduler(self, scheduler: Callable[[Callable[[], None]], Any] | None) -> None:
        """Marshal writes from foreign threads through scheduler.

        Call once from the owning thread:
            store.set_thread_scheduler(loop.call_soon_threadsafe)
        """
        self._thread_scheduler = scheduler
        self._owner_thread = threading.current_thread() if scheduler is not None else None

    # --- Reads ---

    def get(self, name: str, default: Any = None) -> Any:
        """Committed value of name, or default. No side effects."""
        variable = self._variables.get(name)
        if variable is None or not variable.defined:
            return default
        return variable.value

    def has(self, name: str) -> bool:
        variable = self._variables.get(name)
        return variable is not None and variable.defined

    def version(self, name: str) -> int:
        variable = self._variables.get(name)
        return variable.version if variable is not None else 0

    def get_all_variable_names(self) -> list[str]:
        """Names with a committed value, in creation order."""
        return [name for name, variable in self._variables.items() if variable.defined]

    def snapshot(self, names: Iterable[str]) -> Mapping[str, Any]:
        """Read-only view of the committed values of names that exist."""
        return MappingProxyType({name: self.get(name) for name in sorted(names) if self.has(name)})

    def __contains__(self, name: str) -> bool:
        return self.has(name)

    def __len__(self) -> int:
        return len(self.get_all_variable_names())

    # --- Writes ---

    def set(self, name: str, value: Any, *, force: bool = False, immediate: bool = False) -> None:
        """Write a value. Buffered inside executors, coalesced by the dispatcher."""
        if (
            self._thread_scheduler is not None
            and threading.current_thread() is not self._owner_thread
        ):
            self._thread_scheduler(
                lambda: self.set(name, value, force=force, immediate=immediate)
            )
            return

        buffer = current_execution.get()
        if buffer is not None:
            buffer.record(name, value, force)
        elif self._dispatcher is not None:
            self._dispatcher.submit(name, value, force=force, immediate=immediate)
        else:
            self.commit(name, value, force=force)

    def update(self, values: Mapping[str, Any], *, immediate: bool = False) -> None:
        for name, value in values.items():
            self.set(name, value, immediate=immediate)

    def commit(self, name: str, value: Any, *, force: bool = False) -> bool:
        """Durably write value, bump the version and notify subscribers.

        Returns True when the value changed (or force was given), which is
        what decides whether dependents need to run.
        """
        variable = self._variables.get(name)
        if variable is None:
            variable = self._variables[name] = Variable(name)
        changed = not variable.defined or values_differ(variable.value, value) or force
        variable.value = value
        variable.version += 1
        self._notify(variable, value)
        return changed

    def commit_buffer(self, buffer: WriteBuffer) -> set[str]:
        """Commit every buffered write. Returns the names whose value changed."""
        changed = set()
        for name, write in buffer.writes.items():
            if self.commit(name, write.value, force=write.force):
                changed.add(name)
        return changed

    def remove(self, name: str) -> bool:
        """Destroy a variable: notify REMOVED, then drop value and subscribers."""
        variable = self._variables.pop(name, None)
        if variable is None:
            return False
        if variable.defined:
            self._notify(variable, REMOVED)
        variable.subscribers.clear()
        logger.debug("Removed variable %r", name)
        return True

    def unset(self, name: str) -> bool:
        """Forget the value of name, notifying REMOVED. Subscriptions survive."""
        variable = self._variables.get(name)
        if variable is None or not variable.defined:
            return False
        variable.value = _UNSET
        self._notify(variable, REMOVED)
        return True

    def clear(self) -> None:
        """Forget every value, notifying REMOVED. Subscriptions survive."""
        for name in list(self._variables):
            self.unset(name)

    # --- Subscriptions ---

    def subscribe(self, name: str, callback: Subscriber) -> Unsubscribe:
        """Call callback(value) after every committed write to name."""
        variable = self._variables.get(name)
        if variable is None:
            variable = self._variables[name] = Variable(name)
        variable.subscribers.append(callback)

        def _unsubscribe() -> None:
            try:
                variable.subscribers.remove(callback)
            except ValueError:
                pass  # already removed

        return _unsubscribe

    def _notify(self, variable: Variable, value: Any) -> None:
        for callback in list(variable.subscribers):
            try:
                callback(value)
            except Exception:
                logger.exception("Subscriber for %r failed", variable.name)

    def __repr__(self) -> str:
        return f"Store({len(self)} variables)"
