"""Execution scope tracking — the seam between executors and the Store.

Uses contextvars to know whether a Store write is happening inside a cell
executor. When it is, the write lands in that executor's WriteBuffer instead
of being committed, so a running cell can never start a re-entrant pass.
The scheduler commits the buffer once the executor completes (or drops it
when the result turned out to be stale).
"""

from __future__ import annotations

import contextvars
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator


@dataclass
class BufferedWrite:
    value: Any
    force: bool = False


@dataclass
class WriteBuffer:
    """Writes made by one executor run, ordered by each name's last write."""

    cell_id: str
    writes: dict[str, BufferedWrite] = field(default_factory=dict)

    def record(self, name: str, value: Any, force: bool = False) -> None:
        previous = self.writes.pop(name, None)
        # Re-inserting keeps the last value but a forced write stays forced.
        self.writes[name] = BufferedWrite(value, force or (previous is not None and previous.force))

    def names(self) -> frozenset[str]:
        return frozenset(self.writes)

    def __len__(self) -> int:
        return len(self.writes)


# The buffer of the executor currently running in this context, if any.
current_execution: contextvars.ContextVar[WriteBuffer | None] = contextvars.ContextVar(
    "current_execution", default=None
)


@contextmanager
def execution_scope(cell_id: str) -> Iterator[WriteBuffer]:
    """Enter an executor scope. Store writes inside it are buffered.

    Usage:
        with execution_scope("cell-1") as buffer:
            store.set("x", 1)      # buffered, not committed
        store.commit_buffer(buffer)
    """
    buffer = WriteBuffer(cell_id)
    token = current_execution.set(buffer)
    try:
        yield buffer
    finally:
        current_execution.reset(token)


def in_execution() -> bool:
    """True while an executor is running in the current context."""
    return current_execution.get() is not None
