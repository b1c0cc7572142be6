"""Storage Side-Channel — per-notebook key/value data outside the reactive graph.

Scripts use it for data that should persist with the notebook but must not
trigger re-execution: writes here never touch the Store and never schedule
a pass. The notebook file carries it under `storage`.
"""

from __future__ import annotations

import copy
import logging
from typing import Any, Callable, Iterator, Mapping

logger = logging.getLogger("cellflow.storage")

ChangeHandler = Callable[[str, Any], None]


class NotebookStorage:
    """Non-reactive key/value storage with an optional change hook.

    The hook is called as handler(key, value) after every set, and with
    value=None after a delete. It is meant for "notebook modified" flags.
    """

    def __init__(self, data: Mapping[str, Any] | None = None, on_change: ChangeHandler | None = None) -> None:
        self._data: dict[str, Any] = dict(data or {})
        self._on_change = on_change

    def get(self, key: str, default: Any = None) -> Any:
        return self._data.get(key, default)

    def set(self, key: str, value: Any) -> None:
        self._data[key] = value
        self._changed(key, value)

    def has(self, key: str) -> bool:
        return key in self._data

    def delete(self, key: str) -> bool:
        if key not in self._data:
            return False
        del self._data[key]
        self._changed(key, None)
        return True

    def keys(self) -> list[str]:
        return list(self._data)

    def clear(self) -> None:
        keys = list(self._data)
        self._data.clear()
        for key in keys:
            self._changed(key, None)

    # --- Persistence ---

    def load(self, data: Mapping[str, Any]) -> None:
        """Replace the contents without calling the change handler."""
        self._data = dict(data)

    def export(self) -> dict[str, Any]:
        return copy.deepcopy(self._data)

    def set_change_handler(self, handler: ChangeHandler | None) -> None:
        self._on_change = handler

    def _changed(self, key: str, value: Any) -> None:
        if self._on_change is None:
            return
        try:
            self._on_change(key, value)
        except Exception:
            logger.exception("Storage change handler failed for %r", key)

    def __contains__(self, key: object) -> bool:
        return key in self._data

    def __iter__(self) -> Iterator[str]:
        return iter(list(self._data))

    def __len__(self) -> int:
        return len(self._data)

    def __repr__(self) -> str:
        return f"NotebookStorage({len(self._data)} keys)"
