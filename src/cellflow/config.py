"""Engine configuration: defaults and YAML loading."""

from __future__ import annotations

from pathlib import Path
from typing import Any

import yaml
from pydantic import BaseModel, ConfigDict, Field

DEFAULT_ALLOWED_MODULES = [
    "math",
    "cmath",
    "statistics",
    "random",
    "decimal",
    "fractions",
    "datetime",
    "time",
    "json",
    "re",
    "string",
    "textwrap",
    "itertools",
    "functools",
    "operator",
    "collections",
    "dataclasses",
    "enum",
    "typing",
    "asyncio",
]


class EngineConfig(BaseModel):
    model_config = ConfigDict(extra="ignore")

    settle_window: float = Field(default=0.0, ge=0)  # seconds writes wait to coalesce
    auto_drive: bool = True  # start a settle task when work arrives on a running loop
    allowed_modules: list[str] = Field(default_factory=lambda: list(DEFAULT_ALLOWED_MODULES))
    missing_placeholder: str = "—"
    error_placeholder: str = "#ERROR"


def load_config(path: str | Path) -> EngineConfig:
    """Load EngineConfig from a YAML file.

    Settings may sit at the top level or under a `cellflow:` key. A missing
    or empty file gives the defaults.
    """
    path = Path(path)
    if not path.exists():
        return EngineConfig()
    raw: Any = yaml.safe_load(path.read_text()) or {}
    if not isinstance(raw, dict):
        raise ValueError(f"{path}: expected a mapping, got {type(raw).__name__}")
    section = raw.get("cellflow", raw)
    return EngineConfig.model_validate(section or {})
