"""Persisted notebook records.

The engine consumes, but does not own, the notebook file format: an ordered
list of cell records {type, id, variableName?, content|formula}. Records are
parsed with pydantic and unknown fields are ignored, so upstream tooling can
add or strip extras without breaking re-analysis.
"""

from __future__ import annotations

from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field, ValidationError

from cellflow.cells import Cell, FormulaCell, InputCell, MarkdownCell, ScriptCell
from cellflow.errors import InvalidCellError

CellType = Literal["code", "script", "formula", "markdown", "input"]


class CellRecord(BaseModel):
    """One persisted cell. Script source may arrive as `code` or `content`."""

    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    type: CellType
    id: str
    variable_name: str | None = Field(default=None, alias="variableName")
    content: Any = None
    code: str | None = None
    formula: str | None = None
    default_value: Any = Field(default=None, alias="defaultValue")
    input_type: str = Field(default="number", alias="inputType")
    props: dict[str, Any] = Field(default_factory=dict)
    label: str | None = None


class NotebookModel(BaseModel):
    model_config = ConfigDict(extra="ignore")

    title: str | None = None
    cells: list[CellRecord] = Field(default_factory=list)
    storage: dict[str, Any] = Field(default_factory=dict)


def parse_record(data: dict[str, Any] | CellRecord) -> CellRecord:
    if isinstance(data, CellRecord):
        return data
    try:
        return CellRecord.model_validate(data)
    except ValidationError as exc:
        raise InvalidCellError(f"Invalid cell record: {exc}") from exc


def parse_notebook(data: dict[str, Any] | list[dict[str, Any]] | NotebookModel) -> NotebookModel:
    """Accept a full notebook mapping or a bare list of cell records."""
    if isinstance(data, NotebookModel):
        return data
    if isinstance(data, list):
        data = {"cells": data}
    try:
        return NotebookModel.model_validate(data)
    except ValidationError as exc:
        raise InvalidCellError(f"Invalid notebook: {exc}") from exc


def cell_from_record(data: dict[str, Any] | CellRecord) -> Cell:
    record = parse_record(data)
    if record.type in ("code", "script"):
        source = record.code if record.code is not None else record.content
        return ScriptCell(record.id, source or "")
    if record.type == "formula":
        expression = record.formula if record.formula is not None else record.content
        return FormulaCell(
            record.id,
            expression or "",
            variable_name=record.variable_name or "",
            label=record.label,
        )
    if record.type == "markdown":
        return MarkdownCell(record.id, record.content or "")
    value = record.content if record.content is not None else record.default_value
    return InputCell(
        record.id,
        value,
        variable_name=record.variable_name or "",
        input_type=record.input_type,
        props=dict(record.props),
        label=record.label,
    )


def cell_to_record(cell: Cell) -> dict[str, Any]:
    """Minimal record for a cell: only the fields the engine needs back."""
    if isinstance(cell, ScriptCell):
        return {"type": "code", "id": cell.id, "code": cell.content}
    if isinstance(cell, FormulaCell):
        record = {"type": "formula", "id": cell.id, "variableName": cell.variable_name, "formula": cell.content}
    elif isinstance(cell, InputCell):
        record = {
            "type": "input",
            "id": cell.id,
            "variableName": cell.variable_name,
            "inputType": cell.input_type,
            "defaultValue": cell.content,
        }
        if cell.props:
            record["props"] = dict(cell.props)
    else:
        return {"type": "markdown", "id": cell.id, "content": cell.content}
    if cell.label:
        record["label"] = cell.label
    return record
