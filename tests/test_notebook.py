"""Tests for notebook record parsing and export."""

import pytest

from cellflow import FormulaCell, InputCell, InvalidCellError, MarkdownCell, ScriptCell
from cellflow.notebook import CellRecord, cell_from_record, cell_to_record, parse_notebook


class TestParse:
    def test_script_source_from_code_or_content(self):
        assert cell_from_record({"type": "code", "id": "s", "code": "x = 1"}).content == "x = 1"
        cell = cell_from_record({"type": "script", "id": "s", "content": "y = 2"})
        assert isinstance(cell, ScriptCell)
        assert cell.content == "y = 2"

    def test_formula(self):
        cell = cell_from_record({"type": "formula", "id": "f", "variableName": "c", "formula": "a + b"})
        assert isinstance(cell, FormulaCell)
        assert (cell.variable_name, cell.content) == ("c", "a + b")

    def test_input_falls_back_to_default_value(self):
        cell = cell_from_record({"type": "input", "id": "i", "variableName": "n", "defaultValue": 3})
        assert isinstance(cell, InputCell)
        assert cell.content == 3
        assert cell.input_type == "number"

    def test_markdown(self):
        assert isinstance(cell_from_record({"type": "markdown", "id": "m", "content": "hi"}), MarkdownCell)

    def test_extra_fields_ignored(self):
        record = CellRecord.model_validate({"type": "markdown", "id": "m", "collapsed": True, "outputs": []})
        assert not hasattr(record, "collapsed")

    def test_invalid_type(self):
        with pytest.raises(InvalidCellError):
            cell_from_record({"type": "chart", "id": "c"})

    def test_missing_id(self):
        with pytest.raises(InvalidCellError):
            cell_from_record({"type": "markdown"})

    def test_bare_list_is_a_notebook(self):
        notebook = parse_notebook([{"type": "markdown", "id": "m"}])
        assert notebook.title is None
        assert [record.id for record in notebook.cells] == ["m"]
        assert notebook.storage == {}


class TestExport:
    def test_minimal_records(self):
        assert cell_to_record(ScriptCell("s", "x = 1")) == {"type": "code", "id": "s", "code": "x = 1"}
        assert cell_to_record(MarkdownCell("m", "# Hi")) == {"type": "markdown", "id": "m", "content": "# Hi"}
        assert cell_to_record(InputCell("i", 5, variable_name="n", label="N")) == {
            "type": "input",
            "id": "i",
            "variableName": "n",
            "inputType": "number",
            "defaultValue": 5,
            "label": "N",
        }

    def test_round_trip(self):
        cell = InputCell("r", 40, variable_name="pct", input_type="range", props={"min": 0, "max": 100})
        again = cell_from_record(cell_to_record(cell))
        assert (again.variable_name, again.input_type, again.props, again.content) == ("pct", "range", {"min": 0, "max": 100}, 40)
