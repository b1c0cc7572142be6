"""End-to-end tests for NotebookEngine."""

import asyncio

import pytest

from cellflow import (
    REMOVED,
    CellStatus,
    CycleError,
    EngineConfig,
    FormulaCell,
    InputCell,
    InvalidCellError,
    MarkdownCell,
    NotebookEngine,
    ScriptCell,
    UnknownCellError,
    WriteSetState,
    is_error,
)


def make_engine(**config):
    config.setdefault("auto_drive", False)
    return NotebookEngine(EngineConfig(**config))


def drive(engine):
    return asyncio.run(engine.run_until_idle())


class TestScenarios:
    def test_formula_from_store_values(self):
        engine = make_engine()
        engine.store.set("a", 2)
        engine.store.set("b", 3)
        engine.add_cell(FormulaCell("F1", "a + b", variable_name="c"))
        passes = drive(engine)
        assert engine.store.get("c") == 5
        assert len(passes) == 1

    def test_markdown_renders_formula_output(self):
        engine = make_engine()
        engine.store.set("a", 2)
        engine.store.set("b", 3)
        engine.add_cell(FormulaCell("F1", "a + b", variable_name="c"))
        engine.add_cell(MarkdownCell("M", "Total: {{c|round,1}}"))
        drive(engine)
        assert engine.result("M").value == "Total: 5.0"

    def test_script_edit_propagates(self):
        engine = make_engine()
        engine.add_cell(ScriptCell("S", "exports.x = 10"))
        engine.add_cell(FormulaCell("F", "x*2", variable_name="y"))
        drive(engine)
        assert engine.store.get("y") == 20
        engine.set_cell_content("S", "exports.x = 20")
        drive(engine)
        assert engine.store.get("y") == 40

    def test_cycle_is_reported_and_not_executed(self):
        engine = make_engine()
        engine.add_cell(FormulaCell("A", "b", variable_name="a"))
        engine.add_cell(FormulaCell("B", "a", variable_name="b"))
        drive(engine)
        for cell_id in ("A", "B"):
            result = engine.result(cell_id)
            assert result.status is CellStatus.CYCLE
            assert result.error.kind == "cycle"
            assert "Circular dependency detected" in result.error.message
            assert result.execution_count == 0
        assert is_error(engine.store.get("a"))
        assert [type(c) for c in engine.graph.cycles] == [CycleError]

    def test_failure_is_isolated(self):
        engine = make_engine()
        engine.add_cell(ScriptCell("S", "exports.total = 5\nraise RuntimeError('boom')"))
        engine.add_cell(FormulaCell("F", "total + 1", variable_name="t"))
        engine.add_cell(InputCell("I", 7, variable_name="z"))
        engine.add_cell(FormulaCell("G", "z * 2", variable_name="w"))
        (report,) = drive(engine)
        assert engine.result("S").status is CellStatus.ERROR
        assert engine.result("S").error.message == "boom"
        assert engine.result("F").failed
        assert engine.result("G").status is CellStatus.SUCCESS
        assert engine.store.get("w") == 14
        assert set(report.order) == {"S", "F", "I", "G"}


class TestProperties:
    def test_rerun_is_idempotent(self):
        engine = make_engine()
        engine.add_cell(InputCell("I", 3, variable_name="a"))
        engine.add_cell(FormulaCell("F", "a ** 2", variable_name="sq"))
        engine.add_cell(ScriptCell("S", "exports.total = sq + a"))
        drive(engine)
        before = {name: engine.store.get(name) for name in engine.store.get_all_variable_names()}
        engine.run_all()
        drive(engine)
        after = {name: engine.store.get(name) for name in engine.store.get_all_variable_names()}
        assert before == after == {"a": 3, "sq": 9, "total": 12}

    def test_breaking_a_cycle_restores_execution(self):
        engine = make_engine()
        engine.add_cell(FormulaCell("A", "b", variable_name="a"))
        engine.add_cell(FormulaCell("B", "a + 1", variable_name="b"))
        drive(engine)
        engine.set_cell_content("A", "10")
        drive(engine)
        assert engine.result("A").status is CellStatus.SUCCESS
        assert engine.result("B").status is CellStatus.SUCCESS
        assert engine.store.get("b") == 11

    def test_confirmed_writes_match_the_store(self):
        engine = make_engine()
        script = engine.add_cell(ScriptCell("S", "for name in ['p', 'q']:\n    exports[name] = len(name)"))
        assert script.writes == frozenset()
        drive(engine)
        assert script.write_set.state is WriteSetState.CONFIRMED
        assert script.writes == {"p", "q"}
        assert all(engine.store.has(name) for name in script.writes)

    def test_dynamic_exports_wire_up_after_first_run(self):
        engine = make_engine()
        engine.add_cell(ScriptCell("S", "exports['v'] = 1"))
        engine.add_cell(ScriptCell("T", "key = 'dyn'\nexports[key] = 4"))
        engine.add_cell(FormulaCell("F", "dyn + v", variable_name="out"))
        drive(engine)
        assert engine.store.get("out") == 5

    def test_self_read_does_not_loop(self):
        engine = make_engine()
        engine.store.set("c", 1)
        engine.add_cell(FormulaCell("F", "c + 1", variable_name="c"))
        passes = drive(engine)
        assert len(passes) == 1
        assert engine.store.get("c") == 2

    def test_last_writer_wins(self):
        engine = make_engine()
        engine.add_cell(InputCell("I1", 1, variable_name="x"))
        engine.add_cell(InputCell("I2", 2, variable_name="x"))
        drive(engine)
        assert engine.store.get("x") == 2


class TestStructure:
    def test_shrinking_exports_remove_the_variable(self):
        engine = make_engine()
        engine.add_cell(ScriptCell("S", "exports.a = 1\nexports.b = 2"))
        engine.add_cell(FormulaCell("F", "b + 1", variable_name="c"))
        drive(engine)
        seen = []
        engine.store.subscribe("b", seen.append)
        engine.set_cell_content("S", "exports.a = 1")
        drive(engine)
        assert seen == [REMOVED]
        assert not engine.store.has("b")
        assert engine.get_cell("S").writes == {"a"}
        assert engine.result("F").status is CellStatus.IDLE
        assert engine.result("F").error is None
        assert not engine.store.has("c")

    def test_remove_cell_orphans_variable(self):
        engine = make_engine()
        engine.add_cell(InputCell("I", 5, variable_name="n"))
        engine.add_cell(FormulaCell("F", "n * 2", variable_name="m"))
        drive(engine)
        engine.remove_cell("I")
        drive(engine)
        assert not engine.store.has("n")
        assert not engine.store.has("m")
        assert engine.result("F").status is CellStatus.IDLE
        with pytest.raises(UnknownCellError):
            engine.result("I")

    def test_remove_cell_keeps_shared_variable(self):
        engine = make_engine()
        engine.add_cell(InputCell("I1", 1, variable_name="x"))
        engine.add_cell(InputCell("I2", 2, variable_name="x"))
        drive(engine)
        engine.remove_cell("I2")
        drive(engine)
        assert engine.store.get("x") == 1

    def test_update_cell_renames_output(self):
        engine = make_engine()
        engine.add_cell(InputCell("I", 2, variable_name="a"))
        engine.add_cell(FormulaCell("F", "a * 3", variable_name="old"))
        drive(engine)
        engine.update_cell({"type": "formula", "id": "F", "variableName": "new", "formula": "a * 3"})
        drive(engine)
        assert not engine.store.has("old")
        assert engine.store.get("new") == 6

    def test_unchanged_content_is_a_no_op(self):
        engine = make_engine()
        engine.add_cell(FormulaCell("F", "1 + 1", variable_name="x"))
        drive(engine)
        assert engine.set_cell_content("F", "1 + 1") is False
        assert drive(engine) == []

    def test_move_cell_changes_tie_break(self):
        engine = make_engine()
        engine.add_cell(InputCell("I1", 1, variable_name="x"))
        engine.add_cell(InputCell("I2", 2, variable_name="x"))
        engine.move_cell("I2", 0)
        drive(engine)
        assert [c.id for c in engine.cells] == ["I2", "I1"]
        assert engine.store.get("x") == 1

    def test_add_at_index(self):
        engine = make_engine()
        engine.add_cell(InputCell("a", 1, variable_name="a"))
        engine.add_cell(InputCell("b", 2, variable_name="b"), at_index=0)
        assert [c.id for c in engine.cells] == ["b", "a"]

    def test_unknown_cell_ids(self):
        engine = make_engine()
        with pytest.raises(UnknownCellError):
            engine.set_cell_content("nope", "1")
        with pytest.raises(KeyError):
            engine.remove_cell("nope")

    def test_invalid_definitions(self):
        engine = make_engine()
        with pytest.raises(InvalidCellError):
            engine.add_cell({"type": "formula", "id": "F", "formula": "1"})
        with pytest.raises(InvalidCellError):
            engine.add_cell({"type": "chart", "id": "C"})


class TestMissingValues:
    def test_formula_waits_for_its_inputs(self):
        engine = make_engine()
        engine.add_cell(FormulaCell("F", "a + 1", variable_name="f"))
        engine.add_cell(FormulaCell("G", "f * 2", variable_name="g"))
        drive(engine)
        for cell_id in ("F", "G"):
            assert engine.result(cell_id).status is CellStatus.IDLE
            assert engine.result(cell_id).error is None
        assert not engine.store.has("f")
        assert not engine.store.has("g")
        engine.store.set("a", 1)
        drive(engine)
        assert engine.store.get("f") == 2
        assert engine.store.get("g") == 4
        assert engine.result("G").status is CellStatus.SUCCESS

    def test_script_sees_none_for_unwritten_names(self):
        engine = make_engine()
        engine.add_cell(ScriptCell("S", "exports.label = 'unset' if limit is None else limit"))
        drive(engine)
        assert engine.store.get("label") == "unset"
        engine.store.set("limit", 5)
        drive(engine)
        assert engine.store.get("label") == 5

    def test_value_type_change_reruns_dependents(self):
        engine = make_engine()
        engine.add_cell(InputCell("I", 1, variable_name="x"))
        engine.add_cell(MarkdownCell("M", "x={{ x }}"))
        drive(engine)
        assert engine.result("M").value == "x=1"
        engine.set_cell_content("I", 1.0)
        drive(engine)
        assert engine.result("M").value == "x=1.0"
        engine.set_cell_content("I", True)
        drive(engine)
        assert engine.store.get("x") == 1
        assert engine.result("M").value == "x=1"


class TestFormulaFunctions:
    def test_functions_from_the_constructor(self):
        engine = NotebookEngine(EngineConfig(auto_drive=False), functions={"tax": lambda x: x * 0.25})
        engine.add_cell(InputCell("I", 100, variable_name="price"))
        engine.add_cell(FormulaCell("F", "tax(price)", variable_name="t"))
        drive(engine)
        assert engine.get_cell("F").reads == {"price"}
        assert engine.store.get("t") == 25

    def test_add_and_remove_rerun_expressions(self):
        engine = make_engine()
        engine.add_cell(InputCell("I", 3, variable_name="n"))
        engine.add_cell(FormulaCell("F", "triple(n)", variable_name="t"))
        engine.add_cell(MarkdownCell("M", "t={{ t }} {{ triple(1) }}"))
        drive(engine)
        assert engine.get_cell("F").reads == {"n", "triple"}
        assert engine.result("F").status is CellStatus.IDLE
        assert engine.result("M").value == "t=— —"

        engine.add_formula_function("triple", lambda x: x * 3)
        assert engine.get_cell("F").reads == {"n"}
        drive(engine)
        assert engine.store.get("t") == 9
        assert engine.result("M").value == "t=9 3"

        assert engine.remove_formula_function("triple") is True
        drive(engine)
        assert not engine.store.has("t")
        assert engine.result("F").status is CellStatus.IDLE
        assert engine.result("M").value == "t=— —"
        assert engine.remove_formula_function("triple") is False

    def test_functions_are_per_engine(self):
        first = make_engine()
        second = make_engine()
        first.add_formula_function("half", lambda x: x / 2)
        assert "half" in first.functions
        assert "half" not in second.functions


class TestNotebooks:
    RECORDS = {
        "title": "Budget",
        "cells": [
            {"type": "input", "id": "price", "variableName": "price", "inputType": "number", "defaultValue": 12.5},
            {"type": "input", "id": "qty", "variableName": "qty", "content": "4", "props": {"min": 0}},
            {"type": "formula", "id": "total", "variableName": "total", "formula": "$price * $qty", "label": "Total"},
            {"type": "code", "id": "tax", "code": "exports.tax = total * 0.5", "collapsed": True},
            {"type": "markdown", "id": "summary", "content": "Pay {{ total + tax | currency }}"},
        ],
        "storage": {"runs": 0},
    }

    def test_load_runs_everything_in_one_pass(self):
        engine = make_engine()
        engine.load_notebook(self.RECORDS)
        passes = drive(engine)
        assert len(passes) == 1
        assert engine.store.get("total") == 50.0
        assert engine.result("summary").value == "Pay $75.00"
        assert engine.title == "Budget"
        assert engine.get_storage_value("runs") == 0

    def test_export_round_trip(self):
        engine = make_engine()
        engine.load_notebook(self.RECORDS)
        exported = engine.export_notebook()
        assert "collapsed" not in exported["cells"][3]
        assert exported["cells"][2] == {
            "type": "formula",
            "id": "total",
            "variableName": "total",
            "formula": "$price * $qty",
            "label": "Total",
        }

        again = make_engine()
        again.load_notebook(exported)
        assert again.export_notebook() == exported

    def test_load_replaces_previous_notebook(self):
        engine = make_engine()
        engine.add_cell(InputCell("old", 1, variable_name="stale"))
        drive(engine)
        engine.load_notebook(self.RECORDS)
        drive(engine)
        assert "old" not in engine.graph
        assert not engine.store.has("stale")

    def test_duplicate_ids_rejected(self):
        engine = make_engine()
        records = [
            {"type": "input", "id": "x", "variableName": "x", "content": 1},
            {"type": "input", "id": "x", "variableName": "y", "content": 2},
        ]
        with pytest.raises(InvalidCellError):
            engine.load_notebook(records)


class TestStorage:
    def test_script_storage_is_not_reactive(self):
        engine = make_engine()
        engine.add_cell(ScriptCell("S", "storage.set('visits', storage.get('visits', 0) + 1)"))
        drive(engine)
        assert engine.get_storage_value("visits") == 1
        assert engine.has_storage_key("visits")
        assert engine.get_storage_keys() == ["visits"]
        assert drive(engine) == []

    def test_reset_forgets_values_but_keeps_cells(self):
        engine = make_engine()
        engine.add_cell(InputCell("I", 1, variable_name="x"))
        drive(engine)
        engine.reset()
        assert not engine.store.has("x")
        assert engine.result("I").status is CellStatus.IDLE
        engine.run_all()
        drive(engine)
        assert engine.store.get("x") == 1

    def test_engines_are_independent(self):
        first, second = make_engine(), make_engine()
        first.add_cell(InputCell("I", 1, variable_name="x"))
        drive(first)
        assert not second.store.has("x")
