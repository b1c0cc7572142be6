"""Tests for markdown placeholder rendering and filters."""

import logging

import pytest

from cellflow.errors import CellError
from cellflow.executors import evaluate_expression
from cellflow.markdown import apply_filter, render


def render_values(template, values, **kwargs):
    return render(template, lambda expression: evaluate_expression(expression, values), **kwargs)


class TestFilters:
    @pytest.mark.parametrize(
        "value, args, expected",
        [
            (5, ("1",), "5.0"),
            (3.14159, ("2",), "3.14"),
            (2.4, (), "2"),
            (7, (), "7"),
        ],
    )
    def test_round(self, value, args, expected):
        assert apply_filter(value, "round", args) == expected

    def test_currency(self):
        assert apply_filter(1234.5, "currency") == "$1,234.50"
        assert apply_filter(-3, "currency") == "-$3.00"

    def test_percent(self):
        assert apply_filter(0.256, "percent") == "25.6%"

    def test_unknown_filter_passes_value_through(self, caplog):
        with caplog.at_level(logging.WARNING, logger="cellflow.markdown"):
            assert apply_filter(42, "shout") == "42"
        assert "Unknown filter: shout" in caplog.text

    def test_unformattable_value_passes_through(self):
        assert apply_filter("abc", "currency") == "abc"


class TestRender:
    def test_values_and_filters(self):
        text = render_values("Total: {{c|round,1}}", {"c": 5})
        assert text == "Total: 5.0"

    def test_missing_value_renders_dash(self):
        assert render_values("x={{ nope }}", {}) == "x=—"
        assert render_values("x={{ v }}", {"v": None}) == "x=—"

    def test_error_marker_renders_error(self):
        marker = CellError("execution", "s", "s", "boom")
        assert render_values("{{ v | currency }}", {"v": marker}) == "#ERROR"

    def test_custom_placeholders(self):
        text = render_values("{{ a }} {{ b }}", {"b": CellError("cycle", "c", "c", "loop")}, missing="n/a", error="!")
        assert text == "n/a !"

    def test_evaluator_receives_expression(self):
        seen = []

        def evaluate(expression):
            seen.append(expression)
            return 10

        assert render("{{ a + b | percent }} and {{x}}", evaluate) == "1000.0% and 10"
        assert seen == ["a + b", "x"]

    def test_evaluation_failure_renders_error(self):
        def evaluate(expression):
            raise ZeroDivisionError

        assert render("{{ 1/0 }}", evaluate) == "#ERROR"

    def test_text_without_placeholders_is_unchanged(self):
        assert render("# Heading\n\nplain {text}", lambda e: None) == "# Heading\n\nplain {text}"

    def test_unterminated_placeholder_is_left_alone(self):
        assert render_values("{{a}} {{b", {"a": 1}) == "1 {{b"
