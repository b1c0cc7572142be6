"""Tests for formula helpers and per-engine custom functions."""

import pytest

from cellflow.functions import FORMULA_FUNCTIONS, FunctionRegistry, avg, total


class TestHelpers:
    def test_sum_and_avg_accept_lists_or_arguments(self):
        assert total(1, 2, 3) == total([1, 2, 3]) == 6
        assert avg([2, 4]) == 3
        assert avg() == 0


class TestFunctionRegistry:
    def test_custom_functions_join_the_helpers(self):
        functions = FunctionRegistry({"tax": lambda x: x * 0.2})
        assert "tax" in functions
        assert "sum" in functions
        assert functions.custom_names == {"tax"}
        assert functions.names() == set(FORMULA_FUNCTIONS) | {"tax"}
        assert functions.namespace()["tax"](10) == 2

    def test_custom_function_shadows_helper_until_removed(self):
        functions = FunctionRegistry()
        functions.add("round", lambda x: "custom")
        assert functions.namespace()["round"](1.5) == "custom"
        assert functions.remove("round") is True
        assert functions.namespace()["round"] is round

    def test_builtin_helpers_cannot_be_removed(self):
        functions = FunctionRegistry()
        assert functions.remove("sum") is False
        assert "sum" in functions

    def test_registries_are_independent(self):
        first = FunctionRegistry({"f": abs})
        second = FunctionRegistry()
        assert "f" in first
        assert "f" not in second
        assert "f" not in FORMULA_FUNCTIONS

    @pytest.mark.parametrize("name", ["", "1st", "two words", "lambda"])
    def test_invalid_names(self, name):
        with pytest.raises(ValueError):
            FunctionRegistry().add(name, abs)

    def test_must_be_callable(self):
        with pytest.raises(TypeError):
            FunctionRegistry().add("answer", 42)
