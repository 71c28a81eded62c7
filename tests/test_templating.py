"""Tests for template rendering and condition evaluation."""

from __future__ import annotations

import math

import pytest

from flowengine.templating.engine import render_template_str, resolve_path, stringify
from flowengine.templating.expressions import apply_operator, evaluate_condition, is_truthy


class TestRenderTemplate:
    def test_simple_substitution(self):
        assert render_template_str("Hello {{name}}!", {"name": "Ada"}) == "Hello Ada!"

    def test_whitespace_inside_braces(self):
        assert render_template_str("{{  name  }}", {"name": "Ada"}) == "Ada"

    def test_dotted_path(self):
        ctx = {"user": {"profile": {"city": "Lyon"}}}
        assert render_template_str("{{user.profile.city}}", ctx) == "Lyon"

    def test_list_index_and_length(self):
        ctx = {"items": ["a", "b", "c"]}
        assert render_template_str("{{items.1}} of {{items.length}}", ctx) == "b of 3"

    def test_default_used_when_missing(self):
        assert render_template_str("{{city | Paris}}", {}) == "Paris"

    def test_quoted_default(self):
        assert render_template_str("{{city | 'New York'}}", {}) == "New York"

    def test_unresolved_left_verbatim(self):
        assert render_template_str("Hi {{missing}}", {}) == "Hi {{missing}}"

    def test_none_value_uses_default(self):
        assert render_template_str("{{x | fallback}}", {"x": None}) == "fallback"

    def test_structured_values_serialised(self):
        out = render_template_str("{{data}}", {"data": {"a": 1}})
        assert out == '{"a": 1}'

    def test_booleans_lowercase(self):
        assert render_template_str("{{flag}}", {"flag": True}) == "true"

    def test_non_string_template_passthrough(self):
        assert render_template_str(42, {}) == 42


class TestHelpers:
    def test_resolve_path_missing_is_none(self):
        assert resolve_path("a.b", {"a": {}}) is None

    def test_stringify_number(self):
        assert stringify(3.5) == "3.5"


class TestIsTruthy:
    @pytest.mark.parametrize("value", [None, "", "false", "FALSE", "0", 0, [], {}, math.nan])
    def test_falsy_values(self, value):
        assert is_truthy(value) is False

    @pytest.mark.parametrize("value", ["yes", "true", 1, [0], {"a": 1}, "  text "])
    def test_truthy_values(self, value):
        assert is_truthy(value) is True


class TestApplyOperator:
    @pytest.mark.parametrize("op,actual,compare,expected", [
        ("truthy", "x", None, True),
        ("falsy", "", None, True),
        ("equals", 5, "5", True),
        ("equals", "yes", "no", False),
        ("notEquals", "a", "b", True),
        ("gt", "10", 9, True),
        ("gt", "abc", 1, False),
        ("lt", 2, 3, True),
        ("lt", None, 1, True),
        ("contains", "hello world", "world", True),
        ("contains", ["a", "b"], "b", True),
        ("isEmpty", [], None, True),
        ("isEmpty", "x", None, False),
    ])
    def test_operators(self, op, actual, compare, expected):
        assert apply_operator(op, actual, compare) is expected

    def test_unknown_operator_falls_back_to_truthiness(self):
        assert apply_operator("bogus", "value") is True
        assert apply_operator(None, "") is False


class TestEvaluateCondition:
    def test_equality_on_rendered_path(self):
        ctx = {"input": {"status": "approved"}}
        assert evaluate_condition("{{input.status}} == 'approved'", ctx) is True

    def test_numeric_comparison(self):
        assert evaluate_condition("{{count}} >= 5", {"count": 7}) is True
        assert evaluate_condition("{{count}} >= 5", {"count": 2}) is False

    def test_contains(self):
        assert evaluate_condition("{{text}} contains 'urgent'", {"text": "very urgent mail"}) is True

    @pytest.mark.parametrize("literal,expected", [("true", True), ("yes", True), ("no", False), ("0", False)])
    def test_literals(self, literal, expected):
        assert evaluate_condition(literal, {}) is expected

    def test_bare_path_truthiness(self):
        assert evaluate_condition("flag", {"flag": True}) is True
        assert evaluate_condition("flag", {"flag": False}) is False

    def test_mismatched_types_are_false(self):
        assert evaluate_condition("{{name}} > 3", {"name": "abc"}) is False
