"""Tests for dagflow.engine.guards module."""

import pytest

from dagflow.engine.errors import GuardEvaluationError, GuardSyntaxError, UnknownIdentifier
from dagflow.engine.guards import BoolOp, Compare, Literal, Not, Variable, compile_guard, parse_guard


class TestParseGuard:
    """Tests for parsing guard source into the guard AST."""

    def test_parses_comparison(self):
        tree = parse_guard("region == 'eu'")
        assert tree == Compare(Variable("region"), ("==",), (Literal("eu"),))

    def test_parses_boolean_operators(self):
        tree = parse_guard("not a and b")
        assert isinstance(tree, BoolOp)
        assert tree.op == "and"
        assert tree.values[0] == Not(Variable("a"))

    def test_lowercase_literal_names(self):
        assert parse_guard("true") == Literal(True)
        assert parse_guard("false") == Literal(False)
        assert parse_guard("null") == Literal(None)

    def test_negative_numbers(self):
        assert parse_guard("-3") == Literal(-3)

    def test_list_literal_becomes_tuple(self):
        tree = parse_guard("x in ['a', 'b']")
        assert tree.comparators == (Literal(("a", "b")),)

    @pytest.mark.parametrize(
        "source",
        [
            "",
            "   ",
            "a +",
            "f(x)",
            "a.b",
            "a[0]",
            "a + 1",
            "lambda: 1",
            "x is None",
            "[a, 1]",
        ],
    )
    def test_rejects_unsupported_syntax(self, source):
        with pytest.raises(GuardSyntaxError):
            parse_guard(source)


class TestCompileGuard:
    """Tests for compile-time identifier checking."""

    def test_known_identifiers_compile(self):
        guard = compile_guard("retries < limit", ["retries", "limit"])
        assert guard.identifiers == frozenset({"retries", "limit"})

    def test_unknown_identifier_rejected(self):
        with pytest.raises(UnknownIdentifier) as exc_info:
            compile_guard("region == 'eu' and tier > 2", ["region"])
        assert exc_info.value.name == "tier"

    def test_literal_only_guard_needs_no_variables(self):
        assert compile_guard("false", []).evaluate({}) is False


class TestGuardEvaluate:
    """Tests for evaluating compiled guards."""

    @pytest.mark.parametrize(
        "source,variables,expected",
        [
            ("region == 'eu'", {"region": "eu"}, True),
            ("region != 'eu'", {"region": "eu"}, False),
            ("count >= 3", {"count": 3}, True),
            ("1 < count <= 3", {"count": 4}, False),
            ("flag or count > 10", {"flag": False, "count": 11}, True),
            ("not flag", {"flag": False}, True),
            ("region in ['eu', 'us']", {"region": "us"}, True),
            ("region not in ['eu', 'us']", {"region": "us"}, False),
            ("tag in tags", {"tag": "x", "tags": ["x", "y"]}, True),
        ],
    )
    def test_evaluates(self, source, variables, expected):
        guard = compile_guard(source, variables.keys())
        assert guard.evaluate(variables) is expected

    def test_short_circuit_skips_unset_variable(self):
        guard = compile_guard("flag and missing == 1", ["flag", "missing"])
        assert guard.evaluate({"flag": False}) is False

    def test_unset_variable_raises(self):
        guard = compile_guard("region == 'eu'", ["region"])
        with pytest.raises(GuardEvaluationError):
            guard.evaluate({})

    def test_incomparable_types_raise(self):
        guard = compile_guard("count > 'three'", ["count"])
        with pytest.raises(GuardEvaluationError):
            guard.evaluate({"count": 1})
