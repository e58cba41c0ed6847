"""Guard expressions.

A guard is a boolean expression over workflow variables that decides whether a
step runs or is skipped. Guards are written in a small subset of Python
expression syntax and compiled into a closed set of AST nodes when the graph is
defined, so unknown identifiers and unsupported syntax are rejected before any
run starts.

Supported syntax::

    literals      'text'  42  1.5  True  False  None  [1, 2]  (also true/false/null)
    names         region
    boolean       not x   a and b   a or b
    comparisons   ==  !=  <  <=  >  >=  in  not in   (chained: 1 < x <= 3)
"""
from __future__ import annotations

import ast
import operator
from dataclasses import dataclass
from typing import Any, Callable, Dict, FrozenSet, Iterable, Mapping, Tuple, Union

from .errors import GuardEvaluationError, GuardSyntaxError, UnknownIdentifier


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class Variable:
    name: str


@dataclass(frozen=True)
class Not:
    operand: "Node"


@dataclass(frozen=True)
class BoolOp:
    op: str  # "and" | "or"
    values: Tuple["Node", ...]


@dataclass(frozen=True)
class Compare:
    left: "Node"
    ops: Tuple[str, ...]
    comparators: Tuple["Node", ...]


Node = Union[Literal, Variable, Not, BoolOp, Compare]

_LITERAL_NAMES = {"true": True, "false": False, "null": None}

_COMPARE_SYMBOLS = {
    ast.Eq: "==",
    ast.NotEq: "!=",
    ast.Lt: "<",
    ast.LtE: "<=",
    ast.Gt: ">",
    ast.GtE: ">=",
    ast.In: "in",
    ast.NotIn: "not in",
}

_COMPARE_FUNCS: Dict[str, Callable[[Any, Any], bool]] = {
    "==": operator.eq,
    "!=": operator.ne,
    "<": operator.lt,
    "<=": operator.le,
    ">": operator.gt,
    ">=": operator.ge,
    "in": lambda a, b: a in b,
    "not in": lambda a, b: a not in b,
}


def _convert(node: ast.AST, source: str) -> Node:
    if isinstance(node, ast.Constant):
        if not isinstance(node.value, (str, int, float, bool, type(None))):
            raise GuardSyntaxError(source, f"unsupported literal {node.value!r}")
        return Literal(node.value)

    if isinstance(node, ast.Name):
        if node.id in _LITERAL_NAMES:
            return Literal(_LITERAL_NAMES[node.id])
        return Variable(node.id)

    if isinstance(node, (ast.List, ast.Tuple)):
        items = []
        for elt in node.elts:
            converted = _convert(elt, source)
            if not isinstance(converted, Literal):
                raise GuardSyntaxError(source, "collections may only contain literals")
            items.append(converted.value)
        return Literal(tuple(items))

    if isinstance(node, ast.UnaryOp):
        if isinstance(node.op, ast.Not):
            return Not(_convert(node.operand, source))
        if isinstance(node.op, ast.USub):
            operand = _convert(node.operand, source)
            if isinstance(operand, Literal) and isinstance(operand.value, (int, float)):
                return Literal(-operand.value)
        raise GuardSyntaxError(source, "unsupported unary operator")

    if isinstance(node, ast.BoolOp):
        op = "and" if isinstance(node.op, ast.And) else "or"
        return BoolOp(op, tuple(_convert(v, source) for v in node.values))

    if isinstance(node, ast.Compare):
        ops = []
        for op_node in node.ops:
            symbol = _COMPARE_SYMBOLS.get(type(op_node))
            if symbol is None:
                raise GuardSyntaxError(source, f"unsupported comparison {type(op_node).__name__}")
            ops.append(symbol)
        return Compare(
            _convert(node.left, source),
            tuple(ops),
            tuple(_convert(c, source) for c in node.comparators),
        )

    raise GuardSyntaxError(source, f"unsupported syntax {type(node).__name__}")


def parse_guard(source: str) -> Node:
    """Parse guard source text into a guard AST.

    Raises:
        GuardSyntaxError: If the text is not a valid guard expression
    """
    text = (source or "").strip()
    if not text:
        raise GuardSyntaxError(source, "expression is empty")
    try:
        tree = ast.parse(text, mode="eval")
    except SyntaxError as e:
        raise GuardSyntaxError(source, e.msg or "syntax error") from e
    return _convert(tree.body, source)


def identifiers(node: Node) -> FrozenSet[str]:
    """Return every variable name referenced by ``node``."""
    if isinstance(node, Variable):
        return frozenset({node.name})
    if isinstance(node, Not):
        return identifiers(node.operand)
    if isinstance(node, BoolOp):
        return frozenset().union(*(identifiers(v) for v in node.values))
    if isinstance(node, Compare):
        names = identifiers(node.left)
        for comparator in node.comparators:
            names = names | identifiers(comparator)
        return names
    return frozenset()


@dataclass(frozen=True)
class Guard:
    """A compiled guard expression."""

    source: str
    tree: Node

    @property
    def identifiers(self) -> FrozenSet[str]:
        return identifiers(self.tree)

    def evaluate(self, variables: Mapping[str, Any]) -> bool:
        """Evaluate the guard against ``variables``.

        Raises:
            GuardEvaluationError: If a referenced variable is unset or two
                operands cannot be compared
        """
        return bool(self._eval(self.tree, variables))

    def _eval(self, node: Node, variables: Mapping[str, Any]) -> Any:
        if isinstance(node, Literal):
            return node.value
        if isinstance(node, Variable):
            if node.name not in variables:
                raise GuardEvaluationError(self.source, f"variable '{node.name}' is not set")
            return variables[node.name]
        if isinstance(node, Not):
            return not self._eval(node.operand, variables)
        if isinstance(node, BoolOp):
            if node.op == "and":
                return all(self._eval(v, variables) for v in node.values)
            return any(self._eval(v, variables) for v in node.values)
        if isinstance(node, Compare):
            left = self._eval(node.left, variables)
            for symbol, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator, variables)
                try:
                    ok = _COMPARE_FUNCS[symbol](left, right)
                except TypeError as e:
                    raise GuardEvaluationError(self.source, str(e)) from e
                if not ok:
                    return False
                left = right
            return True
        raise GuardEvaluationError(self.source, f"unknown node {node!r}")


def compile_guard(source: str, declared: Iterable[str]) -> Guard:
    """Parse ``source`` and check every identifier against ``declared``.

    Raises:
        GuardSyntaxError: If the expression uses unsupported syntax
        UnknownIdentifier: If the expression references an undeclared variable
    """
    tree = parse_guard(source)
    known = set(declared)
    for name in sorted(identifiers(tree)):
        if name not in known:
            raise UnknownIdentifier(name, f"guard {source!r}")
    return Guard(source=source, tree=tree)
