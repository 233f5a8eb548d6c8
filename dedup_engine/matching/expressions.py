"""Sandboxed boolean expressions over named record fields.

Used by ``custom`` exclusion conditions. Expressions are parsed with
``ast`` and only a whitelist of nodes is evaluated: literals, field names,
comparisons, ``and``/``or``/``not``, unary minus and literal lists/tuples.
Attribute access, calls, subscripts and comprehensions are rejected at
compile time, so nothing from the host interpreter is reachable.

Example::

    expr = compile_expression("country == 'US' and score >= 10")
    expr.evaluate({"country": "US", "score": 12})  # True
"""

from __future__ import annotations

import ast
import operator
from functools import lru_cache
from typing import Any, Callable, Dict, Mapping

from dedup_engine.errors import ExpressionError

_COMPARATORS: Dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.Not,
    ast.USub,
    ast.Compare,
    ast.Name,
    ast.Load,
    ast.Constant,
    ast.List,
    ast.Tuple,
    *_COMPARATORS.keys(),
)


class Expression:
    """A validated expression ready to evaluate against a field mapping."""

    def __init__(self, source: str, tree: ast.Expression):
        self.source = source
        self._tree = tree

    def evaluate(self, fields: Mapping[str, Any]) -> bool:
        try:
            return bool(self._eval(self._tree.body, fields))
        except TypeError as exc:
            raise ExpressionError(
                f"Cannot evaluate expression: {exc}", expression=self.source
            ) from exc

    def _eval(self, node: ast.AST, fields: Mapping[str, Any]) -> Any:
        if isinstance(node, ast.Constant):
            return node.value
        if isinstance(node, ast.Name):
            # Missing fields evaluate to None
            return fields.get(node.id)
        if isinstance(node, (ast.List, ast.Tuple)):
            return [self._eval(elt, fields) for elt in node.elts]
        if isinstance(node, ast.UnaryOp):
            operand = self._eval(node.operand, fields)
            if isinstance(node.op, ast.Not):
                return not operand
            return -operand
        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                return all(self._eval(value, fields) for value in node.values)
            return any(self._eval(value, fields) for value in node.values)
        if isinstance(node, ast.Compare):
            left = self._eval(node.left, fields)
            for op, comparator in zip(node.ops, node.comparators):
                right = self._eval(comparator, fields)
                if not _COMPARATORS[type(op)](left, right):
                    return False
                left = right
            return True
        raise ExpressionError("Unsupported expression node", node=type(node).__name__)

    def __repr__(self) -> str:
        return f"Expression({self.source!r})"


@lru_cache(maxsize=256)
def compile_expression(source: str) -> Expression:
    """Parse and validate ``source``; raises ``ExpressionError`` when unsafe."""
    if not source or not source.strip():
        raise ExpressionError("Expression is empty")
    try:
        tree = ast.parse(source.strip(), mode="eval")
    except SyntaxError as exc:
        raise ExpressionError(f"Invalid expression syntax: {exc.msg}", expression=source) from exc

    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise ExpressionError(
                f"Disallowed construct in expression: {type(node).__name__}",
                expression=source,
            )
    return Expression(source, tree)
