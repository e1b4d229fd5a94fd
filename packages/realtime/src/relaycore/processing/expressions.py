"""Restricted expressions for ``transform`` — a tiny AST, no eval().

Learn: Transform configs arrive from callers we do not control, so
computed fields are expressed as data, never as code. An expression is
one of four node types:

    FieldRef(name)              value of a field in the current row
    Literal(value)              a constant
    UnaryOp(op, operand)        -x, +x
    BinaryOp(op, left, right)   + - * / %

It can be written as a dict:

    {"op": "*", "left": {"field": "price"}, "right": {"field": "qty"}}

or as an arithmetic string, which is parsed with ``ast`` and converted
node by node against a whitelist:

    "price * qty"       "row['unit price'] * 1.2"      "item.cost - 5"

Calls, attribute chains, comprehensions, lambdas — anything outside the
whitelist — raise ExpressionError before a single row is touched.

Evaluation: a missing/None operand makes the result None, and so does a
division by zero. ``+`` with a string operand concatenates.
"""

import ast
import operator
from dataclasses import dataclass
from typing import Any, Mapping, Union

from relaycore.errors import ExpressionError

MAX_EXPRESSION_LENGTH = 500
_ROW_NAMES = ("row", "item", "record")


@dataclass(frozen=True)
class FieldRef:
    name: str


@dataclass(frozen=True)
class Literal:
    value: Any


@dataclass(frozen=True)
class UnaryOp:
    op: str
    operand: "Expression"


@dataclass(frozen=True)
class BinaryOp:
    op: str
    left: "Expression"
    right: "Expression"


Expression = Union[FieldRef, Literal, UnaryOp, BinaryOp]

_BINARY = {
    "+": operator.add,
    "-": operator.sub,
    "*": operator.mul,
    "/": operator.truediv,
    "%": operator.mod,
}
_UNARY = {"-": operator.neg, "+": operator.pos}

_AST_BINARY = {ast.Add: "+", ast.Sub: "-", ast.Mult: "*", ast.Div: "/", ast.Mod: "%"}
_AST_UNARY = {ast.USub: "-", ast.UAdd: "+"}


# ─── Building ────────────────────────────────────────────


def compile_expression(source: Any) -> Expression:
    """Turn a dict / string / constant into an Expression tree."""
    if isinstance(source, (FieldRef, Literal, UnaryOp, BinaryOp)):
        return source
    if isinstance(source, str):
        return parse_expression(source)
    if isinstance(source, Mapping):
        return _from_mapping(source)
    if source is None or isinstance(source, (bool, int, float)):
        return Literal(source)
    raise ExpressionError(f"Unsupported expression: {source!r}")


def _from_mapping(source: Mapping) -> Expression:
    if "field" in source:
        name = source["field"]
        if not isinstance(name, str):
            raise ExpressionError("'field' must be a string")
        return FieldRef(name)
    if "literal" in source:
        return Literal(source["literal"])
    if "op" in source:
        op = source["op"]
        if "operand" in source:
            if op not in _UNARY:
                raise ExpressionError(f"Unsupported unary operator: {op!r}")
            return UnaryOp(op, compile_expression(source["operand"]))
        if op not in _BINARY:
            raise ExpressionError(f"Unsupported operator: {op!r}")
        if "left" not in source or "right" not in source:
            raise ExpressionError(f"Operator {op!r} needs 'left' and 'right'")
        return BinaryOp(op, compile_expression(source["left"]), compile_expression(source["right"]))
    raise ExpressionError(f"Expression needs one of 'field', 'literal' or 'op': {dict(source)!r}")


def parse_expression(text: str) -> Expression:
    """Parse an arithmetic string into an Expression tree."""
    if len(text) > MAX_EXPRESSION_LENGTH:
        raise ExpressionError(f"Expression longer than {MAX_EXPRESSION_LENGTH} characters")
    try:
        tree = ast.parse(text.strip(), mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Invalid expression {text!r}: {e.msg}")
    return _convert(tree.body)


def _convert(node: ast.AST) -> Expression:
    if isinstance(node, ast.Constant):
        if node.value is None or isinstance(node.value, (bool, int, float, str)):
            return Literal(node.value)
        raise ExpressionError(f"Unsupported constant: {node.value!r}")

    if isinstance(node, ast.Name):
        if node.id in ("true", "True"):
            return Literal(True)
        if node.id in ("false", "False"):
            return Literal(False)
        if node.id in ("null", "None"):
            return Literal(None)
        return FieldRef(node.id)

    if isinstance(node, ast.Attribute):
        # item.price
        if isinstance(node.value, ast.Name) and node.value.id in _ROW_NAMES:
            return FieldRef(node.attr)
        raise ExpressionError("Only row.<field> attribute access is allowed")

    if isinstance(node, ast.Subscript):
        # row["unit price"]
        key = node.slice
        if (
            isinstance(node.value, ast.Name)
            and node.value.id in _ROW_NAMES
            and isinstance(key, ast.Constant)
            and isinstance(key.value, str)
        ):
            return FieldRef(key.value)
        raise ExpressionError("Only row['<field>'] subscripts are allowed")

    if isinstance(node, ast.BinOp):
        op = _AST_BINARY.get(type(node.op))
        if op is None:
            raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        return BinaryOp(op, _convert(node.left), _convert(node.right))

    if isinstance(node, ast.UnaryOp):
        op = _AST_UNARY.get(type(node.op))
        if op is None:
            raise ExpressionError(f"Unsupported operator: {type(node.op).__name__}")
        return UnaryOp(op, _convert(node.operand))

    raise ExpressionError(f"Unsupported syntax: {type(node).__name__}")


# ─── Evaluation ──────────────────────────────────────────


def evaluate(expr: Expression, row: Mapping[str, Any]) -> Any:
    if isinstance(expr, Literal):
        return expr.value
    if isinstance(expr, FieldRef):
        return row.get(expr.name)
    if isinstance(expr, UnaryOp):
        value = evaluate(expr.operand, row)
        if value is None:
            return None
        if not _is_number(value):
            raise ExpressionError(f"Cannot apply unary {expr.op!r} to {value!r}")
        return _UNARY[expr.op](value)
    if isinstance(expr, BinaryOp):
        left = evaluate(expr.left, row)
        right = evaluate(expr.right, row)
        if left is None or right is None:
            return None
        if expr.op == "+" and (isinstance(left, str) or isinstance(right, str)):
            return f"{left}{right}"
        if not (_is_number(left) and _is_number(right)):
            raise ExpressionError(
                f"Cannot apply {expr.op!r} to {type(left).__name__} and {type(right).__name__}"
            )
        try:
            return _BINARY[expr.op](left, right)
        except ZeroDivisionError:
            return None
    raise ExpressionError(f"Not an expression: {expr!r}")


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)
