"""Sandboxed evaluator for step guard expressions.

Expressions are parsed with :mod:`ast` and interpreted node by node. Only
literals, variable lookups, attribute/index access, comparisons, boolean
combinators, membership tests and calls to explicitly supplied helper
functions are allowed. Nothing is ever passed to ``eval``.

JavaScript-style operators (``&&``, ``||``, ``!``, ``===``, ``!==``) and the
literals ``true``/``false``/``null``/``undefined`` are accepted so that
recipes written for other Hypergen front ends keep working.
"""

import ast
import operator
import re
from collections.abc import Callable
from collections.abc import Mapping
from typing import Any


class ExpressionError(Exception):
    """Raised when an expression is malformed or uses a disallowed construct."""

    pass


_LITERAL_NAMES: dict[str, Any] = {
    "true": True,
    "false": False,
    "null": None,
    "undefined": None,
    "True": True,
    "False": False,
    "None": None,
}

_COMPARE_OPS: dict[type, Callable[[Any, Any], bool]] = {
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

_STRING_LITERAL = re.compile(r"""('(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")""")

_JS_OPERATORS: tuple[tuple[re.Pattern, str], ...] = (
    (re.compile(r"==="), "=="),
    (re.compile(r"!=="), "!="),
    (re.compile(r"&&"), " and "),
    (re.compile(r"\|\|"), " or "),
    (re.compile(r"!(?!=)"), " not "),
)


def _normalize(expression: str) -> str:
    """Strip template braces and translate JavaScript operators outside string literals."""
    text = expression.strip()
    if text.startswith("{{") and text.endswith("}}"):
        text = text[2:-2].strip()

    parts = _STRING_LITERAL.split(text)
    for i in range(0, len(parts), 2):
        chunk = parts[i]
        for pattern, replacement in _JS_OPERATORS:
            chunk = pattern.sub(replacement, chunk)
        parts[i] = chunk
    return "".join(parts).strip()


class _Interpreter:
    """Walks a parsed expression tree against a read-only context."""

    def __init__(self, context: Mapping[str, Any], functions: Mapping[str, Callable[..., Any]]):
        self.context = context
        self.functions = functions

    def visit(self, node: ast.AST) -> Any:
        method = getattr(self, f"visit_{type(node).__name__}", None)
        if method is None:
            raise ExpressionError(f"Unsupported expression construct: {type(node).__name__}")
        return method(node)

    def visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in self.context:
            return self.context[node.id]
        if node.id in _LITERAL_NAMES:
            return _LITERAL_NAMES[node.id]
        # Undefined variables are falsy rather than an error
        return None

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        value = self.visit(node.value)
        if node.attr.startswith("_"):
            raise ExpressionError(f"Access to private attribute '{node.attr}' is not allowed")
        if value is None:
            return None
        if isinstance(value, Mapping):
            return value.get(node.attr)
        if node.attr == "length" and isinstance(value, (str, list, tuple)):
            return len(value)
        raise ExpressionError(f"Cannot access '{node.attr}' on {type(value).__name__}")

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        value = self.visit(node.value)
        key = self.visit(node.slice)
        if value is None:
            return None
        try:
            return value[key]
        except (KeyError, IndexError):
            return None
        except TypeError as e:
            raise ExpressionError(f"Cannot index {type(value).__name__} with {key!r}") from e

    def visit_List(self, node: ast.List) -> list[Any]:
        return [self.visit(elt) for elt in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> tuple[Any, ...]:
        return tuple(self.visit(elt) for elt in node.elts)

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        result: Any = None
        if isinstance(node.op, ast.And):
            for value_node in node.values:
                result = self.visit(value_node)
                if not result:
                    return result
            return result
        for value_node in node.values:
            result = self.visit(value_node)
            if result:
                return result
        return result

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -operand
        if isinstance(node.op, ast.UAdd):
            return +operand
        raise ExpressionError(f"Unsupported unary operator: {type(node.op).__name__}")

    def visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            op_fn = _COMPARE_OPS.get(type(op))
            if op_fn is None:
                raise ExpressionError(f"Unsupported comparison: {type(op).__name__}")
            try:
                if not op_fn(left, right):
                    return False
            except TypeError as e:
                raise ExpressionError(f"Cannot compare {left!r} and {right!r}: {e}") from e
            left = right
        return True

    def visit_Call(self, node: ast.Call) -> Any:
        if not isinstance(node.func, ast.Name):
            raise ExpressionError("Only named helper functions may be called")
        fn = self.functions.get(node.func.id)
        if fn is None:
            raise ExpressionError(f"Unknown function: {node.func.id}")
        if node.keywords:
            raise ExpressionError(f"Function '{node.func.id}' does not accept keyword arguments")
        args = [self.visit(arg) for arg in node.args]
        return fn(*args)


def evaluate_expression(
    expression: str,
    context: Mapping[str, Any],
    functions: Mapping[str, Callable[..., Any]] | None = None,
) -> Any:
    """
    Evaluate an expression and return its value.

    Args:
        expression: Expression text (optionally wrapped in ``{{ }}``)
        context: Variables visible to the expression
        functions: Helper functions callable by name

    Returns:
        The value the expression evaluates to

    Raises:
        ExpressionError: If the expression cannot be parsed or uses a disallowed construct
    """
    source = _normalize(expression)
    if not source:
        raise ExpressionError("Empty expression")
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as e:
        raise ExpressionError(f"Invalid expression '{expression}': {e.msg}") from e
    return _Interpreter(context, functions or {}).visit(tree)


def evaluate_condition(
    expression: str,
    context: Mapping[str, Any],
    functions: Mapping[str, Callable[..., Any]] | None = None,
) -> bool:
    """Evaluate a guard expression to a boolean."""
    return bool(evaluate_expression(expression, context, functions))
