"""
Restricted AST for transition guard expressions.

Guard expressions in workflow definitions must use a fixed operator set.
This module parses and validates expressions at load time, rejecting
anything that could execute arbitrary code.  The evaluator in
``govflow_engines.guards`` walks the same tree and relies on this check.

Allowed:
  - Comparisons: <, <=, >, >=, ==, !=, is, is not, in, not in
  - Logical: and, or, not
  - Arithmetic: + - * / // % and unary minus
  - Field access: root.field.sub_field and root["key"] / root.items[0]
    for roots data, application, actor, lookup
  - Bare names: authority_id, now, True, False, None
  - Literals: numbers, strings, booleans, None, lists and tuples
  - Functions: len(), abs(), min(), max(), has_role(), is_empty(),
    days_between()
  - Conditional: ternary (a if b else c)

Rejected:
  - imports, arbitrary function calls, method calls, lambda,
    comprehensions, dunder attributes, arbitrary names
"""

import ast
from dataclasses import dataclass


# Functions allowed in guard expressions
ALLOWED_FUNCTIONS: frozenset[str] = frozenset({
    "len", "abs", "min", "max", "has_role", "is_empty", "days_between",
})

# Context roots allowed for field access (root.field_name...)
ALLOWED_CONTEXT_ROOTS: frozenset[str] = frozenset({
    "data", "application", "actor", "lookup",
})

# Scalar context values usable as bare names
ALLOWED_SCALARS: frozenset[str] = frozenset({"authority_id", "now"})

# Names allowed as bare identifiers
ALLOWED_NAMES: frozenset[str] = frozenset(
    {"True", "False", "None"} | ALLOWED_CONTEXT_ROOTS | ALLOWED_SCALARS
)

_COMPARISON_OPS = (
    ast.Eq, ast.NotEq, ast.Lt, ast.LtE, ast.Gt, ast.GtE,
    ast.In, ast.NotIn, ast.Is, ast.IsNot,
)
_BINARY_OPS = (ast.Add, ast.Sub, ast.Mult, ast.Div, ast.FloorDiv, ast.Mod)


@dataclass(frozen=True)
class GuardASTError:
    """A validation error found in a guard expression."""

    expression: str
    message: str
    node_type: str = ""
    lineno: int = 0
    col_offset: int = 0


def validate_guard_expression(expression: str) -> list[GuardASTError]:
    """Validate a guard expression against the restricted AST.

    Returns a list of errors. Empty list means the expression is valid.
    """
    if not isinstance(expression, str) or not expression.strip():
        return [GuardASTError(expression=str(expression), message="Empty guard expression")]

    errors: list[GuardASTError] = []

    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        return [
            GuardASTError(
                expression=expression,
                message=f"Syntax error: {e.msg}",
                lineno=e.lineno or 0,
                col_offset=e.offset or 0,
            )
        ]

    _validate_node(tree.body, expression, errors)
    return errors


def _error(expression: str, message: str, node: ast.AST) -> GuardASTError:
    return GuardASTError(
        expression=expression,
        message=message,
        node_type=type(node).__name__,
        lineno=getattr(node, "lineno", 0),
        col_offset=getattr(node, "col_offset", 0),
    )


def _validate_node(
    node: ast.AST, expression: str, errors: list[GuardASTError]
) -> None:
    """Recursively validate an AST node."""

    if isinstance(node, ast.BoolOp):
        for value in node.values:
            _validate_node(value, expression, errors)

    elif isinstance(node, ast.UnaryOp):
        if not isinstance(node.op, (ast.Not, ast.USub)):
            errors.append(
                _error(expression, f"Disallowed unary operator: {type(node.op).__name__}", node)
            )
        _validate_node(node.operand, expression, errors)

    elif isinstance(node, ast.Compare):
        _validate_node(node.left, expression, errors)
        for comparator in node.comparators:
            _validate_node(comparator, expression, errors)
        for op in node.ops:
            if not isinstance(op, _COMPARISON_OPS):
                errors.append(
                    _error(expression, f"Disallowed comparison: {type(op).__name__}", node)
                )

    elif isinstance(node, ast.BinOp):
        if isinstance(node.op, _BINARY_OPS):
            _validate_node(node.left, expression, errors)
            _validate_node(node.right, expression, errors)
        else:
            errors.append(
                _error(expression, f"Disallowed binary operator: {type(node.op).__name__}", node)
            )

    elif isinstance(node, ast.Call):
        if isinstance(node.func, ast.Name) and node.func.id in ALLOWED_FUNCTIONS:
            if node.keywords:
                errors.append(
                    _error(expression, f"Keyword arguments not allowed in {node.func.id}()", node)
                )
            for arg in node.args:
                if isinstance(arg, ast.Starred):
                    errors.append(_error(expression, "Star arguments are not allowed", arg))
                else:
                    _validate_node(arg, expression, errors)
        else:
            errors.append(
                _error(expression, f"Disallowed function call: {_get_name(node.func)}", node)
            )

    elif isinstance(node, (ast.Attribute, ast.Subscript)):
        _validate_access(node, expression, errors)

    elif isinstance(node, ast.Name):
        if node.id in ALLOWED_FUNCTIONS:
            errors.append(_error(expression, f"Function {node.id} must be called", node))
        elif node.id not in ALLOWED_NAMES:
            errors.append(_error(expression, f"Disallowed name: {node.id}", node))

    elif isinstance(node, ast.Constant):
        # bool is a subclass of int
        if not isinstance(node.value, (int, float, str, type(None))):
            errors.append(
                _error(
                    expression,
                    f"Disallowed constant type: {type(node.value).__name__}",
                    node,
                )
            )

    elif isinstance(node, (ast.List, ast.Tuple)):
        for elt in node.elts:
            _validate_node(elt, expression, errors)

    elif isinstance(node, ast.IfExp):
        _validate_node(node.test, expression, errors)
        _validate_node(node.body, expression, errors)
        _validate_node(node.orelse, expression, errors)

    elif isinstance(node, ast.Lambda):
        errors.append(_error(expression, "Lambda expressions are not allowed", node))

    else:
        errors.append(
            _error(expression, f"Disallowed AST node type: {type(node).__name__}", node)
        )


def _validate_access(node: ast.AST, expression: str, errors: list[GuardASTError]) -> None:
    """Allow root.a.b["c"][0] chains that start at a context root."""
    current = node
    while isinstance(current, (ast.Attribute, ast.Subscript)):
        if isinstance(current, ast.Attribute):
            if current.attr.startswith("_"):
                errors.append(
                    _error(expression, f"Disallowed attribute: {current.attr}", current)
                )
                return
        else:
            key = current.slice
            if not (isinstance(key, ast.Constant) and isinstance(key.value, (str, int))
                    and not isinstance(key.value, bool)):
                errors.append(
                    _error(expression, "Subscripts must be string or integer constants", current)
                )
                return
        current = current.value

    if not (isinstance(current, ast.Name) and current.id in ALLOWED_CONTEXT_ROOTS):
        errors.append(
            _error(
                expression,
                (
                    f"Disallowed attribute access: {_get_name(node)}. "
                    f"Only {', '.join(sorted(ALLOWED_CONTEXT_ROOTS))} paths are allowed."
                ),
                node,
            )
        )


def _get_name(node: ast.AST) -> str:
    """Extract a human-readable name from an AST node."""
    if isinstance(node, ast.Name):
        return node.id
    if isinstance(node, ast.Attribute):
        return f"{_get_name(node.value)}.{node.attr}"
    if isinstance(node, ast.Subscript):
        return f"{_get_name(node.value)}[...]"
    return type(node).__name__
