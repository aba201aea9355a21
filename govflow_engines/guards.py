"""
Module: govflow_engines.guards
Responsibility:
    Evaluate transition guard expressions against an evaluation context.
    Expressions are restricted Python (see ``govflow_config.guard_ast``);
    the parsed tree is interpreted node by node and nothing is passed to
    ``eval``.

Architecture position:
    Engines -- pure calculation layer, zero I/O.

Invariants enforced:
    - Purity: no side effects; the same expression and context always
      produce the same result.
    - Missing variables resolve to ``UNDEFINED``, which is falsy.  Any
      comparison involving UNDEFINED is false (``is None`` / ``is not
      None`` treat it as None).  Arithmetic and function calls on it
      return UNDEFINED.  Type mismatches behave the same way instead of
      raising.

Failure modes:
    - ValueError for syntax errors or node types outside the restricted
      grammar.  Definitions are validated at load time, so this only
      happens for expressions that bypassed the loader.

Usage:
    from govflow_engines.guards import build_context, evaluate

    ctx = build_context(data={"fee_paid": True}, actor_roles=["CLERK"])
    evaluate("data.fee_paid and has_role('CLERK')", ctx)  # True
"""

from __future__ import annotations

import ast
import operator
from dataclasses import dataclass
from datetime import date, datetime
from functools import lru_cache
from typing import Any, Callable, Iterable, Mapping

from govflow_engines.tracer import traced_engine


class _Undefined:
    """Value of a variable the context does not define."""

    _instance: _Undefined | None = None

    def __new__(cls) -> _Undefined:
        if cls._instance is None:
            cls._instance = super().__new__(cls)
        return cls._instance

    def __bool__(self) -> bool:
        return False

    def __repr__(self) -> str:
        return "UNDEFINED"


UNDEFINED = _Undefined()


@dataclass(frozen=True)
class GuardOutcome:
    """Result of explain(): whether the guard passed and, if not, why."""

    passed: bool
    failing_condition: str | None = None


_BIN_OPS: Mapping[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_CMP_OPS: Mapping[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
}


def build_context(
    *,
    data: Mapping[str, Any] | None = None,
    application: Mapping[str, Any] | None = None,
    actor_id: str | None = None,
    actor_roles: Iterable[str] = (),
    actor_type: str | None = None,
    lookup: Mapping[str, Any] | None = None,
    authority_id: str | None = None,
    now: datetime | None = None,
) -> dict[str, Any]:
    """Assemble the evaluation context for one guard check."""
    return {
        "data": dict(data or {}),
        "application": dict(application or {}),
        "actor": {
            "id": actor_id,
            "roles": sorted(actor_roles),
            "type": actor_type,
        },
        "lookup": dict(lookup or {}),
        "authority_id": authority_id,
        "now": now,
    }


@lru_cache(maxsize=1024)
def _parse(expression: str) -> ast.Expression:
    try:
        return ast.parse(expression.strip(), mode="eval")
    except SyntaxError as exc:
        raise ValueError(f"Invalid guard expression {expression!r}: {exc.msg}") from exc


def _as_date(value: Any) -> date | None:
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    if isinstance(value, str):
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00")).date()
        except ValueError:
            return None
    return None


def _is_empty(value: Any) -> bool:
    if value is UNDEFINED or value is None:
        return True
    if isinstance(value, (str, list, tuple, dict, set, frozenset)):
        return len(value) == 0
    return False


class _Interpreter:
    """Walks one parsed guard against one context."""

    def __init__(self, context: Mapping[str, Any]):
        self._context = context
        self._functions: dict[str, Callable[..., Any]] = {
            "len": self._fn_len,
            "abs": self._fn_abs,
            "min": self._fn_min,
            "max": self._fn_max,
            "has_role": self._fn_has_role,
            "is_empty": lambda value: _is_empty(value),
            "days_between": self._fn_days_between,
        }

    # Functions

    @staticmethod
    def _fn_len(value: Any) -> Any:
        try:
            return len(value) if value is not UNDEFINED else UNDEFINED
        except TypeError:
            return UNDEFINED

    @staticmethod
    def _fn_abs(value: Any) -> Any:
        try:
            return abs(value) if value is not UNDEFINED else UNDEFINED
        except TypeError:
            return UNDEFINED

    @staticmethod
    def _fn_min(*values: Any) -> Any:
        if not values or any(v is UNDEFINED for v in values):
            return UNDEFINED
        try:
            return min(values) if len(values) > 1 else min(values[0])
        except (TypeError, ValueError):
            return UNDEFINED

    @staticmethod
    def _fn_max(*values: Any) -> Any:
        if not values or any(v is UNDEFINED for v in values):
            return UNDEFINED
        try:
            return max(values) if len(values) > 1 else max(values[0])
        except (TypeError, ValueError):
            return UNDEFINED

    def _fn_has_role(self, role: Any) -> bool:
        actor = self._context.get("actor") or {}
        roles = actor.get("roles") or ()
        return isinstance(role, str) and role in roles

    @staticmethod
    def _fn_days_between(start: Any, end: Any) -> Any:
        a, b = _as_date(start), _as_date(end)
        if a is None or b is None:
            return UNDEFINED
        return (b - a).days

    # Nodes

    def visit(self, node: ast.AST) -> Any:
        method = getattr(self, f"_visit_{type(node).__name__}", None)
        if method is None:
            raise ValueError(f"Unsupported guard syntax: {type(node).__name__}")
        return method(node)

    def _visit_Expression(self, node: ast.Expression) -> Any:
        return self.visit(node.body)

    def _visit_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            result: Any = True
            for value in node.values:
                result = self.visit(value)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = self.visit(value)
            if result:
                return result
        return result

    def _visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        operand = self.visit(node.operand)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            if operand is UNDEFINED:
                return UNDEFINED
            try:
                return -operand
            except TypeError:
                return UNDEFINED
        raise ValueError(f"Unsupported unary operator: {type(node.op).__name__}")

    def _visit_BinOp(self, node: ast.BinOp) -> Any:
        left = self.visit(node.left)
        right = self.visit(node.right)
        if left is UNDEFINED or right is UNDEFINED:
            return UNDEFINED
        fn = _BIN_OPS.get(type(node.op))
        if fn is None:
            raise ValueError(f"Unsupported binary operator: {type(node.op).__name__}")
        try:
            return fn(left, right)
        except (TypeError, ZeroDivisionError, ValueError):
            return UNDEFINED

    def _compare(self, op: ast.cmpop, left: Any, right: Any) -> bool:
        if isinstance(op, (ast.Is, ast.IsNot)):
            lhs = None if left is UNDEFINED else left
            rhs = None if right is UNDEFINED else right
            same = lhs is rhs
            return same if isinstance(op, ast.Is) else not same
        if left is UNDEFINED or right is UNDEFINED:
            return False
        fn = _CMP_OPS.get(type(op))
        if fn is None:
            raise ValueError(f"Unsupported comparison: {type(op).__name__}")
        try:
            return bool(fn(left, right))
        except TypeError:
            return False

    def _visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            if not self._compare(op, left, right):
                return False
            left = right
        return True

    def _visit_IfExp(self, node: ast.IfExp) -> Any:
        return self.visit(node.body) if self.visit(node.test) else self.visit(node.orelse)

    def _visit_Call(self, node: ast.Call) -> Any:
        if not isinstance(node.func, ast.Name) or node.func.id not in self._functions:
            raise ValueError("Unsupported function call in guard")
        args = [self.visit(arg) for arg in node.args]
        try:
            return self._functions[node.func.id](*args)
        except TypeError:
            return UNDEFINED

    def _visit_Name(self, node: ast.Name) -> Any:
        if node.id == "True":
            return True
        if node.id == "False":
            return False
        if node.id == "None":
            return None
        return self._context.get(node.id, UNDEFINED)

    def _visit_Attribute(self, node: ast.Attribute) -> Any:
        if node.attr.startswith("_"):
            raise ValueError(f"Unsupported attribute: {node.attr}")
        base = self.visit(node.value)
        if isinstance(base, Mapping):
            return base.get(node.attr, UNDEFINED)
        return UNDEFINED

    def _visit_Subscript(self, node: ast.Subscript) -> Any:
        base = self.visit(node.value)
        key = self.visit(node.slice)
        if isinstance(base, Mapping):
            return base.get(key, UNDEFINED)
        if isinstance(base, (list, tuple)) and isinstance(key, int) and not isinstance(key, bool):
            try:
                return base[key]
            except IndexError:
                return UNDEFINED
        return UNDEFINED

    def _visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def _visit_List(self, node: ast.List) -> list[Any]:
        return [self.visit(elt) for elt in node.elts]

    def _visit_Tuple(self, node: ast.Tuple) -> tuple[Any, ...]:
        return tuple(self.visit(elt) for elt in node.elts)


def evaluate_value(rule_expression: str, context: Mapping[str, Any]) -> Any:
    """Interpret an expression and return its raw value (may be UNDEFINED)."""
    return _Interpreter(context).visit(_parse(rule_expression))


def evaluate(rule_expression: str, context: Mapping[str, Any]) -> bool:
    """True if the guard holds for ``context``."""
    return bool(evaluate_value(rule_expression, context))


@traced_engine("guard", "1.0", fingerprint_fields=("rule_expression",))
def explain(
    *,
    rule_expression: str,
    context: Mapping[str, Any],
    message: str | None = None,
) -> GuardOutcome:
    """
    Evaluate and report the first failing condition.

    For a top-level ``and`` chain the failing condition is the source text
    of the first conjunct that is falsy; otherwise it is the whole
    expression.  ``message`` replaces the source text when given.
    """
    source = rule_expression.strip()
    tree = _parse(rule_expression)
    interpreter = _Interpreter(context)

    body = tree.body
    if isinstance(body, ast.BoolOp) and isinstance(body.op, ast.And):
        for conjunct in body.values:
            if not interpreter.visit(conjunct):
                failing = ast.get_source_segment(source, conjunct) or source
                return GuardOutcome(passed=False, failing_condition=message or failing)
        return GuardOutcome(passed=True)

    if interpreter.visit(body):
        return GuardOutcome(passed=True)
    return GuardOutcome(passed=False, failing_condition=message or source)
