"""
Evaluation of stage ``when`` conditions.

Evaluation is pure: it reads parameters, environment and the workspace
filesystem but never changes anything. Compound conditions short-circuit,
so an ``all`` whose first member is false never touches the filesystem.

``expression`` conditions use a small expression language parsed with
``ast``. Only literals, ``params``/``env`` lookups, comparisons, boolean
operators and the ``truthy()``, ``file_exists()`` and ``lower()`` helpers are
accepted, e.g.::

    params.DEPLOY_ENV == "prod" and env.get("CI") != "false"
    "main" in [params.BRANCH_NAME, "release"]
    "DEPLOY_ENV" in params
"""

import ast
import fnmatch
import operator
from dataclasses import dataclass, field
from functools import lru_cache
from pathlib import Path
from typing import Any, Mapping

from runner.src.errors import ConditionEvaluationError
from runner.src.models.pipeline import (
    AllOf,
    Always,
    AnyOf,
    Branch,
    EnvEquals,
    Expression,
    FileExists,
    Not,
    ParamFlag,
)

TRUTHY = {"1", "true", "yes", "y", "on"}

@dataclass(frozen=True)
class ConditionContext:
    params: Mapping[str, str] = field(default_factory=dict)
    env: Mapping[str, str] = field(default_factory=dict)
    workspace: Path = Path(".")

def is_truthy(value: Any) -> bool:
    if isinstance(value, str):
        return value.strip().lower() in TRUTHY
    return bool(value)

def evaluate(condition, context: ConditionContext) -> bool:
    """Evaluate a condition. ``None`` means the stage always runs."""
    if condition is None or isinstance(condition, Always):
        return True

    if isinstance(condition, ParamFlag):
        return is_truthy(context.params.get(condition.name))

    if isinstance(condition, FileExists):
        return (context.workspace / condition.path).exists()

    if isinstance(condition, EnvEquals):
        value = context.env.get(condition.name)
        if condition.equals is None:
            return bool(value)
        return value == condition.equals

    if isinstance(condition, Branch):
        branch = context.params.get("BRANCH_NAME") or context.env.get("BRANCH_NAME")
        return branch is not None and fnmatch.fnmatchcase(branch, condition.pattern)

    if isinstance(condition, Expression):
        return is_truthy(evaluate_expression(condition.source, context))

    if isinstance(condition, AllOf):
        return all(evaluate(member, context) for member in condition.conditions)

    if isinstance(condition, AnyOf):
        return any(evaluate(member, context) for member in condition.conditions)

    if isinstance(condition, Not):
        return not evaluate(condition.condition, context)

    raise ConditionEvaluationError(f"Unknown condition type: {type(condition).__name__}")

# Expressions

COMPARISONS = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda left, right: left in right,
    ast.NotIn: lambda left, right: left not in right,
}

class _Lookup:
    """Read-only view used for ``params`` and ``env`` in expressions."""

    def __init__(self, values: Mapping[str, str]):
        self.values = values

    def get(self, key: str, default: Any = None) -> Any:
        return self.values.get(key, default)

    def __contains__(self, key: Any) -> bool:
        return key in self.values

@lru_cache(maxsize=256)
def parse_expression(source: str) -> ast.Expression:
    try:
        return ast.parse(source.strip(), mode="eval")
    except SyntaxError as e:
        raise ConditionEvaluationError(f"Invalid expression {source!r}: {e.msg}") from e

def evaluate_expression(source: str, context: ConditionContext) -> Any:
    tree = parse_expression(source)
    scope = {
        "params": _Lookup(context.params),
        "env": _Lookup(context.env),
    }
    try:
        return _Evaluator(scope, context).visit(tree.body)
    except ConditionEvaluationError:
        raise
    except (TypeError, ValueError) as e:
        raise ConditionEvaluationError(f"Cannot evaluate {source!r}: {e}") from e

class _Evaluator:
    def __init__(self, scope: Mapping[str, _Lookup], context: ConditionContext):
        self.scope = scope
        self.functions = {
            "truthy": is_truthy,
            "file_exists": lambda path: (context.workspace / str(path)).exists(),
            "lower": lambda value: str(value).lower(),
        }

    def visit(self, node: ast.AST) -> Any:
        method = getattr(self, f"visit_{type(node).__name__}", None)
        if method is None:
            raise ConditionEvaluationError(f"Unsupported syntax in condition: {type(node).__name__}")
        return method(node)

    def visit_Constant(self, node: ast.Constant) -> Any:
        return node.value

    def visit_Name(self, node: ast.Name) -> Any:
        if node.id in self.scope:
            return self.scope[node.id]
        raise ConditionEvaluationError(f"Unknown name '{node.id}' in condition")

    def visit_Attribute(self, node: ast.Attribute) -> Any:
        target = self.visit(node.value)
        if not isinstance(target, _Lookup):
            raise ConditionEvaluationError("Attribute access is only allowed on params and env")
        return target.get(node.attr)

    def visit_Subscript(self, node: ast.Subscript) -> Any:
        target = self.visit(node.value)
        if not isinstance(target, _Lookup):
            raise ConditionEvaluationError("Subscripts are only allowed on params and env")
        return target.get(self.visit(node.slice))

    def visit_Call(self, node: ast.Call) -> Any:
        if node.keywords:
            raise ConditionEvaluationError("Keyword arguments are not supported in conditions")
        args = [self.visit(arg) for arg in node.args]

        # params.get("X", "default") / env.get("X")
        if isinstance(node.func, ast.Attribute) and node.func.attr == "get":
            target = self.visit(node.func.value)
            if isinstance(target, _Lookup) and 1 <= len(args) <= 2:
                return target.get(*args)
            raise ConditionEvaluationError("get() takes a key and an optional default")

        if isinstance(node.func, ast.Name) and node.func.id in self.functions:
            if len(args) != 1:
                raise ConditionEvaluationError(f"{node.func.id}() takes exactly one argument")
            return self.functions[node.func.id](args[0])

        raise ConditionEvaluationError("Only truthy(), file_exists(), lower() and get() may be called")

    def visit_BoolOp(self, node: ast.BoolOp) -> Any:
        if isinstance(node.op, ast.And):
            return all(is_truthy(self.visit(value)) for value in node.values)
        return any(is_truthy(self.visit(value)) for value in node.values)

    def visit_UnaryOp(self, node: ast.UnaryOp) -> Any:
        if isinstance(node.op, ast.Not):
            return not is_truthy(self.visit(node.operand))
        raise ConditionEvaluationError(f"Unsupported operator: {type(node.op).__name__}")

    def visit_Compare(self, node: ast.Compare) -> bool:
        left = self.visit(node.left)
        for op, comparator in zip(node.ops, node.comparators):
            right = self.visit(comparator)
            compare = COMPARISONS.get(type(op))
            if compare is None:
                raise ConditionEvaluationError(f"Unsupported comparison: {type(op).__name__}")
            if not compare(left, right):
                return False
            left = right
        return True

    def visit_List(self, node: ast.List) -> list:
        return [self.visit(element) for element in node.elts]

    def visit_Tuple(self, node: ast.Tuple) -> tuple:
        return tuple(self.visit(element) for element in node.elts)
