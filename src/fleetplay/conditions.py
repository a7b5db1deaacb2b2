"""Evaluation of `when:` conditions.

Conditions are small boolean expressions over a host's resolved variables:

    when: http_port == 8080 and "nginx" in group_names
    when: tls_cert is defined
    when:
      - env != "prod"
      - not maintenance

The expression is parsed with `ast` and walked by a restricted evaluator.
Only literals, variable names, subscripts/attribute lookups on mappings,
comparisons, boolean operators and unary `not`/`-` are accepted; calls,
arithmetic, comprehensions and every other construct are rejected.
"""

import ast
import re
from typing import Any, Iterable, Mapping

from .exceptions import ConditionEvaluationError

_DEFINED_RE = re.compile(
    r"(?P<name>[A-Za-z_][A-Za-z0-9_]*(?:\.[A-Za-z_][A-Za-z0-9_]*)*)\s+is\s+(?P<neg>not\s+)?(?P<test>defined|undefined)\b"
)

_LITERAL_NAMES = {
    "true": True,
    "True": True,
    "false": False,
    "False": False,
    "none": None,
    "None": None,
    "null": None,
}

_COMPARATORS = {
    ast.Eq: lambda a, b: a == b,
    ast.NotEq: lambda a, b: a != b,
    ast.Lt: lambda a, b: a < b,
    ast.LtE: lambda a, b: a <= b,
    ast.Gt: lambda a, b: a > b,
    ast.GtE: lambda a, b: a >= b,
    ast.In: lambda a, b: a in b,
    ast.NotIn: lambda a, b: a not in b,
    ast.Is: lambda a, b: a is b,
    ast.IsNot: lambda a, b: a is not b,
}

_UNDEFINED = object()


def _rewrite_defined_tests(expression: str) -> str:
    """Turn `x is defined` style tests into calls the evaluator understands."""

    def replace(match: re.Match) -> str:
        defined = match.group("test") == "defined"
        if match.group("neg"):
            defined = not defined
        func = "__defined__" if defined else "__undefined__"
        return f"{func}({match.group('name')!r})"

    return _DEFINED_RE.sub(replace, expression)


class _Evaluator:
    """Walks a parsed expression against a variables mapping."""

    def __init__(self, expression: str, variables: Mapping[str, Any]) -> None:
        self.expression = expression
        self.variables = variables

    def fail(self, reason: str) -> ConditionEvaluationError:
        return ConditionEvaluationError(self.expression, reason)

    def lookup_path(self, path: str) -> Any:
        current: Any = self.variables
        for part in path.split("."):
            if isinstance(current, Mapping) and part in current:
                current = current[part]
            else:
                return _UNDEFINED
        return current

    def eval(self, node: ast.AST) -> Any:
        if isinstance(node, ast.Expression):
            return self.eval(node.body)

        if isinstance(node, ast.Constant):
            return node.value

        if isinstance(node, ast.Name):
            if node.id in self.variables:
                return self.variables[node.id]
            if node.id in _LITERAL_NAMES:
                return _LITERAL_NAMES[node.id]
            raise self.fail(f"'{node.id}' is undefined")

        if isinstance(node, (ast.List, ast.Tuple, ast.Set)):
            items = [self.eval(e) for e in node.elts]
            return set(items) if isinstance(node, ast.Set) else items

        if isinstance(node, ast.BoolOp):
            if isinstance(node.op, ast.And):
                value: Any = True
                for operand in node.values:
                    value = self.eval(operand)
                    if not value:
                        return value
                return value
            value = False
            for operand in node.values:
                value = self.eval(operand)
                if value:
                    return value
            return value

        if isinstance(node, ast.UnaryOp):
            operand = self.eval(node.operand)
            if isinstance(node.op, ast.Not):
                return not operand
            if isinstance(node.op, ast.USub) and isinstance(operand, (int, float)):
                return -operand
            raise self.fail(f"unsupported unary operator {type(node.op).__name__}")

        if isinstance(node, ast.Compare):
            left = self.eval(node.left)
            for op, comparator in zip(node.ops, node.comparators):
                right = self.eval(comparator)
                try:
                    ok = _COMPARATORS[type(op)](left, right)
                except TypeError as e:
                    raise self.fail(str(e))
                if not ok:
                    return False
                left = right
            return True

        if isinstance(node, ast.Subscript):
            container = self.eval(node.value)
            key = self.eval(node.slice)
            try:
                return container[key]
            except (KeyError, IndexError, TypeError) as e:
                raise self.fail(f"cannot subscript with {key!r}: {e}")

        if isinstance(node, ast.Attribute):
            container = self.eval(node.value)
            if isinstance(container, Mapping) and node.attr in container:
                return container[node.attr]
            raise self.fail(f"'{node.attr}' is undefined")

        if isinstance(node, ast.Call):
            func = node.func
            if (
                isinstance(func, ast.Name)
                and func.id in ("__defined__", "__undefined__")
                and len(node.args) == 1
                and isinstance(node.args[0], ast.Constant)
            ):
                defined = self.lookup_path(node.args[0].value) is not _UNDEFINED
                return defined if func.id == "__defined__" else not defined
            raise self.fail("function calls are not allowed")

        raise self.fail(f"unsupported syntax {type(node).__name__}")


def evaluate_condition(expression: Any, variables: Mapping[str, Any]) -> bool:
    """Evaluate a single condition against host variables.

    Args:
        expression: Expression string, or a bare boolean
        variables: Resolved host variables

    Returns:
        Truth value of the expression

    Raises:
        ConditionEvaluationError: If the expression is malformed, uses a
            construct outside the allowed subset, or references an
            undefined variable

    Example:
        >>> evaluate_condition("port == 8443", {"port": 8443})
        True
        >>> evaluate_condition("tls is not defined", {})
        True
    """
    if isinstance(expression, bool):
        return expression
    if not isinstance(expression, str) or not expression.strip():
        raise ConditionEvaluationError(str(expression), "condition must be a non-empty string")

    source = _rewrite_defined_tests(expression.strip())
    try:
        tree = ast.parse(source, mode="eval")
    except SyntaxError as e:
        raise ConditionEvaluationError(expression, f"syntax error: {e.msg}")

    return bool(_Evaluator(expression, variables).eval(tree))


def evaluate_conditions(conditions: Iterable[Any], variables: Mapping[str, Any]) -> bool:
    """Evaluate a `when:` list; all items must hold."""
    return all(evaluate_condition(c, variables) for c in conditions)


def referenced_names(expression: Any) -> set[str]:
    """Top-level variable names a condition reads.

    `result.rc == 0` and `result is defined` both reference `result`.
    Unparseable expressions reference nothing; evaluating them reports the
    syntax error.
    """
    if not isinstance(expression, str):
        return set()
    try:
        tree = ast.parse(_rewrite_defined_tests(expression.strip()), mode="eval")
    except SyntaxError:
        return set()
    names: set[str] = set()
    for node in ast.walk(tree):
        if isinstance(node, ast.Name) and node.id not in _LITERAL_NAMES:
            names.add(node.id)
        elif (
            isinstance(node, ast.Call)
            and isinstance(node.func, ast.Name)
            and node.func.id in ("__defined__", "__undefined__")
            and node.args
            and isinstance(node.args[0], ast.Constant)
        ):
            names.add(str(node.args[0].value).split(".")[0])
    names.discard("__defined__")
    names.discard("__undefined__")
    return names


def validate_condition(expression: Any) -> None:
    """Check a condition's syntax without evaluating it.

    Raises:
        ConditionEvaluationError: If the expression cannot be parsed
    """
    if isinstance(expression, bool):
        return
    if not isinstance(expression, str) or not expression.strip():
        raise ConditionEvaluationError(str(expression), "condition must be a non-empty string")
    try:
        ast.parse(_rewrite_defined_tests(expression.strip()), mode="eval")
    except SyntaxError as e:
        raise ConditionEvaluationError(expression, f"syntax error: {e.msg}")
