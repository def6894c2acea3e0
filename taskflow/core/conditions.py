"""Evaluation of edge, decision and rule conditions against an execution context.

Conditions are Python expressions restricted to literals, names, comparisons,
boolean operators, subscripts and a handful of safe builtins. Context keys are
available as bare names, and the whole mapping as ``context`` (or ``state``).
"""

import ast
from functools import lru_cache
from typing import Any, Mapping, Optional

from .logging import get_logger

logger = get_logger(__name__)

ELSE_KEYWORDS = frozenset({"else", "default", "otherwise"})

_SAFE_BUILTINS = {
    'len': len,
    'str': str,
    'int': int,
    'float': float,
    'bool': bool,
    'abs': abs,
    'min': min,
    'max': max,
    'any': any,
    'all': all,
    'isinstance': isinstance,
}

_CONSTANT_NAMES = {'true': True, 'false': False, 'null': None, 'none': None}

_FORBIDDEN_NODES = (ast.Lambda, ast.NamedExpr, ast.Await, ast.Yield, ast.YieldFrom,
                    ast.ListComp, ast.SetComp, ast.DictComp, ast.GeneratorExp)


class ConditionError(ValueError):
    """Raised when a condition string is not an allowed expression."""


def is_else(condition: Optional[str]) -> bool:
    """True for an untagged branch: no condition, or an explicit else keyword."""
    return condition is None or not condition.strip() or condition.strip().lower() in ELSE_KEYWORDS


@lru_cache(maxsize=1024)
def compile_condition(expression: str):
    """Parse and compile a condition, rejecting constructs outside the allowed subset."""
    try:
        tree = ast.parse(expression.strip(), mode="eval")
    except SyntaxError as e:
        raise ConditionError(f"Invalid condition syntax '{expression}': {e.msg}") from e

    for node in ast.walk(tree):
        if isinstance(node, _FORBIDDEN_NODES):
            raise ConditionError(f"Unsupported construct in condition '{expression}'")
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise ConditionError(f"Private attribute access is not allowed in condition '{expression}'")
        if isinstance(node, ast.Name) and node.id.startswith("__"):
            raise ConditionError(f"Dunder names are not allowed in condition '{expression}'")

    return compile(tree, "<condition>", "eval")


def check_condition(expression: str) -> Optional[str]:
    """Return an error message if the condition cannot be compiled, else None."""
    try:
        compile_condition(expression)
    except ConditionError as e:
        return str(e)
    return None


def evaluate_condition(expression: str, context: Mapping[str, Any], extra: Optional[Mapping[str, Any]] = None) -> bool:
    """
    Evaluate a condition string against a context mapping.

    Args:
        expression: Condition to evaluate
        context: Execution context; its keys are exposed as names
        extra: Additional names that take precedence over context keys

    Returns:
        The truth value of the expression. Invalid conditions and evaluation
        errors (e.g. a missing key) are logged and count as False.
    """
    try:
        code = compile_condition(expression)
        namespace = dict(_CONSTANT_NAMES)
        namespace.update(context)
        namespace['context'] = dict(context)
        namespace['state'] = namespace['context']
        if extra:
            namespace.update(extra)
        return bool(eval(code, {"__builtins__": _SAFE_BUILTINS}, namespace))
    except Exception as e:
        logger.warning(f"Failed to evaluate condition '{expression}': {str(e)}")
        return False
