"""Safe expression parser for stage run conditions.

Compiles ``when`` expressions such as ``"branch == 'main'"`` into predicates
over a RunContext without using eval().

Uses Python's AST module with a strict whitelist:
- comparison operators: ==, !=, <, >, <=, >=, is, is not
- boolean operators: and, or, not
- membership: in, not in
- attribute access and subscripts for data extraction
- literal lists, tuples and dicts
- NO function calls, imports, or arbitrary code execution

Names resolve against the context data. Unknown names resolve to ``None``.

Examples
--------
Basic usage::

    from stageflow.kernel.expression_parser import compile_expression

    pred = compile_expression("branch == 'main'")
    pred({"branch": "main"})  # True

    pred = compile_expression("event_type in ['push', 'tag'] and vars.DEPLOY == 'yes'")
    pred({"event_type": "push", "vars": {"DEPLOY": "yes"}})  # True

    pred = compile_expression("stages.test == 'succeeded'")
    pred({"stages": {"test": "succeeded"}})  # True
"""

import ast
import operator
from collections.abc import Callable, Mapping
from typing import Any

from stageflow.kernel.exceptions import StageflowError
from stageflow.kernel.logging import get_logger

__all__ = ["compile_expression", "validate_expression", "ExpressionError", "Predicate"]

logger = get_logger(__name__)

Predicate = Callable[[Mapping[str, Any]], bool]


class ExpressionError(StageflowError):
    """Raised when expression parsing or evaluation fails."""

    def __init__(self, expression: str, reason: str) -> None:
        self.expression = expression
        self.reason = reason
        super().__init__(f"Expression error in '{expression}': {reason}")


_COMPARE_OPS: dict[type[ast.cmpop], Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda x, y: x in y,
    ast.NotIn: lambda x, y: x not in y,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}

_UNARY_OPS: dict[type[ast.unaryop], Callable[..., Any]] = {
    ast.Not: operator.not_,
    ast.USub: operator.neg,
    ast.UAdd: operator.pos,
}

_ALLOWED_NODES = (
    ast.Expression,
    ast.Compare,
    ast.BoolOp,
    ast.UnaryOp,
    ast.Attribute,
    ast.Subscript,
    ast.Name,
    ast.Constant,
    ast.Load,
    ast.Tuple,
    ast.List,
    ast.Dict,
    ast.Eq,
    ast.NotEq,
    ast.Lt,
    ast.LtE,
    ast.Gt,
    ast.GtE,
    ast.In,
    ast.NotIn,
    ast.Is,
    ast.IsNot,
    ast.And,
    ast.Or,
    ast.Not,
    ast.USub,
    ast.UAdd,
)


def _validate_ast(node: ast.AST, expression: str) -> None:
    """Reject any AST node outside the whitelist.

    Raises
    ------
    ExpressionError
        If the AST contains disallowed operations
    """
    if isinstance(node, ast.Call):
        raise ExpressionError(expression, "Function calls are not allowed in expressions")

    if not isinstance(node, _ALLOWED_NODES):
        raise ExpressionError(expression, f"Disallowed expression type: {type(node).__name__}")

    if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
        raise ExpressionError(expression, f"Private attribute access: {node.attr}")

    for child in ast.iter_child_nodes(node):
        _validate_ast(child, expression)


def _lookup(current: Any, key: Any) -> Any:
    if current is None:
        return None
    if isinstance(current, Mapping):
        return current.get(key)
    if isinstance(current, (list, tuple)) and isinstance(key, int):
        return current[key] if -len(current) <= key < len(current) else None
    return None


def _evaluate_node(node: ast.AST, data: Mapping[str, Any]) -> Any:
    """Evaluate a validated AST node against the context data."""
    if isinstance(node, ast.Constant):
        return node.value

    if isinstance(node, ast.Name):
        return data.get(node.id)

    if isinstance(node, ast.Attribute):
        # Only mapping lookups; never getattr on live objects
        return _lookup(_evaluate_node(node.value, data), node.attr)

    if isinstance(node, ast.Subscript):
        return _lookup(_evaluate_node(node.value, data), _evaluate_node(node.slice, data))

    if isinstance(node, ast.Compare):
        left = _evaluate_node(node.left, data)
        for op, comparator in zip(node.ops, node.comparators, strict=True):
            right = _evaluate_node(comparator, data)
            try:
                if not _COMPARE_OPS[type(op)](left, right):
                    return False
            except TypeError:
                # None compared with a number, membership in None, ...
                return False
            left = right
        return True

    if isinstance(node, ast.BoolOp):
        if isinstance(node.op, ast.And):
            result: Any = True
            for value in node.values:
                result = _evaluate_node(value, data)
                if not result:
                    return result
            return result
        result = False
        for value in node.values:
            result = _evaluate_node(value, data)
            if result:
                return result
        return result

    if isinstance(node, ast.UnaryOp):
        return _UNARY_OPS[type(node.op)](_evaluate_node(node.operand, data))

    if isinstance(node, ast.List):
        return [_evaluate_node(elt, data) for elt in node.elts]

    if isinstance(node, ast.Tuple):
        return tuple(_evaluate_node(elt, data) for elt in node.elts)

    if isinstance(node, ast.Dict):
        keys = [_evaluate_node(k, data) if k else None for k in node.keys]
        values = [_evaluate_node(v, data) for v in node.values]
        return dict(zip(keys, values, strict=True))

    raise ExpressionError("", f"Unsupported AST node: {type(node).__name__}")


def _parse(expression: str) -> ast.Expression:
    if not expression or not expression.strip():
        raise ExpressionError(expression, "Expression cannot be empty")

    expression = expression.strip()
    try:
        tree = ast.parse(expression, mode="eval")
    except SyntaxError as e:
        raise ExpressionError(expression, f"Syntax error: {e.msg}") from e

    _validate_ast(tree, expression)
    return tree


def validate_expression(expression: str) -> None:
    """Check that an expression compiles, raising ExpressionError if not."""
    _parse(expression)


def compile_expression(expression: str) -> Predicate:
    """Compile a string expression into a safe predicate.

    Parameters
    ----------
    expression : str
        Expression string like ``"branch == 'main'"``

    Returns
    -------
    Predicate
        Function taking the context data mapping and returning a bool.
        Evaluation errors are logged and treated as ``False``.

    Raises
    ------
    ExpressionError
        If the expression is empty, malformed or uses disallowed constructs

    Examples
    --------
    >>> pred = compile_expression("branch == 'main'")
    >>> pred({"branch": "main"})
    True
    >>> pred({"branch": "feature-x"})
    False
    >>> compile_expression("'release/' in ref")({"ref": "refs/heads/release/1.2"})
    True
    """
    tree = _parse(expression)
    source = expression.strip()

    def predicate(data: Mapping[str, Any]) -> bool:
        try:
            return bool(_evaluate_node(tree.body, data))
        except Exception as e:
            logger.warning("Expression '{}' evaluation failed: {}", source, e)
            return False

    return predicate
