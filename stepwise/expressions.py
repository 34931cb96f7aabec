"""Restricted expressions for step conditions and transforms.

Expressions use Python syntax and are parsed once, when the workflow
definition is validated. Only a small set of AST nodes is accepted and
evaluation walks the tree directly; no code object is ever compiled.

Names resolve against the instance data, so ``score > 0.5``,
``data.score > 0.5`` and ``data["score"] > 0.5`` are equivalent. Missing keys
evaluate to ``None``.
"""

from __future__ import annotations

import ast
import logging
import operator
from collections.abc import Mapping
from typing import Any, Callable, Optional, Union

from pydantic import GetCoreSchemaHandler
from pydantic_core import core_schema

from .errors import ConditionEvaluationError

logger = logging.getLogger(__name__)

DATA_NAME = "data"

_ALLOWED_NODES = (
    ast.Expression,
    ast.BoolOp,
    ast.And,
    ast.Or,
    ast.UnaryOp,
    ast.Not,
    ast.USub,
    ast.UAdd,
    ast.BinOp,
    ast.Add,
    ast.Sub,
    ast.Mult,
    ast.Div,
    ast.FloorDiv,
    ast.Mod,
    ast.Compare,
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
    ast.IfExp,
    ast.Name,
    ast.Load,
    ast.Attribute,
    ast.Subscript,
    ast.Constant,
    ast.List,
    ast.Tuple,
    ast.Dict,
    ast.Call,
)

_FUNCTIONS: dict[str, Callable[..., Any]] = {
    "len": len,
    "str": str,
    "int": int,
    "float": float,
    "bool": bool,
    "abs": abs,
    "min": min,
    "max": max,
    "any": any,
    "all": all,
}

_BIN_OPS: dict[type, Callable[[Any, Any], Any]] = {
    ast.Add: operator.add,
    ast.Sub: operator.sub,
    ast.Mult: operator.mul,
    ast.Div: operator.truediv,
    ast.FloorDiv: operator.floordiv,
    ast.Mod: operator.mod,
}

_COMPARE_OPS: dict[type, Callable[[Any, Any], bool]] = {
    ast.Eq: operator.eq,
    ast.NotEq: operator.ne,
    ast.Lt: operator.lt,
    ast.LtE: operator.le,
    ast.Gt: operator.gt,
    ast.GtE: operator.ge,
    ast.In: lambda left, right: left in right,
    ast.NotIn: lambda left, right: left not in right,
    ast.Is: operator.is_,
    ast.IsNot: operator.is_not,
}


def parse_expression(source: str) -> ast.Expression:
    """Parse ``source`` and reject any syntax outside the allowed subset."""

    try:
        tree = ast.parse(source.strip(), mode="eval")
    except SyntaxError as exc:
        raise ConditionEvaluationError(
            f"Invalid expression {source!r}: {exc.msg}"
        ) from exc

    for node in ast.walk(tree):
        if not isinstance(node, _ALLOWED_NODES):
            raise ConditionEvaluationError(
                f"Unsupported syntax {type(node).__name__} in expression {source!r}"
            )
        if isinstance(node, ast.Call):
            if (
                not isinstance(node.func, ast.Name)
                or node.func.id not in _FUNCTIONS
                or node.keywords
            ):
                raise ConditionEvaluationError(
                    f"Unsupported call in expression {source!r}"
                )
        if isinstance(node, ast.Attribute) and node.attr.startswith("_"):
            raise ConditionEvaluationError(
                f"Private attribute access in expression {source!r}"
            )
    return tree


def _lookup(container: Any, key: Any) -> Any:
    if container is None:
        return None
    if isinstance(container, Mapping):
        return container.get(key)
    if isinstance(key, str):
        return getattr(container, key, None)
    return container[key]


def _evaluate(node: ast.AST, data: Mapping[str, Any]) -> Any:
    if isinstance(node, ast.Expression):
        return _evaluate(node.body, data)
    if isinstance(node, ast.Constant):
        return node.value
    if isinstance(node, ast.Name):
        if node.id == DATA_NAME:
            return data
        return data.get(node.id)
    if isinstance(node, ast.Attribute):
        return _lookup(_evaluate(node.value, data), node.attr)
    if isinstance(node, ast.Subscript):
        return _lookup(_evaluate(node.value, data), _evaluate(node.slice, data))
    if isinstance(node, ast.BoolOp):
        value: Any = None
        for operand in node.values:
            value = _evaluate(operand, data)
            if isinstance(node.op, ast.And) and not value:
                return value
            if isinstance(node.op, ast.Or) and value:
                return value
        return value
    if isinstance(node, ast.UnaryOp):
        operand = _evaluate(node.operand, data)
        if isinstance(node.op, ast.Not):
            return not operand
        if isinstance(node.op, ast.USub):
            return -operand
        return +operand
    if isinstance(node, ast.BinOp):
        op = _BIN_OPS[type(node.op)]
        return op(_evaluate(node.left, data), _evaluate(node.right, data))
    if isinstance(node, ast.Compare):
        left = _evaluate(node.left, data)
        for op_node, comparator in zip(node.ops, node.comparators, strict=True):
            right = _evaluate(comparator, data)
            if not _COMPARE_OPS[type(op_node)](left, right):
                return False
            left = right
        return True
    if isinstance(node, ast.IfExp):
        if _evaluate(node.test, data):
            return _evaluate(node.body, data)
        return _evaluate(node.orelse, data)
    if isinstance(node, ast.List):
        return [_evaluate(element, data) for element in node.elts]
    if isinstance(node, ast.Tuple):
        return tuple(_evaluate(element, data) for element in node.elts)
    if isinstance(node, ast.Dict):
        return {
            _evaluate(key, data): _evaluate(value, data)
            for key, value in zip(node.keys, node.values, strict=True)
        }
    if isinstance(node, ast.Call):
        func = _FUNCTIONS[node.func.id]  # type: ignore[attr-defined]
        return func(*(_evaluate(arg, data) for arg in node.args))
    raise ConditionEvaluationError(f"Unsupported node {type(node).__name__}")


class Expression:
    """A predicate or value expression over instance data.

    Built from either an expression string or a plain callable taking the
    data mapping. Strings that fail to parse do not raise here: the error is
    logged and kept, and :meth:`evaluate` raises it every time it is called.
    """

    __slots__ = ("source", "_tree", "_func", "_error")

    def __init__(self, source: Union[str, Callable[[Mapping[str, Any]], Any]]) -> None:
        self._tree: Optional[ast.Expression] = None
        self._func: Optional[Callable[[Mapping[str, Any]], Any]] = None
        self._error: Optional[str] = None

        if callable(source):
            self._func = source
            self.source = getattr(source, "__qualname__", repr(source))
            return

        self.source = source
        try:
            self._tree = parse_expression(source)
        except ConditionEvaluationError as exc:
            self._error = str(exc)
            logger.warning(f"Expression will evaluate as an error: {exc}")

    @classmethod
    def coerce(cls, value: Any) -> "Expression":
        if isinstance(value, Expression):
            return value
        if isinstance(value, str) or callable(value):
            return cls(value)
        raise ValueError(f"Expected an expression string or callable, got {type(value)}")

    @property
    def is_valid(self) -> bool:
        return self._error is None

    @property
    def error(self) -> Optional[str]:
        return self._error

    def evaluate(self, data: Mapping[str, Any]) -> Any:
        """Return the expression's value for ``data``."""
        if self._error is not None:
            raise ConditionEvaluationError(self._error)
        try:
            if self._func is not None:
                return self._func(data)
            return _evaluate(self._tree, data)
        except ConditionEvaluationError:
            raise
        except Exception as exc:
            raise ConditionEvaluationError(
                f"Failed to evaluate {self.source!r}: {exc}"
            ) from exc

    def test(self, data: Mapping[str, Any]) -> bool:
        return bool(self.evaluate(data))

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, Expression):
            return NotImplemented
        return self.source == other.source and self._func is other._func

    def __hash__(self) -> int:
        return hash(self.source)

    def __repr__(self) -> str:
        return f"Expression({self.source!r})"

    @classmethod
    def __get_pydantic_core_schema__(
        cls, source_type: Any, handler: GetCoreSchemaHandler
    ) -> core_schema.CoreSchema:
        return core_schema.no_info_plain_validator_function(
            cls.coerce,
            serialization=core_schema.plain_serializer_function_ser_schema(
                lambda expression: expression.source
            ),
        )


__all__ = ["Expression", "parse_expression", "DATA_NAME"]
