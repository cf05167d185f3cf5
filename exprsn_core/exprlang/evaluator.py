"""
ExprLang Evaluator
==================

Interpreter over JSON expression documents. An expression is one of:

- a literal (number, string, boolean, null, array)
- a variable reference ``"$name"`` (dotted paths allowed, ``"$$"`` escapes)
- an operator node ``{"operator": OP, "operands": [...]}``

Mapping literals without an ``operator`` key are evaluated value by value.
Evaluation is deterministic and never mutates the context.

Author: Builder Engine Team
Version: 2.0.0
"""

from __future__ import annotations

import copy
from typing import Any, Dict, List, Mapping, Optional, Set

import structlog

from exprsn_core.core.errors import EvalError, EvalErrorKind, ValidationError
from exprsn_core.exprlang.operators import (
    OPERANDS_KEY,
    OPERATOR_KEY,
    OperatorRegistry,
    resolve_path,
)

logger = structlog.get_logger(__name__)

VARIABLE_PREFIX = "$"
DEFAULT_MAX_DEPTH = 64


def is_operator_node(value: Any) -> bool:
    return isinstance(value, dict) and OPERATOR_KEY in value


def variable_name(value: Any) -> Optional[str]:
    """Variable name of a ``"$name"`` reference, else None"""
    if (
        isinstance(value, str)
        and value.startswith(VARIABLE_PREFIX)
        and not value.startswith(VARIABLE_PREFIX * 2)
        and len(value) > 1
    ):
        return value[1:]
    return None


def _operands_of(node: Dict[str, Any]) -> List[Any]:
    operands = node.get(OPERANDS_KEY, [])
    if isinstance(operands, list):
        return operands
    return [operands]


class ExprEngine:
    """
    ExprLang interpreter bound to an operator registry.

    Usage:
        engine = ExprEngine()
        engine.evaluate({"operator": "add", "operands": ["$a", 1]}, {"a": 2})  # 3

        engine.registry.register("double", lambda args: args[0] * 2, min_operands=1)
    """

    def __init__(self, registry: Optional[OperatorRegistry] = None, max_depth: int = DEFAULT_MAX_DEPTH):
        self.registry = registry or OperatorRegistry.default()
        self.max_depth = max_depth
        self._evaluations = 0

    @property
    def evaluations(self) -> int:
        """Number of top-level evaluate() calls served"""
        return self._evaluations

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    def evaluate(self, expression: Any, context: Optional[Mapping[str, Any]] = None) -> Any:
        """
        Evaluate an expression document against a context.

        Raises:
            EvalError: TypeMismatch, ArithmeticDomain, UnboundVariable, PatternError,
                DepthExceeded when nesting goes past ``max_depth``
            ValidationError: unknown operator or wrong operand count
        """
        self._evaluations += 1
        return self._eval(expression, context or {}, 0)

    def _eval(self, expression: Any, context: Mapping[str, Any], depth: int) -> Any:
        if depth > self.max_depth:
            raise EvalError(
                EvalErrorKind.DEPTH_EXCEEDED,
                f"Expression nesting exceeds {self.max_depth} levels",
                max_depth=self.max_depth,
            )

        if isinstance(expression, str):
            return self._resolve_string(expression, context)

        if isinstance(expression, list):
            return [self._eval(item, context, depth + 1) for item in expression]

        if isinstance(expression, dict):
            if OPERATOR_KEY in expression:
                return self._apply(expression, context, depth)
            return {key: self._eval(value, context, depth + 1) for key, value in expression.items()}

        return expression

    def _resolve_string(self, value: str, context: Mapping[str, Any]) -> Any:
        if value.startswith(VARIABLE_PREFIX * 2):
            return value[1:]
        name = variable_name(value)
        if name is None:
            return value
        return copy.deepcopy(resolve_path(context, name))

    def _apply(self, node: Dict[str, Any], context: Mapping[str, Any], depth: int) -> Any:
        name = node[OPERATOR_KEY]
        spec = self.registry.get(name) if isinstance(name, str) else None
        if spec is None:
            raise ValidationError(f"Unknown operator: {name!r}")

        operands = _operands_of(node)
        problem = spec.check_arity(len(operands))
        if problem:
            raise ValidationError(problem)

        if spec.lazy:
            return spec.func(operands, lambda e: self._eval(e, context, depth + 1), context)

        return spec.func([self._eval(operand, context, depth + 1) for operand in operands])

    # -------------------------------------------------------------------------
    # Static analysis
    # -------------------------------------------------------------------------

    def validate_expression(self, expression: Any, path: str = "$") -> List[Dict[str, str]]:
        """Structural problems in an expression document, as {path, message} items"""
        errors: List[Dict[str, str]] = []
        self._check(expression, path, errors, 0)
        return errors

    def _check(self, expression: Any, path: str, errors: List[Dict[str, str]], depth: int) -> None:
        if depth > self.max_depth:
            errors.append({"path": path, "message": f"Expression nesting exceeds {self.max_depth} levels"})
            return

        if isinstance(expression, list):
            for i, item in enumerate(expression):
                self._check(item, f"{path}[{i}]", errors, depth + 1)
            return

        if not isinstance(expression, dict):
            return

        if OPERATOR_KEY not in expression:
            for key, value in expression.items():
                self._check(value, f"{path}.{key}", errors, depth + 1)
            return

        name = expression[OPERATOR_KEY]
        spec = self.registry.get(name) if isinstance(name, str) else None
        if spec is None:
            errors.append({"path": path, "message": f"Unknown operator: {name!r}"})
            return

        raw = expression.get(OPERANDS_KEY, [])
        if not isinstance(raw, list):
            errors.append({"path": f"{path}.operands", "message": "operands must be an array"})
            return

        problem = spec.check_arity(len(raw))
        if problem:
            errors.append({"path": path, "message": problem})

        if name == "literal":
            return
        for i, operand in enumerate(raw):
            self._check(operand, f"{path}.operands[{i}]", errors, depth + 1)

    def references(self, expression: Any) -> Set[str]:
        """Variable names (full dotted paths) read by an expression"""
        found: Set[str] = set()
        self._collect(expression, found)
        return found

    def _collect(self, expression: Any, found: Set[str]) -> None:
        name = variable_name(expression)
        if name is not None:
            found.add(name)
            return

        if isinstance(expression, list):
            for item in expression:
                self._collect(item, found)
            return

        if not isinstance(expression, dict):
            return

        if OPERATOR_KEY not in expression:
            for value in expression.values():
                self._collect(value, found)
            return

        operator = expression[OPERATOR_KEY]
        operands = _operands_of(expression)
        if operator == "literal":
            return
        if operator == "field" and operands and isinstance(operands[0], str):
            found.add(operands[0].lstrip(VARIABLE_PREFIX))
            operands = operands[1:]
        for operand in operands:
            self._collect(operand, found)


# =============================================================================
# CONVENIENCE FUNCTIONS
# =============================================================================


_builtin_engine = ExprEngine()


def evaluate(expression: Any, context: Optional[Mapping[str, Any]] = None) -> Any:
    """Evaluate with the built-in operator catalogue"""
    return _builtin_engine.evaluate(expression, context)


def validate_expression(expression: Any) -> List[Dict[str, str]]:
    """Structural validation with the built-in operator catalogue"""
    return _builtin_engine.validate_expression(expression)


def references(expression: Any) -> Set[str]:
    """Variable names read by an expression"""
    return _builtin_engine.references(expression)
