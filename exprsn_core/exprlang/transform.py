"""
Document transformations over ExprLang.

Every function here returns a new value and leaves its input untouched.
"""

from __future__ import annotations

import copy
from typing import Any, Dict, List, Mapping, Optional

from exprsn_core.core.errors import EvalError, EvalErrorKind, ValidationError
from exprsn_core.exprlang.evaluator import ExprEngine
from exprsn_core.exprlang.operators import type_name

_default_engine = ExprEngine()


def _engine(engine: Optional[ExprEngine]) -> ExprEngine:
    return engine or _default_engine


def _item_context(
    item: Any,
    base: Optional[Mapping[str, Any]],
    item_name: str,
    extra: Dict[str, Any],
) -> Dict[str, Any]:
    context: Dict[str, Any] = dict(base or {})
    if isinstance(item, dict):
        context.update(item)
    context[item_name] = item
    context.update(extra)
    return context


def _require_list(items: Any, operation: str) -> List[Any]:
    if not isinstance(items, list):
        raise EvalError(
            EvalErrorKind.TYPE_MISMATCH,
            f"{operation}: expected an array, got {type_name(items)}",
        )
    return items


def transform(
    data: Any,
    expression: Any,
    context: Optional[Mapping[str, Any]] = None,
    engine: Optional[ExprEngine] = None,
) -> Any:
    """
    Evaluate an expression (or a mapping template of expressions) with the
    data bound as ``$data`` and, when the data is an object, its fields as
    top-level variables.
    """
    snapshot = copy.deepcopy(data)
    scope = _item_context(snapshot, context, "data", {})
    return _engine(engine).evaluate(expression, scope)


def query(data: Any, path: str, default: Any = None) -> Any:
    """
    Select values by path: ``a.b[0].c`` or ``items[*].name``.

    A ``[*]`` segment maps the rest of the path over every element and
    returns a list. Missing segments yield ``default``.
    """
    if not isinstance(path, str):
        raise ValidationError("query path must be a string")

    tokens = _tokenize_path(path.lstrip("$").lstrip("."))
    return copy.deepcopy(_walk(data, tokens, default))


def _tokenize_path(path: str) -> List[Any]:
    tokens: List[Any] = []
    for part in filter(None, path.replace("[", ".[").split(".")):
        if part.startswith("[") and part.endswith("]"):
            inner = part[1:-1]
            if inner == "*":
                tokens.append("*")
            elif inner.lstrip("-").isdigit():
                tokens.append(int(inner))
            else:
                tokens.append(inner.strip("'\""))
        elif part == "*":
            tokens.append("*")
        else:
            tokens.append(part)
    return tokens


def _walk(value: Any, tokens: List[Any], default: Any) -> Any:
    for i, token in enumerate(tokens):
        if token == "*":
            if isinstance(value, dict):
                value = list(value.values())
            if not isinstance(value, list):
                return default
            return [_walk(item, tokens[i + 1:], default) for item in value]
        if isinstance(token, int):
            if isinstance(value, list) and -len(value) <= token < len(value):
                value = value[token]
            else:
                return default
        elif isinstance(value, dict) and token in value:
            value = value[token]
        else:
            return default
    return value


def filter_items(
    items: Any,
    predicate: Any,
    context: Optional[Mapping[str, Any]] = None,
    item_name: str = "item",
    engine: Optional[ExprEngine] = None,
) -> List[Any]:
    """Items for which the predicate expression is truthy"""
    evaluator = _engine(engine)
    snapshot = copy.deepcopy(_require_list(items, "filter"))
    return [
        item
        for index, item in enumerate(snapshot)
        if evaluator.evaluate(predicate, _item_context(item, context, item_name, {"index": index}))
    ]


def map_items(
    items: Any,
    expression: Any,
    context: Optional[Mapping[str, Any]] = None,
    item_name: str = "item",
    engine: Optional[ExprEngine] = None,
) -> List[Any]:
    """Expression applied to every item"""
    evaluator = _engine(engine)
    snapshot = copy.deepcopy(_require_list(items, "map"))
    return [
        evaluator.evaluate(expression, _item_context(item, context, item_name, {"index": index}))
        for index, item in enumerate(snapshot)
    ]


def reduce_items(
    items: Any,
    expression: Any,
    initial: Any = None,
    context: Optional[Mapping[str, Any]] = None,
    item_name: str = "item",
    accumulator_name: str = "acc",
    engine: Optional[ExprEngine] = None,
) -> Any:
    """Fold items left to right; the accumulator is bound as ``$acc``"""
    evaluator = _engine(engine)
    accumulator = copy.deepcopy(initial)
    for index, item in enumerate(copy.deepcopy(_require_list(items, "reduce"))):
        scope = _item_context(item, context, item_name, {"index": index, accumulator_name: accumulator})
        accumulator = evaluator.evaluate(expression, scope)
    return accumulator
