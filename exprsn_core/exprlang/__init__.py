"""
ExprLang
========

Portable JSON expression language: evaluation, static validation,
schema validation/inference and document transformations.

Author: Builder Engine Team
Version: 2.0.0
"""

from exprsn_core.exprlang.evaluator import (
    ExprEngine,
    evaluate,
    is_operator_node,
    references,
    validate_expression,
    variable_name,
)
from exprsn_core.exprlang.formula import parse_formula
from exprsn_core.exprlang.operators import OperatorRegistry, OperatorSpec
from exprsn_core.exprlang.schema import (
    SchemaValidationResult,
    infer_schema,
    merge_schemas,
    validate,
)
from exprsn_core.exprlang.transform import (
    filter_items,
    map_items,
    query,
    reduce_items,
    transform,
)

__all__ = [
    # Evaluator
    "ExprEngine",
    "evaluate",
    "is_operator_node",
    "references",
    "validate_expression",
    "variable_name",
    # Operators
    "OperatorRegistry",
    "OperatorSpec",
    # Formula
    "parse_formula",
    # Schema
    "SchemaValidationResult",
    "infer_schema",
    "merge_schemas",
    "validate",
    # Transform
    "filter_items",
    "map_items",
    "query",
    "reduce_items",
    "transform",
]
