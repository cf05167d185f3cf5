"""
Parameters
==========

Typed, scoped parameters with calculated dependencies.
"""

from exprsn_core.parameters.base import (
    Parameter,
    ParameterHistoryEntry,
    ParameterScope,
    ParameterType,
    ParameterValidation,
    QueryExecutor,
)
from exprsn_core.parameters.store import ParameterStore

__all__ = [
    "Parameter",
    "ParameterHistoryEntry",
    "ParameterScope",
    "ParameterStore",
    "ParameterType",
    "ParameterValidation",
    "QueryExecutor",
]
