"""
Decisions
=========

Decision tables with DMN-style hit policies.
"""

from exprsn_core.decisions.base import (
    ConditionOperator,
    DecisionResult,
    DecisionRule,
    DecisionTable,
    HitPolicy,
    RuleCondition,
    TableColumn,
    TableStatus,
)
from exprsn_core.decisions.engine import DecisionEngine, matches_condition

__all__ = [
    "ConditionOperator",
    "DecisionEngine",
    "DecisionResult",
    "DecisionRule",
    "DecisionTable",
    "HitPolicy",
    "RuleCondition",
    "TableColumn",
    "TableStatus",
    "matches_condition",
]
