"""
Decision Table Models
=====================

DMN-style decision tables: typed inputs and outputs, prioritised rules
made of conditions, a hit policy and an optional default output.

Author: Builder Engine Team
Version: 2.0.0
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, List, Optional
from uuid import uuid4

from pydantic import BaseModel, Field, model_validator


class HitPolicy(str, Enum):
    """How outputs are selected among matching rules"""

    FIRST = "first"
    UNIQUE = "unique"
    PRIORITY = "priority"
    ANY = "any"
    COLLECT = "collect"


class TableStatus(str, Enum):
    """Decision table lifecycle"""

    DRAFT = "draft"
    ACTIVE = "active"
    INACTIVE = "inactive"


class ConditionOperator(str, Enum):
    """Condition operators"""

    EQ = "=="
    NE = "!="
    GT = ">"
    GTE = ">="
    LT = "<"
    LTE = "<="
    CONTAINS = "contains"
    NOT_CONTAINS = "not_contains"
    STARTS_WITH = "starts_with"
    ENDS_WITH = "ends_with"
    IN = "in"
    NOT_IN = "not_in"
    BETWEEN = "between"
    IS_NULL = "is_null"
    IS_NOT_NULL = "is_not_null"
    IS_EMPTY = "is_empty"
    IS_NOT_EMPTY = "is_not_empty"
    MATCHES = "matches"


OPERATOR_ALIASES: Dict[str, ConditionOperator] = {
    "equals": ConditionOperator.EQ,
    "eq": ConditionOperator.EQ,
    "not_equals": ConditionOperator.NE,
    "notEquals": ConditionOperator.NE,
    "not equals": ConditionOperator.NE,
    "greater_than": ConditionOperator.GT,
    "greaterThan": ConditionOperator.GT,
    "greater than": ConditionOperator.GT,
    "greater_than_or_equal": ConditionOperator.GTE,
    "greaterThanOrEqual": ConditionOperator.GTE,
    "greater than or equal": ConditionOperator.GTE,
    "less_than": ConditionOperator.LT,
    "lessThan": ConditionOperator.LT,
    "less than": ConditionOperator.LT,
    "less_than_or_equal": ConditionOperator.LTE,
    "lessThanOrEqual": ConditionOperator.LTE,
    "less than or equal": ConditionOperator.LTE,
    "notContains": ConditionOperator.NOT_CONTAINS,
    "startsWith": ConditionOperator.STARTS_WITH,
    "endsWith": ConditionOperator.ENDS_WITH,
    "notIn": ConditionOperator.NOT_IN,
    "isNull": ConditionOperator.IS_NULL,
    "isNotNull": ConditionOperator.IS_NOT_NULL,
    "isEmpty": ConditionOperator.IS_EMPTY,
    "isNotEmpty": ConditionOperator.IS_NOT_EMPTY,
}

# Operators that accept a null input
NULL_TOLERANT = {ConditionOperator.IS_NULL, ConditionOperator.IS_EMPTY}


def normalize_operator(value: Any) -> ConditionOperator:
    """Canonical operator for a symbol or alias"""
    if isinstance(value, ConditionOperator):
        return value
    if value in OPERATOR_ALIASES:
        return OPERATOR_ALIASES[value]
    return ConditionOperator(value)


class IOType(str, Enum):
    """Declared input/output types"""

    STRING = "string"
    NUMBER = "number"
    BOOLEAN = "boolean"
    DATE = "date"
    ANY = "any"


class TableColumn(BaseModel):
    """Declared input or output column"""

    name: str
    type: IOType = IOType.ANY
    label: Optional[str] = None


class RuleCondition(BaseModel):
    """One condition: ``input <operator> value``"""

    input: str
    operator: ConditionOperator = ConditionOperator.EQ
    value: Any = None

    @model_validator(mode="before")
    @classmethod
    def _accept_aliases(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            if "input" not in data and "inputName" in data:
                data["input"] = data.pop("inputName")
            if "operator" not in data and "op" in data:
                data["operator"] = data.pop("op")
            if "operator" in data:
                data["operator"] = normalize_operator(data["operator"])
        return data


class DecisionRule(BaseModel):
    """All conditions must hold for the rule to match"""

    id: str = Field(default_factory=lambda: f"rule_{uuid4().hex[:8]}")
    priority: int = 0
    description: str = ""
    conditions: List[RuleCondition] = Field(default_factory=list)
    outputs: Dict[str, Any] = Field(default_factory=dict)

    @model_validator(mode="before")
    @classmethod
    def _accept_aliases(cls, data: Any) -> Any:
        if isinstance(data, dict):
            data = dict(data)
            if "conditions" not in data and "cond" in data:
                data["conditions"] = data.pop("cond")
            if "outputs" not in data and "out" in data:
                data["outputs"] = data.pop("out")
        return data


class DecisionTable(BaseModel):
    """A decision table definition"""

    id: str = Field(default_factory=lambda: f"dt_{uuid4().hex[:12]}")
    name: str
    description: str = ""
    hit_policy: HitPolicy = HitPolicy.FIRST
    inputs: List[TableColumn] = Field(default_factory=list)
    outputs: List[TableColumn] = Field(default_factory=list)
    rules: List[DecisionRule] = Field(default_factory=list)
    default_output: Optional[Dict[str, Any]] = None
    status: TableStatus = TableStatus.ACTIVE
    execution_count: int = 0
    created_by: Optional[str] = None
    created_at: datetime = Field(default_factory=datetime.utcnow)
    updated_at: datetime = Field(default_factory=datetime.utcnow)

    def sorted_rules(self) -> List[DecisionRule]:
        """Rules ascending by priority; stable for equal priorities"""
        return sorted(self.rules, key=lambda r: r.priority)

    def input_type(self, name: str) -> IOType:
        for column in self.inputs:
            if column.name == name:
                return column.type
        return IOType.ANY


@dataclass
class DecisionResult:
    """Outcome of one table evaluation"""

    table_id: str
    matched: bool
    outputs: Dict[str, Any] = field(default_factory=dict)
    matched_rule_ids: List[str] = field(default_factory=list)
    used_default: bool = False

    def to_dict(self) -> Dict[str, Any]:
        return {
            "table_id": self.table_id,
            "matched": self.matched,
            "outputs": self.outputs,
            "matched_rule_ids": self.matched_rule_ids,
            "used_default": self.used_default,
        }
