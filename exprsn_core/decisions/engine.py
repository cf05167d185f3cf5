"""
Decision Engine
===============

Rule evaluation for decision tables with hit policies:
- first: stop at the first match
- unique: at most one rule may match
- priority: highest priority value wins
- any: every match must agree on its outputs
- collect: output name -> list of values from all matches

Evaluation is pure with respect to its inputs; the only state touched is
the table's execution counter.

Author: Builder Engine Team
Version: 2.0.0
"""

from __future__ import annotations

import re
from datetime import date, datetime
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import structlog
from pydantic import ValidationError as PydanticValidationError

from exprsn_core.audit import AuditEventType, AuditLog
from exprsn_core.core.errors import (
    DecisionAmbiguous,
    NotFound,
    ValidationError,
    error_kind,
)
from exprsn_core.decisions.base import (
    NULL_TOLERANT,
    ConditionOperator,
    DecisionResult,
    DecisionRule,
    DecisionTable,
    HitPolicy,
    IOType,
    RuleCondition,
    TableStatus,
)
from exprsn_core.exprlang.operators import is_empty_value, is_number, is_numeric_string

logger = structlog.get_logger(__name__)


# =============================================================================
# CONDITION MATCHING
# =============================================================================


def _numeric(value: Any) -> Optional[float]:
    if is_number(value):
        return value
    if is_numeric_string(value):
        return float(value)
    return None


def _compare(actual: Any, expected: Any) -> Optional[int]:
    """-1/0/1 ordering, or None when the values are not comparable"""
    a, b = _numeric(actual), _numeric(expected)
    if a is not None and b is not None:
        return (a > b) - (a < b)
    if isinstance(actual, str) and isinstance(expected, str):
        return (actual > expected) - (actual < expected)
    return None


def _same(actual: Any, expected: Any) -> bool:
    if isinstance(actual, bool) or isinstance(expected, bool):
        return type(actual) is type(expected) and actual == expected
    if actual == expected:
        return True
    return _compare(actual, expected) == 0


def matches_condition(condition: RuleCondition, actual: Any) -> bool:
    """Whether one condition holds for an input value"""
    op = condition.operator
    expected = condition.value

    if actual is None:
        return op in NULL_TOLERANT

    if op == ConditionOperator.EQ:
        return _same(actual, expected)
    if op == ConditionOperator.NE:
        return not _same(actual, expected)

    if op in (ConditionOperator.GT, ConditionOperator.GTE, ConditionOperator.LT, ConditionOperator.LTE):
        order = _compare(actual, expected)
        if order is None:
            return False
        return {
            ConditionOperator.GT: order > 0,
            ConditionOperator.GTE: order >= 0,
            ConditionOperator.LT: order < 0,
            ConditionOperator.LTE: order <= 0,
        }[op]

    if op in (ConditionOperator.CONTAINS, ConditionOperator.NOT_CONTAINS):
        if isinstance(actual, (list, tuple, set)):
            found = any(_same(item, expected) for item in actual)
        else:
            found = str(expected) in str(actual)
        return found if op == ConditionOperator.CONTAINS else not found

    if op == ConditionOperator.STARTS_WITH:
        return str(actual).startswith(str(expected))
    if op == ConditionOperator.ENDS_WITH:
        return str(actual).endswith(str(expected))

    if op in (ConditionOperator.IN, ConditionOperator.NOT_IN):
        members = expected if isinstance(expected, (list, tuple, set)) else [expected]
        found = any(_same(actual, member) for member in members)
        return found if op == ConditionOperator.IN else not found

    if op == ConditionOperator.BETWEEN:
        if not isinstance(expected, (list, tuple)) or len(expected) != 2:
            return False
        low, high = _compare(actual, expected[0]), _compare(actual, expected[1])
        return low is not None and high is not None and low >= 0 and high <= 0

    if op == ConditionOperator.IS_NULL:
        return False
    if op == ConditionOperator.IS_NOT_NULL:
        return True
    if op == ConditionOperator.IS_EMPTY:
        return is_empty_value(actual)
    if op == ConditionOperator.IS_NOT_EMPTY:
        return not is_empty_value(actual)

    if op == ConditionOperator.MATCHES:
        return re.search(str(expected), str(actual)) is not None

    return False


def coerce_input(value: Any, io_type: IOType) -> Any:
    """Coerce an input value by its declared type; unconvertible values pass through"""
    if value is None or io_type == IOType.ANY:
        return value
    if io_type == IOType.NUMBER:
        number = _numeric(value)
        return number if number is not None else value
    if io_type == IOType.BOOLEAN and isinstance(value, str):
        lowered = value.lower()
        if lowered in ("true", "false"):
            return lowered == "true"
    if io_type == IOType.STRING and not isinstance(value, str) and is_number(value):
        return str(value)
    if io_type == IOType.DATE:
        if isinstance(value, datetime):
            return value.date().isoformat()
        if isinstance(value, date):
            return value.isoformat()
    return value


# =============================================================================
# DECISION ENGINE
# =============================================================================


class DecisionEngine:
    """
    Decision table registry and evaluator.

    Usage:
        engine = DecisionEngine(audit=audit_log)
        table = engine.register_table({
            "name": "routing",
            "hit_policy": "first",
            "inputs": [{"name": "priority", "type": "string"}],
            "rules": [
                {"conditions": [{"input": "priority", "operator": "equals", "value": "high"}],
                 "outputs": {"route": "manager"}},
                {"conditions": [], "outputs": {"route": "auto"}},
            ],
        })
        result = engine.evaluate(table.id, {"priority": "high"})
    """

    def __init__(
        self,
        audit: Optional[AuditLog] = None,
        clock: Callable[[], datetime] = datetime.utcnow,
    ):
        self._audit = audit or AuditLog()
        self._clock = clock
        self._tables: Dict[str, DecisionTable] = {}
        self._logger = structlog.get_logger("decision_engine")

    # -------------------------------------------------------------------------
    # Registry
    # -------------------------------------------------------------------------

    def register_table(
        self,
        definition: Union[DecisionTable, Mapping[str, Any]],
        actor: Optional[str] = None,
    ) -> DecisionTable:
        """Validate and store a table"""
        table = self._build(definition)
        table.created_by = table.created_by or actor
        self._validate_table(table)
        self._tables[table.id] = table

        self._audit.record(
            AuditEventType.DECISION_TABLE_REGISTER,
            actor=actor,
            target_ids=[table.id],
            name=table.name,
            hit_policy=table.hit_policy.value,
        )
        self._logger.info("decision_table_registered", table_id=table.id, rules=len(table.rules))
        return table

    def update_table(
        self,
        table_id: str,
        changes: Mapping[str, Any],
        actor: Optional[str] = None,
    ) -> DecisionTable:
        existing = self.get_table(table_id)
        data = existing.model_dump()
        data.update({k: v for k, v in changes.items() if k not in ("id", "created_at", "execution_count")})
        data["updated_at"] = self._clock()
        table = self._build(data)
        self._validate_table(table)
        self._tables[table_id] = table

        self._audit.record(
            AuditEventType.DECISION_TABLE_REGISTER,
            actor=actor,
            target_ids=[table_id],
            name=table.name,
            fields=sorted(changes),
        )
        return table

    def delete_table(self, table_id: str, actor: Optional[str] = None) -> None:
        if self._tables.pop(table_id, None) is None:
            raise NotFound(f"Decision table {table_id} not found")
        self._audit.record(AuditEventType.DECISION_TABLE_DELETE, actor=actor, target_ids=[table_id])

    def get_table(self, table_id: str) -> DecisionTable:
        table = self._tables.get(table_id)
        if table is None:
            raise NotFound(f"Decision table {table_id} not found")
        return table

    def list_tables(self, status: Optional[TableStatus] = None) -> List[DecisionTable]:
        tables = [t for t in self._tables.values() if status is None or t.status == status]
        return sorted(tables, key=lambda t: t.name)

    # -------------------------------------------------------------------------
    # Evaluation
    # -------------------------------------------------------------------------

    def evaluate(
        self,
        table_id: str,
        inputs: Mapping[str, Any],
        actor: Optional[str] = None,
    ) -> DecisionResult:
        """
        Evaluate a table against inputs.

        Raises:
            NotFound: unknown table
            ValidationError: table is not active
            DecisionAmbiguous: ``unique`` or ``any`` constraints violated
        """
        table = self.get_table(table_id)
        try:
            if table.status != TableStatus.ACTIVE:
                raise ValidationError(f"Decision table '{table.name}' must be active to evaluate")
            result = self.evaluate_table(table, inputs)
        except (ValidationError, DecisionAmbiguous) as e:
            self._audit.record(
                AuditEventType.DECISION_EVALUATE,
                actor=actor,
                target_ids=[table_id],
                success=False,
                error_kind=error_kind(e),
            )
            self._logger.warning("decision_evaluation_failed", table_id=table_id, error=str(e))
            raise

        table.execution_count += 1
        self._audit.record(
            AuditEventType.DECISION_EVALUATE,
            actor=actor,
            target_ids=[table_id, *result.matched_rule_ids],
            matched=result.matched,
            used_default=result.used_default,
        )
        self._logger.debug(
            "decision_evaluated",
            table_id=table_id,
            hit_policy=table.hit_policy.value,
            rules_matched=len(result.matched_rule_ids),
        )
        return result

    def evaluate_table(self, table: DecisionTable, inputs: Mapping[str, Any]) -> DecisionResult:
        """Evaluate a table definition without registry bookkeeping"""
        values = {
            name: coerce_input(value, table.input_type(name))
            for name, value in inputs.items()
        }
        rules = table.sorted_rules()
        policy = table.hit_policy

        if policy == HitPolicy.FIRST:
            for rule in rules:
                if self._rule_matches(rule, values):
                    return self._hit(table, [rule])
            return self._miss(table)

        matched = [rule for rule in rules if self._rule_matches(rule, values)]
        if not matched:
            return self._miss(table)

        if policy == HitPolicy.UNIQUE:
            if len(matched) > 1:
                raise DecisionAmbiguous(
                    f"{len(matched)} rules matched decision table '{table.name}' under unique hit policy",
                    table_id=table.id,
                    rule_ids=[r.id for r in matched],
                )
            return self._hit(table, matched)

        if policy == HitPolicy.PRIORITY:
            best = matched[0]
            for rule in matched[1:]:
                if rule.priority > best.priority:
                    best = rule
            return self._hit(table, [best])

        if policy == HitPolicy.ANY:
            first = matched[0]
            disagreeing = [r.id for r in matched[1:] if r.outputs != first.outputs]
            if disagreeing:
                raise DecisionAmbiguous(
                    f"Matching rules of decision table '{table.name}' disagree under any hit policy",
                    table_id=table.id,
                    rule_ids=[first.id, *disagreeing],
                )
            return self._hit(table, [first])

        collected: Dict[str, List[Any]] = {}
        for rule in matched:
            for name, value in rule.outputs.items():
                collected.setdefault(name, []).append(value)
        return DecisionResult(
            table_id=table.id,
            matched=True,
            outputs=collected,
            matched_rule_ids=[r.id for r in matched],
        )

    # -------------------------------------------------------------------------
    # Helpers
    # -------------------------------------------------------------------------

    @staticmethod
    def _rule_matches(rule: DecisionRule, values: Mapping[str, Any]) -> bool:
        return all(matches_condition(c, values.get(c.input)) for c in rule.conditions)

    @staticmethod
    def _hit(table: DecisionTable, rules: List[DecisionRule]) -> DecisionResult:
        return DecisionResult(
            table_id=table.id,
            matched=True,
            outputs=dict(rules[0].outputs),
            matched_rule_ids=[r.id for r in rules],
        )

    @staticmethod
    def _miss(table: DecisionTable) -> DecisionResult:
        if table.default_output is not None:
            return DecisionResult(
                table_id=table.id,
                matched=False,
                outputs=dict(table.default_output),
                used_default=True,
            )
        return DecisionResult(table_id=table.id, matched=False)

    def _build(self, definition: Union[DecisionTable, Mapping[str, Any]]) -> DecisionTable:
        if isinstance(definition, DecisionTable):
            return definition.model_copy(deep=True)
        try:
            return DecisionTable.model_validate(dict(definition))
        except PydanticValidationError as e:
            raise ValidationError(
                "Invalid decision table definition",
                errors=[
                    {"path": ".".join(str(p) for p in err["loc"]), "message": err["msg"]}
                    for err in e.errors()
                ],
            ) from e

    def _validate_table(self, table: DecisionTable) -> None:
        errors: List[Dict[str, str]] = []
        declared = {column.name for column in table.inputs}
        output_names = {column.name for column in table.outputs}

        seen_ids = set()
        for i, rule in enumerate(table.rules):
            if rule.id in seen_ids:
                errors.append({"path": f"rules[{i}].id", "message": f"duplicate rule id '{rule.id}'"})
            seen_ids.add(rule.id)

            for j, condition in enumerate(rule.conditions):
                path = f"rules[{i}].conditions[{j}]"
                if declared and condition.input not in declared:
                    errors.append({"path": path, "message": f"undeclared input '{condition.input}'"})
                if condition.operator == ConditionOperator.MATCHES:
                    try:
                        re.compile(str(condition.value))
                    except re.error as e:
                        errors.append({"path": path, "message": f"invalid pattern: {e}"})
                if condition.operator == ConditionOperator.BETWEEN and (
                    not isinstance(condition.value, list) or len(condition.value) != 2
                ):
                    errors.append({"path": path, "message": "between expects [low, high]"})

            if output_names:
                for name in rule.outputs:
                    if name not in output_names:
                        errors.append({"path": f"rules[{i}].outputs", "message": f"undeclared output '{name}'"})

        if errors:
            raise ValidationError(f"Invalid decision table '{table.name}'", errors=errors)
