"""Unit tests for decision tables."""

import pytest

from exprsn_core.audit import AuditEventType
from exprsn_core.core.errors import DecisionAmbiguous, NotFound, ValidationError
from exprsn_core.decisions import ConditionOperator, HitPolicy, TableStatus


@pytest.fixture
def routing_table():
    return {
        "name": "routing",
        "hit_policy": "first",
        "inputs": [{"name": "priority", "type": "string"}],
        "rules": [
            {"cond": [{"input": "priority", "op": "equals", "value": "urgent"}], "out": {"route": "manager"}},
            {"cond": [{"input": "priority", "op": "equals", "value": "high"}], "out": {"route": "manager"}},
            {"cond": [], "out": {"route": "auto"}},
        ],
    }


def amount_table(policy, **extra):
    return {
        "name": f"amounts-{policy}",
        "hit_policy": policy,
        "inputs": [{"name": "amount", "type": "number"}],
        "rules": [
            {"id": "small", "priority": 1, "conditions": [{"input": "amount", "operator": "<", "value": 100}], "outputs": {"tier": "small"}},
            {"id": "any", "priority": 5, "conditions": [{"input": "amount", "operator": ">=", "value": 0}], "outputs": {"tier": "standard"}},
            {"id": "large", "priority": 3, "conditions": [{"input": "amount", "operator": "between", "value": [1000, 5000]}], "outputs": {"tier": "large"}},
        ],
        **extra,
    }


class TestHitPolicies:
    """Tests for rule selection under each hit policy."""

    def test_first_policy_routes(self, decisions, routing_table):
        """Test that the first matching rule in priority order wins."""
        table = decisions.register_table(routing_table, actor="u1")

        high = decisions.evaluate(table.id, {"priority": "high"})
        low = decisions.evaluate(table.id, {"priority": "low"})

        assert high.matched is True
        assert high.outputs == {"route": "manager"}
        assert low.matched is True
        assert low.outputs == {"route": "auto"}

    def test_aliases_are_normalized(self, decisions, routing_table):
        table = decisions.register_table(routing_table)

        condition = table.rules[0].conditions[0]
        assert condition.input == "priority"
        assert condition.operator == ConditionOperator.EQ

    def test_unique_with_overlap_is_ambiguous(self, decisions, audit):
        """Test that unique never returns partial outputs when rules overlap."""
        table = decisions.register_table(amount_table("unique"))

        with pytest.raises(DecisionAmbiguous) as exc_info:
            decisions.evaluate(table.id, {"amount": 50})

        assert set(exc_info.value.rule_ids) == {"small", "any"}
        failures = audit.query(AuditEventType.DECISION_EVALUATE, success=False)
        assert failures[-1].error_kind == "DecisionAmbiguous"

    def test_unique_with_single_match(self, decisions):
        table = decisions.register_table(amount_table("unique"))

        result = decisions.evaluate(table.id, {"amount": 500})

        assert result.outputs == {"tier": "standard"}
        assert result.matched_rule_ids == ["any"]

    def test_priority_picks_highest(self, decisions):
        table = decisions.register_table(amount_table("priority"))

        result = decisions.evaluate(table.id, {"amount": "2000"})

        assert result.outputs == {"tier": "standard"}

    def test_first_respects_ascending_priority(self, decisions):
        table = decisions.register_table(amount_table("first"))

        result = decisions.evaluate(table.id, {"amount": 2000})

        assert result.outputs == {"tier": "large"}

    def test_any_requires_agreement(self, decisions):
        table = decisions.register_table(amount_table("any"))

        with pytest.raises(DecisionAmbiguous):
            decisions.evaluate(table.id, {"amount": 50})

    def test_any_with_equal_outputs(self, decisions):
        table = decisions.register_table(
            {
                "name": "flags",
                "hit_policy": HitPolicy.ANY,
                "rules": [
                    {"conditions": [{"input": "vip", "operator": "==", "value": True}], "outputs": {"flag": "review"}},
                    {"conditions": [{"input": "score", "operator": ">", "value": 80}], "outputs": {"flag": "review"}},
                ],
            }
        )

        result = decisions.evaluate(table.id, {"vip": True, "score": 90})

        assert result.outputs == {"flag": "review"}
        assert len(result.matched_rule_ids) == 2

    def test_collect_gathers_all_outputs(self, decisions):
        table = decisions.register_table(amount_table("collect"))

        result = decisions.evaluate(table.id, {"amount": 50})

        assert result.outputs == {"tier": ["small", "standard"]}
        assert result.matched_rule_ids == ["small", "any"]


class TestConditionMatching:
    """Tests for value comparison inside conditions."""

    @pytest.mark.parametrize(
        "operator,value,actual,matched",
        [
            ("==", 1, True, False),
            ("==", True, 1, False),
            ("==", 0, False, False),
            ("==", True, True, True),
            ("!=", 1, True, True),
            ("in", [1, 2], True, False),
            ("contains", 1, [True], False),
            ("contains", True, [True], True),
            ("==", 1, "1", True),
        ],
    )
    def test_booleans_never_equal_numbers(self, decisions, operator, value, actual, matched):
        table = decisions.register_table(
            {
                "name": "flags",
                "rules": [{"conditions": [{"input": "flag", "operator": operator, "value": value}], "outputs": {"hit": True}}],
            }
        )

        result = decisions.evaluate(table.id, {"flag": actual})

        assert result.matched is matched


class TestDefaultsAndLifecycle:
    """Tests for misses, table status and validation."""

    def test_miss_uses_default_output(self, decisions):
        table = decisions.register_table(
            {
                "name": "fallback",
                "rules": [{"conditions": [{"input": "country", "operator": "in", "value": ["DE", "FR"]}], "outputs": {"vat": 20}}],
                "default_output": {"vat": 0},
            }
        )

        result = decisions.evaluate(table.id, {"country": "US"})

        assert result.matched is False
        assert result.used_default is True
        assert result.outputs == {"vat": 0}

    def test_miss_without_default(self, decisions):
        table = decisions.register_table({"name": "strict", "rules": [{"conditions": [{"input": "x", "operator": "is_null"}], "outputs": {"y": 1}}]})

        result = decisions.evaluate(table.id, {"x": 3})

        assert result.matched is False
        assert result.outputs == {}

    def test_inactive_table_cannot_evaluate(self, decisions, routing_table):
        table = decisions.register_table({**routing_table, "status": "draft"})

        with pytest.raises(ValidationError):
            decisions.evaluate(table.id, {"priority": "high"})

        decisions.update_table(table.id, {"status": TableStatus.ACTIVE})
        assert decisions.evaluate(table.id, {"priority": "high"}).matched

    def test_undeclared_input_rejected(self, decisions, routing_table):
        routing_table["rules"].append({"conditions": [{"input": "region", "operator": "==", "value": "eu"}], "outputs": {"route": "eu"}})

        with pytest.raises(ValidationError) as exc_info:
            decisions.register_table(routing_table)

        assert "undeclared input" in exc_info.value.errors[0]["message"]

    def test_bad_between_value_rejected(self, decisions):
        with pytest.raises(ValidationError):
            decisions.register_table(
                {"name": "bad", "rules": [{"conditions": [{"input": "n", "operator": "between", "value": 5}], "outputs": {}}]}
            )

    def test_duplicate_rule_ids_rejected(self, decisions):
        with pytest.raises(ValidationError):
            decisions.register_table(
                {"name": "dupes", "rules": [{"id": "r1", "outputs": {"a": 1}}, {"id": "r1", "outputs": {"a": 2}}]}
            )

    def test_delete_table(self, decisions, routing_table):
        table = decisions.register_table(routing_table)

        decisions.delete_table(table.id)

        with pytest.raises(NotFound):
            decisions.evaluate(table.id, {"priority": "high"})
        assert decisions.list_tables() == []

    def test_execution_count(self, decisions, routing_table):
        table = decisions.register_table(routing_table)

        decisions.evaluate(table.id, {"priority": "urgent"})
        decisions.evaluate(table.id, {"priority": "low"})

        assert decisions.get_table(table.id).execution_count == 2
