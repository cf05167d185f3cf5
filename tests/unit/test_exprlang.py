"""Unit tests for the expression language."""

import copy

import pytest

from exprsn_core.core.errors import EvalError, ValidationError
from exprsn_core.exprlang import (
    ExprEngine,
    evaluate,
    filter_items,
    infer_schema,
    map_items,
    merge_schemas,
    parse_formula,
    query,
    reduce_items,
    references,
    transform,
    validate,
    validate_expression,
)


def op(name, *operands):
    return {"operator": name, "operands": list(operands)}


PRICE_WITH_DISCOUNT_AND_TAX = op(
    "multiply",
    op("subtract", "$base_price", op("multiply", "$base_price", op("divide", "$discount_percent", 100))),
    op("add", 1, op("divide", "$tax_rate", 100)),
)


class TestEvaluation:
    """Tests for expression evaluation."""

    def test_discount_and_tax(self):
        """Test decimal-exact arithmetic over nested operators."""
        context = {"base_price": 100, "discount_percent": 20, "tax_rate": 10}

        assert evaluate(PRICE_WITH_DISCOUNT_AND_TAX, context) == 88

    def test_evaluation_is_deterministic_and_pure(self):
        """Test repeated evaluation gives the same value and leaves context untouched."""
        context = {"base_price": 100, "discount_percent": 20, "tax_rate": 10, "tags": ["a"]}
        before = copy.deepcopy(context)

        first = evaluate(PRICE_WITH_DISCOUNT_AND_TAX, context)
        second = evaluate(PRICE_WITH_DISCOUNT_AND_TAX, context)

        assert first == second
        assert context == before

    def test_literals_pass_through(self):
        assert evaluate(42) == 42
        assert evaluate("plain text") == "plain text"
        assert evaluate(None) is None
        assert evaluate([1, "$x"], {"x": 2}) == [1, 2]

    def test_escaped_dollar(self):
        assert evaluate("$$price") == "$price"

    def test_dotted_variable_paths(self):
        context = {"order": {"lines": [{"sku": "A1"}, {"sku": "B2"}]}}

        assert evaluate("$order.lines.1.sku", context) == "B2"

    def test_unbound_variable(self):
        with pytest.raises(EvalError) as exc_info:
            evaluate("$missing", {})

        assert exc_info.value.kind == "UnboundVariable"

    def test_division_by_zero(self):
        with pytest.raises(EvalError) as exc_info:
            evaluate(op("divide", 1, 0))

        assert exc_info.value.kind == "ArithmeticDomain"

    def test_type_mismatch(self):
        with pytest.raises(EvalError) as exc_info:
            evaluate(op("add", 1, "abc"))

        assert exc_info.value.kind == "TypeMismatch"

    def test_numeric_strings_are_coerced(self):
        assert evaluate(op("add", "2", 3)) == 5
        assert evaluate(op("greaterThan", "10", "9")) is True

    def test_unknown_operator(self):
        with pytest.raises(ValidationError):
            evaluate(op("explode", 1))

    def test_wrong_operand_count(self):
        with pytest.raises(ValidationError):
            evaluate(op("not", True, False))

    def test_modulo_sign_follows_divisor(self):
        assert evaluate(op("modulo", -7, 3)) == 2
        assert evaluate(op("modulo", 7, -3)) == -2

    def test_wide_integers_stay_exact(self):
        """Test that integers beyond the default decimal precision are not rounded."""
        wide = 123456789012345678901234567890

        assert evaluate(op("multiply", wide, 1)) == wide
        assert evaluate(op("add", wide, 1)) == wide + 1
        assert evaluate(op("subtract", wide)) == -wide
        assert evaluate(op("multiply", "$n", 10), {"n": wide}) == wide * 10
        assert evaluate(op("divide", wide * 2, 2)) == wide

    def test_fractions_use_decimal_arithmetic(self):
        assert evaluate(op("add", 0.1, 0.2)) == 0.3
        assert evaluate(op("multiply", 1.1, 3)) == 3.3

    def test_nesting_limit(self):
        """Test that runaway nesting fails as an evaluation error."""
        deep = 1
        for _ in range(5000):
            deep = op("add", deep, 1)

        with pytest.raises(EvalError) as exc_info:
            evaluate(deep)

        assert exc_info.value.kind == "DepthExceeded"
        assert [e["message"] for e in validate_expression(deep)] == ["Expression nesting exceeds 64 levels"]

    def test_nesting_limit_is_configurable(self):
        engine = ExprEngine(max_depth=3)

        assert engine.evaluate(op("add", op("add", 1, 1), 1)) == 3
        with pytest.raises(EvalError):
            engine.evaluate(op("add", op("add", op("add", op("add", 1, 1), 1), 1), 1))


class TestOperators:
    """Tests for the operator catalogue."""

    def test_logical_short_circuit(self):
        """Test that and/or never evaluate operands past the deciding one."""
        assert evaluate(op("and", False, "$missing")) is False
        assert evaluate(op("or", True, "$missing")) is True

    def test_if_picks_branch_lazily(self):
        assert evaluate(op("if", op("greaterThan", "$n", 5), "big", "$missing"), {"n": 9}) == "big"
        assert evaluate(op("if", False, "yes")) is None

    def test_string_operators(self):
        assert evaluate(op("concat", "a", 1, True, None)) == "a1true"
        assert evaluate(op("upper", "abc")) == "ABC"
        assert evaluate(op("trim", "  x  ")) == "x"
        assert evaluate(op("length", "hello")) == 5
        assert evaluate(op("substring", "workflow", 4, 4)) == "flow"

    def test_aggregates(self):
        assert evaluate(op("sum", [1, 2, 3.5])) == 6.5
        assert evaluate(op("avg", [2, 4])) == 3
        assert evaluate(op("min", [3, 1, 2])) == 1
        assert evaluate(op("max", "b", "a")) == "b"
        assert evaluate(op("count", [1, 2, 3])) == 3

    def test_avg_of_empty_collection(self):
        with pytest.raises(EvalError) as exc_info:
            evaluate(op("avg", []))

        assert exc_info.value.kind == "ArithmeticDomain"

    def test_membership(self):
        assert evaluate(op("in", "b", ["a", "b"])) is True
        assert evaluate(op("notIn", 3, [1, 2])) is True
        assert evaluate(op("in", "ell", "hello")) is True
        assert evaluate(op("between", 5, 1, 10)) is True

    def test_existence_tolerates_unbound(self):
        assert evaluate(op("isNull", "$missing")) is True
        assert evaluate(op("isEmpty", "$items"), {"items": []}) is True

    def test_matches(self):
        assert evaluate(op("matches", "Order-42", "^order-\\d+$", "i")) is True

    def test_invalid_pattern(self):
        with pytest.raises(EvalError) as exc_info:
            evaluate(op("matches", "x", "("))

        assert exc_info.value.kind == "PatternError"

    def test_literal_is_not_evaluated(self):
        assert evaluate(op("literal", {"operator": "add", "operands": [1, 2]})) == {
            "operator": "add",
            "operands": [1, 2],
        }

    def test_field_with_default(self):
        assert evaluate(op("field", "user.name"), {"user": {"name": "Ada"}}) == "Ada"
        assert evaluate(op("field", "user.nick", "n/a"), {"user": {"nick": None}}) == "n/a"

    def test_custom_operator(self):
        """Test registering an operator on an engine-local registry."""
        engine = ExprEngine()
        engine.registry.register("double", lambda args: args[0] * 2, min_operands=1, max_operands=1)

        assert engine.evaluate(op("double", "$x"), {"x": 21}) == 42
        with pytest.raises(ValidationError):
            engine.registry.register("double", lambda args: args[0])


class TestStaticAnalysis:
    """Tests for validation and reference extraction."""

    def test_validate_expression_reports_paths(self):
        errors = validate_expression(op("add", 1, op("nope", 2)))

        assert len(errors) == 1
        assert errors[0]["path"] == "$.operands[1]"

    def test_validate_expression_checks_arity(self):
        errors = validate_expression(op("equals", 1))

        assert errors and "at least 2" in errors[0]["message"]

    def test_references(self):
        expression = op("add", "$a", op("field", "b.c"), op("literal", "$ignored"), "$$escaped")

        assert references(expression) == {"a", "b.c"}


class TestFormula:
    """Tests for the infix formula parser."""

    def test_precedence(self):
        expression = parse_formula("$price * (1 + $tax / 100)")

        assert evaluate(expression, {"price": 200, "tax": 10}) == 220

    def test_function_calls_and_strings(self):
        expression = parse_formula("if($qty > 10, 'bulk', 'retail')")

        assert evaluate(expression, {"qty": 12}) == "bulk"
        assert evaluate(expression, {"qty": 2}) == "retail"

    def test_logical_keywords(self):
        expression = parse_formula("$a == 1 and not $b")

        assert evaluate(expression, {"a": 1, "b": False}) is True

    def test_empty_formula(self):
        with pytest.raises(ValidationError):
            parse_formula("   ")


class TestSchema:
    """Tests for schema validation and inference."""

    SAMPLE = {
        "id": 7,
        "name": "Widget",
        "price": 9.5,
        "tags": ["a", "b"],
        "owner": None,
        "dims": {"w": 1, "h": 2},
    }

    def test_inferred_schema_validates_sample(self):
        result = validate(self.SAMPLE, infer_schema(self.SAMPLE))

        assert result.valid
        assert result.errors == []

    def test_inferred_schema_shape(self):
        schema = infer_schema(self.SAMPLE)

        assert schema["type"] == "object"
        assert schema["properties"]["id"] == {"type": "integer"}
        assert "owner" not in schema["required"]

    def test_validation_errors(self):
        schema = {
            "type": "object",
            "required": ["name"],
            "properties": {"age": {"type": "integer", "minimum": 0}},
            "additionalProperties": False,
        }

        result = validate({"age": -1, "extra": True}, schema)

        assert not result.valid
        paths = {error["path"] for error in result.errors}
        assert paths == {"$.name", "$.age", "$.extra"}

    def test_raise_for_errors(self):
        result = validate("x", {"type": "number"})

        with pytest.raises(ValidationError):
            result.raise_for_errors()

    def test_merge_schemas_unions_types(self):
        merged = merge_schemas(infer_schema({"a": 1}), infer_schema({"a": "x", "b": True}))

        assert set(merged["properties"]["a"]["type"]) == {"string", "integer"}
        assert merged["required"] == ["a"]


class TestTransform:
    """Tests for document transformations."""

    ITEMS = [{"sku": "A", "qty": 2}, {"sku": "B", "qty": 0}, {"sku": "C", "qty": 5}]

    def test_filter_map_reduce(self):
        in_stock = filter_items(self.ITEMS, op("greaterThan", "$qty", 0))
        skus = map_items(in_stock, "$sku")
        total = reduce_items(self.ITEMS, op("add", "$acc", "$qty"), initial=0)

        assert skus == ["A", "C"]
        assert total == 7

    def test_transform_template(self):
        result = transform({"first": "Ada", "last": "Lovelace"}, {"full": op("concat", "$first", " ", "$last")})

        assert result == {"full": "Ada Lovelace"}

    def test_query_wildcard(self):
        assert query({"items": self.ITEMS}, "items[*].sku") == ["A", "B", "C"]
        assert query({"items": self.ITEMS}, "items[5].sku", default="none") == "none"

    def test_inputs_are_not_mutated(self):
        items = copy.deepcopy(self.ITEMS)

        map_items(items, op("multiply", "$qty", 10))

        assert items == self.ITEMS
