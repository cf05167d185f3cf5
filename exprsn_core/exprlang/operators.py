"""
ExprLang Operators
==================

Operator registry and the built-in operator catalogue:

- Arithmetic: add, subtract, multiply, divide, modulo
- Comparison: equals, notEquals, greaterThan, greaterThanOrEqual,
  lessThan, lessThanOrEqual
- Logical: and, or, not
- Conditional: if
- String: concat, upper, lower, trim, length, substring
- Aggregate: sum, avg, min, max, count
- Membership: in, notIn, between
- Existence: isNull, isEmpty
- Pattern: matches
- Structural: literal, field

Arithmetic is carried out in decimal so that results such as
``100 * (1 + 10 / 100)`` come out exact, then narrowed back to int or float.

Author: Builder Engine Team
Version: 2.0.0
"""

from __future__ import annotations

import copy
import json
import re
from dataclasses import dataclass
from decimal import Decimal, DivisionByZero, InvalidOperation, localcontext
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Union

from exprsn_core.core.errors import EvalError, EvalErrorKind, ValidationError

Number = Union[int, float]

OPERATOR_KEY = "operator"
OPERANDS_KEY = "operands"

_NUMERIC_RE = re.compile(r"^[+-]?(\d+(\.\d*)?|\.\d+)([eE][+-]?\d+)?$")
_MISSING = object()


# =============================================================================
# REGISTRY
# =============================================================================


@dataclass(frozen=True)
class OperatorSpec:
    """
    A registered operator.

    Eager operators receive their evaluated operands as a list. Lazy
    operators receive ``(operands, evaluate, context)`` and decide which
    operands to evaluate themselves.
    """

    name: str
    func: Callable[..., Any]
    lazy: bool = False
    min_operands: int = 0
    max_operands: Optional[int] = None

    def check_arity(self, count: int) -> Optional[str]:
        if count < self.min_operands:
            return f"operator '{self.name}' expects at least {self.min_operands} operand(s), got {count}"
        if self.max_operands is not None and count > self.max_operands:
            return f"operator '{self.name}' expects at most {self.max_operands} operand(s), got {count}"
        return None


class OperatorRegistry:
    """Name → operator mapping. Names are case-sensitive."""

    def __init__(self, operators: Optional[Iterable[OperatorSpec]] = None):
        self._operators: Dict[str, OperatorSpec] = {}
        for spec in operators or ():
            self._operators[spec.name] = spec

    @classmethod
    def default(cls) -> "OperatorRegistry":
        """Registry pre-loaded with the built-in catalogue"""
        return cls(BUILTIN_OPERATORS)

    def register(
        self,
        name: str,
        func: Callable[..., Any],
        lazy: bool = False,
        min_operands: int = 0,
        max_operands: Optional[int] = None,
        replace: bool = False,
    ) -> None:
        """Register an additional operator"""
        if not name or not isinstance(name, str):
            raise ValidationError("Operator name must be a non-empty string")
        if name in self._operators and not replace:
            raise ValidationError(f"Operator '{name}' is already registered")
        self._operators[name] = OperatorSpec(name, func, lazy, min_operands, max_operands)

    def unregister(self, name: str) -> bool:
        return self._operators.pop(name, None) is not None

    def get(self, name: str) -> Optional[OperatorSpec]:
        return self._operators.get(name)

    def __contains__(self, name: object) -> bool:
        return name in self._operators

    def names(self) -> List[str]:
        return sorted(self._operators)

    def copy(self) -> "OperatorRegistry":
        return OperatorRegistry(self._operators.values())


# =============================================================================
# VALUE HELPERS
# =============================================================================


def type_name(value: Any) -> str:
    """JSON-ish type label used in error messages"""
    if value is None:
        return "null"
    if isinstance(value, bool):
        return "boolean"
    if isinstance(value, (int, float)):
        return "number"
    if isinstance(value, str):
        return "string"
    if isinstance(value, list):
        return "array"
    if isinstance(value, dict):
        return "object"
    return type(value).__name__


def is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def is_numeric_string(value: Any) -> bool:
    return isinstance(value, str) and bool(_NUMERIC_RE.match(value.strip()))


def to_number(value: Any, op: str) -> Number:
    """Number, or numeric-looking string coerced to a number"""
    if is_number(value):
        return value
    if is_numeric_string(value):
        text = value.strip()
        if any(c in text for c in ".eE"):
            return float(text)
        return int(text)
    raise EvalError(
        EvalErrorKind.TYPE_MISMATCH,
        f"{op}: expected a number, got {type_name(value)}",
        operator=op,
    )


def _to_decimal(value: Number) -> Decimal:
    if isinstance(value, float):
        return Decimal(repr(value))
    return Decimal(value)


def _from_decimal(value: Decimal) -> Number:
    if value.is_finite() and value == value.to_integral_value():
        return int(value)
    return float(value)


def resolve_path(context: Mapping[str, Any], path: str) -> Any:
    """
    Resolve a variable name against the context.

    The full name is tried first; otherwise it is split on dots and each
    segment indexes into mappings (by key) or sequences (by integer index).
    """
    if path in context:
        return context[path]

    segments = path.split(".")
    current: Any = context.get(segments[0], _MISSING) if isinstance(context, Mapping) else _MISSING
    if current is _MISSING:
        raise EvalError(
            EvalErrorKind.UNBOUND_VARIABLE,
            f"Undefined variable: ${path}",
            variable=path,
        )

    for segment in segments[1:]:
        if isinstance(current, Mapping) and segment in current:
            current = current[segment]
        elif isinstance(current, list) and segment.lstrip("-").isdigit():
            index = int(segment)
            if -len(current) <= index < len(current):
                current = current[index]
            else:
                raise EvalError(
                    EvalErrorKind.UNBOUND_VARIABLE,
                    f"Index {index} out of range in ${path}",
                    variable=path,
                )
        else:
            raise EvalError(
                EvalErrorKind.UNBOUND_VARIABLE,
                f"Undefined variable: ${path}",
                variable=path,
            )
    return current


def stringify(value: Any) -> str:
    """String form used by concat"""
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    if isinstance(value, (list, dict)):
        return json.dumps(value, sort_keys=True, separators=(",", ":"))
    return str(value)


def loose_equals(a: Any, b: Any) -> bool:
    """Equality that never raises; type-mismatched values are unequal"""
    try:
        return _equals(a, b, "in")
    except EvalError:
        return False


def _equals(a: Any, b: Any, op: str) -> bool:
    if a is None or b is None:
        return a is None and b is None
    if is_number(a) or is_number(b):
        return to_number(a, op) == to_number(b, op)
    if isinstance(a, str) and isinstance(b, str):
        return a == b
    if isinstance(a, bool) and isinstance(b, bool):
        return a == b
    if isinstance(a, list) and isinstance(b, list):
        return a == b
    if isinstance(a, dict) and isinstance(b, dict):
        return a == b
    raise EvalError(
        EvalErrorKind.TYPE_MISMATCH,
        f"{op}: cannot compare {type_name(a)} with {type_name(b)}",
        operator=op,
    )


def _ordering_pair(a: Any, b: Any, op: str) -> tuple:
    if is_number(a) or is_number(b):
        return to_number(a, op), to_number(b, op)
    if isinstance(a, str) and isinstance(b, str):
        if is_numeric_string(a) and is_numeric_string(b):
            return to_number(a, op), to_number(b, op)
        return a, b
    raise EvalError(
        EvalErrorKind.TYPE_MISMATCH,
        f"{op}: cannot order {type_name(a)} and {type_name(b)}",
        operator=op,
    )


def _items(args: List[Any]) -> List[Any]:
    """Aggregate operands: a single array operand, or a flat list of scalars"""
    items: List[Any] = []
    for arg in args:
        if isinstance(arg, list):
            items.extend(arg)
        else:
            items.append(arg)
    return items


# =============================================================================
# ARITHMETIC
# =============================================================================


def _arith(
    op: str,
    args: List[Any],
    fold: Callable[[Decimal, Decimal], Decimal],
    int_fold: Optional[Callable[[int, int], int]] = None,
) -> Number:
    values = [to_number(a, op) for a in args]
    if int_fold is not None and all(isinstance(v, int) for v in values):
        exact = values[0]
        for n in values[1:]:
            exact = int_fold(exact, n)
        return exact

    numbers = [_to_decimal(v) for v in values]
    digits = max(len(n.as_tuple().digits) for n in numbers)
    try:
        with localcontext() as ctx:
            ctx.prec = max(ctx.prec, 2 * digits + 2)
            result = numbers[0]
            for n in numbers[1:]:
                result = fold(result, n)
    except (DivisionByZero, InvalidOperation) as e:
        raise EvalError(EvalErrorKind.ARITHMETIC_DOMAIN, f"{op}: {e!r}", operator=op) from e
    return _from_decimal(result)


def op_add(args: List[Any]) -> Number:
    if not args:
        return 0
    return _arith("add", args, lambda x, y: x + y, lambda x, y: x + y)


def op_subtract(args: List[Any]) -> Number:
    if len(args) == 1:
        value = to_number(args[0], "subtract")
        return -value if isinstance(value, int) else _from_decimal(-_to_decimal(value))
    return _arith("subtract", args, lambda x, y: x - y, lambda x, y: x - y)


def op_multiply(args: List[Any]) -> Number:
    if not args:
        return 1
    return _arith("multiply", args, lambda x, y: x * y, lambda x, y: x * y)


def _check_divisors(op: str, args: List[Any]) -> None:
    for divisor in args[1:]:
        if to_number(divisor, op) == 0:
            raise EvalError(EvalErrorKind.ARITHMETIC_DOMAIN, f"{op}: division by zero", operator=op)


def op_divide(args: List[Any]) -> Number:
    _check_divisors("divide", args)
    return _arith("divide", args, lambda x, y: x / y)


def op_modulo(args: List[Any]) -> Number:
    _check_divisors("modulo", args)
    # Sign follows the divisor
    return _arith(
        "modulo",
        args,
        lambda x, y: x - y * (x / y).to_integral_value(rounding="ROUND_FLOOR"),
        lambda x, y: x % y,
    )


# =============================================================================
# COMPARISON
# =============================================================================


def op_equals(args: List[Any]) -> bool:
    return _equals(args[0], args[1], "equals")


def op_not_equals(args: List[Any]) -> bool:
    return not _equals(args[0], args[1], "notEquals")


def _ordering(op: str, test: Callable[[Any, Any], bool]) -> Callable[[List[Any]], bool]:
    def compare(args: List[Any]) -> bool:
        a, b = _ordering_pair(args[0], args[1], op)
        return test(a, b)

    return compare


# =============================================================================
# LOGICAL / CONDITIONAL (lazy)
# =============================================================================


def op_and(operands: List[Any], evaluate: Callable[[Any], Any], context: Mapping) -> bool:
    for operand in operands:
        if not evaluate(operand):
            return False
    return True


def op_or(operands: List[Any], evaluate: Callable[[Any], Any], context: Mapping) -> bool:
    for operand in operands:
        if evaluate(operand):
            return True
    return False


def op_not(args: List[Any]) -> bool:
    return not args[0]


def op_if(operands: List[Any], evaluate: Callable[[Any], Any], context: Mapping) -> Any:
    if evaluate(operands[0]):
        return evaluate(operands[1])
    if len(operands) > 2:
        return evaluate(operands[2])
    return None


# =============================================================================
# STRING
# =============================================================================


def op_concat(args: List[Any]) -> str:
    return "".join(stringify(a) for a in args)


def _require_string(value: Any, op: str) -> str:
    if not isinstance(value, str):
        raise EvalError(
            EvalErrorKind.TYPE_MISMATCH,
            f"{op}: expected a string, got {type_name(value)}",
            operator=op,
        )
    return value


def op_upper(args: List[Any]) -> str:
    return _require_string(args[0], "upper").upper()


def op_lower(args: List[Any]) -> str:
    return _require_string(args[0], "lower").lower()


def op_trim(args: List[Any]) -> str:
    return _require_string(args[0], "trim").strip()


def op_length(args: List[Any]) -> int:
    value = args[0]
    if value is None:
        return 0
    if isinstance(value, (str, list, dict)):
        return len(value)
    raise EvalError(
        EvalErrorKind.TYPE_MISMATCH,
        f"length: expected string or array, got {type_name(value)}",
        operator="length",
    )


def op_substring(args: List[Any]) -> str:
    text = _require_string(args[0], "substring")
    start = int(to_number(args[1], "substring"))
    if len(args) > 2 and args[2] is not None:
        length = int(to_number(args[2], "substring"))
        return text[start:start + max(length, 0)]
    return text[start:]


# =============================================================================
# AGGREGATE
# =============================================================================


def op_sum(args: List[Any]) -> Number:
    items = _items(args)
    if not items:
        return 0
    return _arith("sum", items, lambda x, y: x + y)


def op_avg(args: List[Any]) -> Number:
    items = _items(args)
    if not items:
        raise EvalError(EvalErrorKind.ARITHMETIC_DOMAIN, "avg: empty collection", operator="avg")
    total = _to_decimal(op_sum(items))
    return _from_decimal(total / Decimal(len(items)))


def _extreme(op: str, args: List[Any], pick: Callable[[List[Any]], Any]) -> Any:
    items = _items(args)
    if not items:
        raise EvalError(EvalErrorKind.ARITHMETIC_DOMAIN, f"{op}: empty collection", operator=op)
    if all(isinstance(i, str) and not is_numeric_string(i) for i in items):
        return pick(items)
    return pick([to_number(i, op) for i in items])


def op_min(args: List[Any]) -> Any:
    return _extreme("min", args, min)


def op_max(args: List[Any]) -> Any:
    return _extreme("max", args, max)


def op_count(args: List[Any]) -> int:
    return len(_items(args))


# =============================================================================
# MEMBERSHIP / EXISTENCE / PATTERN
# =============================================================================


def op_in(args: List[Any]) -> bool:
    needle, haystack = args[0], args[1]
    if isinstance(haystack, list):
        return any(loose_equals(needle, item) for item in haystack)
    if isinstance(haystack, str):
        if needle is None:
            return False
        if is_number(needle):
            needle = stringify(needle)
        return _require_string(needle, "in") in haystack
    if isinstance(haystack, dict):
        return isinstance(needle, str) and needle in haystack
    raise EvalError(
        EvalErrorKind.TYPE_MISMATCH,
        f"in: expected array, string or object, got {type_name(haystack)}",
        operator="in",
    )


def op_not_in(args: List[Any]) -> bool:
    return not op_in(args)


def op_between(args: List[Any]) -> bool:
    value, low, high = args[0], args[1], args[2]
    v, lo = _ordering_pair(value, low, "between")
    v2, hi = _ordering_pair(value, high, "between")
    return lo <= v and v2 <= hi


def _tolerant(operand: Any, evaluate: Callable[[Any], Any]) -> Any:
    try:
        return evaluate(operand)
    except EvalError as e:
        if e.kind == EvalErrorKind.UNBOUND_VARIABLE.value:
            return None
        raise


def op_is_null(operands: List[Any], evaluate: Callable[[Any], Any], context: Mapping) -> bool:
    return _tolerant(operands[0], evaluate) is None


def is_empty_value(value: Any) -> bool:
    return value is None or (isinstance(value, (str, list, dict)) and len(value) == 0)


def op_is_empty(operands: List[Any], evaluate: Callable[[Any], Any], context: Mapping) -> bool:
    return is_empty_value(_tolerant(operands[0], evaluate))


_REGEX_FLAGS = {"i": re.IGNORECASE, "m": re.MULTILINE, "s": re.DOTALL, "x": re.VERBOSE}


def compile_pattern(pattern: Any, flags: Any = None) -> "re.Pattern[str]":
    """Compile a user pattern; failures map to PatternError"""
    if not isinstance(pattern, str):
        raise EvalError(
            EvalErrorKind.TYPE_MISMATCH,
            f"matches: pattern must be a string, got {type_name(pattern)}",
            operator="matches",
        )
    bits = 0
    for flag in flags or "":
        if flag not in _REGEX_FLAGS:
            raise EvalError(EvalErrorKind.PATTERN_ERROR, f"Unknown regex flag: {flag}")
        bits |= _REGEX_FLAGS[flag]
    try:
        return re.compile(pattern, bits)
    except re.error as e:
        raise EvalError(EvalErrorKind.PATTERN_ERROR, f"Invalid pattern {pattern!r}: {e}") from e


def op_matches(args: List[Any]) -> bool:
    value = args[0]
    regex = compile_pattern(args[1], args[2] if len(args) > 2 else None)
    if value is None:
        return False
    if is_number(value):
        value = stringify(value)
    return regex.search(_require_string(value, "matches")) is not None


# =============================================================================
# STRUCTURAL (lazy)
# =============================================================================


def op_literal(operands: List[Any], evaluate: Callable[[Any], Any], context: Mapping) -> Any:
    return copy.deepcopy(operands[0])


def op_field(operands: List[Any], evaluate: Callable[[Any], Any], context: Mapping) -> Any:
    path = evaluate(operands[0])
    if not isinstance(path, str):
        raise EvalError(
            EvalErrorKind.TYPE_MISMATCH,
            f"field: path must be a string, got {type_name(path)}",
            operator="field",
        )
    value = resolve_path(context, path.lstrip("$"))
    if len(operands) > 1 and value is None:
        return evaluate(operands[1])
    return copy.deepcopy(value)


# =============================================================================
# CATALOGUE
# =============================================================================


BUILTIN_OPERATORS: List[OperatorSpec] = [
    # Arithmetic
    OperatorSpec("add", op_add),
    OperatorSpec("subtract", op_subtract, min_operands=1),
    OperatorSpec("multiply", op_multiply),
    OperatorSpec("divide", op_divide, min_operands=2),
    OperatorSpec("modulo", op_modulo, min_operands=2, max_operands=2),
    # Comparison
    OperatorSpec("equals", op_equals, min_operands=2, max_operands=2),
    OperatorSpec("notEquals", op_not_equals, min_operands=2, max_operands=2),
    OperatorSpec("greaterThan", _ordering("greaterThan", lambda a, b: a > b), min_operands=2, max_operands=2),
    OperatorSpec("greaterThanOrEqual", _ordering("greaterThanOrEqual", lambda a, b: a >= b), min_operands=2, max_operands=2),
    OperatorSpec("lessThan", _ordering("lessThan", lambda a, b: a < b), min_operands=2, max_operands=2),
    OperatorSpec("lessThanOrEqual", _ordering("lessThanOrEqual", lambda a, b: a <= b), min_operands=2, max_operands=2),
    # Logical
    OperatorSpec("and", op_and, lazy=True),
    OperatorSpec("or", op_or, lazy=True),
    OperatorSpec("not", op_not, min_operands=1, max_operands=1),
    # Conditional
    OperatorSpec("if", op_if, lazy=True, min_operands=2, max_operands=3),
    # String
    OperatorSpec("concat", op_concat),
    OperatorSpec("upper", op_upper, min_operands=1, max_operands=1),
    OperatorSpec("lower", op_lower, min_operands=1, max_operands=1),
    OperatorSpec("trim", op_trim, min_operands=1, max_operands=1),
    OperatorSpec("length", op_length, min_operands=1, max_operands=1),
    OperatorSpec("substring", op_substring, min_operands=2, max_operands=3),
    # Aggregate
    OperatorSpec("sum", op_sum),
    OperatorSpec("avg", op_avg, min_operands=1),
    OperatorSpec("min", op_min, min_operands=1),
    OperatorSpec("max", op_max, min_operands=1),
    OperatorSpec("count", op_count),
    # Membership
    OperatorSpec("in", op_in, min_operands=2, max_operands=2),
    OperatorSpec("notIn", op_not_in, min_operands=2, max_operands=2),
    OperatorSpec("between", op_between, min_operands=3, max_operands=3),
    # Existence
    OperatorSpec("isNull", op_is_null, lazy=True, min_operands=1, max_operands=1),
    OperatorSpec("isEmpty", op_is_empty, lazy=True, min_operands=1, max_operands=1),
    # Pattern
    OperatorSpec("matches", op_matches, min_operands=2, max_operands=3),
    # Structural
    OperatorSpec("literal", op_literal, lazy=True, min_operands=1, max_operands=1),
    OperatorSpec("field", op_field, lazy=True, min_operands=1, max_operands=2),
]
