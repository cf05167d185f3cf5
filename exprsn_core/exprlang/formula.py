"""
Infix formula parser.

Turns spreadsheet-style formulas into ExprLang documents:

    parse_formula("$price * (1 + $tax / 100)")
    parse_formula("if($qty > 10, 'bulk', 'retail')")

Grammar (lowest to highest precedence): ``or``, ``and``, comparisons
(``== != > >= < <=``), ``+ -``, ``* / %``, unary ``- not``, primaries
(numbers, quoted strings, ``true``/``false``/``null``, ``$vars``,
``name(args)`` calls, parentheses).
"""

from __future__ import annotations

import re
from typing import Any, List, Optional, Tuple

from exprsn_core.core.errors import ValidationError

_TOKEN_RE = re.compile(
    r"""
    \s*(?:
        (?P<number>\d+\.\d*|\.\d+|\d+)
      | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
      | (?P<variable>\$[A-Za-z_][\w.]*)
      | (?P<name>[A-Za-z_]\w*)
      | (?P<op>==|!=|>=|<=|&&|\|\||[-+*/%()<>,!])
    )
    """,
    re.VERBOSE,
)

_BINARY = {
    "+": "add",
    "-": "subtract",
    "*": "multiply",
    "/": "divide",
    "%": "modulo",
    "==": "equals",
    "!=": "notEquals",
    ">": "greaterThan",
    ">=": "greaterThanOrEqual",
    "<": "lessThan",
    "<=": "lessThanOrEqual",
}

_KEYWORDS = {"true": True, "false": False, "null": None}

Token = Tuple[str, str]


def _tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    position = 0
    text = text.rstrip()
    while position < len(text):
        match = _TOKEN_RE.match(text, position)
        if not match or match.end() == position:
            raise ValidationError(f"Unexpected character at {position} in formula: {text[position:]!r}")
        kind = match.lastgroup or ""
        tokens.append((kind, match.group(kind)))
        position = match.end()
    return tokens


class _Parser:
    def __init__(self, tokens: List[Token]):
        self.tokens = tokens
        self.index = 0

    def peek(self) -> Optional[Token]:
        return self.tokens[self.index] if self.index < len(self.tokens) else None

    def take(self) -> Token:
        token = self.peek()
        if token is None:
            raise ValidationError("Unexpected end of formula")
        self.index += 1
        return token

    def accept(self, *values: str) -> Optional[str]:
        token = self.peek()
        if token and token[0] in ("op", "name") and token[1] in values:
            self.index += 1
            return token[1]
        return None

    def expect(self, value: str) -> None:
        if not self.accept(value):
            raise ValidationError(f"Expected {value!r} in formula")

    def parse(self) -> Any:
        node = self.parse_or()
        if self.peek() is not None:
            raise ValidationError(f"Unexpected token {self.peek()[1]!r} in formula")
        return node

    def parse_or(self) -> Any:
        operands = [self.parse_and()]
        while self.accept("or", "||"):
            operands.append(self.parse_and())
        return operands[0] if len(operands) == 1 else {"operator": "or", "operands": operands}

    def parse_and(self) -> Any:
        operands = [self.parse_comparison()]
        while self.accept("and", "&&"):
            operands.append(self.parse_comparison())
        return operands[0] if len(operands) == 1 else {"operator": "and", "operands": operands}

    def parse_comparison(self) -> Any:
        left = self.parse_additive()
        symbol = self.accept("==", "!=", ">=", "<=", ">", "<")
        if symbol:
            right = self.parse_additive()
            return {"operator": _BINARY[symbol], "operands": [left, right]}
        return left

    def parse_additive(self) -> Any:
        node = self.parse_multiplicative()
        while True:
            symbol = self.accept("+", "-")
            if not symbol:
                return node
            node = {"operator": _BINARY[symbol], "operands": [node, self.parse_multiplicative()]}

    def parse_multiplicative(self) -> Any:
        node = self.parse_unary()
        while True:
            symbol = self.accept("*", "/", "%")
            if not symbol:
                return node
            node = {"operator": _BINARY[symbol], "operands": [node, self.parse_unary()]}

    def parse_unary(self) -> Any:
        if self.accept("-"):
            operand = self.parse_unary()
            if isinstance(operand, (int, float)) and not isinstance(operand, bool):
                return -operand
            return {"operator": "subtract", "operands": [operand]}
        if self.accept("not", "!"):
            return {"operator": "not", "operands": [self.parse_unary()]}
        return self.parse_primary()

    def parse_primary(self) -> Any:
        kind, value = self.take()
        if kind == "number":
            return float(value) if "." in value else int(value)
        if kind == "string":
            body = value[1:-1]
            return re.sub(r"\\(.)", r"\1", body)
        if kind == "variable":
            return value
        if kind == "name":
            if value in _KEYWORDS:
                return _KEYWORDS[value]
            self.expect("(")
            operands: List[Any] = []
            if not self.accept(")"):
                operands.append(self.parse_or())
                while self.accept(","):
                    operands.append(self.parse_or())
                self.expect(")")
            return {"operator": value, "operands": operands}
        if value == "(":
            node = self.parse_or()
            self.expect(")")
            return node
        raise ValidationError(f"Unexpected token {value!r} in formula")


def parse_formula(text: str) -> Any:
    """Parse an infix formula into an expression document"""
    if not isinstance(text, str) or not text.strip():
        raise ValidationError("Formula must be a non-empty string")
    return _Parser(_tokenize(text)).parse()
