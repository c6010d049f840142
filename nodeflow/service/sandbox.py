"""Safe expression evaluation for decision nodes.

Expressions reach this module after variable substitution, so they contain
only literals, operators and the three helper functions. The grammar is
closed: there are no names, attribute access or calls beyond ``exists``,
``empty`` and ``length``.

    expr    := or
    or      := and ( "||" and )*
    and     := cmp ( "&&" cmp )*
    cmp     := sum ( ("=="|"!="|"==="|"!=="|">"|"<"|">="|"<=") sum )?
    sum     := term ( ("+"|"-") term )*
    term    := unary ( ("*"|"/"|"%") unary )*
    unary   := ("!"|"-") unary | primary
    primary := NUMBER | STRING | true | false | null | undefined
             | "[" [expr ("," expr)*] "]" | "(" expr ")"
             | ("exists"|"empty"|"length") "(" expr ")"
"""
from __future__ import annotations

import json
import math
import operator
import re
from dataclasses import dataclass
from typing import Any, Callable, List, Optional, Tuple

from nodeflow.service.errors import ExpressionError, UnsafeExpressionError


_MAX_RECURSION_DEPTH = 100
MAX_EXPRESSION_LENGTH = 4096

_FORBIDDEN_PATTERNS = [
    re.compile(r"\bfunction\b"),
    re.compile(r"\bnew\b"),
    re.compile(r"\beval\b"),
    re.compile(r"\bimport\b"),
    re.compile(r"\brequire\b"),
    re.compile(r"\bwindow\b"),
    re.compile(r"\bglobal\b"),
    re.compile(r"\bprocess\b"),
    re.compile(r"\b__proto__\b"),
    re.compile(r"\bconstructor\b"),
    re.compile(r"[;{}]"),
]

_STRING_LITERAL_RE = re.compile(r'"(?:[^"\\]|\\.)*"|\'(?:[^\'\\]|\\.)*\'')

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<num>(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?)
  | (?P<dstr>"(?:[^"\\]|\\.)*")
  | (?P<sstr>'(?:[^'\\]|\\.)*')
  | (?P<op>===|!==|==|!=|>=|<=|&&|\|\||[><!+\-*/%\[\](),])
  | (?P<ident>[A-Za-z_$][\w$]*)
    """,
    re.VERBOSE,
)

_CONSTANTS = {"true": True, "false": False, "null": None, "undefined": None}

_ARITH_OPS = {
    "-": operator.sub,
    "*": operator.mul,
    "/": operator.truediv,
    "%": operator.mod,
}

_ORDER_OPS = {
    ">": operator.gt,
    "<": operator.lt,
    ">=": operator.ge,
    "<=": operator.le,
}

_SINGLE_QUOTE_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "0": "\0"}


def _is_number(value: Any) -> bool:
    return isinstance(value, (int, float)) and not isinstance(value, bool)


def strict_equal(left: Any, right: Any) -> bool:
    if _is_number(left) and _is_number(right):
        return left == right
    if type(left) is not type(right):
        return False
    return left == right


_NUMERIC_STRING_RE = re.compile(r"^[+-]?(?:\d+\.?\d*|\.\d+)(?:[eE][+-]?\d+)?$")
_HEX_STRING_RE = re.compile(r"^0[xX][0-9a-fA-F]+$")


def _string_to_number(text: str) -> float:
    """Numeric value of a string as used by loose equality; NaN if not numeric."""
    text = text.strip()
    if not text:
        return 0.0
    if _NUMERIC_STRING_RE.match(text):
        return float(text)
    if _HEX_STRING_RE.match(text):
        return float(int(text, 16))
    if text in ("Infinity", "+Infinity"):
        return math.inf
    if text == "-Infinity":
        return -math.inf
    return math.nan


def loose_equal(left: Any, right: Any) -> bool:
    """``==`` semantics: numbers, numeric strings and booleans compare by value.

    ``null`` equals only ``null``/``undefined``; lists and objects are never
    coerced and compare by value against their own kind only.
    """
    if left is None or right is None:
        return left is None and right is None
    if isinstance(left, bool):
        left = int(left)
    if isinstance(right, bool):
        right = int(right)
    if _is_number(left) and isinstance(right, str):
        return left == _string_to_number(right)
    if isinstance(left, str) and _is_number(right):
        return _string_to_number(left) == right
    return strict_equal(left, right)


def _exists(value: Any) -> bool:
    return value is not None


def _empty(value: Any) -> bool:
    return value is None or value == "" or value == []


def _length(value: Any) -> int:
    if isinstance(value, (str, list)):
        return len(value)
    return 0


_FUNCTIONS: dict[str, Callable[[Any], Any]] = {
    "exists": _exists,
    "empty": _empty,
    "length": _length,
}


def truthy(value: Any) -> bool:
    """Boolean coercion used to turn an expression result into a branch."""
    if value is None:
        return False
    if isinstance(value, float) and math.isnan(value):
        return False
    return bool(value)


def check_expression_safety(expression: str) -> None:
    """Reject forbidden words and characters outside of string literals."""
    if len(expression) > MAX_EXPRESSION_LENGTH:
        raise UnsafeExpressionError(
            "expression too long", detail={"length": len(expression)}
        )
    code_only = _STRING_LITERAL_RE.sub('""', expression)
    for pattern in _FORBIDDEN_PATTERNS:
        if pattern.search(code_only):
            raise UnsafeExpressionError(
                f"Unsafe expression pattern detected: {pattern.pattern}",
                detail={"pattern": pattern.pattern},
            )


@dataclass(frozen=True)
class _Token:
    kind: str
    value: Any
    pos: int


def _unquote_single(raw: str) -> str:
    out: List[str] = []
    chars = iter(raw[1:-1])
    for ch in chars:
        if ch == "\\":
            nxt = next(chars, "")
            out.append(_SINGLE_QUOTE_ESCAPES.get(nxt, nxt))
        else:
            out.append(ch)
    return "".join(out)


def _tokenize(expression: str) -> List[_Token]:
    tokens: List[_Token] = []
    pos = 0
    while pos < len(expression):
        match = _TOKEN_RE.match(expression, pos)
        if match is None:
            raise ExpressionError(
                f"unexpected character {expression[pos]!r} at position {pos}"
            )
        kind = match.lastgroup
        text = match.group(0)
        if kind == "num":
            value: Any = float(text) if any(c in text for c in ".eE") else int(text)
            tokens.append(_Token("lit", value, pos))
        elif kind == "dstr":
            try:
                tokens.append(_Token("lit", json.loads(text), pos))
            except ValueError as exc:
                raise ExpressionError(f"invalid string literal at position {pos}") from exc
        elif kind == "sstr":
            tokens.append(_Token("lit", _unquote_single(text), pos))
        elif kind == "op":
            tokens.append(_Token("op", text, pos))
        elif kind == "ident":
            if text in _CONSTANTS:
                tokens.append(_Token("lit", _CONSTANTS[text], pos))
            elif text in _FUNCTIONS:
                tokens.append(_Token("func", text, pos))
            else:
                raise ExpressionError(f"unknown identifier '{text}'")
        pos = match.end()
    tokens.append(_Token("eof", None, pos))
    return tokens


# Parsed nodes are plain tuples: (kind, *payload)
_Node = Tuple[Any, ...]


class _Parser:
    def __init__(self, tokens: List[_Token]) -> None:
        self.tokens = tokens
        self.index = 0
        self.depth = 0

    @property
    def current(self) -> _Token:
        return self.tokens[self.index]

    def _advance(self) -> _Token:
        token = self.tokens[self.index]
        self.index += 1
        return token

    def _accept(self, *ops: str) -> Optional[str]:
        token = self.current
        if token.kind == "op" and token.value in ops:
            self.index += 1
            return token.value
        return None

    def _expect(self, op: str) -> None:
        if self._accept(op) is None:
            token = self.current
            found = "end of expression" if token.kind == "eof" else repr(token.value)
            raise ExpressionError(f"expected '{op}' at position {token.pos}, found {found}")

    def _enter(self) -> None:
        self.depth += 1
        if self.depth > _MAX_RECURSION_DEPTH:
            raise ExpressionError("expression too deeply nested")

    def parse(self) -> _Node:
        if self.current.kind == "eof":
            raise ExpressionError("empty expression")
        node = self._or()
        if self.current.kind != "eof":
            raise ExpressionError(
                f"unexpected token {self.current.value!r} at position {self.current.pos}"
            )
        return node

    def _or(self) -> _Node:
        operands = [self._and()]
        while self._accept("||"):
            operands.append(self._and())
        return operands[0] if len(operands) == 1 else ("or", operands)

    def _and(self) -> _Node:
        operands = [self._cmp()]
        while self._accept("&&"):
            operands.append(self._cmp())
        return operands[0] if len(operands) == 1 else ("and", operands)

    def _cmp(self) -> _Node:
        left = self._sum()
        op = self._accept("===", "!==", "==", "!=", ">=", "<=", ">", "<")
        if op is None:
            return left
        return ("cmp", op, left, self._sum())

    def _sum(self) -> _Node:
        node = self._term()
        while True:
            op = self._accept("+", "-")
            if op is None:
                return node
            node = ("bin", op, node, self._term())

    def _term(self) -> _Node:
        node = self._unary()
        while True:
            op = self._accept("*", "/", "%")
            if op is None:
                return node
            node = ("bin", op, node, self._unary())

    def _unary(self) -> _Node:
        op = self._accept("!", "-")
        if op is None:
            return self._primary()
        self._enter()
        try:
            operand = self._unary()
        finally:
            self.depth -= 1
        return ("not", operand) if op == "!" else ("neg", operand)

    def _primary(self) -> _Node:
        token = self.current
        if token.kind == "lit":
            self._advance()
            return ("lit", token.value)
        if token.kind == "func":
            self._advance()
            self._expect("(")
            arg = self._nested()
            self._expect(")")
            return ("call", token.value, arg)
        if self._accept("("):
            inner = self._nested()
            self._expect(")")
            return inner
        if self._accept("["):
            items: List[_Node] = []
            if not self._accept("]"):
                items.append(self._nested())
                while self._accept(","):
                    items.append(self._nested())
                self._expect("]")
            return ("list", items)
        if token.kind == "eof":
            raise ExpressionError("unexpected end of expression")
        raise ExpressionError(f"unexpected token {token.value!r} at position {token.pos}")

    def _nested(self) -> _Node:
        self._enter()
        try:
            return self._or()
        finally:
            self.depth -= 1


def _eval_node(node: _Node, _depth: int = 0) -> Any:
    if _depth > _MAX_RECURSION_DEPTH * 2:
        raise ExpressionError("expression too deeply nested")

    kind = node[0]

    if kind == "lit":
        return node[1]

    if kind == "list":
        return [_eval_node(item, _depth + 1) for item in node[1]]

    if kind == "not":
        return not truthy(_eval_node(node[1], _depth + 1))

    if kind == "neg":
        value = _eval_node(node[1], _depth + 1)
        if not _is_number(value):
            raise ExpressionError("unary minus requires a number")
        return -value

    if kind == "and":
        result = True
        for operand in node[1]:
            result = truthy(_eval_node(operand, _depth + 1))
            if not result:
                break
        return result

    if kind == "or":
        result = False
        for operand in node[1]:
            result = truthy(_eval_node(operand, _depth + 1))
            if result:
                break
        return result

    if kind == "call":
        return _FUNCTIONS[node[1]](_eval_node(node[2], _depth + 1))

    if kind == "cmp":
        op = node[1]
        left = _eval_node(node[2], _depth + 1)
        right = _eval_node(node[3], _depth + 1)
        if op == "===":
            return strict_equal(left, right)
        if op == "!==":
            return not strict_equal(left, right)
        if op == "==":
            return loose_equal(left, right)
        if op == "!=":
            return not loose_equal(left, right)
        comparable = (_is_number(left) and _is_number(right)) or (
            isinstance(left, str) and isinstance(right, str)
        )
        if not comparable:
            raise ExpressionError(
                f"cannot compare {type(left).__name__} and {type(right).__name__} with '{op}'"
            )
        return _ORDER_OPS[op](left, right)

    if kind == "bin":
        op = node[1]
        left = _eval_node(node[2], _depth + 1)
        right = _eval_node(node[3], _depth + 1)
        if op == "+" and isinstance(left, str) and isinstance(right, str):
            return left + right
        if not (_is_number(left) and _is_number(right)):
            raise ExpressionError(f"operator '{op}' requires numbers")
        if op == "+":
            return left + right
        if op in ("/", "%") and right == 0:
            raise ExpressionError("division by zero")
        return _ARITH_OPS[op](left, right)

    raise ExpressionError(f"unsupported expression node {kind}")


def safe_eval_expr(expression: str) -> Any:
    """Evaluate a substituted expression inside the closed grammar.

    Raises:
        UnsafeExpressionError: a forbidden word or character is present.
        ExpressionError: the text does not parse or cannot be evaluated.
    """
    if not isinstance(expression, str):
        raise ExpressionError("expression must be a string")
    check_expression_safety(expression)
    tree = _Parser(_tokenize(expression)).parse()
    try:
        return _eval_node(tree)
    except ArithmeticError as exc:
        raise ExpressionError(f"arithmetic error: {exc}") from exc
