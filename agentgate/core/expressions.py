"""
AgentGate Expression Language

A deliberately small, sandboxed expression language used by branch
conditions, loop conditions and transform steps. Source text is tokenized
and parsed into a typed AST; nothing is ever evaluated as code.

Grammar:
    expression := unary (COMPARATOR unary)?
    unary      := "!"* operand
    operand    := literal | path | "(" expression ")"
    literal    := number | 'string' | "string" | true | false | null
    path       := name ("." name | "[" integer "]")*

Paths resolve against a dict context. A `length` segment on a list or
string yields its size; anything unresolvable yields None.
"""

from __future__ import annotations
from typing import Any, List, Optional, Tuple, Union
from dataclasses import dataclass
from functools import lru_cache
import math
import re


class ExpressionSyntaxError(ValueError):
    """Malformed expression text."""

    def __init__(self, expression: str, message: str):
        self.expression = expression
        super().__init__(f"Invalid expression '{expression}': {message}")


# =============================================================================
# AST
# =============================================================================

PathSegment = Union[str, int]


@dataclass(frozen=True)
class PathRef:
    segments: Tuple[PathSegment, ...]


@dataclass(frozen=True)
class LiteralValue:
    value: Any


@dataclass(frozen=True)
class Not:
    operand: "ExpressionNode"


@dataclass(frozen=True)
class Comparison:
    operator: str
    left: "ExpressionNode"
    right: "ExpressionNode"


ExpressionNode = Union[PathRef, LiteralValue, Not, Comparison]

COMPARATORS = ("==", "!=", ">=", "<=", ">", "<")


# =============================================================================
# Tokenizer
# =============================================================================

_TOKEN_RE = re.compile(r"""
    \s*(?:
        (?P<number>-?\d+(?:\.\d+)?)
      | (?P<string>'(?:[^'\\]|\\.)*'|"(?:[^"\\]|\\.)*")
      | (?P<op>==|!=|>=|<=|>|<)
      | (?P<bang>!)
      | (?P<name>[A-Za-z_$][\w$-]*)
      | (?P<punct>[.\[\]()])
    )
""", re.VERBOSE)


@dataclass(frozen=True)
class _Token:
    kind: str
    text: str


def _tokenize(expression: str) -> List[_Token]:
    tokens: List[_Token] = []
    pos = 0
    text = expression.rstrip()
    while pos < len(text):
        match = _TOKEN_RE.match(text, pos)
        if not match or match.end() == pos:
            raise ExpressionSyntaxError(expression, f"unexpected character at position {pos}")
        kind = match.lastgroup
        tokens.append(_Token(kind, match.group(kind)))
        pos = match.end()
    return tokens


# =============================================================================
# Parser
# =============================================================================

class _Parser:
    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = _tokenize(expression)
        self.pos = 0

    def _peek(self) -> Optional[_Token]:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self, kind: Optional[str] = None, text: Optional[str] = None) -> _Token:
        token = self._peek()
        if token is None:
            raise ExpressionSyntaxError(self.expression, "unexpected end of expression")
        if (kind and token.kind != kind) or (text and token.text != text):
            raise ExpressionSyntaxError(self.expression, f"unexpected '{token.text}'")
        self.pos += 1
        return token

    def parse(self) -> ExpressionNode:
        if not self.tokens:
            raise ExpressionSyntaxError(self.expression, "empty expression")
        node = self._expression()
        if self._peek() is not None:
            raise ExpressionSyntaxError(self.expression, f"unexpected '{self._peek().text}'")
        return node

    def _expression(self) -> ExpressionNode:
        left = self._unary()
        token = self._peek()
        if token is not None and token.kind == "op":
            self.pos += 1
            return Comparison(token.text, left, self._unary())
        return left

    def _unary(self) -> ExpressionNode:
        token = self._peek()
        if token is not None and token.kind == "bang":
            self.pos += 1
            return Not(self._unary())
        return self._operand()

    def _operand(self) -> ExpressionNode:
        token = self._take()
        if token.kind == "number":
            number = float(token.text)
            return LiteralValue(int(number) if number.is_integer() and "." not in token.text else number)
        if token.kind == "string":
            return LiteralValue(_unquote(token.text))
        if token.kind == "punct" and token.text == "(":
            node = self._expression()
            self._take("punct", ")")
            return node
        if token.kind == "name":
            if token.text == "true":
                return LiteralValue(True)
            if token.text == "false":
                return LiteralValue(False)
            if token.text in ("null", "undefined"):
                return LiteralValue(None)
            return self._path(token.text)
        raise ExpressionSyntaxError(self.expression, f"unexpected '{token.text}'")

    def _path(self, first: str) -> PathRef:
        segments: List[PathSegment] = [] if first == "$" else [first]
        while True:
            token = self._peek()
            if token is None or token.kind != "punct" or token.text not in ".[":
                break
            self.pos += 1
            if token.text == ".":
                segments.append(self._take("name").text)
            else:
                index = self._take("number").text
                if not index.isdigit():
                    raise ExpressionSyntaxError(self.expression, f"invalid index '{index}'")
                segments.append(int(index))
                self._take("punct", "]")
        return PathRef(tuple(segments))


def _unquote(text: str) -> str:
    body = text[1:-1]
    return re.sub(r"\\(.)", r"\1", body)


@lru_cache(maxsize=512)
def parse_expression(expression: str) -> ExpressionNode:
    """Parse expression text into an AST (cached)."""
    return _Parser(expression.strip()).parse()


# =============================================================================
# Paths
# =============================================================================

_SEGMENT_RE = re.compile(r"([^.\[\]]+)|\[(\d+)\]")


def parse_path(path: str) -> Tuple[PathSegment, ...]:
    """Split `a.b[0].c` into ("a", "b", 0, "c"). A leading `$` is the root."""
    segments: List[PathSegment] = []
    for name, index in _SEGMENT_RE.findall(path or ""):
        if index:
            segments.append(int(index))
        elif name != "$":
            segments.append(name)
    return tuple(segments)


def get_value_by_path(value: Any, path: Union[str, Tuple[PathSegment, ...]]) -> Any:
    """Follow a path through dicts and lists; None when any segment is missing."""
    segments = parse_path(path) if isinstance(path, str) else path
    current = value
    for segment in segments:
        if current is None:
            return None
        if isinstance(segment, int):
            if isinstance(current, (list, tuple)) and -len(current) <= segment < len(current):
                current = current[segment]
            else:
                return None
        elif isinstance(current, dict):
            current = current.get(segment)
        elif isinstance(current, (list, tuple, str)):
            if segment == "length":
                current = len(current)
            elif segment.isdigit() and int(segment) < len(current):
                current = current[int(segment)]
            else:
                return None
        else:
            return None
    return current


# =============================================================================
# Evaluation
# =============================================================================

def _to_number(value: Any) -> float:
    if isinstance(value, bool):
        return float(value)
    if isinstance(value, (int, float)):
        return float(value)
    if isinstance(value, str):
        try:
            return float(value.strip()) if value.strip() else 0.0
        except ValueError:
            return math.nan
    return math.nan


def _strict_equals(left: Any, right: Any) -> bool:
    if isinstance(left, bool) != isinstance(right, bool):
        return False
    return left == right


def _compare(operator: str, left: Any, right: Any) -> bool:
    if operator == "==":
        return _strict_equals(left, right)
    if operator == "!=":
        return not _strict_equals(left, right)
    if isinstance(left, str) and isinstance(right, str):
        a, b = left, right
    else:
        a, b = _to_number(left), _to_number(right)
        if math.isnan(a) or math.isnan(b):
            return False
    if operator == ">":
        return a > b
    if operator == "<":
        return a < b
    if operator == ">=":
        return a >= b
    return a <= b


def evaluate(node: ExpressionNode, context: Any) -> Any:
    """Evaluate an AST node against a context."""
    if isinstance(node, LiteralValue):
        return node.value
    if isinstance(node, PathRef):
        return get_value_by_path(context, node.segments)
    if isinstance(node, Not):
        return not evaluate(node.operand, context)
    if isinstance(node, Comparison):
        return _compare(node.operator, evaluate(node.left, context), evaluate(node.right, context))
    raise TypeError(f"Unknown expression node: {type(node).__name__}")


def evaluate_condition(expression: str, context: Any) -> bool:
    """Parse and evaluate to a boolean."""
    return bool(evaluate(parse_expression(expression), context))


def evaluate_transform(expression: str, data: Any) -> Any:
    """
    `$` returns the data itself, `$.path` selects from it; any other text is
    evaluated as an expression against the data.
    """
    text = expression.strip()
    if text == "$":
        return data
    if text.startswith("$."):
        return get_value_by_path(data, text[2:])
    return evaluate(parse_expression(text), data)
