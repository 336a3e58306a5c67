"""
Query compiler for collector smart-input filters.

Translates a small boolean filter language into the collector's native
smart-input dialect:

    from_user = '999%' AND (to_user = '123' OR status != 200)
    -> data_header.from_user = '999%' AND (data_header.to_user = '123' OR status != 200)

Grammar (recursive descent):
    expr      := condition ((AND | OR) condition)*
    condition := '(' expr ')' | field op value
"""
from __future__ import annotations

import itertools
import logging
from dataclasses import dataclass
from typing import Iterable, List, Optional, Sequence, Tuple, Union

LOGGER = logging.getLogger(__name__)

# User-facing field names -> collector column names.
QUERY_FIELDS = {
    "from_user": "data_header.from_user",
    "to_user": "data_header.to_user",
    "ruri_user": "data_header.ruri_user",
    "user_agent": "data_header.user_agent",
    "ua": "data_header.user_agent",
    "cseq": "data_header.cseq",
    "method": "method",
    "status": "status",
    "call_id": "sid",
    "sid": "sid",
}

TOK_IDENT = "identifier"
TOK_STRING = "string"
TOK_NUMBER = "number"
TOK_EQ = "'='"
TOK_NEQ = "'!='"
TOK_LPAREN = "'('"
TOK_RPAREN = "')'"
TOK_AND = "AND"
TOK_OR = "OR"
TOK_EOF = "end of input"

_KEYWORDS = {"AND": TOK_AND, "OR": TOK_OR}


class QueryError(ValueError):
    def __init__(self, message: str, position: int) -> None:
        super().__init__(message)
        self.position = position


@dataclass(frozen=True)
class Token:
    kind: str
    value: str
    pos: int


@dataclass(frozen=True)
class LeafCondition:
    field: str
    op: str
    value: str
    is_numeric: bool

    def render(self) -> str:
        if self.is_numeric:
            return f"{self.field} {self.op} {self.value}"
        return f"{self.field} {self.op} '{self.value}'"


@dataclass(frozen=True)
class CompositeCondition:
    connective: str
    children: Tuple["Condition", ...]

    def __post_init__(self) -> None:
        if not self.children:
            raise ValueError("composite condition requires at least one child")

    def render(self) -> str:
        parts = []
        for child in self.children:
            text = child.render()
            if isinstance(child, CompositeCondition) and child.connective != self.connective:
                text = f"({text})"
            parts.append(text)
        return f" {self.connective} ".join(parts)


Condition = Union[LeafCondition, CompositeCondition]


def _is_ident_start(ch: str) -> bool:
    return ch == "_" or ("a" <= ch <= "z") or ("A" <= ch <= "Z")


def _is_ident_char(ch: str) -> bool:
    return _is_ident_start(ch) or "0" <= ch <= "9" or ch == "."


def tokenize(text: str) -> List[Token]:
    tokens: List[Token] = []
    i = 0
    length = len(text)
    while i < length:
        ch = text[i]
        if ch.isspace():
            i += 1
        elif ch == "(":
            tokens.append(Token(TOK_LPAREN, "(", i))
            i += 1
        elif ch == ")":
            tokens.append(Token(TOK_RPAREN, ")", i))
            i += 1
        elif ch == "=":
            tokens.append(Token(TOK_EQ, "=", i))
            i += 1
        elif ch == "!" and i + 1 < length and text[i + 1] == "=":
            tokens.append(Token(TOK_NEQ, "!=", i))
            i += 2
        elif ch == "'":
            start = i
            end = text.find("'", i + 1)
            if end < 0:
                raise QueryError(f"unterminated string at position {start}", start)
            tokens.append(Token(TOK_STRING, text[i + 1 : end], start))
            i = end + 1
        elif "0" <= ch <= "9":
            start = i
            while i < length and "0" <= text[i] <= "9":
                i += 1
            tokens.append(Token(TOK_NUMBER, text[start:i], start))
        elif _is_ident_start(ch):
            start = i
            while i < length and _is_ident_char(text[i]):
                i += 1
            word = text[start:i]
            keyword = _KEYWORDS.get(word.upper())
            if keyword:
                tokens.append(Token(keyword, keyword, start))
            else:
                tokens.append(Token(TOK_IDENT, word, start))
        else:
            raise QueryError(f"unexpected character {ch!r} at position {i}", i)
    tokens.append(Token(TOK_EOF, "", length))
    return tokens


def available_fields() -> str:
    return ", ".join(sorted(QUERY_FIELDS))


class _Parser:
    def __init__(self, tokens: List[Token]) -> None:
        self._tokens = tokens
        self._pos = 0

    def peek(self) -> Token:
        return self._tokens[self._pos]

    def advance(self) -> Token:
        tok = self._tokens[self._pos]
        self._pos += 1
        return tok

    def parse_expr(self) -> Condition:
        left = self.parse_condition()
        while self.peek().kind in (TOK_AND, TOK_OR):
            connective = self.advance().value
            right = self.parse_condition()
            # Same connective extends the current level; a change starts a new composite.
            if isinstance(left, CompositeCondition) and left.connective == connective:
                left = CompositeCondition(connective, left.children + (right,))
            else:
                left = CompositeCondition(connective, (left, right))
        return left

    def parse_condition(self) -> Condition:
        if self.peek().kind == TOK_LPAREN:
            self.advance()
            inner = self.parse_expr()
            if self.peek().kind != TOK_RPAREN:
                pos = self.peek().pos
                raise QueryError(f"missing closing parenthesis at position {pos}", pos)
            self.advance()
            return inner

        field_tok = self.peek()
        if field_tok.kind != TOK_IDENT:
            raise QueryError(
                f'expected field name at position {field_tok.pos}, got "{field_tok.value}"',
                field_tok.pos,
            )
        self.advance()
        mapped = QUERY_FIELDS.get(field_tok.value)
        if mapped is None:
            raise QueryError(
                f'unknown field "{field_tok.value}" at position {field_tok.pos} (available: {available_fields()})',
                field_tok.pos,
            )

        op_tok = self.peek()
        if op_tok.kind not in (TOK_EQ, TOK_NEQ):
            raise QueryError(
                f'expected operator (= or !=) at position {op_tok.pos}, got "{op_tok.value}"',
                op_tok.pos,
            )
        self.advance()

        value_tok = self.peek()
        if value_tok.kind not in (TOK_STRING, TOK_NUMBER):
            raise QueryError(
                f'expected value (string or number) at position {value_tok.pos}, got "{value_tok.value}"',
                value_tok.pos,
            )
        self.advance()

        return LeafCondition(
            field=mapped,
            op=op_tok.value,
            value=value_tok.value,
            is_numeric=value_tok.kind == TOK_NUMBER,
        )


def parse_query(text: str) -> Optional[Condition]:
    """Parse a query into its condition tree; blank input yields None."""
    stripped = (text or "").strip()
    if not stripped:
        return None
    parser = _Parser(tokenize(stripped))
    condition = parser.parse_expr()
    trailing = parser.peek()
    if trailing.kind != TOK_EOF:
        raise QueryError(f'unexpected token "{trailing.value}" at position {trailing.pos}', trailing.pos)
    return condition


def compile_query(text: str) -> str:
    """Compile a user query into the collector smart-input string."""
    try:
        condition = parse_query(text)
    except QueryError as exc:
        LOGGER.debug("Query rejected query=%r error=%s", text, exc, extra={"category": "QUERY"})
        raise
    if condition is None:
        return ""
    compiled = condition.render()
    LOGGER.debug("Query compiled query=%r smartinput=%r", text, compiled, extra={"category": "QUERY"})
    return compiled


def number_alternatives(number: str, fields: Iterable[str]) -> List[str]:
    """Equality terms matching a number with and without its leading '+'."""
    bare = (number or "").removeprefix("+")
    alternatives: List[str] = []
    for name in fields:
        column = QUERY_FIELDS.get(name, name)
        alternatives.append(f"{column} = '{bare}'")
        alternatives.append(f"{column} = '+{bare}'")
    return alternatives


def build_smart_input(criteria: Sequence[Sequence[str]]) -> str:
    """
    Combine sets of OR-alternatives into one smart-input expression.

    The cartesian product of all sets is taken: terms within one product are
    joined by AND, products by OR. The collector binds AND before OR, so no
    parentheses are needed.
    """
    non_empty = [list(alts) for alts in criteria if alts]
    if not non_empty:
        return ""
    terms = [" AND ".join(product) for product in itertools.product(*non_empty)]
    return " OR ".join(terms)
