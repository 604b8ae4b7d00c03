"""Tokenizer for the condition/formula grammar."""

from __future__ import annotations

import re
from dataclasses import dataclass
from enum import Enum

from flowforge.engine.errors import EvaluationError


class TokenType(str, Enum):
    NUMBER = "number"
    STRING = "string"
    IDENTIFIER = "identifier"
    KEYWORD = "keyword"
    OPERATOR = "operator"
    PUNCT = "punct"
    EOF = "eof"


KEYWORDS: frozenset[str] = frozenset({"true", "false", "null", "and", "or", "not"})

# Longest operators first so that '===' wins over '==' and '='.
_OPERATORS = ("===", "!==", "**", "==", "!=", "<=", ">=", "&&", "||", "<", ">", "+", "-",
              "*", "/", "%", "&", "!")

_TOKEN_RE = re.compile(
    r"""
    (?P<ws>\s+)
  | (?P<number>\d+(?:\.\d+)?(?:[eE][+-]?\d+)?|\.\d+(?:[eE][+-]?\d+)?)
  | (?P<string>"(?:[^"\\]|\\.)*"|'(?:[^'\\]|\\.)*')
  | (?P<identifier>[A-Za-z_$][A-Za-z0-9_$]*)
  | (?P<operator>"""
    + "|".join(re.escape(op) for op in _OPERATORS)
    + r""")
  | (?P<punct>[()\[\],.?:])
    """,
    re.VERBOSE,
)

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "\\": "\\", '"': '"', "'": "'"}


@dataclass(frozen=True, slots=True)
class Token:
    type: TokenType
    value: str
    position: int


def _unescape(raw: str) -> str:
    body = raw[1:-1]
    out: list[str] = []
    i = 0
    while i < len(body):
        ch = body[i]
        if ch == "\\" and i + 1 < len(body):
            nxt = body[i + 1]
            out.append(_ESCAPES.get(nxt, nxt))
            i += 2
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def tokenize(source: str) -> list[Token]:
    """Split ``source`` into tokens, ending with an EOF token."""

    tokens: list[Token] = []
    pos = 0
    while pos < len(source):
        match = _TOKEN_RE.match(source, pos)
        if match is None:
            raise EvaluationError(f"Unexpected character {source[pos]!r} at position {pos}")
        kind = match.lastgroup
        text = match.group()
        if kind == "string":
            tokens.append(Token(TokenType.STRING, _unescape(text), pos))
        elif kind == "number":
            tokens.append(Token(TokenType.NUMBER, text, pos))
        elif kind == "identifier":
            if text.lower() in KEYWORDS:
                tokens.append(Token(TokenType.KEYWORD, text.lower(), pos))
            else:
                tokens.append(Token(TokenType.IDENTIFIER, text, pos))
        elif kind == "operator":
            tokens.append(Token(TokenType.OPERATOR, text, pos))
        elif kind == "punct":
            tokens.append(Token(TokenType.PUNCT, text, pos))
        pos = match.end()
    tokens.append(Token(TokenType.EOF, "", len(source)))
    return tokens
