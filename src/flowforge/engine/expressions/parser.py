"""Recursive-descent parser producing a small, closed expression AST.

Precedence, lowest first::

    a ? b : c
    ||  or
    &&  and
    ==  !=  ===  !==
    <  <=  >  >=
    &                      (string concatenation)
    +  -
    *  /  %
    !  not  unary -  unary +
    **                     (right associative)
    member access, indexing, calls
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Union

from flowforge.engine.errors import EvaluationError

from .functions import FUNCTIONS
from .tokenizer import Token, TokenType, tokenize


@dataclass(frozen=True, slots=True)
class Literal:
    value: Any


@dataclass(frozen=True, slots=True)
class Name:
    name: str


@dataclass(frozen=True, slots=True)
class Member:
    obj: Node
    attr: str


@dataclass(frozen=True, slots=True)
class Index:
    obj: Node
    index: Node


@dataclass(frozen=True, slots=True)
class Unary:
    op: str
    operand: Node


@dataclass(frozen=True, slots=True)
class Binary:
    op: str
    left: Node
    right: Node


@dataclass(frozen=True, slots=True)
class Logical:
    op: str
    left: Node
    right: Node


@dataclass(frozen=True, slots=True)
class Conditional:
    test: Node
    then: Node
    otherwise: Node


@dataclass(frozen=True, slots=True)
class Call:
    name: str
    args: tuple[Node, ...]


@dataclass(frozen=True, slots=True)
class ArrayLiteral:
    items: tuple[Node, ...]


Node = Union[Literal, Name, Member, Index, Unary, Binary, Logical, Conditional, Call, ArrayLiteral]

_EQUALITY = {"==", "!=", "===", "!=="}
_COMPARISON = {"<", "<=", ">", ">="}


class _Parser:
    def __init__(self, source: str) -> None:
        self._source = source
        self._tokens = tokenize(source)
        self._pos = 0

    # -- token helpers ---------------------------------------------------

    def _peek(self) -> Token:
        return self._tokens[self._pos]

    def _advance(self) -> Token:
        token = self._tokens[self._pos]
        self._pos += 1
        return token

    def _at(self, type_: TokenType, *values: str) -> bool:
        token = self._peek()
        return token.type == type_ and (not values or token.value in values)

    def _expect(self, type_: TokenType, value: str) -> Token:
        if not self._at(type_, value):
            token = self._peek()
            found = token.value or "end of expression"
            raise EvaluationError(f"Expected {value!r} at position {token.position}, found {found!r}")
        return self._advance()

    def _error(self, token: Token) -> EvaluationError:
        found = token.value or "end of expression"
        return EvaluationError(f"Unexpected {found!r} at position {token.position}")

    # -- grammar ---------------------------------------------------------

    def parse(self) -> Node:
        if self._at(TokenType.EOF):
            raise EvaluationError("Empty expression")
        node = self._conditional()
        if not self._at(TokenType.EOF):
            raise self._error(self._peek())
        return node

    def _conditional(self) -> Node:
        test = self._or()
        if self._at(TokenType.PUNCT, "?"):
            self._advance()
            then = self._conditional()
            self._expect(TokenType.PUNCT, ":")
            otherwise = self._conditional()
            return Conditional(test, then, otherwise)
        return test

    def _or(self) -> Node:
        node = self._and()
        while self._at(TokenType.OPERATOR, "||") or self._at(TokenType.KEYWORD, "or"):
            self._advance()
            node = Logical("||", node, self._and())
        return node

    def _and(self) -> Node:
        node = self._equality()
        while self._at(TokenType.OPERATOR, "&&") or self._at(TokenType.KEYWORD, "and"):
            self._advance()
            node = Logical("&&", node, self._equality())
        return node

    def _equality(self) -> Node:
        node = self._comparison()
        while self._at(TokenType.OPERATOR, *_EQUALITY):
            op = self._advance().value
            node = Binary(op, node, self._comparison())
        return node

    def _comparison(self) -> Node:
        node = self._concat()
        while self._at(TokenType.OPERATOR, *_COMPARISON):
            op = self._advance().value
            node = Binary(op, node, self._concat())
        return node

    def _concat(self) -> Node:
        node = self._additive()
        while self._at(TokenType.OPERATOR, "&"):
            self._advance()
            node = Binary("&", node, self._additive())
        return node

    def _additive(self) -> Node:
        node = self._multiplicative()
        while self._at(TokenType.OPERATOR, "+", "-"):
            op = self._advance().value
            node = Binary(op, node, self._multiplicative())
        return node

    def _multiplicative(self) -> Node:
        node = self._unary()
        while self._at(TokenType.OPERATOR, "*", "/", "%"):
            op = self._advance().value
            node = Binary(op, node, self._unary())
        return node

    def _unary(self) -> Node:
        if self._at(TokenType.OPERATOR, "!", "-", "+") or self._at(TokenType.KEYWORD, "not"):
            op = self._advance().value
            return Unary("!" if op == "not" else op, self._unary())
        return self._power()

    def _power(self) -> Node:
        base = self._postfix()
        if self._at(TokenType.OPERATOR, "**"):
            self._advance()
            return Binary("**", base, self._unary())
        return base

    def _postfix(self) -> Node:
        node = self._primary()
        while True:
            if self._at(TokenType.PUNCT, "."):
                self._advance()
                token = self._advance()
                if token.type not in (TokenType.IDENTIFIER, TokenType.KEYWORD):
                    raise self._error(token)
                node = Member(node, token.value)
            elif self._at(TokenType.PUNCT, "["):
                self._advance()
                index = self._conditional()
                self._expect(TokenType.PUNCT, "]")
                node = Index(node, index)
            else:
                return node

    def _primary(self) -> Node:
        token = self._advance()
        if token.type == TokenType.NUMBER:
            text = token.value
            is_float = "." in text or "e" in text.lower()
            return Literal(float(text) if is_float else int(text))
        if token.type == TokenType.STRING:
            return Literal(token.value)
        if token.type == TokenType.KEYWORD:
            if token.value == "true":
                return Literal(True)
            if token.value == "false":
                return Literal(False)
            if token.value == "null":
                return Literal(None)
            raise self._error(token)
        if token.type == TokenType.IDENTIFIER:
            if self._at(TokenType.PUNCT, "("):
                return self._call(token)
            return Name(token.value)
        if token.type == TokenType.PUNCT and token.value == "(":
            node = self._conditional()
            self._expect(TokenType.PUNCT, ")")
            return node
        if token.type == TokenType.PUNCT and token.value == "[":
            items: list[Node] = []
            if not self._at(TokenType.PUNCT, "]"):
                items.append(self._conditional())
                while self._at(TokenType.PUNCT, ","):
                    self._advance()
                    items.append(self._conditional())
            self._expect(TokenType.PUNCT, "]")
            return ArrayLiteral(tuple(items))
        raise self._error(token)

    def _call(self, name_token: Token) -> Node:
        name = name_token.value.upper()
        entry = FUNCTIONS.get(name)
        if entry is None:
            raise EvaluationError(f"Unknown function {name_token.value!r}")
        self._expect(TokenType.PUNCT, "(")
        args: list[Node] = []
        if not self._at(TokenType.PUNCT, ")"):
            args.append(self._conditional())
            while self._at(TokenType.PUNCT, ","):
                self._advance()
                args.append(self._conditional())
        self._expect(TokenType.PUNCT, ")")
        if len(args) < entry.min_args or (entry.max_args is not None and len(args) > entry.max_args):
            raise EvaluationError(f"{name}: wrong number of arguments ({len(args)})")
        return Call(name, tuple(args))


def parse(source: str) -> Node:
    """Parse ``source`` into an AST, raising :class:`EvaluationError` on bad syntax."""

    return _Parser(source).parse()


def referenced_roots(node: Node) -> set[str]:
    """Return the root identifiers an expression reads (``a`` for ``a.b[0]``)."""

    roots: set[str] = set()
    stack: list[Node] = [node]
    while stack:
        current = stack.pop()
        if isinstance(current, Name):
            roots.add(current.name)
        elif isinstance(current, Member):
            stack.append(current.obj)
        elif isinstance(current, Index):
            stack.extend((current.obj, current.index))
        elif isinstance(current, Unary):
            stack.append(current.operand)
        elif isinstance(current, (Binary, Logical)):
            stack.extend((current.left, current.right))
        elif isinstance(current, Conditional):
            stack.extend((current.test, current.then, current.otherwise))
        elif isinstance(current, (Call, ArrayLiteral)):
            stack.extend(current.args if isinstance(current, Call) else current.items)
    return roots
