"""
Label expressions used to route demand to templates.

A template offers a set of label atoms ("linux docker jdk17"). The scheduler
asks for capacity with an expression over those atoms:

    linux && docker
    jdk11 || jdk17
    linux && !(arm64 || windows)

A missing or blank expression matches every template.
"""

import re
from collections.abc import Callable, Iterable

_TOKEN_RE = re.compile(r"\s*(&&|\|\||!|\(|\)|[^\s&|!()]+)")

Matcher = Callable[[frozenset[str]], bool]


def parse_atoms(label_string: str | None) -> frozenset[str]:
    """Split a whitespace-separated label string into its atoms."""
    return frozenset((label_string or "").split())


def _tokenize(expression: str) -> list[str]:
    tokens = []
    pos = 0
    expression = expression.rstrip()
    while pos < len(expression):
        match = _TOKEN_RE.match(expression, pos)
        if match is None:
            raise ValueError(f"Invalid label expression: {expression!r}")
        tokens.append(match.group(1))
        pos = match.end()
    return tokens


class _Parser:
    """
    Recursive descent parser for label expressions.

    Grammar (lowest precedence first):
        or_expr  := and_expr ("||" and_expr)*
        and_expr := not_expr ("&&" not_expr)*
        not_expr := "!" not_expr | primary
        primary  := ATOM | "(" or_expr ")"
    """

    def __init__(self, expression: str):
        self.expression = expression
        self.tokens = _tokenize(expression)
        self.pos = 0

    def _peek(self) -> str | None:
        return self.tokens[self.pos] if self.pos < len(self.tokens) else None

    def _take(self) -> str:
        token = self._peek()
        if token is None:
            raise ValueError(f"Unexpected end of label expression: {self.expression!r}")
        self.pos += 1
        return token

    def parse(self) -> Matcher:
        matcher = self._or_expr()
        if self._peek() is not None:
            raise ValueError(
                f"Unexpected token {self._peek()!r} in label expression: {self.expression!r}"
            )
        return matcher

    def _or_expr(self) -> Matcher:
        parts = [self._and_expr()]
        while self._peek() == "||":
            self._take()
            parts.append(self._and_expr())
        if len(parts) == 1:
            return parts[0]
        return lambda atoms: any(part(atoms) for part in parts)

    def _and_expr(self) -> Matcher:
        parts = [self._not_expr()]
        while self._peek() == "&&":
            self._take()
            parts.append(self._not_expr())
        if len(parts) == 1:
            return parts[0]
        return lambda atoms: all(part(atoms) for part in parts)

    def _not_expr(self) -> Matcher:
        if self._peek() == "!":
            self._take()
            inner = self._not_expr()
            return lambda atoms: not inner(atoms)
        return self._primary()

    def _primary(self) -> Matcher:
        token = self._take()
        if token == "(":
            inner = self._or_expr()
            if self._take() != ")":
                raise ValueError(f"Unbalanced parentheses in: {self.expression!r}")
            return inner
        if token in ("&&", "||", ")"):
            raise ValueError(
                f"Unexpected token {token!r} in label expression: {self.expression!r}"
            )
        return lambda atoms: token in atoms


def compile_expression(expression: str | None) -> Matcher:
    """
    Compile a label expression into a predicate over atom sets.

    Raises:
        ValueError: If the expression cannot be parsed
    """
    if expression is None or not expression.strip():
        return lambda atoms: True
    return _Parser(expression).parse()


def matches(expression: str | None, atoms: Iterable[str]) -> bool:
    """Check whether a set of label atoms satisfies an expression."""
    return compile_expression(expression)(frozenset(atoms))
