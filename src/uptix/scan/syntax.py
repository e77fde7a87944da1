"""Minimal Nix lexer and bracket tree.

Only enough of the language is modelled to find function applications and
read literal arguments: tokens are grouped into a tree by ``{}``, ``()`` and
``[]`` and everything else stays flat. Strings are single tokens; their
interpolations are checked for balance but not descended into.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Literal

from uptix.errors import ScanError

TokenKind = Literal["ident", "string", "int", "float", "path", "uri", "op"]

_IDENT = re.compile(r"[A-Za-z_][A-Za-z0-9_'\-]*")
_FLOAT = re.compile(r"(?:[0-9]+\.[0-9]*|\.[0-9]+)(?:[Ee][+-]?[0-9]+)?")
_INT = re.compile(r"[0-9]+")
_PATH = re.compile(r"(?:[A-Za-z0-9._+\-]*|~)(?:/[A-Za-z0-9._+\-]+)+")
_SEARCH_PATH = re.compile(r"<[A-Za-z0-9._+\-]+(?:/[A-Za-z0-9._+\-]+)*>")
_URI = re.compile(r"[A-Za-z][A-Za-z0-9+.\-]*:[A-Za-z0-9%/?:@&=+$,\-_.!~*']+")
_OPERATORS = (
    "...",
    "==",
    "!=",
    "<=",
    ">=",
    "&&",
    "||",
    "->",
    "//",
    "++",
    "${",
    "{",
    "}",
    "(",
    ")",
    "[",
    "]",
    ";",
    "=",
    ".",
    ",",
    ":",
    "@",
    "?",
    "!",
    "+",
    "-",
    "*",
    "/",
    "<",
    ">",
)
_CLOSERS = {"{": "}", "(": ")", "[": "]", "${": "}"}


@dataclass(frozen=True, slots=True)
class Token:
    kind: TokenKind
    text: str
    line: int
    column: int
    value: str | None = None
    interpolated: bool = False


@dataclass(slots=True)
class Group:
    """A bracketed run of nodes: ``{ ... }``, ``( ... )`` or ``[ ... ]``."""

    open: str
    line: int
    column: int
    children: list[Node] = field(default_factory=list)


Node = Token | Group


class Lexer:
    def __init__(self, source: str, *, path: str = "<string>") -> None:
        self.source = source
        self.path = path
        self.pos = 0
        self.line = 1
        self.column = 1

    def tokens(self) -> list[Token]:
        tokens: list[Token] = []
        while True:
            self._skip_trivia()
            if self.pos >= len(self.source):
                return tokens
            tokens.append(self._next_token())

    def _next_token(self) -> Token:
        src = self.source
        char = src[self.pos]
        line, column = self.line, self.column

        if char == '"':
            value, interpolated = self._double_quoted()
            return Token("string", "\"", line, column, value, interpolated)
        if src.startswith("''", self.pos):
            value, interpolated = self._indented()
            return Token("string", "''", line, column, value, interpolated)

        for kind, pattern in (
            ("uri", _URI),
            ("path", _PATH),
            ("path", _SEARCH_PATH),
            ("float", _FLOAT),
            ("int", _INT),
            ("ident", _IDENT),
        ):
            match = pattern.match(src, self.pos)
            if match is None:
                continue
            text = match.group(0)
            self._advance(len(text))
            return Token(kind, text, line, column, text)  # type: ignore[arg-type]

        for op in _OPERATORS:
            if src.startswith(op, self.pos):
                self._advance(len(op))
                return Token("op", op, line, column, op)

        raise self._error(f"Unexpected character {char!r}.")

    def _double_quoted(self) -> tuple[str, bool]:
        self._advance(1)
        chunks: list[str] = []
        interpolated = False
        while self.pos < len(self.source):
            char = self.source[self.pos]
            if char == '"':
                self._advance(1)
                return "".join(chunks), interpolated
            if char == "\\":
                escaped = self.source[self.pos + 1 : self.pos + 2]
                chunks.append({"n": "\n", "t": "\t", "r": "\r"}.get(escaped, escaped))
                self._advance(2)
                continue
            if self.source.startswith("${", self.pos):
                interpolated = True
                self._interpolation()
                continue
            chunks.append(char)
            self._advance(1)
        raise self._error("Unterminated string literal.")

    def _indented(self) -> tuple[str, bool]:
        self._advance(2)
        chunks: list[str] = []
        interpolated = False
        while self.pos < len(self.source):
            src = self.source
            if src.startswith("'''", self.pos):
                chunks.append("''")
                self._advance(3)
                continue
            if src.startswith("''$", self.pos):
                chunks.append("$")
                self._advance(3)
                continue
            if src.startswith("''\\", self.pos):
                escaped = src[self.pos + 3 : self.pos + 4]
                chunks.append({"n": "\n", "t": "\t", "r": "\r"}.get(escaped, escaped))
                self._advance(4)
                continue
            if src.startswith("''", self.pos):
                self._advance(2)
                return _strip_indentation("".join(chunks)), interpolated
            if src.startswith("${", self.pos):
                interpolated = True
                self._interpolation()
                continue
            chunks.append(src[self.pos])
            self._advance(1)
        raise self._error("Unterminated indented string literal.")

    def _interpolation(self) -> None:
        start_line, start_column = self.line, self.column
        self._advance(2)
        depth = ["${"]
        while depth:
            self._skip_trivia()
            if self.pos >= len(self.source):
                raise ScanError(
                    "Unterminated string interpolation.",
                    context=self._where(start_line, start_column),
                )
            token = self._next_token()
            if token.kind != "op":
                continue
            if token.text in _CLOSERS:
                depth.append(token.text)
            elif token.text in {"}", ")", "]"}:
                opener = depth.pop()
                if _CLOSERS[opener] != token.text:
                    raise ScanError(
                        f"Mismatched {token.text!r} inside string interpolation.",
                        context=self._where(token.line, token.column),
                    )

    def _skip_trivia(self) -> None:
        src = self.source
        while self.pos < len(src):
            char = src[self.pos]
            if char in " \t\r\n":
                self._advance(1)
            elif char == "#":
                end = src.find("\n", self.pos)
                self._advance((len(src) if end == -1 else end) - self.pos)
            elif src.startswith("/*", self.pos):
                end = src.find("*/", self.pos + 2)
                if end == -1:
                    raise self._error("Unterminated block comment.")
                self._advance(end + 2 - self.pos)
            else:
                return

    def _advance(self, count: int) -> None:
        for char in self.source[self.pos : self.pos + count]:
            if char == "\n":
                self.line += 1
                self.column = 1
            else:
                self.column += 1
        self.pos += count

    def _where(self, line: int, column: int) -> dict[str, str]:
        return {"path": self.path, "line": str(line), "column": str(column)}

    def _error(self, message: str) -> ScanError:
        return ScanError(message, context=self._where(self.line, self.column))


def _strip_indentation(text: str) -> str:
    lines = text.split("\n")
    if lines and not lines[0].strip():
        lines = lines[1:]
    indents = [len(line) - len(line.lstrip(" ")) for line in lines if line.strip()]
    strip = min(indents, default=0)
    return "\n".join(line[strip:] for line in lines)


def parse(source: str, *, path: str = "<string>") -> Group:
    """Tokenize ``source`` and fold it into a bracket tree rooted at a ``(`` group."""
    tokens = Lexer(source, path=path).tokens()
    root = Group(open="(", line=1, column=1)
    stack = [root]
    for token in tokens:
        if token.kind == "op" and token.text in _CLOSERS:
            group = Group(open=token.text, line=token.line, column=token.column)
            stack[-1].children.append(group)
            stack.append(group)
            continue
        if token.kind == "op" and token.text in {"}", ")", "]"}:
            if len(stack) == 1 or _CLOSERS[stack[-1].open] != token.text:
                raise ScanError(
                    f"Unbalanced {token.text!r}.",
                    hint="Check the file for a missing or extra bracket.",
                    context={"path": path, "line": str(token.line), "column": str(token.column)},
                )
            stack.pop()
            continue
        stack[-1].children.append(token)
    if len(stack) > 1:
        group = stack[-1]
        raise ScanError(
            f"Unclosed {group.open!r}.",
            hint="Check the file for a missing or extra bracket.",
            context={"path": path, "line": str(group.line), "column": str(group.column)},
        )
    return root


__all__ = ["Group", "Lexer", "Node", "Token", "parse"]
