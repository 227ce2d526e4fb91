"""Token types for the lexer."""

from dataclasses import dataclass
from enum import Enum, auto
from typing import Any


class TokenType(Enum):
    """Token kinds."""

    NUMBER = auto()
    STRING = auto()
    IDENTIFIER = auto()
    KEYWORD = auto()
    SYMBOL = auto()
    HOST_ESCAPE = auto()  # !!!!

    # Parser sentinel, never produced by lex()
    EOF = auto()


KEYWORDS = frozenset([
    "let", "const", "var",
    "if", "else",
    "while", "do", "for",
    "return",
    "function", "fn",
])

HOST_ESCAPE = "!!!!"

# Longest first: ">>>" must win over ">>"
COMPOSITE_SYMBOLS = (">>>", "==", "!=", "<=", ">=", "<<", ">>", "&&", "||")

SINGLE_SYMBOLS = frozenset("()[]{};:.,+-*/%^<>=&!")


@dataclass(frozen=True)
class Token:
    """A token from the source."""

    type: TokenType
    value: Any
    line: int = 0
    column: int = 0

    def __repr__(self) -> str:
        if self.value is not None:
            return f"Token({self.type.name}, {self.value!r}, {self.line}:{self.column})"
        return f"Token({self.type.name}, {self.line}:{self.column})"

    def is_symbol(self, *values: str) -> bool:
        return self.type == TokenType.SYMBOL and self.value in values

    def is_keyword(self, *values: str) -> bool:
        return self.type == TokenType.KEYWORD and self.value in values
