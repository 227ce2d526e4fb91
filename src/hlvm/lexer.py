"""Lexer (tokenizer).

The lexer is deliberately lenient: characters it does not recognize are
skipped, and an unterminated string runs to the end of the input.
"""

from typing import Iterator, List

from .tokens import (
    Token, TokenType, KEYWORDS, HOST_ESCAPE, COMPOSITE_SYMBOLS, SINGLE_SYMBOLS,
)

_ESCAPES = {"n": "\n", "t": "\t", "r": "\r", "0": "\0"}


class Lexer:
    """Tokenizes source text."""

    def __init__(self, source: str):
        self.source = source
        self.pos = 0
        self.line = 1
        self.column = 1
        self.length = len(source)

    def _current(self) -> str:
        """Get current character or empty string if at end."""
        if self.pos >= self.length:
            return ""
        return self.source[self.pos]

    def _peek(self, offset: int = 1) -> str:
        """Peek ahead at character."""
        pos = self.pos + offset
        if pos >= self.length:
            return ""
        return self.source[pos]

    def _startswith(self, text: str) -> bool:
        return self.source.startswith(text, self.pos)

    def _advance(self, count: int = 1) -> str:
        """Advance ``count`` characters and return them."""
        start = self.pos
        for _ in range(count):
            if self.pos >= self.length:
                break
            ch = self.source[self.pos]
            self.pos += 1
            if ch == "\n":
                self.line += 1
                self.column = 1
            else:
                self.column += 1
        return self.source[start:self.pos]

    def _skip_whitespace(self) -> None:
        """Skip whitespace and // comments."""
        while self.pos < self.length:
            ch = self._current()

            if ch.isspace():
                self._advance()
                continue

            if ch == "/" and self._peek() == "/":
                while self._current() and self._current() != "\n":
                    self._advance()
                continue

            break

    def _read_string(self, quote: str) -> str:
        """Read a string literal."""
        result = []
        self._advance()  # Skip opening quote

        while self._current() and self._current() != quote:
            ch = self._advance()
            if ch == "\\":
                escape = self._advance()
                result.append(_ESCAPES.get(escape, escape))
            else:
                result.append(ch)

        if self._current() == quote:
            self._advance()
        return "".join(result)

    def _read_number(self) -> int:
        """Read a decimal or 0x hexadecimal integer."""
        if self._current() == "0" and self._peek() in ("x", "X"):
            hex_digits = "0123456789abcdefABCDEF"
            if self._peek(2) and self._peek(2) in hex_digits:
                self._advance(2)
                start = self.pos
                while self._current() and self._current() in hex_digits:
                    self._advance()
                return int(self.source[start:self.pos], 16)

        start = self.pos
        while self._current() and self._current() in "0123456789":
            self._advance()
        return int(self.source[start:self.pos])

    def _read_identifier(self) -> str:
        """Read an identifier."""
        start = self.pos
        while self._current() and (
            self._current().isascii() and self._current().isalnum() or self._current() in "_$"
        ):
            self._advance()
        return self.source[start:self.pos]

    def next_token(self) -> Token:
        """Get the next token, or an EOF token at end of input."""
        while True:
            self._skip_whitespace()

            line = self.line
            column = self.column

            if self.pos >= self.length:
                return Token(TokenType.EOF, None, line, column)

            ch = self._current()

            if ch in "'\"":
                return Token(TokenType.STRING, self._read_string(ch), line, column)

            if ch in "0123456789":
                return Token(TokenType.NUMBER, self._read_number(), line, column)

            if ch.isascii() and ch.isalpha() or ch in "_$":
                value = self._read_identifier()
                token_type = TokenType.KEYWORD if value in KEYWORDS else TokenType.IDENTIFIER
                return Token(token_type, value, line, column)

            if self._startswith(HOST_ESCAPE):
                self._advance(len(HOST_ESCAPE))
                return Token(TokenType.HOST_ESCAPE, HOST_ESCAPE, line, column)

            for symbol in COMPOSITE_SYMBOLS:
                if self._startswith(symbol):
                    self._advance(len(symbol))
                    return Token(TokenType.SYMBOL, symbol, line, column)

            if ch in SINGLE_SYMBOLS:
                self._advance()
                return Token(TokenType.SYMBOL, ch, line, column)

            # Unrecognized character
            self._advance()

    def tokenize(self) -> Iterator[Token]:
        """Tokenize the entire source, without the trailing EOF."""
        while True:
            token = self.next_token()
            if token.type == TokenType.EOF:
                break
            yield token


def lex(source: str) -> List[Token]:
    """Turn source text into a list of tokens."""
    return list(Lexer(source).tokenize())
