"""Novum Lexer — pull-based tokenizer with line/column tracking.

The parser drives the lexer one token at a time through ``next()`` and
reads the classified token back through the accessors (``token``,
``identifier``, ``number``, ``is_float``, ``string``, ``char``,
``location``) or as a ``Token`` snapshot via ``current()``.

The scanner holds exactly one pending character. Source text is handled
as Unicode code points; an embedded NUL, an ill-formed UTF-8 sequence or
a byte-order mark anywhere but the first position is a lexical error.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum, auto
from typing import Optional, Union

from novum.compiler.errors import SourceLocation, lexical_error, CompileError


class TokenType(Enum):
    EOF = auto()
    IDENT = auto()
    NUMBER = auto()
    STRING = auto()

    # Punctuation
    LPAREN = auto()
    RPAREN = auto()
    LBRACE = auto()
    RBRACE = auto()
    EXTERN = auto()
    ASSIGN = auto()
    EQUAL = auto()

    # Keywords
    FUN = auto()
    RETURN = auto()
    TRUE = auto()
    FALSE = auto()
    IF = auto()
    ELSE = auto()
    FOR = auto()
    IN = auto()

    UNKNOWN = auto()


KEYWORDS: dict[str, TokenType] = {
    "fun": TokenType.FUN,
    "return": TokenType.RETURN,
    "true": TokenType.TRUE,
    "false": TokenType.FALSE,
    "if": TokenType.IF,
    "else": TokenType.ELSE,
    "for": TokenType.FOR,
    "in": TokenType.IN,
}

PUNCTUATION: dict[str, TokenType] = {
    "(": TokenType.LPAREN,
    ")": TokenType.RPAREN,
    "{": TokenType.LBRACE,
    "}": TokenType.RBRACE,
    "@": TokenType.EXTERN,
}

BYTE_ORDER_MARK = "\ufeff"

Number = Union[int, float]


def lookup(identifier: str) -> TokenType:
    """Classify an identifier as a keyword or a plain identifier."""
    return KEYWORDS.get(identifier, TokenType.IDENT)


@dataclass
class Token:
    type: TokenType
    value: str
    location: SourceLocation
    number: Optional[Number] = None

    @property
    def is_float(self) -> bool:
        return isinstance(self.number, float)

    def __repr__(self) -> str:
        return f"Token({self.type.name}, {self.value!r}, {self.location})"


class Lexer:
    """Tokenizer for Novum source code."""

    def __init__(self, source: Union[str, bytes], filename: str = "<stdin>",
                 skip_spaces: bool = True, skip_newlines: bool = True):
        if isinstance(source, bytes):
            # Ill-formed bytes survive as lone surrogates and are rejected
            # when the cursor reaches them.
            source = source.decode("utf-8", errors="surrogateescape")
        self.source = source
        self.filename = filename
        self.skip_spaces = skip_spaces
        self.skip_newlines = skip_newlines

        self.pos = 0
        self.line = 1
        self.column = 0
        self.last_char: Optional[str] = None

        self.token = TokenType.EOF
        self.identifier = ""
        self.number: Number = 0
        self.is_float = False
        self.string = ""
        self.char = ""
        self.location = SourceLocation(1, 1, filename)

        self._advance_char()
        if self.last_char == BYTE_ORDER_MARK:
            self._advance_char()

    # -------------------------------------------------------------------
    # Character cursor
    # -------------------------------------------------------------------

    def _loc(self) -> SourceLocation:
        return SourceLocation(self.line, self.column, self.filename)

    def _peek(self) -> Optional[str]:
        if self.pos < len(self.source):
            return self.source[self.pos]
        return None

    def _advance_char(self) -> None:
        if self.pos >= len(self.source):
            if self.last_char is not None:
                self.column += 1
            self.last_char = None
            return

        if self.last_char == "\n":
            self.line += 1
            self.column = 0
        self.column += 1

        ch = self.source[self.pos]
        if ch == "\0":
            raise CompileError(lexical_error("Null character in source", self._loc()))
        if "\ud800" <= ch <= "\udfff":
            raise CompileError(lexical_error("Illegal UTF-8 encoding", self._loc()))
        if ch == BYTE_ORDER_MARK and self.pos > 0:
            raise CompileError(lexical_error(
                "Byte-order mark is only allowed as the first character", self._loc(),
            ))

        self.last_char = ch
        self.pos += 1

    # -------------------------------------------------------------------
    # Skipping
    # -------------------------------------------------------------------

    def _is_skippable_layout(self, ch: str) -> bool:
        if ch in (" ", "\t"):
            return self.skip_spaces
        if ch in ("\r", "\n"):
            return self.skip_newlines
        return False

    def _skip_line_comment(self) -> None:
        while self.last_char is not None and self.last_char not in ("\r", "\n"):
            self._advance_char()

    def _skip_block_comment(self) -> None:
        loc = self._loc()
        self._advance_char()  # '/'
        self._advance_char()  # '*'
        while True:
            if self.last_char is None:
                raise CompileError(lexical_error("Unterminated block comment", loc))
            if self.last_char == "*" and self._peek() == "/":
                self._advance_char()
                self._advance_char()
                return
            self._advance_char()

    # -------------------------------------------------------------------
    # Classification
    # -------------------------------------------------------------------

    def _set(self, token: TokenType, loc: SourceLocation) -> TokenType:
        self.token = token
        self.location = loc
        return token

    def _read_identifier(self, loc: SourceLocation) -> TokenType:
        chars = [self.last_char]
        self._advance_char()
        while self.last_char is not None and (self.last_char.isalpha() or self.last_char == "_"):
            chars.append(self.last_char)
            self._advance_char()
        self.identifier = "".join(chars)
        return self._set(lookup(self.identifier), loc)

    def _read_number(self, loc: SourceLocation) -> TokenType:
        chars: list[str] = []
        is_float = False
        while self.last_char is not None and (self.last_char.isdecimal() or self.last_char == "."):
            if self.last_char == ".":
                if is_float:
                    raise CompileError(lexical_error(
                        "Invalid use of '.' in numeric literal", self._loc(),
                    ))
                is_float = True
            chars.append(self.last_char)
            self._advance_char()

        text = "".join(chars)
        self.identifier = text
        self.is_float = is_float
        self.number = float(text) if is_float else int(text)
        return self._set(TokenType.NUMBER, loc)

    def _read_string(self, loc: SourceLocation) -> TokenType:
        self._advance_char()  # opening quote
        chars: list[str] = []
        while self.last_char != '"':
            if self.last_char is None:
                raise CompileError(lexical_error("Unterminated string literal", loc))
            chars.append(self.last_char)
            self._advance_char()
        self._advance_char()  # closing quote
        self.string = "".join(chars)
        return self._set(TokenType.STRING, loc)

    def _read_equal(self, loc: SourceLocation) -> TokenType:
        self._advance_char()
        if self.last_char == "=":
            self._advance_char()
            return self._set(TokenType.EQUAL, loc)
        return self._set(TokenType.ASSIGN, loc)

    def next(self) -> TokenType:
        """Advance to the next token and return its type."""
        while self.last_char is not None:
            ch = self.last_char
            if self._is_skippable_layout(ch):
                self._advance_char()
            elif ch == "/" and self._peek() == "/":
                self._skip_line_comment()
            elif ch == "/" and self._peek() == "*":
                self._skip_block_comment()
            else:
                break

        loc = self._loc()
        ch = self.last_char
        if ch is None:
            return self._set(TokenType.EOF, loc)

        if ch.isalpha():
            return self._read_identifier(loc)

        if ch.isdecimal() or (ch == "." and (self._peek() or "").isdecimal()):
            return self._read_number(loc)

        if ch == '"':
            return self._read_string(loc)

        if ch == "=":
            return self._read_equal(loc)

        if ch in PUNCTUATION:
            self._advance_char()
            return self._set(PUNCTUATION[ch], loc)

        self.char = ch
        self._advance_char()
        return self._set(TokenType.UNKNOWN, loc)

    def current(self) -> Token:
        """Snapshot of the token produced by the last ``next()`` call."""
        tt = self.token
        if tt == TokenType.NUMBER:
            return Token(tt, self.identifier, self.location, number=self.number)
        if tt == TokenType.STRING:
            return Token(tt, self.string, self.location)
        if tt == TokenType.UNKNOWN:
            return Token(tt, self.char, self.location)
        if tt == TokenType.IDENT or tt in KEYWORDS.values():
            return Token(tt, self.identifier, self.location)
        if tt == TokenType.EQUAL:
            return Token(tt, "==", self.location)
        if tt == TokenType.ASSIGN:
            return Token(tt, "=", self.location)
        for text, punct in PUNCTUATION.items():
            if punct == tt:
                return Token(tt, text, self.location)
        return Token(tt, "", self.location)


def tokenize(source: Union[str, bytes], filename: str = "<stdin>") -> list[Token]:
    """Convenience function to tokenize Novum source code."""
    lexer = Lexer(source, filename)
    tokens: list[Token] = []
    while True:
        lexer.next()
        tokens.append(lexer.current())
        if lexer.token == TokenType.EOF:
            return tokens
