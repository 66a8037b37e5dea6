from __future__ import annotations
from dataclasses import dataclass
from typing import List


class ASMError(Exception):
    """Base class for interpreter errors."""


class ASMParseError(ASMError):
    """Raised when lexing or parsing fails."""


@dataclass
class Token:
    type: str
    value: str
    line: int
    column: int


KEYWORDS = {
    "mov": "MOV",
    "add": "ADD",
    "sub": "SUB",
    "cmp": "CMP",
    "cmp_u": "CMP_U",
    "and": "AND",
    "eor": "EOR",
    "orr": "ORR",
    "lsl": "LSL",
    "lsr": "LSR",
    "asr": "ASR",
    "load": "LOAD",
    "store": "STORE",
    "put": "PUT",
    "print": "PRINT",
    "b": "B",
    "b.eq": "B.EQ",
    "b.ne": "B.NE",
    "b.gt": "B.GT",
    "b.ge": "B.GE",
    "b.lt": "B.LT",
    "b.le": "B.LE",
    "call": "CALL",
    "ret": "RET",
}

SYMBOLS = {
    ":": "COLON",
    ",": "COMMA",
}

ESCAPES = {
    "n": "\n",
    "t": "\t",
    "r": "\r",
    "\\": "\\",
    '"': '"',
}


class Lexer:
    def __init__(self, text: str, filename: str) -> None:
        self.text = text
        self.filename = filename
        self.index = 0
        self.line = 1
        self.column = 1

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        _advance = self._advance
        symbols = SYMBOLS
        text = self.text
        n = len(text)

        while self.index < n:
            ch: str = text[self.index]
            if ch == " " or ch == "\t" or ch == "\r":
                _advance()
                continue
            if ch == "\n":
                tokens_append(Token("NEWLINE", "\n", self.line, self.column))
                _advance()
                continue
            if ch == ";" or text.startswith("//", self.index):
                self._consume_comment()
                continue
            if ch in symbols:
                tokens_append(Token(symbols[ch], ch, self.line, self.column))
                _advance()
                continue
            if ch == '"':
                tokens_append(self._consume_string())
                continue
            if ch == "-" or ch.isdigit():
                tokens_append(self._consume_number())
                continue
            if self._is_identifier_start(ch):
                tokens_append(self._consume_identifier())
                continue
            raise ASMParseError(
                f"Unexpected character '{ch}' at {self.filename}:{self.line}:{self.column}"
            )
        tokens_append(Token("EOF", "", self.line, self.column))
        return tokens

    def _consume_comment(self) -> None:
        text = self.text
        n = len(text)
        _advance = self._advance
        while self.index < n and text[self.index] != "\n":
            _advance()

    def _consume_number(self) -> Token:
        line, col = self.line, self.column
        chars: List[str] = []
        if self._peek() == "-":
            chars.append("-")
            self._advance()
            if self._eof or not self._peek().isdigit():
                raise ASMParseError(f"Expected digits after '-' at {self.filename}:{line}:{col}")
        # Radix prefixes and digits are validated by the parser; the lexer only
        # groups the alphanumeric run so that "0x1F" stays one token.
        while not self._eof and (self._peek().isalnum() or self._peek() == "_"):
            chars.append(self._peek())
            self._advance()
        return Token("NUMBER", "".join(chars), line, col)

    def _consume_string(self) -> Token:
        line, col = self.line, self.column
        self._advance()  # consume opening quote
        chars: List[str] = []
        while not self._eof:
            ch = self._peek()
            if ch == '"':
                self._advance()
                return Token("STRING", "".join(chars), line, col)
            if ch == "\n":
                raise ASMParseError(
                    f"Unterminated string literal at {self.filename}:{line}:{col}"
                )
            if ch == "\\":
                self._advance()
                if self._eof:
                    break
                esc = self._peek()
                if esc not in ESCAPES:
                    raise ASMParseError(
                        f"Unknown escape '\\{esc}' at {self.filename}:{self.line}:{self.column}"
                    )
                chars.append(ESCAPES[esc])
                self._advance()
                continue
            chars.append(ch)
            self._advance()
        raise ASMParseError(
            f"Unterminated string literal at {self.filename}:{line}:{col}"
        )

    def _consume_identifier(self) -> Token:
        line, col = self.line, self.column
        chars: List[str] = []
        text = self.text
        n = len(text)
        _advance = self._advance
        while self.index < n and self._is_identifier_part(text[self.index]):
            chars.append(text[self.index])
            _advance()
        value = "".join(chars)
        token_type: str = KEYWORDS.get(value, "IDENT")
        return Token(token_type, value, line, col)

    def _is_identifier_start(self, ch: str) -> bool:
        return ch.isalpha() or ch in "_."

    def _is_identifier_part(self, ch: str) -> bool:
        return ch.isalnum() or ch in "_."

    @property
    def _eof(self) -> bool:
        return self.index >= len(self.text)

    def _peek(self) -> str:
        return self.text[self.index]

    def _advance(self) -> None:
        if self.text[self.index] == "\n":
            self.line += 1
            self.column = 1
        else:
            self.column += 1
        self.index += 1
