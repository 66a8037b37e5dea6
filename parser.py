from __future__ import annotations
from typing import Callable, Dict, List, Optional

from commands import (
    BASES,
    COND_ALWAYS,
    COND_EQUAL,
    COND_GREATER,
    COND_GREATER_EQUAL,
    COND_LESS,
    COND_LESS_EQUAL,
    COND_NOT_EQUAL,
    INT64_MIN,
    NUM_REGISTERS,
    UINT64_MASK,
    Command,
    Operand,
    Program,
    SourceLocation,
    to_signed64,
)
from labels import LabelTable
from lexer import ASMParseError, Lexer, Token


# int() alone would also accept "_" separators and a repeated radix prefix.
RADIX_DIGITS: Dict[int, str] = {
    2: "01",
    10: "0123456789",
    16: "0123456789abcdefABCDEF",
}

BRANCH_CONDITIONS: Dict[str, str] = {
    "B": COND_ALWAYS,
    "B.EQ": COND_EQUAL,
    "B.NE": COND_NOT_EQUAL,
    "B.GT": COND_GREATER,
    "B.GE": COND_GREATER_EQUAL,
    "B.LT": COND_LESS,
    "B.LE": COND_LESS_EQUAL,
}


class Parser:
    def __init__(self, tokens: List[Token], filename: str, source_lines: List[str]) -> None:
        self.tokens = tokens
        self.filename = filename
        self.source_lines = source_lines
        self.index = 0
        self.commands: List[Command] = []
        self.labels = LabelTable()
        self._pending_labels: List[Token] = []
        self._handlers: Dict[str, Callable[[Token], Command]] = {
            "MOV": self._parse_mov,
            "ADD": self._parse_arithmetic,
            "SUB": self._parse_arithmetic,
            "CMP": self._parse_compare,
            "CMP_U": self._parse_compare,
            "AND": self._parse_bitwise,
            "EOR": self._parse_bitwise,
            "ORR": self._parse_bitwise,
            "LSL": self._parse_arithmetic,
            "LSR": self._parse_arithmetic,
            "ASR": self._parse_arithmetic,
            "LOAD": self._parse_load,
            "STORE": self._parse_store,
            "PUT": self._parse_put,
            "PRINT": self._parse_print,
            "CALL": self._parse_call,
            "RET": self._parse_ret,
        }
        for token_type in BRANCH_CONDITIONS:
            self._handlers[token_type] = self._parse_branch

    def parse(self) -> Program:
        while self._peek().type != "EOF":
            if self._match("NEWLINE"):
                continue
            if self._peek().type == "IDENT" and self._peek_next().type == "COLON":
                self._pending_labels.append(self._consume("IDENT"))
                self._consume("COLON")
                continue
            command = self._parse_command()
            self._bind_pending_labels(len(self.commands))
            self.commands.append(command)
            self._consume_end_of_command()
        # Labels trailing the last command mark the end of the program.
        self._bind_pending_labels(len(self.commands))
        self.labels.seal()
        program = Program(commands=self.commands, labels=self.labels, filename=self.filename)
        program.validate()
        return program

    def _bind_pending_labels(self, index: int) -> None:
        for token in self._pending_labels:
            if not self.labels.insert(token.value, index):
                raise ASMParseError(
                    f"Duplicate label '{token.value}' at {self.filename}:{token.line}:{token.column}"
                )
        self._pending_labels.clear()

    def _parse_command(self) -> Command:
        token = self._peek()
        handler = self._handlers.get(token.type)
        if handler is None:
            raise ASMParseError(
                f"Expected an instruction but found {token.type} '{token.value}' at "
                f"{self.filename}:{token.line}:{token.column}"
            )
        self.index += 1
        return handler(token)

    # ---- instructions ----

    def _parse_mov(self, keyword: Token) -> Command:
        destination = self._parse_register()
        value = self._parse_immediate()
        return self._command(keyword, destination=destination, a=value)

    def _parse_arithmetic(self, keyword: Token) -> Command:
        # add/sub/lsl/lsr/asr xd xa (xb|imm)
        destination = self._parse_register()
        first = Operand.register(self._parse_register())
        second = self._parse_register_or_immediate()
        return self._command(keyword, destination=destination, a=first, b=second)

    def _parse_compare(self, keyword: Token) -> Command:
        first = Operand.register(self._parse_register())
        second = self._parse_register_or_immediate()
        return self._command(keyword, a=first, b=second)

    def _parse_bitwise(self, keyword: Token) -> Command:
        destination = self._parse_register()
        first = Operand.register(self._parse_register())
        second = Operand.register(self._parse_register())
        return self._command(keyword, destination=destination, a=first, b=second)

    def _parse_load(self, keyword: Token) -> Command:
        destination = self._parse_register()
        width = self._parse_immediate()
        offset = self._parse_register_or_immediate()
        return self._command(keyword, destination=destination, a=width, b=offset)

    def _parse_store(self, keyword: Token) -> Command:
        source = self._parse_register()
        offset = self._parse_register_or_immediate()
        width = self._parse_immediate()
        return self._command(keyword, destination=source, a=width, b=offset)

    def _parse_put(self, keyword: Token) -> Command:
        self._skip_separator()
        string_token = self._consume("STRING")
        if "\0" in string_token.value:
            raise ASMParseError(
                f"String literal may not contain a null byte at "
                f"{self.filename}:{string_token.line}:{string_token.column}"
            )
        offset = self._parse_register_or_immediate()
        return self._command(keyword, a=Operand.string(string_token.value), b=offset)

    def _parse_print(self, keyword: Token) -> Command:
        value = self._parse_register_or_immediate()
        self._skip_separator()
        base_token = self._peek()
        # The selectors overlap with other lexemes ("b" is the branch
        # mnemonic, "x" an identifier), so match on the raw text.
        if base_token.value not in BASES:
            raise ASMParseError(
                f"Expected print base (d, x, b, s) but found '{base_token.value}' at "
                f"{self.filename}:{base_token.line}:{base_token.column}"
            )
        self.index += 1
        return self._command(keyword, a=value, b=Operand.base(base_token.value))

    def _parse_branch(self, keyword: Token) -> Command:
        target = self._parse_label_reference()
        return self._command(keyword, a=target, condition=BRANCH_CONDITIONS[keyword.type])

    def _parse_call(self, keyword: Token) -> Command:
        return self._command(keyword, a=self._parse_label_reference())

    def _parse_ret(self, keyword: Token) -> Command:
        return self._command(keyword)

    # ---- operands ----

    def _parse_register(self) -> int:
        self._skip_separator()
        token = self._peek()
        index = self._register_index(token)
        if index is None:
            raise ASMParseError(
                f"Expected register x0-x{NUM_REGISTERS - 1} but found '{token.value or token.type}' at "
                f"{self.filename}:{token.line}:{token.column}"
            )
        self.index += 1
        return index

    def _parse_immediate(self) -> Operand:
        self._skip_separator()
        token = self._consume("NUMBER")
        return Operand.immediate(self._number_value(token))

    def _parse_register_or_immediate(self) -> Operand:
        self._skip_separator()
        token = self._peek()
        if token.type == "NUMBER":
            return self._parse_immediate()
        return Operand.register(self._parse_register())

    def _parse_label_reference(self) -> Operand:
        self._skip_separator()
        token = self._consume("IDENT")
        return Operand.label(token.value)

    def _register_index(self, token: Token) -> Optional[int]:
        if token.type != "IDENT" or len(token.value) < 2 or token.value[0] != "x":
            return None
        digits = token.value[1:]
        if not digits.isdigit():
            return None
        index = int(digits)
        return index if 0 <= index < NUM_REGISTERS else None

    def _number_value(self, token: Token) -> int:
        text = token.value
        negative = text.startswith("-")
        if negative:
            text = text[1:]
        base = 10
        if len(text) > 2 and text[0] == "0" and text[1] in "xX":
            text, base = text[2:], 16
        elif len(text) > 2 and text[0] == "0" and text[1] in "bB":
            text, base = text[2:], 2
        if not text or any(ch not in RADIX_DIGITS[base] for ch in text):
            raise ASMParseError(
                f"Invalid numeric literal '{token.value}' at {self.filename}:{token.line}:{token.column}"
            )
        value = int(text, base)
        if negative:
            value = -value
        if value < INT64_MIN or value > UINT64_MASK:
            raise ASMParseError(
                f"Numeric literal '{token.value}' does not fit in 64 bits at "
                f"{self.filename}:{token.line}:{token.column}"
            )
        return to_signed64(value)

    # ---- token helpers ----

    def _command(self, keyword: Token, **fields: object) -> Command:
        op = keyword.value if keyword.type not in BRANCH_CONDITIONS else "b"
        return Command(op=op, location=self._location_from_token(keyword), **fields)  # type: ignore[arg-type]

    def _skip_separator(self) -> None:
        self._match("COMMA")

    def _consume_end_of_command(self) -> None:
        token = self._peek()
        if token.type == "EOF":
            return
        if token.type != "NEWLINE":
            raise ASMParseError(
                f"Expected end of line but found '{token.value}' at {self.filename}:{token.line}:{token.column}"
            )
        self.index += 1

    def _consume(self, token_type: str) -> Token:
        token = self._peek()
        if token.type != token_type:
            raise ASMParseError(
                f"Expected token {token_type} but found {token.type} at {self.filename}:{token.line}:{token.column}"
            )
        self.index += 1
        return token

    def _match(self, token_type: str) -> bool:
        if self._peek().type == token_type:
            self.index += 1
            return True
        return False

    def _peek(self) -> Token:
        return self.tokens[self.index]

    def _peek_next(self) -> Token:
        if self.index + 1 < len(self.tokens):
            return self.tokens[self.index + 1]
        return self.tokens[-1]

    def _location_from_token(self, token: Token) -> SourceLocation:
        line_index = token.line - 1
        statement = ""
        if 0 <= line_index < len(self.source_lines):
            statement = self.source_lines[line_index].strip()
        return SourceLocation(file=self.filename, line=token.line, column=token.column, statement=statement)


def parse_source(text: str, filename: str = "<string>") -> Program:
    tokens = Lexer(text, filename).tokenize()
    return Parser(tokens, filename, text.splitlines()).parse()
