"""Command representation: operands, commands and the program arena.

A parsed program is a flat list of :class:`Command` objects. Program order
is list order, so the command after index ``i`` is ``i + 1`` and the index
``len(commands)`` is the end of the program. Labels refer to commands by
index through the :class:`labels.LabelTable` carried by the program.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Dict, FrozenSet, List, Optional, Tuple, Union

from labels import LabelTable
from lexer import ASMParseError


NUM_REGISTERS = 32
INT64_MIN = -(1 << 63)
INT64_MAX = (1 << 63) - 1
UINT64_MASK = (1 << 64) - 1

OPERAND_IMM = "IMM"
OPERAND_REG = "REG"
OPERAND_STR = "STR"
OPERAND_LABEL = "LABEL"
OPERAND_BASE = "BASE"

BASE_DECIMAL = "d"
BASE_HEX = "x"
BASE_BINARY = "b"
BASE_STRING = "s"
BASES = frozenset({BASE_DECIMAL, BASE_HEX, BASE_BINARY, BASE_STRING})

OP_MOV = "mov"
OP_ADD = "add"
OP_SUB = "sub"
OP_CMP = "cmp"
OP_CMP_U = "cmp_u"
OP_AND = "and"
OP_EOR = "eor"
OP_ORR = "orr"
OP_LSL = "lsl"
OP_LSR = "lsr"
OP_ASR = "asr"
OP_LOAD = "load"
OP_STORE = "store"
OP_PUT = "put"
OP_PRINT = "print"
OP_BRANCH = "b"
OP_CALL = "call"
OP_RET = "ret"

COND_ALWAYS = "AL"
COND_EQUAL = "EQ"
COND_NOT_EQUAL = "NE"
COND_GREATER = "GT"
COND_GREATER_EQUAL = "GE"
COND_LESS = "LT"
COND_LESS_EQUAL = "LE"
CONDITIONS = frozenset(
    {COND_ALWAYS, COND_EQUAL, COND_NOT_EQUAL, COND_GREATER, COND_GREATER_EQUAL, COND_LESS, COND_LESS_EQUAL}
)

_REG = frozenset({OPERAND_REG})
_IMM = frozenset({OPERAND_IMM})
_REG_OR_IMM = frozenset({OPERAND_REG, OPERAND_IMM})
_STR = frozenset({OPERAND_STR})
_LABEL = frozenset({OPERAND_LABEL})
_BASE = frozenset({OPERAND_BASE})
_NONE: FrozenSet[str] = frozenset()

# op -> (takes destination register, allowed kinds for a, allowed kinds for b)
OPERAND_SHAPES: Dict[str, Tuple[bool, FrozenSet[str], FrozenSet[str]]] = {
    OP_MOV: (True, _IMM, _NONE),
    OP_ADD: (True, _REG, _REG_OR_IMM),
    OP_SUB: (True, _REG, _REG_OR_IMM),
    OP_CMP: (False, _REG, _REG_OR_IMM),
    OP_CMP_U: (False, _REG, _REG_OR_IMM),
    OP_AND: (True, _REG, _REG),
    OP_EOR: (True, _REG, _REG),
    OP_ORR: (True, _REG, _REG),
    OP_LSL: (True, _REG, _REG_OR_IMM),
    OP_LSR: (True, _REG, _REG_OR_IMM),
    OP_ASR: (True, _REG, _REG_OR_IMM),
    # load xd <width> <offset>; store xs <offset> <width>. The width is always
    # operand a so both share one shape.
    OP_LOAD: (True, _IMM, _REG_OR_IMM),
    OP_STORE: (True, _IMM, _REG_OR_IMM),
    OP_PUT: (False, _STR, _REG_OR_IMM),
    OP_PRINT: (False, _REG_OR_IMM, _BASE),
    OP_BRANCH: (False, _LABEL, _NONE),
    OP_CALL: (False, _LABEL, _NONE),
    OP_RET: (False, _NONE, _NONE),
}

@dataclass
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


def is_register_index(value: int) -> bool:
    return 0 <= value < NUM_REGISTERS


def to_signed64(value: int) -> int:
    value &= UINT64_MASK
    return value - (1 << 64) if value > INT64_MAX else value


def to_unsigned64(value: int) -> int:
    return value & UINT64_MASK


@dataclass(frozen=True)
class Operand:
    kind: str
    value: Union[int, str]

    @classmethod
    def immediate(cls, value: int) -> "Operand":
        return cls(OPERAND_IMM, value)

    @classmethod
    def register(cls, index: int) -> "Operand":
        return cls(OPERAND_REG, index)

    @classmethod
    def string(cls, text: str) -> "Operand":
        return cls(OPERAND_STR, text)

    @classmethod
    def label(cls, name: str) -> "Operand":
        return cls(OPERAND_LABEL, name)

    @classmethod
    def base(cls, selector: str) -> "Operand":
        return cls(OPERAND_BASE, selector)

    def render(self) -> str:
        if self.kind == OPERAND_REG:
            return f"x{self.value}"
        if self.kind == OPERAND_STR:
            escaped = str(self.value).replace("\\", "\\\\").replace('"', '\\"').replace("\n", "\\n")
            return f'"{escaped}"'
        return str(self.value)


@dataclass
class Command:
    op: str
    destination: Optional[int] = None
    a: Optional[Operand] = None
    b: Optional[Operand] = None
    condition: Optional[str] = None
    location: Optional[SourceLocation] = None

    def render(self) -> str:
        """Render the command back to source syntax (used by traces)."""
        mnemonic = self.op
        if self.op == OP_BRANCH and self.condition not in (None, COND_ALWAYS):
            mnemonic = f"b.{self.condition.lower()}"
        parts: List[str] = [mnemonic]
        if self.destination is not None:
            parts.append(f"x{self.destination}")
        if self.op == OP_STORE:
            # source order is: store xs <offset> <width>
            ordered = [self.b, self.a]
        else:
            ordered = [self.a, self.b]
        parts.extend(operand.render() for operand in ordered if operand is not None)
        return " ".join(parts)


def _fail(command: Command, message: str) -> ASMParseError:
    loc = command.location
    where = f" at {loc.file}:{loc.line}:{loc.column}" if loc else ""
    return ASMParseError(f"{message}{where}")


def _check_operand(command: Command, name: str, operand: Optional[Operand], allowed: FrozenSet[str]) -> None:
    if not allowed:
        if operand is not None:
            raise _fail(command, f"'{command.op}' takes no operand {name}")
        return
    if operand is None:
        raise _fail(command, f"'{command.op}' is missing operand {name}")
    if operand.kind not in allowed:
        raise _fail(command, f"'{command.op}' operand {name} must be {'/'.join(sorted(allowed))}, got {operand.kind}")
    if operand.kind == OPERAND_REG and not is_register_index(int(operand.value)):
        raise _fail(command, f"Register index {operand.value} out of range")
    if operand.kind == OPERAND_IMM and not (INT64_MIN <= int(operand.value) <= INT64_MAX):
        raise _fail(command, f"Immediate {operand.value} does not fit in 64 bits")
    if operand.kind == OPERAND_BASE and operand.value not in BASES:
        raise _fail(command, f"Unknown print base '{operand.value}'")


def validate_command(command: Command) -> None:
    """Check that a command has the operand shape its operation requires.

    Raises ASMParseError describing the first problem found.
    """
    shape = OPERAND_SHAPES.get(command.op)
    if shape is None:
        raise _fail(command, f"Unknown operation '{command.op}'")
    takes_destination, a_kinds, b_kinds = shape
    if takes_destination:
        if command.destination is None:
            raise _fail(command, f"'{command.op}' requires a register")
        if not is_register_index(command.destination):
            raise _fail(command, f"Register index {command.destination} out of range")
    elif command.destination is not None:
        raise _fail(command, f"'{command.op}' does not take a destination register")
    _check_operand(command, "a", command.a, a_kinds)
    _check_operand(command, "b", command.b, b_kinds)
    if command.op == OP_BRANCH:
        if command.condition not in CONDITIONS:
            raise _fail(command, f"Unknown branch condition '{command.condition}'")
    elif command.condition is not None:
        raise _fail(command, f"'{command.op}' does not take a branch condition")


@dataclass
class Program:
    commands: List[Command] = field(default_factory=list)
    labels: LabelTable = field(default_factory=LabelTable)
    filename: str = "<string>"

    def __len__(self) -> int:
        return len(self.commands)

    @property
    def end(self) -> int:
        return len(self.commands)

    def command_at(self, index: int) -> Optional[Command]:
        if 0 <= index < len(self.commands):
            return self.commands[index]
        return None

    def validate(self) -> None:
        for command in self.commands:
            validate_command(command)
        for name in self.labels.names():
            index = self.labels.lookup(name)
            if index is None or not 0 <= index <= self.end:
                raise ASMParseError(f"Label '{name}' points outside the program")
