from __future__ import annotations
import json
from collections import deque
from dataclasses import dataclass
from typing import Any, Callable, Deque, Dict, List, Optional, Tuple

import numpy as np
from numpy.typing import NDArray

from commands import (
    BASE_BINARY,
    BASE_DECIMAL,
    BASE_HEX,
    BASE_STRING,
    COND_ALWAYS,
    COND_EQUAL,
    COND_GREATER,
    COND_GREATER_EQUAL,
    COND_LESS,
    COND_LESS_EQUAL,
    COND_NOT_EQUAL,
    NUM_REGISTERS,
    OP_ADD,
    OP_AND,
    OP_ASR,
    OP_BRANCH,
    OP_CALL,
    OP_CMP,
    OP_CMP_U,
    OP_EOR,
    OP_LOAD,
    OP_LSL,
    OP_LSR,
    OP_MOV,
    OP_ORR,
    OP_PRINT,
    OP_PUT,
    OP_RET,
    OP_STORE,
    OP_SUB,
    OPERAND_BASE,
    OPERAND_IMM,
    OPERAND_REG,
    OPERAND_STR,
    Command,
    Operand,
    Program,
    SourceLocation,
    is_register_index,
    to_signed64,
    to_unsigned64,
)
from extensions import HookRegistry, RuntimeServices, StepContext
from lexer import ASMError
from memory import MEM_CAPACITY, VALID_WIDTHS, Memory
from parser import parse_source


DEFAULT_EXIT_PREFIX = ".L"
MAX_SHIFT = 63
DEFAULT_HISTORY = 1000

ERROR_REGISTER = "register"
ERROR_MEMORY = "memory"
ERROR_SHIFT = "shift"
ERROR_LABEL = "label"
ERROR_PRINT = "print"
ERROR_EXTENSION = "extension"
ERROR_INTERNAL = "internal"

STATUS_CONTINUE = "continue"
STATUS_HALT = "halt"
STATUS_ERROR = "error"

TOP_LEVEL = "<top-level>"


class ASMRuntimeError(ASMError):
    """Raised for runtime faults."""

    def __init__(
        self,
        message: str,
        *,
        kind: str,
        location: Optional[SourceLocation] = None,
        rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.kind = kind
        self.location = location
        self.rule = rule
        self.step_index: Optional[int] = None
        # (frame name, location) pairs, outermost first, captured before the
        # call stack is drained.
        self.frames: List[Tuple[str, Optional[SourceLocation]]] = []


@dataclass
class CallFrame:
    name: str
    registers: NDArray[np.int64]
    resume: int
    call_location: Optional[SourceLocation]


@dataclass(frozen=True)
class StepOutcome:
    status: str
    next_index: Optional[int] = None
    error: Optional[ASMRuntimeError] = None

    @property
    def ok(self) -> bool:
        return self.status != STATUS_ERROR


@dataclass(frozen=True)
class RunResult:
    ok: bool
    error: Optional[ASMRuntimeError]
    steps: int


@dataclass
class StateEntry:
    step_index: int
    state_id: str
    index: int
    depth: int
    source_location: Optional[SourceLocation]
    statement: Optional[str]
    registers: Optional[List[int]]
    rewrite_record: Dict[str, Any]


class StateLogger:
    """Keeps the most recent executed steps for tracebacks and tooling."""

    def __init__(self, verbose: bool, history: int = DEFAULT_HISTORY) -> None:
        self.verbose = verbose
        self.entries: Deque[StateEntry] = deque(maxlen=history)
        self.next_state_index = 0
        self.last_state_id = "seed"

    def record(
        self,
        *,
        index: int,
        depth: int,
        location: Optional[SourceLocation],
        statement: Optional[str],
        rewrite_record: Dict[str, Any],
        registers: Optional[List[int]] = None,
    ) -> StateEntry:
        rewrite_record.setdefault("from_state_id", self.last_state_id)
        step_index = self.next_state_index
        state_id = f"s_{step_index:06d}"
        rewrite_record["to_state_id"] = state_id
        entry = StateEntry(
            step_index=step_index,
            state_id=state_id,
            index=index,
            depth=depth,
            source_location=location,
            statement=statement,
            registers=registers,
            rewrite_record=rewrite_record,
        )
        self.entries.append(entry)
        self.last_state_id = state_id
        self.next_state_index += 1
        return entry

    @property
    def last(self) -> Optional[StateEntry]:
        return self.entries[-1] if self.entries else None


class Interpreter:
    def __init__(
        self,
        program: Optional[Program] = None,
        *,
        memory_capacity: int = MEM_CAPACITY,
        exit_label_prefix: Optional[str] = DEFAULT_EXIT_PREFIX,
        verbose: bool = False,
        output_sink: Optional[Callable[[str], None]] = None,
        services: Optional[RuntimeServices] = None,
        filename: str = "<string>",
    ) -> None:
        self.filename = filename
        self.verbose = verbose
        self.exit_label_prefix = exit_label_prefix or None
        self.output_sink = output_sink or (lambda text: print(text))
        self.services = services or RuntimeServices()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.memory = Memory(memory_capacity)
        self.registers: NDArray[np.int64] = np.zeros(NUM_REGISTERS, dtype=np.int64)
        self.is_greater = False
        self.is_equal = False
        self.is_less = False
        self.call_stack: List[CallFrame] = []
        self.had_error = False
        self.error: Optional[ASMRuntimeError] = None
        # Failures raised by on_error hooks while reporting the first error.
        self.hook_errors: List[ASMRuntimeError] = []
        self.logger = StateLogger(verbose=verbose)
        self.program: Optional[Program] = None
        self.pc: Optional[int] = None
        self._dispatch: Dict[str, Callable[[Command, int], Optional[int]]] = {
            OP_MOV: self._exec_mov,
            OP_ADD: self._exec_add_sub,
            OP_SUB: self._exec_add_sub,
            OP_CMP: self._exec_compare,
            OP_CMP_U: self._exec_compare,
            OP_AND: self._exec_bitwise,
            OP_EOR: self._exec_bitwise,
            OP_ORR: self._exec_bitwise,
            OP_LSL: self._exec_shift,
            OP_LSR: self._exec_shift,
            OP_ASR: self._exec_shift,
            OP_LOAD: self._exec_load,
            OP_STORE: self._exec_store,
            OP_PUT: self._exec_put,
            OP_PRINT: self._exec_print,
            OP_BRANCH: self._exec_branch,
            OP_CALL: self._exec_call,
            OP_RET: self._exec_ret,
        }
        if program is not None:
            self.load_program(program)

    # ---- program loading ----

    def load_source(self, text: str, filename: Optional[str] = None) -> Program:
        if filename is not None:
            self.filename = filename
        program = parse_source(text, self.filename)
        self.load_program(program)
        return program

    def load_program(self, program: Program) -> None:
        if not program.labels.sealed:
            program.validate()
            program.labels.seal()
        self.program = program
        self.pc = 0 if program.commands else None

    def reset(self) -> None:
        """Return the machine to its power-on state, keeping the program."""
        self.registers.fill(0)
        self.is_greater = self.is_equal = self.is_less = False
        self.call_stack.clear()
        self.memory.reset()
        self.had_error = False
        self.error = None
        self.hook_errors.clear()
        self.logger = StateLogger(verbose=self.verbose)
        if self.program is not None:
            self.pc = 0 if self.program.commands else None

    @property
    def halted(self) -> bool:
        return self.pc is None

    def register(self, index: int) -> int:
        return self._read_register(index)

    # ---- execution ----

    def run(self, program: Optional[Program] = None) -> RunResult:
        if program is not None:
            self.load_program(program)
        if self.program is None:
            raise ASMError("No program loaded")
        if self.had_error:
            return RunResult(ok=False, error=self.error, steps=0)
        steps = 0
        try:
            self._emit_event("program_start", self, self.program)
        except ASMRuntimeError as error:
            self._fail(error, None)
        while not self.had_error and self.pc is not None:
            self.step()
            steps += 1
        self.call_stack.clear()
        result = RunResult(ok=not self.had_error, error=self.error, steps=steps)
        if not self.had_error:
            try:
                self._emit_event("program_end", self, result)
            except ASMRuntimeError as error:
                self._fail(error, None)
                result = RunResult(ok=False, error=self.error, steps=steps)
        return result

    def step(self) -> StepOutcome:
        """Execute the command under the cursor and advance."""
        if self.had_error:
            return StepOutcome(STATUS_ERROR, error=self.error)
        if self.program is None or self.pc is None:
            return StepOutcome(STATUS_HALT)
        index = self.pc
        command = self.program.command_at(index)
        if command is None:
            self.pc = None
            return StepOutcome(STATUS_HALT)
        try:
            self._log_step(index, command)
            self._emit_event("before_command", self, index, command)
            handler = self._dispatch.get(command.op)
            if handler is None:
                raise ASMRuntimeError(f"Unknown operation '{command.op}'", kind=ERROR_INTERNAL)
            next_index = handler(command, index)
            self._emit_event("after_command", self, index, command)
            self._after_step(index, command)
        except ASMRuntimeError as error:
            self._fail(error, command)
            return StepOutcome(STATUS_ERROR, error=error)
        except Exception as exc:
            wrapped = ASMRuntimeError(f"Internal interpreter error: {exc}", kind=ERROR_INTERNAL, rule="internal")
            self._fail(wrapped, command)
            return StepOutcome(STATUS_ERROR, error=wrapped)
        if next_index is None or next_index >= self.program.end:
            self.pc = None
            self.call_stack.clear()
            return StepOutcome(STATUS_HALT)
        self.pc = next_index
        return StepOutcome(STATUS_CONTINUE, next_index=next_index)

    def _fail(self, error: ASMRuntimeError, command: Optional[Command]) -> None:
        if command is not None:
            if error.location is None:
                error.location = command.location
            if error.rule is None:
                error.rule = command.op
        last = self.logger.last
        if last is not None:
            error.step_index = last.step_index
        names = [TOP_LEVEL] + [frame.name for frame in self.call_stack]
        locations = [frame.call_location for frame in self.call_stack] + [error.location]
        error.frames = list(zip(names, locations))
        self.had_error = True
        self.error = error
        self.pc = None
        self.call_stack.clear()
        try:
            self._emit_event("on_error", self, error)
        except ASMRuntimeError as hook_error:
            # Kept aside: the fault that stopped the program stays the reported error.
            hook_error.step_index = error.step_index
            self.hook_errors.append(hook_error)

    # ---- operand access ----

    def _read_register(self, index: int) -> int:
        if not is_register_index(index):
            raise ASMRuntimeError(f"Register index {index} out of range", kind=ERROR_REGISTER)
        return int(self.registers[index])

    def _write_register(self, index: Optional[int], value: int) -> None:
        if index is None or not is_register_index(index):
            raise ASMRuntimeError(f"Register index {index} out of range", kind=ERROR_REGISTER)
        self.registers[index] = to_signed64(value)

    def _value(self, operand: Optional[Operand]) -> int:
        if operand is not None and operand.kind == OPERAND_IMM:
            return int(operand.value)
        if operand is not None and operand.kind == OPERAND_REG:
            return self._read_register(int(operand.value))
        raise ASMRuntimeError(
            f"Expected register or immediate operand, got {operand.kind if operand else 'nothing'}",
            kind=ERROR_INTERNAL,
        )

    def _register_value(self, operand: Optional[Operand]) -> int:
        # Bitwise operands are register indices whatever their tag says.
        if operand is None or operand.kind not in (OPERAND_REG, OPERAND_IMM):
            raise ASMRuntimeError("Expected register operand", kind=ERROR_INTERNAL)
        return self._read_register(int(operand.value))

    # ---- instructions ----

    def _exec_mov(self, command: Command, index: int) -> Optional[int]:
        self._write_register(command.destination, self._value(command.a))
        return index + 1

    def _exec_add_sub(self, command: Command, index: int) -> Optional[int]:
        a = to_unsigned64(self._value(command.a))
        b = to_unsigned64(self._value(command.b))
        result = a + b if command.op == OP_ADD else a - b
        self._write_register(command.destination, result)
        return index + 1

    def _exec_compare(self, command: Command, index: int) -> Optional[int]:
        a = self._value(command.a)
        b = self._value(command.b)
        if command.op == OP_CMP:
            self.is_greater = a > b
        else:
            self.is_greater = to_unsigned64(a) > to_unsigned64(b)
        self.is_equal = a == b
        self.is_less = not (self.is_greater or self.is_equal)
        return index + 1

    def _exec_bitwise(self, command: Command, index: int) -> Optional[int]:
        a = self._register_value(command.a)
        b = self._register_value(command.b)
        if command.op == OP_AND:
            result = a & b
        elif command.op == OP_EOR:
            result = a ^ b
        else:
            result = a | b
        self._write_register(command.destination, result)
        return index + 1

    def _exec_shift(self, command: Command, index: int) -> Optional[int]:
        a = self._value(command.a)
        amount = self._value(command.b)
        if amount < 0 or amount > MAX_SHIFT:
            raise ASMRuntimeError(f"Shift amount {amount} outside 0-{MAX_SHIFT}", kind=ERROR_SHIFT)
        if command.op == OP_LSL:
            result = a << amount
        elif command.op == OP_LSR:
            result = to_unsigned64(a) >> amount
        else:
            result = a >> amount
        self._write_register(command.destination, result)
        return index + 1

    def _exec_load(self, command: Command, index: int) -> Optional[int]:
        width = self._value(command.a)
        offset = self._value(command.b)
        # Cleared before the read so a failed load leaves a known value.
        self._write_register(command.destination, 0)
        value = self.memory.read_int(offset, width)
        if value is None:
            raise self._memory_error(offset, width)
        self._write_register(command.destination, value)
        return index + 1

    def _exec_store(self, command: Command, index: int) -> Optional[int]:
        value = self._read_register(-1 if command.destination is None else command.destination)
        width = self._value(command.a)
        offset = self._value(command.b)
        if not self.memory.write_int(value, offset, width):
            raise self._memory_error(offset, width)
        return index + 1

    def _exec_put(self, command: Command, index: int) -> Optional[int]:
        if command.a is None or command.a.kind != OPERAND_STR:
            raise ASMRuntimeError("put expects a string literal", kind=ERROR_INTERNAL)
        offset = self._value(command.b)
        data = str(command.a.value).encode("utf-8") + b"\0"
        for i, byte in enumerate(data):
            if not self.memory.write_int(byte, offset + i, 1):
                raise ASMRuntimeError(
                    f"String of {len(data)} bytes at offset {offset} exceeds memory of {self.memory.capacity} bytes",
                    kind=ERROR_MEMORY,
                )
        return index + 1

    def _exec_print(self, command: Command, index: int) -> Optional[int]:
        value = self._value(command.a)
        if command.b is None or command.b.kind != OPERAND_BASE:
            raise ASMRuntimeError("print requires a base selector", kind=ERROR_PRINT)
        base = command.b.value
        if base == BASE_DECIMAL:
            text = str(value)
        elif base == BASE_HEX:
            text = "0x" + format(to_unsigned64(value), "x")
        elif base == BASE_BINARY:
            text = "0b" + format(to_unsigned64(value), "b")
        elif base == BASE_STRING:
            raw = self.memory.read_cstring(value)
            if raw is None:
                raise ASMRuntimeError(
                    f"Unterminated string at offset {value} runs past memory of {self.memory.capacity} bytes",
                    kind=ERROR_MEMORY,
                )
            text = raw.decode("utf-8", errors="replace")
        else:
            raise ASMRuntimeError(f"Unknown print base '{base}'", kind=ERROR_PRINT)
        self.output_sink(text)
        return index + 1

    def _exec_branch(self, command: Command, index: int) -> Optional[int]:
        if not self._condition_holds(command.condition or COND_ALWAYS):
            return index + 1
        name = self._label_name(command)
        target = self.program.labels.lookup(name) if self.program else None
        if target is None:
            if self._is_exit_label(name):
                return None
            raise ASMRuntimeError(f"Label not found: {name}", kind=ERROR_LABEL)
        return target

    def _exec_call(self, command: Command, index: int) -> Optional[int]:
        name = self._label_name(command)
        target = self.program.labels.lookup(name) if self.program else None
        if target is None:
            raise ASMRuntimeError(f"Label not found: {name}", kind=ERROR_LABEL)
        self.call_stack.append(
            CallFrame(name=name, registers=self.registers.copy(), resume=index + 1, call_location=command.location)
        )
        return target

    def _exec_ret(self, command: Command, index: int) -> Optional[int]:
        if not self.call_stack:
            return None
        frame = self.call_stack.pop()
        # x0 carries the callee's result back to the caller.
        self.registers[1:] = frame.registers[1:]
        return frame.resume

    # ---- helpers ----

    def _condition_holds(self, condition: str) -> bool:
        if condition == COND_ALWAYS:
            return True
        if condition == COND_EQUAL:
            return self.is_equal
        if condition == COND_NOT_EQUAL:
            return not self.is_equal
        if condition == COND_GREATER:
            return self.is_greater
        if condition == COND_GREATER_EQUAL:
            return self.is_greater or self.is_equal
        if condition == COND_LESS:
            return self.is_less
        if condition == COND_LESS_EQUAL:
            return self.is_less or self.is_equal
        raise ASMRuntimeError(f"Unknown branch condition '{condition}'", kind=ERROR_INTERNAL)

    def _label_name(self, command: Command) -> str:
        if command.a is None:
            raise ASMRuntimeError(f"{command.op} requires a label", kind=ERROR_LABEL)
        return str(command.a.value)

    def _is_exit_label(self, name: str) -> bool:
        return self.exit_label_prefix is not None and name.startswith(self.exit_label_prefix)

    def _memory_error(self, offset: int, width: int) -> ASMRuntimeError:
        if width not in VALID_WIDTHS:
            return ASMRuntimeError(f"Invalid access width {width} (expected 1, 2, 4 or 8)", kind=ERROR_MEMORY)
        return ASMRuntimeError(
            f"Memory access of {width} bytes at offset {offset} outside 0-{self.memory.capacity}",
            kind=ERROR_MEMORY,
        )

    def _emit_event(self, event: str, *args: Any) -> None:
        if not self.hook_registry.has_handlers(event):
            return
        try:
            self.hook_registry.emit(event, *args)
        except ASMRuntimeError:
            raise
        except Exception as exc:
            raise ASMRuntimeError(f"Extension hook '{event}' failed: {exc}", kind=ERROR_EXTENSION, rule="EXT")

    def _log_step(self, index: int, command: Command) -> None:
        location = command.location
        self.logger.record(
            index=index,
            depth=len(self.call_stack),
            location=location,
            statement=location.statement if location else command.render(),
            rewrite_record={"rule": command.op},
            registers=self.registers.tolist() if self.logger.verbose else None,
        )

    def _after_step(self, index: int, command: Command) -> None:
        entry = self.logger.last
        ctx = StepContext(
            step_index=entry.step_index if entry else 0, index=index, op=command.op, location=command.location
        )
        try:
            self.hook_registry.after_step(self, ctx)
        except ASMRuntimeError:
            raise
        except Exception as exc:
            raise ASMRuntimeError(f"Extension step rule failed: {exc}", kind=ERROR_EXTENSION, rule="EXT")

    # ---- state dump ----

    def state_dict(self) -> Dict[str, Any]:
        return {
            "error": self.had_error,
            "flags": {"greater": self.is_greater, "equal": self.is_equal, "less": self.is_less},
            "registers": [int(v) for v in self.registers],
        }

    def format_state(self) -> str:
        lines = [
            f"Error: {int(self.had_error)}",
            "Flags:",
            f"Is greater: {int(self.is_greater)}",
            f"Is equal: {int(self.is_equal)}",
            f"Is less: {int(self.is_less)}",
            "",
            "Variable values:",
        ]
        row: List[str] = []
        for i in range(NUM_REGISTERS):
            row.append(f"x{i}: {int(self.registers[i])}")
            if (i + 1) % 8 == 0:
                trailer = ", " if i < NUM_REGISTERS - 1 else ""
                lines.append(", ".join(row) + trailer)
                row = []
        lines.append("")
        return "\n".join(lines)


@dataclass
class TracebackFrame:
    name: str
    location: Optional[SourceLocation]


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def build_frames(self, error: ASMRuntimeError) -> List[TracebackFrame]:
        frames = error.frames or [(TOP_LEVEL, error.location)]
        return [TracebackFrame(name=name, location=location) for name, location in frames]

    def format_text(self, error: ASMRuntimeError, verbose: bool) -> str:
        lines = ["Traceback (most recent call last):"]
        for frame in self.build_frames(error):
            if frame.location:
                lines.append(f"  File \"{frame.location.file}\", line {frame.location.line}, in {frame.name}")
                if frame.location.statement:
                    lines.append(f"    {frame.location.statement}")
            else:
                lines.append(f"  <unknown location> in {frame.name}")
        entry = self.interpreter.logger.last
        if entry is not None:
            lines.append(f"    State log index: {entry.step_index}  State id: {entry.state_id}")
            if verbose and entry.registers is not None:
                snapshot = ", ".join(f"x{i}={v}" for i, v in enumerate(entry.registers) if v != 0)
                lines.append(f"    Registers: {snapshot or 'all zero'}")
        rule = error.rule or "runtime"
        lines.append(f"{error.__class__.__name__}: {error.message} (rule: {rule})")
        return "\n".join(lines)

    def to_json(self, error: ASMRuntimeError) -> str:
        frames_json: List[Dict[str, Any]] = []
        for index, frame in enumerate(self.build_frames(error)):
            entry: Dict[str, Any] = {"frame_index": index, "name": frame.name}
            if frame.location:
                entry["source_location"] = {
                    "file": frame.location.file,
                    "line": frame.location.line,
                    "statement": frame.location.statement,
                }
            frames_json.append(entry)
        last = self.interpreter.logger.last
        data: Dict[str, Any] = {
            "error": {
                "type": error.__class__.__name__,
                "kind": error.kind,
                "message": error.message,
                "rule": error.rule,
                "failing_step_index": error.step_index,
            },
            "traceback": frames_json,
        }
        if last is not None:
            data["last_state"] = {"state_id": last.state_id, "step_index": last.step_index}
            if last.registers is not None:
                data["last_state"]["registers"] = last.registers
            data["last_state"]["rewrite_record"] = last.rewrite_record
        return json.dumps(data, indent=2)
