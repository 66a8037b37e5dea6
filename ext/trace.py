"""xasm extension: execution trace.

Writes one line per executed command to stderr, indented by call depth,
and a summary line when the program finishes or fails.

    xasm --ext ext/trace.py program.s
"""

from __future__ import annotations

import sys
from typing import Any, Optional, TextIO

from extensions import ExtensionAPI


XASM_EXTENSION_NAME = "trace"
XASM_EXTENSION_API_VERSION = 1


class _Tracer:
    def __init__(self, stream: TextIO) -> None:
        self.stream = stream
        self.count = 0

    def before_command(self, interpreter: Any, index: int, command: Any) -> None:
        self.count += 1
        entry = interpreter.logger.last
        indent = "  " * (entry.depth if entry is not None else 0)
        self.stream.write(f"[trace] {index:5d} {indent}{command.render()}\n")

    def program_end(self, interpreter: Any, result: Any) -> None:
        self.stream.write(f"[trace] finished after {self.count} commands\n")

    def on_error(self, interpreter: Any, error: Any) -> None:
        self.stream.write(f"[trace] failed after {self.count} commands: {error.message}\n")


def xasm_register(ext: ExtensionAPI, stream: Optional[TextIO] = None) -> None:
    tracer = _Tracer(stream or sys.stderr)
    ext.metadata(name=XASM_EXTENSION_NAME, version="1.0.0")
    ext.on_event("before_command", tracer.before_command)
    ext.on_event("program_end", tracer.program_end)
    ext.on_event("on_error", tracer.on_error)
