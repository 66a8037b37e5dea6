"""xasm entry point."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from extensions import ASMExtensionError, load_runtime_services
from interpreter import DEFAULT_EXIT_PREFIX, Interpreter, TracebackFormatter
from lexer import ASMParseError


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="xasm register machine interpreter")
    parser.add_argument("program", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Record register snapshots for tracebacks")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("--dump-state", action="store_true", help="Print flags and registers after the run")
    parser.add_argument("--ext", action="append", default=[], metavar="PATH", help="Load an extension module or .xasmx list (repeatable)")
    parser.add_argument(
        "--exit-prefix",
        default=DEFAULT_EXIT_PREFIX,
        help=f"Unresolved branch targets with this prefix end the program (default {DEFAULT_EXIT_PREFIX!r}; empty disables)",
    )
    args = parser.parse_args(argv)

    if args.source_mode:
        source_text = args.program
        filename = "<string>"
    else:
        filename = args.program
        try:
            with open(filename, "r", encoding="utf-8") as handle:
                source_text = handle.read()
        except OSError as exc:
            print(f"Failed to read {filename}: {exc}", file=sys.stderr)
            return 1

    try:
        services = load_runtime_services(args.ext)
    except ASMExtensionError as error:
        print(f"ExtensionError: {error}", file=sys.stderr)
        return 1

    interpreter = Interpreter(
        filename=filename,
        verbose=args.verbose,
        services=services,
        exit_label_prefix=args.exit_prefix,
    )
    try:
        interpreter.load_source(source_text)
    except ASMParseError as error:
        print(f"ParseError: {error}", file=sys.stderr)
        return 1

    result = interpreter.run()
    if args.dump_state:
        print(interpreter.format_state())
    if not result.ok and result.error is not None:
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(result.error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(result.error), file=sys.stderr)
        return 1
    return 0


if __name__ == "__main__":
    raise SystemExit(run_cli())
