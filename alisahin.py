"""alisahin entry point and REPL wiring."""

from __future__ import annotations
import argparse
import sys
from typing import List, Optional

from extensions import AlisahinExtensionError, RuntimeServices, load_runtime_services
from interpreter import AlisahinRuntimeError, Interpreter, SourceContext, TracebackFormatter
from lexer import AlisahinError, AlisahinParseError
from parser import Parser


def run_repl(verbose: bool, services: Optional[RuntimeServices] = None, import_fallback: bool = True) -> int:
    print("\x1b[38;2;153;221;255malisahin\033[0m REPL. Ctrl-D to exit.")
    had_output = False

    def _output_sink(value: int) -> None:
        nonlocal had_output
        had_output = True
        print(chr(value), end="", flush=True)

    interpreter = Interpreter(filename="<repl>", source="", verbose=verbose, services=services, output_sink=_output_sink, import_fallback=import_fallback)
    top_frame = interpreter._push_frame("<top-level>", None)
    context = SourceContext(Parser("<repl>"))
    line_no = 0

    while True:
        prompt = "\x1b[38;2;153;221;255m>>>\033[0m " if context.current_function is None else "\x1b[38;2;153;221;255m..>\033[0m "
        if had_output:
            # Ensure prompt starts on a fresh line if the program printed anything
            print()
            had_output = False
        try:
            line = input(prompt)
        except EOFError:
            print()
            break
        line_no += 1

        try:
            interpreter.feed_line(context, line, line_no)
        except AlisahinError as error:
            if isinstance(error, AlisahinRuntimeError):
                interpreter._stamp(error)
            formatter = TracebackFormatter(interpreter)
            print(formatter.format_text(error, verbose=interpreter.verbose), file=sys.stderr)
            # back to the single top-level frame to keep the REPL usable
            interpreter.reset_stack(top_frame)
            context.current_function = None

    return 0


def run_cli(argv: Optional[List[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="alisahin reference interpreter")
    parser.add_argument("program", nargs="?", help="Source file path or literal source with -source")
    parser.add_argument("-source", "--source", dest="source_mode", action="store_true", help="Treat program argument as literal source text")
    parser.add_argument("-verbose", "--verbose", dest="verbose", action="store_true", help="Print full tracebacks with tape snapshots")
    parser.add_argument("--traceback-json", action="store_true", help="Also emit JSON traceback")
    parser.add_argument("-ext", "--ext", dest="extensions", action="append", default=[], metavar="PATH", help="Load a Python extension module (repeatable)")
    parser.add_argument("--strict-imports", action="store_true", help="Only try NAME and NAME.alisahin when importing")
    args = parser.parse_args(argv)

    try:
        services = load_runtime_services(args.extensions)
    except AlisahinExtensionError as exc:
        print(f"ExtensionError: {exc}", file=sys.stderr)
        return 1

    if args.program is None:
        if args.source_mode:
            print("-source requires a program string", file=sys.stderr)
            return 1
        return run_repl(verbose=args.verbose, services=services, import_fallback=not args.strict_imports)

    if args.source_mode:
        interpreter = Interpreter(filename="<string>", source=args.program, verbose=args.verbose, services=services, import_fallback=not args.strict_imports)
    else:
        interpreter = Interpreter(filename=args.program, verbose=args.verbose, services=services, import_fallback=not args.strict_imports)
    try:
        interpreter.run()
    except AlisahinParseError as error:
        print(f"ParseError: {TracebackFormatter(interpreter).format_line(error)}", file=sys.stderr)
        return 1
    except AlisahinRuntimeError as error:
        formatter = TracebackFormatter(interpreter)
        print(formatter.format_text(error, verbose=args.verbose), file=sys.stderr)
        if args.traceback_json:
            print(formatter.to_json(error), file=sys.stderr)
        return 1
    return 0


def main() -> None:
    raise SystemExit(run_cli())


if __name__ == "__main__":
    main()
