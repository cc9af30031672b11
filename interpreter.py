from __future__ import annotations
import json
import os
import re
import sys
import numpy as np
from collections import deque
from dataclasses import dataclass, field
from typing import IO, Any, Callable, Deque, Dict, Iterable, List, Optional, Tuple
from numpy.typing import NDArray

from lexer import SOURCE_SUFFIX, AlisahinError, Lexer
from extensions import HookRegistry, RuntimeServices
from parser import (
    Blank,
    BlockClose,
    BodyLine,
    FuncHeader,
    ImportDirective,
    InvalidImport,
    Parser,
    SourceLocation,
    SudoMarker,
    strip_terminator,
)


TAPE_SIZE = 30000
MAX_FUNCTIONS = 100
MAX_STATEMENTS = 1000
MAX_LINE_LENGTH = 255

# Steps kept for tracebacks: the latest one, or a window of them with -verbose.
VERBOSE_HISTORY = 4096
IO_LOG_LIMIT = 1024

DECIMAL = re.compile(r"[+-]?[0-9]+")

LIB_DIR = os.path.join(os.path.dirname(os.path.abspath(__file__)), "lib")


class AlisahinRuntimeError(AlisahinError):
    """Raised for runtime faults."""

    def __init__(
        self,
        message: str,
        *,
        location: Optional[SourceLocation] = None,
        rule: Optional[str] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.location = location
        self.rule = rule
        self.step_index: Optional[int] = None


class OutOfBounds(AlisahinRuntimeError):
    """Data pointer would leave the tape."""


class UnknownCommand(AlisahinRuntimeError):
    """Token is neither a primitive nor a defined function."""


class UndefinedFunction(AlisahinRuntimeError):
    pass


class PrivilegeViolation(AlisahinRuntimeError):
    pass


class CapacityExceeded(AlisahinRuntimeError):
    """Function table, function body or line buffer is full."""


class FileNotFound(AlisahinRuntimeError):
    pass


class InvalidInput(AlisahinRuntimeError):
    pass


class CallDepthExceeded(AlisahinRuntimeError):
    pass


class Tape:
    """Fixed-size byte tape with a single data pointer.

    The pointer never leaves ``[0, size)``: a move that would do so raises
    ``OutOfBounds`` and leaves the pointer where it was. Cell arithmetic is
    modulo 256, so decrementing 0 yields 255.
    """

    def __init__(self, size: int = TAPE_SIZE) -> None:
        if size <= 0:
            raise ValueError("tape size must be positive")
        self.cells: NDArray[np.uint8] = np.zeros(size, dtype=np.uint8)
        self.pointer = 0

    @property
    def size(self) -> int:
        return int(self.cells.shape[0])

    def move_right(self) -> None:
        if self.pointer + 1 >= self.size:
            raise OutOfBounds("Memory pointer out of bounds (right)", rule="ali")
        self.pointer += 1

    def move_left(self) -> None:
        if self.pointer == 0:
            raise OutOfBounds("Memory pointer out of bounds (left)", rule="sahin")
        self.pointer -= 1

    def increment(self) -> None:
        self.add(1)

    def decrement(self) -> None:
        self.add(-1)

    def add(self, amount: int) -> None:
        self.cells[self.pointer] = (int(self.cells[self.pointer]) + int(amount)) % 256

    def read(self) -> int:
        return int(self.cells[self.pointer])

    def snapshot(self) -> Dict[str, int]:
        return {"pointer": self.pointer, "cell": self.read()}


@dataclass
class Function:
    name: str
    is_privileged: bool
    body: List[BodyLine] = field(default_factory=list)


class FunctionTable:
    def __init__(self, max_functions: int = MAX_FUNCTIONS, max_statements: int = MAX_STATEMENTS) -> None:
        self.max_functions = max_functions
        self.max_statements = max_statements
        self._functions: Dict[str, Function] = {}

    def __contains__(self, name: object) -> bool:
        return name in self._functions

    def __len__(self) -> int:
        return len(self._functions)

    def names(self) -> List[str]:
        return list(self._functions)

    def lookup(self, name: str) -> Optional[Function]:
        return self._functions.get(name)

    def define(self, name: str, is_privileged: bool, *, location: Optional[SourceLocation] = None) -> Function:
        """Create ``name`` or replace it wholesale.

        A privileged function can only be replaced by a privileged
        definition. The returned function always starts with an empty body.
        """
        existing = self._functions.get(name)
        if existing is not None:
            if existing.is_privileged and not is_privileged:
                raise PrivilegeViolation(
                    f"Cannot override privileged function '{name}' without sudo",
                    location=location,
                    rule="DEFINE",
                )
        elif len(self._functions) >= self.max_functions:
            raise CapacityExceeded(
                f"Too many functions defined (limit {self.max_functions})",
                location=location,
                rule="DEFINE",
            )
        function = Function(name=name, is_privileged=is_privileged)
        self._functions[name] = function
        return function

    def append_statement(self, function: Function, line: BodyLine) -> None:
        if len(function.body) >= self.max_statements:
            raise CapacityExceeded(
                f"Too many statements in function '{function.name}' (limit {self.max_statements})",
                location=line.location,
                rule="DEFINE",
            )
        function.body.append(line)



@dataclass
class Frame:
    name: str
    frame_id: str
    call_location: Optional[SourceLocation]


@dataclass
class SourceContext:
    """Per-source driver state: the function whose block is currently open."""

    parser: Parser
    current_function: Optional[Function] = None

    @property
    def filename(self) -> str:
        return self.parser.filename


@dataclass(frozen=True)
class StateEntry:
    step: int
    rule: str
    frame_id: Optional[str]
    location: Optional[SourceLocation]
    pointer: int
    cell: int
    sudo: bool


class StateLogger:
    """Counts executed steps and keeps just enough of them for a traceback.

    ``entries`` is a sliding window (a single step unless verbose) and
    ``frame_last_entry`` only holds frames that are still on the call stack,
    so memory does not grow with the number of lines executed.
    """

    def __init__(self, history: int = 1) -> None:
        self.steps = 0
        self.entries: Deque[StateEntry] = deque(maxlen=max(history, 1))
        self.frame_last_entry: Dict[str, StateEntry] = {}

    @property
    def last(self) -> Optional[StateEntry]:
        return self.entries[-1] if self.entries else None

    def record(self, rule: str, frame: Optional[Frame], location: Optional[SourceLocation], tape: Tape, sudo: bool) -> StateEntry:
        entry = StateEntry(
            step=self.steps,
            rule=rule,
            frame_id=frame.frame_id if frame else None,
            location=location,
            pointer=tape.pointer,
            cell=tape.read(),
            sudo=sudo,
        )
        self.steps += 1
        self.entries.append(entry)
        if frame is not None:
            self.frame_last_entry[frame.frame_id] = entry
        return entry

    def forget(self, frame: Frame) -> None:
        self.frame_last_entry.pop(frame.frame_id, None)


def _write_byte(value: int) -> None:
    stream = getattr(sys.stdout, "buffer", None)
    if stream is None:
        sys.stdout.write(chr(value))
    else:
        stream.write(bytes((value,)))
    sys.stdout.flush()


class Interpreter:
    def __init__(
        self,
        *,
        filename: str,
        source: Optional[str] = None,
        verbose: bool = False,
        services: Optional[RuntimeServices] = None,
        input_provider: Optional[Callable[[], str]] = None,
        output_sink: Optional[Callable[[int], None]] = None,
        tape_size: int = TAPE_SIZE,
        max_functions: int = MAX_FUNCTIONS,
        max_statements: int = MAX_STATEMENTS,
        max_line_length: int = MAX_LINE_LENGTH,
        import_fallback: bool = True,
    ) -> None:
        self.filename = filename
        self.source = source
        self.verbose = verbose
        self.services = services or RuntimeServices()
        self.hook_registry: HookRegistry = self.services.hook_registry
        self.input_provider = input_provider or input
        self.output_sink = output_sink or _write_byte
        self.max_line_length = max_line_length
        self.import_fallback = import_fallback

        self.tape = Tape(tape_size)
        self.functions = FunctionTable(max_functions, max_statements)
        self.sudo_armed = False

        # Primitive handlers return True when the rest of the line is skipped.
        self.dispatch: Dict[str, Callable[[], Optional[bool]]] = {
            "ali": self.tape.move_right,
            "sahin": self.tape.move_left,
            "kas": self.tape.increment,
            "tek": self.tape.decrement,
            "kasistan": self._output_cell,
            "alisah": self._input_cell,
            "tekkas": self._skip_if_zero,
            "alisahin": self._skip_if_nonzero,
        }

        self.logger = StateLogger(VERBOSE_HISTORY if verbose else 1)
        self.io_log: Deque[Dict[str, Any]] = deque(maxlen=IO_LOG_LIMIT)
        self.call_stack: List[Frame] = []
        self.frame_counter = 0
        # Absolute paths of sources currently being read, outermost first.
        self.import_stack: List[str] = []
        self._pending_input: List[str] = []

    def run(self) -> None:
        self._push_frame("<top-level>", None)
        self._emit_event("program_start")
        try:
            if self.source is not None:
                self.execute_source(self.source.splitlines(), self.filename)
            else:
                path, handle = self._open_source(self.filename, importer=None, location=None, is_import=False)
                self.filename = path
                with handle:
                    self.import_stack.append(os.path.abspath(path))
                    self.execute_source(handle, path)
                    self.import_stack.pop()
        except AlisahinError as error:
            self._emit_event("on_error", error)
            if isinstance(error, AlisahinRuntimeError):
                self._stamp(error)
            raise
        except Exception as exc:
            self._emit_event("on_error", exc)
            # Anything else is an interpreter bug; report it like a program fault.
            wrapped = AlisahinRuntimeError(f"Internal interpreter error: {exc}", rule="internal")
            self._stamp(wrapped)
            raise wrapped from exc
        else:
            self._emit_event("program_end", 0)
            self._pop_frame()

    def reset_stack(self, frame: Frame) -> None:
        """Drop every frame above ``frame`` after a failure (used by the REPL)."""
        self.call_stack = [frame]
        self.import_stack = []
        kept = self.logger.frame_last_entry.get(frame.frame_id)
        self.logger.frame_last_entry = {} if kept is None else {frame.frame_id: kept}

    # ---- source driver ----

    def execute_source(self, lines: Iterable[str], filename: str) -> None:
        context = SourceContext(Parser(filename))
        for line_no, raw in enumerate(lines, start=1):
            self.feed_line(context, raw, line_no)

    def feed_line(self, context: SourceContext, raw: str, line_no: int) -> None:
        text = strip_terminator(raw)
        if len(text) > self.max_line_length:
            raise CapacityExceeded(
                f"Line is longer than {self.max_line_length} characters",
                location=SourceLocation(context.filename, line_no, 1, text[:40] + "..."),
                rule="LINE",
            )
        directive = context.parser.classify(text, line_no, in_function=context.current_function is not None)

        if isinstance(directive, Blank):
            return
        if isinstance(directive, SudoMarker):
            self.sudo_armed = True
            return
        if isinstance(directive, FuncHeader):
            self._log_step("DEFINE", directive.location)
            context.current_function = self.functions.define(directive.name, self.sudo_armed, location=directive.location)
            return
        if isinstance(directive, BlockClose):
            # Any closing brace disarms sudo, even one that closes nothing.
            context.current_function = None
            self.sudo_armed = False
            return
        if isinstance(directive, BodyLine):
            assert context.current_function is not None
            self.functions.append_statement(context.current_function, directive)
            return
        if isinstance(directive, ImportDirective):
            self.import_file(directive.target, directive.location)
            return
        self.execute_line(directive.text, directive.location)

    def import_file(self, target: str, location: Optional[SourceLocation] = None) -> None:
        importer = None
        if location is not None and not location.file.startswith("<"):
            importer = location.file
        path, handle = self._open_source(target, importer=importer, location=location)
        key = os.path.abspath(path)
        with handle:
            if key in self.import_stack:
                raise InvalidImport(f"Circular import of '{target}'", location=location)
            self._log_step("IMPORT", location)
            self._emit_event("on_import", path, location)
            self._push_frame(f"<import {target}>", location)
            self.import_stack.append(key)
            self.execute_source(handle, path)
            self.import_stack.pop()
            self._pop_frame()

    def source_candidates(self, name: str, importer: Optional[str] = None, *, is_import: bool = True) -> List[str]:
        candidates = [name, name + SOURCE_SUFFIX]
        if is_import and self.import_fallback:
            for base in self.fallback_dirs(name, importer):
                path = os.path.join(base, name)
                candidates.extend((path, path + SOURCE_SUFFIX))
        return candidates

    def fallback_dirs(self, name: str, importer: Optional[str]) -> List[str]:
        """Extra directories tried for an import once ``name`` and ``name.alisahin`` fail.

        This goes beyond the plain two-step lookup: the importing file's
        directory, then the bundled ``lib/``. ``import_fallback=False``
        (``--strict-imports``) restores the two-step lookup.
        """
        if os.path.isabs(name):
            return []
        dirs = [] if importer is None else [os.path.dirname(os.path.abspath(importer))]
        dirs.append(LIB_DIR)
        return dirs

    def _open_source(
        self, name: str, *, importer: Optional[str], location: Optional[SourceLocation], is_import: bool = True
    ) -> Tuple[str, IO[str]]:
        for candidate in self.source_candidates(name, importer, is_import=is_import):
            try:
                return candidate, open(candidate, "r", encoding="utf-8")
            except OSError:
                continue
        raise FileNotFound(f"Could not open file '{name}'", location=location, rule="IMPORT")

    # ---- line executor ----

    def execute_line(self, text: str, location: SourceLocation) -> None:
        self._log_step("LINE", location)
        self._emit_event("before_line", text, location)
        for token in Lexer(text, location.file, location.line).tokenize():
            token_location = SourceLocation(location.file, location.line, token.column, location.statement)
            if token.type == "PRIMITIVE":
                try:
                    skip_rest = self.dispatch[token.value]()
                except AlisahinRuntimeError as error:
                    if error.location is None:
                        error.location = token_location
                    raise
                if skip_rest:
                    break
            elif token.value in self.functions:
                self.invoke(token.value, token_location)
            else:
                raise UnknownCommand(f"Unknown command '{token.value}'", location=token_location, rule="DISPATCH")
        self._emit_event("after_line", text, location)

    def _output_cell(self) -> None:
        value = self.tape.read()
        self.output_sink(value)
        self.io_log.append({"event": "OUTPUT", "byte": value})

    def _input_cell(self) -> None:
        self.tape.add(self.read_integer())

    def _skip_if_zero(self) -> bool:
        return self.tape.read() == 0

    def _skip_if_nonzero(self) -> bool:
        return self.tape.read() != 0

    def read_integer(self) -> int:
        """Consume the next whitespace-separated word of input as a signed decimal integer."""
        while not self._pending_input:
            try:
                text = self.input_provider()
            except EOFError:
                raise InvalidInput("Unexpected end of input while reading an integer", rule="alisah") from None
            self._pending_input.extend(text.split())
        word = self._pending_input.pop(0)
        self.io_log.append({"event": "INPUT", "text": word})
        if not DECIMAL.fullmatch(word):
            raise InvalidInput(f"Expected an integer but read '{word}'", rule="alisah")
        return int(word)

    # ---- function invoker ----

    def invoke(self, name: str, location: Optional[SourceLocation] = None) -> None:
        function = self.functions.lookup(name)
        if function is None:
            raise UndefinedFunction(f"Function '{name}' is not defined", location=location, rule=name)
        self._push_frame(name, location)
        self._emit_event("before_call", name, location)
        try:
            for line in function.body:
                self.execute_line(line.text, line.location)
        except RecursionError:
            raise CallDepthExceeded(
                f"Maximum call depth exceeded while invoking '{name}'",
                location=location,
                rule=name,
            ) from None
        # On failure the frame stays on the stack for the traceback.
        self._pop_frame()
        self._emit_event("after_call", name, location)

    # ---- bookkeeping ----

    def _push_frame(self, name: str, call_location: Optional[SourceLocation]) -> Frame:
        frame = Frame(name=name, frame_id=f"f_{self.frame_counter:04d}", call_location=call_location)
        self.frame_counter += 1
        self.call_stack.append(frame)
        return frame

    def _pop_frame(self) -> None:
        self.logger.forget(self.call_stack.pop())

    def _stamp(self, error: AlisahinRuntimeError) -> None:
        last = self.logger.last
        if last is None:
            return
        error.step_index = last.step
        if error.location is None:
            error.location = last.location

    def _log_step(self, rule: str, location: Optional[SourceLocation]) -> None:
        frame = self.call_stack[-1] if self.call_stack else None
        self.logger.record(rule, frame, location, self.tape, self.sudo_armed)

    def _emit_event(self, event: str, *args: Any) -> None:
        """Call extension handlers as ``handler(interpreter, *args)``."""
        for handler in self.hook_registry.handlers(event):
            try:
                handler(self, *args)
            except (AlisahinError, RecursionError):
                raise
            except Exception as exc:
                last = self.logger.last
                raise AlisahinRuntimeError(
                    f"Extension hook '{event}' failed: {exc}",
                    location=last.location if last else None,
                    rule="EXT",
                ) from exc


class TracebackFormatter:
    def __init__(self, interpreter: Interpreter) -> None:
        self.interpreter = interpreter

    def frames(self) -> List[Tuple[Frame, Optional[StateEntry], Optional[SourceLocation]]]:
        last_entries = self.interpreter.logger.frame_last_entry
        out = []
        for frame in self.interpreter.call_stack:
            entry = last_entries.get(frame.frame_id)
            out.append((frame, entry, entry.location if entry else frame.call_location))
        return out

    def format_line(self, error: AlisahinError) -> str:
        message = getattr(error, "message", str(error))
        location = getattr(error, "location", None)
        where = f"{location.file}:{location.line}: " if location else ""
        return f"{where}{error.__class__.__name__}: {message}"

    def format_text(self, error: AlisahinError, verbose: bool) -> str:
        if not verbose:
            return self.format_line(error)
        lines = ["Traceback (most recent call last):"]
        previous = None
        repeated = 0
        for frame, entry, location in self.frames():
            key = (frame.name, location.file, location.line) if location else (frame.name,)
            if key == previous:
                repeated += 1
                continue
            if repeated:
                lines.append(f"  [Previous frame repeated {repeated} more times]")
                repeated = 0
            previous = key
            if location:
                lines.append(f"  File \"{location.file}\", line {location.line}, in {frame.name}")
                lines.append(f"    {location.statement}")
            else:
                lines.append(f"  <unknown location> in {frame.name}")
            if entry:
                lines.append(f"    step {entry.step}: pointer={entry.pointer} cell={entry.cell} sudo={entry.sudo}")
        if repeated:
            lines.append(f"  [Previous frame repeated {repeated} more times]")
        rule = getattr(error, "rule", None) or "runtime"
        lines.append(f"{self.format_line(error)} (rule: {rule})")
        return "\n".join(lines)

    def to_json(self, error: AlisahinError) -> str:
        tape = self.interpreter.tape
        frames: List[Dict[str, Any]] = []
        for frame, entry, location in self.frames():
            item: Dict[str, Any] = {"name": frame.name}
            if location:
                item.update(file=location.file, line=location.line, column=location.column, statement=location.statement)
            if entry:
                item.update(step=entry.step, pointer=entry.pointer, cell=entry.cell)
            frames.append(item)
        data = {
            "error": {
                "type": error.__class__.__name__,
                "message": getattr(error, "message", str(error)),
                "rule": getattr(error, "rule", None),
                "step": getattr(error, "step_index", None),
            },
            "tape": {"size": tape.size, **tape.snapshot()},
            "sudo": self.interpreter.sudo_armed,
            "frames": frames,
        }
        return json.dumps(data, indent=2)
