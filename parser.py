from __future__ import annotations
from dataclasses import dataclass

from lexer import (
    BLOCK_CLOSE,
    COMMENT_PREFIX,
    FUNC_KEYWORD,
    IMPORT_KEYWORD,
    SUDO_KEYWORD,
    AlisahinParseError,
    word_after,
)


@dataclass
class SourceLocation:
    file: str
    line: int
    column: int
    statement: str


@dataclass
class Node:
    location: SourceLocation


class Directive(Node):
    pass


@dataclass
class Blank(Directive):
    pass


@dataclass
class SudoMarker(Directive):
    pass


@dataclass
class FuncHeader(Directive):
    name: str


@dataclass
class BlockClose(Directive):
    pass


@dataclass
class BodyLine(Directive):
    text: str


@dataclass
class ImportDirective(Directive):
    target: str


@dataclass
class Statement(Directive):
    text: str


class InvalidDefinition(AlisahinParseError):
    """Function header without a name."""


class InvalidImport(AlisahinParseError):
    """Import directive without a target, or a circular import."""


def strip_terminator(raw: str) -> str:
    if raw.endswith("\n"):
        raw = raw[:-1]
    if raw.endswith("\r"):
        raw = raw[:-1]
    return raw


class Parser:
    """Classifies source lines into directives.

    Order matters and mirrors how the driver consumes lines: comments,
    then the privilege marker, function headers, the block close, body
    lines of an open function, imports and finally plain statements.
    Keywords are recognised anywhere in the line.
    """

    def __init__(self, filename: str) -> None:
        self.filename = filename

    def classify(self, raw: str, line_no: int, *, in_function: bool = False) -> Directive:
        text = strip_terminator(raw)
        stripped = text.strip()
        location = SourceLocation(self.filename, line_no, self._column(text), stripped)

        if not stripped or stripped.startswith(COMMENT_PREFIX):
            return Blank(location)
        if SUDO_KEYWORD in text:
            return SudoMarker(location)
        if FUNC_KEYWORD in text:
            name = word_after(text, FUNC_KEYWORD)
            if not name:
                raise InvalidDefinition("Invalid function definition: missing function name", location=location)
            return FuncHeader(location, name)
        if stripped == BLOCK_CLOSE:
            return BlockClose(location)
        if in_function:
            return BodyLine(location, text)
        if IMPORT_KEYWORD in text:
            target = word_after(text, IMPORT_KEYWORD)
            if not target:
                raise InvalidImport("Invalid import statement: missing file name", location=location)
            return ImportDirective(location, target)
        return Statement(location, text)

    def _column(self, text: str) -> int:
        return len(text) - len(text.lstrip()) + 1
