from __future__ import annotations
from dataclasses import dataclass
from typing import List


class AlisahinError(Exception):
    """Base class for interpreter errors."""


class AlisahinParseError(AlisahinError):
    """Raised when a directive line is malformed."""

    def __init__(self, message: str, *, location=None) -> None:
        super().__init__(message)
        self.message = message
        self.location = location


@dataclass
class Token:
    type: str
    value: str
    line: int
    column: int


SUDO_KEYWORD = "sudo"
FUNC_KEYWORD = "nejatjobs"
IMPORT_KEYWORD = "unibrow"
BLOCK_CLOSE = "}"
COMMENT_PREFIX = ";"
SOURCE_SUFFIX = ".alisahin"

PRIMITIVES = {
    "ali",
    "sahin",
    "kas",
    "tek",
    "kasistan",
    "alisah",
    "tekkas",
    "alisahin",
}

WHITESPACE = " \t\r\n\v\f"


class Lexer:
    """Splits one statement line into words, remembering where each starts."""

    def __init__(self, text: str, filename: str, line: int = 1) -> None:
        self.text = text
        self.filename = filename
        self.line = line
        self.index = 0

    def tokenize(self) -> List[Token]:
        tokens: List[Token] = []
        tokens_append = tokens.append
        text = self.text
        n = len(text)

        while self.index < n:
            if text[self.index] in WHITESPACE:
                self.index += 1
                continue
            start = self.index
            while self.index < n and text[self.index] not in WHITESPACE:
                self.index += 1
            word = text[start:self.index]
            kind = "PRIMITIVE" if word in PRIMITIVES else "IDENT"
            tokens_append(Token(kind, word, self.line, start + 1))
        return tokens


def word_after(text: str, keyword: str) -> str:
    """Return the first whitespace-delimited word following ``keyword``, or ''."""
    pos = text.find(keyword)
    if pos == -1:
        return ""
    rest = text[pos + len(keyword):].split()
    return rest[0] if rest else ""
