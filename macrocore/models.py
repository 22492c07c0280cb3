"""
Shared value types for the macro engine.

  • SourceRange  — half-open offset span over the snapshot text
  • Diagnostic   — a recoverable finding attached to a range
  • LineIndex    — offset <-> (line, column) conversion for display
"""

import bisect
from dataclasses import dataclass
from enum import Enum
from typing import List, Optional, Tuple

from pydantic import BaseModel, Field


@dataclass(frozen=True)
class SourceRange:
    """Half-open span ``[start, end)`` of character offsets."""
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start

    def contains(self, offset: int) -> bool:
        if self.start == self.end:
            return offset == self.start
        return self.start <= offset < self.end

    def encloses(self, other: "SourceRange") -> bool:
        return self.start <= other.start and other.end <= self.end

    def overlaps(self, other: "SourceRange") -> bool:
        return self.start < other.end and other.start < self.end

    def shift(self, delta: int) -> "SourceRange":
        return SourceRange(self.start + delta, self.end + delta)

    @staticmethod
    def covering(ranges) -> Optional["SourceRange"]:
        """Smallest range enclosing every range given (None for no ranges)."""
        ranges = [r for r in ranges if r is not None]
        if not ranges:
            return None
        return SourceRange(min(r.start for r in ranges), max(r.end for r in ranges))


class Severity(str, Enum):
    ERROR = "error"
    WARNING = "warning"


class DiagnosticKind(str, Enum):
    DEFINITION_ERROR = "DefinitionError"
    DEFINITION_WARNING = "DefinitionWarning"
    EXPANSION_ERROR = "ExpansionError"
    CIRCULAR_REFERENCE = "CircularReferenceWarning"
    UNDEFINED_IDENTIFIER = "UndefinedIdentifierWarning"
    REDEFINITION = "MacroRedefinitionWarning"


# Stable machine-readable codes, one per diagnostic family
CODE_DEFINITION = "macro-definition"
CODE_UNBALANCED = "unbalanced-parentheses"
CODE_EXPANSION = "macro-expansion"
CODE_ARGUMENT_COUNT = "macro-argument-count"
CODE_CIRCULAR = "circular-reference"
CODE_UNDEFINED = "undefined-macro"
CODE_EXPANSION_UNDEFINED = "macro-expansion-undefined"
CODE_REDEFINITION = "macro-redefinition"


class AttributionPolicy(str, Enum):
    """Where an undefined identifier reached through other macros is reported.

    DEFINITION — only at the body that physically contains it
    USE_SITE   — only at free-text uses of macros that reach it
    BOTH       — at both places
    """
    DEFINITION = "definition"
    USE_SITE = "use-site"
    BOTH = "both"


class ExpansionMode(str, Enum):
    """How the whole-text step view advances.

    SINGLE_MACRO rewrites one invocation per step (the innermost, leftmost);
    SINGLE_LAYER rewrites every invocation at the deepest nesting level at once.
    """
    SINGLE_MACRO = "single-macro"
    SINGLE_LAYER = "single-layer"


class Diagnostic(BaseModel):
    severity: Severity
    kind: DiagnosticKind
    code: str
    message: str
    range: SourceRange
    suggestions: List[str] = Field(default_factory=list)
    macro: Optional[str] = None      # enclosing or invoked macro, if any
    identifier: Optional[str] = None  # offending name for undefined-identifier findings

    @property
    def is_error(self) -> bool:
        return self.severity == Severity.ERROR

    def to_dict(self, line_index: Optional["LineIndex"] = None) -> dict:
        data = {
            "severity": self.severity.value,
            "kind": self.kind.value,
            "code": self.code,
            "message": self.message,
            "range": [self.range.start, self.range.end],
            "suggestions": list(self.suggestions),
        }
        if self.macro:
            data["macro"] = self.macro
        if line_index is not None:
            line, col = line_index.position(self.range.start)
            data["line"] = line
            data["column"] = col
        return data


class LineIndex:
    """Maps character offsets to 1-based (line, column) pairs and back."""

    def __init__(self, source: str):
        self._line_starts = [0]
        for i, ch in enumerate(source):
            # \n, \r\n and a lone \r each end one line
            if ch == "\n" or (ch == "\r" and not source.startswith("\n", i + 1)):
                self._line_starts.append(i + 1)
        self._length = len(source)

    @property
    def line_count(self) -> int:
        return len(self._line_starts)

    def position(self, offset: int) -> Tuple[int, int]:
        offset = max(0, min(offset, self._length))
        line = bisect.bisect_right(self._line_starts, offset) - 1
        return line + 1, offset - self._line_starts[line] + 1

    def offset(self, line: int, column: int) -> int:
        if line < 1 or line > self.line_count:
            raise ValueError(f"line {line} out of range 1..{self.line_count}")
        return min(self._line_starts[line - 1] + max(column, 1) - 1, self._length)

    def describe(self, rng: SourceRange) -> str:
        sl, sc = self.position(rng.start)
        el, ec = self.position(rng.end)
        if sl == el:
            return f"{sl}:{sc}-{ec}"
        return f"{sl}:{sc}-{el}:{ec}"
