"""
Literal-aware parenthesis balance checking.

One automaton serves parameter lists, macro bodies, and invocation
argument text.  Parentheses inside string/char literals (with backslash
escapes honoured) and inside comments are ignored.
"""

from dataclasses import dataclass
from typing import Iterator, List, Optional, Sequence, Tuple


@dataclass(frozen=True)
class BalanceResult:
    balanced: bool
    offset: Optional[int] = None       # first offending position, None when balanced
    depth: int = 0                     # nesting left open at end of input
    unmatched_close: bool = False      # True when the offender is a stray ')'
    open_offset: Optional[int] = None  # outermost '(' still open at end of input


def paren_events(text: str, begin: int = 0, end: Optional[int] = None) -> Iterator[Tuple[int, str]]:
    """Yield ``(index, ch)`` for every structural '(' ')' ',' in ``text[begin:end]``."""
    end = len(text) if end is None else end
    quote = None
    i = begin
    while i < end:
        ch = text[i]
        if quote:
            if ch == "\\":
                i += 2
                continue
            if ch == quote:
                quote = None
            i += 1
            continue
        if ch in "\"'":
            quote = ch
        elif ch == "/" and i + 1 < end and text[i + 1] == "*":
            close = text.find("*/", i + 2, end)
            i = end if close == -1 else close + 2
            continue
        elif ch == "/" and i + 1 < end and text[i + 1] == "/":
            nl = text.find("\n", i + 2, end)
            i = end if nl == -1 else nl
            continue
        elif ch in "(),":
            yield i, ch
        i += 1


def check_balance(text: str, offsets: Optional[Sequence[int]] = None, base: int = 0,
                  begin: int = 0, end: Optional[int] = None) -> BalanceResult:
    """Check ``text[begin:end]`` for balanced parentheses.

    Reported offsets are mapped through ``offsets`` (a logical line's
    physical offset table) when given, otherwise shifted by ``base``.
    """
    end = len(text) if end is None else end
    depth = 0
    opens: List[int] = []
    for i, ch in paren_events(text, begin, end):
        if ch == "(":
            depth += 1
            opens.append(i)
        elif ch == ")":
            if depth == 0:
                return BalanceResult(False, _map(i, offsets, base, end), 0, True)
            depth -= 1
            opens.pop()
    if depth:
        return BalanceResult(False, _map(end, offsets, base, end), depth, False,
                             _map(opens[0], offsets, base, end))
    return BalanceResult(True)


def find_closing(text: str, open_index: int, end: Optional[int] = None) -> Optional[int]:
    """Index of the ')' matching the '(' at ``open_index``, or None if it never closes."""
    depth = 0
    for i, ch in paren_events(text, open_index, end):
        if ch == "(":
            depth += 1
        elif ch == ")":
            depth -= 1
            if depth == 0:
                return i
    return None


def _map(index: int, offsets: Optional[Sequence[int]], base: int, end: int) -> int:
    if offsets is None:
        return base + index
    if index < end and index < len(offsets):
        return offsets[index]
    # end of input: one past the last mapped character
    last = min(end, len(offsets)) - 1
    return offsets[last] + 1 if last >= 0 else base
