"""
Presentation helpers for expansion text.

strip_redundant_parentheses() removes the doubled wrapping that nested
macro bodies tend to produce, e.g. ``(((a)) + (b))`` -> ``((a) + (b))``.
Text that leaves a parenthesis open is returned untouched; stray closing
parentheses are kept and the balanced runs between them still collapse.
"""

import re
from typing import List, Optional

from macrocore.parens import find_closing, paren_events

_ATOM_RE = re.compile(r"[A-Za-z_$][\w$]*|[0-9][\w.]*|\"(?:[^\"\\]|\\.)*\"|'(?:[^'\\]|\\.)*'")


def strip_redundant_parentheses(text: str) -> str:
    """Collapse ``((X))`` to ``(X)`` everywhere; unwrap ``(atom)`` spanning the whole text."""
    stripped = text.strip()
    if not stripped:
        return text
    strays = _stray_closes(stripped)
    if strays is None:
        return text
    if strays:
        pieces, start = [], 0
        for close in strays:
            pieces.append(_collapse(stripped[start:close]))
            start = close + 1
        pieces.append(_collapse(stripped[start:]))
        return ")".join(pieces)

    result = _collapse(stripped)
    if _wraps_whole(result):
        inner = result[1:-1].strip()
        if _ATOM_RE.fullmatch(inner):
            return inner
    return result


def _stray_closes(text: str) -> Optional[List[int]]:
    """Indices of unmatched ')', or None when some '(' is never closed."""
    strays = []
    depth = 0
    for i, ch in paren_events(text):
        if ch == "(":
            depth += 1
        elif ch == ")":
            if depth == 0:
                strays.append(i)
            else:
                depth -= 1
    return None if depth else strays


def _wraps_whole(text: str) -> bool:
    return text.startswith("(") and find_closing(text, 0) == len(text) - 1


def _collapse(text: str) -> str:
    """Rebuild ``text`` with every group's redundant inner wrapping removed."""
    out: List[str] = []
    i = 0
    while i < len(text):
        ch = text[i]
        if ch in "\"'":
            end = _literal_end(text, i)
            out.append(text[i:end])
            i = end
            continue
        if ch == "(":
            close = find_closing(text, i)
            if close is None:
                out.append(text[i:])
                break
            inner = _collapse(text[i + 1:close]).strip()
            while _wraps_whole(inner):
                inner = inner[1:-1].strip()
            out.append("(" + inner + ")")
            i = close + 1
            continue
        out.append(ch)
        i += 1
    return "".join(out)


def _literal_end(text: str, i: int) -> int:
    quote = text[i]
    j = i + 1
    while j < len(text):
        if text[j] == "\\":
            j += 2
            continue
        if text[j] == quote:
            return j + 1
        j += 1
    return len(text)
