"""
Lexical scanner for preprocessor text.

  • mask_comments()   — blank out comments, keeping every offset stable
  • logical_lines()   — join backslash-continued physical lines
  • tokenize()        — split a logical line into Tokens with source ranges

Offsets are always character offsets into the original snapshot text, so a
token produced from a continued line still points at its physical location.
"""

import re
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterator, List, Optional

from macrocore.models import SourceRange

logger = logging.getLogger(__name__)

# Backslash, optional trailing blanks, then a newline
_CONTINUATION_RE = re.compile(r"\\[ \t]*(\r\n|\n|\r)")
_MACRO_LIKE_RE = re.compile(r"[A-Z_][A-Z0-9_]*")


def is_macro_like(name: str) -> bool:
    """ALL_CAPS spelling, the conventional shape of a macro name."""
    return _MACRO_LIKE_RE.fullmatch(name) is not None


class TokenKind(str, Enum):
    IDENTIFIER = "identifier"
    PUNCTUATION = "punctuation"
    STRING = "string-literal"
    CHAR = "char-literal"
    NUMBER = "number"


@dataclass(frozen=True)
class Token:
    kind: TokenKind
    text: str
    range: SourceRange
    space_before: bool = False   # whitespace separated it from the previous token

    @property
    def is_identifier(self) -> bool:
        return self.kind == TokenKind.IDENTIFIER


_TOKEN_RE = re.compile(r"""
    (?P<ws>[ \t\f\v\r\n]+)
  | (?P<string>(?:u8|u|U|L)?"(?:[^"\\\n]|\\.)*"?)
  | (?P<char>(?:u8|u|U|L)?'(?:[^'\\\n]|\\.)*'?)
  | (?P<number>\.?[0-9](?:[eEpP][+-]|[A-Za-z0-9_.])*)
  | (?P<identifier>[A-Za-z_$][A-Za-z0-9_$]*)
  | (?P<punct>\.\.\.|\#\#|<<=|>>=|->|\+\+|--|<<|>>|<=|>=|==|!=|&&|\|\||[-+*/%&|^]=)
  | (?P<other>\S)
""", re.VERBOSE)

_KIND_BY_GROUP = {
    "string": TokenKind.STRING,
    "char": TokenKind.CHAR,
    "number": TokenKind.NUMBER,
    "identifier": TokenKind.IDENTIFIER,
    "punct": TokenKind.PUNCTUATION,
    "other": TokenKind.PUNCTUATION,
}


def continuation_at(text: str, i: int) -> int:
    """If a line continuation starts at ``i``, return the index just past it; else -1."""
    if text[i] != "\\":
        return -1
    m = _CONTINUATION_RE.match(text, i)
    return m.end() if m else -1


# ═══════════════════════════════════════════════════════════════════════
#  Comment masking
# ═══════════════════════════════════════════════════════════════════════

def mask_comments(source: str) -> str:
    """Return ``source`` with every comment character replaced by a space.

    The result has the same length as the input, so offsets carry over
    unchanged.  Newlines inside a block comment are blanked too: the comment
    is a single space to the preprocessor, so a directive containing one
    continues past it.  String and char literal content is never touched.
    """
    out = list(source)
    n = len(source)
    i = 0
    while i < n:
        ch = source[i]
        if ch == "\\":
            j = continuation_at(source, i)
            i = j if j != -1 else i + 1
            continue
        if ch == "/" and i + 1 < n and source[i + 1] == "*":
            end = source.find("*/", i + 2)
            end = n if end == -1 else end + 2
            for k in range(i, end):
                out[k] = " "
            i = end
            continue
        if ch == "/" and i + 1 < n and source[i + 1] == "/":
            k = i
            while k < n and source[k] not in "\r\n":
                if source[k] == "\\":
                    j = continuation_at(source, k)
                    if j != -1:
                        for m in range(k, j):
                            out[m] = " "
                        k = j
                        continue
                out[k] = " "
                k += 1
            i = k
            continue
        if ch in "\"'":
            i = _skip_literal(source, i)
            continue
        i += 1
    return "".join(out)


def _skip_literal(text: str, i: int) -> int:
    """Index just past the literal opened at ``i`` (unterminated stops at newline)."""
    quote = text[i]
    n = len(text)
    i += 1
    while i < n:
        ch = text[i]
        if ch == "\\":
            j = continuation_at(text, i)
            i = j if j != -1 else i + 2
            continue
        if ch == quote:
            return i + 1
        if ch in "\r\n":
            return i
        i += 1
    return n


# ═══════════════════════════════════════════════════════════════════════
#  Logical lines
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class LogicalLine:
    """A continuation-joined line and the physical offset of each character."""
    text: str
    offsets: List[int] = field(default_factory=list)
    start: int = 0               # offset of the first physical character
    end: int = 0                 # offset just past the last physical character
    first_line: int = 1          # 1-indexed physical line number

    def offset_at(self, index: int) -> int:
        if index < len(self.offsets):
            return self.offsets[index]
        return self.end

    def range_of(self, i: int, j: int) -> SourceRange:
        """Source range of ``text[i:j]``."""
        if j <= i:
            pos = self.offset_at(i)
            return SourceRange(pos, pos)
        return SourceRange(self.offsets[i], self.offsets[j - 1] + 1)

    @property
    def range(self) -> SourceRange:
        return SourceRange(self.start, self.end)

    @property
    def is_directive(self) -> bool:
        return self.text.lstrip().startswith("#")

    @property
    def directive(self) -> Optional[str]:
        m = re.match(r"\s*#\s*([A-Za-z_]\w*)", self.text)
        return m.group(1) if m else None


def logical_lines(text: str) -> Iterator[LogicalLine]:
    """Yield logical lines of (already comment-masked) ``text``."""
    n = len(text)
    i = 0
    line_no = 1
    while i <= n:
        chars: List[str] = []
        offsets: List[int] = []
        start = i
        first_line = line_no
        while i < n:
            ch = text[i]
            if ch == "\\":
                j = continuation_at(text, i)
                if j != -1:
                    line_no += 1
                    i = j
                    continue
            if ch == "\n" or ch == "\r":
                break
            chars.append(ch)
            offsets.append(i)
            i += 1
        end = i
        yield LogicalLine("".join(chars), offsets, start, end, first_line)
        if i >= n:
            break
        # consume the newline (\r\n counts once)
        i += 2 if text.startswith("\r\n", i) else 1
        line_no += 1


# ═══════════════════════════════════════════════════════════════════════
#  Tokenizer
# ═══════════════════════════════════════════════════════════════════════

def tokenize(line: LogicalLine, begin: int = 0, end: Optional[int] = None) -> List[Token]:
    """Tokenize ``line.text[begin:end]``; ranges map back to the source."""
    text = line.text
    end = len(text) if end is None else end
    tokens: List[Token] = []
    space = begin > 0 and text[begin - 1].isspace()
    pos = begin
    while pos < end:
        m = _TOKEN_RE.match(text, pos, end)
        if m is None:
            break
        group = m.lastgroup
        if group == "ws":
            space = True
        else:
            tokens.append(Token(
                _KIND_BY_GROUP[group], m.group(), line.range_of(m.start(), m.end()), space,
            ))
            space = False
        pos = m.end()
    return tokens


def tokenize_text(text: str, base: int = 0) -> List[Token]:
    """Tokenize free text whose first character sits at offset ``base``."""
    tokens: List[Token] = []
    for line in logical_lines(mask_comments(text)):
        for tok in tokenize(line):
            tokens.append(Token(tok.kind, tok.text, tok.range.shift(base), tok.space_before))
    return tokens


def classify(text: str) -> TokenKind:
    """Kind of a single token spelled ``text`` (used for pasted tokens)."""
    m = _TOKEN_RE.fullmatch(text)
    if m is None or m.lastgroup == "ws":
        return TokenKind.PUNCTUATION
    return _KIND_BY_GROUP[m.lastgroup]


def render(tokens) -> str:
    """Spell a token sequence, keeping a single space where one separated tokens."""
    parts = []
    for i, tok in enumerate(tokens):
        if i and tok.space_before:
            parts.append(" ")
        parts.append(tok.text)
    return "".join(parts)
