"""
Reference preprocessor — cross-checks expansions against pcpp.

The snapshot's live definitions are replayed into a pcpp Preprocessor
together with the invocation wrapped in marker identifiers; whatever pcpp
emits between the markers is its expansion.  Comparing that with the
engine's result (whitespace ignored) catches substitution mistakes that
tree-shaped unit tests miss.
"""

import io
import re
import logging
from dataclasses import dataclass
from typing import List, Optional

from pcpp import Preprocessor, OutputDirective, Action

from macrocore.expander import ExpansionResult, expand
from macrocore.macro_table import AnalysisSnapshot, ensure_snapshot

logger = logging.getLogger(__name__)

_BEGIN = "__MACROLENS_BEGIN__"
_END = "__MACROLENS_END__"
_MARKED_RE = re.compile(re.escape(_BEGIN) + r"(.*?)" + re.escape(_END), re.DOTALL)


class _QuietPreprocessor(Preprocessor):
    """A pcpp Preprocessor that reports through logging instead of stderr."""

    def on_include_not_found(self, is_malformed, is_system_include, curdir, includepath):
        logger.debug("pcpp: include not found: %s (system=%s)", includepath, is_system_include)
        raise OutputDirective(Action.IgnoreAndPassThrough)

    def on_error(self, file, line, msg):
        logger.debug("pcpp: %s:%s: %s", file, line, msg)
        self.return_code += 1


@dataclass
class CrossCheck:
    invocation: str
    engine_text: str
    reference_text: Optional[str]

    @property
    def matches(self) -> bool:
        if self.reference_text is None:
            return False
        return _squash(self.engine_text) == _squash(self.reference_text)

    def get_summary(self) -> dict:
        return {
            "invocation": self.invocation,
            "engine": self.engine_text,
            "reference": self.reference_text,
            "matches": self.matches,
        }


def _squash(text: str) -> str:
    return "".join(text.split())


class ReferencePreprocessor:
    """Runs invocations through pcpp using one snapshot's definitions."""

    def __init__(self, snapshot: AnalysisSnapshot):
        self.snapshot = ensure_snapshot(snapshot)
        self._prelude = self._build_prelude()

    def _build_prelude(self) -> str:
        lines: List[str] = []
        for definition in self.snapshot.table.values():
            if definition.malformed:
                continue
            lines.append(f"#define {definition.signature} {definition.body_text}".rstrip())
        return "\n".join(lines) + "\n"

    def expand(self, invocation: str) -> Optional[str]:
        """pcpp's expansion of ``invocation``, or None when pcpp fails."""
        pp = _QuietPreprocessor()
        pp.line_directive = None
        text = f"{self._prelude}{_BEGIN} {invocation} {_END}\n"
        output_buffer = io.StringIO()
        try:
            pp.parse(text, source="<snapshot>")
            pp.write(output_buffer)
        except Exception as e:
            logger.warning("Reference preprocessing failed for %r: %s", invocation, e)
            return None

        m = _MARKED_RE.search(output_buffer.getvalue())
        if m is None:
            logger.warning("Reference output lost its markers for %r", invocation)
            return None
        return " ".join(m.group(1).split())

    def cross_check(self, macro_name: str, invocation: Optional[str] = None,
                    result: Optional[ExpansionResult] = None) -> CrossCheck:
        """Expand with the engine (unless ``result`` is given) and with pcpp, side by side."""
        invocation = invocation or macro_name
        if result is None:
            result = expand(self.snapshot, macro_name, invocation)
        return CrossCheck(invocation, result.text, self.expand(invocation))
