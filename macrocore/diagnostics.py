"""
Undefined-identifier diagnostics.

An identifier is reported when it is, all at once:
  • absent from the macro table
  • not a parameter of the definition whose body it sits in
  • not a keyword, builtin, directive keyword, typedef, tag or enumerator
  • outside every string/char literal and comment
  • not an operand of ## (pasting fragments are not names)

Macro bodies are always scanned.  Free text (the snapshot source or a
caller-supplied snippet) is scanned on request.  Where a use of macro A
reaches an undefined name through other macros, AttributionPolicy picks
whether that is reported at the defining body, at the use, or both.
"""

import logging
from typing import Dict, FrozenSet, List, Optional, Set, Tuple

from macrocore.config import EngineConfig, resolve
from macrocore.definitions import MacroDefinition
from macrocore.lexer import Token, TokenKind, is_macro_like, logical_lines, mask_comments, tokenize
from macrocore.macro_table import AnalysisSnapshot, ensure_snapshot
from macrocore.models import (
    CODE_EXPANSION_UNDEFINED, CODE_UNDEFINED,
    AttributionPolicy, Diagnostic, DiagnosticKind, Severity, SourceRange,
)
from macrocore.suggest import suggest

logger = logging.getLogger(__name__)

_MEMBER_ACCESS = (".", "->")


class UndefinedIdentifierChecker:
    """Runs the undefined-identifier pass over one snapshot."""

    def __init__(self, snapshot: AnalysisSnapshot, config: Optional[EngineConfig] = None):
        self.snapshot = ensure_snapshot(snapshot)
        self.config = snapshot.config if config is None else resolve(config)
        self.table = snapshot.table
        self._reach_cache: Dict[str, List[Tuple[str, str]]] = {}

    # ── candidate filter ──

    def is_unresolved(self, name: str, scope: FrozenSet[str] = frozenset()) -> bool:
        if name in scope or name in self.table or name in self.snapshot.exclusions:
            return False
        if self.config.macro_like_only and not is_macro_like(name):
            return False
        return True

    def suggestions_for(self, name: str, enclosing: Optional[str]) -> List[str]:
        known = self.table.names - self.snapshot.exclusions
        if enclosing:
            known = known - {enclosing}
        return suggest(name, known, self.config)

    # ── macro bodies ──

    def body_findings(self, definition: MacroDefinition) -> List[Token]:
        """Body tokens of ``definition`` that name nothing."""
        scope = frozenset(definition.all_parameters)
        body = definition.body
        found = []
        for k, tok in enumerate(body):
            if tok.kind != TokenKind.IDENTIFIER:
                continue
            if (k > 0 and body[k - 1].text == "##") or (k + 1 < len(body) and body[k + 1].text == "##"):
                continue
            if self.is_unresolved(tok.text, scope):
                found.append(tok)
        return found

    def check_bodies(self) -> List[Diagnostic]:
        diagnostics = []
        for definition in self.snapshot.definitions:
            for tok in self.body_findings(definition):
                diagnostics.append(Diagnostic(
                    severity=Severity.WARNING, kind=DiagnosticKind.UNDEFINED_IDENTIFIER,
                    code=CODE_UNDEFINED,
                    message=f"undefined identifier '{tok.text}'",
                    range=tok.range,
                    suggestions=self.suggestions_for(tok.text, definition.name),
                    macro=definition.name, identifier=tok.text,
                ))
        return diagnostics

    # ── free text ──

    def _free_tokens(self, text: str, base: int) -> List[Token]:
        tokens: List[Token] = []
        for line in logical_lines(mask_comments(text)):
            if line.is_directive:
                continue
            for tok in tokenize(line):
                tokens.append(Token(tok.kind, tok.text, tok.range.shift(base), tok.space_before))
        return tokens

    def check_text(self, text: str, base: int = 0,
                   policy: AttributionPolicy = AttributionPolicy.DEFINITION) -> List[Diagnostic]:
        diagnostics = []
        tokens = self._free_tokens(text, base)
        for k, tok in enumerate(tokens):
            if tok.kind != TokenKind.IDENTIFIER:
                continue
            if k > 0 and tokens[k - 1].text in _MEMBER_ACCESS:
                continue
            if self.is_unresolved(tok.text):
                diagnostics.append(Diagnostic(
                    severity=Severity.WARNING, kind=DiagnosticKind.UNDEFINED_IDENTIFIER,
                    code=CODE_UNDEFINED,
                    message=f"undefined identifier '{tok.text}'",
                    range=tok.range,
                    suggestions=self.suggestions_for(tok.text, None),
                    identifier=tok.text,
                ))
            elif policy != AttributionPolicy.DEFINITION and tok.text in self.table:
                for via, name in self.reachable_undefined(tok.text):
                    diagnostics.append(Diagnostic(
                        severity=Severity.WARNING, kind=DiagnosticKind.UNDEFINED_IDENTIFIER,
                        code=CODE_EXPANSION_UNDEFINED,
                        message=f"macro '{tok.text}' expands to undefined identifier '{name}'"
                                + ("" if via == tok.text else f" (through '{via}')"),
                        range=tok.range,
                        suggestions=self.suggestions_for(name, via),
                        macro=tok.text, identifier=name,
                    ))
        return diagnostics

    def reachable_undefined(self, name: str) -> List[Tuple[str, str]]:
        """(defining macro, undefined name) pairs reachable from ``name``'s body."""
        if name in self._reach_cache:
            return self._reach_cache[name]
        found: List[Tuple[str, str]] = []
        seen: Set[str] = set()
        stack = [name]
        while stack:
            current = stack.pop()
            if current in seen:
                continue
            seen.add(current)
            definition = self.table[current]
            for tok in self.body_findings(definition):
                pair = (current, tok.text)
                if pair not in found:
                    found.append(pair)
            params = set(definition.all_parameters)
            for tok in definition.body:
                if tok.is_identifier and tok.text in self.table and tok.text not in params:
                    stack.append(tok.text)
        self._reach_cache[name] = found
        return found


def find_undefined_identifiers(snapshot: AnalysisSnapshot, free_text: Optional[str] = None,
                               base_offset: int = 0, scan_source: bool = False,
                               policy: Optional[AttributionPolicy] = None,
                               config: Optional[EngineConfig] = None) -> List[Diagnostic]:
    """Undefined-identifier warnings, each with ranked suggestions.

    Macro bodies are always considered; ``scan_source`` adds the snapshot's
    own non-directive text and ``free_text`` adds a caller snippet located
    at ``base_offset``.  Under ``AttributionPolicy.USE_SITE`` body findings
    are reported only through the uses that reach them.
    """
    checker = UndefinedIdentifierChecker(snapshot, config)
    policy = checker.config.attribution if policy is None else policy

    diagnostics: List[Diagnostic] = []
    if policy != AttributionPolicy.USE_SITE:
        diagnostics.extend(checker.check_bodies())
    if scan_source:
        diagnostics.extend(checker.check_text(snapshot.source, 0, policy))
    if free_text is not None:
        diagnostics.extend(checker.check_text(free_text, base_offset, policy))

    diagnostics.sort(key=lambda d: (d.range.start, d.range.end, d.message))
    logger.info("Undefined-identifier pass: %d findings (policy=%s)", len(diagnostics), policy.value)
    return diagnostics


def undefined_in_result(result, snapshot: AnalysisSnapshot) -> List[Diagnostic]:
    """Diagnostics for macro-like names left undefined in an expansion result."""
    snapshot = ensure_snapshot(snapshot)
    if result.tree is None:
        return []
    checker = UndefinedIdentifierChecker(snapshot)
    rng: SourceRange = result.tree.invocation_range
    return [
        Diagnostic(
            severity=Severity.WARNING, kind=DiagnosticKind.UNDEFINED_IDENTIFIER,
            code=CODE_EXPANSION_UNDEFINED,
            message=f"expansion of '{result.tree.macro_name}' contains undefined identifier '{name}'",
            range=rng,
            suggestions=checker.suggestions_for(name, result.tree.macro_name),
            macro=result.tree.macro_name, identifier=name,
        )
        for name in result.undefined_names
    ]
