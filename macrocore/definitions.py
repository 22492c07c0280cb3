"""
Definition scanner — extracts #define / #undef directives from source text.

Each #define becomes a MacroDefinition.  Problems in the directive itself
are reported as diagnostics and never abort the scan:

  • parameter list never closed, or followed directly by a stray ')'
      -> error   "unbalanced parentheses in macro definition"
  • body with unbalanced parentheses
      -> warning "unbalanced parentheses in macro body"

A definition whose parameter list is broken is still recorded (flagged
``malformed``) so that its name is known, but it cannot be expanded.
"""

import re
import logging
from dataclasses import dataclass, field
from enum import Enum
from typing import Dict, List, Optional, Set, Tuple

from macrocore.config import EngineConfig, resolve
from macrocore.lexer import LogicalLine, Token, logical_lines, mask_comments, render, tokenize
from macrocore.models import (
    CODE_DEFINITION, CODE_REDEFINITION, CODE_UNBALANCED,
    Diagnostic, DiagnosticKind, Severity, SourceRange,
)
from macrocore.parens import check_balance, find_closing

logger = logging.getLogger(__name__)

VA_ARGS = "__VA_ARGS__"

_NAME_RE = re.compile(r"[A-Za-z_$][A-Za-z0-9_$]*")
_DIRECTIVE_RE = re.compile(r"\s*#\s*(define|undef)\b")


class MacroKind(str, Enum):
    OBJECT = "object-like"
    FUNCTION = "function-like"


@dataclass(frozen=True)
class MacroDefinition:
    name: str
    kind: MacroKind
    parameters: Tuple[str, ...] = ()        # fixed parameters, in order
    is_variadic: bool = False
    variadic_name: Optional[str] = None     # "__VA_ARGS__" or the GCC-style name
    body: Tuple[Token, ...] = ()
    name_range: SourceRange = SourceRange(0, 0)
    body_range: SourceRange = SourceRange(0, 0)
    param_list_range: Optional[SourceRange] = None
    directive_range: SourceRange = SourceRange(0, 0)
    malformed: bool = False

    @property
    def is_function_like(self) -> bool:
        return self.kind == MacroKind.FUNCTION

    @property
    def all_parameters(self) -> Tuple[str, ...]:
        """Fixed parameters plus the variadic name, if any."""
        if self.is_variadic:
            return self.parameters + (self.variadic_name,)
        return self.parameters

    @property
    def body_text(self) -> str:
        return render(self.body)

    @property
    def signature(self) -> str:
        if not self.is_function_like:
            return self.name
        params = list(self.parameters)
        if self.is_variadic:
            params.append("..." if self.variadic_name == VA_ARGS else f"{self.variadic_name}...")
        return f"{self.name}({', '.join(params)})"

    def same_as(self, other: "MacroDefinition") -> bool:
        """True if ``other`` is an identical redefinition (same shape and body spelling)."""
        return (
            self.kind == other.kind
            and self.all_parameters == other.all_parameters
            and [t.text for t in self.body] == [t.text for t in other.body]
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "kind": self.kind.value,
            "signature": self.signature,
            "parameters": list(self.parameters),
            "variadic": self.variadic_name if self.is_variadic else None,
            "body": self.body_text,
            "malformed": self.malformed,
            "range": [self.directive_range.start, self.directive_range.end],
        }


@dataclass
class DefinitionScan:
    """Everything the scanner learned from one source text."""
    definitions: List[MacroDefinition] = field(default_factory=list)   # every #define, in order
    active: Dict[str, MacroDefinition] = field(default_factory=dict)   # name -> live definition
    diagnostics: List[Diagnostic] = field(default_factory=list)
    redefined: Set[str] = field(default_factory=set)
    undefined_names: List[str] = field(default_factory=list)           # targets of #undef
    directive_ranges: List[SourceRange] = field(default_factory=list)  # every # line


def _error(message: str, rng: SourceRange, macro: Optional[str]) -> Diagnostic:
    return Diagnostic(
        severity=Severity.ERROR, kind=DiagnosticKind.DEFINITION_ERROR,
        code=CODE_UNBALANCED if "unbalanced" in message else CODE_DEFINITION,
        message=message, range=rng, macro=macro,
    )


# ═══════════════════════════════════════════════════════════════════════
#  Scanner
# ═══════════════════════════════════════════════════════════════════════

class DefinitionScanner:
    """Walks the logical lines of a source text and records macro directives."""

    def __init__(self, config: Optional[EngineConfig] = None):
        self.config = resolve(config)

    def scan(self, source: str) -> DefinitionScan:
        result = DefinitionScan()
        for line in logical_lines(mask_comments(source)):
            if not line.is_directive:
                continue
            result.directive_ranges.append(line.range)
            m = _DIRECTIVE_RE.match(line.text)
            if m is None:
                continue
            if m.group(1) == "define":
                self._scan_define(line, m.end(), result)
            else:
                self._scan_undef(line, m.end(), result)

        logger.info("Definition scan: %d definitions, %d live, %d diagnostics",
                    len(result.definitions), len(result.active), len(result.diagnostics))
        return result

    # ── #undef ──

    def _scan_undef(self, line: LogicalLine, pos: int, result: DefinitionScan):
        tokens = tokenize(line, pos)
        if not tokens or not tokens[0].is_identifier:
            logger.debug("Ignoring #undef without a name at %d", line.start)
            return
        name = tokens[0].text
        result.undefined_names.append(name)
        result.active.pop(name, None)

    # ── #define ──

    def _scan_define(self, line: LogicalLine, pos: int, result: DefinitionScan):
        text = line.text
        while pos < len(text) and text[pos] in " \t":
            pos += 1
        m = _NAME_RE.match(text, pos)
        if m is None:
            message = ("macro name missing in #define" if pos >= len(text)
                       else "macro name must be an identifier")
            result.diagnostics.append(_error(message, line.range, None))
            return

        name = m.group()
        name_range = line.range_of(m.start(), m.end())
        after = m.end()

        if after < len(text) and text[after] == "(":
            definition = self._function_like(line, name, name_range, after, result)
        else:
            body = tokenize(line, after)
            definition = MacroDefinition(
                name=name, kind=MacroKind.OBJECT,
                body=tuple(body),
                name_range=name_range,
                body_range=self._body_range(line, body, after),
                directive_range=line.range,
            )
            self._check_body(line, after, definition, result)

        self._record(definition, result)

    def _function_like(self, line: LogicalLine, name: str, name_range: SourceRange,
                       open_index: int, result: DefinitionScan) -> MacroDefinition:
        text = line.text
        close = find_closing(text, open_index)

        if close is None:
            rng = line.range_of(open_index, len(text.rstrip()))
            result.diagnostics.append(_error("unbalanced parentheses in macro definition", rng, name))
            return self._malformed(line, name, name_range, rng, tokenize(line, open_index + 1))

        if close + 1 < len(text) and text[close + 1] == ")":
            rng = line.range_of(open_index, close + 2)
            result.diagnostics.append(_error("unbalanced parentheses in macro definition", rng, name))
            return self._malformed(line, name, name_range, rng, tokenize(line, open_index + 1, close))

        param_range = line.range_of(open_index, close + 1)
        param_tokens = tokenize(line, open_index + 1, close)
        params, variadic_name, problem = self._parse_parameters(param_tokens)
        if problem:
            result.diagnostics.append(_error(problem, param_range, name))
            return self._malformed(line, name, name_range, param_range, param_tokens)

        body = tokenize(line, close + 1)
        definition = MacroDefinition(
            name=name, kind=MacroKind.FUNCTION,
            parameters=tuple(params),
            is_variadic=variadic_name is not None,
            variadic_name=variadic_name,
            body=tuple(body),
            name_range=name_range,
            body_range=self._body_range(line, body, close + 1),
            param_list_range=param_range,
            directive_range=line.range,
        )
        self._check_body(line, close + 1, definition, result)
        return definition

    @staticmethod
    def _parse_parameters(tokens: List[Token]) -> Tuple[List[str], Optional[str], Optional[str]]:
        """Return (fixed parameters, variadic name, problem message)."""
        if not tokens:
            return [], None, None

        groups: List[List[Token]] = [[]]
        for tok in tokens:
            if tok.text == ",":
                groups.append([])
            else:
                groups[-1].append(tok)

        params: List[str] = []
        variadic_name = None
        for index, group in enumerate(groups):
            if variadic_name is not None:
                return params, variadic_name, "variadic parameter must be last in macro definition"
            spelled = [t.text for t in group]
            if spelled == ["..."]:
                variadic_name = VA_ARGS
            elif len(group) == 2 and group[0].is_identifier and spelled[1] == "...":
                variadic_name = spelled[0]
            elif len(group) == 1 and group[0].is_identifier and spelled[0] != VA_ARGS:
                if spelled[0] in params:
                    return params, None, f"duplicate parameter '{spelled[0]}' in macro definition"
                params.append(spelled[0])
            else:
                shown = render(group) or "<empty>"
                return params, None, f"invalid parameter '{shown}' in macro definition"
        return params, variadic_name, None

    @staticmethod
    def _malformed(line: LogicalLine, name: str, name_range: SourceRange,
                   param_range: SourceRange, param_tokens: List[Token]) -> MacroDefinition:
        params = tuple(dict.fromkeys(t.text for t in param_tokens if t.is_identifier))
        return MacroDefinition(
            name=name, kind=MacroKind.FUNCTION,
            parameters=params,
            name_range=name_range,
            body_range=SourceRange(param_range.end, param_range.end),
            param_list_range=param_range,
            directive_range=line.range,
            malformed=True,
        )

    @staticmethod
    def _body_range(line: LogicalLine, body: List[Token], after: int) -> SourceRange:
        if body:
            return SourceRange(body[0].range.start, body[-1].range.end)
        pos = line.offset_at(after)
        return SourceRange(pos, pos)

    @staticmethod
    def _check_body(line: LogicalLine, begin: int, definition: MacroDefinition, result: DefinitionScan):
        balance = check_balance(line.text, line.offsets, begin=begin)
        if balance.balanced:
            return
        logger.debug("Macro %s: body unbalanced at offset %s", definition.name, balance.offset)
        result.diagnostics.append(Diagnostic(
            severity=Severity.WARNING, kind=DiagnosticKind.DEFINITION_WARNING,
            code=CODE_UNBALANCED,
            message="unbalanced parentheses in macro body",
            range=definition.body_range, macro=definition.name,
        ))

    def _record(self, definition: MacroDefinition, result: DefinitionScan):
        previous = result.active.get(definition.name)
        if previous is not None:
            result.redefined.add(definition.name)
            if self.config.report_redefinitions and not previous.same_as(definition):
                result.diagnostics.append(Diagnostic(
                    severity=Severity.WARNING, kind=DiagnosticKind.REDEFINITION,
                    code=CODE_REDEFINITION,
                    message=f"macro '{definition.name}' redefined",
                    range=definition.name_range, macro=definition.name,
                ))
        result.definitions.append(definition)
        result.active[definition.name] = definition
        logger.debug("Defined %s (%s%s)", definition.signature, definition.kind.value,
                     ", malformed" if definition.malformed else "")


def scan_definitions(source: str, config: Optional[EngineConfig] = None) -> DefinitionScan:
    return DefinitionScanner(config).scan(source)
