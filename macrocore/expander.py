"""
Macro expander — step-by-step expansion with a provenance tree.

Expansion follows the C rules:
  • arguments are split on top-level commas and fully macro-expanded
    before substitution, except where they are operands of # or ##
  • # stringifies the raw argument, ## pastes raw token text
  • the substituted body is rescanned; every token carries a hideset of
    the macro names it came through, and a name found in its own hideset
    is left alone (this is what stops SELF -> SELF from looping)

Every invocation met on the way becomes an ExpansionNode whose range lies
inside the span it textually came from, so a hover at any offset can be
mapped to the innermost call without re-running anything.

layered_trace() gives the reader's view instead: the whole text after
each single rewrite, or after each nesting layer, innermost calls first.
"""

import logging
from dataclasses import dataclass, field, replace
from enum import Enum
from typing import Dict, FrozenSet, Iterator, List, Optional, Set, Tuple

from macrocore.config import EngineConfig, resolve
from macrocore.definitions import MacroDefinition
from macrocore.errors import InvalidInvocationError
from macrocore.formatting import strip_redundant_parentheses
from macrocore.lexer import (
    Token, TokenKind, classify, is_macro_like, logical_lines, mask_comments, render,
    tokenize, tokenize_text,
)
from macrocore.macro_table import AnalysisSnapshot, ensure_snapshot
from macrocore.models import (
    CODE_ARGUMENT_COUNT, CODE_CIRCULAR, CODE_EXPANSION, CODE_UNBALANCED,
    Diagnostic, DiagnosticKind, ExpansionMode, Severity, SourceRange,
)
from macrocore.parens import check_balance

logger = logging.getLogger(__name__)


class Terminal(str, Enum):
    OK = "ok"
    CYCLE = "cycle"
    ERROR = "error"


# ═══════════════════════════════════════════════════════════════════════
#  Data types
# ═══════════════════════════════════════════════════════════════════════

@dataclass(eq=False)
class ExpansionNode:
    """One macro invocation and everything expanded beneath it."""
    macro_name: str
    invocation_range: SourceRange
    argument_ranges: List[SourceRange] = field(default_factory=list)
    arguments: List[str] = field(default_factory=list)        # raw argument spelling
    result_tokens: List[Token] = field(default_factory=list)
    children: List["ExpansionNode"] = field(default_factory=list)
    depth: int = 0
    terminal: Terminal = Terminal.OK
    message: Optional[str] = None
    substituted: str = ""                                      # body after substitution, before rescan

    @property
    def result_text(self) -> str:
        return render(self.result_tokens)

    @property
    def is_error(self) -> bool:
        return self.terminal == Terminal.ERROR

    def walk(self) -> Iterator["ExpansionNode"]:
        """This node and all descendants, depth first, left to right."""
        yield self
        for child in self.children:
            yield from child.walk()

    def to_dict(self) -> dict:
        return {
            "macro": self.macro_name,
            "range": [self.invocation_range.start, self.invocation_range.end],
            "arguments": list(self.arguments),
            "argument_ranges": [[r.start, r.end] for r in self.argument_ranges],
            "result": self.result_text,
            "depth": self.depth,
            "terminal": self.terminal.value,
            "message": self.message,
            "children": [c.to_dict() for c in self.children],
        }


@dataclass
class ExpansionStep:
    """One rewrite in the expansion trace."""
    macro: str
    before: str
    after: str
    depth: int
    note: str = ""


@dataclass
class ExpansionResult:
    tree: Optional[ExpansionNode]
    text: str
    diagnostics: List[Diagnostic] = field(default_factory=list)
    trace: List[ExpansionStep] = field(default_factory=list)
    pasted_names: List[str] = field(default_factory=list)     # identifiers formed by ##
    undefined_names: List[str] = field(default_factory=list)  # macro-like leftovers with no definition
    display_text: str = ""

    @property
    def has_errors(self) -> bool:
        return any(d.is_error for d in self.diagnostics)

    def get_summary(self) -> dict:
        return {
            "macro": self.tree.macro_name if self.tree else None,
            "result": self.text,
            "steps": len(self.trace),
            "errors": sum(1 for d in self.diagnostics if d.is_error),
            "warnings": sum(1 for d in self.diagnostics if not d.is_error),
            "undefined": list(self.undefined_names),
        }


@dataclass
class SourceExpansion:
    """All top-level invocation trees found in a text."""
    trees: List[ExpansionNode] = field(default_factory=list)
    diagnostics: List[Diagnostic] = field(default_factory=list)
    trace: List[ExpansionStep] = field(default_factory=list)


@dataclass
class _PPToken:
    kind: TokenKind
    text: str
    origin: SourceRange                 # where the spelling physically lives
    site: SourceRange                   # span an invocation built from this token may claim
    hideset: FrozenSet[str] = frozenset()
    space_before: bool = False
    producer: Optional[ExpansionNode] = None
    painted: bool = False               # suppressed by its hideset, never expands again
    placemarker: bool = False
    paste: bool = False                 # a ## operator from the macro body
    variadic: bool = False              # substituted from the variadic parameter

    @classmethod
    def of(cls, tok: Token, site: Optional[SourceRange] = None,
           hideset: FrozenSet[str] = frozenset()) -> "_PPToken":
        return cls(tok.kind, tok.text, tok.range, site or tok.range, hideset, tok.space_before)

    def to_token(self) -> Token:
        return Token(self.kind, self.text, self.origin, self.space_before)


# ═══════════════════════════════════════════════════════════════════════
#  Expander
# ═══════════════════════════════════════════════════════════════════════

class MacroExpander:
    """Expands invocations against one frozen snapshot.

    An instance accumulates the trace and diagnostics of the calls made on
    it; use a fresh instance per query.
    """

    def __init__(self, snapshot: AnalysisSnapshot, config: Optional[EngineConfig] = None):
        self.snapshot = ensure_snapshot(snapshot)
        self.table = snapshot.table
        self.config = snapshot.config if config is None else resolve(config)
        self.trace: List[ExpansionStep] = []
        self.diagnostics: List[Diagnostic] = []
        self.pasted: List[str] = []
        self._nodes = 0
        self._aborted = False
        self._root: Optional[ExpansionNode] = None
        self._cycle_reported = False

    # ── stream scanning ──

    def rescan(self, tokens: List[_PPToken], depth: int, children: List[ExpansionNode],
               owner: Optional[ExpansionNode] = None,
               at_top: bool = True) -> Tuple[List[_PPToken], Optional[int]]:
        """Expand every invocation in ``tokens``.

        New nodes are appended to ``children``.  Returns the output tokens
        and, when ``at_top`` is False, the index in the output where an
        invocation starts that needs tokens from the enclosing stream (a
        trailing function-like name, or an argument list left open).
        """
        stream = list(tokens)
        out: List[_PPToken] = []
        tail: Optional[int] = None
        i = 0
        while i < len(stream):
            tok = stream[i]
            definition = self._lookup(tok)
            if definition is None:
                out.append(tok)
                i += 1
                continue

            if tok.text in tok.hideset:
                self._note_cycle(tok, owner, depth)
                out.append(replace(tok, painted=True))
                i += 1
                continue

            if definition.malformed:
                if self._admit(tok, depth, children):
                    children.append(self._error_node(
                        tok.text, tok.site, depth,
                        f"macro '{tok.text}' has unbalanced parentheses in definition",
                        CODE_UNBALANCED,
                    ))
                out.append(tok)
                i += 1
                continue

            if not definition.is_function_like:
                if not self._admit(tok, depth, children):
                    out.append(tok)
                    i += 1
                    continue
                node, result, child_tail = self._expand_object(definition, tok, depth)
                self._attach(node, tok, children)
                i = self._splice(stream, i + 1, out, node, result, child_tail)
                continue

            j = i + 1
            if j >= len(stream) or stream[j].text != "(":
                if j >= len(stream) and not at_top:
                    tail = len(out)
                out.append(tok)
                i += 1
                continue

            args, commas, close = _collect_arguments(stream, j)
            if close is None:
                if not at_top:
                    tail = len(out)
                    out.extend(stream[i:])
                    break
                if self._admit(tok, depth, children):
                    balance = check_balance(render(stream[j:]))
                    logger.debug("Invocation of %s left %d parenthes(es) open",
                                 tok.text, balance.depth)
                    rng = SourceRange.covering([tok.site] + [t.site for t in stream[j:]])
                    node = self._error_node(
                        tok.text, rng, depth,
                        f"macro '{tok.text}' has unbalanced parentheses", CODE_UNBALANCED,
                    )
                    self._attach(node, tok, children)
                out.extend(stream[i:])
                break

            if not self._admit(tok, depth, children):
                out.extend(stream[i:close + 1])
                i = close + 1
                continue
            node, result, child_tail = self._expand_function(
                definition, tok, stream[j], args, commas, stream[close], depth,
            )
            self._attach(node, tok, children)
            i = self._splice(stream, close + 1, out, node, result, child_tail)

        return out, tail

    def _lookup(self, tok: _PPToken) -> Optional[MacroDefinition]:
        if tok.kind != TokenKind.IDENTIFIER or tok.painted or self._aborted:
            return None
        return self.table.get(tok.text)

    def _splice(self, stream: List[_PPToken], resume: int, out: List[_PPToken],
                node: ExpansionNode, result: List[_PPToken], tail: Optional[int]) -> int:
        """Move a child's result into the output; re-queue its unfinished tail."""
        done = result if tail is None else result[:tail]
        out.extend(done)
        if tail is not None:
            pending = [replace(t, site=node.invocation_range, producer=node) for t in result[tail:]]
            stream[resume:resume] = pending
        return resume

    def _attach(self, node: ExpansionNode, tok: _PPToken, children: List[ExpansionNode]):
        # A name handed up by the previous sibling's expansion: that sibling
        # produced this call, so it becomes the first child of the new node.
        producer = tok.producer
        if producer is not None and children and children[-1] is producer \
                and node.invocation_range.encloses(producer.invocation_range):
            children.pop()
            _set_depth(producer, node.depth + 1)
            node.children.insert(0, producer)
        children.append(node)

    # ── limits and bookkeeping ──

    def _admit(self, tok: _PPToken, depth: int, children: List[ExpansionNode]) -> bool:
        if self._aborted:
            return False
        if depth > self.config.max_expansion_depth:
            children.append(self._error_node(
                tok.text, tok.site, depth,
                f"maximum expansion depth ({self.config.max_expansion_depth}) exceeded "
                f"while expanding '{tok.text}'",
                CODE_EXPANSION,
            ))
            return False
        self._nodes += 1
        if self._nodes > self.config.max_expansion_nodes:
            self._aborted = True
            children.append(self._error_node(
                tok.text, tok.site, depth,
                f"expansion aborted: more than {self.config.max_expansion_nodes} invocations",
                CODE_EXPANSION,
            ))
            return False
        return True

    def _start(self, node: ExpansionNode):
        if node.depth == 0:
            self._root = node
            self._cycle_reported = False

    def _error_node(self, name: str, rng: SourceRange, depth: int, message: str,
                    code: str, node: Optional[ExpansionNode] = None) -> ExpansionNode:
        if node is None:
            node = ExpansionNode(name, rng, depth=depth)
            self._start(node)
        node.terminal = Terminal.ERROR
        node.message = message
        self.diagnostics.append(Diagnostic(
            severity=Severity.ERROR, kind=DiagnosticKind.EXPANSION_ERROR,
            code=code, message=message, range=node.invocation_range, macro=name,
        ))
        self.trace.append(ExpansionStep(name, name, name, depth, f"error: {message}"))
        logger.debug("Expansion error in %s: %s", name, message)
        return node

    def _note_cycle(self, tok: _PPToken, owner: Optional[ExpansionNode], depth: int):
        if owner is not None and owner.terminal == Terminal.OK:
            owner.terminal = Terminal.CYCLE
            owner.message = f"circular reference to '{tok.text}' left unexpanded"
        self.trace.append(ExpansionStep(tok.text, tok.text, tok.text, depth,
                                        f"'{tok.text}' already being expanded; left as is"))
        if self._cycle_reported or self._root is None:
            return
        self._cycle_reported = True
        root = self._root
        self.diagnostics.append(Diagnostic(
            severity=Severity.WARNING, kind=DiagnosticKind.CIRCULAR_REFERENCE,
            code=CODE_CIRCULAR,
            message=f"circular macro reference: '{tok.text}' in expansion of '{root.macro_name}'",
            range=root.invocation_range, macro=root.macro_name,
        ))

    # ── object-like ──

    def _expand_object(self, definition: MacroDefinition, tok: _PPToken,
                       depth: int) -> Tuple[ExpansionNode, List[_PPToken], Optional[int]]:
        node = ExpansionNode(definition.name, tok.site, depth=depth)
        self._start(node)
        hideset = tok.hideset | {definition.name}
        body = [_body_token(bt, node.invocation_range) for bt in definition.body]
        body, problem = self._paste_all(body, definition)
        if problem:
            self._error_node(definition.name, node.invocation_range, depth, problem, CODE_EXPANSION, node)
            return node, [tok], None
        return self._finish(node, tok, body, hideset, tok.text, "")

    # ── function-like ──

    def _expand_function(self, definition: MacroDefinition, tok: _PPToken, open_tok: _PPToken,
                         args: List[List[_PPToken]], commas: List[_PPToken], close_tok: _PPToken,
                         depth: int) -> Tuple[ExpansionNode, List[_PPToken], Optional[int]]:
        rng = SourceRange.covering([tok.site, close_tok.site])
        node = ExpansionNode(
            definition.name, rng,
            argument_ranges=_argument_ranges(args, commas, open_tok),
            arguments=[render(a) for a in args],
            depth=depth,
        )
        self._start(node)
        before = f"{definition.name}({', '.join(node.arguments)})"
        original = [tok, open_tok] + _interleave(args, commas) + [close_tok]

        problem = _arity_problem(definition, args)
        if problem:
            self._error_node(definition.name, rng, depth, problem, CODE_ARGUMENT_COUNT, node)
            return node, original, None

        raw = _bind(definition, args, commas)

        # Pre-expand, in parameter order, every argument used outside # and ##
        expanded: Dict[str, List[_PPToken]] = {}
        plain = _plain_uses(definition)
        for param in definition.all_parameters:
            if param in plain:
                expanded[param], _ = self.rescan(raw[param], depth + 1, node.children, node, True)

        body, problem = self._substitute(definition, node, raw, expanded)
        if problem is None:
            body, problem = self._paste_all(body, definition)
        if problem:
            self._error_node(definition.name, rng, depth, problem, CODE_EXPANSION, node)
            return node, original, None

        hideset = (tok.hideset & close_tok.hideset) | {definition.name}
        note = ", ".join(f"{p}={render(raw[p])}" for p in definition.all_parameters)
        return self._finish(node, tok, body, hideset, before, note)

    def _substitute(self, definition: MacroDefinition, node: ExpansionNode,
                    raw: Dict[str, List[_PPToken]],
                    expanded: Dict[str, List[_PPToken]]) -> Tuple[List[_PPToken], Optional[str]]:
        body = definition.body
        out: List[_PPToken] = []
        k = 0
        while k < len(body):
            bt = body[k]
            if bt.text == "#":
                if k + 1 >= len(body) or body[k + 1].text not in raw:
                    return out, "'#' is not followed by a macro parameter"
                out.append(_PPToken(
                    TokenKind.STRING, _stringify(raw[body[k + 1].text]),
                    SourceRange.covering([bt.range, body[k + 1].range]), node.invocation_range,
                    space_before=bt.space_before,
                ))
                k += 2
                continue
            if bt.is_identifier and bt.text in raw:
                pasted = (k > 0 and body[k - 1].text == "##") or \
                         (k + 1 < len(body) and body[k + 1].text == "##")
                replacement = raw[bt.text] if pasted else expanded[bt.text]
                from_variadic = bt.text == definition.variadic_name
                if not replacement:
                    if pasted:
                        out.append(_PPToken(TokenKind.PUNCTUATION, "", bt.range, node.invocation_range,
                                            space_before=bt.space_before, placemarker=True,
                                            variadic=from_variadic))
                    k += 1
                    continue
                copies = [replace(t, variadic=from_variadic) for t in replacement]
                copies[0].space_before = bt.space_before
                out.extend(copies)
                k += 1
                continue
            out.append(_body_token(bt, node.invocation_range))
            k += 1
        return out, None

    def _paste_all(self, tokens: List[_PPToken],
                   definition: MacroDefinition) -> Tuple[List[_PPToken], Optional[str]]:
        """Apply every ## operator in ``tokens``; drop placemarkers."""
        body = definition.body
        if body and (body[0].text == "##" or body[-1].text == "##"):
            return tokens, "'##' cannot appear at either end of a macro expansion"
        if not any(t.paste for t in tokens):
            return [t for t in tokens if not t.placemarker], None

        result: List[_PPToken] = []
        k = 0
        while k < len(tokens):
            t = tokens[k]
            if not t.paste or k + 1 >= len(tokens) or not result:
                result.append(t)
                k += 1
                continue
            lhs = result.pop()
            rhs = tokens[k + 1]
            if lhs.text == "," and rhs.variadic:
                # GNU comma swallowing: ", ## __VA_ARGS__"
                if rhs.placemarker:
                    logger.debug("%s: empty variadic argument, dropping preceding comma", definition.name)
                else:
                    result.extend([lhs, rhs])
                k += 2
                continue
            result.append(self._paste(lhs, rhs, definition))
            k += 2
        return [t for t in result if not t.placemarker], None

    def _paste(self, lhs: _PPToken, rhs: _PPToken, definition: MacroDefinition) -> _PPToken:
        if lhs.placemarker:
            return replace(rhs, space_before=lhs.space_before)
        if rhs.placemarker:
            return lhs
        text = lhs.text + rhs.text
        kind = classify(text)
        if kind == TokenKind.IDENTIFIER:
            self.pasted.append(text)
        logger.debug("%s: pasted %r ## %r -> %r", definition.name, lhs.text, rhs.text, text)
        return _PPToken(
            kind, text,
            SourceRange.covering([lhs.origin, rhs.origin]), lhs.site,
            space_before=lhs.space_before,
        )

    # ── common tail ──

    def _finish(self, node: ExpansionNode, tok: _PPToken, body: List[_PPToken],
                hideset: FrozenSet[str], before: str,
                note: str) -> Tuple[ExpansionNode, List[_PPToken], Optional[int]]:
        for t in body:
            t.hideset = t.hideset | hideset
            t.producer = None
        if body:
            body[0].space_before = tok.space_before
        node.substituted = render(body)
        self.trace.append(ExpansionStep(node.macro_name, before, node.substituted, node.depth, note))

        result, tail = self.rescan(body, node.depth + 1, node.children, node, False)
        node.result_tokens = [t.to_token() for t in result]
        return node, result, tail


# ═══════════════════════════════════════════════════════════════════════
#  Whole-text steps
# ═══════════════════════════════════════════════════════════════════════

@dataclass
class _Site:
    definition: MacroDefinition
    start: int                          # index of the macro name
    end: int                            # one past the last token of the call
    depth: int                          # parenthesis nesting at the name
    args: List[List[_PPToken]] = field(default_factory=list)
    commas: List[_PPToken] = field(default_factory=list)


class LayeredStepper:
    """Rewrites a token stream one macro, or one nesting layer, per step.

    Innermost calls go first, so every step shows the complete text after
    one visible rewrite.  A call sitting in an argument that the enclosing
    macro stringifies, pastes, or drops is left for that macro to consume
    raw, which keeps the last step equal to the full expansion.
    """

    def __init__(self, snapshot: AnalysisSnapshot, config: Optional[EngineConfig] = None):
        self.snapshot = ensure_snapshot(snapshot)
        self.table = snapshot.table
        self.config = snapshot.config if config is None else resolve(config)
        self._expander = MacroExpander(snapshot, self.config)

    def run(self, tokens: List[_PPToken], mode: ExpansionMode) -> List[ExpansionStep]:
        steps: List[ExpansionStep] = []
        rewrites = 0
        while True:
            sites = self.ready(tokens)
            if not sites:
                break
            if mode == ExpansionMode.SINGLE_MACRO:
                sites = sites[:1]

            before = render(tokens)
            names: List[str] = []
            labels: List[str] = []
            failure: Optional[Tuple[str, str]] = None
            # right to left, so earlier indices stay valid
            for site in reversed(sites):
                label = render(tokens[site.start:site.end])
                replacement, problem = self._rewrite(site, tokens)
                if problem:
                    failure = (site.definition.name, problem)
                    break
                tokens[site.start:site.end] = replacement
                names.insert(0, site.definition.name)
                labels.insert(0, label)

            if names:
                rewrites += len(names)
                steps.append(ExpansionStep(", ".join(names), before, render(tokens),
                                           sites[0].depth, "; ".join(labels)))
            if failure:
                text = render(tokens)
                steps.append(ExpansionStep(failure[0], text, text, sites[0].depth,
                                           f"error: {failure[1]}"))
                break
            if rewrites >= self.config.max_expansion_nodes:
                text = render(tokens)
                steps.append(ExpansionStep("", text, text, sites[0].depth,
                                           f"stopped after {rewrites} rewrites"))
                logger.debug("Step view stopped after %d rewrites", rewrites)
                break
        return steps

    def ready(self, tokens: List[_PPToken]) -> List[_Site]:
        """The calls to rewrite next: the deepest unblocked ones, left to right."""
        sites: List[_Site] = []
        blocked: List[Tuple[int, int]] = []
        depth = 0
        for i, tok in enumerate(tokens):
            if tok.kind == TokenKind.PUNCTUATION and tok.text in ("(", ")"):
                depth += 1 if tok.text == "(" else -1
                continue
            definition = self._expandable(tok)
            if definition is None:
                continue
            if definition.malformed or not definition.is_function_like:
                sites.append(_Site(definition, i, i + 1, depth))
                continue
            if i + 1 >= len(tokens) or tokens[i + 1].text != "(":
                continue
            args, commas, close = _collect_arguments(tokens, i + 1)
            if close is None:
                continue
            sites.append(_Site(definition, i, close + 1, depth, args, commas))
            blocked.extend(_raw_spans(definition, args, i + 2))

        sites = [s for s in sites if not any(b <= s.start < e for b, e in blocked)]
        if not sites:
            return []
        deepest = max(s.depth for s in sites)
        return [s for s in sites if s.depth == deepest]

    def _expandable(self, tok: _PPToken) -> Optional[MacroDefinition]:
        if tok.kind != TokenKind.IDENTIFIER or tok.painted or tok.text in tok.hideset:
            return None
        return self.table.get(tok.text)

    def _rewrite(self, site: _Site,
                 tokens: List[_PPToken]) -> Tuple[List[_PPToken], Optional[str]]:
        definition = site.definition
        tok = tokens[site.start]
        if definition.malformed:
            return [], f"macro '{definition.name}' has unbalanced parentheses in definition"
        rng = SourceRange.covering([t.site for t in tokens[site.start:site.end]])
        node = ExpansionNode(definition.name, rng)
        if definition.is_function_like:
            problem = _arity_problem(definition, site.args)
            if problem:
                return [], problem
            raw = _bind(definition, site.args, site.commas)
            body, problem = self._expander._substitute(definition, node, raw, raw)
            hideset = tok.hideset & tokens[site.end - 1].hideset
        else:
            body = [_body_token(bt, rng) for bt in definition.body]
            problem = None
            hideset = tok.hideset
        if problem is None:
            body, problem = self._expander._paste_all(body, definition)
        if problem:
            return [], problem

        hideset = hideset | {definition.name}
        result = [replace(t, hideset=t.hideset | hideset, producer=None) for t in body]
        if result:
            result[0] = replace(result[0], space_before=tok.space_before)
        return result, None


# ═══════════════════════════════════════════════════════════════════════
#  Helpers
# ═══════════════════════════════════════════════════════════════════════

def _collect_arguments(stream: List[_PPToken], open_index: int):
    """Split the argument list opening at ``open_index``.

    Returns ``(args, commas, close_index)``; close_index is None when the
    list never closes.
    """
    depth = 0
    args: List[List[_PPToken]] = [[]]
    commas: List[_PPToken] = []
    for k in range(open_index, len(stream)):
        t = stream[k]
        if t.kind == TokenKind.PUNCTUATION:
            if t.text == "(":
                depth += 1
                if depth == 1:
                    continue
            elif t.text == ")":
                depth -= 1
                if depth == 0:
                    return args, commas, k
            elif t.text == "," and depth == 1:
                args.append([])
                commas.append(t)
                continue
        args[-1].append(t)
    return args, commas, None


def _body_token(tok: Token, site: SourceRange) -> _PPToken:
    pp = _PPToken.of(tok, site)
    pp.paste = tok.text == "##"
    return pp


def _interleave(args: List[List[_PPToken]], commas: List[_PPToken]) -> List[_PPToken]:
    out: List[_PPToken] = []
    for index, arg in enumerate(args):
        if index:
            out.append(commas[index - 1])
        out.extend(arg)
    return out


def _argument_ranges(args: List[List[_PPToken]], commas: List[_PPToken],
                     open_tok: _PPToken) -> List[SourceRange]:
    ranges = []
    for index, arg in enumerate(args):
        if arg:
            ranges.append(SourceRange.covering([t.site for t in arg]))
        else:
            sep = open_tok if index == 0 else commas[index - 1]
            ranges.append(SourceRange(sep.site.end, sep.site.end))
    return ranges


def _arity_problem(definition: MacroDefinition, args: List[List[_PPToken]]) -> Optional[str]:
    provided = 0 if len(args) == 1 and not args[0] else len(args)
    fixed = len(definition.parameters)
    if definition.is_variadic:
        if len(args) < fixed:
            return (f"macro '{definition.name}' requires at least {fixed} "
                    f"argument(s), but {provided} provided")
    elif len(args) != fixed and not (fixed == 0 and provided == 0):
        return (f"macro '{definition.name}' requires exactly {fixed} "
                f"argument(s), but {provided} provided")
    return None


def _bind(definition: MacroDefinition, args: List[List[_PPToken]],
          commas: List[_PPToken]) -> Dict[str, List[_PPToken]]:
    """Raw argument tokens per parameter; the variadic one gets the rest, commas included."""
    fixed = len(definition.parameters)
    raw: Dict[str, List[_PPToken]] = {}
    for index, param in enumerate(definition.parameters):
        raw[param] = args[index] if index < len(args) else []
    if definition.is_variadic:
        rest = args[fixed:]
        raw[definition.variadic_name] = _interleave(rest, commas[fixed:fixed + len(rest) - 1]) if rest else []
    return raw


def _plain_uses(definition: MacroDefinition) -> Set[str]:
    """Parameters that occur at least once outside a # or ## operand."""
    params = set(definition.all_parameters)
    body = definition.body
    used = set()
    for k, bt in enumerate(body):
        if bt.text not in params:
            continue
        if k > 0 and body[k - 1].text in ("#", "##"):
            continue
        if k + 1 < len(body) and body[k + 1].text == "##":
            continue
        used.add(bt.text)
    return used


def _raw_spans(definition: MacroDefinition, args: List[List[_PPToken]],
               first: int) -> List[Tuple[int, int]]:
    """Token index spans of arguments the macro consumes unexpanded (or not at all)."""
    plain = _plain_uses(definition)
    operands = _operand_uses(definition)
    fixed = len(definition.parameters)
    spans = []
    pos = first
    for index, arg in enumerate(args):
        param = definition.parameters[index] if index < fixed else definition.variadic_name
        if param not in plain or param in operands:
            spans.append((pos, pos + len(arg)))
        pos += len(arg) + 1
    return spans


def _operand_uses(definition: MacroDefinition) -> Set[str]:
    """Parameters that occur at least once as a # or ## operand."""
    params = set(definition.all_parameters)
    body = definition.body
    used = set()
    for k, bt in enumerate(body):
        if bt.text not in params:
            continue
        if (k > 0 and body[k - 1].text in ("#", "##")) or \
                (k + 1 < len(body) and body[k + 1].text == "##"):
            used.add(bt.text)
    return used


def _stringify(tokens: List[_PPToken]) -> str:
    parts = []
    for index, t in enumerate(tokens):
        if index and t.space_before:
            parts.append(" ")
        parts.append(t.text.replace("\\", "\\\\").replace('"', '\\"'))
    return '"' + "".join(parts) + '"'


def _set_depth(node: ExpansionNode, depth: int):
    node.depth = depth
    for child in node.children:
        _set_depth(child, depth + 1)


def _undefined_leftovers(tokens: List[Token], snapshot: AnalysisSnapshot,
                         config: EngineConfig) -> List[str]:
    names: List[str] = []
    for tok in tokens:
        if not tok.is_identifier or tok.text in names:
            continue
        if tok.text in snapshot.table or tok.text in snapshot.exclusions:
            continue
        if config.macro_like_only and not is_macro_like(tok.text):
            continue
        names.append(tok.text)
    return names


def _invocation_tokens(definition: MacroDefinition, invocation_text: Optional[str],
                       base: int) -> List[Token]:
    name = definition.name
    if invocation_text is None:
        invocation_text = name
        if definition.is_function_like and not definition.malformed:
            invocation_text += "(" + ", ".join(definition.all_parameters) + ")"
    tokens = tokenize_text(invocation_text, base)
    if tokens and tokens[0].text == "(":
        tokens.insert(0, Token(TokenKind.IDENTIFIER, name, SourceRange(base, base)))
    if not tokens or tokens[0].text != name:
        raise InvalidInvocationError(name, invocation_text)
    return tokens


# ═══════════════════════════════════════════════════════════════════════
#  Public API
# ═══════════════════════════════════════════════════════════════════════

def expand(snapshot: AnalysisSnapshot, macro_name: str, invocation_text: Optional[str] = None,
           invocation_range: Optional[SourceRange] = None,
           config: Optional[EngineConfig] = None) -> ExpansionResult:
    """Expand one invocation of ``macro_name``.

    ``invocation_text`` may be the whole call (``CALC(5)``) or just the
    argument list (``(5)``).  When omitted, object-like macros expand bare
    and function-like macros expand with their own parameter names as
    arguments.  ``invocation_range`` places the text in the snapshot
    source; without it, ranges are offsets into the invocation text.
    """
    snapshot = ensure_snapshot(snapshot)
    definition = snapshot.table.require(macro_name)
    expander = MacroExpander(snapshot, config)
    base = invocation_range.start if invocation_range is not None else 0
    tokens = _invocation_tokens(definition, invocation_text, base)

    stream = [_PPToken.of(t) for t in tokens]
    roots: List[ExpansionNode] = []
    out, _ = expander.rescan(stream, 0, roots)
    if len(roots) > 1:
        logger.debug("Invocation text for %s holds %d top-level calls; reporting the first",
                     macro_name, len(roots))

    if roots:
        tree = roots[0]
    else:
        # function-like name without an argument list is not an invocation
        tree = ExpansionNode(macro_name, tokens[0].range, result_tokens=[tokens[0]],
                             message=f"function-like macro '{macro_name}' used without arguments; "
                                     f"left unexpanded")

    final = [t.to_token() for t in out]
    text = render(final)
    config = expander.config
    return ExpansionResult(
        tree=tree,
        text=text,
        diagnostics=expander.diagnostics,
        trace=expander.trace,
        pasted_names=list(dict.fromkeys(expander.pasted)),
        undefined_names=_undefined_leftovers(final, snapshot, config),
        display_text=strip_redundant_parentheses(text) if config.strip_extra_parentheses else text,
    )


def expand_source(snapshot: AnalysisSnapshot, text: Optional[str] = None, base: int = 0,
                  include_bodies: bool = True,
                  config: Optional[EngineConfig] = None) -> SourceExpansion:
    """Build a tree for every invocation in free text (default: the snapshot source).

    Directive lines are skipped; runs of ordinary lines between directives
    form one stream, so an invocation may span lines.  With
    ``include_bodies`` the bodies of all scanned definitions are treated
    as streams too, so nested calls inside a #define can be hovered.
    """
    snapshot = ensure_snapshot(snapshot)
    expander = MacroExpander(snapshot, config)
    result = SourceExpansion()
    source = snapshot.source if text is None else text

    streams: List[List[_PPToken]] = [[]]
    for line in logical_lines(mask_comments(source)):
        if line.is_directive:
            streams.append([])
            continue
        streams[-1].extend(_PPToken.of(t) for t in tokenize(line))

    if base:
        streams = [[replace(t, origin=t.origin.shift(base), site=t.site.shift(base)) for t in s]
                   for s in streams]

    if include_bodies and text is None:
        for definition in snapshot.definitions:
            if definition.malformed or not definition.body:
                continue
            hideset = frozenset({definition.name})
            inert = set(definition.all_parameters) | {definition.name}
            streams.append([
                replace(_PPToken.of(bt, hideset=hideset), painted=bt.text in inert)
                for bt in definition.body
            ])

    for stream in streams:
        if stream:
            expander.rescan(stream, 0, result.trees)

    result.trees.sort(key=lambda n: (n.invocation_range.start, -n.invocation_range.end))
    result.diagnostics = expander.diagnostics
    result.trace = expander.trace
    return result


def layered_trace(snapshot: AnalysisSnapshot, macro_name: str, invocation_text: Optional[str] = None,
                  mode: Optional[ExpansionMode] = None,
                  config: Optional[EngineConfig] = None) -> List[ExpansionStep]:
    """Whole-text states of one invocation, innermost calls first.

    Each step's ``before`` and ``after`` hold the complete text; ``macro``
    names what was rewritten and ``depth`` is the parenthesis level it sat
    at.  ``mode`` (default: the config's ``expansion_mode``) picks one
    rewrite per step or a whole nesting layer per step.  A step whose note
    starts with ``error:`` ends the view.
    """
    snapshot = ensure_snapshot(snapshot)
    definition = snapshot.table.require(macro_name)
    stepper = LayeredStepper(snapshot, config)
    mode = stepper.config.expansion_mode if mode is None else ExpansionMode(mode)
    tokens = _invocation_tokens(definition, invocation_text, 0)
    return stepper.run([_PPToken.of(t) for t in tokens], mode)
