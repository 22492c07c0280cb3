"""
MacroLens Engine — MCP Server

Exposes the macro engine through the Model Context Protocol:

  1.  analyze_source        — build a snapshot from C source text
  1b. analyze_file          — same, reading the text from a file
  2.  list_macros           — macros in the current snapshot
  3.  expand_macro          — step-by-step expansion of one invocation
  4.  expand_at             — expansion tree of the innermost call at line:column
  5.  hover                 — hover card for the innermost call at line:column
  6.  undefined_identifiers — undefined-identifier warnings with suggestions
  7.  suggest_names         — "did you mean" candidates for a name
  8.  check_parentheses     — literal-aware balance check of a text
  9.  cross_check           — compare an expansion with pcpp's
"""

from mcp.server.fastmcp import FastMCP
import os
import sys
import json
import logging

# Ensure macrocore modules are importable
sys.path.append(os.path.dirname(os.path.abspath(__file__)))

from macrocore.config import EngineConfig
from macrocore.diagnostics import find_undefined_identifiers, undefined_in_result
from macrocore.errors import MacroEngineError
from macrocore.expander import expand, layered_trace
from macrocore.hover import hover_at, render_hover
from macrocore.macro_table import analyze_snapshot
from macrocore.models import AttributionPolicy, ExpansionMode
from macrocore.parens import check_balance
from macrocore.reference import ReferencePreprocessor
from macrocore.suggest import suggest

logger = logging.getLogger(__name__)

# ═══════════════════════════════════════════════════════════════════════
#  Server Setup
# ═══════════════════════════════════════════════════════════════════════

mcp = FastMCP("MacroLens Engine")

config = EngineConfig.from_env()
snapshot = None
source_label = None

_NO_SNAPSHOT = "Error: No source analyzed. Call analyze_source first."


def _location(offset: int) -> str:
    line, col = snapshot.line_index.position(offset)
    return f"{source_label}:{line}:{col}"


def _format_diagnostics(diagnostics, limit: int = 50) -> str:
    if not diagnostics:
        return "No diagnostics."
    lines = []
    for d in diagnostics[:limit]:
        entry = f"- [{d.severity.value}] {_location(d.range.start)} {d.message}"
        if d.suggestions:
            entry += f" (did you mean: {', '.join(d.suggestions)}?)"
        lines.append(entry)
    if len(diagnostics) > limit:
        lines.append(f"... and {len(diagnostics) - limit} more")
    return "\n".join(lines)


def _offset_at(line: int, column: int):
    """Source offset for a 1-based position, or an error string."""
    try:
        return snapshot.line_index.offset(line, column), None
    except ValueError as e:
        return None, f"Error: {e}"


# ═══════════════════════════════════════════════════════════════════════
#  Tool 1 — Analyze
# ═══════════════════════════════════════════════════════════════════════

@mcp.tool()
def analyze_source(source: str, label: str = "<source>") -> str:
    """
    Scans macro definitions and type declarations in C source text and
    freezes them as the current snapshot.  Every other tool queries the
    most recent snapshot; calling this again replaces it wholesale.

    Args:
        source: Full C source text (header or translation unit).
        label:  Name used when reporting locations.
    """
    global snapshot, source_label

    try:
        snapshot = analyze_snapshot(source, config)
        source_label = label
    except Exception as e:
        logger.exception("Analysis failed")
        return f"Error analyzing source: {e}"

    summary = snapshot.get_summary()
    return (
        f"Analyzed {label}: {summary['macros']} macros "
        f"({summary['function_like']} function-like), "
        f"{summary['excluded_type_names']} type/tag names excluded.\n"
        f"Definition diagnostics:\n{_format_diagnostics(snapshot.definition_diagnostics)}"
    )


@mcp.tool()
def analyze_file(file_path: str) -> str:
    """
    Reads a C source file and analyzes it (see analyze_source).

    Args:
        file_path: Path to a .c or .h file.
    """
    if not os.path.isfile(file_path):
        return f"Error: File not found at {file_path}"
    try:
        with open(file_path, "r", encoding="utf-8", errors="replace", newline="") as f:
            text = f.read()
    except OSError as e:
        return f"Error reading {file_path}: {e}"
    return analyze_source(text, file_path.replace("\\", "/"))


# ═══════════════════════════════════════════════════════════════════════
#  Tool 2 — List Macros
# ═══════════════════════════════════════════════════════════════════════

@mcp.tool()
def list_macros(name_filter: str = "") -> str:
    """
    Lists macros in the current snapshot.

    Args:
        name_filter: Optional substring; only names containing it are listed.
    """
    if snapshot is None:
        return _NO_SNAPSHOT

    rows = []
    for name in sorted(snapshot.table):
        if name_filter and name_filter not in name:
            continue
        d = snapshot.table[name]
        flag = " (malformed)" if d.malformed else ""
        rows.append(f"- `{d.signature}` = `{d.body_text}`{flag}  [{_location(d.name_range.start)}]")
    if not rows:
        return "No macros match."
    return "\n".join(rows)


# ═══════════════════════════════════════════════════════════════════════
#  Tool 3 — Expand
# ═══════════════════════════════════════════════════════════════════════

@mcp.tool()
def expand_macro(macro_name: str, invocation: str = "", mode: str = "") -> str:
    """
    Expands one invocation and shows every rewrite step.

    Args:
        macro_name: Name of the macro to expand.
        invocation: Full call such as "CALC(5)" or just "(5)".  Empty expands
                    object-like macros bare and function-like macros with
                    their parameter names as arguments.
        mode:       Whole-text step view: "single-macro" (one rewrite per
                    step) or "single-layer" (one nesting level per step).
                    Empty uses the configured default.
    """
    if snapshot is None:
        return _NO_SNAPSHOT
    try:
        chosen = ExpansionMode(mode) if mode else config.expansion_mode
    except ValueError:
        return f"Error: Unknown mode '{mode}'. Use one of: single-macro, single-layer."
    try:
        result = expand(snapshot, macro_name, invocation or None, config=config)
        steps = layered_trace(snapshot, macro_name, invocation or None, chosen, config)
    except MacroEngineError as e:
        return f"Error: {e}"

    out = [f"### {macro_name}", ""]
    for step in result.trace:
        indent = "  " * step.depth
        line = f"{indent}{step.before} -> {step.after}"
        if step.note:
            line += f"    [{step.note}]"
        out.append(line)
    out.append("")
    out.append(f"Steps ({chosen.value}):")
    for number, step in enumerate(steps, 1):
        line = f"  {number}. {step.after}"
        if step.note.startswith("error:") or not step.macro:
            line += f"    [{step.note}]"
        out.append(line)
    out.append("")
    out.append(f"Result: `{result.display_text}`")

    problems = list(result.diagnostics) + undefined_in_result(result, snapshot)
    if problems:
        out.append("")
        for d in problems:
            entry = f"- [{d.severity.value}] {d.message}"
            if d.suggestions:
                entry += f" (did you mean: {', '.join(d.suggestions)}?)"
            out.append(entry)
    return "\n".join(out)


# ═══════════════════════════════════════════════════════════════════════
#  Tools 4/5 — Innermost invocation
# ═══════════════════════════════════════════════════════════════════════

@mcp.tool()
def expand_at(line: int, column: int) -> str:
    """
    Returns the expansion tree (JSON) of the innermost macro call at a position.

    Args:
        line:   1-based line in the analyzed source.
        column: 1-based column.
    """
    if snapshot is None:
        return _NO_SNAPSHOT
    offset, error = _offset_at(line, column)
    if error:
        return error
    node = hover_at(snapshot, offset)
    if node is None:
        return f"No macro invocation at {line}:{column}."
    return json.dumps(node.to_dict(), indent=2)


@mcp.tool()
def hover(line: int, column: int) -> str:
    """
    Hover card for the innermost macro call at a position: definition,
    argument bindings, expansion steps and result.

    Args:
        line:   1-based line in the analyzed source.
        column: 1-based column.
    """
    if snapshot is None:
        return _NO_SNAPSHOT
    offset, error = _offset_at(line, column)
    if error:
        return error
    node = hover_at(snapshot, offset)
    if node is None:
        return f"No macro invocation at {line}:{column}."
    return render_hover(node, snapshot)


# ═══════════════════════════════════════════════════════════════════════
#  Tool 6 — Undefined identifiers
# ═══════════════════════════════════════════════════════════════════════

@mcp.tool()
def undefined_identifiers(scan_source: bool = True, policy: str = "") -> str:
    """
    Reports identifiers that resolve to no macro, parameter or type name.

    Args:
        scan_source: Also scan ordinary (non-directive) source lines, not
                     just macro bodies.
        policy:      Where to report names reached through other macros:
                     "definition", "use-site" or "both".  Empty uses the
                     configured default.
    """
    if snapshot is None:
        return _NO_SNAPSHOT
    try:
        chosen = AttributionPolicy(policy) if policy else None
    except ValueError:
        return f"Error: Unknown policy '{policy}'. Use one of: definition, use-site, both."
    diagnostics = find_undefined_identifiers(snapshot, scan_source=scan_source, policy=chosen)
    return _format_diagnostics(diagnostics)


# ═══════════════════════════════════════════════════════════════════════
#  Tools 7/8 — Suggestions and parentheses
# ═══════════════════════════════════════════════════════════════════════

@mcp.tool()
def suggest_names(name: str) -> str:
    """
    Ranked macro-name candidates for a possibly misspelt name.

    Args:
        name: The unresolved identifier.
    """
    if snapshot is None:
        return _NO_SNAPSHOT
    candidates = suggest(name, snapshot.known_names - snapshot.exclusions, config)
    if not candidates:
        return f"No close matches for '{name}'."
    return "\n".join(f"{i}. {c}" for i, c in enumerate(candidates, 1))


@mcp.tool()
def check_parentheses(text: str) -> str:
    """
    Checks a text for balanced parentheses, ignoring string/char literals
    and comments.

    Args:
        text: Expression, parameter list or macro body.
    """
    result = check_balance(text)
    if result.balanced:
        return "Balanced."
    if result.unmatched_close:
        return f"Unbalanced: unmatched ')' at offset {result.offset}."
    return (f"Unbalanced: {result.depth} '(' left open at end of input "
            f"(outermost opened at offset {result.open_offset}).")


# ═══════════════════════════════════════════════════════════════════════
#  Tool 9 — Cross-check with pcpp
# ═══════════════════════════════════════════════════════════════════════

@mcp.tool()
def cross_check(macro_name: str, invocation: str = "") -> str:
    """
    Expands an invocation with the engine and with the pcpp reference
    preprocessor and reports whether the results agree (whitespace ignored).

    Args:
        macro_name: Name of the macro to expand.
        invocation: Full call such as "CALC(5)"; empty means the bare name.
    """
    if snapshot is None:
        return _NO_SNAPSHOT
    try:
        check = ReferencePreprocessor(snapshot).cross_check(macro_name, invocation or None)
    except MacroEngineError as e:
        return f"Error: {e}"
    verdict = "MATCH" if check.matches else "MISMATCH"
    return (
        f"{verdict}\n"
        f"engine:    {check.engine_text}\n"
        f"reference: {check.reference_text if check.reference_text is not None else '<pcpp failed>'}"
    )


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO, stream=sys.stderr)
    try:
        if hasattr(mcp, "_tool_manager") and hasattr(mcp._tool_manager, "_tools"):
            tools = mcp._tool_manager._tools.keys()
            logger.info("MacroLens Engine starting with %d tools: %s", len(tools), list(tools))
    except Exception as e:
        logger.debug("Could not inspect tools: %s", e)

    mcp.run()
