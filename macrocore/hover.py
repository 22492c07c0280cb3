"""
Hover support — find the innermost invocation under an offset.

The query is a pure range search over already-built ExpansionNode trees:
pick the top-level tree whose range holds the offset, then keep moving to
the smallest child that still holds it.  A child with the same range as
its parent (a call that came from the parent's own body) does not win
over the parent, so hovering a macro's name always lands on that macro.
"""

from typing import Iterable, List, Optional

from macrocore.expander import ExpansionNode, Terminal
from macrocore.macro_table import AnalysisSnapshot, ensure_snapshot


def locate_innermost(offset: int, trees: Iterable[ExpansionNode]) -> Optional[ExpansionNode]:
    """Smallest-range node containing ``offset``, or None when no tree covers it."""
    root = None
    for tree in trees:
        if tree.invocation_range.contains(offset):
            if root is None or tree.invocation_range.length < root.invocation_range.length:
                root = tree
    if root is None:
        return None

    node = root
    while True:
        best = None
        for child in node.children:
            rng = child.invocation_range
            if not rng.contains(offset) or rng.length >= node.invocation_range.length:
                continue
            if best is None or rng.length < best.invocation_range.length:
                best = child
        if best is None:
            return node
        node = best


def hover_at(snapshot: AnalysisSnapshot, offset: int) -> Optional[ExpansionNode]:
    """Innermost invocation at ``offset`` in the snapshot's own source."""
    snapshot = ensure_snapshot(snapshot)
    return locate_innermost(offset, snapshot.invocation_trees())


def render_hover(node: ExpansionNode, snapshot: AnalysisSnapshot) -> str:
    """Plain-text hover card for one node: definition, arguments, steps, result."""
    lines: List[str] = []
    definition = snapshot.table.get(node.macro_name)
    if definition is not None:
        lines.append(f"#define {definition.signature} {definition.body_text}".rstrip())
    if node.arguments:
        params = list(definition.all_parameters) if definition is not None else []
        for index, arg in enumerate(node.arguments):
            label = params[index] if index < len(params) else f"arg{index + 1}"
            lines.append(f"  {label} = {arg}")

    if node.terminal == Terminal.ERROR:
        lines.append(f"error: {node.message}")
        return "\n".join(lines)

    steps = []
    for descendant in node.walk():
        if descendant.substituted:
            steps.append(f"{'  ' * (descendant.depth - node.depth)}{descendant.macro_name} -> {descendant.substituted}")
    if len(steps) > 1:
        lines.append("steps:")
        lines.extend("  " + s for s in steps)
    lines.append(f"=> {node.result_text}")
    if node.terminal == Terminal.CYCLE:
        lines.append(f"note: {node.message}")
    return "\n".join(lines)
