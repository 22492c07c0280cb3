"""
Macro table and analysis snapshot.

An AnalysisSnapshot is built once per source version: the definition scan
runs to completion, the resulting table is frozen, and every later query
(expansion, diagnostics, hover) reads that same table.  Re-analysis builds
a new snapshot; nothing is patched in place.
"""

import logging
from collections.abc import Mapping
from dataclasses import dataclass, field
from types import MappingProxyType
from typing import Dict, FrozenSet, Iterator, List, Optional

from macrocore.config import EngineConfig, resolve
from macrocore.declarations import DeclarationSet, build_exclusions, collect_declarations
from macrocore.definitions import DefinitionScan, MacroDefinition, scan_definitions
from macrocore.errors import SnapshotNotBuiltError, UnknownMacroError
from macrocore.models import Diagnostic, LineIndex, SourceRange

logger = logging.getLogger(__name__)


class MacroTable(Mapping):
    """Read-only mapping of macro name to its live definition."""

    def __init__(self, definitions: Dict[str, MacroDefinition], redefined=()):
        self._definitions = MappingProxyType(dict(definitions))
        self.redefined: FrozenSet[str] = frozenset(redefined)

    def __getitem__(self, name: str) -> MacroDefinition:
        return self._definitions[name]

    def __iter__(self) -> Iterator[str]:
        return iter(self._definitions)

    def __len__(self) -> int:
        return len(self._definitions)

    @property
    def names(self) -> FrozenSet[str]:
        return frozenset(self._definitions)

    def require(self, name: str) -> MacroDefinition:
        """Definition for ``name``; raises UnknownMacroError when absent."""
        try:
            return self._definitions[name]
        except KeyError:
            raise UnknownMacroError(name) from None

    def is_function_like(self, name: str) -> bool:
        definition = self._definitions.get(name)
        return definition is not None and definition.is_function_like


@dataclass
class AnalysisSnapshot:
    """One analysed source version."""
    source: str
    table: MacroTable
    exclusions: FrozenSet[str]
    definition_diagnostics: List[Diagnostic]
    declarations: DeclarationSet
    directive_ranges: List[SourceRange]
    definitions: List[MacroDefinition]          # every #define in order, including replaced ones
    config: EngineConfig
    line_index: LineIndex = field(init=False, repr=False)
    _trees: Optional[list] = field(default=None, init=False, repr=False)

    def __post_init__(self):
        self.line_index = LineIndex(self.source)

    @property
    def known_names(self) -> FrozenSet[str]:
        return self.table.names

    def in_directive(self, offset: int) -> bool:
        return any(r.start <= offset < r.end for r in self.directive_ranges)

    def invocation_trees(self) -> list:
        """Top-level expansion trees for every invocation in the source (cached)."""
        if self._trees is None:
            from macrocore.expander import expand_source
            self._trees = expand_source(self).trees
        return self._trees

    def get_summary(self) -> dict:
        return {
            "macros": len(self.table),
            "function_like": sum(1 for d in self.table.values() if d.is_function_like),
            "redefined": sorted(self.table.redefined),
            "definition_errors": sum(1 for d in self.definition_diagnostics if d.is_error),
            "definition_warnings": sum(1 for d in self.definition_diagnostics if not d.is_error),
            "excluded_type_names": len(self.declarations.names),
        }


def analyze_snapshot(source: str, config: Optional[EngineConfig] = None) -> AnalysisSnapshot:
    """Scan definitions and declarations of ``source`` and freeze the result."""
    config = resolve(config)
    scan: DefinitionScan = scan_definitions(source, config)
    declarations = collect_declarations(source) if config.collect_declarations else DeclarationSet()
    snapshot = AnalysisSnapshot(
        source=source,
        table=MacroTable(scan.active, scan.redefined),
        exclusions=build_exclusions(declarations),
        definition_diagnostics=list(scan.diagnostics),
        declarations=declarations,
        directive_ranges=list(scan.directive_ranges),
        definitions=list(scan.definitions),
        config=config,
    )
    logger.info("Snapshot built: %d macros, %d definition diagnostics",
                len(snapshot.table), len(snapshot.definition_diagnostics))
    return snapshot


def ensure_snapshot(snapshot) -> AnalysisSnapshot:
    if not isinstance(snapshot, AnalysisSnapshot):
        raise SnapshotNotBuiltError()
    return snapshot
