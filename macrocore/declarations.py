"""
Declaration collector — names that must never be reported as undefined macros.

A lightweight tree-sitter pass over the snapshot collects:
  • typedef names          (typedef struct {...} Point_T;)
  • struct/union/enum tags (struct NODE, enum COLOR)
  • enumerator constants   (enum { RED, GREEN })

Together with the fixed keyword, directive-keyword and builtin sets these
form the per-snapshot exclusion set consulted by diagnostics and by the
suggestion ranker.
"""

import logging
from dataclasses import dataclass, field
from typing import FrozenSet, Iterable, Optional, Set

import tree_sitter_c as tsc
from tree_sitter import Language, Parser, Node

logger = logging.getLogger(__name__)

C_LANGUAGE = Language(tsc.language())
_parser = Parser(C_LANGUAGE)


C_KEYWORDS = frozenset({
    "auto", "break", "case", "char", "const", "continue", "default", "do",
    "double", "else", "enum", "extern", "float", "for", "goto", "if",
    "inline", "int", "long", "register", "restrict", "return", "short",
    "signed", "sizeof", "static", "struct", "switch", "typedef", "union",
    "unsigned", "void", "volatile", "while",
    "_Alignas", "_Alignof", "_Atomic", "_Bool", "_Complex", "_Generic",
    "_Imaginary", "_Noreturn", "_Static_assert", "_Thread_local",
    "bool", "true", "false", "alignas", "alignof", "static_assert",
    "thread_local", "typeof", "nullptr", "asm", "__asm__", "__inline",
    "__inline__", "__restrict", "__restrict__", "__volatile__", "__typeof__",
    "__extension__",
})

DIRECTIVE_KEYWORDS = frozenset({
    "define", "undef", "include", "include_next", "if", "ifdef", "ifndef",
    "elif", "elifdef", "elifndef", "else", "endif", "defined", "line",
    "error", "warning", "pragma", "_Pragma", "__has_include",
    "__has_include_next", "__has_attribute", "__has_builtin",
})

# Predefined by the language or by common compilers
BUILTIN_IDENTIFIERS = frozenset({
    "__VA_ARGS__", "__VA_OPT__",
    "__FILE__", "__LINE__", "__DATE__", "__TIME__", "__TIMESTAMP__",
    "__STDC__", "__STDC_VERSION__", "__STDC_HOSTED__", "__cplusplus",
    "__func__", "__FUNCTION__", "__PRETTY_FUNCTION__", "__COUNTER__",
    "__GNUC__", "__GNUC_MINOR__", "__GNUC_PATCHLEVEL__",
    "__clang__", "__clang_major__", "__clang_minor__", "__clang_patchlevel__",
    "_MSC_VER", "_MSC_FULL_VER",
    "__APPLE__", "__linux__", "__unix__", "__MINGW32__", "__MINGW64__",
    "_WIN32", "_WIN64", "__x86_64__", "__i386__", "__arm__", "__aarch64__",
    "__attribute__", "__declspec",
})

# Names normally supplied by standard headers the snapshot never sees
STANDARD_NAMES = frozenset({
    "NULL", "EOF", "BUFSIZ", "FILENAME_MAX", "FOPEN_MAX", "CHAR_BIT",
    "CHAR_MAX", "CHAR_MIN", "SCHAR_MAX", "SCHAR_MIN", "UCHAR_MAX",
    "SHRT_MAX", "SHRT_MIN", "USHRT_MAX", "INT_MAX", "INT_MIN", "UINT_MAX",
    "LONG_MAX", "LONG_MIN", "ULONG_MAX", "LLONG_MAX", "LLONG_MIN",
    "ULLONG_MAX", "SIZE_MAX", "EXIT_SUCCESS", "EXIT_FAILURE", "RAND_MAX",
    "SEEK_SET", "SEEK_CUR", "SEEK_END", "errno", "stdin", "stdout", "stderr",
})

_TAG_SPECIFIERS = ("struct_specifier", "union_specifier", "enum_specifier")
_DECLARATOR_WRAPPERS = (
    "pointer_declarator", "array_declarator", "function_declarator",
    "parenthesized_declarator", "attributed_declarator",
)


@dataclass
class DeclarationSet:
    """Type-level names found in one snapshot."""
    typedefs: Set[str] = field(default_factory=set)
    tags: Set[str] = field(default_factory=set)
    enumerators: Set[str] = field(default_factory=set)

    @property
    def names(self) -> Set[str]:
        return self.typedefs | self.tags | self.enumerators

    def get_summary(self) -> dict:
        return {
            "typedefs": sorted(self.typedefs),
            "tags": sorted(self.tags),
            "enumerators": sorted(self.enumerators),
        }


# ═══════════════════════════════════════════════════════════════════════
#  tree-sitter helpers
# ═══════════════════════════════════════════════════════════════════════

def _node_text(node: Node, source: bytes) -> str:
    return source[node.start_byte:node.end_byte].decode("utf-8", errors="replace")


def _walk(node: Node):
    """Yield every descendant of ``node`` in document order."""
    cursor = node.walk()
    visited = False
    while True:
        if not visited:
            yield cursor.node
            if cursor.goto_first_child():
                continue
        if cursor.goto_next_sibling():
            visited = False
            continue
        if cursor.goto_parent():
            visited = True
            continue
        break


def _declarator_name(node: Optional[Node], source: bytes) -> Optional[str]:
    """Peel pointer/array/function wrappers down to the declared name."""
    while node is not None and node.type in _DECLARATOR_WRAPPERS:
        inner = node.child_by_field_name("declarator")
        if inner is None:
            inner = next((c for c in node.named_children if c.type != "attribute_specifier"), None)
        node = inner
    if node is not None and node.type in ("type_identifier", "identifier"):
        return _node_text(node, source)
    return None


# ═══════════════════════════════════════════════════════════════════════
#  Collection
# ═══════════════════════════════════════════════════════════════════════

def collect_declarations(source: str) -> DeclarationSet:
    """Collect typedef names, tags and enumerators from C source text."""
    data = source.encode("utf-8")
    tree = _parser.parse(data)
    if tree.root_node.has_error:
        logger.warning("Declaration scan: source has syntax errors, collecting what parsed")

    found = DeclarationSet()
    for node in _walk(tree.root_node):
        if node.type == "type_definition":
            for decl in node.children_by_field_name("declarator"):
                name = _declarator_name(decl, data)
                if name:
                    found.typedefs.add(name)
        elif node.type in _TAG_SPECIFIERS:
            tag = node.child_by_field_name("name")
            if tag is not None:
                found.tags.add(_node_text(tag, data))
        elif node.type == "enumerator":
            name = node.child_by_field_name("name")
            if name is not None:
                found.enumerators.add(_node_text(name, data))

    logger.debug("Declaration scan: %d typedefs, %d tags, %d enumerators",
                 len(found.typedefs), len(found.tags), len(found.enumerators))
    return found


def build_exclusions(declarations: Optional[DeclarationSet] = None,
                     extra: Iterable[str] = ()) -> FrozenSet[str]:
    """Finite set of names never flagged as undefined nor offered as suggestions."""
    names: Set[str] = set(C_KEYWORDS) | DIRECTIVE_KEYWORDS | BUILTIN_IDENTIFIERS | STANDARD_NAMES
    if declarations is not None:
        names |= declarations.names
    names.update(extra)
    return frozenset(names)
