"""
Macro expansion: substitution, # and ##, variadics, rescanning, cycles,
limits and the provenance tree.
"""
import os
import sys
import unittest

# Add project root to path
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

from macrocore.config import EngineConfig
from macrocore.diagnostics import undefined_in_result
from macrocore.errors import InvalidInvocationError, UnknownMacroError
from macrocore.expander import Terminal, expand, expand_source, layered_trace
from macrocore.macro_table import analyze_snapshot
from macrocore.models import (
    CODE_ARGUMENT_COUNT, CODE_CIRCULAR, CODE_UNBALANCED, DiagnosticKind, ExpansionMode,
    SourceRange,
)

FIXTURES = os.path.join(PROJECT_ROOT, "tests", "fixtures")

MACROS = """
#define ONE 1
#define SQUARE(x) ((x) * (x))
#define ADD(a, b) ((a) + (b))
#define STR(x) #x
#define XSTR(x) STR(x)
#define CAT(a, b) a ## b
#define LOG(fmt, ...) printf(fmt, ##__VA_ARGS__)
#define CALL(f, ...) f(__VA_ARGS__)
#define TWO_PLUS(a, b, ...) a
#define BADP(a) ## a
#define HASH(a) # b
#define SELF SELF + 1
#define PING PONG
#define PONG PING
#define RECUR(x) RECUR(x + 1)
#define ALIAS SQUARE
#define WRAP(x) ((x))
#define EMPTY
"""


def squash(text: str) -> str:
    return "".join(text.split())


class TestBasicExpansion(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.snapshot = analyze_snapshot(MACROS)

    def test_object_like(self):
        result = expand(self.snapshot, "ONE")
        self.assertEqual(result.text, "1")
        self.assertEqual(result.tree.macro_name, "ONE")
        self.assertEqual(result.tree.terminal, Terminal.OK)

    def test_function_like(self):
        result = expand(self.snapshot, "SQUARE", "SQUARE(3)")
        self.assertEqual(result.text, "((3) * (3))")
        self.assertEqual(result.tree.arguments, ["3"])
        self.assertFalse(result.has_errors)

    def test_argument_list_only(self):
        result = expand(self.snapshot, "ADD", "(1, 2)")
        self.assertEqual(result.text, "((1) + (2))")

    def test_parameter_names_when_no_text(self):
        result = expand(self.snapshot, "SQUARE")
        self.assertEqual(result.text, "((x) * (x))")

    def test_name_without_arguments(self):
        result = expand(self.snapshot, "SQUARE", "SQUARE")
        self.assertEqual(result.text, "SQUARE")
        self.assertIn("used without arguments", result.tree.message)

    def test_empty_macro(self):
        self.assertEqual(expand(self.snapshot, "EMPTY").text, "")

    def test_unknown_macro(self):
        with self.assertRaises(UnknownMacroError):
            expand(self.snapshot, "NOPE")

    def test_text_must_invoke_macro(self):
        with self.assertRaises(InvalidInvocationError):
            expand(self.snapshot, "SQUARE", "ADD(1, 2)")

    def test_nested_arguments_pre_expanded(self):
        result = expand(self.snapshot, "SQUARE", "SQUARE(ADD(ONE, 2))")
        self.assertEqual(result.text, "((((1) + (2))) * (((1) + (2))))")
        names = [n.macro_name for n in result.tree.walk()]
        self.assertEqual(names, ["SQUARE", "ADD", "ONE"])

    def test_object_to_function_like(self):
        result = expand(self.snapshot, "ALIAS", "ALIAS(4)")
        self.assertEqual(result.text, "((4) * (4))")
        self.assertEqual(result.tree.macro_name, "SQUARE")
        self.assertEqual(result.tree.children[0].macro_name, "ALIAS")
        self.assertEqual(result.tree.children[0].depth, 1)

    def test_invocation_range(self):
        result = expand(self.snapshot, "SQUARE", "SQUARE(3)", invocation_range=SourceRange(100, 109))
        self.assertEqual(result.tree.invocation_range, SourceRange(100, 109))
        self.assertEqual(result.tree.argument_ranges, [SourceRange(107, 108)])

    def test_repeatable(self):
        first = expand(self.snapshot, "SQUARE", "SQUARE(ADD(1, ONE))")
        second = expand(self.snapshot, "SQUARE", "SQUARE(ADD(1, ONE))")
        self.assertEqual(first.tree.to_dict(), second.tree.to_dict())
        self.assertEqual(first.text, second.text)

    def test_trace(self):
        result = expand(self.snapshot, "XSTR", "XSTR(ONE)")
        self.assertEqual([s.macro for s in result.trace], ["ONE", "XSTR", "STR"])
        self.assertEqual(result.trace[1].before, "XSTR(ONE)")
        self.assertEqual(result.trace[1].after, "STR(1)")

    def test_display_text(self):
        result = expand(self.snapshot, "WRAP", "WRAP(a)", config=EngineConfig(strip_extra_parentheses=True))
        self.assertEqual(result.text, "((a))")
        self.assertEqual(result.display_text, "a")


class TestOperators(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.snapshot = analyze_snapshot(MACROS)

    def test_stringify_raw_argument(self):
        self.assertEqual(expand(self.snapshot, "STR", "STR(ONE)").text, '"ONE"')
        self.assertEqual(expand(self.snapshot, "XSTR", "XSTR(ONE)").text, '"1"')

    def test_stringify_escapes_literals(self):
        result = expand(self.snapshot, "STR", 'STR(a + "b")')
        self.assertEqual(result.text, '"a + \\"b\\""')

    def test_stringify_escapes_every_backslash(self):
        result = expand(self.snapshot, "STR", r'STR("a\n" \ x)')
        self.assertEqual(result.text, r'"\"a\\n\" \\ x"')

    def test_stringify_tree(self):
        tree = expand(self.snapshot, "XSTR", "XSTR(ONE)").tree
        self.assertEqual([c.macro_name for c in tree.children], ["ONE", "STR"])
        self.assertEqual(tree.children[0].invocation_range, SourceRange(5, 8))

    def test_paste(self):
        result = expand(self.snapshot, "CAT", "CAT(foo, bar)")
        self.assertEqual(result.text, "foobar")
        self.assertEqual(result.pasted_names, ["foobar"])

    def test_paste_does_not_expand_operands(self):
        self.assertEqual(expand(self.snapshot, "CAT", "CAT(ONE, 2)").text, "ONE2")

    def test_paste_forms_macro_name(self):
        self.assertEqual(expand(self.snapshot, "CAT", "CAT(O, NE)").text, "1")

    def test_paste_with_empty_operand(self):
        self.assertEqual(expand(self.snapshot, "CAT", "CAT(, y)").text, "y")

    def test_paste_at_edge(self):
        result = expand(self.snapshot, "BADP", "BADP(1)")
        self.assertTrue(result.tree.is_error)
        self.assertEqual(result.tree.message, "'##' cannot appear at either end of a macro expansion")
        self.assertEqual(result.text, "BADP(1)")

    def test_paste_at_trailing_edge(self):
        snapshot = analyze_snapshot("#define TAILP(a) a ##\n#define LEADO ## y\n")
        for name, invocation in [("TAILP", "TAILP(1)"), ("LEADO", None)]:
            with self.subTest(macro=name):
                result = expand(snapshot, name, invocation)
                self.assertTrue(result.tree.is_error)
                self.assertEqual(result.tree.message,
                                 "'##' cannot appear at either end of a macro expansion")

    def test_hash_without_parameter(self):
        result = expand(self.snapshot, "HASH", "HASH(1)")
        self.assertTrue(result.tree.is_error)
        self.assertEqual(result.tree.message, "'#' is not followed by a macro parameter")


class TestVariadic(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.snapshot = analyze_snapshot(MACROS)

    def test_variadic_arguments(self):
        result = expand(self.snapshot, "CALL", "CALL(f, 1, 2, 3)")
        self.assertEqual(squash(result.text), "f(1,2,3)")

    def test_comma_kept_with_arguments(self):
        result = expand(self.snapshot, "LOG", 'LOG("%d", 5)')
        self.assertEqual(squash(result.text), 'printf("%d",5)')

    def test_comma_dropped_without_arguments(self):
        result = expand(self.snapshot, "LOG", 'LOG("hi")')
        self.assertEqual(squash(result.text), 'printf("hi")')

    def test_too_few_for_variadic(self):
        result = expand(self.snapshot, "TWO_PLUS", "TWO_PLUS(1)")
        self.assertTrue(result.tree.is_error)
        self.assertEqual(result.tree.message,
                         "macro 'TWO_PLUS' requires at least 2 argument(s), but 1 provided")


class TestErrors(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.snapshot = analyze_snapshot(MACROS)

    def test_argument_count(self):
        result = expand(self.snapshot, "ADD", "ADD(1)")
        self.assertTrue(result.has_errors)
        self.assertEqual(result.diagnostics[0].code, CODE_ARGUMENT_COUNT)
        self.assertEqual(result.tree.message,
                         "macro 'ADD' requires exactly 2 argument(s), but 1 provided")
        self.assertEqual(result.text, "ADD(1)")

    def test_no_arguments_counted_as_zero(self):
        result = expand(self.snapshot, "ADD", "ADD()")
        self.assertEqual(result.tree.message,
                         "macro 'ADD' requires exactly 2 argument(s), but 0 provided")

    def test_unbalanced_invocation(self):
        result = expand(self.snapshot, "ADD", "ADD(1, (2)")
        self.assertTrue(result.tree.is_error)
        self.assertEqual(result.tree.message, "macro 'ADD' has unbalanced parentheses")
        self.assertEqual(result.diagnostics[0].code, CODE_UNBALANCED)

    def test_malformed_definition(self):
        snapshot = analyze_snapshot("#define BROKEN(a, b (a+b)\n")
        result = expand(snapshot, "BROKEN", "BROKEN(1, 2)")
        self.assertTrue(result.tree.is_error)
        self.assertEqual(result.tree.message,
                         "macro 'BROKEN' has unbalanced parentheses in definition")


class TestCycles(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.snapshot = analyze_snapshot(MACROS)

    def test_self_reference(self):
        result = expand(self.snapshot, "SELF")
        self.assertEqual(result.text, "SELF + 1")
        self.assertEqual(result.tree.terminal, Terminal.CYCLE)
        warnings = [d for d in result.diagnostics if d.code == CODE_CIRCULAR]
        self.assertEqual(len(warnings), 1)
        self.assertEqual(warnings[0].kind, DiagnosticKind.CIRCULAR_REFERENCE)
        self.assertEqual(warnings[0].message, "circular macro reference: 'SELF' in expansion of 'SELF'")

    def test_mutual_reference(self):
        result = expand(self.snapshot, "PING")
        self.assertEqual(result.text, "PING")
        pong = result.tree.children[0]
        self.assertEqual(pong.macro_name, "PONG")
        self.assertEqual(pong.terminal, Terminal.CYCLE)
        self.assertEqual(len(result.diagnostics), 1)

    def test_function_like_self_reference(self):
        result = expand(self.snapshot, "RECUR", "RECUR(0)")
        self.assertEqual(result.text, "RECUR(0 + 1)")
        self.assertEqual(result.tree.terminal, Terminal.CYCLE)


class TestLimits(unittest.TestCase):

    CHAIN = "".join(f"#define L{i} L{i + 1}\n" for i in range(1, 7)) + "#define L7 0\n"

    def test_depth_limit(self):
        snapshot = analyze_snapshot(self.CHAIN)
        result = expand(snapshot, "L1", config=EngineConfig(max_expansion_depth=3))
        self.assertTrue(result.has_errors)
        self.assertEqual(result.text, "L5")
        self.assertEqual(result.diagnostics[0].message,
                         "maximum expansion depth (3) exceeded while expanding 'L5'")

    def test_node_limit(self):
        snapshot = analyze_snapshot(self.CHAIN)
        result = expand(snapshot, "L1", config=EngineConfig(max_expansion_nodes=2))
        self.assertTrue(result.has_errors)
        self.assertEqual(result.diagnostics[0].message, "expansion aborted: more than 2 invocations")

    def test_within_limits(self):
        snapshot = analyze_snapshot(self.CHAIN)
        result = expand(snapshot, "L1")
        self.assertEqual(result.text, "0")
        self.assertEqual(max(n.depth for n in result.tree.walk()), 6)


class TestFixtureExpansion(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        with open(os.path.join(FIXTURES, "expansion_suggestions.c"), "r", encoding="utf-8") as f:
            cls.source = f.read()
        cls.snapshot = analyze_snapshot(cls.source)

    def test_calc(self):
        result = expand(self.snapshot, "EXPSUGG_CALC", "EXPSUGG_CALC(5)")
        self.assertEqual(result.text, "((5) + UNDEFIND_CONSTANT)")
        self.assertEqual(result.undefined_names, ["UNDEFIND_CONSTANT"])

    def test_nested_undefined_with_suggestion(self):
        result = expand(self.snapshot, "EXPSUGG_LEVEL1")
        self.assertEqual(result.text, "LEVLE3")
        found = undefined_in_result(result, self.snapshot)
        self.assertEqual(len(found), 1)
        self.assertEqual(found[0].identifier, "LEVLE3")
        self.assertEqual(found[0].suggestions, ["LEVEL3"])

    def test_source_trees(self):
        trees = expand_source(self.snapshot).trees
        starts = [t.invocation_range.start for t in trees]
        self.assertEqual(starts, sorted(starts))
        calc = [t for t in trees if t.macro_name == "EXPSUGG_CALC"]
        self.assertEqual(len(calc), 1)
        self.assertEqual(calc[0].result_text, "((5) + UNDEFIND_CONSTANT)")
        rng = calc[0].invocation_range
        self.assertEqual(self.source[rng.start:rng.end], "EXPSUGG_CALC(5)")

    def test_body_streams(self):
        trees = expand_source(self.snapshot).trees
        define_at = self.source.index("#define EXPSUGG_BAZ")
        in_body = [t for t in trees if t.macro_name == "EXPSUGG_BAR"
                   and t.invocation_range.start > define_at
                   and t.invocation_range.start < self.source.index("\n", define_at)]
        self.assertEqual(len(in_body), 1)
        self.assertEqual(in_body[0].result_text, "UNDEFINED_MACRO")


class TestLayeredTrace(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.snapshot = analyze_snapshot(MACROS)
        with open(os.path.join(FIXTURES, "nested_macro_hover.c"), "r", encoding="utf-8") as f:
            cls.nested = analyze_snapshot(f.read())

    def test_single_macro_innermost_first(self):
        invocation = "SQUARE(ADD(ONE, 2))"
        steps = layered_trace(self.snapshot, "SQUARE", invocation, ExpansionMode.SINGLE_MACRO)
        self.assertEqual([s.macro for s in steps], ["ONE", "ADD", "SQUARE"])
        self.assertEqual(steps[0].before, invocation)
        self.assertEqual(steps[0].after, "SQUARE(ADD(1, 2))")
        self.assertEqual(steps[0].depth, 2)
        self.assertEqual(steps[1].after, "SQUARE(((1) + (2)))")
        self.assertEqual(steps[1].before, steps[0].after)
        self.assertEqual(steps[-1].after, expand(self.snapshot, "SQUARE", invocation).text)

    def test_single_layer_rewrites_whole_level(self):
        invocation = "NH_FUNC(NH_CONSTANT, NH_ADD(7, 8), NH_MUL(9, 9))"
        steps = layered_trace(self.nested, "NH_FUNC", invocation, ExpansionMode.SINGLE_LAYER)
        self.assertEqual(len(steps), 2)
        self.assertEqual(steps[0].macro, "NH_CONSTANT, NH_ADD, NH_MUL")
        self.assertEqual(steps[0].after, "NH_FUNC(42, ((7) + (8)), ((9) * (9)))")
        self.assertEqual(steps[1].macro, "NH_FUNC")
        self.assertEqual(steps[1].after, expand(self.nested, "NH_FUNC", invocation).text)

    def test_mode_from_config(self):
        invocation = "NH_FUNC(NH_CONSTANT, NH_ADD(7, 8), NH_MUL(9, 9))"
        steps = layered_trace(self.nested, "NH_FUNC", invocation,
                              config=EngineConfig(expansion_mode=ExpansionMode.SINGLE_MACRO))
        self.assertEqual(len(steps), 4)
        self.assertEqual(steps[0].after, "NH_FUNC(42, NH_ADD(7, 8), NH_MUL(9, 9))")
        self.assertEqual(len(layered_trace(self.nested, "NH_FUNC", invocation)), 2)

    def test_stringified_argument_kept_raw(self):
        steps = layered_trace(self.snapshot, "STR", "STR(ONE)")
        self.assertEqual([s.after for s in steps], ['"ONE"'])
        steps = layered_trace(self.snapshot, "XSTR", "XSTR(ONE)")
        self.assertEqual([s.after for s in steps], ["XSTR(1)", "STR(1)", '"1"'])

    def test_name_produced_by_rewrite(self):
        steps = layered_trace(self.snapshot, "ALIAS", "ALIAS(4)")
        self.assertEqual([s.after for s in steps], ["SQUARE(4)", "((4) * (4))"])

    def test_cycles_stop(self):
        self.assertEqual([s.after for s in layered_trace(self.snapshot, "SELF")], ["SELF + 1"])
        self.assertEqual([s.after for s in layered_trace(self.snapshot, "PING")], ["PONG", "PING"])

    def test_error_ends_view(self):
        steps = layered_trace(self.snapshot, "ADD", "ADD(1)")
        self.assertEqual(len(steps), 1)
        self.assertEqual(steps[0].before, "ADD(1)")
        self.assertEqual(steps[0].after, "ADD(1)")
        self.assertEqual(steps[0].note,
                         "error: macro 'ADD' requires exactly 2 argument(s), but 1 provided")

    def test_unknown_macro(self):
        with self.assertRaises(UnknownMacroError):
            layered_trace(self.snapshot, "NOPE")


class TestNestingInvariant(unittest.TestCase):
    """Child ranges stay inside their parent; siblings never partially overlap."""

    SOURCE = """\
#define ONE 1
#define ADD(a, b) ((a) + (b))
#define SQUARE(x) ((x) * (x))
#define CAT(a, b) a ## b
#define NH_INNER(x) (x + 1)
#define NH_OUTER(y) (NH_INNER(y) * 2)
#define f(x) x * g
#define g f
int a = SQUARE(ADD(ONE, 2));
int b = NH_OUTER(NH_INNER(10));
int c = CAT(NH_, INNER)(3);
int d = f(2)(9);
int e = ADD(SQUARE(1), NH_OUTER(ONE)) + ONE;
"""

    def assert_nested(self, nodes, parent=None):
        for node in nodes:
            if parent is not None:
                rng = node.invocation_range
                inside = parent.invocation_range.encloses(rng) or \
                    any(r.encloses(rng) for r in parent.argument_ranges)
                self.assertTrue(inside, f"{node.macro_name} escapes {parent.macro_name}")
            self.assert_nested(node.children, node)
        for i, first in enumerate(nodes):
            for second in nodes[i + 1:]:
                a, b = first.invocation_range, second.invocation_range
                partial = a.overlaps(b) and not (a.encloses(b) or b.encloses(a))
                self.assertFalse(partial, f"{first.macro_name} and {second.macro_name} cross")

    def test_source_trees(self):
        trees = expand_source(analyze_snapshot(self.SOURCE)).trees
        self.assertGreater(len(trees), 5)
        self.assert_nested(trees)

    def test_fixture_trees(self):
        with open(os.path.join(FIXTURES, "nested_macro_hover.c"), "r", encoding="utf-8") as f:
            trees = expand_source(analyze_snapshot(f.read())).trees
        self.assert_nested(trees)

    def test_overlaps(self):
        self.assertTrue(SourceRange(0, 5).overlaps(SourceRange(4, 9)))
        self.assertFalse(SourceRange(0, 5).overlaps(SourceRange(5, 9)))


if __name__ == "__main__":
    unittest.main()
