"""
Undefined-identifier diagnostics and "did you mean" suggestions.
"""
import os
import sys
import unittest

# Add project root to path
PROJECT_ROOT = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
sys.path.insert(0, PROJECT_ROOT)

from macrocore.config import EngineConfig
from macrocore.diagnostics import UndefinedIdentifierChecker, find_undefined_identifiers
from macrocore.macro_table import analyze_snapshot
from macrocore.models import (
    CODE_EXPANSION_UNDEFINED, CODE_UNDEFINED, AttributionPolicy, DiagnosticKind, Severity,
)
from macrocore.suggest import affix_bound, distance_bound, edit_distance, rank_candidates, suggest

FIXTURES = os.path.join(PROJECT_ROOT, "tests", "fixtures")

SOURCE = """\
#define FOO 123
#define BAR UNDEFINED_MACRO
#define BAZ FOX + BAR
#define SQ(VALUE) ((VALUE) * (VALUE))
typedef struct { int a; } POINT_T;
enum COLOR { RED, GREEN };
#define MAKE_POINT ((POINT_T){ RED })
#define LOWER lower_case_name
int x = FOX;
int y = BAR;
int w = s.MEMBER + p->OTHER;
"""


class TestUndefinedIdentifiers(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        cls.snapshot = analyze_snapshot(SOURCE)

    def test_bodies_only_by_default(self):
        found = find_undefined_identifiers(self.snapshot)
        self.assertEqual([d.identifier for d in found], ["UNDEFINED_MACRO", "FOX"])
        fox = found[1]
        self.assertEqual(fox.macro, "BAZ")
        self.assertEqual(fox.suggestions, ["FOO"])
        self.assertEqual(fox.severity, Severity.WARNING)
        self.assertEqual(fox.kind, DiagnosticKind.UNDEFINED_IDENTIFIER)
        self.assertEqual(fox.code, CODE_UNDEFINED)
        self.assertEqual(SOURCE[fox.range.start:fox.range.end], "FOX")

    def test_parameters_never_flagged(self):
        found = find_undefined_identifiers(self.snapshot, scan_source=True)
        self.assertNotIn("VALUE", [d.identifier for d in found])

    def test_type_names_never_flagged(self):
        found = find_undefined_identifiers(self.snapshot, scan_source=True)
        names = {d.identifier for d in found}
        self.assertNotIn("POINT_T", names)
        self.assertNotIn("RED", names)

    def test_member_access_skipped(self):
        found = find_undefined_identifiers(self.snapshot, scan_source=True)
        names = {d.identifier for d in found}
        self.assertNotIn("MEMBER", names)
        self.assertNotIn("OTHER", names)

    def test_source_scan(self):
        found = find_undefined_identifiers(self.snapshot, scan_source=True)
        uses = [d for d in found if d.macro is None]
        self.assertEqual(len(uses), 1)
        self.assertEqual(uses[0].identifier, "FOX")
        self.assertEqual(uses[0].suggestions, ["FOO"])

    def test_free_text(self):
        found = find_undefined_identifiers(self.snapshot, free_text="FOX + 1", base_offset=500)
        use = [d for d in found if d.range.start >= 500]
        self.assertEqual(len(use), 1)
        self.assertEqual(use[0].range.start, 500)

    def test_lowercase_only_when_asked(self):
        default = find_undefined_identifiers(self.snapshot)
        self.assertNotIn("lower_case_name", [d.identifier for d in default])
        every = find_undefined_identifiers(self.snapshot, config=EngineConfig(macro_like_only=False))
        self.assertIn("lower_case_name", [d.identifier for d in every])

    def test_pasted_operands_skipped(self):
        snapshot = analyze_snapshot("#define GLUE(x) PREFIX_ ## x\n")
        self.assertEqual(find_undefined_identifiers(snapshot), [])

    def test_no_self_suggestion(self):
        snapshot = analyze_snapshot("#define COUNTER COUNTR\n")
        found = find_undefined_identifiers(snapshot)
        self.assertEqual(found[0].identifier, "COUNTR")
        self.assertEqual(found[0].suggestions, [])


class TestAttribution(unittest.TestCase):

    @classmethod
    def setUpClass(cls):
        with open(os.path.join(FIXTURES, "expansion_suggestions.c"), "r", encoding="utf-8") as f:
            cls.source = f.read()
        cls.snapshot = analyze_snapshot(cls.source)

    def test_definition_policy(self):
        found = find_undefined_identifiers(self.snapshot, policy=AttributionPolicy.DEFINITION)
        self.assertEqual(sorted(d.identifier for d in found),
                         ["FOX", "LEVLE3", "UNDEFIND_CONSTANT", "UNDEFINED_MACRO"])
        self.assertTrue(all(d.code == CODE_UNDEFINED for d in found))
        levle = next(d for d in found if d.identifier == "LEVLE3")
        self.assertEqual(levle.suggestions, ["LEVEL3"])

    def test_direct_use_suggests_longer_macro(self):
        """int x = FOX; should suggest EXPSUGG_FOO."""
        found = find_undefined_identifiers(self.snapshot, scan_source=True)
        direct = [d for d in found if d.identifier == "FOX" and d.macro is None]
        self.assertEqual(len(direct), 1)
        self.assertEqual(direct[0].suggestions, ["EXPSUGG_FOO"])
        in_body = [d for d in found if d.identifier == "FOX" and d.macro == "EXPSUGG_BAZ"]
        self.assertEqual(in_body[0].suggestions, ["EXPSUGG_FOO"])

    def test_use_site_policy(self):
        found = find_undefined_identifiers(self.snapshot, scan_source=True,
                                           policy=AttributionPolicy.USE_SITE)
        direct = [d for d in found if d.code == CODE_UNDEFINED]
        self.assertEqual([d.identifier for d in direct], ["FOX"])

        reached = [d for d in found if d.code == CODE_EXPANSION_UNDEFINED]
        messages = [d.message for d in reached]
        self.assertIn("macro 'EXPSUGG_BAR' expands to undefined identifier 'UNDEFINED_MACRO'", messages)
        self.assertIn("macro 'EXPSUGG_BAZ' expands to undefined identifier 'FOX'", messages)
        self.assertIn("macro 'EXPSUGG_BAZ' expands to undefined identifier 'UNDEFINED_MACRO'"
                      " (through 'EXPSUGG_BAR')", messages)
        self.assertIn("macro 'EXPSUGG_LEVEL1' expands to undefined identifier 'LEVLE3'"
                      " (through 'EXPSUGG_LEVEL2')", messages)
        for d in reached:
            self.assertFalse(self.snapshot.in_directive(d.range.start))

    def test_both_policy(self):
        found = find_undefined_identifiers(self.snapshot, scan_source=True,
                                           policy=AttributionPolicy.BOTH)
        codes = {d.code for d in found}
        self.assertEqual(codes, {CODE_UNDEFINED, CODE_EXPANSION_UNDEFINED})
        self.assertTrue(any(self.snapshot.in_directive(d.range.start) for d in found))

    def test_reachable_undefined(self):
        checker = UndefinedIdentifierChecker(self.snapshot)
        self.assertEqual(sorted(checker.reachable_undefined("EXPSUGG_BAZ")),
                         [("EXPSUGG_BAR", "UNDEFINED_MACRO"), ("EXPSUGG_BAZ", "FOX")])
        self.assertEqual(checker.reachable_undefined("EXPSUGG_FOO"), [])

    def test_ordered_by_position(self):
        found = find_undefined_identifiers(self.snapshot, scan_source=True,
                                           policy=AttributionPolicy.BOTH)
        starts = [d.range.start for d in found]
        self.assertEqual(starts, sorted(starts))


class TestSuggestions(unittest.TestCase):

    def test_edit_distance(self):
        self.assertEqual(edit_distance("kitten", "sitting"), 3)
        self.assertEqual(edit_distance("", "abc"), 3)
        self.assertEqual(edit_distance("same", "same"), 0)

    def test_bounded_distance_exits_early(self):
        self.assertEqual(edit_distance("abc", "xyz", bound=1), 2)
        self.assertEqual(edit_distance("a", "abcdef", bound=2), 3)

    def test_bound_grows_with_length(self):
        self.assertEqual(distance_bound("FOX"), 2)
        self.assertEqual(distance_bound("A_VERY_LONG_MACRO_NAME"), 4)

    def test_ranking(self):
        self.assertEqual(suggest("FOX", ["FOO", "FOXX", "BOX", "ZZZ"]), ["FOXX", "FOO", "BOX"])

    def test_limit(self):
        names = ["FOA", "FOB", "FOC", "FOD"]
        self.assertEqual(len(suggest("FOX", names)), 3)
        self.assertEqual(len(suggest("FOX", names, EngineConfig(max_suggestions=1))), 1)

    def test_partial_match(self):
        ranked = rank_candidates("BUFFER", ["MAX_BUFFER_SIZE", "BUF"])
        self.assertEqual(ranked[0].name, "MAX_BUFFER_SIZE")
        self.assertTrue(ranked[0].partial)
        self.assertEqual(suggest("BUF", ["MAX_BUF_SIZE"]), [])

    def test_nothing_close(self):
        self.assertEqual(suggest("QWERTY", ["FOO", "BAR"]), [])

    def test_exact_name_not_suggested(self):
        self.assertEqual(suggest("FOO", ["FOO"]), [])

    def test_short_names_need_resemblance(self):
        self.assertEqual(suggest("AB", ["XY"]), [])
        self.assertEqual(suggest("Q", {"Z", "FOO"}), [])
        self.assertEqual(suggest("AB", ["AX"]), ["AX"])
        self.assertEqual(suggest("ABC", ["AXY"]), [])

    def test_similarity_floor_configurable(self):
        self.assertEqual(suggest("ABC", ["AXY"], EngineConfig(min_suggestion_similarity=0.0)), ["AXY"])
        self.assertEqual(suggest("ABCD", ["ABXY"]), ["ABXY"])
        self.assertEqual(suggest("ABCD", ["ABXY"], EngineConfig(min_suggestion_similarity=0.5)), [])

    def test_tail_match_on_longer_name(self):
        self.assertEqual(suggest("FOX", ["EXPSUGG_FOO"]), ["EXPSUGG_FOO"])
        ranked = rank_candidates("FOX", ["FOO", "EXPSUGG_FOO"])
        self.assertEqual([c.name for c in ranked], ["FOO", "EXPSUGG_FOO"])
        self.assertFalse(ranked[0].partial)
        self.assertTrue(ranked[1].partial)

    def test_head_match_on_longer_name(self):
        self.assertEqual(suggest("BUFFR", ["BUFFER_SIZE"]), ["BUFFER_SIZE"])
        self.assertEqual(affix_bound("BUFFR"), 1)

    def test_affix_needs_three_characters(self):
        self.assertEqual(suggest("FX", ["EXPSUGG_FX0"]), [])


if __name__ == "__main__":
    unittest.main()
