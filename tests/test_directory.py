from __future__ import annotations

import sys
import unittest
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from portfolio_health.directory import DirectoryIndex, infer_candidate_type, normalize_key, strip_display_suffix
from portfolio_health.models import CandidateType, DirectoryUser, MatchConfidence, MatchMethod


def _directory() -> DirectoryIndex:
    return DirectoryIndex(
        [
            DirectoryUser(
                directory_id="u-1",
                user_principal_name="jeff.jones@corp.example",
                display_name="Jones, Jeff (J)",
                mail="jjones@corp.example",
                given_name="Jeff",
                surname="Jones",
                employee_id="E1001",
            ),
            DirectoryUser(
                directory_id="u-2",
                user_principal_name="alex.kim@corp.example",
                display_name="Alex Kim",
                given_name="Alex",
                surname="Kim",
            ),
            DirectoryUser(
                directory_id="u-3",
                user_principal_name="alex.kim2@corp.example",
                display_name="Alex Kim",
                given_name="Alexandra",
                surname="Kim",
            ),
        ],
        aliases={"Jeffrey J.": "u-1"},
    )


class TestDirectoryIndex(unittest.TestCase):
    def test_exact_upn_match(self) -> None:
        result = _directory().resolve("  Jeff.Jones@CORP.example ")
        self.assertTrue(result.matched)
        self.assertEqual(result.directory_id, "u-1")
        self.assertEqual(result.confidence, MatchConfidence.EXACT)
        self.assertEqual(result.method, MatchMethod.EXACT_UPN)
        self.assertEqual(result.candidate_type, CandidateType.EMAIL)

    def test_mail_match(self) -> None:
        result = _directory().resolve("jjones@corp.example")
        self.assertEqual(result.method, MatchMethod.EXACT_EMAIL)
        self.assertEqual(result.confidence, MatchConfidence.EXACT)

    def test_display_name_normalized(self) -> None:
        result = _directory().resolve("jones,   JEFF (j)")
        self.assertTrue(result.matched)
        self.assertEqual(result.method, MatchMethod.DISPLAY_NAME_EXACT)
        self.assertEqual(result.confidence, MatchConfidence.HIGH)

    def test_default_aliases(self) -> None:
        directory = _directory()
        for candidate in ("Jones, Jeff", "Jeff Jones", "E1001", "Jeffrey J."):
            result = directory.resolve(candidate)
            self.assertTrue(result.matched, candidate)
            self.assertEqual(result.directory_id, "u-1")
            self.assertEqual(result.method, MatchMethod.EXACT_ALIAS)

    def test_ambiguous_display_name_does_not_match(self) -> None:
        result = _directory().resolve("Alex Kim")
        self.assertFalse(result.matched)
        self.assertIsNone(result.directory_id)
        self.assertIn("ambiguous", result.explanation)

    def test_blank_and_unknown_candidates(self) -> None:
        directory = _directory()
        self.assertFalse(directory.resolve("   ").matched)
        unknown = directory.resolve("Departed Person")
        self.assertFalse(unknown.matched)
        self.assertEqual(unknown.confidence, MatchConfidence.NO_MATCH)
        self.assertEqual(unknown.method, MatchMethod.NONE)

    def test_no_fuzzy_matching(self) -> None:
        self.assertFalse(_directory().resolve("Jef Jones").matched)

    def test_alias_for_unknown_user_rejected(self) -> None:
        with self.assertRaises(ValueError):
            DirectoryIndex([], aliases={"Somebody": "u-404"})

    def test_helpers(self) -> None:
        self.assertEqual(normalize_key("  Mixed   CASE\tName "), "mixed case name")
        self.assertEqual(strip_display_suffix("Jones, Jeff (J)"), "Jones, Jeff")
        self.assertEqual(infer_candidate_type("a@b.com"), CandidateType.EMAIL)
        self.assertEqual(infer_candidate_type("a@b"), CandidateType.NAME)


if __name__ == "__main__":
    unittest.main()
