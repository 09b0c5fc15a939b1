from __future__ import annotations

import sys
import unittest
from dataclasses import replace
from datetime import datetime, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from portfolio_health.departed_users import (
    acknowledge_alert,
    detect_departed_users,
    mark_false_positive,
    resolve_alert,
)
from portfolio_health.directory import DirectoryIndex
from portfolio_health.errors import InvalidTransitionError
from portfolio_health.models import AlertStatus, CandidateType, DirectoryUser, RoleAssignment

AS_OF = datetime(2026, 6, 1, tzinfo=timezone.utc)


def _directory() -> DirectoryIndex:
    return DirectoryIndex(
        [
            DirectoryUser(
                directory_id="u-1",
                user_principal_name="jjones@corp.example",
                display_name="Jones, Jeff (J)",
                mail="jeff.jones@corp.example",
                given_name="Jeff",
                surname="Jones",
            )
        ]
    )


def _assignment(identity: str, role: str = "Business Owner", app: str = "app-1") -> RoleAssignment:
    return RoleAssignment(
        application_id=app,
        role_type=role,
        identity=identity,
        application_name="Payroll",
        data_source="servicenow",
    )


class TestDepartedUsers(unittest.TestCase):
    def test_duplicate_assignments_raise_one_alert(self) -> None:
        scan = detect_departed_users(
            [
                _assignment("Smith, Ann"),
                _assignment("  smith,   ANN "),
                _assignment("Jones, Jeff"),
                _assignment(""),
            ],
            _directory(),
            as_of=AS_OF,
        )
        self.assertEqual(len(scan.new_alerts), 1)
        alert = scan.new_alerts[0]
        self.assertEqual(alert.status, AlertStatus.OPEN)
        self.assertEqual(alert.unmatched_value, "Smith, Ann")
        self.assertEqual(alert.value_type, CandidateType.NAME)
        self.assertEqual(alert.detected_at, AS_OF)
        self.assertEqual(scan.assignments_checked, 4)
        self.assertEqual(scan.matched, 1)
        self.assertEqual(scan.unmatched, 2)
        self.assertEqual(scan.blank_identities, 1)
        self.assertEqual(scan.already_alerted, 1)

    def test_existing_open_alert_suppresses_repeat(self) -> None:
        first = detect_departed_users([_assignment("gone@corp.example")], _directory(), as_of=AS_OF)
        self.assertEqual(first.new_alerts[0].value_type, CandidateType.EMAIL)
        acknowledged = acknowledge_alert(first.new_alerts[0], "ops", as_of=AS_OF)
        second = detect_departed_users(
            [_assignment("gone@corp.example")], _directory(), existing_alerts=[acknowledged], as_of=AS_OF
        )
        self.assertEqual(second.new_alerts, ())
        self.assertEqual(second.already_alerted, 1)

    def test_closed_alert_allows_a_new_one(self) -> None:
        first = detect_departed_users([_assignment("Smith, Ann")], _directory(), as_of=AS_OF)
        closed = resolve_alert(
            acknowledge_alert(first.new_alerts[0], "ops", as_of=AS_OF), "ops", as_of=AS_OF, replacement_identity="u-1"
        )
        second = detect_departed_users([_assignment("Smith, Ann")], _directory(), existing_alerts=[closed], as_of=AS_OF)
        self.assertEqual(len(second.new_alerts), 1)
        self.assertNotEqual(second.new_alerts[0].alert_id, closed.alert_id)

    def test_same_person_on_another_role_is_a_separate_alert(self) -> None:
        scan = detect_departed_users(
            [_assignment("Smith, Ann"), _assignment("Smith, Ann", role="Technical Owner")],
            _directory(),
            as_of=AS_OF,
        )
        self.assertEqual(len(scan.new_alerts), 2)

    def test_lifecycle(self) -> None:
        alert = detect_departed_users([_assignment("Smith, Ann")], _directory(), as_of=AS_OF).new_alerts[0]
        with self.assertRaises(InvalidTransitionError):
            resolve_alert(alert, "ops", as_of=AS_OF)

        acknowledged = acknowledge_alert(alert, "ops", as_of=AS_OF)
        self.assertEqual(acknowledged.status, AlertStatus.ACKNOWLEDGED)
        self.assertIn("acknowledged by ops", acknowledged.resolution_notes)
        with self.assertRaises(InvalidTransitionError):
            acknowledge_alert(acknowledged, "ops", as_of=AS_OF)
        with self.assertRaises(ValueError):
            resolve_alert(acknowledged, "  ", as_of=AS_OF)

        resolved = resolve_alert(acknowledged, "ops", as_of=AS_OF, replacement_identity=" u-1 ", notes="handed over")
        self.assertEqual(resolved.status, AlertStatus.RESOLVED)
        self.assertEqual(resolved.resolved_by, "ops")
        self.assertEqual(resolved.replacement_identity, "u-1")
        self.assertEqual(resolved.resolved_at, AS_OF)
        self.assertIn("handed over", resolved.resolution_notes)
        self.assertFalse(resolved.is_unresolved)
        with self.assertRaises(InvalidTransitionError):
            mark_false_positive(resolved, "ops", as_of=AS_OF)

    def test_false_positive(self) -> None:
        alert = detect_departed_users([_assignment("Smith, Ann")], _directory(), as_of=AS_OF).new_alerts[0]
        closed = mark_false_positive(acknowledge_alert(alert, "ops", as_of=AS_OF), "ops", as_of=AS_OF)
        self.assertEqual(closed.status, AlertStatus.FALSE_POSITIVE)
        self.assertEqual(closed.replacement_identity, "")
        reopened = replace(closed, status=AlertStatus.OPEN)
        self.assertTrue(reopened.is_unresolved)


if __name__ == "__main__":
    unittest.main()
