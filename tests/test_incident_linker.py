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

from portfolio_health.incident_linker import ApplicationCatalog, link_incident, link_summary, manual_link
from portfolio_health.models import Application, IncidentRecord, LinkStatus

AS_OF = datetime(2026, 6, 1, tzinfo=timezone.utc)


def _catalog() -> ApplicationCatalog:
    return ApplicationCatalog(
        [
            Application(application_id="PayrollSvc", name="PayrollSvc"),
            Application(application_id="app-crm", name="Customer CRM"),
        ],
        aliases={"Payroll App": "PayrollSvc"},
    )


class TestIncidentLinker(unittest.TestCase):
    def test_alias_links(self) -> None:
        linked = link_incident(IncidentRecord("INC001", configuration_item="Payroll App"), _catalog(), as_of=AS_OF)
        self.assertEqual(linked.link_status, LinkStatus.LINKED)
        self.assertEqual(linked.application_id, "PayrollSvc")
        self.assertTrue(linked.is_linked)

    def test_name_and_id_link(self) -> None:
        catalog = _catalog()
        by_name = link_incident(IncidentRecord("INC002", configuration_item="customer crm"), catalog, as_of=AS_OF)
        by_id = link_incident(IncidentRecord("INC003", configuration_item="app-crm"), catalog, as_of=AS_OF)
        self.assertEqual(by_name.application_id, "app-crm")
        self.assertEqual(by_id.application_id, "app-crm")

    def test_empty_reference(self) -> None:
        linked = link_incident(IncidentRecord("INC004", configuration_item="   "), _catalog(), as_of=AS_OF)
        self.assertEqual(linked.link_status, LinkStatus.MISSING_REFERENCE)
        self.assertIsNone(linked.application_id)

    def test_unknown_reference_keeps_raw_value(self) -> None:
        linked = link_incident(IncidentRecord("INC005", configuration_item="Mainframe XYZ"), _catalog(), as_of=AS_OF)
        self.assertEqual(linked.link_status, LinkStatus.NO_MATCH)
        self.assertIn("Mainframe XYZ", linked.link_notes)
        self.assertFalse(linked.is_linked)

    def test_manual_link_survives_relink(self) -> None:
        catalog = _catalog()
        original = link_incident(IncidentRecord("INC006", configuration_item="Mainframe XYZ"), catalog, as_of=AS_OF)
        manual = manual_link(
            original, "app-crm", catalog, actor="analyst@corp.example", notes="CRM batch host", as_of=AS_OF
        )
        self.assertEqual(manual.link_status, LinkStatus.MANUALLY_LINKED)

        refreshed_ticket = replace(original.incident, close_code="USER_ERROR", configuration_item="Payroll App")
        relinked = link_incident(refreshed_ticket, catalog, existing=manual, as_of=AS_OF)
        self.assertEqual(relinked.link_status, LinkStatus.MANUALLY_LINKED)
        self.assertEqual(relinked.application_id, "app-crm")
        self.assertEqual(relinked.incident.close_code, "USER_ERROR")
        self.assertEqual(relinked.link_notes, "CRM batch host")

    def test_manual_link_rejects_unknown_application(self) -> None:
        linked = link_incident(IncidentRecord("INC007"), _catalog(), as_of=AS_OF)
        with self.assertRaises(ValueError):
            manual_link(linked, "app-missing", _catalog(), actor="analyst", as_of=AS_OF)

    def test_link_timestamps_come_from_as_of(self) -> None:
        catalog = _catalog()
        with self.assertRaises(TypeError):
            link_incident(IncidentRecord("INC010", configuration_item="Payroll App"), catalog)
        linked = link_incident(IncidentRecord("INC010", configuration_item="Payroll App"), catalog, as_of=AS_OF)
        self.assertEqual(linked.linked_at, AS_OF)

        later = datetime(2026, 6, 2, tzinfo=timezone.utc)
        with self.assertRaises(TypeError):
            manual_link(linked, "app-crm", catalog, actor="analyst")
        manual = manual_link(linked, "app-crm", catalog, actor="analyst", as_of=later)
        self.assertEqual(manual.linked_at, later)

    def test_ambiguous_alias_is_no_match(self) -> None:
        catalog = ApplicationCatalog(
            [Application("a", "Alpha"), Application("b", "Beta")],
            aliases={"Shared Host": "a"},
        )
        catalog.add_alias("shared host", "b")
        linked = link_incident(IncidentRecord("INC008", configuration_item="Shared Host"), catalog, as_of=AS_OF)
        self.assertEqual(linked.link_status, LinkStatus.NO_MATCH)
        self.assertIn("more than one", linked.link_notes)

    def test_link_summary(self) -> None:
        catalog = _catalog()
        items = [
            link_incident(IncidentRecord("1", configuration_item="Payroll App"), catalog, as_of=AS_OF),
            link_incident(IncidentRecord("2", configuration_item=""), catalog, as_of=AS_OF),
            link_incident(IncidentRecord("3", configuration_item="nope"), catalog, as_of=AS_OF),
            link_incident(IncidentRecord("4", configuration_item="PayrollSvc"), catalog, as_of=AS_OF),
        ]
        summary = link_summary(items)
        self.assertEqual(summary["Linked"], 2)
        self.assertEqual(summary["MissingReference"], 1)
        self.assertEqual(summary["NoMatch"], 1)
        self.assertEqual(summary["ManuallyLinked"], 0)
        self.assertEqual(summary["total"], 4)


if __name__ == "__main__":
    unittest.main()
