from __future__ import annotations

import sys
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from portfolio_health.errors import InvalidTransitionError, UnknownValueError
from portfolio_health.incident_analysis import (
    analyze_incidents,
    confidence_for_sample,
    incident_score_details,
    transition_recommendation,
)
from portfolio_health.models import (
    IncidentRecord,
    LinkStatus,
    LinkedIncident,
    RecommendationStatus,
    RecommendationType,
)

AS_OF = datetime(2026, 6, 1, tzinfo=timezone.utc)


def _linked(number: str, code: str, app: str | None = "app-1", days_ago: int = 10) -> LinkedIncident:
    incident = IncidentRecord(
        incident_number=number,
        configuration_item=app or "",
        close_code=code,
        closed_at=AS_OF - timedelta(days=days_ago),
    )
    if app is None:
        return LinkedIncident(incident=incident, link_status=LinkStatus.NO_MATCH)
    return LinkedIncident(incident=incident, link_status=LinkStatus.LINKED, application_id=app, application_name=app.upper())


def _user_error_batch():
    return [
        _linked("INC1", "USER_ERROR"),
        _linked("INC2", "USER_ERROR"),
        _linked("INC3", "USER_ERROR"),
        _linked("INC4", "HARDWARE"),
    ]


class TestIncidentAnalysis(unittest.TestCase):
    def test_single_repeat_pattern(self) -> None:
        result = analyze_incidents(_user_error_batch(), "app-1", as_of=AS_OF)
        self.assertEqual(len(result.recommendations), 1)
        rec = result.recommendations[0]
        self.assertEqual(rec.type, RecommendationType.REPEAT_PATTERN)
        self.assertEqual(rec.related_close_codes, ("USER_ERROR",))
        self.assertEqual(rec.incident_count, 3)
        self.assertEqual(rec.priority, 1)
        self.assertEqual(rec.confidence_score, 64)
        self.assertEqual(rec.status, RecommendationStatus.ACTIVE)
        self.assertEqual(rec.application_id, "app-1")
        self.assertEqual(result.score_details.repeat_patterns, 1)
        self.assertEqual(result.score_details.close_code_counts, {"USER_ERROR": 3, "HARDWARE": 1})
        self.assertEqual(result.incidents_analyzed, 4)
        self.assertEqual(result.created_ids, (rec.recommendation_id,))

    def test_rerun_refreshes_instead_of_duplicating(self) -> None:
        first = analyze_incidents(_user_error_batch(), "app-1", as_of=AS_OF)
        in_progress = transition_recommendation(first.recommendations[0], "InProgress", as_of=AS_OF, notes="owner: ops")
        batch = _user_error_batch()[:3] + [_linked("INC5", "USER_ERROR")]
        second = analyze_incidents(batch, "app-1", as_of=AS_OF + timedelta(days=1), existing_recommendations=[in_progress])
        self.assertEqual(second.created_ids, ())
        self.assertEqual(second.refreshed_ids, (in_progress.recommendation_id,))
        refreshed = second.recommendations[0]
        self.assertEqual(refreshed.status, RecommendationStatus.IN_PROGRESS)
        self.assertEqual(refreshed.incident_count, 4)
        self.assertEqual(refreshed.notes, "owner: ops")
        self.assertEqual(refreshed.generated_at, in_progress.generated_at)

    def test_dismissed_signal_is_not_regenerated(self) -> None:
        first = analyze_incidents(_user_error_batch(), "app-1", as_of=AS_OF)
        dismissed = transition_recommendation(first.recommendations[0], RecommendationStatus.DISMISSED, as_of=AS_OF)
        second = analyze_incidents(_user_error_batch(), "app-1", as_of=AS_OF, existing_recommendations=[dismissed])
        self.assertEqual(second.recommendations, ())

    def test_resolved_signal_can_recur(self) -> None:
        first = analyze_incidents(_user_error_batch(), "app-1", as_of=AS_OF)
        resolved = transition_recommendation(first.recommendations[0], RecommendationStatus.RESOLVED, as_of=AS_OF)
        second = analyze_incidents(_user_error_batch(), "app-1", as_of=AS_OF, existing_recommendations=[resolved])
        self.assertEqual(len(second.created_ids), 1)
        self.assertNotEqual(second.created_ids[0], resolved.recommendation_id)

    def test_active_recommendation_expires_when_incidents_age_out(self) -> None:
        first = analyze_incidents(_user_error_batch(), "app-1", as_of=AS_OF)
        later = AS_OF + timedelta(days=400)
        second = analyze_incidents(
            _user_error_batch(), "app-1", as_of=later, existing_recommendations=list(first.recommendations)
        )
        self.assertEqual(second.incidents_analyzed, 0)
        self.assertEqual(second.expired_ids, (first.recommendations[0].recommendation_id,))
        self.assertEqual(second.recommendations[0].status, RecommendationStatus.EXPIRED)

    def test_in_progress_recommendation_does_not_expire(self) -> None:
        first = analyze_incidents(_user_error_batch(), "app-1", as_of=AS_OF)
        started = transition_recommendation(first.recommendations[0], "InProgress", as_of=AS_OF)
        second = analyze_incidents([], "app-1", as_of=AS_OF, existing_recommendations=[started])
        self.assertEqual(second.recommendations, ())

    def test_other_scopes_are_left_alone(self) -> None:
        first = analyze_incidents(_user_error_batch(), "app-1", as_of=AS_OF)
        second = analyze_incidents([], "app-2", as_of=AS_OF, existing_recommendations=list(first.recommendations))
        self.assertEqual(second.expired_ids, ())

    def test_closure_analysis_for_pairs(self) -> None:
        batch = [_linked("A", "DB_LOCK"), _linked("B", "DB_LOCK")]
        result = analyze_incidents(batch, "app-1", as_of=AS_OF)
        self.assertEqual([r.type for r in result.recommendations], [RecommendationType.CLOSURE_ANALYSIS])
        self.assertEqual(result.recommendations[0].priority, 2)

    def test_high_volume(self) -> None:
        five = [_linked(f"V{i}", f"CODE_{i}") for i in range(5)]
        result = analyze_incidents(five, "app-1", as_of=AS_OF)
        volume = [r for r in result.recommendations if r.type == RecommendationType.HIGH_VOLUME]
        self.assertEqual(len(volume), 1)
        self.assertEqual(volume[0].priority, 2)

        ten = [_linked(f"V{i}", f"CODE_{i}") for i in range(10)]
        result = analyze_incidents(ten, "app-1", as_of=AS_OF)
        volume = [r for r in result.recommendations if r.type == RecommendationType.HIGH_VOLUME]
        self.assertEqual(volume[0].priority, 1)
        self.assertEqual(volume[0].confidence_score, 100)

    def test_technical_debt_from_temporary_fixes(self) -> None:
        batch = [_linked("T1", "Workaround provided"), _linked("T2", "Temporary fix")]
        result = analyze_incidents(batch, "app-1", as_of=AS_OF)
        debt = [r for r in result.recommendations if r.type == RecommendationType.TECHNICAL_DEBT]
        self.assertEqual(len(debt), 1)
        self.assertEqual(debt[0].incident_count, 2)
        self.assertEqual(set(debt[0].related_incident_numbers), {"T1", "T2"})

    def test_portfolio_cross_application_and_hotspot(self) -> None:
        batch = [_linked(f"A{i}", "NETWORK", app="app-a") for i in range(3)]
        batch += [_linked(f"B{i}", "NETWORK", app="app-b") for i in range(2)]
        batch += [_linked(f"H{i}", f"MISC_{i}", app="app-hot") for i in range(10)]
        batch += [_linked("U1", "NETWORK", app=None)]
        result = analyze_incidents(batch, None, as_of=AS_OF, application_names={"app-hot": "Hot App"})
        self.assertEqual(result.scope, "portfolio")
        types = {(r.type, r.application_id) for r in result.recommendations}
        self.assertIn((RecommendationType.PROCESS_IMPROVEMENT, None), types)
        self.assertIn((RecommendationType.HIGH_VOLUME, "app-hot"), types)
        self.assertIn((RecommendationType.REPEAT_PATTERN, None), types)
        hotspot = [r for r in result.recommendations if r.type == RecommendationType.HIGH_VOLUME][0]
        self.assertEqual(hotspot.title, "Incident hotspot: Hot App")
        self.assertEqual(result.incidents_analyzed, 16)
        self.assertTrue(result.quick_wins)
        self.assertEqual(result.common_themes[0], "NETWORK (6)")

    def test_application_scope_ignores_unlinked(self) -> None:
        batch = _user_error_batch() + [_linked("X1", "USER_ERROR", app=None), _linked("X2", "USER_ERROR", app="app-2")]
        details = incident_score_details(batch, "app-1", as_of=AS_OF)
        self.assertEqual(details.total_incidents, 4)
        self.assertEqual(details.recent_incidents, 4)

    def test_window_and_recency(self) -> None:
        batch = [
            _linked("OLD", "USER_ERROR", days_ago=400),
            _linked("MID", "USER_ERROR", days_ago=200),
            _linked("NEW", "USER_ERROR", days_ago=5),
        ]
        details = incident_score_details(batch, "app-1", as_of=AS_OF)
        self.assertEqual(details.total_incidents, 2)
        self.assertEqual(details.recent_incidents, 1)

    def test_confidence_is_deterministic_and_capped(self) -> None:
        self.assertEqual(confidence_for_sample(0), 0)
        self.assertEqual(confidence_for_sample(2), 56)
        self.assertEqual(confidence_for_sample(100), 100)

    def test_status_machine(self) -> None:
        rec = analyze_incidents(_user_error_batch(), "app-1", as_of=AS_OF).recommendations[0]
        started = transition_recommendation(rec, "inprogress", as_of=AS_OF)
        self.assertEqual(started.status, RecommendationStatus.IN_PROGRESS)
        with self.assertRaises(InvalidTransitionError):
            transition_recommendation(started, RecommendationStatus.ACTIVE, as_of=AS_OF)
        with self.assertRaises(InvalidTransitionError):
            transition_recommendation(rec, RecommendationStatus.EXPIRED, as_of=AS_OF)
        done = transition_recommendation(started, RecommendationStatus.RESOLVED, as_of=AS_OF)
        self.assertEqual(done.resolved_at, AS_OF)
        with self.assertRaises(ValueError):
            transition_recommendation(done, RecommendationStatus.DISMISSED, as_of=AS_OF)

    def test_unknown_status_fails_loudly(self) -> None:
        with self.assertRaises(UnknownValueError):
            RecommendationStatus.parse("Snoozed")
        with self.assertRaises(ValueError):
            RecommendationType.parse("")


if __name__ == "__main__":
    unittest.main()
