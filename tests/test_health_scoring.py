from __future__ import annotations

import sys
import unittest
from datetime import datetime, timedelta, timezone
from pathlib import Path

import numpy as np

ROOT = Path(__file__).resolve().parents[1]
SRC = ROOT / "src"
if str(SRC) not in sys.path:
    sys.path.insert(0, str(SRC))

from portfolio_health.health_scoring import (
    compute_health_score,
    health_category,
    maintenance_adjustment,
    overdue_task_penalty,
    summarize_portfolio,
)
from portfolio_health.models import (
    ApplicationSignals,
    DocumentationStatus,
    HealthCategory,
    IncidentScoreDetails,
    LifecycleTask,
    SecurityFinding,
    SecurityScoreDetails,
    Severity,
    UsageLevel,
)

AS_OF = datetime(2026, 6, 1, tzinfo=timezone.utc)


def _findings(critical: int = 0, high: int = 0, medium: int = 0, low: int = 0, resolved: int = 0):
    out = []
    for severity, count in (
        (Severity.CRITICAL, critical),
        (Severity.HIGH, high),
        (Severity.MEDIUM, medium),
        (Severity.LOW, low),
    ):
        out.extend(SecurityFinding(severity=severity) for _ in range(count))
    out.extend(SecurityFinding(severity=Severity.CRITICAL, is_resolved=True) for _ in range(resolved))
    return tuple(out)


def _random_signals(rng: np.random.Generator, app_id: str, critical: int | None = None) -> ApplicationSignals:
    usage_levels = [None] + list(UsageLevel)
    usage = usage_levels[int(rng.integers(0, len(usage_levels)))]
    tasks = tuple(
        LifecycleTask(task_id=f"t{i}", due_date=AS_OF - timedelta(days=int(rng.integers(-60, 120))))
        for i in range(int(rng.integers(0, 15)))
    )
    return ApplicationSignals(
        application_id=app_id,
        findings=_findings(
            critical=int(rng.integers(0, 8)) if critical is None else critical,
            high=int(rng.integers(0, 10)),
            medium=int(rng.integers(0, 15)),
            low=int(rng.integers(0, 30)),
        ),
        usage_level=usage,
        last_activity_at=AS_OF - timedelta(days=int(rng.integers(0, 900))) if rng.random() > 0.2 else None,
        documentation=DocumentationStatus(
            has_architecture_diagram=bool(rng.random() > 0.5),
            has_system_documentation=bool(rng.random() > 0.5),
        )
        if rng.random() > 0.2
        else None,
        tasks=tasks if rng.random() > 0.2 else None,
        data_conflicts=int(rng.integers(0, 6)) if rng.random() > 0.2 else None,
        incident_details=IncidentScoreDetails(
            total_incidents=int(rng.integers(0, 50)),
            recent_incidents=int(rng.integers(0, 30)),
            repeat_patterns=int(rng.integers(0, 8)),
        )
        if rng.random() > 0.2
        else None,
    )


class TestHealthScoring(unittest.TestCase):
    def test_two_critical_one_high_needs_attention(self) -> None:
        breakdown = compute_health_score(
            ApplicationSignals(application_id="app-1", findings=_findings(critical=2, high=1)),
            AS_OF,
        )
        self.assertEqual(breakdown.security_penalty, 38)
        self.assertEqual(breakdown.final_score, 62)
        self.assertEqual(breakdown.category, HealthCategory.NEEDS_ATTENTION)

    def test_missing_signals_contribute_nothing(self) -> None:
        breakdown = compute_health_score(ApplicationSignals(application_id="app-1"), AS_OF)
        self.assertEqual(breakdown.final_score, 100)
        components = breakdown.to_dict()["components"]
        self.assertTrue(all(value == 0 for value in components.values()))

    def test_resolved_findings_are_ignored(self) -> None:
        details = SecurityScoreDetails.from_findings(_findings(high=1, resolved=4))
        self.assertEqual(details.critical_count, 0)
        self.assertEqual(details.penalty(), 8)

    def test_tier_caps_are_independent(self) -> None:
        details = SecurityScoreDetails(critical_count=10, high_count=1, medium_count=0, low_count=3)
        self.assertEqual(details.tier_penalty(Severity.CRITICAL), 60)
        self.assertEqual(details.tier_penalty(Severity.HIGH), 8)
        self.assertEqual(details.tier_penalty(Severity.LOW), 1)
        self.assertEqual(details.penalty(), 69)

    def test_adversarial_inputs_clamp_to_zero(self) -> None:
        breakdown = compute_health_score(
            ApplicationSignals(
                application_id="app-bad",
                findings=_findings(critical=500, high=500, medium=500, low=500),
                usage_level=UsageLevel.NONE,
                last_activity_at=AS_OF - timedelta(days=5000),
                documentation=DocumentationStatus(),
                tasks=tuple(LifecycleTask(task_id=str(i), due_date=AS_OF - timedelta(days=400)) for i in range(100)),
                data_conflicts=1000,
                incident_details=IncidentScoreDetails(recent_incidents=10_000, repeat_patterns=10_000),
            ),
            AS_OF,
        )
        self.assertLess(breakdown.raw_score, 0)
        self.assertEqual(breakdown.final_score, 0)
        self.assertEqual(breakdown.category, HealthCategory.CRITICAL)

    def test_best_case_clamps_to_hundred(self) -> None:
        breakdown = compute_health_score(
            ApplicationSignals(
                application_id="app-good",
                usage_level=UsageLevel.HIGH,
                last_activity_at=AS_OF - timedelta(days=3),
                documentation=DocumentationStatus(has_architecture_diagram=True, has_system_documentation=True),
                tasks=(),
                data_conflicts=0,
            ),
            AS_OF,
        )
        self.assertEqual(breakdown.raw_score, 125)
        self.assertEqual(breakdown.final_score, 100)

    def test_randomized_scores_stay_in_bounds(self) -> None:
        rng = np.random.default_rng(20260601)
        for i in range(300):
            breakdown = compute_health_score(_random_signals(rng, f"app-{i}"), AS_OF)
            self.assertGreaterEqual(breakdown.final_score, 0)
            self.assertLessEqual(breakdown.final_score, 100)
            self.assertEqual(breakdown.category, health_category(breakdown.final_score))

    def test_more_critical_findings_never_raise_score(self) -> None:
        rng = np.random.default_rng(42)
        for i in range(100):
            state = rng.bit_generator.state
            base = compute_health_score(_random_signals(rng, f"app-{i}", critical=1), AS_OF)
            rng.bit_generator.state = state
            worse = compute_health_score(_random_signals(rng, f"app-{i}", critical=4), AS_OF)
            self.assertLessEqual(worse.final_score, base.final_score)

    def test_category_boundaries(self) -> None:
        self.assertEqual(health_category(100), HealthCategory.HEALTHY)
        self.assertEqual(health_category(80), HealthCategory.HEALTHY)
        self.assertEqual(health_category(79), HealthCategory.NEEDS_ATTENTION)
        self.assertEqual(health_category(60), HealthCategory.NEEDS_ATTENTION)
        self.assertEqual(health_category(59), HealthCategory.AT_RISK)
        self.assertEqual(health_category(40), HealthCategory.AT_RISK)
        self.assertEqual(health_category(39), HealthCategory.CRITICAL)
        self.assertEqual(health_category(0), HealthCategory.CRITICAL)

    def test_maintenance_steps(self) -> None:
        self.assertEqual(maintenance_adjustment(AS_OF - timedelta(days=30), AS_OF), 10)
        self.assertEqual(maintenance_adjustment(AS_OF - timedelta(days=31), AS_OF), 5)
        self.assertEqual(maintenance_adjustment(AS_OF - timedelta(days=180), AS_OF), 0)
        self.assertEqual(maintenance_adjustment(AS_OF - timedelta(days=365), AS_OF), -5)
        self.assertEqual(maintenance_adjustment(AS_OF - timedelta(days=366), AS_OF), -10)
        self.assertEqual(maintenance_adjustment(None, AS_OF), 0)

    def test_overdue_tasks_weighted_and_capped(self) -> None:
        tasks = (
            LifecycleTask(task_id="a", due_date=AS_OF - timedelta(days=5)),
            LifecycleTask(task_id="b", due_date=AS_OF - timedelta(days=45)),
            LifecycleTask(task_id="c", due_date=AS_OF - timedelta(days=45), completed_at=AS_OF - timedelta(days=1)),
            LifecycleTask(task_id="d", due_date=AS_OF + timedelta(days=10)),
        )
        self.assertEqual(overdue_task_penalty(tasks, AS_OF), 8)
        many = tuple(LifecycleTask(task_id=str(i), due_date=AS_OF - timedelta(days=90)) for i in range(20))
        self.assertEqual(overdue_task_penalty(many, AS_OF), 30)

    def test_incident_penalty_components(self) -> None:
        details = IncidentScoreDetails(total_incidents=12, recent_incidents=6, repeat_patterns=2)
        breakdown = compute_health_score(ApplicationSignals(application_id="app-1", incident_details=details), AS_OF)
        self.assertEqual(breakdown.incident_penalty, 18)
        self.assertEqual(breakdown.final_score, 82)

    def test_summarize_portfolio(self) -> None:
        breakdowns = [
            compute_health_score(ApplicationSignals(application_id="a"), AS_OF),
            compute_health_score(ApplicationSignals(application_id="b", findings=_findings(critical=2, high=1)), AS_OF),
            compute_health_score(ApplicationSignals(application_id="c", findings=_findings(critical=4, high=4)), AS_OF),
        ]
        summary = summarize_portfolio(breakdowns)
        self.assertEqual(summary["applications"], 3)
        self.assertEqual(summary["category_counts"]["Healthy"], 1)
        self.assertEqual(summary["category_counts"]["NeedsAttention"], 1)
        self.assertEqual(summary["category_counts"]["Critical"], 1)
        self.assertEqual(summary["min_score"], 8)
        self.assertAlmostEqual(summary["average_score"], round((100 + 62 + 8) / 3, 2))
        self.assertEqual(summarize_portfolio([])["applications"], 0)


if __name__ == "__main__":
    unittest.main()
