"""
Tests for risk progression and dashboard statistics.
"""

import asyncio
import random
from datetime import timedelta
from types import SimpleNamespace

import pytest

from socflow.services.risk_aggregator import compute_dashboard_stats, compute_risk_progression, contribution


def incident(id, created_at, severity="high", classification="true-positive", status="open", confidence=85):
    return SimpleNamespace(
        id=id,
        created_at=created_at,
        severity=severity,
        classification=classification,
        status=status,
        confidence=confidence,
    )


@pytest.fixture
def incidents(fixed_now):
    return [
        incident("a", fixed_now - timedelta(minutes=10), "critical", "true-positive"),
        incident("b", fixed_now - timedelta(minutes=20), "low", "false-positive", confidence=80),
        incident("c", fixed_now - timedelta(hours=3), "medium", "needs-review", confidence=None),
        incident("d", fixed_now - timedelta(hours=5), None, "unset", confidence=None),
        incident("e", fixed_now - timedelta(days=3), "high", "true-positive", status="closed"),
    ]


class TestContribution:
    """Tests for per-incident risk weights."""

    def test_weights(self):
        assert contribution("critical", "true-positive") == 100.0
        assert contribution("low", "false-positive") == pytest.approx(2.5)
        assert contribution(None, "unset") == pytest.approx(25.0)
        assert contribution("medium", "needs-review") == pytest.approx(30.0)


class TestRiskProgression:
    """Tests for bucketed risk curves."""

    def test_24h_window(self, incidents, fixed_now):
        progression = compute_risk_progression(incidents, "24h", as_of=fixed_now)

        assert len(progression.points) == 24
        assert progression.bucket_seconds == 3600
        assert progression.window_end == "2026-03-14T16:00:00+00:00"
        assert progression.window_start == "2026-03-13T16:00:00+00:00"

        last = progression.points[-1]
        assert last.incidents == 2
        # mean(100, 2.5)
        assert last.risk_score == 51
        assert last.threats == 1
        assert sum(p.incidents for p in progression.points) == 4

    def test_order_independent(self, incidents, fixed_now):
        expected = compute_risk_progression(incidents, "7d", as_of=fixed_now)
        shuffled = list(incidents)
        random.Random(3).shuffle(shuffled)
        assert compute_risk_progression(shuffled, "7d", as_of=fixed_now) == expected

    def test_deterministic_for_same_as_of(self, incidents, fixed_now):
        first = compute_risk_progression(incidents, "30d", as_of=fixed_now)
        second = compute_risk_progression(incidents, "30d", as_of=fixed_now)
        assert first == second
        assert len(first.points) == 30

    @pytest.mark.asyncio
    async def test_deterministic_across_concurrent_calls(self, incidents, fixed_now):
        snapshot = tuple(incidents)
        results = await asyncio.gather(*[
            asyncio.to_thread(compute_risk_progression, snapshot, timeframe, fixed_now)
            for timeframe in ("24h", "7d", "30d") * 4
        ])

        for timeframe, offset in (("24h", 0), ("7d", 1), ("30d", 2)):
            runs = results[offset::3]
            assert all(run == runs[0] for run in runs)
            assert runs[0] == compute_risk_progression(incidents, timeframe, as_of=fixed_now)

    def test_trend_and_current_score(self, incidents, fixed_now):
        progression = compute_risk_progression(incidents, "24h", as_of=fixed_now)
        populated = [p.risk_score for p in progression.points if p.incidents]

        assert progression.change == populated[-1] - populated[-2]
        assert progression.trend == "increasing"
        assert min(populated) <= progression.current_risk_score <= max(populated)

    def test_empty_input(self, fixed_now):
        progression = compute_risk_progression([], "24h", as_of=fixed_now)
        assert progression.current_risk_score == 0
        assert progression.trend == "stable"

    def test_naive_timestamps_treated_as_utc(self, fixed_now):
        naive = incident("n", (fixed_now - timedelta(minutes=5)).replace(tzinfo=None))
        progression = compute_risk_progression([naive], "24h", as_of=fixed_now)
        assert progression.points[-1].incidents == 1

    def test_unknown_timeframe(self, fixed_now):
        with pytest.raises(ValueError):
            compute_risk_progression([], "1y", as_of=fixed_now)


class TestDashboardStats:
    """Tests for dashboard aggregates."""

    def test_stats(self, incidents, fixed_now):
        stats = compute_dashboard_stats(incidents, as_of=fixed_now)

        assert stats.total_incidents == 5
        assert stats.today_incidents == 4
        assert stats.true_positives == 2
        assert stats.needs_review == 1
        # open threats: a (tp); e is closed
        assert stats.active_threats == 1
        assert stats.avg_confidence == 83
