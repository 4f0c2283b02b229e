"""Tests for rolling trend statistics."""

from datetime import timedelta

import pytest

from trendbot.core.models import LABEL_ENTITY_ONLY, LABEL_EVENT_PHRASE
from trendbot.trends.metrics import (
    ConfidenceWeights,
    TrendThresholds,
    compute_baselines,
    compute_confidence,
    compute_metrics,
    compute_trend_stage,
    count_windows,
    recency_decay,
)


def daily_history(now, counts):
    """Timestamps placing counts[d-1] items in the middle of history day d."""
    timestamps = []
    for day, count in enumerate(counts, start=1):
        timestamps.extend([now - timedelta(hours=24 * day + 12)] * count)
    return timestamps


class TestCountWindows:

    def test_windows_and_daily_samples(self, now):
        timestamps = [
            now - timedelta(minutes=30),
            now - timedelta(hours=3),
            now - timedelta(hours=10),
            now - timedelta(hours=30),
            now - timedelta(hours=50),
            now + timedelta(hours=1),  # future, ignored
        ]
        counts = count_windows(timestamps, now, first_seen_at=now - timedelta(days=5))

        assert counts.current_1h == 1
        assert counts.current_6h == 2
        assert counts.current_24h == 3
        assert counts.daily_samples == [1, 1, 0, 0]

    def test_window_is_open_at_start_closed_at_end(self, now):
        counts = count_windows([now, now - timedelta(hours=1)], now, first_seen_at=now - timedelta(hours=2))
        assert counts.current_1h == 1
        assert counts.current_6h == 2

    def test_no_samples_for_new_event(self, now):
        counts = count_windows([now], now, first_seen_at=now - timedelta(hours=3))
        assert counts.daily_samples == []


class TestBaselines:

    def test_mean_hourly_rate_and_population_std(self):
        b7, b30, std, days = compute_baselines([24, 48, 0])
        assert b7 == pytest.approx(1.0)
        assert b30 == pytest.approx(1.0)
        assert std == pytest.approx((2 / 3) ** 0.5)
        assert days == 3

    def test_short_baseline_uses_most_recent_week(self):
        samples = [24] * 7 + [0] * 23
        b7, b30, _, days = compute_baselines(samples)
        assert b7 == pytest.approx(1.0)
        assert b30 == pytest.approx(7 / 30)
        assert days == 7

    def test_empty_history(self):
        assert compute_baselines([]) == (0.0, 0.0, 0.0, 0)


class TestRecencyDecay:

    @pytest.mark.parametrize("hours,expected", [
        (0, 1.0),
        (2, 1.0),
        (7, 0.75),
        (12, 0.5),
        (18, 0.4),
        (24, 0.3),
        (100, 0.3),
    ])
    def test_decay_curve(self, hours, expected):
        assert recency_decay(hours) == pytest.approx(expected)


class TestConfidence:

    def test_full_confidence(self):
        assert compute_confidence(3, 4, 0.5, LABEL_EVENT_PHRASE) == pytest.approx(100.0)

    def test_single_source_entity_only(self):
        score = compute_confidence(1, 1, 0.0, LABEL_ENTITY_ONLY)
        assert score == pytest.approx(100 * (0.25 / 3 + 0.25 * 0.25 + 0.25 + 0.25 * 0.4))

    def test_components_are_capped(self):
        assert compute_confidence(10, 50, 0.0, LABEL_EVENT_PHRASE) == pytest.approx(100.0)

    def test_custom_weights(self):
        weights = ConfidenceWeights(source_diversity=0.0, corroboration=0.0, recency=1.0, label_quality=0.0)
        assert compute_confidence(1, 1, 24.0, LABEL_ENTITY_ONLY, weights) == pytest.approx(30.0)


class TestTrendStage:

    @pytest.mark.parametrize("z,acceleration,hours_old,expected", [
        (4.0, 1.0, 1.0, "emerging"),
        (4.0, 1.0, 5.0, "surging"),
        (2.5, 0.5, 10.0, "surging"),
        (1.8, -1.0, 10.0, "peaking"),
        (-0.5, 0.0, 10.0, "declining"),
        (1.0, 0.0, 10.0, "stable"),
    ])
    def test_stages(self, z, acceleration, hours_old, expected):
        assert compute_trend_stage(z, acceleration, hours_old) == expected


class TestComputeMetrics:

    def test_new_event(self, now):
        timestamps = [now - timedelta(minutes=m) for m in (5, 10, 20)]
        metrics = compute_metrics(
            timestamps=timestamps,
            source_types=["news"] * 3,
            source_count=1,
            first_seen_at=now - timedelta(minutes=20),
            last_seen_at=now - timedelta(minutes=5),
            label_quality=LABEL_EVENT_PHRASE,
            previous_velocity=None,
            now=now,
        )

        assert metrics.current_1h == 3
        assert metrics.baseline_7d == 0.0
        assert metrics.velocity == pytest.approx(0.5)
        assert metrics.acceleration == 0.0
        assert metrics.z_score_velocity == 0.0
        assert not metrics.z_eligible
        assert metrics.is_trending
        assert not metrics.is_breaking

    def test_acceleration_against_previous_velocity(self, now):
        metrics = compute_metrics(
            [now - timedelta(minutes=5)] * 6, ["news"], 1,
            now - timedelta(hours=1), now - timedelta(minutes=5),
            LABEL_EVENT_PHRASE, previous_velocity=0.25, now=now,
        )
        assert metrics.velocity == pytest.approx(1.0)
        assert metrics.acceleration == pytest.approx(0.75)

    def test_z_score_with_enough_history(self, now):
        history = daily_history(now, [24, 0, 24, 0, 24, 0, 24])
        recent = [now - timedelta(minutes=10)] * 30
        metrics = compute_metrics(
            recent + history, ["news", "social"], 2,
            first_seen_at=now - timedelta(days=10),
            last_seen_at=now - timedelta(minutes=10),
            label_quality=LABEL_EVENT_PHRASE,
            previous_velocity=1.0,
            now=now,
        )

        p = 4 / 7
        expected_z = (30 / 6 - p) / (p * (1 - p)) ** 0.5
        assert metrics.z_eligible
        assert metrics.baseline_7d == pytest.approx(p)
        assert metrics.z_score_velocity == pytest.approx(expected_z)
        assert metrics.is_breaking

    def test_z_score_is_clamped(self, now):
        history = daily_history(now, [24, 0, 24, 0, 24, 0, 24])
        recent = [now - timedelta(minutes=10)] * 600
        metrics = compute_metrics(
            recent + history, ["news"], 1, now - timedelta(days=10), now,
            LABEL_EVENT_PHRASE, None, now,
        )
        assert metrics.z_score_velocity == 10.0

    def test_z_score_needs_three_sample_days(self, now):
        history = daily_history(now, [24, 0])
        recent = [now - timedelta(minutes=10)] * 60
        metrics = compute_metrics(
            recent + history, ["news"], 1, now - timedelta(days=3), now,
            LABEL_EVENT_PHRASE, None, now,
        )
        assert metrics.baseline_stddev > 0
        assert not metrics.z_eligible
        assert metrics.z_score_velocity == 0.0
        assert not metrics.is_breaking

    def test_breaking_by_corroboration(self, now):
        metrics = compute_metrics(
            [now - timedelta(minutes=m) for m in range(1, 7)], ["news", "rss"], 3,
            now - timedelta(minutes=30), now - timedelta(minutes=1),
            LABEL_EVENT_PHRASE, None, now,
        )
        assert metrics.is_breaking

    def test_not_trending_without_last_hour_activity(self, now):
        metrics = compute_metrics(
            [now - timedelta(hours=2)] * 5, ["news", "rss", "social"], 4,
            now - timedelta(hours=3), now - timedelta(hours=2),
            LABEL_EVENT_PHRASE, None, now,
        )
        assert metrics.confidence_score >= 30
        assert metrics.current_1h == 0
        assert not metrics.is_trending

    def test_thresholds_are_configurable(self, now):
        strict = TrendThresholds(trending_min_confidence=99.0)
        metrics = compute_metrics(
            [now - timedelta(minutes=5)], ["news"], 1, now - timedelta(minutes=5), now - timedelta(minutes=5),
            LABEL_EVENT_PHRASE, None, now, thresholds=strict,
        )
        assert not metrics.is_trending

    def test_to_dict_has_column_names_only(self, now):
        metrics = compute_metrics([now], ["news"], 1, now, now, LABEL_ENTITY_ONLY, None, now)
        data = metrics.to_dict()
        assert "z_eligible" not in data
        assert {"baseline_7d", "velocity", "confidence_score", "trend_stage"} <= set(data)
