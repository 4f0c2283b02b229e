"""Rolling trend statistics.

Pure functions over evidence timestamps: window counts, daily baselines,
velocity, z-score, confidence and trend stage. No database access here; the
aggregator feeds the rows in and writes the results back.
"""

from dataclasses import dataclass, asdict
from datetime import datetime, timedelta
from typing import Dict, Any, Iterable, List, Optional, Sequence, Tuple

import numpy as np

from trendbot.core.models import LABEL_EVENT_PHRASE
from trendbot.core.time import hours_between, normalize_timezone

# Windows
HOURLY_WINDOWS = (1, 6, 24)
HISTORY_DAYS = 30

# Recency decay anchors (hours since last evidence -> factor)
RECENCY_FULL_HOURS = 2.0
RECENCY_MID_HOURS = 12.0
RECENCY_TAIL_HOURS = 24.0
RECENCY_MID_FACTOR = 0.5
RECENCY_FLOOR = 0.3

# Confidence normalizers
SOURCE_TYPE_TARGET = 3
CORROBORATION_TARGET = 4
LABEL_QUALITY_SCORES = {LABEL_EVENT_PHRASE: 1.0}
ENTITY_ONLY_LABEL_SCORE = 0.4

STAGE_EMERGING = "emerging"
STAGE_SURGING = "surging"
STAGE_PEAKING = "peaking"
STAGE_DECLINING = "declining"
STAGE_STABLE = "stable"


@dataclass
class TrendThresholds:
    """Promotion thresholds for trending / breaking flags."""
    trending_min_confidence: float = 30.0
    breaking_z: float = 2.0
    breaking_min_sources: int = 3
    breaking_velocity_multiplier: float = 2.0
    z_min: float = -2.0
    z_max: float = 10.0
    min_sample_days: int = 3
    short_baseline_days: int = 7
    long_baseline_days: int = HISTORY_DAYS


@dataclass
class ConfidenceWeights:
    """Weights of the confidence components; they should sum to 1."""
    source_diversity: float = 0.25
    corroboration: float = 0.25
    recency: float = 0.25
    label_quality: float = 0.25


@dataclass
class WindowCounts:
    """Evidence counts in the trailing windows plus daily history."""
    current_1h: int
    current_6h: int
    current_24h: int
    daily_samples: List[int]  # most recent day first, only days after first_seen


@dataclass
class TrendMetrics:
    """Derived statistics written back onto a trend event."""
    baseline_7d: float
    baseline_30d: float
    baseline_stddev: float
    baseline_sample_days: int
    current_1h: int
    current_6h: int
    current_24h: int
    velocity: float
    acceleration: float
    z_score_velocity: float
    confidence_score: float
    is_trending: bool
    is_breaking: bool
    trend_stage: str
    z_eligible: bool = False

    def to_dict(self) -> Dict[str, Any]:
        """Column values, without the transient eligibility flag."""
        data = asdict(self)
        data.pop("z_eligible")
        return data


def count_windows(
    timestamps: Iterable[datetime],
    now: datetime,
    first_seen_at: datetime,
    history_days: int = HISTORY_DAYS,
) -> WindowCounts:
    """
    Bucket evidence timestamps into trailing windows and daily history.

    Hourly windows cover ``(now - h, now]``. Day ``d`` (1..history_days)
    covers ``[now - (d+1)*24h, now - d*24h)`` and counts as a sample only
    if its end lies after ``first_seen_at``.

    Args:
        timestamps: Evidence discovery times
        now: Reference time
        first_seen_at: When the event was first seen
        history_days: Number of daily buckets to consider

    Returns:
        WindowCounts
    """
    now = normalize_timezone(now)
    first_seen_at = normalize_timezone(first_seen_at)

    windows = {h: 0 for h in HOURLY_WINDOWS}
    daily = [0] * (history_days + 1)

    for ts in timestamps:
        age_hours = hours_between(ts, now)
        if age_hours < 0:
            continue  # future evidence
        for h in HOURLY_WINDOWS:
            if age_hours < h:
                windows[h] += 1
        day = int(age_hours // 24)
        if 1 <= day <= history_days:
            daily[day] += 1

    samples = []
    for d in range(1, history_days + 1):
        if now - timedelta(hours=24 * d) > first_seen_at:
            samples.append(daily[d])
        else:
            break

    return WindowCounts(
        current_1h=windows[1],
        current_6h=windows[6],
        current_24h=windows[24],
        daily_samples=samples,
    )


def compute_baselines(
    daily_samples: Sequence[int],
    short_days: int = 7,
    long_days: int = HISTORY_DAYS,
) -> Tuple[float, float, float, int]:
    """
    Hourly-rate baselines from daily sample counts.

    Returns:
        Tuple of (baseline_7d, baseline_30d, stddev of the 7-day samples,
        number of 7-day samples)
    """
    if not daily_samples:
        return 0.0, 0.0, 0.0, 0

    rates = np.asarray(daily_samples, dtype=float) / 24.0
    short = rates[:short_days]
    long = rates[:long_days]

    return float(short.mean()), float(long.mean()), float(np.std(short)), int(short.size)


def recency_decay(hours_since_last: float) -> float:
    """1.0 within 2h, linear to 0.5 at 12h, to 0.3 at 24h, 0.3 after."""
    h = max(0.0, hours_since_last)
    if h <= RECENCY_FULL_HOURS:
        return 1.0
    if h <= RECENCY_MID_HOURS:
        span = RECENCY_MID_HOURS - RECENCY_FULL_HOURS
        return 1.0 - (1.0 - RECENCY_MID_FACTOR) * (h - RECENCY_FULL_HOURS) / span
    if h <= RECENCY_TAIL_HOURS:
        span = RECENCY_TAIL_HOURS - RECENCY_MID_HOURS
        return RECENCY_MID_FACTOR - (RECENCY_MID_FACTOR - RECENCY_FLOOR) * (h - RECENCY_MID_HOURS) / span
    return RECENCY_FLOOR


def compute_confidence(
    source_type_count: int,
    source_count: int,
    hours_since_last: float,
    label_quality: str,
    weights: Optional[ConfidenceWeights] = None,
) -> float:
    """
    Confidence score in [0, 100].

    Args:
        source_type_count: Distinct source types (news, rss, social, other)
        source_count: Distinct corroborating sources
        hours_since_last: Hours since the latest evidence
        label_quality: ``event_phrase`` or ``entity_only``
        weights: Component weights

    Returns:
        Weighted score scaled to [0, 100]
    """
    weights = weights or ConfidenceWeights()

    diversity = min(source_type_count / SOURCE_TYPE_TARGET, 1.0)
    corroboration = min(source_count / CORROBORATION_TARGET, 1.0)
    recency = recency_decay(hours_since_last)
    quality = LABEL_QUALITY_SCORES.get(label_quality, ENTITY_ONLY_LABEL_SCORE)

    score = 100.0 * (
        weights.source_diversity * diversity
        + weights.corroboration * corroboration
        + weights.recency * recency
        + weights.label_quality * quality
    )
    return float(np.clip(score, 0.0, 100.0))


def compute_trend_stage(z: float, acceleration: float, hours_old: float) -> str:
    """Lifecycle stage from z-score, acceleration and event age."""
    if z > 3 and acceleration > 0 and hours_old < 3:
        return STAGE_EMERGING
    if z > 2 and acceleration > 0:
        return STAGE_SURGING
    if z > 1.5 and acceleration < 0:
        return STAGE_PEAKING
    if z < 0:
        return STAGE_DECLINING
    return STAGE_STABLE


def compute_metrics(
    timestamps: Sequence[datetime],
    source_types: Iterable[str],
    source_count: int,
    first_seen_at: datetime,
    last_seen_at: datetime,
    label_quality: str,
    previous_velocity: Optional[float],
    now: datetime,
    thresholds: Optional[TrendThresholds] = None,
    weights: Optional[ConfidenceWeights] = None,
) -> TrendMetrics:
    """
    Recompute every derived statistic of one trend event.

    Args:
        timestamps: Evidence times of the event (and of events clustered into it)
        source_types: Source types seen in that evidence
        source_count: Distinct corroborating sources (including merged ones)
        first_seen_at: First evidence time
        last_seen_at: Latest evidence time
        label_quality: ``event_phrase`` or ``entity_only``
        previous_velocity: Velocity before this recompute, None on creation
        now: Reference time
        thresholds: Promotion thresholds
        weights: Confidence weights

    Returns:
        TrendMetrics
    """
    thresholds = thresholds or TrendThresholds()

    counts = count_windows(timestamps, now, first_seen_at, thresholds.long_baseline_days)
    baseline_7d, baseline_30d, stddev, sample_days = compute_baselines(
        counts.daily_samples, thresholds.short_baseline_days, thresholds.long_baseline_days
    )

    velocity = counts.current_6h / 6.0 - baseline_7d
    acceleration = 0.0 if previous_velocity is None else velocity - previous_velocity

    z_eligible = stddev > 0 and sample_days >= thresholds.min_sample_days
    if z_eligible:
        z = float(np.clip(velocity / stddev, thresholds.z_min, thresholds.z_max))
    else:
        z = 0.0

    confidence = compute_confidence(
        len(set(source_types)),
        source_count,
        hours_between(last_seen_at, now),
        label_quality,
        weights,
    )

    is_trending = confidence >= thresholds.trending_min_confidence and counts.current_1h > 0
    is_breaking = (z_eligible and z >= thresholds.breaking_z) or (
        source_count >= thresholds.breaking_min_sources
        and velocity > baseline_7d * thresholds.breaking_velocity_multiplier
    )

    return TrendMetrics(
        baseline_7d=baseline_7d,
        baseline_30d=baseline_30d,
        baseline_stddev=stddev,
        baseline_sample_days=len(counts.daily_samples),
        current_1h=counts.current_1h,
        current_6h=counts.current_6h,
        current_24h=counts.current_24h,
        velocity=velocity,
        acceleration=acceleration,
        z_score_velocity=z,
        confidence_score=confidence,
        is_trending=is_trending,
        is_breaking=bool(is_breaking),
        trend_stage=compute_trend_stage(z, acceleration, hours_between(first_seen_at, now)),
        z_eligible=z_eligible,
    )
