"""Trend processing package.

This package contains modules for:
- Rolling statistics and confidence (metrics.py)
- Evidence aggregation into trend events (aggregator.py)
- Duplicate reconciliation (dedup.py)
- Actionability ranking (ranker.py)
- Relevance collaborator clients (relevance.py)
- Stage orchestration (pipeline.py)
"""

from .metrics import ConfidenceWeights, TrendMetrics, TrendThresholds, compute_metrics

from .aggregator import IngestStats, TrendAggregator

from .dedup import (
    DedupThresholds,
    Deduplicator,
    EventSnapshot,
    ReconcileReport,
    TimeRange,
    plan_clusters
)

from .ranker import RankPolicy, RankedTrend, rank

__all__ = [
    # Metrics
    'ConfidenceWeights',
    'TrendMetrics',
    'TrendThresholds',
    'compute_metrics',

    # Aggregation
    'IngestStats',
    'TrendAggregator',

    # Deduplication
    'DedupThresholds',
    'Deduplicator',
    'EventSnapshot',
    'ReconcileReport',
    'TimeRange',
    'plan_clusters',

    # Ranking
    'RankPolicy',
    'RankedTrend',
    'rank'
]
