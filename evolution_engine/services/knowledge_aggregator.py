"""
Knowledge Aggregator.

Rolls per-conversation analyses and tags into two longer-lived views:

1. learning_metrics: one row per calendar day, written by an idempotent
   upsert so re-running a day overwrites instead of double-counting.
2. knowledge_clusters: cross-conversation aggregates keyed by
   (cluster_type, cluster_key). Each cluster type is rebuilt wholesale inside
   one transaction (delete then insert), so a failed rebuild leaves the
   previous clusters of that type intact.

Cluster confidence grows with sample size up to ``cluster_target_sample_size``
and is reduced when completion rates within the cluster are inconsistent:

    confidence = min(100, n / target * 100) * (1 - min(0.5, std / 100))

Zero samples give confidence 0.
"""

import logging
from collections import Counter
from datetime import date, timedelta
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

import numpy as np
from asyncpg import Pool

from evolution_engine.core.config import Settings
from evolution_engine.core.database import acquire, decode_json
from evolution_engine.models.enums import ChangeAction, ClusterType, Sentiment
from evolution_engine.models.schemas import (
    BehaviorInsight,
    ConversationAnalysis,
    GroupInsight,
    KnowledgeCluster,
    LearningMetric,
    QuestionInsight,
)
from evolution_engine.services.health_monitor import HealthMonitor
from evolution_engine.sql import analysis_queries, knowledge_queries


logger = logging.getLogger(__name__)

MIN_SAMPLES: Dict[ClusterType, int] = {
    ClusterType.INDUSTRY_PATTERN: 3,
    ClusterType.VIOLATION_PATTERN: 2,
    ClusterType.QUESTION_EFFECTIVENESS: 2,
    ClusterType.USER_BEHAVIOR: 2,
    ClusterType.SUCCESS_FACTOR: 3,
}

HIGH_COMPLETION: float = 80.0
LOW_COMPLETION: float = 30.0

TOP_N: int = 5

POSITIVE = {Sentiment.POSITIVE, Sentiment.SLIGHTLY_POSITIVE}

PRODUCT_RECOMMENDATION = 'product_recommendation'

# change log actions that count as a promotion in the daily metric
PROMOTION_ACTIONS = [ChangeAction.ACTIVATED.value, ChangeAction.AUTO_PROMOTED.value]


# =============================================================================
# Pure Helpers
# =============================================================================

def _mean(values: Sequence[float]) -> float:
    """Mean of ``values``; 0.0 for an empty sequence instead of NaN."""
    if len(values) == 0:
        return 0.0
    return float(np.mean(np.asarray(values, dtype=float)))


def _std(values: Sequence[float]) -> float:
    if len(values) < 2:
        return 0.0
    return float(np.std(np.asarray(values, dtype=float)))


def cluster_confidence(sample_count: int, completion_std: float, target_sample_size: int) -> float:
    """
    Confidence in [0, 100] from sample size, discounted by inconsistency.

    Example:
        >>> cluster_confidence(10, 0.0, 20)
        50.0
        >>> cluster_confidence(500, 80.0, 20)
        50.0
    """
    if sample_count <= 0 or target_sample_size <= 0:
        return 0.0
    size_factor = min(100.0, sample_count / target_sample_size * 100)
    std = 0.0 if np.isnan(completion_std) else max(0.0, completion_std)
    consistency = 1 - min(0.5, std / 100)
    return round(max(0.0, min(100.0, size_factor * consistency)), 1)


def _top(values: Iterable[str], n: int = TOP_N) -> List[str]:
    return [value for value, _ in Counter(v for v in values if v).most_common(n)]


def group_insight(analyses: Sequence[ConversationAnalysis]) -> GroupInsight:
    completion = [a.completion_rate for a in analyses]
    professionalism = [a.professionalism_score for a in analyses if a.professionalism_score is not None]
    positive = sum(1 for a in analyses if a.user_sentiment in POSITIVE)

    return GroupInsight(
        avg_completion=round(_mean(completion), 1),
        completion_std=round(_std(completion), 1),
        avg_turns=round(_mean([a.total_turns for a in analyses]), 1),
        positive_rate=round(positive / len(analyses) * 100, 1) if analyses else 0.0,
        avg_professionalism=round(_mean(professionalism), 1) if professionalism else None,
        avg_appeal_success=round(_mean([a.appeal_success_rate for a in analyses]), 1),
        avg_satisfaction=round(_mean([a.user_satisfaction for a in analyses]), 1),
        top_drop_offs=_top(a.drop_off_point for a in analyses),
        top_suggestion_types=_top(s.type for a in analyses for s in a.suggestions),
    )


# =============================================================================
# Cluster Builders
# =============================================================================

ClusterRow = Tuple[ConversationAnalysis, Mapping[str, Any]]
BuiltCluster = Tuple[str, str, Any, int, float]


def _grouped(
    rows: Sequence[ClusterRow],
    key: Callable[[ClusterRow], Optional[str]],
) -> Dict[str, List[ClusterRow]]:
    groups: Dict[str, List[ClusterRow]] = {}
    for row in rows:
        value = key(row)
        if value:
            groups.setdefault(value, []).append(row)
    return groups


def _build_group_clusters(
    rows: Sequence[ClusterRow],
    key: Callable[[ClusterRow], Optional[str]],
    name_format: str,
    min_samples: int,
    target: int,
) -> List[BuiltCluster]:
    built = []
    for cluster_key, members in sorted(_grouped(rows, key).items()):
        if len(members) < min_samples:
            continue
        insight = group_insight([a for a, _ in members])
        built.append((
            cluster_key,
            name_format.format(cluster_key),
            insight,
            len(members),
            cluster_confidence(len(members), insight.completion_std, target),
        ))
    return built


def _build_question_clusters(rows: Sequence[ClusterRow], min_samples: int, target: int) -> List[BuiltCluster]:
    total = len(rows)
    per_field: Dict[str, Dict[str, Any]] = {}
    for analysis, _ in rows:
        touched = set()
        if analysis.drop_off_point:
            entry = per_field.setdefault(analysis.drop_off_point, {'drops': 0, 'suggestions': [], 'completion': []})
            entry['drops'] += 1
            touched.add(analysis.drop_off_point)
        for suggestion in analysis.suggestions:
            if not suggestion.field:
                continue
            entry = per_field.setdefault(suggestion.field, {'drops': 0, 'suggestions': [], 'completion': []})
            entry['suggestions'].append(suggestion.recommended)
            touched.add(suggestion.field)
        for field in touched:
            per_field[field]['completion'].append(analysis.completion_rate)

    built = []
    for field, entry in sorted(per_field.items()):
        samples = entry['drops'] + len(entry['suggestions'])
        if samples < min_samples:
            continue
        insight = QuestionInsight(
            field=field,
            drop_off_count=entry['drops'],
            suggestion_count=len(entry['suggestions']),
            drop_off_rate=round(entry['drops'] / total * 100, 1) if total else 0.0,
            sample_recommendations=[r for r in entry['suggestions'] if r][:3],
        )
        built.append((
            field,
            f"{field}提问效果",
            insight,
            samples,
            cluster_confidence(samples, _std(entry['completion']), target),
        ))
    return built


def _build_behavior_clusters(rows: Sequence[ClusterRow], min_samples: int, target: int) -> List[BuiltCluster]:
    built = []
    for user_type, members in sorted(_grouped(rows, lambda r: r[1].get('user_type')).items()):
        if len(members) < min_samples:
            continue
        completion = [a.completion_rate for a, _ in members]
        patterns: Counter = Counter()
        for _, tag in members:
            flags = decode_json(tag.get('pattern_flags'), {}) or {}
            patterns.update(name for name, value in flags.items() if value)
        insight = BehaviorInsight(
            avg_completion=round(_mean(completion), 1),
            completion_std=round(_std(completion), 1),
            avg_turns=round(_mean([a.total_turns for a, _ in members]), 1),
            outcome_distribution=dict(Counter(t.get('outcome') for _, t in members if t.get('outcome'))),
            pattern_counts=dict(patterns),
        )
        built.append((
            user_type,
            f"{user_type}用户行为",
            insight,
            len(members),
            cluster_confidence(len(members), insight.completion_std, target),
        ))
    return built


def _build_success_clusters(rows: Sequence[ClusterRow], min_samples: int, target: int) -> List[BuiltCluster]:
    buckets = (
        ('high_completion', '高完成率对话特征', [r for r in rows if r[0].completion_rate >= HIGH_COMPLETION]),
        ('failure_patterns', '低完成率对话特征', [r for r in rows if r[0].completion_rate < LOW_COMPLETION]),
    )
    built = []
    for key, name, members in buckets:
        if len(members) < min_samples:
            continue
        insight = group_insight([a for a, _ in members])
        built.append((key, name, insight, len(members), cluster_confidence(len(members), insight.completion_std, target)))
    return built


def build_clusters(cluster_type: ClusterType, rows: Sequence[ClusterRow], target: int) -> List[KnowledgeCluster]:
    """Compute every cluster of one type from (analysis, tag row) pairs."""
    min_samples = MIN_SAMPLES[cluster_type]
    if cluster_type == ClusterType.INDUSTRY_PATTERN:
        built = _build_group_clusters(rows, lambda r: r[0].industry, '{}行业模式', min_samples, target)
    elif cluster_type == ClusterType.VIOLATION_PATTERN:
        built = _build_group_clusters(rows, lambda r: r[0].problem_type, '{}违规模式', min_samples, target)
    elif cluster_type == ClusterType.QUESTION_EFFECTIVENESS:
        built = _build_question_clusters(rows, min_samples, target)
    elif cluster_type == ClusterType.USER_BEHAVIOR:
        built = _build_behavior_clusters(rows, min_samples, target)
    else:
        built = _build_success_clusters(rows, min_samples, target)

    return [
        KnowledgeCluster(
            cluster_type=cluster_type,
            cluster_key=key,
            cluster_name=name,
            insight_data=insight,
            sample_count=count,
            confidence=confidence,
        )
        for key, name, insight, count, confidence in built
    ]


def summarize_day(metric_date: date, analyses: Sequence[ConversationAnalysis]) -> LearningMetric:
    """Day totals from that day's analyses; rule counts are filled in by the caller."""
    professionalism = [a.professionalism_score for a in analyses if a.professionalism_score is not None]
    suggestions = [s for a in analyses for s in a.suggestions]
    return LearningMetric(
        metric_date=metric_date,
        total_conversations=len(analyses),
        avg_collection_turns=round(_mean([a.collection_turns for a in analyses]), 2),
        avg_completion_rate=round(_mean([a.completion_rate for a in analyses]), 2),
        avg_user_satisfaction=round(_mean([a.user_satisfaction for a in analyses]), 2),
        avg_professionalism=round(_mean(professionalism), 2),
        avg_appeal_success=round(_mean([a.appeal_success_rate for a in analyses]), 2),
        completion_count=sum(1 for a in analyses if a.completion_rate >= HIGH_COMPLETION),
        drop_off_count=sum(1 for a in analyses if a.drop_off_point),
        top_drop_off_fields=_top(a.drop_off_point for a in analyses),
        top_improvements=_top(s.type for s in suggestions),
        product_recommendation_count=sum(1 for s in suggestions if s.type == PRODUCT_RECOMMENDATION),
    )


# =============================================================================
# Service
# =============================================================================

class KnowledgeAggregator:
    """Daily metrics and cluster rebuilds over stored analyses."""

    def __init__(self, settings: Settings, pool: Pool, health: HealthMonitor):
        self._settings = settings
        self._pool = pool
        self._health = health
        self._since_refresh = 0

    async def aggregate_daily(self, metric_date: Optional[date] = None) -> LearningMetric:
        """
        Aggregate one calendar day (yesterday by default) into learning_metrics.

        Idempotent: re-running for the same date overwrites the row.
        """
        metric_date = metric_date or date.today() - timedelta(days=1)

        async def _load():
            async with acquire(self._pool) as conn:
                rows = await conn.fetch(analysis_queries.get_analyses_for_date_query(), metric_date)
                generated = await conn.fetchval(knowledge_queries.get_rules_generated_on_query(), metric_date)
                promoted = await conn.fetchval(
                    knowledge_queries.get_rules_promoted_on_query(), metric_date, PROMOTION_ACTIONS
                )
                return rows, generated, promoted

        rows, generated, promoted = await self._health.call('store', _load)
        metric = summarize_day(metric_date, [ConversationAnalysis.from_record(r) for r in rows])
        metric.rules_generated = int(generated or 0)
        metric.rules_promoted = int(promoted or 0)

        async def _upsert():
            async with acquire(self._pool) as conn:
                await conn.execute(
                    knowledge_queries.get_upsert_learning_metric_query(),
                    metric.metric_date,
                    metric.total_conversations,
                    metric.avg_collection_turns,
                    metric.avg_completion_rate,
                    metric.avg_user_satisfaction,
                    metric.avg_professionalism,
                    metric.avg_appeal_success,
                    metric.completion_count,
                    metric.drop_off_count,
                    metric.top_drop_off_fields,
                    metric.top_improvements,
                    metric.rules_generated,
                    metric.rules_promoted,
                    metric.product_recommendation_count,
                )

        await self._health.call('store', _upsert)
        logger.info(
            "Daily metrics for %s: %d conversations, avg completion %.1f",
            metric_date, metric.total_conversations, metric.avg_completion_rate,
        )
        return metric

    async def refresh_clusters(self, cluster_type: Optional[ClusterType] = None) -> List[KnowledgeCluster]:
        """
        Rebuild one cluster type, or all of them.

        Each type is replaced in its own transaction; a failure in one type
        propagates without touching the types not yet processed.
        """
        types = [cluster_type] if cluster_type else list(ClusterType)

        async def _load():
            async with acquire(self._pool) as conn:
                return await conn.fetch(
                    analysis_queries.get_analyses_with_tags_query(),
                    self._settings.cluster_lookback_days,
                )

        records = await self._health.call('store', _load)
        rows: List[ClusterRow] = [(ConversationAnalysis.from_record(r), r) for r in records]

        clusters: List[KnowledgeCluster] = []
        for ctype in types:
            built = build_clusters(ctype, rows, self._settings.cluster_target_sample_size)
            await self._replace(ctype, built)
            clusters.extend(built)

        self._since_refresh = 0
        logger.info("Rebuilt %d cluster(s) from %d analyses", len(clusters), len(rows))
        return clusters

    async def _replace(self, cluster_type: ClusterType, clusters: Sequence[KnowledgeCluster]) -> None:
        async def _write():
            async with acquire(self._pool) as conn:
                async with conn.transaction():
                    await conn.execute(knowledge_queries.get_delete_clusters_query(), cluster_type.value)
                    for cluster in clusters:
                        await conn.execute(
                            knowledge_queries.get_insert_cluster_query(),
                            cluster.cluster_type.value,
                            cluster.cluster_key,
                            cluster.cluster_name,
                            cluster.insight_data.model_dump(mode='json'),
                            cluster.sample_count,
                            cluster.confidence,
                        )

        await self._health.call('store', _write)

    async def note_analysis(self) -> bool:
        """
        Count one new analysis; rebuild every cluster type once
        ``cluster_refresh_every`` analyses have accumulated.

        Returns:
            True if a refresh ran.
        """
        self._since_refresh += 1
        if self._since_refresh < self._settings.cluster_refresh_every:
            return False
        await self.refresh_clusters()
        return True

    async def list_clusters(self, cluster_type: Optional[ClusterType] = None) -> List[KnowledgeCluster]:
        async def _fetch():
            async with acquire(self._pool) as conn:
                if cluster_type:
                    return await conn.fetch(knowledge_queries.get_clusters_query(True), cluster_type.value)
                return await conn.fetch(knowledge_queries.get_clusters_query())

        rows = await self._health.call('store', _fetch)
        return [KnowledgeCluster.from_record(row) for row in rows]

    async def list_metrics(self, days: int = 30) -> List[LearningMetric]:
        async def _fetch():
            async with acquire(self._pool) as conn:
                return await conn.fetch(knowledge_queries.get_learning_metrics_query(), days)

        rows = await self._health.call('store', _fetch)
        return [LearningMetric.from_record(row) for row in rows]
