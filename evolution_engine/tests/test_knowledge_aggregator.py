"""
Tests for the Knowledge Aggregator.

Covers:
- Scenario A: ten completed restaurant conversations become one
  ``industry_pattern/餐饮`` cluster
- Confidence bounds and the consistency discount
- Idempotent daily metrics
- Cluster types replaced inside a transaction (delete then insert)
"""

from datetime import date
from unittest.mock import AsyncMock, patch

import numpy as np
import pytest

from evolution_engine.models.enums import ChangeAction, ClusterType
from evolution_engine.models.schemas import ConversationAnalysis, Suggestion
from evolution_engine.services.knowledge_aggregator import (
    KnowledgeAggregator,
    build_clusters,
    cluster_confidence,
    summarize_day,
)
from evolution_engine.sql import knowledge_queries
from evolution_engine.tests.helpers import calls_for


@pytest.fixture
def aggregator(settings, mock_db_pool, health) -> KnowledgeAggregator:
    return KnowledgeAggregator(settings, mock_db_pool, health)


def as_rows(records):
    return [(ConversationAnalysis.from_record(r), r) for r in records]


# =============================================================================
# Confidence
# =============================================================================

class TestClusterConfidence:

    def test_zero_samples(self) -> None:
        assert cluster_confidence(0, 0.0, 20) == 0.0

    def test_grows_with_sample_size(self) -> None:
        assert cluster_confidence(10, 0.0, 20) == 50.0
        assert cluster_confidence(20, 0.0, 20) == 100.0
        assert cluster_confidence(400, 0.0, 20) == 100.0

    def test_inconsistency_discount_is_capped_at_half(self) -> None:
        assert cluster_confidence(500, 80.0, 20) == 50.0
        assert cluster_confidence(20, 10.0, 20) == 90.0

    def test_nan_std_treated_as_consistent(self) -> None:
        assert cluster_confidence(20, float('nan'), 20) == 100.0

    def test_always_within_bounds(self) -> None:
        rng = np.random.default_rng(7)
        for n, std in zip(rng.integers(0, 1000, 200), rng.uniform(0, 200, 200)):
            assert 0.0 <= cluster_confidence(int(n), float(std), 20) <= 100.0


# =============================================================================
# Cluster Builders
# =============================================================================

class TestBuildClusters:

    @pytest.mark.scenario
    def test_scenario_a_industry_cluster(self, analysis_record) -> None:
        records = [analysis_record(completion_rate=80.0 + i) for i in range(10)]

        clusters = build_clusters(ClusterType.INDUSTRY_PATTERN, as_rows(records), 20)

        assert len(clusters) == 1
        cluster = clusters[0]
        assert cluster.cluster_key == '餐饮'
        assert cluster.sample_count == 10
        assert cluster.insight_data.avg_completion >= 80
        assert 0 < cluster.confidence <= 50.0

    def test_groups_below_minimum_are_dropped(self, analysis_record) -> None:
        records = [analysis_record(industry='零售') for _ in range(2)]
        records += [analysis_record(industry='餐饮') for _ in range(3)]

        clusters = build_clusters(ClusterType.INDUSTRY_PATTERN, as_rows(records), 20)

        assert [c.cluster_key for c in clusters] == ['餐饮']

    def test_question_clusters_combine_drop_offs_and_suggestions(self, analysis_record, sample_suggestion) -> None:
        suggestion = sample_suggestion.model_dump(by_alias=True)
        records = [
            analysis_record(drop_off_point='license_no', completion_rate=40.0),
            analysis_record(drop_off_point='license_no', completion_rate=50.0),
            analysis_record(suggestions=[suggestion]),
            analysis_record(),
        ]

        clusters = build_clusters(ClusterType.QUESTION_EFFECTIVENESS, as_rows(records), 20)

        assert len(clusters) == 1
        insight = clusters[0].insight_data
        assert insight.field == 'license_no'
        assert insight.drop_off_count == 2
        assert insight.suggestion_count == 1
        assert insight.drop_off_rate == 50.0
        assert clusters[0].sample_count == 3

    def test_behavior_clusters_count_outcomes_and_patterns(self, analysis_record) -> None:
        records = [
            analysis_record(user_type='experienced', outcome='completed'),
            analysis_record(user_type='experienced', outcome='partial'),
            analysis_record(user_type='first_time'),
        ]

        clusters = build_clusters(ClusterType.USER_BEHAVIOR, as_rows(records), 20)

        assert [c.cluster_key for c in clusters] == ['experienced']
        insight = clusters[0].insight_data
        assert insight.outcome_distribution == {'completed': 1, 'partial': 1}
        assert insight.pattern_counts == {'cooperative': 2}

    def test_success_factor_buckets(self, analysis_record) -> None:
        records = [analysis_record(completion_rate=90.0) for _ in range(3)]
        records += [analysis_record(completion_rate=10.0) for _ in range(2)]

        clusters = build_clusters(ClusterType.SUCCESS_FACTOR, as_rows(records), 20)

        assert [c.cluster_key for c in clusters] == ['high_completion']


class TestSummarizeDay:

    def test_empty_day(self) -> None:
        metric = summarize_day(date(2026, 2, 28), [])

        assert metric.total_conversations == 0
        assert metric.avg_completion_rate == 0.0
        assert metric.top_drop_off_fields == []

    def test_totals(self, make_analysis) -> None:
        analyses = [
            make_analysis(completion_rate=90.0, suggestions=[Suggestion(type='product_recommendation')]),
            make_analysis(completion_rate=50.0, drop_off_point='bank_name'),
        ]

        metric = summarize_day(date(2026, 2, 28), analyses)

        assert metric.total_conversations == 2
        assert metric.avg_completion_rate == 70.0
        assert metric.completion_count == 1
        assert metric.drop_off_count == 1
        assert metric.top_drop_off_fields == ['bank_name']
        assert metric.product_recommendation_count == 1


# =============================================================================
# Service
# =============================================================================

@pytest.mark.asyncio
class TestKnowledgeAggregator:

    async def test_aggregate_daily_is_idempotent(self, aggregator, mock_conn, analysis_record) -> None:
        mock_conn.fetch.return_value = [analysis_record(), analysis_record(completion_rate=55.0)]
        mock_conn.fetchval.side_effect = [2, 1, 2, 1]
        day = date(2026, 2, 28)

        first = await aggregator.aggregate_daily(day)
        second = await aggregator.aggregate_daily(day)

        assert first == second
        upserts = calls_for(mock_conn.execute, knowledge_queries.get_upsert_learning_metric_query())
        assert len(upserts) == 2
        assert upserts[0] == upserts[1]
        assert upserts[0][1] == day
        assert upserts[0][2] == 2
        assert first.rules_generated == 2
        assert first.rules_promoted == 1

    async def test_promotions_are_counted_from_the_change_log(self, aggregator, mock_conn) -> None:
        mock_conn.fetch.return_value = []
        mock_conn.fetchval.side_effect = [0, 3]
        day = date(2026, 2, 28)

        metric = await aggregator.aggregate_daily(day)

        query = knowledge_queries.get_rules_promoted_on_query()
        assert 'FROM rule_change_log' in query
        assert "status = 'active'" not in query
        assert calls_for(mock_conn.fetchval, query) == [
            (query, day, [ChangeAction.ACTIVATED.value, ChangeAction.AUTO_PROMOTED.value]),
        ]
        assert metric.rules_promoted == 3

    @pytest.mark.scenario
    async def test_refresh_replaces_one_type(self, aggregator, mock_conn, analysis_record) -> None:
        mock_conn.fetch.return_value = [analysis_record(completion_rate=80.0 + i) for i in range(10)]

        clusters = await aggregator.refresh_clusters(ClusterType.INDUSTRY_PATTERN)

        assert [(c.cluster_type, c.cluster_key, c.sample_count) for c in clusters] == [
            (ClusterType.INDUSTRY_PATTERN, '餐饮', 10),
        ]
        statements = [c.args[0] for c in mock_conn.execute.await_args_list]
        assert statements == [
            knowledge_queries.get_delete_clusters_query(),
            knowledge_queries.get_insert_cluster_query(),
        ]
        insert = calls_for(mock_conn.execute, knowledge_queries.get_insert_cluster_query())[0]
        assert insert[1:3] == ('industry_pattern', '餐饮')
        assert insert[4]['kind'] == 'group'
        mock_conn.transaction.assert_called_once()

    async def test_refresh_all_types_uses_one_transaction_each(self, aggregator, mock_conn) -> None:
        await aggregator.refresh_clusters()

        assert mock_conn.transaction.call_count == len(ClusterType)
        deletes = calls_for(mock_conn.execute, knowledge_queries.get_delete_clusters_query())
        assert [d[1] for d in deletes] == [t.value for t in ClusterType]

    async def test_note_analysis_refreshes_every_n(self, settings, mock_db_pool, health) -> None:
        aggregator = KnowledgeAggregator(
            settings.model_copy(update={'cluster_refresh_every': 2}), mock_db_pool, health,
        )

        with patch.object(aggregator, 'refresh_clusters', new=AsyncMock(return_value=[])) as refresh:
            assert await aggregator.note_analysis() is False
            assert await aggregator.note_analysis() is True

        refresh.assert_awaited_once_with()

    async def test_list_clusters_filters_by_type(self, aggregator, mock_conn) -> None:
        mock_conn.fetch.return_value = [{
            'cluster_type': 'industry_pattern',
            'cluster_key': '餐饮',
            'cluster_name': '餐饮行业模式',
            'insight_data': '{"kind": "group", "avg_completion": 84.5}',
            'sample_count': 10,
            'confidence': 48.6,
            'last_updated': None,
        }]

        clusters = await aggregator.list_clusters(ClusterType.INDUSTRY_PATTERN)

        mock_conn.fetch.assert_awaited_once_with(knowledge_queries.get_clusters_query(True), 'industry_pattern')
        assert clusters[0].insight_data.avg_completion == 84.5
