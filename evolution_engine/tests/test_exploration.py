"""
Tests for the Exploration Runner.

Covers:
- Scenario D: no winner while either side is below the sample floor,
  however large the observed effect
- Decisions handed to the lifecycle manager (approve, reject, archive), and
  experiments marked failed when the decision cannot be applied
- Deterministic, balanced session routing
- Welford running statistics
"""

import json
from datetime import datetime, timezone
from unittest.mock import AsyncMock, Mock

import numpy as np
import pytest

from evolution_engine.core.errors import NotFound, StoreError
from evolution_engine.models.enums import ExperimentStatus, ExperimentWinner, ReviewDecision, Variant
from evolution_engine.models.schemas import ConversationAnalysis, Rule, Suggestion, VariantResult
from evolution_engine.services.exploration import (
    ExplorationRunner,
    assign_variant,
    decide_winner,
    hot_suggestions,
)
from evolution_engine.sql import engine_queries
from evolution_engine.tests.helpers import calls_for


def results(values):
    result = VariantResult()
    for value in values:
        result = result.add(value)
    return result


def experiment_row(**overrides):
    row = {
        'id': 5,
        'experiment_name': 'explore_question_template_license_no',
        'rule_id': 11,
        'hypothesis': '应用候选规则可以提升信息收集完成率',
        'status': 'running',
        'variant_a': json.dumps({'action': 'apply_rule', 'type': 'question_template', 'field': 'license_no'}),
        'variant_b': json.dumps({'action': 'baseline'}),
        'sample_a': 0,
        'sample_b': 0,
        'result_a': json.dumps({'n': 0, 'mean': 0.0, 'm2': 0.0}),
        'result_b': json.dumps({'n': 0, 'mean': 0.0, 'm2': 0.0}),
        'winner': None,
        'started_at': datetime(2026, 2, 20, tzinfo=timezone.utc),
        'ended_at': None,
    }
    row.update(overrides)
    return row


def with_results(a: VariantResult, b: VariantResult, **overrides):
    return experiment_row(
        sample_a=a.n,
        sample_b=b.n,
        result_a=json.dumps(a.model_dump()),
        result_b=json.dumps(b.model_dump()),
        **overrides,
    )


@pytest.fixture
def lifecycle():
    manager = Mock()
    manager.get_rule = AsyncMock()
    manager.review = AsyncMock()
    manager.archive = AsyncMock()
    manager.propose = AsyncMock()
    return manager


@pytest.fixture
def runner(settings, mock_db_pool, health, lifecycle) -> ExplorationRunner:
    return ExplorationRunner(settings, mock_db_pool, health, lifecycle)


# =============================================================================
# Decision Rule
# =============================================================================

class TestDecideWinner:

    @pytest.mark.scenario
    def test_scenario_d_sample_floor(self) -> None:
        a = results([90.0] * 15)
        b = results([40.0] * 20)

        assert decide_winner(a, b, min_sample=20, margin=5.0) is None

        a = results([90.0] * 20)
        assert decide_winner(a, b, min_sample=20, margin=5.0) == ExperimentWinner.A

    def test_margin_is_strict(self) -> None:
        a = results([55.0] * 10)
        b = results([50.0] * 10)

        assert decide_winner(a, b, 10, 5.0) == ExperimentWinner.INCONCLUSIVE
        assert decide_winner(b, a, 10, 4.9) == ExperimentWinner.B

    def test_welford_matches_numpy(self) -> None:
        values = np.random.default_rng(3).uniform(0, 100, 57)

        result = results(values.tolist())

        assert result.n == 57
        assert result.mean == pytest.approx(float(np.mean(values)))
        assert result.variance == pytest.approx(float(np.var(values, ddof=1)))

    def test_variance_of_single_sample_is_zero(self) -> None:
        assert results([42.0]).variance == 0.0


class TestRouting:

    def test_assignment_is_deterministic(self) -> None:
        assert assign_variant(5, 'session-abc') == assign_variant(5, 'session-abc')

    def test_assignment_is_balanced(self) -> None:
        sides = [assign_variant(7, f'session-{i}') for i in range(1000)]

        assert 400 <= sides.count(Variant.A) <= 600

    def test_hot_suggestions_group_by_type_and_field(self, make_analysis) -> None:
        license_tip = Suggestion(type='question_template', field='license_no', recommended='先说明用途')
        pattern_tip = Suggestion(type='conversation_pattern', recommended='减少重复提问')
        analyses = [make_analysis(suggestions=[license_tip]) for _ in range(4)]
        analyses += [make_analysis(suggestions=[pattern_tip]) for _ in range(2)]

        groups = hot_suggestions(analyses, min_count=3, limit=5)

        assert len(groups) == 1
        assert len(groups[0]) == 4
        assert groups[0][0].field == 'license_no'


# =============================================================================
# Runner
# =============================================================================

@pytest.mark.asyncio
class TestEvaluate:

    async def test_below_floor_stays_running(self, runner, mock_conn, lifecycle) -> None:
        mock_conn.fetchrow.return_value = with_results(results([95.0] * 9), results([30.0] * 30))

        evaluation = await runner.evaluate(5)

        assert evaluation.status == ExperimentStatus.RUNNING
        assert evaluation.winner is None
        assert calls_for(mock_conn.fetchrow, engine_queries.get_finish_experiment_query()) == []
        lifecycle.get_rule.assert_not_awaited()

    async def test_candidate_win_approves_rule(self, runner, mock_conn, lifecycle, rule_row) -> None:
        row = with_results(results([85.0] * 12), results([70.0] * 12))
        mock_conn.fetchrow.side_effect = [row, dict(row, status='completed', winner='a')]
        lifecycle.get_rule.return_value = Rule.from_record(rule_row(id=11))

        evaluation = await runner.evaluate(5)

        assert evaluation.status == ExperimentStatus.COMPLETED
        assert evaluation.winner == ExperimentWinner.A
        assert evaluation.difference == 15.0
        finish = calls_for(mock_conn.fetchrow, engine_queries.get_finish_experiment_query())
        assert finish == [(engine_queries.get_finish_experiment_query(), 5, 'completed', 'a')]
        lifecycle.review.assert_awaited_once_with(11, ReviewDecision.APPROVE, 'experiment_won', 'exploration')

    async def test_baseline_win_archives_active_rule(self, runner, mock_conn, lifecycle, rule_row) -> None:
        row = with_results(results([50.0] * 10), results([70.0] * 10))
        mock_conn.fetchrow.side_effect = [row, dict(row, status='completed', winner='b')]
        lifecycle.get_rule.return_value = Rule.from_record(rule_row(id=11, status='active'))

        await runner.evaluate(5)

        lifecycle.archive.assert_awaited_once_with(11, 'experiment_lost', 'exploration')
        lifecycle.review.assert_not_awaited()

    async def test_inconclusive_leaves_rule_alone(self, runner, mock_conn, lifecycle, rule_row) -> None:
        row = with_results(results([70.0] * 10), results([68.0] * 10))
        mock_conn.fetchrow.side_effect = [row, dict(row, status='completed', winner='inconclusive')]
        lifecycle.get_rule.return_value = Rule.from_record(rule_row(id=11))

        evaluation = await runner.evaluate(5)

        assert evaluation.winner == ExperimentWinner.INCONCLUSIVE
        lifecycle.review.assert_not_awaited()
        lifecycle.archive.assert_not_awaited()

    async def test_store_failure_while_applying_marks_failed(self, runner, mock_conn, lifecycle, rule_row) -> None:
        row = with_results(results([85.0] * 12), results([70.0] * 12))
        completed = dict(row, status='completed', winner='a')
        mock_conn.fetchrow.side_effect = [row, completed, dict(completed, status='failed')]
        lifecycle.get_rule.return_value = Rule.from_record(rule_row(id=11))
        lifecycle.review.side_effect = StoreError("connection reset")

        with pytest.raises(StoreError):
            await runner.evaluate(5)

        failed = calls_for(mock_conn.fetchrow, engine_queries.get_mark_experiment_failed_query())
        assert failed == [(engine_queries.get_mark_experiment_failed_query(), 5)]

    async def test_lost_race_does_not_apply_decision(self, runner, mock_conn, lifecycle) -> None:
        row = with_results(results([85.0] * 12), results([70.0] * 12))
        mock_conn.fetchrow.side_effect = [row, None]

        evaluation = await runner.evaluate(5)

        assert evaluation.status == ExperimentStatus.RUNNING
        lifecycle.get_rule.assert_not_awaited()

    async def test_unknown_experiment(self, runner) -> None:
        with pytest.raises(NotFound):
            await runner.evaluate(404)


@pytest.mark.asyncio
class TestRecordObservation:

    async def test_adds_to_running_side(self, runner, mock_conn) -> None:
        mock_conn.fetchrow.return_value = with_results(results([60.0]), results([]))

        experiment = await runner.record_observation(5, 'a', 80.0)

        assert experiment.result_a.n == 2
        assert experiment.result_a.mean == 70.0
        update = calls_for(mock_conn.execute, engine_queries.get_update_variant_result_query('a'))
        assert len(update) == 1
        assert update[0][1:3] == (5, 2)
        mock_conn.transaction.assert_called_once()

    async def test_ignored_when_not_running(self, runner, mock_conn) -> None:
        mock_conn.fetchrow.return_value = experiment_row(status='completed', winner='a')

        experiment = await runner.record_observation(5, Variant.B, 10.0)

        assert experiment.status == ExperimentStatus.COMPLETED
        mock_conn.execute.assert_not_awaited()

    async def test_observe_analysis_skips_older_analyses(self, runner, mock_conn) -> None:
        mock_conn.fetch.return_value = [experiment_row()]
        analysis = ConversationAnalysis(
            session_id='session-1',
            completion_rate=90.0,
            analyzed_at=datetime(2026, 2, 1, tzinfo=timezone.utc),
        )

        assert await runner.observe_analysis(analysis) == 0
        mock_conn.fetchrow.assert_not_awaited()


def stateful_experiment(mock_conn, row):
    """Serve ``row`` from the mocked connection and apply the runner's updates to it."""
    async def fetchrow(query, *args):
        if query == engine_queries.get_finish_experiment_query():
            row.update(status=args[1], winner=args[2])
        return dict(row)

    async def execute(query, *args):
        for side in ('a', 'b'):
            if query == engine_queries.get_update_variant_result_query(side):
                row[f'sample_{side}'], row[f'result_{side}'] = args[1], args[2]

    mock_conn.fetchrow.side_effect = fetchrow
    mock_conn.execute.side_effect = execute
    return row


@pytest.mark.asyncio
class TestScenarioD:

    @pytest.mark.scenario
    async def test_observations_reach_the_sample_floor(
        self, settings, mock_db_pool, mock_conn, health, lifecycle, rule_row,
    ) -> None:
        runner = ExplorationRunner(
            settings.model_copy(update={'exploration_min_sample': 20}), mock_db_pool, health, lifecycle,
        )
        row = stateful_experiment(mock_conn, experiment_row())
        lifecycle.get_rule.return_value = Rule.from_record(rule_row(id=11))

        for _ in range(15):
            await runner.record_observation(5, Variant.A, 90.0)
        for _ in range(20):
            await runner.record_observation(5, Variant.B, 40.0)

        evaluation = await runner.evaluate(5)
        assert evaluation.status == ExperimentStatus.RUNNING
        assert (evaluation.sample_a, evaluation.sample_b) == (15, 20)
        assert row['status'] == 'running'

        for _ in range(5):
            await runner.record_observation(5, Variant.A, 90.0)

        evaluation = await runner.evaluate(5)
        assert evaluation.status == ExperimentStatus.COMPLETED
        assert evaluation.winner == ExperimentWinner.A
        assert evaluation.difference == 50.0
        lifecycle.review.assert_awaited_once_with(11, ReviewDecision.APPROVE, 'experiment_won', 'exploration')
