"""
Tests for the scheduled learning jobs and the per-conversation pipeline.
"""

from unittest.mock import AsyncMock, Mock, patch

import pytest

from evolution_engine.core.errors import CircuitOpenError, NotFound, StoreError
from evolution_engine.jobs import learning_jobs
from evolution_engine.jobs.learning_jobs import analyze_session, process_conversation, run_batch_analysis
from evolution_engine.jobs.scheduler import CancellationToken
from evolution_engine.models.enums import Outcome
from evolution_engine.models.schemas import Conversation, ConversationTag, Message, Rule
from evolution_engine.services.analyzer import AnalysisThrottle


pytestmark = pytest.mark.asyncio


def make_conversation(session_id: str = 'session-1', turns: int = 4) -> Conversation:
    return Conversation(
        session_id=session_id,
        messages=[Message(role='user', content=f'第{i}条消息') for i in range(turns)],
        collected_data={'industry': '餐饮'},
    )


@pytest.fixture
def ctx(settings, make_analysis, rule_row):
    analysis = make_analysis(id=31, session_id='session-1')
    context = Mock()
    context.settings = settings
    context.throttle = AnalysisThrottle(settings)

    context.loader.get_active_rules = AsyncMock(return_value=[Rule.from_record(rule_row(id=1, status='active'))])
    context.exploration.candidate_rules_for_session = AsyncMock(
        return_value=[Rule.from_record(rule_row(id=1, status='active')), Rule.from_record(rule_row(id=9))]
    )
    context.exploration.observe_analysis = AsyncMock(return_value=1)
    context.analyzer.analyze = AsyncMock(return_value=analysis)
    context.analyzer.save = AsyncMock(return_value=analysis)
    context.analyzer.load_conversation = AsyncMock(return_value=make_conversation())
    context.analyzer.find_unanalyzed = AsyncMock(return_value=[])
    context.tagging.tag = AsyncMock(return_value=ConversationTag(
        session_id='session-1', difficulty='easy', user_type='returning', quality_score=88, outcome='completed',
    ))
    context.lifecycle.apply_conversation_feedback = AsyncMock(return_value=1)
    context.generator.generate_from_analysis = AsyncMock(return_value=[])
    context.knowledge.note_analysis = AsyncMock(return_value=False)
    return context


class TestProcessConversation:

    async def test_too_short_is_skipped(self, ctx) -> None:
        result = await process_conversation(ctx, make_conversation(turns=2))

        assert result == {'session_id': 'session-1', 'skipped': True, 'reason': 'too_few_messages'}
        ctx.analyzer.analyze.assert_not_awaited()

    async def test_feeds_every_component(self, ctx) -> None:
        result = await process_conversation(ctx, make_conversation())

        kwargs = ctx.analyzer.analyze.await_args.kwargs
        assert kwargs['active_rule_ids'] == [1, 9]
        analysis = ctx.analyzer.save.return_value
        ctx.tagging.tag.assert_awaited_once_with(analysis)
        ctx.lifecycle.apply_conversation_feedback.assert_awaited_once_with(analysis)
        ctx.exploration.observe_analysis.assert_awaited_once_with(analysis)
        ctx.generator.generate_from_analysis.assert_awaited_once_with(analysis)
        ctx.knowledge.note_analysis.assert_awaited_once()
        assert result['analysis_id'] == 31
        assert result['outcome'] == Outcome.COMPLETED.value
        assert result['observations'] == 1


class TestAnalyzeSession:

    async def test_unknown_session_releases_throttle(self, ctx) -> None:
        ctx.analyzer.load_conversation.return_value = None

        with pytest.raises(NotFound):
            await analyze_session(ctx, 'ghost')

        assert ctx.throttle.try_acquire('ghost') is None

    async def test_second_request_is_cooled_down(self, ctx) -> None:
        first = await analyze_session(ctx, 'session-1')
        second = await analyze_session(ctx, 'session-1')

        assert first['analysis_id'] == 31
        assert second == {'session_id': 'session-1', 'skipped': True, 'reason': 'cooldown'}


class TestBatchAnalysis:

    async def test_counts_outcomes(self, ctx) -> None:
        ctx.analyzer.find_unanalyzed.return_value = [make_conversation(f's{i}') for i in range(3)]
        outcomes = AsyncMock(side_effect=[
            {'rules_created': [4, 5]},
            StoreError("insert failed"),
            {'skipped': True},
        ])

        with patch.object(learning_jobs, 'process_conversation', outcomes):
            result = await run_batch_analysis(ctx)

        assert result == {'found': 3, 'analyzed': 1, 'skipped': 1, 'failed': 1, 'rules_created': 2}

    async def test_open_circuit_aborts_batch(self, ctx) -> None:
        ctx.analyzer.find_unanalyzed.return_value = [make_conversation(f's{i}') for i in range(3)]
        outcomes = AsyncMock(side_effect=CircuitOpenError('llm'))

        with patch.object(learning_jobs, 'process_conversation', outcomes):
            with pytest.raises(CircuitOpenError):
                await run_batch_analysis(ctx)

        assert outcomes.await_count == 1

    async def test_stops_when_cancelled(self, ctx) -> None:
        ctx.analyzer.find_unanalyzed.return_value = [make_conversation(f's{i}') for i in range(3)]
        token = CancellationToken()
        token.cancel()
        outcomes = AsyncMock()

        with patch.object(learning_jobs, 'process_conversation', outcomes):
            result = await run_batch_analysis(ctx, token)

        assert result['analyzed'] == 0
        outcomes.assert_not_awaited()
