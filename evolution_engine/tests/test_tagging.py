"""
Tests for the Tagging Engine.

Tagging is a pure mapping from an analysis to difficulty, user type,
outcome, quality score, labels and pattern flags; ``TaggingEngine.tag``
adds the per-session upsert.
"""

import pytest

from evolution_engine.models.enums import Difficulty, Outcome, Sentiment, UserType
from evolution_engine.models.schemas import SentimentSample
from evolution_engine.services.tagging import (
    TaggingEngine,
    classify_difficulty,
    classify_outcome,
    classify_user_type,
    quality_score,
    tag_analysis,
)
from evolution_engine.sql import analysis_queries
from evolution_engine.tests.helpers import calls_for


class TestDifficulty:

    @pytest.mark.parametrize('completion,turns,expected', [
        (85, 8, Difficulty.EASY),
        (80, 8, Difficulty.EASY),
        (85, 9, Difficulty.MEDIUM),
        (65, 15, Difficulty.MEDIUM),
        (50, 18, Difficulty.HARD),
        (20, 10, Difficulty.HARD),
        (29, 21, Difficulty.EXTREME),
        (30, 25, Difficulty.HARD),
    ])
    def test_thresholds(self, completion, turns, expected) -> None:
        assert classify_difficulty(completion, turns) == expected


class TestOutcome:

    def test_completed_requires_no_drop_off(self, make_analysis) -> None:
        assert classify_outcome(make_analysis(completion_rate=90)) == Outcome.COMPLETED
        assert classify_outcome(
            make_analysis(completion_rate=90, drop_off_point='license_no', user_sentiment=Sentiment.NEUTRAL)
        ) == Outcome.REDIRECTED

    def test_negative_ending_is_abandoned(self, make_analysis) -> None:
        analysis = make_analysis(
            completion_rate=50,
            user_sentiment=Sentiment.POSITIVE,
            sentiment_trajectory=[
                SentimentSample(turn=1, sentiment=Sentiment.POSITIVE),
                SentimentSample(turn=6, sentiment=Sentiment.SLIGHTLY_NEGATIVE, reason='反复追问'),
            ],
        )

        assert analysis.terminal_sentiment == Sentiment.SLIGHTLY_NEGATIVE
        assert classify_outcome(analysis) == Outcome.ABANDONED

    def test_short_empty_conversation_is_abandoned(self, make_analysis) -> None:
        analysis = make_analysis(completion_rate=10, total_turns=3, user_sentiment=Sentiment.NEUTRAL)
        assert classify_outcome(analysis) == Outcome.ABANDONED

    def test_drop_off_without_negativity_is_redirected(self, make_analysis) -> None:
        analysis = make_analysis(completion_rate=45, drop_off_point='bank_name', user_sentiment=Sentiment.NEUTRAL)
        assert classify_outcome(analysis) == Outcome.REDIRECTED

    def test_otherwise_partial(self, make_analysis) -> None:
        analysis = make_analysis(completion_rate=45, user_sentiment=None)
        assert classify_outcome(analysis) == Outcome.PARTIAL


class TestScoresAndLabels:

    @pytest.mark.parametrize('completion,turns', [(85, 20), (70, 15)])
    def test_experienced(self, completion, turns) -> None:
        assert classify_user_type(completion, turns) == UserType.EXPERIENCED

    def test_returning_and_first_time(self) -> None:
        assert classify_user_type(40, 15) == UserType.RETURNING
        assert classify_user_type(90, 8) == UserType.RETURNING
        assert classify_user_type(90, 7) == UserType.FIRST_TIME

    def test_quality_score_extremes(self) -> None:
        assert quality_score(100, 10, Sentiment.POSITIVE) == 100
        assert quality_score(0, 40, Sentiment.NEGATIVE) == 10
        assert quality_score(50, 12, None) == 66

    def test_quality_score_always_in_range(self) -> None:
        for completion in (0, 33.3, 100):
            for turns in (0, 1, 10, 60):
                for sentiment in list(Sentiment) + [None]:
                    assert 0 <= quality_score(completion, turns, sentiment) <= 100

    def test_labels_and_flags(self, make_analysis) -> None:
        analysis = make_analysis(
            completion_rate=95,
            total_turns=5,
            fields_collected=15,
            fields_refused=4,
            drop_off_point='license_no',
            user_sentiment=Sentiment.POSITIVE,
        )

        tag = tag_analysis(analysis)

        assert '高完成率' in tag.tags
        assert '积极配合' in tag.tags
        assert '高效用户' in tag.tags
        assert '流失:license_no' in tag.tags
        assert '行业:餐饮' in tag.tags
        assert tag.industry_cluster == '餐饮'
        assert tag.violation_cluster == '交易异常'
        assert tag.pattern_flags.resistant is True
        assert tag.pattern_flags.cooperative is True
        assert tag.pattern_flags.efficient is True
        assert tag.pattern_flags.dropped is True


class TestScenarioA:

    @pytest.mark.scenario
    def test_ten_completed_restaurant_conversations(self, make_analysis) -> None:
        analyses = [
            make_analysis(session_id=f's{i}', industry='餐饮', completion_rate=80 + i, drop_off_point=None)
            for i in range(10)
        ]

        tags = [tag_analysis(a) for a in analyses]

        assert all(t.outcome == Outcome.COMPLETED for t in tags)
        assert {t.industry_cluster for t in tags} == {'餐饮'}


@pytest.mark.asyncio
class TestTaggingEngine:

    async def test_tag_upserts_by_session(self, mock_db_pool, mock_conn, health, make_analysis) -> None:
        engine = TaggingEngine(mock_db_pool, health)
        analysis = make_analysis(id=42, session_id='session-42', completion_rate=20, total_turns=25)

        tag = await engine.tag(analysis)

        assert tag.difficulty == Difficulty.EXTREME
        upserts = calls_for(mock_conn.execute, analysis_queries.get_upsert_tag_query())
        assert len(upserts) == 1
        args = upserts[0]
        assert args[1] == 'session-42'
        assert args[2] == 42
        assert args[3] == 'extreme'
        assert args[6] == tag.outcome.value
        assert args[10] == tag.pattern_flags.model_dump()
