"""
Tagging Engine.

``tag_analysis`` is a pure function of an analysis: completion rate, turn
count, drop-off point and sentiment trajectory are mapped through fixed
thresholds onto difficulty, user type, outcome, a quality score, free-form
labels and pattern flags. ``TaggingEngine.tag`` adds the upsert (one tag per
session).
"""

import logging
from typing import List, Optional

from asyncpg import Pool

from evolution_engine.core.database import acquire
from evolution_engine.models.enums import Difficulty, Outcome, Sentiment, UserType
from evolution_engine.models.schemas import ConversationAnalysis, ConversationTag, PatternFlags
from evolution_engine.services.health_monitor import HealthMonitor
from evolution_engine.sql import analysis_queries


logger = logging.getLogger(__name__)

COMPLETED_RATE: float = 80.0

NEGATIVE_SENTIMENTS = {Sentiment.NEGATIVE, Sentiment.SLIGHTLY_NEGATIVE}
POSITIVE_SENTIMENTS = {Sentiment.POSITIVE, Sentiment.SLIGHTLY_POSITIVE}


def classify_difficulty(completion: float, turns: int) -> Difficulty:
    if completion >= 80 and turns <= 8:
        return Difficulty.EASY
    if completion >= 60 and turns <= 15:
        return Difficulty.MEDIUM
    if completion < 30 and turns > 20:
        return Difficulty.EXTREME
    return Difficulty.HARD


def classify_outcome(analysis: ConversationAnalysis) -> Outcome:
    """
    completed: completion >= 80 and no drop-off.
    Otherwise the terminal sentiment decides: a negative ending, or a very
    short conversation that collected almost nothing, is ``abandoned``; a
    non-negative ending after a drop-off is ``redirected``; the rest is
    ``partial``.
    """
    completion = analysis.completion_rate
    if completion >= COMPLETED_RATE and not analysis.drop_off_point:
        return Outcome.COMPLETED

    terminal = analysis.terminal_sentiment
    if terminal in NEGATIVE_SENTIMENTS:
        return Outcome.ABANDONED
    if completion < 15 and analysis.total_turns < 5:
        return Outcome.ABANDONED
    if analysis.drop_off_point:
        return Outcome.REDIRECTED
    return Outcome.PARTIAL


def classify_user_type(completion: float, turns: int) -> UserType:
    if turns >= 15 and completion >= 70:
        return UserType.EXPERIENCED
    if turns >= 8:
        return UserType.RETURNING
    return UserType.FIRST_TIME


def quality_score(completion: float, turns: int, sentiment: Optional[Sentiment]) -> float:
    """completion x 0.4, plus up to 30 for sentiment and 30 for a ~10-turn length."""
    if sentiment in POSITIVE_SENTIMENTS:
        sentiment_points = 30
    elif sentiment == Sentiment.NEUTRAL or sentiment is None:
        sentiment_points = 20
    else:
        sentiment_points = 10
    length_points = min(30, max(0, 30 - abs(turns - 10) * 2))
    return float(max(0, min(100, round(completion * 0.4 + sentiment_points + length_points))))


def _labels(analysis: ConversationAnalysis) -> List[str]:
    completion = analysis.completion_rate
    turns = analysis.total_turns
    sentiment = analysis.user_sentiment

    labels = []
    if completion >= 90:
        labels.append('高完成率')
    if completion < 20:
        labels.append('低完成率')
    if sentiment == Sentiment.NEGATIVE:
        labels.append('负面情绪')
    if sentiment == Sentiment.POSITIVE:
        labels.append('积极配合')
    if turns <= 5 and completion >= 60:
        labels.append('高效用户')
    if turns > 20:
        labels.append('长对话')
    if analysis.drop_off_point:
        labels.append(f'流失:{analysis.drop_off_point}')
    if analysis.industry:
        labels.append(f'行业:{analysis.industry}')
    if analysis.problem_type:
        labels.append(f'类型:{analysis.problem_type}')
    return labels


def tag_analysis(analysis: ConversationAnalysis) -> ConversationTag:
    """Classify one analysis. No I/O; always succeeds."""
    completion = analysis.completion_rate
    turns = analysis.total_turns

    return ConversationTag(
        session_id=analysis.session_id,
        analysis_id=analysis.id,
        difficulty=classify_difficulty(completion, turns),
        user_type=classify_user_type(completion, turns),
        quality_score=quality_score(completion, turns, analysis.user_sentiment),
        outcome=classify_outcome(analysis),
        tags=_labels(analysis),
        industry_cluster=analysis.industry or None,
        violation_cluster=analysis.problem_type or None,
        pattern_flags=PatternFlags(
            resistant=analysis.fields_refused > 3,
            cooperative=analysis.fields_collected >= 12,
            efficient=turns <= 6 and completion >= 70,
            dropped=bool(analysis.drop_off_point),
        ),
    )


class TaggingEngine:
    """Tags analyses and upserts the result by session id."""

    def __init__(self, pool: Pool, health: HealthMonitor):
        self._pool = pool
        self._health = health

    async def tag(self, analysis: ConversationAnalysis) -> ConversationTag:
        tag = tag_analysis(analysis)

        async def _upsert():
            async with acquire(self._pool) as conn:
                await conn.execute(
                    analysis_queries.get_upsert_tag_query(),
                    tag.session_id,
                    tag.analysis_id,
                    tag.difficulty.value,
                    tag.user_type.value,
                    tag.quality_score,
                    tag.outcome.value,
                    tag.tags,
                    tag.industry_cluster,
                    tag.violation_cluster,
                    tag.pattern_flags.model_dump(),
                )

        await self._health.call('store', _upsert)
        logger.debug("Tagged %s as %s/%s", tag.session_id, tag.difficulty.value, tag.outcome.value)
        return tag
