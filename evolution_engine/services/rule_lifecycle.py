"""
Rule Lifecycle Manager.

Owns the rule state machine and the change-audit log:

    pending_review -> active       (approve)
    pending_review -> rejected     (reject)
    active         -> archived     (demote / retire)
    rejected       -> active       (re-activate, logged as ``updated``)
    archived       -> active       (re-activate, logged as ``updated``)

New keys start at version 1; a revision of an existing (category, rule_key)
gets max(version) + 1 and points at the previous version through
``parent_id``. Only ``admin_manual`` and ``system_default`` rules created with
an explicit bypass flag skip ``pending_review``.

Writers are serialised in-process by an asyncio lock; version allocation also
takes a transaction-scoped advisory lock, and status updates are
compare-and-swap on the expected current status. Every write that changes the
active set invalidates the rule loader before returning.

Beyond manual review, the manager runs the automated parts of the lifecycle:
AI review (``auto_review``), effectiveness evaluation against the population
baseline, per-conversation moving-average feedback, and the promotion /
demotion sweep.
"""

import asyncio
import logging
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Optional, Tuple, Union

import numpy as np
from asyncpg import Pool
from pydantic import ValidationError

from evolution_engine.core.config import Settings
from evolution_engine.core.database import acquire
from evolution_engine.core.errors import (
    InvalidTransition,
    MalformedResponse,
    NotFound,
    RuleValidationError,
)
from evolution_engine.models.enums import (
    ChangeAction,
    ReviewDecision,
    RuleCategory,
    RuleSource,
    RuleStatus,
    Sentiment,
)
from evolution_engine.models.schemas import (
    AutoReviewResult,
    ConversationAnalysis,
    EffectivenessReport,
    PromotionReport,
    ReviewScores,
    Rule,
    RuleChange,
    RuleDraft,
    RuleScoreChange,
    RuleStats,
)
from evolution_engine.services.health_monitor import HealthMonitor
from evolution_engine.services.llm_client import LLMClient, extract_json_object
from evolution_engine.services.rule_loader import RuleLoader
from evolution_engine.sql import analysis_queries, rule_queries


logger = logging.getLogger(__name__)


# =============================================================================
# Constants
# =============================================================================

ALLOWED_TRANSITIONS: Dict[Tuple[RuleStatus, RuleStatus], ChangeAction] = {
    (RuleStatus.PENDING_REVIEW, RuleStatus.ACTIVE): ChangeAction.ACTIVATED,
    (RuleStatus.PENDING_REVIEW, RuleStatus.REJECTED): ChangeAction.REJECTED,
    (RuleStatus.ACTIVE, RuleStatus.ARCHIVED): ChangeAction.ARCHIVED,
    (RuleStatus.REJECTED, RuleStatus.ACTIVE): ChangeAction.UPDATED,
    (RuleStatus.ARCHIVED, RuleStatus.ACTIVE): ChangeAction.UPDATED,
}

BYPASS_SOURCES = {RuleSource.ADMIN_MANUAL, RuleSource.SYSTEM_DEFAULT}

AI_REVIEWER = 'ai_reviewer'
SYSTEM_ACTOR = 'system'

# Starting effectiveness for a new rule
INITIAL_SCORE: float = 50.0

# Bounds for computed effectiveness scores
SCORE_FLOOR: float = 5.0
SCORE_CEILING: float = 95.0

SENTIMENT_BONUS: Dict[Sentiment, float] = {
    Sentiment.POSITIVE: 10.0,
    Sentiment.SLIGHTLY_POSITIVE: 5.0,
    Sentiment.SLIGHTLY_NEGATIVE: -5.0,
    Sentiment.NEGATIVE: -10.0,
}

REVIEW_PROMPT = """你是一个AI规则审批专家。我们的系统是帮助商户进行申诉咨询的智能助手。
请评估以下AI自动生成的规则是否应该被采纳。

## 规则信息
- 类型: {category}
- 标识: {rule_key}
- 名称: {rule_name}
- 内容: {content}
- 来源: {source}
- 同类已生效规则: {siblings}

## 评估维度（0-100）
1. legalScore 合法合规性：不涉及欺诈、虚假申诉等违法行为
2. helpfulnessScore 商户帮助度：真正帮助商户解决问题
3. professionalScore 专业性：内容专业、准确、可执行
4. generalityScore 通用性：能服务多个商户场景

## 输出JSON
{{"legalScore": 0, "helpfulnessScore": 0, "professionalScore": 0, "generalityScore": 0,
  "overallScore": 0, "decision": "approve|reject|need_review", "reason": "审批原因"}}

任何涉及虚假材料、伪造证据、规避监管的规则必须reject。只输出JSON。"""


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def clamp_score(value: float, low: float = 0.0, high: float = 100.0) -> float:
    """Clamp to [low, high]; NaN (e.g. from an empty mean) becomes ``low``."""
    if value is None or np.isnan(value):
        return low
    return float(max(low, min(high, value)))


# =============================================================================
# Pure Scoring Helpers
# =============================================================================

def decide_review(scores: ReviewScores, settings: Settings) -> ReviewDecision:
    """
    Turn the reviewer's rubric into a decision.

    approve: overall >= approve threshold and legal >= legal minimum.
    reject: reviewer said reject, legal below the legal floor, or overall at
    or below the reject threshold.
    Otherwise the rule needs a human.
    """
    if scores.overall >= settings.review_approve_threshold and scores.legal >= settings.review_legal_min:
        return ReviewDecision.APPROVE
    if (
        scores.decision == ReviewDecision.REJECT
        or scores.legal < settings.review_legal_reject
        or scores.overall <= settings.review_reject_threshold
    ):
        return ReviewDecision.REJECT
    return ReviewDecision.NEEDS_REVIEW


def promotion_reason(rule: Rule, settings: Settings) -> Optional[str]:
    """
    Why a pending rule may be promoted automatically, or None if it may not.

    Only an approve verdict counts from the AI review; a high overall score
    that ended in needs_review still waits for a human or for proven usage.
    """
    if rule.review_decision == ReviewDecision.APPROVE:
        return f"AI review approved ({rule.review_score or 0:.0f}), category has room"
    if rule.usage_count >= settings.promote_min_usage and rule.effectiveness_score >= settings.promote_min_score:
        return f"usage {rule.usage_count}, effectiveness {rule.effectiveness_score:.0f}"
    return None


def conversation_score(analysis: ConversationAnalysis) -> float:
    """Quality signal of one conversation, used for the moving-average update."""
    bonus = SENTIMENT_BONUS.get(analysis.user_sentiment, 0.0) if analysis.user_sentiment else 0.0
    raw = analysis.completion_rate * 0.4 + analysis.user_satisfaction * 0.3 + bonus + 30
    return clamp_score(raw, SCORE_FLOOR, SCORE_CEILING)


def efficiency_points(avg_turns: float) -> float:
    if avg_turns < 10:
        return 80.0
    if avg_turns < 15:
        return 60.0
    if avg_turns < 20:
        return 40.0
    return 20.0


def effectiveness_from_samples(
    completion: Iterable[float],
    satisfaction: Iterable[float],
    turns: Iterable[float],
    baseline_completion: float,
    baseline_satisfaction: float,
) -> float:
    """
    Effectiveness of a rule from the analyses it was active in.

    absolute quality (30% completion, 20% satisfaction) plus lift over the
    baseline (30%, capped at +/-20 points) plus conversation efficiency (20%).
    Empty input scores 0.
    """
    completion = np.asarray(list(completion), dtype=float)
    satisfaction = np.asarray(list(satisfaction), dtype=float)
    turns = np.asarray(list(turns), dtype=float)
    if completion.size == 0:
        return 0.0

    avg_completion = float(np.mean(np.minimum(completion, 100)))
    avg_satisfaction = float(np.mean(np.minimum(satisfaction, 100))) if satisfaction.size else 0.0
    avg_turns = float(np.mean(turns)) if turns.size else 0.0

    absolute = avg_completion * 0.3 + avg_satisfaction * 0.2
    gain = (
        (avg_completion - baseline_completion) * 0.5
        + (avg_satisfaction - baseline_satisfaction) * 0.5
    ) * 0.3
    gain = max(-20.0, min(20.0, gain))
    efficiency = efficiency_points(avg_turns) * 0.2

    return clamp_score(absolute + gain + efficiency, SCORE_FLOOR, SCORE_CEILING)


def _coerce_draft(draft: Union[RuleDraft, Dict[str, Any]]) -> RuleDraft:
    if isinstance(draft, RuleDraft):
        return draft
    try:
        return RuleDraft.model_validate(draft)
    except ValidationError as e:
        raise RuleValidationError(f"Invalid rule draft: {e}") from e


# =============================================================================
# Lifecycle Manager
# =============================================================================

class RuleLifecycleManager:
    """
    The only writer of ``ai_rules`` status, version and score columns.

    Args:
        settings: Review, promotion and evaluation thresholds.
        pool: asyncpg pool.
        health: Store calls run under ``store``; reviewer calls under ``llm``.
        llm: Collaborator used by ``auto_review``.
        loader: Invalidated whenever the active set changes.
    """

    def __init__(
        self,
        settings: Settings,
        pool: Pool,
        health: HealthMonitor,
        llm: LLMClient,
        loader: RuleLoader,
    ):
        self._settings = settings
        self._pool = pool
        self._health = health
        self._llm = llm
        self._loader = loader
        self._write_lock = asyncio.Lock()

    # =========================================================================
    # Queries
    # =========================================================================

    async def get_rule(self, rule_id: int) -> Rule:
        """
        Raises:
            NotFound: If no rule has this id.
        """
        async def _fetch():
            async with acquire(self._pool) as conn:
                return await conn.fetchrow(rule_queries.get_rule_by_id_query(), rule_id)

        row = await self._health.call('store', _fetch)
        if row is None:
            raise NotFound('Rule', rule_id)
        return Rule.from_record(row)

    async def list_rules(
        self,
        status: Optional[RuleStatus] = None,
        category: Optional[RuleCategory] = None,
        source: Optional[RuleSource] = None,
        limit: int = 100,
        offset: int = 0,
    ) -> List[Rule]:
        query, args = rule_queries.build_rule_list_query(
            status=status.value if status else None,
            category=category.value if category else None,
            source=source.value if source else None,
            limit=limit,
            offset=offset,
        )

        async def _fetch():
            async with acquire(self._pool) as conn:
                return await conn.fetch(query, *args)

        rows = await self._health.call('store', _fetch)
        return [Rule.from_record(row) for row in rows]

    async def get_change_log(self, rule_id: int) -> List[RuleChange]:
        async def _fetch():
            async with acquire(self._pool) as conn:
                return await conn.fetch(rule_queries.get_change_log_query(), rule_id)

        rows = await self._health.call('store', _fetch)
        return [RuleChange.from_record(row) for row in rows]

    async def rule_stats(self) -> RuleStats:
        async def _fetch():
            async with acquire(self._pool) as conn:
                return await conn.fetch(rule_queries.get_rule_stats_query())

        rows = await self._health.call('store', _fetch)
        stats = RuleStats()
        active_scores: List[float] = []
        active_weights: List[int] = []
        for row in rows:
            count = int(row['n'])
            stats.total += count
            stats.by_status[row['status']] = stats.by_status.get(row['status'], 0) + count
            stats.by_category[row['category']] = stats.by_category.get(row['category'], 0) + count
            if row['status'] == RuleStatus.ACTIVE.value and row['avg_score'] is not None:
                active_scores.append(float(row['avg_score']))
                active_weights.append(count)
        if active_weights:
            stats.avg_active_effectiveness = round(
                float(np.average(active_scores, weights=active_weights)), 1
            )
        return stats

    # =========================================================================
    # Creation
    # =========================================================================

    async def propose(
        self,
        draft: Union[RuleDraft, Dict[str, Any]],
        bypass_review: bool = False,
        actor: str = SYSTEM_ACTOR,
    ) -> Rule:
        """
        Insert a rule as a new key (version 1) or a revision (max + 1).

        Args:
            draft: Category, key, name and content. Dicts are validated.
            bypass_review: Start ``active``; only allowed for admin_manual and
                system_default sources.
            actor: Recorded as ``changed_by`` in the change log.

        Returns:
            Rule: The persisted rule.

        Raises:
            RuleValidationError: Malformed draft or a bypass the source does
                not allow. Nothing is written.
        """
        draft = _coerce_draft(draft)
        if bypass_review and draft.source not in BYPASS_SOURCES:
            raise RuleValidationError(
                f"bypass_review is not allowed for source '{draft.source.value}'"
            )
        status = RuleStatus.ACTIVE if bypass_review else RuleStatus.PENDING_REVIEW

        async def _insert():
            async with acquire(self._pool) as conn:
                async with conn.transaction():
                    await conn.execute(
                        rule_queries.get_version_lock_query(),
                        draft.category.value,
                        draft.rule_key,
                    )
                    latest = await conn.fetchrow(
                        rule_queries.get_latest_version_query(),
                        draft.category.value,
                        draft.rule_key,
                    )
                    version = latest['version'] + 1 if latest else 1
                    parent_id = latest['id'] if latest else None

                    row = await conn.fetchrow(
                        rule_queries.get_insert_rule_query(),
                        draft.category.value,
                        draft.rule_key,
                        draft.rule_name,
                        draft.content,
                        draft.source.value,
                        status.value,
                        version,
                        parent_id,
                        INITIAL_SCORE,
                    )
                    await conn.execute(
                        rule_queries.get_insert_change_log_query(),
                        row['id'],
                        ChangeAction.CREATED.value,
                        latest['rule_content'] if latest else None,
                        draft.content,
                        draft.reason or f"{draft.source.value} 创建 v{version}",
                        actor,
                    )
                    return row

        async with self._write_lock:
            row = await self._health.call('store', _insert)
            rule = Rule.from_record(row)
            if rule.status == RuleStatus.ACTIVE:
                self._loader.invalidate()

        logger.info(
            "Rule #%d created: %s/%s v%d (%s)",
            rule.id, rule.category.value, rule.rule_key, rule.version, rule.status.value,
        )
        return rule

    async def revise(
        self,
        rule_id: int,
        content: Dict[str, Any],
        reason: str = '',
        actor: str = 'admin',
        rule_name: Optional[str] = None,
        source: RuleSource = RuleSource.ADMIN_MANUAL,
    ) -> Rule:
        """
        Create the next version of an existing rule with new content.

        The old row is left untouched; the new version starts pending review.
        """
        base = await self.get_rule(rule_id)
        draft = _coerce_draft({
            'category': base.category,
            'rule_key': base.rule_key,
            'rule_name': rule_name or base.rule_name,
            'content': content,
            'source': source,
            'reason': reason or f"revision of #{base.id} v{base.version}",
        })
        return await self.propose(draft, actor=actor)

    # =========================================================================
    # Transitions
    # =========================================================================

    async def review(
        self,
        rule_id: int,
        decision: Union[ReviewDecision, str],
        reason: str = '',
        actor: str = 'admin',
    ) -> Rule:
        """
        Approve or reject a pending rule.

        Raises:
            NotFound: Unknown rule id.
            InvalidTransition: The rule is not ``pending_review``.
            RuleValidationError: Decision other than approve / reject.
        """
        try:
            decision = ReviewDecision(decision)
        except ValueError as e:
            raise RuleValidationError(f"Unknown review decision {decision!r}") from e

        if decision == ReviewDecision.APPROVE:
            target = RuleStatus.ACTIVE
        elif decision == ReviewDecision.REJECT:
            target = RuleStatus.REJECTED
        else:
            raise RuleValidationError("review() needs approve or reject")

        return await self._transition(
            rule_id, target, reason, actor, expected=RuleStatus.PENDING_REVIEW
        )

    async def archive(self, rule_id: int, reason: str = '', actor: str = 'admin') -> Rule:
        return await self._transition(rule_id, RuleStatus.ARCHIVED, reason, actor)

    async def reactivate(self, rule_id: int, reason: str = '', actor: str = 'admin') -> Rule:
        return await self._transition(rule_id, RuleStatus.ACTIVE, reason, actor)

    async def _transition(
        self,
        rule_id: int,
        target: RuleStatus,
        reason: str,
        actor: str,
        expected: Optional[RuleStatus] = None,
        action: Optional[ChangeAction] = None,
    ) -> Rule:
        async with self._write_lock:
            rule = await self.get_rule(rule_id)
            edge = (rule.status, target)
            if edge not in ALLOWED_TRANSITIONS or (expected and rule.status != expected):
                raise InvalidTransition(rule_id, rule.status.value, target.value)
            logged_action = action or ALLOWED_TRANSITIONS[edge]

            async def _apply():
                async with acquire(self._pool) as conn:
                    async with conn.transaction():
                        row = await conn.fetchrow(
                            rule_queries.get_transition_status_query(),
                            rule_id,
                            target.value,
                            rule.status.value,
                        )
                        if row is None:
                            raise InvalidTransition(rule_id, rule.status.value, target.value)
                        await conn.execute(
                            rule_queries.get_insert_change_log_query(),
                            rule_id,
                            logged_action.value,
                            {'status': rule.status.value, 'effectiveness_score': rule.effectiveness_score},
                            {'status': target.value},
                            reason,
                            actor,
                        )
                        return row

            row = await self._health.call('store', _apply)
            if RuleStatus.ACTIVE in edge:
                self._loader.invalidate()

        logger.info(
            "Rule #%d %s -> %s by %s (%s)",
            rule_id, rule.status.value, target.value, actor, logged_action.value,
        )
        return Rule.from_record(row)

    # =========================================================================
    # AI Review
    # =========================================================================

    async def auto_review(self, rule_id: int) -> AutoReviewResult:
        """
        Score a pending rule with the LLM reviewer and act on the decision.

        approve moves the rule to active when its category has room under the
        active-rule cap; otherwise it stays pending with its review score and
        ``auto_promote`` picks it up later. reject moves it to rejected.
        needs_review, an unparseable reply or an unconfigured provider leave
        it pending.

        Raises:
            NotFound: Unknown rule id.
            InvalidTransition: The rule is not pending review.
        """
        rule = await self.get_rule(rule_id)
        if rule.status != RuleStatus.PENDING_REVIEW:
            raise InvalidTransition(rule_id, rule.status.value, 'reviewed')

        if not self._llm.configured:
            return AutoReviewResult(
                rule_id=rule_id, decision=ReviewDecision.NEEDS_REVIEW, score=0,
                reason='LLM not configured, manual review required',
            )

        siblings = await self._loader.get_active_rules(rule.category)
        prompt = REVIEW_PROMPT.format(
            category=rule.category.value,
            rule_key=rule.rule_key,
            rule_name=rule.rule_name,
            content=rule.rule_content,
            source=rule.source.value,
            siblings=', '.join(r.rule_name for r in siblings[:10]) or '无',
        )
        try:
            completion = await self._health.call(
                'llm',
                lambda: self._llm.complete(
                    [{'role': 'user', 'content': prompt}], temperature=0.2, max_tokens=1000
                ),
            )
            scores = ReviewScores.model_validate(extract_json_object(completion.text))
        except (MalformedResponse, ValidationError) as e:
            logger.warning("Unusable review for rule #%d: %s", rule_id, e)
            return AutoReviewResult(
                rule_id=rule_id, decision=ReviewDecision.NEEDS_REVIEW, score=0,
                reason='reviewer reply malformed, manual review required',
            )

        decision = decide_review(scores, self._settings)
        await self._set_review_result(rule_id, scores.overall, decision)

        applied = False
        reason = scores.reason or f"AI review {decision.value} ({scores.overall:.0f})"
        if decision == ReviewDecision.APPROVE:
            if await self._category_has_room(rule.category):
                await self.review(rule_id, ReviewDecision.APPROVE, reason, actor=AI_REVIEWER)
                applied = True
            else:
                logger.info(
                    "Rule #%d approved but %s is at its active cap; left pending",
                    rule_id, rule.category.value,
                )
        elif decision == ReviewDecision.REJECT:
            await self.review(rule_id, ReviewDecision.REJECT, reason, actor=AI_REVIEWER)
            applied = True

        return AutoReviewResult(
            rule_id=rule_id,
            decision=decision,
            score=scores.overall,
            scores=scores,
            reason=reason,
            applied=applied,
        )

    async def auto_review_pending(self, limit: int = 10) -> List[AutoReviewResult]:
        """Review pending rules the AI has not scored yet, pausing between calls."""
        async def _fetch():
            async with acquire(self._pool) as conn:
                return await conn.fetch(rule_queries.get_unreviewed_pending_rules_query(), limit)

        rows = await self._health.call('store', _fetch)
        results: List[AutoReviewResult] = []
        for i, row in enumerate(rows):
            if i:
                await asyncio.sleep(self._settings.review_batch_delay_seconds)
            try:
                results.append(await self.auto_review(row['id']))
            except InvalidTransition:
                # reviewed by someone else since the query ran
                continue
        logger.info("Auto review processed %d pending rules", len(results))
        return results

    async def _set_review_result(self, rule_id: int, score: float, decision: ReviewDecision) -> None:
        async def _update():
            async with acquire(self._pool) as conn:
                await conn.execute(
                    rule_queries.get_set_review_result_query(), rule_id, score, decision.value
                )

        await self._health.call('store', _update)

    async def _active_counts(self) -> Dict[str, int]:
        async def _fetch():
            async with acquire(self._pool) as conn:
                return await conn.fetch(rule_queries.get_active_count_by_category_query())

        rows = await self._health.call('store', _fetch)
        return {row['category']: int(row['active_count']) for row in rows}

    async def _category_has_room(self, category: RuleCategory) -> bool:
        counts = await self._active_counts()
        return counts.get(category.value, 0) < self._settings.max_active_rules_per_category

    # =========================================================================
    # Effectiveness
    # =========================================================================

    async def evaluate_effectiveness(self) -> EffectivenessReport:
        """
        Recompute effectiveness for active, used rules from their analyses.

        Only analyses recorded since the rule's last evaluation count. Rules
        with fewer than ``effectiveness_min_samples`` new analyses are
        skipped and keep their score. Scores move only when the change
        reaches ``effectiveness_min_delta``.
        """
        window = self._settings.effectiveness_window

        async def _fetch():
            async with acquire(self._pool) as conn:
                analyses = await conn.fetch(analysis_queries.get_recent_analyses_query(), window)
                rules = await conn.fetch(rule_queries.get_active_rules_query())
                return analyses, rules

        analysis_rows, rule_rows = await self._health.call('store', _fetch)
        analyses = [ConversationAnalysis.from_record(row) for row in analysis_rows]
        rules = [Rule.from_record(row) for row in rule_rows]

        report = EffectivenessReport()
        if not analyses:
            report.skipped = len(rules)
            return report

        without_rules = [a for a in analyses if not a.active_rule_ids]
        baseline = without_rules if len(without_rules) >= 3 else analyses
        report.baseline_samples = len(baseline)
        report.baseline_completion = round(float(np.mean([a.completion_rate for a in baseline])), 2)
        report.baseline_satisfaction = round(float(np.mean([a.user_satisfaction for a in baseline])), 2)

        updates: List[Tuple[int, float]] = []
        evaluated_ids: List[int] = []
        for rule in rules:
            if rule.usage_count <= 0:
                report.skipped += 1
                continue

            attributed = [
                a for a in analyses
                if rule.id in a.active_rule_ids
                and (rule.last_evaluated_at is None or a.analyzed_at is None or a.analyzed_at > rule.last_evaluated_at)
            ]
            if len(attributed) < self._settings.effectiveness_min_samples:
                report.skipped += 1
                continue

            report.evaluated += 1
            new_score = round(effectiveness_from_samples(
                [a.completion_rate for a in attributed],
                [a.user_satisfaction for a in attributed],
                [a.total_turns for a in attributed],
                report.baseline_completion,
                report.baseline_satisfaction,
            ), 1)

            if abs(new_score - rule.effectiveness_score) >= self._settings.effectiveness_min_delta:
                updates.append((rule.id, new_score))
                report.changes.append(RuleScoreChange(
                    rule_id=rule.id,
                    old_score=rule.effectiveness_score,
                    new_score=new_score,
                    samples=len(attributed),
                ))
            else:
                evaluated_ids.append(rule.id)

        if updates or evaluated_ids:
            async def _write():
                async with acquire(self._pool) as conn:
                    async with conn.transaction():
                        for rule_id, score in updates:
                            await conn.execute(rule_queries.get_update_score_query(), rule_id, score)
                        if evaluated_ids:
                            await conn.execute(rule_queries.get_stamp_evaluated_query(), evaluated_ids)

            async with self._write_lock:
                await self._health.call('store', _write)
                if updates:
                    self._loader.invalidate()

        report.updated = len(updates)
        logger.info(
            "Effectiveness evaluation: %d evaluated, %d updated, %d skipped",
            report.evaluated, report.updated, report.skipped,
        )
        return report

    async def apply_conversation_feedback(self, analysis: ConversationAnalysis) -> int:
        """
        Nudge every attributed active rule toward this conversation's score.

        Returns:
            Number of rules considered (inactive ids are ignored by the query).
        """
        rule_ids = list(analysis.active_rule_ids)
        if not rule_ids:
            return 0

        score = conversation_score(analysis)

        async def _update():
            async with acquire(self._pool) as conn:
                await conn.execute(
                    rule_queries.get_ema_score_query(),
                    rule_ids,
                    score,
                    self._settings.effectiveness_ema_alpha,
                )

        async with self._write_lock:
            await self._health.call('store', _update)
        return len(rule_ids)

    # =========================================================================
    # Promotion Sweep
    # =========================================================================

    async def auto_promote(self) -> PromotionReport:
        """
        Promote approved or proven pending rules, demote failing active ones,
        and reject pending rules nobody reviewed in time.

        Promotion respects the per-category active cap; demotions run first so
        they free room.
        """
        settings = self._settings
        report = PromotionReport()

        async def _fetch():
            async with acquire(self._pool) as conn:
                demote = await conn.fetch(
                    rule_queries.get_demotion_candidates_query(),
                    settings.demote_max_score,
                    settings.demote_min_usage,
                    settings.demote_window_hours,
                )
                promote = await conn.fetch(
                    rule_queries.get_promotion_candidates_query(),
                    settings.promote_min_usage,
                    settings.promote_min_score,
                )
                stale = await conn.fetch(
                    rule_queries.get_stale_pending_query(),
                    settings.stale_pending_days,
                )
                return demote, promote, stale

        demote_rows, promote_rows, stale_rows = await self._health.call('store', _fetch)

        for row in demote_rows:
            rule = Rule.from_record(row)
            reason = (
                f"effectiveness {rule.effectiveness_score:.0f} < {settings.demote_max_score:.0f} "
                f"after {rule.usage_count} uses"
            )
            try:
                await self._transition(rule.id, RuleStatus.ARCHIVED, reason, SYSTEM_ACTOR)
            except InvalidTransition:
                continue
            report.archived.append(rule.id)

        counts = await self._active_counts()
        for row in promote_rows:
            rule = Rule.from_record(row)
            reason = promotion_reason(rule, settings)
            if reason is None:
                continue
            if counts.get(rule.category.value, 0) >= settings.max_active_rules_per_category:
                continue
            try:
                await self._transition(
                    rule.id, RuleStatus.ACTIVE, reason, SYSTEM_ACTOR,
                    expected=RuleStatus.PENDING_REVIEW,
                    action=ChangeAction.AUTO_PROMOTED,
                )
            except InvalidTransition:
                continue
            counts[rule.category.value] = counts.get(rule.category.value, 0) + 1
            report.promoted.append(rule.id)

        promoted = set(report.promoted)
        for row in stale_rows:
            if row['id'] in promoted:
                continue
            try:
                await self._transition(
                    row['id'], RuleStatus.REJECTED, 'stale_pending', SYSTEM_ACTOR,
                    expected=RuleStatus.PENDING_REVIEW,
                )
            except InvalidTransition:
                continue
            report.rejected_stale.append(row['id'])

        logger.info(
            "Auto promotion: %d promoted, %d archived, %d stale rejected",
            len(report.promoted), len(report.archived), len(report.rejected_stale),
        )
        return report
