"""
Exploration Runner.

A/B experiments comparing a candidate rule (variant A) with the baseline
(variant B, the active rule set without the candidate).

Live sessions are routed deterministically: the same (experiment, session)
pair always lands on the same side. Each analysed conversation adds one
observation (its completion rate) to the side it was routed to; the running
mean and variance per side are kept with Welford's update.

``evaluate`` leaves an experiment running until both sides reach
``exploration_min_sample``. Past that it declares ``a`` or ``b`` when the
difference of means exceeds ``exploration_margin`` and ``inconclusive``
otherwise. The decision is handed to the lifecycle manager:

- a wins: the candidate is approved (reason ``experiment_won``);
- b wins: the candidate is rejected if still pending, archived if active
  (reason ``experiment_lost``);
- inconclusive: the candidate is left as it is.

When the store fails while the decision is applied, the experiment is marked
``failed`` with its winner kept and the error propagates.
"""

import hashlib
import logging
import time
from collections import Counter
from typing import Any, Dict, List, Optional, Sequence, Union

from asyncpg import Pool

from evolution_engine.core.config import Settings
from evolution_engine.core.database import acquire
from evolution_engine.core.errors import (
    CallerError,
    EvolutionError,
    NotFound,
    RuleConflictError,
    RuleValidationError,
)
from evolution_engine.models.enums import (
    ExperimentStatus,
    ExperimentWinner,
    ReviewDecision,
    RuleCategory,
    RuleSource,
    RuleStatus,
    Variant,
)
from evolution_engine.models.schemas import (
    ConversationAnalysis,
    Experiment,
    ExperimentEvaluation,
    ExplorationReport,
    Rule,
    RuleDraft,
    Suggestion,
    VariantDefinition,
    VariantResult,
)
from evolution_engine.services.health_monitor import HealthMonitor
from evolution_engine.services.rule_lifecycle import RuleLifecycleManager
from evolution_engine.sql import analysis_queries, engine_queries, rule_queries


logger = logging.getLogger(__name__)

EXPLORATION_ACTOR = 'exploration'

# Recent analyses mined for recurring suggestions
HOT_SUGGESTION_WINDOW: int = 100


def decide_winner(
    result_a: VariantResult,
    result_b: VariantResult,
    min_sample: int,
    margin: float,
) -> Optional[ExperimentWinner]:
    """
    Compare the two sides' means.

    Returns None while either side is below ``min_sample``, however large the
    observed effect.
    """
    if result_a.n < min_sample or result_b.n < min_sample:
        return None
    difference = result_a.mean - result_b.mean
    if difference > margin:
        return ExperimentWinner.A
    if difference < -margin:
        return ExperimentWinner.B
    return ExperimentWinner.INCONCLUSIVE


def assign_variant(experiment_id: int, session_id: str) -> Variant:
    """Stable 50/50 routing of a session within one experiment."""
    digest = hashlib.sha256(f"{experiment_id}:{session_id}".encode('utf-8')).digest()
    return Variant.A if digest[0] % 2 == 0 else Variant.B


def _suggestion_key(suggestion: Suggestion) -> str:
    return f"{suggestion.type}::{suggestion.field or ''}"


def hot_suggestions(
    analyses: Sequence[ConversationAnalysis],
    min_count: int,
    limit: int,
) -> List[List[Suggestion]]:
    """Suggestion groups (same type and field) recurring at least ``min_count`` times, most frequent first."""
    groups: Dict[str, List[Suggestion]] = {}
    for analysis in analyses:
        for suggestion in analysis.suggestions:
            groups.setdefault(_suggestion_key(suggestion), []).append(suggestion)

    counts = Counter({key: len(members) for key, members in groups.items()})
    return [groups[key] for key, count in counts.most_common() if count >= min_count][:limit]


class ExplorationRunner:
    """
    Creates, feeds and scores exploration experiments.

    Args:
        settings: Sample floor, margin, cycle limits.
        pool: asyncpg pool.
        health: Store calls run under ``store``.
        lifecycle: Receives the decision once an experiment completes.
    """

    def __init__(
        self,
        settings: Settings,
        pool: Pool,
        health: HealthMonitor,
        lifecycle: RuleLifecycleManager,
    ):
        self._settings = settings
        self._pool = pool
        self._health = health
        self._lifecycle = lifecycle

    # =========================================================================
    # Experiments
    # =========================================================================

    async def start_experiment(
        self,
        hypothesis: str,
        variant_a: Union[VariantDefinition, Dict[str, Any]],
        variant_b: Union[VariantDefinition, Dict[str, Any]],
        name: Optional[str] = None,
        rule_id: Optional[int] = None,
    ) -> Experiment:
        variant_a = VariantDefinition.model_validate(variant_a)
        variant_b = VariantDefinition.model_validate(variant_b)
        name = name or f"experiment_{int(time.time())}"

        async def _insert():
            async with acquire(self._pool) as conn:
                return await conn.fetchrow(
                    engine_queries.get_insert_experiment_query(),
                    name,
                    rule_id,
                    hypothesis,
                    variant_a.model_dump(mode='json', exclude_none=True),
                    variant_b.model_dump(mode='json', exclude_none=True),
                )

        row = await self._health.call('store', _insert)
        experiment = Experiment.from_record(row)
        logger.info("Experiment #%d started: %s", experiment.id, name)
        return experiment

    async def get_experiment(self, experiment_id: int) -> Experiment:
        async def _fetch():
            async with acquire(self._pool) as conn:
                return await conn.fetchrow(engine_queries.get_experiment_query(), experiment_id)

        row = await self._health.call('store', _fetch)
        if row is None:
            raise NotFound('Experiment', experiment_id)
        return Experiment.from_record(row)

    async def list_experiments(self, status: Optional[ExperimentStatus] = None) -> List[Experiment]:
        async def _fetch():
            async with acquire(self._pool) as conn:
                if status:
                    return await conn.fetch(engine_queries.get_experiments_query(True), status.value)
                return await conn.fetch(engine_queries.get_experiments_query())

        rows = await self._health.call('store', _fetch)
        return [Experiment.from_record(row) for row in rows]

    async def record_observation(
        self,
        experiment_id: int,
        variant: Union[Variant, str],
        outcome: float,
    ) -> Experiment:
        """
        Add one observed outcome to a side of a running experiment.

        Observations for an experiment that is no longer running are ignored.

        Raises:
            NotFound: Unknown experiment id.
        """
        variant = Variant(variant)

        async def _record():
            async with acquire(self._pool) as conn:
                async with conn.transaction():
                    row = await conn.fetchrow(engine_queries.get_experiment_query(for_update=True), experiment_id)
                    if row is None:
                        raise NotFound('Experiment', experiment_id)
                    experiment = Experiment.from_record(row)
                    if experiment.status != ExperimentStatus.RUNNING:
                        return experiment, False

                    current = experiment.result_a if variant == Variant.A else experiment.result_b
                    updated = current.add(float(outcome))
                    await conn.execute(
                        engine_queries.get_update_variant_result_query(variant.value),
                        experiment_id,
                        updated.n,
                        updated.model_dump(),
                    )
                    if variant == Variant.A:
                        experiment.result_a, experiment.sample_a = updated, updated.n
                    else:
                        experiment.result_b, experiment.sample_b = updated, updated.n
                    return experiment, True

        experiment, recorded = await self._health.call('store', _record)
        if not recorded:
            logger.debug("Experiment #%d is %s, observation ignored", experiment_id, experiment.status.value)
        return experiment

    async def evaluate(self, experiment_id: int) -> ExperimentEvaluation:
        """
        Decide a running experiment once both sides have enough samples.

        Returns the evaluation with ``status`` still ``running`` below the
        sample floor; terminal experiments are reported as they are.
        """
        experiment = await self.get_experiment(experiment_id)
        evaluation = ExperimentEvaluation(
            experiment_id=experiment.id,
            status=experiment.status,
            winner=experiment.winner,
            sample_a=experiment.result_a.n,
            sample_b=experiment.result_b.n,
            mean_a=round(experiment.result_a.mean, 2),
            mean_b=round(experiment.result_b.mean, 2),
            difference=round(experiment.result_a.mean - experiment.result_b.mean, 2),
        )
        if experiment.status != ExperimentStatus.RUNNING:
            return evaluation

        winner = decide_winner(
            experiment.result_a,
            experiment.result_b,
            self._settings.exploration_min_sample,
            self._settings.exploration_margin,
        )
        if winner is None:
            return evaluation

        finished = await self._finish(experiment.id, ExperimentStatus.COMPLETED, winner)
        if finished is None:
            # another evaluator got there first
            return evaluation
        logger.info(
            "Experiment #%d completed: winner=%s (A %.1f vs B %.1f over %d/%d samples)",
            experiment.id, winner.value, evaluation.mean_a, evaluation.mean_b,
            evaluation.sample_a, evaluation.sample_b,
        )

        if experiment.rule_id is not None:
            try:
                await self._apply_decision(experiment.rule_id, winner)
            except EvolutionError as e:
                logger.error(
                    "Experiment #%d decided %s but rule #%d was not updated: %s",
                    experiment.id, winner.value, experiment.rule_id, e,
                )
                await self._mark_failed(experiment.id)
                raise
        return evaluation.model_copy(update={'status': ExperimentStatus.COMPLETED, 'winner': winner})

    async def abort(self, experiment_id: int) -> Optional[Experiment]:
        return await self._finish(experiment_id, ExperimentStatus.ABORTED, None)

    async def _finish(
        self,
        experiment_id: int,
        status: ExperimentStatus,
        winner: Optional[ExperimentWinner],
    ) -> Optional[Experiment]:
        async def _update():
            async with acquire(self._pool) as conn:
                return await conn.fetchrow(
                    engine_queries.get_finish_experiment_query(),
                    experiment_id,
                    status.value,
                    winner.value if winner else None,
                )

        row = await self._health.call('store', _update)
        return Experiment.from_record(row) if row else None

    async def _mark_failed(self, experiment_id: int) -> None:
        async def _update():
            async with acquire(self._pool) as conn:
                await conn.fetchrow(engine_queries.get_mark_experiment_failed_query(), experiment_id)

        await self._health.call('store', _update)

    async def _apply_decision(self, rule_id: int, winner: ExperimentWinner) -> None:
        try:
            rule = await self._lifecycle.get_rule(rule_id)
            if winner == ExperimentWinner.A and rule.status == RuleStatus.PENDING_REVIEW:
                await self._lifecycle.review(rule_id, ReviewDecision.APPROVE, 'experiment_won', EXPLORATION_ACTOR)
            elif winner == ExperimentWinner.B and rule.status == RuleStatus.PENDING_REVIEW:
                await self._lifecycle.review(rule_id, ReviewDecision.REJECT, 'experiment_lost', EXPLORATION_ACTOR)
            elif winner == ExperimentWinner.B and rule.status == RuleStatus.ACTIVE:
                await self._lifecycle.archive(rule_id, 'experiment_lost', EXPLORATION_ACTOR)
        except CallerError as e:
            logger.info("Experiment decision for rule #%d not applied: %s", rule_id, e)

    # =========================================================================
    # Live Routing
    # =========================================================================

    async def _running_with_rule(self) -> List[Experiment]:
        experiments = await self.list_experiments(ExperimentStatus.RUNNING)
        return [e for e in experiments if e.rule_id is not None]

    async def candidate_rules_for_session(self, session_id: str) -> List[Rule]:
        """Candidate rules of running experiments that route this session to A."""
        rule_ids = [
            e.rule_id for e in await self._running_with_rule()
            if assign_variant(e.id, session_id) == Variant.A
        ]
        if not rule_ids:
            return []

        async def _fetch():
            async with acquire(self._pool) as conn:
                return await conn.fetch(rule_queries.get_rules_by_ids_query(), rule_ids)

        rows = await self._health.call('store', _fetch)
        live = (RuleStatus.PENDING_REVIEW, RuleStatus.ACTIVE)
        return [rule for rule in (Rule.from_record(row) for row in rows) if rule.status in live]

    async def observe_analysis(self, analysis: ConversationAnalysis) -> int:
        """
        Feed one analysed conversation into every running experiment it
        belongs to. Returns the number of observations recorded.
        """
        recorded = 0
        for experiment in await self._running_with_rule():
            if (
                analysis.analyzed_at is not None
                and experiment.started_at is not None
                and analysis.analyzed_at < experiment.started_at
            ):
                continue
            variant = assign_variant(experiment.id, analysis.session_id)
            await self.record_observation(experiment.id, variant, analysis.completion_rate)
            recorded += 1
        return recorded

    # =========================================================================
    # Exploration Cycle
    # =========================================================================

    async def run_cycle(self) -> ExplorationReport:
        """
        Mine recurring suggestions into new experiments, evaluate the running
        ones and abort those past ``exploration_timeout_days``.
        """
        settings = self._settings
        report = ExplorationReport()

        async def _load():
            async with acquire(self._pool) as conn:
                analyses = await conn.fetch(analysis_queries.get_recent_analyses_query(), HOT_SUGGESTION_WINDOW)
                expired = await conn.fetch(engine_queries.get_expired_experiments_query(), settings.exploration_timeout_days)
                return analyses, expired

        analysis_rows, expired_rows = await self._health.call('store', _load)

        for row in expired_rows:
            if await self.abort(row['id']) is not None:
                report.aborted.append(row['id'])
                logger.info("Experiment #%d aborted after %d days", row['id'], settings.exploration_timeout_days)

        running = await self.list_experiments(ExperimentStatus.RUNNING)
        for experiment in running:
            report.evaluated.append(await self.evaluate(experiment.id))

        analyses = [ConversationAnalysis.from_record(row) for row in analysis_rows]
        if len(analyses) < settings.exploration_min_analyses:
            report.skipped_reason = f"only {len(analyses)} analyses, need {settings.exploration_min_analyses}"
            return report

        decided = {ev.experiment_id for ev in report.evaluated if ev.status != ExperimentStatus.RUNNING}
        still_running = {
            (e.variant_a.type, e.variant_a.field or None)
            for e in running
            if e.id not in decided
        }
        for group in hot_suggestions(analyses, settings.exploration_hot_suggestion_count, settings.exploration_max_new):
            head = group[0]
            if (head.type, head.field or None) in still_running:
                continue
            experiment = await self._explore(group)
            if experiment is not None:
                report.created.append(experiment.id)

        logger.info(
            "Exploration cycle: %d created, %d evaluated, %d aborted",
            len(report.created), len(report.evaluated), len(report.aborted),
        )
        return report

    async def _explore(self, group: Sequence[Suggestion]) -> Optional[Experiment]:
        head = group[0]
        field = (head.field or '').strip()
        examples = list(dict.fromkeys(s.recommended.strip() for s in group if s.recommended.strip()))[:3]
        description = '；'.join(examples) or head.reason.strip()
        if not description:
            return None

        try:
            category = RuleCategory(head.type)
        except ValueError:
            category = RuleCategory.CONVERSATION_PATTERN

        slug = field.replace(' ', '_') or 'general'
        draft = RuleDraft(
            category=category,
            rule_key=f"explore_{head.type}_{slug}_{int(time.time())}",
            rule_name=f"[探索] {field or head.type} 优化",
            content={
                'description': description,
                'field': field or None,
                'occurrences': len(group),
                'examples': examples,
            },
            source=RuleSource.AI_GENERATED,
            reason=f"exploration: {len(group)} recurring suggestions",
        )
        try:
            rule = await self._lifecycle.propose(draft, actor=EXPLORATION_ACTOR)
        except (RuleConflictError, RuleValidationError) as e:
            logger.info("Exploratory rule for %s not created: %s", head.type, e)
            return None

        return await self.start_experiment(
            hypothesis=f"应用「{draft.rule_name}」可以提升信息收集完成率",
            variant_a={'action': 'apply_rule', 'type': head.type, 'field': field or None},
            variant_b={'action': 'baseline'},
            name=f"explore_{head.type}_{slug}",
            rule_id=rule.id,
        )
