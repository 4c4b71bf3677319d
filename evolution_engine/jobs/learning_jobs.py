"""
Scheduled learning jobs.

Each ``run_*`` function is one scheduler entry point: it takes the engine
context and a cancellation token and returns a summary dict. The same
functions back the administrative trigger endpoint.

Per-conversation flow (``process_conversation``), in this order:

    analyze -> save -> tag -> score feedback -> experiment observation
            -> rule generation -> incremental cluster refresh

Batch analysis stops between conversations when the token is cancelled; a
half-finished batch is safe to resume because only unanalysed sessions are
selected.
"""

import logging
from datetime import date, timedelta
from functools import partial
from typing import Any, Dict, Optional

from evolution_engine.core.context import EngineContext
from evolution_engine.core.errors import CircuitOpenError, EvolutionError, NotFound
from evolution_engine.jobs.scheduler import CancellationToken, Scheduler
from evolution_engine.models.schemas import Conversation


logger = logging.getLogger(__name__)

JOB_NAMES = (
    'batch_analysis',
    'rule_evaluation',
    'auto_review',
    'auto_promotion',
    'exploration',
    'daily_learning',
)


# =============================================================================
# Per-Conversation Pipeline
# =============================================================================

async def process_conversation(ctx: EngineContext, conversation: Conversation) -> Dict[str, Any]:
    """
    Analyse one conversation and feed every downstream component.

    Returns:
        Dict with the analysis id, tag outcome, rules created and whether
        the clusters were refreshed. ``skipped`` is set for conversations
        too short to analyse.
    """
    if len(conversation.messages) < ctx.settings.analysis_min_messages:
        return {'session_id': conversation.session_id, 'skipped': True, 'reason': 'too_few_messages'}

    active = await ctx.loader.get_active_rules()
    candidates = await ctx.exploration.candidate_rules_for_session(conversation.session_id)
    rules = active + [r for r in candidates if r.id not in {a.id for a in active}]

    analysis = await ctx.analyzer.analyze(
        conversation,
        active_rule_ids=[r.id for r in rules],
        active_rule_names=[r.rule_name for r in rules],
    )
    analysis = await ctx.analyzer.save(analysis)
    if analysis.degraded:
        logger.warning("Degraded analysis recorded for %s", conversation.session_id)

    tag = await ctx.tagging.tag(analysis)
    await ctx.lifecycle.apply_conversation_feedback(analysis)
    observations = await ctx.exploration.observe_analysis(analysis)
    created = await ctx.generator.generate_from_analysis(analysis)
    refreshed = await ctx.knowledge.note_analysis()

    return {
        'session_id': conversation.session_id,
        'analysis_id': analysis.id,
        'degraded': analysis.degraded,
        'outcome': tag.outcome.value,
        'observations': observations,
        'rules_created': [r.id for r in created],
        'clusters_refreshed': refreshed,
    }


async def analyze_session(ctx: EngineContext, session_id: str) -> Dict[str, Any]:
    """
    On-demand analysis of one session, subject to the analysis throttle.

    Raises:
        NotFound: The session does not exist.
    """
    reason = ctx.throttle.try_acquire(session_id)
    if reason is not None:
        logger.info("Analysis of %s skipped: %s", session_id, reason)
        return {'session_id': session_id, 'skipped': True, 'reason': reason}

    analyzed = False
    try:
        conversation = await ctx.analyzer.load_conversation(session_id)
        if conversation is None:
            raise NotFound('Session', session_id)
        result = await process_conversation(ctx, conversation)
        analyzed = not result.get('skipped', False)
        return result
    finally:
        ctx.throttle.release(session_id, analyzed)


# =============================================================================
# Scheduled Entry Points
# =============================================================================

async def run_batch_analysis(
    ctx: EngineContext,
    token: Optional[CancellationToken] = None,
    limit: Optional[int] = None,
) -> Dict[str, Any]:
    conversations = await ctx.analyzer.find_unanalyzed(limit)

    analyzed = skipped = failed = rules_created = 0
    for conversation in conversations:
        if token is not None and token.cancelled:
            logger.info("Batch analysis interrupted after %d conversation(s)", analyzed)
            break
        try:
            result = await process_conversation(ctx, conversation)
        except CircuitOpenError:
            # nothing else in this batch can succeed
            raise
        except EvolutionError as e:
            failed += 1
            logger.error("Analysis of %s failed: %s", conversation.session_id, e)
            continue

        if result.get('skipped'):
            skipped += 1
        else:
            analyzed += 1
            rules_created += len(result['rules_created'])

    logger.info(
        "Batch analysis: %d analysed, %d skipped, %d failed of %d; %d rule(s) created",
        analyzed, skipped, failed, len(conversations), rules_created,
    )
    return {
        'found': len(conversations),
        'analyzed': analyzed,
        'skipped': skipped,
        'failed': failed,
        'rules_created': rules_created,
    }


async def run_rule_evaluation(ctx: EngineContext, token: Optional[CancellationToken] = None) -> Dict[str, Any]:
    """Effectiveness evaluation plus rule proposals from recurring suggestions."""
    report = await ctx.lifecycle.evaluate_effectiveness()
    recent = await ctx.analyzer.recent_analyses(ctx.settings.effectiveness_window)
    created = await ctx.generator.generate_from_batch(recent, auto_review=False)
    return {
        'effectiveness': report.model_dump(mode='json'),
        'rules_created': [r.id for r in created],
    }


async def run_auto_review(ctx: EngineContext, token: Optional[CancellationToken] = None) -> Dict[str, Any]:
    results = await ctx.lifecycle.auto_review_pending()
    return {
        'reviewed': len(results),
        'applied': sum(1 for r in results if r.applied),
        'results': [r.model_dump(mode='json', exclude={'scores'}) for r in results],
    }


async def run_auto_promotion(ctx: EngineContext, token: Optional[CancellationToken] = None) -> Dict[str, Any]:
    report = await ctx.lifecycle.auto_promote()
    return report.model_dump(mode='json')


async def run_exploration(ctx: EngineContext, token: Optional[CancellationToken] = None) -> Dict[str, Any]:
    report = await ctx.exploration.run_cycle()
    return report.model_dump(mode='json')


async def run_daily_learning(
    ctx: EngineContext,
    token: Optional[CancellationToken] = None,
    metric_date: Optional[date] = None,
) -> Dict[str, Any]:
    """Aggregate yesterday's metrics and rebuild every cluster type."""
    metric = await ctx.knowledge.aggregate_daily(metric_date or date.today() - timedelta(days=1))
    clusters = await ctx.knowledge.refresh_clusters()
    return {
        'metric': metric.model_dump(mode='json'),
        'clusters': len(clusters),
    }


# =============================================================================
# Registration
# =============================================================================

def register_learning_jobs(scheduler: Scheduler, ctx: EngineContext) -> Scheduler:
    """Register every learning job with its configured cadence."""
    settings = ctx.settings

    def bind(fn):
        return partial(fn, ctx)

    scheduler.register(
        'batch_analysis', bind(run_batch_analysis),
        interval=timedelta(minutes=settings.schedule_batch_analysis_minutes),
        initial_delay=timedelta(minutes=1),
    )
    scheduler.register(
        'rule_evaluation', bind(run_rule_evaluation),
        interval=timedelta(minutes=settings.schedule_rule_evaluation_minutes),
        initial_delay=timedelta(minutes=settings.schedule_rule_evaluation_minutes),
    )
    scheduler.register(
        'auto_review', bind(run_auto_review),
        interval=timedelta(minutes=settings.schedule_auto_review_minutes),
        initial_delay=timedelta(minutes=settings.schedule_auto_review_minutes),
    )
    scheduler.register(
        'auto_promotion', bind(run_auto_promotion),
        interval=timedelta(minutes=settings.schedule_auto_promotion_minutes),
        initial_delay=timedelta(minutes=settings.schedule_auto_promotion_minutes),
    )
    scheduler.register(
        'exploration', bind(run_exploration),
        interval=timedelta(minutes=settings.schedule_exploration_minutes),
        initial_delay=timedelta(minutes=settings.schedule_exploration_minutes),
    )
    scheduler.register('daily_learning', bind(run_daily_learning), daily_at=settings.schedule_daily_at)
    return scheduler
