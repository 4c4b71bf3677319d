"""
Background jobs for the evolution engine.

- scheduler: cadence loops, cancellation token, tick/trigger entry points
- learning_jobs: the per-conversation pipeline and the scheduled jobs
  (batch_analysis, rule_evaluation, auto_review, auto_promotion,
  exploration, daily_learning)

Usage:
    from evolution_engine.jobs import Scheduler, register_learning_jobs

    scheduler = register_learning_jobs(Scheduler(ctx.health), ctx)
    scheduler.start()
"""

from evolution_engine.jobs.learning_jobs import (
    JOB_NAMES,
    analyze_session,
    process_conversation,
    register_learning_jobs,
    run_auto_promotion,
    run_auto_review,
    run_batch_analysis,
    run_daily_learning,
    run_exploration,
    run_rule_evaluation,
)
from evolution_engine.jobs.scheduler import CancellationToken, ScheduledJob, Scheduler

__all__ = [
    'JOB_NAMES',
    'CancellationToken',
    'ScheduledJob',
    'Scheduler',
    'analyze_session',
    'process_conversation',
    'register_learning_jobs',
    'run_auto_promotion',
    'run_auto_review',
    'run_batch_analysis',
    'run_daily_learning',
    'run_exploration',
    'run_rule_evaluation',
]
