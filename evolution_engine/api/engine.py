"""
FastAPI router for engine operations and observability.

Endpoints:
- GET  /engine/health                       overall and per-component health
- POST /engine/health/{component}/reset     close a circuit by hand
- GET  /engine/provider                     probe the LLM provider
- GET  /engine/metrics                      daily learning metrics
- GET  /engine/clusters                     knowledge clusters
- GET  /engine/experiments                  exploration experiments
- POST /engine/experiments/{id}/evaluate    evaluate one experiment now
- GET  /engine/jobs                         scheduled jobs and their last run
- POST /engine/jobs/{name}/trigger          run a job now; errors propagate
- POST /engine/sessions/{session_id}/analyze  throttled on-demand analysis
"""

import logging
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Query

from evolution_engine.api.errors import http_error
from evolution_engine.core.dependencies import ContextDep, SchedulerDep
from evolution_engine.core.errors import EvolutionError
from evolution_engine.jobs.learning_jobs import analyze_session
from evolution_engine.models.enums import ClusterType, ExperimentStatus
from evolution_engine.models.schemas import (
    ComponentHealth,
    Experiment,
    ExperimentEvaluation,
    HealthSummary,
    KnowledgeCluster,
    LearningMetric,
    ProviderCheck,
)


logger = logging.getLogger(__name__)

router = APIRouter()


# =============================================================================
# Health
# =============================================================================

@router.get("/health", response_model=HealthSummary)
async def engine_health(ctx: ContextDep) -> HealthSummary:
    return ctx.health.summary()


@router.post("/health/{component}/reset", response_model=ComponentHealth)
async def reset_component(component: str, ctx: ContextDep) -> ComponentHealth:
    return await ctx.health.reset(component)


@router.get("/provider", response_model=ProviderCheck)
async def check_provider(ctx: ContextDep) -> ProviderCheck:
    return await ctx.llm.check_provider()


# =============================================================================
# Knowledge
# =============================================================================

@router.get("/metrics", response_model=List[LearningMetric])
async def learning_metrics(
    ctx: ContextDep,
    days: int = Query(default=30, ge=1, le=365),
) -> List[LearningMetric]:
    try:
        return await ctx.knowledge.list_metrics(days)
    except EvolutionError as e:
        raise http_error(e) from e


@router.get("/clusters", response_model=List[KnowledgeCluster])
async def knowledge_clusters(
    ctx: ContextDep,
    cluster_type: Optional[ClusterType] = None,
) -> List[KnowledgeCluster]:
    try:
        return await ctx.knowledge.list_clusters(cluster_type)
    except EvolutionError as e:
        raise http_error(e) from e


# =============================================================================
# Exploration
# =============================================================================

@router.get("/experiments", response_model=List[Experiment])
async def list_experiments(
    ctx: ContextDep,
    status: Optional[ExperimentStatus] = None,
) -> List[Experiment]:
    try:
        return await ctx.exploration.list_experiments(status)
    except EvolutionError as e:
        raise http_error(e) from e


@router.post("/experiments/{experiment_id}/evaluate", response_model=ExperimentEvaluation)
async def evaluate_experiment(experiment_id: int, ctx: ContextDep) -> ExperimentEvaluation:
    try:
        return await ctx.exploration.evaluate(experiment_id)
    except EvolutionError as e:
        raise http_error(e) from e


# =============================================================================
# Jobs
# =============================================================================

@router.get("/jobs")
async def list_jobs(scheduler: SchedulerDep) -> List[Dict[str, Any]]:
    return [
        {
            'name': job.name,
            'interval_minutes': job.interval.total_seconds() / 60 if job.interval else None,
            'daily_at': job.daily_at.isoformat() if job.daily_at else None,
            'run_count': job.run_count,
            'last_started_at': job.last_started_at,
            'last_finished_at': job.last_finished_at,
            'last_error': job.last_error,
        }
        for job in scheduler.list_jobs()
    ]


@router.post("/jobs/{name}/trigger")
async def trigger_job(name: str, scheduler: SchedulerDep) -> Dict[str, Any]:
    try:
        result = await scheduler.trigger(name)
    except EvolutionError as e:
        raise http_error(e) from e
    return {'job': name, 'result': result}


@router.post("/sessions/{session_id}/analyze")
async def analyze_session_now(session_id: str, ctx: ContextDep) -> Dict[str, Any]:
    try:
        return await analyze_session(ctx, session_id)
    except EvolutionError as e:
        raise http_error(e) from e
