"""
FastAPI router for rule administration.

Endpoints:
- GET  /rules                         list with status/category/source filters
- GET  /rules/stats                   counts per status and category
- GET  /rules/prompt                  preview of the injected prompt block
- GET  /rules/{rule_id}               one rule
- GET  /rules/{rule_id}/changes       change log in causal order
- POST /rules                         propose a rule (optionally bypassing review)
- POST /rules/{rule_id}/review        approve or reject a pending rule
- POST /rules/{rule_id}/auto-review   run the AI reviewer on a pending rule
- POST /rules/{rule_id}/archive       retire an active rule
- POST /rules/{rule_id}/reactivate    bring back an archived or rejected rule
- POST /rules/{rule_id}/revise        create the next version with new content

Handlers are thin: every operation is a lifecycle-manager call, and engine
errors are mapped to HTTP status codes by ``http_error``.
"""

import logging
from typing import List, Optional

from fastapi import APIRouter, Query

from evolution_engine.api.errors import http_error
from evolution_engine.core.dependencies import ContextDep
from evolution_engine.core.errors import EvolutionError
from evolution_engine.models.enums import RuleCategory, RuleSource, RuleStatus
from evolution_engine.models.schemas import (
    AutoReviewResult,
    Rule,
    RuleChange,
    RuleDraft,
    RuleProposeRequest,
    RuleReviewRequest,
    RuleReviseRequest,
    RuleStats,
    RuleStatusRequest,
)
from evolution_engine.services.rule_loader import render_rules


logger = logging.getLogger(__name__)

# Maximum allowed limit for listing rules
MAX_LIST_LIMIT: int = 500

router = APIRouter()


# =============================================================================
# Queries
# =============================================================================

@router.get("", response_model=List[Rule])
async def list_rules(
    ctx: ContextDep,
    status: Optional[RuleStatus] = None,
    category: Optional[RuleCategory] = None,
    source: Optional[RuleSource] = None,
    limit: int = Query(default=100, ge=1, le=MAX_LIST_LIMIT),
    offset: int = Query(default=0, ge=0),
) -> List[Rule]:
    try:
        return await ctx.lifecycle.list_rules(status, category, source, limit, offset)
    except EvolutionError as e:
        raise http_error(e) from e


@router.get("/stats", response_model=RuleStats)
async def rule_stats(ctx: ContextDep) -> RuleStats:
    try:
        return await ctx.lifecycle.rule_stats()
    except EvolutionError as e:
        raise http_error(e) from e


@router.get("/prompt")
async def prompt_preview(ctx: ContextDep):
    """Render the active rule block as the assistant would see it, without counting usage."""
    try:
        rules = await ctx.loader.get_active_rules()
    except EvolutionError as e:
        raise http_error(e) from e
    return {
        'text': render_rules(rules),
        'rule_ids': [r.id for r in rules],
        'cache_generation': ctx.loader.generation,
    }


@router.get("/{rule_id}", response_model=Rule)
async def get_rule(rule_id: int, ctx: ContextDep) -> Rule:
    try:
        return await ctx.lifecycle.get_rule(rule_id)
    except EvolutionError as e:
        raise http_error(e) from e


@router.get("/{rule_id}/changes", response_model=List[RuleChange])
async def get_rule_changes(rule_id: int, ctx: ContextDep) -> List[RuleChange]:
    try:
        await ctx.lifecycle.get_rule(rule_id)
        return await ctx.lifecycle.get_change_log(rule_id)
    except EvolutionError as e:
        raise http_error(e) from e


# =============================================================================
# Mutations
# =============================================================================

@router.post("", response_model=Rule, status_code=201)
async def propose_rule(request: RuleProposeRequest, ctx: ContextDep) -> Rule:
    draft = RuleDraft.model_validate(request.model_dump(exclude={'bypass_review'}))
    try:
        return await ctx.lifecycle.propose(draft, bypass_review=request.bypass_review, actor='admin')
    except EvolutionError as e:
        raise http_error(e) from e


@router.post("/{rule_id}/review", response_model=Rule)
async def review_rule(rule_id: int, request: RuleReviewRequest, ctx: ContextDep) -> Rule:
    try:
        return await ctx.lifecycle.review(rule_id, request.decision, request.reason, request.reviewer)
    except EvolutionError as e:
        raise http_error(e) from e


@router.post("/{rule_id}/auto-review", response_model=AutoReviewResult)
async def auto_review_rule(rule_id: int, ctx: ContextDep) -> AutoReviewResult:
    try:
        return await ctx.lifecycle.auto_review(rule_id)
    except EvolutionError as e:
        raise http_error(e) from e


@router.post("/{rule_id}/archive", response_model=Rule)
async def archive_rule(rule_id: int, request: RuleStatusRequest, ctx: ContextDep) -> Rule:
    try:
        return await ctx.lifecycle.archive(rule_id, request.reason, request.actor)
    except EvolutionError as e:
        raise http_error(e) from e


@router.post("/{rule_id}/reactivate", response_model=Rule)
async def reactivate_rule(rule_id: int, request: RuleStatusRequest, ctx: ContextDep) -> Rule:
    try:
        return await ctx.lifecycle.reactivate(rule_id, request.reason, request.actor)
    except EvolutionError as e:
        raise http_error(e) from e


@router.post("/{rule_id}/revise", response_model=Rule, status_code=201)
async def revise_rule(rule_id: int, request: RuleReviseRequest, ctx: ContextDep) -> Rule:
    try:
        return await ctx.lifecycle.revise(
            rule_id,
            request.content,
            reason=request.reason,
            actor=request.actor,
            rule_name=request.rule_name,
        )
    except EvolutionError as e:
        raise http_error(e) from e
