"""
FastAPI dependency injection for the administrative API.

The lifespan handler stores the ``EngineContext`` and the ``Scheduler`` on
``app.state``; these dependencies hand them to route handlers. Tests override
them with ``app.dependency_overrides``.

Usage:
    @router.get("/rules/{rule_id}")
    async def get_rule(rule_id: int, ctx: ContextDep) -> Rule:
        return await ctx.lifecycle.get_rule(rule_id)
"""

from typing import Annotated

from fastapi import Depends, HTTPException, Request

from evolution_engine.core.context import EngineContext
from evolution_engine.jobs.scheduler import Scheduler


def get_context(request: Request) -> EngineContext:
    """
    Return the engine context created at startup.

    Raises:
        HTTPException: 503 if startup could not build the context.
    """
    ctx = getattr(request.app.state, 'engine', None)
    if ctx is None:
        raise HTTPException(status_code=503, detail="Evolution engine not initialised")
    return ctx


def get_scheduler(request: Request) -> Scheduler:
    scheduler = getattr(request.app.state, 'scheduler', None)
    if scheduler is None:
        raise HTTPException(status_code=503, detail="Scheduler not initialised")
    return scheduler


# Usage: async def endpoint(ctx: ContextDep)
ContextDep = Annotated[EngineContext, Depends(get_context)]

# Usage: async def endpoint(scheduler: SchedulerDep)
SchedulerDep = Annotated[Scheduler, Depends(get_scheduler)]
