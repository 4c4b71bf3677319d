"""
Application context.

Every service is constructed once, explicitly, with the shared settings,
asyncpg pool and health monitor, and held here. The ASGI lifespan builds the
context and stores it on ``app.state``; jobs and API handlers receive it
instead of importing module-level singletons.

Usage:
    ctx = await create_context(get_settings())
    try:
        analysis = await ctx.analyzer.analyze(conversation)
    finally:
        await close_context(ctx)
"""

import logging
from dataclasses import dataclass
from typing import Optional

import httpx
from asyncpg import Pool

from evolution_engine.core.config import Settings
from evolution_engine.core.database import close_db, init_db
from evolution_engine.core.errors import StoreError
from evolution_engine.services.analyzer import AnalysisThrottle, ConversationAnalyzer
from evolution_engine.services.exploration import ExplorationRunner
from evolution_engine.services.health_monitor import HealthMonitor
from evolution_engine.services.knowledge_aggregator import KnowledgeAggregator
from evolution_engine.services.llm_client import LLMClient
from evolution_engine.services.rule_generator import RuleGenerator
from evolution_engine.services.rule_lifecycle import RuleLifecycleManager
from evolution_engine.services.rule_loader import RuleLoader
from evolution_engine.services.tagging import TaggingEngine


logger = logging.getLogger(__name__)


@dataclass
class EngineContext:
    settings: Settings
    pool: Pool
    health: HealthMonitor
    llm: LLMClient
    loader: RuleLoader
    analyzer: ConversationAnalyzer
    throttle: AnalysisThrottle
    tagging: TaggingEngine
    lifecycle: RuleLifecycleManager
    generator: RuleGenerator
    knowledge: KnowledgeAggregator
    exploration: ExplorationRunner


def build_context(
    settings: Settings,
    pool: Pool,
    http_client: Optional[httpx.AsyncClient] = None,
) -> EngineContext:
    """Wire every service around an existing pool. No I/O."""
    health = HealthMonitor(settings, pool=pool)
    llm = LLMClient(settings, http_client=http_client)
    loader = RuleLoader(settings, pool, health)
    lifecycle = RuleLifecycleManager(settings, pool, health, llm, loader)

    return EngineContext(
        settings=settings,
        pool=pool,
        health=health,
        llm=llm,
        loader=loader,
        analyzer=ConversationAnalyzer(settings, pool, health, llm),
        throttle=AnalysisThrottle(settings),
        tagging=TaggingEngine(pool, health),
        lifecycle=lifecycle,
        generator=RuleGenerator(settings, pool, health, lifecycle),
        knowledge=KnowledgeAggregator(settings, pool, health),
        exploration=ExplorationRunner(settings, pool, health, lifecycle),
    )


async def create_context(settings: Settings) -> EngineContext:
    """
    Open the pool, wire the services and restore persisted health records.

    Raises:
        StoreError: If the pool cannot be created.
    """
    pool = await init_db(settings)
    ctx = build_context(settings, pool)
    try:
        restored = await ctx.health.load()
        logger.info("Restored %d component health record(s)", restored)
    except StoreError as e:
        logger.warning("Could not restore component health, starting fresh: %s", e)
    return ctx


async def close_context(ctx: EngineContext) -> None:
    await ctx.llm.aclose()
    await close_db(ctx.pool)
