"""
Dynamic Rule Loader.

Keeps an in-memory copy of the active rule set for prompt injection.

Cache semantics:
- The cache is refreshed lazily on the first read after ``invalidate()`` or
  after the TTL expires, whichever comes first.
- The reader that finds the cache stale performs the refresh and sees the new
  set. Readers arriving while that refresh is in flight get the previous set
  and do not wait, so a read can lag by at most one cache generation.
- ``invalidate()`` is synchronous and bumps a generation counter; a refresh
  that started before an invalidation does not count as fresh.
"""

import asyncio
import logging
import time
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence

from asyncpg import Pool

from evolution_engine.core.config import Settings
from evolution_engine.core.database import acquire
from evolution_engine.core.errors import EvolutionError
from evolution_engine.models.enums import RuleCategory
from evolution_engine.models.schemas import Rule
from evolution_engine.services.health_monitor import HealthMonitor
from evolution_engine.sql import rule_queries


logger = logging.getLogger(__name__)

PROMPT_HEADER = '## 🧠 AI自学习规则库（基于历史对话优化）'

CATEGORY_LABELS: Dict[RuleCategory, str] = {
    RuleCategory.COLLECTION_STRATEGY: '收集策略优化',
    RuleCategory.QUESTION_TEMPLATE: '提问话术优化',
    RuleCategory.INDUSTRY_KNOWLEDGE: '行业知识补充',
    RuleCategory.VIOLATION_STRATEGY: '违规应对策略',
    RuleCategory.CONVERSATION_PATTERN: '对话模式优化',
    RuleCategory.DIAGNOSIS_RULE: '诊断规则',
}


@dataclass
class PromptBlock:
    text: str
    rule_ids: List[int] = field(default_factory=list)


def render_rules(rules: Sequence[Rule]) -> str:
    """Render rules as the prompt section, grouped by category in enum order."""
    if not rules:
        return ''

    lines = [PROMPT_HEADER]
    for category in RuleCategory:
        members = [r for r in rules if r.category == category]
        if not members:
            continue
        lines.append(f'\n### {CATEGORY_LABELS[category]}')
        for rule in members:
            lines.append(f'- **{rule.rule_name}**: {rule.description}')
    return '\n'.join(lines)


class RuleLoader:
    """
    Cached, invalidate-on-write view of active rules.

    Args:
        settings: Supplies the cache TTL.
        pool: asyncpg pool.
        health: Store reads run under the ``store`` component.
        clock: Monotonic seconds; tests pass a fake.
    """

    def __init__(
        self,
        settings: Settings,
        pool: Pool,
        health: HealthMonitor,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = settings.rule_cache_ttl_seconds
        self._pool = pool
        self._health = health
        self._clock = clock

        self._rules: Optional[List[Rule]] = None
        self._loaded_at = 0.0
        self._generation = 0
        self._loaded_generation = -1
        self._refresh_task: Optional[asyncio.Task] = None

    @property
    def generation(self) -> int:
        return self._generation

    def invalidate(self) -> None:
        """Mark the cache stale; the next read reloads."""
        self._generation += 1

    def _is_fresh(self) -> bool:
        return (
            self._rules is not None
            and self._loaded_generation == self._generation
            and self._clock() - self._loaded_at < self._ttl
        )

    async def get_active_rules(self, category: Optional[RuleCategory] = None) -> List[Rule]:
        """
        Active rules, optionally for one category.

        Raises:
            StoreError / CircuitOpenError: Only when nothing has ever been
                loaded; with a previous set available the stale set is served.
        """
        if not self._is_fresh():
            await self._refresh_or_serve_stale()

        rules = self._rules or []
        if category is None:
            return list(rules)
        return [r for r in rules if r.category == category]

    async def _refresh_or_serve_stale(self) -> None:
        task = self._refresh_task
        if task is not None:
            if self._rules is None:
                await asyncio.shield(task)
            return

        task = asyncio.ensure_future(self._reload())
        self._refresh_task = task
        task.add_done_callback(self._clear_refresh)
        try:
            await asyncio.shield(task)
        except EvolutionError as e:
            if self._rules is None:
                raise
            logger.warning("Rule cache refresh failed, serving previous set: %s", e)

    def _clear_refresh(self, task: asyncio.Task) -> None:
        if self._refresh_task is task:
            self._refresh_task = None

    async def _reload(self) -> None:
        generation = self._generation

        async def _fetch():
            async with acquire(self._pool) as conn:
                return await conn.fetch(rule_queries.get_active_rules_query())

        rows = await self._health.call('store', _fetch)
        self._rules = [Rule.from_record(row) for row in rows]
        self._loaded_generation = generation
        self._loaded_at = self._clock()
        logger.debug("Rule cache loaded %d active rules (generation %d)", len(self._rules), generation)

    def cached_rule_ids(self) -> List[int]:
        """Ids in the current cache without touching the store."""
        return [r.id for r in self._rules or []]

    async def build_prompt_block(self, extra_rules: Sequence[Rule] = ()) -> PromptBlock:
        """
        Render active rules (plus any experiment candidates) for a prompt and
        count one use for each injected rule.
        """
        rules = await self.get_active_rules()
        seen = {r.id for r in rules}
        rules.extend(r for r in extra_rules if r.id not in seen)

        if not rules:
            return PromptBlock(text='')

        rule_ids = [r.id for r in rules]

        async def _count():
            async with acquire(self._pool) as conn:
                await conn.execute(rule_queries.get_increment_usage_query(), rule_ids)

        await self._health.call('store', _count)
        return PromptBlock(text=render_rules(rules), rule_ids=rule_ids)
