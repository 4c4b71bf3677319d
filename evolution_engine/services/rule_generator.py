"""
Rule Generator.

Turns analyses into rule drafts for the lifecycle manager:

- rule proposals the LLM returned with an analysis are proposed as-is;
- high-priority suggestions become drafts under a stable key
  ``sug_{type}_{field}`` so that repeated advice about the same field revises
  one rule instead of piling up near-duplicates;
- ``generate_from_batch`` does the same for suggestions that recur across
  several analyses, regardless of priority.

Every draft enters ``pending_review``. New rules can optionally be sent
through the AI reviewer straight away.
"""

import logging
from collections import OrderedDict
from typing import Dict, Iterable, List, Optional, Sequence

from asyncpg import Pool

from evolution_engine.core.config import Settings
from evolution_engine.core.database import acquire
from evolution_engine.core.errors import (
    CallerError,
    EvolutionError,
    RuleConflictError,
    RuleValidationError,
)
from evolution_engine.models.enums import RuleCategory, RuleSource, SuggestionPriority
from evolution_engine.models.schemas import (
    ConversationAnalysis,
    Rule,
    RuleDraft,
    RuleProposal,
    Suggestion,
)
from evolution_engine.services.health_monitor import HealthMonitor
from evolution_engine.services.rule_lifecycle import RuleLifecycleManager
from evolution_engine.sql import rule_queries


logger = logging.getLogger(__name__)

RULE_NAME_LENGTH: int = 100


def suggestion_rule_key(suggestion: Suggestion) -> str:
    """Stable key for advice about one field (or the general case)."""
    field = (suggestion.field or 'general').strip().replace(' ', '_') or 'general'
    return f"sug_{suggestion.type}_{field}"


def suggestion_category(suggestion: Suggestion) -> Optional[RuleCategory]:
    try:
        return RuleCategory(suggestion.type)
    except ValueError:
        return None


def draft_from_suggestion(
    suggestion: Suggestion,
    session_ids: Sequence[str] = (),
    occurrences: int = 1,
) -> Optional[RuleDraft]:
    """
    Build a draft from a suggestion, or None if it cannot become a rule.

    Suggestions whose type is not a rule category (for example product
    recommendations) and suggestions without recommended wording are skipped.
    """
    category = suggestion_category(suggestion)
    description = (suggestion.recommended or '').strip()
    if category is None or not description:
        return None

    rule_key = suggestion_rule_key(suggestion)
    name = description[:RULE_NAME_LENGTH] or (suggestion.reason or '')[:RULE_NAME_LENGTH] or rule_key
    content = {
        'description': description,
        'reason': suggestion.reason,
        'current': suggestion.current,
        'field': suggestion.field,
        'expectedImpact': suggestion.expected_impact,
        'sourceSessions': list(session_ids)[:10],
        'occurrences': occurrences,
    }
    return RuleDraft(
        category=category,
        rule_key=rule_key,
        rule_name=name,
        content=content,
        source=RuleSource.AI_GENERATED,
        reason=f"{occurrences} suggestion(s) for {suggestion.field or 'general'}",
    )


def draft_from_proposal(proposal: RuleProposal, session_id: str) -> RuleDraft:
    """
    Raises:
        RuleValidationError: The proposal's content has no description.
    """
    content = dict(proposal.content)
    content.setdefault('sourceSession', session_id)
    try:
        return RuleDraft(
            category=proposal.category,
            rule_key=proposal.rule_key,
            rule_name=proposal.rule_name,
            content=content,
            source=RuleSource.AI_GENERATED,
            reason=f"proposed by analysis of {session_id}",
        )
    except ValueError as e:
        raise RuleValidationError(f"Unusable rule proposal {proposal.rule_key}: {e}") from e


class RuleGenerator:
    """
    Proposes rules derived from analyses through the lifecycle manager.

    Args:
        settings: Application settings.
        pool: asyncpg pool, used for the duplicate checks.
        health: Store calls run under ``store``.
        lifecycle: Sole writer of rules.
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

    async def generate_from_analysis(
        self,
        analysis: ConversationAnalysis,
        auto_review: bool = True,
    ) -> List[Rule]:
        """
        Propose rules from one analysis.

        Returns:
            The rules that were created (duplicates are skipped silently).
        """
        created: List[Rule] = []

        for proposal in analysis.rule_proposals:
            try:
                draft = draft_from_proposal(proposal, analysis.session_id)
                created.append(await self._lifecycle.propose(draft))
            except RuleConflictError:
                logger.debug("Proposal %s already exists, skipped", proposal.rule_key)
            except RuleValidationError as e:
                logger.info("Skipping rule proposal: %s", e)

        for suggestion in analysis.suggestions:
            if suggestion.priority != SuggestionPriority.HIGH:
                continue
            draft = draft_from_suggestion(suggestion, [analysis.session_id])
            if draft is None:
                continue
            rule = await self._propose_unless_duplicate(draft)
            if rule is not None:
                created.append(rule)

        if created:
            logger.info("Generated %d rule(s) from analysis of %s", len(created), analysis.session_id)
        if auto_review:
            await self._review(created)
        return created

    async def generate_from_batch(
        self,
        analyses: Iterable[ConversationAnalysis],
        min_occurrences: int = 2,
        auto_review: bool = True,
    ) -> List[Rule]:
        """
        Propose one rule per suggestion key that recurs across analyses.

        Analyses are expected newest first, as ``recent_analyses`` returns
        them, so the first wording seen for a key is used. The draft records
        how often it occurred and in which sessions.
        """
        groups: Dict[str, Dict] = OrderedDict()
        for analysis in analyses:
            for suggestion in analysis.suggestions:
                if suggestion_category(suggestion) is None:
                    continue
                key = suggestion_rule_key(suggestion)
                group = groups.setdefault(key, {'suggestion': suggestion, 'sessions': [], 'count': 0})
                group['count'] += 1
                group['sessions'].append(analysis.session_id)

        created: List[Rule] = []
        for key, group in groups.items():
            if group['count'] < min_occurrences:
                continue
            draft = draft_from_suggestion(group['suggestion'], group['sessions'], group['count'])
            if draft is None:
                continue
            rule = await self._propose_unless_duplicate(draft)
            if rule is not None:
                created.append(rule)

        logger.info("Batch generation: %d recurring suggestion(s), %d rule(s) created", len(groups), len(created))
        if auto_review:
            await self._review(created)
        return created

    async def _propose_unless_duplicate(self, draft: RuleDraft) -> Optional[Rule]:
        """
        Propose ``draft`` unless its key already has a version awaiting review
        or the latest version already says the same thing.
        """
        async def _check():
            async with acquire(self._pool) as conn:
                pending = await conn.fetchval(
                    rule_queries.get_open_pending_for_key_query(),
                    draft.category.value,
                    draft.rule_key,
                )
                latest = await conn.fetchrow(
                    rule_queries.get_latest_version_query(),
                    draft.category.value,
                    draft.rule_key,
                )
                return pending, latest

        pending, latest = await self._health.call('store', _check)
        if pending:
            logger.debug("Key %s already has a pending version", draft.rule_key)
            return None
        if latest is not None and Rule.from_record(latest).description == draft.content['description']:
            logger.debug("Key %s unchanged, no new version", draft.rule_key)
            return None

        try:
            return await self._lifecycle.propose(draft)
        except RuleConflictError:
            return None

    async def _review(self, rules: Sequence[Rule]) -> None:
        for rule in rules:
            try:
                await self._lifecycle.auto_review(rule.id)
            except CallerError as e:
                logger.debug("Skipping auto review of rule #%d: %s", rule.id, e)
            except EvolutionError as e:
                # stays pending; the periodic review job retries it
                logger.warning("Auto review of rule #%d failed: %s", rule.id, e)
