"""
Tests for the Rule Generator.
"""

from unittest.mock import AsyncMock, Mock

import pytest

from evolution_engine.core.errors import RuleConflictError, RuleValidationError, TransientProviderError
from evolution_engine.models.enums import RuleCategory
from evolution_engine.models.schemas import Rule, RuleProposal, Suggestion
from evolution_engine.services.rule_generator import (
    RuleGenerator,
    draft_from_proposal,
    draft_from_suggestion,
    suggestion_rule_key,
)


@pytest.fixture
def lifecycle():
    manager = Mock()
    manager.propose = AsyncMock()
    manager.auto_review = AsyncMock()
    return manager


@pytest.fixture
def generator(settings, mock_db_pool, health, lifecycle) -> RuleGenerator:
    return RuleGenerator(settings, mock_db_pool, health, lifecycle)


@pytest.fixture
def proposal() -> RuleProposal:
    return RuleProposal.model_validate({
        'category': 'question_template',
        'ruleKey': 'explain_license_purpose',
        'ruleName': '说明执照用途',
        'content': {'description': '询问执照号前说明用途'},
    })


class TestDrafts:

    def test_rule_key_is_stable_per_field(self, sample_suggestion) -> None:
        assert suggestion_rule_key(sample_suggestion) == 'sug_question_template_license_no'
        assert suggestion_rule_key(Suggestion(type='collection_strategy', field='bank name')) == \
            'sug_collection_strategy_bank_name'
        assert suggestion_rule_key(Suggestion(type='conversation_pattern')) == 'sug_conversation_pattern_general'

    def test_draft_from_suggestion(self, sample_suggestion) -> None:
        draft = draft_from_suggestion(sample_suggestion, ['s1', 's2'], occurrences=2)

        assert draft.category == RuleCategory.QUESTION_TEMPLATE
        assert draft.content['description'] == sample_suggestion.recommended
        assert draft.content['sourceSessions'] == ['s1', 's2']
        assert draft.content['occurrences'] == 2

    def test_non_rule_suggestions_are_skipped(self) -> None:
        assert draft_from_suggestion(Suggestion(type='product_recommendation', recommended='推荐加急服务')) is None
        assert draft_from_suggestion(Suggestion(type='question_template', recommended='  ')) is None

    def test_proposal_without_description(self, proposal) -> None:
        empty = proposal.model_copy(update={'content': {'action': '说明用途'}})

        with pytest.raises(RuleValidationError):
            draft_from_proposal(empty, 'session-1')

    def test_proposal_records_source_session(self, proposal) -> None:
        draft = draft_from_proposal(proposal, 'session-1')

        assert draft.rule_key == 'explain_license_purpose'
        assert draft.content['sourceSession'] == 'session-1'


@pytest.mark.asyncio
class TestGenerateFromAnalysis:

    async def test_proposals_and_high_priority_suggestions(
        self, generator, lifecycle, mock_conn, make_analysis, proposal, sample_suggestion, rule_row,
    ) -> None:
        low = Suggestion(type='conversation_pattern', priority='low', recommended='多用短句')
        analysis = make_analysis(rule_proposals=[proposal], suggestions=[sample_suggestion, low])
        mock_conn.fetchval.return_value = False
        lifecycle.propose.side_effect = [
            Rule.from_record(rule_row(id=1, rule_key='explain_license_purpose')),
            Rule.from_record(rule_row(id=2, rule_key='sug_question_template_license_no')),
        ]

        created = await generator.generate_from_analysis(analysis)

        assert [r.id for r in created] == [1, 2]
        drafts = [c.args[0] for c in lifecycle.propose.await_args_list]
        assert [d.rule_key for d in drafts] == ['explain_license_purpose', 'sug_question_template_license_no']
        assert [c.args[0] for c in lifecycle.auto_review.await_args_list] == [1, 2]

    async def test_pending_key_is_not_proposed_again(self, generator, lifecycle, mock_conn, make_analysis, sample_suggestion) -> None:
        mock_conn.fetchval.return_value = True

        created = await generator.generate_from_analysis(make_analysis(suggestions=[sample_suggestion]))

        assert created == []
        lifecycle.propose.assert_not_awaited()

    async def test_unchanged_wording_is_not_a_new_version(
        self, generator, lifecycle, mock_conn, make_analysis, sample_suggestion, rule_row,
    ) -> None:
        mock_conn.fetchval.return_value = False
        mock_conn.fetchrow.return_value = rule_row(
            status='active', rule_content={'description': sample_suggestion.recommended},
        )

        created = await generator.generate_from_analysis(make_analysis(suggestions=[sample_suggestion]))

        assert created == []
        lifecycle.propose.assert_not_awaited()

    async def test_conflicting_proposal_is_skipped(self, generator, lifecycle, make_analysis, proposal) -> None:
        lifecycle.propose.side_effect = RuleConflictError("duplicate key")

        created = await generator.generate_from_analysis(make_analysis(rule_proposals=[proposal]))

        assert created == []
        lifecycle.auto_review.assert_not_awaited()

    async def test_review_failure_keeps_rule(self, generator, lifecycle, make_analysis, proposal, rule_row) -> None:
        lifecycle.propose.return_value = Rule.from_record(rule_row(id=5))
        lifecycle.auto_review.side_effect = TransientProviderError("LLM call timed out after 30s")

        created = await generator.generate_from_analysis(make_analysis(rule_proposals=[proposal]))

        assert [r.id for r in created] == [5]


@pytest.mark.asyncio
class TestGenerateFromBatch:

    async def test_only_recurring_suggestions(self, generator, lifecycle, mock_conn, make_analysis, sample_suggestion, rule_row) -> None:
        other = Suggestion(type='collection_strategy', field='bank_name', recommended='最后再问银行信息')
        analyses = [
            make_analysis(session_id='s1', suggestions=[sample_suggestion, other]),
            make_analysis(session_id='s2', suggestions=[sample_suggestion]),
            make_analysis(session_id='s3', suggestions=[]),
        ]
        mock_conn.fetchval.return_value = False
        lifecycle.propose.return_value = Rule.from_record(rule_row(id=8))

        created = await generator.generate_from_batch(analyses, auto_review=False)

        assert [r.id for r in created] == [8]
        draft = lifecycle.propose.await_args.args[0]
        assert draft.rule_key == 'sug_question_template_license_no'
        assert draft.content['occurrences'] == 2
        assert draft.content['sourceSessions'] == ['s1', 's2']
        lifecycle.auto_review.assert_not_awaited()
