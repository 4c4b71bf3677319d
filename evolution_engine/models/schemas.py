"""
Pydantic models for the evolution engine.

Covers the persisted entities (rules, analyses, tags, clusters, learning
metrics, experiments, component health, change log), the typed shapes of the
JSON documents stored alongside them (suggestions, sentiment samples, cluster
insights, experiment variants) and the validated payload returned by the LLM
collaborator.

Only ``rule_content`` is kept as an open-ended document; every other JSON
column has a concrete model.

All models use Pydantic v2 syntax.
"""

from datetime import date as DateType
from datetime import datetime
from typing import Any, Dict, List, Literal, Mapping, Optional, Union

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator

from evolution_engine.core.database import decode_json
from evolution_engine.models.enums import (
    ChangeAction,
    ClusterType,
    Difficulty,
    ExperimentStatus,
    ExperimentWinner,
    HealthStatus,
    Outcome,
    OverallHealth,
    ProviderStatus,
    ReviewDecision,
    RuleCategory,
    RuleSource,
    RuleStatus,
    Sentiment,
    SuggestionPriority,
    UserType,
)


# =============================================================================
# Conversation Input
# =============================================================================


class Message(BaseModel):
    """One chat message in transcript order."""
    role: str = Field(..., description="user | assistant | system")
    content: str = Field(default='', description="Message text")


class Conversation(BaseModel):
    """
    A finished conversation as read from the chat application's tables.
    """
    session_id: str
    user_id: Optional[str] = None
    messages: List[Message] = Field(default_factory=list)
    collected_data: Dict[str, Any] = Field(
        default_factory=dict,
        description="Final structured-field snapshot extracted during the chat"
    )
    created_at: Optional[datetime] = None

    @property
    def user_messages(self) -> List[Message]:
        return [m for m in self.messages if m.role == 'user']

    @property
    def assistant_messages(self) -> List[Message]:
        return [m for m in self.messages if m.role == 'assistant']


# =============================================================================
# Structured Documents
# =============================================================================


class SentimentSample(BaseModel):
    """Sentiment at one user turn."""
    model_config = ConfigDict(extra='ignore')

    turn: int = Field(..., ge=0)
    sentiment: Sentiment
    reason: str = ''


class Suggestion(BaseModel):
    """
    An improvement suggestion attached to an analysis.

    ``type`` names the rule category the suggestion would turn into; the LLM
    uses camelCase keys, accepted through aliases.
    """
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    type: str = Field(default='conversation_pattern')
    priority: SuggestionPriority = SuggestionPriority.MEDIUM
    field: Optional[str] = None
    current: str = ''
    recommended: str = ''
    reason: str = ''
    expected_impact: str = Field(default='', alias='expectedImpact')

    @field_validator('priority', mode='before')
    @classmethod
    def _lower_priority(cls, value: Any) -> Any:
        if isinstance(value, str):
            return value.strip().lower() or SuggestionPriority.MEDIUM
        return value


class RuleProposal(BaseModel):
    """A rule proposed directly by the LLM during analysis."""
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    category: RuleCategory
    rule_key: str = Field(..., alias='ruleKey', min_length=1, max_length=100)
    rule_name: str = Field(..., alias='ruleName', min_length=1, max_length=200)
    content: Dict[str, Any] = Field(default_factory=dict)


class CollectionEfficiency(BaseModel):
    """Field-collection efficiency figures; the LLM may add its own keys."""
    model_config = ConfigDict(extra='allow')

    turns_per_field: Optional[float] = None
    refusal_rate: float = 0.0
    skip_rate: float = 0.0


# =============================================================================
# Analysis
# =============================================================================


class BasicMetrics(BaseModel):
    """
    Deterministic statistics computed from the transcript alone.

    These are always available, and are the whole analysis when the LLM
    collaborator returns something unusable.
    """
    total_turns: int = 0
    collection_turns: int = 0
    fields_collected: int = 0
    fields_skipped: int = 0
    fields_refused: int = 0
    completion_rate: float = 0.0
    professionalism_score: float = 50.0
    appeal_success_rate: float = 5.0
    user_satisfaction: float = 50.0
    response_quality: float = 0.0
    estimated_sentiment: Sentiment = Sentiment.NEUTRAL
    positive_signals: int = 0
    negative_signals: int = 0
    collection_done: bool = False
    efficiency: CollectionEfficiency = Field(default_factory=CollectionEfficiency)


class LLMAnalysisPayload(BaseModel):
    """
    Schema the LLM's analysis JSON must satisfy.

    Any field may be missing; a payload that does not parse at all is a
    ``MalformedResponse``.
    """
    model_config = ConfigDict(populate_by_name=True, extra='ignore')

    user_sentiment: Optional[Sentiment] = Field(default=None, alias='userSentiment')
    professionalism_score: Optional[float] = Field(
        default=None, ge=0, le=100, alias='professionalismScore'
    )
    appeal_success_rate: Optional[float] = Field(
        default=None, ge=0, le=100, alias='appealSuccessRate'
    )
    user_satisfaction: Optional[float] = Field(
        default=None, ge=0, le=100, alias='userSatisfaction'
    )
    sentiment_trajectory: List[SentimentSample] = Field(
        default_factory=list, alias='sentimentTrajectory'
    )
    drop_off_point: Optional[str] = Field(default=None, alias='dropOffPoint')
    efficiency: Dict[str, Any] = Field(default_factory=dict)
    suggestions: List[Suggestion] = Field(default_factory=list)
    rule_proposals: List[RuleProposal] = Field(
        default_factory=list, alias='ruleProposals'
    )


class ConversationAnalysis(BaseModel):
    """
    The scored summary of one finished conversation.

    A degraded analysis carries only the deterministic statistics:
    professionalism and sentiment are ``None`` and there are no suggestions.
    """
    id: Optional[int] = None
    session_id: str
    user_id: Optional[str] = None
    industry: str = ''
    problem_type: str = ''
    total_turns: int = Field(default=0, ge=0)
    collection_turns: int = Field(default=0, ge=0)
    fields_collected: int = Field(default=0, ge=0)
    fields_skipped: int = Field(default=0, ge=0)
    fields_refused: int = Field(default=0, ge=0)
    completion_rate: float = Field(default=0.0, ge=0, le=100)
    professionalism_score: Optional[float] = Field(default=None, ge=0, le=100)
    appeal_success_rate: float = Field(default=0.0, ge=0, le=100)
    user_satisfaction: float = Field(default=0.0, ge=0, le=100)
    response_quality: float = Field(default=0.0, ge=0, le=100)
    user_sentiment: Optional[Sentiment] = None
    drop_off_point: Optional[str] = None
    collection_efficiency: CollectionEfficiency = Field(default_factory=CollectionEfficiency)
    sentiment_trajectory: List[SentimentSample] = Field(default_factory=list)
    suggestions: List[Suggestion] = Field(default_factory=list)
    rule_proposals: List[RuleProposal] = Field(default_factory=list)
    raw_analysis: Dict[str, Any] = Field(default_factory=dict)
    active_rule_ids: List[int] = Field(default_factory=list)
    degraded: bool = False
    analyzed_at: Optional[datetime] = None

    @property
    def terminal_sentiment(self) -> Optional[Sentiment]:
        """Last sample of the trajectory, else the overall label."""
        if self.sentiment_trajectory:
            return self.sentiment_trajectory[-1].sentiment
        return self.user_sentiment

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> 'ConversationAnalysis':
        raw = decode_json(row.get('raw_analysis'), {}) or {}
        return cls(
            id=row.get('id'),
            session_id=row['session_id'],
            user_id=row.get('user_id'),
            industry=row.get('industry') or '',
            problem_type=row.get('problem_type') or '',
            total_turns=row.get('total_turns') or 0,
            collection_turns=row.get('collection_turns') or 0,
            fields_collected=row.get('fields_collected') or 0,
            fields_skipped=row.get('fields_skipped') or 0,
            fields_refused=row.get('fields_refused') or 0,
            completion_rate=float(row.get('completion_rate') or 0),
            professionalism_score=(
                float(row['professionalism_score'])
                if row.get('professionalism_score') is not None else None
            ),
            appeal_success_rate=float(row.get('appeal_success_rate') or 0),
            user_satisfaction=float(row.get('user_satisfaction') or 0),
            response_quality=float(row.get('response_quality') or 0),
            user_sentiment=row.get('user_sentiment') or None,
            drop_off_point=row.get('drop_off_point') or None,
            collection_efficiency=decode_json(row.get('collection_efficiency'), {}) or {},
            sentiment_trajectory=decode_json(row.get('sentiment_trajectory'), []) or [],
            suggestions=decode_json(row.get('suggestions'), []) or [],
            rule_proposals=raw.get('rule_proposals', []),
            raw_analysis=raw,
            active_rule_ids=decode_json(row.get('active_rule_ids'), []) or [],
            degraded=bool(raw.get('degraded', False)),
            analyzed_at=row.get('analyzed_at'),
        )


# =============================================================================
# Tags
# =============================================================================


class PatternFlags(BaseModel):
    resistant: bool = False
    cooperative: bool = False
    efficient: bool = False
    dropped: bool = False


class ConversationTag(BaseModel):
    """Classification of one conversation; one row per session."""
    session_id: str
    analysis_id: Optional[int] = None
    difficulty: Difficulty
    user_type: UserType
    quality_score: float = Field(..., ge=0, le=100)
    outcome: Outcome
    tags: List[str] = Field(default_factory=list)
    industry_cluster: Optional[str] = None
    violation_cluster: Optional[str] = None
    pattern_flags: PatternFlags = Field(default_factory=PatternFlags)


# =============================================================================
# Rules
# =============================================================================


class RuleDraft(BaseModel):
    """
    A rule as proposed, before the lifecycle manager assigns a version.

    ``content`` is free-form guidance but must at least carry a non-empty
    ``description``; that is the text rendered into the prompt.
    """
    category: RuleCategory
    rule_key: str = Field(..., min_length=1, max_length=100)
    rule_name: str = Field(..., min_length=1, max_length=200)
    content: Dict[str, Any]
    source: RuleSource = RuleSource.AI_GENERATED
    reason: str = ''

    @field_validator('rule_key')
    @classmethod
    def _key_has_no_whitespace(cls, value: str) -> str:
        value = value.strip()
        if not value or any(ch.isspace() for ch in value):
            raise ValueError('rule_key must be a single non-empty token')
        return value

    @field_validator('content')
    @classmethod
    def _content_has_description(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        description = value.get('description')
        if not isinstance(description, str) or not description.strip():
            raise ValueError('content.description must be a non-empty string')
        return value


class Rule(BaseModel):
    """A persisted, versioned rule."""
    id: int
    category: RuleCategory
    rule_key: str
    rule_name: str
    rule_content: Dict[str, Any] = Field(default_factory=dict)
    source: RuleSource
    status: RuleStatus
    effectiveness_score: float = Field(default=50.0, ge=0, le=100)
    usage_count: int = Field(default=0, ge=0)
    version: int = Field(default=1, ge=1)
    parent_id: Optional[int] = None
    review_score: Optional[float] = None
    review_decision: Optional[ReviewDecision] = None
    activated_at: Optional[datetime] = None
    last_evaluated_at: Optional[datetime] = None
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None

    @property
    def description(self) -> str:
        return str(self.rule_content.get('description', ''))

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> 'Rule':
        data = dict(row)
        data['rule_content'] = decode_json(data.get('rule_content'), {}) or {}
        if data.get('effectiveness_score') is not None:
            data['effectiveness_score'] = float(data['effectiveness_score'])
        if data.get('review_score') is not None:
            data['review_score'] = float(data['review_score'])
        return cls.model_validate(data)


class RuleChange(BaseModel):
    """One append-only entry of the rule change log."""
    id: Optional[int] = None
    rule_id: int
    action: ChangeAction
    old_content: Optional[Dict[str, Any]] = None
    new_content: Optional[Dict[str, Any]] = None
    reason: str = ''
    changed_by: str = 'system'
    created_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> 'RuleChange':
        data = dict(row)
        data['old_content'] = decode_json(data.get('old_content'))
        data['new_content'] = decode_json(data.get('new_content'))
        data['reason'] = data.get('reason') or ''
        return cls.model_validate(data)


class ReviewScores(BaseModel):
    """
    Rubric returned by the AI reviewer, each 0-100.

    Accepts both the reviewer's ``legalScore``-style keys and the plain names.
    """
    model_config = ConfigDict(extra='ignore', populate_by_name=True)

    legal: float = Field(
        default=0, ge=0, le=100, validation_alias=AliasChoices('legalScore', 'legal')
    )
    helpfulness: float = Field(
        default=0, ge=0, le=100, validation_alias=AliasChoices('helpfulnessScore', 'helpfulness')
    )
    professional: float = Field(
        default=0, ge=0, le=100, validation_alias=AliasChoices('professionalScore', 'professional')
    )
    generality: float = Field(
        default=0, ge=0, le=100, validation_alias=AliasChoices('generalityScore', 'generality')
    )
    overall: float = Field(
        default=0, ge=0, le=100, validation_alias=AliasChoices('overallScore', 'overall')
    )
    decision: Optional[ReviewDecision] = None
    reason: str = ''

    @field_validator('decision', mode='before')
    @classmethod
    def _normalise_decision(cls, value: Any) -> Any:
        if isinstance(value, str):
            value = value.strip().lower()
            if value in ('need_review', 'pending', ''):
                return ReviewDecision.NEEDS_REVIEW
        return value


class AutoReviewResult(BaseModel):
    rule_id: int
    decision: ReviewDecision
    score: float = Field(..., ge=0, le=100)
    scores: Optional[ReviewScores] = None
    reason: str = ''
    applied: bool = Field(
        default=False,
        description="True when the decision changed the rule's status"
    )


class RuleScoreChange(BaseModel):
    rule_id: int
    old_score: float
    new_score: float
    samples: int


class EffectivenessReport(BaseModel):
    evaluated: int = 0
    updated: int = 0
    skipped: int = 0
    baseline_completion: float = 0.0
    baseline_satisfaction: float = 0.0
    baseline_samples: int = 0
    changes: List[RuleScoreChange] = Field(default_factory=list)


class PromotionReport(BaseModel):
    promoted: List[int] = Field(default_factory=list)
    archived: List[int] = Field(default_factory=list)
    rejected_stale: List[int] = Field(default_factory=list)


class RuleStats(BaseModel):
    total: int = 0
    by_status: Dict[str, int] = Field(default_factory=dict)
    by_category: Dict[str, int] = Field(default_factory=dict)
    avg_active_effectiveness: float = 0.0


# =============================================================================
# Knowledge
# =============================================================================


class GroupInsight(BaseModel):
    """Averages over a group of analyses (industry, violation, success factor)."""
    kind: Literal['group'] = 'group'
    avg_completion: float = 0.0
    completion_std: float = 0.0
    avg_turns: float = 0.0
    positive_rate: float = 0.0
    avg_professionalism: Optional[float] = None
    avg_appeal_success: float = 0.0
    avg_satisfaction: float = 0.0
    top_drop_offs: List[str] = Field(default_factory=list)
    top_suggestion_types: List[str] = Field(default_factory=list)


class QuestionInsight(BaseModel):
    """How a single collected field behaves as a question."""
    kind: Literal['question'] = 'question'
    field: str
    drop_off_count: int = 0
    suggestion_count: int = 0
    drop_off_rate: float = 0.0
    sample_recommendations: List[str] = Field(default_factory=list)


class BehaviorInsight(BaseModel):
    """Outcome and pattern distribution for one user type."""
    kind: Literal['behavior'] = 'behavior'
    avg_completion: float = 0.0
    completion_std: float = 0.0
    avg_turns: float = 0.0
    outcome_distribution: Dict[str, int] = Field(default_factory=dict)
    pattern_counts: Dict[str, int] = Field(default_factory=dict)


ClusterInsight = Union[GroupInsight, QuestionInsight, BehaviorInsight]


class KnowledgeCluster(BaseModel):
    cluster_type: ClusterType
    cluster_key: str
    cluster_name: str
    insight_data: ClusterInsight = Field(..., discriminator='kind')
    sample_count: int = Field(default=0, ge=0)
    confidence: float = Field(default=0.0, ge=0, le=100)
    last_updated: Optional[datetime] = None

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> 'KnowledgeCluster':
        data = dict(row)
        data['insight_data'] = decode_json(data.get('insight_data'), {}) or {}
        data['confidence'] = float(data.get('confidence') or 0)
        return cls.model_validate(data)


class LearningMetric(BaseModel):
    """Aggregated totals for one calendar day."""
    metric_date: DateType
    total_conversations: int = 0
    avg_collection_turns: float = 0.0
    avg_completion_rate: float = 0.0
    avg_user_satisfaction: float = 0.0
    avg_professionalism: float = 0.0
    avg_appeal_success: float = 0.0
    completion_count: int = 0
    drop_off_count: int = 0
    top_drop_off_fields: List[str] = Field(default_factory=list)
    top_improvements: List[str] = Field(default_factory=list)
    rules_generated: int = 0
    rules_promoted: int = 0
    product_recommendation_count: int = 0

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> 'LearningMetric':
        data = dict(row)
        data['top_drop_off_fields'] = decode_json(data.get('top_drop_off_fields'), []) or []
        data['top_improvements'] = decode_json(data.get('top_improvements'), []) or []
        for key in ('avg_collection_turns', 'avg_completion_rate', 'avg_user_satisfaction',
                    'avg_professionalism', 'avg_appeal_success'):
            data[key] = float(data.get(key) or 0)
        return cls.model_validate(data)


# =============================================================================
# Exploration
# =============================================================================


class VariantDefinition(BaseModel):
    """What a variant does: apply the candidate rule, or run the baseline."""
    model_config = ConfigDict(extra='allow')

    action: Literal['apply_rule', 'baseline']
    type: Optional[str] = None
    field: Optional[str] = None


class VariantResult(BaseModel):
    """Running mean/variance of the observed outcome (Welford)."""
    n: int = 0
    mean: float = 0.0
    m2: float = 0.0

    @property
    def variance(self) -> float:
        return self.m2 / (self.n - 1) if self.n > 1 else 0.0

    def add(self, value: float) -> 'VariantResult':
        n = self.n + 1
        delta = value - self.mean
        mean = self.mean + delta / n
        m2 = self.m2 + delta * (value - mean)
        return VariantResult(n=n, mean=mean, m2=m2)


class Experiment(BaseModel):
    id: int
    experiment_name: str
    rule_id: Optional[int] = None
    hypothesis: str = ''
    status: ExperimentStatus
    variant_a: VariantDefinition
    variant_b: VariantDefinition
    sample_a: int = 0
    sample_b: int = 0
    result_a: VariantResult = Field(default_factory=VariantResult)
    result_b: VariantResult = Field(default_factory=VariantResult)
    winner: Optional[ExperimentWinner] = None
    started_at: Optional[datetime] = None
    ended_at: Optional[datetime] = None

    @classmethod
    def from_record(cls, row: Mapping[str, Any]) -> 'Experiment':
        data = dict(row)
        for key in ('variant_a', 'variant_b'):
            data[key] = decode_json(data.get(key), {}) or {}
        for key in ('result_a', 'result_b'):
            data[key] = decode_json(data.get(key), {}) or {}
        return cls.model_validate(data)


class ExperimentEvaluation(BaseModel):
    """Result of ``evaluate``; ``status`` stays running below the sample floor."""
    experiment_id: int
    status: ExperimentStatus
    winner: Optional[ExperimentWinner] = None
    sample_a: int = 0
    sample_b: int = 0
    mean_a: float = 0.0
    mean_b: float = 0.0
    difference: float = 0.0


class ExplorationReport(BaseModel):
    created: List[int] = Field(default_factory=list)
    evaluated: List[ExperimentEvaluation] = Field(default_factory=list)
    aborted: List[int] = Field(default_factory=list)
    skipped_reason: Optional[str] = None


# =============================================================================
# Health
# =============================================================================


class ComponentHealth(BaseModel):
    component: str
    status: HealthStatus = HealthStatus.HEALTHY
    error_count: int = Field(default=0, ge=0, description="Consecutive failures")
    success_count: int = Field(default=0, ge=0)
    last_error: Optional[str] = None
    last_success_at: Optional[datetime] = None
    last_error_at: Optional[datetime] = None
    circuit_opened_at: Optional[datetime] = None
    metadata: Dict[str, Any] = Field(default_factory=dict)


class HealthSummary(BaseModel):
    overall: OverallHealth
    components: List[ComponentHealth] = Field(default_factory=list)
    open_circuits: List[str] = Field(default_factory=list)


class ProviderCheck(BaseModel):
    provider: str
    status: ProviderStatus
    latency_ms: Optional[float] = None
    detail: str = ''


# =============================================================================
# Administrative Requests
# =============================================================================


class RuleReviewRequest(BaseModel):
    decision: Literal['approve', 'reject']
    reason: str = ''
    reviewer: str = 'admin'


class RuleStatusRequest(BaseModel):
    reason: str = ''
    actor: str = 'admin'


class RuleReviseRequest(BaseModel):
    content: Dict[str, Any]
    rule_name: Optional[str] = None
    reason: str = ''
    actor: str = 'admin'


class RuleProposeRequest(RuleDraft):
    bypass_review: bool = Field(
        default=False,
        description="Start active; only honoured for admin_manual/system_default"
    )
