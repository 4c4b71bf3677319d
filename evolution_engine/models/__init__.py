"""
Data models for the evolution engine.

Re-exports the enums and pydantic schemas so callers can write:

    from evolution_engine.models import Rule, RuleStatus
"""

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
    Variant,
)
from evolution_engine.models.schemas import (
    AutoReviewResult,
    BasicMetrics,
    BehaviorInsight,
    CollectionEfficiency,
    ComponentHealth,
    Conversation,
    ConversationAnalysis,
    ConversationTag,
    EffectivenessReport,
    Experiment,
    ExperimentEvaluation,
    ExplorationReport,
    GroupInsight,
    HealthSummary,
    KnowledgeCluster,
    LearningMetric,
    LLMAnalysisPayload,
    Message,
    PatternFlags,
    PromotionReport,
    ProviderCheck,
    QuestionInsight,
    ReviewScores,
    Rule,
    RuleChange,
    RuleDraft,
    RuleProposal,
    RuleProposeRequest,
    RuleReviewRequest,
    RuleReviseRequest,
    RuleScoreChange,
    RuleStats,
    RuleStatusRequest,
    SentimentSample,
    Suggestion,
    VariantDefinition,
    VariantResult,
)

__all__ = [
    # Enums
    'ChangeAction',
    'ClusterType',
    'Difficulty',
    'ExperimentStatus',
    'ExperimentWinner',
    'HealthStatus',
    'Outcome',
    'OverallHealth',
    'ProviderStatus',
    'ReviewDecision',
    'RuleCategory',
    'RuleSource',
    'RuleStatus',
    'Sentiment',
    'SuggestionPriority',
    'UserType',
    'Variant',
    # Conversation input and analysis
    'Message',
    'Conversation',
    'BasicMetrics',
    'CollectionEfficiency',
    'LLMAnalysisPayload',
    'ConversationAnalysis',
    'SentimentSample',
    'Suggestion',
    'RuleProposal',
    # Tags
    'ConversationTag',
    'PatternFlags',
    # Rules
    'Rule',
    'RuleDraft',
    'RuleChange',
    'ReviewScores',
    'AutoReviewResult',
    'EffectivenessReport',
    'RuleScoreChange',
    'PromotionReport',
    'RuleStats',
    # Knowledge
    'GroupInsight',
    'QuestionInsight',
    'BehaviorInsight',
    'KnowledgeCluster',
    'LearningMetric',
    # Exploration
    'VariantDefinition',
    'VariantResult',
    'Experiment',
    'ExperimentEvaluation',
    'ExplorationReport',
    # Health
    'ComponentHealth',
    'HealthSummary',
    'ProviderCheck',
    # Requests
    'RuleReviewRequest',
    'RuleStatusRequest',
    'RuleReviseRequest',
    'RuleProposeRequest',
]
