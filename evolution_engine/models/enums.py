"""
Enumeration definitions for the evolution engine.

All enums inherit from both ``str`` and ``Enum`` so they serialise as plain
strings in pydantic models, JSONB columns and API responses.
"""

from enum import Enum


class RuleCategory(str, Enum):
    """
    Rule categories. Each maps to one section of the injected prompt block.
    """
    COLLECTION_STRATEGY = "collection_strategy"
    QUESTION_TEMPLATE = "question_template"
    INDUSTRY_KNOWLEDGE = "industry_knowledge"
    VIOLATION_STRATEGY = "violation_strategy"
    CONVERSATION_PATTERN = "conversation_pattern"
    DIAGNOSIS_RULE = "diagnosis_rule"


class RuleSource(str, Enum):
    """Who created a rule."""
    AI_GENERATED = "ai_generated"
    ADMIN_MANUAL = "admin_manual"
    SYSTEM_DEFAULT = "system_default"


class RuleStatus(str, Enum):
    """
    Rule lifecycle states.

    Only ``active`` rules are injected into prompts. ``archived`` and
    ``rejected`` rules are kept as history and can only be re-activated.
    """
    PENDING_REVIEW = "pending_review"
    ACTIVE = "active"
    ARCHIVED = "archived"
    REJECTED = "rejected"


class ChangeAction(str, Enum):
    """Actions recorded in the rule change log."""
    CREATED = "created"
    UPDATED = "updated"
    ACTIVATED = "activated"
    ARCHIVED = "archived"
    REJECTED = "rejected"
    AUTO_PROMOTED = "auto_promoted"


class ReviewDecision(str, Enum):
    """Outcome of a manual or automatic review."""
    APPROVE = "approve"
    REJECT = "reject"
    NEEDS_REVIEW = "needs_review"


class Sentiment(str, Enum):
    """Five-point user sentiment scale used by analyses and trajectories."""
    POSITIVE = "positive"
    SLIGHTLY_POSITIVE = "slightly_positive"
    NEUTRAL = "neutral"
    SLIGHTLY_NEGATIVE = "slightly_negative"
    NEGATIVE = "negative"


class SuggestionPriority(str, Enum):
    HIGH = "high"
    MEDIUM = "medium"
    LOW = "low"


class Difficulty(str, Enum):
    EASY = "easy"
    MEDIUM = "medium"
    HARD = "hard"
    EXTREME = "extreme"


class UserType(str, Enum):
    FIRST_TIME = "first_time"
    RETURNING = "returning"
    EXPERIENCED = "experienced"


class Outcome(str, Enum):
    """
    Conversation outcome assigned by the tagging engine.

    ``redirected`` means the user left the collection flow for another topic
    without turning negative.
    """
    COMPLETED = "completed"
    PARTIAL = "partial"
    ABANDONED = "abandoned"
    REDIRECTED = "redirected"


class ClusterType(str, Enum):
    """Dimensions along which analyses are aggregated into clusters."""
    INDUSTRY_PATTERN = "industry_pattern"
    VIOLATION_PATTERN = "violation_pattern"
    QUESTION_EFFECTIVENESS = "question_effectiveness"
    USER_BEHAVIOR = "user_behavior"
    SUCCESS_FACTOR = "success_factor"


class ExperimentStatus(str, Enum):
    RUNNING = "running"
    COMPLETED = "completed"
    ABORTED = "aborted"
    FAILED = "failed"


class Variant(str, Enum):
    A = "a"
    B = "b"


class ExperimentWinner(str, Enum):
    A = "a"
    B = "b"
    INCONCLUSIVE = "inconclusive"


class HealthStatus(str, Enum):
    """
    Per-component circuit breaker state.

    healthy -> degraded -> circuit_open -> recovering -> healthy
    """
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CIRCUIT_OPEN = "circuit_open"
    RECOVERING = "recovering"


class OverallHealth(str, Enum):
    """Roll-up of every component's status for the health summary."""
    HEALTHY = "healthy"
    DEGRADED = "degraded"
    CRITICAL = "critical"


class ProviderStatus(str, Enum):
    """Classification of an LLM provider probe."""
    OK = "ok"
    RATE_LIMITED = "rate_limited"
    AUTH_FAILED = "auth_failed"
    BALANCE_EMPTY = "balance_empty"
    TIMEOUT = "timeout"
    NOT_CONFIGURED = "not_configured"
    ERROR = "error"
