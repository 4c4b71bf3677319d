"""
Business logic services for the evolution engine.

One module per component:

- health_monitor: per-component circuit breaker wrapping every external call
- llm_client: text-completion collaborator over HTTP
- analyzer: deterministic metrics plus LLM scoring of finished conversations
- tagging: difficulty / user type / outcome classification
- rule_lifecycle: rule state machine, AI review, effectiveness, promotion
- rule_generator: rule drafts from analyses
- rule_loader: cached active-rule view and prompt rendering
- knowledge_aggregator: daily learning metrics and knowledge clusters
- exploration: A/B experiments for candidate rules

Services are plain classes constructed with their collaborators; see
``evolution_engine.core.context`` for the wiring.
"""

from evolution_engine.services.analyzer import (
    AnalysisThrottle,
    ConversationAnalyzer,
    compute_basic_metrics,
)
from evolution_engine.services.exploration import ExplorationRunner, assign_variant, decide_winner
from evolution_engine.services.health_monitor import HealthMonitor
from evolution_engine.services.knowledge_aggregator import KnowledgeAggregator, cluster_confidence
from evolution_engine.services.llm_client import Completion, LLMClient
from evolution_engine.services.rule_generator import RuleGenerator
from evolution_engine.services.rule_lifecycle import ALLOWED_TRANSITIONS, RuleLifecycleManager
from evolution_engine.services.rule_loader import PromptBlock, RuleLoader
from evolution_engine.services.tagging import TaggingEngine, tag_analysis

__all__ = [
    'ALLOWED_TRANSITIONS',
    'AnalysisThrottle',
    'Completion',
    'ConversationAnalyzer',
    'ExplorationRunner',
    'HealthMonitor',
    'KnowledgeAggregator',
    'LLMClient',
    'PromptBlock',
    'RuleGenerator',
    'RuleLifecycleManager',
    'RuleLoader',
    'TaggingEngine',
    'assign_variant',
    'cluster_confidence',
    'compute_basic_metrics',
    'decide_winner',
    'tag_analysis',
]
