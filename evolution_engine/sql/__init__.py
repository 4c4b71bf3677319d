"""
SQL query module for the evolution engine.

Parameterised PostgreSQL text for asyncpg, one submodule per table group:

    rule_queries: ai_rules and rule_change_log
    analysis_queries: sessions/messages (read-only), conversation_analyses,
                      conversation_tags
    knowledge_queries: learning_metrics and knowledge_clusters
    engine_queries: engine_health and exploration_experiments

Example usage:
    from evolution_engine.sql import rule_queries

    row = await conn.fetchrow(rule_queries.get_rule_by_id_query(), rule_id)
"""

from evolution_engine.sql import (
    analysis_queries,
    engine_queries,
    knowledge_queries,
    rule_queries,
)

__all__ = [
    'analysis_queries',
    'engine_queries',
    'knowledge_queries',
    'rule_queries',
]
