"""
Parameterised queries for learning_metrics and knowledge_clusters.
"""


def get_upsert_learning_metric_query() -> str:
    """
    Idempotent upsert keyed by metric_date.

    Re-running the daily aggregation for the same date overwrites every
    column rather than adding to it.
    """
    return """
    INSERT INTO learning_metrics (
        metric_date, total_conversations, avg_collection_turns,
        avg_completion_rate, avg_user_satisfaction, avg_professionalism,
        avg_appeal_success, completion_count, drop_off_count,
        top_drop_off_fields, top_improvements, rules_generated,
        rules_promoted, product_recommendation_count
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14)
    ON CONFLICT (metric_date) DO UPDATE SET
        total_conversations = EXCLUDED.total_conversations,
        avg_collection_turns = EXCLUDED.avg_collection_turns,
        avg_completion_rate = EXCLUDED.avg_completion_rate,
        avg_user_satisfaction = EXCLUDED.avg_user_satisfaction,
        avg_professionalism = EXCLUDED.avg_professionalism,
        avg_appeal_success = EXCLUDED.avg_appeal_success,
        completion_count = EXCLUDED.completion_count,
        drop_off_count = EXCLUDED.drop_off_count,
        top_drop_off_fields = EXCLUDED.top_drop_off_fields,
        top_improvements = EXCLUDED.top_improvements,
        rules_generated = EXCLUDED.rules_generated,
        rules_promoted = EXCLUDED.rules_promoted,
        product_recommendation_count = EXCLUDED.product_recommendation_count
    """


def get_learning_metrics_query() -> str:
    """Metrics for the last $1 days, newest first."""
    return """
    SELECT *
    FROM learning_metrics
    WHERE metric_date >= CURRENT_DATE - $1::int
    ORDER BY metric_date DESC
    """


def get_rules_generated_on_query() -> str:
    return """
    SELECT COUNT(*) FROM ai_rules
    WHERE created_at >= $1::date AND created_at < ($1::date + INTERVAL '1 day')
    """


def get_rules_promoted_on_query() -> str:
    """
    Rules promoted on day $1, from the append-only change log.

    $2 = promotion actions. Later archiving or reactivation does not move a
    promotion to another day.
    """
    return """
    SELECT COUNT(DISTINCT rule_id) FROM rule_change_log
    WHERE action = ANY($2::text[])
      AND created_at >= $1::date AND created_at < ($1::date + INTERVAL '1 day')
    """


# =============================================================================
# Clusters
# =============================================================================

def get_delete_clusters_query() -> str:
    return "DELETE FROM knowledge_clusters WHERE cluster_type = $1"


def get_insert_cluster_query() -> str:
    """$1 type, $2 key, $3 name, $4 insight_data, $5 sample_count, $6 confidence."""
    return """
    INSERT INTO knowledge_clusters (
        cluster_type, cluster_key, cluster_name, insight_data,
        sample_count, confidence, last_updated
    )
    VALUES ($1, $2, $3, $4, $5, $6, NOW())
    """


def get_clusters_query(with_type_filter: bool = False) -> str:
    where_clause = "WHERE cluster_type = $1" if with_type_filter else ''
    return f"""
    SELECT cluster_type, cluster_key, cluster_name, insight_data,
           sample_count, confidence, last_updated
    FROM knowledge_clusters
    {where_clause}
    ORDER BY cluster_type, sample_count DESC, cluster_key
    """
