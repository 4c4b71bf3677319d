"""
Parameterised queries for conversations, analyses and tags.

``sessions`` and ``messages`` belong to the chat application and are only
read here.
"""


ANALYSIS_COLUMNS = """
    id, session_id, user_id, industry, problem_type, total_turns,
    collection_turns, fields_collected, fields_skipped, fields_refused,
    completion_rate, professionalism_score, appeal_success_rate,
    user_satisfaction, response_quality, user_sentiment, drop_off_point,
    collection_efficiency, sentiment_trajectory, suggestions, raw_analysis,
    active_rule_ids, analyzed_at
"""


# =============================================================================
# Conversations
# =============================================================================

def get_unanalyzed_sessions_query() -> str:
    """
    Recent sessions long enough to analyse, with at least one user message
    and no analysis yet.

    $1 lookback days, $2 limit, $3 minimum message count. Sessions below the
    floor never get an analysis row, so they are filtered here rather than
    left to hold the oldest slots of every batch. Re-running is safe: a
    session drops out as soon as its analysis row exists.
    """
    return """
    SELECT s.id AS session_id, s.user_id, s.collected_data, s.created_at
    FROM sessions s
    WHERE s.created_at >= NOW() - make_interval(days => $1)
      AND EXISTS (
          SELECT 1 FROM messages m WHERE m.session_id = s.id AND m.role = 'user'
      )
      AND (SELECT COUNT(*) FROM messages m WHERE m.session_id = s.id) >= $3
      AND NOT EXISTS (
          SELECT 1 FROM conversation_analyses a WHERE a.session_id = s.id
      )
    ORDER BY s.created_at
    LIMIT $2
    """


def get_session_query() -> str:
    return """
    SELECT id AS session_id, user_id, collected_data, created_at
    FROM sessions
    WHERE id = $1
    """


def get_session_messages_query() -> str:
    return """
    SELECT role, content
    FROM messages
    WHERE session_id = $1
    ORDER BY created_at, id
    """


# =============================================================================
# Analyses
# =============================================================================

def get_insert_analysis_query() -> str:
    """Insert one analysis; 22 parameters in ANALYSIS_COLUMNS order minus id/analyzed_at."""
    return """
    INSERT INTO conversation_analyses (
        session_id, user_id, industry, problem_type, total_turns,
        collection_turns, fields_collected, fields_skipped, fields_refused,
        completion_rate, professionalism_score, appeal_success_rate,
        user_satisfaction, response_quality, user_sentiment, drop_off_point,
        collection_efficiency, sentiment_trajectory, suggestions, raw_analysis,
        active_rule_ids, analyzed_at
    )
    VALUES (
        $1, $2, $3, $4, $5, $6, $7, $8, $9, $10, $11, $12, $13, $14, $15,
        $16, $17, $18, $19, $20, $21, NOW()
    )
    RETURNING id, analyzed_at
    """


def get_recent_analyses_query() -> str:
    """Most recent analyses, newest first; $1 limit."""
    return f"""
    SELECT {ANALYSIS_COLUMNS}
    FROM conversation_analyses
    ORDER BY analyzed_at DESC, id DESC
    LIMIT $1
    """


def get_analyses_for_date_query() -> str:
    """Analyses recorded on calendar day $1."""
    return f"""
    SELECT {ANALYSIS_COLUMNS}
    FROM conversation_analyses
    WHERE analyzed_at >= $1::date
      AND analyzed_at < ($1::date + INTERVAL '1 day')
    ORDER BY id
    """


def get_analyses_with_tags_query() -> str:
    """
    Analyses from the last $1 days joined to their tag, for cluster rebuilds.
    """
    return """
    SELECT
        a.id, a.session_id, a.user_id, a.industry, a.problem_type,
        a.total_turns, a.collection_turns, a.fields_collected,
        a.fields_skipped, a.fields_refused, a.completion_rate,
        a.professionalism_score, a.appeal_success_rate, a.user_satisfaction,
        a.response_quality, a.user_sentiment, a.drop_off_point,
        a.collection_efficiency, a.sentiment_trajectory, a.suggestions,
        a.raw_analysis, a.active_rule_ids, a.analyzed_at,
        t.difficulty, t.user_type, t.outcome, t.pattern_flags
    FROM conversation_analyses a
    LEFT JOIN conversation_tags t ON t.session_id = a.session_id
    WHERE a.analyzed_at >= NOW() - make_interval(days => $1)
    ORDER BY a.id
    """


# =============================================================================
# Tags
# =============================================================================

def get_upsert_tag_query() -> str:
    """One tag per session; re-tagging overwrites."""
    return """
    INSERT INTO conversation_tags (
        session_id, analysis_id, difficulty, user_type, quality_score,
        outcome, tags, industry_cluster, violation_cluster, pattern_flags
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9, $10)
    ON CONFLICT (session_id) DO UPDATE SET
        analysis_id = EXCLUDED.analysis_id,
        difficulty = EXCLUDED.difficulty,
        user_type = EXCLUDED.user_type,
        quality_score = EXCLUDED.quality_score,
        outcome = EXCLUDED.outcome,
        tags = EXCLUDED.tags,
        industry_cluster = EXCLUDED.industry_cluster,
        violation_cluster = EXCLUDED.violation_cluster,
        pattern_flags = EXCLUDED.pattern_flags
    """
