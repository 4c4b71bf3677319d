"""
Parameterised queries for ai_rules and rule_change_log.

All placeholders are asyncpg positional parameters ($1, $2, ...). Status
updates are compare-and-swap on the current status so two writers can never
both apply a transition from the same starting state.
"""

from typing import Any, List, Optional, Tuple


RULE_COLUMNS = """
    id, category, rule_key, rule_name, rule_content, source, status,
    effectiveness_score, usage_count, version, parent_id, review_score, review_decision,
    activated_at, last_evaluated_at, created_at, updated_at
"""


# =============================================================================
# Reads
# =============================================================================

def get_rule_by_id_query() -> str:
    return f"SELECT {RULE_COLUMNS} FROM ai_rules WHERE id = $1"


def get_rules_by_ids_query() -> str:
    return f"SELECT {RULE_COLUMNS} FROM ai_rules WHERE id = ANY($1::int[]) ORDER BY id"


def build_rule_list_query(
    status: Optional[str] = None,
    category: Optional[str] = None,
    source: Optional[str] = None,
    limit: int = 100,
    offset: int = 0,
) -> Tuple[str, List[Any]]:
    """
    Build the filtered rule listing query.

    Returns:
        Tuple of (query, args) ready for ``conn.fetch(query, *args)``.

    Example:
        >>> query, args = build_rule_list_query(status='active', limit=20)
        >>> args
        ['active', 20, 0]
    """
    conditions: List[str] = []
    args: List[Any] = []

    for column, value in (('status', status), ('category', category), ('source', source)):
        if value is not None:
            args.append(value)
            conditions.append(f"{column} = ${len(args)}")

    where_clause = f"WHERE {' AND '.join(conditions)}" if conditions else ''
    args.extend([limit, offset])

    query = f"""
    SELECT {RULE_COLUMNS}
    FROM ai_rules
    {where_clause}
    ORDER BY category, rule_key, version DESC
    LIMIT ${len(args) - 1} OFFSET ${len(args)}
    """
    return query, args


def get_active_rules_query() -> str:
    """Active rules, best first within each category."""
    return f"""
    SELECT {RULE_COLUMNS}
    FROM ai_rules
    WHERE status = 'active'
    ORDER BY category, effectiveness_score DESC, id
    """


def get_latest_version_query() -> str:
    """Newest version of a (category, rule_key) pair, if any."""
    return f"""
    SELECT {RULE_COLUMNS}
    FROM ai_rules
    WHERE category = $1 AND rule_key = $2
    ORDER BY version DESC
    LIMIT 1
    """


def get_open_pending_for_key_query() -> str:
    """Whether a (category, rule_key) already has a version awaiting review."""
    return """
    SELECT EXISTS(
        SELECT 1 FROM ai_rules
        WHERE category = $1 AND rule_key = $2 AND status = 'pending_review'
    )
    """


def get_active_count_by_category_query() -> str:
    return """
    SELECT category, COUNT(*) AS active_count
    FROM ai_rules
    WHERE status = 'active'
    GROUP BY category
    """


def get_unreviewed_pending_rules_query() -> str:
    """Pending rules the AI reviewer has not scored yet; $1 = limit."""
    return f"""
    SELECT {RULE_COLUMNS}
    FROM ai_rules
    WHERE status = 'pending_review' AND review_score IS NULL
    ORDER BY created_at, id
    LIMIT $1
    """


def get_promotion_candidates_query() -> str:
    """
    Pending rules eligible for automatic promotion.

    $1 = min usage, $2 = min score.
    A rule qualifies when the AI reviewer approved it (deferred by the
    category cap) or when it has accumulated enough usage at a good score.
    A needs_review verdict never qualifies on its score alone.
    """
    return f"""
    SELECT {RULE_COLUMNS}
    FROM ai_rules
    WHERE status = 'pending_review'
      AND (
        review_decision = 'approve'
        OR (usage_count >= $1 AND effectiveness_score >= $2)
      )
    ORDER BY (review_decision = 'approve') DESC, COALESCE(review_score, 0) DESC,
             effectiveness_score DESC, id
    """


def get_demotion_candidates_query() -> str:
    """
    Active rules that have stayed ineffective.

    $1 = max score, $2 = min usage, $3 = evaluation window in hours.
    """
    return f"""
    SELECT {RULE_COLUMNS}
    FROM ai_rules
    WHERE status = 'active'
      AND effectiveness_score < $1
      AND usage_count >= $2
      AND last_evaluated_at IS NOT NULL
      AND COALESCE(activated_at, created_at) <= NOW() - make_interval(hours => $3)
    ORDER BY effectiveness_score, id
    """


def get_stale_pending_query() -> str:
    """Pending rules older than $1 days."""
    return f"""
    SELECT {RULE_COLUMNS}
    FROM ai_rules
    WHERE status = 'pending_review'
      AND created_at < NOW() - make_interval(days => $1)
    ORDER BY id
    """


def get_rule_stats_query() -> str:
    return """
    SELECT status, category, COUNT(*) AS n, AVG(effectiveness_score) AS avg_score
    FROM ai_rules
    GROUP BY status, category
    """


# =============================================================================
# Writes
# =============================================================================

def get_version_lock_query() -> str:
    """
    Transaction-scoped advisory lock on a (category, rule_key) pair.

    Serialises version allocation across processes; released at commit.
    """
    return "SELECT pg_advisory_xact_lock(hashtext($1 || ':' || $2))"


def get_insert_rule_query() -> str:
    """
    $1 category, $2 rule_key, $3 rule_name, $4 rule_content, $5 source,
    $6 status, $7 version, $8 parent_id, $9 effectiveness_score.
    """
    return f"""
    INSERT INTO ai_rules (
        category, rule_key, rule_name, rule_content, source, status,
        version, parent_id, effectiveness_score, usage_count,
        activated_at, created_at, updated_at
    )
    VALUES (
        $1, $2, $3, $4, $5, $6, $7, $8, $9, 0,
        CASE WHEN $6 = 'active' THEN NOW() ELSE NULL END,
        NOW(), NOW()
    )
    RETURNING {RULE_COLUMNS}
    """


def get_transition_status_query() -> str:
    """
    Compare-and-swap status change.

    $1 id, $2 new status, $3 expected current status. Returns no row when
    the rule is no longer in the expected state.
    """
    return f"""
    UPDATE ai_rules
    SET status = $2,
        activated_at = CASE WHEN $2 = 'active' THEN NOW() ELSE activated_at END,
        updated_at = NOW()
    WHERE id = $1 AND status = $3
    RETURNING {RULE_COLUMNS}
    """


def get_update_score_query() -> str:
    """$1 id, $2 new effectiveness score; stamps the evaluation time."""
    return """
    UPDATE ai_rules
    SET effectiveness_score = $2, last_evaluated_at = NOW(), updated_at = NOW()
    WHERE id = $1
    """


def get_stamp_evaluated_query() -> str:
    return "UPDATE ai_rules SET last_evaluated_at = NOW() WHERE id = ANY($1::int[])"


def get_ema_score_query() -> str:
    """
    Move active rules' scores toward one conversation's score.

    $1 rule ids, $2 conversation score, $3 alpha.
    """
    return """
    UPDATE ai_rules
    SET effectiveness_score = LEAST(100, GREATEST(0,
            effectiveness_score * (1 - $3) + $2 * $3)),
        updated_at = NOW()
    WHERE id = ANY($1::int[]) AND status = 'active'
    """


def get_set_review_result_query() -> str:
    """$1 rule id, $2 overall score, $3 review decision."""
    return """
    UPDATE ai_rules
    SET review_score = $2, review_decision = $3, updated_at = NOW()
    WHERE id = $1
    """


def get_increment_usage_query() -> str:
    return "UPDATE ai_rules SET usage_count = usage_count + 1 WHERE id = ANY($1::int[])"


# =============================================================================
# Change Log
# =============================================================================

def get_insert_change_log_query() -> str:
    """$1 rule_id, $2 action, $3 old_content, $4 new_content, $5 reason, $6 changed_by."""
    return """
    INSERT INTO rule_change_log (rule_id, action, old_content, new_content, reason, changed_by, created_at)
    VALUES ($1, $2, $3, $4, $5, $6, NOW())
    RETURNING id, rule_id, action, old_content, new_content, reason, changed_by, created_at
    """


def get_change_log_query() -> str:
    """Entries for one rule in causal order."""
    return """
    SELECT id, rule_id, action, old_content, new_content, reason, changed_by, created_at
    FROM rule_change_log
    WHERE rule_id = $1
    ORDER BY id
    """
