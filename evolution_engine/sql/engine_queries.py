"""
Parameterised queries for engine_health and exploration_experiments.
"""


# =============================================================================
# Component Health
# =============================================================================

def get_upsert_health_query() -> str:
    """Write-through of one component's in-memory health record."""
    return """
    INSERT INTO engine_health (
        component, status, error_count, success_count, last_error,
        last_success_at, last_error_at, circuit_opened_at, metadata
    )
    VALUES ($1, $2, $3, $4, $5, $6, $7, $8, $9)
    ON CONFLICT (component) DO UPDATE SET
        status = EXCLUDED.status,
        error_count = EXCLUDED.error_count,
        success_count = EXCLUDED.success_count,
        last_error = EXCLUDED.last_error,
        last_success_at = EXCLUDED.last_success_at,
        last_error_at = EXCLUDED.last_error_at,
        circuit_opened_at = EXCLUDED.circuit_opened_at,
        metadata = EXCLUDED.metadata
    """


def get_all_health_query() -> str:
    return """
    SELECT component, status, error_count, success_count, last_error,
           last_success_at, last_error_at, circuit_opened_at, metadata
    FROM engine_health
    ORDER BY component
    """


# =============================================================================
# Experiments
# =============================================================================

EXPERIMENT_COLUMNS = """
    id, experiment_name, rule_id, hypothesis, status, variant_a, variant_b,
    sample_a, sample_b, result_a, result_b, winner, started_at, ended_at
"""


def get_insert_experiment_query() -> str:
    """$1 name, $2 rule_id, $3 hypothesis, $4 variant_a, $5 variant_b."""
    return f"""
    INSERT INTO exploration_experiments (
        experiment_name, rule_id, hypothesis, status, variant_a, variant_b,
        sample_a, sample_b, result_a, result_b, started_at
    )
    VALUES ($1, $2, $3, 'running', $4, $5, 0, 0, '{{}}'::jsonb, '{{}}'::jsonb, NOW())
    RETURNING {EXPERIMENT_COLUMNS}
    """


def get_experiment_query(for_update: bool = False) -> str:
    lock = 'FOR UPDATE' if for_update else ''
    return f"SELECT {EXPERIMENT_COLUMNS} FROM exploration_experiments WHERE id = $1 {lock}"


def get_experiments_query(with_status_filter: bool = False) -> str:
    where_clause = "WHERE status = $1" if with_status_filter else ''
    return f"""
    SELECT {EXPERIMENT_COLUMNS}
    FROM exploration_experiments
    {where_clause}
    ORDER BY started_at DESC, id DESC
    """


def get_update_variant_result_query(variant: str) -> str:
    """
    Store one side's running result. ``variant`` is 'a' or 'b' (never user input).
    """
    if variant not in ('a', 'b'):
        raise ValueError(f"Unknown variant {variant!r}")
    return f"""
    UPDATE exploration_experiments
    SET sample_{variant} = $2, result_{variant} = $3
    WHERE id = $1 AND status = 'running'
    """


def get_finish_experiment_query() -> str:
    """$1 id, $2 terminal status, $3 winner (nullable)."""
    return f"""
    UPDATE exploration_experiments
    SET status = $2, winner = $3, ended_at = NOW()
    WHERE id = $1 AND status = 'running'
    RETURNING {EXPERIMENT_COLUMNS}
    """


def get_mark_experiment_failed_query() -> str:
    """
    $1 id. A decided experiment whose decision could not be applied; the
    winner is kept so it can be applied by hand.
    """
    return f"""
    UPDATE exploration_experiments
    SET status = 'failed'
    WHERE id = $1 AND status = 'completed'
    RETURNING {EXPERIMENT_COLUMNS}
    """


def get_expired_experiments_query() -> str:
    """Running experiments started more than $1 days ago."""
    return f"""
    SELECT {EXPERIMENT_COLUMNS}
    FROM exploration_experiments
    WHERE status = 'running'
      AND started_at < NOW() - make_interval(days => $1)
    ORDER BY id
    """
