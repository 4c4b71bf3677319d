"""
Exception taxonomy for the evolution engine.

Infrastructure faults (provider, store, open circuit) are counted by the
health monitor. Caller errors describe misuse of the lifecycle API and are
raised straight back to the caller without touching component health.
"""

from typing import Optional


class EvolutionError(Exception):
    """Base class for every error raised by the engine."""


# =============================================================================
# Infrastructure Faults
# =============================================================================


class TransientProviderError(EvolutionError):
    """LLM timeout, rate limit, transport failure or 5xx response."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class MalformedResponse(EvolutionError):
    """LLM output that cannot be parsed or fails schema validation."""

    def __init__(self, message: str, raw_text: str = ''):
        super().__init__(message)
        self.raw_text = raw_text


class StoreError(EvolutionError):
    """Query, connection or constraint failure in the persistent store."""


class RuleConflictError(StoreError):
    """Unique-key collision on (category, rule_key, version)."""


class CircuitOpenError(EvolutionError):
    """Raised instead of calling a component whose circuit is open."""

    def __init__(self, component: str):
        super().__init__(f"Circuit open for component '{component}'")
        self.component = component


# =============================================================================
# Caller Errors
# =============================================================================


class CallerError(EvolutionError):
    """Misuse of the engine API; never recorded as a component failure."""


class NotFound(CallerError):
    """The referenced entity does not exist."""

    def __init__(self, entity: str, key: object):
        super().__init__(f"{entity} {key!r} not found")
        self.entity = entity
        self.key = key


class InvalidTransition(CallerError):
    """A rule status change that the lifecycle state machine does not allow."""

    def __init__(self, rule_id: int, current: str, target: str):
        super().__init__(
            f"Rule {rule_id} cannot move from '{current}' to '{target}'"
        )
        self.rule_id = rule_id
        self.current = current
        self.target = target


class RuleValidationError(CallerError):
    """Malformed rule draft or content payload, rejected before persistence."""
