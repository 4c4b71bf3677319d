"""
Core infrastructure for the evolution engine.

Provides:
- Configuration management via pydantic-settings
- Async PostgreSQL connectivity via asyncpg
- The exception taxonomy shared by every component

The application context (``core.context``) and the FastAPI dependencies
(``core.dependencies``) import the services and are not re-exported here,
so services can import from this package without cycles.

Usage:
    from evolution_engine.core import get_settings, init_db, StoreError
"""

from evolution_engine.core.config import Settings, get_settings
from evolution_engine.core.database import acquire, close_db, init_db
from evolution_engine.core.errors import (
    CallerError,
    CircuitOpenError,
    EvolutionError,
    InvalidTransition,
    MalformedResponse,
    NotFound,
    RuleConflictError,
    RuleValidationError,
    StoreError,
    TransientProviderError,
)

__all__ = [
    # Configuration
    'Settings',
    'get_settings',
    # Database pool lifecycle
    'acquire',
    'close_db',
    'init_db',
    # Errors
    'CallerError',
    'CircuitOpenError',
    'EvolutionError',
    'InvalidTransition',
    'MalformedResponse',
    'NotFound',
    'RuleConflictError',
    'RuleValidationError',
    'StoreError',
    'TransientProviderError',
]
