"""
Translation of engine errors into HTTP responses.

    NotFound            -> 404
    InvalidTransition   -> 409
    RuleConflictError   -> 409
    RuleValidationError -> 422
    CircuitOpenError    -> 503
    TransientProviderError / MalformedResponse -> 502
    StoreError and anything else -> 500
"""

import logging

from fastapi import HTTPException

from evolution_engine.core.errors import (
    CircuitOpenError,
    EvolutionError,
    InvalidTransition,
    MalformedResponse,
    NotFound,
    RuleConflictError,
    RuleValidationError,
    TransientProviderError,
)


logger = logging.getLogger(__name__)

_STATUS_CODES = (
    (NotFound, 404),
    (InvalidTransition, 409),
    (RuleConflictError, 409),
    (RuleValidationError, 422),
    (CircuitOpenError, 503),
    (TransientProviderError, 502),
    (MalformedResponse, 502),
)


def http_error(error: EvolutionError) -> HTTPException:
    for error_type, status_code in _STATUS_CODES:
        if isinstance(error, error_type):
            return HTTPException(status_code=status_code, detail=str(error))

    logger.error("Engine error: %s", error)
    return HTTPException(status_code=500, detail=str(error))
