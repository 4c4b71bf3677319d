"""
Administrative API package.

Routers:
- rules: rule listing, review and lifecycle operations
- engine: health, provider probe, metrics, clusters, experiments and jobs
"""

from fastapi import APIRouter

from evolution_engine.api.engine import router as engine_router
from evolution_engine.api.rules import router as rules_router

# Create main API router
api_router = APIRouter()

api_router.include_router(rules_router, prefix="/rules", tags=["rules"])
api_router.include_router(engine_router, prefix="/engine", tags=["engine"])

__all__ = [
    "api_router",
    "engine_router",
    "rules_router",
]
