"""
Evolution Engine package.

Self-evolving rule engine for the appeal-consultation assistant: analyses
finished conversations, derives behavioural rules, manages their lifecycle
through AI-assisted review and measured effectiveness, and validates new
rules with A/B exploration experiments.

Subpackages:
    - api: FastAPI administrative routers
    - core: Configuration, database, errors and the application context
    - models: Pydantic schemas and enums
    - services: One service per engine component
    - jobs: Scheduler and scheduled learning jobs
    - sql: Parameterised SQL queries
"""

__version__ = "1.0.0"
