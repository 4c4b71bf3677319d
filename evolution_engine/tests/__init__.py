"""
Test suite for the evolution engine.

Tests use pytest with pytest-asyncio and run without a database or LLM
provider: the asyncpg pool and the LLM client are replaced by mocks from
conftest.py.
"""
