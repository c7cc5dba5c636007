"""Integration tests package.

Integration tests use a REAL database (file-backed SQLite via aiosqlite)
and real ASGI transport (not mocked).

Run with:
    pytest -m integration tests/integration/

Or exclude integration tests:
    pytest -m "not integration"
"""
