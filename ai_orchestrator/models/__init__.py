"""ORM models package.

Import all models here so that SQLAlchemy's metadata is fully populated
before create_all() runs.
"""

from ai_orchestrator.models.ai_usage import AIBudgetStateRecord, AIUsageLogRecord

__all__ = [
    "AIBudgetStateRecord",
    "AIUsageLogRecord",
]
