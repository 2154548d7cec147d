"""
MedEvidence Database Module

Database components:
- Async PostgreSQL connection management for the hybrid search backend
- Health checks
"""

from medevidence.db.postgres import (
    HYBRID_SEARCH_FUNCTION,
    MAX_OVERFLOW,
    POOL_RECYCLE,
    POOL_SIZE,
    check_database_health,
    check_hybrid_search_function,
    close_db,
    get_db_session,
    get_engine,
    init_db,
)

__all__ = [
    # Constants
    "HYBRID_SEARCH_FUNCTION",
    "POOL_SIZE",
    "MAX_OVERFLOW",
    "POOL_RECYCLE",
    # Functions
    "get_db_session",
    "get_engine",
    "init_db",
    "close_db",
    "check_database_health",
    "check_hybrid_search_function",
]
