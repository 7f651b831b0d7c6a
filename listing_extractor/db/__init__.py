"""
Database package initialization.
"""

from listing_extractor.db.database import (
    Base,
    async_session_maker,
    close_db,
    create_engine_for,
    engine,
    init_db,
)
from listing_extractor.db.models import ExtractionJobModel

__all__ = [
    # Database
    "Base",
    "engine",
    "async_session_maker",
    "create_engine_for",
    "init_db",
    "close_db",
    # Models
    "ExtractionJobModel",
]
