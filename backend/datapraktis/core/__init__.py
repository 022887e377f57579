"""
DataPraktis - Core Package
==========================

Configuration, persistence, models and the settlement engine.
"""

from datapraktis.core.config import settings
from datapraktis.core.database import Base, get_db, get_db_session

__all__ = ["Base", "get_db", "get_db_session", "settings"]
