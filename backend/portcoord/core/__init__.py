"""
Port Coordinator - Core Package
===============================

Configuration, database, models, schemas and errors.
"""

from portcoord.core.config import settings
from portcoord.core.database import Base, get_db

__all__ = ["Base", "get_db", "settings"]
