"""
Repositories Layer
MongoDB connection lifecycle and document persistence.
"""
from .connection import db_manager, get_database, DatabaseManager
from .base import BaseRepository
from .dead_letters import DeadLetterMongoRepository

__all__ = [
    "db_manager",
    "get_database",
    "DatabaseManager",
    "BaseRepository",
    "DeadLetterMongoRepository",
]
