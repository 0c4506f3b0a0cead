"""
Utilities package for Marketplace Job Orchestrator

Contains utility modules for entity storage, logging, ids, locking, time and
input validation.
"""

from .database import DatabaseManager, InMemoryEntityStore, EntityStore
from .ids import IdGenerator, parse_id
from .locks import KeyedLockManager
from .logger import setup_logger, get_logger, set_log_context, LoggerContext

__all__ = [
    "DatabaseManager",
    "InMemoryEntityStore",
    "EntityStore",
    "IdGenerator",
    "parse_id",
    "KeyedLockManager",
    "setup_logger",
    "get_logger",
    "set_log_context",
    "LoggerContext"
]
