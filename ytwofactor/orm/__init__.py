"""ORM 模块"""

from .base import Base, utcnow
from .db_session import DatabaseManager

__all__ = [
    "Base",
    "utcnow",
    "DatabaseManager",
]
