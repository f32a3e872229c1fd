"""Database package for docqueue."""

from docqueue.db.base import Base, utcnow
from docqueue.db.manager import DatabaseManager
from docqueue.db.models import HistoryRecord, Job, Operation, QuotaAccount

__all__ = [
    "Base",
    "DatabaseManager",
    "HistoryRecord",
    "Job",
    "Operation",
    "QuotaAccount",
    "utcnow",
]
