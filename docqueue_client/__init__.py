"""
docqueue Client SDK
Python client library for the docqueue API.
"""

from .client import AsyncDocQueueClient, DocQueueClient
from .models import JobProgress, SubmitResult, UsageStats

__version__ = "0.1.0"
__all__ = [
    "DocQueueClient",
    "AsyncDocQueueClient",
    "JobProgress",
    "SubmitResult",
    "UsageStats",
]
