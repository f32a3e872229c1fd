"""Job admission, commit and the queue worker."""

from docqueue.admission.controller import (
    KNOWN_OPTIONS,
    AdmissionController,
    FetchedDocument,
    Immediate,
    JobRequest,
    Queued,
)
from docqueue.admission.worker import QueueWorker, WorkerOutcome
from docqueue.security import CallerIdentity

__all__ = [
    "AdmissionController",
    "CallerIdentity",
    "FetchedDocument",
    "Immediate",
    "JobRequest",
    "KNOWN_OPTIONS",
    "QueueWorker",
    "Queued",
    "WorkerOutcome",
]
