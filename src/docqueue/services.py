"""Wiring of the docqueue components from settings."""

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Optional

from docqueue.admission.controller import AdmissionController
from docqueue.admission.worker import QueueWorker
from docqueue.blobs import BlobStore, FilesystemBlobStore
from docqueue.cache.base import CacheBackend
from docqueue.cache.factory import create_cache, get_cache
from docqueue.config import Settings, get_settings
from docqueue.db.manager import DatabaseManager
from docqueue.engine import PdfTextEngine, TransformEngine
from docqueue.history import HistoryStore
from docqueue.ledger.ledger import QuotaLedger
from docqueue.progress.tracker import ProgressTracker
from docqueue.queue.store import PriorityQueueStore
from docqueue.ratelimit.limiter import RateLimiter, RateLimitPolicy, policies_from_settings
from docqueue.reaper import Reaper
from docqueue.security import Authenticator, StaticTokenAuthenticator

logger = logging.getLogger(__name__)


@dataclass
class Services:
    """Every long-lived component of one docqueue process."""

    settings: Settings
    db_manager: DatabaseManager
    blobs: BlobStore
    engine: TransformEngine
    queue: PriorityQueueStore
    history: HistoryStore
    ledger: QuotaLedger
    tracker: ProgressTracker
    admission: AdmissionController
    worker: QueueWorker
    reaper: Reaper
    limiter: RateLimiter
    policies: dict[str, RateLimitPolicy]
    authenticator: Authenticator
    cache: CacheBackend | None = None

    def close(self) -> None:
        self.db_manager.close()


def build_services(
    settings: Settings | None = None,
    db_manager: DatabaseManager | None = None,
    engine: TransformEngine | None = None,
    blobs: BlobStore | None = None,
    authenticator: Authenticator | None = None,
    cache: CacheBackend | None = None,
) -> Services:
    """
    Build the component graph.

    Collaborators can be passed in to replace the defaults (tests and
    alternative deployments do this).
    """
    explicit_settings = settings is not None
    settings = settings or get_settings()
    db_manager = db_manager or DatabaseManager(settings.database_url)
    db_manager.init_db()

    blobs = blobs or FilesystemBlobStore(settings.blob_storage_dir)
    engine = engine or PdfTextEngine()
    queue = PriorityQueueStore(db_manager, average_job_seconds=settings.average_job_seconds)
    history = HistoryStore(db_manager)
    ledger = QuotaLedger(
        db_manager,
        standard_weekly_limit=settings.standard_weekly_limit,
        elevated_monthly_limit=settings.elevated_monthly_limit,
        history=history,
    )
    tracker = ProgressTracker(
        db_manager,
        queue=queue,
        history=history,
        stale_after=timedelta(hours=settings.stale_operation_hours),
    )
    admission = AdmissionController(
        db_manager,
        queue=queue,
        ledger=ledger,
        history=history,
        tracker=tracker,
        engine=engine,
        blobs=blobs,
        max_concurrent_jobs=settings.max_concurrent_jobs,
        default_max_retries=settings.default_max_retries,
    )
    reaper = Reaper(
        queue=queue,
        tracker=tracker,
        history=history,
        ledger=ledger,
        blobs=blobs,
        controller=admission,
        scratch_dir=settings.scratch_dir,
        job_retention=timedelta(hours=settings.job_retention_hours),
        operation_retention=timedelta(hours=settings.operation_retention_hours),
        stalled_after=timedelta(hours=settings.stale_operation_hours),
        history_retention=timedelta(days=settings.history_retention_days),
    )
    if cache is None and explicit_settings:
        cache = create_cache(
            settings.rate_limit_backend, url=settings.redis_url, prefix=settings.redis_prefix
        )
    elif cache is None:
        # Share the process-wide backend that the API lifespan connects
        cache = get_cache()

    return Services(
        settings=settings,
        db_manager=db_manager,
        blobs=blobs,
        engine=engine,
        queue=queue,
        history=history,
        ledger=ledger,
        tracker=tracker,
        admission=admission,
        worker=QueueWorker(admission),
        reaper=reaper,
        limiter=RateLimiter(backend=cache),
        policies=policies_from_settings(settings),
        authenticator=authenticator or StaticTokenAuthenticator(settings.api_tokens),
        cache=cache,
    )


_services: Optional[Services] = None


def get_services() -> Services:
    """Get the global services instance."""
    global _services
    if _services is None:
        _services = build_services()
        logger.info("docqueue services initialized")
    return _services


def reset_services() -> None:
    global _services
    if _services is not None:
        _services.close()
    _services = None
