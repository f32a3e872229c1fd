"""API routes for docqueue."""

import logging
import re
import uuid
from pathlib import PurePath
from typing import Any, Callable

from fastapi import APIRouter, Depends, Query, Request, Response
from fastapi.concurrency import run_in_threadpool
from pydantic import BaseModel, Field

from docqueue.admission.controller import JobRequest, Queued
from docqueue.errors import RateLimited, ValidationError
from docqueue.ratelimit.limiter import RateLimitResult
from docqueue.security import CallerIdentity, get_bearer_token, verify_cron_secret
from docqueue.services import Services, get_services

logger = logging.getLogger(__name__)
router = APIRouter()

_UNSAFE_CHARS = re.compile(r"[^A-Za-z0-9._-]")


# --- Request/Response Models ---


class JobSubmission(BaseModel):
    """Request to process a previously uploaded document."""

    processing_id: str | None = Field(default=None, max_length=64)
    blob_locator: str = Field(..., description="Locator returned by the upload endpoint")
    original_filename: str = Field(..., max_length=512)
    options: dict[str, bool] = Field(default_factory=dict)


class UsageUpdate(BaseModel):
    page_count: int


class UploadResponse(BaseModel):
    blob_locator: str
    size_bytes: int


# --- Dependencies ---


def get_caller(request: Request, services: Services = Depends(get_services)) -> CallerIdentity:
    """Resolve the bearer token to a caller identity."""
    return services.authenticator.authenticate(get_bearer_token(request))


def rate_limit(policy_name: str) -> Callable:
    """Dependency that counts the request against a named policy."""

    async def dependency(
        response: Response,
        caller: CallerIdentity = Depends(get_caller),
        services: Services = Depends(get_services),
    ) -> RateLimitResult:
        policy = services.policies[policy_name]
        result = await services.limiter.allow_policy(policy, caller.owner_id)
        if not result.allowed:
            logger.info(f"Rate limited {caller.owner_id} on {policy_name}")
            raise RateLimited(policy_name, result.retry_after, result.headers())
        response.headers.update(result.headers())
        return result

    return dependency


def require_cron_secret(request: Request, services: Services = Depends(get_services)) -> None:
    verify_cron_secret(request, services.settings.cron_secret)


# --- Caller endpoints ---


@router.post("/uploads", response_model=UploadResponse, status_code=201)
async def upload_document(
    request: Request,
    filename: str = Query(..., min_length=1, max_length=255),
    caller: CallerIdentity = Depends(get_caller),
    services: Services = Depends(get_services),
    _limit: RateLimitResult = Depends(rate_limit("upload")),
) -> UploadResponse:
    """Store a PDF sent as the raw request body."""
    data = await request.body()
    if not data:
        raise ValidationError("Empty upload")
    if len(data) > services.settings.max_upload_bytes:
        raise ValidationError(f"Upload exceeds {services.settings.max_upload_bytes} bytes")
    if not data.startswith(b"%PDF"):
        raise ValidationError("Only PDF documents are accepted")

    safe_name = _UNSAFE_CHARS.sub("_", PurePath(filename).name) or "document.pdf"
    safe_owner = _UNSAFE_CHARS.sub("_", caller.owner_id)
    locator = f"uploads/{safe_owner}/{uuid.uuid4().hex}_{safe_name}"
    await run_in_threadpool(services.blobs.put, locator, data)
    logger.info(f"Stored upload {locator} ({len(data)} bytes) for {caller.owner_id}")
    return UploadResponse(blob_locator=locator, size_bytes=len(data))


@router.post("/jobs")
def submit_job(
    body: JobSubmission,
    response: Response,
    caller: CallerIdentity = Depends(get_caller),
    services: Services = Depends(get_services),
    _limit: RateLimitResult = Depends(rate_limit("process")),
) -> dict[str, Any]:
    """Run a job now or queue it; 200 when it ran, 202 when it was queued."""
    outcome = services.admission.submit(
        JobRequest(
            blob_locator=body.blob_locator,
            original_filename=body.original_filename,
            options=body.options,
            processing_id=body.processing_id,
        ),
        caller,
    )
    if isinstance(outcome, Queued):
        response.status_code = 202
    return outcome.to_dict()


@router.get("/status")
def get_status(
    caller: CallerIdentity = Depends(get_caller),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    return {"success": True, "data": services.tracker.get_aggregated_status(caller.owner_id)}


@router.get("/jobs/{processing_id}/progress")
def get_job_progress(
    processing_id: str,
    caller: CallerIdentity = Depends(get_caller),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    return {"success": True, "data": services.tracker.get_job_progress(caller.owner_id, processing_id)}


@router.post("/usage")
def update_usage(
    body: UsageUpdate,
    caller: CallerIdentity = Depends(get_caller),
    services: Services = Depends(get_services),
    _limit: RateLimitResult = Depends(rate_limit("usage")),
) -> dict[str, Any]:
    snapshot = services.ledger.record_usage(caller.owner_id, body.page_count)
    return {"success": True, **snapshot.to_dict(), "pages_added": body.page_count}


@router.get("/usage")
def get_usage(
    caller: CallerIdentity = Depends(get_caller),
    services: Services = Depends(get_services),
) -> dict[str, Any]:
    return {"success": True, "data": services.ledger.get_stats(caller.owner_id)}


# --- Internal triggers ---


@router.post("/internal/process-queue", dependencies=[Depends(require_cron_secret)])
def process_queue(services: Services = Depends(get_services)) -> dict[str, Any]:
    outcome = services.worker.process_next()
    return {"outcome": outcome.value}


@router.post("/internal/sweep", dependencies=[Depends(require_cron_secret)])
def sweep(services: Services = Depends(get_services)) -> dict[str, Any]:
    return services.reaper.sweep().to_dict()
