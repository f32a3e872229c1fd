"""
docqueue API Client
HTTP client with sync and async support.
"""

from __future__ import annotations

import os
import time
from pathlib import Path
from typing import Optional

import httpx

from .models import JobProgress, SubmitResult, UsageStats


class DocQueueClient:
    """
    Python client for the docqueue API.

    Example:
        ```python
        client = DocQueueClient(api_key="...")

        locator = client.upload("invoice.pdf")
        submitted = client.submit(locator, "invoice.pdf", options={"classify": True})
        if submitted.queued:
            progress = client.wait_for_job(submitted.processing_id)
        ```
    """

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        api_key: Optional[str] = None,
        timeout: float = 60.0,
    ):
        """
        Initialize the docqueue client.

        Args:
            base_url: API server URL (default: localhost:8000)
            api_key: Bearer token; falls back to DOCQUEUE_API_KEY
            timeout: Request timeout in seconds
        """
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key or os.getenv("DOCQUEUE_API_KEY")
        self.timeout = timeout

        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        self._client = httpx.Client(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
        )

    def __enter__(self) -> DocQueueClient:
        return self

    def __exit__(self, *args) -> None:
        self.close()

    def close(self) -> None:
        """Close the HTTP client."""
        self._client.close()

    # =========================================================================
    # Health
    # =========================================================================

    def health(self) -> dict:
        """Check API health status."""
        response = self._client.get("/health")
        response.raise_for_status()
        return response.json()

    # =========================================================================
    # Documents & Jobs
    # =========================================================================

    def upload(self, path: str | Path) -> str:
        """
        Upload a PDF and return the blob locator to submit it with.

        Args:
            path: Local path of the PDF

        Returns:
            Locator of the stored document
        """
        path = Path(path)
        response = self._client.post(
            "/v1/uploads",
            params={"filename": path.name},
            content=path.read_bytes(),
            headers={"Content-Type": "application/pdf"},
        )
        response.raise_for_status()
        return response.json()["blob_locator"]

    def submit(
        self,
        blob_locator: str,
        original_filename: str,
        options: Optional[dict[str, bool]] = None,
        processing_id: Optional[str] = None,
    ) -> SubmitResult:
        """
        Submit an uploaded document for processing.

        Returns:
            SubmitResult; `queued` tells whether the job is waiting
        """
        payload = {
            "blob_locator": blob_locator,
            "original_filename": original_filename,
            "options": options or {},
        }
        if processing_id:
            payload["processing_id"] = processing_id

        response = self._client.post("/v1/jobs", json=payload)
        response.raise_for_status()
        return SubmitResult.from_dict(response.json())

    def job_progress(self, processing_id: str) -> JobProgress:
        response = self._client.get(f"/v1/jobs/{processing_id}/progress")
        response.raise_for_status()
        return JobProgress.from_dict(response.json()["data"])

    def wait_for_job(
        self,
        processing_id: str,
        poll_interval: float = 2.0,
        max_wait: float = 600.0,
    ) -> JobProgress:
        """
        Poll a job until it completes or fails.

        Raises:
            TimeoutError: If the job is still running after max_wait seconds
        """
        deadline = time.monotonic() + max_wait
        while True:
            progress = self.job_progress(processing_id)
            if progress.finished:
                return progress
            if time.monotonic() >= deadline:
                raise TimeoutError(f"Job {processing_id} still {progress.status} after {max_wait}s")
            time.sleep(poll_interval)

    def status(self) -> dict:
        """Aggregated view of the caller's active, queued and recent jobs."""
        response = self._client.get("/v1/status")
        response.raise_for_status()
        return response.json()["data"]

    # =========================================================================
    # Usage
    # =========================================================================

    def usage(self) -> UsageStats:
        response = self._client.get("/v1/usage")
        response.raise_for_status()
        return UsageStats.from_dict(response.json()["data"])


class AsyncDocQueueClient:
    """Async version of DocQueueClient."""

    def __init__(
        self,
        base_url: str = "http://localhost:8000",
        api_key: Optional[str] = None,
        timeout: float = 60.0,
    ):
        self.base_url = base_url.rstrip("/")
        self.api_key = api_key or os.getenv("DOCQUEUE_API_KEY")

        headers = {}
        if self.api_key:
            headers["Authorization"] = f"Bearer {self.api_key}"

        self._client = httpx.AsyncClient(
            base_url=self.base_url,
            headers=headers,
            timeout=timeout,
        )

    async def __aenter__(self) -> AsyncDocQueueClient:
        return self

    async def __aexit__(self, *args) -> None:
        await self.close()

    async def close(self) -> None:
        await self._client.aclose()

    async def health(self) -> dict:
        response = await self._client.get("/health")
        response.raise_for_status()
        return response.json()

    async def submit(
        self,
        blob_locator: str,
        original_filename: str,
        options: Optional[dict[str, bool]] = None,
    ) -> SubmitResult:
        payload = {
            "blob_locator": blob_locator,
            "original_filename": original_filename,
            "options": options or {},
        }
        response = await self._client.post("/v1/jobs", json=payload)
        response.raise_for_status()
        return SubmitResult.from_dict(response.json())

    async def job_progress(self, processing_id: str) -> JobProgress:
        response = await self._client.get(f"/v1/jobs/{processing_id}/progress")
        response.raise_for_status()
        return JobProgress.from_dict(response.json()["data"])
