"""
Size-aware processing client.

Serializes the record document, picks a strategy from its size and drives the
matching server path to a result: one request for small documents, a single
background request plus polling for medium ones, and start/chunk/finalize plus
polling for large ones.
"""
import json
import logging
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import requests

from app.client.uploader import UploadClient, UploadError, post_json
from app.core.config import settings
from app.ingest.codec import chunk_count
from app.ingest.strategy import DEFAULT_POLICY, Strategy, StrategyPolicy, select_strategy

logger = logging.getLogger(__name__)

StageCallback = Callable[[float, str], None]


class JobFailed(Exception):
    def __init__(self, job_id: str, message: str, error_code: Optional[str] = None):
        super().__init__(f"Job {job_id} failed: {message}")
        self.job_id = job_id
        self.message = message
        self.error_code = error_code


class PollTimeout(Exception):
    def __init__(self, job_id: str, waited_seconds: float, last_status: Optional[Dict[str, Any]] = None):
        super().__init__(f"Job {job_id} not finished after {waited_seconds:.1f}s")
        self.job_id = job_id
        self.waited_seconds = waited_seconds
        self.last_status = last_status


@dataclass
class ProcessingResult:
    data: Dict[str, Any]
    strategy: Strategy
    processing_time: float
    job_id: Optional[str] = None


class PipelineClient:
    """Processes a record document against the service using the cheapest path its size allows.
    Why available: Producers should not have to know the thresholds or the chunked job protocol."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        policy: StrategyPolicy = DEFAULT_POLICY,
        chunk_size: int = settings.chunk_size_bytes,
        max_workers: int = 1,
        poll_interval: float = 2.0,
        poll_timeout_seconds: float = 900.0,
        on_progress: Optional[StageCallback] = None,
        session=None,
        timeout: float = 60.0,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.base_url = (base_url if base_url is not None else settings.api_base).rstrip("/")
        self.policy = policy
        self.chunk_size = chunk_size
        self.poll_interval = poll_interval
        self.poll_timeout_seconds = poll_timeout_seconds
        self.on_progress = on_progress
        self.session = session or requests.Session()
        self.timeout = timeout
        self.sleep = sleep
        self._reported = 0.0
        self.uploader = UploadClient(
            self.base_url,
            chunk_size=chunk_size,
            max_workers=max_workers,
            session=self.session,
            timeout=timeout,
        )

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _report(self, percent: float, stage: str) -> None:
        # callers only ever see progress move forward
        self._reported = max(self._reported, min(100.0, percent))
        if self.on_progress:
            self.on_progress(self._reported, stage)

    def process(
        self,
        document: Any,
        geo_document: Dict[str, Any],
        enrichment_request: Optional[Dict[str, Any]] = None,
    ) -> ProcessingResult:
        """Run document through the service and return the summary with the strategy used and elapsed time.
        Raises UploadError for rejected requests, JobFailed when the job ends in error, PollTimeout when it never ends."""
        self._reported = 0.0
        started = time.perf_counter()
        payload = json.dumps(document).encode("utf-8")
        geo_size = len(json.dumps(geo_document).encode("utf-8"))
        strategy = select_strategy(len(payload) + geo_size, self.policy)
        logger.info("Processing %d bytes with the %s strategy", len(payload) + geo_size, strategy.value)
        self._report(0, "preparing")

        job_id: Optional[str] = None
        match strategy:
            case Strategy.SYNC:
                self._report(10, "processing")
                data = post_json(
                    self.session,
                    self._url("/process/sync"),
                    {"document": document, "geoDocument": geo_document, "enrichmentRequest": enrichment_request},
                    self.timeout,
                )
            case Strategy.BACKGROUND:
                self._report(10, "uploading")
                accepted = post_json(
                    self.session,
                    self._url("/process/background"),
                    {"document": document, "geoDocument": geo_document, "enrichmentRequest": enrichment_request},
                    self.timeout,
                )
                job_id = accepted["jobId"]
                data = self.wait_for_job(job_id)
            case Strategy.CHUNKED:
                job_id = self._run_chunked(payload, geo_document, enrichment_request)
                data = self.wait_for_job(job_id)

        self._report(100, "complete")
        return ProcessingResult(
            data=data,
            strategy=strategy,
            processing_time=time.perf_counter() - started,
            job_id=job_id,
        )

    def _run_chunked(
        self,
        payload: bytes,
        geo_document: Dict[str, Any],
        enrichment_request: Optional[Dict[str, Any]],
    ) -> str:
        total = chunk_count(len(payload), self.chunk_size)
        started = post_json(
            self.session,
            self._url("/job/start"),
            {"totalChunks": total, "geoDocument": geo_document, "enrichmentRequest": enrichment_request},
            self.timeout,
        )
        job_id = started["jobId"]
        logger.info("Started job %s for %d chunks", job_id, total)

        # the upload owns the first half of the bar, matching the server's receive phase
        self.uploader.on_progress = lambda pct: self._report(pct / 2, "uploading")
        try:
            self.uploader.upload_to_job(job_id, payload)
        finally:
            self.uploader.on_progress = None

        post_json(self.session, self._url("/job/finalize"), {"jobId": job_id}, self.timeout)
        return job_id

    def job_status(self, job_id: str) -> Dict[str, Any]:
        resp = self.session.get(self._url("/job/status"), params={"jobId": job_id}, timeout=self.timeout)
        if resp.status_code >= 400:
            raise UploadError(f"GET /job/status failed with {resp.status_code}", resp.status_code, resp.text)
        return resp.json()

    def wait_for_job(self, job_id: str) -> Dict[str, Any]:
        """Poll /job/status until the job completes (returns its result) or fails (raises JobFailed)."""
        deadline = time.monotonic() + self.poll_timeout_seconds
        status: Optional[Dict[str, Any]] = None
        while True:
            status = self.job_status(job_id)
            self._report(float(status.get("progress", 0)), "processing")
            if status["status"] == "completed":
                return status.get("result") or {}
            if status["status"] == "error":
                raise JobFailed(job_id, status.get("error") or "unknown error", status.get("errorCode"))
            if time.monotonic() >= deadline:
                raise PollTimeout(job_id, self.poll_timeout_seconds, status)
            self.sleep(self.poll_interval)
