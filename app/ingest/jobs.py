"""
In-memory job registry for background processing: state machine, progress and eviction.

    Pending -> Processing -> Completed(result) | Error(message)

Terminal states are final. Readers always get a JobSnapshot copy, so a status poll
never observes a half-applied transition from the worker thread.
"""
import logging
import threading
import time
from dataclasses import dataclass, field
from typing import Any, Callable, Dict, List, Optional, Union

from app.ingest.codec import new_job_id
from app.ingest.errors import (
    IncompleteUpload,
    InvalidInput,
    InvalidTransition,
    JobAlreadyFinalized,
    NotFound,
    ProcessingFailed,
    Timeout,
    UploadExpired,
)

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

# Share of the progress bar given to the chunk-receive phase; processing gets the rest.
# Not a measured cost model, just what reads well in a progress bar.
RECEIVE_PHASE_WEIGHT = 50.0


@dataclass(frozen=True)
class Pending:
    status = "pending"


@dataclass(frozen=True)
class Processing:
    status = "processing"


@dataclass(frozen=True)
class Completed:
    result: Any
    status = "completed"


@dataclass(frozen=True)
class Error:
    message: str
    code: str = ProcessingFailed.error_code
    status = "error"


JobState = Union[Pending, Processing, Completed, Error]


def is_terminal(state: JobState) -> bool:
    return isinstance(state, (Completed, Error))


@dataclass(frozen=True)
class JobSnapshot:
    """Immutable view of a job handed to callers outside the registry."""

    job_id: str
    state: JobState
    progress: float
    chunks_expected: int
    chunks_received: int
    payload_ref: Optional[str]
    geo_document: Any
    enrichment_request: Optional[Dict[str, Any]]
    created_at: float
    started_at: Optional[float]
    finished_at: Optional[float]

    @property
    def status(self) -> str:
        return self.state.status


@dataclass
class Job:
    job_id: str
    chunks_expected: int
    created_at: float
    updated_at: float
    state: JobState = field(default_factory=Pending)
    progress: float = 0.0
    chunks_received: int = 0
    payload_ref: Optional[str] = None
    geo_document: Any = None
    enrichment_request: Optional[Dict[str, Any]] = None
    started_at: Optional[float] = None
    finished_at: Optional[float] = None
    evict_at: Optional[float] = None
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def snapshot(self) -> JobSnapshot:
        return JobSnapshot(
            job_id=self.job_id,
            state=self.state,
            progress=self.progress,
            chunks_expected=self.chunks_expected,
            chunks_received=self.chunks_received,
            payload_ref=self.payload_ref,
            geo_document=self.geo_document,
            enrichment_request=self.enrichment_request,
            created_at=self.created_at,
            started_at=self.started_at,
            finished_at=self.finished_at,
        )


@dataclass
class SweepReport:
    evicted: List[str] = field(default_factory=list)
    timed_out: List[str] = field(default_factory=list)
    expired_uploads: List[str] = field(default_factory=list)


class JobRegistry:
    """Table of jobs keyed by job_id; owns every state transition.
    Why available: Background workers write progress here while status requests read it concurrently."""

    def __init__(
        self,
        *,
        eviction_delay_seconds: float = 60.0,
        retention_seconds: float = 3600.0,
        max_processing_seconds: float = 900.0,
        upload_timeout_seconds: float = 3600.0,
        receive_phase_weight: float = RECEIVE_PHASE_WEIGHT,
        clock: Clock = time.monotonic,
    ):
        if not 0 <= receive_phase_weight <= 100:
            raise ValueError("receive_phase_weight must be within [0, 100]")
        self.eviction_delay_seconds = eviction_delay_seconds
        self.retention_seconds = retention_seconds
        self.max_processing_seconds = max_processing_seconds
        self.upload_timeout_seconds = upload_timeout_seconds
        self.receive_phase_weight = receive_phase_weight
        self._clock = clock
        self._lock = threading.Lock()
        self._jobs: Dict[str, Job] = {}

    # -------------------------
    # Lookup
    # -------------------------

    def _job(self, job_id: str) -> Job:
        with self._lock:
            job = self._jobs.get(job_id)
            if job is None:
                raise NotFound(f"Job {job_id} not found", {"jobId": job_id})
            if job.evict_at is not None and self._clock() >= job.evict_at:
                del self._jobs[job_id]
                raise NotFound(f"Job {job_id} not found", {"jobId": job_id})
            return job

    def get(self, job_id: str) -> JobSnapshot:
        job = self._job(job_id)
        with job.lock:
            return job.snapshot()

    def poll(self, job_id: str) -> JobSnapshot:
        """Status read. The first read that observes a terminal state schedules the job's eviction."""
        job = self._job(job_id)
        with job.lock:
            if is_terminal(job.state) and job.evict_at is None:
                job.evict_at = self._clock() + self.eviction_delay_seconds
            return job.snapshot()

    def __len__(self) -> int:
        with self._lock:
            return len(self._jobs)

    # -------------------------
    # Transitions
    # -------------------------

    def create(
        self,
        total_chunks_expected: int,
        *,
        geo_document: Any = None,
        enrichment_request: Optional[Dict[str, Any]] = None,
        payload_ref: Optional[str] = None,
        job_id: Optional[str] = None,
    ) -> str:
        if total_chunks_expected < 0:
            raise InvalidInput("totalChunks must be >= 0", {"totalChunks": total_chunks_expected})
        now = self._clock()
        jid = job_id or new_job_id()
        job = Job(
            job_id=jid,
            chunks_expected=total_chunks_expected,
            created_at=now,
            updated_at=now,
            payload_ref=payload_ref,
            geo_document=geo_document,
            enrichment_request=enrichment_request,
        )
        with self._lock:
            if jid in self._jobs:
                raise InvalidInput(f"Job {jid} already exists", {"jobId": jid})
            self._jobs[jid] = job
        logger.info("Created job %s expecting %d chunks", jid, total_chunks_expected)
        return jid

    def _check_live(self, job: Job) -> None:
        if is_terminal(job.state):
            raise JobAlreadyFinalized(
                f"Job {job.job_id} already {job.state.status}",
                {"jobId": job.job_id, "status": job.state.status},
            )

    def record_chunk(self, job_id: str) -> float:
        """Count one newly received chunk and return the receive-phase progress."""
        job = self._job(job_id)
        with job.lock:
            self._check_live(job)
            if not isinstance(job.state, Pending):
                raise InvalidTransition(
                    f"Job {job_id} is {job.state.status}; chunks are only accepted while pending",
                    {"jobId": job_id, "status": job.state.status},
                )
            if job.chunks_received >= job.chunks_expected:
                raise InvalidInput(
                    f"Job {job_id} already received all {job.chunks_expected} chunks",
                    {"jobId": job_id},
                )
            job.chunks_received += 1
            progress = self.receive_phase_weight * job.chunks_received / job.chunks_expected
            job.progress = max(job.progress, min(progress, self.receive_phase_weight))
            job.updated_at = self._clock()
            return job.progress

    def begin_processing(self, job_id: str) -> JobSnapshot:
        job = self._job(job_id)
        with job.lock:
            self._check_live(job)
            if not isinstance(job.state, Pending):
                raise InvalidTransition(
                    f"Job {job_id} is already {job.state.status}",
                    {"jobId": job_id, "status": job.state.status},
                )
            if job.chunks_received != job.chunks_expected:
                raise IncompleteUpload(
                    "Not all chunks received",
                    {"jobId": job_id, "received": job.chunks_received, "expected": job.chunks_expected},
                )
            now = self._clock()
            job.state = Processing()
            job.progress = max(job.progress, self.receive_phase_weight)
            job.started_at = now
            job.updated_at = now
            logger.info("Job %s processing", job_id)
            return job.snapshot()

    def advance(self, job_id: str, progress: float) -> float:
        """Move progress forward while processing. Lower values than the current one are ignored."""
        if not 0 <= progress <= 100:
            raise InvalidInput("progress must be within [0, 100]", {"progress": progress})
        job = self._job(job_id)
        with job.lock:
            self._check_live(job)
            if not isinstance(job.state, Processing):
                raise InvalidTransition(
                    f"Job {job_id} is {job.state.status}; progress only advances while processing",
                    {"jobId": job_id, "status": job.state.status},
                )
            job.progress = max(job.progress, progress)
            job.updated_at = self._clock()
            return job.progress

    def complete(self, job_id: str, result: Any) -> JobSnapshot:
        job = self._job(job_id)
        with job.lock:
            self._check_live(job)
            if not isinstance(job.state, Processing):
                raise InvalidTransition(
                    f"Job {job_id} is {job.state.status}; only a processing job can complete",
                    {"jobId": job_id, "status": job.state.status},
                )
            self._finish(job, Completed(result=result))
            job.progress = 100.0
            logger.info("Job %s completed", job_id)
            return job.snapshot()

    def fail(self, job_id: str, message: str, code: str = ProcessingFailed.error_code) -> JobSnapshot:
        job = self._job(job_id)
        with job.lock:
            self._check_live(job)
            self._finish(job, Error(message=message, code=code))
            logger.warning("Job %s failed (%s): %s", job_id, code, message)
            return job.snapshot()

    def _finish(self, job: Job, state: JobState) -> None:
        now = self._clock()
        job.state = state
        job.finished_at = now
        job.updated_at = now
        # inputs are no longer needed once the outcome is known
        job.geo_document = None
        job.enrichment_request = None

    # -------------------------
    # Eviction / watchdog
    # -------------------------

    def sweep(self, now: Optional[float] = None) -> SweepReport:
        """Evict polled terminal jobs past their eviction time and unpolled ones past retention;
        fail jobs stuck in processing (timeout) or waiting for chunks (upload expired)."""
        now = self._clock() if now is None else now
        report = SweepReport()
        with self._lock:
            jobs = list(self._jobs.values())

        for job in jobs:
            with job.lock:
                state = job.state
                if is_terminal(state):
                    if job.evict_at is not None:
                        due = job.evict_at
                    else:
                        finished = job.finished_at if job.finished_at is not None else now
                        due = finished + self.retention_seconds
                    if now >= due:
                        report.evicted.append(job.job_id)
                    continue
                if isinstance(state, Processing) and job.started_at is not None and now - job.started_at > self.max_processing_seconds:
                    self._finish(job, Error(
                        message=f"Processing exceeded the {self.max_processing_seconds:g}s limit",
                        code=Timeout.error_code,
                    ))
                    report.timed_out.append(job.job_id)
                elif isinstance(state, Pending) and now - job.updated_at > self.upload_timeout_seconds:
                    self._finish(job, Error(
                        message=f"No chunk received for {self.upload_timeout_seconds:g}s; upload expired",
                        code=UploadExpired.error_code,
                    ))
                    report.expired_uploads.append(job.job_id)

        if report.evicted:
            with self._lock:
                for job_id in report.evicted:
                    self._jobs.pop(job_id, None)
        for job_id in report.timed_out:
            logger.warning("Watchdog failed job %s: processing timeout", job_id)
        for job_id in report.expired_uploads:
            logger.warning("Job %s failed: upload expired", job_id)
        return report
