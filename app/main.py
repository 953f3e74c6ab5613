import logging
import time
from contextlib import asynccontextmanager
from typing import Any, Dict, Optional

from fastapi import (
    BackgroundTasks,
    FastAPI,
    Query,
    Request,
)

from app.core.config import Settings, settings as default_settings
from app.models.schemas import (
    JobAcceptedResponse,
    JobChunkRequest,
    JobChunkResponse,
    JobFinalizeRequest,
    JobStartRequest,
    JobStatusResponse,
    LimitsResponse,
    ProcessRequest,
    UploadChunkRequest,
    UploadChunkResponse,
    UploadFinalizeRequest,
    ValidateRequest,
    ValidateResponse,
)

from app.ingest.codec import Chunk, ChunkMetadata, decode_chunk_payload, new_upload_id
from app.ingest.errors import InvalidTransition, JobAlreadyFinalized, PipelineError
from app.ingest.jobs import Completed, Error, JobRegistry, Pending
from app.ingest.record_stats import Aggregator, Enricher, aggregate, enrich
from app.ingest.store import ChunkStore, Clock
from app.ingest.strategy import StrategyPolicy
from app.ingest.sweeper import Sweeper
from app.ingest.validation import require_valid, validate_geo_document, validate_records
from app.ingest.worker import ProcessingOrchestrator, stamp

from app.guardrails.errors import as_http_500, check_request_size, pipeline_error_handler
from app.guardrails.rate_limit import SimpleRateLimiter
from app.observability.log_config import configure_logging
from app.observability.middleware import RequestTimingMiddleware

logger = logging.getLogger(__name__)


def create_app(
    settings: Optional[Settings] = None,
    *,
    aggregator: Aggregator = aggregate,
    enricher: Enricher = enrich,
    clock: Clock = time.monotonic,
    run_sweeper: bool = True,
) -> FastAPI:
    """Composition root: builds the chunk store, job registry, orchestrator and sweeper and wires them into the routes.
    Why available: Tests and deployments get their own isolated tables, clock and collaborators instead of module-level globals."""
    settings = settings or default_settings
    configure_logging(settings.log_level)

    store = ChunkStore(upload_timeout_seconds=settings.upload_timeout_seconds, clock=clock)
    registry = JobRegistry(
        eviction_delay_seconds=settings.job_eviction_delay_seconds,
        retention_seconds=settings.job_retention_seconds,
        max_processing_seconds=settings.job_max_processing_seconds,
        upload_timeout_seconds=settings.upload_timeout_seconds,
        receive_phase_weight=settings.receive_phase_weight,
        clock=clock,
    )
    orchestrator = ProcessingOrchestrator(registry, aggregator=aggregator, enricher=enricher)
    sweeper = Sweeper(store, registry, interval_seconds=settings.sweep_interval_seconds)
    rate_limiter = SimpleRateLimiter(
        max_requests=settings.rate_limit_requests,
        window_seconds=settings.rate_limit_window_seconds,
    )
    policy = StrategyPolicy(
        sync_max_bytes=settings.sync_max_bytes,
        background_max_bytes=settings.background_max_bytes,
    )

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if run_sweeper:
            sweeper.start()
        yield
        sweeper.stop()

    app = FastAPI(title="Records Ingestion Service", lifespan=lifespan)
    app.add_middleware(RequestTimingMiddleware)
    app.add_exception_handler(PipelineError, pipeline_error_handler)

    app.state.settings = settings
    app.state.store = store
    app.state.registry = registry
    app.state.orchestrator = orchestrator
    app.state.sweeper = sweeper
    app.state.policy = policy

    def _start_background(
        background_tasks: BackgroundTasks,
        job_id: str,
        document: Any,
        geo_document: Any,
        enrichment_request: Optional[Dict[str, Any]],
    ) -> None:
        background_tasks.add_task(
            orchestrator.run_in_background, job_id, document, geo_document, enrichment_request
        )

    # -------------------------
    # Root
    # -------------------------

    @app.get("/")
    def root():
        return {"app": "Records Ingestion Service", "docs": "/docs"}

    @app.get("/health")
    def health():
        """Returns 200 OK with table sizes. Used by load balancers and probes."""
        return {"status": "ok", "pendingUploads": len(store), "jobs": len(registry)}

    @app.get("/limits", response_model=LimitsResponse)
    def limits(request: Request):
        """Returns chunk size, strategy thresholds and timeouts so producers can follow the server's policy."""
        rate_limiter.check(request)
        return LimitsResponse(
            chunk_size_bytes=settings.chunk_size_bytes,
            max_chunk_request_kb=settings.max_chunk_request_kb,
            sync_max_bytes=policy.sync_max_bytes,
            background_max_bytes=policy.background_max_bytes,
            upload_timeout_seconds=settings.upload_timeout_seconds,
            job_eviction_delay_seconds=settings.job_eviction_delay_seconds,
            job_max_processing_seconds=settings.job_max_processing_seconds,
            rate_limit_requests=settings.rate_limit_requests,
            rate_limit_window_seconds=settings.rate_limit_window_seconds,
        )

    # -------------------------
    # Standalone chunked upload
    # -------------------------

    @app.post("/upload/chunk", response_model=UploadChunkResponse)
    def upload_chunk(req: UploadChunkRequest, request: Request):
        """Stores one chunk of a standalone upload. Re-sending an index overwrites it; complete=true once every slot is filled."""
        rate_limiter.check(request)
        check_request_size(request, settings.max_chunk_request_kb)

        metadata = None
        if req.metadata is not None:
            metadata = ChunkMetadata(
                name=req.metadata.name,
                content_type=req.metadata.content_type,
                total_size=req.metadata.total_size,
            )
        chunk = Chunk(
            upload_id=req.upload_id,
            index=req.chunk_index,
            total_chunks=req.total_chunks,
            payload=decode_chunk_payload(req.chunk, req.encoding),
            metadata=metadata,
        )
        result = store.receive(req.upload_id, chunk, metadata)
        return UploadChunkResponse(
            upload_id=req.upload_id,
            complete=result.complete,
            received_count=result.received_count,
            total_chunks=result.total_chunks,
        )

    @app.get("/upload/status", response_model=UploadChunkResponse)
    def upload_status(request: Request, upload_id: str = Query(..., alias="uploadId")):
        rate_limiter.check(request)
        result = store.status(upload_id)
        return UploadChunkResponse(
            upload_id=upload_id,
            complete=result.complete,
            received_count=result.received_count,
            total_chunks=result.total_chunks,
        )

    @app.post("/upload/finalize", response_model=JobAcceptedResponse, status_code=202)
    def upload_finalize(req: UploadFinalizeRequest, request: Request, background_tasks: BackgroundTasks):
        """Takes a completed upload (at most once) and processes it in the background under a new job."""
        rate_limiter.check(request)
        require_valid(None, req.geo_document, geo_only=True)

        completed = store.take_completed(req.upload_id)
        job_id = registry.create(
            0,
            geo_document=req.geo_document,
            enrichment_request=req.enrichment_request,
            payload_ref=completed.upload_id,
        )
        registry.begin_processing(job_id)
        _start_background(background_tasks, job_id, completed.payload, req.geo_document, req.enrichment_request)
        return JobAcceptedResponse(job_id=job_id, status="processing", message="Processing started in background")

    # -------------------------
    # Job-tracked chunked processing
    # -------------------------

    @app.post("/job/start", response_model=JobAcceptedResponse)
    def job_start(req: JobStartRequest, request: Request):
        """Creates a pending job expecting totalChunks chunks of the record document."""
        rate_limiter.check(request)
        require_valid(None, req.geo_document, geo_only=True)

        job_id = registry.create(
            req.total_chunks,
            geo_document=req.geo_document,
            enrichment_request=req.enrichment_request,
            payload_ref=new_upload_id(),
        )
        return JobAcceptedResponse(job_id=job_id, status="pending")

    @app.post("/job/chunk", response_model=JobChunkResponse)
    def job_chunk(req: JobChunkRequest, request: Request):
        """Stores one chunk for a pending job and returns receive-phase progress (capped at the receive weight)."""
        rate_limiter.check(request)
        check_request_size(request, settings.max_chunk_request_kb)

        job = registry.get(req.job_id)
        match job.state:
            case Pending():
                pass
            case Completed() | Error():
                raise JobAlreadyFinalized(f"Job {req.job_id} already {job.status}", {"jobId": req.job_id})
            case _:
                raise InvalidTransition(
                    f"Job {req.job_id} is {job.status}; chunks are only accepted while pending",
                    {"jobId": req.job_id},
                )

        chunk = Chunk(
            upload_id=job.payload_ref,
            index=req.chunk_index,
            total_chunks=job.chunks_expected,
            payload=decode_chunk_payload(req.payload_chunk, req.encoding),
        )
        result = store.receive(job.payload_ref, chunk)
        if result.new_slot:
            progress = registry.record_chunk(req.job_id)
            logger.info("Received chunk %d/%d for job %s", req.chunk_index + 1, job.chunks_expected, req.job_id)
        else:
            progress = registry.get(req.job_id).progress
        return JobChunkResponse(
            job_id=req.job_id,
            progress=progress,
            chunks_received=result.received_count,
            total_chunks=result.total_chunks,
        )

    @app.post("/job/finalize", response_model=JobAcceptedResponse, status_code=202)
    def job_finalize(req: JobFinalizeRequest, request: Request, background_tasks: BackgroundTasks):
        """Moves a fully received job to processing and hands the reassembled document to the background worker.
        Fails with 400 (incomplete_upload) and leaves the job pending if chunks are missing."""
        rate_limiter.check(request)

        job = registry.begin_processing(req.job_id)
        try:
            completed = store.take_completed(job.payload_ref)
        except PipelineError as e:
            store.discard(job.payload_ref)
            registry.fail(req.job_id, e.message, e.error_code)
            raise
        _start_background(background_tasks, req.job_id, completed.payload, job.geo_document, job.enrichment_request)
        return JobAcceptedResponse(job_id=req.job_id, status="processing", message="Processing started in background")

    @app.get("/job/status", response_model=JobStatusResponse, response_model_exclude_none=True)
    def job_status(request: Request, job_id: str = Query(..., alias="jobId")):
        """Returns status and progress; result or error once terminal. The job is evicted a fixed delay after the first terminal read."""
        rate_limiter.check(request)

        job = registry.poll(job_id)
        response = JobStatusResponse(
            job_id=job.job_id,
            status=job.status,
            progress=job.progress,
            chunks_received=job.chunks_received,
            total_chunks=job.chunks_expected,
        )
        match job.state:
            case Completed(result=result):
                response.result = result
            case Error(message=message, code=code):
                response.error = message
                response.error_code = code
        return response

    # -------------------------
    # Single-request paths
    # -------------------------

    @app.post("/process/sync")
    def process_sync(req: ProcessRequest, request: Request):
        """Aggregates (and enriches) a small document within the request. Collaborator failures return 500 with the message attached."""
        rate_limiter.check(request)
        require_valid(req.document, req.geo_document)
        try:
            summary = orchestrator.run_synchronous(req.document, req.geo_document, req.enrichment_request)
        except PipelineError:
            raise
        except Exception as e:
            raise as_http_500(e)
        return stamp(summary, "sync")

    @app.post("/process/background", response_model=JobAcceptedResponse, status_code=202)
    def process_background(req: ProcessRequest, request: Request, background_tasks: BackgroundTasks):
        """Accepts a medium document in one request and defers the heavy work; poll /job/status for the result."""
        rate_limiter.check(request)
        require_valid(req.document, req.geo_document)

        job_id = registry.create(0, geo_document=req.geo_document, enrichment_request=req.enrichment_request)
        registry.begin_processing(job_id)
        _start_background(background_tasks, job_id, req.document, req.geo_document, req.enrichment_request)
        return JobAcceptedResponse(job_id=job_id, status="processing", message="Processing started in background")

    @app.post("/validate", response_model=ValidateResponse, response_model_exclude_none=True)
    def validate(req: ValidateRequest, request: Request):
        """Checks document shapes without processing them, to help diagnose rejected uploads."""
        rate_limiter.check(request)
        out: Dict[str, Any] = {}
        if req.document is not None:
            out["document"] = validate_records(req.document).to_dict()
        if req.geo_document is not None:
            out["geo_document"] = validate_geo_document(req.geo_document).to_dict()
        valid = bool(out) and all(r["valid"] for r in out.values())
        return ValidateResponse(valid=valid, **out)

    return app


app = create_app()
