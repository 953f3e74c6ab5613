from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Any, Dict, List, Literal, Optional


class CamelModel(BaseModel):
    """Base for wire models: snake_case in Python, camelCase on the wire (both accepted on input)."""

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


ChunkEncoding = Literal["base64", "text"]
JobStatus = Literal["pending", "processing", "completed", "error"]


class ChunkMetadataModel(CamelModel):
    """Describes the whole upload; sent with the first chunk. Why available: Lets the server verify the reassembled size."""

    name: str = Field(..., min_length=1)
    content_type: str = Field("application/json")
    total_size: int = Field(..., ge=0, description="Size of the complete payload in bytes")


class UploadChunkRequest(CamelModel):
    upload_id: str = Field(..., min_length=1, max_length=128)
    chunk_index: int = Field(..., ge=0)
    total_chunks: int = Field(..., gt=0)
    chunk: str = Field(..., description="Chunk payload, encoded per `encoding`")
    encoding: ChunkEncoding = "base64"
    metadata: Optional[ChunkMetadataModel] = None


class UploadChunkResponse(CamelModel):
    upload_id: str
    complete: bool
    received_count: int = Field(..., ge=0)
    total_chunks: int = Field(..., gt=0)


class UploadFinalizeRequest(CamelModel):
    """Turn a completed standalone upload into a background job."""

    upload_id: str = Field(..., min_length=1)
    geo_document: Any
    enrichment_request: Optional[Dict[str, Any]] = None


class JobStartRequest(CamelModel):
    total_chunks: int = Field(..., gt=0)
    geo_document: Any
    enrichment_request: Optional[Dict[str, Any]] = None


class JobChunkRequest(CamelModel):
    job_id: str = Field(..., min_length=1)
    chunk_index: int = Field(..., ge=0)
    payload_chunk: str
    encoding: ChunkEncoding = "base64"


class JobChunkResponse(CamelModel):
    job_id: str
    progress: float = Field(..., ge=0, le=100)
    chunks_received: int = Field(..., ge=0)
    total_chunks: int = Field(..., ge=0)


class JobFinalizeRequest(CamelModel):
    job_id: str = Field(..., min_length=1)


class JobAcceptedResponse(CamelModel):
    """Response for job start / finalize / background submit. Why available: Clients poll /job/status with job_id until terminal."""

    job_id: str
    status: JobStatus
    message: Optional[str] = None


class JobStatusResponse(CamelModel):
    """Response for GET /job/status: state, progress, and result or error once terminal."""

    job_id: str
    status: JobStatus
    progress: float = Field(..., ge=0, le=100)
    chunks_received: int = 0
    total_chunks: int = 0
    result: Optional[Any] = None
    error: Optional[str] = None
    error_code: Optional[str] = None


class ProcessRequest(CamelModel):
    """Body for /process/sync and /process/background: the record document plus the boundary document."""

    document: Any
    geo_document: Any
    enrichment_request: Optional[Dict[str, Any]] = None


class ValidateRequest(CamelModel):
    document: Optional[Any] = None
    geo_document: Optional[Any] = None


class ValidationReportModel(CamelModel):
    valid: bool
    errors: List[str] = Field(default_factory=list)
    warnings: List[str] = Field(default_factory=list)
    count: int = 0


class ValidateResponse(CamelModel):
    valid: bool
    document: Optional[ValidationReportModel] = None
    geo_document: Optional[ValidationReportModel] = None


class LimitsResponse(CamelModel):
    """Response for GET /limits. Why available: Lets producers size chunks and pick a strategy with the server's own policy."""

    chunk_size_bytes: int
    max_chunk_request_kb: int
    sync_max_bytes: int
    background_max_bytes: int
    upload_timeout_seconds: float
    job_eviction_delay_seconds: float
    job_max_processing_seconds: float
    rate_limit_requests: int
    rate_limit_window_seconds: int
