"""
Producer-side chunked uploader.

Splits a payload with the chunk codec and posts the chunks to the service, either
to a standalone upload (/upload/chunk) or to a pending job (/job/chunk). Chunks go
out sequentially by default; max_workers > 1 sends them through a bounded thread
pool, which is safe because the server reassembles by index.
"""
import logging
import os
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional

import requests

from app.core.config import settings
from app.ingest.codec import ENCODING_BASE64, Chunk, ChunkMetadata, encode_chunk_payload, split

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[float], None]


class UploadError(Exception):
    """A chunk request was rejected or the upload ended without the server confirming completion."""

    def __init__(self, message: str, status_code: Optional[int] = None, detail: Any = None):
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


@dataclass
class UploadReceipt:
    upload_id: str
    total_chunks: int
    complete: bool
    responses: List[Dict[str, Any]]


def _json_or_text(resp) -> Any:
    try:
        return resp.json()
    except ValueError:
        return resp.text


def post_json(session, url: str, payload: Dict[str, Any], timeout: float) -> Dict[str, Any]:
    """POST JSON and return the decoded body; non-2xx raises UploadError carrying the server's detail."""
    resp = session.post(url, json=payload, timeout=timeout)
    if resp.status_code >= 400:
        body = _json_or_text(resp)
        detail = body.get("detail") if isinstance(body, dict) else body
        raise UploadError(f"POST {url} failed with {resp.status_code}: {detail}", resp.status_code, body)
    return resp.json()


class UploadClient:
    """Drives a chunked upload against the ingestion service.
    Why available: Producers above the request-size ceiling cannot send a document in one request."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        *,
        chunk_size: int = settings.chunk_size_bytes,
        max_workers: int = 1,
        on_progress: Optional[ProgressCallback] = None,
        session=None,
        timeout: float = 60.0,
    ):
        if max_workers < 1:
            raise ValueError("max_workers must be >= 1")
        self.base_url = (base_url if base_url is not None else settings.api_base).rstrip("/")
        self.chunk_size = chunk_size
        self.max_workers = max_workers
        self.on_progress = on_progress
        self.session = session or requests.Session()
        self.timeout = timeout

    def _url(self, path: str) -> str:
        return f"{self.base_url}{path}"

    def _send_all(self, chunks: List[Chunk], send_one: Callable[[Chunk], Dict[str, Any]]) -> List[Dict[str, Any]]:
        """Send every chunk, reporting progress after each acknowledgement. Returns responses in completion order."""
        total = len(chunks)
        responses: List[Dict[str, Any]] = []

        def acked(body: Dict[str, Any]) -> None:
            responses.append(body)
            if self.on_progress:
                self.on_progress(len(responses) / total * 100)

        if self.max_workers == 1 or total <= 1:
            for chunk in chunks:
                acked(send_one(chunk))
            return responses

        with ThreadPoolExecutor(max_workers=self.max_workers) as pool:
            for body in pool.map(send_one, chunks):
                acked(body)
        return responses

    def upload_bytes(
        self,
        payload: bytes,
        name: str = "document.json",
        content_type: str = "application/json",
        upload_id: Optional[str] = None,
    ) -> UploadReceipt:
        """Upload payload to /upload/chunk. Metadata goes with chunk 0 only."""
        if not payload:
            raise UploadError("refusing to upload an empty payload")
        metadata = ChunkMetadata(name=name, content_type=content_type, total_size=len(payload))
        chunks = split(payload, self.chunk_size, upload_id=upload_id, metadata=metadata)
        logger.info("Uploading %s (%d bytes) as %d chunks", name, len(payload), len(chunks))

        def send_one(chunk: Chunk) -> Dict[str, Any]:
            body: Dict[str, Any] = {
                "uploadId": chunk.upload_id,
                "chunkIndex": chunk.index,
                "totalChunks": chunk.total_chunks,
                "chunk": encode_chunk_payload(chunk.payload, ENCODING_BASE64),
                "encoding": ENCODING_BASE64,
            }
            if chunk.index == 0:
                body["metadata"] = metadata.to_wire()
            return post_json(self.session, self._url("/upload/chunk"), body, self.timeout)

        responses = self._send_all(chunks, send_one)
        complete = any(r.get("complete") for r in responses)
        if not complete:
            raise UploadError(f"Upload {chunks[0].upload_id} finished sending but the server never reported completion")
        return UploadReceipt(
            upload_id=chunks[0].upload_id,
            total_chunks=len(chunks),
            complete=complete,
            responses=responses,
        )

    def upload_file(self, path: str, content_type: str = "application/json") -> UploadReceipt:
        with open(path, "rb") as f:
            payload = f.read()
        return self.upload_bytes(payload, name=os.path.basename(path), content_type=content_type)

    def upload_to_job(self, job_id: str, payload: bytes) -> Dict[str, Any]:
        """Send payload chunks to a pending job via /job/chunk and return the acknowledgement with the highest chunksReceived.
        The job must have been started with the same chunk count (see chunk_count)."""
        chunks = split(payload, self.chunk_size, upload_id=job_id)

        def send_one(chunk: Chunk) -> Dict[str, Any]:
            body = {
                "jobId": job_id,
                "chunkIndex": chunk.index,
                "payloadChunk": encode_chunk_payload(chunk.payload, ENCODING_BASE64),
                "encoding": ENCODING_BASE64,
            }
            return post_json(self.session, self._url("/job/chunk"), body, self.timeout)

        responses = self._send_all(chunks, send_one)
        return max(responses, key=lambda r: r.get("chunksReceived", 0))
