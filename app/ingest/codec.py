"""Chunk codec: split a payload into ordered, size-bounded chunks and put them back together."""
import base64
import binascii
import math
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Mapping, Optional

from app.ingest.errors import IncompleteUpload, InvalidInput

ENCODING_BASE64 = "base64"
ENCODING_TEXT = "text"


@dataclass(frozen=True)
class ChunkMetadata:
    """Describes the whole upload; travels with the first chunk."""

    name: str
    content_type: str
    total_size: int

    def to_wire(self) -> Dict[str, Any]:
        return {"name": self.name, "contentType": self.content_type, "totalSize": self.total_size}


@dataclass(frozen=True)
class Chunk:
    """One slice of a larger payload, tagged with its position and the total count.
    Why available: Unit exchanged between the producer (UploadClient) and the server (ChunkStore)."""

    upload_id: str
    index: int
    total_chunks: int
    payload: bytes
    metadata: Optional[ChunkMetadata] = None

    def __post_init__(self):
        if self.total_chunks <= 0:
            raise InvalidInput("total_chunks must be > 0", {"totalChunks": self.total_chunks})
        if not 0 <= self.index < self.total_chunks:
            raise InvalidInput(
                f"chunk index {self.index} out of range for {self.total_chunks} chunks",
                {"chunkIndex": self.index, "totalChunks": self.total_chunks},
            )


def new_upload_id() -> str:
    return f"upload_{uuid.uuid4().hex}"


def new_job_id() -> str:
    return f"job_{uuid.uuid4().hex}"


def chunk_count(size: int, chunk_size_bytes: int) -> int:
    """Number of chunks split() produces for a payload of `size` bytes."""
    if chunk_size_bytes <= 0:
        raise InvalidInput("chunk_size_bytes must be > 0", {"chunkSizeBytes": chunk_size_bytes})
    return math.ceil(size / chunk_size_bytes)


def split(
    payload: bytes,
    chunk_size_bytes: int,
    upload_id: Optional[str] = None,
    metadata: Optional[ChunkMetadata] = None,
) -> List[Chunk]:
    """Split payload into ceil(len/chunk_size_bytes) chunks in index order; the last one may be shorter.
    Metadata is attached to every chunk so each one is self-describing; the client only transmits it with chunk 0.
    Why available: Producer side of the chunking protocol; deterministic so a retried upload sends identical chunks."""
    total = chunk_count(len(payload), chunk_size_bytes)
    uid = upload_id or new_upload_id()
    return [
        Chunk(
            upload_id=uid,
            index=i,
            total_chunks=total,
            payload=bytes(payload[i * chunk_size_bytes:(i + 1) * chunk_size_bytes]),
            metadata=metadata,
        )
        for i in range(total)
    ]


def reassemble(chunks: Mapping[int, Optional[bytes]], total_chunks: int) -> bytes:
    """Concatenate chunk payloads in strict index order, independent of arrival order.
    Raises IncompleteUpload listing the missing indices if any slot in [0, total_chunks) is absent."""
    if total_chunks < 0:
        raise InvalidInput("total_chunks must be >= 0", {"totalChunks": total_chunks})
    missing = [i for i in range(total_chunks) if chunks.get(i) is None]
    if missing:
        raise IncompleteUpload(
            f"{len(missing)} of {total_chunks} chunks missing",
            {"missing": missing[:50], "totalChunks": total_chunks},
        )
    return b"".join(chunks[i] for i in range(total_chunks))


def encode_chunk_payload(data: bytes, encoding: str = ENCODING_BASE64) -> str:
    """Render chunk bytes as a JSON-safe string."""
    if encoding == ENCODING_BASE64:
        return base64.b64encode(data).decode("ascii")
    if encoding == ENCODING_TEXT:
        return data.decode("utf-8")
    raise InvalidInput(f"unsupported chunk encoding: {encoding}")


def decode_chunk_payload(data: str, encoding: str = ENCODING_BASE64) -> bytes:
    if encoding == ENCODING_BASE64:
        try:
            return base64.b64decode(data.encode("ascii"), validate=True)
        except (binascii.Error, UnicodeEncodeError) as e:
            raise InvalidInput(f"chunk is not valid base64: {e}")
    if encoding == ENCODING_TEXT:
        return data.encode("utf-8")
    raise InvalidInput(f"unsupported chunk encoding: {encoding}")
