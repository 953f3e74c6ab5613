"""
Server-side chunk buffer: accumulates the chunks of one logical upload until every
slot is filled, then hands the reassembled payload out exactly once.

Uploads that never complete are evicted by sweep_expired() after the configured
upload timeout; their ids are remembered so later queries report UploadExpired
instead of NotFound. Ids of taken uploads are remembered too, so a late chunk
cannot re-create an upload that was already handed out.
"""
import logging
import threading
import time
from collections import OrderedDict
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional

from app.ingest.codec import Chunk, ChunkMetadata, reassemble
from app.ingest.errors import IncompleteUpload, InvalidInput, InvalidTransition, NotFound, UploadExpired

logger = logging.getLogger(__name__)

Clock = Callable[[], float]

ID_MEMORY_MAX = 1000


@dataclass
class ReceiveResult:
    complete: bool
    received_count: int
    total_chunks: int
    new_slot: bool


@dataclass
class CompletedUpload:
    upload_id: str
    payload: bytes
    total_chunks: int
    metadata: Optional[ChunkMetadata] = None


@dataclass
class PendingUpload:
    """Slot table for one upload. Only touched while holding its lock."""

    upload_id: str
    total_chunks: int
    created_at: float
    updated_at: float
    metadata: Optional[ChunkMetadata] = None
    slots: List[Optional[bytes]] = field(default_factory=list)
    received_count: int = 0
    lock: threading.Lock = field(default_factory=threading.Lock, repr=False)

    def __post_init__(self):
        if not self.slots:
            self.slots = [None] * self.total_chunks

    @property
    def complete(self) -> bool:
        return self.received_count == self.total_chunks


class ChunkStore:
    """Keyed buffer of PendingUploads with at-most-once reassembly.
    Why available: Lets a payload larger than the request ceiling arrive over many requests, in any order."""

    def __init__(self, upload_timeout_seconds: float, clock: Clock = time.monotonic):
        self.upload_timeout_seconds = upload_timeout_seconds
        self._clock = clock
        self._lock = threading.Lock()
        self._uploads: Dict[str, PendingUpload] = {}
        self._expired: "OrderedDict[str, float]" = OrderedDict()
        self._taken: "OrderedDict[str, float]" = OrderedDict()

    def _lookup(self, upload_id: str) -> PendingUpload:
        with self._lock:
            upload = self._uploads.get(upload_id)
            if upload is None:
                if upload_id in self._expired:
                    raise UploadExpired(
                        f"Upload {upload_id} expired before all chunks arrived",
                        {"uploadId": upload_id},
                    )
                raise NotFound(f"Upload {upload_id} not found", {"uploadId": upload_id})
            return upload

    def receive(self, upload_id: str, chunk: Chunk, metadata: Optional[ChunkMetadata] = None) -> ReceiveResult:
        """Store one chunk. The first chunk of an unseen upload allocates its slot table; re-sending an index overwrites it."""
        while True:
            upload = self._get_or_allocate(upload_id, chunk, metadata)
            with upload.lock:
                with self._lock:
                    if self._uploads.get(upload_id) is not upload:
                        # taken or swept while we waited for the lock
                        continue
                return self._write(upload, chunk, metadata)

    def _get_or_allocate(self, upload_id: str, chunk: Chunk, metadata: Optional[ChunkMetadata]) -> PendingUpload:
        now = self._clock()
        with self._lock:
            if upload_id in self._expired:
                raise UploadExpired(
                    f"Upload {upload_id} expired before all chunks arrived",
                    {"uploadId": upload_id},
                )
            if upload_id in self._taken:
                raise InvalidTransition(
                    f"Upload {upload_id} was already reassembled; late chunks are refused",
                    {"uploadId": upload_id},
                )
            upload = self._uploads.get(upload_id)
            if upload is None:
                upload = PendingUpload(
                    upload_id=upload_id,
                    total_chunks=chunk.total_chunks,
                    created_at=now,
                    updated_at=now,
                    metadata=metadata or chunk.metadata,
                )
                self._uploads[upload_id] = upload
                logger.debug("Allocated upload %s with %d slots", upload_id, chunk.total_chunks)
            return upload

    def _write(self, upload: PendingUpload, chunk: Chunk, metadata: Optional[ChunkMetadata]) -> ReceiveResult:
        """Fill one slot. Caller holds upload.lock."""
        upload_id = upload.upload_id
        if chunk.total_chunks != upload.total_chunks:
            raise InvalidInput(
                f"totalChunks {chunk.total_chunks} does not match {upload.total_chunks} declared for upload {upload_id}",
                {"uploadId": upload_id, "totalChunks": chunk.total_chunks, "expected": upload.total_chunks},
            )
        new_slot = upload.slots[chunk.index] is None
        upload.slots[chunk.index] = chunk.payload
        if new_slot:
            upload.received_count += 1
        if upload.metadata is None:
            upload.metadata = metadata or chunk.metadata
        upload.updated_at = self._clock()
        result = ReceiveResult(
            complete=upload.complete,
            received_count=upload.received_count,
            total_chunks=upload.total_chunks,
            new_slot=new_slot,
        )
        if result.complete and new_slot:
            logger.info("Upload %s complete (%d chunks)", upload_id, result.total_chunks)
        return result

    def status(self, upload_id: str) -> ReceiveResult:
        upload = self._lookup(upload_id)
        with upload.lock:
            return ReceiveResult(
                complete=upload.complete,
                received_count=upload.received_count,
                total_chunks=upload.total_chunks,
                new_slot=False,
            )

    def take_completed(self, upload_id: str) -> CompletedUpload:
        """Reassemble and remove a complete upload. A second call for the same id raises NotFound."""
        upload = self._lookup(upload_id)
        with upload.lock:
            if not upload.complete:
                raise IncompleteUpload(
                    f"Upload {upload_id} has {upload.received_count} of {upload.total_chunks} chunks",
                    {"uploadId": upload_id, "received": upload.received_count, "expected": upload.total_chunks},
                )
            with self._lock:
                # another thread may have taken it between _lookup and acquiring the upload lock
                if self._uploads.get(upload_id) is not upload:
                    raise NotFound(f"Upload {upload_id} not found", {"uploadId": upload_id})
                del self._uploads[upload_id]
                self._remember(self._taken, upload_id, self._clock())
            payload = reassemble(dict(enumerate(upload.slots)), upload.total_chunks)
            upload.slots = []

        meta = upload.metadata
        if meta is not None and meta.total_size >= 0 and meta.total_size != len(payload):
            raise InvalidInput(
                f"Upload {upload_id} reassembled to {len(payload)} bytes, metadata declared {meta.total_size}",
                {"uploadId": upload_id, "size": len(payload), "declared": meta.total_size},
            )
        return CompletedUpload(upload_id=upload_id, payload=payload, total_chunks=upload.total_chunks, metadata=meta)

    def discard(self, upload_id: str) -> bool:
        with self._lock:
            return self._uploads.pop(upload_id, None) is not None

    def sweep_expired(self, now: Optional[float] = None) -> List[str]:
        """Evict uploads with no chunk activity for longer than upload_timeout_seconds. Returns evicted ids."""
        now = self._clock() if now is None else now
        evicted: List[str] = []
        with self._lock:
            for upload_id, upload in list(self._uploads.items()):
                if now - upload.updated_at > self.upload_timeout_seconds:
                    del self._uploads[upload_id]
                    self._remember(self._expired, upload_id, now)
                    evicted.append(upload_id)
        for upload_id in evicted:
            logger.warning("Evicted stale upload %s (no activity for > %ss)", upload_id, self.upload_timeout_seconds)
        return evicted

    @staticmethod
    def _remember(memory: "OrderedDict[str, float]", upload_id: str, now: float) -> None:
        while len(memory) >= ID_MEMORY_MAX and memory:
            memory.popitem(last=False)
        memory[upload_id] = now

    def __len__(self) -> int:
        with self._lock:
            return len(self._uploads)
