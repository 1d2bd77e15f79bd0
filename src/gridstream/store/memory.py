"""In-memory chunked store for gridstream.

Implements the ChunkStore protocol with dictionaries laid out like a
GridFS bucket: one ``files`` mapping of file documents and one ``chunks``
mapping of chunk lists, both keyed by ``(bucket, file_id)``.

Chunks are stored as they fill, before the file document exists, the way
GridFS writes them. A file is only visible through :meth:`exists` and
:meth:`find` once its document has been written by ``close()``.
"""

import asyncio
import hashlib
import logging
from datetime import datetime, timezone
from typing import Any

from bson import ObjectId

from gridstream.models import GridInfo

logger = logging.getLogger(__name__)


class MemoryStoreError(Exception):
    """Raised when the memory store cannot fulfill a request."""


class MemoryChunkSink:
    """A chunked write into a :class:`MemoryChunkStore`."""

    def __init__(
        self,
        store: "MemoryChunkStore",
        bucket: str,
        filename: str,
        chunk_size: int,
        content_type: str,
        metadata: Any,
    ) -> None:
        self.file_id = ObjectId()
        self._store = store
        self._bucket = bucket
        self._filename = filename
        self._chunk_size = chunk_size
        self._content_type = content_type
        self._metadata = metadata
        self._buffer = bytearray()
        self._md5 = hashlib.md5()
        self._length = 0
        self._closed = False

    @property
    def _key(self) -> tuple[str, Any]:
        return (self._bucket, self.file_id)

    async def write(self, data: bytes) -> None:
        if self._closed:
            raise MemoryStoreError("Cannot write to a closed sink")
        # Yield like a network write would
        await asyncio.sleep(0)
        self._store._check_fault(len(data))
        self._md5.update(data)
        self._length += len(data)
        self._buffer.extend(data)
        while len(self._buffer) >= self._chunk_size:
            self._flush(self._chunk_size)

    def _flush(self, size: int) -> None:
        piece = bytes(self._buffer[:size])
        del self._buffer[:size]
        self._store._chunks.setdefault(self._key, []).append(piece)

    async def close(self) -> GridInfo:
        if self._closed:
            raise MemoryStoreError("Sink already closed")
        await asyncio.sleep(0)
        if self._buffer:
            self._flush(len(self._buffer))
        self._closed = True
        upload_date = datetime.now(timezone.utc)
        md5 = self._md5.hexdigest()
        self._store._files[self._key] = {
            "_id": self.file_id,
            "filename": self._filename,
            "contentType": self._content_type,
            "length": self._length,
            "chunkSize": self._chunk_size,
            "md5": md5,
            "uploadDate": upload_date,
            "metadata": self._metadata,
        }
        return GridInfo(
            id=self.file_id,
            filename=self._filename,
            content_type=self._content_type,
            length=self._length,
            chunk_size=self._chunk_size,
            md5=md5,
            upload_date=upload_date,
        )

    async def abort(self) -> None:
        self._closed = True
        self._buffer.clear()
        self._store._chunks.pop(self._key, None)


class MemoryChunkStore:
    """Chunked store that holds every file in memory.

    Attributes:
        fail_after_bytes: When set, writes fail with :class:`MemoryStoreError`
            once this many bytes have been accepted across all sinks.
    """

    def __init__(self, fail_after_bytes: int | None = None) -> None:
        self.fail_after_bytes = fail_after_bytes
        self._files: dict[tuple[str, Any], dict[str, Any]] = {}
        self._chunks: dict[tuple[str, Any], list[bytes]] = {}
        self._accepted = 0

    def _check_fault(self, size: int) -> None:
        if self.fail_after_bytes is None:
            return
        if self._accepted + size > self.fail_after_bytes:
            raise MemoryStoreError(
                f"Write rejected after {self._accepted} bytes "
                f"(limit {self.fail_after_bytes})"
            )
        self._accepted += size

    async def open_write(
        self,
        bucket: str,
        filename: str,
        chunk_size: int,
        content_type: str,
        metadata: Any = None,
    ) -> MemoryChunkSink:
        return MemoryChunkSink(self, bucket, filename, chunk_size, content_type, metadata)

    async def delete(self, bucket: str, file_id: Any) -> None:
        self._files.pop((bucket, file_id), None)
        self._chunks.pop((bucket, file_id), None)

    async def exists(self, bucket: str, file_id: Any) -> bool:
        return (bucket, file_id) in self._files

    async def find(self, bucket: str, filename: str) -> list[dict[str, Any]]:
        return [
            dict(doc)
            for (doc_bucket, _), doc in self._files.items()
            if doc_bucket == bucket and doc["filename"] == filename
        ]

    def read(self, bucket: str, file_id: Any) -> bytes:
        """Reassemble a stored file from its chunks.

        Raises:
            KeyError: If no committed file exists under ``file_id``.
        """
        if (bucket, file_id) not in self._files:
            raise KeyError(file_id)
        return b"".join(self._chunks.get((bucket, file_id), []))

    def chunk_count(self, bucket: str, file_id: Any) -> int:
        """Number of chunks stored for ``file_id``, committed or not."""
        return len(self._chunks.get((bucket, file_id), []))

    async def close(self) -> None:
        """Drop everything held in memory."""
        logger.info("Memory chunk store closed (%d files)", len(self._files))
        self._files.clear()
        self._chunks.clear()
