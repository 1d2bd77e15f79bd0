"""Data model types for gridstream.

These dataclasses represent the entities that flow through one upload:
the incoming file streams, the metadata resolved for each of them, and
the durable records returned once the store has confirmed a write.
"""

from __future__ import annotations

import enum
from collections.abc import AsyncIterator
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from gridstream.errors import GridStreamError, StreamError, UploadError

DEFAULT_BUCKET_NAME = "fs"
DEFAULT_CHUNK_SIZE = 261120
DEFAULT_CONTENT_TYPE = "application/octet-stream"


class ConnectionState(str, enum.Enum):
    """Lifecycle of one storage instance's connection."""

    PENDING = "pending"
    CONNECTING = "connecting"
    READY = "ready"
    ERRORED = "errored"
    CLOSED = "closed"


class WriterState(str, enum.Enum):
    """Lifecycle of one file's write."""

    CREATED = "created"
    METADATA_RESOLVED = "metadata-resolved"
    CONNECTING = "connecting"
    STREAMING = "streaming"
    COMMITTED = "committed"
    FAILED = "failed"


@dataclass(frozen=True)
class FileDescriptor:
    """Read-only view of an incoming file, handed to resolver hooks."""

    field_name: str
    original_filename: str
    content_type: str


class FileStream:
    """One file part of a multipart request.

    The byte stream has an unknown total length and may be consumed
    exactly once.

    Attributes:
        field_name: The form field the file was submitted under.
        original_filename: The filename supplied by the client.
        content_type: The declared MIME type of the part.
    """

    def __init__(
        self,
        field_name: str,
        original_filename: str,
        content_type: str | None,
        stream: AsyncIterator[bytes],
    ) -> None:
        self.field_name = field_name
        self.original_filename = original_filename
        self.content_type = content_type or DEFAULT_CONTENT_TYPE
        self._stream = stream
        self._consumed = False

    @property
    def descriptor(self) -> FileDescriptor:
        return FileDescriptor(
            field_name=self.field_name,
            original_filename=self.original_filename,
            content_type=self.content_type,
        )

    @property
    def consumed(self) -> bool:
        return self._consumed

    def consume(self) -> AsyncIterator[bytes]:
        """Hand out the byte stream. A second call raises StreamError."""
        if self._consumed:
            raise StreamError(
                "File stream has already been consumed",
                field=self.field_name,
                filename=self.original_filename,
            )
        self._consumed = True
        return self._stream

    def __repr__(self) -> str:
        return (
            f"FileStream(field_name={self.field_name!r}, "
            f"original_filename={self.original_filename!r}, "
            f"content_type={self.content_type!r})"
        )


@dataclass
class UploadRequest:
    """A single HTTP request owning zero or more file streams.

    Attributes:
        files: The file streams in submission order.
        context: Request-scoped object forwarded verbatim to resolver hooks.
        request_id: Key under which in-flight writers are registered.
    """

    files: list[FileStream] = field(default_factory=list)
    context: Any = None
    request_id: str = ""


@dataclass(frozen=True)
class ResolvedMetadata:
    """Per-file storage parameters, fixed before writing starts."""

    filename: str
    metadata: Any
    bucket_name: str = DEFAULT_BUCKET_NAME
    chunk_size_bytes: int = DEFAULT_CHUNK_SIZE
    content_type: str = DEFAULT_CONTENT_TYPE


@dataclass(frozen=True)
class GridInfo:
    """Attributes of a file document as confirmed by the store.

    Attributes:
        id: The store-assigned identifier (an ObjectId for GridFS).
        filename: The stored filename.
        content_type: The stored MIME type.
        length: Total bytes written.
        chunk_size: Chunk size used for this file.
        md5: Hex MD5 of exactly the bytes written.
        upload_date: When the store committed the file document.
    """

    id: Any
    filename: str
    content_type: str
    length: int
    chunk_size: int
    md5: str
    upload_date: datetime

    def to_dict(self) -> dict[str, Any]:
        return {
            "_id": str(self.id),
            "filename": self.filename,
            "contentType": self.content_type,
            "length": self.length,
            "chunkSize": self.chunk_size,
            "md5": self.md5,
            "uploadDate": self.upload_date.isoformat(),
        }


@dataclass(frozen=True)
class StoredFileRecord:
    """The durable result of one successful write."""

    id: str
    field_name: str
    original_filename: str
    filename: str
    metadata: Any
    bucket_name: str
    grid: GridInfo

    def to_dict(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "fieldname": self.field_name,
            "originalname": self.original_filename,
            "filename": self.filename,
            "metadata": self.metadata,
            "bucketName": self.bucket_name,
            "grid": self.grid.to_dict(),
        }


@dataclass(frozen=True)
class FileFailure:
    """One file that did not reach the committed state."""

    index: int
    field_name: str
    original_filename: str
    error: GridStreamError

    def to_dict(self) -> dict[str, Any]:
        return {
            "field": self.field_name,
            "filename": self.original_filename,
            "code": self.error.code,
            "message": self.error.message,
        }


@dataclass
class UploadResult:
    """Outcome of one upload request.

    Attributes:
        files: Committed records in submission order.
        error: The aggregated error, or None if every file committed.
        failures: Every file that failed, in submission order.
        rolled_back: Records deleted because of the rollback policy.
    """

    files: list[StoredFileRecord] = field(default_factory=list)
    error: UploadError | None = None
    failures: list[FileFailure] = field(default_factory=list)
    rolled_back: list[StoredFileRecord] = field(default_factory=list)

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self) -> dict[str, Any]:
        body: dict[str, Any] = {"files": [record.to_dict() for record in self.files]}
        if self.error is not None:
            body["error"] = self.error.to_dict()
            body["failures"] = [failure.to_dict() for failure in self.failures]
        if self.rolled_back:
            body["rolledBack"] = [record.id for record in self.rolled_back]
        return body
