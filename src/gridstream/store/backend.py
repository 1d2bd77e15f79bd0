"""Chunked object store protocol for gridstream."""

from typing import Any, Protocol

from gridstream.models import GridInfo


class ChunkSink(Protocol):
    """An open chunked write of a single file.

    Bytes passed to :meth:`write` are split into ``chunk_size`` pieces and
    stored as they fill. The file document only becomes visible on
    :meth:`close`; :meth:`abort` discards every chunk written so far.

    Attributes:
        file_id: The identifier the file will be stored under.
    """

    file_id: Any

    async def write(self, data: bytes) -> None:
        """Append bytes to the file."""
        ...

    async def close(self) -> GridInfo:
        """Flush the last chunk, write the file document and return it.

        Returns:
            The attributes confirmed by the store, including the hex MD5 of
            every byte written.
        """
        ...

    async def abort(self) -> None:
        """Discard the write and every chunk stored for it."""
        ...


class ChunkStore(Protocol):
    """Protocol defining the chunked store interface.

    Implemented by the GridFS backend and the in-memory backend.
    """

    async def open_write(
        self,
        bucket: str,
        filename: str,
        chunk_size: int,
        content_type: str,
        metadata: Any = None,
    ) -> ChunkSink:
        """Open a chunked write.

        Args:
            bucket: The bucket (collection prefix) to write into.
            filename: The stored filename.
            chunk_size: Bytes per chunk.
            content_type: MIME type recorded on the file document.
            metadata: Arbitrary payload recorded on the file document.

        Returns:
            The sink bytes are written to.
        """
        ...

    async def delete(self, bucket: str, file_id: Any) -> None:
        """Delete a file document and its chunks. Missing files are ignored.

        Args:
            bucket: The bucket name.
            file_id: The file identifier.
        """
        ...

    async def exists(self, bucket: str, file_id: Any) -> bool:
        """Check whether a committed file document exists."""
        ...

    async def find(self, bucket: str, filename: str) -> list[dict[str, Any]]:
        """Return the file documents stored under ``filename``."""
        ...
