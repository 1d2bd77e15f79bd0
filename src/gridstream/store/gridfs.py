"""GridFS chunked store for gridstream.

Writes files into a MongoDB GridFS bucket through motor. A bucket named
``fs`` maps to the ``fs.files`` and ``fs.chunks`` collections.

Each write is an :class:`AsyncIOMotorGridIn`. Bytes are hashed as they
pass through the sink; the hex MD5 is set on the file document before the
GridIn is closed, so the document is inserted once with its checksum and
never exists without it.
"""

import hashlib
import logging
from datetime import datetime, timezone
from typing import Any

from gridfs.errors import NoFile
from motor.motor_asyncio import AsyncIOMotorGridFSBucket, AsyncIOMotorGridIn

from gridstream.models import GridInfo

logger = logging.getLogger(__name__)


def _utc(value: datetime | None) -> datetime:
    # pymongo returns naive UTC datetimes unless the client is tz_aware
    if value is None:
        return datetime.now(timezone.utc)
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class GridFSChunkSink:
    """A chunked write backed by a motor GridIn."""

    def __init__(
        self,
        grid_in: AsyncIOMotorGridIn,
        filename: str,
        chunk_size: int,
        content_type: str,
    ) -> None:
        self._grid_in = grid_in
        self._filename = filename
        self._chunk_size = chunk_size
        self._content_type = content_type
        self._md5 = hashlib.md5()
        self._length = 0

    @property
    def file_id(self) -> Any:
        return self._grid_in._id

    async def write(self, data: bytes) -> None:
        await self._grid_in.write(data)
        self._md5.update(data)
        self._length += len(data)

    async def close(self) -> GridInfo:
        md5 = self._md5.hexdigest()
        await self._grid_in.set("md5", md5)
        await self._grid_in.close()
        return GridInfo(
            id=self._grid_in._id,
            filename=self._filename,
            content_type=self._content_type,
            length=self._length,
            chunk_size=self._chunk_size,
            md5=md5,
            upload_date=_utc(self._grid_in.upload_date),
        )

    async def abort(self) -> None:
        await self._grid_in.abort()


class GridFSStore:
    """Chunked store writing into GridFS buckets of one motor database.

    Attributes:
        database: The motor database holding the buckets.
    """

    def __init__(self, database: Any) -> None:
        self.database = database

    async def open_write(
        self,
        bucket: str,
        filename: str,
        chunk_size: int,
        content_type: str,
        metadata: Any = None,
    ) -> GridFSChunkSink:
        grid_in = AsyncIOMotorGridIn(
            self.database[bucket],
            filename=filename,
            contentType=content_type,
            chunkSize=chunk_size,
            metadata=metadata,
        )
        return GridFSChunkSink(grid_in, filename, chunk_size, content_type)

    async def delete(self, bucket: str, file_id: Any) -> None:
        gridfs_bucket = AsyncIOMotorGridFSBucket(self.database, bucket_name=bucket)
        try:
            await gridfs_bucket.delete(file_id)
        except NoFile:
            # Chunks are removed even when the file document is missing
            logger.debug("No file document for %s in bucket %s", file_id, bucket)

    async def exists(self, bucket: str, file_id: Any) -> bool:
        doc = await self.database[f"{bucket}.files"].find_one({"_id": file_id}, {"_id": 1})
        return doc is not None

    async def find(self, bucket: str, filename: str) -> list[dict[str, Any]]:
        cursor = self.database[f"{bucket}.files"].find({"filename": filename})
        return await cursor.to_list(length=None)
