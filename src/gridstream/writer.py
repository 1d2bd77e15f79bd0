"""Stream-to-store writer.

A :class:`StreamWriter` moves one :class:`~gridstream.models.FileStream`
into the chunked store:

    created -> metadata-resolved -> connecting -> streaming -> committed

Any error, or a cancellation of the request, moves it to ``failed`` from
whichever state it is in. A failed writer aborts its open write and deletes
whatever it may have stored, so a failed file leaves no record behind.

Bytes are forwarded to the store as they are read from the source stream;
the file is never held in memory as a whole.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections.abc import Callable
from typing import Any

from gridstream import metrics
from gridstream.cancellation import CancellationToken
from gridstream.connection import ConnectionManager
from gridstream.errors import (
    CancelledUpload,
    GridStreamError,
    ResolutionError,
    StoreError,
    StreamError,
)
from gridstream.models import (
    FileStream,
    ResolvedMetadata,
    StoredFileRecord,
    WriterState,
)
from gridstream.resolver import MetadataResolver
from gridstream.store import ChunkSink, ChunkStore, create_store

logger = logging.getLogger(__name__)

StoreFactory = Callable[[Any], ChunkStore]


class StreamWriter:
    """Writes a single file stream into the chunked store.

    Attributes:
        file: The file being written.
        state: Current :class:`WriterState`.
        resolved: The resolved metadata, once resolution has succeeded.
        bytes_written: Bytes accepted by the store so far.
        error: The error that failed the writer, if any.
        record: The stored record, once committed.
    """

    def __init__(
        self,
        file: FileStream,
        resolver: MetadataResolver,
        manager: ConnectionManager,
        token: CancellationToken | None = None,
        context: Any = None,
        store_factory: StoreFactory = create_store,
        request_id: str = "",
    ) -> None:
        self.file = file
        self.state = WriterState.CREATED
        self.resolved: ResolvedMetadata | None = None
        self.bytes_written = 0
        self.error: GridStreamError | None = None
        self.record: StoredFileRecord | None = None
        self._resolver = resolver
        self._manager = manager
        self._token = token or CancellationToken()
        self._context = context
        self._store_factory = store_factory
        self._request_id = request_id
        self._store: ChunkStore | None = None
        self._sink: ChunkSink | None = None

    @property
    def store(self) -> ChunkStore | None:
        """The store the writer opened its write on, once connected."""
        return self._store

    def _log_extra(self) -> dict[str, Any]:
        extra: dict[str, Any] = {
            "request_id": self._request_id,
            "field": self.file.field_name,
        }
        if self.resolved is not None:
            extra["bucket"] = self.resolved.bucket_name
        if self._sink is not None:
            extra["file_id"] = str(self._sink.file_id)
        return extra

    def _check(self) -> None:
        self._token.raise_if_cancelled(self.file.field_name, self.file.original_filename)

    def _error(self, cls: type[GridStreamError], message: str) -> GridStreamError:
        return cls(message, field=self.file.field_name, filename=self.file.original_filename)

    async def run(self) -> StoredFileRecord:
        """Write the file and return its stored record.

        Raises:
            ResolutionError: Metadata resolution failed.
            ConnectionError: The storage connection is unusable.
            StreamError: The source stream broke.
            StoreError: The store rejected a write.
            CancelledUpload: The request's token was cancelled.
            GridStreamError: Any other failure, wrapped.
            asyncio.CancelledError: The writer's task was cancelled.
        """
        metrics.writer_started()
        start = time.monotonic()
        try:
            record = await self._run()
        except asyncio.CancelledError:
            await self._fail(self._error(CancelledUpload, self._cancel_message()))
            raise
        except GridStreamError as exc:
            await self._fail(exc)
            raise
        except Exception as exc:
            error = self._error(GridStreamError, f"Unexpected error: {exc}")
            await self._fail(error)
            raise error from exc
        finally:
            metrics.writer_finished()

        duration_ms = round((time.monotonic() - start) * 1000, 2)
        metrics.record_upload("committed")
        logger.info(
            "Stored %s as %s (%d bytes, %.2fms)",
            self.file.field_name,
            record.filename,
            record.grid.length,
            duration_ms,
            extra={**self._log_extra(), "duration_ms": duration_ms},
        )
        return record

    def _cancel_message(self) -> str:
        if self._token.reason:
            return f"Upload cancelled: {self._token.reason}"
        return "Upload cancelled"

    async def _run(self) -> StoredFileRecord:
        self._check()
        self.resolved = await self._resolve()
        self.state = WriterState.METADATA_RESOLVED

        self._check()
        self.state = WriterState.CONNECTING
        handle = await self._manager.await_ready()
        self._store = self._store_factory(handle)

        self._check()
        self._sink = await self._open()
        self.state = WriterState.STREAMING
        logger.debug(
            "Streaming %s into %s",
            self.file.field_name,
            self.resolved.bucket_name,
            extra=self._log_extra(),
        )
        await self._pump()

        self._check()
        try:
            info = await self._sink.close()
        except Exception as exc:
            raise self._error(StoreError, f"Failed to commit file: {exc}") from exc
        if info.length != self.bytes_written:
            raise self._error(
                StoreError,
                f"Store confirmed {info.length} bytes but {self.bytes_written} were written",
            )

        self.record = StoredFileRecord(
            id=str(info.id),
            field_name=self.file.field_name,
            original_filename=self.file.original_filename,
            filename=info.filename,
            metadata=self.resolved.metadata,
            bucket_name=self.resolved.bucket_name,
            grid=info,
        )
        self.state = WriterState.COMMITTED
        return self.record

    async def _resolve(self) -> ResolvedMetadata:
        try:
            return await self._resolver.resolve(self.file, self._context)
        except GridStreamError:
            raise
        except Exception as exc:
            raise self._error(ResolutionError, f"Metadata resolution failed: {exc}") from exc

    async def _open(self) -> ChunkSink:
        resolved = self.resolved
        try:
            return await self._store.open_write(
                resolved.bucket_name,
                resolved.filename,
                resolved.chunk_size_bytes,
                resolved.content_type,
                resolved.metadata,
            )
        except Exception as exc:
            raise self._error(StoreError, f"Failed to open write: {exc}") from exc

    async def _pump(self) -> None:
        stream = aiter(self.file.consume())
        while True:
            self._check()
            try:
                chunk = await anext(stream)
            except StopAsyncIteration:
                return
            except GridStreamError:
                raise
            except Exception as exc:
                raise self._error(StreamError, f"Source stream failed: {exc}") from exc
            if not chunk:
                continue

            self._check()
            try:
                await self._sink.write(chunk)
            except Exception as exc:
                raise self._error(StoreError, f"Chunk write failed: {exc}") from exc
            self.bytes_written += len(chunk)
            metrics.record_bytes(len(chunk))

    async def _fail(self, error: GridStreamError) -> None:
        previous = self.state
        self.state = WriterState.FAILED
        self.error = error
        await self._cleanup()
        metrics.record_upload("cancelled" if isinstance(error, CancelledUpload) else "failed")
        logger.warning(
            "Upload of %s failed in state %s: %s",
            self.file.field_name,
            previous.value,
            error.message,
            extra=self._log_extra(),
        )

    async def _cleanup(self) -> None:
        """Abort the open write and delete anything stored under its id."""
        sink, store = self._sink, self._store
        if sink is None or store is None:
            return
        try:
            await sink.abort()
            await store.delete(self.resolved.bucket_name, sink.file_id)
        except Exception:
            metrics.record_cleanup("error")
            logger.exception(
                "Cleanup of partial file %s failed", sink.file_id, extra=self._log_extra()
            )
        else:
            metrics.record_cleanup("ok")
