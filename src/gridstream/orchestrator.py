"""Upload orchestration across the files of one request.

The orchestrator starts one :class:`~gridstream.writer.StreamWriter` task
per file, all running concurrently, and keeps them in a registry keyed by
request id. The first writer to fail with a stream, store or connection
error cancels the request's token and every sibling task still in flight.
A resolution error fails only its own file; its siblings carry on. Either
way the caller gets one aggregated :class:`~gridstream.errors.UploadError`
naming the file that failed first.

Files that committed before the failure stay stored and are reported as
such, unless ``rollback_on_failure`` is enabled, in which case they are
deleted and listed under ``rolled_back``.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Any

from gridstream.cancellation import CancellationToken
from gridstream.connection import ConnectionManager
from gridstream.errors import CancelledUpload, GridStreamError, ResolutionError, UploadError
from gridstream.identity import generate_identity
from gridstream.models import FileFailure, StoredFileRecord, UploadRequest, UploadResult
from gridstream.resolver import MetadataResolver
from gridstream.store import create_store
from gridstream.writer import StoreFactory, StreamWriter

logger = logging.getLogger(__name__)

__all__ = ["CancellationToken", "UploadOrchestrator"]


class UploadOrchestrator:
    """Runs the writers of each request and aggregates their outcome.

    Attributes:
        in_flight: Writer tasks still running, keyed by request id.
        rollback_on_failure: Delete committed siblings when a request fails.
    """

    def __init__(
        self,
        resolver: MetadataResolver,
        manager: ConnectionManager,
        store_factory: StoreFactory = create_store,
        rollback_on_failure: bool = False,
    ) -> None:
        self.resolver = resolver
        self.manager = manager
        self.rollback_on_failure = rollback_on_failure
        self.in_flight: dict[str, set[asyncio.Task[StoredFileRecord]]] = {}
        self._store_factory = store_factory
        self._tokens: dict[str, CancellationToken] = {}

    def _writer(
        self,
        request: UploadRequest,
        request_id: str,
        token: CancellationToken,
        file: Any,
    ) -> StreamWriter:
        return StreamWriter(
            file,
            self.resolver,
            self.manager,
            token=token,
            context=request.context,
            store_factory=self._store_factory,
            request_id=request_id,
        )

    async def handle(self, request: UploadRequest) -> UploadResult:
        """Upload every file of ``request`` concurrently.

        Args:
            request: The files to store, in submission order.

        Returns:
            The committed records in submission order, plus the aggregated
            error and per-file failures when any file failed.
        """
        if not request.files:
            return UploadResult()

        request_id = request.request_id or generate_identity(8)
        if request_id in self.in_flight:
            raise ValueError(f"Request {request_id} is already in flight")

        token = CancellationToken()
        writers = [self._writer(request, request_id, token, file) for file in request.files]
        tasks = [
            asyncio.create_task(writer.run(), name=f"gridstream-{request_id}-{index}")
            for index, writer in enumerate(writers)
        ]
        index_of = {task: index for index, task in enumerate(tasks)}
        self.in_flight[request_id] = set(tasks)
        self._tokens[request_id] = token

        first_error: GridStreamError | None = None
        try:
            pending = set(tasks)
            while pending:
                done, pending = await asyncio.wait(pending, return_when=asyncio.FIRST_COMPLETED)
                self.in_flight[request_id].difference_update(done)
                for task in sorted(done, key=index_of.__getitem__):
                    error = _task_error(task, writers[index_of[task]])
                    if error is None:
                        continue
                    if first_error is None:
                        first_error = error
                    # A resolution error only fails its own file
                    if isinstance(error, ResolutionError) or token.cancelled:
                        continue
                    token.cancel(f"field '{error.field}' failed")
                    for sibling in pending:
                        sibling.cancel()
        except asyncio.CancelledError:
            token.cancel("request cancelled")
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
            raise
        finally:
            self.in_flight.pop(request_id, None)
            self._tokens.pop(request_id, None)

        result = UploadResult()
        for index, (writer, task) in enumerate(zip(writers, tasks)):
            error = _task_error(task, writer)
            if error is None:
                result.files.append(task.result())
            else:
                result.failures.append(
                    FileFailure(
                        index=index,
                        field_name=writer.file.field_name,
                        original_filename=writer.file.original_filename,
                        error=error,
                    )
                )

        if first_error is not None:
            result.error = UploadError(first_error, failures=result.failures)
            logger.warning(
                "Request %s failed: %d stored, %d failed (%s)",
                request_id,
                len(result.files),
                len(result.failures),
                result.error.message,
                extra={"request_id": request_id, "field": first_error.field},
            )
            if self.rollback_on_failure and result.files:
                await self._rollback(writers, result)
        else:
            logger.debug(
                "Request %s stored %d files",
                request_id,
                len(result.files),
                extra={"request_id": request_id},
            )
        return result

    async def _rollback(self, writers: list[StreamWriter], result: UploadResult) -> None:
        """Delete the committed files of a failed request."""
        kept: list[StoredFileRecord] = []
        for writer in writers:
            record = writer.record
            if record is None or record not in result.files:
                continue
            try:
                await writer.store.delete(record.bucket_name, record.grid.id)
            except Exception:
                logger.exception("Rollback of %s failed", record.id)
                kept.append(record)
            else:
                result.rolled_back.append(record)
        result.files = kept

    async def cancel(self, request_id: str, reason: str = "request cancelled") -> bool:
        """Cancel every in-flight writer of a request.

        Returns:
            True if the request was in flight.
        """
        tasks = self.in_flight.get(request_id)
        if tasks is None:
            return False
        token = self._tokens.get(request_id)
        if token is not None:
            token.cancel(reason)
        for task in list(tasks):
            task.cancel()
        return True

    async def shutdown(self) -> None:
        """Cancel all in-flight requests and wait for their writers."""
        tasks = [task for group in self.in_flight.values() for task in group]
        for request_id in list(self.in_flight):
            await self.cancel(request_id, "shutting down")
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)


def _task_error(
    task: asyncio.Task[StoredFileRecord], writer: StreamWriter
) -> GridStreamError | None:
    """Return the error a finished writer task ended with, or None on success."""
    if task.cancelled():
        return writer.error or CancelledUpload(
            "Upload cancelled",
            field=writer.file.field_name,
            filename=writer.file.original_filename,
        )
    exc = task.exception()
    if exc is None:
        return None
    if isinstance(exc, GridStreamError):
        return exc
    return GridStreamError(
        f"Unexpected error: {exc}",
        field=writer.file.field_name,
        filename=writer.file.original_filename,
    )
