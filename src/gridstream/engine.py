"""Storage engine assembling the upload pipeline from configuration."""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from typing import Any

from gridstream.config import StorageConfig
from gridstream.connection import Closer, ConnectionManager, Connector
from gridstream.errors import ConfigurationError
from gridstream.identity import check_entropy
from gridstream.models import ConnectionState, FileStream, UploadRequest, UploadResult
from gridstream.orchestrator import UploadOrchestrator
from gridstream.resolver import Hook, build_resolver
from gridstream.store import MemoryChunkStore, create_store

logger = logging.getLogger(__name__)


class GridFsStorage:
    """One configured storage target: connection, resolver and orchestrator.

    Connection mode is picked from the keyword arguments when one of
    ``url``, ``handle`` or ``factory`` is given, otherwise from the config
    (``memory`` backend or ``storage.url``). Several instances can coexist
    in one process; each owns its own connection state.

    Attributes:
        config: The storage configuration in effect.
        manager: The connection manager of this instance.
        resolver: The metadata resolver applied to every file.
        orchestrator: The orchestrator running the writers.
    """

    def __init__(
        self,
        config: StorageConfig | None = None,
        *,
        url: str | None = None,
        handle: Any = None,
        factory: Callable[[], Any] | None = None,
        options: dict[str, Any] | None = None,
        file: Hook | None = None,
        filename: Hook | None = None,
        metadata: Hook | None = None,
        bucket: Hook | None = None,
        chunk_size: Hook | None = None,
        connector: Connector | None = None,
        closer: Closer | None = None,
        owns_handle: bool = True,
    ) -> None:
        """Initialize the storage engine.

        Raises:
            ConfigurationError: On contradictory or invalid options, or when
                the random source used for file naming is unusable.
        """
        self.config = config or StorageConfig()
        if not self.config.bucket_name:
            raise ConfigurationError("bucket_name must not be empty")
        if self.config.chunk_size_bytes <= 0:
            raise ConfigurationError(
                f"chunk_size_bytes must be positive, got {self.config.chunk_size_bytes}"
            )
        check_entropy()

        explicit = [value for value in (url, handle, factory) if value is not None]
        if len(explicit) > 1:
            raise ConfigurationError("'url', 'handle' and 'factory' are mutually exclusive")
        if not explicit:
            if self.config.backend == "memory":
                handle = MemoryChunkStore()
            elif self.config.backend == "gridfs":
                url = self.config.url
                if not url:
                    raise ConfigurationError("storage.url is required for the gridfs backend")
            else:
                raise ConfigurationError(f"Unknown storage backend: {self.config.backend}")

        client_options = dict(self.config.options)
        if self.config.database:
            client_options.setdefault("database", self.config.database)
        client_options.update(options or {})

        self.manager = ConnectionManager(
            url=url,
            handle=handle,
            factory=factory,
            options=client_options,
            connector=connector,
            closer=closer,
            owns_handle=owns_handle,
        )
        self.resolver = build_resolver(
            bucket_name=self.config.bucket_name,
            chunk_size_bytes=self.config.chunk_size_bytes,
            file=file,
            filename=filename,
            metadata=metadata,
            bucket=bucket,
            chunk_size=chunk_size,
        )
        self.orchestrator = UploadOrchestrator(
            self.resolver,
            self.manager,
            store_factory=create_store,
            rollback_on_failure=self.config.rollback_on_failure,
        )
        logger.debug(
            "Storage engine created (mode=%s, bucket=%s, chunk_size=%d)",
            self.manager.mode,
            self.config.bucket_name,
            self.config.chunk_size_bytes,
        )

    @property
    def state(self) -> ConnectionState:
        return self.manager.state

    def start(self) -> None:
        """Issue the connect attempt now instead of on the first upload."""
        self.manager.start()

    async def await_ready(self) -> Any:
        return await self.manager.await_ready()

    async def handle(self, request: UploadRequest) -> UploadResult:
        return await self.orchestrator.handle(request)

    async def upload(
        self,
        files: Iterable[FileStream],
        context: Any = None,
        request_id: str = "",
    ) -> UploadResult:
        """Upload ``files`` as one request."""
        request = UploadRequest(files=list(files), context=context, request_id=request_id)
        return await self.orchestrator.handle(request)

    async def close(self) -> None:
        """Cancel in-flight uploads and close the connection. Idempotent."""
        await self.orchestrator.shutdown()
        await self.manager.close()

    async def __aenter__(self) -> GridFsStorage:
        self.start()
        return self

    async def __aexit__(self, *exc_info: Any) -> None:
        await self.close()
