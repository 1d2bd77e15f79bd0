"""Connection lifecycle for one storage instance.

A :class:`ConnectionManager` owns the database handle that every writer of
its storage instance shares. It is built in one of three modes:

- ``handle``: an already usable handle (a motor database, or any
  :class:`~gridstream.store.backend.ChunkStore`). Ready immediately.
- ``url``: a MongoDB connection string plus client options. The connect
  attempt starts as soon as an event loop is available.
- ``factory``: a caller-supplied function returning a handle (or an
  awaitable of one), invoked on first use.

The outcome of the single connect attempt is held in one future. Every
caller of :meth:`ConnectionManager.await_ready` waits on that future and
observes the same handle or the same error; there is no reconnect.
"""

from __future__ import annotations

import asyncio
import contextlib
import inspect
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from motor.motor_asyncio import AsyncIOMotorClient

from gridstream.errors import ConfigurationError, ConnectionError, ManagerClosedError
from gridstream.models import ConnectionState

logger = logging.getLogger(__name__)

Connector = Callable[[str, dict[str, Any]], Awaitable[Any]]
Closer = Callable[[Any], Awaitable[None]]

DEFAULT_DATABASE = "gridstream"


async def motor_connect(url: str, options: dict[str, Any]) -> Any:
    """Open a motor client, check it with ``ping`` and return its database.

    The database is ``options["database"]`` when given, otherwise the one
    named in the connection string, otherwise :data:`DEFAULT_DATABASE`.
    Remaining options are passed to :class:`AsyncIOMotorClient`.
    """
    client_options = dict(options)
    database = client_options.pop("database", None)
    client = AsyncIOMotorClient(url, **client_options)
    try:
        await client.admin.command("ping")
    except BaseException:
        # Includes cancellation by ConnectionManager.close()
        client.close()
        raise
    if database:
        return client[database]
    return client.get_default_database(default=DEFAULT_DATABASE)


async def close_handle(handle: Any) -> None:
    """Tear down a handle: its owning client when it has one, else itself."""
    client = getattr(handle, "client", None)
    target = client if client is not None else handle
    close = getattr(target, "close", None)
    if close is None:
        return
    result = close()
    if inspect.isawaitable(result):
        await result


def _as_async_factory(factory: Callable[[], Any]) -> Callable[[], Awaitable[Any]]:
    if inspect.iscoroutinefunction(factory):
        return factory

    async def call() -> Any:
        result = factory()
        if inspect.isawaitable(result):
            result = await result
        return result

    return call


class ConnectionManager:
    """Owns the connection of one storage instance and gates writers on it.

    Attributes:
        mode: One of ``"url"``, ``"handle"`` or ``"factory"``.
    """

    def __init__(
        self,
        url: str | None = None,
        handle: Any = None,
        factory: Callable[[], Any] | None = None,
        options: dict[str, Any] | None = None,
        connector: Connector | None = None,
        closer: Closer | None = None,
        owns_handle: bool = True,
    ) -> None:
        """Initialize the manager.

        Args:
            url: MongoDB connection string (``url`` mode).
            handle: A ready-to-use handle (``handle`` mode).
            factory: Deferred handle provider (``factory`` mode).
            options: Client options for ``url`` mode.
            connector: Coroutine function ``(url, options) -> handle``;
                defaults to :func:`motor_connect`.
            closer: Coroutine function tearing a handle down; defaults to
                :func:`close_handle`.
            owns_handle: Whether ``close()`` tears down a handle passed in
                ``handle`` mode.

        Raises:
            ConfigurationError: If not exactly one of url/handle/factory is set.
        """
        modes = [
            name
            for name, value in (("url", url), ("handle", handle), ("factory", factory))
            if value is not None
        ]
        if len(modes) != 1:
            raise ConfigurationError(
                "Exactly one of 'url', 'handle' or 'factory' must be provided, "
                f"got {', '.join(modes) if modes else 'none'}"
            )
        if url is not None and not isinstance(url, str):
            raise ConfigurationError(f"'url' must be a string, got {type(url).__name__}")
        if factory is not None and not callable(factory):
            raise ConfigurationError("'factory' must be callable")

        self.mode = modes[0]
        self._url = url
        self._options = dict(options or {})
        self._factory = _as_async_factory(factory) if factory is not None else None
        self._connector = connector or motor_connect
        self._closer = closer or close_handle
        self._owns_handle = owns_handle

        self._state = ConnectionState.PENDING
        self._handle: Any = None
        self._error: ConnectionError | None = None
        self._ready: asyncio.Future[Any] | None = None
        self._task: asyncio.Task[None] | None = None

        if handle is not None:
            self._handle = handle
            self._state = ConnectionState.READY
        elif self.mode == "url":
            # Start right away when constructed inside a running loop
            try:
                asyncio.get_running_loop()
            except RuntimeError:
                pass
            else:
                self.start()

    @property
    def state(self) -> ConnectionState:
        return self._state

    @property
    def error(self) -> ConnectionError | None:
        return self._error

    def start(self) -> None:
        """Issue the connect attempt if it has not been issued yet.

        Must be called from within a running event loop.

        Raises:
            ManagerClosedError: If the manager was closed.
        """
        if self._state is ConnectionState.CLOSED:
            raise ManagerClosedError()
        if self._state is not ConnectionState.PENDING:
            return
        loop = asyncio.get_running_loop()
        self._ready = loop.create_future()
        self._state = ConnectionState.CONNECTING
        logger.info("Connecting storage instance (mode=%s)", self.mode)
        self._task = loop.create_task(self._connect())

    async def await_ready(self) -> Any:
        """Wait until the connection is usable and return the handle.

        Every caller gets its own exception instance, chained to the stored
        error of the connect attempt.

        Raises:
            ConnectionError: A failed connect attempt; ``__cause__`` is the
                stored error (see :attr:`error`).
            ManagerClosedError: If the manager is or becomes closed.
        """
        if self._state is ConnectionState.CLOSED:
            raise ManagerClosedError()
        if self._state is ConnectionState.READY:
            return self._handle
        if self._state is ConnectionState.ERRORED:
            raise _fresh(self._error) from self._error
        self.start()
        try:
            # Shielded: a cancelled waiter must not cancel the shared attempt
            return await asyncio.shield(self._ready)
        except ManagerClosedError:
            raise ManagerClosedError() from None
        except ConnectionError as exc:
            raise _fresh(exc) from exc

    async def _connect(self) -> None:
        try:
            if self.mode == "url":
                handle = await self._connector(self._url, self._options)
            else:
                handle = await self._factory()
            if handle is None:
                raise ValueError("connection factory returned None")
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            if self._state is ConnectionState.CLOSED:
                return
            if isinstance(exc, ConnectionError):
                error = exc
            else:
                error = ConnectionError(f"Could not connect to storage: {exc}")
                error.__cause__ = exc
            self._error = error
            self._state = ConnectionState.ERRORED
            self._ready.set_exception(error)
            # Retrieved here so an attempt nobody waited on is not reported
            # as an unhandled future exception
            self._ready.exception()
            logger.error("Storage connection failed: %s", exc)
            return

        if self._state is ConnectionState.CLOSED:
            await self._closer(handle)
            return
        self._handle = handle
        self._state = ConnectionState.READY
        self._ready.set_result(handle)
        logger.info("Storage connection ready (mode=%s)", self.mode)

    async def close(self) -> None:
        """Close the manager. Idempotent.

        Cancels an in-flight connect attempt, fails pending waiters with
        :class:`ManagerClosedError` and tears the handle down once.
        """
        if self._state is ConnectionState.CLOSED:
            return
        self._state = ConnectionState.CLOSED

        if self._ready is not None and not self._ready.done():
            self._ready.set_exception(ManagerClosedError())
            self._ready.exception()

        if self._task is not None and not self._task.done():
            self._task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
        self._task = None

        handle, self._handle = self._handle, None
        if handle is not None and (self.mode != "handle" or self._owns_handle):
            await self._closer(handle)
        logger.info("Storage connection closed (mode=%s)", self.mode)


def _fresh(error: ConnectionError) -> ConnectionError:
    """Copy a stored connection error for one caller."""
    return ConnectionError(error.message, http_status=error.http_status)
