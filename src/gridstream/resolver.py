"""Per-file metadata resolution.

Every file of a request is resolved once, before its write starts, into a
:class:`~gridstream.models.ResolvedMetadata`. Two variants implement the
:class:`MetadataResolver` protocol:

- :class:`StaticResolver` applies the configured defaults: a random hex
  filename, no metadata, the default bucket and chunk size.
- :class:`CallbackResolver` runs user hooks, each of which may be a plain
  function or a coroutine function, and falls back to the static defaults
  for any field a hook leaves unset.

Hooks are normalised to coroutine functions when the resolver is built, so
the resolution call site is the same for both kinds.
"""

from __future__ import annotations

import functools
import inspect
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol

from gridstream.errors import GridStreamError, ResolutionError
from gridstream.identity import generate_identity
from gridstream.models import (
    DEFAULT_BUCKET_NAME,
    DEFAULT_CHUNK_SIZE,
    FileDescriptor,
    FileStream,
    ResolvedMetadata,
)

logger = logging.getLogger(__name__)

Hook = Callable[[Any, FileDescriptor], Any]
AsyncHook = Callable[[Any, FileDescriptor], Awaitable[Any]]

RESOLVABLE_FIELDS = ("filename", "metadata", "bucket_name", "chunk_size_bytes", "content_type")


class MetadataResolver(Protocol):
    """Protocol for turning an incoming file into storage parameters."""

    async def resolve(self, file: FileStream, context: Any) -> ResolvedMetadata:
        """Resolve the storage parameters for one file.

        Args:
            file: The incoming file stream (its bytes are not touched).
            context: The request-scoped context object.

        Returns:
            The immutable metadata the writer will use.

        Raises:
            ResolutionError: If a hook fails or returns an invalid value.
        """
        ...


def as_async(hook: Hook) -> AsyncHook:
    """Wrap a plain function so it can be awaited like a coroutine function."""
    if inspect.iscoroutinefunction(hook):
        return hook

    @functools.wraps(hook)
    async def call(context: Any, descriptor: FileDescriptor) -> Any:
        return hook(context, descriptor)

    return call


class StaticResolver:
    """Resolver that only applies configured defaults.

    Attributes:
        bucket_name: Bucket used when nothing else is resolved.
        chunk_size_bytes: Chunk size used when nothing else is resolved.
        metadata: Metadata payload stored with every file.
    """

    def __init__(
        self,
        bucket_name: str = DEFAULT_BUCKET_NAME,
        chunk_size_bytes: int = DEFAULT_CHUNK_SIZE,
        metadata: Any = None,
    ) -> None:
        self.bucket_name = bucket_name
        self.chunk_size_bytes = chunk_size_bytes
        self.metadata = metadata

    async def resolve(self, file: FileStream, context: Any) -> ResolvedMetadata:
        return self.build(file, {})

    def build(self, file: FileStream, values: Mapping[str, Any]) -> ResolvedMetadata:
        """Merge resolved values over the defaults and validate the result."""
        filename = values.get("filename")
        if filename is None:
            filename = generate_identity()
        bucket_name = values.get("bucket_name", self.bucket_name)
        chunk_size = values.get("chunk_size_bytes", self.chunk_size_bytes)
        content_type = values.get("content_type", file.content_type)

        if not isinstance(filename, str) or not filename:
            raise _invalid(file, f"filename must be a non-empty string, got {filename!r}")
        if not isinstance(bucket_name, str) or not bucket_name:
            raise _invalid(file, f"bucket name must be a non-empty string, got {bucket_name!r}")
        # bool is an int subclass
        if isinstance(chunk_size, bool) or not isinstance(chunk_size, int) or chunk_size <= 0:
            raise _invalid(file, f"chunk size must be a positive integer, got {chunk_size!r}")
        if not isinstance(content_type, str):
            raise _invalid(file, f"content type must be a string, got {content_type!r}")

        return ResolvedMetadata(
            filename=filename,
            metadata=values.get("metadata", self.metadata),
            bucket_name=bucket_name,
            chunk_size_bytes=chunk_size,
            content_type=content_type,
        )


class CallbackResolver:
    """Resolver backed by user hooks.

    Each hook is called with ``(context, descriptor)``. The ``file`` hook
    may return a mapping holding any subset of :data:`RESOLVABLE_FIELDS`
    (or a bare string, taken as the filename); the per-field hooks return a
    single value and take precedence over the ``file`` hook. ``None`` means
    "use the default".
    """

    def __init__(
        self,
        defaults: StaticResolver | None = None,
        file: Hook | None = None,
        filename: Hook | None = None,
        metadata: Hook | None = None,
        bucket_name: Hook | None = None,
        chunk_size: Hook | None = None,
    ) -> None:
        self.defaults = defaults or StaticResolver()
        self._file_hook = as_async(file) if file is not None else None
        hooks = {
            "filename": filename,
            "metadata": metadata,
            "bucket_name": bucket_name,
            "chunk_size_bytes": chunk_size,
        }
        self._field_hooks: dict[str, AsyncHook] = {
            name: as_async(hook) for name, hook in hooks.items() if hook is not None
        }

    async def resolve(self, file: FileStream, context: Any) -> ResolvedMetadata:
        descriptor = file.descriptor
        values: dict[str, Any] = {}

        if self._file_hook is not None:
            result = await self._call(file, "file", self._file_hook, context, descriptor)
            values.update(_file_values(file, result))

        for name, hook in self._field_hooks.items():
            value = await self._call(file, name, hook, context, descriptor)
            if value is not None:
                values[name] = value

        return self.defaults.build(file, values)

    async def _call(
        self,
        file: FileStream,
        name: str,
        hook: AsyncHook,
        context: Any,
        descriptor: FileDescriptor,
    ) -> Any:
        try:
            return await hook(context, descriptor)
        except GridStreamError as exc:
            raise ResolutionError(
                exc.message, field=file.field_name, filename=file.original_filename
            ) from exc
        except Exception as exc:
            logger.warning(
                "Resolver hook '%s' failed for field %s: %s",
                name,
                file.field_name,
                exc,
                extra={"field": file.field_name},
            )
            raise ResolutionError(
                f"{name} resolver failed: {exc}",
                field=file.field_name,
                filename=file.original_filename,
            ) from exc


def _file_values(file: FileStream, result: Any) -> dict[str, Any]:
    """Normalise the return value of a ``file`` hook into a dict."""
    if result is None:
        return {}
    if isinstance(result, str):
        return {"filename": result}
    if not isinstance(result, Mapping):
        raise _invalid(file, f"file resolver must return a mapping, got {type(result).__name__}")
    unknown = set(result) - set(RESOLVABLE_FIELDS)
    if unknown:
        raise _invalid(file, f"unknown resolved fields: {', '.join(sorted(unknown))}")
    return {key: value for key, value in result.items() if value is not None}


def _invalid(file: FileStream, message: str) -> ResolutionError:
    return ResolutionError(message, field=file.field_name, filename=file.original_filename)


def build_resolver(
    bucket_name: str = DEFAULT_BUCKET_NAME,
    chunk_size_bytes: int = DEFAULT_CHUNK_SIZE,
    file: Hook | None = None,
    filename: Hook | None = None,
    metadata: Hook | None = None,
    bucket: Hook | None = None,
    chunk_size: Hook | None = None,
) -> MetadataResolver:
    """Pick the resolver variant for the given configuration.

    Returns a :class:`StaticResolver` when no hook is set, otherwise a
    :class:`CallbackResolver` using the static values as defaults.
    """
    defaults = StaticResolver(bucket_name=bucket_name, chunk_size_bytes=chunk_size_bytes)
    if all(hook is None for hook in (file, filename, metadata, bucket, chunk_size)):
        return defaults
    return CallbackResolver(
        defaults=defaults,
        file=file,
        filename=filename,
        metadata=metadata,
        bucket_name=bucket,
        chunk_size=chunk_size,
    )
