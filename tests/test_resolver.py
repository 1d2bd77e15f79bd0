"""Tests for per-file metadata resolution."""

import asyncio
import inspect

import pytest

from conftest import make_file
from gridstream.errors import ResolutionError
from gridstream.identity import IDENTITY_PATTERN
from gridstream.models import DEFAULT_BUCKET_NAME, DEFAULT_CHUNK_SIZE, FileDescriptor
from gridstream.resolver import CallbackResolver, StaticResolver, as_async, build_resolver


class TestStaticResolver:
    """Tests for StaticResolver."""

    async def test_defaults(self):
        resolved = await StaticResolver().resolve(make_file(b"x"), None)
        assert IDENTITY_PATTERN.match(resolved.filename)
        assert resolved.metadata is None
        assert resolved.bucket_name == DEFAULT_BUCKET_NAME == "fs"
        assert resolved.chunk_size_bytes == DEFAULT_CHUNK_SIZE == 261120
        assert resolved.content_type == "image/jpeg"

    async def test_each_file_gets_its_own_name(self):
        resolver = StaticResolver()
        first = await resolver.resolve(make_file(b"x"), None)
        second = await resolver.resolve(make_file(b"x"), None)
        assert first.filename != second.filename

    async def test_missing_content_type_falls_back(self):
        file = make_file(b"x", content_type=None)
        resolved = await StaticResolver().resolve(file, None)
        assert resolved.content_type == "application/octet-stream"

    async def test_configured_values(self):
        resolver = StaticResolver(bucket_name="photos", chunk_size_bytes=1024)
        resolved = await resolver.resolve(make_file(b"x"), None)
        assert resolved.bucket_name == "photos"
        assert resolved.chunk_size_bytes == 1024


class TestCallbackResolver:
    """Tests for CallbackResolver with sync and async hooks."""

    async def test_sync_metadata_hook(self):
        resolver = CallbackResolver(metadata=lambda ctx, f: {"tag": "x"})
        resolved = await resolver.resolve(make_file(b"x"), None)
        assert resolved.metadata == {"tag": "x"}
        assert IDENTITY_PATTERN.match(resolved.filename)
        assert resolved.bucket_name == "fs"

    async def test_async_filename_hook_receives_context_and_descriptor(self):
        seen = []

        async def filename(ctx, descriptor):
            await asyncio.sleep(0)
            seen.append((ctx, descriptor))
            return f"{ctx['user']}-{descriptor.original_filename}"

        resolver = CallbackResolver(filename=filename)
        resolved = await resolver.resolve(make_file(b"x"), {"user": "ana"})
        assert resolved.filename == "ana-a.jpg"
        ctx, descriptor = seen[0]
        assert ctx == {"user": "ana"}
        assert descriptor == FileDescriptor("photos", "a.jpg", "image/jpeg")

    async def test_file_hook_subset_falls_back_to_defaults(self):
        resolver = CallbackResolver(
            defaults=StaticResolver(chunk_size_bytes=2048),
            file=lambda ctx, f: {"bucket_name": "docs"},
        )
        resolved = await resolver.resolve(make_file(b"x"), None)
        assert resolved.bucket_name == "docs"
        assert resolved.chunk_size_bytes == 2048
        assert resolved.metadata is None
        assert IDENTITY_PATTERN.match(resolved.filename)

    async def test_file_hook_string_is_filename(self):
        resolver = CallbackResolver(file=lambda ctx, f: "fixed.bin")
        resolved = await resolver.resolve(make_file(b"x"), None)
        assert resolved.filename == "fixed.bin"

    async def test_field_hook_overrides_file_hook(self):
        resolver = CallbackResolver(
            file=lambda ctx, f: {"filename": "from-file", "metadata": {"a": 1}},
            filename=lambda ctx, f: "from-field",
        )
        resolved = await resolver.resolve(make_file(b"x"), None)
        assert resolved.filename == "from-field"
        assert resolved.metadata == {"a": 1}

    async def test_none_from_hook_means_default(self):
        resolver = CallbackResolver(
            filename=lambda ctx, f: None, chunk_size=lambda ctx, f: None
        )
        resolved = await resolver.resolve(make_file(b"x"), None)
        assert IDENTITY_PATTERN.match(resolved.filename)
        assert resolved.chunk_size_bytes == DEFAULT_CHUNK_SIZE

    async def test_raising_hook_is_resolution_error(self):
        def metadata(ctx, f):
            raise RuntimeError("lookup failed")

        resolver = CallbackResolver(metadata=metadata)
        with pytest.raises(ResolutionError, match="lookup failed") as excinfo:
            await resolver.resolve(make_file(b"x", field_name="avatar"), None)
        assert excinfo.value.field == "avatar"
        assert excinfo.value.filename == "a.jpg"

    async def test_rejecting_async_hook_is_resolution_error(self):
        async def filename(ctx, f):
            raise ValueError("nope")

        resolver = CallbackResolver(filename=filename)
        with pytest.raises(ResolutionError, match="nope"):
            await resolver.resolve(make_file(b"x"), None)

    @pytest.mark.parametrize("chunk_size", [0, -5, "big", True])
    async def test_invalid_chunk_size(self, chunk_size):
        resolver = CallbackResolver(chunk_size=lambda ctx, f: chunk_size)
        with pytest.raises(ResolutionError, match="chunk size"):
            await resolver.resolve(make_file(b"x"), None)

    async def test_invalid_filename(self):
        resolver = CallbackResolver(filename=lambda ctx, f: 42)
        with pytest.raises(ResolutionError, match="filename"):
            await resolver.resolve(make_file(b"x"), None)

    async def test_unknown_keys_from_file_hook(self):
        resolver = CallbackResolver(file=lambda ctx, f: {"colour": "red"})
        with pytest.raises(ResolutionError, match="colour"):
            await resolver.resolve(make_file(b"x"), None)

    async def test_non_mapping_from_file_hook(self):
        resolver = CallbackResolver(file=lambda ctx, f: 12)
        with pytest.raises(ResolutionError, match="mapping"):
            await resolver.resolve(make_file(b"x"), None)


class TestAsAsync:
    """Tests for hook normalisation."""

    async def test_plain_function_becomes_awaitable(self):
        def hook(ctx, f):
            return "value"

        wrapped = as_async(hook)
        assert inspect.iscoroutinefunction(wrapped)
        assert await wrapped(None, None) == "value"
        assert wrapped.__name__ == "hook"

    def test_coroutine_function_kept(self):
        async def hook(ctx, f):
            return "value"

        assert as_async(hook) is hook


class TestBuildResolver:
    """Tests for build_resolver()."""

    def test_no_hooks_is_static(self):
        resolver = build_resolver(bucket_name="b", chunk_size_bytes=10)
        assert isinstance(resolver, StaticResolver)
        assert resolver.bucket_name == "b"

    def test_any_hook_is_callback(self):
        resolver = build_resolver(metadata=lambda ctx, f: None)
        assert isinstance(resolver, CallbackResolver)
        assert resolver.defaults.bucket_name == "fs"
