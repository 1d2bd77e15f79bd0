"""Shared pytest fixtures for gridstream tests.

Uploads run against the in-memory chunked store, handed to the engine as a
pre-built handle or returned from a fake connector so that url mode can be
exercised without a MongoDB server.
"""

import asyncio
import hashlib
import os

import pytest

from gridstream.config import StorageConfig
from gridstream.engine import GridFsStorage
from gridstream.models import FileStream
from gridstream.store import MemoryChunkStore


async def byte_stream(data: bytes, piece: int = 1000, delay: float = 0):
    """Yield ``data`` in pieces of ``piece`` bytes."""
    for offset in range(0, len(data), piece):
        if delay:
            await asyncio.sleep(delay)
        else:
            await asyncio.sleep(0)
        yield data[offset : offset + piece]


async def broken_stream(data: bytes, fail_after: int, piece: int = 1000):
    """Yield ``fail_after`` bytes of ``data`` in pieces, then raise."""
    sent = 0
    for offset in range(0, len(data), piece):
        if sent >= fail_after:
            raise ConnectionResetError("client went away")
        chunk = data[offset : offset + piece]
        sent += len(chunk)
        await asyncio.sleep(0)
        yield chunk
    raise ConnectionResetError("client went away")


def make_file(
    data: bytes,
    field_name: str = "photos",
    original_filename: str = "a.jpg",
    content_type: str = "image/jpeg",
    stream=None,
) -> FileStream:
    return FileStream(
        field_name=field_name,
        original_filename=original_filename,
        content_type=content_type,
        stream=stream if stream is not None else byte_stream(data),
    )


def md5_of(data: bytes) -> str:
    return hashlib.md5(data).hexdigest()


@pytest.fixture
def photos() -> dict[str, bytes]:
    """Two source files larger than a couple of chunks each."""
    return {
        "a.jpg": os.urandom(40 * 1024 + 17),
        "b.jpg": os.urandom(25 * 1024 + 3),
    }


@pytest.fixture
def store() -> MemoryChunkStore:
    return MemoryChunkStore()


@pytest.fixture
def small_chunks() -> StorageConfig:
    """Storage config with a small chunk size so files span many chunks."""
    return StorageConfig(backend="memory", chunk_size_bytes=4096)


@pytest.fixture
async def storage(store, small_chunks):
    """Engine over the memory store in handle mode."""
    engine = GridFsStorage(small_chunks, handle=store, owns_handle=False)
    yield engine
    await engine.close()
