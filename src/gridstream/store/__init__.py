"""Chunked store backends for gridstream."""

from typing import Any

from gridstream.store.backend import ChunkSink, ChunkStore
from gridstream.store.memory import MemoryChunkStore

__all__ = [
    "ChunkSink",
    "ChunkStore",
    "create_store",
    "MemoryChunkStore",
]


def create_store(handle: Any) -> ChunkStore:
    """Build the chunked store for a connection handle.

    A handle whose class already implements ``open_write`` is used as is;
    anything else is treated as a motor database and wrapped in a
    GridFS store. The check is made on the class because a motor database
    answers every attribute lookup with a collection.

    Args:
        handle: The handle returned by the connection manager.

    Returns:
        A store implementing the ChunkStore protocol.
    """
    if callable(getattr(type(handle), "open_write", None)):
        return handle

    from gridstream.store.gridfs import GridFSStore

    return GridFSStore(handle)
