"""gridstream: streaming multipart uploads into GridFS."""

from gridstream.engine import GridFsStorage
from gridstream.errors import (
    CancelledUpload,
    ConfigurationError,
    ConnectionError,
    GridStreamError,
    ManagerClosedError,
    ResolutionError,
    StoreError,
    StreamError,
    UploadError,
)
from gridstream.models import (
    FileStream,
    StoredFileRecord,
    UploadRequest,
    UploadResult,
)

__version__ = "0.1.0"

__all__ = [
    "CancelledUpload",
    "ConfigurationError",
    "ConnectionError",
    "FileStream",
    "GridFsStorage",
    "GridStreamError",
    "ManagerClosedError",
    "ResolutionError",
    "StoreError",
    "StoredFileRecord",
    "StreamError",
    "UploadError",
    "UploadRequest",
    "UploadResult",
]
