"""Error definitions for gridstream."""

from __future__ import annotations

from typing import Any


class GridStreamError(Exception):
    """An upload error with code, message, and HTTP status.

    Attributes:
        code: Error code string (e.g. "ResolutionError", "StoreError").
        message: Human-readable error description.
        http_status: The HTTP status code the response layer should return.
        field: The form field name of the file the error belongs to, if any.
        filename: The client-supplied filename of that file, if any.
    """

    code = "InternalError"
    default_status = 500

    def __init__(
        self,
        message: str,
        http_status: int | None = None,
        field: str | None = None,
        filename: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.http_status = http_status or self.default_status
        self.field = field
        self.filename = filename

    def to_dict(self) -> dict[str, Any]:
        """Render the error as a JSON-compatible mapping."""
        return {
            "code": self.code,
            "message": self.message,
            "field": self.field,
            "filename": self.filename,
        }


# -- Construction / connection -------------------------------------------------


class ConfigurationError(GridStreamError):
    """Bad or contradictory construction options. Fatal at startup."""

    code = "ConfigurationError"


class ConnectionError(GridStreamError):  # noqa: A001
    """The connect attempt for a storage instance failed.

    Stored by the connection manager and raised to every current and
    future waiter of that instance.
    """

    code = "ConnectionError"
    default_status = 503


class ManagerClosedError(ConnectionError):
    """The connection manager was closed."""

    code = "ManagerClosed"

    def __init__(self, message: str = "Connection manager is closed") -> None:
        super().__init__(message)


# -- Per-file errors -----------------------------------------------------------


class ResolutionError(GridStreamError):
    """A dynamic filename/metadata hook raised or returned an invalid value."""

    code = "ResolutionError"
    default_status = 400


class StreamError(GridStreamError):
    """The source byte stream broke mid-transfer."""

    code = "StreamError"
    default_status = 400


class StoreError(GridStreamError):
    """The chunked store rejected a write."""

    code = "StoreError"
    default_status = 502


class CancelledUpload(GridStreamError):
    """The upload was cancelled because a sibling upload failed."""

    code = "Cancelled"
    default_status = 400


class LimitUnexpectedFile(GridStreamError):
    """A file arrived on an unexpected field or past the configured count."""

    code = "LIMIT_UNEXPECTED_FILE"
    default_status = 400


# -- Aggregate -----------------------------------------------------------------


class UploadError(GridStreamError):
    """Aggregated failure of one upload request.

    Names the file whose failure triggered cancellation of its siblings and
    keeps every per-file failure in ``failures``.
    """

    code = "UploadError"

    def __init__(
        self,
        cause: GridStreamError,
        failures: list[Any] | None = None,
    ) -> None:
        label = cause.field or "<unknown>"
        super().__init__(
            f"Upload of field '{label}' failed: {cause.message}",
            http_status=cause.http_status,
            field=cause.field,
            filename=cause.filename,
        )
        self.cause = cause
        self.failures = failures or []

    def to_dict(self) -> dict[str, Any]:
        entry = super().to_dict()
        entry["cause"] = self.cause.to_dict()
        return entry
