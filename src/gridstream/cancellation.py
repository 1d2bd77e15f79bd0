"""Per-request cancellation token shared by sibling writers."""

import asyncio

from gridstream.errors import CancelledUpload


class CancellationToken:
    """Cooperative cancellation signal for the writers of one request.

    Writers call :meth:`raise_if_cancelled` before each suspension point.
    The first :meth:`cancel` wins; its reason is kept.
    """

    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    def raise_if_cancelled(self, field: str | None = None, filename: str | None = None) -> None:
        """Raise :class:`CancelledUpload` if the token has been cancelled."""
        if self._event.is_set():
            raise CancelledUpload(
                f"Upload cancelled: {self.reason}", field=field, filename=filename
            )
