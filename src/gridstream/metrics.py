"""Prometheus metrics definitions for gridstream.

All custom metrics use the ``gridstream_`` prefix. These are upload-level
metrics; ``prometheus-fastapi-instrumentator`` provides the HTTP-level
ones (request count, duration, sizes).

Counters reset to zero on restart. The helper functions are no-ops until
:func:`init_metrics` has been called, so the upload pipeline can be used
without a metrics registry.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

# Flag indicating whether metrics have been initialised via init_metrics().
_initialized: bool = False

# ---------------------------------------------------------------------------
# Upload outcome counter  (labels: status)
# ---------------------------------------------------------------------------
uploads_total: Counter | None = None

# ---------------------------------------------------------------------------
# In-flight writers
# ---------------------------------------------------------------------------
uploads_in_flight: Gauge | None = None

# ---------------------------------------------------------------------------
# Bytes and cleanup
# ---------------------------------------------------------------------------
bytes_written_total: Counter | None = None
cleanups_total: Counter | None = None


def init_metrics() -> None:
    """Create and register all Prometheus metrics.

    Safe to call more than once; collectors are only registered in the
    global registry the first time.
    """
    global _initialized
    global uploads_total, uploads_in_flight, bytes_written_total, cleanups_total

    if _initialized:
        return

    uploads_total = Counter(
        "gridstream_uploads_total",
        "Total file uploads by outcome",
        ["status"],
    )

    uploads_in_flight = Gauge(
        "gridstream_uploads_in_flight",
        "File writers currently streaming or waiting to stream",
    )

    bytes_written_total = Counter(
        "gridstream_bytes_written_total",
        "Total bytes forwarded to the chunked store",
    )

    cleanups_total = Counter(
        "gridstream_cleanups_total",
        "Cleanup of partially written files by outcome",
        ["status"],
    )

    _initialized = True


def record_upload(status: str) -> None:
    if uploads_total is not None:
        uploads_total.labels(status=status).inc()


def record_bytes(count: int) -> None:
    if bytes_written_total is not None and count > 0:
        bytes_written_total.inc(count)


def record_cleanup(status: str) -> None:
    if cleanups_total is not None:
        cleanups_total.labels(status=status).inc()


def writer_started() -> None:
    if uploads_in_flight is not None:
        uploads_in_flight.inc()


def writer_finished() -> None:
    if uploads_in_flight is not None:
        uploads_in_flight.dec()
