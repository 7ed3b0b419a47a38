"""Prometheus metrics definitions for s3emu.

All custom metrics use the ``s3emu_`` prefix. HTTP-level metrics (request
count, latency, sizes) come from ``prometheus-fastapi-instrumentator``;
the collectors here count S3 operations and payload bytes.

Counters reset to zero on restart. The collectors live in the global
prometheus_client registry, so ``init_metrics()`` registers them at most
once per process.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

_initialized: bool = False

# S3 operation counter  (labels: operation, status)
s3_operations_total: Counter | None = None

bytes_received_total: Counter | None = None
bytes_sent_total: Counter | None = None

multipart_uploads_active: Gauge | None = None


def init_metrics() -> None:
    """Create and register all Prometheus metrics.

    When metrics are disabled in config this is never called and the
    module-level references stay ``None``.
    """
    global _initialized
    global s3_operations_total, bytes_received_total, bytes_sent_total
    global multipart_uploads_active

    if _initialized:
        return

    s3_operations_total = Counter(
        "s3emu_s3_operations_total",
        "Total S3 operations by type and outcome",
        ["operation", "status"],
    )

    bytes_received_total = Counter(
        "s3emu_bytes_received_total",
        "Total bytes received in request bodies",
    )

    bytes_sent_total = Counter(
        "s3emu_bytes_sent_total",
        "Total bytes sent in response bodies",
    )

    multipart_uploads_active = Gauge(
        "s3emu_multipart_uploads_active",
        "Number of multipart uploads between initiate and complete/abort",
    )

    _initialized = True


def record_operation(operation: str, status: str) -> None:
    """Increment the operation counter if metrics are enabled."""
    if s3_operations_total is not None:
        s3_operations_total.labels(operation=operation, status=status).inc()


def set_active_uploads(count: int) -> None:
    """Publish the size of the active multipart registry."""
    if multipart_uploads_active is not None:
        multipart_uploads_active.set(count)
