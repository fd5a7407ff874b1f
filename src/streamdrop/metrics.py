"""Prometheus metrics definitions for StreamDrop.

All custom StreamDrop metrics use the ``streamdrop_`` prefix for namespace
isolation.  These are *application-level* upload metrics; the
``prometheus-fastapi-instrumentator`` package provides automatic HTTP-level
metrics (request count, duration, sizes).

Crash-only design: counters reset to zero on restart.  Prometheus handles
gaps via ``rate()``.  The session gauge is refreshed by every sweep.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge

# Flag indicating whether metrics have been initialised via init_metrics().
_initialized: bool = False

# ---------------------------------------------------------------------------
# Operation counters
# ---------------------------------------------------------------------------
upload_operations_total: Counter | None = None
combine_outcomes_total: Counter | None = None
chunks_written_total: Counter | None = None
chunks_reclaimed_total: Counter | None = None

# ---------------------------------------------------------------------------
# Session gauge  (labels: state)
# ---------------------------------------------------------------------------
upload_sessions: Gauge | None = None

# ---------------------------------------------------------------------------
# Byte counters
# ---------------------------------------------------------------------------
bytes_received_total: Counter | None = None
bytes_sent_total: Counter | None = None


def init_metrics() -> None:
    """Create and register all Prometheus metrics.

    This must be called once when metrics are enabled.  When metrics are
    disabled in config the module-level references stay ``None`` and no
    collectors are registered in the global registry.
    """
    global _initialized
    global upload_operations_total, combine_outcomes_total
    global chunks_written_total, chunks_reclaimed_total, upload_sessions
    global bytes_received_total, bytes_sent_total

    if _initialized:
        return

    upload_operations_total = Counter(
        "streamdrop_upload_operations_total",
        "Total object and upload operations by type and outcome",
        ["operation", "status"],
    )

    combine_outcomes_total = Counter(
        "streamdrop_combine_outcomes_total",
        "Combine attempts by outcome",
        ["outcome"],
    )

    chunks_written_total = Counter(
        "streamdrop_chunks_written_total",
        "Total upload parts stored",
    )

    chunks_reclaimed_total = Counter(
        "streamdrop_chunks_reclaimed_total",
        "Total leftover upload parts deleted by the sweeper",
    )

    upload_sessions = Gauge(
        "streamdrop_upload_sessions",
        "Upload sessions by state",
        ["state"],
    )

    bytes_received_total = Counter(
        "streamdrop_bytes_received_total",
        "Total bytes received in request bodies",
    )

    bytes_sent_total = Counter(
        "streamdrop_bytes_sent_total",
        "Total bytes sent in response bodies",
    )

    _initialized = True


def record_operation(operation: str, status: int | str) -> None:
    """Count one operation; a no-op when metrics are disabled."""
    if upload_operations_total is not None:
        upload_operations_total.labels(operation=operation, status=str(status)).inc()


def record_combine(outcome: str) -> None:
    if combine_outcomes_total is not None:
        combine_outcomes_total.labels(outcome=outcome).inc()
