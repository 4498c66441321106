"""Prometheus self-metrics for the collector process."""

import logging
from typing import Optional

from prometheus_client import REGISTRY, Counter, Gauge, Histogram, start_http_server

logger = logging.getLogger(__name__)


# =============================================================================
# Cycle Metrics
# =============================================================================

CYCLES_TOTAL = Counter(
    'database_collector_cycles_total',
    'Total number of collection cycles run',
    registry=REGISTRY,
)

CYCLE_DURATION = Histogram(
    'database_collector_cycle_duration_seconds',
    'Duration of a full collection cycle in seconds',
    buckets=[0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0],
    registry=REGISTRY,
)

BINDINGS = Gauge(
    'database_collector_bindings',
    'Number of live collector bindings',
    registry=REGISTRY,
)


# =============================================================================
# Per-binding Metrics
# =============================================================================

SCRAPES_TOTAL = Counter(
    'database_collector_scrapes_total',
    'Total number of per-instance scrapes',
    ['engine', 'status'],
    registry=REGISTRY,
)

SCRAPE_ERRORS_TOTAL = Counter(
    'database_collector_scrape_errors_total',
    'Per-instance scrape failures by error kind',
    ['error_kind'],
    registry=REGISTRY,
)

SERIES_SENT_TOTAL = Counter(
    'database_collector_series_sent_total',
    'Total number of time series delivered to remote write',
    registry=REGISTRY,
)

SERIES_SKIPPED_TOTAL = Counter(
    'database_collector_series_skipped_total',
    'Total number of series skipped during encoding',
    registry=REGISTRY,
)


def record_scrape(engine: str, success: bool, error_kind: Optional[str] = None, series_sent: int = 0, series_skipped: int = 0):
    """Record the outcome of one per-instance scrape."""
    SCRAPES_TOTAL.labels(engine=engine, status="success" if success else "error").inc()
    if error_kind:
        SCRAPE_ERRORS_TOTAL.labels(error_kind=error_kind).inc()
    if series_sent:
        SERIES_SENT_TOTAL.inc(series_sent)
    if series_skipped:
        SERIES_SKIPPED_TOTAL.inc(series_skipped)


def record_cycle(duration_seconds: float, bindings: int):
    """Record a completed cycle."""
    CYCLES_TOTAL.inc()
    CYCLE_DURATION.observe(duration_seconds)
    BINDINGS.set(bindings)


def start_metrics_server(port: int, addr: str = "0.0.0.0"):
    """Expose self-metrics over HTTP."""
    start_http_server(port, addr=addr)
    logger.info(f"Serving collector metrics on {addr}:{port}")
