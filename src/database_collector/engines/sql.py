"""SQL query collector - runs metric queries and turns rows into metric families."""

import logging
import re
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Iterable, Optional

import yaml
from prometheus_client import Metric
from prometheus_client.core import CounterMetricFamily, GaugeMetricFamily
from sqlalchemy import create_engine, text
from sqlalchemy.engine import URL, Connection, Engine
from sqlalchemy.exc import SQLAlchemyError

from ..credentials import CredentialRecord
from ..errors import ScrapeError
from .base import EngineCollector, EngineOptions

logger = logging.getLogger(__name__)

_INVALID_NAME_CHARS = re.compile(r"[^a-zA-Z0-9_]+")


@dataclass
class QueryMetric:
    """
    A query whose result rows become metrics.

    Each column listed in ``metrics_desc`` becomes a metric named
    ``<namespace>_<context>_<column>``, labelled by the ``labels`` columns.
    With ``field_to_append`` set, the metric name suffix is taken from that
    column's value instead, and ``metrics_desc`` names the value column.
    """

    context: str
    request: str
    metrics_desc: dict[str, str]
    labels: list[str] = field(default_factory=list)
    metrics_type: dict[str, str] = field(default_factory=dict)  # column -> gauge|counter
    field_to_append: str = ""
    ignore_zero_result: bool = False

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "QueryMetric":
        """Build from a config mapping. Accepts ``metricsdesc``-style keys too."""
        context = data.get("context")
        request = data.get("request")
        metrics_desc = data.get("metrics_desc", data.get("metricsdesc"))
        if not context or not request or not metrics_desc:
            raise ValueError("Metric definition needs context, request and metrics_desc")
        return cls(
            context=context,
            request=request,
            metrics_desc=dict(metrics_desc),
            labels=list(data.get("labels", [])),
            metrics_type=dict(data.get("metrics_type", data.get("metricstype", {}))),
            field_to_append=data.get("field_to_append", data.get("fieldtoappend", "")),
            ignore_zero_result=bool(data.get("ignore_zero_result", data.get("ignorezeroresult", False))),
        )


def load_custom_metrics(path: str | Path, identifier: str) -> list[QueryMetric]:
    """
    Load the custom metrics defined for one database identifier.

    The file lists databases by identifier; ``"*"`` applies to every database:

        databases:
          - identifier: orders-db
            metrics:
              - context: orders
                request: SELECT COUNT(*) AS pending FROM orders WHERE status = 'pending'
                metrics_desc:
                  pending: Orders waiting to be processed.
    """
    with open(path) as f:
        data = yaml.safe_load(f) or {}

    metrics = []
    for database in data.get("databases", []):
        if database.get("identifier") not in (identifier, "*"):
            continue
        for metric_data in database.get("metrics", []):
            metrics.append(QueryMetric.from_dict(metric_data))
    return metrics


def _clean_name(value: str) -> str:
    return _INVALID_NAME_CHARS.sub("_", value).strip("_").lower()


def _label_value(value: Any) -> str:
    return "" if value is None else str(value)


class SqlQueryCollector(EngineCollector):
    """
    Engine collector backed by SQLAlchemy.

    Runs every configured ``QueryMetric`` on each gather and also exposes
    exporter self-metrics:
        <namespace>_up
        <namespace>_exporter_last_scrape_duration_seconds
        <namespace>_exporter_scrapes_total
        <namespace>_exporter_last_scrape_error
        <namespace>_exporter_scrape_errors_total{collector}

    Subclasses set ``namespace``, ``driver`` and ``default_metrics``.
    """

    namespace: str = "sql"
    driver: str = ""
    default_metrics: list[QueryMetric] = []

    def __init__(self, credential: CredentialRecord, options: Optional[EngineOptions] = None):
        super().__init__(credential, options)
        self.metrics = list(self.default_metrics) + self._load_custom_metrics()
        self._lock = threading.Lock()
        self._engine: Optional[Engine] = None
        self._total_scrapes = 0
        self._scrape_errors: dict[str, int] = {}

    def _load_custom_metrics(self) -> list[QueryMetric]:
        path = self.options.custom_metrics_file
        if not path:
            return []
        try:
            metrics = load_custom_metrics(path, self.credential.identifier)
        except (OSError, ValueError, yaml.YAMLError) as e:
            logger.error(f"Failed to load custom metrics from {path}, using defaults only: {e}")
            return []
        if metrics:
            logger.info(f"Loaded {len(metrics)} custom metrics for {self.credential.identifier}")
        return metrics

    def build_url(self) -> URL:
        """SQLAlchemy URL for this instance. Override for engine-specific forms."""
        conn = self.credential.connection
        return URL.create(
            self.driver,
            username=conn.username,
            password=conn.password,
            host=conn.host,
            port=conn.port,
            database=conn.dbname or None,
        )

    def connect_args(self) -> dict[str, Any]:
        """DBAPI connect arguments. Override to apply timeouts."""
        return {}

    def configure_engine(self, engine: Engine):
        """Hook to attach engine event listeners."""
        pass

    def _get_engine(self) -> Engine:
        if self._engine is None:
            self._engine = create_engine(
                self.build_url(),
                pool_size=self.options.pool_size,
                max_overflow=0,
                pool_pre_ping=True,
                connect_args=self.connect_args(),
            )
            self.configure_engine(self._engine)
        return self._engine

    def describe(self) -> Iterable[Metric]:
        ns = self.namespace
        return [
            GaugeMetricFamily(f"{ns}_up", "Whether the database server is up."),
            GaugeMetricFamily(f"{ns}_exporter_last_scrape_duration_seconds", "Duration of the last scrape."),
            CounterMetricFamily(f"{ns}_exporter_scrapes", "Total number of scrapes."),
            GaugeMetricFamily(f"{ns}_exporter_last_scrape_error", "Whether the last scrape resulted in an error."),
            CounterMetricFamily(f"{ns}_exporter_scrape_errors", "Total number of scrape errors.", labels=["collector"]),
        ]

    def collect(self) -> Iterable[Metric]:
        with self._lock:
            return self._scrape()

    def _scrape(self) -> list[Metric]:
        start = time.monotonic()
        self._total_scrapes += 1
        families: dict[str, Metric] = {}
        up = 1.0
        failed = False

        try:
            engine = self._get_engine()
            with engine.connect() as conn:
                for metric in self.metrics:
                    try:
                        self._scrape_metric(conn, metric, families)
                    except (SQLAlchemyError, ScrapeError) as e:
                        failed = True
                        self._scrape_errors[metric.context] = self._scrape_errors.get(metric.context, 0) + 1
                        logger.warning(f"Query '{metric.context}' failed on {self.credential.id}: {e}")
                        conn.rollback()
        except SQLAlchemyError as e:
            up = 0.0
            failed = True
            logger.error(f"Failed connecting to {self.credential.id}: {e}")

        duration = time.monotonic() - start
        ns = self.namespace

        results = list(families.values())
        results.append(GaugeMetricFamily(f"{ns}_up", "Whether the database server is up.", value=up))
        results.append(GaugeMetricFamily(
            f"{ns}_exporter_last_scrape_duration_seconds",
            "Duration of the last scrape.",
            value=duration,
        ))
        results.append(CounterMetricFamily(
            f"{ns}_exporter_scrapes",
            "Total number of scrapes.",
            value=self._total_scrapes,
        ))
        results.append(GaugeMetricFamily(
            f"{ns}_exporter_last_scrape_error",
            "Whether the last scrape resulted in an error (1 for error, 0 for success).",
            value=1.0 if failed else 0.0,
        ))
        errors = CounterMetricFamily(
            f"{ns}_exporter_scrape_errors",
            "Total number of scrape errors.",
            labels=["collector"],
        )
        for context, count in sorted(self._scrape_errors.items()):
            errors.add_metric([context], count)
        results.append(errors)
        return results

    def _scrape_metric(self, conn: Connection, metric: QueryMetric, families: dict[str, Metric]):
        result = conn.execute(text(metric.request))
        rows = [{str(k).lower(): v for k, v in row.items()} for row in result.mappings()]

        if not rows:
            if metric.ignore_zero_result:
                return
            raise ScrapeError(f"No rows returned for '{metric.context}'")

        label_names = [label.lower() for label in metric.labels]
        for row in rows:
            label_values = [_label_value(row.get(name)) for name in label_names]

            for column, description in metric.metrics_desc.items():
                raw = row.get(column.lower())
                try:
                    value = float(raw)
                except (TypeError, ValueError):
                    logger.debug(f"Non-numeric value for {metric.context}.{column}: {raw!r}")
                    continue

                if metric.field_to_append:
                    suffix = _label_value(row.get(metric.field_to_append.lower()))
                else:
                    suffix = column
                name = _clean_name(f"{self.namespace}_{metric.context}_{suffix}")

                family = families.get(name)
                if family is None:
                    if metric.metrics_type.get(column, "gauge").lower() == "counter":
                        family = CounterMetricFamily(name, description, labels=label_names)
                    else:
                        family = GaugeMetricFamily(name, description, labels=label_names)
                    families[name] = family
                family.add_metric(label_values, value)

    def update_credential(self, credential: CredentialRecord):
        with self._lock:
            changed = credential.connection != self.credential.connection
            self.credential = credential
            if changed and self._engine is not None:
                logger.info(f"Connection parameters changed for {credential.id}, reconnecting")
                self._engine.dispose()
                self._engine = None

    def close(self):
        with self._lock:
            if self._engine is not None:
                self._engine.dispose()
                self._engine = None
