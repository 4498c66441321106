"""
Metric Encoder Tests

Unit tests for flattening metric families into remote-write time series.
"""

from prometheus_client import CollectorRegistry as MetricRegistry
from prometheus_client import Histogram, Metric
from prometheus_client.core import (
    CounterMetricFamily,
    GaugeMetricFamily,
    HistogramMetricFamily,
    InfoMetricFamily,
)

from database_collector.encoder import Enrichment, MetricEncoder

NOW_MS = 1_700_000_000_000

ENRICHMENT = Enrichment(
    identifier="orders-db",
    job="database-collector",
    region="us-east-1",
    account="123456789012",
    engine="postgres",
)


def _encoder():
    return MetricEncoder(clock=lambda: NOW_MS)


class TestSimpleFamilies:
    """Tests for counters, gauges and untyped families."""

    def test_gauge_up(self):
        """A single gauge yields one series with enrichment labels and one sample."""
        batch = _encoder().encode([GaugeMetricFamily("up", "Up.", value=1)], ENRICHMENT)

        assert len(batch) == 1
        series = batch.timeseries[0]
        assert series.labels == (
            ("__name__", "up"),
            ("accountId", "123456789012"),
            ("engine", "postgres"),
            ("identifier", "orders-db"),
            ("job", "database-collector"),
            ("region", "us-east-1"),
        )
        assert [(s.value, s.timestamp_ms) for s in series.samples] == [(1.0, NOW_MS)]

    def test_labels_sorted_and_unique(self):
        family = GaugeMetricFamily("pg_locks_count", "Locks.", labels=["mode", "datname"])
        family.add_metric(["AccessShareLock", "orders"], 4)

        series = _encoder().encode([family], ENRICHMENT).timeseries[0]

        names = [name for name, _ in series.labels]
        assert names == sorted(names)
        assert len(names) == len(set(names))
        assert series.label("mode") == "AccessShareLock"

    def test_enrichment_wins_on_collision(self):
        family = GaugeMetricFamily("up", "Up.", labels=["engine", "job"])
        family.add_metric(["mysql", "other"], 1)

        series = _encoder().encode([family], ENRICHMENT).timeseries[0]

        assert series.label("engine") == "postgres"
        assert series.label("job") == "database-collector"

    def test_counter_uses_total_sample(self):
        family = CounterMetricFamily("mysql_global_status_queries", "Queries.", value=120)

        batch = _encoder().encode([family], ENRICHMENT)

        assert len(batch) == 1
        assert batch.timeseries[0].name == "mysql_global_status_queries_total"
        assert batch.timeseries[0].samples[0].value == 120.0
        assert batch.skipped == 0

    def test_untyped(self):
        family = Metric("legacy_value", "Untyped.", "unknown")
        family.add_sample("legacy_value", {}, 3.5)

        batch = _encoder().encode([family], ENRICHMENT)

        assert batch.timeseries[0].samples[0].value == 3.5

    def test_sample_timestamp_preferred(self):
        family = GaugeMetricFamily("up", "Up.")
        family.add_metric([], 1, timestamp=1_600_000_000.5)

        series = _encoder().encode([family], ENRICHMENT).timeseries[0]

        assert series.samples[0].timestamp_ms == 1_600_000_000_500

    def test_metadata(self):
        batch = _encoder().encode([GaugeMetricFamily("up", "Whether up.", value=1)], ENRICHMENT)
        assert batch.metadata[0].family_name == "up"
        assert batch.metadata[0].type == "gauge"
        assert batch.metadata[0].help == "Whether up."


class TestGroupedFamilies:
    """Tests for histograms and summaries."""

    def test_histogram(self):
        """Three buckets and a sum give one series with four ordered samples."""
        family = HistogramMetricFamily(
            "query_latency_seconds",
            "Latency.",
            buckets=[("1", 3), ("0.1", 1), ("+Inf", 4)],
            sum_value=2.5,
        )

        batch = _encoder().encode([family], ENRICHMENT)

        assert len(batch) == 1
        series = batch.timeseries[0]
        assert series.name == "query_latency_seconds"
        assert series.label("le") is None
        assert series.label("le_bounds") == "0.1,1,+Inf"
        assert [s.value for s in series.samples] == [1.0, 3.0, 4.0, 2.5]
        counts = [s.value for s in series.samples[:-1]]
        assert counts == sorted(counts)
        timestamps = [s.timestamp_ms for s in series.samples]
        assert timestamps == [NOW_MS, NOW_MS + 1, NOW_MS + 2, NOW_MS + 3]

    def test_histogram_per_label_set(self):
        family = HistogramMetricFamily("latency", "Latency.", labels=["query"])
        family.add_metric(["a"], buckets=[("1", 1), ("+Inf", 2)], sum_value=1.5)
        family.add_metric(["b"], buckets=[("1", 0), ("+Inf", 5)], sum_value=9.0)

        batch = _encoder().encode([family], ENRICHMENT)

        assert sorted(s.label("query") for s in batch.timeseries) == ["a", "b"]

    def test_non_cumulative_histogram_skipped(self):
        family = HistogramMetricFamily("latency", "Latency.", buckets=[("0.1", 5), ("+Inf", 2)], sum_value=1)
        good = GaugeMetricFamily("up", "Up.", value=1)

        batch = _encoder().encode([family, good], ENRICHMENT)

        assert [s.name for s in batch.timeseries] == ["up"]
        assert batch.skipped == 1

    def test_histogram_without_sum_skipped(self):
        family = Metric("latency", "Latency.", "histogram")
        family.add_sample("latency_bucket", {"le": "+Inf"}, 2)

        batch = _encoder().encode([family], ENRICHMENT)

        assert len(batch) == 0
        assert batch.skipped == 1

    def test_live_histogram(self):
        registry = MetricRegistry()
        histogram = Histogram("scrape_seconds", "Scrape time.", buckets=[0.5, 1.0], registry=registry)
        histogram.observe(0.2)
        histogram.observe(0.7)

        batch = _encoder().encode(registry.collect(), ENRICHMENT)

        series = batch.timeseries[0]
        assert series.label("le_bounds") == "0.5,1.0,+Inf"
        assert [s.value for s in series.samples][:3] == [1.0, 2.0, 2.0]
        assert batch.skipped == 0

    def test_summary(self):
        family = Metric("rpc_seconds", "RPC time.", "summary")
        family.add_sample("rpc_seconds", {"quantile": "0.9"}, 0.8)
        family.add_sample("rpc_seconds", {"quantile": "0.5"}, 0.3)
        family.add_sample("rpc_seconds_count", {}, 10)
        family.add_sample("rpc_seconds_sum", {}, 4.2)

        series = _encoder().encode([family], ENRICHMENT).timeseries[0]

        assert series.label("quantile_bounds") == "0.5,0.9"
        assert series.label("quantile") is None
        assert [s.value for s in series.samples] == [0.3, 0.8, 4.2]


class TestEdgeCases:
    """Tests for empty input and unsupported families."""

    def test_empty(self):
        batch = _encoder().encode([], ENRICHMENT)
        assert len(batch) == 0
        assert batch.skipped == 0

    def test_unsupported_type_skipped(self):
        info = InfoMetricFamily("build", "Build info.", value={"version": "1.0"})
        up = GaugeMetricFamily("up", "Up.", value=1)

        batch = _encoder().encode([info, up], ENRICHMENT)

        assert [s.name for s in batch.timeseries] == ["up"]
        assert batch.skipped == 1

    def test_non_numeric_value_skipped(self):
        family = Metric("weird", "Weird.", "gauge")
        family.add_sample("weird", {}, "abc")
        family.add_sample("weird", {"a": "1"}, 2)

        batch = _encoder().encode([family], ENRICHMENT)

        assert len(batch) == 1
        assert batch.skipped == 1

    def test_non_numeric_bucket_skips_series(self):
        """A histogram with an unreadable bucket is dropped without stopping the batch."""
        family = Metric("latency", "Latency.", "histogram")
        family.add_sample("latency_bucket", {"le": "0.1"}, None)
        family.add_sample("latency_bucket", {"le": "+Inf"}, 2)
        family.add_sample("latency_sum", {}, 0.4)
        up = GaugeMetricFamily("up", "Up.", value=1)

        batch = _encoder().encode([family, up], ENRICHMENT)

        assert [s.name for s in batch.timeseries] == ["up"]
        assert batch.skipped == 1

    def test_non_numeric_sum_skips_series(self):
        family = Metric("rpc_seconds", "RPC time.", "summary")
        family.add_sample("rpc_seconds", {"quantile": "0.5"}, 0.3)
        family.add_sample("rpc_seconds_sum", {}, "n/a")

        batch = _encoder().encode([family], ENRICHMENT)

        assert len(batch) == 0
        assert batch.skipped == 1
