"""
Engine Collector Tests

Unit tests for the engine table, query metric definitions and the SQL
query collector (run against SQLite).
"""

import sqlite3

import pytest
from prometheus_client import CollectorRegistry as MetricRegistry
from sqlalchemy.engine import URL

from database_collector.credentials import EngineKind
from database_collector.engines import (
    EngineOptions,
    EngineRegistry,
    QueryMetric,
    SqlQueryCollector,
    list_engines,
    load_custom_metrics,
)
from database_collector.engines.mysql import MySQLCollector
from database_collector.engines.oracle import OracleCollector
from database_collector.engines.postgres import PostgresCollector
from database_collector.errors import UnsupportedEngineError


class TestEngineRegistry:
    """Tests for the engine table."""

    def test_builtin_engines_registered(self):
        assert set(list_engines()) >= {"mysql", "postgres", "oracle"}
        assert EngineRegistry.get(EngineKind.MYSQL) is MySQLCollector
        assert EngineRegistry.get(EngineKind.POSTGRES) is PostgresCollector
        assert EngineRegistry.get(EngineKind.ORACLE) is OracleCollector

    def test_decorator_sets_engine(self):
        assert MySQLCollector.engine is EngineKind.MYSQL
        assert OracleCollector.engine is EngineKind.ORACLE

    def test_require_missing(self, monkeypatch):
        monkeypatch.setattr(EngineRegistry, "_engines", {})
        with pytest.raises(UnsupportedEngineError):
            EngineRegistry.require(EngineKind.MYSQL)

    def test_factories_is_a_copy(self):
        factories = EngineRegistry.factories()
        factories.pop(EngineKind.MYSQL)
        assert EngineRegistry.is_registered(EngineKind.MYSQL)


class TestQueryMetric:
    """Tests for declarative query metric definitions."""

    def test_from_dict(self):
        metric = QueryMetric.from_dict({
            "context": "orders",
            "request": "SELECT COUNT(*) AS pending FROM orders",
            "metrics_desc": {"pending": "Pending orders."},
        })
        assert metric.context == "orders"
        assert metric.labels == []
        assert not metric.ignore_zero_result

    def test_from_dict_exporter_keys(self):
        """Keys in the compact exporter style are accepted."""
        metric = QueryMetric.from_dict({
            "context": "activity",
            "request": "SELECT name, value FROM v$sysstat",
            "metricsdesc": {"value": "Activity."},
            "fieldtoappend": "name",
            "ignorezeroresult": True,
        })
        assert metric.field_to_append == "name"
        assert metric.ignore_zero_result

    def test_from_dict_incomplete(self):
        with pytest.raises(ValueError):
            QueryMetric.from_dict({"context": "orders"})


class TestLoadCustomMetrics:
    """Tests for per-database custom metric files."""

    def test_matches_identifier_and_wildcard(self, tmp_path):
        path = tmp_path / "custom.yaml"
        path.write_text(
            "databases:\n"
            "  - identifier: orders-db\n"
            "    metrics:\n"
            "      - context: orders\n"
            "        request: SELECT COUNT(*) AS pending FROM orders\n"
            "        metrics_desc:\n"
            "          pending: Pending orders.\n"
            "  - identifier: other-db\n"
            "    metrics:\n"
            "      - context: other\n"
            "        request: SELECT 1 AS one\n"
            "        metrics_desc:\n"
            "          one: One.\n"
            "  - identifier: '*'\n"
            "    metrics:\n"
            "      - context: everywhere\n"
            "        request: SELECT 1 AS one\n"
            "        metrics_desc:\n"
            "          one: One.\n"
        )

        metrics = load_custom_metrics(path, "orders-db")

        assert [m.context for m in metrics] == ["orders", "everywhere"]

    def test_collector_appends_custom_metrics(self, tmp_path, record_factory):
        path = tmp_path / "custom.yaml"
        path.write_text(
            "databases:\n"
            "  - identifier: orders-db\n"
            "    metrics:\n"
            "      - context: orders\n"
            "        request: SELECT 1 AS pending\n"
            "        metrics_desc:\n"
            "          pending: Pending orders.\n"
        )
        record = record_factory("orders", host="orders-db.abc123.us-east-1.rds.amazonaws.com")

        collector = MySQLCollector(record, EngineOptions(custom_metrics_file=str(path)))

        assert collector.metrics[-1].context == "orders"
        assert len(collector.metrics) == len(MySQLCollector.default_metrics) + 1

    def test_unreadable_file_uses_defaults(self, tmp_path, record_factory):
        collector = MySQLCollector(
            record_factory("orders"),
            EngineOptions(custom_metrics_file=str(tmp_path / "missing.yaml")),
        )
        assert len(collector.metrics) == len(MySQLCollector.default_metrics)


class TestEngineConnections:
    """Tests for engine-specific connection settings."""

    def test_mysql_timeouts(self, record_factory):
        collector = MySQLCollector(record_factory("a"), EngineOptions(query_timeout=7, connect_timeout=3))
        assert collector.connect_args() == {"connect_timeout": 3, "read_timeout": 7}
        assert collector.build_url().drivername == "mysql+pymysql"

    def test_postgres_default_database(self, record_factory):
        collector = PostgresCollector(record_factory("a", engine="postgres", port=5432))
        url = collector.build_url()
        assert url.database == "postgres"
        assert url.port == 5432
        assert "statement_timeout=10000" in collector.connect_args()["options"]

    def test_oracle_service_name(self, record_factory):
        collector = OracleCollector(record_factory("a", engine="oracle-ee", port=1521, dbname="ORCL"))
        url = collector.build_url()
        assert url.query["service_name"] == "ORCL"
        assert url.database is None


class SqliteCollector(SqlQueryCollector):
    """SQL query collector pointed at a local SQLite file."""

    engine = EngineKind.MYSQL
    namespace = "test"
    driver = "sqlite"

    def build_url(self) -> URL:
        return URL.create("sqlite", database=self.credential.connection.dbname)


@pytest.fixture
def sqlite_db(tmp_path):
    path = tmp_path / "metrics.db"
    conn = sqlite3.connect(path)
    conn.executescript(
        """
        CREATE TABLE orders (id INTEGER, status TEXT);
        INSERT INTO orders VALUES (1, 'pending'), (2, 'pending'), (3, 'shipped');
        CREATE TABLE stats (name TEXT, value REAL);
        INSERT INTO stats VALUES ('Threads_connected', 4), ('Queries', 120);
        CREATE TABLE empty (value REAL);
        """
    )
    conn.commit()
    conn.close()
    return str(path)


def _collector(record_factory, dbname, metrics):
    collector = SqliteCollector(record_factory("local", dbname=dbname))
    collector.metrics = metrics
    return collector


def _by_name(families):
    return {family.name: family for family in families}


class TestSqlQueryCollector:
    """Tests for query execution and self-metrics."""

    def test_labels_and_values(self, record_factory, sqlite_db):
        collector = _collector(record_factory, sqlite_db, [
            QueryMetric(
                context="orders",
                labels=["status"],
                request="SELECT status, COUNT(*) AS Total FROM orders GROUP BY status",
                metrics_desc={"total": "Orders by status."},
            ),
        ])

        families = _by_name(collector.collect())

        orders = families["test_orders_total"]
        assert orders.type == "gauge"
        values = {s.labels["status"]: s.value for s in orders.samples}
        assert values == {"pending": 2.0, "shipped": 1.0}
        assert families["test_up"].samples[0].value == 1.0
        assert families["test_exporter_last_scrape_error"].samples[0].value == 0.0
        collector.close()

    def test_field_to_append(self, record_factory, sqlite_db):
        collector = _collector(record_factory, sqlite_db, [
            QueryMetric(
                context="global_status",
                request="SELECT name, value FROM stats",
                metrics_desc={"value": "Server status."},
                metrics_type={"value": "counter"},
                field_to_append="name",
            ),
        ])

        families = _by_name(collector.collect())

        assert families["test_global_status_threads_connected"].type == "counter"
        assert families["test_global_status_queries"].samples[0].value == 120.0
        collector.close()

    def test_failed_query_is_isolated(self, record_factory, sqlite_db):
        """A failing query is counted and the remaining queries still run."""
        collector = _collector(record_factory, sqlite_db, [
            QueryMetric(context="broken", request="SELECT nope FROM missing_table", metrics_desc={"nope": "x"}),
            QueryMetric(context="empty", request="SELECT value FROM empty", metrics_desc={"value": "x"}),
            QueryMetric(
                context="quiet",
                request="SELECT value FROM empty",
                metrics_desc={"value": "x"},
                ignore_zero_result=True,
            ),
            QueryMetric(context="count", request="SELECT COUNT(*) AS n FROM orders", metrics_desc={"n": "x"}),
        ])

        families = _by_name(collector.collect())

        assert families["test_count_n"].samples[0].value == 3.0
        assert families["test_up"].samples[0].value == 1.0
        assert families["test_exporter_last_scrape_error"].samples[0].value == 1.0
        errors = {s.labels["collector"]: s.value for s in families["test_exporter_scrape_errors"].samples
                  if s.name.endswith("_total")}
        assert errors == {"broken": 1.0, "empty": 1.0}
        collector.close()

    def test_scrape_counter_increments(self, record_factory, sqlite_db):
        collector = _collector(record_factory, sqlite_db, [])
        collector.collect()
        families = _by_name(collector.collect())
        assert families["test_exporter_scrapes"].samples[0].value == 2.0
        collector.close()

    def test_unreachable_database_reports_down(self, record_factory, tmp_path):
        collector = _collector(record_factory, str(tmp_path / "missing" / "db.sqlite"), [
            QueryMetric(context="count", request="SELECT 1 AS n", metrics_desc={"n": "x"}),
        ])

        families = _by_name(collector.collect())

        assert families["test_up"].samples[0].value == 0.0
        assert "test_count_n" not in families

    def test_register_and_unregister(self, record_factory, sqlite_db):
        registry = MetricRegistry(auto_describe=True)
        record = record_factory("local", dbname=sqlite_db)

        collector = SqliteCollector.register(registry, record)
        collector.metrics = [QueryMetric(context="count", request="SELECT 1 AS n", metrics_desc={"n": "x"})]
        names = {family.name for family in registry.collect()}
        assert "test_count_n" in names

        collector.unregister(registry)
        assert list(registry.collect()) == []
        assert collector._engine is None

    def test_update_credential_reconnects(self, record_factory, sqlite_db, tmp_path):
        collector = _collector(record_factory, sqlite_db, [])
        collector.collect()
        assert collector._engine is not None

        collector.update_credential(record_factory("local", dbname=str(tmp_path / "other.db")))

        assert collector._engine is None
        assert collector.credential.connection.dbname.endswith("other.db")
