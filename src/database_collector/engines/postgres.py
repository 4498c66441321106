"""PostgreSQL engine collector."""

from typing import Any

from ..credentials import EngineKind
from .registry import register_engine
from .sql import QueryMetric, SqlQueryCollector

DEFAULT_METRICS = [
    QueryMetric(
        context="stat_database",
        labels=["datname"],
        request=(
            "SELECT datname, numbackends, xact_commit, xact_rollback, blks_read, blks_hit, "
            "tup_returned, tup_fetched, tup_inserted, tup_updated, tup_deleted, conflicts, deadlocks "
            "FROM pg_stat_database WHERE datname IS NOT NULL"
        ),
        metrics_desc={
            "numbackends": "Number of backends currently connected to this database.",
            "xact_commit": "Number of transactions in this database that have been committed.",
            "xact_rollback": "Number of transactions in this database that have been rolled back.",
            "blks_read": "Number of disk blocks read in this database.",
            "blks_hit": "Number of times disk blocks were found already in the buffer cache.",
            "tup_returned": "Number of rows returned by queries in this database.",
            "tup_fetched": "Number of rows fetched by queries in this database.",
            "tup_inserted": "Number of rows inserted by queries in this database.",
            "tup_updated": "Number of rows updated by queries in this database.",
            "tup_deleted": "Number of rows deleted by queries in this database.",
            "conflicts": "Number of queries canceled due to conflicts with recovery.",
            "deadlocks": "Number of deadlocks detected in this database.",
        },
        metrics_type={
            "xact_commit": "counter",
            "xact_rollback": "counter",
            "blks_read": "counter",
            "blks_hit": "counter",
            "tup_returned": "counter",
            "tup_fetched": "counter",
            "tup_inserted": "counter",
            "tup_updated": "counter",
            "tup_deleted": "counter",
            "conflicts": "counter",
            "deadlocks": "counter",
        },
    ),
    QueryMetric(
        context="database",
        labels=["datname"],
        request="SELECT datname, pg_database_size(datname) AS size_bytes FROM pg_database WHERE datallowconn",
        metrics_desc={"size_bytes": "Disk space used by the database."},
    ),
    QueryMetric(
        context="locks",
        labels=["mode"],
        request="SELECT mode, COUNT(*) AS count FROM pg_locks GROUP BY mode",
        metrics_desc={"count": "Number of locks held by mode."},
        ignore_zero_result=True,
    ),
    QueryMetric(
        context="replication",
        request=(
            "SELECT CASE WHEN pg_is_in_recovery() "
            "THEN COALESCE(EXTRACT(EPOCH FROM (now() - pg_last_xact_replay_timestamp())), 0) "
            "ELSE 0 END AS lag_seconds, "
            "CASE WHEN pg_is_in_recovery() THEN 1 ELSE 0 END AS is_replica"
        ),
        metrics_desc={
            "lag_seconds": "Replication lag behind the primary in seconds.",
            "is_replica": "Whether the server is a replica (1) or a primary (0).",
        },
    ),
]


@register_engine(EngineKind.POSTGRES)
class PostgresCollector(SqlQueryCollector):
    """Collect metrics from a PostgreSQL server via psycopg2."""

    namespace = "pg"
    driver = "postgresql+psycopg2"
    default_metrics = DEFAULT_METRICS

    def build_url(self):
        url = super().build_url()
        if not self.credential.connection.dbname:
            url = url.set(database="postgres")
        return url

    def connect_args(self) -> dict[str, Any]:
        return {
            "connect_timeout": self.options.connect_timeout,
            "options": f"-c statement_timeout={self.options.query_timeout * 1000}",
            "sslmode": self.options.extra.get("sslmode", "prefer"),
        }
