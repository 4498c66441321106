"""Oracle Database engine collector."""

from typing import Any

from sqlalchemy import event
from sqlalchemy.engine import URL, Engine

from ..credentials import EngineKind
from .registry import register_engine
from .sql import QueryMetric, SqlQueryCollector

DEFAULT_METRICS = [
    QueryMetric(
        context="sessions",
        labels=["status", "type"],
        request="SELECT status, type, COUNT(*) AS value FROM v$session GROUP BY status, type",
        metrics_desc={"value": "Gauge metric with count of sessions by status and type."},
    ),
    QueryMetric(
        context="resource",
        labels=["resource_name"],
        request=(
            "SELECT resource_name, current_utilization, "
            "CASE WHEN TRIM(limit_value) LIKE 'UNLIMITED' THEN '-1' ELSE TRIM(limit_value) END AS limit_value "
            "FROM v$resource_limit"
        ),
        metrics_desc={
            "current_utilization": "Generic counter metric from v$resource_limit view in Oracle (current value).",
            "limit_value": "Generic counter metric from v$resource_limit view in Oracle (UNLIMITED: -1).",
        },
    ),
    QueryMetric(
        context="asm_diskgroup",
        labels=["name"],
        request=(
            "SELECT name, total_mb*1024*1024 AS total, free_mb*1024*1024 AS free FROM v$asm_diskgroup_stat "
            "WHERE EXISTS (SELECT 1 FROM v$datafile WHERE name LIKE '+%')"
        ),
        metrics_desc={
            "total": "Total size of ASM disk group.",
            "free": "Free space available on ASM disk group.",
        },
        ignore_zero_result=True,
    ),
    QueryMetric(
        context="activity",
        request=(
            "SELECT name, value FROM v$sysstat WHERE name IN "
            "('parse count (total)', 'execute count', 'user commits', 'user rollbacks')"
        ),
        metrics_desc={"value": "Generic counter metric from v$sysstat view in Oracle."},
        field_to_append="name",
    ),
    QueryMetric(
        context="process",
        request="SELECT COUNT(*) AS count FROM v$process",
        metrics_desc={"count": "Gauge metric with count of processes."},
    ),
    QueryMetric(
        context="wait_time",
        request=(
            "SELECT n.wait_class AS wait_class, ROUND(m.time_waited/m.intsize_csec, 3) AS value "
            "FROM v$waitclassmetric m, v$system_wait_class n "
            "WHERE m.wait_class_id = n.wait_class_id AND n.wait_class != 'Idle'"
        ),
        metrics_desc={"value": "Generic counter metric from v$waitclassmetric view in Oracle."},
        field_to_append="wait_class",
    ),
    QueryMetric(
        context="tablespace",
        labels=["tablespace", "type"],
        request=(
            "SELECT dt.tablespace_name AS tablespace, dt.contents AS type, "
            "dt.block_size * dtum.used_space AS bytes, "
            "dt.block_size * dtum.tablespace_size AS max_bytes, "
            "dt.block_size * (dtum.tablespace_size - dtum.used_space) AS free, "
            "dtum.used_percent "
            "FROM dba_tablespace_usage_metrics dtum, dba_tablespaces dt "
            "WHERE dtum.tablespace_name = dt.tablespace_name ORDER BY tablespace"
        ),
        metrics_desc={
            "bytes": "Generic counter metric of tablespaces bytes in Oracle.",
            "max_bytes": "Generic counter metric of tablespaces max bytes in Oracle.",
            "free": "Generic counter metric of tablespaces free bytes in Oracle.",
            "used_percent": "Gauge metric showing as a percentage of how much of the tablespace has been used.",
        },
    ),
]


@register_engine(EngineKind.ORACLE)
class OracleCollector(SqlQueryCollector):
    """
    Collect metrics from an Oracle database via python-oracledb (thin mode).

    The secret's ``dbname`` is used as the service name.
    """

    namespace = "oracledb"
    driver = "oracle+oracledb"
    default_metrics = DEFAULT_METRICS

    def build_url(self) -> URL:
        conn = self.credential.connection
        return URL.create(
            self.driver,
            username=conn.username,
            password=conn.password,
            host=conn.host,
            port=conn.port,
            query={"service_name": conn.dbname} if conn.dbname else {},
        )

    def connect_args(self) -> dict[str, Any]:
        return {"tcp_connect_timeout": self.options.connect_timeout}

    def configure_engine(self, engine: Engine):
        call_timeout_ms = self.options.query_timeout * 1000

        @event.listens_for(engine, "connect")
        def _set_call_timeout(dbapi_connection, connection_record):
            dbapi_connection.call_timeout = call_timeout_ms
