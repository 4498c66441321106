"""MySQL / MariaDB engine collector."""

from typing import Any

from ..credentials import EngineKind
from .registry import register_engine
from .sql import QueryMetric, SqlQueryCollector

DEFAULT_METRICS = [
    QueryMetric(
        context="global_status",
        request=(
            "SHOW GLOBAL STATUS WHERE Variable_name IN ("
            "'Threads_connected', 'Threads_running', 'Queries', 'Slow_queries', 'Uptime', "
            "'Aborted_connects', 'Aborted_clients', 'Bytes_received', 'Bytes_sent', "
            "'Innodb_buffer_pool_pages_free', 'Innodb_buffer_pool_pages_total', 'Innodb_row_lock_waits')"
        ),
        metrics_desc={"value": "Generic metric from SHOW GLOBAL STATUS."},
        field_to_append="variable_name",
    ),
    QueryMetric(
        context="global_variables",
        request=(
            "SHOW GLOBAL VARIABLES WHERE Variable_name IN ("
            "'max_connections', 'innodb_buffer_pool_size', 'table_open_cache', 'thread_cache_size')"
        ),
        metrics_desc={"value": "Generic gauge from SHOW GLOBAL VARIABLES."},
        field_to_append="variable_name",
    ),
    QueryMetric(
        context="processlist",
        labels=["command", "state"],
        request=(
            "SELECT command, COALESCE(state, '') AS state, COUNT(*) AS threads "
            "FROM information_schema.processlist GROUP BY command, state"
        ),
        metrics_desc={"threads": "Number of threads by command and state."},
    ),
    QueryMetric(
        context="innodb_cmp",
        labels=["page_size"],
        request=(
            "SELECT page_size, compress_ops, compress_ops_ok, uncompress_ops "
            "FROM information_schema.innodb_cmp"
        ),
        metrics_desc={
            "compress_ops": "Number of times a page of this size has been compressed.",
            "compress_ops_ok": "Number of times a page of this size has been successfully compressed.",
            "uncompress_ops": "Number of times a page of this size has been uncompressed.",
        },
        metrics_type={"compress_ops": "counter", "compress_ops_ok": "counter", "uncompress_ops": "counter"},
        ignore_zero_result=True,
    ),
]


@register_engine(EngineKind.MYSQL)
class MySQLCollector(SqlQueryCollector):
    """
    Collect metrics from a MySQL-compatible server via PyMySQL.

    Exposes server status counters, key variables, thread counts and
    InnoDB compression statistics under the ``mysql`` namespace.
    """

    namespace = "mysql"
    driver = "mysql+pymysql"
    default_metrics = DEFAULT_METRICS

    def connect_args(self) -> dict[str, Any]:
        return {
            "connect_timeout": self.options.connect_timeout,
            "read_timeout": self.options.query_timeout,
        }
