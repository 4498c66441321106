"""Engine collectors - one pluggable collector per supported database engine."""

from .base import EngineCollector, EngineOptions
from .registry import EngineRegistry, register_engine, list_engines
from .sql import QueryMetric, SqlQueryCollector, load_custom_metrics

# Built-in engines register themselves on import
from . import mysql, postgres, oracle  # noqa: E402,F401

__all__ = [
    "EngineCollector",
    "EngineOptions",
    "EngineRegistry",
    "register_engine",
    "list_engines",
    "QueryMetric",
    "SqlQueryCollector",
    "load_custom_metrics",
]
