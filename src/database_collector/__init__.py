"""Database Collector - discovers database instances and pushes their metrics to Prometheus remote write."""

__version__ = "0.1.0"
