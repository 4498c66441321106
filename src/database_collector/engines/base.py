"""Base interface for all database engine collectors."""

import logging
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Iterable, Optional

from prometheus_client import CollectorRegistry as MetricRegistry
from prometheus_client import Metric

from ..credentials import CredentialRecord, EngineKind

logger = logging.getLogger(__name__)


@dataclass
class EngineOptions:
    """Options shared by every engine collector."""

    query_timeout: int = 10  # seconds
    custom_metrics_file: Optional[str] = None
    pool_size: int = 1
    connect_timeout: int = 10  # seconds
    extra: dict = field(default_factory=dict)


class EngineCollector(ABC):
    """
    Abstract base class for all engine collectors.

    An engine collector is a ``prometheus_client`` custom collector bound to
    one database instance. It is registered against a per-instance metric
    registry, and gathering that registry runs the collector's queries.

    Implement this interface to add support for a new database engine.

    Example:
        @register_engine(EngineKind.MYSQL)
        class MySQLCollector(EngineCollector):

            def collect(self):
                # Query the instance and yield metric families
                ...
    """

    # Set by @register_engine
    engine: EngineKind

    def __init__(self, credential: CredentialRecord, options: Optional[EngineOptions] = None):
        self.credential = credential
        self.options = options or EngineOptions()

    @abstractmethod
    def collect(self) -> Iterable[Metric]:
        """
        Collect metrics from the database instance.

        Called by the metric registry on every gather.
        """

    def describe(self) -> Iterable[Metric]:
        """Describe the metric families this collector exposes. Override if known up front."""
        return []

    def update_credential(self, credential: CredentialRecord):
        """Pick up a rotated credential. Override to rebuild connections."""
        self.credential = credential

    def close(self):
        """Release held connections. Override if needed."""
        pass

    @classmethod
    def register(
        cls,
        registry: MetricRegistry,
        credential: CredentialRecord,
        options: Optional[EngineOptions] = None,
    ) -> "EngineCollector":
        """Create a collector for ``credential`` and register it against ``registry``."""
        collector = cls(credential, options)
        registry.register(collector)
        logger.info(f"Registered {cls.engine.value} collector for {credential.id}")
        return collector

    def unregister(self, registry: MetricRegistry):
        """Remove this collector from ``registry`` and release its connections."""
        try:
            registry.unregister(self)
        finally:
            self.close()
        logger.info(f"Unregistered {self.engine.value} collector for {self.credential.id}")
