"""Engine registry - maps engine kinds to their collector classes."""

from typing import Type, Optional
import logging

from ..credentials import EngineKind
from ..errors import UnsupportedEngineError
from .base import EngineCollector

logger = logging.getLogger(__name__)


class EngineRegistry:
    """
    Registry for engine collector plugins.

    Collector classes register themselves here and are looked up by engine
    kind when a new credential is bound.
    """

    _engines: dict[EngineKind, Type[EngineCollector]] = {}

    @classmethod
    def register(cls, engine: EngineKind, collector_class: Type[EngineCollector]):
        """Register an engine collector class."""
        cls._engines[engine] = collector_class
        logger.debug(f"Registered engine collector: {engine.value}")

    @classmethod
    def get(cls, engine: EngineKind) -> Optional[Type[EngineCollector]]:
        """Get a collector class by engine kind."""
        return cls._engines.get(engine)

    @classmethod
    def require(cls, engine: EngineKind) -> Type[EngineCollector]:
        """Get a collector class by engine kind, raising if none is registered."""
        collector_class = cls._engines.get(engine)
        if collector_class is None:
            raise UnsupportedEngineError(engine.value)
        return collector_class

    @classmethod
    def factories(cls) -> dict[EngineKind, Type[EngineCollector]]:
        """Copy of the engine table."""
        return dict(cls._engines)

    @classmethod
    def list_engines(cls) -> list[str]:
        """List all registered engine kinds."""
        return [engine.value for engine in cls._engines]

    @classmethod
    def is_registered(cls, engine: EngineKind) -> bool:
        return engine in cls._engines


def register_engine(engine: EngineKind):
    """
    Decorator to register an engine collector class.

    Usage:
        @register_engine(EngineKind.POSTGRES)
        class PostgresCollector(SqlQueryCollector):
            ...
    """
    def decorator(cls: Type[EngineCollector]):
        cls.engine = engine
        EngineRegistry.register(engine, cls)
        return cls
    return decorator


def list_engines() -> list[str]:
    """List all registered engine kinds."""
    return EngineRegistry.list_engines()
