"""Collector registry - the live set of credential-to-collector bindings."""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass, replace
from typing import Iterable, Iterator, Mapping, Optional, Type

import prometheus_client
from prometheus_client import Metric

from .credentials import CredentialRecord, EngineKind
from .engines import EngineCollector, EngineOptions, EngineRegistry
from .errors import ScrapeError, UnsupportedEngineError

logger = logging.getLogger(__name__)


class ReadWriteLock:
    """Many concurrent readers or one writer. Waiting writers block new readers."""

    def __init__(self):
        self._cond = threading.Condition(threading.Lock())
        self._readers = 0
        self._writer = False
        self._writers_waiting = 0

    @contextmanager
    def read_locked(self) -> Iterator[None]:
        with self._cond:
            while self._writer or self._writers_waiting:
                self._cond.wait()
            self._readers += 1
        try:
            yield
        finally:
            with self._cond:
                self._readers -= 1
                if self._readers == 0:
                    self._cond.notify_all()

    @contextmanager
    def write_locked(self) -> Iterator[None]:
        with self._cond:
            self._writers_waiting += 1
            try:
                while self._writer or self._readers:
                    self._cond.wait()
            finally:
                self._writers_waiting -= 1
            self._writer = True
        try:
            yield
        finally:
            with self._cond:
                self._writer = False
                self._cond.notify_all()


@dataclass(frozen=True)
class CollectorBinding:
    """One discovered credential bound to its collector and metric registry."""

    credential_id: str
    engine: EngineKind
    collector: EngineCollector
    metric_registry: prometheus_client.CollectorRegistry
    credential: CredentialRecord

    def gather(self) -> list[Metric]:
        """Gather every metric family from this binding's registry."""
        try:
            return list(self.metric_registry.collect())
        except Exception as e:
            raise ScrapeError(f"Gather failed for {self.credential_id}: {e}") from e


@dataclass
class ReconcileResult:
    """Outcome of one reconcile."""

    added: int = 0
    removed: int = 0
    updated: int = 0
    skipped: int = 0


class CollectorRegistry:
    """
    Owns the authoritative set of live bindings, one per credential id.

    ``reconcile`` brings the set in line with a fresh credential snapshot;
    ``snapshot`` returns an independent copy for iteration. The binding map
    is only reachable through these operations.

    Collector construction and teardown run outside the write lock, which is
    held only while the map itself changes. Concurrent reconciles are
    serialized.
    """

    def __init__(
        self,
        factories: Optional[Mapping[EngineKind, Type[EngineCollector]]] = None,
        options: Optional[EngineOptions] = None,
    ):
        self._factories = dict(factories) if factories is not None else EngineRegistry.factories()
        self._options = options or EngineOptions()
        self._bindings: dict[str, CollectorBinding] = {}
        self._lock = ReadWriteLock()
        self._reconcile_lock = threading.Lock()

    def reconcile(self, snapshot: Iterable[CredentialRecord]) -> ReconcileResult:
        """
        Bring the binding set in line with ``snapshot``.

        New credentials get a fresh metric registry and collector; credentials
        no longer present have their collector unregistered and their binding
        dropped. Unsupported engines and collector construction failures are
        logged and skipped without affecting other records.

        Args:
            snapshot: Every credential that should be bound

        Returns:
            ReconcileResult with added/removed/updated/skipped counts
        """
        records: dict[str, CredentialRecord] = {}
        for record in snapshot:
            records[record.id] = record

        with self._reconcile_lock:
            result = ReconcileResult()

            with self._lock.read_locked():
                current = dict(self._bindings)

            to_add: list[tuple[CredentialRecord, EngineKind]] = []
            to_update: list[tuple[CollectorBinding, CredentialRecord]] = []
            to_remove = [cid for cid in current if cid not in records]

            for cid, record in records.items():
                try:
                    kind = EngineKind.parse(record.engine)
                except UnsupportedEngineError as e:
                    logger.warning(f"Skipping credential {cid}: {e}")
                    result.skipped += 1
                    if cid in current:
                        to_remove.append(cid)
                    continue

                existing = current.get(cid)
                if existing is None:
                    to_add.append((record, kind))
                elif existing.engine != kind:
                    logger.info(f"Engine for {cid} changed from {existing.engine.value} to {kind.value}")
                    to_remove.append(cid)
                    to_add.append((record, kind))
                elif existing.credential != record:
                    to_update.append((existing, record))

            new_bindings = []
            for record, kind in to_add:
                binding = self._bind(record, kind)
                if binding is None:
                    result.skipped += 1
                else:
                    new_bindings.append(binding)

            inserted = False
            try:
                updated_bindings = []
                for binding, record in to_update:
                    try:
                        binding.collector.update_credential(record)
                    except Exception as e:
                        # Old binding stays; the update is retried on the next reconcile
                        logger.error(f"Failed to update credential {binding.credential_id}: {e}")
                        result.skipped += 1
                        continue
                    updated_bindings.append(replace(binding, credential=record))

                removed: list[CollectorBinding] = []
                with self._lock.write_locked():
                    for cid in to_remove:
                        binding = self._bindings.pop(cid, None)
                        if binding is not None:
                            removed.append(binding)
                    for binding in updated_bindings:
                        self._bindings[binding.credential_id] = binding
                    for binding in new_bindings:
                        self._bindings[binding.credential_id] = binding
                inserted = True
            finally:
                if not inserted:
                    for binding in new_bindings:
                        self._release(binding)

            for binding in removed:
                self._release(binding)

            result.removed = len(removed)
            result.added = len(new_bindings)
            result.updated = len(updated_bindings)

        logger.info(
            f"Reconciled bindings: {result.added} added, {result.removed} removed, "
            f"{result.updated} updated, {result.skipped} skipped ({len(self)} live)"
        )
        return result

    def _bind(self, record: CredentialRecord, kind: EngineKind) -> Optional[CollectorBinding]:
        factory = self._factories.get(kind)
        if factory is None:
            logger.warning(f"Skipping credential {record.id}: {UnsupportedEngineError(kind.value)}")
            return None

        metric_registry = prometheus_client.CollectorRegistry(auto_describe=True)
        try:
            collector = factory.register(metric_registry, record, self._options)
        except Exception as e:
            logger.error(f"Failed to register {kind.value} collector for {record.id}: {e}")
            return None

        return CollectorBinding(
            credential_id=record.id,
            engine=kind,
            collector=collector,
            metric_registry=metric_registry,
            credential=record,
        )

    def _release(self, binding: CollectorBinding):
        try:
            binding.collector.unregister(binding.metric_registry)
        except Exception as e:
            logger.warning(f"Error unregistering collector for {binding.credential_id}: {e}")

    def snapshot(self) -> list[CollectorBinding]:
        """Independent copy of the live bindings, ordered by credential id."""
        with self._lock.read_locked():
            return [self._bindings[cid] for cid in sorted(self._bindings)]

    def get(self, credential_id: str) -> Optional[CollectorBinding]:
        with self._lock.read_locked():
            return self._bindings.get(credential_id)

    def close(self):
        """Release every binding."""
        with self._reconcile_lock:
            with self._lock.write_locked():
                bindings = list(self._bindings.values())
                self._bindings.clear()
            for binding in bindings:
                self._release(binding)
        logger.info(f"Released {len(bindings)} bindings")

    def __len__(self) -> int:
        with self._lock.read_locked():
            return len(self._bindings)

    def __contains__(self, credential_id: str) -> bool:
        with self._lock.read_locked():
            return credential_id in self._bindings
