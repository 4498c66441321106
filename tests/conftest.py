"""Shared fixtures: credential records and fake engine collectors."""

import threading
import time
from contextlib import contextmanager

import pytest
from prometheus_client.core import GaugeMetricFamily

from database_collector.credentials import ConnectionParams, CredentialRecord, EngineKind
from database_collector.engines import EngineCollector


def make_record(credential_id: str, engine: str = "mysql", host: str = None, **connection) -> CredentialRecord:
    """Build a credential record with sensible connection defaults."""
    params = {
        "host": host or f"{credential_id}.abc123.us-east-1.rds.amazonaws.com",
        "port": 3306,
        "username": "monitor",
        "password": "secret",
        "dbname": "",
    }
    params.update(connection)
    return CredentialRecord(id=credential_id, engine=engine, connection=ConnectionParams(**params))


class ConcurrencyTracker:
    """Records how many fake collectors are gathering at the same time."""

    def __init__(self):
        self._lock = threading.Lock()
        self.current = 0
        self.peak = 0
        self.calls = 0

    @contextmanager
    def track(self):
        with self._lock:
            self.current += 1
            self.calls += 1
            self.peak = max(self.peak, self.current)
        try:
            yield
        finally:
            with self._lock:
                self.current -= 1


def make_collector_class(
    engine: EngineKind = EngineKind.MYSQL,
    delay: float = 0.0,
    fail_gather: tuple = (),
    fail_register: tuple = (),
    fail_update: tuple = (),
    tracker: ConcurrencyTracker = None,
):
    """
    Build a fake engine collector class.

    Gathering yields a single ``up`` gauge. Credentials listed in
    ``fail_gather`` raise on gather; those in ``fail_register`` raise on
    construction, and those in ``fail_update`` raise on update_credential.
    """

    class FakeCollector(EngineCollector):
        instances = []

        def __init__(self, credential, options=None):
            if credential.id in fail_register:
                raise RuntimeError(f"cannot connect to {credential.id}")
            super().__init__(credential, options)
            self.closed = False
            self.updates = []
            FakeCollector.instances.append(self)

        def collect(self):
            @contextmanager
            def noop():
                yield

            with (tracker.track() if tracker else noop()):
                if delay:
                    time.sleep(delay)
                if self.credential.id in fail_gather:
                    raise RuntimeError(f"query failed on {self.credential.id}")
                return [GaugeMetricFamily("up", "Whether the database is up.", value=1)]

        def update_credential(self, credential):
            if credential.id in fail_update:
                raise RuntimeError(f"cannot reconnect to {credential.id}")
            self.updates.append(credential)
            super().update_credential(credential)

        def close(self):
            self.closed = True

    FakeCollector.engine = engine
    FakeCollector.__name__ = f"Fake{engine.value.title()}Collector"
    return FakeCollector


class RecordingClient:
    """Stands in for RemoteWriteClient and keeps every batch it is given."""

    def __init__(self, fail_for: tuple = ()):
        self.fail_for = fail_for
        self.batches = []
        self._lock = threading.Lock()

    def send(self, batch):
        from database_collector.errors import SendError

        identifiers = {series.label("identifier") for series in batch.timeseries}
        if identifiers & set(self.fail_for):
            raise SendError("Remote write request rejected", status_code=400, body="out of order sample")
        with self._lock:
            self.batches.append(batch)

    def close(self):
        pass


@pytest.fixture
def record_factory():
    return make_record


@pytest.fixture
def fake_factories():
    """Fake collectors for MySQL and Postgres; Oracle left unregistered."""
    return {
        EngineKind.MYSQL: make_collector_class(EngineKind.MYSQL),
        EngineKind.POSTGRES: make_collector_class(EngineKind.POSTGRES),
    }


@pytest.fixture
def recording_client():
    return RecordingClient()


@pytest.fixture
def credential_payload():
    return {
        "engine": "postgres",
        "host": "orders-db.abc123.us-east-1.rds.amazonaws.com",
        "port": 5432,
        "username": "monitor",
        "password": "s3cret",
        "dbname": "orders",
    }
