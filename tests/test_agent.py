"""
Agent Tests

Unit tests for reconcile-and-scrape cycles and the entry points that drive
them.
"""

import signal
import threading
import time

import pytest

from conftest import ConcurrencyTracker, RecordingClient, make_collector_class, make_record
from database_collector import agent as agent_module
from database_collector.agent import Agent
from database_collector.config import AgentConfig
from database_collector.credentials import CredentialSource, EngineKind, StaticCredentialSource
from database_collector.errors import CredentialFetchError
from database_collector.registry import CollectorRegistry


class FailingListSource(CredentialSource):
    """Credential store that cannot be listed."""

    def list_credentials(self):
        raise CredentialFetchError("Failed to list secrets: throttled")

    def fetch_credential(self, credential_id):
        raise AssertionError("fetch should not be reached")


def _config(**kwargs) -> AgentConfig:
    config = AgentConfig(**kwargs)
    config.remote_write.url = "https://aps.example/api/v1/remote_write"
    config.remote_write.region = "us-east-1"
    config.account_id = "123456789012"
    return config


@pytest.fixture
def agent(fake_factories):
    source = StaticCredentialSource.from_records([make_record("a"), make_record("b", engine="postgres")])
    agent = Agent(
        _config(),
        source=source,
        client=RecordingClient(),
        registry=CollectorRegistry(factories=fake_factories),
    )
    agent.setup()
    yield agent
    agent.close()


class TestAgentCycle:
    """Tests for Agent.reconcile_and_run_cycle."""

    def test_cycle_scrapes_discovered_databases(self, agent):
        cycle = agent.reconcile_and_run_cycle()

        assert cycle.succeeded == 2
        assert len(agent.registry) == 2
        assert len(agent.client.batches) == 2

    def test_removed_credential_unbound(self, agent):
        agent.reconcile_and_run_cycle()
        agent.source.remove("b")

        cycle = agent.reconcile_and_run_cycle()

        assert [r.credential_id for r in cycle.results] == ["a"]
        assert "b" not in agent.registry

    def test_list_failure_keeps_bindings(self, agent):
        agent.reconcile_and_run_cycle()
        agent.source = FailingListSource()

        assert agent.reconcile() is None
        cycle = agent.reconcile_and_run_cycle()

        assert len(agent.registry) == 2
        assert cycle.succeeded == 2

    def test_static_source_from_config(self):
        config = _config()
        config.discovery.source = "static"
        config.discovery.databases = {
            "orders": {"engine": "postgres", "host": "db", "port": 5432, "username": "u", "password": "p"},
        }

        source = Agent(config)._build_source()

        assert isinstance(source, StaticCredentialSource)
        assert [ref.id for ref in source.list_credentials()] == ["orders"]


class TestAgentRun:
    """Tests for the scheduler loop."""

    def test_run_until_stopped(self, agent):
        agent.config.schedule.cron = "@every 20ms"
        thread = threading.Thread(target=agent.run)

        thread.start()
        deadline = time.monotonic() + 2
        while len(agent.client.batches) < 4 and time.monotonic() < deadline:
            time.sleep(0.01)
        agent.stop()
        thread.join(2)

        assert not thread.is_alive()
        assert len(agent.client.batches) >= 4


class TestAgentCancellation:
    """Tests for stopping the agent while a cycle is running."""

    @pytest.fixture
    def slow_agent(self):
        tracker = ConcurrencyTracker()
        factories = {EngineKind.MYSQL: make_collector_class(delay=0.2, tracker=tracker)}
        agent = Agent(
            _config(concurrency=1),
            source=StaticCredentialSource.from_records([make_record(cid) for cid in ("a", "b", "c")]),
            client=RecordingClient(),
            registry=CollectorRegistry(factories=factories),
        )
        agent.setup()
        agent.tracker = tracker
        yield agent
        agent.close()

    def _wait_for_scrape(self, agent):
        deadline = time.monotonic() + 2
        while agent.tracker.current == 0 and time.monotonic() < deadline:
            time.sleep(0.005)

    def test_signal_cancels_running_cycle(self, slow_agent):
        cycles = []
        thread = threading.Thread(target=lambda: cycles.append(slow_agent.reconcile_and_run_cycle()))

        thread.start()
        self._wait_for_scrape(slow_agent)
        slow_agent._handle_signal(signal.SIGTERM, None)
        thread.join(2)

        assert not thread.is_alive()
        assert cycles[0].failed == 3
        assert {r.error_kind for r in cycles[0].results} == {"CycleCancelledError"}
        assert slow_agent.tracker.calls == 1
        assert slow_agent.client.batches == []

    def test_stop_ends_loop_mid_cycle(self, slow_agent):
        slow_agent.config.schedule.cron = "@every 1h"
        thread = threading.Thread(target=slow_agent.run)

        thread.start()
        self._wait_for_scrape(slow_agent)
        slow_agent.stop()
        thread.join(2)

        assert not thread.is_alive()
        assert slow_agent.tracker.calls == 1


class TestLambdaHandler:
    """Tests for the Lambda entry point."""

    def test_returns_cycle_summary(self, agent, monkeypatch):
        monkeypatch.setattr(agent_module, "_lambda_agent", agent)

        result = agent_module.lambda_handler({}, None)

        assert result["bindings"] == 2
        assert result["succeeded"] == 2
        assert result["errors"] == {}
