"""Database collector agent - reconcile and scrape cycles on a schedule."""

import logging
import signal
import threading
import time
from typing import Optional

from . import metrics
from .client import RemoteWriteClient
from .config import AgentConfig
from .credentials import CredentialSource, SecretsManagerSource, StaticCredentialSource
from .encoder import MetricEncoder
from .errors import CollectorError
from .orchestrator import CycleResult, ScrapeOrchestrator
from .registry import CollectorRegistry, ReconcileResult
from .schedule import Schedule

logger = logging.getLogger(__name__)


class Agent:
    """
    Main database metrics collection agent.

    Each cycle refreshes the credential snapshot, reconciles the collector
    bindings against it, then scrapes every binding and forwards the results
    to remote write. Cycles run on a schedule (``run``), once (``run_once``)
    or on external invocation (``lambda_handler``).
    """

    def __init__(
        self,
        config: AgentConfig,
        source: Optional[CredentialSource] = None,
        client: Optional[RemoteWriteClient] = None,
        registry: Optional[CollectorRegistry] = None,
    ):
        self.config = config
        self.source = source
        self.client = client
        self.registry = registry
        self.orchestrator: Optional[ScrapeOrchestrator] = None
        self._stop_event = threading.Event()

    def setup(self):
        """Initialize credential source, client, registry and orchestrator."""
        if self.source is None:
            self.source = self._build_source()

        if self.client is None:
            rw = self.config.remote_write
            self.client = RemoteWriteClient(
                url=rw.url,
                region=rw.region,
                service=rw.service,
                timeout=rw.timeout,
                role_arn=rw.role_arn,
            )

        if self.registry is None:
            self.registry = CollectorRegistry(options=self.config.engine_options())

        self.orchestrator = ScrapeOrchestrator(
            encoder=MetricEncoder(),
            client=self.client,
            concurrency=self.config.concurrency,
            job=self.config.job,
            region=self.config.remote_write.region,
            account=self.config.account_id,
            credential_source=self.source,
            refetch_credentials=self.config.discovery.refetch_credentials,
        )

        logger.info(
            f"Agent initialized: source={type(self.source).__name__}, "
            f"concurrency={self.config.concurrency}, endpoint={self.config.remote_write.url}"
        )

    def _build_source(self) -> CredentialSource:
        discovery = self.config.discovery
        if discovery.source == "static":
            return StaticCredentialSource(discovery.databases)
        return SecretsManagerSource(
            region=self.config.remote_write.region,
            tag_key=discovery.tag_key,
            tag_value=discovery.tag_value,
            cache_ttl=discovery.cache_ttl,
        )

    def reconcile(self) -> Optional[ReconcileResult]:
        """
        Refresh the credential snapshot and reconcile the bindings against it.

        If the credential store cannot be listed at all, the existing
        bindings are kept and None is returned.
        """
        try:
            snapshot = self.source.snapshot()
        except CollectorError as e:
            logger.error(f"Could not list credentials, keeping {len(self.registry)} existing bindings: {e}")
            return None
        return self.registry.reconcile(snapshot)

    def reconcile_and_run_cycle(self, cancel_event: Optional[threading.Event] = None) -> CycleResult:
        """Reconcile, then run one scrape cycle over the live bindings."""
        if self.orchestrator is None:
            self.setup()

        start = time.monotonic()
        self.reconcile()
        bindings = self.registry.snapshot()
        cycle = self.orchestrator.run_cycle(bindings, cancel_event or self._stop_event)
        metrics.record_cycle(time.monotonic() - start, len(bindings))
        return cycle

    def run_once(self) -> CycleResult:
        """Run a single cycle."""
        return self.reconcile_and_run_cycle()

    def run(self):
        """Run cycles on the configured schedule until stopped."""
        schedule = Schedule.parse(self.config.schedule.cron)
        self._stop_event.clear()

        for sig in (signal.SIGINT, signal.SIGTERM):
            try:
                signal.signal(sig, self._handle_signal)
            except ValueError:
                # Signal handlers can only be installed from the main thread
                pass

        logger.info(f"Starting database collector with schedule {schedule.expression!r}")
        while not self._stop_event.is_set():
            try:
                self.reconcile_and_run_cycle()
            except Exception:
                logger.exception("Cycle failed")

            delay = schedule.next_delay()
            logger.debug(f"Next cycle in {delay:.1f}s")
            self._stop_event.wait(delay)

        logger.info("Database collector stopped")

    def _handle_signal(self, signum, frame):
        logger.info(f"Received signal {signum}, stopping")
        self.stop()

    def stop(self):
        """Stop the scheduler loop and cancel the running cycle."""
        self._stop_event.set()

    def close(self):
        """Release bindings and close the client."""
        if self.registry is not None:
            self.registry.close()
        if self.client is not None:
            self.client.close()


_lambda_agent: Optional[Agent] = None


def lambda_handler(event, context):
    """AWS Lambda entry point: one reconcile and scrape cycle per invocation."""
    global _lambda_agent

    if _lambda_agent is None:
        config = AgentConfig.from_env()
        config.validate()
        _lambda_agent = Agent(config)
        _lambda_agent.setup()

    cycle = _lambda_agent.reconcile_and_run_cycle()
    return cycle.to_dict()
