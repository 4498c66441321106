"""Scrape orchestrator - runs one bounded, failure-isolated collection cycle."""

import logging
import threading
import time
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Iterable, Optional

from . import metrics
from .client import RemoteWriteClient
from .credentials import CredentialRecord, CredentialSource
from .encoder import DEFAULT_JOB, Enrichment, MetricEncoder
from .errors import CollectorError, CycleCancelledError
from .registry import CollectorBinding

logger = logging.getLogger(__name__)

DEFAULT_CONCURRENCY = 10


@dataclass
class ScrapeTaskResult:
    """Outcome of one binding's unit of work in a cycle."""

    credential_id: str
    engine: str
    success: bool
    error_kind: Optional[str] = None
    error: Optional[str] = None
    duration_ms: float = 0.0
    series_sent: int = 0
    series_skipped: int = 0


@dataclass
class CycleResult:
    """Aggregated outcomes of one cycle."""

    results: list[ScrapeTaskResult] = field(default_factory=list)
    duration_ms: float = 0.0

    def __len__(self) -> int:
        return len(self.results)

    @property
    def succeeded(self) -> int:
        return sum(1 for r in self.results if r.success)

    @property
    def failed(self) -> int:
        return sum(1 for r in self.results if not r.success)

    def get(self, credential_id: str) -> Optional[ScrapeTaskResult]:
        for result in self.results:
            if result.credential_id == credential_id:
                return result
        return None

    def to_dict(self) -> dict:
        return {
            "bindings": len(self.results),
            "succeeded": self.succeeded,
            "failed": self.failed,
            "duration_ms": round(self.duration_ms, 1),
            "errors": {r.credential_id: r.error for r in self.results if not r.success},
        }


class ScrapeOrchestrator:
    """
    Drives one collection cycle across a sequence of bindings.

    Each binding runs as an independent unit on a thread pool of fixed width,
    so at most ``concurrency`` databases are queried at once. A unit
    optionally refetches its credential, gathers, encodes and sends; a
    failure at any step ends only that unit and is recorded in its
    ScrapeTaskResult. The cycle returns once every unit has finished.
    """

    def __init__(
        self,
        encoder: MetricEncoder,
        client: RemoteWriteClient,
        concurrency: int = DEFAULT_CONCURRENCY,
        job: str = DEFAULT_JOB,
        region: str = "",
        account: str = "",
        credential_source: Optional[CredentialSource] = None,
        refetch_credentials: bool = False,
    ):
        if concurrency < 1:
            raise ValueError("concurrency must be at least 1")
        self.encoder = encoder
        self.client = client
        self.concurrency = concurrency
        self.job = job
        self.region = region
        self.account = account
        self.credential_source = credential_source
        self.refetch_credentials = refetch_credentials

    def run_cycle(
        self,
        bindings: Iterable[CollectorBinding],
        cancel_event: Optional[threading.Event] = None,
    ) -> CycleResult:
        """Run one cycle over ``bindings`` and wait for every unit to finish."""
        bindings = list(bindings)
        cancel_event = cancel_event or threading.Event()
        start = time.monotonic()

        if not bindings:
            logger.info("No bindings to scrape")
            return CycleResult()

        workers = min(self.concurrency, len(bindings))
        with ThreadPoolExecutor(max_workers=workers, thread_name_prefix="scrape") as pool:
            futures = [pool.submit(self._run_unit, binding, cancel_event) for binding in bindings]
            results = [future.result() for future in futures]

        cycle = CycleResult(results=results, duration_ms=(time.monotonic() - start) * 1000)
        logger.info(
            f"Cycle finished: {cycle.succeeded} succeeded, {cycle.failed} failed "
            f"in {cycle.duration_ms:.1f}ms"
        )
        return cycle

    def _enrichment(self, binding: CollectorBinding, credential: CredentialRecord) -> Enrichment:
        return Enrichment(
            identifier=credential.identifier,
            job=self.job,
            region=self.region,
            account=self.account,
            engine=binding.engine.value,
        )

    def _run_unit(self, binding: CollectorBinding, cancel_event: threading.Event) -> ScrapeTaskResult:
        start = time.monotonic()
        result = ScrapeTaskResult(
            credential_id=binding.credential_id,
            engine=binding.engine.value,
            success=False,
        )

        def checkpoint():
            if cancel_event.is_set():
                raise CycleCancelledError("cycle cancelled")

        credential = binding.credential
        try:
            checkpoint()
            if self.refetch_credentials and self.credential_source is not None:
                credential = self.credential_source.fetch_credential(binding.credential_id)
                binding.collector.update_credential(credential)

            checkpoint()
            families = binding.gather()

            checkpoint()
            batch = self.encoder.encode(families, self._enrichment(binding, credential))
            result.series_skipped = batch.skipped

            checkpoint()
            self.client.send(batch)
            result.series_sent = len(batch)
            result.success = True
            logger.debug(f"Sent {len(batch)} series for {binding.credential_id}")

        except CycleCancelledError as e:
            result.error_kind = type(e).__name__
            result.error = str(e)
            logger.info(f"Scrape of {binding.credential_id} cancelled")
        except CollectorError as e:
            result.error_kind = type(e).__name__
            result.error = str(e)
            logger.error(f"Scrape of {binding.credential_id} failed: {e}")
        except Exception as e:
            result.error_kind = "UnexpectedError"
            result.error = str(e)
            logger.exception(f"Unexpected error scraping {binding.credential_id}")

        result.duration_ms = (time.monotonic() - start) * 1000
        metrics.record_scrape(
            engine=result.engine,
            success=result.success,
            error_kind=result.error_kind,
            series_sent=result.series_sent,
            series_skipped=result.series_skipped,
        )
        return result
