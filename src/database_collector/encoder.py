"""Metric encoder - flattens gathered metric families into remote-write time series."""

import logging
import math
import time
from dataclasses import dataclass, field
from typing import Iterable, Optional

from prometheus_client import Metric

from .errors import EncodingError

logger = logging.getLogger(__name__)

DEFAULT_JOB = "database-collector"

# Label carrying a multi-sample series' bucket or quantile boundaries
BUCKET_BOUNDS_LABEL = "le_bounds"
QUANTILE_BOUNDS_LABEL = "quantile_bounds"

# Sample suffixes that carry no value of their own in remote write
_IGNORED_SUFFIXES = ("_created", "_count", "_gcount", "_gsum")


@dataclass(frozen=True)
class Enrichment:
    """Labels attached to every outgoing series, identifying its source instance."""

    identifier: str
    job: str = DEFAULT_JOB
    region: str = ""
    account: str = ""
    engine: str = ""

    def as_labels(self) -> dict[str, str]:
        return {
            "identifier": self.identifier,
            "job": self.job,
            "region": self.region,
            "accountId": self.account,
            "engine": self.engine,
        }


@dataclass
class Sample:
    value: float
    timestamp_ms: int


@dataclass
class TimeSeries:
    """A unique label set plus its samples. Labels are sorted by name."""

    labels: tuple[tuple[str, str], ...]
    samples: list[Sample] = field(default_factory=list)

    @property
    def name(self) -> str:
        return dict(self.labels).get("__name__", "")

    def label(self, name: str) -> Optional[str]:
        return dict(self.labels).get(name)


@dataclass
class MetricMetadata:
    """Type and help text for one metric family."""

    family_name: str
    type: str
    help: str = ""
    unit: str = ""


@dataclass
class RemoteWriteBatch:
    """Series encoded from one gather, built fresh per cycle and discarded after send."""

    timeseries: list[TimeSeries] = field(default_factory=list)
    metadata: list[MetricMetadata] = field(default_factory=list)
    skipped: int = 0

    def __len__(self) -> int:
        return len(self.timeseries)

    @property
    def sample_count(self) -> int:
        return sum(len(ts.samples) for ts in self.timeseries)


def _now_ms() -> int:
    return int(time.time() * 1000)


def _timestamp_ms(sample, default_ms: int) -> int:
    if sample.timestamp is None:
        return default_ms
    return int(float(sample.timestamp) * 1000)


def _parse_bound(value: str) -> float:
    try:
        return float(value)
    except (TypeError, ValueError):
        raise EncodingError(f"Invalid bucket or quantile bound: {value!r}")


def _new_group() -> dict:
    return {"bounds": [], "sum": None, "ts": None, "error": None}


def _group_value(group: dict, sample) -> Optional[float]:
    """Convert a sample value, marking the whole group invalid if it is not numeric."""
    try:
        return float(sample.value)
    except (TypeError, ValueError):
        group["error"] = f"non-numeric value {sample.value!r} in {sample.name}"
        return None


class MetricEncoder:
    """
    Converts ``prometheus_client`` metric families into a RemoteWriteBatch.

    Counter, gauge and untyped families produce one single-sample series per
    label set. Histogram and summary families produce one series per label
    set, holding one sample per bucket (or quantile) followed by a sum
    sample; the boundaries are carried in a ``le_bounds`` (or
    ``quantile_bounds``) label. Samples within such a series get strictly
    increasing timestamps, one millisecond apart.

    A family or series with an unexpected shape is skipped and counted in
    ``RemoteWriteBatch.skipped``; it never aborts the rest of the batch.
    """

    def __init__(self, clock=_now_ms):
        self._clock = clock

    def encode(self, families: Iterable[Metric], enrichment: Enrichment) -> RemoteWriteBatch:
        batch = RemoteWriteBatch()
        enrichment_labels = enrichment.as_labels()
        now_ms = self._clock()

        for family in families:
            try:
                series, skipped = self._encode_family(family, enrichment_labels, now_ms)
            except EncodingError as e:
                skipped_count = max(len(family.samples), 1)
                logger.warning(f"Skipping metric family {family.name}: {e}")
                batch.skipped += skipped_count
                continue

            batch.timeseries.extend(series)
            batch.skipped += skipped
            if series:
                batch.metadata.append(MetricMetadata(
                    family_name=family.name,
                    type=family.type,
                    help=family.documentation,
                    unit=family.unit,
                ))

        if batch.skipped:
            logger.debug(f"Encoded {len(batch)} series, skipped {batch.skipped}")
        return batch

    def _encode_family(self, family: Metric, enrichment: dict, now_ms: int) -> tuple[list[TimeSeries], int]:
        if family.type == "counter":
            return self._encode_simple(family, f"{family.name}_total", enrichment, now_ms)
        if family.type in ("gauge", "unknown"):
            return self._encode_simple(family, family.name, enrichment, now_ms)
        if family.type == "histogram":
            return self._encode_grouped(family, "le", "_bucket", BUCKET_BOUNDS_LABEL, enrichment, now_ms)
        if family.type == "summary":
            return self._encode_grouped(family, "quantile", "", QUANTILE_BOUNDS_LABEL, enrichment, now_ms)
        raise EncodingError(f"Unsupported metric type: {family.type}")

    def _labels(self, name: str, series_labels: dict, enrichment: dict, extra: Optional[dict] = None):
        labels = dict(series_labels)
        labels.update(extra or {})
        labels.update(enrichment)
        labels["__name__"] = name
        return tuple(sorted(labels.items()))

    def _encode_simple(self, family: Metric, value_name: str, enrichment: dict, now_ms: int):
        series = []
        skipped = 0
        for sample in family.samples:
            if sample.name != value_name:
                if not sample.name.endswith(_IGNORED_SUFFIXES):
                    logger.debug(f"Unexpected sample {sample.name} in {family.type} family {family.name}")
                    skipped += 1
                continue
            try:
                value = float(sample.value)
            except (TypeError, ValueError):
                logger.debug(f"Non-numeric sample value in {family.name}: {sample.value!r}")
                skipped += 1
                continue
            series.append(TimeSeries(
                labels=self._labels(value_name, sample.labels, enrichment),
                samples=[Sample(value=value, timestamp_ms=_timestamp_ms(sample, now_ms))],
            ))
        return series, skipped

    def _encode_grouped(
        self,
        family: Metric,
        bound_label: str,
        bound_suffix: str,
        bounds_label: str,
        enrichment: dict,
        now_ms: int,
    ):
        bound_name = family.name + bound_suffix
        sum_name = family.name + "_sum"

        # label set (without the bound label) -> {"bounds": [(raw, value)], "sum": value, "ts": ms, "error": str}
        groups: dict[tuple, dict] = {}
        skipped = 0
        for sample in family.samples:
            if sample.name == bound_name and bound_label in sample.labels:
                labels = {k: v for k, v in sample.labels.items() if k != bound_label}
                group = groups.setdefault(tuple(sorted(labels.items())), _new_group())
                value = _group_value(group, sample)
                if value is not None:
                    group["bounds"].append((sample.labels[bound_label], value))
            elif sample.name == sum_name:
                group = groups.setdefault(tuple(sorted(sample.labels.items())), _new_group())
                group["sum"] = _group_value(group, sample)
            elif sample.name.endswith(_IGNORED_SUFFIXES):
                continue
            else:
                logger.debug(f"Unexpected sample {sample.name} in {family.type} family {family.name}")
                skipped += 1
                continue
            if group["ts"] is None:
                group["ts"] = _timestamp_ms(sample, now_ms)

        series = []
        for key, group in groups.items():
            try:
                series.append(self._grouped_series(family, key, group, bounds_label, enrichment, now_ms))
            except EncodingError as e:
                logger.warning(f"Skipping series of {family.name} {dict(key)}: {e}")
                skipped += 1
        return series, skipped

    def _grouped_series(self, family: Metric, key: tuple, group: dict, bounds_label: str, enrichment: dict, now_ms: int):
        if group["error"]:
            raise EncodingError(group["error"])
        if group["sum"] is None:
            raise EncodingError("missing sum sample")
        if not group["bounds"]:
            raise EncodingError("no buckets or quantiles")

        bounds = sorted(((_parse_bound(raw), raw, value) for raw, value in group["bounds"]), key=lambda b: b[0])
        if family.type == "histogram":
            counts = [value for _, _, value in bounds]
            if any(later < earlier for earlier, later in zip(counts, counts[1:])):
                raise EncodingError("bucket counts are not cumulative")
            if any(math.isnan(bound) for bound, _, _ in bounds):
                raise EncodingError("NaN bucket bound")

        base_ts = group["ts"] if group["ts"] is not None else now_ms
        samples = [Sample(value=value, timestamp_ms=base_ts + i) for i, (_, _, value) in enumerate(bounds)]
        samples.append(Sample(value=group["sum"], timestamp_ms=base_ts + len(bounds)))

        bounds_value = ",".join(raw for _, raw, _ in bounds)
        return TimeSeries(
            labels=self._labels(family.name, dict(key), enrichment, {bounds_label: bounds_value}),
            samples=samples,
        )
