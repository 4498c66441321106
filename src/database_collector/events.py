"""RDS service events - count EventBridge RDS events and forward them to remote write."""

import json
import logging
from typing import Any, Optional

from prometheus_client import CollectorRegistry as MetricRegistry
from prometheus_client import Counter

from .client import RemoteWriteClient
from .config import AgentConfig
from .encoder import Enrichment, MetricEncoder, RemoteWriteBatch
from .errors import CollectorError

logger = logging.getLogger(__name__)

EVENTS_ENGINE = "NA"

# Process-wide, so a warm Lambda keeps counting across invocations
EVENTS_REGISTRY = MetricRegistry(auto_describe=True)

RDS_SERVICE_EVENTS = Counter(
    'rds_service_events',
    'This metric indicates on whats happening on various aws services, e.g RDS',
    ['event_id', 'event_message', 'event_source'],
    registry=EVENTS_REGISTRY,
)


def _event_detail(event: dict[str, Any]) -> dict[str, Any]:
    detail = event.get("detail", event.get("Detail"))
    if isinstance(detail, (str, bytes)):
        detail = json.loads(detail)
    if not isinstance(detail, dict):
        raise CollectorError("Event has no detail object")
    return detail


def handle_rds_event(
    event: dict[str, Any],
    client: RemoteWriteClient,
    config: AgentConfig,
    encoder: Optional[MetricEncoder] = None,
) -> RemoteWriteBatch:
    """
    Count one RDS event and push the event counter to remote write.

    Args:
        event: EventBridge event whose ``detail`` is an RDS event message
        client: Remote-write client to send through
        config: Supplies job, region and account enrichment labels

    Returns:
        The batch that was sent

    Raises:
        CollectorError: If the event cannot be parsed
        SendError: If the remote write fails
    """
    try:
        detail = _event_detail(event)
    except ValueError as e:
        raise CollectorError(f"Malformed event detail: {e}") from e

    event_id = str(detail.get("EventID", ""))
    message = str(detail.get("Message", ""))
    source = str(detail.get("SourceIdentifier", ""))
    logger.info(f"RDS event {event_id or '-'} from {source}: {message}")

    # Single-character ids carry no information
    RDS_SERVICE_EVENTS.labels(
        event_id="none" if len(event_id) == 1 else event_id,
        event_message=message,
        event_source=source,
    ).inc()

    enrichment = Enrichment(
        identifier=event_id.split(".")[0],
        job=config.job,
        region=config.remote_write.region,
        account=config.account_id,
        engine=EVENTS_ENGINE,
    )
    encoder = encoder or MetricEncoder()
    batch = encoder.encode(EVENTS_REGISTRY.collect(), enrichment)
    client.send(batch)
    logger.info(f"Sent {len(batch)} event series to remote write")
    return batch


_events_client: Optional[RemoteWriteClient] = None
_events_config: Optional[AgentConfig] = None


def events_lambda_handler(event, context):
    """AWS Lambda entry point for EventBridge RDS events."""
    global _events_client, _events_config

    if _events_client is None:
        _events_config = AgentConfig.from_env()
        _events_config.validate()
        rw = _events_config.remote_write
        _events_client = RemoteWriteClient(
            url=rw.url,
            region=rw.region,
            service=rw.service,
            timeout=rw.timeout,
            role_arn=rw.role_arn,
        )

    batch = handle_rds_event(event, _events_client, _events_config)
    return {"series": len(batch)}
