import json
import logging
import time
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional, Sequence, Tuple, Union

import pydantic

from db import TimeseriesStore, elapsed_ms
from errors import MalformedMessage, StorageError
from models import MetricIn, MetricsPayload, Reading, ensure_utc, utcnow
from rules import RulesEngine
from telemetry import Telemetry

logger = logging.getLogger("metrics-hub.ingest")

CHANNEL_HTTP = "http"
CHANNEL_PUBSUB = "pubsub"


def normalize(device_id: str, metrics: Sequence[MetricIn], now: Optional[datetime] = None) -> List[Reading]:
    """Turn validated metrics into canonical readings, keeping input order.

    Names are lower-cased; a metric without ts is stamped with `now`
    (the moment of normalization unless given).
    """
    now = ensure_utc(now) if now is not None else utcnow()
    return [
        Reading(
            device_id=device_id,
            metric_name=metric.name.lower(),
            timestamp=metric.ts if metric.ts is not None else now,
            value=float(metric.value),
        )
        for metric in metrics
    ]


@dataclass(frozen=True)
class Accepted:
    device_id: str
    metrics: List[MetricIn]


@dataclass(frozen=True)
class Rejected:
    reason: str


ParseResult = Union[Accepted, Rejected]


def parse_device_topic(topic: str) -> str:
    """Extract the device id from a devices.{device_id}.metrics topic.

    The slash form devices/{device_id}/metrics is accepted too; Kafka
    cannot carry it, but MQTT-style brokers do.
    """
    if not topic:
        parts = []
    elif "/" in topic:
        parts = topic.split("/")
    else:
        parts = topic.split(".")
    if len(parts) != 3 or parts[0] != "devices" or parts[2] != "metrics" or not parts[1]:
        raise MalformedMessage(f"unexpected topic {topic!r}")
    return parts[1]


def decode_message(topic: str, payload: bytes) -> Tuple[str, List[MetricIn]]:
    """Strict decode of one pub/sub message; raises MalformedMessage."""
    device_id = parse_device_topic(topic)

    try:
        text = payload.decode("utf-8") if isinstance(payload, (bytes, bytearray)) else payload
        data = json.loads(text)
    except (UnicodeDecodeError, json.JSONDecodeError, TypeError) as exc:
        raise MalformedMessage(f"invalid JSON payload: {exc}") from exc

    try:
        parsed = MetricsPayload.model_validate(data)
    except pydantic.ValidationError as exc:
        errors = "; ".join(
            "%s: %s" % (".".join(str(p) for p in err["loc"]), err["msg"]) for err in exc.errors()
        )
        raise MalformedMessage(f"invalid metrics: {errors}") from exc

    return device_id, parsed.metrics


def parse_message(topic: str, payload: bytes) -> ParseResult:
    """Tagged-result form of decode_message: Accepted or Rejected(reason)."""
    try:
        device_id, metrics = decode_message(topic, payload)
    except MalformedMessage as exc:
        return Rejected(reason=exc.reason)
    return Accepted(device_id=device_id, metrics=metrics)


class IngestService:
    """Shared pipeline behind both channels.

    normalize -> append to the time-series store -> evaluate rules per
    reading. The append is the only step whose failure fails the ingest;
    a rule pass that fails after the readings are committed is logged.
    """

    def __init__(self, storage: TimeseriesStore, engine: RulesEngine, telemetry: Telemetry):
        self._storage = storage
        self._engine = engine
        self._telemetry = telemetry

    async def ingest(self, device_id: str, metrics: Sequence[MetricIn], channel: str = CHANNEL_HTTP) -> int:
        started = time.perf_counter()
        readings = normalize(device_id, metrics)

        try:
            await self._storage.append(readings)
        except StorageError as exc:
            self._telemetry.record_ingest(channel, "error")
            logger.error(
                "ingest_db_error channel=%s device_id=%s metrics_count=%d error=%s",
                channel, device_id, len(readings), exc,
            )
            raise

        self._telemetry.record_ingest(channel, "success")

        for reading in readings:
            try:
                await self._engine.evaluate_reading(reading)
            except Exception:
                logger.exception(
                    "Rule evaluation failed channel=%s device_id=%s metric=%s",
                    channel, reading.device_id, reading.metric_name,
                )

        self._telemetry.observe_processing_latency("ingest_pipeline", elapsed_ms(started))
        logger.info(
            "ingest_success channel=%s device_id=%s metrics_count=%d",
            channel, device_id, len(readings),
        )
        return len(readings)
