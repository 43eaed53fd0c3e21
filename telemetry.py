import logging
from typing import Optional

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    CollectorRegistry,
    Counter,
    Histogram,
    PlatformCollector,
    ProcessCollector,
    generate_latest,
)

logger = logging.getLogger("metrics-hub.telemetry")

LATENCY_BUCKETS_MS = (5, 10, 25, 50, 100, 250, 500, 1000)


class Telemetry:
    """Owns a Prometheus registry with the ingest pipeline's series.

    Each instance has its own registry so several apps (or tests) can live
    in one process without colliding on metric names.
    """

    content_type = CONTENT_TYPE_LATEST

    def __init__(self, registry: Optional[CollectorRegistry] = None):
        self.registry = registry if registry is not None else CollectorRegistry()

        ProcessCollector(registry=self.registry)
        PlatformCollector(registry=self.registry)

        self.http_requests = Counter(
            "http_requests_total",
            "Total number of HTTP requests received by the backend.",
            ["method", "path", "status_code"],
            registry=self.registry,
        )
        self.ingest_total = Counter(
            "iot_ingest_total",
            "Total number of ingest operations.",
            ["channel", "result"],
            registry=self.registry,
        )
        self.alerts_triggered = Counter(
            "iot_alerts_triggered_total",
            "Total number of alerts triggered by the rules engine.",
            ["device_id", "metric_name", "rule_type"],
            registry=self.registry,
        )
        self.processing_latency = Histogram(
            "iot_processing_latency_ms",
            "Processing latency in milliseconds for the ingest pipeline.",
            ["stage"],
            buckets=LATENCY_BUCKETS_MS,
            registry=self.registry,
        )
        self.db_write_latency = Histogram(
            "iot_db_write_latency_ms",
            "Database write latency in milliseconds.",
            ["operation"],
            buckets=LATENCY_BUCKETS_MS,
            registry=self.registry,
        )

    def record_http_request(self, method: str, path: str, status_code: int):
        self.http_requests.labels(
            method=(method or "UNKNOWN").upper(),
            path=(path or "unknown").lower(),
            status_code=str(status_code),
        ).inc()

    def record_ingest(self, channel: str, result: str):
        self.ingest_total.labels(channel=channel, result=result).inc()

    def record_alert_triggered(self, device_id: str, metric_name: str, rule_type: str):
        self.alerts_triggered.labels(
            device_id=device_id, metric_name=metric_name, rule_type=getattr(rule_type, "value", rule_type)
        ).inc()

    def observe_processing_latency(self, stage: str, ms: float):
        # clock skew can produce negative durations; drop them
        if ms < 0:
            logger.debug("Dropping negative processing latency stage=%s ms=%s", stage, ms)
            return
        self.processing_latency.labels(stage=stage).observe(ms)

    def observe_db_write_latency(self, operation: str, ms: float):
        if ms < 0:
            logger.debug("Dropping negative db write latency operation=%s ms=%s", operation, ms)
            return
        self.db_write_latency.labels(operation=operation).observe(ms)

    def render(self) -> str:
        return generate_latest(self.registry).decode("utf-8")
