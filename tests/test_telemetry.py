"""Tests for the Prometheus telemetry sink."""

from prometheus_client import CollectorRegistry

from telemetry import Telemetry


def test_render_exposes_pipeline_series():
    text = Telemetry().render()

    for name in (
        "http_requests_total",
        "iot_ingest_total",
        "iot_alerts_triggered_total",
        "iot_processing_latency_ms",
        "iot_db_write_latency_ms",
    ):
        assert name in text


def test_http_request_labels_are_normalized():
    telemetry = Telemetry()
    telemetry.record_http_request("get", "/Devices", 200)

    assert 'http_requests_total{method="GET",path="/devices",status_code="200"} 1.0' in telemetry.render()


def test_ingest_counter_labels():
    telemetry = Telemetry()
    telemetry.record_ingest("http", "success")
    telemetry.record_ingest("http", "success")
    telemetry.record_ingest("pubsub", "error")

    text = telemetry.render()
    assert 'iot_ingest_total{channel="http",result="success"} 2.0' in text
    assert 'iot_ingest_total{channel="pubsub",result="error"} 1.0' in text


def test_alert_counter_labels():
    telemetry = Telemetry()
    telemetry.record_alert_triggered("device-1", "temperature", "MAX")

    assert (
        'iot_alerts_triggered_total{device_id="device-1",metric_name="temperature",rule_type="MAX"} 1.0'
        in telemetry.render()
    )


def test_latency_histograms_use_fixed_buckets():
    telemetry = Telemetry()
    telemetry.observe_processing_latency("ingest_pipeline", 42)
    telemetry.observe_db_write_latency("insert", 12)

    sample = telemetry.registry.get_sample_value
    stage = {"stage": "ingest_pipeline"}
    assert sample("iot_processing_latency_ms_bucket", {**stage, "le": "25.0"}) == 0.0
    assert sample("iot_processing_latency_ms_bucket", {**stage, "le": "50.0"}) == 1.0
    assert sample("iot_db_write_latency_ms_bucket", {"operation": "insert", "le": "10.0"}) == 0.0
    assert sample("iot_db_write_latency_ms_bucket", {"operation": "insert", "le": "1000.0"}) == 1.0
    assert sample("iot_db_write_latency_ms_sum", {"operation": "insert"}) == 12.0



def test_negative_latencies_are_dropped():
    telemetry = Telemetry()
    telemetry.observe_processing_latency("skewed_stage", -5)
    telemetry.observe_db_write_latency("skewed_op", -10)

    text = telemetry.render()
    assert 'stage="skewed_stage"' not in text
    assert 'operation="skewed_op"' not in text


def test_instances_do_not_share_series():
    first = Telemetry()
    second = Telemetry()
    first.record_ingest("http", "success")

    assert 'channel="http"' not in second.render()


def test_series_can_be_registered_on_a_given_registry():
    registry = CollectorRegistry()
    telemetry = Telemetry(registry)
    telemetry.record_ingest("pubsub", "error")

    assert telemetry.registry is registry
    assert registry.get_sample_value("iot_ingest_total", {"channel": "pubsub", "result": "error"}) == 1.0
