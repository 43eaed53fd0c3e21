"""
Tests for the Kafka pub/sub adapter.

The broker is replaced by a fake consumer exposing the subset of the
aiokafka API the service uses (start / stop / getmany).
"""

import asyncio
import json
from datetime import datetime, timedelta, timezone
from types import SimpleNamespace

from config import Settings
from consumer import KafkaConsumerService
from models import RuleType
from telemetry import Telemetry


def record(topic, payload):
    return SimpleNamespace(topic=topic, value=json.dumps(payload).encode("utf-8"))


class FakeKafkaConsumer:
    def __init__(self, batches):
        self._batches = list(batches)
        self.started = False
        self.stopped = False

    async def start(self):
        self.started = True

    async def stop(self):
        self.stopped = True

    async def getmany(self, timeout_ms=0):
        if self._batches:
            return self._batches.pop(0)
        await asyncio.sleep(0.01)
        return {}


class BlockingIngest:
    """Ingest double whose calls stay in flight until released."""

    def __init__(self):
        self.release = asyncio.Event()
        self.calls = []
        self.finished = 0

    async def ingest(self, device_id, metrics, channel="http"):
        self.calls.append((device_id, [m.name for m in metrics], channel))
        await self.release.wait()
        self.finished += 1
        return len(metrics)


class ExplodingIngest:
    def __init__(self):
        self.calls = 0

    async def ingest(self, device_id, metrics, channel="http"):
        self.calls += 1
        raise RuntimeError("database is down")


async def wait_for(predicate, attempts=200):
    for _ in range(attempts):
        if predicate():
            return True
        await asyncio.sleep(0.01)
    return predicate()


def test_non_numeric_value_is_dropped_without_side_effects(pipeline):
    async def scenario():
        async with pipeline() as p:
            await p.rules.create("D", "x", RuleType.MAX, max_value=0.0)
            service = KafkaConsumerService(p.ingest, p.telemetry, Settings())

            await service.handle_message(
                "devices.D.metrics", b'{"metrics":[{"name":"x","value":"not-a-number"}]}'
            )

            now = datetime.now(timezone.utc)
            assert await p.timeseries.query("D", "x", now - timedelta(days=1), now + timedelta(days=1)) == []
            assert await p.alerts.query() == []
            return p.telemetry

    telemetry = asyncio.run(scenario())
    assert telemetry.registry.get_sample_value("iot_ingest_total", {"channel": "pubsub", "result": "error"}) == 1.0


def test_valid_message_runs_the_pipeline(pipeline):
    async def scenario():
        async with pipeline() as p:
            await p.rules.create("D", "t", RuleType.MAX, max_value=30.0)
            service = KafkaConsumerService(p.ingest, p.telemetry, Settings())

            await service.handle_message("devices.D.metrics", json.dumps(
                {"metrics": [{"name": "T", "value": 35, "ts": "2026-01-01T00:00:00Z"}]}
            ).encode())

            start = datetime(2026, 1, 1, tzinfo=timezone.utc)
            points = await p.timeseries.query("D", "t", start, start)
            assert [pt.value for pt in points] == [35.0]
            alerts = await p.alerts.query(device_id="D")
            assert [a.value for a in alerts] == [35.0]
            return p.telemetry

    telemetry = asyncio.run(scenario())
    assert telemetry.registry.get_sample_value("iot_ingest_total", {"channel": "pubsub", "result": "success"}) == 1.0


def test_bad_topic_and_invalid_json_are_dropped():
    async def scenario():
        ingest = BlockingIngest()
        service = KafkaConsumerService(ingest, Telemetry(), Settings())
        await service.handle_message("devices.D", b'{"metrics":[{"name":"x","value":1}]}')
        await service.handle_message("devices.D.metrics", b"{oops")
        return ingest

    assert asyncio.run(scenario()).calls == []


def test_pipeline_failure_is_logged_not_raised():
    async def scenario():
        ingest = ExplodingIngest()
        service = KafkaConsumerService(ingest, Telemetry(), Settings())
        await service.handle_message("devices.D.metrics", b'{"metrics":[{"name":"x","value":1}]}')
        return ingest

    assert asyncio.run(scenario()).calls == 1


def test_loop_dispatches_without_waiting_and_stop_drains():
    async def scenario():
        ingest = BlockingIngest()
        fake = FakeKafkaConsumer([
            {"tp-0": [record("devices.A.metrics", {"metrics": [{"name": "t", "value": 1}]}),
                      record("devices.B.metrics", {"metrics": [{"name": "h", "value": 2}]})]},
            {"tp-1": [record("devices.C.metrics", {"metrics": [{"name": "p", "value": 3}]})]},
        ])
        service = KafkaConsumerService(ingest, Telemetry(), Settings(), consumer_factory=lambda s: fake)

        await service.start()
        assert fake.started
        assert service.running

        # all three are in flight at once even though none has finished
        assert await wait_for(lambda: len(ingest.calls) == 3)
        assert ingest.finished == 0
        assert service.in_flight == 3
        assert {c[0] for c in ingest.calls} == {"A", "B", "C"}
        assert {c[2] for c in ingest.calls} == {"pubsub"}

        stopping = asyncio.create_task(service.stop())
        await asyncio.sleep(0.05)
        assert not stopping.done()
        assert not fake.stopped

        ingest.release.set()
        await stopping

        assert ingest.finished == 3
        assert service.in_flight == 0
        assert fake.stopped
        assert not service.running

    asyncio.run(scenario())


def test_fetch_errors_do_not_kill_the_loop():
    class FlakyConsumer(FakeKafkaConsumer):
        def __init__(self, batches):
            super().__init__(batches)
            self.failed = False

        async def getmany(self, timeout_ms=0):
            if not self.failed:
                self.failed = True
                raise ConnectionError("broker went away")
            return await super().getmany(timeout_ms)

    async def scenario():
        ingest = BlockingIngest()
        ingest.release.set()
        fake = FlakyConsumer([{"tp": [record("devices.A.metrics", {"metrics": [{"name": "t", "value": 1}]})]}])
        service = KafkaConsumerService(ingest, Telemetry(), Settings(), consumer_factory=lambda s: fake)

        await service.start()
        assert await wait_for(lambda: ingest.finished == 1, attempts=300)
        await service.stop()
        return ingest

    assert asyncio.run(scenario()).finished == 1
