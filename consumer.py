import asyncio
import logging
from typing import Callable, Optional, Set

from aiokafka import AIOKafkaConsumer

from config import Settings
from ingest import CHANNEL_PUBSUB, IngestService, Rejected, parse_message
from telemetry import Telemetry

logger = logging.getLogger("metrics-hub.consumer")


class KafkaConsumerService:
    """Pub/sub adapter: one fire-and-forget task per inbound message.

    The poll loop never waits on a message's pipeline. Shutdown is a drain:
    stop polling, wait for the in-flight tasks, then close the consumer.
    """

    def __init__(
        self,
        ingest_service: IngestService,
        telemetry: Telemetry,
        settings: Settings,
        consumer_factory: Optional[Callable[[Settings], AIOKafkaConsumer]] = None,
    ):
        self._ingest = ingest_service
        self._telemetry = telemetry
        self._settings = settings
        self._consumer_factory = consumer_factory or self._default_consumer
        self._consumer = None
        self._task: Optional[asyncio.Task] = None
        self._stopping = asyncio.Event()
        self._inflight: Set[asyncio.Task] = set()

    @staticmethod
    def _default_consumer(settings: Settings) -> AIOKafkaConsumer:
        consumer = AIOKafkaConsumer(
            bootstrap_servers=settings.kafka_bootstrap_servers,
            group_id=settings.kafka_group_id,
            auto_offset_reset="latest",
            enable_auto_commit=True,
        )
        consumer.subscribe(pattern=settings.kafka_topic_pattern)
        return consumer

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def in_flight(self) -> int:
        return len(self._inflight)

    async def start(self):
        logger.info(
            "Starting Kafka consumer pattern=%s bootstrap=%s",
            self._settings.kafka_topic_pattern, self._settings.kafka_bootstrap_servers,
        )
        self._consumer = self._consumer_factory(self._settings)
        await self._consumer.start()
        self._stopping.clear()
        self._task = asyncio.create_task(self._consume_loop())

    async def stop(self):
        logger.info("Stopping Kafka consumer")
        self._stopping.set()
        if self._task:
            await self._task
            self._task = None

        if self._inflight:
            logger.info("Draining %d in-flight messages", len(self._inflight))
            await asyncio.gather(*list(self._inflight), return_exceptions=True)

        if self._consumer:
            await self._consumer.stop()
            self._consumer = None
        logger.info("Kafka consumer stopped")

    async def _consume_loop(self):
        try:
            while not self._stopping.is_set():
                try:
                    batches = await self._consumer.getmany(timeout_ms=1000)
                except Exception:
                    logger.exception("Kafka fetch failed")
                    await asyncio.sleep(1)
                    continue

                for records in batches.values():
                    for msg in records:
                        self.dispatch(msg.topic, msg.value)
        except asyncio.CancelledError:
            logger.info("Consumer loop cancelled")
            raise
        finally:
            logger.info("Exiting consumer loop")

    def dispatch(self, topic: str, payload: bytes) -> asyncio.Task:
        task = asyncio.create_task(self.handle_message(topic, payload))
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)
        return task

    async def handle_message(self, topic: str, payload: bytes):
        """Process one message. Never raises; there is nobody to report to."""
        logger.debug("message_received topic=%s bytes=%d", topic, len(payload or b""))

        result = parse_message(topic, payload)
        if isinstance(result, Rejected):
            self._telemetry.record_ingest(CHANNEL_PUBSUB, "error")
            logger.warning("Dropping message topic=%s reason=%s", topic, result.reason)
            return

        try:
            stored = await self._ingest.ingest(result.device_id, result.metrics, channel=CHANNEL_PUBSUB)
        except Exception:
            logger.exception("Pub/sub ingest failed topic=%s device_id=%s", topic, result.device_id)
            return

        logger.info("Pub/sub ingest device_id=%s metrics_count=%d", result.device_id, stored)
