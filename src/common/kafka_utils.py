"""
Event publishing for the reconciliation services.

Book and social events are keyed by the book they describe, so every event
about one book lands on the same partition in publish order. One publisher
is kept per running event loop; the CLI and the tests run several loops in a
single process.
"""

import asyncio
import json
from typing import Any, Dict, Mapping, Optional, Union

from aiokafka import AIOKafkaProducer
from aiokafka.errors import KafkaError
from pydantic import BaseModel

from .metrics import MESSAGES_PUBLISHED_TOTAL
from .settings import settings
from .structured_logging import get_logger

logger = get_logger(__name__)

EventPayload = Union[BaseModel, Mapping[str, Any]]

_KEY_FIELDS = ("book_id", "book_key")


def event_payload(event: EventPayload) -> Dict[str, Any]:
    if isinstance(event, BaseModel):
        return event.model_dump(mode="json")
    return dict(event)


def event_key(payload: Mapping[str, Any]) -> Optional[bytes]:
    """Partition key: the book the event is about, when it names one."""
    for name in _KEY_FIELDS:
        value = payload.get(name)
        if value:
            return str(value).encode("utf-8")
    return None


class KafkaEventProducer:
    """Publisher bound to the loop it was first used on; starts on first publish."""

    def __init__(self, bootstrap_servers: Optional[str] = None):
        self.bootstrap_servers = bootstrap_servers or settings.kafka_bootstrap
        self._producer: Optional[AIOKafkaProducer] = None
        self._lock = asyncio.Lock()

    async def _get_producer(self) -> AIOKafkaProducer:
        async with self._lock:
            if self._producer is None:
                producer = AIOKafkaProducer(
                    bootstrap_servers=self.bootstrap_servers,
                    value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
                    retry_backoff_ms=1000,
                )
                await producer.start()
                self._producer = producer
                logger.info("Kafka producer started", extra={"bootstrap_servers": self.bootstrap_servers})
        return self._producer

    async def publish_event(self, topic: str, event: EventPayload) -> bool:
        """Send one event and wait for the broker ack. Returns False on any failure."""
        payload = event_payload(event)
        key = event_key(payload)
        try:
            producer = await self._get_producer()
            await producer.send_and_wait(topic, payload, key=key)
        except KafkaError as e:
            MESSAGES_PUBLISHED_TOTAL.labels(topic=topic, status="failure").inc()
            logger.error(
                "Kafka rejected event",
                extra={"topic": topic, "error": str(e), "event_type": payload.get("event_type")},
            )
            return False
        except Exception:
            MESSAGES_PUBLISHED_TOTAL.labels(topic=topic, status="error").inc()
            logger.error(
                "Unexpected error publishing event",
                exc_info=True,
                extra={"topic": topic, "event_type": payload.get("event_type")},
            )
            return False
        MESSAGES_PUBLISHED_TOTAL.labels(topic=topic, status="success").inc()
        logger.debug("Published event", extra={"topic": topic, "payload": payload})
        return True

    async def close(self):
        if self._producer is not None:
            await self._producer.stop()
            self._producer = None
            logger.info("Kafka producer stopped")


_producers: Dict[int, KafkaEventProducer] = {}


def get_event_producer() -> KafkaEventProducer:
    loop_id = id(asyncio.get_running_loop())
    if loop_id not in _producers:
        _producers[loop_id] = KafkaEventProducer()
    return _producers[loop_id]


async def publish_event(topic: str, event: EventPayload) -> bool:
    """Publish through this loop's producer; never raises."""
    try:
        return await get_event_producer().publish_event(topic, event)
    except Exception:
        logger.error("Unexpected error publishing event", exc_info=True, extra={"topic": topic})
        return False


async def close_producers() -> None:
    """Stop every producer created by this process."""
    for producer in list(_producers.values()):
        await producer.close()
    _producers.clear()
