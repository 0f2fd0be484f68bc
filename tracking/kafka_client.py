"""
Kafka producer and consumer clients for the trip change feed.

Every create, patch and delete of a trip record becomes a change event
{"trip_id": ..., "record": {...} | None}. Events are keyed by trip id so a
single partition carries each trip's changes in write order. When Kafka is
disabled or unreachable, events go straight to the trip's channel group.
"""

import json
import logging
from typing import Optional

from aiokafka import AIOKafkaConsumer, AIOKafkaProducer
from aiokafka.errors import KafkaError
from channels.layers import get_channel_layer
from django.conf import settings

logger = logging.getLogger(__name__)

TRIP_CHANGED_EVENT = 'trip.changed'


def trip_group_name(trip_id: str) -> str:
    """Get the channel group name for a trip."""
    return f"trip_{trip_id}"


async def broadcast_change(trip_id: str, record: Optional[dict]):
    """Send a change event to every channel subscribed to the trip."""
    channel_layer = get_channel_layer()
    await channel_layer.group_send(
        trip_group_name(trip_id),
        {
            'type': TRIP_CHANGED_EVENT,
            'trip_id': trip_id,
            'record': record,
        }
    )


class KafkaProducerClient:
    """
    Async Kafka producer for publishing trip change events.

    Uses aiokafka for asynchronous message production.
    """

    def __init__(self, enabled: Optional[bool] = None):
        self.producer = None
        self.enabled = enabled if enabled is not None else settings.KAFKA_ENABLED
        self.topic = settings.KAFKA_TRIP_TOPIC
        self.bootstrap_servers = settings.KAFKA_BOOTSTRAP_SERVERS
        self._started = False

    async def start(self):
        """Start the Kafka producer."""
        self._started = True
        if not self.enabled:
            logger.debug("Kafka disabled, change events are broadcast directly")
            return

        producer = AIOKafkaProducer(
            bootstrap_servers=self.bootstrap_servers,
            value_serializer=lambda v: json.dumps(v).encode('utf-8'),
            key_serializer=lambda k: k.encode('utf-8'),
        )
        try:
            await producer.start()
        except (KafkaError, OSError) as e:
            logger.warning(f"Failed to start Kafka producer: {e}. Running without Kafka.")
            return

        self.producer = producer
        logger.info("Kafka producer started")

    async def stop(self):
        """Stop the Kafka producer."""
        if self.producer:
            await self.producer.stop()
            self.producer = None
            logger.info("Kafka producer stopped")
        self._started = False

    async def publish_change(self, trip_id: str, record: Optional[dict]):
        """
        Publish a trip change event.

        Args:
            trip_id: Trip the change belongs to
            record: Full record after the change, or None if it was deleted
        """
        if not self._started:
            await self.start()

        if not self.producer:
            await broadcast_change(trip_id, record)
            return

        event = {'trip_id': trip_id, 'record': record}
        try:
            await self.producer.send_and_wait(self.topic, event, key=trip_id)
            logger.debug(f"Published change for trip {trip_id}")
        except KafkaError as e:
            logger.error(f"Failed to publish to Kafka: {e}")
            # Fallback to direct broadcast
            await broadcast_change(trip_id, record)


class KafkaConsumerClient:
    """
    Async Kafka consumer for fanning out trip change events.

    Consumes events from the trip topic and broadcasts them to the trip's
    channel group, where viewers and store subscribers listen.
    """

    def __init__(self, topic: Optional[str] = None, bootstrap_servers: Optional[str] = None):
        self.consumer = None
        self.topic = topic or settings.KAFKA_TRIP_TOPIC
        self.bootstrap_servers = bootstrap_servers or settings.KAFKA_BOOTSTRAP_SERVERS
        self.running = False

    async def start(self):
        """Start the Kafka consumer."""
        consumer = AIOKafkaConsumer(
            self.topic,
            bootstrap_servers=self.bootstrap_servers,
            value_deserializer=lambda m: json.loads(m.decode('utf-8')),
            group_id='trip-change-consumers',
            auto_offset_reset='latest',
        )
        try:
            await consumer.start()
        except (KafkaError, OSError) as e:
            logger.warning(f"Failed to start Kafka consumer: {e}")
            self.running = False
            return

        self.consumer = consumer
        self.running = True
        logger.info("Kafka consumer started")

    async def stop(self):
        """Stop the Kafka consumer."""
        self.running = False
        if self.consumer:
            await self.consumer.stop()
            self.consumer = None
            logger.info("Kafka consumer stopped")

    async def consume(self):
        """
        Consume change events and broadcast them to channel groups.

        This method runs indefinitely and should be started as a background task.
        """
        if not self.consumer:
            logger.warning("Consumer not initialized, cannot consume messages")
            return

        try:
            async for message in self.consumer:
                if not self.running:
                    break

                event = message.value
                trip_id = event.get('trip_id')

                if trip_id:
                    await broadcast_change(trip_id, event.get('record'))
                    logger.debug(f"Broadcast change for trip {trip_id}")
        except KafkaError as e:
            logger.error(f"Error consuming messages: {e}")


# Global consumer instance for management commands
_consumer_instance: Optional[KafkaConsumerClient] = None


async def start_kafka_consumer(topic: Optional[str] = None, bootstrap_servers: Optional[str] = None):
    """Start the global Kafka consumer and consume until it is stopped."""
    global _consumer_instance
    _consumer_instance = KafkaConsumerClient(topic, bootstrap_servers)
    await _consumer_instance.start()
    await _consumer_instance.consume()


async def stop_kafka_consumer():
    """Stop the global Kafka consumer."""
    global _consumer_instance
    if _consumer_instance:
        await _consumer_instance.stop()
        _consumer_instance = None
