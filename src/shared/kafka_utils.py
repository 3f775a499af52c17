"""Kafka producer helpers."""

import json

import structlog
from aiokafka import AIOKafkaProducer

logger = structlog.get_logger()


async def create_producer(bootstrap_servers: str) -> AIOKafkaProducer:
    """Create and start a Kafka producer."""
    producer = AIOKafkaProducer(
        bootstrap_servers=bootstrap_servers,
        value_serializer=lambda v: json.dumps(v, default=str).encode("utf-8"),
    )
    await producer.start()
    logger.info("kafka_producer_started", bootstrap_servers=bootstrap_servers)
    return producer


async def send_json(
    producer: AIOKafkaProducer, topic: str, payload: dict, key: str | None = None
) -> None:
    """Send a JSON payload, keyed so one test's messages stay ordered."""
    await producer.send_and_wait(
        topic, payload, key=key.encode("utf-8") if key is not None else None
    )
    logger.debug("message_produced", topic=topic, key=key)
