import json
from uuid import uuid4
import aio_pika
from payment_service.logger import get_logger
from payment_service.models import utcnow

logger = get_logger("messaging")

PAYMENT_EXCHANGE = "payment_exchange"

connection = None
channel = None


async def setup_rabbitmq(rabbitmq_url: str):
    global connection, channel
    try:
        connection = await aio_pika.connect_robust(rabbitmq_url)
        channel = await connection.channel()
        await channel.declare_exchange(PAYMENT_EXCHANGE, aio_pika.ExchangeType.TOPIC, durable=True)
        logger.info("rabbitmq_ready", exchange=PAYMENT_EXCHANGE)
    except Exception as e:
        logger.error("rabbitmq_setup_failed", error=str(e))


async def close_rabbitmq():
    global connection, channel
    if connection is not None:
        await connection.close()
    connection = None
    channel = None


def build_event(event_type: str, **payload) -> dict:
    return {
        "event_id": str(uuid4()),
        "event_type": event_type,
        "timestamp": utcnow().isoformat(),
        **payload,
    }


async def publish_event(routing_key: str, message_data: dict):
    """Publish a domain event; delivery is best-effort and never raises."""
    if not channel:
        logger.debug("event_not_published", routing_key=routing_key, reason="no channel")
        return

    message = aio_pika.Message(
        json.dumps(message_data, default=str).encode("utf-8"),
        content_type="application/json",
        delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
    )
    try:
        exchange = await channel.get_exchange(PAYMENT_EXCHANGE)
        await exchange.publish(message, routing_key=routing_key)
        logger.info("event_published", routing_key=routing_key, event_type=message_data["event_type"])
    except Exception as e:
        logger.error("event_publish_failed", routing_key=routing_key, error=str(e))
