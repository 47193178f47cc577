import asyncio
import json
import aio_pika
import structlog

from .settings import settings

logger = structlog.get_logger(__name__)

RABBITMQ_URL = settings.rabbitmq_url
QUEUE_NAME = settings.notifications_queue


async def publish_notification(message: dict) -> None:
    connection = await aio_pika.connect_robust(RABBITMQ_URL)
    async with connection:
        channel = await connection.channel()
        queue = await channel.declare_queue(QUEUE_NAME, durable=True)
        await channel.default_exchange.publish(
            aio_pika.Message(
                body=json.dumps(message, ensure_ascii=False).encode("utf-8"),
                content_type="application/json",
                delivery_mode=aio_pika.DeliveryMode.PERSISTENT,
            ),
            routing_key=queue.name,
        )


class QueueNotifier:
    """
    Передаёт уведомление в очередь RabbitMQ; доставкой (WhatsApp)
    занимается внешний потребитель очереди.
    """

    async def send(self, address: str, message: str) -> bool:
        try:
            await publish_notification({"address": address, "message": message})
        except (aio_pika.exceptions.AMQPException, OSError, asyncio.TimeoutError):
            logger.exception("messaging.publish_failed", queue=QUEUE_NAME)
            return False
        return True
