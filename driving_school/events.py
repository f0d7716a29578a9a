import json
import logging

import pika
from fastapi import Depends

from driving_school.config import Settings, get_settings

EXCHANGE = "driving_school_events"

logger = logging.getLogger(__name__)


class EventPublisher:
    """Best-effort publisher of payment domain events to RabbitMQ.

    A failure to publish is logged and never undoes the database change that
    produced the event. An empty URL disables publishing entirely.
    """

    def __init__(self, rabbitmq_url: str):
        self.rabbitmq_url = rabbitmq_url

    @property
    def enabled(self) -> bool:
        return bool(self.rabbitmq_url)

    def publish(self, routing_key: str, event: dict) -> bool:
        if not self.enabled:
            logger.debug("Event publishing disabled, dropping %s", event.get("type"))
            return False
        connection = None
        try:
            params = pika.URLParameters(self.rabbitmq_url)
            connection = pika.BlockingConnection(params)
            channel = connection.channel()
            channel.exchange_declare(exchange=EXCHANGE, exchange_type="topic", durable=True)
            channel.basic_publish(exchange=EXCHANGE, routing_key=routing_key, body=json.dumps(event, default=str))
            logger.info("Published %s on %s", event.get("type"), routing_key)
            return True
        except (pika.exceptions.AMQPError, OSError):
            logger.exception("Error publishing event %s", event.get("type"))
            return False
        finally:
            if connection is not None and connection.is_open:
                connection.close()


def get_event_publisher(settings: Settings = Depends(get_settings)) -> EventPublisher:
    return EventPublisher(settings.rabbitmq_url)
