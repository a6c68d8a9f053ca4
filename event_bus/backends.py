"""
Delivery backends for notification events.

The backend is chosen with the ``NOTIFICATIONS_BACKEND`` setting, the same
way Django selects e-mail backends.
"""

import logging
import threading

import pika
from django.conf import settings

logger = logging.getLogger(__name__)


class BaseBackend:
    def send(self, payload):
        """Override this in subclasses."""
        raise NotImplementedError


class RabbitMQBackend(BaseBackend):
    exchange_type = "topic"

    def __init__(self):
        self.exchange_name = getattr(settings, "NOTIFICATIONS_EXCHANGE", "marketplace.notifications")

    def _connection_parameters(self):
        creds = pika.PlainCredentials(
            settings.RABBITMQ_USER, settings.RABBITMQ_PASSWORD
        )
        return pika.ConnectionParameters(
            host=settings.RABBITMQ_HOST,
            port=settings.RABBITMQ_PORT,
            virtual_host=settings.RABBITMQ_VHOST,
            credentials=creds,
        )

    def send(self, payload):
        conn = pika.BlockingConnection(self._connection_parameters())
        try:
            ch = conn.channel()
            ch.exchange_declare(
                exchange=self.exchange_name,
                exchange_type=self.exchange_type,
                durable=True,
            )
            ch.basic_publish(
                exchange=self.exchange_name,
                routing_key=payload.routing_key,
                body=payload.to_json(),
                properties=pika.BasicProperties(
                    content_type="application/json",
                    delivery_mode=2,
                ),
            )
            logger.debug(f"Published {payload.event_type} for {payload.conversation_id}")
        finally:
            conn.close()


# Events delivered through LocmemBackend; tests inspect and clear this list
outbox = []
_outbox_lock = threading.Lock()


class LocmemBackend(BaseBackend):
    def send(self, payload):
        with _outbox_lock:
            outbox.append(payload)


class DummyBackend(BaseBackend):
    def send(self, payload):
        pass
