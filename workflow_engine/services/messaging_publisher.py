"""
RabbitMQ publisher for outbound communications.
Publishes SMS, email, Slack and voice-call commands to the communications
service queues. Each call returns the message id of the queued command.
"""
import json
import uuid
import asyncio
import threading
from typing import Dict, Any, List, Optional
from datetime import datetime, timezone
from concurrent.futures import ThreadPoolExecutor

import pika
from pika.exceptions import AMQPConnectionError

from ..core.config import settings
from ..core.exceptions import TransientExecutorError
from ..core.logging_config import get_logger

logger = get_logger("messaging_publisher")


class MessagingPublisher:
    """
    RabbitMQ publisher used by the communication executors.
    Blocking pika calls run on a single worker thread so the event loop never
    blocks; pika connections must not be shared between threads.
    """

    def __init__(self):
        self.host = settings.RABBITMQ_HOST
        self.port = settings.RABBITMQ_PORT
        self.username = settings.RABBITMQ_USERNAME
        self.password = settings.RABBITMQ_PASSWORD
        self.exchange = settings.RABBITMQ_EXCHANGE

        self.connection = None
        self.channel = None

        self._executor = ThreadPoolExecutor(max_workers=1, thread_name_prefix="messaging-publisher")
        # Guards the connection and channel; close() runs outside the worker thread
        self._lock = threading.RLock()
        logger.info("Messaging publisher initialized")

    def _connect(self) -> bool:
        """Establish connection to RabbitMQ"""
        if self.connection and not self.connection.is_closed:
            return True

        # Drop stale connection objects before reconnecting
        self.connection = None
        self.channel = None

        try:
            credentials = pika.PlainCredentials(self.username, self.password)
            parameters = pika.ConnectionParameters(
                host=self.host,
                port=self.port,
                credentials=credentials,
                heartbeat=600,
                blocked_connection_timeout=300
            )

            self.connection = pika.BlockingConnection(parameters)
            self.channel = self.connection.channel()

            # Declare exchange (idempotent)
            self.channel.exchange_declare(
                exchange=self.exchange,
                exchange_type='topic',
                durable=True
            )

            logger.info(f"Connected to RabbitMQ at {self.host}:{self.port}")
            return True

        except AMQPConnectionError as e:
            logger.error(f"Failed to connect to RabbitMQ: {e}")
            self.connection = None
            self.channel = None
            return False

    def _publish_message(self, routing_key: str, message_data: Dict[str, Any]) -> bool:
        """
        Synchronous message publishing (runs in thread pool).

        Args:
            routing_key: RabbitMQ routing key
            message_data: Message payload

        Returns:
            bool: True if published successfully
        """
        with self._lock:
            return self._publish_locked(routing_key, message_data)

    def _publish_locked(self, routing_key: str, message_data: Dict[str, Any]) -> bool:
        try:
            if not self._connect():
                logger.error("Cannot publish: RabbitMQ connection failed")
                return False

            message_data["queued_at"] = datetime.now(timezone.utc).isoformat()

            self.channel.basic_publish(
                exchange=self.exchange,
                routing_key=routing_key,
                body=json.dumps(message_data, default=str),
                properties=pika.BasicProperties(
                    delivery_mode=2,  # Persistent message
                    content_type="application/json",
                    message_id=message_data["message_id"]
                )
            )

            logger.info(f"Message published to '{routing_key}': {message_data['message_id']}")
            return True

        except Exception as e:
            logger.error(f"Failed to publish message to '{routing_key}': {e}")
            # Reconnect on next attempt
            self._disconnect()
            return False

    def _disconnect(self):
        """Close RabbitMQ connection"""
        with self._lock:
            try:
                if self.connection and not self.connection.is_closed:
                    self.connection.close()
            except Exception as e:
                logger.warning(f"Error closing RabbitMQ connection: {e}")
            finally:
                self.connection = None
                self.channel = None

    async def _publish(self, action_type: str, routing_key: str, message_data: Dict[str, Any]) -> str:
        message_id = str(uuid.uuid4())
        message_data = {"message_id": message_id, **message_data}

        loop = asyncio.get_running_loop()
        published = await loop.run_in_executor(
            self._executor,
            self._publish_message,
            routing_key,
            message_data
        )
        if not published:
            raise TransientExecutorError(action_type, f"Failed to queue message on '{routing_key}'")
        return message_id

    async def send_sms(self, tenant_id: str, to: str, body: str) -> str:
        return await self._publish("send_sms", "sms.send", {
            "tenant_id": tenant_id,
            "to_phone": to,
            "message": body
        })

    async def send_email(
        self,
        tenant_id: str,
        to: str,
        subject: str,
        html: str,
        attachments: Optional[List[str]] = None
    ) -> str:
        return await self._publish("send_email", "email.send", {
            "tenant_id": tenant_id,
            "to_email": to,
            "subject": subject,
            "html_content": html,
            "attachments": attachments or []
        })

    async def post_slack_message(self, tenant_id: str, channel: str, text: str) -> str:
        return await self._publish("send_slack", "slack.send", {
            "tenant_id": tenant_id,
            "channel": channel,
            "text": text
        })

    async def place_call(self, tenant_id: str, agent_id: str, phone_number: str) -> str:
        return await self._publish("make_call", "call.place", {
            "tenant_id": tenant_id,
            "agent_id": agent_id,
            "phone_number": phone_number
        })

    def close(self):
        """Close publisher and cleanup resources"""
        self._disconnect()
        self._executor.shutdown(wait=True)
        logger.info("Messaging publisher closed")


_publisher: Optional[MessagingPublisher] = None


def get_messaging_publisher() -> MessagingPublisher:
    """Get the process-wide messaging publisher"""
    global _publisher
    if _publisher is None:
        _publisher = MessagingPublisher()
    return _publisher
