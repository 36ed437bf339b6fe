"""
Unit tests for the RabbitMQ messaging publisher with pika mocked out
"""
import asyncio
import json
import threading
import time
from unittest.mock import MagicMock, patch

import pytest
from pika.exceptions import AMQPConnectionError

from workflow_engine.core.exceptions import TransientExecutorError
from workflow_engine.services.messaging_publisher import MessagingPublisher


class OverlapTrackingChannel:
    """Records how many publishes are in flight at once"""

    def __init__(self):
        self._guard = threading.Lock()
        self.active = 0
        self.max_active = 0
        self.bodies = []

    def exchange_declare(self, exchange, exchange_type, durable):
        pass

    def basic_publish(self, exchange, routing_key, body, properties):
        with self._guard:
            self.active += 1
            self.max_active = max(self.max_active, self.active)
        time.sleep(0.01)
        with self._guard:
            self.active -= 1
            self.bodies.append(json.loads(body))


@pytest.fixture
def channel():
    return OverlapTrackingChannel()


@pytest.fixture
def blocking_connection(channel):
    connection = MagicMock()
    connection.is_closed = False
    connection.channel.return_value = channel
    with patch("workflow_engine.services.messaging_publisher.pika.BlockingConnection",
               return_value=connection) as factory:
        yield factory


class TestMessagingPublisher:

    @pytest.mark.asyncio
    async def test_concurrent_sends_share_one_connection_serially(self, blocking_connection, channel):
        publisher = MessagingPublisher()
        try:
            message_ids = await asyncio.gather(*[
                publisher.send_sms("tenant-1", f"+1415555010{i}", "hello") for i in range(8)
            ])
        finally:
            publisher.close()

        assert blocking_connection.call_count == 1
        assert channel.max_active == 1
        assert len(set(message_ids)) == 8
        assert sorted(body["message_id"] for body in channel.bodies) == sorted(message_ids)

    @pytest.mark.asyncio
    async def test_broker_unavailable_is_transient(self):
        with patch("workflow_engine.services.messaging_publisher.pika.BlockingConnection",
                   side_effect=AMQPConnectionError("refused")):
            publisher = MessagingPublisher()
            try:
                with pytest.raises(TransientExecutorError) as excinfo:
                    await publisher.send_email("tenant-1", "a@example.com", "Hi", "<p>Hi</p>")
            finally:
                publisher.close()

        assert excinfo.value.action_type == "send_email"

    def test_close_while_idle_resets_connection(self, blocking_connection):
        publisher = MessagingPublisher()
        assert publisher._publish_message("sms.send", {"message_id": "m-1"})
        publisher.close()

        blocking_connection.return_value.close.assert_called_once()
        assert publisher.connection is None
        assert publisher.channel is None
