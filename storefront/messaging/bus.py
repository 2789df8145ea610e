import json
import logging
import threading
import time

import pika

from ..consumers import NotificationWorker
from ..schemas import NotificationEvent

logger = logging.getLogger(__name__)


def connection_parameters(host, user="guest", password="guest"):
    credentials = pika.PlainCredentials(user, password)
    return pika.ConnectionParameters(
        host=host,
        credentials=credentials,
        heartbeat=600,
        blocked_connection_timeout=300,
    )


class RabbitMQProducer:
    """
    Publishes events to a topic exchange.
    Connects lazily on first publish and reconnects after a dropped connection.
    """

    def __init__(self, parameters, exchange_name="events", exchange_type="topic",
                 connect_attempts=3, retry_delay=1.0, sleep=time.sleep):
        self.parameters = parameters
        self.exchange_name = exchange_name
        self.exchange_type = exchange_type
        self.connect_attempts = connect_attempts
        self.retry_delay = retry_delay
        self.sleep = sleep
        self.connection = None
        self.channel = None
        # BlockingConnection is not thread-safe; requests publish from a threadpool.
        self._lock = threading.Lock()

    def connect(self):
        """Opens the channel and declares the exchange, giving up after ``connect_attempts``."""
        attempt = 0
        while True:
            try:
                self.connection = pika.BlockingConnection(self.parameters)
                self.channel = self.connection.channel()
                # Durable exchange, shared with the consumer side.
                self.channel.exchange_declare(
                    exchange=self.exchange_name,
                    exchange_type=self.exchange_type,
                    durable=True
                )
                logger.info("Connected to RabbitMQ exchange %s", self.exchange_name)
                return
            except pika.exceptions.AMQPConnectionError:
                attempt += 1
                if attempt >= self.connect_attempts:
                    raise
                logger.warning("RabbitMQ not ready yet, retrying in %ss...", self.retry_delay)
                self.sleep(self.retry_delay)

    def publish(self, routing_key, message):
        """
        Publishes a message to the exchange with a specific routing key.

        Args:
            routing_key (str): The topic key (e.g., 'order.created').
            message (dict): The JSON-serializable payload.
        """
        with self._lock:
            # Reconnect if the connection was lost
            if not self.connection or self.connection.is_closed:
                self.connect()
            self.channel.basic_publish(
                exchange=self.exchange_name,
                routing_key=routing_key,
                body=json.dumps(message),
                properties=pika.BasicProperties(
                    delivery_mode=2,  # Make message persistent
                    content_type='application/json'
                )
            )
        logger.info("Sent event '%s'", routing_key)

    def close(self):
        """Closes the broker connection if it is still open."""
        with self._lock:
            if self.connection and not self.connection.is_closed:
                self.connection.close()


class RabbitMQTransport:
    """Publishes notification events; a NotificationConsumer delivers them.

    ``submit`` only enqueues. Publishing, including the producer's connect
    retries, happens on a background worker thread.
    """

    def __init__(self, producer: RabbitMQProducer):
        self.producer = producer
        self.worker = NotificationWorker(self._publish)

    def submit(self, event: NotificationEvent) -> None:
        self.worker.submit(event)

    def join(self) -> None:
        """Block until every submitted event has been published or dropped."""
        self.worker.join()

    def close(self) -> None:
        self.worker.stop()
        self.producer.close()

    def _publish(self, event: NotificationEvent) -> None:
        try:
            self.producer.publish(event.routing_key, event.model_dump(mode="json"))
        except pika.exceptions.AMQPError:
            logger.exception("[order=%s] could not publish %s event", event.order.id, event.kind)
