import logging
import queue
import threading
import time

import pika
from pydantic import ValidationError as EventValidationError

from .messaging.dispatcher import NotificationDispatcher
from .schemas import NotificationEvent

logger = logging.getLogger(__name__)

NOTIFICATION_QUEUE = "notifications.order"
ROUTING_KEYS = ("order.created", "order.status_changed")

_STOP = object()


class NotificationWorker:
    """In-process transport: a daemon thread draining a queue of events."""

    def __init__(self, handler):
        self.handler = handler
        self._queue = queue.Queue()
        self._thread = None

    def start(self):
        if self._thread is not None and self._thread.is_alive():
            return
        self._thread = threading.Thread(target=self._run, name="notification-worker", daemon=True)
        self._thread.start()

    def submit(self, event: NotificationEvent) -> None:
        self.start()
        self._queue.put(event)

    def join(self):
        """Block until every submitted event has been handled."""
        self._queue.join()

    def stop(self, timeout=10):
        if self._thread is None:
            return
        self._queue.put(_STOP)
        self._thread.join(timeout)
        self._thread = None

    def _run(self):
        while True:
            event = self._queue.get()
            try:
                if event is _STOP:
                    return
                self.handler(event)
            except Exception:
                logger.exception("Notification worker failed on event")
            finally:
                self._queue.task_done()


class NotificationConsumer:
    """Delivers notification events published to RabbitMQ."""

    def __init__(self, dispatcher: NotificationDispatcher, parameters, exchange_name="events",
                 retry_delay=5, sleep=time.sleep):
        self.dispatcher = dispatcher
        self.parameters = parameters
        self.exchange_name = exchange_name
        self.retry_delay = retry_delay
        self.sleep = sleep
        self.connection = None
        self.channel = None

    def connect(self):
        """Connects to RabbitMQ and sets up the queue bindings."""
        while True:
            try:
                self.connection = pika.BlockingConnection(self.parameters)
                self.channel = self.connection.channel()
                self.channel.exchange_declare(exchange=self.exchange_name, exchange_type='topic', durable=True)
                self.channel.queue_declare(queue=NOTIFICATION_QUEUE, durable=True)
                for routing_key in ROUTING_KEYS:
                    self.channel.queue_bind(
                        exchange=self.exchange_name, queue=NOTIFICATION_QUEUE, routing_key=routing_key
                    )
                logger.info("Notification consumer connected to RabbitMQ")
                break
            except pika.exceptions.AMQPConnectionError:
                logger.warning("RabbitMQ not ready, retrying in %s seconds...", self.retry_delay)
                self.sleep(self.retry_delay)

    def process_event(self, ch, method, properties, body):
        try:
            event = NotificationEvent.model_validate_json(body)
        except EventValidationError:
            logger.exception("Dropping malformed event on %s", method.routing_key)
        else:
            self.dispatcher.handle(event)
        finally:
            # Acknowledge the message so RabbitMQ removes it from queue
            ch.basic_ack(delivery_tag=method.delivery_tag)

    def start_listening(self):
        """Starts the consuming loop, reconnecting whenever the broker drops it."""
        while True:
            if not self.connection or self.connection.is_closed:
                self.connect()
            self.channel.basic_consume(queue=NOTIFICATION_QUEUE, on_message_callback=self.process_event)
            logger.info("Notification consumer waiting for events...")
            try:
                self.channel.start_consuming()
                return
            except (pika.exceptions.AMQPConnectionError, pika.exceptions.AMQPChannelError):
                logger.warning("Lost RabbitMQ connection, reconnecting in %s seconds...", self.retry_delay)
                self.connection = None
                self.sleep(self.retry_delay)


def start_consumer_thread(dispatcher, parameters):
    """Helper to run the consumer in a background thread."""
    consumer = NotificationConsumer(dispatcher, parameters)
    thread = threading.Thread(target=consumer.start_listening, name="notification-consumer", daemon=True)
    thread.start()
    return consumer
