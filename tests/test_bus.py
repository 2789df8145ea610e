"""Tests for the RabbitMQ transport and consumer with a fake pika connection."""
import json
import threading
import time
from types import SimpleNamespace

import pika
import pytest

from storefront.consumers import NOTIFICATION_QUEUE, NotificationConsumer
from storefront.messaging import bus
from storefront.messaging.bus import RabbitMQProducer, RabbitMQTransport, connection_parameters
from storefront.messaging.dispatcher import NotificationDispatcher
from storefront.models import OrderStatus
from storefront.orders import OrderService
from storefront.schemas import NotificationEvent

from .conftest import ALICE, cart


class FakeChannel:
    def __init__(self):
        self.published = []
        self.declared = []
        self.bindings = []
        self.acks = []

    def exchange_declare(self, exchange, exchange_type, durable):
        self.declared.append(("exchange", exchange, exchange_type, durable))

    def queue_declare(self, queue, durable):
        self.declared.append(("queue", queue, durable))

    def queue_bind(self, exchange, queue, routing_key):
        self.bindings.append(routing_key)

    def basic_publish(self, exchange, routing_key, body, properties):
        self.published.append((exchange, routing_key, body, properties))

    def basic_ack(self, delivery_tag):
        self.acks.append(delivery_tag)

    def basic_consume(self, queue, on_message_callback):
        self.consuming = queue

    def start_consuming(self):
        if FakeConnection.drops:
            FakeConnection.drops -= 1
            raise pika.exceptions.StreamLostError("Stream connection lost")


class FakeConnection:
    opened = 0
    drops = 0

    def __init__(self, parameters):
        self.parameters = parameters
        self.is_closed = False
        self._channel = FakeChannel()
        FakeConnection.opened += 1

    def channel(self):
        return self._channel

    def close(self):
        self.is_closed = True


@pytest.fixture
def parameters():
    return connection_parameters("rabbitmq", "guest", "guest")


def test_transport_publishes_persistent_json(monkeypatch, parameters, order_detail):
    monkeypatch.setattr(bus.pika, "BlockingConnection", FakeConnection)
    transport = RabbitMQTransport(RabbitMQProducer(parameters))
    event = NotificationEvent(
        kind="status_changed", order=order_detail,
        old_status=OrderStatus.PENDING, new_status=OrderStatus.CONFIRMED, milestone=True,
    )

    transport.submit(event)
    transport.join()

    channel = transport.producer.channel
    assert ("exchange", "events", "topic", True) in channel.declared
    ((exchange, routing_key, body, properties),) = channel.published
    assert (exchange, routing_key) == ("events", "order.status_changed")
    assert properties.delivery_mode == 2
    assert properties.content_type == "application/json"
    assert NotificationEvent.model_validate(json.loads(body)) == event

    transport.close()
    assert transport.producer.connection.is_closed


def test_producer_gives_up_after_bounded_attempts(monkeypatch, parameters):
    def refuse(params):
        raise pika.exceptions.AMQPConnectionError("refused")

    monkeypatch.setattr(bus.pika, "BlockingConnection", refuse)
    sleeps = []
    producer = RabbitMQProducer(parameters, connect_attempts=3, retry_delay=0.5, sleep=sleeps.append)

    with pytest.raises(pika.exceptions.AMQPConnectionError):
        producer.publish("order.created", {})
    assert sleeps == [0.5, 0.5]


def test_consumer_binds_both_routing_keys(monkeypatch, parameters):
    monkeypatch.setattr(pika, "BlockingConnection", FakeConnection)
    consumer = NotificationConsumer(dispatcher=None, parameters=parameters)

    consumer.connect()

    assert ("queue", NOTIFICATION_QUEUE, True) in consumer.channel.declared
    assert consumer.channel.bindings == ["order.created", "order.status_changed"]


class RecordingDispatcher:
    def __init__(self):
        self.events = []

    def handle(self, event):
        self.events.append(event)
        return {}


def test_consumer_handles_and_acks(parameters, order_detail):
    dispatcher = RecordingDispatcher()
    consumer = NotificationConsumer(dispatcher, parameters)
    channel = FakeChannel()
    event = NotificationEvent(kind="created", order=order_detail)
    method = SimpleNamespace(delivery_tag=7, routing_key="order.created")

    consumer.process_event(channel, method, None, event.model_dump_json().encode())

    assert dispatcher.events == [event]
    assert channel.acks == [7]


def test_consumer_acks_and_drops_malformed_events(parameters):
    dispatcher = RecordingDispatcher()
    consumer = NotificationConsumer(dispatcher, parameters)
    channel = FakeChannel()
    method = SimpleNamespace(delivery_tag=8, routing_key="order.created")

    consumer.process_event(channel, method, None, b'{"kind": "created"}')

    assert dispatcher.events == []
    assert channel.acks == [8]


def test_order_placement_does_not_wait_for_an_unreachable_broker(monkeypatch, parameters, db, caplog):
    gate = threading.Event()

    def unreachable(params):
        # Held until the order is placed, then refused.
        gate.wait(5)
        raise pika.exceptions.AMQPConnectionError("refused")

    monkeypatch.setattr(bus.pika, "BlockingConnection", unreachable)
    transport = RabbitMQTransport(RabbitMQProducer(parameters, connect_attempts=2, retry_delay=1.0))
    service = OrderService(db, NotificationDispatcher([], transport=transport))

    started = time.monotonic()
    order = service.place_order(ALICE, cart((1, 1)))
    elapsed = time.monotonic() - started

    assert elapsed < 0.5
    assert order.status is OrderStatus.PENDING

    gate.set()
    transport.join()
    transport.close()
    assert any(f"[order={order.id}] could not publish created event" in r.getMessage() for r in caplog.records)


def test_consumer_reconnects_after_losing_the_broker(monkeypatch, parameters):
    monkeypatch.setattr(pika, "BlockingConnection", FakeConnection)
    monkeypatch.setattr(FakeConnection, "opened", 0)
    monkeypatch.setattr(FakeConnection, "drops", 2)
    sleeps = []
    consumer = NotificationConsumer(RecordingDispatcher(), parameters, retry_delay=5, sleep=sleeps.append)

    consumer.start_listening()

    assert FakeConnection.opened == 3
    assert sleeps == [5, 5]
    assert consumer.channel.consuming == NOTIFICATION_QUEUE
