from queue import Queue
from threading import Thread
from time import monotonic
from time import sleep

import pytest

from queuelink.connection import Connection
from queuelink.consumer import AcknowledgingConsumer
from queuelink.consumer import Acknowledger
from queuelink.consumer import Consumer
from queuelink.errors import AcknowledgeError
from queuelink.errors import ConfigError
from queuelink.errors import ConnectError
from queuelink.errors import PublishError
from queuelink.retry import RetryPolicy

from .backend import StubBackend
from .backend import StubConfig
from .broker import StubBroker


class QueueConsumer(Consumer):
    def __init__(self):
        self.received = Queue[tuple[str, str]]()

    def consume(self, message_id: str, payload: str, /):
        self.received.put((message_id, payload))


class HoldingConsumer(AcknowledgingConsumer):
    """Keep every message unacknowledged until told otherwise."""

    def __init__(self):
        self.acknowledger: Acknowledger | None = None
        self.received = Queue[tuple[str, str]]()

    def accept_acknowledger(self, acknowledger: Acknowledger, /):
        self.acknowledger = acknowledger

    def consume(self, message_id: str, payload: str, /):
        self.received.put((message_id, payload))


def wait_until(predicate, timeout: float = 2.0):
    deadline = monotonic() + timeout
    while not predicate():
        assert monotonic() < deadline, "Timed out"
        sleep(0.01)


@pytest.fixture
def broker() -> StubBroker:
    return StubBroker()


def stub_connection(
    broker: StubBroker, *, attempts: int = 1
) -> tuple[Connection, StubBackend]:
    connection = Connection(
        StubConfig(queue="orders", broker=broker, poll=0.01),
        retry=RetryPolicy(attempts=attempts, wait=0),
    )
    backend = connection.backend
    assert isinstance(backend, StubBackend)
    return connection, backend


def test_config_requires_a_queue():
    with pytest.raises(ConfigError):
        StubConfig(queue="")
    with pytest.raises(ConfigError):
        StubConfig.from_mapping({"uri": "stub:"})
    assert StubConfig.from_mapping({"uri": "stub://orders"}).queue == "orders"


def test_publish_opens_and_closes(broker):
    connection, _ = stub_connection(broker)

    connection.publish("hello")

    assert broker.messages("orders") == ["hello"]
    assert not connection.is_open


def test_unavailable_broker(broker):
    broker.available = False
    connection, _ = stub_connection(broker, attempts=3)

    with pytest.raises(ConnectError, match="unavailable"):
        connection.open()
    with pytest.raises(PublishError):
        connection.publish("hello")


@pytest.mark.timeout(5)
def test_consumer_receives_and_acknowledges(broker):
    connection, _ = stub_connection(broker)
    consumer = QueueConsumer()

    with connection:
        connection.consume(consumer)
        connection.publish("a")
        connection.publish("b")

        assert consumer.received.get()[1] == "a"
        assert consumer.received.get()[1] == "b"
        wait_until(lambda: not broker.pending())

    assert broker.messages("orders") == []


@pytest.mark.timeout(5)
def test_unacknowledged_messages_return_on_close(broker):
    connection, _ = stub_connection(broker)
    consumer = HoldingConsumer()
    connection.consume(consumer)
    connection.publish("a")
    connection.publish("b")
    first, _ = consumer.received.get()
    consumer.received.get()

    assert consumer.acknowledger is not None
    consumer.acknowledger.acknowledge(first)
    connection.close()

    assert broker.messages("orders") == ["b"]
    assert broker.pending() == set()


@pytest.mark.timeout(5)
def test_reopening_returns_unacknowledged_messages(broker):
    connection, backend = stub_connection(broker)
    consumer = HoldingConsumer()
    connection.consume(consumer)
    connection.publish("a")
    consumer.received.get()

    backend.open_connection()

    assert backend.is_open()
    wait_until(lambda: broker.messages("orders") == ["a"])
    assert broker.pending() == set()
    connection.close()


@pytest.mark.timeout(5)
def test_lost_connection_recovers_its_consumer(broker):
    connection, backend = stub_connection(broker)
    consumer = HoldingConsumer()
    connection.consume(consumer)
    connection.publish("before")
    message_id, payload = consumer.received.get()
    assert payload == "before"

    backend.fail().join()

    assert connection.is_open
    assert connection.consumer is consumer
    # The message was never acknowledged, so it is delivered again
    assert consumer.received.get() == (message_id, "before")
    connection.publish("after")
    assert consumer.received.get()[1] == "after"
    connection.close()


@pytest.mark.timeout(5)
def test_publish_before_recovery_keeps_the_consumer(broker):
    connection, backend = stub_connection(broker)
    consumer = QueueConsumer()
    connection.consume(consumer)

    with connection.mutex:
        recovery = backend.fail()
        connection.publish("during")
    recovery.join()

    assert connection.is_open
    assert connection.consumer is consumer
    assert consumer.received.get()[1] == "during"
    connection.close()


@pytest.mark.timeout(5)
def test_recovery_waits_for_the_broker(broker):
    connection, backend = stub_connection(broker, attempts=RetryPolicy.FOREVER)
    consumer = QueueConsumer()
    connection.consume(consumer)

    broker.available = False
    recovery = backend.fail()
    Thread(target=lambda: setattr(broker, "available", True)).start()
    recovery.join()

    assert connection.is_open
    connection.publish("back")
    assert consumer.received.get()[1] == "back"
    connection.close()


@pytest.mark.timeout(5)
def test_lost_consumer_is_registered_again(broker):
    connection, backend = stub_connection(broker)
    consumer = QueueConsumer()
    connection.consume(consumer)

    backend.lose_consumer().join()

    assert connection.is_open
    connection.publish("again")
    assert consumer.received.get()[1] == "again"
    connection.close()


def test_acknowledging_after_close_fails(broker):
    connection, _ = stub_connection(broker)
    consumer = HoldingConsumer()
    connection.consume(consumer)
    connection.publish("a")
    message_id, _ = consumer.received.get(timeout=5)
    connection.close()

    assert consumer.acknowledger is not None
    with pytest.raises(AcknowledgeError):
        consumer.acknowledger.acknowledge(message_id)
