import logging
from collections.abc import Mapping
from dataclasses import dataclass
from dataclasses import field
from threading import Event
from threading import Lock
from threading import Thread
from typing import Any
from typing import Self
from urllib.parse import urlsplit

from queuelink.acknowledger import AckBridge
from queuelink.backend import Backend
from queuelink.backend import Listener
from queuelink.consumer import Consumer
from queuelink.errors import ConfigError
from queuelink.errors import ConnectError
from queuelink.errors import PublishError
from queuelink.errors import RegisterError

from .broker import StubBroker
from .broker import StubUnavailable

logger = logging.getLogger(__name__)


@dataclass(frozen=True, kw_only=True)
class StubConfig:
    queue: str
    broker: StubBroker = field(default_factory=StubBroker.default, compare=False)
    poll: float = 0.05

    def __post_init__(self):
        if not self.queue:
            raise ConfigError("A queue name is required")

    @property
    def name(self) -> str:
        return self.queue

    def backend(self, listener: Listener, /) -> "StubBackend":
        return StubBackend(self, listener)

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any], /) -> Self:
        queue = config.get("queue") or urlsplit(config.get("uri", "")).netloc
        if not queue:
            raise ConfigError("A queue name is required, e.g. 'stub://orders'")
        return cls(queue=queue)


class StubBackend(Backend):
    """A queue of an in-memory ``StubBroker``.

    Besides serving tests and local runs, it can simulate the failures a
    real transport reports on its own with ``fail`` and ``lose_consumer``.
    """

    def __init__(self, config: StubConfig, listener: Listener):
        self.__config = config
        self.__broker = config.broker
        self.__listener = listener
        self.__open = False
        self.__stop: Event | None = None
        self.__bridge: AckBridge | None = None
        self.__delivered_lock = Lock()
        self.__delivered = set[str]()

    @property
    def name(self) -> str:
        return self.__config.name

    def is_open(self) -> bool:
        return self.__open

    def open_connection(self):
        if self.__open:
            self.close_connection()
        try:
            self.__broker.connect()
        except StubUnavailable as e:
            raise ConnectError(self.name, str(e)) from e
        self.__broker.declare(self.__config.queue)
        self.__open = True

    def register_consumer(self, consumer: Consumer, /):
        if not self.__open:
            raise RegisterError(consumer, "The connection is not open.")
        self.__stop_delivery()

        bridge = AckBridge(self.name, consumer, self.__ack)
        stop = Event()
        self.__bridge = bridge
        self.__stop = stop
        Thread(
            target=self.__deliver,
            args=(bridge, stop),
            name="queuelink-stub-delivery",
            daemon=True,
        ).start()

    def __deliver(self, bridge: AckBridge, stop: Event):
        while not stop.is_set():
            message = self.__broker.take(self.__config.queue, self.__config.poll)
            if message is None:
                continue
            message_id, payload = message
            if stop.is_set():
                self.__broker.requeue({message_id})
                break
            with self.__delivered_lock:
                self.__delivered.add(message_id)
            bridge.deliver(message_id, message_id, payload)

    def __ack(self, message_id: str):
        with self.__delivered_lock:
            self.__delivered.discard(message_id)
        self.__broker.ack(message_id)

    def __stop_delivery(self):
        if self.__stop is not None:
            self.__stop.set()
            self.__stop = None
        if self.__bridge is not None:
            self.__bridge.clear()
            self.__bridge = None
        with self.__delivered_lock:
            delivered, self.__delivered = self.__delivered, set[str]()
        self.__broker.requeue(delivered)

    def publish_message(self, payload: str, /):
        if not self.__open:
            raise PublishError(payload, "The connection is not open.")
        try:
            self.__broker.enqueue(self.__config.queue, payload)
        except StubUnavailable as e:
            raise PublishError(payload, str(e)) from e

    def close_connection(self):
        self.__open = False
        self.__stop_delivery()

    def fail(self, message: str = "Connection reset") -> Thread:
        """Drop the connection as if the transport failed."""
        self.__open = False
        self.__stop_delivery()
        return self.__notify(self.__listener.connection_lost, message)

    def lose_consumer(self, message: str = "Consumer cancelled") -> Thread:
        """Drop the consumer while the connection stays up."""
        self.__stop_delivery()
        return self.__notify(self.__listener.consumer_lost, message)

    def __notify(self, notify, message: str) -> Thread:
        logger.debug("Simulating a failure on queue '%s': %s", self.name, message)
        thread = Thread(
            target=notify, args=("stub", message), name="queuelink-recovery"
        )
        thread.start()
        return thread
