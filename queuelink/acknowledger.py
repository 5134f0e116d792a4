import logging
from collections.abc import Callable
from threading import Lock
from typing import Any

from .consumer import AcknowledgingConsumer
from .consumer import Acknowledger
from .consumer import Consumer
from .errors import AcknowledgeError
from .errors import ConsumeError

logger = logging.getLogger(__name__)


class AckBridge(Acknowledger):
    """Route deliveries to a consumer and acknowledgments back to the broker.

    Every backend hands its deliveries to ``deliver`` along with an opaque
    handle, which is passed back to ``ack`` once the message is acknowledged.
    Consumers that acknowledge themselves receive the bridge as their
    acknowledger; all others are acknowledged as soon as ``consume`` returns.

    Deliveries may arrive on several threads at once, so the in-flight map
    is guarded by a lock.
    """

    __missing = object()

    def __init__(self, name: str, consumer: Consumer, ack: Callable[[Any], None]):
        self.__name = name
        self.__consumer = consumer
        self.__ack = ack
        self.__lock = Lock()
        self.__in_flight = dict[str, Any]()
        self.__manual = isinstance(consumer, AcknowledgingConsumer)
        if isinstance(consumer, AcknowledgingConsumer):
            consumer.accept_acknowledger(self)

    def __repr__(self):
        return f"<{type(self).__name__} {self.__name!r} {self.__consumer!r}>"

    def __contains__(self, message_id: str) -> bool:
        with self.__lock:
            return message_id in self.__in_flight

    def __len__(self) -> int:
        with self.__lock:
            return len(self.__in_flight)

    @property
    def consumer(self) -> Consumer:
        return self.__consumer

    def deliver(self, message_id: str, handle: Any, payload: str):
        """Hand one delivered message to the consumer.

        Errors raised by the consumer are logged and never reach the
        transport, which would otherwise redeliver the message endlessly.
        """
        with self.__lock:
            self.__in_flight[message_id] = handle
        logger.debug(
            "Message '%s' received on queue '%s': %r", message_id, self.__name, payload
        )

        try:
            self.__consumer.consume(message_id, payload)
        except ConsumeError:
            logger.exception(
                "Consumer %r could not process message '%s'.",
                self.__consumer,
                message_id,
            )
        except Exception:
            logger.exception(
                "Unexpected error while consumer %r processed message '%s'.",
                self.__consumer,
                message_id,
            )

        if not self.__manual:
            try:
                self.acknowledge(message_id)
            except AcknowledgeError as e:
                logger.error("%s", e)

    def acknowledge(self, message_id: str, /):
        with self.__lock:
            handle = self.__in_flight.pop(message_id, self.__missing)
        if handle is self.__missing:
            raise AcknowledgeError(
                message_id, "It is unknown or has already been acknowledged."
            )

        try:
            self.__ack(handle)
        except Exception as e:
            raise AcknowledgeError(message_id, str(e)) from e
        logger.debug(
            "Acknowledged message '%s' on queue '%s'.", message_id, self.__name
        )

    def clear(self):
        """Forget every unacknowledged message."""
        with self.__lock:
            self.__in_flight.clear()
