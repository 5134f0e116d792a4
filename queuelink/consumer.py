import logging
from abc import ABC
from abc import abstractmethod
from threading import Lock
from threading import Thread
from threading import current_thread

from .errors import AcknowledgeError
from .errors import ConsumeError

logger = logging.getLogger(__name__)


class Acknowledger(ABC):
    """Handed to acknowledging consumers to confirm messages themselves."""

    @abstractmethod
    def acknowledge(self, message_id: str, /):
        """Acknowledge a delivered message.

        Raises ``AcknowledgeError`` if the message is unknown, was already
        acknowledged, or the broker refused the acknowledgment.
        """
        raise NotImplementedError("Subclasses must implement this method.")


class Consumer(ABC):
    """Receives the messages delivered on a connection.

    Messages are acknowledged automatically once ``consume`` returns,
    whether it succeeded or not.
    """

    @abstractmethod
    def consume(self, message_id: str, payload: str, /):
        """Process one message. Raise ``ConsumeError`` if processing failed."""
        raise NotImplementedError("Subclasses must implement this method.")


class AcknowledgingConsumer(Consumer):
    """A consumer that acknowledges messages itself.

    Messages delivered to an acknowledging consumer stay unacknowledged
    until it calls ``acknowledge`` on the acknowledger it was given.
    """

    @abstractmethod
    def accept_acknowledger(self, acknowledger: Acknowledger, /):
        """Receive the acknowledger for the messages that follow."""
        raise NotImplementedError("Subclasses must implement this method.")


class ParallelConsumer(AcknowledgingConsumer):
    """Consume every message on its own thread.

    ``consume`` returns immediately. Each message is acknowledged once its
    thread is done with it, or left to the wrapped consumer if that one
    acknowledges itself.
    """

    def __init__(self, consumer: Consumer):
        self.__consumer = consumer
        self.__acknowledger: Acknowledger | None = None
        self.__threads_lock = Lock()
        self.__threads = set[Thread]()

    def __repr__(self):
        return f"<{type(self).__name__} {self.__consumer!r}>"

    def accept_acknowledger(self, acknowledger: Acknowledger, /):
        self.__acknowledger = acknowledger
        if isinstance(self.__consumer, AcknowledgingConsumer):
            self.__consumer.accept_acknowledger(acknowledger)

    def consume(self, message_id: str, payload: str, /):
        thread = Thread(
            target=self.__run,
            args=(message_id, payload),
            name=f"queuelink-consume-{message_id}",
        )
        with self.__threads_lock:
            self.__threads.add(thread)
        thread.start()

    def __run(self, message_id: str, payload: str):
        try:
            self.__consumer.consume(message_id, payload)
        except ConsumeError as e:
            logger.warning("Consumer %r failed: %s", self.__consumer, e)
        except Exception:
            logger.exception(
                "Unexpected error while consumer %r processed message '%s'.",
                self.__consumer,
                message_id,
            )
        finally:
            if (
                self.__acknowledger is not None
                and not isinstance(self.__consumer, AcknowledgingConsumer)
            ):
                try:
                    self.__acknowledger.acknowledge(message_id)
                except AcknowledgeError as e:
                    logger.error("%s", e)
            with self.__threads_lock:
                self.__threads.discard(current_thread())

    def join(self, timeout: float | None = None):
        """Wait for the messages in progress to finish."""
        with self.__threads_lock:
            threads = list(self.__threads)
        for thread in threads:
            thread.join(timeout)
