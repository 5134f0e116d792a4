from abc import ABC
from abc import abstractmethod

from .consumer import Consumer


class Listener(ABC):
    """Notified by a backend when its transport fails on its own.

    Backends must not call a listener from their transport's I/O thread,
    since recovering closes and reopens that very transport.
    """

    @abstractmethod
    def connection_lost(self, code: int | str | None, message: str, /):
        """The whole connection to the broker is gone."""
        raise NotImplementedError("Subclasses must implement this method.")

    @abstractmethod
    def consumer_lost(self, code: int | str | None, message: str, /):
        """Only the consumer's channel failed; the connection is still up."""
        raise NotImplementedError("Subclasses must implement this method.")


class Backend(ABC):
    """The broker-specific half of a connection.

    A backend establishes and tears down its broker session, binds a
    consumer, and sends messages. The lifecycle, retries and recovery are
    handled by ``Connection``, so none of these methods retry.
    """

    @property
    @abstractmethod
    def name(self) -> str:
        """A human readable name of the queue, for logging."""
        raise NotImplementedError("Subclasses must implement this method.")

    @abstractmethod
    def is_open(self) -> bool:
        """Whether the session is established. Must not block."""
        raise NotImplementedError("Subclasses must implement this method.")

    @abstractmethod
    def open_connection(self):
        """Establish the broker session, raising ``ConnectError`` on failure.

        It must be safe to call this again after a failed attempt.
        """
        raise NotImplementedError("Subclasses must implement this method.")

    @abstractmethod
    def register_consumer(self, consumer: Consumer, /):
        """Deliver the queue's messages to the consumer.

        Raises ``RegisterError`` if the consumer cannot be bound.
        """
        raise NotImplementedError("Subclasses must implement this method.")

    @abstractmethod
    def publish_message(self, payload: str, /):
        """Send one message, raising ``PublishError`` on failure."""
        raise NotImplementedError("Subclasses must implement this method.")

    @abstractmethod
    def close_connection(self):
        """Release the broker session, raising ``CloseError`` on failure.

        Must tolerate being called on a session that is already gone.
        """
        raise NotImplementedError("Subclasses must implement this method.")
