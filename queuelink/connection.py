import logging
from threading import Event
from threading import RLock
from typing import Protocol

from .backend import Backend
from .backend import Listener
from .consumer import Consumer
from .errors import CloseError
from .errors import ConnectCancelled
from .errors import ConnectError
from .errors import PublishError
from .errors import RegisterError
from .recovery import RecoveryListener
from .registry import ConsumerRegistry
from .retry import RetryPolicy

logger = logging.getLogger(__name__)


class BackendConfig(Protocol):
    """The configuration record of one backend family."""

    def backend(self, listener: Listener, /) -> Backend: ...


class Connection:
    """A connection to one queue of any supported broker.

    The connection opens lazily: ``publish`` and ``consume`` open it if
    needed, and a ``publish`` that had to open the connection closes it
    again afterwards, unless a consumer is waiting to be recovered. If the broker reports a failure on its own, the
    connection recovers itself and re-registers its consumer.

    All state changes happen under a re-entrant lock, since recovery runs
    on a thread owned by the backend.
    """

    def __init__(
        self,
        config: BackendConfig,
        /,
        *,
        retry: RetryPolicy | None = None,
        cancel: Event | None = None,
    ):
        self.__lock = RLock()
        self.__retry = retry or RetryPolicy()
        self.__cancel = cancel or Event()
        self.__registry = ConsumerRegistry()
        self.__opened = False
        self.__closes = 0
        self.__listener = RecoveryListener(self)
        self.__backend = config.backend(self.__listener)
        self.__name = self.__backend.name

    def __repr__(self):
        state = "open" if self.is_open else "closed"
        return f"<{type(self).__name__} {self.__name!r} {state}>"

    def __enter__(self):
        self.open_if_closed()
        return self

    def __exit__(self, *exc_info):
        self.close()

    @property
    def name(self) -> str:
        return self.__name

    @property
    def retry(self) -> RetryPolicy:
        return self.__retry

    @property
    def consumer(self) -> Consumer | None:
        return self.__registry.current

    @property
    def backend(self) -> Backend:
        return self.__backend

    @property
    def listener(self) -> RecoveryListener:
        return self.__listener

    @property
    def mutex(self) -> RLock:
        """The lock held while the connection changes state."""
        return self.__lock

    @property
    def closes(self) -> int:
        """How often the connection was closed, counting every ``close`` call."""
        return self.__closes

    @property
    def is_open(self) -> bool:
        return self.__backend.is_open()

    def open(self):
        """Open the connection, retrying as the retry policy allows.

        When the last attempt fails, its ``ConnectError`` is raised as is.
        """
        with self.__lock:
            attempts = self.__retry.attempts
            logger.info("Connecting to queue '%s'...", self.__name)
            while True:
                try:
                    self.__backend.open_connection()
                    break
                except ConnectError as e:
                    logger.error("Unable to open queue '%s': %s", self.__name, e)
                    if attempts == 1:
                        raise

                # Counting down forever would eventually underflow
                if not self.__retry.forever:
                    attempts -= 1

                logger.warning(
                    "Connection to queue '%s' failed. Retrying in %s seconds.",
                    self.__name,
                    self.__retry.wait,
                )
                if self.__cancel.wait(self.__retry.wait):
                    raise ConnectError(
                        self.__name, "Opening the connection was cancelled."
                    ) from ConnectCancelled(self.__name)

            self.__opened = True
            logger.info(
                "Connection to queue '%s' successfully established.", self.__name
            )

    def close(self):
        """Close the connection and forget its consumer.

        Closing never raises, so it is safe in cleanup code. A failure to
        tear the connection down is only logged.
        """
        with self.__lock:
            self.__closes += 1
            self.__registry.clear()
            if not self.__opened and not self.__backend.is_open():
                logger.debug("Connection to queue '%s' is already closed.", self.__name)
                return

            logger.info("Closing connection to queue '%s'...", self.__name)
            self.__opened = False
            try:
                self.__backend.close_connection()
            except CloseError as e:
                logger.warning(
                    "Cannot successfully close queue '%s': %s",
                    self.__name,
                    e.__cause__ or e,
                )
            else:
                logger.info(
                    "Connection to queue '%s' successfully closed.", self.__name
                )

    def open_if_closed(self) -> bool:
        """Open the connection unless it is open already.

        Returns whether the connection had to be opened.
        """
        with self.__lock:
            if self.__backend.is_open():
                return False
            self.open()
            return True

    def consume(self, consumer: Consumer, /):
        """Register the one consumer of this connection.

        Raises ``RegisterError`` if another consumer is registered already,
        or if the connection cannot be opened or the broker refuses the
        consumer.
        """
        with self.__lock:
            logger.info("Registering consumer on queue '%s'...", self.__name)
            self.__registry.register(consumer)
            try:
                try:
                    self.open_if_closed()
                except ConnectError as e:
                    raise RegisterError(consumer, str(e)) from e
                self.__backend.register_consumer(consumer)
            except BaseException:
                self.__registry.clear()
                raise
            logger.info(
                "Consumer successfully registered on queue '%s'. "
                "Waiting for messages...",
                self.__name,
            )

    def reregister(self) -> bool:
        """Bind the registered consumer again on the still open connection.

        Returns False if there is no consumer to bind.
        """
        with self.__lock:
            consumer = self.__registry.current
            if consumer is None:
                return False
            if not self.__backend.is_open():
                raise RegisterError(consumer, "The connection is closed.")
            self.__backend.register_consumer(consumer)
            return True

    def publish(self, payload: str, /):
        """Publish a message.

        A closed connection is opened for the message and closed again
        afterwards, unless a consumer is registered and awaits recovery. An
        open connection stays open.
        """
        with self.__lock:
            logger.info("Publishing message on queue '%s': %r", self.__name, payload)
            opened = False
            try:
                opened = self.open_if_closed()
                self.__backend.publish_message(payload)
            except ConnectError as e:
                raise PublishError(payload, str(e)) from e
            finally:
                # Closing would drop a consumer that recovery is about to restore
                if opened and self.__registry.current is None:
                    self.close()
            logger.info("Message successfully published on queue '%s'.", self.__name)
