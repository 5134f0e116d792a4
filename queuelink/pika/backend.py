import logging
from contextlib import suppress
from threading import Thread
from typing import TYPE_CHECKING
from typing import cast

from pika import BasicProperties
from pika.delivery_mode import DeliveryMode
from pika.exceptions import AMQPError
from pika.exceptions import ChannelClosedByBroker
from pika.exceptions import ChannelWrongStateError

from queuelink.acknowledger import AckBridge
from queuelink.backend import Backend
from queuelink.backend import Listener
from queuelink.consumer import Consumer
from queuelink.errors import CloseError
from queuelink.errors import ConnectError
from queuelink.errors import PublishError
from queuelink.errors import RegisterError

from .threadsafe import ThreadsafeChannel
from .threadsafe import ThreadsafeConnection

if TYPE_CHECKING:
    from .config import PikaConfig

logger = logging.getLogger(__name__)


class PikaBackend(Backend):
    """A RabbitMQ queue, reached with pika.

    Deliveries are handed to the consumer on a dedicated thread, and are
    acknowledged manually through an ``AckBridge``. A channel closed by the
    broker is reported as a lost consumer, a connection closed by the broker
    or the network as a lost connection.
    """

    def __init__(self, config: "PikaConfig", listener: Listener):
        self.__config = config
        self.__listener = listener
        self.__connection: ThreadsafeConnection | None = None
        self.__channel: ThreadsafeChannel | None = None
        self.__queue = config.queue
        self.__bridge: AckBridge | None = None
        self.__consumed: ThreadsafeChannel | None = None

    @property
    def name(self) -> str:
        return self.__config.name

    @property
    def queue(self) -> str | None:
        """The declared queue, named by the broker if it is temporary."""
        return self.__queue

    def is_open(self) -> bool:
        connection = self.__connection
        return connection is not None and connection.is_open

    def open_connection(self):
        # A dropped transport still owns its ioloop thread
        if self.__connection is not None:
            with suppress(CloseError):
                self.close_connection()

        config = self.__config
        try:
            connection = ThreadsafeConnection(
                config.parameters(), on_lost=self.__connection_lost
            )
        except (AMQPError, OSError) as e:
            raise ConnectError(self.name, str(e) or type(e).__name__) from e

        try:
            channel = connection.channel(on_lost=self.__channel_lost)
            if config.queue is not None:
                channel.queue_declare(
                    config.queue,
                    durable=config.queue_durable,
                    exclusive=config.queue_exclusive,
                    auto_delete=config.queue_auto_delete,
                )
                queue = config.queue
            else:
                result = channel.queue_declare("", exclusive=True)
                queue = cast(str, result.method.queue)
            if config.exchange is not None:
                channel.exchange_declare(
                    config.exchange,
                    exchange_type=config.exchange_type,
                    durable=config.exchange_durable,
                )
                channel.queue_bind(queue, config.exchange, config.routing_key)
        except (AMQPError, OSError) as e:
            with suppress(AMQPError, OSError):
                connection.close()
            raise ConnectError(self.name, str(e) or type(e).__name__) from e

        self.__connection = connection
        self.__channel = channel
        self.__queue = queue

    def __live_channel(self) -> ThreadsafeChannel | None:
        """The channel, replaced if the broker closed it."""
        connection, channel = self.__connection, self.__channel
        if connection is None or channel is None:
            return None
        if not channel.is_open and connection.is_open:
            channel = connection.channel(on_lost=self.__channel_lost)
            self.__channel = channel
        return channel

    def register_consumer(self, consumer: Consumer, /):
        try:
            channel = self.__live_channel()
            # A channel carries one consumer, so the former one leaves with it
            if channel is not None and channel is self.__consumed:
                with suppress(ChannelWrongStateError):
                    channel.close()
                channel = self.__live_channel()
            if channel is None:
                raise RegisterError(consumer, "The connection is not open.")
            bridge = AckBridge(
                self.name,
                consumer,
                lambda tag: channel.ack(delivery_tag=tag),
            )
            channel.consume(cast(str, self.__queue))
            self.__consumed = channel
        except AMQPError as e:
            raise RegisterError(consumer, str(e) or type(e).__name__) from e

        if self.__bridge is not None:
            self.__bridge.clear()
        self.__bridge = bridge
        Thread(
            target=self.__dispatch,
            args=(channel, bridge),
            name="queuelink-pika-delivery",
            daemon=True,
        ).start()

    def __dispatch(self, channel: ThreadsafeChannel, bridge: AckBridge):
        for method, _, body in channel.messages():
            tag = cast(int, method.delivery_tag)
            bridge.deliver(str(tag), tag, body.decode(errors="replace"))
        logger.debug("Stopped delivering messages from queue '%s'.", self.name)

    def publish_message(self, payload: str, /):
        config = self.__config
        # The default exchange routes by queue name
        if config.exchange is None:
            exchange, routing_key = "", cast(str, self.__queue)
        else:
            exchange, routing_key = config.exchange, config.routing_key or ""

        try:
            channel = self.__live_channel()
            if channel is None:
                raise PublishError(payload, "The connection is not open.")
            channel.publish(
                exchange=exchange,
                routing_key=routing_key,
                body=payload.encode(),
                properties=BasicProperties(
                    content_type="text/plain",
                    delivery_mode=DeliveryMode.Persistent,
                ),
            )
        except AMQPError as e:
            raise PublishError(payload, str(e) or type(e).__name__) from e

    def close_connection(self):
        connection, channel = self.__connection, self.__channel
        self.__connection = None
        self.__channel = None
        self.__consumed = None
        self.__queue = self.__config.queue
        if self.__bridge is not None:
            self.__bridge.clear()
            self.__bridge = None

        if connection is None:
            return

        error: AMQPError | None = None
        if channel is not None and channel.is_open:
            try:
                channel.close()
            except ChannelWrongStateError:
                pass
            except AMQPError as e:
                error = e

        # The connection is closed even if its channel could not be
        try:
            connection.close()
        except AMQPError as e:
            raise CloseError(self.name) from e
        if error is not None:
            raise CloseError(self.name) from error

    def __connection_lost(self, reason: BaseException):
        self.__notify(self.__listener.connection_lost, reason)

    def __channel_lost(self, reason: BaseException):
        # Closed by us or along with the connection otherwise
        if isinstance(reason, ChannelClosedByBroker):
            self.__notify(self.__listener.consumer_lost, reason)

    def __notify(self, notify, reason: BaseException):
        code = getattr(reason, "reply_code", None)
        message = getattr(reason, "reply_text", None) or str(reason)
        # Recovery closes this connection, which cannot be done from its ioloop
        Thread(
            target=notify, args=(code, message), name="queuelink-recovery"
        ).start()
