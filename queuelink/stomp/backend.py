import logging
from collections.abc import Callable
from contextlib import suppress
from itertools import count
from threading import Thread
from typing import TYPE_CHECKING
from typing import Any

import stomp
from stomp.exception import StompException

from queuelink.acknowledger import AckBridge
from queuelink.backend import Backend
from queuelink.backend import Listener
from queuelink.consumer import Consumer
from queuelink.errors import CloseError
from queuelink.errors import ConnectError
from queuelink.errors import PublishError
from queuelink.errors import RegisterError

if TYPE_CHECKING:
    from .config import StompConfig

logger = logging.getLogger(__name__)


class StompListener(stomp.ConnectionListener):
    """Forward the events of one STOMP connection."""

    def __init__(
        self,
        *,
        on_message: Callable[[Any], None],
        on_error: Callable[[Any], None],
        on_disconnected: Callable[[], None],
    ):
        self.__on_message = on_message
        self.__on_error = on_error
        self.__on_disconnected = on_disconnected

    def on_message(self, frame):
        self.__on_message(frame)

    def on_error(self, frame):
        self.__on_error(frame)

    def on_disconnected(self):
        self.__on_disconnected()


class StompBackend(Backend):
    """A queue of a JMS broker such as ActiveMQ, reached over STOMP.

    Messages are subscribed with individual client acknowledgment, so
    they are acknowledged through an ``AckBridge``. A connection that drops
    without being closed is reported as a lost connection.
    """

    def __init__(self, config: "StompConfig", listener: Listener):
        self.__config = config
        self.__listener = listener
        self.__connection: stomp.Connection12 | None = None
        self.__subscription_ids = count(1)
        self.__subscription: str | None = None
        self.__bridge: AckBridge | None = None

    @property
    def name(self) -> str:
        return self.__config.name

    def is_open(self) -> bool:
        connection = self.__connection
        return connection is not None and connection.is_connected()

    def open_connection(self):
        # A dropped transport may still hold its socket
        if self.__connection is not None:
            with suppress(CloseError):
                self.close_connection()

        config = self.__config
        heartbeat = config.heartbeat
        connection = stomp.Connection12(
            [config.host_and_port],
            heartbeats=(heartbeat, heartbeat),
            reconnect_attempts_max=1,
        )
        connection.set_listener(
            "queuelink",
            StompListener(
                on_message=lambda frame: self.__on_message(connection, frame),
                on_error=lambda frame: self.__on_error(frame),
                on_disconnected=lambda: self.__on_disconnected(connection),
            ),
        )
        user, password = config.credentials
        try:
            connection.connect(user, password, wait=True)
        except (StompException, OSError) as e:
            raise ConnectError(self.name, str(e) or type(e).__name__) from e
        self.__connection = connection

    def register_consumer(self, consumer: Consumer, /):
        connection = self.__connection
        if connection is None:
            raise RegisterError(consumer, "The connection is not open.")

        bridge = AckBridge(self.name, consumer, lambda ack_id: connection.ack(ack_id))
        subscription = str(next(self.__subscription_ids))
        headers = {}
        if self.__config.selector is not None:
            headers["selector"] = self.__config.selector
        try:
            if self.__subscription is not None:
                connection.unsubscribe(id=self.__subscription)
            connection.subscribe(
                destination=self.__config.destination,
                id=subscription,
                ack="client-individual",
                headers=headers,
            )
        except (StompException, OSError) as e:
            raise RegisterError(consumer, str(e) or type(e).__name__) from e

        if self.__bridge is not None:
            self.__bridge.clear()
        self.__bridge = bridge
        self.__subscription = subscription

    def publish_message(self, payload: str, /):
        connection = self.__connection
        if connection is None:
            raise PublishError(payload, "The connection is not open.")
        try:
            connection.send(
                destination=self.__config.destination,
                body=payload,
                content_type="text/plain",
                headers={"persistent": "true"},
            )
        except (StompException, OSError) as e:
            raise PublishError(payload, str(e) or type(e).__name__) from e

    def close_connection(self):
        connection = self.__connection
        self.__connection = None
        self.__subscription = None
        if self.__bridge is not None:
            self.__bridge.clear()
            self.__bridge = None

        if connection is None or not connection.is_connected():
            return
        try:
            connection.disconnect()
        except (StompException, OSError) as e:
            raise CloseError(self.name) from e

    def __on_message(self, connection: stomp.Connection12, frame):
        bridge = self.__bridge
        headers = frame.headers
        if (
            connection is not self.__connection
            or bridge is None
            or headers.get("subscription") != self.__subscription
        ):
            logger.debug(
                "Ignoring message '%s' of a former subscription on queue '%s'.",
                headers.get("message-id"),
                self.name,
            )
            return

        body = frame.body
        if isinstance(body, bytes):
            body = body.decode(errors="replace")
        bridge.deliver(headers["message-id"], headers["ack"], body)

    def __on_error(self, frame):
        logger.error(
            "Broker reported an error on queue '%s': %s",
            self.name,
            frame.headers.get("message", frame.body),
        )

    def __on_disconnected(self, connection: stomp.Connection12):
        # Disconnects of a connection we closed ourselves are expected
        if connection is not self.__connection:
            return
        Thread(
            target=self.__listener.connection_lost,
            args=(None, "Connection to the broker was lost."),
            name="queuelink-recovery",
        ).start()
