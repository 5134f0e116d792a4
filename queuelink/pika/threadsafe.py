from collections.abc import Callable
from collections.abc import Iterator
from collections.abc import Mapping
from concurrent.futures import Future
from contextlib import suppress
from queue import Queue
from queue import ShutDown
from threading import Lock
from threading import Thread
from threading import current_thread
from typing import Any
from typing import cast

from pika import SelectConnection
from pika import frame
from pika import spec
from pika.channel import Channel
from pika.connection import Parameters
from pika.exceptions import ChannelClosed
from pika.exceptions import ConnectionClosedByClient
from pika.exceptions import ConnectionWrongStateError

type Delivery = tuple[spec.Basic.Deliver, spec.BasicProperties, bytes]


class ThreadsafeConnection:
    """A pika ``SelectConnection`` driven by its own ioloop thread.

    Every call is handed to the ioloop thread and waited for, so the
    methods may be called from any thread except the ioloop thread itself.
    ``on_lost`` is called on the ioloop thread when the connection closes
    without being asked to.
    """

    def __init__(
        self,
        connection_params: Parameters,
        *,
        on_lost: Callable[[BaseException], None],
    ):
        opened = Future()
        self.__closed = Future[BaseException]()
        self.__on_lost = on_lost
        self.__connection = SelectConnection(
            connection_params,
            lambda _: opened.set_result(None),
            lambda _, exc: opened.set_exception(cast(BaseException, exc)),
            self.__on_closed,
        )
        self.__thread = Thread(
            target=self.__connection.ioloop.start, name="queuelink-pika-ioloop"
        )
        self.__thread.start()
        try:
            opened.result()
        except BaseException:
            self.__stop()
            raise

    def __on_closed(self, _, exc: BaseException):
        self.__closed.set_result(exc)
        if not isinstance(exc, ConnectionClosedByClient):
            self.__on_lost(exc)

    def __call[T](self, fn: Callable[[], T]) -> T:
        future = Future[T]()

        def run():
            try:
                future.set_result(fn())
            except BaseException as e:
                future.set_exception(e)

        self.__connection.ioloop.add_callback_threadsafe(run)
        return future.result()

    def __stop(self):
        self.__connection.ioloop.add_callback_threadsafe(
            self.__connection.ioloop.stop
        )
        if current_thread() is not self.__thread:
            self.__thread.join()

    @property
    def is_open(self) -> bool:
        return self.__connection.is_open

    def channel(
        self,
        channel_number: int | None = None,
        *,
        on_lost: Callable[[BaseException], None],
    ) -> "ThreadsafeChannel":
        future = Future[Channel]()
        self.__call(
            lambda: self.__connection.channel(
                channel_number=channel_number,
                on_open_callback=future.set_result,
            )
        )
        return ThreadsafeChannel(self.__call, future.result(), on_lost=on_lost)

    def close(self, reply_code: int = 200, reply_text: str = "Normal shutdown"):
        if not self.__closed.done():
            # The broker may close the connection in the meantime
            with suppress(ConnectionWrongStateError):
                self.__call(
                    lambda: self.__connection.close(
                        reply_code=reply_code,
                        reply_text=reply_text,
                    )
                )
            self.__closed.result()
        self.__stop()


class ThreadsafeChannel:
    """A pika channel whose calls are run on the ioloop thread.

    Calls waiting for a reply from the broker fail with the close reason
    if the channel closes before the reply arrives.
    """

    def __init__(
        self,
        call: Callable[[Callable[[], Any]], Any],
        channel: Channel,
        *,
        on_lost: Callable[[BaseException], None],
    ):
        self.__call = call
        self.__channel = channel
        self.__on_lost = on_lost
        self.__messages = Queue[Delivery]()
        self.__pending_lock = Lock()
        self.__pending = set[Future]()
        self.__channel.add_on_close_callback(self.__on_closed)

    def __on_closed(self, _, exc: BaseException):
        self.__messages.shutdown(immediate=True)
        with self.__pending_lock:
            pending, self.__pending = self.__pending, set[Future]()
        for future in pending:
            with suppress(Exception):
                future.set_exception(exc)
        self.__on_lost(exc)

    def __rpc[T](self, fn: Callable[[Callable[[T], None]], Any]) -> T:
        """Run a method with a reply callback and wait for the reply."""
        future = Future[T]()
        with self.__pending_lock:
            if self.__channel.is_closed:
                raise ChannelClosed(0, "Channel is closed")
            self.__pending.add(future)

        def resolve(result: T):
            with suppress(Exception):
                future.set_result(result)

        try:
            self.__call(lambda: fn(resolve))
            return future.result()
        finally:
            with self.__pending_lock:
                self.__pending.discard(future)

    @property
    def is_open(self) -> bool:
        return self.__channel.is_open

    def queue_declare(
        self,
        queue: str,
        passive: bool = False,
        durable: bool = False,
        exclusive: bool = False,
        auto_delete: bool = False,
        arguments: Mapping[str, Any] | None = None,
    ) -> frame.Method[spec.Queue.DeclareOk]:
        return self.__rpc(
            lambda callback: self.__channel.queue_declare(
                queue=queue,
                passive=passive,
                durable=durable,
                exclusive=exclusive,
                auto_delete=auto_delete,
                arguments=arguments,
                callback=callback,
            )
        )

    def exchange_declare(
        self,
        exchange: str,
        exchange_type: str = "direct",
        durable: bool = False,
    ) -> frame.Method[spec.Exchange.DeclareOk]:
        return self.__rpc(
            lambda callback: self.__channel.exchange_declare(
                exchange=exchange,
                exchange_type=exchange_type,
                durable=durable,
                callback=callback,
            )
        )

    def queue_bind(
        self,
        queue: str,
        exchange: str,
        routing_key: str | None = None,
        arguments: Mapping[str, Any] | None = None,
    ) -> frame.Method[spec.Queue.BindOk]:
        return self.__rpc(
            lambda callback: self.__channel.queue_bind(
                queue=queue,
                exchange=exchange,
                routing_key=routing_key,
                arguments=arguments,
                callback=callback,
            )
        )

    def publish(
        self,
        exchange: str,
        routing_key: str,
        body: bytes,
        properties: spec.BasicProperties | None = None,
        mandatory: bool = False,
    ):
        self.__call(
            lambda: self.__channel.basic_publish(
                exchange=exchange,
                routing_key=routing_key,
                body=body,
                properties=properties,
                mandatory=mandatory,
            )
        )

    def consume(
        self,
        queue: str,
        auto_ack: bool = False,
        exclusive: bool = False,
        consumer_tag: str | None = None,
        arguments: Mapping[str, Any] | None = None,
    ) -> frame.Method[spec.Basic.ConsumeOk]:
        return self.__rpc(
            lambda callback: self.__channel.basic_consume(
                queue=queue,
                on_message_callback=lambda _, m, p, b: self.__messages.put((m, p, b)),
                auto_ack=auto_ack,
                exclusive=exclusive,
                consumer_tag=consumer_tag,
                arguments=arguments,
                callback=callback,
            )
        )

    def ack(self, delivery_tag: int = 0, multiple: bool = False):
        self.__call(
            lambda: self.__channel.basic_ack(
                delivery_tag=delivery_tag,
                multiple=multiple,
            )
        )

    def messages(self) -> Iterator[Delivery]:
        while True:
            try:
                yield self.__messages.get()
            except ShutDown:
                return

    def close(self, reply_code: int = 0, reply_text: str = "Normal shutdown"):
        self.__call(
            lambda: self.__channel.close(
                reply_code=reply_code,
                reply_text=reply_text,
            )
        )
