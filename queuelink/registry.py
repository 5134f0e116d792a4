from threading import Lock

from .consumer import Consumer
from .errors import RegisterError


class ConsumerRegistry:
    """The single consumer slot of a connection.

    Only one consumer may be registered at a time. Use a composite
    consumer to fan messages out to several consumers.
    """

    def __init__(self):
        self.__lock = Lock()
        self.__consumer: Consumer | None = None

    @property
    def current(self) -> Consumer | None:
        return self.__consumer

    def register(self, consumer: Consumer, /):
        with self.__lock:
            if self.__consumer is not None:
                raise RegisterError(
                    consumer,
                    "Another consumer is already registered. "
                    "Please register a composite consumer if you want "
                    "to use multiple consumers.",
                )
            self.__consumer = consumer

    def clear(self):
        with self.__lock:
            self.__consumer = None
