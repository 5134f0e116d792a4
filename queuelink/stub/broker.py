from collections import deque
from itertools import count
from threading import Condition
from typing import ClassVar
from typing import Self

from queuelink.errors import QueueError


class StubUnavailable(QueueError):
    """The stub broker refuses connections."""


class StubBroker:
    """An in-memory broker with named queues.

    Delivered messages stay pending until acknowledged, and are put back
    at the front of their queue if their subscriber goes away first, so
    delivery is at-least-once like a real broker.
    """

    __default: ClassVar["StubBroker | None"] = None

    def __init__(self):
        self.__condition = Condition()
        self.__ids = count(1)
        self.__queues = dict[str, deque[tuple[str, str]]]()
        self.__pending = dict[str, tuple[str, str]]()
        self.__available = True

    @classmethod
    def default(cls) -> Self:
        """The broker shared by connections configured with a ``stub:`` URI."""
        if cls.__default is None:
            cls.__default = cls()
        return cls.__default

    @property
    def available(self) -> bool:
        return self.__available

    @available.setter
    def available(self, available: bool):
        self.__available = available

    def connect(self):
        if not self.__available:
            raise StubUnavailable("The stub broker is unavailable.")

    def declare(self, queue: str):
        with self.__condition:
            self.__queues.setdefault(queue, deque())

    def enqueue(self, queue: str, payload: str) -> str:
        self.connect()
        with self.__condition:
            if queue not in self.__queues:
                raise StubUnavailable(f"Queue '{queue}' does not exist")
            message_id = str(next(self.__ids))
            self.__queues[queue].append((message_id, payload))
            self.__condition.notify_all()
            return message_id

    def messages(self, queue: str) -> list[str]:
        """The payloads waiting in a queue, oldest first."""
        with self.__condition:
            return [payload for _, payload in self.__queues.get(queue, ())]

    def pending(self) -> set[str]:
        """The ids of delivered but unacknowledged messages."""
        with self.__condition:
            return set(self.__pending)

    def take(self, queue: str, timeout: float) -> tuple[str, str] | None:
        """Take the next message for delivery, waiting up to ``timeout``."""
        with self.__condition:
            if not self.__condition.wait_for(
                lambda: bool(self.__queues.get(queue)), timeout
            ):
                return None
            message_id, payload = self.__queues[queue].popleft()
            self.__pending[message_id] = (queue, payload)
            return message_id, payload

    def ack(self, message_id: str):
        self.connect()
        with self.__condition:
            if self.__pending.pop(message_id, None) is None:
                raise StubUnavailable(f"Message '{message_id}' is not pending")

    def requeue(self, message_ids: set[str]):
        with self.__condition:
            # Oldest first once they are back at the front
            for message_id in sorted(message_ids, key=int, reverse=True):
                if entry := self.__pending.pop(message_id, None):
                    queue, payload = entry
                    self.__queues[queue].appendleft((message_id, payload))
            self.__condition.notify_all()
