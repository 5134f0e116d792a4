from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from typing import Self
from urllib.parse import urlsplit

from queuelink.backend import Listener
from queuelink.config import get_int
from queuelink.errors import ConfigError

from .backend import StompBackend

DEFAULT_URI = "stomp://localhost:61613"
DEFAULT_PORT = 61613


@dataclass(frozen=True, kw_only=True)
class StompConfig:
    """Where and how to reach a queue of a JMS broker over STOMP.

    Credentials may be given in the URI or separately; separate values win.
    The selector is passed to the broker as a JMS message selector.
    """

    uri: str = DEFAULT_URI
    queue: str
    user: str | None = None
    password: str | None = None
    selector: str | None = None
    heartbeat: int = 0

    def __post_init__(self):
        parts = urlsplit(self.uri)
        if parts.scheme != "stomp":
            raise ConfigError(f"URI scheme must be 'stomp:', got: {self.uri}")
        if not parts.hostname:
            raise ConfigError(f"URI must name a host, got: {self.uri}")
        if not self.queue:
            raise ConfigError("A queue name is required")
        if self.heartbeat < 0:
            raise ConfigError(f"heartbeat must not be negative, got: {self.heartbeat}")

    @property
    def name(self) -> str:
        return self.queue

    @property
    def destination(self) -> str:
        if self.queue.startswith("/"):
            return self.queue
        return f"/queue/{self.queue}"

    @property
    def host_and_port(self) -> tuple[str, int]:
        parts = urlsplit(self.uri)
        return (parts.hostname or "localhost", parts.port or DEFAULT_PORT)

    @property
    def credentials(self) -> tuple[str | None, str | None]:
        parts = urlsplit(self.uri)
        return (self.user or parts.username, self.password or parts.password)

    def backend(self, listener: Listener, /) -> StompBackend:
        return StompBackend(self, listener)

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any], /) -> Self:
        if "queue" not in config:
            raise ConfigError("A queue name is required")
        return cls(
            uri=config.get("uri", DEFAULT_URI),
            queue=config["queue"],
            user=config.get("user"),
            password=config.get("password"),
            selector=config.get("selector"),
            heartbeat=get_int(config, "heartbeat", 0),
        )
