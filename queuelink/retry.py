from collections.abc import Mapping
from dataclasses import dataclass
from typing import Any
from typing import ClassVar
from typing import Self

from .errors import ConfigError


@dataclass(frozen=True, kw_only=True)
class RetryPolicy:
    """How often, and how patiently, a connection tries to open.

    ``attempts`` is the total number of tries, or ``RetryPolicy.FOREVER``
    to keep trying until the broker becomes available. ``wait`` is the
    pause between two attempts in seconds, fractions allowed.
    """

    FOREVER: ClassVar[int] = -1

    attempts: int = FOREVER
    wait: float = 1.0

    def __post_init__(self):
        if self.attempts != self.FOREVER and self.attempts < 1:
            raise ConfigError(
                f"attempts must be {self.FOREVER} (forever) or at least 1, "
                f"got: {self.attempts}"
            )
        if self.wait < 0:
            raise ConfigError(f"wait must not be negative, got: {self.wait}")

    @property
    def forever(self) -> bool:
        return self.attempts == self.FOREVER

    @classmethod
    def from_mapping(cls, config: Mapping[str, Any], /) -> Self:
        from .config import get_float
        from .config import get_int

        return cls(
            attempts=get_int(config, "attempts", cls.FOREVER),
            wait=get_float(config, "wait", 1.0),
        )
