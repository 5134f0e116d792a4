from typing import Any


class QueueError(Exception):
    """Base class for every error raised by queuelink."""


class ConfigError(QueueError):
    """The configuration for a connection is invalid."""


class ConnectError(QueueError):
    def __init__(self, name: str, reason: str | None = None):
        message = f"Unable to establish connection to queue '{name}'."
        if reason:
            message = f"{message} {reason}"
        super().__init__(message)
        self.name = name


class ConnectCancelled(QueueError):
    """Opening was cancelled while waiting between attempts."""


class CloseError(QueueError):
    def __init__(self, name: str):
        super().__init__(f"Unable to close connection to queue '{name}'.")
        self.name = name


class RegisterError(QueueError):
    def __init__(self, consumer: Any, reason: str):
        super().__init__(f"Unable to register consumer {consumer!r}. {reason}")
        self.consumer = consumer


class PublishError(QueueError):
    def __init__(self, payload: str, reason: str | None = None):
        message = f"Unable to publish message {payload!r}."
        if reason:
            message = f"{message} {reason}"
        super().__init__(message)
        self.payload = payload


class ConsumeError(QueueError):
    def __init__(self, message_id: str, reason: str | None = None):
        message = f"Unable to consume message '{message_id}'."
        if reason:
            message = f"{message} {reason}"
        super().__init__(message)
        self.message_id = message_id


class AcknowledgeError(QueueError):
    def __init__(self, message_id: str, reason: str):
        super().__init__(f"Unable to acknowledge message '{message_id}'. {reason}")
        self.message_id = message_id
