import logging
from typing import TYPE_CHECKING

from .backend import Listener
from .errors import ConnectError
from .errors import RegisterError

if TYPE_CHECKING:
    from .connection import Connection
    from .consumer import Consumer

logger = logging.getLogger(__name__)


class RecoveryListener(Listener):
    """Recover a connection after its backend reported a failure.

    A lost connection is closed and opened again with the connection's
    retry policy, and the consumer registered at the time of the failure
    is registered again. A lost consumer channel is only re-registered,
    falling back to a full recovery if that fails.

    Recovery runs on a backend thread with no caller waiting for it, so
    its failures are logged rather than raised.
    """

    def __init__(self, connection: "Connection"):
        self.__connection = connection
        self.__recovering = False

    @property
    def recovering(self) -> bool:
        return self.__recovering

    def connection_lost(self, code: int | str | None, message: str, /):
        connection = self.__connection
        # Taken before waiting for the lock, which a caller may hold meanwhile
        consumer, closes = connection.consumer, connection.closes
        logger.warning(
            "Connection to queue '%s' encountered an error with code '%s' "
            "and message '%s'.",
            connection.name,
            code,
            message,
        )
        with connection.mutex:
            self.__recover(consumer, closes)

    def __recover(self, consumer: "Consumer | None", closes: int):
        connection = self.__connection
        if connection.closes != closes:
            logger.info(
                "Connection to queue '%s' was closed since it failed. "
                "Not recovering.",
                connection.name,
            )
            return

        self.__recovering = True
        try:
            self.__reconnect(consumer)
        finally:
            self.__recovering = False

    def __reconnect(self, consumer: "Consumer | None"):
        connection = self.__connection
        logger.info("Recovering connection to queue '%s'...", connection.name)
        connection.close()
        try:
            connection.open()
        except ConnectError as e:
            logger.error(
                "Connection recovery for queue '%s' failed: %s", connection.name, e
            )
            return
        logger.info(
            "Connection to queue '%s' successfully re-established.", connection.name
        )

        if consumer is None:
            return

        logger.info(
            "Re-registering consumer %r on queue '%s'...", consumer, connection.name
        )
        try:
            connection.consume(consumer)
        except RegisterError as e:
            logger.error(
                "Re-registration of consumer %r on queue '%s' failed: %s",
                consumer,
                connection.name,
                e,
            )
        else:
            logger.info(
                "Successfully re-registered consumer %r on queue '%s'.",
                consumer,
                connection.name,
            )

    def consumer_lost(self, code: int | str | None, message: str, /):
        connection = self.__connection
        consumer, closes = connection.consumer, connection.closes
        logger.warning(
            "Consumer on queue '%s' was lost with code '%s' and message '%s'.",
            connection.name,
            code,
            message,
        )
        with connection.mutex:
            if connection.closes != closes:
                logger.info(
                    "Connection to queue '%s' was closed since its consumer "
                    "was lost. Not recovering.",
                    connection.name,
                )
                return
            self.__recovering = True
            try:
                if connection.reregister():
                    logger.info(
                        "Successfully re-registered consumer on queue '%s'.",
                        connection.name,
                    )
                return
            except RegisterError as e:
                logger.warning(
                    "Re-registering the consumer on queue '%s' failed, "
                    "reconnecting: %s",
                    connection.name,
                    e,
                )
            finally:
                self.__recovering = False

            self.__recover(consumer, closes)
