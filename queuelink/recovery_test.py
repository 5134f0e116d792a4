import logging
from threading import Thread
from time import monotonic
from time import sleep

import pytest

from .connection_test import NullConsumer
from .connection_test import recording_connection
from .errors import ConnectError


def wait_until(predicate, timeout: float = 2.0):
    deadline = monotonic() + timeout
    while not predicate():
        assert monotonic() < deadline, "Timed out"
        sleep(0.01)


def test_lost_connection_is_reopened_with_its_consumer():
    connection, backend = recording_connection()
    consumer = NullConsumer()
    connection.consume(consumer)
    backend.calls.clear()

    connection.listener.connection_lost(320, "CONNECTION_FORCED")

    assert backend.calls == [
        "close_connection",
        "open_connection",
        "register_consumer",
    ]
    assert backend.consumers == [consumer, consumer]
    assert backend.consumers[1] is consumer
    assert connection.consumer is consumer
    assert connection.is_open
    assert not connection.listener.recovering


def test_lost_connection_without_consumer_is_only_reopened():
    connection, backend = recording_connection()
    connection.open()
    backend.calls.clear()

    connection.listener.connection_lost(None, "Connection reset")

    assert backend.calls == ["close_connection", "open_connection"]
    assert connection.consumer is None
    assert connection.is_open


def test_recovery_uses_the_retry_policy():
    connection, backend = recording_connection(attempts=3, wait=0)
    connection.open()
    backend.failures = backend.attempts + 2

    connection.listener.connection_lost(None, "Connection reset")

    assert backend.calls.count("open_connection") == 4
    assert connection.is_open


def test_failed_recovery_is_logged(caplog: pytest.LogCaptureFixture):
    connection, backend = recording_connection(attempts=2, wait=0)
    connection.consume(NullConsumer())
    backend.failures = backend.attempts + 2

    with caplog.at_level(logging.ERROR, logger="queuelink.recovery"):
        connection.listener.connection_lost(None, "Connection reset")

    assert not connection.is_open
    assert connection.consumer is None
    assert "Connection recovery for queue 'recording' failed" in caplog.text


def test_failed_reregistration_is_logged(caplog: pytest.LogCaptureFixture):
    connection, backend = recording_connection()
    connection.consume(NullConsumer())
    backend.register_fails = True

    with caplog.at_level(logging.ERROR, logger="queuelink.recovery"):
        connection.listener.connection_lost(None, "Connection reset")

    assert connection.is_open
    assert connection.consumer is None
    assert "Re-registration of consumer" in caplog.text


def test_lost_consumer_is_registered_again():
    connection, backend = recording_connection()
    consumer = NullConsumer()
    connection.consume(consumer)
    backend.calls.clear()

    connection.listener.consumer_lost(406, "PRECONDITION_FAILED")

    assert backend.calls == ["register_consumer"]
    assert backend.consumers == [consumer, consumer]
    assert connection.consumer is consumer


def test_lost_consumer_falls_back_to_reconnecting():
    connection, backend = recording_connection()
    consumer = NullConsumer()
    connection.consume(consumer)
    backend.opened = False
    backend.calls.clear()

    connection.listener.consumer_lost(None, "Consumer cancelled")

    assert backend.calls == [
        "close_connection",
        "open_connection",
        "register_consumer",
    ]
    assert connection.consumer is consumer
    assert connection.is_open


def test_lost_consumer_without_consumer():
    connection, backend = recording_connection()
    connection.open()
    backend.calls.clear()

    connection.listener.consumer_lost(None, "Consumer cancelled")

    assert backend.calls == []


def test_recovery_failure_does_not_raise():
    connection, backend = recording_connection()
    connection.open()
    backend.failures = backend.attempts + 2

    connection.listener.connection_lost(None, "Connection reset")

    with pytest.raises(ConnectError):
        connection.open()
    connection.open()
    assert connection.is_open


@pytest.mark.timeout(5)
def test_consumer_survives_a_publish_while_recovery_waits(
    caplog: pytest.LogCaptureFixture,
):
    connection, backend = recording_connection()
    consumer = NullConsumer()
    connection.consume(consumer)

    with caplog.at_level(logging.WARNING, logger="queuelink.recovery"):
        with connection.mutex:
            backend.opened = False
            recovery = Thread(
                target=connection.listener.connection_lost,
                args=(None, "Connection reset"),
            )
            recovery.start()
            wait_until(lambda: "encountered an error" in caplog.text)
            connection.publish("during")
        recovery.join()

    assert connection.consumer is consumer
    assert backend.consumers == [consumer, consumer]
    assert connection.is_open


@pytest.mark.timeout(5)
def test_close_while_recovery_waits_cancels_it(caplog: pytest.LogCaptureFixture):
    connection, backend = recording_connection()
    connection.consume(NullConsumer())

    with caplog.at_level(logging.INFO, logger="queuelink.recovery"):
        with connection.mutex:
            recovery = Thread(
                target=connection.listener.connection_lost,
                args=(None, "Connection reset"),
            )
            recovery.start()
            wait_until(lambda: "encountered an error" in caplog.text)
            connection.close()
            backend.calls.clear()
        recovery.join()

    assert backend.calls == []
    assert connection.consumer is None
    assert not connection.is_open
    assert "Not recovering" in caplog.text
