import logging
from threading import Event
from typing import Annotated

import typer
from typer import Argument
from typer import Option
from typer import Typer

from .config import connect
from .consumer import AcknowledgingConsumer
from .consumer import Acknowledger
from .errors import QueueError

app = Typer()


class PrintingConsumer(AcknowledgingConsumer):
    """Print messages, and signal once enough of them arrived."""

    def __init__(self, *, limit: int | None, done: Event):
        self.__limit = limit
        self.__done = done
        self.__received = 0
        self.__acknowledger: Acknowledger | None = None

    def accept_acknowledger(self, acknowledger: Acknowledger, /):
        self.__acknowledger = acknowledger

    def consume(self, message_id: str, payload: str, /):
        if self.__done.is_set():
            return
        print(payload)
        if self.__acknowledger is not None:
            self.__acknowledger.acknowledge(message_id)
        self.__received += 1
        if self.__limit is not None and self.__received >= self.__limit:
            self.__done.set()


@app.callback()
def main(
    verbose: Annotated[
        bool, Option("--verbose", "-v", help="Log connection activity.")
    ] = False,
):
    """Publish and consume messages on configured queues."""
    logging.basicConfig(
        level=logging.INFO if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )


@app.command(rich_help_panel="Commands")
def publish(
    context: Annotated[
        str,
        Argument(help="The [tool.queuelink.CONTEXT] settings to connect with."),
    ],
    messages: Annotated[list[str], Argument(help="The messages to publish.")],
):
    """Publish messages on a queue.

    The connection is opened once for all messages and closed afterwards.
    """
    try:
        connection = connect(context)
        with connection:
            for message in messages:
                connection.publish(message)
    except QueueError as e:
        print(f"Error: {e}")
        raise typer.Exit(1)
    print(f"Published {len(messages)} message(s) on queue '{connection.name}'")


@app.command(rich_help_panel="Commands")
def consume(
    context: Annotated[
        str,
        Argument(help="The [tool.queuelink.CONTEXT] settings to connect with."),
    ],
    count: Annotated[
        int | None,
        Option(help="Stop after this many messages instead of running forever."),
    ] = None,
):
    """Print the messages arriving on a queue.

    Each message is acknowledged once it is printed. Without a count, the
    consumer runs until interrupted.
    """
    done = Event()
    try:
        connection = connect(context)
    except QueueError as e:
        print(f"Error: {e}")
        raise typer.Exit(1)

    try:
        connection.consume(PrintingConsumer(limit=count, done=done))
        done.wait()
    except KeyboardInterrupt:
        print("Shutting down gracefully.")
    except QueueError as e:
        print(f"Error: {e}")
        raise typer.Exit(1)
    finally:
        connection.close()


if __name__ == "__main__":
    app()
