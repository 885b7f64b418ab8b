"""Durable point-to-point transport on top of RabbitMQ.

Each service builds its own client in its composition root and passes it to
the components that publish or consume. Delivery is at-least-once: a message
is acknowledged only after its handler returned, anything else leaves it
eligible for redelivery or drops it explicitly.
"""
import json
import logging
import threading
from abc import ABC, abstractmethod
from functools import partial
from typing import Any, Callable, Dict, Iterable, Optional

import pika
from pika.adapters.blocking_connection import BlockingChannel
from pika.exceptions import AMQPError, NackError, UnroutableError
from tenacity import (
    RetryCallState,
    RetryError,
    Retrying,
    before_sleep_log,
    retry_if_exception_type,
    retry_if_not_exception_type,
    retry_if_result,
    stop_after_attempt,
    wait_fixed,
)

from common.config import (
    IMAGE_PROCESSING_QUEUE,
    IMAGE_RESULT_QUEUE,
    QUEUE_CONNECTION_ATTEMPTS,
    QUEUE_RECONNECT_DELAY,
    QUEUE_RETRY_DELAY,
    RABBITMQ_URL,
)
from common.errors import MalformedMessage, UpstreamUnavailable
from common.messages import QueueMessage

logger = logging.getLogger(__name__)

Handler = Callable[[Dict[str, Any]], None]


class MessageQueue(ABC):
    """What producers and consumers need from the transport."""

    def connect(self) -> Any:
        """Establish the connection up front so startup can fail fast."""

    @abstractmethod
    def enqueue(self, queue_name: str, message: QueueMessage) -> None:
        """Return once the broker has durably accepted ``message``."""

    @abstractmethod
    def consume(self, queue_name: str, handler: Handler) -> None:
        """Block, calling ``handler`` with each decoded message body."""

    def stop(self) -> None:
        pass

    def close(self) -> None:
        pass


def decode_body(body: bytes) -> Dict[str, Any]:
    try:
        payload = json.loads(body)
    except ValueError as exc:  # JSONDecodeError and UnicodeDecodeError
        raise MalformedMessage(f"body is not UTF-8 JSON: {exc}") from exc
    if not isinstance(payload, dict):
        raise MalformedMessage("body is not a JSON object")
    return payload


class RabbitMQClient(MessageQueue):
    def __init__(
        self,
        url: str = RABBITMQ_URL,
        queues: Iterable[str] = (IMAGE_PROCESSING_QUEUE, IMAGE_RESULT_QUEUE),
        connection_attempts: int = QUEUE_CONNECTION_ATTEMPTS,
        reconnect_delay: float = QUEUE_RECONNECT_DELAY,
        retry_delay: float = QUEUE_RETRY_DELAY,
        connection_factory: Callable[[pika.URLParameters], Any] = pika.BlockingConnection,
    ):
        self._params = pika.URLParameters(url)
        self._params.connection_attempts = connection_attempts
        self._params.retry_delay = reconnect_delay
        self._queues = tuple(queues)
        self._reconnect_delay = reconnect_delay
        self._retry_delay = retry_delay
        self._connection_factory = connection_factory
        self._connection = None
        self._channel: Optional[BlockingChannel] = None
        # BlockingConnection is not thread safe; publishers share this lock.
        self._lock = threading.Lock()
        self._stopping = threading.Event()

    @property
    def address(self) -> str:
        return f"{self._params.host}:{self._params.port}"

    def connect(self) -> BlockingChannel:
        """Open the connection and channel if needed and declare the queues.

        Raises UpstreamUnavailable when the broker cannot be reached, which
        callers treat as fatal during startup.
        """
        if self._channel is not None and self._channel.is_open:
            return self._channel
        try:
            self._connection = self._connection_factory(self._params)
            channel = self._connection.channel()
            for name in self._queues:
                channel.queue_declare(queue=name, durable=True)
            channel.confirm_delivery()
            channel.basic_qos(prefetch_count=1)
        except AMQPError as exc:
            self._reset()
            raise UpstreamUnavailable(f"RabbitMQ unreachable at {self.address}: {exc!r}") from exc
        self._channel = channel
        logger.info("Connected to RabbitMQ at %s, queues declared: %s", self.address, ", ".join(self._queues))
        return channel

    def enqueue(self, queue_name: str, message: QueueMessage) -> None:
        body = message.to_body()
        publishing = Retrying(
            # Broker rejections are final, only a broken connection is retried
            retry=retry_if_exception_type(AMQPError) & retry_if_not_exception_type((NackError, UnroutableError)),
            stop=stop_after_attempt(2),
            before_sleep=partial(self._before_republish, queue_name),
            reraise=True,
        )
        with self._lock:
            try:
                publishing(self._publish, queue_name, body)
            except (NackError, UnroutableError) as exc:
                raise UpstreamUnavailable(f"broker rejected message for {queue_name}: {exc!r}") from exc
            except AMQPError as exc:
                self._reset()
                raise UpstreamUnavailable(f"could not publish to {queue_name}: {exc!r}") from exc
        logger.debug("Published to %s: %s", queue_name, body)

    def _before_republish(self, queue_name: str, retry_state: RetryCallState) -> None:
        logger.warning("Publish to %s failed (%r), reconnecting", queue_name, retry_state.outcome.exception())
        self._reset()

    def _publish(self, queue_name: str, body: bytes) -> None:
        channel = self.connect()
        channel.basic_publish(
            exchange="",
            routing_key=queue_name,
            body=body,
            properties=pika.BasicProperties(
                content_type="application/json",
                delivery_mode=pika.DeliveryMode.Persistent,
            ),
            mandatory=True,
        )

    def consume(self, queue_name: str, handler: Handler) -> None:
        """Consume until ``stop()``, reconnecting after a lost connection.

        ``stop()`` is final: once called, later ``consume`` calls return at once.
        """
        if self._stopping.is_set():
            logger.info("Client already stopped, not consuming %s", queue_name)
            return
        consuming = Retrying(
            # A return without stop() means the broker cancelled the consumer
            retry=(
                retry_if_exception_type((AMQPError, UpstreamUnavailable))
                | retry_if_result(lambda _: not self._stopping.is_set())
            ),
            stop=lambda retry_state: self._stopping.is_set(),
            wait=wait_fixed(self._reconnect_delay),
            sleep=self._stopping.wait,
            before_sleep=before_sleep_log(logger, logging.WARNING),
            reraise=True,
        )
        try:
            consuming(self._consume_once, queue_name, handler)
        except (AMQPError, UpstreamUnavailable, RetryError) as exc:
            # Only reached once stopping, tearing down the connection
            logger.debug("Connection error while stopping %s: %r", queue_name, exc)
        logger.info("Stopped consuming %s", queue_name)

    def _consume_once(self, queue_name: str, handler: Handler) -> None:
        channel = self.connect()
        if self._stopping.is_set():
            return
        try:
            channel.basic_consume(queue=queue_name, on_message_callback=partial(self._on_message, handler))
            logger.info("Waiting for messages in %s", queue_name)
            channel.start_consuming()
        except AMQPError:
            self._reset()
            raise

    def _on_message(self, handler: Handler, channel, method, properties, body: bytes) -> None:
        queue_name = method.routing_key
        try:
            handler(decode_body(body))
        except MalformedMessage as exc:
            logger.error("Dropping malformed message from %s: %s", queue_name, exc)
            channel.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
        except UpstreamUnavailable as exc:
            logger.warning("Message from %s will be redelivered in %.1fs: %s", queue_name, self._retry_delay, exc)
            # Scheduled on the connection so heartbeats keep flowing meanwhile
            channel.connection.call_later(
                self._retry_delay,
                partial(channel.basic_nack, delivery_tag=method.delivery_tag, requeue=True),
            )
        except Exception:
            logger.exception("Unhandled error for message from %s, dropping it", queue_name)
            channel.basic_nack(delivery_tag=method.delivery_tag, requeue=False)
        else:
            channel.basic_ack(delivery_tag=method.delivery_tag)

    def stop(self) -> None:
        """Make a blocking ``consume`` return. Safe to call from any thread."""
        self._stopping.set()
        connection, channel = self._connection, self._channel
        if connection is not None and connection.is_open and channel is not None:
            connection.add_callback_threadsafe(channel.stop_consuming)

    def close(self) -> None:
        with self._lock:
            self._reset()

    def _reset(self) -> None:
        connection = self._connection
        self._connection = None
        self._channel = None
        if connection is not None and connection.is_open:
            try:
                connection.close()
            except AMQPError as exc:
                logger.debug("Error while closing a broken connection: %r", exc)
