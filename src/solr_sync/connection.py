from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable
from typing import TYPE_CHECKING, Any

import aio_pika

if TYPE_CHECKING:
    from aio_pika.abc import (
        AbstractChannel,
        AbstractConnection,
        AbstractExchange,
        AbstractIncomingMessage,
        AbstractQueue,
    )

LOGGER = logging.getLogger(__name__)


class ConnectionLost(RuntimeError):
    """The broker connection closed while the service was not shutting down."""


class ShutdownInProgress(RuntimeError):
    """Raised when work is requested after shutdown has started."""


class ConnectionManager:
    """Owns the broker connection, its single channel and the shutdown sequence.

    The connection never reconnects: an unexpected close surfaces as ConnectionLost
    and the process exits for the supervisor to restart.
    """

    def __init__(
        self,
        *,
        amqp_url: str,
        queue_name: str,
        prefetch_count: int,
        retry_exchange_name: str,
    ) -> None:
        if prefetch_count <= 0:
            raise ValueError("prefetch_count must be > 0")

        self._amqp_url = amqp_url
        self._queue_name = queue_name
        self._prefetch_count = prefetch_count
        self._retry_exchange_name = retry_exchange_name

        self._connection: AbstractConnection | None = None
        self._channel: AbstractChannel | None = None
        self._queue: AbstractQueue | None = None
        self._retry_exchange: AbstractExchange | None = None
        self._consumer_tag: str | None = None
        self._shutting_down = False
        self._lost: asyncio.Future[None] | None = None

    @property
    def retry_exchange(self) -> AbstractExchange:
        if self._retry_exchange is None:
            raise RuntimeError("Not connected. Call connect() first.")
        return self._retry_exchange

    async def connect(self) -> None:
        if self._shutting_down:
            raise ShutdownInProgress("connect() called after shutdown started")

        self._lost = asyncio.get_running_loop().create_future()
        self._connection = await aio_pika.connect(self._amqp_url)
        self._connection.close_callbacks.add(self._on_connection_closed)

        self._channel = await self._connection.channel()
        await self._channel.set_qos(prefetch_count=self._prefetch_count)

        # Topology (DLX, retry TTL queue) is provisioned externally; only check presence.
        self._queue = await self._channel.get_queue(self._queue_name, ensure=True)
        if self._retry_exchange_name:
            self._retry_exchange = await self._channel.get_exchange(
                self._retry_exchange_name,
                ensure=False,
            )
        else:
            self._retry_exchange = self._channel.default_exchange

        LOGGER.info(
            "rabbitmq_connected",
            extra={
                "queue": self._queue_name,
                "prefetch_count": self._prefetch_count,
                "retry_exchange": self._retry_exchange_name,
            },
        )

    async def start_consuming(
        self,
        callback: Callable[[AbstractIncomingMessage], Awaitable[Any]],
    ) -> None:
        if self._shutting_down:
            raise ShutdownInProgress("start_consuming() called after shutdown started")
        if self._queue is None:
            raise RuntimeError("Not connected. Call connect() first.")

        self._consumer_tag = await self._queue.consume(callback, no_ack=False)
        LOGGER.info("consuming_started", extra={"queue": self._queue_name})

    async def wait_closed(self) -> None:
        """Block until the connection is lost; raises ConnectionLost when that happens."""

        if self._lost is None:
            raise RuntimeError("Not connected. Call connect() first.")
        await asyncio.shield(self._lost)

    async def stop_consuming(self) -> None:
        if self._queue is None or self._consumer_tag is None:
            return

        consumer_tag, self._consumer_tag = self._consumer_tag, None
        try:
            await self._queue.cancel(consumer_tag)
        except Exception as exc:
            LOGGER.error(
                "rabbitmq_consumer_cancel_failed",
                extra={"error_type": type(exc).__name__, "error": str(exc)},
            )

    async def shutdown(self) -> None:
        if self._shutting_down:
            return

        self._shutting_down = True
        LOGGER.info("rabbitmq_shutdown_started")

        await self.stop_consuming()
        await self._close_channel()
        await self._close_connection()
        LOGGER.info("rabbitmq_shutdown_complete")

    async def _close_channel(self) -> None:
        if self._channel is None:
            return
        try:
            if not self._channel.is_closed:
                await self._channel.close()
        except Exception as exc:
            LOGGER.error(
                "rabbitmq_channel_close_failed",
                extra={"error_type": type(exc).__name__, "error": str(exc)},
            )

    async def _close_connection(self) -> None:
        if self._connection is None:
            return
        try:
            if not self._connection.is_closed:
                await self._connection.close()
        except Exception as exc:
            LOGGER.error(
                "rabbitmq_connection_close_failed",
                extra={"error_type": type(exc).__name__, "error": str(exc)},
            )

    def _on_connection_closed(self, _sender: Any, exc: BaseException | None = None) -> None:
        if self._shutting_down:
            return

        LOGGER.error(
            "rabbitmq_connection_lost",
            extra={"error_type": type(exc).__name__ if exc else None, "error": str(exc) if exc else None},
        )
        if self._lost is not None and not self._lost.done():
            self._lost.set_exception(ConnectionLost(f"RabbitMQ connection closed unexpectedly: {exc!r}"))
