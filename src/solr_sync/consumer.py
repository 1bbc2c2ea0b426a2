from __future__ import annotations

import asyncio
import logging
from collections.abc import Awaitable, Callable, Mapping
from typing import Any, Protocol

from aio_pika import DeliveryMode, Message

from solr_sync.event_filter import EventFilter
from solr_sync.models import DecodeError, decode_change_event
from solr_sync.notifier import DownstreamError, DownstreamStatusError, SolrUpdaterNotifier
from solr_sync.retry import RetryDecision, attempt_count_from_headers, decide

LOGGER = logging.getLogger(__name__)


class IncomingMessage(Protocol):
    body: bytes
    headers: Mapping[str, Any] | None
    content_type: str | None
    content_encoding: str | None
    message_id: str | None
    correlation_id: str | None

    async def ack(self) -> None:
        ...

    async def nack(self, *, requeue: bool = True) -> None:
        ...


class RetryExchange(Protocol):
    async def publish(self, message: Message, routing_key: str) -> Any:
        ...


class ChangeEventConsumer:
    """Runs decode -> filter -> notify -> decide -> settle for every delivered message.

    Each delivery becomes its own task. The number of concurrent tasks is bounded by
    ``max_inflight``, which matches the channel prefetch so the broker and this
    process agree on how much work can be outstanding.
    """

    def __init__(
        self,
        *,
        event_filter: EventFilter,
        notifier: SolrUpdaterNotifier,
        retry_exchange: RetryExchange,
        retry_routing_key: str,
        retry_limit: int,
        max_inflight: int,
    ) -> None:
        if retry_limit < 0:
            raise ValueError("retry_limit must be >= 0")
        if max_inflight <= 0:
            raise ValueError("max_inflight must be > 0")

        self._filter = event_filter
        self._notifier = notifier
        self._retry_exchange = retry_exchange
        self._retry_routing_key = retry_routing_key
        self._retry_limit = retry_limit
        self._slots = asyncio.Semaphore(max_inflight)
        self._inflight: set[asyncio.Task[RetryDecision]] = set()
        self._closing = False

    @property
    def inflight_count(self) -> int:
        return len(self._inflight)

    async def on_message(self, message: IncomingMessage) -> None:
        """Delivery callback; schedules the message and returns without waiting for it."""

        if self._closing:
            # Consumer cancellation races with in-transit deliveries; hand them back.
            await self._settle(lambda: message.nack(requeue=True), action="requeue", context={})
            return

        await self._slots.acquire()
        task = asyncio.create_task(self._run_slot(message), name="handle_message")
        self._inflight.add(task)
        task.add_done_callback(self._inflight.discard)

    async def drain(self, *, timeout_s: float) -> None:
        """Stop taking new work and wait up to ``timeout_s`` for in-flight handlers."""

        self._closing = True
        if not self._inflight:
            return

        LOGGER.info("draining_inflight_handlers", extra={"inflight_count": len(self._inflight)})
        _, pending = await asyncio.wait(set(self._inflight), timeout=timeout_s)
        if pending:
            LOGGER.warning("inflight_handlers_abandoned", extra={"pending_count": len(pending)})

    async def handle(self, message: IncomingMessage) -> RetryDecision:
        attempt_count = attempt_count_from_headers(message.headers)
        context: dict[str, Any] = {
            "attempt_count": attempt_count,
            "retry_limit": self._retry_limit,
        }

        try:
            succeeded = await self._process(message, context)
            decision = decide(
                succeeded=succeeded,
                attempt_count=attempt_count,
                retry_limit=self._retry_limit,
            )
            await self._execute(decision, message, context)
            return decision
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("message_handler_failed", extra=context)
            try:
                await message.nack(requeue=False)
            except Exception as exc:
                LOGGER.error(
                    "message_nack_failed",
                    extra={**context, "error_type": type(exc).__name__, "error": str(exc)},
                )
            else:
                LOGGER.warning("message_dead_lettered", extra={**context, "cause": "unexpected_error"})
            return RetryDecision.DEAD_LETTER

    async def _run_slot(self, message: IncomingMessage) -> RetryDecision:
        try:
            return await self.handle(message)
        finally:
            self._slots.release()

    async def _process(self, message: IncomingMessage, context: dict[str, Any]) -> bool:
        try:
            event = decode_change_event(message.body)
        except DecodeError as exc:
            LOGGER.error(
                "message_decode_failed",
                extra={**context, "body_size": len(message.body), "error": str(exc)},
            )
            return False

        context.update(table=event.table, row_id=event.row_id, operation=event.operation)
        if not self._filter.accept(event):
            return True

        LOGGER.info("event_processing", extra=context)
        try:
            await self._notifier.notify(event.table, event.row_id)
        except DownstreamStatusError as exc:
            LOGGER.error(
                "solr_updater_failed",
                extra={
                    **context,
                    "error_type": type(exc).__name__,
                    "status_code": exc.status_code,
                    "response_body": exc.body,
                    "error": str(exc),
                },
            )
            return False
        except DownstreamError as exc:
            LOGGER.error(
                "solr_updater_failed",
                extra={**context, "error_type": type(exc).__name__, "error": str(exc)},
            )
            return False

        return True

    async def _execute(
        self,
        decision: RetryDecision,
        message: IncomingMessage,
        context: dict[str, Any],
    ) -> None:
        if decision is RetryDecision.ACK:
            await self._settle(message.ack, action="ack", context=context)
            LOGGER.debug("message_acked", extra=context)
            return

        if decision is RetryDecision.RETRY_REPUBLISH:
            # The original is acked only after the retry copy is confirmed.
            await self._republish(message)
            LOGGER.info(
                "message_republished",
                extra={**context, "retry_routing_key": self._retry_routing_key},
            )
            await self._settle(message.ack, action="ack", context=context)
            return

        LOGGER.warning("message_dead_lettered", extra={**context, "cause": "retry_exhausted"})
        await self._settle(lambda: message.nack(requeue=False), action="nack", context=context)

    async def _republish(self, message: IncomingMessage) -> None:
        retry_message = Message(
            body=message.body,
            headers=dict(message.headers or {}),
            content_type=message.content_type,
            content_encoding=message.content_encoding,
            message_id=message.message_id,
            correlation_id=message.correlation_id,
            delivery_mode=DeliveryMode.PERSISTENT,
        )
        await self._retry_exchange.publish(retry_message, routing_key=self._retry_routing_key)

    async def _settle(
        self,
        action_fn: Callable[[], Awaitable[Any]],
        *,
        action: str,
        context: dict[str, Any],
    ) -> None:
        try:
            await action_fn()
        except Exception as exc:
            if not self._closing:
                raise
            # The channel is being torn down; the broker redelivers anything unsettled.
            LOGGER.warning(
                "message_settle_failed_during_shutdown",
                extra={
                    **context,
                    "action": action,
                    "error_type": type(exc).__name__,
                    "error": str(exc),
                },
            )
