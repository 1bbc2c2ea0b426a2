from __future__ import annotations

import asyncio
import logging
import signal
import sys

import ecs_logging
from pydantic import ValidationError

from solr_sync.connection import ConnectionLost, ConnectionManager
from solr_sync.consumer import ChangeEventConsumer
from solr_sync.event_filter import EventFilter
from solr_sync.notifier import SolrUpdaterNotifier, create_http_client
from solr_sync.settings import Settings

LOGGER = logging.getLogger(__name__)

EXIT_OK = 0
EXIT_FAILURE = 1

_SHUTDOWN_SIGNALS = (signal.SIGINT, signal.SIGTERM)


def configure_logging(*, level_name: str = "INFO", log_format: str = "text") -> None:
    level = getattr(logging, level_name.upper(), logging.INFO)
    if log_format.lower() == "json":
        handler = logging.StreamHandler(sys.stdout)
        handler.setFormatter(ecs_logging.StdlibFormatter())
        logging.basicConfig(level=level, handlers=[handler], force=True)
    else:
        logging.basicConfig(
            level=level,
            format="%(asctime)s %(levelname)s %(name)s %(message)s",
            force=True,
        )

    logging.getLogger("aio_pika").setLevel(logging.WARNING)
    logging.getLogger("aiormq").setLevel(logging.WARNING)
    logging.getLogger("httpx").setLevel(logging.WARNING)


async def run() -> int:
    try:
        settings = Settings()
    except ValidationError:
        configure_logging()
        LOGGER.exception("invalid_configuration")
        return EXIT_FAILURE

    configure_logging(level_name=settings.log_level, log_format=settings.log_format)

    LOGGER.info("service_start", extra={"settings": settings.log_safe_summary()})

    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)

    manager = ConnectionManager(
        amqp_url=settings.amqp_url,
        queue_name=settings.rabbitmq_queue,
        prefetch_count=settings.rabbitmq_prefetch,
        retry_exchange_name=settings.rabbitmq_retry_exchange,
    )
    http_client = create_http_client()
    consumer: ChangeEventConsumer | None = None

    try:
        try:
            await manager.connect()
            consumer = ChangeEventConsumer(
                event_filter=EventFilter(
                    source_database=settings.source_database,
                    tables=settings.supported_table_set,
                ),
                notifier=SolrUpdaterNotifier(
                    client=http_client,
                    base_url=settings.solr_updater_base_url,
                    timeout_s=settings.solr_updater_timeout_s,
                ),
                retry_exchange=manager.retry_exchange,
                retry_routing_key=settings.rabbitmq_retry_routing_key,
                retry_limit=settings.retry_limit,
                max_inflight=settings.rabbitmq_prefetch,
            )
            await manager.start_consuming(consumer.on_message)
        except asyncio.CancelledError:
            raise
        except Exception:
            LOGGER.exception("startup_failed")
            return EXIT_FAILURE

        return await serve_until_stopped(manager=manager, stop_event=stop_event)
    finally:
        if consumer is not None:
            await manager.stop_consuming()
            await consumer.drain(timeout_s=settings.shutdown_grace_s)
        await manager.shutdown()
        await http_client.aclose()
        LOGGER.info("service_stopped")


async def serve_until_stopped(*, manager: ConnectionManager, stop_event: asyncio.Event) -> int:
    """Wait for a shutdown request or a fatal connection loss; return the exit code."""

    stop_task = asyncio.create_task(stop_event.wait(), name="shutdown_signal")
    lost_task = asyncio.create_task(manager.wait_closed(), name="connection_watch")
    tasks = {stop_task, lost_task}

    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    if lost_task in done and not lost_task.cancelled():
        exc = lost_task.exception()
        if isinstance(exc, ConnectionLost):
            LOGGER.error("fatal_connection_lost", extra={"error": str(exc)})
            return EXIT_FAILURE
        if exc is not None:
            raise exc

    LOGGER.info("shutdown_requested")
    return EXIT_OK


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in _SHUTDOWN_SIGNALS:
        loop.add_signal_handler(sig, _request_shutdown, sig, stop_event)


def _request_shutdown(sig: signal.Signals, stop_event: asyncio.Event) -> None:
    if stop_event.is_set():
        LOGGER.info("shutdown_already_in_progress", extra={"signal": sig.name})
        return
    LOGGER.info("shutdown_signal_received", extra={"signal": sig.name})
    stop_event.set()
