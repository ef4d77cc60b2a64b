"""Standalone alerting runner: starts sessions for all users and runs until signalled."""

import asyncio
import logging
import signal

from polyalert.core.config import Settings, get_settings
from polyalert.core.logging import configure_logging
from polyalert.core.store import MemoryStore
from polyalert.core.types import AlertStore, FeedFactory, Notifier
from polyalert.services.alerting.registry import RunnerRegistry
from polyalert.services.feed.polymarket import PolymarketFeedFactory
from polyalert.services.notifier.telegram import LogNotifier, TelegramNotifier


def build_store(settings: Settings) -> MemoryStore:
    """Return the in-memory store, seeded from STORE_SEED_PATH when configured."""

    seed_path = settings.store_seed_path()
    if seed_path is None:
        return MemoryStore()
    return MemoryStore.from_json_file(seed_path)


def build_notifier(settings: Settings) -> Notifier:
    if settings.telegram_enabled():
        return TelegramNotifier(
            token=settings.TELEGRAM_BOT_TOKEN.strip(),
            api_url=settings.TELEGRAM_API_URL,
            timeout_s=settings.TELEGRAM_TIMEOUT_S,
        )
    return LogNotifier()


def build_registry(
    settings: Settings,
    store: AlertStore,
    feed: FeedFactory | None = None,
    notifier: Notifier | None = None,
) -> RunnerRegistry:
    """Wire the registry to the configured feed and notifier unless overridden."""

    if feed is None:
        feed = PolymarketFeedFactory(
            settings.POLYMARKET_WS_URL,
            read_timeout_s=settings.ws_read_timeout(),
            ping_interval_s=settings.ws_ping_interval(),
        )
    if notifier is None:
        notifier = build_notifier(settings)
    return RunnerRegistry(store, feed, notifier, stop_grace_s=settings.stop_grace())


async def start_registry(registry: RunnerRegistry, logger: logging.Logger) -> None:
    """Bulk-start sessions; a failing user listing is logged, not raised."""

    try:
        await registry.start_all()
    except Exception as exc:  # noqa: BLE001
        logger.warning("alerting_start_all_failed", extra={"error": str(exc)})


def _request_shutdown(
    shutdown_event: asyncio.Event, logger: logging.Logger, signal_name: str
) -> None:
    if shutdown_event.is_set():
        return
    logger.info("alerting_shutdown_signal", extra={"signal": signal_name})
    shutdown_event.set()


def _install_signal_handlers(shutdown_event: asyncio.Event, logger: logging.Logger) -> None:
    loop = asyncio.get_running_loop()

    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(
                sig,
                _request_shutdown,
                shutdown_event,
                logger,
                sig.name,
            )
        except NotImplementedError:
            signal_name = sig.name
            signal.signal(
                sig,
                lambda *_, signal_name=signal_name: _request_shutdown(
                    shutdown_event, logger, signal_name
                ),
            )


async def _run() -> int:
    settings = get_settings()
    configure_logging(settings.LOG_LEVEL, service="alerting")
    logger = logging.getLogger(__name__)
    shutdown_event = asyncio.Event()

    try:
        store = build_store(settings)
    except (OSError, ValueError) as exc:
        logger.error("alerting_store_seed_failed", extra={"path": settings.STORE_SEED_PATH, "error": str(exc)})
        return 1

    registry = build_registry(settings, store)
    _install_signal_handlers(shutdown_event, logger)
    logger.info(
        "alerting_startup",
        extra={
            "env": settings.ENV,
            "version": settings.VERSION,
            "url": settings.POLYMARKET_WS_URL,
            "telegram": settings.telegram_enabled(),
        },
    )

    try:
        await start_registry(registry, logger)
        await shutdown_event.wait()
    finally:
        await registry.stop_all()

    logger.info("alerting_shutdown")
    return 0


def main() -> int:
    """Run the alerting runner until interrupted."""

    try:
        return asyncio.run(_run())
    except KeyboardInterrupt:
        return 0


if __name__ == "__main__":
    raise SystemExit(main())
