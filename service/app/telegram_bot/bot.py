"""
Main Telegram bot handler.

Uses python-telegram-bot for receiving updates, in webhook mode (FastAPI
endpoint feeds handle_telegram_update) or polling mode (Application.updater).
Every update goes through one MessageHandler / CallbackQueryHandler into
classify_update() and the CommandRouter.
"""

from dataclasses import dataclass
from typing import Optional

from telegram import Update
from telegram.ext import Application, CallbackQueryHandler, ContextTypes, MessageHandler, filters

from app.config import Settings, get_settings
from app.services.notifications import NotificationService
from app.services.records import RecordRepository
from app.services.repository import get_record_repository
from app.services.role_resolution import RoleResolutionService
from app.services.state_backend import (
    PROCESSED_MEDIA_MESSAGES_KEY,
    PROCESSED_MESSAGES_KEY,
    REGISTRATION_STATES_KEY,
    get_state_backend,
)
from .context import SessionStore
from .dispatcher import CommandRouter, classify_update
from .handlers import BotHandlers, TicketProcessor, handle_error
from .idempotency import IdempotencyGuard
from .logging_config import bot_logger as logger
from .registration import RegistrationEngine
from .telegram_api import TelegramTransport


@dataclass
class BotRuntime:
    """Everything the handlers need, wired once per process."""
    settings: Settings
    transport: TelegramTransport
    repository: RecordRepository
    sessions: SessionStore
    guard: IdempotencyGuard
    media_guard: IdempotencyGuard
    roles: RoleResolutionService
    engine: RegistrationEngine
    handlers: BotHandlers
    router: CommandRouter
    notifications: NotificationService


def build_runtime(
    settings: Optional[Settings] = None,
    transport: Optional[TelegramTransport] = None,
    repository: Optional[RecordRepository] = None,
    ticket_processor: Optional[TicketProcessor] = None,
    persist_state: bool = True
) -> BotRuntime:
    settings = settings or get_settings()
    transport = transport or TelegramTransport(settings.telegram_bot_token)
    repository = repository or get_record_repository(settings)

    def backend(key: str):
        return get_state_backend(key, settings) if persist_state else None

    sessions = SessionStore(backend(REGISTRATION_STATES_KEY), ttl_hours=settings.session_ttl_hours)
    guard = IdempotencyGuard(
        backend(PROCESSED_MESSAGES_KEY),
        capacity=settings.processed_events_capacity,
        flush_every=settings.processed_events_flush_every,
        name="primary",
    )
    media_guard = IdempotencyGuard(
        backend(PROCESSED_MEDIA_MESSAGES_KEY),
        capacity=settings.processed_events_capacity,
        flush_every=settings.processed_events_flush_every,
        name="media",
    )

    roles = RoleResolutionService(repository)
    engine = RegistrationEngine(sessions, roles, transport, settings)
    handlers = BotHandlers(transport, engine, roles, repository, media_guard, ticket_processor)
    router = CommandRouter(handlers, guard, media_guard)

    return BotRuntime(
        settings=settings,
        transport=transport,
        repository=repository,
        sessions=sessions,
        guard=guard,
        media_guard=media_guard,
        roles=roles,
        engine=engine,
        handlers=handlers,
        router=router,
        notifications=NotificationService(transport, repository),
    )


# Global instances (initialized once)
_runtime: Optional[BotRuntime] = None
_application: Application | None = None


def get_runtime() -> BotRuntime:
    global _runtime
    if _runtime is None:
        _runtime = build_runtime()
    return _runtime


async def route_update(update: Update, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Single PTB entry point: classify once, then dispatch."""
    event = classify_update(update)
    if event is None:
        logger.debug(f"Ignoring update {update.update_id}")
        return
    await get_runtime().router.dispatch(event)


def get_bot_application() -> Application:
    """Get or create telegram bot application."""
    global _application

    if _application is None:
        settings = get_settings()

        _application = (
            Application.builder()
            .token(settings.telegram_bot_token)
            .concurrent_updates(True)
            .build()
        )

        _application.add_handler(MessageHandler(filters.ALL, route_update))
        _application.add_handler(CallbackQueryHandler(route_update))
        _application.add_error_handler(handle_error)

        logger.info("Telegram bot application initialized")

    return _application


async def handle_telegram_update(update_data: dict) -> None:
    """
    Process incoming webhook update from Telegram.

    This is called by FastAPI webhook endpoint.
    Runs handlers in background (fire-and-forget).
    """
    try:
        app = get_bot_application()

        update = Update.de_json(update_data, app.bot)

        if update:
            await app.process_update(update)
        else:
            logger.warning("Received invalid update data")

    except Exception as e:
        logger.error(f"Failed to process update: {e}", exc_info=True)


async def initialize_bot() -> None:
    """
    Initialize bot application (call on startup).

    Restores sessions and processed-event snapshots, then registers the
    webhook or starts polling depending on BOT_MODE.
    """
    settings = get_settings()
    runtime = get_runtime()

    await runtime.sessions.load()
    await runtime.guard.load()
    await runtime.media_guard.load()

    if not settings.telegram_bot_token:
        logger.warning("TELEGRAM_BOT_TOKEN not set, bot disabled")
        return

    app = get_bot_application()
    await app.initialize()

    if settings.bot_mode == "webhook":
        if settings.webhook_url:
            webhook_url = settings.webhook_url.rstrip("/") + "/telegram/webhook"
            await app.bot.set_webhook(
                url=webhook_url,
                secret_token=settings.telegram_webhook_secret or None,
            )
            logger.info(f"Webhook set to {webhook_url}")
        else:
            logger.warning("BOT_MODE=webhook but WEBHOOK_URL is empty, webhook not registered")
    else:
        await app.bot.delete_webhook()
        await app.start()
        await app.updater.start_polling()
        logger.info("Polling for updates")

    logger.info(f"Bot initialized successfully (mode={settings.bot_mode})")


async def shutdown_bot() -> None:
    """
    Shutdown bot application (call on shutdown).

    Pending session and processed-event writes are flushed last.
    """
    global _application
    if _application:
        if _application.updater and _application.updater.running:
            await _application.updater.stop()
        if _application.running:
            await _application.stop()
        await _application.shutdown()
        _application = None
        logger.info("Bot shut down")

    if _runtime is not None:
        await _runtime.sessions.flush()
        await _runtime.guard.flush()
        await _runtime.media_guard.flush()
