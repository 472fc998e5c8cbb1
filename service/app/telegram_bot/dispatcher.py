"""
Message dispatcher - classifies incoming updates and routes them.

Each Telegram update is classified exactly once into one of four event
types, then routed through a single dispatch table:

    CommandEvent   "/name[@bot] [args]"   -> command table (unknown -> help hint)
    TextEvent      free text              -> registration engine
    MediaEvent     photo / document       -> ticket pipeline (media guard)
    CallbackEvent  inline button press    -> callback handler

Commands, text and callbacks pass the primary Idempotency Guard before any
side effect. Media events use the media guard, which is only marked once the
pipeline completes. Events for one chat are handled one at a time.
"""

import asyncio
import logging
import re
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional, Union

from telegram import Update

from .idempotency import IdempotencyGuard, callback_event_key, event_key, media_event_key

logger = logging.getLogger("telegram_bot.dispatcher")

COMMAND_PATTERN = re.compile(r"^/([A-Za-z0-9_]+)(?:@([A-Za-z0-9_]+))?(?:\s+(.*))?$", re.DOTALL)

LOCK_SHARDS = 64


@dataclass(frozen=True)
class CommandEvent:
    chat_id: int
    message_id: int
    name: str
    args: str = ""


@dataclass(frozen=True)
class TextEvent:
    chat_id: int
    message_id: int
    text: str


@dataclass(frozen=True)
class MediaEvent:
    chat_id: int
    message_id: int
    file_id: str
    media_type: str  # "photo" or "document"
    mime_type: Optional[str] = None
    file_name: Optional[str] = None


@dataclass(frozen=True)
class CallbackEvent:
    chat_id: int
    message_id: int
    callback_id: str
    data: str


InboundEvent = Union[CommandEvent, TextEvent, MediaEvent, CallbackEvent]


def parse_command(text: str) -> Optional[tuple[str, str]]:
    """
    "/register_passenger@WestSantBot John Smith" -> ("register_passenger", "John Smith")
    "/start" -> ("start", "")
    """
    match = COMMAND_PATTERN.match(text.strip())
    if not match:
        return None
    name, _bot, args = match.groups()
    return name.lower(), (args or "").strip()


def classify_update(update: Update) -> Optional[InboundEvent]:
    """Turn a Telegram update into an event; None for updates the bot ignores."""
    query = update.callback_query
    if query is not None:
        if query.message is None:
            return None
        return CallbackEvent(
            chat_id=query.message.chat.id,
            message_id=query.message.message_id,
            callback_id=query.id,
            data=query.data or "",
        )

    message = update.message
    if message is None:
        return None

    chat_id = message.chat.id

    if message.photo:
        # Largest size is last
        return MediaEvent(
            chat_id=chat_id,
            message_id=message.message_id,
            file_id=message.photo[-1].file_id,
            media_type="photo",
            mime_type="image/jpeg",
        )

    if message.document:
        return MediaEvent(
            chat_id=chat_id,
            message_id=message.message_id,
            file_id=message.document.file_id,
            media_type="document",
            mime_type=message.document.mime_type,
            file_name=message.document.file_name,
        )

    if message.text:
        command = parse_command(message.text) if message.text.startswith("/") else None
        if command:
            name, args = command
            return CommandEvent(chat_id, message.message_id, name, args)
        return TextEvent(chat_id, message.message_id, message.text)

    return None


CommandFn = Callable[[CommandEvent], Awaitable[None]]


class CommandRouter:
    """Guard gate + per-chat serialisation + one dispatch table."""

    def __init__(
        self,
        handlers,
        guard: IdempotencyGuard,
        media_guard: IdempotencyGuard,
        shards: int = LOCK_SHARDS
    ):
        self.handlers = handlers
        self.guard = guard
        self.media_guard = media_guard
        self._locks = [asyncio.Lock() for _ in range(shards)]

        self.commands: dict[str, CommandFn] = {
            "start": handlers.start,
            "help": handlers.help,
            "status": handlers.status,
            "cancel": handlers.cancel,
            "clear_registration": handlers.cancel,
            "register_passenger": handlers.register_passenger,
            "register_volunteer": handlers.register_volunteer,
            "register_user": handlers.register_user,
            "register_sevak": handlers.register_sevak,
            "flights": handlers.flights,
            "myflights": handlers.myflights,
            "upcomingflights": handlers.upcomingflights,
            "flightinfo": handlers.flightinfo,
        }

        self._routes = {
            CommandEvent: self._on_command,
            TextEvent: self._on_text,
            MediaEvent: self._on_media,
            CallbackEvent: self._on_callback,
        }

    def lock_for(self, chat_id: int) -> asyncio.Lock:
        return self._locks[hash(chat_id) % len(self._locks)]

    def _admit(self, event: InboundEvent) -> bool:
        if isinstance(event, MediaEvent):
            key = media_event_key(event.chat_id, event.message_id)
            if self.media_guard.seen(key):
                logger.debug(f"Media event {key} already processed, skipping")
                return False
            return True
        if isinstance(event, CallbackEvent):
            return self.guard.accept(callback_event_key(event.callback_id))
        return self.guard.accept(event_key(event.chat_id, event.message_id))

    async def dispatch(self, event: InboundEvent) -> None:
        """Handle one event. Errors are logged and answered with a generic reply."""
        async with self.lock_for(event.chat_id):
            if not self._admit(event):
                return

            route = self._routes[type(event)]
            try:
                await route(event)
            except Exception as e:
                logger.error(
                    f"Failed to handle {type(event).__name__} for chat_id={event.chat_id}: {e}",
                    exc_info=True
                )
                await self.handlers.reply_failure(event.chat_id)

    async def _on_command(self, event: CommandEvent) -> None:
        logger.info(f"Command /{event.name} from chat_id={event.chat_id}")
        handler = self.commands.get(event.name, self.handlers.unknown_command)
        await handler(event)

    async def _on_text(self, event: TextEvent) -> None:
        await self.handlers.text(event)

    async def _on_media(self, event: MediaEvent) -> None:
        logger.info(f"{event.media_type} from chat_id={event.chat_id}")
        await self.handlers.media(event)

    async def _on_callback(self, event: CallbackEvent) -> None:
        await self.handlers.callback(event)
