"""
Telegram command, text, media and callback handlers.

BotHandlers is the target of the CommandRouter dispatch table. Multi-step
registration lives in RegistrationEngine; everything here is one-shot:

- /start, /help, /status
- /register_* entry points (delegate to the engine)
- /cancel, /clear_registration
- /flights (volunteers), /myflights (passengers, with ◀/▶ navigation),
  /upcomingflights (dashboard users), /flightinfo FLIGHT DATE
- photo / document uploads -> TicketProcessor
"""

import logging
from datetime import date
from typing import Optional, Protocol

from telegram import Update
from telegram.ext import ContextTypes

from app.services.flights import (
    FLIGHT_NAV_PREFIX,
    GREETING,
    find_flight,
    flights_at_airports,
    flights_for_passenger,
    flights_for_volunteer,
    format_airport_flights,
    format_flight_details,
    format_flight_list,
    format_flight_page,
)
from app.services.records import RecordKind, RecordRepository
from app.services.role_resolution import RoleResolutionService
from .dispatcher import CallbackEvent, CommandEvent, MediaEvent, TextEvent
from .idempotency import IdempotencyGuard, media_event_key
from .registration import RegistrationEngine, format_roles
from .telegram_api import TelegramTransport, TransportError, inline_keyboard

logger = logging.getLogger("telegram_bot.handlers")

SUPPORTED_DOCUMENT_TYPES = ("application/pdf",)


class TicketProcessor(Protocol):
    """Reads a ticket image / PDF and returns the text to show the user."""

    async def process(self, chat_id: int, file_url: str, media_type: str) -> str:
        ...


def _is_supported_media(event: MediaEvent) -> bool:
    if event.media_type == "photo":
        return True
    mime = event.mime_type or ""
    return mime.startswith("image/") or mime in SUPPORTED_DOCUMENT_TYPES


class BotHandlers:
    def __init__(
        self,
        sender: TelegramTransport,
        engine: RegistrationEngine,
        roles: RoleResolutionService,
        repository: RecordRepository,
        media_guard: IdempotencyGuard,
        ticket_processor: Optional[TicketProcessor] = None
    ):
        self.sender = sender
        self.engine = engine
        self.roles = roles
        self.repository = repository
        self.media_guard = media_guard
        self.ticket_processor = ticket_processor

    async def reply(self, chat_id: int, text: str, reply_markup: Optional[dict] = None) -> int:
        return await self.sender.send_message(chat_id, text, reply_markup=reply_markup)

    async def reply_failure(self, chat_id: int) -> None:
        try:
            await self.reply(chat_id, "❌ Error processing message.\nTry again or use /help")
        except TransportError as e:
            logger.warning(f"Could not send failure notice to chat_id={chat_id}: {e}")

    # ============================================
    # General
    # ============================================

    async def start(self, event: CommandEvent) -> None:
        await self.reply(
            event.chat_id,
            f"{GREETING}\n\n"
            "👋 Welcome to West Sant Transportation!\n\n"
            "Choose your registration type:\n\n"
            "🚗 For Volunteers (Pickup/Dropoff volunteers):\n"
            "Send: /register_volunteer\n\n"
            "✈️ For Passengers:\n"
            "Send: /register_passenger\n\n"
            "👤 For Dashboard Users (Admin/User access holders):\n"
            "Send: /register_user"
        )

    async def help(self, event: CommandEvent) -> None:
        await self.reply(
            event.chat_id,
            f"{GREETING}\n\n"
            "🤖 West Sant Transportation Bot\n\n"
            "Registration Commands:\n"
            "• /start - Start registration process\n"
            "• /register_volunteer - Register as Volunteer\n"
            "• /register_passenger - Register as Passenger\n"
            "• /register_user - Register as Dashboard User\n"
            "• /status - Show your registrations\n"
            "• /cancel - Cancel the registration in progress\n\n"
            "Flight Commands:\n"
            "• /flights - View your assigned flights (Volunteers)\n"
            "• /myflights - View your passenger flights\n"
            "• /upcomingflights - View upcoming flights at your airports (Dashboard Users)\n"
            "• /flightinfo FLIGHT_NUMBER DATE - Get flight details from our system\n"
            "• /help - Show this help menu\n\n"
            "✈️ Send a photo or PDF of your ticket to add your flight.\n\n"
            "Need help? Contact your administrator."
        )

    async def status(self, event: CommandEvent) -> None:
        roles = await self.roles.existing_roles(event.chat_id)
        session = self.engine.sessions.get(event.chat_id)

        if not roles:
            text = f"{GREETING}\n\nℹ️ You're not registered yet. Send /start to register."
        else:
            text = f"{GREETING}\n\n📋 Your registrations:\n{format_roles(roles)}"

        if session:
            text += (
                f"\n\n📝 Registration in progress: {session.dialog_kind.label} "
                f"({session.step.label}). Send /cancel to stop it."
            )
        await self.reply(event.chat_id, text)

    async def cancel(self, event: CommandEvent) -> None:
        await self.engine.cancel(event.chat_id)

    async def unknown_command(self, event: CommandEvent) -> None:
        await self.reply(
            event.chat_id,
            f"❓ Unknown command /{event.name}.\nUse /help to see available commands."
        )

    # ============================================
    # Registration entry points
    # ============================================

    async def register_passenger(self, event: CommandEvent) -> None:
        if event.args:
            await self.reply(
                event.chat_id,
                f"{GREETING}\n\n"
                f"ℹ️ I see you're trying to register with the name \"{event.args}\".\n\n"
                "Please use the interactive registration flow instead:\n\n"
                "1. Send: /register_passenger\n"
                "2. Follow the step-by-step prompts\n\n"
                "This ensures your registration is completed properly."
            )
            return
        await self.engine.start_passenger(event.chat_id)

    async def register_volunteer(self, event: CommandEvent) -> None:
        await self.engine.start_volunteer(event.chat_id)

    async def register_user(self, event: CommandEvent) -> None:
        await self.engine.start_dashboard_user(event.chat_id)

    async def register_sevak(self, event: CommandEvent) -> None:
        await self.reply(
            event.chat_id,
            f"{GREETING}\n\n"
            "ℹ️ The /register_sevak command has been renamed to /register_volunteer.\n\n"
            "Please use: /register_volunteer"
        )

    # ============================================
    # Free text
    # ============================================

    async def text(self, event: TextEvent) -> None:
        consumed = await self.engine.handle_text(event.chat_id, event.text)
        if not consumed:
            logger.debug(f"Ignoring free text from chat_id={event.chat_id} with no active registration")

    # ============================================
    # Flights
    # ============================================

    async def flights(self, event: CommandEvent) -> None:
        chat_id = event.chat_id
        volunteer = await self.roles.find_record_for_chat(RecordKind.VOLUNTEER, chat_id)

        if volunteer is None:
            passenger = await self.roles.find_record_for_chat(RecordKind.PASSENGER, chat_id)
            if passenger:
                await self.reply(
                    chat_id,
                    f"{GREETING}\n\n"
                    "ℹ️ You're registered as a passenger. For your flights, please use:\n\n"
                    "/myflights - View your passenger flights\n\n"
                    "The /flights command is for volunteers only."
                )
            else:
                await self.reply(
                    chat_id,
                    f"{GREETING}\n\n❌ You're not registered as a volunteer. Send /start to register first."
                )
            return

        assigned = flights_for_volunteer(await self.repository.read_flights(), volunteer)
        if not assigned:
            await self.reply(chat_id, f"{GREETING}\n\n📅 No upcoming flights assigned to you.")
            return

        await self.reply(chat_id, format_flight_list("Your Upcoming Flights", assigned))

    async def _passenger_flights(self, chat_id: int):
        passenger = await self.roles.find_record_for_chat(RecordKind.PASSENGER, chat_id)
        if passenger is None:
            return None, []
        return passenger, flights_for_passenger(await self.repository.read_flights(), passenger)

    async def myflights(self, event: CommandEvent) -> None:
        chat_id = event.chat_id
        passenger, flights = await self._passenger_flights(chat_id)

        if passenger is None:
            await self.reply(
                chat_id,
                f"{GREETING}\n\n❌ You're not registered as a passenger. Send /register_passenger to register first."
            )
            return

        if not flights:
            await self.reply(
                chat_id,
                f"{GREETING}\n\n📅 No upcoming flights found for {passenger.display_name}."
            )
            return

        passengers = await self.repository.find_by_kind(RecordKind.PASSENGER)
        text, nav = format_flight_page(flights, 0, passengers)
        await self.reply(chat_id, text, reply_markup=inline_keyboard([nav]) if nav else None)

    async def upcomingflights(self, event: CommandEvent) -> None:
        chat_id = event.chat_id
        user = await self.roles.find_record_for_chat(RecordKind.DASHBOARD_USER, chat_id)

        if user is None:
            await self.reply(
                chat_id,
                f"{GREETING}\n\n❌ You're not registered as a dashboard user. Send /register_user to register first."
            )
            return

        if not user.allowed_airports:
            await self.reply(
                chat_id,
                f"{GREETING}\n\n"
                "📍 Your Airport Access\n\n"
                "You don't have any airports assigned yet.\n\n"
                "Contact your administrator to get airport access permissions."
            )
            return

        upcoming = flights_at_airports(await self.repository.read_flights(), user.allowed_airports)
        await self.reply(chat_id, format_airport_flights(user, upcoming))

    async def flightinfo(self, event: CommandEvent) -> None:
        chat_id = event.chat_id
        params = event.args.split()
        usage = (
            f"{GREETING}\n\n"
            "❌ Invalid format. Please use:\n"
            "/flightinfo FLIGHT_NUMBER DATE\n\n"
            "Example: /flightinfo UA100 2024-12-01"
        )

        if len(params) < 2:
            await self.reply(chat_id, usage)
            return

        flight_number = params[0].upper()
        try:
            on_date = date.fromisoformat(params[1])
        except ValueError:
            await self.reply(chat_id, usage)
            return

        flight = find_flight(await self.repository.read_flights(), flight_number, on_date)
        if flight is None:
            await self.reply(
                chat_id,
                f"{GREETING}\n\n"
                f"❌ Flight {flight_number} not found for {on_date.isoformat()} in our system.\n\n"
                "Only flights in our system can be looked up."
            )
            return

        passengers = await self.repository.find_by_kind(RecordKind.PASSENGER)
        await self.reply(
            chat_id,
            f"{GREETING}\n\n✈️ Flight Information\n\n" + format_flight_details(flight, passengers)
        )

    # ============================================
    # Callbacks
    # ============================================

    async def callback(self, event: CallbackEvent) -> None:
        if not event.data.startswith(FLIGHT_NAV_PREFIX):
            logger.warning(f"Unknown callback data: {event.data}")
            await self.sender.answer_callback(event.callback_id)
            return

        try:
            index = int(event.data[len(FLIGHT_NAV_PREFIX):])
        except ValueError:
            await self.sender.answer_callback(event.callback_id, "Invalid selection")
            return

        passenger, flights = await self._passenger_flights(event.chat_id)
        if passenger is None:
            await self.sender.answer_callback(event.callback_id, "Passenger not found")
            return
        if not 0 <= index < len(flights):
            await self.sender.answer_callback(event.callback_id, "Flight list changed, send /myflights again")
            return

        passengers = await self.repository.find_by_kind(RecordKind.PASSENGER)
        text, nav = format_flight_page(flights, index, passengers)
        await self.sender.edit_message(
            event.chat_id, event.message_id, text, reply_markup=inline_keyboard([nav]) if nav else None
        )
        await self.sender.answer_callback(event.callback_id)

    # ============================================
    # Media
    # ============================================

    async def media(self, event: MediaEvent) -> None:
        """
        Ticket upload pipeline.

        The media guard is marked only after the pipeline finishes, so an
        upload that failed half-way is processed again if Telegram redelivers.
        """
        chat_id = event.chat_id
        key = media_event_key(chat_id, event.message_id)

        if not _is_supported_media(event):
            await self.reply(
                chat_id,
                f"{GREETING}\n\n📄 Please send your ticket as an image or a PDF file."
            )
            self.media_guard.mark(key)
            return

        if self.ticket_processor is None:
            await self.reply(
                chat_id,
                f"{GREETING}\n\nℹ️ Ticket upload is not available right now. "
                "Please send your flight details to your coordinator."
            )
            self.media_guard.mark(key)
            return

        processing_id = await self.reply(chat_id, "🎫 Processing your flight ticket...")

        try:
            file_url = await self.sender.get_file_url(event.file_id)
            summary = await self.ticket_processor.process(chat_id, file_url, event.media_type)
        except Exception as e:
            logger.error(f"Ticket processing failed for chat_id={chat_id}: {e}", exc_info=True)
            await self.sender.edit_message(
                chat_id,
                processing_id,
                "❌ Could not process the ticket. Please try again with a clearer photo."
            )
            return

        await self.sender.edit_message(chat_id, processing_id, summary)
        self.media_guard.mark(key)


async def handle_error(update: object, context: ContextTypes.DEFAULT_TYPE) -> None:
    """Handle errors in handlers."""
    logger.error(f"Bot error: {context.error}", exc_info=context.error)

    if isinstance(update, Update) and update.effective_message:
        await update.effective_message.reply_text(
            "❌ Error processing message.\n"
            "Try again or use /help"
        )
