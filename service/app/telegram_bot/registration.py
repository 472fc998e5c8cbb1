"""
Registration dialogs: the per-chat state machine.

A registration command starts a session (overwriting any previous one);
each free-text reply is validated against the session's current step and
either re-prompts, advances, or completes the dialog.

Flows:
    PassengerRegistration      FullName [-> LegalName] -> resolve/create Passenger
    VolunteerRegistration      FullName -> City -> Phone -> resolve/create Volunteer
    DashboardUserRegistration  Username -> link existing dashboard account
    PassengerLegacy            FullName [-> Phone] -> resolve/create Passenger
    VolunteerLegacy            FullName -> Phone -> resolve/create Volunteer

Failures while completing a step are fail-closed: the session is deleted and
the user is told which command restarts the flow.
"""

import logging
import re
from typing import Awaitable, Callable, Optional, Protocol

from app.config import Settings, get_settings
from app.services.flights import GREETING
from app.services.records import IdentityRecord, RecordKind, User
from app.services.role_resolution import (
    ResolutionOutcome,
    ResolutionResult,
    RoleResolutionService,
    clean_display_name,
)
from .context import ConversationSession, DialogKind, SessionStore, Step

logger = logging.getLogger("telegram_bot.registration")

PHONE_PATTERN = re.compile(r"^\+?[1-9][\d\-()\s]{7,15}$")

RESTART_COMMANDS = {
    DialogKind.PASSENGER_REGISTRATION: "/register_passenger",
    DialogKind.PASSENGER_LEGACY: "/register_passenger",
    DialogKind.VOLUNTEER_REGISTRATION: "/register_volunteer",
    DialogKind.VOLUNTEER_LEGACY: "/register_volunteer",
    DialogKind.DASHBOARD_USER_REGISTRATION: "/register_user",
}

NAME_FORMAT_HELP = (
    f"{GREETING}\n\n"
    "❌ Please enter your name in First Name & Last Name format.\n\n"
    "Examples:\n"
    "• John Smith\n"
    "• Mary Johnson\n\n"
    "Please try again:"
)

PHONE_FORMAT_HELP = (
    f"{GREETING}\n\n"
    "❌ Please enter a valid phone number.\n\n"
    "Examples:\n"
    "• +1-555-123-4567\n"
    "• 555-123-4567\n"
    "• +44 20 7946 0958"
)


class MessageSender(Protocol):
    async def send_message(self, chat_id: int, text: str, reply_markup: Optional[dict] = None) -> int:
        ...


# ============================================
# Validation
# ============================================

def is_valid_full_name(text: str) -> bool:
    """At least two whitespace-separated words and three characters."""
    value = text.strip()
    return len(value.split()) >= 2 and len(value) >= 3


def is_valid_city(text: str) -> bool:
    return len(text.strip()) >= 2


def is_valid_phone(text: str) -> bool:
    """Optional '+', a non-zero digit, then 7-15 digits / dashes / parentheses."""
    return bool(PHONE_PATTERN.match(re.sub(r"\s+", "", text)))


def is_valid_username(text: str) -> bool:
    return len(text.strip()) >= 3


def volunteer_username(full_name: str) -> str:
    """'Ravi  Patel' -> 'ravi_patel'"""
    return re.sub(r"\s+", "_", full_name.strip()).lower()


def format_roles(roles: list[tuple[RecordKind, IdentityRecord]]) -> str:
    lines = []
    for kind, record in roles:
        if kind == RecordKind.DASHBOARD_USER:
            lines.append(f"👥 Dashboard User ({record.role})")
        elif kind == RecordKind.VOLUNTEER:
            lines.append(f"🤝 Volunteer ({record.display_name})")
        else:
            lines.append(f"👤 Passenger ({record.display_name})")
    return "\n".join(lines)


StepHandler = Callable[[ConversationSession, str], Awaitable[None]]


class RegistrationEngine:
    """Drives registration sessions for all chats."""

    def __init__(
        self,
        sessions: SessionStore,
        roles: RoleResolutionService,
        sender: MessageSender,
        settings: Optional[Settings] = None
    ):
        self.sessions = sessions
        self.roles = roles
        self.sender = sender
        self.settings = settings or get_settings()

        self._steps: dict[tuple[DialogKind, Step], StepHandler] = {
            (DialogKind.PASSENGER_REGISTRATION, Step.FULL_NAME): self._passenger_full_name,
            (DialogKind.PASSENGER_REGISTRATION, Step.LEGAL_NAME): self._passenger_legal_name,
            (DialogKind.PASSENGER_LEGACY, Step.FULL_NAME): self._legacy_passenger_full_name,
            (DialogKind.PASSENGER_LEGACY, Step.PHONE): self._legacy_passenger_phone,
            (DialogKind.VOLUNTEER_REGISTRATION, Step.FULL_NAME): self._volunteer_full_name,
            (DialogKind.VOLUNTEER_REGISTRATION, Step.CITY): self._volunteer_city,
            (DialogKind.VOLUNTEER_REGISTRATION, Step.PHONE): self._volunteer_phone,
            (DialogKind.VOLUNTEER_LEGACY, Step.FULL_NAME): self._legacy_volunteer_full_name,
            (DialogKind.VOLUNTEER_LEGACY, Step.PHONE): self._volunteer_phone,
            (DialogKind.DASHBOARD_USER_REGISTRATION, Step.USERNAME): self._dashboard_username,
        }

    async def _reply(self, chat_id: int, text: str) -> None:
        await self.sender.send_message(chat_id, text)

    def _begin(self, chat_id: int, kind: DialogKind, step: Step) -> None:
        previous = self.sessions.get(chat_id)
        if previous:
            logger.info(
                f"Discarding {previous.dialog_kind.value}/{previous.step.value} session "
                f"for chat_id={chat_id}"
            )
        self.sessions.put(ConversationSession(chat_id=chat_id, dialog_kind=kind, step=step))
        logger.info(f"Started {kind.value} for chat_id={chat_id}")

    def _advance(self, session: ConversationSession, step: Step, **fields: str) -> None:
        self.sessions.put(session.model_copy(update={
            "step": step,
            "fields": {**session.fields, **fields},
        }))
        logger.info(
            f"chat_id={session.chat_id} {session.dialog_kind.value}: "
            f"{session.step.value} -> {step.value}"
        )

    def _finish(self, session: ConversationSession) -> None:
        self.sessions.delete(session.chat_id)
        logger.info(f"Completed {session.dialog_kind.value} for chat_id={session.chat_id}")

    # ============================================
    # Entry points
    # ============================================

    async def start_passenger(self, chat_id: int) -> None:
        try:
            existing = await self.roles.existing_roles(chat_id)
        except Exception as e:
            logger.error(f"Failed to check roles for chat_id={chat_id}: {e}", exc_info=True)
            await self._reply(
                chat_id,
                f"{GREETING}\n\n❌ Registration failed. Please try again later with /register_passenger."
            )
            return

        passenger = next((record for kind, record in existing if kind == RecordKind.PASSENGER), None)
        if passenger:
            await self._reply(
                chat_id,
                f"{GREETING}\n\n"
                "✅ You're already registered as a passenger!\n\n"
                f"👤 Name: {passenger.display_name}\n\n"
                "Use /status to see all your roles."
            )
            return

        if existing:
            await self._reply(
                chat_id,
                f"{GREETING}\n\n"
                f"ℹ️ You currently have these roles:\n{format_roles(existing)}\n\n"
                "Adding passenger role as well..."
            )

        self._begin(chat_id, DialogKind.PASSENGER_REGISTRATION, Step.FULL_NAME)
        await self._reply(
            chat_id,
            f"{GREETING}\n\n"
            "✅ Welcome to West Sant Transportation passenger registration!\n\n"
            "📝 Please enter your Full Name exactly as it appears in the system.\n\n"
            "Format: First Name Last Name\n"
            "Example: Sadhu Keshavjivandas\n\n"
            "Enter your full name now:"
        )

    async def start_volunteer(self, chat_id: int) -> None:
        self._begin(chat_id, DialogKind.VOLUNTEER_REGISTRATION, Step.FULL_NAME)
        await self._reply(
            chat_id,
            f"{GREETING}\n\n"
            "✅ Welcome to West Sant Transportation volunteer registration!\n\n"
            "📝 Please enter your Full Name in First Name & Last Name format.\n\n"
            "Example: John Smith\n\n"
            "Enter your full name:"
        )

    async def start_dashboard_user(self, chat_id: int) -> None:
        self._begin(chat_id, DialogKind.DASHBOARD_USER_REGISTRATION, Step.USERNAME)
        await self._reply(
            chat_id,
            f"{GREETING}\n\n"
            "✅ Welcome to West Sant Transportation dashboard user registration!\n\n"
            "📝 Please enter your dashboard username.\n\n"
            "This should be the username you use to login to the dashboard.\n\n"
            "Enter your username:"
        )

    async def cancel(self, chat_id: int) -> bool:
        """Drop the chat's session. Returns False if there was none."""
        if self.sessions.delete(chat_id):
            logger.info(f"Registration cancelled for chat_id={chat_id}")
            await self._reply(
                chat_id,
                f"{GREETING}\n\n"
                "✅ Registration state cleared. You can now start fresh with "
                "/register_passenger, /register_volunteer, or /register_user."
            )
            return True

        await self._reply(
            chat_id,
            f"{GREETING}\n\nℹ️ You don't have any active registration state to clear."
        )
        return False

    async def handle_text(self, chat_id: int, text: str) -> bool:
        """
        Feed one free-text reply to the chat's session.

        Returns:
            False if the chat has no active session (text not consumed)
        """
        session = self.sessions.get(chat_id)
        if session is None or session.dialog_kind == DialogKind.IDLE:
            return False

        logger.info(
            f"Registration step for chat_id={chat_id}: "
            f"{session.dialog_kind.value}/{session.step.value}"
        )

        handler = self._steps.get((session.dialog_kind, session.step))
        try:
            if handler is None:
                raise ValueError(
                    f"No handler for {session.dialog_kind.value}/{session.step.value}"
                )
            await handler(session, text)
        except Exception as e:
            logger.error(f"Registration step failed for chat_id={chat_id}: {e}", exc_info=True)
            self.sessions.delete(chat_id)
            restart = RESTART_COMMANDS.get(session.dialog_kind, "/start")
            await self._reply(
                chat_id,
                f"{GREETING}\n\n❌ Registration failed. Please start again with {restart}."
            )
        return True

    # ============================================
    # Passenger steps
    # ============================================

    async def _passenger_full_name(self, session: ConversationSession, text: str) -> None:
        if not is_valid_full_name(text):
            await self._reply(session.chat_id, NAME_FORMAT_HELP)
            return

        full_name = clean_display_name(text)
        if self.settings.passenger_legal_name_step:
            self._advance(session, Step.LEGAL_NAME, fullName=full_name)
            await self._reply(
                session.chat_id,
                f"{GREETING}\n\n"
                f"✅ Full Name: {full_name}\n\n"
                "🪪 Please enter your legal name exactly as it appears on your passport or ID:"
            )
            return

        await self._complete_passenger(session, full_name, legal_name=full_name)

    async def _passenger_legal_name(self, session: ConversationSession, text: str) -> None:
        if not is_valid_full_name(text):
            await self._reply(session.chat_id, NAME_FORMAT_HELP)
            return
        await self._complete_passenger(
            session, session.fields["fullName"], legal_name=clean_display_name(text)
        )

    async def _legacy_passenger_full_name(self, session: ConversationSession, text: str) -> None:
        if not is_valid_full_name(text):
            await self._reply(session.chat_id, NAME_FORMAT_HELP)
            return
        full_name = clean_display_name(text)
        await self._complete_passenger(session, full_name, legal_name=full_name)

    async def _legacy_passenger_phone(self, session: ConversationSession, text: str) -> None:
        if not is_valid_phone(text):
            await self._reply(session.chat_id, PHONE_FORMAT_HELP)
            return
        full_name = session.fields["fullName"]
        await self._complete_passenger(session, full_name, legal_name=full_name, phone=text.strip())

    async def _complete_passenger(
        self,
        session: ConversationSession,
        full_name: str,
        legal_name: str,
        phone: Optional[str] = None
    ) -> None:
        result = await self.roles.resolve_or_link(
            RecordKind.PASSENGER,
            full_name,
            session.chat_id,
            fields={"legal_name": legal_name, "phone": phone},
        )
        self._finish(session)

        if result.outcome == ResolutionOutcome.CONFLICT:
            await self._reply_conflict(session.chat_id, RecordKind.PASSENGER, result)
            return

        heading = (
            "✅ Successfully registered as passenger:"
            if result.outcome == ResolutionOutcome.CREATED_NEW
            else "✅ Linked to your passenger record:"
        )
        await self._reply(
            session.chat_id,
            f"{GREETING}\n\n"
            "🎉 Welcome to West Sant Transportation!\n\n"
            f"{heading}\n"
            f"👤 Name: {result.record.display_name}\n\n"
            "You'll receive notifications for:\n"
            "🔔 Flight updates\n"
            "🔔 Pickup/dropoff information\n"
            "🔔 Important announcements\n\n"
            "Available commands:\n"
            "/myflights - View your upcoming flights\n"
            "/status - Check your registration status\n"
            "/help - Show help menu\n\n"
            "Welcome to the system! 🙏"
        )

    # ============================================
    # Volunteer steps
    # ============================================

    async def _volunteer_full_name(self, session: ConversationSession, text: str) -> None:
        if not is_valid_full_name(text):
            await self._reply(session.chat_id, NAME_FORMAT_HELP)
            return

        full_name = clean_display_name(text)
        self._advance(session, Step.CITY, fullName=full_name)
        await self._reply(
            session.chat_id,
            f"{GREETING}\n\n"
            f"✅ Full Name: {full_name}\n\n"
            "🏙️ Please enter your City where you live.\n\n"
            "This helps us assign you to nearby airport pickups/dropoffs.\n\n"
            "Enter your city:"
        )

    async def _legacy_volunteer_full_name(self, session: ConversationSession, text: str) -> None:
        if not is_valid_full_name(text):
            await self._reply(session.chat_id, NAME_FORMAT_HELP)
            return

        full_name = clean_display_name(text)
        self._advance(session, Step.PHONE, fullName=full_name)
        await self._reply(
            session.chat_id,
            f"{GREETING}\n\n"
            f"✅ Full Name: {full_name}\n\n"
            "📱 Please share your phone number so passengers can contact you when needed."
        )

    async def _volunteer_city(self, session: ConversationSession, text: str) -> None:
        if not is_valid_city(text):
            await self._reply(
                session.chat_id,
                f"{GREETING}\n\n❌ Please enter a valid city name.\n\nEnter your city:"
            )
            return

        city = text.strip()
        self._advance(session, Step.PHONE, city=city)
        await self._reply(
            session.chat_id,
            f"{GREETING}\n\n"
            f"✅ City: {city}\n\n"
            "📱 Please share your phone number so passengers can contact you when needed.\n\n"
            "Send your phone number (e.g., +1-555-123-4567 or 555-123-4567):"
        )

    async def _volunteer_phone(self, session: ConversationSession, text: str) -> None:
        if not is_valid_phone(text):
            await self._reply(session.chat_id, PHONE_FORMAT_HELP)
            return

        phone = text.strip()
        full_name = session.fields["fullName"]
        city = session.fields.get("city")

        result = await self.roles.resolve_or_link(
            RecordKind.VOLUNTEER,
            full_name,
            session.chat_id,
            fields={
                "phone": phone,
                "city": city,
                "username": volunteer_username(full_name),
            },
        )
        self._finish(session)

        if result.outcome == ResolutionOutcome.CONFLICT:
            await self._reply_conflict(session.chat_id, RecordKind.VOLUNTEER, result)
            return

        volunteer = result.record
        heading = (
            "✅ Successfully registered as volunteer:"
            if result.outcome == ResolutionOutcome.CREATED_NEW
            else "✅ Linked to your volunteer record:"
        )
        details = f"👤 Name: {volunteer.display_name}\n"
        if volunteer.city:
            details += f"🏙️ City: {volunteer.city}\n"
        details += f"📱 Phone: {volunteer.phone}\n"
        if volunteer.username:
            details += f"🆔 Username: {volunteer.username}\n"

        await self._reply(
            session.chat_id,
            f"{GREETING}\n\n"
            "🎉 Welcome to West Sant Transportation!\n\n"
            f"{heading}\n{details}\n"
            "📝 Note: Your administrator can assign you to specific airports for pickups/dropoffs.\n\n"
            "You'll receive notifications for:\n"
            "🔔 Flight assignments\n"
            "🔔 Passenger contact information\n"
            "🔔 Schedule updates\n\n"
            "Available commands:\n"
            "/flights - View your assigned flights\n"
            "/help - Show help menu\n\n"
            "Thank you for volunteering! 🙏"
        )

    # ============================================
    # Dashboard user steps
    # ============================================

    async def _find_dashboard_account(self, username: str) -> Optional[User]:
        """Exact username, else a unique case-insensitive match. Includes volunteer rows."""
        accounts: list[User] = (
            await self.roles.repository.find_by_kind(RecordKind.DASHBOARD_USER)
            + await self.roles.repository.find_by_kind(RecordKind.VOLUNTEER)
        )
        exact = [a for a in accounts if a.username == username]
        if exact:
            return exact[0]
        folded = [a for a in accounts if a.username and a.username.casefold() == username.casefold()]
        return folded[0] if len(folded) == 1 else None

    async def _dashboard_username(self, session: ConversationSession, text: str) -> None:
        chat_id = session.chat_id
        if not is_valid_username(text):
            await self._reply(
                chat_id,
                f"{GREETING}\n\n"
                "❌ Please enter a valid username (at least 3 characters).\n\n"
                "Enter your dashboard username:"
            )
            return

        username = text.strip()
        account = await self._find_dashboard_account(username)

        if account is None:
            self._finish(session)
            await self._reply(
                chat_id,
                f"{GREETING}\n\n"
                f"❌ Username \"{username}\" not found in the dashboard system.\n\n"
                "Please ensure:\n"
                "• You have a dashboard account\n"
                "• You're using your exact dashboard username\n"
                "• Your account is active\n\n"
                "Contact your administrator if you need help."
            )
            return

        if account.role == "volunteer":
            self._finish(session)
            await self._reply(
                chat_id,
                f"{GREETING}\n\n"
                "❌ Volunteers cannot register as dashboard users.\n\n"
                "Please use: /register_volunteer\n\n"
                "If you need dashboard access, contact your administrator."
            )
            return

        result = await self.roles.link(RecordKind.DASHBOARD_USER, account, chat_id)
        self._finish(session)

        if result.outcome == ResolutionOutcome.CONFLICT:
            await self._reply_conflict(chat_id, RecordKind.DASHBOARD_USER, result)
            return

        user: User = result.record
        if not result.newly_bound:
            await self._reply(
                chat_id,
                f"{GREETING}\n\n"
                f"✅ You're already registered as dashboard user \"{user.display_name}\"!\n\n"
                f"Role: {user.role.capitalize()}\n"
                f"Access Level: {user.access_level}\n\n"
                "Available commands:\n"
                "/help - Show help menu"
            )
            return

        await self._reply(
            chat_id,
            f"{GREETING}\n\n"
            "🎉 Successfully linked to dashboard account!\n\n"
            f"✅ Dashboard User: {user.display_name}\n"
            f"👤 Username: {user.username}\n"
            f"🔑 Role: {user.role.capitalize()}\n"
            f"📊 Access Level: {user.access_level}\n\n"
            "You'll now receive notifications for:\n"
            "🔔 Flight additions and changes\n"
            "🔔 Flight delays and updates\n"
            "🔔 System notifications\n\n"
            "Available commands:\n"
            "/upcomingflights - Flights at your airports\n"
            "/status - Check your registration status\n"
            "/help - Show help menu\n\n"
            "Welcome to the system! 🙏"
        )

    async def _reply_conflict(self, chat_id: int, kind: RecordKind, result: ResolutionResult) -> None:
        if result.reason == "chat_has_other_record":
            text = (
                f"ℹ️ This chat is already registered as {kind.label.lower()} "
                f"\"{result.record.display_name}\".\n\n"
                "Use /status to see your roles."
            )
        else:
            text = (
                f"⚠️ The {kind.label.lower()} record \"{result.record.display_name}\" "
                "is already linked to another Telegram account.\n\n"
                "Please contact your administrator if you think this is a mistake."
            )
        await self._reply(chat_id, f"{GREETING}\n\n{text}")
