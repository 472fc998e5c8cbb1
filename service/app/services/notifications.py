"""
Outbound notifications to registered chats.

send_notification() never raises: a failed delivery is logged and reported
as False so callers looping over many recipients keep going.

Flight notifications resolve their recipients from the flight document:
- passengers: flight.passengers entries, by passengerId or by name
- volunteers: pickup/dropoff volunteer names, by name or username
- dashboard users: by the flight's departure and arrival airports
"""

import asyncio
import logging
from typing import Optional, Protocol

from app.services.flights import GREETING, flight_label, format_time
from app.services.records import Flight, Passenger, RecordKind, RecordRepository, User
from app.services.role_resolution import normalize_name

logger = logging.getLogger("telegram_bot.notifications")

PRIVILEGED_ROLES = ("superadmin", "admin")

VOLUNTEER_DUTIES = ("pickup", "dropoff")

CHECK_IN_URLS = {
    "American Airlines": "https://www.aa.com/checkin",
    "Delta Air Lines": "https://www.delta.com/checkin",
    "United Airlines": "https://www.united.com/checkin",
    "Southwest Airlines": "https://www.southwest.com/air/check-in/",
    "JetBlue Airways": "https://www.jetblue.com/checkin",
    "Alaska Airlines": "https://www.alaskaair.com/checkin",
    "Spirit Airlines": "https://www.spirit.com/check-in",
    "Frontier Airlines": "https://www.flyfrontier.com/checkin",
}


class MessageSender(Protocol):
    async def send_message(self, chat_id: int, text: str, reply_markup: Optional[dict] = None) -> int:
        ...


def _route(flight: Flight) -> str:
    return f"{flight.origin} → {flight.destination}"


def _volunteer_line(label: str, name: Optional[str], phone: Optional[str]) -> str:
    if not name:
        return ""
    return f"🚗 {label}: {name}" + (f" ({phone})" if phone else "") + "\n"


def _transport_lines(flight: Flight) -> str:
    return (
        _volunteer_line("Pickup", flight.pickup_volunteer_name, flight.pickup_volunteer_phone)
        + _volunteer_line("Dropoff", flight.dropoff_volunteer_name, flight.dropoff_volunteer_phone)
    )


def _flightinfo_hint(flight: Flight) -> str:
    try:
        day = flight.departure.date().isoformat()
    except ValueError:
        return ""
    return f"\n💡 Use /flightinfo {flight.flight_number} {day} for latest updates."


def volunteer_name_matches(user: User, name: str) -> bool:
    """Name on a flight vs. a volunteer's name or username ('ravi_patel' ~ 'Ravi Patel')."""
    wanted = normalize_name(name)
    if not wanted:
        return False
    if normalize_name(user.name) == wanted:
        return True
    return bool(user.username) and normalize_name(user.username.replace("_", " ")) == wanted


class NotificationService:
    def __init__(self, sender: MessageSender, repository: RecordRepository):
        self.sender = sender
        self.repository = repository

    async def send_notification(self, chat_id: int, text: str) -> bool:
        try:
            await self.sender.send_message(chat_id, text)
            return True
        except Exception as e:
            logger.warning(f"Failed to notify chat_id={chat_id}: {e}")
            return False

    async def _send_all(self, messages: list[tuple[int, str]]) -> int:
        results = await asyncio.gather(
            *(self.send_notification(chat_id, text) for chat_id, text in messages)
        )
        return sum(1 for ok in results if ok)

    async def send_dashboard_notification(self, text: str, airports: Optional[list[str]] = None) -> int:
        """
        Send text to every dashboard user with a bound chat.

        Args:
            text: Message text
            airports: When given, only admins/superadmins, users with no
                      airport restriction and users whose allowed airports
                      include one of these codes

        Returns:
            Number of chats the message was delivered to
        """
        users: list[User] = await self.repository.find_by_kind(RecordKind.DASHBOARD_USER)
        codes = {a.upper() for a in airports if a} if airports else None

        def eligible(user: User) -> bool:
            if user.telegram_chat_id is None:
                return False
            if codes is None or user.role in PRIVILEGED_ROLES or not user.allowed_airports:
                return True
            return bool(codes & {a.upper() for a in user.allowed_airports})

        recipients = [u for u in users if eligible(u)]
        delivered = await self._send_all([(u.telegram_chat_id, text) for u in recipients])
        logger.info(f"Sent dashboard notification to {delivered}/{len(recipients)} users")
        return delivered

    # Recipients

    async def passengers_on_flight(self, flight: Flight) -> list[Passenger]:
        """Passenger records listed on the flight (by id, or by name on older flights)."""
        passengers: list[Passenger] = await self.repository.find_by_kind(RecordKind.PASSENGER)
        by_id = {p.id: p for p in passengers}
        by_name = {normalize_name(p.name): p for p in passengers if p.name}

        found: dict[str, Passenger] = {}
        for entry in flight.passengers:
            passenger = by_id.get(entry.passenger_id) if entry.passenger_id else None
            if passenger is None and entry.name:
                passenger = by_name.get(normalize_name(entry.name))
            if passenger is None:
                logger.info(f"No passenger record for {entry.name or entry.passenger_id} on flight {flight.id}")
                continue
            found[passenger.id] = passenger
        return list(found.values())

    async def find_volunteer(self, name: Optional[str]) -> Optional[User]:
        if not name:
            return None
        volunteers: list[User] = await self.repository.find_by_kind(RecordKind.VOLUNTEER)
        for volunteer in volunteers:
            if volunteer_name_matches(volunteer, name):
                return volunteer
        logger.info(f"Volunteer not found: {name}")
        return None

    async def volunteers_for_flight(self, flight: Flight) -> list[tuple[str, User]]:
        """(duty, volunteer) pairs for the flight's assigned pickup/dropoff volunteers."""
        assigned = []
        for duty, name in (
            ("pickup", flight.pickup_volunteer_name),
            ("dropoff", flight.dropoff_volunteer_name),
        ):
            volunteer = await self.find_volunteer(name)
            if volunteer is not None:
                assigned.append((duty, volunteer))
        return assigned

    # Passenger messages

    async def _send_to_passengers(self, flight: Flight, build) -> int:
        passengers = await self.passengers_on_flight(flight)
        messages = [
            (p.telegram_chat_id, build(p))
            for p in passengers
            if p.telegram_chat_id is not None
        ]
        return await self._send_all(messages)

    async def send_flight_confirmation(self, flight: Flight) -> int:
        """Confirmation to every bound passenger on the flight."""
        def build(passenger: Passenger) -> str:
            text = (
                f"{GREETING}\n\n"
                f"✅ FLIGHT CONFIRMATION\n\n"
                f"Dear {passenger.display_name},\n\n"
                f"✈️ Flight: {flight_label(flight)}\n"
                f"📍 Route: {_route(flight)}\n"
                f"🛫 Departure: {format_time(flight.departure_date_time)}\n"
                f"🛬 Arrival: {format_time(flight.arrival_date_time)}\n\n"
            )
            transport = _transport_lines(flight)
            if transport:
                text += f"{transport}\n"
            if flight.notes and flight.notes.strip():
                text += f"📝 Notes: {flight.notes.strip()}\n\n"
            return text + "Have a safe journey! ✈️"

        delivered = await self._send_to_passengers(flight, build)
        logger.info(f"Sent {delivered} flight confirmation(s) for flight {flight.id}")
        return delivered

    async def send_passenger_flight_update(self, flight: Flight, update_type: str = "changed") -> int:
        def build(passenger: Passenger) -> str:
            return (
                f"{GREETING}\n\n"
                f"📱 YOUR FLIGHT HAS BEEN {update_type.upper()}\n\n"
                f"Dear {passenger.display_name},\n\n"
                f"✈️ Flight: {flight_label(flight)}\n"
                f"📍 Route: {_route(flight)}\n"
                f"🛫 Departure: {format_time(flight.departure_date_time)}\n\n"
                f"{_transport_lines(flight)}"
                f"{_flightinfo_hint(flight)}"
            )

        delivered = await self._send_to_passengers(flight, build)
        logger.info(f"Sent {delivered} passenger update(s) for flight {flight.id}")
        return delivered

    async def send_checkin_reminder(self, flight: Flight) -> int:
        """24-hour check-in reminder to the flight's passengers."""
        url = CHECK_IN_URLS.get(flight.airline)
        where = f"online at {url}" if url else "via your airline's website or mobile app"

        def build(passenger: Passenger) -> str:
            return (
                f"{GREETING}\n\n"
                f"⏰ CHECK-IN REMINDER - 24 Hours Notice\n\n"
                f"✈️ Flight: {flight_label(flight)}\n"
                f"📍 Route: {_route(flight)}\n"
                f"🛫 Departure: {format_time(flight.departure_date_time)}\n\n"
                f"🎫 Time to check in!\n"
                f"Most airlines allow online check-in 24 hours before departure.\n\n"
                f"📱 Check in {where}\n\n"
                f"{_transport_lines(flight)}"
                f"{_flightinfo_hint(flight)}"
            )

        delivered = await self._send_to_passengers(flight, build)
        logger.info(f"Sent {delivered} check-in reminder(s) for flight {flight.id}")
        return delivered

    # Volunteer messages

    async def send_volunteer_reminder(self, flight: Flight, duty: str = "pickup", time_until: str = "2 hours") -> bool:
        """Remind the flight's pickup or dropoff volunteer."""
        if duty not in VOLUNTEER_DUTIES:
            raise ValueError(f"Unknown volunteer duty: {duty}")

        name = flight.pickup_volunteer_name if duty == "pickup" else flight.dropoff_volunteer_name
        volunteer = await self.find_volunteer(name)
        if volunteer is None or volunteer.telegram_chat_id is None:
            logger.info(f"No bound {duty} volunteer for flight {flight.id}")
            return False

        passengers = await self.passengers_on_flight(flight)
        passenger_lines = "\n".join(
            f"• {p.display_name}" + (f" ({p.phone})" if p.phone else "") for p in passengers
        ) or "• None listed"

        text = (
            f"{GREETING}\n\n"
            f"🚨 {duty.upper()} REMINDER\n\n"
            f"✈️ Flight: {flight_label(flight)}\n"
            f"📍 Route: {_route(flight)}\n"
            f"🛫 Departure: {format_time(flight.departure_date_time)}\n\n"
            f"👥 Passengers:\n{passenger_lines}\n\n"
            f"📞 Your contact: {volunteer.phone or 'not on file'}\n\n"
            f"⏰ {time_until} until {duty}\n\n"
            "Please be ready and confirm receipt of this message."
        )
        return await self.send_notification(volunteer.telegram_chat_id, text)

    async def send_volunteer_flight_update(self, flight: Flight, update_type: str = "changed") -> int:
        passengers = await self.passengers_on_flight(flight)
        names = ", ".join(p.display_name for p in passengers) or "None listed"

        messages = []
        for duty, volunteer in await self.volunteers_for_flight(flight):
            if volunteer.telegram_chat_id is None:
                continue
            messages.append((volunteer.telegram_chat_id, (
                f"{GREETING}\n\n"
                f"🔄 FLIGHT {update_type.upper()}\n\n"
                f"You are the {duty} volunteer for this flight.\n\n"
                f"✈️ Flight: {flight_label(flight)}\n"
                f"📍 Route: {_route(flight)}\n"
                f"🛫 Departure: {format_time(flight.departure_date_time)}\n"
                f"👥 Passengers: {names}\n\n"
                "Please update your schedule accordingly."
            )))

        delivered = await self._send_all(messages)
        logger.info(f"Sent {delivered} volunteer update(s) for flight {flight.id}")
        return delivered

    # Flight lifecycle

    def _airports(self, flight: Flight) -> list[str]:
        return [code for code in (flight.origin, flight.destination) if code]

    async def send_flight_added(self, flight: Flight) -> int:
        """Announce a new flight to dashboard users at its airports, then confirm to passengers."""
        text = (
            f"{GREETING}\n\n"
            f"✅ NEW FLIGHT ADDED\n\n"
            f"✈️ Flight: {flight_label(flight)}\n"
            f"📍 Route: {_route(flight)}\n"
            f"🛫 Departure: {format_time(flight.departure_date_time)}\n"
            f"👥 Passengers: {len(flight.passengers)}\n"
            f"{_transport_lines(flight)}"
        ).rstrip()
        delivered = await self.send_dashboard_notification(text, airports=self._airports(flight))
        delivered += await self.send_flight_confirmation(flight)
        return delivered

    async def send_flight_updated(self, flight: Flight, update_type: str = "changed") -> int:
        """Tell dashboard users, assigned volunteers and passengers about a flight change."""
        text = (
            f"{GREETING}\n\n"
            f"🔄 FLIGHT {update_type.upper()}\n\n"
            f"✈️ Flight: {flight_label(flight)}\n"
            f"📍 Route: {_route(flight)}\n"
            f"🛫 Departure: {format_time(flight.departure_date_time)}"
        )
        delivered = await self.send_dashboard_notification(text, airports=self._airports(flight))
        delivered += await self.send_volunteer_flight_update(flight, update_type)
        delivered += await self.send_passenger_flight_update(flight, update_type)
        return delivered
