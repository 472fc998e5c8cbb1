"""
Flight queries and message formatting for the flight commands.

Times are shown as stored (UTC) with a "UTC" suffix; no local-time
conversion is attempted.
"""

from datetime import date, datetime, timedelta, timezone
from typing import Optional

from app.services.records import Flight, IdentityRecord, Passenger, User
from app.services.role_resolution import normalize_name

GREETING = "Jai Swaminarayan 🙏"
UPCOMING_WINDOW = timedelta(days=7)
FLIGHT_NAV_PREFIX = "flight_nav_"


def flight_label(flight: Flight) -> str:
    return " ".join(part for part in (flight.airline, flight.flight_number) if part)


def format_time(value: Optional[str]) -> str:
    if not value:
        return "TBD"
    try:
        parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return value
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc)
    return parsed.strftime("%Y-%m-%d %H:%M") + " UTC"


def _upcoming(flights: list[Flight], now: Optional[datetime] = None) -> list[Flight]:
    now = now or datetime.now(timezone.utc)
    result = []
    for flight in flights:
        try:
            if flight.departure >= now:
                result.append(flight)
        except ValueError:
            continue
    return sorted(result, key=lambda f: f.departure)


def flights_for_passenger(
    flights: list[Flight],
    passenger: Passenger,
    now: Optional[datetime] = None
) -> list[Flight]:
    """Upcoming flights listing the passenger by id, or by name on older flights."""
    name = normalize_name(passenger.name)

    def includes(flight: Flight) -> bool:
        for entry in flight.passengers:
            if entry.passenger_id and entry.passenger_id == passenger.id:
                return True
            if name and entry.name and normalize_name(entry.name) == name:
                return True
        return False

    return [f for f in _upcoming(flights, now) if includes(f)]


def flights_for_volunteer(
    flights: list[Flight],
    volunteer: IdentityRecord,
    now: Optional[datetime] = None
) -> list[Flight]:
    """Upcoming flights where the volunteer does the pickup or the dropoff."""
    name = normalize_name(volunteer.display_name)
    if not name:
        return []

    def assigned(flight: Flight) -> bool:
        return name in (
            normalize_name(flight.pickup_volunteer_name),
            normalize_name(flight.dropoff_volunteer_name),
        )

    return [f for f in _upcoming(flights, now) if assigned(f)]


def flights_at_airports(
    flights: list[Flight],
    airports: list[str],
    now: Optional[datetime] = None
) -> list[Flight]:
    """Flights departing within the next 7 days from or to one of airports."""
    now = now or datetime.now(timezone.utc)
    codes = {a.upper() for a in airports}
    return [
        f for f in _upcoming(flights, now)
        if f.departure <= now + UPCOMING_WINDOW
        and (f.origin.upper() in codes or f.destination.upper() in codes)
    ]


def find_flight(flights: list[Flight], flight_number: str, on_date: date) -> Optional[Flight]:
    number = flight_number.replace(" ", "").lower()
    for flight in flights:
        try:
            departure_day = flight.departure.astimezone(timezone.utc).date()
        except ValueError:
            continue
        if flight.flight_number.replace(" ", "").lower() == number and departure_day == on_date:
            return flight
    return None


def passenger_names(flight: Flight, passengers: list[Passenger]) -> list[str]:
    by_id = {p.id: p.name for p in passengers}
    names = []
    for entry in flight.passengers:
        if entry.name:
            names.append(entry.name)
        elif entry.passenger_id:
            names.append(by_id.get(entry.passenger_id, "Unknown Passenger"))
    return names


def format_flight_summary(index: int, flight: Flight) -> str:
    lines = [
        f"{index}. {flight_label(flight)}",
        f"   {flight.origin} → {flight.destination}",
        f"   🕐 Departure: {format_time(flight.departure_date_time)}",
    ]
    if flight.pickup_volunteer_name:
        lines.append(f"   🚗 Pickup: {flight.pickup_volunteer_name}")
    if flight.dropoff_volunteer_name:
        lines.append(f"   🚗 Dropoff: {flight.dropoff_volunteer_name}")
    return "\n".join(lines)


def format_flight_list(title: str, flights: list[Flight], limit: int = 5) -> str:
    body = "\n\n".join(
        format_flight_summary(i + 1, flight) for i, flight in enumerate(flights[:limit])
    )
    text = f"{GREETING}\n\n✈️ {title}\n\n{body}"
    if len(flights) > limit:
        text += f"\n\n…and {len(flights) - limit} more"
    return text


def format_flight_details(flight: Flight, passengers: list[Passenger]) -> str:
    text = (
        f"✈️ {flight_label(flight)}\n\n"
        f"🛫 Departure\n{flight.origin}\n{format_time(flight.departure_date_time)}\n\n"
        f"🛬 Arrival\n{flight.destination}\n{format_time(flight.arrival_date_time)}\n\n"
    )

    names = passenger_names(flight, passengers)
    if names:
        text += f"👥 Passengers\n{', '.join(names)}\n\n"

    if flight.pickup_volunteer_name or flight.dropoff_volunteer_name:
        text += "🚗 Transportation\n"
        if flight.pickup_volunteer_name:
            text += f"Pickup: {flight.pickup_volunteer_name}"
            if flight.pickup_volunteer_phone:
                text += f" • {flight.pickup_volunteer_phone}"
            text += "\n"
        if flight.dropoff_volunteer_name:
            text += f"Dropoff: {flight.dropoff_volunteer_name}"
            if flight.dropoff_volunteer_phone:
                text += f" • {flight.dropoff_volunteer_phone}"
            text += "\n"
        text += "\n"

    text += f"📝 Notes\n{flight.notes.strip() if flight.notes and flight.notes.strip() else 'No additional notes'}"
    return text


def format_flight_page(flights: list[Flight], index: int, passengers: list[Passenger]) -> tuple[str, list[dict]]:
    """
    One flight of a passenger's list plus its ◀/▶ navigation buttons.

    Returns:
        (text, button row; empty when there is nothing to page to)
    """
    flight = flights[index]
    text = (
        f"{GREETING}\n\n✈️ Flight {index + 1} of {len(flights)}\n\n"
        + format_flight_details(flight, passengers)
    )

    row = []
    if index > 0:
        row.append({"text": "◀️ Previous", "callback_data": f"{FLIGHT_NAV_PREFIX}{index - 1}"})
    if index < len(flights) - 1:
        row.append({"text": "Next ▶️", "callback_data": f"{FLIGHT_NAV_PREFIX}{index + 1}"})

    return text, row


def format_airport_flights(user: User, flights: list[Flight]) -> str:
    airports = ", ".join(user.allowed_airports)
    if not flights:
        return (
            f"{GREETING}\n\n📍 Your Airports\n{airports}\n\n"
            "✈️ Upcoming Flights (Next 7 Days)\n\n"
            "No upcoming flights found for your assigned airports."
        )

    codes = {a.upper() for a in user.allowed_airports}
    parts = [f"{GREETING}\n\n📍 Upcoming Flights at Your Airports\n{airports}"]
    for i, flight in enumerate(flights):
        departure_mark = " ⭐" if flight.origin.upper() in codes else ""
        arrival_mark = " ⭐" if flight.destination.upper() in codes else ""
        parts.append(
            f"Flight {i + 1} of {len(flights)}\n"
            f"✈️ {flight_label(flight)}\n"
            f"🛫 {flight.origin}{departure_mark} {format_time(flight.departure_date_time)}\n"
            f"🛬 {flight.destination}{arrival_mark} {format_time(flight.arrival_date_time)}"
        )
    return "\n\n".join(parts)
