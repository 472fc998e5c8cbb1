"""
Identity records and the Record Repository contract.

Three kinds of people can be bound to a Telegram chat:
- PASSENGER: travellers, stored in the passengers collection
- VOLUNTEER: drivers, stored in the users collection with role='volunteer'
- DASHBOARD_USER: dashboard accounts, users collection with any other role

Stored documents use camelCase keys (telegramChatId, legalName, ...) in
JSON files and snake_case columns in Supabase; the models accept both.
Unknown keys are preserved so a read-modify-write never drops columns
owned by the dashboard (password hashes, emails, ...).
"""

from datetime import datetime, timezone
from enum import Enum
from typing import Optional, Protocol

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator


class RecordKind(str, Enum):
    """Kinds of identity records a chat can be bound to."""
    PASSENGER = "passenger"
    VOLUNTEER = "volunteer"
    DASHBOARD_USER = "user"

    @property
    def label(self) -> str:
        return {
            RecordKind.PASSENGER: "Passenger",
            RecordKind.VOLUNTEER: "Volunteer",
            RecordKind.DASHBOARD_USER: "Dashboard User",
        }[self]


class BotError(Exception):
    """Base class for errors raised by the bot and its services."""


class RepositoryError(BotError):
    """Backing store unavailable or returned an unusable response."""


def utc_now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


class IdentityRecord(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    name: str = ""
    legal_name: Optional[str] = Field(default=None, alias="legalName")
    telegram_chat_id: Optional[int] = Field(default=None, alias="telegramChatId")
    phone: Optional[str] = None
    created_at: Optional[str] = Field(default=None, alias="createdAt")
    updated_at: Optional[str] = Field(default=None, alias="updatedAt")

    @field_validator("telegram_chat_id", mode="before")
    @classmethod
    def _blank_chat_id(cls, value):
        # the dashboard clears an unlinked chat by writing ""
        if isinstance(value, str) and not value.strip():
            return None
        return value

    @property
    def display_name(self) -> str:
        return self.name


class Passenger(IdentityRecord):
    flight_count: int = Field(default=0, alias="flightCount")


class User(IdentityRecord):
    """Row of the users collection: a volunteer or a dashboard account."""
    username: Optional[str] = None
    role: str = "user"
    city: Optional[str] = None
    allowed_airports: list[str] = Field(default_factory=list, alias="allowedAirports")

    @property
    def display_name(self) -> str:
        return self.name or self.username or ""

    @property
    def access_level(self) -> str:
        if self.role == "superadmin":
            return "Full System Access"
        if self.role == "admin":
            return "Administrative Access"
        return "Standard User Access"


class FlightPassenger(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    passenger_id: Optional[str] = Field(default=None, alias="passengerId")
    name: Optional[str] = None


class Flight(BaseModel):
    model_config = ConfigDict(populate_by_name=True, extra="allow")

    id: str
    airline: str = ""
    flight_number: str = Field(alias="flightNumber")
    origin: str = Field(default="", alias="from")
    destination: str = Field(default="", alias="to")
    departure_date_time: str = Field(alias="departureDateTime")
    arrival_date_time: Optional[str] = Field(default=None, alias="arrivalDateTime")
    passengers: list[FlightPassenger] = Field(default_factory=list)
    pickup_volunteer_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("pickupVolunteerName", "pickupSevakName")
    )
    pickup_volunteer_phone: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("pickupVolunteerPhone", "pickupSevakPhone")
    )
    dropoff_volunteer_name: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("dropoffVolunteerName", "dropoffSevakName")
    )
    dropoff_volunteer_phone: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("dropoffVolunteerPhone", "dropoffSevakPhone")
    )
    notes: Optional[str] = None

    @property
    def departure(self) -> datetime:
        return parse_datetime(self.departure_date_time)


def parse_datetime(value: str) -> datetime:
    """Parse an ISO timestamp; naive values are taken as UTC."""
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


RECORD_MODELS: dict[RecordKind, type[IdentityRecord]] = {
    RecordKind.PASSENGER: Passenger,
    RecordKind.VOLUNTEER: User,
    RecordKind.DASHBOARD_USER: User,
}


class RecordRepository(Protocol):
    """CRUD over identity records. Collections are read-modify-written whole."""

    async def find_by_kind(self, kind: RecordKind) -> list[IdentityRecord]:
        ...

    async def create(self, kind: RecordKind, fields: dict) -> IdentityRecord:
        ...

    async def bind_chat(self, kind: RecordKind, record_id: str, chat_id: int) -> IdentityRecord:
        ...

    async def update(self, kind: RecordKind, record_id: str, fields: dict) -> IdentityRecord:
        ...

    async def read_flights(self) -> list[Flight]:
        ...
