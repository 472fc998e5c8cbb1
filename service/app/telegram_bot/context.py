"""
Dialog session storage for Telegram bot.

One ConversationSession per chat, kept in memory and written through to the
state backend (registration_states). Writes are fire-and-forget and
coalescing: a flush always serialises the newest snapshot, so a slow write
can never land on top of a newer one.

Persisted shape:
    {"<chatId>": {"dialogKind": "PassengerRegistration", "step": "FullName",
                  "fields": {}, "startedAt": "<ISO8601>"}}

Sessions saved by earlier bot versions ({"type", "step", "data"}) are
converted on load.
"""

import asyncio
import logging
import threading
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError, field_validator

from app.services.state_backend import SnapshotWriter, StateBackend

logger = logging.getLogger("telegram_bot.sessions")


class DialogKind(str, Enum):
    VOLUNTEER_REGISTRATION = "VolunteerRegistration"
    PASSENGER_REGISTRATION = "PassengerRegistration"
    DASHBOARD_USER_REGISTRATION = "DashboardUserRegistration"
    VOLUNTEER_LEGACY = "VolunteerLegacy"
    PASSENGER_LEGACY = "PassengerLegacy"
    IDLE = "Idle"

    @property
    def label(self) -> str:
        return {
            DialogKind.VOLUNTEER_REGISTRATION: "Volunteer registration",
            DialogKind.PASSENGER_REGISTRATION: "Passenger registration",
            DialogKind.DASHBOARD_USER_REGISTRATION: "Dashboard user registration",
            DialogKind.VOLUNTEER_LEGACY: "Volunteer registration",
            DialogKind.PASSENGER_LEGACY: "Passenger registration",
            DialogKind.IDLE: "No registration",
        }[self]


class Step(str, Enum):
    FULL_NAME = "FullName"
    LEGAL_NAME = "LegalName"
    CITY = "City"
    PHONE = "Phone"
    USERNAME = "Username"

    @property
    def label(self) -> str:
        return {
            Step.FULL_NAME: "waiting for your full name",
            Step.LEGAL_NAME: "waiting for your legal name",
            Step.CITY: "waiting for your city",
            Step.PHONE: "waiting for your phone number",
            Step.USERNAME: "waiting for your dashboard username",
        }[self]


# Old {"type": ...} values -> current dialog kinds
LEGACY_TYPES = {
    "passenger": DialogKind.PASSENGER_LEGACY,
    "volunteer": DialogKind.VOLUNTEER_LEGACY,
    "user": DialogKind.DASHBOARD_USER_REGISTRATION,
    "passenger_new": DialogKind.PASSENGER_REGISTRATION,
    "volunteer_new": DialogKind.VOLUNTEER_REGISTRATION,
    "user_new": DialogKind.DASHBOARD_USER_REGISTRATION,
}

LEGACY_STEPS = {
    "waiting_name": Step.FULL_NAME,
    "full_name": Step.FULL_NAME,
    "legal_name": Step.LEGAL_NAME,
    "city": Step.CITY,
    "phone": Step.PHONE,
    "username": Step.USERNAME,
}

LEGACY_FIELDS = {
    "fullName": "fullName",
    "name": "fullName",
    "legalName": "legalName",
    "city": "city",
    "phone": "phone",
}


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ConversationSession(BaseModel):
    """In-progress dialog for one chat."""
    model_config = ConfigDict(populate_by_name=True)

    chat_id: int = Field(alias="chatId")
    dialog_kind: DialogKind = Field(alias="dialogKind")
    step: Step
    fields: dict[str, str] = Field(default_factory=dict)
    started_at: datetime = Field(default_factory=_utc_now, alias="startedAt")

    @field_validator("started_at")
    @classmethod
    def _assume_utc(cls, value: datetime) -> datetime:
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value

    def to_stored(self) -> dict:
        return self.model_dump(by_alias=True, mode="json", exclude={"chat_id"})

    @classmethod
    def from_stored(cls, chat_id: int, data: dict) -> Optional["ConversationSession"]:
        """Build a session from either persisted shape; None if unrecognised."""
        if not isinstance(data, dict):
            return None

        if "dialogKind" in data:
            try:
                return cls.model_validate({**data, "chatId": chat_id})
            except ValidationError as e:
                logger.warning(f"Dropping unreadable session for chat_id={chat_id}: {e}")
                return None

        kind = LEGACY_TYPES.get(data.get("type"))
        step = LEGACY_STEPS.get(data.get("step"))
        if kind is None or step is None:
            return None

        # user / user_new sessions always start by asking for the username
        if kind == DialogKind.DASHBOARD_USER_REGISTRATION:
            step = Step.USERNAME

        fields = {}
        for old_key, value in (data.get("data") or {}).items():
            new_key = LEGACY_FIELDS.get(old_key)
            if new_key and isinstance(value, str):
                fields[new_key] = value

        # The old volunteer flow kept the name under "username"
        legacy_username = (data.get("data") or {}).get("username")
        if kind == DialogKind.VOLUNTEER_LEGACY and "fullName" not in fields and isinstance(legacy_username, str):
            fields["fullName"] = legacy_username

        started_at = data.get("startedAt")
        if started_at is not None:
            try:
                return cls(chat_id=chat_id, dialog_kind=kind, step=step, fields=fields, started_at=started_at)
            except ValidationError:
                logger.warning(f"Unreadable startedAt {started_at!r} for chat_id={chat_id}, using now")
        return cls(chat_id=chat_id, dialog_kind=kind, step=step, fields=fields)


class SessionStore:
    """Per-chat dialog sessions with write-through persistence."""

    def __init__(self, backend: Optional[StateBackend] = None, ttl_hours: float = 0):
        self.backend = backend
        self.ttl = timedelta(hours=ttl_hours) if ttl_hours and ttl_hours > 0 else None

        self._sessions: dict[int, ConversationSession] = {}
        self._lock = threading.Lock()
        self._writer = SnapshotWriter(backend, self.snapshot, "registration sessions", log=logger)

    def __len__(self) -> int:
        with self._lock:
            return len(self._sessions)

    async def load(self) -> int:
        """Read persisted sessions. Returns number of sessions restored."""
        if self.backend is None:
            return 0

        try:
            data = await asyncio.to_thread(self.backend.read_all)
        except Exception as e:
            logger.warning(f"Failed to load registration sessions, starting empty: {e}")
            return 0

        if not data:
            return 0
        if not isinstance(data, dict):
            logger.warning(f"Ignoring registration sessions snapshot of type {type(data).__name__}")
            return 0

        sessions = {}
        for raw_chat_id, raw in data.items():
            try:
                chat_id = int(raw_chat_id)
            except (TypeError, ValueError):
                logger.warning(f"Skipping session with non-numeric chat id {raw_chat_id!r}")
                continue
            session = ConversationSession.from_stored(chat_id, raw)
            if session is None:
                logger.warning(f"Skipping session of unknown shape for chat_id={chat_id}")
                continue
            sessions[chat_id] = session

        with self._lock:
            self._sessions = sessions

        logger.info(f"Loaded {len(sessions)} registration sessions")
        return len(sessions)

    def get(self, chat_id: int) -> Optional[ConversationSession]:
        """Active session for chat_id; expired sessions are dropped here."""
        expired = False
        with self._lock:
            session = self._sessions.get(chat_id)
            if session and self.ttl and _utc_now() - session.started_at > self.ttl:
                del self._sessions[chat_id]
                self._writer.changed()
                expired = True

        if expired:
            logger.info(f"Session for chat_id={chat_id} expired")
            self._writer.schedule()
            return None
        return session

    def put(self, session: ConversationSession) -> None:
        """Insert or overwrite the session for session.chat_id."""
        with self._lock:
            self._sessions[session.chat_id] = session
            self._writer.changed()
        self._writer.schedule()

    def delete(self, chat_id: int) -> bool:
        """Remove the session. Returns False if there was none."""
        with self._lock:
            removed = self._sessions.pop(chat_id, None) is not None
            if removed:
                self._writer.changed()
        if removed:
            self._writer.schedule()
        return removed

    def snapshot(self) -> dict[str, dict]:
        with self._lock:
            return {str(chat_id): s.to_stored() for chat_id, s in self._sessions.items()}

    async def flush(self) -> None:
        """Wait for queued writes, then write the current snapshot."""
        await self._writer.flush()
