"""Pytest configuration and fixtures."""

import copy
import json
from pathlib import Path

import pytest

from app.config import Settings
from app.services.repository import JsonFileRecordRepository
from app.services.role_resolution import RoleResolutionService
from app.services.state_backend import JsonFileStateBackend
from app.telegram_bot.context import SessionStore
from app.telegram_bot.dispatcher import CommandRouter
from app.telegram_bot.handlers import BotHandlers
from app.telegram_bot.idempotency import IdempotencyGuard
from app.telegram_bot.registration import RegistrationEngine


class FakeTransport:
    """Records outbound calls instead of talking to Telegram."""

    def __init__(self):
        self.sent: list[dict] = []
        self.edits: list[dict] = []
        self.callbacks: list[dict] = []
        self._next_id = 1000

    async def send_message(self, chat_id, text, reply_markup=None):
        self._next_id += 1
        self.sent.append({
            "chat_id": chat_id,
            "text": text,
            "reply_markup": reply_markup,
            "message_id": self._next_id,
        })
        return self._next_id

    async def edit_message(self, chat_id, message_id, text, reply_markup=None):
        self.edits.append({
            "chat_id": chat_id,
            "message_id": message_id,
            "text": text,
            "reply_markup": reply_markup,
        })

    async def answer_callback(self, callback_id, text=None):
        self.callbacks.append({"callback_id": callback_id, "text": text})

    async def get_file_url(self, file_id):
        return f"https://files.example/{file_id}"

    @property
    def last_text(self) -> str:
        return self.sent[-1]["text"] if self.sent else ""

    def texts_for(self, chat_id) -> list[str]:
        return [m["text"] for m in self.sent if m["chat_id"] == chat_id]


class MemoryStateBackend:
    """StateBackend kept in memory; counts writes."""

    def __init__(self, data=None):
        self.data = copy.deepcopy(data)
        self.writes = 0

    def read_all(self):
        return copy.deepcopy(self.data)

    def write_all(self, data):
        self.data = copy.deepcopy(data)
        self.writes += 1


def write_collection(data_dir: Path, name: str, rows: list[dict]) -> None:
    data_dir.mkdir(parents=True, exist_ok=True)
    (data_dir / name).write_text(json.dumps(rows), encoding="utf-8")


def read_collection(data_dir: Path, name: str) -> list[dict]:
    path = data_dir / name
    if not path.exists():
        return []
    return json.loads(path.read_text(encoding="utf-8"))


@pytest.fixture
def data_dir(tmp_path) -> Path:
    return tmp_path / "data"


@pytest.fixture
def settings(data_dir) -> Settings:
    return Settings(
        telegram_bot_token="test-token",
        storage_backend="file",
        data_dir=str(data_dir),
        passenger_legal_name_step=False,
        session_ttl_hours=0,
    )


@pytest.fixture
def transport() -> FakeTransport:
    return FakeTransport()


@pytest.fixture
def repository(data_dir) -> JsonFileRecordRepository:
    return JsonFileRecordRepository(data_dir)


@pytest.fixture
def sessions(data_dir) -> SessionStore:
    return SessionStore(JsonFileStateBackend(data_dir / "registration-states.json"))


@pytest.fixture
def roles(repository) -> RoleResolutionService:
    return RoleResolutionService(repository)


@pytest.fixture
def engine(sessions, roles, transport, settings) -> RegistrationEngine:
    return RegistrationEngine(sessions, roles, transport, settings)


@pytest.fixture
def guard() -> IdempotencyGuard:
    return IdempotencyGuard(MemoryStateBackend(), name="primary")


@pytest.fixture
def media_guard() -> IdempotencyGuard:
    return IdempotencyGuard(MemoryStateBackend(), name="media")


@pytest.fixture
def handlers(transport, engine, roles, repository, media_guard) -> BotHandlers:
    return BotHandlers(transport, engine, roles, repository, media_guard)


@pytest.fixture
def router(handlers, guard, media_guard) -> CommandRouter:
    return CommandRouter(handlers, guard, media_guard)
