"""
Tests for the registration dialogs, driven through the router.
"""

import pytest

from app.services.records import RepositoryError
from app.telegram_bot.context import DialogKind, Step
from app.telegram_bot.dispatcher import CommandEvent, TextEvent
from app.telegram_bot.registration import (
    RegistrationEngine,
    is_valid_city,
    is_valid_full_name,
    is_valid_phone,
    is_valid_username,
    volunteer_username,
)
from conftest import read_collection, write_collection

CHAT = 42


class Conversation:
    """Sends commands and replies for one chat with increasing message ids."""

    def __init__(self, router, chat_id=CHAT):
        self.router = router
        self.chat_id = chat_id
        self.message_id = 0

    async def command(self, name, args=""):
        self.message_id += 1
        await self.router.dispatch(CommandEvent(self.chat_id, self.message_id, name, args))

    async def say(self, text):
        self.message_id += 1
        await self.router.dispatch(TextEvent(self.chat_id, self.message_id, text))


@pytest.fixture
def chat(router) -> Conversation:
    return Conversation(router)


class TestValidators:
    """Tests for input validation helpers."""

    @pytest.mark.parametrize("text", ["John Smith", "  Mary   Johnson ", "Sadhu Keshavjivandas"])
    def test_valid_full_names(self, text):
        assert is_valid_full_name(text)

    @pytest.mark.parametrize("text", ["John", "", "   ", "J"])
    def test_invalid_full_names(self, text):
        assert not is_valid_full_name(text)

    @pytest.mark.parametrize("text", ["+1-555-123-4567", "555-123-4567", "+44 20 7946 0958", "1 (555) 123-4567"])
    def test_valid_phones(self, text):
        assert is_valid_phone(text)

    @pytest.mark.parametrize("text", ["12345", "abc", "0555-123-4567", "+1-555-123-4567-89012345"])
    def test_invalid_phones(self, text):
        assert not is_valid_phone(text)

    def test_city_and_username(self):
        assert is_valid_city("NY")
        assert not is_valid_city(" N ")
        assert is_valid_username("bob")
        assert not is_valid_username("bo")

    def test_volunteer_username(self):
        assert volunteer_username("  Ravi   Patel ") == "ravi_patel"


class TestPassengerRegistration:
    """/register_passenger flow."""

    async def test_new_passenger(self, chat, transport, sessions, data_dir):
        await chat.command("register_passenger")
        assert "Full Name" in transport.last_text
        assert sessions.get(CHAT).dialog_kind == DialogKind.PASSENGER_REGISTRATION

        await chat.say("Mary Johnson")

        rows = read_collection(data_dir, "passengers.json")
        assert len(rows) == 1
        assert rows[0]["name"] == "Mary Johnson"
        assert rows[0]["telegramChatId"] == CHAT
        assert sessions.get(CHAT) is None
        assert "Successfully registered as passenger" in transport.last_text
        assert "/myflights" in transport.last_text

    async def test_single_word_name_rejected(self, chat, transport, sessions, data_dir):
        await chat.command("register_passenger")
        await chat.say("John")

        assert "First Name & Last Name" in transport.last_text
        session = sessions.get(CHAT)
        assert session.dialog_kind == DialogKind.PASSENGER_REGISTRATION
        assert session.step == Step.FULL_NAME
        assert read_collection(data_dir, "passengers.json") == []

    async def test_links_existing_record(self, chat, transport, data_dir):
        write_collection(data_dir, "passengers.json", [
            {"id": "p1", "name": "John Smith", "telegramChatId": None, "flightCount": 2}
        ])

        await chat.command("register_passenger")
        await chat.say("smith, john")

        rows = read_collection(data_dir, "passengers.json")
        assert len(rows) == 1
        assert rows[0]["telegramChatId"] == CHAT
        assert rows[0]["flightCount"] == 2
        assert "Linked to your passenger record" in transport.last_text

    async def test_record_bound_to_other_chat(self, chat, transport, data_dir):
        write_collection(data_dir, "passengers.json", [
            {"id": "p1", "name": "John Smith", "telegramChatId": 7}
        ])

        await chat.command("register_passenger")
        await chat.say("John Smith")

        rows = read_collection(data_dir, "passengers.json")
        assert rows[0]["telegramChatId"] == 7
        assert "already linked to another Telegram account" in transport.last_text

    async def test_already_registered(self, chat, transport, sessions, data_dir):
        write_collection(data_dir, "passengers.json", [
            {"id": "p1", "name": "John Smith", "telegramChatId": CHAT}
        ])

        await chat.command("register_passenger")

        assert "already registered as a passenger" in transport.last_text
        assert sessions.get(CHAT) is None

    async def test_other_roles_listed(self, chat, transport, sessions, data_dir):
        write_collection(data_dir, "users.json", [
            {"id": "u1", "name": "Ravi Patel", "role": "volunteer", "telegramChatId": CHAT}
        ])

        await chat.command("register_passenger")

        texts = transport.texts_for(CHAT)
        assert "Volunteer (Ravi Patel)" in texts[-2]
        assert sessions.get(CHAT) is not None

    async def test_unlinked_dashboard_account_does_not_block(self, chat, transport, sessions, data_dir):
        write_collection(data_dir, "users.json", [
            {"id": "u1", "username": "admin", "name": "Admin", "role": "admin", "telegramChatId": ""}
        ])

        await chat.command("register_passenger")

        assert "Full Name" in transport.last_text
        assert sessions.get(CHAT).dialog_kind == DialogKind.PASSENGER_REGISTRATION

        await chat.say("Mary Johnson")

        assert read_collection(data_dir, "passengers.json")[0]["telegramChatId"] == CHAT
        assert read_collection(data_dir, "users.json")[0]["telegramChatId"] == ""

    async def test_inline_name_gets_guidance(self, chat, transport, sessions):
        await chat.command("register_passenger", "John Smith")

        assert 'register with the name "John Smith"' in transport.last_text
        assert sessions.get(CHAT) is None

    async def test_legal_name_step(self, sessions, roles, transport, settings, data_dir):
        settings.passenger_legal_name_step = True
        engine = RegistrationEngine(sessions, roles, transport, settings)

        await engine.start_passenger(CHAT)
        await engine.handle_text(CHAT, "Keshav Swami")
        assert sessions.get(CHAT).step == Step.LEGAL_NAME
        assert sessions.get(CHAT).fields == {"fullName": "Keshav Swami"}

        await engine.handle_text(CHAT, "Sadhu Keshavjivandas")

        row = read_collection(data_dir, "passengers.json")[0]
        assert row["name"] == "Keshav Swami"
        assert row["legalName"] == "Sadhu Keshavjivandas"


class TestVolunteerRegistration:
    """/register_volunteer flow."""

    async def test_full_flow(self, chat, transport, sessions, data_dir):
        await chat.command("register_volunteer")
        await chat.say("Ravi Patel")
        assert sessions.get(CHAT).step == Step.CITY

        await chat.say("Edison")
        session = sessions.get(CHAT)
        assert session.step == Step.PHONE
        assert session.fields == {"fullName": "Ravi Patel", "city": "Edison"}

        await chat.say("+1-555-123-4567")

        row = read_collection(data_dir, "users.json")[0]
        assert row["name"] == "Ravi Patel"
        assert row["username"] == "ravi_patel"
        assert row["role"] == "volunteer"
        assert row["city"] == "Edison"
        assert row["phone"] == "+1-555-123-4567"
        assert row["telegramChatId"] == CHAT
        assert sessions.get(CHAT) is None
        assert "/flights" in transport.last_text

    async def test_invalid_phone_reprompts(self, chat, transport, sessions, data_dir):
        await chat.command("register_volunteer")
        await chat.say("Ravi Patel")
        await chat.say("Edison")
        await chat.say("12345")

        assert "valid phone number" in transport.last_text
        assert sessions.get(CHAT).step == Step.PHONE
        assert read_collection(data_dir, "users.json") == []

    async def test_invalid_city_reprompts(self, chat, transport, sessions):
        await chat.command("register_volunteer")
        await chat.say("Ravi Patel")
        await chat.say("E")

        assert "valid city" in transport.last_text
        assert sessions.get(CHAT).step == Step.CITY

    async def test_new_command_discards_previous_dialog(self, chat, sessions):
        await chat.command("register_volunteer")
        await chat.say("Ravi Patel")

        await chat.command("register_passenger")

        session = sessions.get(CHAT)
        assert session.dialog_kind == DialogKind.PASSENGER_REGISTRATION
        assert session.step == Step.FULL_NAME
        assert session.fields == {}

    async def test_legacy_volunteer_session(self, engine, sessions, data_dir):
        from app.telegram_bot.context import ConversationSession

        sessions.put(ConversationSession.from_stored(
            CHAT, {"type": "volunteer", "step": "waiting_name", "data": {}}
        ))

        await engine.handle_text(CHAT, "Ravi Patel")
        assert sessions.get(CHAT).step == Step.PHONE

        await engine.handle_text(CHAT, "555-123-4567")

        row = read_collection(data_dir, "users.json")[0]
        assert row["name"] == "Ravi Patel"
        assert row["phone"] == "555-123-4567"


class TestDashboardUserRegistration:
    """/register_user flow."""

    async def test_unknown_username(self, chat, transport, sessions, data_dir):
        users = [{"id": "u1", "name": "Admin", "username": "admin1", "role": "admin"}]
        write_collection(data_dir, "users.json", users)

        await chat.command("register_user")
        await chat.say("nonexistent_user")

        assert 'Username "nonexistent_user" not found' in transport.last_text
        assert sessions.get(CHAT) is None
        assert read_collection(data_dir, "users.json") == users

    async def test_links_account(self, chat, transport, data_dir):
        write_collection(data_dir, "users.json", [
            {"id": "u1", "name": "Admin One", "username": "admin1", "role": "admin",
             "allowedAirports": ["EWR"], "passwordHash": "x"}
        ])

        await chat.command("register_user")
        await chat.say("ADMIN1")

        row = read_collection(data_dir, "users.json")[0]
        assert row["telegramChatId"] == CHAT
        assert row["passwordHash"] == "x"
        assert "Successfully linked to dashboard account" in transport.last_text
        assert "Administrative Access" in transport.last_text

    async def test_volunteer_account_refused(self, chat, transport, data_dir):
        write_collection(data_dir, "users.json", [
            {"id": "u1", "name": "Ravi Patel", "username": "ravi_patel", "role": "volunteer"}
        ])

        await chat.command("register_user")
        await chat.say("ravi_patel")

        assert "Volunteers cannot register as dashboard users" in transport.last_text
        assert read_collection(data_dir, "users.json")[0].get("telegramChatId") is None

    async def test_already_linked(self, chat, transport, data_dir):
        write_collection(data_dir, "users.json", [
            {"id": "u1", "name": "Admin One", "username": "admin1", "role": "admin", "telegramChatId": CHAT}
        ])

        await chat.command("register_user")
        await chat.say("admin1")

        assert "already registered as dashboard user" in transport.last_text

    async def test_linked_to_other_chat(self, chat, transport, data_dir):
        write_collection(data_dir, "users.json", [
            {"id": "u1", "name": "Admin One", "username": "admin1", "role": "admin", "telegramChatId": 7}
        ])

        await chat.command("register_user")
        await chat.say("admin1")

        assert read_collection(data_dir, "users.json")[0]["telegramChatId"] == 7
        assert "already linked to another Telegram account" in transport.last_text

    async def test_ambiguous_case_insensitive_username(self, chat, transport, data_dir):
        write_collection(data_dir, "users.json", [
            {"id": "u1", "name": "A", "username": "Sam", "role": "user"},
            {"id": "u2", "name": "B", "username": "SAM", "role": "user"},
        ])

        await chat.command("register_user")
        await chat.say("sam")

        assert 'Username "sam" not found' in transport.last_text


class TestFailuresAndCancel:
    """Fail-closed completion and /cancel."""

    async def test_repository_failure_clears_session(self, chat, transport, sessions, roles):
        await chat.command("register_passenger")

        async def broken(*args, **kwargs):
            raise RepositoryError("store unavailable")

        roles.repository.find_by_kind = broken
        await chat.say("Mary Johnson")

        assert sessions.get(CHAT) is None
        assert "Registration failed. Please start again with /register_passenger." in transport.last_text

    async def test_start_fails_when_store_down(self, chat, transport, sessions, roles):
        async def broken(*args, **kwargs):
            raise RepositoryError("store unavailable")

        roles.repository.find_by_kind = broken
        await chat.command("register_passenger")

        assert sessions.get(CHAT) is None
        assert "Registration failed" in transport.last_text

    async def test_cancel(self, chat, transport, sessions):
        await chat.command("register_volunteer")
        await chat.command("cancel")

        assert sessions.get(CHAT) is None
        assert "Registration state cleared" in transport.last_text

    async def test_cancel_without_session(self, chat, transport):
        await chat.command("clear_registration")
        assert "don't have any active registration state" in transport.last_text

    async def test_free_text_without_session_ignored(self, chat, transport):
        await chat.say("hello there")
        assert transport.sent == []

    async def test_session_survives_restart(self, chat, sessions, data_dir, roles, transport, settings):
        from app.services.state_backend import JsonFileStateBackend
        from app.telegram_bot.context import SessionStore

        await chat.command("register_volunteer")
        await chat.say("Ravi Patel")
        await sessions.flush()

        restored = SessionStore(JsonFileStateBackend(data_dir / "registration-states.json"))
        await restored.load()
        engine = RegistrationEngine(restored, roles, transport, settings)

        await engine.handle_text(CHAT, "Edison")
        assert restored.get(CHAT).step == Step.PHONE
