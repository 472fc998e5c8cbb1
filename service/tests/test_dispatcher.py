"""
Tests for update classification and the command router.
"""

import asyncio

import pytest
from telegram import Update

from app.telegram_bot.dispatcher import (
    CallbackEvent,
    CommandEvent,
    CommandRouter,
    MediaEvent,
    TextEvent,
    classify_update,
    parse_command,
)
from app.telegram_bot.idempotency import IdempotencyGuard, media_event_key

USER = {"id": 42, "is_bot": False, "first_name": "Ravi"}
CHAT = {"id": 42, "type": "private"}


def message(message_id=1, **fields):
    return {"message_id": message_id, "date": 1700000000, "chat": CHAT, "from": USER, **fields}


def update(**fields) -> Update:
    return Update.de_json({"update_id": 1, **fields}, None)


class RecordingHandlers:
    """Stand-in for BotHandlers that records what was routed to it."""

    def __init__(self):
        self.calls: list[tuple[str, object]] = []
        self.failures: list[int] = []
        self.delay = 0.0
        self.active: dict[int, int] = {}
        self.max_active: dict[int, int] = {}
        self.overlap = asyncio.Event()

        for name in (
            "start", "help", "status", "cancel", "register_passenger", "register_volunteer",
            "register_user", "register_sevak", "flights", "myflights", "upcomingflights",
            "flightinfo", "unknown_command",
        ):
            setattr(self, name, self._recorder(name))

    def _recorder(self, name):
        async def handler(event):
            await self._record(name, event)
        return handler

    async def _record(self, name, event):
        chat_id = event.chat_id
        self.active[chat_id] = self.active.get(chat_id, 0) + 1
        self.max_active[chat_id] = max(self.max_active.get(chat_id, 0), self.active[chat_id])
        if len([c for c, n in self.active.items() if n]) > 1:
            self.overlap.set()
        try:
            if self.delay:
                await asyncio.sleep(self.delay)
            self.calls.append((name, event))
        finally:
            self.active[chat_id] -= 1

    async def text(self, event):
        await self._record("text", event)

    async def media(self, event):
        await self._record("media", event)

    async def callback(self, event):
        await self._record("callback", event)

    async def reply_failure(self, chat_id):
        self.failures.append(chat_id)


@pytest.fixture
def recording() -> RecordingHandlers:
    return RecordingHandlers()


@pytest.fixture
def recording_router(recording) -> CommandRouter:
    return CommandRouter(recording, IdempotencyGuard(), IdempotencyGuard(name="media"))


class TestParseCommand:
    """Tests for parse_command()."""

    def test_plain(self):
        assert parse_command("/start") == ("start", "")

    def test_bot_suffix_and_args(self):
        assert parse_command("/register_passenger@WestSantBot John Smith") == (
            "register_passenger", "John Smith"
        )

    def test_case_folded(self):
        assert parse_command("/MyFlights") == ("myflights", "")

    def test_multiline_args(self):
        assert parse_command("/flightinfo UA100\n2024-12-01") == ("flightinfo", "UA100\n2024-12-01")

    def test_not_a_command(self):
        assert parse_command("hello") is None
        assert parse_command("/") is None


class TestClassifyUpdate:
    """Tests for classify_update()."""

    def test_command(self):
        event = classify_update(update(message=message(text="/flightinfo UA100 2024-12-01")))
        assert event == CommandEvent(42, 1, "flightinfo", "UA100 2024-12-01")

    def test_free_text(self):
        event = classify_update(update(message=message(text="John Smith")))
        assert event == TextEvent(42, 1, "John Smith")

    def test_photo_uses_largest_size(self):
        photo = [
            {"file_id": "small", "file_unique_id": "s", "width": 90, "height": 90},
            {"file_id": "large", "file_unique_id": "l", "width": 1280, "height": 1280},
        ]
        event = classify_update(update(message=message(photo=photo)))
        assert isinstance(event, MediaEvent)
        assert event.file_id == "large"
        assert event.media_type == "photo"

    def test_document(self):
        document = {"file_id": "doc", "file_unique_id": "d", "mime_type": "application/pdf",
                    "file_name": "ticket.pdf"}
        event = classify_update(update(message=message(document=document)))
        assert event == MediaEvent(42, 1, "doc", "document", "application/pdf", "ticket.pdf")

    def test_callback(self):
        query = {
            "id": "cb1",
            "from": USER,
            "chat_instance": "ci",
            "data": "flight_nav_1",
            "message": message(message_id=5, text="Flight 1 of 2"),
        }
        event = classify_update(update(callback_query=query))
        assert event == CallbackEvent(42, 5, "cb1", "flight_nav_1")

    def test_ignored_updates(self):
        assert classify_update(update(edited_message=message(text="edited"))) is None
        assert classify_update(update(message=message(sticker={
            "file_id": "st", "file_unique_id": "st", "width": 1, "height": 1,
            "is_animated": False, "is_video": False, "type": "regular",
        }))) is None


class TestRouting:
    """Dispatch table and idempotency gate."""

    async def test_known_command(self, recording, recording_router):
        await recording_router.dispatch(CommandEvent(42, 1, "status"))
        assert [name for name, _ in recording.calls] == ["status"]

    async def test_alias(self, recording, recording_router):
        await recording_router.dispatch(CommandEvent(42, 1, "clear_registration"))
        assert [name for name, _ in recording.calls] == ["cancel"]

    async def test_unknown_command(self, recording, recording_router):
        await recording_router.dispatch(CommandEvent(42, 1, "bogus"))
        assert [name for name, _ in recording.calls] == ["unknown_command"]

    async def test_duplicate_delivery_dropped(self, recording, recording_router):
        event = TextEvent(42, 7, "John Smith")
        await recording_router.dispatch(event)
        await recording_router.dispatch(event)
        assert len(recording.calls) == 1

    async def test_same_message_id_in_other_chat(self, recording, recording_router):
        await recording_router.dispatch(TextEvent(42, 7, "a"))
        await recording_router.dispatch(TextEvent(43, 7, "b"))
        assert len(recording.calls) == 2

    async def test_processed_media_skipped(self, recording, recording_router):
        recording_router.media_guard.mark(media_event_key(42, 3))
        await recording_router.dispatch(MediaEvent(42, 3, "f", "photo"))
        assert recording.calls == []

    async def test_unfinished_media_retried(self, recording, recording_router):
        """Media is only skipped once the pipeline marked it."""
        event = MediaEvent(42, 3, "f", "photo")
        await recording_router.dispatch(event)
        await recording_router.dispatch(event)
        assert len(recording.calls) == 2

    async def test_callback_keyed_by_query_id(self, recording, recording_router):
        await recording_router.dispatch(CallbackEvent(42, 5, "cb1", "flight_nav_1"))
        await recording_router.dispatch(CallbackEvent(42, 5, "cb1", "flight_nav_1"))
        await recording_router.dispatch(CallbackEvent(42, 5, "cb2", "flight_nav_0"))
        assert len(recording.calls) == 2

    async def test_handler_error_answered(self, recording, recording_router):
        async def explode(event):
            raise RuntimeError("boom")

        recording_router.commands["status"] = explode
        await recording_router.dispatch(CommandEvent(42, 1, "status"))

        assert recording.failures == [42]


class TestConcurrency:
    """Per-chat serialisation."""

    async def test_same_chat_serialised(self, recording, recording_router):
        recording.delay = 0.02
        await asyncio.gather(*(
            recording_router.dispatch(TextEvent(42, i, f"msg {i}")) for i in range(5)
        ))

        assert recording.max_active[42] == 1
        assert [event.message_id for _, event in recording.calls] == [0, 1, 2, 3, 4]

    async def test_different_chats_run_concurrently(self, recording):
        router = CommandRouter(recording, IdempotencyGuard(), IdempotencyGuard(name="media"), shards=1024)
        recording.delay = 0.05
        # 1 and 2 land on different shards
        assert router.lock_for(1) is not router.lock_for(2)

        await asyncio.gather(
            router.dispatch(TextEvent(1, 1, "a")),
            router.dispatch(TextEvent(2, 1, "b")),
        )

        assert recording.overlap.is_set()
