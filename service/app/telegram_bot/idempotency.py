"""
Idempotency Guard for inbound Telegram events.

Telegram delivers at least once: webhook retries and polling restarts can
hand us the same message twice. Every event key passes through accept()
before any side effect runs; a key that was already accepted is dropped.

Keys live in a bounded FIFO set (oldest evicted first) and the set is
snapshotted to the state backend every Nth insertion, off the reply path.
A crash can therefore replay at most N-1 already-handled events.
"""

import asyncio
import logging
import threading
from collections import OrderedDict
from typing import Optional

from app.services.state_backend import SnapshotWriter, StateBackend

logger = logging.getLogger("telegram_bot.idempotency")

MEDIA_KEY_PREFIX = "photo_"
CALLBACK_KEY_PREFIX = "callback_"


def event_key(chat_id: int, message_id: int) -> str:
    """Key for commands and free text."""
    return f"{chat_id}_{message_id}"


def media_event_key(chat_id: int, message_id: int) -> str:
    """Key for photo / document uploads, tracked by the media guard."""
    return f"{MEDIA_KEY_PREFIX}{chat_id}_{message_id}"


def callback_event_key(callback_id: str) -> str:
    return f"{CALLBACK_KEY_PREFIX}{callback_id}"


class IdempotencyGuard:
    """Bounded recency set of processed event keys."""

    def __init__(
        self,
        backend: Optional[StateBackend] = None,
        capacity: int = 1000,
        flush_every: int = 10,
        name: str = "primary"
    ):
        if capacity < 1 or flush_every < 1:
            raise ValueError("capacity and flush_every must be positive")

        self.backend = backend
        self.capacity = capacity
        self.flush_every = flush_every
        self.name = name

        self._keys: OrderedDict[str, None] = OrderedDict()
        self._lock = threading.Lock()
        self._inserts = 0
        self._writer = SnapshotWriter(
            backend, self.snapshot, f"processed events ({name})", log=logger
        )

    def __len__(self) -> int:
        with self._lock:
            return len(self._keys)

    def accept(self, key: str) -> bool:
        """True the first time key is seen (until evicted), False afterwards."""
        with self._lock:
            if key in self._keys:
                duplicate = True
            else:
                duplicate = False
                should_flush = self._insert(key)

        if duplicate:
            logger.debug(f"[{self.name}] Duplicate event {key} dropped")
            return False

        if should_flush:
            self._writer.schedule()
        return True

    def seen(self, key: str) -> bool:
        with self._lock:
            return key in self._keys

    def mark(self, key: str) -> None:
        """Record key without the accept() check (media pipeline completion)."""
        with self._lock:
            if key in self._keys:
                return
            should_flush = self._insert(key)
        if should_flush:
            self._writer.schedule()

    def snapshot(self) -> list[str]:
        """Keys oldest first."""
        with self._lock:
            return list(self._keys)

    def _insert(self, key: str) -> bool:
        # Caller holds self._lock
        self._keys[key] = None
        while len(self._keys) > self.capacity:
            self._keys.popitem(last=False)
        self._inserts += 1
        self._writer.changed()
        return self._inserts % self.flush_every == 0

    async def load(self) -> int:
        """Restore the persisted snapshot. Returns number of keys loaded."""
        if self.backend is None:
            return 0

        try:
            data = await asyncio.to_thread(self.backend.read_all)
        except Exception as e:
            logger.warning(f"[{self.name}] Failed to load processed events, starting empty: {e}")
            return 0

        if not data:
            return 0
        if not isinstance(data, list):
            logger.warning(f"[{self.name}] Ignoring processed events snapshot of type {type(data).__name__}")
            return 0

        with self._lock:
            self._keys.clear()
            for key in data[-self.capacity:]:
                self._keys[str(key)] = None
            loaded = len(self._keys)

        logger.info(f"[{self.name}] Loaded {loaded} processed event keys")
        return loaded

    async def flush(self) -> None:
        """Wait for scheduled snapshots, then write the current one."""
        await self._writer.flush()
