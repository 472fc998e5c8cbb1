"""
Durable storage for bot runtime state (registration sessions, processed update ids).

The bot only needs an opaque read_all()/write_all() pair per key; whether the
snapshot lands in a local JSON file or a Supabase row is a deployment choice.
"""

import asyncio
import json
import logging
import threading
from pathlib import Path
from typing import Any, Callable, Optional, Protocol

from app.config import Settings, get_settings
from app.services.records import RepositoryError, utc_now_iso
from app.services.repository import read_json, write_json_atomic

logger = logging.getLogger("telegram_bot.state")

REGISTRATION_STATES_KEY = "registration_states"
PROCESSED_MESSAGES_KEY = "processed_messages"
PROCESSED_MEDIA_MESSAGES_KEY = "processed_media_messages"


class StateBackend(Protocol):
    """Whole-snapshot persistence for one state key. Both methods are blocking."""

    def read_all(self) -> Optional[Any]:
        ...

    def write_all(self, data: Any) -> None:
        ...


class JsonFileStateBackend:
    """One JSON file per state key."""

    def __init__(self, path: str | Path):
        self.path = Path(path)

    def read_all(self) -> Optional[Any]:
        try:
            return read_json(self.path, None)
        except (OSError, json.JSONDecodeError) as e:
            raise RepositoryError(f"Failed to read {self.path.name}: {e}") from e

    def write_all(self, data: Any) -> None:
        try:
            write_json_atomic(self.path, data)
        except OSError as e:
            raise RepositoryError(f"Failed to write {self.path.name}: {e}") from e


class SupabaseStateBackend:
    """Row in the bot_state table: key (primary key), value (jsonb), updated_at."""

    TABLE = "bot_state"

    def __init__(self, key: str, client=None):
        if client is None:
            from app.supabase_client import get_supabase_admin
            client = get_supabase_admin()
        self.key = key
        self.supabase = client

    def read_all(self) -> Optional[Any]:
        try:
            result = self.supabase.table(self.TABLE).select("value").eq(
                "key", self.key
            ).execute()
        except Exception as e:
            raise RepositoryError(f"Failed to read state {self.key}: {e}") from e
        if not result.data:
            return None
        return result.data[0]["value"]

    def write_all(self, data: Any) -> None:
        try:
            self.supabase.table(self.TABLE).upsert(
                {"key": self.key, "value": data, "updated_at": utc_now_iso()},
                on_conflict="key"
            ).execute()
        except Exception as e:
            raise RepositoryError(f"Failed to write state {self.key}: {e}") from e


class SnapshotWriter:
    """
    Fire-and-forget, coalescing writes of one in-memory snapshot.

    The owner calls changed() after every mutation and schedule() whenever a
    write is due. Each write reads the version first and the snapshot second,
    so a stored version never claims data newer than what was written; a write
    whose version is already stored is skipped. Failures are logged and the
    next write retries with the newest snapshot.
    """

    def __init__(
        self,
        backend: Optional[StateBackend],
        snapshot: Callable[[], Any],
        label: str,
        log: logging.Logger = logger
    ):
        self.backend = backend
        self.label = label
        self._snapshot = snapshot
        self._log = log

        self._lock = threading.Lock()
        self._version = 0
        self._written_version = 0
        self._write_lock = asyncio.Lock()
        self._pending: set[asyncio.Task] = set()

    def changed(self) -> None:
        with self._lock:
            self._version += 1

    def schedule(self) -> None:
        """Queue a background write on the running loop; no-op without one."""
        if self.backend is None:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            self._log.debug(f"No running loop, {self.label} snapshot deferred to flush()")
            return

        task = loop.create_task(self.write())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def write(self, force: bool = False) -> bool:
        """Write the newest snapshot. Returns True if the backend was written."""
        if self.backend is None:
            return False

        async with self._write_lock:
            with self._lock:
                version = self._version
                if not force and version <= self._written_version:
                    return False
            data = self._snapshot()

            try:
                await asyncio.to_thread(self.backend.write_all, data)
            except Exception as e:
                self._log.warning(f"Failed to persist {self.label}: {e}")
                return False

            with self._lock:
                self._written_version = max(self._written_version, version)
            return True

    async def flush(self) -> None:
        """Wait for queued writes, then write the current snapshot."""
        if self.backend is None:
            return
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)
        await self.write(force=True)


def get_state_backend(key: str, settings: Optional[Settings] = None) -> StateBackend:
    """Backend for one state key under the configured STORAGE_BACKEND."""
    settings = settings or get_settings()
    if settings.storage_backend == "supabase":
        return SupabaseStateBackend(key)
    return JsonFileStateBackend(Path(settings.data_dir) / f"{key.replace('_', '-')}.json")
