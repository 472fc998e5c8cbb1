"""
Record Repository implementations.

JsonFileRecordRepository: passengers.json / users.json / flights.json in DATA_DIR
SupabaseRecordRepository: passengers / users / flights tables

Both load and rewrite whole collections; there is no optimistic locking, so two
writers racing on the same collection resolve as last-write-wins.
"""

import json
import logging
import os
import tempfile
import uuid
from pathlib import Path
from typing import Optional

from pydantic import BaseModel, ValidationError

from app.config import Settings, get_settings
from app.services.records import (
    RECORD_MODELS,
    Flight,
    IdentityRecord,
    RecordKind,
    RecordRepository,
    RepositoryError,
    utc_now_iso,
)

logger = logging.getLogger("telegram_bot.repository")


def _is_volunteer_row(row: dict) -> bool:
    return row.get("role") == "volunteer"


def _belongs_to(kind: RecordKind, row: dict) -> bool:
    if kind == RecordKind.VOLUNTEER:
        return _is_volunteer_row(row)
    if kind == RecordKind.DASHBOARD_USER:
        return not _is_volunteer_row(row)
    return True


def _new_record(kind: RecordKind, fields: dict) -> IdentityRecord:
    now = utc_now_iso()
    data = {
        "id": str(uuid.uuid4()),
        "created_at": now,
        "updated_at": now,
        **fields,
    }
    if kind == RecordKind.VOLUNTEER:
        data["role"] = "volunteer"
        data.setdefault("allowed_airports", [])
    return RECORD_MODELS[kind].model_validate(data)


def validate_rows(model: type[BaseModel], rows: list[dict], source: str) -> list:
    """Validate stored rows, skipping (and logging) any the model rejects."""
    valid = []
    for row in rows:
        try:
            valid.append(model.model_validate(row))
        except ValidationError as e:
            row_id = row.get("id") if isinstance(row, dict) else None
            logger.warning(
                f"Skipping malformed row id={row_id} in {source}: {e.error_count()} validation error(s)"
            )
    return valid


def write_json_atomic(path: Path, data) -> None:
    """Write JSON through a temp file + rename so readers never see half a file."""
    path.parent.mkdir(parents=True, exist_ok=True)
    fd, tmp_path = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.")
    try:
        with os.fdopen(fd, "w", encoding="utf-8") as f:
            json.dump(data, f, indent=2, ensure_ascii=False)
        os.replace(tmp_path, path)
    except BaseException:
        Path(tmp_path).unlink(missing_ok=True)
        raise


def read_json(path: Path, default):
    if not path.exists():
        return default
    with open(path, "r", encoding="utf-8") as f:
        return json.load(f)


class JsonFileRecordRepository:
    """Identity records kept as JSON arrays on local disk."""

    COLLECTIONS = {
        RecordKind.PASSENGER: "passengers.json",
        RecordKind.VOLUNTEER: "users.json",
        RecordKind.DASHBOARD_USER: "users.json",
    }

    def __init__(self, data_dir: str | Path):
        self.data_dir = Path(data_dir)

    def _path(self, kind: RecordKind) -> Path:
        return self.data_dir / self.COLLECTIONS[kind]

    def _read_rows(self, kind: RecordKind) -> list[dict]:
        try:
            rows = read_json(self._path(kind), [])
        except (OSError, json.JSONDecodeError) as e:
            raise RepositoryError(f"Failed to read {self._path(kind).name}: {e}") from e
        if not isinstance(rows, list):
            raise RepositoryError(f"{self._path(kind).name} does not contain a list")
        return rows

    def _write_rows(self, kind: RecordKind, rows: list[dict]) -> None:
        try:
            write_json_atomic(self._path(kind), rows)
        except OSError as e:
            raise RepositoryError(f"Failed to write {self._path(kind).name}: {e}") from e

    async def find_by_kind(self, kind: RecordKind) -> list[IdentityRecord]:
        rows = [row for row in self._read_rows(kind) if _belongs_to(kind, row)]
        return validate_rows(RECORD_MODELS[kind], rows, self._path(kind).name)

    async def create(self, kind: RecordKind, fields: dict) -> IdentityRecord:
        record = _new_record(kind, fields)
        rows = self._read_rows(kind)
        rows.append(record.model_dump(by_alias=True))
        self._write_rows(kind, rows)
        logger.info(f"Created {kind.value} record id={record.id}, name={record.name}")
        return record

    async def update(self, kind: RecordKind, record_id: str, fields: dict) -> IdentityRecord:
        model = RECORD_MODELS[kind]
        rows = self._read_rows(kind)
        for index, row in enumerate(rows):
            if row.get("id") == record_id and _belongs_to(kind, row):
                current = model.model_validate(row)
                updated = model.model_validate({
                    **current.model_dump(),
                    **fields,
                    "updated_at": utc_now_iso(),
                })
                rows[index] = updated.model_dump(by_alias=True)
                self._write_rows(kind, rows)
                return updated
        raise RepositoryError(f"{kind.value} record {record_id} not found")

    async def bind_chat(self, kind: RecordKind, record_id: str, chat_id: int) -> IdentityRecord:
        return await self.update(kind, record_id, {"telegram_chat_id": chat_id})

    async def read_flights(self) -> list[Flight]:
        path = self.data_dir / "flights.json"
        try:
            rows = read_json(path, [])
        except (OSError, json.JSONDecodeError) as e:
            raise RepositoryError(f"Failed to read flights.json: {e}") from e
        if not isinstance(rows, list):
            raise RepositoryError("flights.json does not contain a list")
        return validate_rows(Flight, rows, "flights.json")


class SupabaseRecordRepository:
    """Identity records in Supabase tables (snake_case columns)."""

    TABLES = {
        RecordKind.PASSENGER: "passengers",
        RecordKind.VOLUNTEER: "users",
        RecordKind.DASHBOARD_USER: "users",
    }

    def __init__(self, client=None):
        if client is None:
            from app.supabase_client import get_supabase_admin
            client = get_supabase_admin()
        self.supabase = client

    def _query(self, kind: RecordKind):
        query = self.supabase.table(self.TABLES[kind]).select("*")
        if kind == RecordKind.VOLUNTEER:
            query = query.eq("role", "volunteer")
        elif kind == RecordKind.DASHBOARD_USER:
            query = query.neq("role", "volunteer")
        return query

    async def find_by_kind(self, kind: RecordKind) -> list[IdentityRecord]:
        try:
            result = self._query(kind).execute()
        except Exception as e:
            raise RepositoryError(f"Failed to load {kind.value} records: {e}") from e
        return validate_rows(RECORD_MODELS[kind], result.data or [], self.TABLES[kind])

    async def create(self, kind: RecordKind, fields: dict) -> IdentityRecord:
        record = _new_record(kind, fields)
        try:
            result = self.supabase.table(self.TABLES[kind]).insert(
                record.model_dump(exclude_none=True)
            ).execute()
        except Exception as e:
            raise RepositoryError(f"Failed to create {kind.value} record: {e}") from e
        if not result.data:
            raise RepositoryError(f"Insert into {self.TABLES[kind]} returned no row")
        logger.info(f"Created {kind.value} record id={record.id}, name={record.name}")
        return RECORD_MODELS[kind].model_validate(result.data[0])

    async def update(self, kind: RecordKind, record_id: str, fields: dict) -> IdentityRecord:
        data = {**fields, "updated_at": utc_now_iso()}
        try:
            result = self.supabase.table(self.TABLES[kind]).update(data).eq(
                "id", record_id
            ).execute()
        except Exception as e:
            raise RepositoryError(f"Failed to update {kind.value} record {record_id}: {e}") from e
        if not result.data:
            raise RepositoryError(f"{kind.value} record {record_id} not found")
        return RECORD_MODELS[kind].model_validate(result.data[0])

    async def bind_chat(self, kind: RecordKind, record_id: str, chat_id: int) -> IdentityRecord:
        return await self.update(kind, record_id, {"telegram_chat_id": chat_id})

    async def read_flights(self) -> list[Flight]:
        try:
            result = self.supabase.table("flights").select("*").execute()
        except Exception as e:
            raise RepositoryError(f"Failed to load flights: {e}") from e
        return validate_rows(Flight, result.data or [], "flights")


def get_record_repository(settings: Optional[Settings] = None) -> RecordRepository:
    """Repository for the configured STORAGE_BACKEND."""
    settings = settings or get_settings()
    if settings.storage_backend == "supabase":
        return SupabaseRecordRepository()
    return JsonFileRecordRepository(settings.data_dir)
