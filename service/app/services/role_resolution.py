"""
Role Resolution Service.

Reconciles a claimed identity (typed name, dashboard username, or a name read
off a ticket) with existing identity records, so one person is not registered
twice and a chat is never bound to somebody else's record.

Matching tiers, first hit wins:
1. exact normalized display name
2. exact normalized legal name
3. substring either way (claimed contains record name or record name contains
   claimed), for nicknames and partial names from ticket text

Binding rules:
- a record bound to another chat is never rebound (CONFLICT)
- a chat holds at most one record per kind (CONFLICT otherwise)
- binding is done only here, through RecordRepository.bind_chat
"""

import logging
import re
from dataclasses import dataclass
from enum import Enum
from typing import Optional

from app.services.records import IdentityRecord, RecordKind, RecordRepository

logger = logging.getLogger("telegram_bot.roles")

# Shorter names than this never take part in substring matching
MIN_PARTIAL_MATCH_LENGTH = 3

# Only filled in on a matched record, never replaced
IDENTITY_FIELDS = ("name", "legal_name", "username")


class ResolutionOutcome(str, Enum):
    BOUND_EXISTING = "boundExisting"
    CREATED_NEW = "createdNew"
    CONFLICT = "conflict"


class MatchTier(str, Enum):
    DISPLAY_NAME = "display_name"
    LEGAL_NAME = "legal_name"
    PARTIAL = "partial"


@dataclass
class ResolutionResult:
    """Outcome of resolve_or_link() / link()."""
    outcome: ResolutionOutcome
    record: IdentityRecord
    match_tier: Optional[MatchTier] = None
    # CONFLICT: "bound_elsewhere" or "chat_has_other_record"
    reason: Optional[str] = None
    # False when the record was already bound to this chat before the call
    newly_bound: bool = True


@dataclass
class NameMatch:
    record: IdentityRecord
    tier: MatchTier


def normalize_name(name: Optional[str]) -> str:
    """
    Canonical form used for name comparison.

    "  SMITH,   John " -> "john smith"
    "Mary-Ann  O'Neil" -> "mary ann o neil"
    """
    if not name:
        return ""

    value = name.casefold()
    value = re.sub(r"[^\w\s,]", " ", value)

    # "Last, First" -> "First Last"
    if "," in value:
        last, _, first = value.partition(",")
        value = f"{first} {last}".replace(",", " ")

    return re.sub(r"\s+", " ", value).strip()


def clean_display_name(name: str) -> str:
    """Trim and collapse whitespace, keep the user's spelling and casing."""
    return re.sub(r"\s+", " ", name).strip()


def _binding_rank(record: IdentityRecord, chat_id: Optional[int]) -> int:
    if chat_id is not None and record.telegram_chat_id == chat_id:
        return 0
    if record.telegram_chat_id is None:
        return 1
    return 2


def find_match(
    records: list[IdentityRecord],
    claimed_name: str,
    chat_id: Optional[int] = None
) -> Optional[NameMatch]:
    """
    Best record for claimed_name, or None.

    Within a tier, a record already bound to chat_id wins over an unbound one,
    which wins over a record bound to another chat.
    """
    target = normalize_name(claimed_name)
    if not target:
        return None

    def pick(candidates: list[IdentityRecord]) -> Optional[IdentityRecord]:
        if not candidates:
            return None
        return sorted(candidates, key=lambda r: _binding_rank(r, chat_id))[0]

    by_display = pick([r for r in records if normalize_name(r.display_name) == target])
    if by_display:
        return NameMatch(by_display, MatchTier.DISPLAY_NAME)

    by_legal = pick([
        r for r in records
        if r.legal_name and normalize_name(r.legal_name) == target
    ])
    if by_legal:
        return NameMatch(by_legal, MatchTier.LEGAL_NAME)

    def partially_matches(record: IdentityRecord) -> bool:
        for candidate in (record.display_name, record.legal_name):
            normalized = normalize_name(candidate)
            if min(len(normalized), len(target)) < MIN_PARTIAL_MATCH_LENGTH:
                continue
            if target in normalized or normalized in target:
                return True
        return False

    partial = pick([r for r in records if partially_matches(r)])
    if partial:
        return NameMatch(partial, MatchTier.PARTIAL)

    return None


class RoleResolutionService:
    """Matches claimed identities to records and owns chat binding."""

    def __init__(self, repository: RecordRepository):
        self.repository = repository

    async def existing_roles(self, chat_id: int) -> list[tuple[RecordKind, IdentityRecord]]:
        """Every record bound to chat_id, one entry per kind at most."""
        roles = []
        for kind in RecordKind:
            record = await self.find_record_for_chat(kind, chat_id)
            if record:
                roles.append((kind, record))
        return roles

    async def find_record_for_chat(self, kind: RecordKind, chat_id: int) -> Optional[IdentityRecord]:
        records = await self.repository.find_by_kind(kind)
        return next((r for r in records if r.telegram_chat_id == chat_id), None)

    async def find_by_name(self, kind: RecordKind, name: str) -> Optional[NameMatch]:
        """Name lookup without binding, for ticket processing and admin tools."""
        records = await self.repository.find_by_kind(kind)
        return find_match(records, name)

    async def resolve_or_link(
        self,
        kind: RecordKind,
        claimed_name: str,
        chat_id: int,
        fields: Optional[dict] = None
    ) -> ResolutionResult:
        """
        Bind chat_id to the record matching claimed_name, or create one.

        Args:
            kind: Record kind to search and create
            claimed_name: Name as typed (or extracted from a ticket)
            chat_id: Chat to bind
            fields: Extra values (phone, city, legal_name, username). Used as-is
                    for a new record; merged into a matched record, except that
                    existing identity fields (name, legal name, username)
                    are never replaced

        Returns:
            ResolutionResult with BOUND_EXISTING, CREATED_NEW or CONFLICT
        """
        fields = {k: v for k, v in (fields or {}).items() if v is not None}
        records = await self.repository.find_by_kind(kind)
        chat_record = next((r for r in records if r.telegram_chat_id == chat_id), None)
        match = find_match(records, claimed_name, chat_id)

        if match:
            record = match.record
            logger.info(
                f"Resolved '{claimed_name}' to {kind.value} id={record.id} "
                f"({match.tier.value}) for chat_id={chat_id}"
            )

            if record.telegram_chat_id is not None and record.telegram_chat_id != chat_id:
                logger.warning(
                    f"{kind.value} id={record.id} already bound to another chat, "
                    f"refusing chat_id={chat_id}"
                )
                return ResolutionResult(
                    ResolutionOutcome.CONFLICT, record, match.tier, reason="bound_elsewhere"
                )

            if chat_record and chat_record.id != record.id:
                return ResolutionResult(
                    ResolutionOutcome.CONFLICT, chat_record, match.tier,
                    reason="chat_has_other_record"
                )

            newly_bound = record.telegram_chat_id != chat_id
            if newly_bound:
                record = await self.repository.bind_chat(kind, record.id, chat_id)

            updates = {k: v for k, v in fields.items() if k not in IDENTITY_FIELDS}
            for key in IDENTITY_FIELDS:
                if key in fields and not getattr(record, key, None):
                    updates[key] = fields[key]
            if updates:
                record = await self.repository.update(kind, record.id, updates)

            return ResolutionResult(
                ResolutionOutcome.BOUND_EXISTING, record, match.tier, newly_bound=newly_bound
            )

        if chat_record:
            return ResolutionResult(
                ResolutionOutcome.CONFLICT, chat_record, reason="chat_has_other_record"
            )

        display_name = clean_display_name(claimed_name)
        data = {
            "name": display_name,
            "legal_name": display_name,
            **fields,
            "telegram_chat_id": chat_id,
        }
        record = await self.repository.create(kind, data)
        logger.info(f"No {kind.value} matched '{claimed_name}', created id={record.id}")
        return ResolutionResult(ResolutionOutcome.CREATED_NEW, record)

    async def link(self, kind: RecordKind, record: IdentityRecord, chat_id: int) -> ResolutionResult:
        """Bind a specific, already identified record (dashboard username lookup)."""
        if record.telegram_chat_id == chat_id:
            return ResolutionResult(ResolutionOutcome.BOUND_EXISTING, record, newly_bound=False)

        if record.telegram_chat_id is not None:
            logger.warning(
                f"{kind.value} id={record.id} already bound to another chat, "
                f"refusing chat_id={chat_id}"
            )
            return ResolutionResult(ResolutionOutcome.CONFLICT, record, reason="bound_elsewhere")

        chat_record = await self.find_record_for_chat(kind, chat_id)
        if chat_record and chat_record.id != record.id:
            return ResolutionResult(
                ResolutionOutcome.CONFLICT, chat_record, reason="chat_has_other_record"
            )

        bound = await self.repository.bind_chat(kind, record.id, chat_id)
        logger.info(f"Linked {kind.value} id={record.id} to chat_id={chat_id}")
        return ResolutionResult(ResolutionOutcome.BOUND_EXISTING, bound)
