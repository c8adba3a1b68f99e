"""
Expense Lifecycle - Audit Trail Service

Hash-chained, append-only audit logging.

Every entry hashes its own fields together with the hash of the previous
entry for the same entity. Verification replays the chain and recomputes each
hash, so any edited, removed or reordered row is reported along with every
entry after it.
"""

import hashlib
import json
import logging
import uuid
from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict, List, Optional, Sequence

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from app.models.audit import AuditLogEntry
from app.models.base import as_utc, utcnow

logger = logging.getLogger(__name__)

GENESIS_HASH = "0" * 64


class AuditEncoder(json.JSONEncoder):
    """JSON encoder for the value types that appear in audit snapshots"""
    def default(self, obj):
        if isinstance(obj, Decimal):
            return str(obj)
        if isinstance(obj, datetime):
            return canonical_timestamp(obj)
        if isinstance(obj, date):
            return obj.isoformat()
        if isinstance(obj, uuid.UUID):
            return str(obj)
        if isinstance(obj, Enum):
            return obj.value
        return super().default(obj)


def canonical_timestamp(value: datetime) -> str:
    """Naive UTC ISO-8601 with microseconds; stable across database backends."""
    return as_utc(value).replace(tzinfo=None).isoformat(timespec="microseconds")


def to_json_value(value: Optional[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Normalize a snapshot to plain JSON types so stored and hashed forms agree."""
    if value is None:
        return None
    return json.loads(json.dumps(value, cls=AuditEncoder))


def compute_entry_hash(fields: Dict[str, Any], previous_hash: str) -> str:
    """sha256 over the canonical JSON of ``fields`` followed by ``previous_hash``."""
    canonical = json.dumps(fields, cls=AuditEncoder, sort_keys=True, separators=(",", ":"))
    return hashlib.sha256((canonical + previous_hash).encode("utf-8")).hexdigest()


def hashable_fields(entry: AuditLogEntry) -> Dict[str, Any]:
    return {
        "entity_type": entry.entity_type,
        "entity_id": entry.entity_id,
        "sequence": entry.sequence,
        "event_type": entry.event_type,
        "old_value": entry.old_value,
        "new_value": entry.new_value,
        "performed_by": str(entry.performed_by) if entry.performed_by else None,
        "performed_at": canonical_timestamp(entry.performed_at),
        "ip_address": entry.ip_address,
        "user_agent": entry.user_agent,
    }


@dataclass
class ChainVerification:
    """Result of replaying one entity's audit chain."""
    entity_type: str
    entity_id: str
    entries_checked: int = 0
    broken_entries: List[Dict[str, Any]] = field(default_factory=list)

    @property
    def is_valid(self) -> bool:
        return not self.broken_entries

    def to_dict(self) -> Dict[str, Any]:
        return {
            "entity_type": self.entity_type,
            "entity_id": self.entity_id,
            "is_valid": self.is_valid,
            "entries_checked": self.entries_checked,
            "broken_entries": self.broken_entries,
        }


def verify_entries(entity_type: str, entity_id: str, entries: Sequence[AuditLogEntry]) -> ChainVerification:
    """
    Pure fold over entries in sequence order.

    The running hash is always the recomputed one, so a change to any field
    of entry N also invalidates N+1 onwards; once a break is found every
    later entry is reported.
    """
    verification = ChainVerification(entity_type=entity_type, entity_id=entity_id)
    expected_previous = GENESIS_HASH
    broken = False

    for expected_sequence, entry in enumerate(entries, start=1):
        recomputed = compute_entry_hash(hashable_fields(entry), expected_previous)
        reasons = []
        if entry.sequence != expected_sequence:
            reasons.append("sequence_gap")
        if entry.previous_hash != expected_previous:
            reasons.append("previous_hash_mismatch")
        if entry.signature_hash != recomputed:
            reasons.append("signature_mismatch")

        if reasons or broken:
            broken = True
            verification.broken_entries.append({
                "entry_id": str(entry.id),
                "sequence": entry.sequence,
                "reasons": reasons or ["follows_broken_entry"],
            })

        expected_previous = recomputed
        verification.entries_checked += 1

    return verification


class AuditService:
    """Service for writing and verifying the audit trail."""

    def __init__(self, db: AsyncSession):
        self.db = db

    async def record(
        self,
        entity_type: str,
        entity_id: Any,
        event_type: str,
        actor_id: Optional[uuid.UUID] = None,
        old_value: Optional[Dict[str, Any]] = None,
        new_value: Optional[Dict[str, Any]] = None,
        ip_address: Optional[str] = None,
        user_agent: Optional[str] = None,
    ) -> AuditLogEntry:
        """
        Append an entry to the entity's chain.

        The entry is flushed but not committed; it becomes durable with the
        caller's transaction, so the audit row and the change it describes
        commit or roll back together.
        """
        entity_key = str(entity_id)
        last = await self._get_last_entry(entity_type, entity_key)
        previous_hash = last.signature_hash if last else GENESIS_HASH
        sequence = last.sequence + 1 if last else 1

        entry = AuditLogEntry(
            entity_type=entity_type,
            entity_id=entity_key,
            sequence=sequence,
            event_type=event_type,
            old_value=to_json_value(old_value),
            new_value=to_json_value(new_value),
            performed_by=actor_id,
            performed_at=utcnow(),
            ip_address=ip_address,
            user_agent=user_agent,
            previous_hash=previous_hash,
        )
        entry.signature_hash = compute_entry_hash(hashable_fields(entry), previous_hash)

        self.db.add(entry)
        await self.db.flush()

        logger.debug(f"Audit {entity_type}:{entity_key} #{sequence} {event_type}")
        return entry

    async def _get_last_entry(self, entity_type: str, entity_id: str) -> Optional[AuditLogEntry]:
        result = await self.db.execute(
            select(AuditLogEntry)
            .where(AuditLogEntry.entity_type == entity_type)
            .where(AuditLogEntry.entity_id == entity_id)
            .order_by(AuditLogEntry.sequence.desc())
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def get_trail(self, entity_type: str, entity_id: Any) -> List[AuditLogEntry]:
        """All entries for an entity, oldest first."""
        result = await self.db.execute(
            select(AuditLogEntry)
            .where(AuditLogEntry.entity_type == entity_type)
            .where(AuditLogEntry.entity_id == str(entity_id))
            .order_by(AuditLogEntry.sequence)
        )
        return list(result.scalars().all())

    async def verify_chain(self, entity_type: str, entity_id: Any) -> ChainVerification:
        entries = await self.get_trail(entity_type, entity_id)
        verification = verify_entries(entity_type, str(entity_id), entries)
        if not verification.is_valid:
            logger.warning(
                f"Audit chain broken for {entity_type}:{entity_id} "
                f"({len(verification.broken_entries)} entries affected)"
            )
        return verification
