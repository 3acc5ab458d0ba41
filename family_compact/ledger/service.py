"""
Audit Ledger — Append-only, hash-chained family activity feed.

Every workflow that changes an agreement or proposal records what happened
here. Each family has its own chain:

- entry 0 is a genesis entry written lazily on the family's first append
- every later entry stores SHA-256(previous_hash || canonical_json(fields))
- there is no update and no delete; ``verify_chain`` recomputes every hash

Appends happen after the primary write has committed. Callers treat the
ledger as a best-effort sink and log, rather than raise, when it fails.
"""

from __future__ import annotations

import hashlib
import json
import logging
from datetime import datetime, timezone
from typing import Any, Callable

from pydantic_core import to_jsonable_python
from sqlalchemy import Engine, func, select
from sqlalchemy.orm import sessionmaker

from family_compact.charter.schema import AuditEntry, AuditEntryType, utc_now
from family_compact.ledger.models import AuditEntryDB

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════
# Genesis Constants
# ════════════════════════════════════════════════════════════════

GENESIS_HASH = "0" * 64


class LedgerIntegrityError(Exception):
    """Raised when a family's hash chain cannot be extended safely."""
    pass


class AuditLedger:
    """
    Per-family activity feed with tamper-evident hashing.

    Usage:
        ledger = AuditLedger(engine)
        ledger.append(
            family_id="fam-1",
            entry_type="agreement_activated",
            actor_id="parent-1",
            description="Agreement activated as version 2",
            metadata={"agreement_id": "...", "version": "2"},
        )
        ok, count, message = ledger.verify_chain("fam-1")
    """

    def __init__(self, engine: Engine, clock: Callable[[], datetime] = utc_now) -> None:
        self.engine = engine
        self.SessionLocal = sessionmaker(bind=engine, expire_on_commit=False)
        self.clock = clock

    def append(
        self,
        family_id: str,
        entry_type: str,
        actor_id: str | None = None,
        description: str = "",
        metadata: dict[str, Any] | None = None,
    ) -> AuditEntry:
        """
        Append a new entry to the family's feed.

        This is the ONLY write operation. The genesis entry is created first
        when the family has no chain yet.

        Args:
            family_id: Family whose feed receives the entry.
            entry_type: One of the AuditEntryType values.
            actor_id: Who performed the action (None for system sweeps).
            description: Human-readable summary.
            metadata: Structured details, JSON-serialisable.

        Returns:
            The stored entry.

        Raises:
            LedgerIntegrityError: If family_id is blank.
        """
        if not family_id:
            raise LedgerIntegrityError("Cannot append: family_id is required")

        entry_type = str(getattr(entry_type, "value", entry_type))
        metadata = to_jsonable_python(metadata or {})

        with self.SessionLocal() as session:
            last_entry = session.execute(
                select(AuditEntryDB)
                .where(AuditEntryDB.family_id == family_id)
                .order_by(AuditEntryDB.sequence_number.desc())
                .limit(1)
            ).scalar_one_or_none()

            if last_entry is None:
                last_entry = self._build_entry(
                    family_id=family_id,
                    sequence_number=0,
                    previous_hash=GENESIS_HASH,
                    entry_type=AuditEntryType.GENESIS.value,
                    actor_id=None,
                    description="Family activity feed opened",
                    metadata={},
                )
                session.add(last_entry)
                logger.info("Genesis entry created for family %s", family_id)

            entry = self._build_entry(
                family_id=family_id,
                sequence_number=last_entry.sequence_number + 1,
                previous_hash=last_entry.entry_hash,
                entry_type=entry_type,
                actor_id=actor_id,
                description=description,
                metadata=metadata,
            )
            session.add(entry)
            session.commit()

            logger.info(
                "Audit entry appended: family=%s seq=%d type=%s hash=%s",
                family_id, entry.sequence_number, entry_type, entry.entry_hash[:16],
            )
            return self._to_model(entry)

    def verify_chain(self, family_id: str) -> tuple[bool, int, str]:
        """
        Verify the integrity of a family's hash chain.

        Returns:
            Tuple of (is_valid, entries_verified, message).
        """
        with self.SessionLocal() as session:
            entries = session.execute(
                select(AuditEntryDB)
                .where(AuditEntryDB.family_id == family_id)
                .order_by(AuditEntryDB.sequence_number.asc())
            ).scalars().all()

        if not entries:
            return False, 0, f"No entries found for family {family_id}"

        first = entries[0]
        if first.sequence_number != 0:
            return False, 0, f"First entry has sequence {first.sequence_number}, expected 0"
        if first.previous_hash != GENESIS_HASH:
            return False, 0, "Genesis entry has incorrect previous_hash"

        for i, entry in enumerate(entries):
            expected_hash = self._compute_hash(
                family_id=entry.family_id,
                sequence_number=entry.sequence_number,
                previous_hash=entry.previous_hash,
                created_at=entry.created_at,
                entry_type=entry.entry_type,
                actor_id=entry.actor_id,
                description=entry.description,
                metadata=entry.entry_metadata,
            )
            if entry.entry_hash != expected_hash:
                return (
                    False, i,
                    f"Hash mismatch at sequence {entry.sequence_number}: "
                    f"stored={entry.entry_hash[:16]}... "
                    f"computed={expected_hash[:16]}..."
                )
            if i > 0 and entry.previous_hash != entries[i - 1].entry_hash:
                return (
                    False, i,
                    f"Chain break at sequence {entry.sequence_number}: "
                    f"previous_hash does not match prior entry's hash"
                )

        return (
            True, len(entries),
            f"Chain verified: {len(entries)} entries, integrity intact"
        )

    def get_feed(self, family_id: str, limit: int = 50) -> list[AuditEntry]:
        """Most recent entries first, genesis excluded."""
        with self.SessionLocal() as session:
            rows = session.execute(
                select(AuditEntryDB)
                .where(AuditEntryDB.family_id == family_id)
                .where(AuditEntryDB.sequence_number > 0)
                .order_by(AuditEntryDB.sequence_number.desc())
                .limit(limit)
            ).scalars().all()
        return [self._to_model(row) for row in rows]

    def get_entries_by_type(self, family_id: str, entry_type: str) -> list[AuditEntry]:
        entry_type = str(getattr(entry_type, "value", entry_type))
        with self.SessionLocal() as session:
            rows = session.execute(
                select(AuditEntryDB)
                .where(AuditEntryDB.family_id == family_id)
                .where(AuditEntryDB.entry_type == entry_type)
                .order_by(AuditEntryDB.sequence_number.asc())
            ).scalars().all()
        return [self._to_model(row) for row in rows]

    def get_entry_count(self, family_id: str) -> int:
        """Return the number of entries in the family's chain, genesis included."""
        with self.SessionLocal() as session:
            result = session.execute(
                select(func.count())
                .select_from(AuditEntryDB)
                .where(AuditEntryDB.family_id == family_id)
            )
            return result.scalar() or 0

    # ── Internal ────────────────────────────────────────────────

    def _build_entry(
        self,
        family_id: str,
        sequence_number: int,
        previous_hash: str,
        entry_type: str,
        actor_id: str | None,
        description: str,
        metadata: dict[str, Any],
    ) -> AuditEntryDB:
        created_at = _as_utc(self.clock())
        entry_hash = self._compute_hash(
            family_id=family_id,
            sequence_number=sequence_number,
            previous_hash=previous_hash,
            created_at=created_at,
            entry_type=entry_type,
            actor_id=actor_id,
            description=description,
            metadata=metadata,
        )
        return AuditEntryDB(
            family_id=family_id,
            sequence_number=sequence_number,
            previous_hash=previous_hash,
            entry_hash=entry_hash,
            entry_type=entry_type,
            actor_id=actor_id,
            description=description,
            entry_metadata=metadata,
            created_at=created_at,
        )

    @staticmethod
    def _to_model(row: AuditEntryDB) -> AuditEntry:
        return AuditEntry(
            family_id=row.family_id,
            sequence_number=row.sequence_number,
            previous_hash=row.previous_hash,
            entry_hash=row.entry_hash,
            type=row.entry_type,
            actor_id=row.actor_id,
            description=row.description,
            metadata=row.entry_metadata or {},
            created_at=_as_utc(row.created_at),
        )

    @staticmethod
    def _compute_hash(
        family_id: str,
        sequence_number: int,
        previous_hash: str,
        created_at: datetime,
        entry_type: str,
        actor_id: str | None,
        description: str,
        metadata: dict[str, Any],
    ) -> str:
        """
        Compute the SHA-256 hash for an audit entry.

        Hash = SHA-256(previous_hash || canonical_json(entry_fields))
        """
        hashable = {
            "family_id": family_id,
            "sequence_number": sequence_number,
            "previous_hash": previous_hash,
            "created_at": _as_utc(created_at).isoformat(),
            "entry_type": entry_type,
            "actor_id": actor_id,
            "description": description,
            "metadata": metadata,
        }
        canonical = json.dumps(hashable, sort_keys=True, default=str)
        return hashlib.sha256(
            (previous_hash + canonical).encode("utf-8")
        ).hexdigest()


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is written in UTC.
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)
