"""
Agreement Activation Engine — Moves agreements through their lifecycle.

This engine owns the single-active-agreement rule: a family never has more
than one agreement with ``status = active``. Activation runs as one store
transaction that

1. validates the target (exists, not active, not ended, fully signed)
2. supersedes every other active agreement in the family
3. assigns the next version in the family's lineage
4. re-reads the family's active agreements and aborts unless the target
   is the only one

The audit entry is written after the transaction commits. An audit
failure never undoes an activation.

Lifecycle:
    draft ──activate──> active ──activate(successor)──> superseded
                          │
                          ├──archive(manual)──> archived
                          └──grace period ends──> expired
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from family_compact.charter.schema import (
    Agreement,
    AgreementStatus,
    ArchiveReason,
    AuditEntryType,
    GracePeriodStatus,
    utc_now,
)
from family_compact.governance.base import LifecycleService
from family_compact.governance.errors import (
    ActivationInvariantViolation,
    AlreadyActive,
    AlreadyArchived,
    NotActivatable,
    NotFound,
    SignaturesIncomplete,
)
from family_compact.governance.expiry import ExpiryPolicy
from family_compact.governance.signing import SigningGate
from family_compact.governance.versioning import next_version
from family_compact.ledger.store import AGREEMENTS, DocumentStore, FieldFilter

logger = logging.getLogger(__name__)


class AgreementActivationEngine(LifecycleService):
    """
    Activation, archival and history for a family's agreements.

    Usage:
        engine = AgreementActivationEngine(store, ledger=ledger)
        draft = await engine.create_draft("fam-1", created_by="parent-1", terms={...})
        await engine.record_signing_status("fam-1", draft.id, "complete")
        active = await engine.activate("fam-1", draft.id, actor_id="parent-1")
    """

    def __init__(
        self,
        store: DocumentStore,
        ledger: Any = None,
        notifier: Any = None,
        clock: Callable[[], datetime] = utc_now,
        signing_gate: SigningGate | None = None,
        expiry_policy: ExpiryPolicy | None = None,
    ) -> None:
        super().__init__(store, ledger=ledger, notifier=notifier, clock=clock)
        self.signing_gate = signing_gate or SigningGate()
        self.expiry_policy = expiry_policy or ExpiryPolicy()

    # ── Drafts ──────────────────────────────────────────────────

    async def create_draft(
        self,
        family_id: str,
        created_by: str,
        terms: dict[str, Any] | None = None,
        child_id: str | None = None,
        expiry_date: datetime | None = None,
    ) -> Agreement:
        """Store a new agreement in ``draft``; it has no version until activation."""
        agreement = Agreement(
            family_id=family_id,
            child_id=child_id,
            terms=terms or {},
            created_by=created_by,
            created_at=self.clock(),
            expiry_date=expiry_date,
        )
        await self.store.set(AGREEMENTS, agreement.id, agreement.model_dump(mode="json"))
        logger.info("Draft agreement created: family=%s id=%s", family_id, agreement.id)

        self._record(
            family_id,
            AuditEntryType.AGREEMENT_CREATED.value,
            created_by,
            "A new agreement draft was started",
            {"agreement_id": agreement.id},
        )
        return agreement

    async def record_signing_status(
        self, family_id: str, agreement_id: str, signing_status: str
    ) -> Agreement:
        """
        Store the signing ceremony's progress token on a draft.

        Raises:
            NotFound: If the agreement does not exist in this family.
            NotActivatable: If the agreement is no longer a draft.
        """
        agreement = await self.get(family_id, agreement_id)
        if agreement.status != AgreementStatus.DRAFT:
            raise NotActivatable("Signatures can only be recorded on a draft agreement")

        await self.store.update(AGREEMENTS, agreement_id, {"signing_status": signing_status})
        return agreement.model_copy(update={"signing_status": signing_status})

    # ── Activation ──────────────────────────────────────────────

    async def activate(
        self, family_id: str, agreement_id: str, actor_id: str | None = None
    ) -> Agreement:
        """
        Make an agreement the family's single active agreement.

        Args:
            family_id: Family that owns the agreement.
            agreement_id: Agreement to activate.
            actor_id: Who triggered the activation (for the activity feed).

        Returns:
            The activated agreement with its assigned version.

        Raises:
            NotFound: Agreement does not exist in this family.
            AlreadyActive: Agreement is already active.
            NotActivatable: Agreement is superseded, archived or expired.
            SignaturesIncomplete: Signing status is not ``complete``.
            ActivationInvariantViolation: Another agreement would remain active.
        """
        now = self.clock()

        async with self.store.transaction() as tx:
            doc = await tx.get(AGREEMENTS, agreement_id)
            if doc is None or doc.get("family_id") != family_id:
                raise NotFound("Agreement not found")

            target = Agreement.model_validate(doc)
            if target.status == AgreementStatus.ACTIVE:
                raise AlreadyActive()
            if target.is_terminal:
                raise NotActivatable()
            if not self.signing_gate.is_complete(target.signing_status):
                raise SignaturesIncomplete()

            lineage = await tx.query(AGREEMENTS, family_id=family_id)
            superseded_ids = []
            for other in lineage:
                if other["id"] == agreement_id or other.get("status") != AgreementStatus.ACTIVE.value:
                    continue
                await tx.update(AGREEMENTS, other["id"], {
                    "status": AgreementStatus.SUPERSEDED,
                    "archived_at": now,
                    "archive_reason": ArchiveReason.NEW_VERSION,
                    "superseded_by": agreement_id,
                })
                superseded_ids.append(other["id"])

            version = next_version(d.get("version") for d in lineage)
            await tx.update(AGREEMENTS, agreement_id, {
                "status": AgreementStatus.ACTIVE,
                "version": version,
                "activated_at": now,
            })

            still_active = await tx.query(
                AGREEMENTS,
                family_id=family_id,
                filters=[FieldFilter("status", "==", AgreementStatus.ACTIVE)],
            )
            active_ids = [d["id"] for d in still_active]
            if active_ids != [agreement_id]:
                logger.error(
                    "Activation aborted: family=%s would have active agreements %s",
                    family_id, active_ids,
                )
                raise ActivationInvariantViolation()

        logger.info(
            "Agreement activated: family=%s id=%s version=%s superseded=%s",
            family_id, agreement_id, version, superseded_ids,
        )

        self._record(
            family_id,
            AuditEntryType.AGREEMENT_ACTIVATED.value,
            actor_id,
            f"Agreement version {version} is now active",
            {
                "agreement_id": agreement_id,
                "version": version,
                "superseded_agreement_ids": superseded_ids,
            },
        )

        return target.model_copy(update={
            "status": AgreementStatus.ACTIVE,
            "version": version,
            "activated_at": now,
        })

    # ── Archival ────────────────────────────────────────────────

    async def archive(
        self,
        family_id: str,
        agreement_id: str,
        reason: ArchiveReason,
        superseded_by: str | None = None,
        actor_id: str | None = None,
    ) -> Agreement:
        """
        Take an agreement out of service.

        A ``new_version`` reason marks it ``superseded``; any other reason
        marks it ``archived``. This is a single-document update and is not
        serialised against a concurrent activation.

        Raises:
            NotFound: Agreement does not exist in this family.
            AlreadyArchived: Agreement is already superseded, archived or expired.
        """
        agreement = await self.get(family_id, agreement_id)
        if agreement.is_terminal:
            raise AlreadyArchived()

        reason = ArchiveReason(reason)
        now = self.clock()
        status = (
            AgreementStatus.SUPERSEDED if reason == ArchiveReason.NEW_VERSION
            else AgreementStatus.ARCHIVED
        )
        changes: dict[str, Any] = {
            "status": status,
            "archived_at": now,
            "archive_reason": reason,
        }
        if superseded_by:
            changes["superseded_by"] = superseded_by

        await self.store.update(AGREEMENTS, agreement_id, changes)
        logger.info(
            "Agreement archived: family=%s id=%s status=%s reason=%s",
            family_id, agreement_id, status.value, reason.value,
        )

        entry_type = (
            AuditEntryType.AGREEMENT_SUPERSEDED if status == AgreementStatus.SUPERSEDED
            else AuditEntryType.AGREEMENT_ARCHIVED
        )
        self._record(
            family_id,
            entry_type.value,
            actor_id,
            f"Agreement version {agreement.version or '(draft)'} was {status.value}",
            {"agreement_id": agreement_id, "reason": reason.value, "superseded_by": superseded_by},
        )
        return agreement.model_copy(update=changes)

    async def expire_lapsed(self, family_id: str) -> int:
        """
        Expire active agreements whose grace period has ended.

        Safe to re-run: already expired agreements are not active and are
        skipped.

        Returns:
            Number of agreements expired by this run.
        """
        now = self.clock()
        expired: list[Agreement] = []

        async with self.store.transaction() as tx:
            active = await tx.query(
                AGREEMENTS,
                family_id=family_id,
                filters=[FieldFilter("status", "==", AgreementStatus.ACTIVE)],
            )
            for doc in active:
                agreement = Agreement.model_validate(doc)
                status = self.expiry_policy.grace_period_status(agreement.expiry_date, now)
                if status != GracePeriodStatus.EXPIRED:
                    continue
                await tx.update(AGREEMENTS, agreement.id, {
                    "status": AgreementStatus.EXPIRED,
                    "archived_at": now,
                    "archive_reason": ArchiveReason.EXPIRED,
                })
                expired.append(agreement)

        for agreement in expired:
            self._record(
                family_id,
                AuditEntryType.AGREEMENT_EXPIRED.value,
                None,
                f"Agreement version {agreement.version} expired after its grace period",
                {"agreement_id": agreement.id, "expiry_date": agreement.expiry_date},
            )

        if expired:
            logger.info("Expired %d lapsed agreement(s) for family %s", len(expired), family_id)
        return len(expired)

    # ── Queries ─────────────────────────────────────────────────

    async def get(self, family_id: str, agreement_id: str) -> Agreement:
        doc = await self.store.get(AGREEMENTS, agreement_id)
        if doc is None or doc.get("family_id") != family_id:
            raise NotFound("Agreement not found")
        return Agreement.model_validate(doc)

    async def get_active(self, family_id: str) -> Agreement | None:
        docs = await self.store.query(
            AGREEMENTS,
            family_id=family_id,
            filters=[FieldFilter("status", "==", AgreementStatus.ACTIVE)],
            limit=1,
        )
        return Agreement.model_validate(docs[0]) if docs else None

    async def get_history(self, family_id: str) -> list[Agreement]:
        """All of the family's agreements, most recently activated first."""
        docs = await self.store.query(
            AGREEMENTS,
            family_id=family_id,
            order_by="activated_at",
            descending=True,
        )
        return [Agreement.model_validate(doc) for doc in docs]
