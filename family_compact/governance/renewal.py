"""
Renewal Workflow — Two-party consent to extend an agreement.

A renewal needs the parent's consent first and the child's consent second;
only then can it complete. The transition functions below are pure: they
take a ``RenewalState`` and return a new one, and any step that is not
allowed returns the input unchanged instead of raising.

    parent-initiated ──parent consent──> child-consenting ──complete──> completed
            │                                   │
            └──────────── cancel ───────────────┴──> cancelled

``RenewalService`` persists renewals and, on completion, moves the
agreement's expiry date and marks it as reviewed.
"""

from __future__ import annotations

import calendar
import logging
from datetime import datetime
from typing import Any, Callable

from family_compact.charter.schema import (
    RENEWAL_DURATION_MONTHS,
    AgreementStatus,
    AuditEntryType,
    Consent,
    NotificationType,
    RenewalDuration,
    RenewalMode,
    RenewalState,
    RenewalStatus,
    RenewalStep,
    utc_now,
)
from family_compact.governance import notifications as messages
from family_compact.governance.activation import AgreementActivationEngine
from family_compact.governance.base import LifecycleService
from family_compact.governance.errors import NotActivatable
from family_compact.ledger.store import AGREEMENTS, RENEWALS, DocumentStore

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════
# Pure transitions
# ════════════════════════════════════════════════════════════════


def add_months(value: datetime, months: int) -> datetime:
    """Calendar month arithmetic; the day is clamped to the target month's end."""
    month_index = value.month - 1 + months
    year = value.year + month_index // 12
    month = month_index % 12 + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


def calculate_new_expiry(
    duration: RenewalDuration, current_expiry_date: datetime | None, now: datetime
) -> datetime | None:
    months = RENEWAL_DURATION_MONTHS[RenewalDuration(duration)]
    if months is None:
        return None
    return add_months(current_expiry_date or now, months)


def initiate(
    agreement_id: str,
    mode: RenewalMode,
    duration: RenewalDuration,
    current_expiry_date: datetime | None = None,
    now: datetime | None = None,
    family_id: str | None = None,
) -> RenewalState:
    """Start a renewal; the new expiry date is fixed now, from the current expiry."""
    now = now or utc_now()
    return RenewalState(
        family_id=family_id,
        agreement_id=agreement_id,
        mode=RenewalMode(mode),
        duration=RenewalDuration(duration),
        status=RenewalStatus.PARENT_INITIATED,
        new_expiry_date=calculate_new_expiry(duration, current_expiry_date, now),
        initiated_at=now,
    )


def _is_closed(renewal: RenewalState) -> bool:
    return renewal.status in (RenewalStatus.COMPLETED, RenewalStatus.CANCELLED)


def process_parent_consent(
    renewal: RenewalState, signature: str, now: datetime | None = None
) -> RenewalState:
    """Record the parent's consent. Write-once."""
    if renewal.parent_consent is not None or _is_closed(renewal):
        return renewal
    return renewal.model_copy(update={
        "parent_consent": Consent(signature=signature, signed_at=now or utc_now()),
        "status": RenewalStatus.CHILD_CONSENTING,
    })


def process_child_consent(
    renewal: RenewalState, signature: str, now: datetime | None = None
) -> RenewalState:
    """Record the child's consent. Only after the parent's, and only once."""
    if renewal.parent_consent is None or renewal.child_consent is not None or _is_closed(renewal):
        return renewal
    return renewal.model_copy(update={
        "child_consent": Consent(signature=signature, signed_at=now or utc_now()),
    })


def can_complete(renewal: RenewalState) -> bool:
    return renewal.parent_consent is not None and renewal.child_consent is not None


def complete(renewal: RenewalState, now: datetime | None = None) -> RenewalState:
    if not can_complete(renewal) or _is_closed(renewal):
        return renewal
    return renewal.model_copy(update={
        "status": RenewalStatus.COMPLETED,
        "completed_at": now or utc_now(),
    })


def cancel(renewal: RenewalState, now: datetime | None = None) -> RenewalState:
    if _is_closed(renewal):
        return renewal
    return renewal.model_copy(update={
        "status": RenewalStatus.CANCELLED,
        "cancelled_at": now or utc_now(),
    })


def next_step(renewal: RenewalState) -> RenewalStep:
    """What the family should do next, for UI guidance."""
    if renewal.status == RenewalStatus.COMPLETED:
        return RenewalStep.DONE
    if renewal.status == RenewalStatus.CANCELLED:
        return RenewalStep.CANCELLED
    if can_complete(renewal):
        return RenewalStep.COMPLETE
    if renewal.parent_consent is not None:
        return RenewalStep.CHILD_CONSENT
    return RenewalStep.PARENT_SIGN


# ════════════════════════════════════════════════════════════════
# Persisted renewals
# ════════════════════════════════════════════════════════════════


class RenewalService(LifecycleService):
    """
    Store-backed renewals for active agreements.

    Each step loads the renewal, applies the pure transition and saves it
    only when something changed.
    """

    def __init__(
        self,
        store: DocumentStore,
        activation: AgreementActivationEngine,
        ledger: Any = None,
        notifier: Any = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(store, ledger=ledger, notifier=notifier, clock=clock)
        self.activation = activation

    async def start(
        self,
        family_id: str,
        agreement_id: str,
        mode: RenewalMode = RenewalMode.RENEW_AS_IS,
        duration: RenewalDuration = RenewalDuration.ONE_YEAR,
    ) -> RenewalState:
        """
        Begin renewing the family's active agreement.

        Raises:
            NotFound: Agreement does not exist in this family.
            NotActivatable: Agreement is not active.
        """
        agreement = await self.activation.get(family_id, agreement_id)
        if agreement.status != AgreementStatus.ACTIVE:
            raise NotActivatable("Only the active agreement can be renewed")

        renewal = initiate(
            agreement_id,
            mode,
            duration,
            current_expiry_date=agreement.expiry_date,
            now=self.clock(),
            family_id=family_id,
        )
        await self.store.set(RENEWALS, renewal.id, renewal.model_dump(mode="json"))
        logger.info(
            "Renewal started: family=%s agreement=%s duration=%s",
            family_id, agreement_id, renewal.duration.value,
        )
        return renewal

    async def parent_consent(self, renewal_id: str, signature: str) -> RenewalState:
        renewal = await self.get(renewal_id)
        updated = process_parent_consent(renewal, signature, self.clock())
        if updated is renewal:
            return renewal

        await self._save(updated)
        agreement = await self.activation.get(updated.family_id, updated.agreement_id)
        await self._notify(
            updated.family_id,
            agreement.child_id,
            NotificationType.RENEWAL_REQUESTED,
            messages.renewal_requested(),
            {"renewal_id": updated.id, "agreement_id": updated.agreement_id},
        )
        return updated

    async def child_consent(self, renewal_id: str, signature: str) -> RenewalState:
        renewal = await self.get(renewal_id)
        updated = process_child_consent(renewal, signature, self.clock())
        if updated is not renewal:
            await self._save(updated)
        return updated

    async def complete(self, renewal_id: str, actor_id: str | None = None) -> RenewalState:
        """
        Finish a renewal once both consents are in.

        Before that it is a no-op. On completion the agreement takes the
        renewal's new expiry date and counts as reviewed today.

        Raises:
            NotActivatable: The agreement stopped being active while the
                renewal was open. The renewal is cancelled.
        """
        renewal = await self.get(renewal_id)
        now = self.clock()
        updated = complete(renewal, now)
        if updated is renewal:
            return renewal

        current = await self.activation.get(renewal.family_id, renewal.agreement_id)
        if current.status != AgreementStatus.ACTIVE:
            await self._save(cancel(renewal, now))
            logger.warning(
                "Renewal %s cancelled: agreement %s is %s",
                renewal.id, renewal.agreement_id, current.status.value,
            )
            raise NotActivatable("Only the active agreement can be renewed")

        await self._save(updated)
        await self.store.update(AGREEMENTS, updated.agreement_id, {
            "expiry_date": updated.new_expiry_date,
            "last_review_date": now,
        })
        logger.info(
            "Renewal completed: agreement=%s new_expiry=%s",
            updated.agreement_id, updated.new_expiry_date,
        )

        agreement = await self.activation.get(updated.family_id, updated.agreement_id)
        self._record(
            updated.family_id,
            AuditEntryType.AGREEMENT_RENEWED.value,
            actor_id,
            "The family renewed its agreement",
            {
                "agreement_id": updated.agreement_id,
                "renewal_id": updated.id,
                "new_expiry_date": updated.new_expiry_date,
            },
        )
        for recipient in {agreement.child_id, agreement.created_by} - {None}:
            await self._notify(
                updated.family_id,
                recipient,
                NotificationType.AGREEMENT_RENEWED,
                messages.agreement_renewed(updated.new_expiry_date),
                {"agreement_id": updated.agreement_id},
            )
        return updated

    async def cancel(self, renewal_id: str) -> RenewalState:
        renewal = await self.get(renewal_id)
        updated = cancel(renewal, self.clock())
        if updated is not renewal:
            await self._save(updated)
            logger.info("Renewal %s cancelled", renewal_id)
        return updated

    async def get(self, renewal_id: str) -> RenewalState:
        return await self._load(RENEWALS, renewal_id, RenewalState, "Renewal")

    async def _save(self, renewal: RenewalState) -> None:
        await self.store.set(RENEWALS, renewal.id, renewal.model_dump(mode="json"))
