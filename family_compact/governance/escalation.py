"""
Rejection Escalation Tracker — Notices when agreeing on changes keeps stalling.

Every time a child declines a proposal the tracker records it against
the child's rejection pattern. Once the total reaches the threshold, an
escalation is triggered exactly once: an escalation event is stored, the
child is gently told that support is available, and the event is handed to
the escalation handler (the trusted-adult flow lives outside this package).

Only counters and proposal ids are kept. Proposal content never reaches
these records.

The order on a child's decline is fixed: record, then check, then trigger.
"""

from __future__ import annotations

import logging
from collections.abc import Awaitable
from datetime import datetime, timedelta
from typing import Any, Callable

from family_compact.charter.schema import (
    AuditEntryType,
    EscalationEvent,
    NotificationType,
    RejectionEvent,
    RejectionPattern,
    utc_now,
)
from family_compact.config import settings
from family_compact.governance import notifications as messages
from family_compact.governance.base import LifecycleService
from family_compact.ledger.store import (
    ESCALATION_EVENTS,
    REJECTION_EVENTS,
    REJECTION_PATTERNS,
    DocumentStore,
    FieldFilter,
)

logger = logging.getLogger(__name__)

EscalationHandler = Callable[[EscalationEvent], Awaitable[None]]


def _require(value: str, name: str) -> None:
    if not value or not str(value).strip():
        raise ValueError(f"{name} is required")


class RejectionEscalationTracker(LifecycleService):
    """
    Per-child rejection counters and the one-time escalation they can trigger.

    Args:
        threshold: Rejections needed to escalate (default from config).
        window_days: Look-back used by ``rejections_in_window``.
        escalation_handler: Awaited with the EscalationEvent when one fires.
    """

    def __init__(
        self,
        store: DocumentStore,
        ledger: Any = None,
        notifier: Any = None,
        clock: Callable[[], datetime] = utc_now,
        threshold: int | None = None,
        window_days: int | None = None,
        escalation_handler: EscalationHandler | None = None,
    ) -> None:
        super().__init__(store, ledger=ledger, notifier=notifier, clock=clock)
        self.threshold = settings.rejection_escalation_threshold if threshold is None else threshold
        self.window_days = settings.rejection_window_days if window_days is None else window_days
        self.escalation_handler = escalation_handler

    async def get_pattern(self, child_id: str) -> RejectionPattern | None:
        doc = await self.store.get(REJECTION_PATTERNS, child_id)
        return RejectionPattern.model_validate(doc) if doc else None

    async def increment_proposal_count(self, family_id: str, child_id: str) -> RejectionPattern:
        """Count a new proposal involving the child."""
        _require(family_id, "familyId")
        _require(child_id, "childId")

        now = self.clock()
        pattern = await self._get_or_create(family_id, child_id, now)
        pattern = pattern.model_copy(update={
            "total_proposals": pattern.total_proposals + 1,
            "last_proposal_at": now,
            "updated_at": now,
        })
        await self.store.set(REJECTION_PATTERNS, child_id, pattern.model_dump(mode="json"))
        return pattern

    async def record_rejection(
        self, family_id: str, child_id: str, proposal_id: str
    ) -> RejectionPattern:
        """
        Record that the child declined a proposal.

        Raises:
            ValueError: If any id is blank.
        """
        _require(family_id, "familyId")
        _require(child_id, "childId")
        _require(proposal_id, "proposalId")

        now = self.clock()
        pattern = await self._get_or_create(family_id, child_id, now)
        pattern = pattern.model_copy(update={
            "total_rejections": pattern.total_rejections + 1,
            "last_rejection_at": now,
            "updated_at": now,
        })
        await self.store.set(REJECTION_PATTERNS, child_id, pattern.model_dump(mode="json"))

        event = RejectionEvent(
            family_id=family_id,
            child_id=child_id,
            proposal_id=proposal_id,
            rejected_at=now,
        )
        await self.store.set(REJECTION_EVENTS, event.id, event.model_dump(mode="json"))

        logger.info(
            "Rejection recorded: child=%s total=%d", child_id, pattern.total_rejections,
        )
        return pattern

    async def check_escalation_threshold(self, child_id: str) -> bool:
        pattern = await self.get_pattern(child_id)
        if pattern is None:
            return False
        return pattern.total_rejections >= self.threshold

    async def rejections_in_window(self, child_id: str, window_days: int | None = None) -> int:
        """Rejections recorded for the child within the last ``window_days``."""
        days = self.window_days if window_days is None else window_days
        since = self.clock() - timedelta(days=days)
        docs = await self.store.query(
            REJECTION_EVENTS,
            filters=[
                FieldFilter("child_id", "==", child_id),
                FieldFilter("rejected_at", ">=", since),
            ],
        )
        return len(docs)

    async def trigger_escalation(self, family_id: str, child_id: str) -> EscalationEvent | None:
        """
        Fire the escalation for a child, once.

        Returns:
            The new EscalationEvent, or None when the pattern has already
            escalated (or does not exist).
        """
        pattern = await self.get_pattern(child_id)
        if pattern is None or pattern.escalation_triggered:
            return None

        now = self.clock()
        event = EscalationEvent(
            family_id=family_id,
            child_id=child_id,
            rejections_count=pattern.total_rejections,
            threshold=self.threshold,
            triggered_at=now,
        )
        await self.store.set(ESCALATION_EVENTS, event.id, event.model_dump(mode="json"))
        await self.store.update(REJECTION_PATTERNS, child_id, {
            "escalation_triggered": True,
            "escalation_triggered_at": now,
            "updated_at": now,
        })
        logger.warning(
            "Rejection escalation triggered: family=%s child=%s rejections=%d threshold=%d",
            family_id, child_id, pattern.total_rejections, self.threshold,
        )

        self._record(
            family_id,
            AuditEntryType.ESCALATION_TRIGGERED.value,
            None,
            "Support resources were offered after several declined proposals",
            {"child_id": child_id, "escalation_id": event.id},
        )
        await self._notify(
            family_id,
            child_id,
            NotificationType.REJECTION_PATTERN_ESCALATION,
            messages.rejection_pattern_escalation(),
            {"escalation_id": event.id},
        )

        if self.escalation_handler is not None:
            try:
                await self.escalation_handler(event)
            except Exception as e:
                logger.error("Escalation handler failed for child %s: %s", child_id, e)

        return event

    async def handle_child_decline(
        self, family_id: str, child_id: str, proposal_id: str
    ) -> EscalationEvent | None:
        """Record the rejection, check the threshold, then trigger if crossed."""
        await self.record_rejection(family_id, child_id, proposal_id)
        if not await self.check_escalation_threshold(child_id):
            return None
        return await self.trigger_escalation(family_id, child_id)

    # ── Internal ────────────────────────────────────────────────

    async def _get_or_create(
        self, family_id: str, child_id: str, now: datetime
    ) -> RejectionPattern:
        pattern = await self.get_pattern(child_id)
        if pattern is not None:
            return pattern
        return RejectionPattern(
            id=child_id,
            family_id=family_id,
            child_id=child_id,
            created_at=now,
            updated_at=now,
        )
