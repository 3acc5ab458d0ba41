"""
Agreement Review Requests — A child invites the parents to talk the agreement over.

A review request is an invitation, not a demand: the parents are told the
child would like to check in, with a few suggested places to start. The
child may ask once per cooldown window (60 days by default), counted from
the most recent request whatever became of it.

    pending ──acknowledge──> acknowledged ──mark_review_complete──> reviewed
       │
       └── expires_at reached (sweep) ──> expired

Completing a review also stamps the agreement's ``last_review_date``,
which resets the annual review clock in expiry.py.
"""

from __future__ import annotations

import logging
import math
import re
from datetime import datetime, timedelta
from typing import Any, Callable

from family_compact.charter.schema import (
    AuditEntryType,
    CooldownStatus,
    NotificationType,
    ReviewRequest,
    ReviewRequestStatus,
    utc_now,
)
from family_compact.config import settings
from family_compact.governance import notifications as messages
from family_compact.governance.activation import AgreementActivationEngine
from family_compact.governance.base import LifecycleService
from family_compact.governance.coparent import CustodyLookup
from family_compact.governance.escalation import RejectionEscalationTracker
from family_compact.governance.errors import ReviewRequestCooldown
from family_compact.ledger.store import AGREEMENTS, REVIEW_REQUESTS, DocumentStore, FieldFilter

logger = logging.getLogger(__name__)

CHILD_NAME_MAX_LENGTH = 50
DEFAULT_CHILD_NAME = "Your child"

_HTML_TAG = re.compile(r"<[^>]*>")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f-\x9f]")


def _require(value: str, name: str) -> None:
    if not value or not str(value).strip():
        raise ValueError(f"{name} is required")


def sanitize_child_name(name: str | None) -> str:
    """Strip markup and control characters and cap the length for display."""
    if not name or not name.strip():
        return DEFAULT_CHILD_NAME
    cleaned = _CONTROL_CHARS.sub("", _HTML_TAG.sub("", name)).strip()[:CHILD_NAME_MAX_LENGTH]
    return cleaned or DEFAULT_CHILD_NAME


def cooldown_status(
    last_request_at: datetime | None, now: datetime, cooldown_days: int
) -> CooldownStatus:
    """
    Whether a new request is allowed, given when the last one was made.

    ``days_remaining`` rounds up, so a request made one day ago leaves 59
    days of a 60-day cooldown. The window is open again at exactly
    ``cooldown_days`` after the last request.
    """
    if last_request_at is None:
        return CooldownStatus(can_request=True)

    next_available_at = last_request_at + timedelta(days=cooldown_days)
    if now >= next_available_at:
        return CooldownStatus(can_request=True, last_request_at=last_request_at)

    remaining = (next_available_at - now) / timedelta(days=1)
    return CooldownStatus(
        can_request=False,
        last_request_at=last_request_at,
        next_available_at=next_available_at,
        days_remaining=math.ceil(remaining),
    )


class AgreementReviewService(LifecycleService):
    """
    Submit, track and close a child's requests to review the agreement.

    Usage:
        reviews = AgreementReviewService(store, custody, activation, escalation, ledger=ledger)
        status = await reviews.check_cooldown("fam-1", "child-1")
        if status.can_request:
            await reviews.submit("fam-1", "child-1", "Sam", agreement.id)
    """

    def __init__(
        self,
        store: DocumentStore,
        custody: CustodyLookup,
        activation: AgreementActivationEngine,
        escalation: RejectionEscalationTracker | None = None,
        ledger: Any = None,
        notifier: Any = None,
        clock: Callable[[], datetime] = utc_now,
        cooldown_days: int | None = None,
        expiry_days: int | None = None,
    ) -> None:
        super().__init__(store, ledger=ledger, notifier=notifier, clock=clock)
        self.custody = custody
        self.activation = activation
        self.escalation = escalation
        self.cooldown_days = (
            settings.review_request_cooldown_days if cooldown_days is None else cooldown_days
        )
        self.expiry_days = (
            settings.review_request_expiry_days if expiry_days is None else expiry_days
        )

    async def check_cooldown(self, family_id: str, child_id: str) -> CooldownStatus:
        _require(family_id, "familyId")
        _require(child_id, "childId")

        history = await self.history(family_id, child_id, limit=1)
        last_request_at = history[0].requested_at if history else None
        return cooldown_status(last_request_at, self.clock(), self.cooldown_days)

    async def submit(
        self, family_id: str, child_id: str, child_name: str, agreement_id: str
    ) -> ReviewRequest:
        """
        Record the child's request and invite the parents to talk.

        Raises:
            ValueError: Any argument is blank.
            NotFound: The agreement does not exist in this family.
            ReviewRequestCooldown: The child asked too recently.
        """
        _require(family_id, "familyId")
        _require(child_id, "childId")
        _require(child_name, "childName")
        _require(agreement_id, "agreementId")

        agreement = await self.activation.get(family_id, agreement_id)

        cooldown = await self.check_cooldown(family_id, child_id)
        if not cooldown.can_request:
            raise ReviewRequestCooldown(
                f"A review was requested recently. {cooldown.days_remaining} days remaining.",
                days_remaining=cooldown.days_remaining,
            )

        now = self.clock()
        request = ReviewRequest(
            family_id=family_id,
            child_id=child_id,
            child_name=sanitize_child_name(child_name),
            agreement_id=agreement_id,
            suggested_areas=await self.suggested_discussion_areas(child_id),
            requested_at=now,
            expires_at=now + timedelta(days=self.expiry_days),
        )
        await self.store.set(REVIEW_REQUESTS, request.id, request.model_dump(mode="json"))
        logger.info(
            "Review requested: family=%s child=%s request=%s", family_id, child_id, request.id,
        )

        self._record(
            family_id,
            AuditEntryType.REVIEW_REQUESTED.value,
            child_id,
            f"{request.child_name} asked to talk about the agreement",
            {"request_id": request.id, "agreement_id": agreement_id},
        )

        recipients = await self._guardian_uids(child_id) or [agreement.created_by]
        for parent_uid in recipients:
            if parent_uid is None:
                continue
            await self._notify(
                family_id,
                parent_uid,
                NotificationType.AGREEMENT_REVIEW_REQUESTED,
                messages.review_requested(request.child_name, request.suggested_areas),
                {"request_id": request.id, "agreement_id": agreement_id},
            )
        return request

    async def suggested_discussion_areas(self, child_id: str) -> list[str]:
        """Where the conversation might start, from the child's recent history."""
        if self.escalation is not None:
            if await self.escalation.rejections_in_window(child_id, window_days=90):
                return ["Recent proposal discussions"]
        return ["General agreement check-in"]

    async def acknowledge(self, request_id: str, parent_uid: str | None = None) -> ReviewRequest:
        """Mark the request as seen by a parent. Already-handled requests are left as they are."""
        _require(request_id, "requestId")
        request = await self._load(REVIEW_REQUESTS, request_id, ReviewRequest, "Review request")
        if request.status != ReviewRequestStatus.PENDING:
            return request

        changes = {
            "status": ReviewRequestStatus.ACKNOWLEDGED,
            "acknowledged_at": self.clock(),
            "acknowledged_by": parent_uid,
        }
        await self.store.update(REVIEW_REQUESTS, request_id, changes)
        logger.info("Review request %s acknowledged", request_id)
        return request.model_copy(update=changes)

    async def mark_review_complete(
        self, request_id: str, actor_id: str | None = None
    ) -> ReviewRequest:
        _require(request_id, "requestId")
        request = await self._load(REVIEW_REQUESTS, request_id, ReviewRequest, "Review request")

        now = self.clock()
        changes = {"status": ReviewRequestStatus.REVIEWED, "reviewed_at": now}
        await self.store.update(REVIEW_REQUESTS, request_id, changes)
        await self.store.update(AGREEMENTS, request.agreement_id, {"last_review_date": now})
        logger.info(
            "Review completed: request=%s agreement=%s", request_id, request.agreement_id,
        )

        self._record(
            request.family_id,
            AuditEntryType.REVIEW_COMPLETED.value,
            actor_id,
            "The family talked the agreement over together",
            {"request_id": request_id, "agreement_id": request.agreement_id},
        )
        return request.model_copy(update=changes)

    async def get_pending(self, family_id: str, child_id: str) -> ReviewRequest | None:
        _require(family_id, "familyId")
        _require(child_id, "childId")
        docs = await self.store.query(
            REVIEW_REQUESTS,
            family_id=family_id,
            filters=[
                FieldFilter("child_id", "==", child_id),
                FieldFilter("status", "==", ReviewRequestStatus.PENDING),
            ],
            limit=1,
        )
        return ReviewRequest.model_validate(docs[0]) if docs else None

    async def history(
        self, family_id: str, child_id: str, limit: int | None = None
    ) -> list[ReviewRequest]:
        """The child's requests, newest first."""
        _require(family_id, "familyId")
        _require(child_id, "childId")
        docs = await self.store.query(
            REVIEW_REQUESTS,
            family_id=family_id,
            filters=[FieldFilter("child_id", "==", child_id)],
            order_by="requested_at",
            descending=True,
            limit=limit,
        )
        return [ReviewRequest.model_validate(doc) for doc in docs]

    async def expire_sweep(self, family_id: str) -> int:
        """Expire pending requests nobody answered in time. Safe to re-run."""
        now = self.clock()
        docs = await self.store.query(
            REVIEW_REQUESTS,
            family_id=family_id,
            filters=[
                FieldFilter("status", "==", ReviewRequestStatus.PENDING),
                FieldFilter("expires_at", "<=", now),
            ],
        )
        for doc in docs:
            await self.store.update(REVIEW_REQUESTS, doc["id"], {"status": ReviewRequestStatus.EXPIRED})

        if docs:
            logger.info("Expired %d review request(s) for family %s", len(docs), family_id)
        return len(docs)

    async def _guardian_uids(self, child_id: str) -> list[str]:
        arrangement = await self.custody.get_custody(child_id)
        if arrangement is None:
            return []
        return [g.uid for g in arrangement.guardians]
