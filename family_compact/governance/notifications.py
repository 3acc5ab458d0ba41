"""
Notification Sink — Writes notification records for the delivery layer.

Delivery to devices is handled elsewhere; this module only decides what a
family member should be told and stores it in the ``notifications``
collection. Wording is supportive and invitation-style: a declined
proposal is a chance to talk, never a failure.
"""

from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Callable

from family_compact.charter.schema import Notification, NotificationType, utc_now
from family_compact.ledger.store import NOTIFICATIONS, DocumentStore, FieldFilter

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════
# Message catalogue
# ════════════════════════════════════════════════════════════════

COPARENT_MESSAGES = {
    "awaiting_approval": "Waiting for {name} to review this proposal",
    "approved": "{name} approved this proposal",
    "declined": "{name} declined this proposal",
    "declined_with_reason": "{name} declined: {reason}",
    "expired": "This proposal expired before receiving co-parent approval",
    "cannot_self_approve": "You cannot approve your own proposal",
    "cannot_self_decline": "You cannot decline your own proposal. Use withdraw instead.",
    "child_cannot_respond": "This proposal is waiting for both parents to approve",
}


def coparent_status_text(key: str, name: str = "", reason: str | None = None) -> str:
    """Render one of the co-parent status messages."""
    if key == "declined" and reason:
        key = "declined_with_reason"
    return COPARENT_MESSAGES[key].format(name=name or "Your co-parent", reason=reason)


def _who(name: str | None, fallback: str) -> str:
    return name or fallback


def proposal_received(proposer_name: str | None) -> tuple[str, str]:
    who = _who(proposer_name, "Your family")
    return (
        "New agreement idea to look at",
        f"{who} suggested some changes to your agreement. Take a look when you're ready.",
    )


def coparent_approval_requested(proposer_name: str | None) -> tuple[str, str]:
    who = _who(proposer_name, "Your co-parent")
    return (
        "A proposal needs your review",
        f"{who} suggested changes to the family agreement. "
        "Both parents review changes before they are shared with your child.",
    )


def coparent_approved(approver_name: str | None) -> tuple[str, str]:
    return (
        "Proposal approved by both parents",
        coparent_status_text("approved", approver_name or ""),
    )


def coparent_declined(decliner_name: str | None, reason: str | None) -> tuple[str, str]:
    return (
        "Your co-parent shared some thoughts",
        coparent_status_text("declined", decliner_name or "", reason)
        + ". This is a good moment to talk it through together.",
    )


def proposal_accepted(responder_name: str | None) -> tuple[str, str]:
    who = _who(responder_name, "Your family")
    return (
        "Your agreement has been updated",
        f"{who} accepted the proposed changes. The new agreement is now in effect.",
    )


def proposal_declined(responder_name: str | None, reason: str | None) -> tuple[str, str]:
    who = _who(responder_name, "Your family")
    body = f"{who} isn't ready for these changes yet."
    if reason:
        body += f" They said: \"{reason}\"."
    body += " You can talk about it together and try a new idea anytime."
    return ("Let's keep talking", body)


def proposal_countered(responder_name: str | None) -> tuple[str, str]:
    who = _who(responder_name, "Your family")
    return (
        "A new idea came back",
        f"{who} suggested a different version of your proposal. Take a look together.",
    )


def proposal_expired() -> tuple[str, str]:
    return (
        "A proposal has closed",
        "Your proposal wasn't answered in time, so it has closed. "
        "You're welcome to share it again when the time is right.",
    )


def renewal_requested() -> tuple[str, str]:
    return (
        "Time to renew your agreement",
        "Your parent has renewed your family agreement. Please review it and add your consent.",
    )


def agreement_renewed(expiry: datetime | None) -> tuple[str, str]:
    if expiry is None:
        detail = "It no longer has an end date, and you'll still review it together each year."
    else:
        detail = f"It now runs until {expiry.date().isoformat()}."
    return ("Your agreement was renewed", f"Everyone agreed to keep going. {detail}")


def rejection_pattern_escalation() -> tuple[str, str]:
    return (
        "Support is available",
        "It looks like agreeing on changes has been hard lately. "
        "If you'd like, a trusted adult can help you and your family talk things through.",
    )


def review_requested(child_name: str, suggested_areas: list[str]) -> tuple[str, str]:
    body = (
        f"{child_name} is inviting you to have a conversation about the agreement "
        "together. This could be a good opportunity to check in."
    )
    if suggested_areas:
        body += " Ideas to start with: " + ", ".join(suggested_areas) + "."
    return ("Agreement discussion invitation", body)


# ════════════════════════════════════════════════════════════════
# Dispatcher
# ════════════════════════════════════════════════════════════════


class NotificationDispatcher:
    """
    Stores notification records.

    ``notify`` raises on store failure; workflows call it through
    ``LifecycleService._notify`` which logs and carries on.
    """

    def __init__(self, store: DocumentStore, clock: Callable[[], datetime] = utc_now) -> None:
        self.store = store
        self.clock = clock

    async def notify(
        self,
        family_id: str,
        recipient_id: str,
        type: NotificationType,
        title: str,
        body: str,
        data: dict[str, Any] | None = None,
    ) -> Notification:
        notification = Notification(
            family_id=family_id,
            recipient_id=recipient_id,
            type=type,
            title=title,
            body=body,
            data=data or {},
            created_at=self.clock(),
        )
        await self.store.set(NOTIFICATIONS, notification.id, notification.model_dump(mode="json"))
        logger.info(
            "Notification queued: family=%s recipient=%s type=%s",
            family_id, recipient_id, type.value,
        )
        return notification

    async def for_recipient(self, recipient_id: str, family_id: str | None = None) -> list[Notification]:
        docs = await self.store.query(
            NOTIFICATIONS,
            family_id=family_id,
            filters=[FieldFilter("recipient_id", "==", recipient_id)],
            order_by="created_at",
        )
        return [Notification.model_validate(doc) for doc in docs]
