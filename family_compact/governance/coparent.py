"""
Co-Parent Approval Gate — Two-parent consent for shared-custody families.

When a child's custody is shared, a change proposed by one guardian must be
approved by another guardian before the child is asked to respond:

    pending_coparent_approval ──approve──> pending ──(child responds)──> ...
                │
                ├──decline──> declined
                └──14 days──> expired

A guardian can never approve or decline their own proposal, whatever state
it is in. Sole custody, an unknown child, or a child with only one guardian
means no gating at all.

The "other parent" named in notifications is the first guardian who is not
the proposer. Any guardian other than the proposer may approve.
"""

from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Protocol

from family_compact.charter.schema import (
    ApprovalRequirement,
    AuditEntryType,
    CoParentApprovalStatus,
    CoParentApprovalSummary,
    CustodyArrangement,
    CustodyType,
    Guardian,
    NotificationType,
    Proposal,
    ProposalChange,
    ProposalStatus,
    ProposerType,
    utc_now,
)
from family_compact.config import settings
from family_compact.governance import notifications as messages
from family_compact.governance.base import LifecycleService
from family_compact.governance.errors import (
    Expired,
    NotAuthorized,
    NotAwaitingApproval,
    SelfApproval,
)
from family_compact.ledger.store import CHILDREN, PROPOSALS, DocumentStore, FieldFilter

logger = logging.getLogger(__name__)


# ════════════════════════════════════════════════════════════════
# Custody lookup
# ════════════════════════════════════════════════════════════════


class CustodyLookup(Protocol):
    async def get_custody(self, child_id: str) -> CustodyArrangement | None: ...


class StoreCustodyLookup:
    """
    Reads custody from the ``children`` collection.

    Expected document shape::

        {"family_id": "...",
         "custody_arrangement": {"custody_type": "shared"},
         "guardians": [{"uid": "...", "display_name": "..."}]}
    """

    def __init__(self, store: DocumentStore) -> None:
        self.store = store

    async def get_custody(self, child_id: str) -> CustodyArrangement | None:
        doc = await self.store.get(CHILDREN, child_id)
        if doc is None:
            return None

        raw_type = (doc.get("custody_arrangement") or {}).get("custody_type")
        try:
            custody_type = CustodyType(raw_type)
        except ValueError:
            custody_type = CustodyType.UNKNOWN

        guardians = [
            Guardian(uid=g["uid"], display_name=g.get("display_name"))
            for g in doc.get("guardians") or []
            if isinstance(g, dict) and g.get("uid")
        ]
        return CustodyArrangement(custody_type=custody_type, guardians=guardians)


# ════════════════════════════════════════════════════════════════
# Gate
# ════════════════════════════════════════════════════════════════


class CoParentApprovalGate(LifecycleService):
    """
    Decides whether a proposal needs a second guardian and records their decision.

    Usage:
        gate = CoParentApprovalGate(store, StoreCustodyLookup(store), ledger=ledger)
        requirement = await gate.requires_approval(child_id, "parent-1")
        proposal = await gate.approve(proposal_id, "parent-2", "Sam")
    """

    def __init__(
        self,
        store: DocumentStore,
        custody: CustodyLookup,
        ledger: Any = None,
        notifier: Any = None,
        clock: Callable[[], datetime] = utc_now,
        expiry_days: int | None = None,
    ) -> None:
        super().__init__(store, ledger=ledger, notifier=notifier, clock=clock)
        self.custody = custody
        self.expiry_days = settings.proposal_expiry_days if expiry_days is None else expiry_days

    def expiration_for(self, created_at: datetime) -> datetime:
        return created_at + timedelta(days=self.expiry_days)

    async def requires_approval(
        self, child_id: str, requesting_parent_uid: str
    ) -> ApprovalRequirement:
        """
        Gating decision for a proposal about ``child_id``.

        Required only for shared custody with at least one guardian other
        than the requester.
        """
        arrangement = await self.custody.get_custody(child_id)
        if arrangement is None or arrangement.custody_type != CustodyType.SHARED:
            return ApprovalRequirement(required=False)

        others = [g for g in arrangement.guardians if g.uid != requesting_parent_uid]
        if not others:
            return ApprovalRequirement(required=False)

        return ApprovalRequirement(
            required=True,
            other_parent_uid=others[0].uid,
            other_parent_name=others[0].display_name,
            eligible_approver_uids=[g.uid for g in others],
        )

    @staticmethod
    def can_child_respond(proposal: Proposal) -> bool:
        if not proposal.co_parent_approval_required:
            return True
        return proposal.co_parent_approval_status == CoParentApprovalStatus.APPROVED

    # ── Decisions ───────────────────────────────────────────────

    async def approve(self, proposal_id: str, approver_uid: str, approver_name: str) -> Proposal:
        """
        Approve a gated proposal so the child can respond.

        Raises:
            NotFound: Proposal does not exist.
            SelfApproval: The approver is the proposer.
            NotAwaitingApproval: The proposal is not waiting on a co-parent.
            Expired: The approval window has closed.
            NotAuthorized: The approver is not one of the child's other guardians.
        """
        proposal = await self._load(PROPOSALS, proposal_id, Proposal, "Proposal")
        if proposal.proposer_id == approver_uid:
            raise SelfApproval(messages.COPARENT_MESSAGES["cannot_self_approve"])
        self._ensure_awaiting(proposal)

        now = self.clock()
        if now > proposal.expires_at:
            raise Expired(messages.COPARENT_MESSAGES["expired"])
        self._ensure_eligible(proposal, approver_uid)

        changes = {
            "status": ProposalStatus.PENDING,
            "co_parent_approval_status": CoParentApprovalStatus.APPROVED,
            "co_parent_approved_by_uid": approver_uid,
            "co_parent_approved_at": now,
            "updated_at": now,
        }
        await self.store.update(PROPOSALS, proposal_id, changes)
        logger.info("Co-parent approved proposal %s (by %s)", proposal_id, approver_uid)

        self._record(
            proposal.family_id,
            AuditEntryType.COPARENT_APPROVED.value,
            approver_uid,
            f"{approver_name or 'A parent'} approved a proposed change",
            {"proposal_id": proposal_id},
        )
        data = {"proposal_id": proposal_id}
        await self._notify(
            proposal.family_id,
            proposal.proposer_id,
            NotificationType.COPARENT_RESPONSE,
            messages.coparent_approved(approver_name),
            {**data, "action": "approved"},
        )
        await self._notify(
            proposal.family_id,
            proposal.child_id,
            NotificationType.PROPOSAL_RECEIVED,
            messages.proposal_received(proposal.proposer_name),
            data,
        )
        return proposal.model_copy(update=changes)

    async def decline(
        self,
        proposal_id: str,
        decliner_uid: str,
        decliner_name: str,
        reason: str | None = None,
    ) -> Proposal:
        """
        Decline a gated proposal on behalf of the second guardian.

        Raises:
            NotFound: Proposal does not exist.
            SelfApproval: The decliner is the proposer (they should withdraw).
            NotAwaitingApproval: The proposal is not waiting on a co-parent.
            NotAuthorized: The decliner is not one of the child's other guardians.
        """
        proposal = await self._load(PROPOSALS, proposal_id, Proposal, "Proposal")
        if proposal.proposer_id == decliner_uid:
            raise SelfApproval(messages.COPARENT_MESSAGES["cannot_self_decline"])
        self._ensure_awaiting(proposal)
        self._ensure_eligible(proposal, decliner_uid)

        now = self.clock()
        changes = {
            "status": ProposalStatus.DECLINED,
            "co_parent_approval_status": CoParentApprovalStatus.DECLINED,
            "co_parent_approved_by_uid": decliner_uid,
            "co_parent_approved_at": now,
            "co_parent_decline_reason": reason,
            "responded_at": now,
            "updated_at": now,
        }
        await self.store.update(PROPOSALS, proposal_id, changes)
        logger.info("Co-parent declined proposal %s (by %s)", proposal_id, decliner_uid)

        self._record(
            proposal.family_id,
            AuditEntryType.COPARENT_DECLINED.value,
            decliner_uid,
            f"{decliner_name or 'A parent'} declined a proposed change",
            {"proposal_id": proposal_id, "reason": reason},
        )
        await self._notify(
            proposal.family_id,
            proposal.proposer_id,
            NotificationType.COPARENT_RESPONSE,
            messages.coparent_declined(decliner_name, reason),
            {"proposal_id": proposal_id, "action": "declined"},
        )
        return proposal.model_copy(update=changes)

    async def propose_modification(
        self,
        original_id: str,
        modifier_uid: str,
        modifier_name: str,
        changes: list[ProposalChange],
        reason: str | None = None,
        draft_agreement_id: str | None = None,
    ) -> Proposal:
        """
        Counter a gated proposal with an edited version.

        The original is withdrawn and a new proposal by the modifier is
        created, itself awaiting approval from the other guardian. The
        original's draft is never carried over, since it holds the terms
        being replaced. Pass ``draft_agreement_id`` when the modifier has
        prepared a draft with the edited terms; otherwise accepting the
        replacement applies ``changes`` to the active agreement.
        """
        original = await self._load(PROPOSALS, original_id, Proposal, "Original proposal")
        if original.proposer_id == modifier_uid:
            raise NotAuthorized("You cannot modify your own proposal. Withdraw it and propose again.")
        self._ensure_awaiting(original)
        self._ensure_eligible(original, modifier_uid)

        now = self.clock()
        await self.store.update(PROPOSALS, original_id, {
            "status": ProposalStatus.WITHDRAWN,
            "updated_at": now,
        })

        requirement = await self.requires_approval(original.child_id, modifier_uid)
        approvers = requirement.eligible_approver_uids or [original.proposer_id]
        replacement = Proposal(
            family_id=original.family_id,
            child_id=original.child_id,
            agreement_id=original.agreement_id,
            draft_agreement_id=draft_agreement_id,
            proposer_id=modifier_uid,
            proposer_name=modifier_name,
            proposer_type=ProposerType.PARENT,
            changes=changes,
            reason=reason,
            status=ProposalStatus.PENDING_COPARENT_APPROVAL,
            co_parent_approval_required=True,
            co_parent_approval_status=CoParentApprovalStatus.PENDING,
            eligible_approver_uids=approvers,
            created_at=now,
            updated_at=now,
            expires_at=self.expiration_for(now),
            proposal_number=original.proposal_number + 1,
            counter_of=original_id,
        )
        await self.store.set(PROPOSALS, replacement.id, replacement.model_dump(mode="json"))
        logger.info(
            "Proposal %s modified by %s as %s", original_id, modifier_uid, replacement.id,
        )

        self._record(
            original.family_id,
            AuditEntryType.PROPOSAL_COUNTERED.value,
            modifier_uid,
            f"{modifier_name or 'A parent'} suggested changes to a proposal",
            {"proposal_id": original_id, "replacement_id": replacement.id},
        )
        await self._notify(
            original.family_id,
            original.proposer_id,
            NotificationType.COPARENT_APPROVAL_REQUESTED,
            messages.coparent_approval_requested(modifier_name),
            {"proposal_id": replacement.id, "counter_of": original_id},
        )
        return replacement

    async def check_proposal_expiration(self, proposal_id: str) -> bool:
        """
        Expire one gated proposal if its approval window has closed.

        Returns:
            True when the proposal is (now) expired by this check.
        """
        proposal = await self._load(PROPOSALS, proposal_id, Proposal, "Proposal")
        if proposal.status != ProposalStatus.PENDING_COPARENT_APPROVAL:
            return False

        now = self.clock()
        if now <= proposal.expires_at:
            return False

        await self.store.update(PROPOSALS, proposal_id, {
            "status": ProposalStatus.EXPIRED,
            "updated_at": now,
        })
        logger.info("Proposal %s expired awaiting co-parent approval", proposal_id)
        self._record(
            proposal.family_id,
            AuditEntryType.PROPOSAL_EXPIRED.value,
            None,
            "A proposal closed before both parents reviewed it",
            {"proposal_id": proposal_id},
        )
        await self._notify(
            proposal.family_id,
            proposal.proposer_id,
            NotificationType.PROPOSAL_EXPIRED,
            messages.proposal_expired(),
            {"proposal_id": proposal_id},
        )
        return True

    # ── Queries ─────────────────────────────────────────────────

    async def get_approval_status(self, proposal_id: str) -> CoParentApprovalSummary:
        proposal = await self._load(PROPOSALS, proposal_id, Proposal, "Proposal")
        return CoParentApprovalSummary(
            required=proposal.co_parent_approval_required,
            status=proposal.co_parent_approval_status,
            approved_by_uid=proposal.co_parent_approved_by_uid,
            approved_at=proposal.co_parent_approved_at,
            decline_reason=proposal.co_parent_decline_reason,
            expires_at=proposal.expires_at,
            is_expired=self.clock() > proposal.expires_at,
        )

    async def pending_for_parent(self, family_id: str, parent_uid: str) -> list[Proposal]:
        """Gated proposals this parent can act on (never their own)."""
        docs = await self.store.query(
            PROPOSALS,
            family_id=family_id,
            filters=[
                FieldFilter("status", "==", ProposalStatus.PENDING_COPARENT_APPROVAL),
                FieldFilter("co_parent_approval_required", "==", True),
            ],
            order_by="created_at",
        )
        proposals = [Proposal.model_validate(doc) for doc in docs]
        return [p for p in proposals if p.proposer_id != parent_uid]

    @staticmethod
    def status_message(proposal: Proposal, other_parent_name: str) -> str:
        """Human-readable co-parent status; empty when no approval is needed."""
        if not proposal.co_parent_approval_required:
            return ""
        if proposal.status == ProposalStatus.EXPIRED:
            return messages.coparent_status_text("expired")
        if proposal.co_parent_approval_status == CoParentApprovalStatus.PENDING:
            return messages.coparent_status_text("awaiting_approval", other_parent_name)
        if proposal.co_parent_approval_status == CoParentApprovalStatus.APPROVED:
            return messages.coparent_status_text("approved", other_parent_name)
        if proposal.co_parent_approval_status == CoParentApprovalStatus.DECLINED:
            return messages.coparent_status_text(
                "declined", other_parent_name, proposal.co_parent_decline_reason,
            )
        return ""

    # ── Internal ────────────────────────────────────────────────

    @staticmethod
    def _ensure_awaiting(proposal: Proposal) -> None:
        if proposal.status != ProposalStatus.PENDING_COPARENT_APPROVAL:
            raise NotAwaitingApproval()

    @staticmethod
    def _ensure_eligible(proposal: Proposal, uid: str) -> None:
        if proposal.eligible_approver_uids and uid not in proposal.eligible_approver_uids:
            raise NotAuthorized("Only the child's other guardian can review this proposal")
