"""
Proposal Workflow — How a family changes its agreement.

A guardian or the child proposes changes. In shared-custody families a
parent's proposal first waits for the other guardian (see coparent.py);
then the other party accepts, declines or counters it.

State machine:

    pending_coparent_approval ──approve──> pending
              │                               │
              │                 ┌──accept──> accepted (new agreement version activated)
              │                 ├──decline─> declined
              │                 └──counter─> counter_proposed (+ new proposal)
              │
              ├── withdraw (proposer only) ──> withdrawn
              └── expires_at reached (sweep) ──> expired

Accepting always produces a new agreement version. A proposal that names a
``draft_agreement_id`` activates that draft; otherwise the family's active
agreement is copied, the proposal's changes are applied to its terms and
the copy is activated. Either way the accepted terms are exactly the ones
every party consented to.

Every proposal expires 14 days after creation unless resolved. Expiry is
applied by ``expire_sweep``, which is safe to re-run.
"""

from __future__ import annotations

import copy
import logging
from datetime import datetime
from typing import Any, Callable

from family_compact.charter.schema import (
    OPEN_PROPOSAL_STATUSES,
    ApprovalRequirement,
    AuditEntryType,
    ChangeType,
    CoParentApprovalStatus,
    NotificationType,
    Proposal,
    ProposalChange,
    ProposalResponse,
    ProposalResponseAction,
    ProposalStatus,
    ProposerType,
    SigningStatus,
    utc_now,
)
from family_compact.governance import notifications as messages
from family_compact.governance.activation import AgreementActivationEngine
from family_compact.governance.base import LifecycleService
from family_compact.governance.coparent import CoParentApprovalGate
from family_compact.governance.errors import (
    CoParentApprovalPending,
    Expired,
    NotActivatable,
    NotAuthorized,
    ProposalNotPending,
)
from family_compact.governance.escalation import RejectionEscalationTracker
from family_compact.ledger.store import (
    PROPOSAL_RESPONSES,
    PROPOSALS,
    DocumentStore,
    FieldFilter,
)

logger = logging.getLogger(__name__)


def apply_changes(terms: dict[str, Any], changes: list[ProposalChange]) -> dict[str, Any]:
    """
    Return a copy of ``terms`` with each change applied at its ``field_path``.

    Dotted paths reach into nested sections, creating them when missing.
    ``remove`` drops the field; ``add`` and ``modify`` set ``new_value``.
    """
    updated = copy.deepcopy(terms)
    for change in changes:
        *parents, leaf = change.field_path.split(".")
        section = updated
        for part in parents:
            if not isinstance(section.get(part), dict):
                section[part] = {}
            section = section[part]
        if change.change_type == ChangeType.REMOVE:
            section.pop(leaf, None)
        else:
            section[leaf] = copy.deepcopy(change.new_value)
    return updated


class ProposalWorkflow(LifecycleService):
    """
    Create, answer, withdraw and expire change proposals.

    Usage:
        workflow = ProposalWorkflow(store, gate, activation, escalation, ledger=ledger)
        proposal = await workflow.create(
            family_id="fam-1", child_id="child-1",
            proposer_id="parent-1", proposer_name="Alex",
            changes=[ProposalChange(section_id="screen", field_path="daily_minutes",
                                    old_value=60, new_value=90)],
            draft_agreement_id=draft.id,
        )
        await workflow.respond(proposal.id, "child-1", ProposalResponseAction.ACCEPT)
    """

    def __init__(
        self,
        store: DocumentStore,
        gate: CoParentApprovalGate,
        activation: AgreementActivationEngine,
        escalation: RejectionEscalationTracker | None = None,
        ledger: Any = None,
        notifier: Any = None,
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        super().__init__(store, ledger=ledger, notifier=notifier, clock=clock)
        self.gate = gate
        self.activation = activation
        self.escalation = escalation

    # ── Creation ────────────────────────────────────────────────

    async def create(
        self,
        family_id: str,
        child_id: str,
        proposer_id: str,
        changes: list[ProposalChange],
        proposer_name: str = "",
        proposer_type: ProposerType = ProposerType.PARENT,
        reason: str | None = None,
        agreement_id: str | None = None,
        draft_agreement_id: str | None = None,
        counter_of: str | None = None,
        proposal_number: int = 1,
    ) -> Proposal:
        """
        Open a new proposal.

        A parent's proposal is gated when the child's custody is shared;
        a child's proposal goes straight to the parents.

        Returns:
            The stored proposal, ``pending`` or ``pending_coparent_approval``.
        """
        proposer_type = ProposerType(proposer_type)
        if proposer_type == ProposerType.PARENT:
            requirement = await self.gate.requires_approval(child_id, proposer_id)
        else:
            requirement = ApprovalRequirement(required=False)

        now = self.clock()
        proposal = Proposal(
            family_id=family_id,
            child_id=child_id,
            agreement_id=agreement_id,
            draft_agreement_id=draft_agreement_id,
            proposer_id=proposer_id,
            proposer_name=proposer_name,
            proposer_type=proposer_type,
            changes=changes,
            reason=reason,
            status=(
                ProposalStatus.PENDING_COPARENT_APPROVAL if requirement.required
                else ProposalStatus.PENDING
            ),
            co_parent_approval_required=requirement.required,
            co_parent_approval_status=(
                CoParentApprovalStatus.PENDING if requirement.required else None
            ),
            eligible_approver_uids=requirement.eligible_approver_uids,
            created_at=now,
            updated_at=now,
            expires_at=self.gate.expiration_for(now),
            proposal_number=proposal_number,
            counter_of=counter_of,
        )
        await self.store.set(PROPOSALS, proposal.id, proposal.model_dump(mode="json"))
        logger.info(
            "Proposal created: family=%s id=%s status=%s",
            family_id, proposal.id, proposal.status.value,
        )

        if self.escalation is not None:
            try:
                await self.escalation.increment_proposal_count(family_id, child_id)
            except Exception as e:
                logger.error("Failed to count proposal %s for child %s: %s", proposal.id, child_id, e)

        self._record(
            family_id,
            AuditEntryType.PROPOSAL_CREATED.value,
            proposer_id,
            f"{proposer_name or 'A family member'} proposed changes to the agreement",
            {"proposal_id": proposal.id, "gated": requirement.required},
        )

        data = {"proposal_id": proposal.id}
        if requirement.required:
            await self._notify(
                family_id,
                requirement.other_parent_uid,
                NotificationType.COPARENT_APPROVAL_REQUESTED,
                messages.coparent_approval_requested(proposer_name),
                data,
            )
        elif proposer_type == ProposerType.PARENT:
            await self._notify(
                family_id,
                child_id,
                NotificationType.PROPOSAL_RECEIVED,
                messages.proposal_received(proposer_name),
                data,
            )
        else:
            for guardian_uid in await self._guardian_uids(child_id):
                await self._notify(
                    family_id,
                    guardian_uid,
                    NotificationType.PROPOSAL_RECEIVED,
                    messages.proposal_received(proposer_name),
                    data,
                )
        return proposal

    # ── Responses ───────────────────────────────────────────────

    async def respond(
        self,
        proposal_id: str,
        responder_id: str,
        action: ProposalResponseAction,
        comment: str | None = None,
        counter_changes: list[ProposalChange] | None = None,
        responder_name: str | None = None,
        counter_draft_agreement_id: str | None = None,
    ) -> ProposalResponse:
        """
        Answer an open proposal.

        ``accept`` activates the proposal's draft agreement, or a new
        version of the active agreement with the proposal's changes
        applied, before the proposal is marked accepted. A failed
        activation leaves the proposal pending. ``decline`` by the child
        feeds the rejection tracker. ``counter`` closes this proposal and
        opens a new one by the responder, carrying
        ``counter_draft_agreement_id`` when the responder drafted the
        counter terms.

        Returns:
            The stored response record (``counter_proposal_id`` set for counters).

        Raises:
            NotFound: Proposal does not exist.
            ProposalNotPending: Proposal is already resolved.
            CoParentApprovalPending: Still waiting on the second guardian.
            Expired: The 14-day window has passed.
            NotAuthorized: The responder is the proposer.
            NotActivatable: Accepting needs an active agreement to change and
                there is none, or it was replaced after the proposal was made.
            ValueError: A counter without any changes.
        """
        action = ProposalResponseAction(action)
        proposal = await self._load(PROPOSALS, proposal_id, Proposal, "Proposal")

        if not proposal.is_open:
            raise ProposalNotPending()
        if not self.gate.can_child_respond(proposal):
            raise CoParentApprovalPending(messages.COPARENT_MESSAGES["child_cannot_respond"])

        now = self.clock()
        if now > proposal.expires_at:
            raise Expired()
        if responder_id == proposal.proposer_id:
            raise NotAuthorized("You cannot respond to your own proposal")

        if action == ProposalResponseAction.ACCEPT:
            response = await self._accept(proposal, responder_id, responder_name, comment, now)
        elif action == ProposalResponseAction.DECLINE:
            response = await self._decline(proposal, responder_id, responder_name, comment, now)
        else:
            if not counter_changes:
                raise ValueError("A counter-proposal needs at least one change")
            response = await self._counter(
                proposal, responder_id, responder_name, comment, counter_changes, now,
                draft_agreement_id=counter_draft_agreement_id,
            )

        await self.store.set(PROPOSAL_RESPONSES, response.id, response.model_dump(mode="json"))
        return response

    async def _accept(
        self,
        proposal: Proposal,
        responder_id: str,
        responder_name: str | None,
        comment: str | None,
        now: datetime,
    ) -> ProposalResponse:
        agreement_id = proposal.draft_agreement_id or await self._draft_from_changes(proposal)
        await self.activation.activate(proposal.family_id, agreement_id, actor_id=responder_id)

        await self.store.update(PROPOSALS, proposal.id, {
            "status": ProposalStatus.ACCEPTED,
            "draft_agreement_id": agreement_id,
            "responded_at": now,
            "updated_at": now,
        })
        logger.info(
            "Proposal %s accepted by %s, agreement %s activated",
            proposal.id, responder_id, agreement_id,
        )

        self._record(
            proposal.family_id,
            AuditEntryType.PROPOSAL_ACCEPTED.value,
            responder_id,
            f"{responder_name or 'A family member'} accepted a proposal",
            {"proposal_id": proposal.id, "agreement_id": agreement_id},
        )
        data = {"proposal_id": proposal.id, "agreement_id": agreement_id}
        for recipient in (proposal.proposer_id, responder_id):
            await self._notify(
                proposal.family_id,
                recipient,
                NotificationType.PROPOSAL_ACCEPTED,
                messages.proposal_accepted(responder_name),
                data,
            )

        return ProposalResponse(
            proposal_id=proposal.id,
            family_id=proposal.family_id,
            responder_id=responder_id,
            action=ProposalResponseAction.ACCEPT,
            comment=comment,
            created_at=now,
        )

    async def _draft_from_changes(self, proposal: Proposal) -> str:
        """Draft the next version of the active agreement with the proposal's changes."""
        base = await self.activation.get_active(proposal.family_id)
        if base is None:
            raise NotActivatable("There is no active agreement for these changes to update")
        if proposal.agreement_id and proposal.agreement_id != base.id:
            raise NotActivatable("The agreement has changed since this proposal was made")

        draft = await self.activation.create_draft(
            proposal.family_id,
            created_by=proposal.proposer_id,
            terms=apply_changes(base.terms, proposal.changes),
            child_id=base.child_id or proposal.child_id,
            expiry_date=base.expiry_date,
        )
        # Accepting the proposal is the family's consent to these terms.
        await self.activation.record_signing_status(
            proposal.family_id, draft.id, SigningStatus.COMPLETE.value,
        )
        logger.info("Drafted %s from proposal %s over %s", draft.id, proposal.id, base.id)
        return draft.id

    async def _decline(
        self,
        proposal: Proposal,
        responder_id: str,
        responder_name: str | None,
        comment: str | None,
        now: datetime,
    ) -> ProposalResponse:
        await self.store.update(PROPOSALS, proposal.id, {
            "status": ProposalStatus.DECLINED,
            "decline_reason": comment,
            "responded_at": now,
            "updated_at": now,
        })
        logger.info("Proposal %s declined by %s", proposal.id, responder_id)

        self._record(
            proposal.family_id,
            AuditEntryType.PROPOSAL_DECLINED.value,
            responder_id,
            f"{responder_name or 'A family member'} declined a proposal",
            {"proposal_id": proposal.id},
        )
        await self._notify(
            proposal.family_id,
            proposal.proposer_id,
            NotificationType.PROPOSAL_DECLINED,
            messages.proposal_declined(responder_name, comment),
            {"proposal_id": proposal.id},
        )

        if responder_id == proposal.child_id and self.escalation is not None:
            try:
                await self.escalation.handle_child_decline(
                    proposal.family_id, proposal.child_id, proposal.id,
                )
            except Exception as e:
                logger.error("Rejection tracking failed for proposal %s: %s", proposal.id, e)

        return ProposalResponse(
            proposal_id=proposal.id,
            family_id=proposal.family_id,
            responder_id=responder_id,
            action=ProposalResponseAction.DECLINE,
            comment=comment,
            created_at=now,
        )

    async def _counter(
        self,
        proposal: Proposal,
        responder_id: str,
        responder_name: str | None,
        comment: str | None,
        counter_changes: list[ProposalChange],
        now: datetime,
        draft_agreement_id: str | None = None,
    ) -> ProposalResponse:
        await self.store.update(PROPOSALS, proposal.id, {
            "status": ProposalStatus.COUNTER_PROPOSED,
            "responded_at": now,
            "updated_at": now,
        })

        counter = await self.create(
            family_id=proposal.family_id,
            child_id=proposal.child_id,
            proposer_id=responder_id,
            proposer_name=responder_name or "",
            proposer_type=(
                ProposerType.CHILD if responder_id == proposal.child_id else ProposerType.PARENT
            ),
            changes=counter_changes,
            reason=comment,
            agreement_id=proposal.agreement_id,
            draft_agreement_id=draft_agreement_id,
            counter_of=proposal.id,
            proposal_number=proposal.proposal_number + 1,
        )
        logger.info("Proposal %s countered by %s as %s", proposal.id, responder_id, counter.id)

        self._record(
            proposal.family_id,
            AuditEntryType.PROPOSAL_COUNTERED.value,
            responder_id,
            f"{responder_name or 'A family member'} suggested a different version",
            {"proposal_id": proposal.id, "counter_proposal_id": counter.id},
        )
        await self._notify(
            proposal.family_id,
            proposal.proposer_id,
            NotificationType.PROPOSAL_COUNTERED,
            messages.proposal_countered(responder_name),
            {"proposal_id": proposal.id, "counter_proposal_id": counter.id},
        )

        return ProposalResponse(
            proposal_id=proposal.id,
            family_id=proposal.family_id,
            responder_id=responder_id,
            action=ProposalResponseAction.COUNTER,
            comment=comment,
            counter_proposal_id=counter.id,
            created_at=now,
        )

    # ── Withdrawal and expiry ───────────────────────────────────

    async def withdraw(self, proposal_id: str, by_uid: str) -> Proposal:
        """
        Withdraw an open proposal.

        Raises:
            NotFound: Proposal does not exist.
            NotAuthorized: Caller is not the proposer.
            ProposalNotPending: Proposal is already resolved.
        """
        proposal = await self._load(PROPOSALS, proposal_id, Proposal, "Proposal")
        if proposal.proposer_id != by_uid:
            raise NotAuthorized("Only the person who made this proposal can withdraw it")
        if not proposal.is_open:
            raise ProposalNotPending()

        now = self.clock()
        changes = {"status": ProposalStatus.WITHDRAWN, "updated_at": now}
        await self.store.update(PROPOSALS, proposal_id, changes)
        logger.info("Proposal %s withdrawn", proposal_id)

        self._record(
            proposal.family_id,
            AuditEntryType.PROPOSAL_WITHDRAWN.value,
            by_uid,
            "A proposal was withdrawn",
            {"proposal_id": proposal_id},
        )
        return proposal.model_copy(update=changes)

    async def expire_sweep(self, family_id: str) -> int:
        """
        Expire every open proposal in the family whose window has closed.

        Covers gated and ungated proposals alike. Re-running transitions
        nothing new.

        Returns:
            Number of proposals expired by this run.
        """
        now = self.clock()
        docs = await self.store.query(
            PROPOSALS,
            family_id=family_id,
            filters=[
                FieldFilter("status", "in", OPEN_PROPOSAL_STATUSES),
                FieldFilter("expires_at", "<=", now),
            ],
        )

        for doc in docs:
            proposal = Proposal.model_validate(doc)
            await self.store.update(PROPOSALS, proposal.id, {
                "status": ProposalStatus.EXPIRED,
                "updated_at": now,
            })
            self._record(
                family_id,
                AuditEntryType.PROPOSAL_EXPIRED.value,
                None,
                "A proposal closed without a response",
                {"proposal_id": proposal.id},
            )
            await self._notify(
                family_id,
                proposal.proposer_id,
                NotificationType.PROPOSAL_EXPIRED,
                messages.proposal_expired(),
                {"proposal_id": proposal.id},
            )

        if docs:
            logger.info("Expired %d proposal(s) for family %s", len(docs), family_id)
        return len(docs)

    # ── Queries ─────────────────────────────────────────────────

    async def get(self, proposal_id: str) -> Proposal:
        return await self._load(PROPOSALS, proposal_id, Proposal, "Proposal")

    async def list_pending(self, family_id: str) -> list[Proposal]:
        """Open proposals, oldest first."""
        docs = await self.store.query(
            PROPOSALS,
            family_id=family_id,
            filters=[FieldFilter("status", "in", OPEN_PROPOSAL_STATUSES)],
            order_by="created_at",
        )
        return [Proposal.model_validate(doc) for doc in docs]

    async def responses_for(self, proposal_id: str) -> list[ProposalResponse]:
        docs = await self.store.query(
            PROPOSAL_RESPONSES,
            filters=[FieldFilter("proposal_id", "==", proposal_id)],
            order_by="created_at",
        )
        return [ProposalResponse.model_validate(doc) for doc in docs]

    async def _guardian_uids(self, child_id: str) -> list[str]:
        arrangement = await self.gate.custody.get_custody(child_id)
        if arrangement is None:
            return []
        return [g.uid for g in arrangement.guardians]
