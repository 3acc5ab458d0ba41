"""
Tests for the co-parent approval gate.

Validates:
- Gating decision from custody (shared, sole, unknown, single guardian, 3+)
- Self-approval prohibition in every state
- Approve/decline transitions, expiry and eligibility
- Status messages, pending lists and modification flow
- An accepted modification activates the modified terms
"""

from __future__ import annotations

import pytest

from family_compact.charter.schema import (
    AgreementStatus,
    CoParentApprovalStatus,
    NotificationType,
    Proposal,
    ProposalResponseAction,
    ProposalStatus,
)
from family_compact.governance.coparent import CoParentApprovalGate
from family_compact.governance.errors import (
    Expired,
    NotAuthorized,
    NotAwaitingApproval,
    NotFound,
    SelfApproval,
)
from family_compact.ledger.store import NOTIFICATIONS, PROPOSALS, FieldFilter

from conftest import (
    CHILD,
    FAMILY,
    PARENT_A,
    PARENT_B,
    FailingNotifier,
    screen_time_change,
    seed_child,
    signed_draft,
)


async def gated_proposal(services) -> Proposal:
    await seed_child(services.store)
    return await services.proposals.create(
        family_id=FAMILY,
        child_id=CHILD,
        proposer_id=PARENT_A,
        proposer_name="Alex",
        changes=screen_time_change(),
    )


class TestRequiresApproval:
    """Gating decision from the custody arrangement."""

    @pytest.mark.asyncio
    async def test_shared_custody_requires_other_parent(self, services):
        await seed_child(services.store)
        requirement = await services.gate.requires_approval(CHILD, PARENT_A)
        assert requirement.required
        assert requirement.other_parent_uid == PARENT_B
        assert requirement.other_parent_name == "Blair"
        assert requirement.eligible_approver_uids == [PARENT_B]

    @pytest.mark.asyncio
    async def test_sole_custody_not_required(self, services):
        await seed_child(services.store, custody_type="sole")
        requirement = await services.gate.requires_approval(CHILD, PARENT_A)
        assert not requirement.required
        assert requirement.other_parent_uid is None

    @pytest.mark.asyncio
    async def test_unknown_child_not_required(self, services):
        requirement = await services.gate.requires_approval("ghost", PARENT_A)
        assert not requirement.required

    @pytest.mark.asyncio
    async def test_unrecognised_custody_type_not_required(self, services):
        await seed_child(services.store, custody_type="alternating-weeks")
        assert not (await services.gate.requires_approval(CHILD, PARENT_A)).required

    @pytest.mark.asyncio
    async def test_shared_with_single_guardian_not_required(self, services):
        await seed_child(services.store, guardians=[(PARENT_A, "Alex")])
        assert not (await services.gate.requires_approval(CHILD, PARENT_A)).required

    @pytest.mark.asyncio
    async def test_three_guardians_first_other_is_named(self, services):
        await seed_child(
            services.store,
            guardians=[(PARENT_A, "Alex"), (PARENT_B, "Blair"), ("parent-c", "Casey")],
        )
        requirement = await services.gate.requires_approval(CHILD, PARENT_B)
        assert requirement.other_parent_uid == PARENT_A
        assert requirement.eligible_approver_uids == [PARENT_A, "parent-c"]


class TestApprove:

    @pytest.mark.asyncio
    async def test_self_approval_rejected(self, services):
        proposal = await gated_proposal(services)
        with pytest.raises(SelfApproval):
            await services.gate.approve(proposal.id, PARENT_A, "Alex")

    @pytest.mark.asyncio
    async def test_self_approval_rejected_in_any_state(self, services):
        proposal = await gated_proposal(services)
        await services.gate.approve(proposal.id, PARENT_B, "Blair")
        with pytest.raises(SelfApproval):
            await services.gate.approve(proposal.id, PARENT_A, "Alex")
        with pytest.raises(SelfApproval):
            await services.gate.decline(proposal.id, PARENT_A, "Alex")

        await services.proposals.withdraw(proposal.id, PARENT_A)
        with pytest.raises(SelfApproval):
            await services.gate.approve(proposal.id, PARENT_A, "Alex")

    @pytest.mark.asyncio
    async def test_approve_moves_to_pending(self, services, clock):
        proposal = await gated_proposal(services)
        approved = await services.gate.approve(proposal.id, PARENT_B, "Blair")

        assert approved.status == ProposalStatus.PENDING
        assert approved.co_parent_approval_status == CoParentApprovalStatus.APPROVED
        assert approved.co_parent_approved_by_uid == PARENT_B
        assert approved.co_parent_approved_at == clock()

        stored = await services.proposals.get(proposal.id)
        assert stored.status == ProposalStatus.PENDING
        assert CoParentApprovalGate.can_child_respond(stored)

    @pytest.mark.asyncio
    async def test_approve_notifies_proposer_and_child(self, services):
        proposal = await gated_proposal(services)
        await services.gate.approve(proposal.id, PARENT_B, "Blair")

        to_proposer = await services.notifier.for_recipient(PARENT_A, FAMILY)
        assert any(n.type == NotificationType.COPARENT_RESPONSE for n in to_proposer)
        to_child = await services.notifier.for_recipient(CHILD, FAMILY)
        assert any(n.type == NotificationType.PROPOSAL_RECEIVED for n in to_child)

    @pytest.mark.asyncio
    async def test_not_awaiting_approval(self, services):
        proposal = await gated_proposal(services)
        await services.gate.approve(proposal.id, PARENT_B, "Blair")
        with pytest.raises(NotAwaitingApproval):
            await services.gate.approve(proposal.id, PARENT_B, "Blair")

    @pytest.mark.asyncio
    async def test_expired(self, services, clock):
        proposal = await gated_proposal(services)
        clock.advance(days=14, milliseconds=1)
        with pytest.raises(Expired):
            await services.gate.approve(proposal.id, PARENT_B, "Blair")

    @pytest.mark.asyncio
    async def test_approval_at_exact_deadline_allowed(self, services, clock):
        proposal = await gated_proposal(services)
        clock.advance(days=14)
        approved = await services.gate.approve(proposal.id, PARENT_B, "Blair")
        assert approved.status == ProposalStatus.PENDING

    @pytest.mark.asyncio
    async def test_outsider_not_authorized(self, services):
        proposal = await gated_proposal(services)
        with pytest.raises(NotAuthorized):
            await services.gate.approve(proposal.id, "stranger", "Stranger")

    @pytest.mark.asyncio
    async def test_missing_proposal(self, services):
        with pytest.raises(NotFound):
            await services.gate.approve("missing", PARENT_B, "Blair")


class TestDecline:

    @pytest.mark.asyncio
    async def test_decline(self, services):
        proposal = await gated_proposal(services)
        declined = await services.gate.decline(proposal.id, PARENT_B, "Blair", reason="Too much")
        assert declined.status == ProposalStatus.DECLINED
        assert declined.co_parent_approval_status == CoParentApprovalStatus.DECLINED
        assert declined.co_parent_decline_reason == "Too much"

        notes = await services.notifier.for_recipient(PARENT_A, FAMILY)
        assert any("Too much" in n.body for n in notes)

    @pytest.mark.asyncio
    async def test_self_decline_suggests_withdraw(self, services):
        proposal = await gated_proposal(services)
        with pytest.raises(SelfApproval) as excinfo:
            await services.gate.decline(proposal.id, PARENT_A, "Alex")
        assert "withdraw" in str(excinfo.value)

    @pytest.mark.asyncio
    async def test_decline_without_reason(self, services):
        proposal = await gated_proposal(services)
        declined = await services.gate.decline(proposal.id, PARENT_B, "Blair")
        assert declined.co_parent_decline_reason is None


class TestQueriesAndMessages:

    @pytest.mark.asyncio
    async def test_pending_for_parent_excludes_own(self, services):
        proposal = await gated_proposal(services)
        assert [p.id for p in await services.gate.pending_for_parent(FAMILY, PARENT_B)] == [proposal.id]
        assert await services.gate.pending_for_parent(FAMILY, PARENT_A) == []

    @pytest.mark.asyncio
    async def test_get_approval_status(self, services, clock):
        proposal = await gated_proposal(services)
        status = await services.gate.get_approval_status(proposal.id)
        assert status.required
        assert status.status == CoParentApprovalStatus.PENDING
        assert not status.is_expired

        clock.advance(days=15)
        assert (await services.gate.get_approval_status(proposal.id)).is_expired

    @pytest.mark.asyncio
    async def test_check_proposal_expiration(self, services, clock):
        proposal = await gated_proposal(services)
        assert await services.gate.check_proposal_expiration(proposal.id) is False

        clock.advance(days=14, seconds=1)
        assert await services.gate.check_proposal_expiration(proposal.id) is True
        assert (await services.proposals.get(proposal.id)).status == ProposalStatus.EXPIRED
        assert await services.gate.check_proposal_expiration(proposal.id) is False

    @pytest.mark.asyncio
    async def test_status_messages(self, services):
        proposal = await gated_proposal(services)
        gate = services.gate
        assert gate.status_message(proposal, "Blair") == "Waiting for Blair to review this proposal"

        approved = proposal.model_copy(update={"co_parent_approval_status": CoParentApprovalStatus.APPROVED})
        assert gate.status_message(approved, "Blair") == "Blair approved this proposal"

        declined = proposal.model_copy(update={
            "co_parent_approval_status": CoParentApprovalStatus.DECLINED,
            "co_parent_decline_reason": "Not yet",
        })
        assert gate.status_message(declined, "Blair") == "Blair declined: Not yet"

        expired = proposal.model_copy(update={"status": ProposalStatus.EXPIRED})
        assert gate.status_message(expired, "Blair") == (
            "This proposal expired before receiving co-parent approval"
        )

        ungated = proposal.model_copy(update={"co_parent_approval_required": False})
        assert gate.status_message(ungated, "Blair") == ""

    def test_can_child_respond(self):
        base = {
            "family_id": FAMILY, "child_id": CHILD, "proposer_id": PARENT_A,
            "expires_at": "2026-01-15T00:00:00Z",
        }
        assert CoParentApprovalGate.can_child_respond(Proposal(**base))
        gated = Proposal(**base, co_parent_approval_required=True,
                         co_parent_approval_status=CoParentApprovalStatus.PENDING)
        assert not CoParentApprovalGate.can_child_respond(gated)
        approved = gated.model_copy(update={"co_parent_approval_status": CoParentApprovalStatus.APPROVED})
        assert CoParentApprovalGate.can_child_respond(approved)


class TestProposeModification:

    @pytest.mark.asyncio
    async def test_withdraws_original_and_opens_gated_replacement(self, services):
        proposal = await gated_proposal(services)
        replacement = await services.gate.propose_modification(
            proposal.id, PARENT_B, "Blair", screen_time_change(75), reason="Meet in the middle",
        )

        assert (await services.proposals.get(proposal.id)).status == ProposalStatus.WITHDRAWN
        assert replacement.status == ProposalStatus.PENDING_COPARENT_APPROVAL
        assert replacement.proposer_id == PARENT_B
        assert replacement.counter_of == proposal.id
        assert replacement.proposal_number == proposal.proposal_number + 1
        assert replacement.eligible_approver_uids == [PARENT_A]

        stored = await services.store.query(
            PROPOSALS, family_id=FAMILY,
            filters=[FieldFilter("counter_of", "==", proposal.id)],
        )
        assert len(stored) == 1

        approved = await services.gate.approve(replacement.id, PARENT_A, "Alex")
        assert approved.status == ProposalStatus.PENDING

    @pytest.mark.asyncio
    async def test_accepted_replacement_activates_modified_terms(self, services):
        base = await services.activation.create_draft(
            FAMILY, created_by=PARENT_A, child_id=CHILD, terms={"daily_minutes": 60},
        )
        await services.activation.record_signing_status(FAMILY, base.id, "complete")
        await services.activation.activate(FAMILY, base.id)
        original_draft = await signed_draft(services)

        await seed_child(services.store)
        proposal = await services.proposals.create(
            family_id=FAMILY, child_id=CHILD, proposer_id=PARENT_A, proposer_name="Alex",
            changes=screen_time_change(90), agreement_id=base.id,
            draft_agreement_id=original_draft.id,
        )
        replacement = await services.gate.propose_modification(
            proposal.id, PARENT_B, "Blair", screen_time_change(75),
        )
        assert replacement.draft_agreement_id is None

        await services.gate.approve(replacement.id, PARENT_A, "Alex")
        await services.proposals.respond(replacement.id, CHILD, ProposalResponseAction.ACCEPT)

        active = await services.activation.get_active(FAMILY)
        assert active.terms == {"daily_minutes": 75}
        assert active.version == "2"
        untouched = await services.activation.get(FAMILY, original_draft.id)
        assert untouched.status == AgreementStatus.DRAFT

    @pytest.mark.asyncio
    async def test_replacement_keeps_modifier_draft(self, services):
        proposal = await gated_proposal(services)
        modified = await signed_draft(services)
        replacement = await services.gate.propose_modification(
            proposal.id, PARENT_B, "Blair", screen_time_change(75),
            draft_agreement_id=modified.id,
        )
        assert replacement.draft_agreement_id == modified.id

    @pytest.mark.asyncio
    async def test_proposer_cannot_modify_own(self, services):
        proposal = await gated_proposal(services)
        with pytest.raises(NotAuthorized):
            await services.gate.propose_modification(proposal.id, PARENT_A, "Alex", screen_time_change())


class TestSideEffectFailures:

    @pytest.mark.asyncio
    async def test_notification_failure_does_not_fail_approval(self, services, clock):
        proposal = await gated_proposal(services)
        gate = CoParentApprovalGate(
            services.store, services.gate.custody, notifier=FailingNotifier(), clock=clock,
        )
        approved = await gate.approve(proposal.id, PARENT_B, "Blair")
        assert approved.status == ProposalStatus.PENDING
        assert await services.store.query(
            NOTIFICATIONS, filters=[FieldFilter("type", "==", NotificationType.COPARENT_RESPONSE)],
        ) == []
