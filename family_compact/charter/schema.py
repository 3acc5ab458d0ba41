"""
Charter Schema — Pydantic models for every family agreement entity.

These models are the canonical data structures for agreements, change
proposals, renewals, rejection patterns, custody arrangements and the
notification / audit records emitted by the workflows. Documents are stored
in the document store as ``model_dump(mode="json")`` and read back with
``model_validate``.

Lifecycle summary:
    Agreement  — draft → active → superseded | archived | expired
    Proposal   — pending_coparent_approval → pending →
                 accepted | declined | withdrawn | expired | counter_proposed
    Renewal    — parent-initiated → child-consenting → completed
                 (cancelled from either non-terminal state)
"""

from __future__ import annotations

import enum
from datetime import datetime, timezone
from typing import Any
from uuid import uuid4

from pydantic import BaseModel, Field


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def new_id() -> str:
    return uuid4().hex


# ════════════════════════════════════════════════════════════════
# Enumerations
# ════════════════════════════════════════════════════════════════


class AgreementStatus(str, enum.Enum):
    """Agreement lifecycle states."""

    DRAFT = "draft"
    ACTIVE = "active"
    SUPERSEDED = "superseded"
    ARCHIVED = "archived"
    EXPIRED = "expired"


TERMINAL_AGREEMENT_STATUSES = frozenset(
    {AgreementStatus.SUPERSEDED, AgreementStatus.ARCHIVED, AgreementStatus.EXPIRED}
)


class ArchiveReason(str, enum.Enum):
    """Why an agreement left the active state."""

    NEW_VERSION = "new_version"
    MANUAL = "manual"
    EXPIRED = "expired"


class SigningStatus(str, enum.Enum):
    """Signing progress tokens written by the signing ceremony."""

    PENDING = "pending"
    PARENT_SIGNED = "parent_signed"
    CHILD_SIGNED = "child_signed"
    BOTH_PARENTS_SIGNED = "both_parents_signed"
    COMPLETE = "complete"


class ProposalStatus(str, enum.Enum):
    """Change proposal lifecycle states."""

    PENDING = "pending"
    PENDING_COPARENT_APPROVAL = "pending_coparent_approval"
    ACCEPTED = "accepted"
    DECLINED = "declined"
    WITHDRAWN = "withdrawn"
    EXPIRED = "expired"
    COUNTER_PROPOSED = "counter_proposed"


OPEN_PROPOSAL_STATUSES = frozenset(
    {ProposalStatus.PENDING, ProposalStatus.PENDING_COPARENT_APPROVAL}
)


class CoParentApprovalStatus(str, enum.Enum):
    """Second-guardian decision on a gated proposal."""

    PENDING = "pending"
    APPROVED = "approved"
    DECLINED = "declined"


class ProposerType(str, enum.Enum):
    """Who initiated a proposal."""

    PARENT = "parent"
    CHILD = "child"


class ProposalResponseAction(str, enum.Enum):
    """Actions available to the responding party."""

    ACCEPT = "accept"
    DECLINE = "decline"
    COUNTER = "counter"


class ChangeType(str, enum.Enum):
    """Kind of edit a proposal makes to an agreement term."""

    ADD = "add"
    MODIFY = "modify"
    REMOVE = "remove"


class CustodyType(str, enum.Enum):
    """Custody arrangement declared for a child."""

    SHARED = "shared"
    SOLE = "sole"
    UNKNOWN = "unknown"


class RenewalMode(str, enum.Enum):
    """
    What the family intends when renewing.

    Both modes extend the current agreement unchanged. ``renew-with-changes``
    records that the family also means to edit its terms, which is done
    with a change proposal before or after the renewal.
    """

    RENEW_AS_IS = "renew-as-is"
    RENEW_WITH_CHANGES = "renew-with-changes"


class RenewalStatus(str, enum.Enum):
    PARENT_INITIATED = "parent-initiated"
    CHILD_CONSENTING = "child-consenting"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class RenewalDuration(str, enum.Enum):
    """Renewal lengths offered to families."""

    THREE_MONTHS = "3-months"
    SIX_MONTHS = "6-months"
    ONE_YEAR = "1-year"
    NO_EXPIRY = "no-expiry"


RENEWAL_DURATION_MONTHS: dict[RenewalDuration, int | None] = {
    RenewalDuration.THREE_MONTHS: 3,
    RenewalDuration.SIX_MONTHS: 6,
    RenewalDuration.ONE_YEAR: 12,
    RenewalDuration.NO_EXPIRY: None,
}


class RenewalStep(str, enum.Enum):
    """Next step shown to the family during a renewal."""

    PARENT_SIGN = "parent-sign"
    CHILD_CONSENT = "child-consent"
    COMPLETE = "complete"
    DONE = "done"
    CANCELLED = "cancelled"


class WarningLevel(str, enum.Enum):
    NONE = "none"
    WARNING = "warning"
    CRITICAL = "critical"
    EXPIRED = "expired"


class GracePeriodStatus(str, enum.Enum):
    NOT_STARTED = "not-started"
    ACTIVE = "active"
    EXPIRED = "expired"


class ReviewRequestStatus(str, enum.Enum):
    """A child's invitation to talk the agreement over."""

    PENDING = "pending"
    ACKNOWLEDGED = "acknowledged"
    REVIEWED = "reviewed"
    EXPIRED = "expired"


class AuditEntryType(str, enum.Enum):
    """Activity-feed entry types written by the workflows."""

    GENESIS = "genesis"
    AGREEMENT_CREATED = "agreement_created"
    AGREEMENT_ACTIVATED = "agreement_activated"
    AGREEMENT_ARCHIVED = "agreement_archived"
    AGREEMENT_SUPERSEDED = "agreement_superseded"
    AGREEMENT_EXPIRED = "agreement_expired"
    AGREEMENT_RENEWED = "agreement_renewed"
    PROPOSAL_CREATED = "proposal_created"
    PROPOSAL_ACCEPTED = "proposal_accepted"
    PROPOSAL_DECLINED = "proposal_declined"
    PROPOSAL_COUNTERED = "proposal_countered"
    PROPOSAL_WITHDRAWN = "proposal_withdrawn"
    PROPOSAL_EXPIRED = "proposal_expired"
    COPARENT_APPROVED = "coparent_approved"
    COPARENT_DECLINED = "coparent_declined"
    ESCALATION_TRIGGERED = "escalation_triggered"
    REVIEW_REQUESTED = "review_requested"
    REVIEW_COMPLETED = "review_completed"


class NotificationType(str, enum.Enum):
    """Notification record types handed to the delivery layer."""

    PROPOSAL_RECEIVED = "proposal_received"
    COPARENT_APPROVAL_REQUESTED = "coparent_approval_requested"
    COPARENT_RESPONSE = "coparent_response"
    PROPOSAL_ACCEPTED = "proposal_accepted"
    PROPOSAL_DECLINED = "proposal_declined"
    PROPOSAL_COUNTERED = "proposal_countered"
    PROPOSAL_EXPIRED = "proposal_expired"
    RENEWAL_REQUESTED = "renewal_requested"
    AGREEMENT_RENEWED = "agreement_renewed"
    REJECTION_PATTERN_ESCALATION = "rejection_pattern_escalation"
    AGREEMENT_REVIEW_REQUESTED = "agreement_review_requested"


# ════════════════════════════════════════════════════════════════
# Agreements
# ════════════════════════════════════════════════════════════════


class Agreement(BaseModel):
    """
    A versioned, family-scoped behavioral agreement.

    At most one agreement per family is ``active`` at any instant. The
    ``version`` is assigned at activation and is never reused within the
    family's lineage.
    """

    id: str = Field(default_factory=new_id)
    family_id: str
    child_id: str | None = None
    status: AgreementStatus = AgreementStatus.DRAFT
    version: str | None = Field(
        default=None, description="Assigned on activation, monotonic per family"
    )
    signing_status: str | None = Field(
        default=None, description="Opaque signing token consumed by the signing gate"
    )
    terms: dict[str, Any] = Field(default_factory=dict)
    created_by: str | None = None
    created_at: datetime = Field(default_factory=utc_now)
    activated_at: datetime | None = None
    archived_at: datetime | None = None
    archive_reason: ArchiveReason | None = None
    superseded_by: str | None = None
    expiry_date: datetime | None = Field(
        default=None, description="None means no expiry (annual review still applies)"
    )
    last_review_date: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_AGREEMENT_STATUSES


# ════════════════════════════════════════════════════════════════
# Proposals
# ════════════════════════════════════════════════════════════════


class ProposalChange(BaseModel):
    """A single edit to one agreement term."""

    section_id: str
    section_name: str = ""
    field_path: str
    old_value: Any = None
    new_value: Any = None
    change_type: ChangeType = ChangeType.MODIFY


class Proposal(BaseModel):
    """
    A request to change the family's agreement.

    Gated by a second guardian when custody is shared, then answered by the
    other party. Proposals and agreements are separate aggregates joined by
    ``agreement_id`` / ``draft_agreement_id``.
    """

    id: str = Field(default_factory=new_id)
    family_id: str
    child_id: str
    agreement_id: str | None = Field(
        default=None, description="Agreement being changed"
    )
    draft_agreement_id: str | None = Field(
        default=None, description="Draft version activated when the proposal is accepted"
    )
    proposer_id: str
    proposer_name: str = ""
    proposer_type: ProposerType = ProposerType.PARENT
    changes: list[ProposalChange] = Field(default_factory=list)
    reason: str | None = None
    status: ProposalStatus = ProposalStatus.PENDING

    co_parent_approval_required: bool = False
    co_parent_approval_status: CoParentApprovalStatus | None = None
    co_parent_approved_by_uid: str | None = None
    co_parent_approved_at: datetime | None = None
    co_parent_decline_reason: str | None = None
    eligible_approver_uids: list[str] = Field(
        default_factory=list,
        description="Guardians other than the proposer, resolved at creation",
    )

    decline_reason: str | None = None
    responded_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime
    proposal_number: int = 1
    counter_of: str | None = None

    @property
    def is_open(self) -> bool:
        return self.status in OPEN_PROPOSAL_STATUSES


class ProposalResponse(BaseModel):
    """Record of a party answering a proposal."""

    id: str = Field(default_factory=new_id)
    proposal_id: str
    family_id: str
    responder_id: str
    action: ProposalResponseAction
    comment: str | None = None
    counter_proposal_id: str | None = None
    created_at: datetime = Field(default_factory=utc_now)


class Guardian(BaseModel):
    uid: str
    display_name: str | None = None


class CustodyArrangement(BaseModel):
    """Typed view of a child's custody declaration."""

    custody_type: CustodyType = CustodyType.UNKNOWN
    guardians: list[Guardian] = Field(default_factory=list)


class ApprovalRequirement(BaseModel):
    """Whether a proposal needs a second guardian's sign-off."""

    required: bool
    other_parent_uid: str | None = None
    other_parent_name: str | None = None
    eligible_approver_uids: list[str] = Field(default_factory=list)


class CoParentApprovalSummary(BaseModel):
    required: bool
    status: CoParentApprovalStatus | None = None
    approved_by_uid: str | None = None
    approved_at: datetime | None = None
    decline_reason: str | None = None
    expires_at: datetime | None = None
    is_expired: bool = False


# ════════════════════════════════════════════════════════════════
# Renewals
# ════════════════════════════════════════════════════════════════


class Consent(BaseModel):
    signature: str
    signed_at: datetime


class RenewalState(BaseModel):
    """
    Two-party consent to extend an agreement's expiry.

    ``parent_consent`` is write-once; ``child_consent`` may only follow it.
    """

    id: str = Field(default_factory=new_id)
    family_id: str | None = None
    agreement_id: str
    mode: RenewalMode = RenewalMode.RENEW_AS_IS
    duration: RenewalDuration = RenewalDuration.ONE_YEAR
    status: RenewalStatus = RenewalStatus.PARENT_INITIATED
    parent_consent: Consent | None = None
    child_consent: Consent | None = None
    new_expiry_date: datetime | None = None
    initiated_at: datetime = Field(default_factory=utc_now)
    completed_at: datetime | None = None
    cancelled_at: datetime | None = None


# ════════════════════════════════════════════════════════════════
# Review requests
# ════════════════════════════════════════════════════════════════


class ReviewRequest(BaseModel):
    """
    A child asking the parents to sit down and discuss the agreement.

    One may be submitted per cooldown window; unanswered requests expire.
    """

    id: str = Field(default_factory=new_id)
    family_id: str
    child_id: str
    child_name: str
    agreement_id: str
    status: ReviewRequestStatus = ReviewRequestStatus.PENDING
    suggested_areas: list[str] = Field(default_factory=list)
    requested_at: datetime = Field(default_factory=utc_now)
    expires_at: datetime
    acknowledged_at: datetime | None = None
    acknowledged_by: str | None = None
    reviewed_at: datetime | None = None


class CooldownStatus(BaseModel):
    """Whether the child may submit another review request yet."""

    can_request: bool
    last_request_at: datetime | None = None
    next_available_at: datetime | None = None
    days_remaining: int = 0


# ════════════════════════════════════════════════════════════════
# Rejection patterns
# ════════════════════════════════════════════════════════════════


class RejectionPattern(BaseModel):
    """Aggregate counters of a child's proposal rejections. No proposal content."""

    id: str
    family_id: str
    child_id: str
    total_proposals: int = 0
    total_rejections: int = 0
    last_proposal_at: datetime | None = None
    last_rejection_at: datetime | None = None
    escalation_triggered: bool = False
    escalation_triggered_at: datetime | None = None
    created_at: datetime = Field(default_factory=utc_now)
    updated_at: datetime = Field(default_factory=utc_now)


class RejectionEvent(BaseModel):
    id: str = Field(default_factory=new_id)
    family_id: str
    child_id: str
    proposal_id: str
    rejected_at: datetime = Field(default_factory=utc_now)


class EscalationEvent(BaseModel):
    id: str = Field(default_factory=new_id)
    family_id: str
    child_id: str
    rejections_count: int
    threshold: int
    triggered_at: datetime = Field(default_factory=utc_now)


# ════════════════════════════════════════════════════════════════
# Sink records
# ════════════════════════════════════════════════════════════════


class Notification(BaseModel):
    """Notification handed to the delivery layer (delivery is external)."""

    id: str = Field(default_factory=new_id)
    family_id: str
    recipient_id: str
    type: NotificationType
    title: str
    body: str
    data: dict[str, Any] = Field(default_factory=dict)
    read: bool = False
    created_at: datetime = Field(default_factory=utc_now)


class AuditEntry(BaseModel):
    """
    A single entry in a family's activity feed.

    Entries are append-only and hash-chained per family: each entry stores
    SHA-256(previous_hash || canonical_json(fields)).
    """

    family_id: str
    sequence_number: int
    previous_hash: str
    entry_hash: str = ""
    type: str
    actor_id: str | None = None
    description: str = ""
    metadata: dict[str, Any] = Field(default_factory=dict)
    created_at: datetime = Field(default_factory=utc_now)
