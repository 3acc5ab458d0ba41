"""
Domain Errors — Typed failures raised by the agreement lifecycle workflows.

Every error carries a stable ``code`` that callers can switch on and a
plain-language message suitable for showing to a family member. Store
failures (``StoreError``) and ledger integrity failures
(``LedgerIntegrityError``) are deliberately not domain errors.
"""

from __future__ import annotations


class AgreementDomainError(Exception):
    """Base class for all agreement lifecycle errors."""

    code = "domain_error"
    default_message = "The request could not be completed"

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFound(AgreementDomainError):
    code = "not_found"
    default_message = "The requested record was not found"


class AlreadyActive(AgreementDomainError):
    code = "already_active"
    default_message = "This agreement is already active"


class AlreadyArchived(AgreementDomainError):
    code = "already_archived"
    default_message = "This agreement has already been archived"


class NotActivatable(AgreementDomainError):
    code = "not_activatable"
    default_message = "This agreement has ended and cannot be activated again"


class SignaturesIncomplete(AgreementDomainError):
    code = "signatures_incomplete"
    default_message = "All signatures must be complete before the agreement can be activated"


class ActivationInvariantViolation(AgreementDomainError):
    """Raised when the re-check before commit finds more than one active agreement."""

    code = "activation_invariant_violation"
    default_message = "Activation would leave the family with more than one active agreement"


class SelfApproval(AgreementDomainError):
    code = "self_approval"
    default_message = "You cannot approve your own proposal"


class NotAwaitingApproval(AgreementDomainError):
    code = "not_awaiting_approval"
    default_message = "Proposal is not awaiting co-parent approval"


class Expired(AgreementDomainError):
    code = "expired"
    default_message = "This proposal has expired"


class NotAuthorized(AgreementDomainError):
    code = "not_authorized"
    default_message = "You are not allowed to take this action"


class CoParentApprovalPending(AgreementDomainError):
    code = "coparent_approval_pending"
    default_message = "This proposal is waiting for both parents to approve"


class ProposalNotPending(AgreementDomainError):
    code = "proposal_not_pending"
    default_message = "This proposal is no longer open for a response"


class ReviewRequestCooldown(AgreementDomainError):
    """Raised when a child asks for another review inside the cooldown window."""

    code = "review_request_cooldown"
    default_message = "A review was requested recently. You can ask again soon."

    def __init__(self, message: str | None = None, days_remaining: int = 0) -> None:
        super().__init__(message)
        self.days_remaining = days_remaining


class StoreError(Exception):
    """Raised when the underlying document store fails."""
    pass
