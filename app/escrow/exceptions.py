"""
Escrow-specific exceptions.

Exception Hierarchy:
    EscrowError (base for the settlement domain)
    ├── InvalidAmountError - amount not a positive integer of minor units
    ├── DuplicateEscrowError - milestone already has an active escrow
    ├── EscrowNotFoundError - escrow/payout/refund lookup failures
    ├── AlreadyPaidOutError - payout requested while one is open or paid
    └── RefundExceedsBalanceError - refund larger than the refundable balance

    ProcessorError (base for payment processor failures, carries is_retryable)
    ├── ProcessorCommunicationError - outcome unknown, retry with same token
    │   ├── StripeRateLimitError
    │   ├── StripeAPIUnavailableError
    │   └── StripeTimeoutError
    └── ProcessorRejectedError - processor said no, do not retry
        ├── StripeCardDeclinedError
        ├── StripeInvalidAccountError
        └── StripeInvalidRequestError

    UnreconcilableEventError - confirmation event cannot be applied

    LockAcquisitionError - distributed lock timeout (ConflictError)
    InvalidStateTransitionError - FSM transition not allowed (ConflictError)

Usage:
    from escrow.exceptions import InvalidStateTransitionError

    try:
        escrow.capture()
    except TransitionNotAllowed:
        raise InvalidStateTransitionError(
            f"Cannot capture escrow from '{escrow.state}' state",
            details={"current_state": escrow.state, "target_state": "captured"},
        )
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from core.exceptions import (
    BaseApplicationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    ValidationError,
)

if TYPE_CHECKING:
    from typing import Any


# =============================================================================
# Escrow Domain Exceptions
# =============================================================================


class EscrowError(BaseApplicationError):
    """Base exception for escrow settlement operations."""

    default_error_code: str = "ESCROW_ERROR"


class InvalidAmountError(EscrowError, ValidationError):
    """
    Raised when an amount is not a positive integer number of minor units.

    Example:
        raise InvalidAmountError(
            "Escrow amount must be positive",
            details={"amount_cents": 0},
        )
    """

    default_error_code: str = "INVALID_AMOUNT"


class DuplicateEscrowError(EscrowError, ConflictError):
    """
    Raised when a milestone already has an escrow that is not
    cancelled or refunded.
    """

    default_error_code: str = "DUPLICATE_ESCROW"


class EscrowNotFoundError(EscrowError, NotFoundError):
    """Raised when an escrow, payout or refund cannot be found."""

    default_error_code: str = "ESCROW_NOT_FOUND"


class AlreadyPaidOutError(EscrowError, ConflictError):
    """
    Raised when a payout is requested for an escrow that already has
    a payout in flight or paid.
    """

    default_error_code: str = "ALREADY_PAID_OUT"


class RefundExceedsBalanceError(EscrowError, ValidationError):
    """
    Raised when a refund amount exceeds what is still refundable.

    details carries requested and available amounts in minor units.
    """

    default_error_code: str = "REFUND_EXCEEDS_BALANCE"


# =============================================================================
# Processor Exceptions
# =============================================================================


class ProcessorError(ExternalServiceError):
    """
    Base exception for payment processor failures.

    Attributes:
        is_retryable: True when the outcome is unknown and the same
            call may be repeated with the same idempotency token
        processor_code: Processor's own error code, if any
        decline_code: Card decline code, if any
    """

    default_error_code: str = "PROCESSOR_ERROR"
    is_retryable: bool = False

    def __init__(
        self,
        message: str,
        error_code: str | None = None,
        processor_code: str | None = None,
        decline_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        if processor_code:
            details["processor_code"] = processor_code
        if decline_code:
            details["decline_code"] = decline_code
        super().__init__(message, error_code=error_code, details=details)
        self.processor_code = processor_code
        self.decline_code = decline_code


class ProcessorCommunicationError(ProcessorError):
    """
    The processor could not be reached or did not answer in time.

    IMPORTANT: the operation may have succeeded on the processor's side.
    The entity is left unchanged; retry with the same idempotency token.
    """

    default_error_code: str = "PROCESSOR_UNAVAILABLE"
    is_retryable: bool = True


class ProcessorRejectedError(ProcessorError):
    """The processor rejected the request. Retrying will not help."""

    default_error_code: str = "PROCESSOR_REJECTED"
    is_retryable: bool = False


# -----------------------------------------------------------------------------
# Transient Stripe errors (safe to retry with backoff)
# -----------------------------------------------------------------------------


class StripeRateLimitError(ProcessorCommunicationError):
    """Rate limited by the Stripe API."""

    default_error_code: str = "STRIPE_RATE_LIMITED"


class StripeAPIUnavailableError(ProcessorCommunicationError):
    """
    Stripe API is temporarily unavailable.

    Covers network failures, 5xx responses and authentication
    misconfiguration surfaced during an outage.
    """

    default_error_code: str = "STRIPE_UNAVAILABLE"


class StripeTimeoutError(ProcessorCommunicationError):
    """
    Stripe API call timed out (STRIPE_API_TIMEOUT_SECONDS).

    Retry with the same idempotency key; Stripe returns the original
    response if the first request went through.
    """

    default_error_code: str = "STRIPE_TIMEOUT"


# -----------------------------------------------------------------------------
# Permanent Stripe errors (do not retry)
# -----------------------------------------------------------------------------


class StripeCardDeclinedError(ProcessorRejectedError):
    """Card was declined by the issuing bank."""

    default_error_code: str = "CARD_DECLINED"


class StripeInvalidAccountError(ProcessorRejectedError):
    """
    Destination account for a transfer cannot receive funds.

    Needs manual intervention on the connected account.
    """

    default_error_code: str = "INVALID_STRIPE_ACCOUNT"


class StripeInvalidRequestError(ProcessorRejectedError):
    """
    Invalid request parameters sent to Stripe.

    Usually a bug on our side (e.g. refund larger than the charge).
    """

    default_error_code: str = "INVALID_STRIPE_REQUEST"


# =============================================================================
# Reconciliation Exceptions
# =============================================================================


class UnreconcilableEventError(BaseApplicationError):
    """
    Raised when a processor confirmation cannot be applied to any
    internal entity.

    Attributes:
        reason: UnreconcilableReason value
    """

    default_error_code: str = "UNRECONCILABLE_EVENT"

    def __init__(
        self,
        message: str,
        reason: str,
        error_code: str | None = None,
        details: dict[str, Any] | None = None,
    ):
        details = details or {}
        details["reason"] = reason
        super().__init__(message, error_code=error_code, details=details)
        self.reason = reason


# =============================================================================
# Concurrency Control Exceptions
# =============================================================================


class LockAcquisitionError(ConflictError):
    """
    Raised when a distributed lock cannot be acquired within its timeout.

    details carries key and timeout.
    """

    default_error_code: str = "LOCK_ACQUISITION_FAILED"


class InvalidStateTransitionError(ConflictError):
    """
    Raised when a state machine transition is not allowed.

    Wraps django-fsm's TransitionNotAllowed. details carries
    current_state, target_state and transition.
    """

    default_error_code: str = "INVALID_STATE_TRANSITION"


__all__ = [
    # Escrow domain
    "EscrowError",
    "InvalidAmountError",
    "DuplicateEscrowError",
    "EscrowNotFoundError",
    "AlreadyPaidOutError",
    "RefundExceedsBalanceError",
    # Processor
    "ProcessorError",
    "ProcessorCommunicationError",
    "ProcessorRejectedError",
    "StripeRateLimitError",
    "StripeAPIUnavailableError",
    "StripeTimeoutError",
    "StripeCardDeclinedError",
    "StripeInvalidAccountError",
    "StripeInvalidRequestError",
    # Reconciliation
    "UnreconcilableEventError",
    # Concurrency control
    "LockAcquisitionError",
    "InvalidStateTransitionError",
]
