"""Domain exceptions for the milestone escrow workflow.

Framework-agnostic business rule violations. Each class carries the HTTP
status the API middleware answers with and whether the caller may retry.

Propagation:
    ValidationError, AuthorizationError, NotFoundError, ConflictError
        -> returned synchronously to the caller.
    LedgerInconsistencyError, DownstreamError
        -> captured and logged, then exposed only through reconciliation
           and outbox delivery state.
    StorageUnavailableError
        -> returned as a retryable 503.
"""

from __future__ import annotations


class EscrowError(Exception):
    """Base exception for all domain errors."""

    http_status: int = 400
    retryable: bool = False

    def __init__(self, message: str, code: str = "ESCROW_ERROR") -> None:
        self.message = message
        self.code = code
        super().__init__(self.message)


# --- Validation (400) ---


class ValidationError(EscrowError):
    """Missing or malformed input. User-correctable."""

    def __init__(self, message: str, code: str = "VALIDATION_ERROR") -> None:
        super().__init__(message=message, code=code)


class MissingDescriptionError(ValidationError):
    def __init__(self) -> None:
        super().__init__("Description is required", code="MISSING_DESCRIPTION")


class MissingCommentError(ValidationError):
    def __init__(self) -> None:
        super().__init__(
            "Feedback is required when rejecting a submission",
            code="MISSING_COMMENT",
        )


class NoSubmissionError(ValidationError):
    def __init__(self, milestone_id: str) -> None:
        super().__init__(
            f"No submission found for milestone: {milestone_id}",
            code="NO_SUBMISSION",
        )
        self.milestone_id = milestone_id


class InvalidAmountError(ValidationError):
    def __init__(self, message: str = "Amount must be greater than zero") -> None:
        super().__init__(message, code="INVALID_AMOUNT")


class CurrencyMismatchError(ValidationError):
    def __init__(self, expected: str, actual: str) -> None:
        super().__init__(
            f"Currency {actual} does not match agreement currency {expected}",
            code="CURRENCY_MISMATCH",
        )


class InvalidPaymentDetailsError(ValidationError):
    def __init__(self, message: str) -> None:
        super().__init__(message, code="INVALID_PAYMENT_DETAILS")


class InvalidFileError(ValidationError):
    def __init__(self, message: str) -> None:
        super().__init__(message, code="INVALID_FILE")


class EscrowNotFundedError(ValidationError):
    def __init__(self, milestone_id: str) -> None:
        super().__init__(
            f"Milestone escrow must be funded before work starts: {milestone_id}",
            code="ESCROW_NOT_FUNDED",
        )


class IncompleteMilestonesError(ValidationError):
    def __init__(self, job_id: str, remaining: int) -> None:
        super().__init__(
            f"Job {job_id} still has {remaining} milestone(s) not completed",
            code="INCOMPLETE_MILESTONES",
        )


# --- Authorization (403) ---


class AuthorizationError(EscrowError):
    """Actor is not the owner or counterparty. Never retried."""

    http_status = 403

    def __init__(self, message: str, code: str = "NOT_AUTHORIZED") -> None:
        super().__init__(message=message, code=code)


class NotOwnerError(AuthorizationError):
    def __init__(self, operation: str) -> None:
        super().__init__(
            f"Only the job's employer may {operation}",
            code="NOT_OWNER",
        )


class NotAssignedFreelancerError(AuthorizationError):
    def __init__(self, operation: str) -> None:
        super().__init__(
            f"Only the assigned freelancer may {operation}",
            code="NOT_ASSIGNED_FREELANCER",
        )


# --- Not found (404) ---


class NotFoundError(EscrowError):
    http_status = 404


class JobNotFoundError(NotFoundError):
    def __init__(self, job_id: str) -> None:
        super().__init__(f"Job not found: {job_id}", code="JOB_NOT_FOUND")
        self.job_id = job_id


class MilestoneNotFoundError(NotFoundError):
    def __init__(self, milestone_id: str) -> None:
        super().__init__(f"Milestone not found: {milestone_id}", code="MILESTONE_NOT_FOUND")


class PaymentNotFoundError(NotFoundError):
    def __init__(self, payment_id: str) -> None:
        super().__init__(f"Payment not found: {payment_id}", code="PAYMENT_NOT_FOUND")


class ApplicationNotFoundError(NotFoundError):
    def __init__(self, application_id: str) -> None:
        super().__init__(
            f"Application not found: {application_id}",
            code="APPLICATION_NOT_FOUND",
        )


class CounterpartyNotFoundError(NotFoundError):
    def __init__(self, job_id: str) -> None:
        super().__init__(
            f"No accepted application found for job: {job_id}",
            code="COUNTERPARTY_NOT_FOUND",
        )


# --- Conflict (409 unless stated) ---


class ConflictError(EscrowError):
    http_status = 409


class ApplicationAlreadyAcceptedError(ConflictError):
    def __init__(self, job_id: str) -> None:
        super().__init__(
            f"Job already has an accepted application: {job_id}",
            code="APPLICATION_ALREADY_ACCEPTED",
        )


class AlreadyAppliedError(ConflictError):
    def __init__(self, job_id: str) -> None:
        super().__init__(
            f"Freelancer has already applied to job: {job_id}",
            code="ALREADY_APPLIED",
        )


class AlreadyFundedError(ConflictError):
    def __init__(self, milestone_id: str) -> None:
        super().__init__(
            f"Milestone escrow is already funded: {milestone_id}",
            code="ALREADY_FUNDED",
        )


class AlreadyReviewedError(ConflictError):
    def __init__(self, job_id: str) -> None:
        super().__init__(
            f"A closing review has already been recorded for job: {job_id}",
            code="ALREADY_REVIEWED",
        )


class EscrowStillHeldError(ConflictError):
    def __init__(self, job_id: str, held_minor: int) -> None:
        super().__init__(
            f"Job {job_id} still holds {held_minor} in escrow; release or refund it first",
            code="ESCROW_HELD",
        )


class JobNotActiveError(ConflictError):
    def __init__(self, job_id: str, status: str) -> None:
        super().__init__(
            f"Job {job_id} does not accept this operation while {status}",
            code="JOB_NOT_ACTIVE",
        )


class InvalidTransitionError(ConflictError):
    """Raised when an attempted transition is not in the transition table.

    Example: an employer moving a milestone pending -> completed.
    """

    http_status = 400

    def __init__(self, current_state: str, attempted_state: str, actor_role: str = "") -> None:
        who = f"{actor_role} cannot change" if actor_role else "Cannot change"
        super().__init__(
            message=f"{who} status from {current_state} to {attempted_state}",
            code="INVALID_TRANSITION",
        )
        self.current_state = current_state
        self.attempted_state = attempted_state
        self.actor_role = actor_role


class PaymentNotHeldError(ConflictError):
    http_status = 400

    def __init__(self, payment_id: str, status: str) -> None:
        super().__init__(
            f"Payment {payment_id} is not in escrow (status: {status})",
            code="NOT_HELD",
        )
        self.status = status


class ConcurrentModificationError(ConflictError):
    """Another writer updated the same record first. Safe to retry."""

    retryable = True

    def __init__(self, entity: str) -> None:
        super().__init__(
            f"{entity} was modified concurrently, retry the operation",
            code="CONCURRENT_MODIFICATION",
        )


class DuplicateOperationError(ConflictError):
    """Raised when a duplicate idempotency key is detected."""

    def __init__(self, idempotency_key: str) -> None:
        super().__init__(
            message=f"Duplicate operation detected for key: {idempotency_key}",
            code="DUPLICATE_OPERATION",
        )


# --- Captured, never returned ---


class LedgerInconsistencyError(EscrowError):
    """Ledger and agreement balances disagree. Logged for reconciliation."""

    http_status = 500

    def __init__(self, message: str, payment_id: str | None = None) -> None:
        super().__init__(message=message, code="LEDGER_INCONSISTENCY")
        self.payment_id = payment_id


class DownstreamError(EscrowError):
    """A notification sink or other collaborator failed transiently."""

    http_status = 502
    retryable = True

    def __init__(self, message: str, code: str = "DOWNSTREAM_ERROR") -> None:
        super().__init__(message=message, code=code)


# --- Infrastructure ---


class StorageUnavailableError(EscrowError):
    """Storage timed out or is unreachable. Safe to retry."""

    http_status = 503
    retryable = True

    def __init__(self, message: str = "Storage temporarily unavailable") -> None:
        super().__init__(message=message, code="STORAGE_UNAVAILABLE")


class PaymentGatewayError(EscrowError):
    """The funding instrument was declined by the payment gateway."""

    http_status = 402

    def __init__(self, message: str) -> None:
        super().__init__(message=message, code="PAYMENT_DECLINED")
