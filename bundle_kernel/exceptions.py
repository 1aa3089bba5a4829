"""
Typed exception hierarchy for the bundle kernel.

===============================================================================
WHY TYPED EXCEPTIONS
===============================================================================

Orchestration decisions depend on the *kind* of failure, never on message
text.  A transient collaborator timeout is retried, a permanent one marks a
vehicle failed, a compare-and-set conflict means another driver already
advanced the bundle.  Every exception therefore:

  1. Has its own class (catch by type, not message).
  2. Carries a class-level ``code`` (machine-readable, log/API safe).
  3. Stores its context as attributes (bundle_id, contract_id, ...).

===============================================================================
EXCEPTION HIERARCHY
===============================================================================

    BundleKernelError (base)
    |
    +-- ValidationError
    |   +-- DuplicateSequenceError
    |
    +-- CollaboratorError
    |   +-- TransientError
    |   +-- PermanentError
    |       +-- RetryExhaustedError
    |
    +-- ConcurrencyError
    |   +-- ConflictError
    |
    +-- LifecycleError
    |   +-- BundleNotFoundError
    |   +-- BundleAlreadyStartedError
    |   +-- InvalidTransitionError
    |
    +-- ContinuationError
        +-- UnknownContinuationError
        +-- ContinuationExpiredError
        +-- ContinuationAlreadyResolvedError

===============================================================================
ERROR CODES - QUICK REFERENCE
===============================================================================

Category      | Code                           | When Raised
--------------|--------------------------------|-----------------------------------
Validation    | VALIDATION_ERROR               | Bad input row / bad callback
              | DUPLICATE_SEQUENCE_NO          | Two vehicles share a sequence_no
--------------|--------------------------------|-----------------------------------
Collaborator  | TRANSIENT_FAILURE              | Timeout / throttle (retryable)
              | PERMANENT_FAILURE              | Collaborator refused the work
              | RETRY_EXHAUSTED                | Transient failures outlived retries
--------------|--------------------------------|-----------------------------------
Concurrency   | TRANSITION_CONFLICT            | Compare-and-set lost
--------------|--------------------------------|-----------------------------------
Lifecycle     | BUNDLE_NOT_FOUND               | Unknown bundle_id
              | BUNDLE_ALREADY_STARTED         | Vehicle added after the start lock
              | INVALID_TRANSITION             | Edge not in the lifecycle graph
--------------|--------------------------------|-----------------------------------
Continuation  | CONTINUATION_UNKNOWN           | Token matches no open wait
              | CONTINUATION_EXPIRED           | Wait deadline passed
              | CONTINUATION_ALREADY_RESOLVED  | Token was already consumed

===============================================================================
HANDLING PATTERNS
===============================================================================

1. Transient failures are only ever caught by the retry helper; everything
   above it sees either a result or a PermanentError.

2. ConflictError is not an error for the caller's business logic: it means
   "someone else already advanced this bundle".  Log it and stop driving.

3. ContinuationAlreadyResolvedError is success for the external caller: the
   duplicate callback is acknowledged without re-running anything.
"""


class BundleKernelError(Exception):
    """
    Base exception for all bundle kernel errors.

    All subclasses carry a ``code`` class attribute for machine-readable
    identification.
    """

    code: str = "BUNDLE_KERNEL_ERROR"


# Validation


class ValidationError(BundleKernelError):
    """Input failed validation; never retried."""

    code: str = "VALIDATION_ERROR"

    def __init__(self, message: str, field: str | None = None):
        self.field = field
        super().__init__(message)


class DuplicateSequenceError(ValidationError):
    """Two vehicles of the same bundle share a sequence_no."""

    code: str = "DUPLICATE_SEQUENCE_NO"

    def __init__(self, bundle_id: str, sequence_no: int, contract_ids: tuple[str, ...]):
        self.bundle_id = bundle_id
        self.sequence_no = sequence_no
        self.contract_ids = contract_ids
        super().__init__(
            f"Bundle {bundle_id}: sequence_no {sequence_no} is shared by "
            f"contracts {', '.join(contract_ids)}",
            field="sequence_no",
        )


# Collaborator failures


class CollaboratorError(BundleKernelError):
    """Base for failures reported by an external collaborator."""

    code: str = "COLLABORATOR_ERROR"


class TransientError(CollaboratorError):
    """Timeout, throttle or similar; safe to retry."""

    code: str = "TRANSIENT_FAILURE"

    def __init__(self, message: str, operation: str | None = None):
        self.operation = operation
        super().__init__(message)


class PermanentError(CollaboratorError):
    """The collaborator refused the unit of work; retrying will not help."""

    code: str = "PERMANENT_FAILURE"

    def __init__(self, message: str, operation: str | None = None):
        self.operation = operation
        super().__init__(message)


class RetryExhaustedError(PermanentError):
    """Transient failures persisted past the retry budget."""

    code: str = "RETRY_EXHAUSTED"

    def __init__(self, operation: str, attempts: int, last_error: str):
        self.attempts = attempts
        self.last_error = last_error
        super().__init__(
            f"{operation} failed after {attempts} attempt(s): {last_error}",
            operation=operation,
        )


# Concurrency


class ConcurrencyError(BundleKernelError):
    """Base for optimistic-concurrency failures."""

    code: str = "CONCURRENCY_ERROR"


class ConflictError(ConcurrencyError):
    """Compare-and-set on the bundle status did not match."""

    code: str = "TRANSITION_CONFLICT"

    def __init__(self, bundle_id: str, expected_status: str, actual_status: str):
        self.bundle_id = bundle_id
        self.expected_status = expected_status
        self.actual_status = actual_status
        super().__init__(
            f"Bundle {bundle_id}: expected status {expected_status}, "
            f"found {actual_status}"
        )


# Lifecycle


class LifecycleError(BundleKernelError):
    """Base for lifecycle-graph errors."""

    code: str = "LIFECYCLE_ERROR"


class BundleNotFoundError(LifecycleError):
    """No bundle with the given id."""

    code: str = "BUNDLE_NOT_FOUND"

    def __init__(self, bundle_id: str):
        self.bundle_id = bundle_id
        super().__init__(f"Bundle not found: {bundle_id}")


class BundleAlreadyStartedError(LifecycleError):
    """A vehicle was offered to a bundle whose start lock is already taken."""

    code: str = "BUNDLE_ALREADY_STARTED"

    def __init__(self, bundle_id: str, contract_id: str):
        self.bundle_id = bundle_id
        self.contract_id = contract_id
        super().__init__(
            f"Bundle {bundle_id} has already started; contract {contract_id} was not added"
        )


class InvalidTransitionError(LifecycleError):
    """The requested edge does not exist in the lifecycle graph."""

    code: str = "INVALID_TRANSITION"

    def __init__(self, entity: str, from_status: str, to_status: str):
        self.entity = entity
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(
            f"Invalid {entity} transition: {from_status} -> {to_status}"
        )


# Continuations


class ContinuationError(BundleKernelError):
    """Base for suspend/resume failures; terminal for the bundle."""

    code: str = "CONTINUATION_ERROR"


class UnknownContinuationError(ContinuationError):
    """The presented token does not match any open wait."""

    code: str = "CONTINUATION_UNKNOWN"

    def __init__(self):
        super().__init__("No open signing wait matches the presented token")


class ContinuationExpiredError(ContinuationError):
    """The wait deadline passed before the callback arrived."""

    code: str = "CONTINUATION_EXPIRED"

    def __init__(self, bundle_id: str, expired_at: str):
        self.bundle_id = bundle_id
        self.expired_at = expired_at
        super().__init__(f"Signing wait for bundle {bundle_id} expired at {expired_at}")


class ContinuationAlreadyResolvedError(ContinuationError):
    """The token was already consumed by an earlier callback."""

    code: str = "CONTINUATION_ALREADY_RESOLVED"

    def __init__(self, bundle_id: str):
        self.bundle_id = bundle_id
        super().__init__(f"Signing wait for bundle {bundle_id} was already resolved")
