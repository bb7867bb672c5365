"""Error taxonomy for credential lifecycle operations.

Every error carries the lifecycle step it was raised from so operators can
resume a partially completed onboarding or offboarding from the right place.
Only transport-level errors are retryable; validation, cryptographic and
authorization failures are surfaced immediately.
"""

STEP_KEY_GENERATION = "key generation"
STEP_CERTIFICATE_REQUEST = "certificate request"
STEP_CERTIFICATE_SIGNING = "certificate signing"
STEP_BUNDLE_ASSEMBLY = "bundle assembly"
STEP_ROLE_BINDING = "role binding"
STEP_ROLE_UNBINDING = "role unbinding"
STEP_REVOCATION = "certificate revocation"
STEP_BUNDLE_INVALIDATION = "bundle invalidation"


class AccessError(Exception):
    """Base class for all credential lifecycle errors."""

    retryable = False

    def __init__(
        self,
        message: str,
        *,
        step: str | None = None,
        cause: BaseException | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.step = step
        self.cause = cause

    def __str__(self) -> str:
        if self.step:
            return f"{self.step}: {self.message}"
        return self.message


class InvalidIdentity(AccessError, ValueError):
    """Identity is empty, malformed, or violates subject policy."""


class InvalidRequest(AccessError, ValueError):
    """Request parameters are invalid (e.g. non-positive validity)."""


class IncompleteInputs(AccessError, ValueError):
    """A required input for bundle assembly is missing or inconsistent."""


class CAUnavailable(AccessError):
    """CA key material cannot be loaded or is no longer valid."""


class SigningError(AccessError):
    """Cryptographic failure while signing or verifying a request."""


class NotFound(AccessError):
    """Requested resource or ledger entry does not exist."""


class PermissionDenied(AccessError):
    """Caller is not authorized; retrying cannot change the decision."""


class Timeout(AccessError):
    """Remote call did not complete within the caller-supplied timeout."""

    retryable = True


class Conflict(AccessError):
    """Optimistic concurrency check failed (stale resource version)."""

    retryable = True


class ServiceUnavailable(AccessError):
    """Remote service is throttling or temporarily failing."""

    retryable = True


class RetriesExhausted(AccessError):
    """Transient errors persisted through every retry attempt."""

    def __init__(self, message: str, *, step: str | None = None, cause: BaseException | None = None, attempts: int = 0) -> None:
        super().__init__(message, step=step, cause=cause)
        self.attempts = attempts


class LifecycleStepError(AccessError):
    """A step of an onboarding/offboarding workflow failed.

    Attributes:
        completed_steps: Steps that finished before the failure (left in place)
        retry_safe: Whether re-running the workflow from scratch is safe
        partial_result: Result built before the failure, e.g. an OffboardResult
            holding a rotated CA that has not been stored yet
    """

    def __init__(
        self,
        message: str,
        *,
        step: str,
        cause: BaseException | None = None,
        completed_steps: tuple[str, ...] = (),
        retry_safe: bool = True,
        partial_result: object | None = None,
    ) -> None:
        super().__init__(message, step=step, cause=cause)
        self.completed_steps = completed_steps
        self.retry_safe = retry_safe
        self.partial_result = partial_result
