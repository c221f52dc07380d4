from __future__ import annotations


class ReviewError(Exception):
    """Base review error.

    Carries the domain, the operation and the assignment id so callers can log
    one line per failure without re-deriving the context.
    """

    def __init__(
        self,
        message: str,
        *,
        domain: str | None = None,
        operation: str | None = None,
        assignment_id: str | None = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.domain = domain
        self.operation = operation
        self.assignment_id = assignment_id


class DecisionValidationError(ReviewError):
    """Raised when a decision fails validation; the assignment is left unchanged."""


class AssignmentNotFoundError(ReviewError):
    """Raised when the assignment does not exist in its domain store."""


class DecisionConflictError(ReviewError):
    """Raised when the assignment has already left the submitted state."""


class AdapterFetchError(ReviewError):
    """Raised when one domain store cannot be read; aborts the whole aggregate read."""


class AdapterWriteError(ReviewError):
    """Raised when a decision update fails; the store message is kept verbatim."""


class StaleRequestError(ReviewError):
    """Raised internally when a newer request or an invalidation superseded a fetch."""
