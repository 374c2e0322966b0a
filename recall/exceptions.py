"""Exception types shared across the capture pipeline."""

from typing import Optional


class RecallError(Exception):
    """Base class for Recall errors."""


class DispatchError(RecallError):
    """A batch could not be delivered to the capture endpoint.

    Transient failures are requeued and retried. A permanent one means the
    endpoint was reached and refused the batch itself, so retrying it
    cannot succeed.
    """

    def __init__(self, message: str, status_code: Optional[int] = None, permanent: bool = False):
        super().__init__(message)
        self.status_code = status_code
        self.permanent = permanent


class ConversationRejected(RecallError, ValueError):
    """A conversation record violated the store's type discipline."""

    def __init__(self, field: str, reason: str):
        super().__init__(f"{field}: {reason}")
        self.field = field
        self.reason = reason


class PatternRejected(RecallError, ValueError):
    """A pattern record was malformed and was not stored."""
