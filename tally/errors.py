"""
tally.errors — Error Taxonomy & Result Wrapper
===============================================

Every failure the engine can report falls into one of four families:

* :class:`ValidationError` — bad input (self-referral, malformed or unmet
  verification).  Never retried.
* :class:`ConflictError` — the request contradicts recorded state (user
  already referred by someone else).  Not retried; callers may ignore.
* :class:`NotFoundError` — quest / user / progress record missing.
* :class:`TransientStoreError` — I/O failure or timeout in the store.
  Safe to retry for idempotent operations only.

Business failures (the first three) are *returned* inside a
:class:`Result`; infrastructure failures are *raised*.
"""

from __future__ import annotations

from dataclasses import dataclass
from typing import Generic, TypeVar

T = TypeVar("T")


class TallyError(Exception):
    """Base class for all engine errors."""

    retryable: bool = False


class ValidationError(TallyError):
    """Input rejected before any write happened."""


class SelfReferralError(ValidationError):
    """A user tried to refer themselves."""


class VerificationFailedError(ValidationError):
    """A quest verification payload did not satisfy the quest's predicate."""


class ConflictError(TallyError):
    """The request conflicts with already-recorded state."""


class AlreadyReferredError(ConflictError):
    """The referred user already has a different referrer on record."""


class NotFoundError(TallyError):
    """A quest, user, or progress record does not exist."""


class TransientStoreError(TallyError):
    """The document store failed or timed out; retry idempotent calls."""

    retryable = True


# ---------------------------------------------------------------------------
# Result — success value or business error, never both
# ---------------------------------------------------------------------------
@dataclass(frozen=True, slots=True)
class Result(Generic[T]):
    """Outcome of an inbound operation.

    ``ok`` is True when ``value`` is set; otherwise ``error`` holds the
    classified failure.
    """

    value: T | None = None
    error: TallyError | None = None

    @property
    def ok(self) -> bool:
        return self.error is None

    @classmethod
    def success(cls, value: T) -> Result[T]:
        return cls(value=value)

    @classmethod
    def failure(cls, error: TallyError) -> Result[T]:
        return cls(error=error)

    def unwrap(self) -> T:
        """Return the value, or raise the recorded error."""
        if self.error is not None:
            raise self.error
        return self.value  # type: ignore[return-value]
