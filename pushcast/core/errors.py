"""Error taxonomy for the dispatch and scheduling engine.

NotFoundError          : campaign / site / subscriber / delivery missing
ConfigurationError     : site push credentials missing or unusable
TransportError         : one push send failed; never aborts a batch
  PermanentTransportError : endpoint gone (404/410); subscriber is deactivated
  TransientTransportError : anything else; recorded as failed, not retried
StoreError             : a persistence operation failed
InvalidTransitionError : campaign status change not in the transition table
"""
from __future__ import annotations

PERMANENT_STATUS_CODES: frozenset[int] = frozenset({404, 410})


class PushcastError(Exception):
    """Base class for all engine errors."""


class NotFoundError(PushcastError, LookupError):
    """Raised when a referenced entity does not exist."""


class ConfigurationError(PushcastError):
    """Raised when a site cannot be dispatched for lack of valid credentials."""


class StoreError(PushcastError):
    """Raised when a store read or write fails."""


class InvalidTransitionError(PushcastError, ValueError):
    """Raised for a campaign status change outside the transition table."""


class TransportError(PushcastError):
    """A single push send failed."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code

    @property
    def is_permanent(self) -> bool:
        return self.status_code in PERMANENT_STATUS_CODES

    @classmethod
    def from_status(cls, message: str, status_code: int | None) -> TransportError:
        """Return the permanent or transient subclass matching *status_code*."""
        if status_code in PERMANENT_STATUS_CODES:
            return PermanentTransportError(message, status_code)
        return TransientTransportError(message, status_code)


class PermanentTransportError(TransportError):
    """The push service reports the endpoint as gone."""


class TransientTransportError(TransportError):
    """Any other push failure: network errors, 429, 5xx, payload rejects."""
