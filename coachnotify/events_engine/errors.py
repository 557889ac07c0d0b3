"""Errors raised while ingesting and handling provider events."""

from __future__ import annotations


class IngestError(ValueError):
    """Base class for payloads the gateway refuses to accept."""


class SignatureVerificationError(IngestError):
    """The authenticity proof is missing, malformed, stale, or does not match."""


class PayloadTooLargeError(IngestError):
    """The payload exceeds the configured size ceiling."""


class MalformedEventError(IngestError):
    """The payload is empty or is not a well-formed provider event."""


class EventNotFoundError(LookupError):
    """Raised when a requested event does not exist."""


class HandlerError(RuntimeError):
    """Transient handler failure; the event is marked failed and retried by the sweep."""


class EventRejectedError(RuntimeError):
    """Permanent application-level rejection (e.g. the referenced entity is unknown).

    The event is marked processed with a warning and never retried.
    """
