from __future__ import annotations


class JourneyError(Exception):
    """Base exception for the attribution engine."""


class ConfigError(JourneyError, ValueError):
    """Raised when the YAML config is missing sections or holds invalid values."""


class SessionNotFound(JourneyError):
    """
    A touchpoint or conversion cites a session that has no record.

    Carried as a warning on result objects; ingestion continues with degraded
    attribution.
    """

    def __init__(self, session_id: str | None) -> None:
        super().__init__(f"session not found: {session_id!r}")
        self.session_id = session_id


class DuplicateConversion(JourneyError):
    """The same order identity was submitted again. Handled as an update."""

    def __init__(self, order_id: str) -> None:
        super().__init__(f"conversion already recorded for order {order_id!r}")
        self.order_id = order_id


class MalformedPayload(JourneyError, ValueError):
    """Raised at the ingress boundary for unknown envelopes or missing fields."""

    def __init__(self, message: str, *, field: str | None = None) -> None:
        super().__init__(message)
        self.field = field


class StorageUnavailable(JourneyError):
    """Transient persistence failure. Callers decide whether to retry."""

    retryable = True
