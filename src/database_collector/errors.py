"""Error taxonomy for the collector.

Every failure is contained at the smallest unit that can absorb it (a
credential record, a binding, a single series). Only ``ConfigError`` is
fatal, and only at startup.
"""

from typing import Optional


class CollectorError(Exception):
    """Base class for all collector errors."""


class ConfigError(CollectorError):
    """Static configuration is missing or invalid."""


class CredentialFetchError(CollectorError):
    """A credential could not be listed or fetched from the credential store."""

    def __init__(self, message: str, credential_id: Optional[str] = None):
        super().__init__(message)
        self.credential_id = credential_id


class CredentialSchemaError(CredentialFetchError):
    """A credential payload is missing required fields or has the wrong types."""


class UnsupportedEngineError(CollectorError):
    """No collector factory is registered for an engine kind."""

    def __init__(self, engine: str):
        super().__init__(f"Unsupported engine: {engine}")
        self.engine = engine


class ScrapeError(CollectorError):
    """Gathering metrics from a collector failed."""


class EncodingError(CollectorError):
    """A metric family or series had an unexpected shape."""


class SendError(CollectorError):
    """Delivering a batch to the remote-write endpoint failed."""

    def __init__(self, message: str, status_code: Optional[int] = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.body = body

    def __str__(self) -> str:
        base = super().__str__()
        if self.status_code is not None:
            return f"{base} (status {self.status_code}): {self.body}"
        return base


class CycleCancelledError(CollectorError):
    """The cycle was cancelled before this unit of work finished."""
