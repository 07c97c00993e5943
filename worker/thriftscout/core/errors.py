"""Exception taxonomy shared by the discovery and analytics layers."""

from typing import Dict, Optional


class ThriftScoutError(RuntimeError):
    """Base class for every error raised by this package."""


class ConfigError(ThriftScoutError):
    """Raised when mandatory configuration is missing."""


class ValidationError(ThriftScoutError):
    """Rejected input, raised before any I/O happens.

    ``details`` maps a field path (``location.radius``) to a message.
    """

    def __init__(self, message: str, details: Optional[Dict[str, str]] = None) -> None:
        super().__init__(message)
        self.message = message
        self.details = dict(details or {})

    def to_dict(self) -> Dict[str, object]:
        return {"error": self.message, "details": self.details}


class UpstreamProviderError(ThriftScoutError):
    """Raised when a places, geocode or matrix call returns a failure."""

    def __init__(self, message: str, status: Optional[str] = None) -> None:
        super().__init__(f"{status}: {message}" if status else message)
        self.message = message
        self.status = status


class PartialIngestFailure(ThriftScoutError):
    """A single provider record could not be converted or stored.

    Built and logged inside the cache-fill loop; never escapes it.
    """

    def __init__(self, place_id: Optional[str], reason: str) -> None:
        super().__init__(f"failed to ingest {place_id}: {reason}")
        self.place_id = place_id
        self.reason = reason


class PersistenceError(ThriftScoutError):
    """Raised when a database statement fails."""


class ExportGenerationError(ThriftScoutError):
    """Raised when an export could not be produced. The request is left failed."""

    def __init__(self, export_id: Optional[str], message: str) -> None:
        super().__init__(message)
        self.export_id = export_id
        self.message = message
