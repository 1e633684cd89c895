"""Error taxonomy for Docscout.

Every error carries a stable ``kind`` so callers (CLI, HTTP layer, tool
handlers) can map failures without parsing messages.
"""

from typing import Any, Dict, Optional


class DocscoutError(Exception):
    """Base class for all Docscout errors."""

    kind = "internal"
    retryable = False

    def __init__(self, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def to_dict(self, debug: bool = False) -> Dict[str, Any]:
        """Serialize for user-visible output. Details are only exposed in debug mode."""
        data: Dict[str, Any] = {
            "kind": self.kind,
            "message": self.message,
            "retryable": self.retryable,
        }
        if debug and self.details:
            data["details"] = {k: repr(v) for k, v in self.details.items()}
        return data


class ValidationError(DocscoutError):
    """Raised when a query, cursor or path is malformed. Never retried."""

    kind = "validation"

    def __init__(self, field: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"{field}: {message}", details)
        self.field = field

    def to_dict(self, debug: bool = False) -> Dict[str, Any]:
        data = super().to_dict(debug)
        data["field"] = self.field
        return data


class UpstreamUnavailableError(DocscoutError):
    """Raised when the embedding provider or vector index is unreachable or timed out."""

    kind = "upstream_unavailable"
    retryable = True

    def __init__(self, service: str, message: str, details: Optional[Dict[str, Any]] = None):
        super().__init__(f"{service} unavailable: {message}", details)
        self.service = service


class DocumentProcessingError(DocscoutError):
    """Raised when a document cannot be processed at all."""

    kind = "document_processing"


class CapacityError(DocscoutError):
    """Raised when a payload or chunk count exceeds a configured ceiling."""

    kind = "capacity"

    def __init__(self, what: str, limit: int, actual: int):
        super().__init__(f"{what} exceeds limit ({actual} > {limit})")
        self.what = what
        self.limit = limit
        self.actual = actual


class ConfigurationError(DocscoutError):
    """Raised for invalid or inconsistent configuration."""

    kind = "configuration"
