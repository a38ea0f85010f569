from typing import Optional


class NoteshelfError(Exception):
    """Base error for all Noteshelf exceptions."""


class ExtractionError(NoteshelfError):
    """Raised when page count or thumbnail cannot be derived from a binary."""


class InvalidDocument(ExtractionError):
    """Raised when bytes do not parse as a PDF or contain no pages."""


class RemoteFetchError(NoteshelfError):
    """Raised when the remote catalog cannot be reached or refuses a request."""

    user_facing = False

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NetworkError(RemoteFetchError):
    """Transport failure, timeout or server-side error."""


class NotFound(RemoteFetchError):
    """The requested record or binary does not exist."""


class PermissionDenied(RemoteFetchError):
    """The catalog rejected the credentials."""


class CatalogConfigurationError(RemoteFetchError):
    """The catalog is misconfigured, e.g. a missing query index or URL."""

    user_facing = True


class PersistenceError(NoteshelfError):
    """Raised when the local cache cannot be written."""


class NotAuthenticated(NoteshelfError):
    """Raised when an operation needs a user id and none is available."""
