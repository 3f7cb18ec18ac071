"""Error taxonomy for the linking and instance services.

Every failure a caller can act on is one of the kinds in `ErrorKind`.
The API layer maps the kind to an HTTP status; callers branch on
`error.kind`, never on the message text.
"""
import enum
from typing import Optional


class ErrorKind(str, enum.Enum):
    CONFLICT = "conflict"
    DUPLICATE_NAME = "duplicate_name"
    INVALID_STATE = "invalid_state"
    MISSING_CREDENTIALS = "missing_credentials"
    GATEWAY_UNAVAILABLE = "gateway_unavailable"
    NOT_FOUND = "not_found"


class LinkingError(Exception):
    """Base exception for linking/registry errors."""

    kind: ErrorKind

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ConflictError(LinkingError):
    """Location is already claimed by another tenant."""

    kind = ErrorKind.CONFLICT


class DuplicateNameError(LinkingError):
    """Instance name already used within the tenant."""

    kind = ErrorKind.DUPLICATE_NAME


class InvalidStateError(LinkingError):
    """Requested operation is not allowed from the current state."""

    kind = ErrorKind.INVALID_STATE


class MissingCredentialsError(LinkingError):
    """No usable OAuth token pair for the location."""

    kind = ErrorKind.MISSING_CREDENTIALS


class GatewayUnavailableError(LinkingError):
    """Remote call failed after retries."""

    kind = ErrorKind.GATEWAY_UNAVAILABLE

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(LinkingError):
    """Referenced tenant, link or instance does not exist."""

    kind = ErrorKind.NOT_FOUND


# HTTP status per kind, used by the API exception handler
ERROR_STATUS_CODES = {
    ErrorKind.CONFLICT: 409,
    ErrorKind.DUPLICATE_NAME: 409,
    ErrorKind.INVALID_STATE: 409,
    ErrorKind.MISSING_CREDENTIALS: 422,
    ErrorKind.GATEWAY_UNAVAILABLE: 503,
    ErrorKind.NOT_FOUND: 404,
}
