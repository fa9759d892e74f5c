# zonesync/sync_api/exceptions.py
#
# Imports
from enum import Enum
from typing import Optional, Dict, Any
#
#######################################################################################################################
#
# Functions:

class ErrorCategory(str, Enum):
    """How the sync engine should react to an error."""
    TRANSIENT = "transient"          # retry with backoff
    CONFLICT = "conflict"            # route to the conflict resolver
    FATAL = "fatal"                  # halt automatic retry, surface to the operator
    QUOTA = "quota"                  # user-facing notification
    LIMIT = "limit"                  # split the batch and retry
    STALE_CURSOR = "stale_cursor"    # discard the cursor, full resync
    UNKNOWN_ITEM = "unknown_item"    # item no longer exists server-side
    ZONE_MISSING = "zone_missing"    # zone has to be (re)created or purged
    PARTIAL = "partial"              # sibling failure inside an atomic batch


class SyncErrorCode(str, Enum):
    NETWORK_UNAVAILABLE = "network_unavailable"
    NETWORK_FAILURE = "network_failure"
    SERVICE_UNAVAILABLE = "service_unavailable"
    REQUEST_RATE_LIMITED = "request_rate_limited"
    ZONE_BUSY = "zone_busy"
    INTERNAL_ERROR = "internal_error"
    SERVER_RECORD_CHANGED = "server_record_changed"
    NOT_AUTHENTICATED = "not_authenticated"
    BAD_REQUEST = "bad_request"
    PERMISSION_FAILURE = "permission_failure"
    INVALID_ARGUMENTS = "invalid_arguments"
    INCOMPATIBLE_VERSION = "incompatible_version"
    QUOTA_EXCEEDED = "quota_exceeded"
    LIMIT_EXCEEDED = "limit_exceeded"
    CHANGE_TOKEN_EXPIRED = "change_token_expired"
    UNKNOWN_ITEM = "unknown_item"
    ZONE_NOT_FOUND = "zone_not_found"
    USER_DELETED_ZONE = "user_deleted_zone"
    BATCH_REQUEST_FAILED = "batch_request_failed"


ERROR_CATEGORIES: Dict[SyncErrorCode, ErrorCategory] = {
    SyncErrorCode.NETWORK_UNAVAILABLE: ErrorCategory.TRANSIENT,
    SyncErrorCode.NETWORK_FAILURE: ErrorCategory.TRANSIENT,
    SyncErrorCode.SERVICE_UNAVAILABLE: ErrorCategory.TRANSIENT,
    SyncErrorCode.REQUEST_RATE_LIMITED: ErrorCategory.TRANSIENT,
    SyncErrorCode.ZONE_BUSY: ErrorCategory.TRANSIENT,
    SyncErrorCode.INTERNAL_ERROR: ErrorCategory.TRANSIENT,
    SyncErrorCode.SERVER_RECORD_CHANGED: ErrorCategory.CONFLICT,
    SyncErrorCode.NOT_AUTHENTICATED: ErrorCategory.FATAL,
    SyncErrorCode.BAD_REQUEST: ErrorCategory.FATAL,
    SyncErrorCode.PERMISSION_FAILURE: ErrorCategory.FATAL,
    SyncErrorCode.INVALID_ARGUMENTS: ErrorCategory.FATAL,
    SyncErrorCode.INCOMPATIBLE_VERSION: ErrorCategory.FATAL,
    SyncErrorCode.QUOTA_EXCEEDED: ErrorCategory.QUOTA,
    SyncErrorCode.LIMIT_EXCEEDED: ErrorCategory.LIMIT,
    SyncErrorCode.CHANGE_TOKEN_EXPIRED: ErrorCategory.STALE_CURSOR,
    SyncErrorCode.UNKNOWN_ITEM: ErrorCategory.UNKNOWN_ITEM,
    SyncErrorCode.ZONE_NOT_FOUND: ErrorCategory.ZONE_MISSING,
    SyncErrorCode.USER_DELETED_ZONE: ErrorCategory.ZONE_MISSING,
    SyncErrorCode.BATCH_REQUEST_FAILED: ErrorCategory.PARTIAL,
}

# Fallback mapping used when an error response carries no recognizable code
STATUS_CODE_ERRORS: Dict[int, SyncErrorCode] = {
    400: SyncErrorCode.BAD_REQUEST,
    401: SyncErrorCode.NOT_AUTHENTICATED,
    403: SyncErrorCode.PERMISSION_FAILURE,
    404: SyncErrorCode.ZONE_NOT_FOUND,
    409: SyncErrorCode.SERVER_RECORD_CHANGED,
    410: SyncErrorCode.CHANGE_TOKEN_EXPIRED,
    413: SyncErrorCode.LIMIT_EXCEEDED,
    422: SyncErrorCode.INVALID_ARGUMENTS,
    429: SyncErrorCode.REQUEST_RATE_LIMITED,
    500: SyncErrorCode.INTERNAL_ERROR,
    502: SyncErrorCode.SERVICE_UNAVAILABLE,
    503: SyncErrorCode.SERVICE_UNAVAILABLE,
    504: SyncErrorCode.NETWORK_FAILURE,
    507: SyncErrorCode.QUOTA_EXCEEDED,
}


def coerce_error_code(code: Any) -> SyncErrorCode:
    """Turns a raw code string into a SyncErrorCode, unknown values become INTERNAL_ERROR."""
    if isinstance(code, SyncErrorCode):
        return code
    try:
        return SyncErrorCode(str(code).lower())
    except ValueError:
        return SyncErrorCode.INTERNAL_ERROR


def classify_error_code(code: Any) -> ErrorCategory:
    return ERROR_CATEGORIES[coerce_error_code(code)]


class SyncAPIError(Exception):
    """Base exception for sync transport errors."""
    default_code = SyncErrorCode.INTERNAL_ERROR

    def __init__(self, message: str = "Sync request failed.", code: Optional[SyncErrorCode] = None,
                 status_code: Optional[int] = None, retry_after: Optional[float] = None,
                 response_data: Optional[Dict[str, Any]] = None):
        super().__init__(message)
        self.message = message
        self.code = coerce_error_code(code) if code is not None else self.default_code
        self.status_code = status_code
        self.retry_after = retry_after
        self.response_data = response_data or {}

    @property
    def category(self) -> ErrorCategory:
        return classify_error_code(self.code)

    def __str__(self):
        base = super().__str__()
        details = [f"code: {self.code.value}"]
        if self.status_code: details.append(f"status: {self.status_code}")
        if self.retry_after is not None: details.append(f"retry_after: {self.retry_after}s")
        return f"{base} ({', '.join(details)})"


class APIConnectionError(SyncAPIError):
    """Raised for network or connection issues."""
    default_code = SyncErrorCode.NETWORK_UNAVAILABLE

class ServiceUnavailableError(SyncAPIError):
    """Server is temporarily unable to handle the request."""
    default_code = SyncErrorCode.SERVICE_UNAVAILABLE

class RateLimitedError(SyncAPIError):
    """Server asked the client to slow down."""
    default_code = SyncErrorCode.REQUEST_RATE_LIMITED

class AuthenticationError(SyncAPIError):
    """Raised for authentication failures."""
    default_code = SyncErrorCode.NOT_AUTHENTICATED

class PermissionFailureError(SyncAPIError):
    default_code = SyncErrorCode.PERMISSION_FAILURE

class APIRequestError(SyncAPIError):
    """Raised for errors in constructing the request (bad configuration or arguments)."""
    default_code = SyncErrorCode.BAD_REQUEST

class QuotaExceededError(SyncAPIError):
    """Server-side storage quota is exhausted; the user has to act."""
    default_code = SyncErrorCode.QUOTA_EXCEEDED

class LimitExceededError(SyncAPIError):
    """Request carried too many items; split the batch."""
    default_code = SyncErrorCode.LIMIT_EXCEEDED

class ChangeTokenExpiredError(SyncAPIError):
    """The change token is no longer valid; a full resync is required."""
    default_code = SyncErrorCode.CHANGE_TOKEN_EXPIRED

class ZoneNotFoundError(SyncAPIError):
    default_code = SyncErrorCode.ZONE_NOT_FOUND

class APIResponseError(SyncAPIError):
    """Raised for non-2xx responses or issues parsing the response."""
    default_code = SyncErrorCode.INTERNAL_ERROR


_EXCEPTION_BY_CATEGORY = {
    ErrorCategory.QUOTA: QuotaExceededError,
    ErrorCategory.LIMIT: LimitExceededError,
    ErrorCategory.STALE_CURSOR: ChangeTokenExpiredError,
    ErrorCategory.ZONE_MISSING: ZoneNotFoundError,
}

_EXCEPTION_BY_CODE = {
    SyncErrorCode.NETWORK_UNAVAILABLE: APIConnectionError,
    SyncErrorCode.NETWORK_FAILURE: APIConnectionError,
    SyncErrorCode.SERVICE_UNAVAILABLE: ServiceUnavailableError,
    SyncErrorCode.ZONE_BUSY: ServiceUnavailableError,
    SyncErrorCode.REQUEST_RATE_LIMITED: RateLimitedError,
    SyncErrorCode.NOT_AUTHENTICATED: AuthenticationError,
    SyncErrorCode.PERMISSION_FAILURE: PermissionFailureError,
    SyncErrorCode.BAD_REQUEST: APIRequestError,
    SyncErrorCode.INVALID_ARGUMENTS: APIRequestError,
    SyncErrorCode.INCOMPATIBLE_VERSION: APIRequestError,
}


def error_from_code(code: Any, message: str, status_code: Optional[int] = None,
                    retry_after: Optional[float] = None,
                    response_data: Optional[Dict[str, Any]] = None) -> SyncAPIError:
    """Builds the most specific SyncAPIError subclass for an error code."""
    error_code = coerce_error_code(code)
    exc_class = _EXCEPTION_BY_CODE.get(error_code) or _EXCEPTION_BY_CATEGORY.get(
        classify_error_code(error_code), APIResponseError)
    return exc_class(message, code=error_code, status_code=status_code,
                     retry_after=retry_after, response_data=response_data)

#
# End of zonesync/sync_api/exceptions.py
########################################################################################################################
