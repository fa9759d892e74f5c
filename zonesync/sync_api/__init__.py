# zonesync/sync_api/__init__.py
from .client import SyncAPIClient
from .transport import SyncTransport
from .exceptions import (
    SyncAPIError, APIConnectionError, APIRequestError, APIResponseError, AuthenticationError,
    PermissionFailureError, ServiceUnavailableError, RateLimitedError, QuotaExceededError,
    LimitExceededError, ChangeTokenExpiredError, ZoneNotFoundError,
    ErrorCategory, SyncErrorCode, classify_error_code, error_from_code,
)
from .schemas import (
    SyncRecord, RecordError, RecordResult,
    ZoneChangesResponse, DatabaseChangesResponse,
    ModifyRecordsResponse, ModifyZonesResponse, ZoneResult,
    RecordOperation, ZoneOperation,
)

__all__ = [
    "SyncAPIClient", "SyncTransport",
    "SyncAPIError", "APIConnectionError", "APIRequestError", "APIResponseError", "AuthenticationError",
    "PermissionFailureError", "ServiceUnavailableError", "RateLimitedError", "QuotaExceededError",
    "LimitExceededError", "ChangeTokenExpiredError", "ZoneNotFoundError",
    "ErrorCategory", "SyncErrorCode", "classify_error_code", "error_from_code",
    "SyncRecord", "RecordError", "RecordResult",
    "ZoneChangesResponse", "DatabaseChangesResponse",
    "ModifyRecordsResponse", "ModifyZonesResponse", "ZoneResult",
    "RecordOperation", "ZoneOperation",
]
