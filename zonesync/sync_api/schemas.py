# zonesync/sync_api/schemas.py
from datetime import datetime
from typing import List, Optional, Dict, Any, Literal
from pydantic import BaseModel, Field, field_validator, field_serializer

from .exceptions import SyncErrorCode, ErrorCategory, classify_error_code, coerce_error_code
from .utils import encode_fields, decode_fields

# Enum-like Literals from the wire protocol
RecordOperation = Literal['save', 'delete']
ZoneOperation = Literal['save', 'delete']

_SCALAR_TYPES = (type(None), bool, int, float, str, bytes)


# --- Records ---
class SyncRecord(BaseModel):
    """
    A record as exchanged with the server. `change_tag` is the server-assigned
    version marker the record was last read with (None for never-synced records).
    """
    zone_name: str
    record_name: str
    record_type: str
    fields: Dict[str, Any] = Field(default_factory=dict)
    change_tag: Optional[str] = None
    parent_name: Optional[str] = None
    edit_counter: int = 0
    modified_at: Optional[datetime] = None

    @field_validator("fields", mode="before")
    @classmethod
    def _decode_blob_fields(cls, value):
        if value is None:
            return {}
        if not isinstance(value, dict):
            raise ValueError("fields must be a mapping of field name to value")
        return decode_fields(value)

    @field_validator("fields")
    @classmethod
    def _check_field_values(cls, value: Dict[str, Any]) -> Dict[str, Any]:
        for name, field_value in value.items():
            if not name:
                raise ValueError("field names cannot be empty")
            items = field_value if isinstance(field_value, list) else [field_value]
            for item in items:
                if not isinstance(item, _SCALAR_TYPES):
                    raise ValueError(f"field '{name}' holds unsupported value type {type(item).__name__}")
        return value

    @field_serializer("fields", when_used="json")
    def _encode_blob_fields(self, fields: Dict[str, Any]) -> Dict[str, Any]:
        return encode_fields(fields)

    def same_content(self, other: "SyncRecord") -> bool:
        """True when both records carry the same user-visible data, ignoring sync metadata."""
        return (
            self.record_type == other.record_type
            and self.fields == other.fields
            and self.parent_name == other.parent_name
        )


class RecordError(BaseModel):
    code: SyncErrorCode
    reason: Optional[str] = None
    retry_after: Optional[float] = None
    # Present for server_record_changed: the record as the server currently holds it
    server_record: Optional[SyncRecord] = None

    @field_validator("code", mode="before")
    @classmethod
    def _known_code(cls, value):
        return coerce_error_code(value)

    @property
    def category(self) -> ErrorCategory:
        return classify_error_code(self.code)


class RecordResult(BaseModel):
    record_name: str
    operation: RecordOperation
    record: Optional[SyncRecord] = None
    error: Optional[RecordError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


# --- Zone changes (server -> client) ---
class ZoneChangesRequest(BaseModel):
    zone_name: str
    since_token: Optional[str] = None
    limit: int = 200


class ZoneChangesResponse(BaseModel):
    zone_name: str
    records: List[SyncRecord] = Field(default_factory=list)
    deleted_record_names: List[str] = Field(default_factory=list)
    change_token: str
    more_coming: bool = False


class DatabaseChangesRequest(BaseModel):
    since_token: Optional[str] = None
    limit: int = 200


class DatabaseChangesResponse(BaseModel):
    changed_zones: List[str] = Field(default_factory=list)
    deleted_zones: List[str] = Field(default_factory=list)
    change_token: str
    more_coming: bool = False


# --- Modifications (client -> server) ---
class ModifyRecordsRequest(BaseModel):
    zone_name: str
    saves: List[SyncRecord] = Field(default_factory=list)
    deletes: List[str] = Field(default_factory=list)
    atomic: bool = False


class ModifyRecordsResponse(BaseModel):
    zone_name: str
    results: List[RecordResult] = Field(default_factory=list)


class ModifyZonesRequest(BaseModel):
    saves: List[str] = Field(default_factory=list)
    deletes: List[str] = Field(default_factory=list)


class ZoneResult(BaseModel):
    zone_name: str
    operation: ZoneOperation
    error: Optional[RecordError] = None

    @property
    def ok(self) -> bool:
        return self.error is None


class ModifyZonesResponse(BaseModel):
    results: List[ZoneResult] = Field(default_factory=list)


# --- Error envelope ---
class ErrorBody(BaseModel):
    code: str
    reason: Optional[str] = None
    retry_after: Optional[float] = None


class ErrorEnvelope(BaseModel):
    error: ErrorBody
