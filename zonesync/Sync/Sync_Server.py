# Sync_Server.py
# In-memory reference implementation of the sync server.
#
# `ZoneSyncServer` keeps zones, records and a per-zone change log with
# tombstones, hands out opaque change tokens, and reports per-item outcomes the
# way the HTTP API does. It can be used directly as a SyncTransport or mounted
# behind httpx via `as_httpx_transport()` for end-to-end runs of SyncAPIClient.
#
# Imports
import json
import threading
import uuid
from collections import deque
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Deque, Dict, List, Optional, Set, Tuple
#
# Third-Party Imports
import httpx
from loguru import logger
from pydantic import ValidationError
#
# Local Imports
from zonesync.sync_api.client import (
    DATABASE_CHANGES_ENDPOINT, ZONE_CHANGES_ENDPOINT, MODIFY_RECORDS_ENDPOINT, MODIFY_ZONES_ENDPOINT,
)
from zonesync.sync_api.exceptions import (
    SyncAPIError, SyncErrorCode, STATUS_CODE_ERRORS, error_from_code,
    ChangeTokenExpiredError, LimitExceededError, ZoneNotFoundError, AuthenticationError, APIRequestError,
)
from zonesync.sync_api.schemas import (
    SyncRecord, RecordError, RecordResult, ZoneResult,
    DatabaseChangesRequest, DatabaseChangesResponse, ZoneChangesRequest, ZoneChangesResponse,
    ModifyRecordsRequest, ModifyRecordsResponse, ModifyZonesRequest, ModifyZonesResponse,
)
from zonesync.sync_api.transport import SyncTransport
from zonesync.sync_api.utils import encode_change_token, decode_change_token, model_to_json_payload
#
#######################################################################################################################
#
# Functions:

# Lowest status wins for the code -> status direction, except 503 for service_unavailable
_STATUS_FOR_CODE: Dict[SyncErrorCode, int] = {}
for _status, _code in sorted(STATUS_CODE_ERRORS.items()):
    _STATUS_FOR_CODE.setdefault(_code, _status)
_STATUS_FOR_CODE[SyncErrorCode.SERVICE_UNAVAILABLE] = 503
_STATUS_FOR_CODE.setdefault(SyncErrorCode.NETWORK_UNAVAILABLE, 503)
_STATUS_FOR_CODE.setdefault(SyncErrorCode.ZONE_BUSY, 503)
_STATUS_FOR_CODE.setdefault(SyncErrorCode.INCOMPATIBLE_VERSION, 400)
_STATUS_FOR_CODE.setdefault(SyncErrorCode.UNKNOWN_ITEM, 404)
_STATUS_FOR_CODE.setdefault(SyncErrorCode.USER_DELETED_ZONE, 404)
_STATUS_FOR_CODE.setdefault(SyncErrorCode.BATCH_REQUEST_FAILED, 409)


@dataclass
class _ZoneState:
    epoch: int
    seq: int = 0
    records: Dict[str, SyncRecord] = field(default_factory=dict)
    # record_name -> seq of its latest change (save or delete)
    changed_at: Dict[str, int] = field(default_factory=dict)
    tombstones: Set[str] = field(default_factory=set)


class ZoneSyncServer(SyncTransport):
    """
    In-memory sync server.

    Args:
        max_batch_size: Items allowed per modify request before LIMIT_EXCEEDED.
        max_fetch_limit: Largest page size accepted before LIMIT_EXCEEDED (None = unlimited).
        quota: Maximum number of live records across all zones (None = unlimited).
        api_token: When set, HTTP requests must carry it as a bearer token.
    """

    def __init__(self, max_batch_size: int = 400, max_fetch_limit: Optional[int] = None,
                 quota: Optional[int] = None, api_token: Optional[str] = None):
        self.max_batch_size = max_batch_size
        self.max_fetch_limit = max_fetch_limit
        self.quota = quota
        self.api_token = api_token
        self._lock = threading.RLock()
        self._zones: Dict[str, _ZoneState] = {}
        self._epoch_counter = 0
        self._db_epoch = self._next_epoch()
        self._db_seq = 0
        self._zone_changed_at: Dict[str, int] = {}
        self._deleted_zones: Set[str] = set()
        self._tag_counter = 0
        self._request_failures: Dict[str, Deque[SyncAPIError]] = {}
        self._item_failures: Dict[Tuple[str, str], Deque[SyncErrorCode]] = {}
        self.request_log: List[Tuple[str, Dict[str, Any]]] = []

    # --- Internal helpers ---

    def _next_epoch(self) -> int:
        self._epoch_counter += 1
        return self._epoch_counter

    def _next_tag(self) -> str:
        self._tag_counter += 1
        return f"t{self._tag_counter}-{uuid.uuid4().hex[:8]}"

    def _touch_zone(self, zone_name: str):
        self._db_seq += 1
        self._zone_changed_at[zone_name] = self._db_seq

    def _record_change(self, zone: _ZoneState, zone_name: str, record_name: str):
        zone.seq += 1
        zone.changed_at[record_name] = zone.seq
        self._touch_zone(zone_name)

    def _pop_request_failure(self, operation: str):
        queue = self._request_failures.get(operation)
        if queue:
            error = queue.popleft()
            logger.debug(f"ZoneSyncServer: injecting {error.code.value} into {operation}")
            raise error

    def _pop_item_failure(self, zone_name: str, record_name: str) -> Optional[SyncErrorCode]:
        queue = self._item_failures.get((zone_name, record_name))
        if queue:
            return queue.popleft()
        return None

    def _check_limit(self, limit: int):
        if limit < 1:
            raise APIRequestError("limit must be positive", code=SyncErrorCode.INVALID_ARGUMENTS)
        if self.max_fetch_limit is not None and limit > self.max_fetch_limit:
            raise LimitExceededError(f"limit {limit} exceeds maximum {self.max_fetch_limit}")

    def _live_record_count(self) -> int:
        return sum(len(zone.records) for zone in self._zones.values())

    # --- Test and operator hooks ---

    def fail_next(self, operation: str, error: SyncAPIError, times: int = 1):
        """Makes the next `times` calls of `operation` (e.g. "modify_records") raise `error`."""
        with self._lock:
            queue = self._request_failures.setdefault(operation, deque())
            for _ in range(times):
                queue.append(error)

    def fail_item(self, zone_name: str, record_name: str, code: SyncErrorCode, times: int = 1):
        """Makes the next `times` saves/deletes of one record fail with `code`."""
        with self._lock:
            queue = self._item_failures.setdefault((zone_name, record_name), deque())
            for _ in range(times):
                queue.append(SyncErrorCode(code))

    def expire_tokens(self, zone_name: Optional[str] = None):
        """Invalidates every token handed out for a zone (or, with None, for the zone list)."""
        with self._lock:
            if zone_name is None:
                self._db_epoch = self._next_epoch()
            elif zone_name in self._zones:
                self._zones[zone_name].epoch = self._next_epoch()

    def server_save(self, zone_name: str, record_name: str, record_type: str,
                    fields: Optional[Dict[str, Any]] = None, parent_name: Optional[str] = None) -> SyncRecord:
        """Writes a record as another client would, bypassing version checks."""
        with self._lock:
            zone = self._ensure_zone(zone_name)
            previous = zone.records.get(record_name)
            record = SyncRecord(
                zone_name=zone_name, record_name=record_name, record_type=record_type,
                fields=fields or {}, parent_name=parent_name, change_tag=self._next_tag(),
                edit_counter=(previous.edit_counter if previous else 0) + 1,
                modified_at=datetime.now(timezone.utc),
            )
            zone.records[record_name] = record
            zone.tombstones.discard(record_name)
            self._record_change(zone, zone_name, record_name)
            return record.model_copy(deep=True)

    def server_delete(self, zone_name: str, record_name: str) -> bool:
        with self._lock:
            zone = self._zones.get(zone_name)
            if zone is None or record_name not in zone.records:
                return False
            self._delete_record(zone, zone_name, record_name)
            return True

    def server_delete_zone(self, zone_name: str) -> bool:
        with self._lock:
            return self._delete_zone(zone_name)

    def get_record(self, zone_name: str, record_name: str) -> Optional[SyncRecord]:
        with self._lock:
            zone = self._zones.get(zone_name)
            record = zone.records.get(record_name) if zone else None
            return record.model_copy(deep=True) if record else None

    def list_records(self, zone_name: str) -> List[SyncRecord]:
        with self._lock:
            zone = self._zones.get(zone_name)
            if zone is None:
                return []
            return [r.model_copy(deep=True) for _, r in sorted(zone.records.items())]

    def zone_names(self) -> List[str]:
        with self._lock:
            return sorted(self._zones)

    # --- Zone/record mutation primitives ---

    def _ensure_zone(self, zone_name: str) -> _ZoneState:
        zone = self._zones.get(zone_name)
        if zone is None:
            zone = self._zones[zone_name] = _ZoneState(epoch=self._next_epoch())
            self._deleted_zones.discard(zone_name)
            self._touch_zone(zone_name)
        return zone

    def _delete_zone(self, zone_name: str) -> bool:
        if self._zones.pop(zone_name, None) is None:
            return False
        self._deleted_zones.add(zone_name)
        self._touch_zone(zone_name)
        return True

    def _delete_record(self, zone: _ZoneState, zone_name: str, record_name: str):
        del zone.records[record_name]
        zone.tombstones.add(record_name)
        self._record_change(zone, zone_name, record_name)

    # --- SyncTransport ---

    def fetch_database_changes(self, since_token: Optional[str], limit: int = 200) -> DatabaseChangesResponse:
        with self._lock:
            self.request_log.append(("fetch_database_changes", {"since_token": since_token}))
            self._pop_request_failure("fetch_database_changes")
            self._check_limit(limit)
            since = 0
            if since_token is not None:
                since = self._decode_token(since_token, scope="db", epoch=self._db_epoch, max_seq=self._db_seq)
            changed = sorted((seq, name) for name, seq in self._zone_changed_at.items() if seq > since)
            page, more = changed[:limit], len(changed) > limit
            last_seq = page[-1][0] if (page and more) else self._db_seq
            changed_zones = [name for _, name in page if name in self._zones]
            deleted_zones = [name for _, name in page if name not in self._zones and since_token is not None]
            return DatabaseChangesResponse(
                changed_zones=changed_zones,
                deleted_zones=deleted_zones,
                change_token=encode_change_token({"scope": "db", "epoch": self._db_epoch, "seq": last_seq}),
                more_coming=more,
            )

    def fetch_zone_changes(self, zone_name: str, since_token: Optional[str], limit: int = 200) -> ZoneChangesResponse:
        with self._lock:
            self.request_log.append(("fetch_zone_changes", {"zone_name": zone_name, "since_token": since_token}))
            self._pop_request_failure("fetch_zone_changes")
            self._check_limit(limit)
            zone = self._zones.get(zone_name)
            if zone is None:
                code = SyncErrorCode.USER_DELETED_ZONE if zone_name in self._deleted_zones else SyncErrorCode.ZONE_NOT_FOUND
                raise ZoneNotFoundError(f"Zone '{zone_name}' does not exist", code=code)
            since = 0
            if since_token is not None:
                since = self._decode_token(since_token, scope=zone_name, epoch=zone.epoch, max_seq=zone.seq)
            changed = sorted(
                (seq, name) for name, seq in zone.changed_at.items()
                if seq > since and (since_token is not None or name in zone.records)
            )
            page, more = changed[:limit], len(changed) > limit
            last_seq = page[-1][0] if (page and more) else zone.seq
            records = [zone.records[name].model_copy(deep=True) for _, name in page if name in zone.records]
            deleted = [name for _, name in page if name not in zone.records]
            return ZoneChangesResponse(
                zone_name=zone_name,
                records=records,
                deleted_record_names=deleted,
                change_token=encode_change_token({"scope": zone_name, "epoch": zone.epoch, "seq": last_seq}),
                more_coming=more,
            )

    def _decode_token(self, token: str, scope: str, epoch: int, max_seq: int) -> int:
        try:
            payload = decode_change_token(token)
        except ValueError:
            raise ChangeTokenExpiredError("Change token is not recognized")
        if payload.get("scope") != scope or payload.get("epoch") != epoch:
            raise ChangeTokenExpiredError("Change token has expired")
        seq = payload.get("seq")
        if not isinstance(seq, int) or seq < 0 or seq > max_seq:
            raise ChangeTokenExpiredError("Change token is out of range")
        return seq

    def modify_records(self, zone_name: str, saves: List[SyncRecord], deletes: List[str],
                       atomic: bool = False) -> ModifyRecordsResponse:
        with self._lock:
            self.request_log.append(("modify_records", {
                "zone_name": zone_name, "saves": [r.record_name for r in saves],
                "deletes": list(deletes), "atomic": atomic}))
            self._pop_request_failure("modify_records")
            if len(saves) + len(deletes) > self.max_batch_size:
                raise LimitExceededError(
                    f"{len(saves) + len(deletes)} items exceed the batch limit of {self.max_batch_size}")
            zone = self._zones.get(zone_name)
            if zone is None:
                code = SyncErrorCode.USER_DELETED_ZONE if zone_name in self._deleted_zones else SyncErrorCode.ZONE_NOT_FOUND
                raise ZoneNotFoundError(f"Zone '{zone_name}' does not exist", code=code)

            # Validate every item first; apply afterwards so atomic batches stay all-or-nothing
            planned: List[Tuple[str, str, Any, Optional[RecordError]]] = []
            new_records = 0
            for record in saves:
                error = self._check_save(zone, zone_name, record, new_records)
                if error is None and record.record_name not in zone.records:
                    new_records += 1
                planned.append((record.record_name, "save", record, error))
            for name in deletes:
                planned.append((name, "delete", name, self._check_delete(zone, zone_name, name)))

            if atomic and any(error is not None for _, _, _, error in planned):
                results = [
                    RecordResult(record_name=name, operation=op, error=error or RecordError(
                        code=SyncErrorCode.BATCH_REQUEST_FAILED, reason="Another item in the atomic batch failed"))
                    for name, op, _, error in planned
                ]
                return ModifyRecordsResponse(zone_name=zone_name, results=results)

            results: List[RecordResult] = []
            for name, op, payload, error in planned:
                if error is not None:
                    results.append(RecordResult(record_name=name, operation=op, error=error))
                elif op == "save":
                    stored = self._apply_save(zone, zone_name, payload)
                    results.append(RecordResult(record_name=name, operation=op, record=stored))
                else:
                    self._delete_record(zone, zone_name, name)
                    results.append(RecordResult(record_name=name, operation=op))
            return ModifyRecordsResponse(zone_name=zone_name, results=results)

    def _check_save(self, zone: _ZoneState, zone_name: str, record: SyncRecord,
                    pending_new: int) -> Optional[RecordError]:
        injected = self._pop_item_failure(zone_name, record.record_name)
        if injected is not None:
            return RecordError(code=injected, reason="Injected failure")
        if record.zone_name != zone_name:
            return RecordError(code=SyncErrorCode.INVALID_ARGUMENTS, reason="Record belongs to another zone")
        existing = zone.records.get(record.record_name)
        if existing is None:
            if record.change_tag is not None:
                return RecordError(code=SyncErrorCode.UNKNOWN_ITEM, reason="Record no longer exists")
            if self.quota is not None and self._live_record_count() + pending_new >= self.quota:
                return RecordError(code=SyncErrorCode.QUOTA_EXCEEDED, reason="Record quota exhausted")
            return None
        if record.change_tag != existing.change_tag:
            return RecordError(code=SyncErrorCode.SERVER_RECORD_CHANGED,
                               reason="Change tag does not match the server version",
                               server_record=existing.model_copy(deep=True))
        return None

    def _check_delete(self, zone: _ZoneState, zone_name: str, record_name: str) -> Optional[RecordError]:
        injected = self._pop_item_failure(zone_name, record_name)
        if injected is not None:
            return RecordError(code=injected, reason="Injected failure")
        if record_name not in zone.records:
            return RecordError(code=SyncErrorCode.UNKNOWN_ITEM, reason="Record does not exist")
        return None

    def _apply_save(self, zone: _ZoneState, zone_name: str, record: SyncRecord) -> SyncRecord:
        stored = record.model_copy(update={
            "change_tag": self._next_tag(),
            "modified_at": datetime.now(timezone.utc),
        }, deep=True)
        zone.records[record.record_name] = stored
        zone.tombstones.discard(record.record_name)
        self._record_change(zone, zone_name, record.record_name)
        return stored.model_copy(deep=True)

    def modify_zones(self, saves: List[str], deletes: List[str]) -> ModifyZonesResponse:
        with self._lock:
            self.request_log.append(("modify_zones", {"saves": list(saves), "deletes": list(deletes)}))
            self._pop_request_failure("modify_zones")
            results: List[ZoneResult] = []
            for zone_name in saves:
                self._ensure_zone(zone_name)
                results.append(ZoneResult(zone_name=zone_name, operation="save"))
            for zone_name in deletes:
                if self._delete_zone(zone_name):
                    results.append(ZoneResult(zone_name=zone_name, operation="delete"))
                else:
                    results.append(ZoneResult(zone_name=zone_name, operation="delete", error=RecordError(
                        code=SyncErrorCode.ZONE_NOT_FOUND, reason="Zone does not exist")))
            return ModifyZonesResponse(results=results)

    # --- HTTP surface ---

    def handle_request(self, request: httpx.Request) -> httpx.Response:
        """Serves one HTTP request of the sync API."""
        if self.api_token is not None:
            if request.headers.get("Authorization") != f"Bearer {self.api_token}":
                return self._error_response(AuthenticationError("Missing or invalid bearer token"))
        routes = {
            DATABASE_CHANGES_ENDPOINT: (DatabaseChangesRequest, lambda r: self.fetch_database_changes(r.since_token, r.limit)),
            ZONE_CHANGES_ENDPOINT: (ZoneChangesRequest, lambda r: self.fetch_zone_changes(r.zone_name, r.since_token, r.limit)),
            MODIFY_RECORDS_ENDPOINT: (ModifyRecordsRequest, lambda r: self.modify_records(r.zone_name, r.saves, r.deletes, r.atomic)),
            MODIFY_ZONES_ENDPOINT: (ModifyZonesRequest, lambda r: self.modify_zones(r.saves, r.deletes)),
        }
        route = routes.get(request.url.path)
        if route is None or request.method != "POST":
            return httpx.Response(404, json={"error": {"code": "bad_request", "reason": f"No route for {request.method} {request.url.path}"}})
        request_model, handler = route
        try:
            body = request_model.model_validate(json.loads(request.content or b"{}"))
        except (json.JSONDecodeError, ValidationError) as e:
            return self._error_response(APIRequestError(f"Invalid request body: {e}", code=SyncErrorCode.INVALID_ARGUMENTS))
        try:
            response_model = handler(body)
        except SyncAPIError as e:
            return self._error_response(e)
        return httpx.Response(200, json=model_to_json_payload(response_model))

    @staticmethod
    def _error_response(error: SyncAPIError) -> httpx.Response:
        status = _STATUS_FOR_CODE.get(error.code, 500)
        body: Dict[str, Any] = {"code": error.code.value, "reason": error.message}
        headers = {}
        if error.retry_after is not None:
            body["retry_after"] = error.retry_after
            headers["Retry-After"] = str(int(error.retry_after))
        return httpx.Response(status, json={"error": body}, headers=headers)

    def as_httpx_transport(self) -> httpx.MockTransport:
        return httpx.MockTransport(self.handle_request)


def make_error(code: SyncErrorCode, message: str = "Injected error", retry_after: Optional[float] = None) -> SyncAPIError:
    """Shorthand for building an injectable request-level error."""
    return error_from_code(code, message, retry_after=retry_after)

#
# End of Sync_Server.py
#######################################################################################################################
