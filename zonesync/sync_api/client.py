# zonesync/sync_api/client.py
#
#
# Imports
import json
from typing import Optional, Dict, Any, List
#
# 3rd-party Libraries
import httpx
from loguru import logger
from pydantic import BaseModel, ValidationError
#
# Local Imports
from .schemas import (
    SyncRecord, DatabaseChangesRequest, DatabaseChangesResponse,
    ZoneChangesRequest, ZoneChangesResponse,
    ModifyRecordsRequest, ModifyRecordsResponse,
    ModifyZonesRequest, ModifyZonesResponse, ErrorEnvelope,
)
from .exceptions import (
    APIConnectionError, APIResponseError, SyncErrorCode, STATUS_CODE_ERRORS, error_from_code,
)
from .transport import SyncTransport
from .utils import model_to_json_payload, parse_retry_after
#
########################################################################################################################
#
# Functions:

DATABASE_CHANGES_ENDPOINT = "/api/v1/sync/database/changes"
ZONE_CHANGES_ENDPOINT = "/api/v1/sync/zones/changes"
MODIFY_RECORDS_ENDPOINT = "/api/v1/sync/records/modify"
MODIFY_ZONES_ENDPOINT = "/api/v1/sync/zones/modify"


class SyncAPIClient(SyncTransport):
    """HTTP implementation of SyncTransport."""

    def __init__(self, base_url: str, token: Optional[str] = None, timeout: float = 45.0,
                 client_id: Optional[str] = None, transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip('/')
        self.token = token
        self.timeout = timeout
        self.client_id = client_id
        # Custom transports (e.g. httpx.MockTransport) are passed straight to httpx
        self._transport = transport
        self._client: Optional[httpx.Client] = None

    def _get_client(self) -> httpx.Client:
        if self._client is None or self._client.is_closed:
            headers = {"Accept": "application/json"}
            if self.token:
                headers["Authorization"] = f"Bearer {self.token}"
            if self.client_id:
                headers["X-Client-ID"] = self.client_id
            self._client = httpx.Client(
                base_url=self.base_url,
                headers=headers,
                timeout=self.timeout,
                follow_redirects=True,
                transport=self._transport,
            )
        return self._client

    def close(self):
        if self._client and not self._client.is_closed:
            self._client.close()
        self._client = None

    def _request(self, method: str, endpoint: str, payload: BaseModel) -> Dict[str, Any]:
        client = self._get_client()
        url = f"{self.base_url}{endpoint}"
        body = model_to_json_payload(payload)
        logger.debug(f"{method} {url}")

        try:
            response = client.request(method, endpoint, json=body)
            response.raise_for_status()  # Raises HTTPStatusError for 4xx/5xx
            return response.json()
        except httpx.HTTPStatusError as e:
            raise self._error_from_response(e.response) from e
        except httpx.TimeoutException as e:
            raise APIConnectionError(f"Timed out talking to {url}: {e}", code=SyncErrorCode.NETWORK_FAILURE) from e
        except httpx.RequestError as e:  # Covers ConnectError, ReadError, etc.
            raise APIConnectionError(f"Connection error to {url}: {e}") from e
        except json.JSONDecodeError as e:
            raise APIResponseError(
                "Failed to decode JSON response", status_code=response.status_code,
                response_data={"raw_text": response.text},
            ) from e

    @staticmethod
    def _error_from_response(response: httpx.Response):
        header_retry_after = parse_retry_after(response.headers.get("Retry-After"))
        response_data: Dict[str, Any] = {}
        try:
            response_data = response.json()
            envelope = ErrorEnvelope.model_validate(response_data)
            retry_after = envelope.error.retry_after
            if retry_after is None:
                retry_after = header_retry_after
            return error_from_code(
                envelope.error.code,
                envelope.error.reason or f"Server returned HTTP {response.status_code}",
                status_code=response.status_code,
                retry_after=retry_after,
                response_data=response_data,
            )
        except (json.JSONDecodeError, ValidationError):
            pass  # Not a structured error body; fall back to the status code
        code = STATUS_CODE_ERRORS.get(response.status_code, SyncErrorCode.INTERNAL_ERROR)
        return error_from_code(
            code, f"Server returned HTTP {response.status_code}: {response.text[:200]}",
            status_code=response.status_code, retry_after=header_retry_after,
            response_data=response_data if isinstance(response_data, dict) else {},
        )

    def _parse(self, model_class, response_dict: Dict[str, Any]):
        try:
            return model_class.model_validate(response_dict)
        except ValidationError as e:
            raise APIResponseError(f"Invalid {model_class.__name__} from server: {e}",
                                   response_data=response_dict) from e

    def fetch_database_changes(self, since_token: Optional[str], limit: int = 200) -> DatabaseChangesResponse:
        request = DatabaseChangesRequest(since_token=since_token, limit=limit)
        return self._parse(DatabaseChangesResponse, self._request("POST", DATABASE_CHANGES_ENDPOINT, request))

    def fetch_zone_changes(self, zone_name: str, since_token: Optional[str], limit: int = 200) -> ZoneChangesResponse:
        request = ZoneChangesRequest(zone_name=zone_name, since_token=since_token, limit=limit)
        return self._parse(ZoneChangesResponse, self._request("POST", ZONE_CHANGES_ENDPOINT, request))

    def modify_records(self, zone_name: str, saves: List[SyncRecord], deletes: List[str],
                       atomic: bool = False) -> ModifyRecordsResponse:
        request = ModifyRecordsRequest(zone_name=zone_name, saves=saves, deletes=deletes, atomic=atomic)
        return self._parse(ModifyRecordsResponse, self._request("POST", MODIFY_RECORDS_ENDPOINT, request))

    def modify_zones(self, saves: List[str], deletes: List[str]) -> ModifyZonesResponse:
        request = ModifyZonesRequest(saves=saves, deletes=deletes)
        return self._parse(ModifyZonesResponse, self._request("POST", MODIFY_ZONES_ENDPOINT, request))

#
# End of client.py
########################################################################################################################
