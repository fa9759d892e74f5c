# zonesync/sync_api/utils.py
#
#
# Imports
import base64
import json
import math
from datetime import datetime, timezone
from email.utils import parsedate_to_datetime
from typing import Dict, Any, Optional
#
# 3rd-party Libraries
from loguru import logger
from pydantic import BaseModel
#
#######################################################################################################################
#
# Functions:

BYTES_MARKER = "$bytes"


def encode_field_value(value: Any) -> Any:
    """
    Converts a record field value into its JSON-safe wire form.
    Blobs become {"$bytes": "<base64>"}, lists are encoded element-wise.
    """
    if isinstance(value, (bytes, bytearray, memoryview)):
        return {BYTES_MARKER: base64.b64encode(bytes(value)).decode("ascii")}
    if isinstance(value, (list, tuple)):
        return [encode_field_value(v) for v in value]
    return value


def decode_field_value(value: Any) -> Any:
    if isinstance(value, dict) and set(value.keys()) == {BYTES_MARKER}:
        return base64.b64decode(value[BYTES_MARKER])
    if isinstance(value, list):
        return [decode_field_value(v) for v in value]
    return value


def encode_fields(fields: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {name: encode_field_value(value) for name, value in (fields or {}).items()}


def decode_fields(fields: Optional[Dict[str, Any]]) -> Dict[str, Any]:
    return {name: decode_field_value(value) for name, value in (fields or {}).items()}


def model_to_json_payload(model_instance: BaseModel) -> Dict[str, Any]:
    """
    Converts a Pydantic model instance into a JSON body for the sync API.
    None values are dropped so optional cursors are simply absent.
    """
    return model_instance.model_dump(mode="json", exclude_none=True)


def encode_change_token(payload: Dict[str, Any]) -> str:
    """Packs cursor state into an opaque, URL-safe token string."""
    raw = json.dumps(payload, sort_keys=True, separators=(",", ":")).encode("utf-8")
    return base64.urlsafe_b64encode(raw).decode("ascii").rstrip("=")


def decode_change_token(token: str) -> Dict[str, Any]:
    """
    Inverse of encode_change_token.

    Raises:
        ValueError: If the token is not one this library produced.
    """
    try:
        padded = token + "=" * (-len(token) % 4)
        payload = json.loads(base64.urlsafe_b64decode(padded.encode("ascii")))
    except (ValueError, TypeError, UnicodeError) as e:
        raise ValueError(f"Malformed change token: {token!r}") from e
    if not isinstance(payload, dict):
        raise ValueError(f"Malformed change token: {token!r}")
    return payload


def parse_retry_after(value: Optional[str]) -> Optional[float]:
    """
    Parses a Retry-After header value (delta-seconds or HTTP-date) into seconds.

    Returns:
        Non-negative number of seconds, or None if the header is absent or unreadable.
    """
    if value is None:
        return None
    value = str(value).strip()
    if not value:
        return None
    try:
        seconds = float(value)
    except ValueError:
        pass
    else:
        if not math.isfinite(seconds):
            logger.warning(f"Ignoring non-finite Retry-After header value: {value!r}")
            return None
        return max(0.0, seconds)
    try:
        retry_at = parsedate_to_datetime(value)
    except (TypeError, ValueError):
        logger.warning(f"Could not parse Retry-After header value: {value!r}")
        return None
    if retry_at.tzinfo is None:
        retry_at = retry_at.replace(tzinfo=timezone.utc)
    return max(0.0, (retry_at - datetime.now(timezone.utc)).total_seconds())

#
# End of utils.py
#######################################################################################################################
