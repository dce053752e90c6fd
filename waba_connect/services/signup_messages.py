"""
Normalization of the cross-window messages produced by the embedded signup.

Three shapes are understood:

- the callback bridge page:
  ``{"type": "WHATSAPP_EMBEDDED_SIGNUP", "status": "SUCCESS" | "ERROR", "waba_id", ...}``
- Meta's JS SDK session logging:
  ``{"type": "WA_EMBEDDED_SIGNUP", "event": "FINISH" | "CANCEL" | "ERROR", "data": {...}}``
- a bare identifier object:
  ``{"waba_id" | "wabaId", "phone_number_id" | "phoneNumberId", "phone_number" | "phoneNumber"}``

Each shape has its own parser. Anything else is rejected (``None``).
"""
import json
import logging
from dataclasses import dataclass
from typing import Any, Callable, Dict, Iterable, Optional, Union
from urllib.parse import urlsplit

from waba_connect.schemas.waba import PendingWabaLink

logger = logging.getLogger(__name__)

BRIDGE_EVENT = "WHATSAPP_EMBEDDED_SIGNUP"
SDK_EVENT = "WA_EMBEDDED_SIGNUP"

# Messages tagged with this event are accepted from any origin: the bridge page is
# served from the callback host, which differs per deployment.
TRUSTED_EVENT_TAGS = frozenset({BRIDGE_EVENT})


@dataclass(frozen=True)
class SignupSucceeded:
    link: PendingWabaLink
    source: str


@dataclass(frozen=True)
class SignupFailed:
    error: str
    source: str


@dataclass(frozen=True)
class SignupCancelled:
    source: str


@dataclass(frozen=True)
class SignupIncomplete:
    """The flow finished but did not report an account id."""
    source: str


SignupMessage = Union[SignupSucceeded, SignupFailed, SignupCancelled, SignupIncomplete]


def _first(payload: Dict[str, Any], *keys: str) -> Optional[str]:
    for key in keys:
        value = payload.get(key)
        if value not in (None, ""):
            return str(value)
    return None


def _error_text(value: Any, default: str = "Signup failed") -> str:
    """Error values arrive as strings or as `{"message": ..., "code": ...}` objects."""
    if isinstance(value, dict):
        value = value.get("message") or value.get("error_message")
    if value in (None, ""):
        return default
    return str(value)


def _link_from_ids(ids: Dict[str, Any], raw: Dict[str, Any]) -> Optional[PendingWabaLink]:
    waba_id = _first(ids, "waba_id", "wabaId")
    if not waba_id:
        return None
    return PendingWabaLink(
        waba_id=waba_id,
        phone_number_id=_first(ids, "phone_number_id", "phoneNumberId"),
        phone_number=_first(ids, "phone_number", "phoneNumber"),
        raw_payload=raw,
    )


def parse_bridge_event(payload: Dict[str, Any]) -> Optional[SignupMessage]:
    status = str(payload.get("status") or "").upper()
    if status == "ERROR":
        return SignupFailed(error=_error_text(payload.get("error")), source="bridge")
    if status == "SUCCESS":
        link = _link_from_ids(payload, payload)
        return SignupSucceeded(link=link, source="bridge") if link else None
    return None


def parse_sdk_event(payload: Dict[str, Any]) -> Optional[SignupMessage]:
    event = str(payload.get("event") or "").upper()
    data = payload.get("data") if isinstance(payload.get("data"), dict) else {}
    if event == "FINISH":
        link = _link_from_ids(data, payload)
        if link:
            return SignupSucceeded(link=link, source="sdk")
        return SignupIncomplete(source="sdk")
    if event == "CANCEL":
        return SignupCancelled(source="sdk")
    if event == "ERROR":
        return SignupFailed(error=_error_text(data.get("error_message")), source="sdk")
    return None


def parse_raw_ids(payload: Dict[str, Any]) -> Optional[SignupMessage]:
    link = _link_from_ids(payload, payload)
    return SignupSucceeded(link=link, source="raw") if link else None


PARSERS: Dict[str, Callable[[Dict[str, Any]], Optional[SignupMessage]]] = {
    BRIDGE_EVENT: parse_bridge_event,
    SDK_EVENT: parse_sdk_event,
}


def _same_origin(origin: str, allowed: str) -> bool:
    try:
        a, b = urlsplit(origin.rstrip("/")), urlsplit(allowed.rstrip("/"))
    except ValueError:
        return False
    return bool(a.scheme) and (a.scheme, a.netloc) == (b.scheme, b.netloc)


def is_trusted(origin: str, payload: Dict[str, Any], allowed_origins: Iterable[str]) -> bool:
    if payload.get("type") in TRUSTED_EVENT_TAGS:
        return True
    if not isinstance(origin, str):
        return False
    return any(_same_origin(origin or "", allowed) for allowed in allowed_origins)


def decode_payload(data: Any) -> Optional[Dict[str, Any]]:
    """The SDK posts JSON strings; the bridge posts objects."""
    if isinstance(data, str):
        try:
            data = json.loads(data)
        except ValueError:
            return None
    return data if isinstance(data, dict) else None


def normalize_message(origin: str, data: Any, allowed_origins: Iterable[str]) -> Optional[SignupMessage]:
    payload = decode_payload(data)
    if payload is None:
        return None
    # Event tags are strings; anything else is a malformed message
    if not isinstance(payload.get("type", ""), str):
        return None
    if not is_trusted(origin, payload, allowed_origins):
        logger.debug(f"Ignoring message from untrusted origin {origin!r}")
        return None
    parser = PARSERS.get(payload.get("type"), parse_raw_ids)
    return parser(payload)
