from typing import Any, Dict, Optional

# Meta error code for a missing or wrong two-step verification PIN
TWO_STEP_PIN_ERROR_CODE = 136025

_PIN_MESSAGE_MARKERS = (
    "two-step verification",
    "two step verification",
)
_GENERIC_PIN_MARKERS = (
    "two-step",
    "two step",
    "2fa",
    "verification pin",
    "pin is required",
    "incorrect pin",
)
_ALREADY_DONE_MARKERS = (
    "already registered",
    "already exists",
    "already verified",
    "already subscribed",
)


class WabaConnectError(Exception):
    """Base class for errors raised by the WhatsApp connection workflow."""


class TenantNotFoundError(WabaConnectError):
    def __init__(self, tenant_id: str):
        super().__init__(f"Tenant not found: {tenant_id}")
        self.tenant_id = tenant_id


class MetaAPIError(WabaConnectError):
    """
    A non-2xx answer (or transport failure) from the Meta Graph API.
    """
    def __init__(
        self,
        message: str,
        status_code: Optional[int] = None,
        code: Optional[int] = None,
        subcode: Optional[int] = None,
        payload: Optional[Dict[str, Any]] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.subcode = subcode
        self.payload = payload or {}

    @classmethod
    def from_response(cls, status_code: int, payload: Dict[str, Any]) -> "MetaAPIError":
        error = payload.get("error") if isinstance(payload, dict) else None
        if not isinstance(error, dict):
            # Some endpoints answer a bare string instead of an error object
            error = {"message": error} if isinstance(error, str) and error else {}
        return cls(
            error.get("message") or f"Meta API returned {status_code}",
            status_code=status_code,
            code=error.get("code"),
            subcode=error.get("error_subcode"),
            payload=payload,
        )

    @property
    def is_pin_error(self) -> bool:
        message = self.message.lower()
        if TWO_STEP_PIN_ERROR_CODE in (self.code, self.subcode):
            return True
        if self.code == 100 and any(marker in message for marker in _GENERIC_PIN_MARKERS):
            return True
        return any(marker in message for marker in _PIN_MESSAGE_MARKERS)

    @property
    def is_already_done(self) -> bool:
        message = self.message.lower()
        return any(marker in message for marker in _ALREADY_DONE_MARKERS)


class RemoteProcedureError(WabaConnectError):
    """A linking/status/detection procedure failed (network, 5xx, Graph error)."""


class PinFormatError(WabaConnectError):
    """Rejected before any remote call: the PIN is not exactly 6 digits."""


class IncorrectPinError(WabaConnectError):
    """The linking procedure asked for a PIN again after one was supplied."""


class ConnectionStateError(WabaConnectError):
    """The requested operation does not apply to the current connection state."""


class ManualEntryError(WabaConnectError):
    pass


class ConfigurationError(WabaConnectError):
    """The sandbox account block is missing or still holds placeholder values."""
