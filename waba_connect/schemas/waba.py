from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel
from typing import Any, Dict, List, Optional
from datetime import datetime

from waba_connect.schemas.tenant import (
    AccountReviewStatus,
    PhoneVerificationStatus,
    TenantAccount,
)


class CamelModel(BaseModel):
    """Wire models use camelCase on the outside, snake_case in Python."""
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class PendingWabaLink(CamelModel):
    """
    Candidate account identifiers held between message normalization and the
    linking call (and between a PIN challenge and its retry). Never persisted.
    """
    waba_id: str
    phone_number_id: Optional[str] = None
    phone_number: Optional[str] = None
    raw_payload: Dict[str, Any] = Field(default_factory=dict)
    embedded_data: Optional[Dict[str, Any]] = None

    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, frozen=True)


# --- Linking procedure ---

class LinkRequest(CamelModel):
    waba_id: str
    phone_number_id: Optional[str] = None
    phone_number: Optional[str] = None
    pin: Optional[str] = None
    embedded_data: Optional[Dict[str, Any]] = None


class LinkResponse(CamelModel):
    success: bool
    waba_id: Optional[str] = None
    phone_number_id: Optional[str] = None
    phone_number: Optional[str] = None
    require_pin: bool = False
    pin_incorrect: bool = False
    registration_success: bool = False
    message: Optional[str] = None


# --- Status procedure ---

class WabaInfo(CamelModel):
    id: Optional[str] = None
    name: Optional[str] = None
    is_enabled: bool = True
    timezone: Optional[str] = None


class AccountReviewInfo(CamelModel):
    status: Optional[AccountReviewStatus] = None
    is_approved: bool = False
    is_pending: bool = False
    is_rejected: bool = False
    message: Optional[str] = None


class PhoneInfo(CamelModel):
    phone_number_id: Optional[str] = None
    phone_number: Optional[str] = None
    verified: bool = False
    registered: bool = False
    verification_status: Optional[PhoneVerificationStatus] = None
    needs_verification: bool = False


class OverallInfo(CamelModel):
    ready: bool = False
    needs_action: bool = True
    pending_actions: List[str] = Field(default_factory=list)


class WabaStatus(CamelModel):
    waba: WabaInfo = Field(default_factory=WabaInfo)
    account_review: AccountReviewInfo = Field(default_factory=AccountReviewInfo)
    phone: PhoneInfo = Field(default_factory=PhoneInfo)
    overall: OverallInfo = Field(default_factory=OverallInfo)


class StatusResponse(CamelModel):
    success: bool
    has_waba: bool = False
    waba_id: Optional[str] = None
    status: Optional[WabaStatus] = None
    message: Optional[str] = None
    timestamp: Optional[datetime] = None


# --- Detection procedure ---

class DetectionResult(CamelModel):
    found: bool
    waba_id: Optional[str] = None
    phone_number_id: Optional[str] = None
    phone_number: Optional[str] = None
    match_reason: Optional[str] = None


# --- Session initiator ---

class SignupSession(BaseModel):
    id: str
    tenant_id: str
    created_at: datetime
    expires_at: datetime
    type: str = "embedded_signup"


class PopupSpec(CamelModel):
    name: str = "WhatsAppEmbeddedSignup"
    width: int
    height: int
    features: str


class SignupLaunch(CamelModel):
    session_id: str
    url: str
    popup: PopupSpec
    # Same URL; navigate the whole page there when the popup is blocked
    fallback_url: str
    poll_interval_seconds: float
    expires_at: datetime


# --- API bodies ---

class SignupMessageIn(BaseModel):
    origin: str = ""
    data: Any = None


class PinSubmission(BaseModel):
    pin: str


class ManualEntry(CamelModel):
    waba_id: str = ""
    phone_number_id: Optional[str] = None
    phone_number: Optional[str] = None


class Notice(BaseModel):
    level: str
    message: str
    created_at: datetime


class ConnectionStateResponse(BaseModel):
    phase: str
    pending_link: Optional[PendingWabaLink] = None
    pin_error: Optional[str] = None
    error: Optional[str] = None
    account: Optional[TenantAccount] = None
    status: Optional[WabaStatus] = None
    notices: List[Notice] = Field(default_factory=list)
    test_mode_available: bool = False
