import enum
from pydantic import BaseModel, ConfigDict
from typing import Any, Dict, Optional
from datetime import datetime


class WhatsAppProvider(str, enum.Enum):
    DIRECT = "direct"
    TECH_PROVIDER = "tech_provider"


class CreatedVia(str, enum.Enum):
    EMBEDDED_SIGNUP = "embedded_signup"
    MANUAL_ENTRY = "manual_entry"
    TEST_MODE = "test_mode"


class PhoneVerificationStatus(str, enum.Enum):
    NOT_REGISTERED = "not_registered"
    PENDING = "pending"
    VALID = "valid"
    CONNECTED = "connected"


class AccountReviewStatus(str, enum.Enum):
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"


class TenantAccount(BaseModel):
    """
    The WhatsApp-related slice of a tenant document.
    Other tenant columns are carried through untouched.
    """
    id: str
    user_id: Optional[str] = None
    name: Optional[str] = None

    whatsapp_business_account_id: Optional[str] = None
    whatsapp_phone_number_id: Optional[str] = None
    whatsapp_phone_number: Optional[str] = None
    whatsapp_enabled: bool = False
    whatsapp_provider: Optional[WhatsAppProvider] = None
    whatsapp_created_via: Optional[CreatedVia] = None
    whatsapp_created_at: Optional[datetime] = None
    whatsapp_phone_registered: bool = False
    whatsapp_phone_verification_status: Optional[PhoneVerificationStatus] = None
    whatsapp_verified: bool = False
    whatsapp_account_review_status: Optional[AccountReviewStatus] = None
    whatsapp_status_last_checked: Optional[datetime] = None
    whatsapp_test_mode: bool = False
    whatsapp_test_recipient: Optional[str] = None
    embedded_signup_data: Optional[Dict[str, Any]] = None

    # Last-write bookkeeping used to order local and remote-origin writes
    whatsapp_updated_at: Optional[datetime] = None
    whatsapp_version: int = 0

    model_config = ConfigDict(from_attributes=True, extra="ignore")

    @property
    def is_connected(self) -> bool:
        return self.whatsapp_enabled and bool(self.whatsapp_business_account_id)

    @property
    def is_test_mode(self) -> bool:
        return self.whatsapp_test_mode or self.whatsapp_created_via == CreatedVia.TEST_MODE


# Every WhatsApp field back to empty/false/null, written in one update on disconnect
DISCONNECTED_FIELDS: Dict[str, Any] = {
    "whatsapp_business_account_id": None,
    "whatsapp_phone_number_id": None,
    "whatsapp_phone_number": None,
    "whatsapp_enabled": False,
    "whatsapp_provider": None,
    "whatsapp_created_via": None,
    "whatsapp_created_at": None,
    "whatsapp_phone_registered": False,
    "whatsapp_phone_verification_status": None,
    "whatsapp_verified": False,
    "whatsapp_account_review_status": None,
    "whatsapp_status_last_checked": None,
    "whatsapp_test_mode": False,
    "whatsapp_test_recipient": None,
    "embedded_signup_data": None,
}
