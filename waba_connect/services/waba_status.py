import logging
from typing import Any, Dict, List, Optional

from waba_connect.core.errors import MetaAPIError, RemoteProcedureError
from waba_connect.schemas.tenant import AccountReviewStatus, PhoneVerificationStatus
from waba_connect.schemas.waba import (
    AccountReviewInfo,
    OverallInfo,
    PhoneInfo,
    StatusResponse,
    WabaInfo,
    WabaStatus,
)
from waba_connect.services.meta_graph import MetaGraphClient, pick_primary_phone
from waba_connect.services.tenant_store import TenantStore, utcnow

logger = logging.getLogger(__name__)

REVIEW_MESSAGES = {
    "APPROVED": "Account is approved and ready to use",
    "PENDING": "Account review is in progress",
    "IN_REVIEW": "Account is being reviewed by Meta",
    "REJECTED": "Account review was rejected",
    "LIMITED": "Account has limited functionality",
}

_PENDING_CODE_STATUSES = {"NOT_VERIFIED", "UNVERIFIED", "EXPIRED", "PENDING"}


def normalize_review_status(raw: Optional[str]) -> Optional[AccountReviewStatus]:
    if not raw:
        return None
    raw = raw.upper()
    if raw == "IN_REVIEW":
        return AccountReviewStatus.PENDING
    try:
        return AccountReviewStatus(raw)
    except ValueError:
        return None


def normalize_phone_status(phone: Optional[Dict[str, Any]]) -> Optional[PhoneVerificationStatus]:
    if not phone:
        return None
    if phone.get("status") == "CONNECTED":
        return PhoneVerificationStatus.CONNECTED
    code_status = (phone.get("code_verification_status") or "").upper()
    if code_status == "VERIFIED":
        return PhoneVerificationStatus.VALID
    if code_status in _PENDING_CODE_STATUSES:
        return PhoneVerificationStatus.PENDING
    return None


def pending_actions(review: Optional[AccountReviewStatus], registered: bool, verified: bool) -> List[str]:
    actions = []
    if not registered:
        actions.append("Add phone number")
    elif not verified:
        actions.append("Verify phone number")
    if review == AccountReviewStatus.PENDING:
        actions.append("Wait for account review")
    elif review == AccountReviewStatus.REJECTED:
        actions.append("Resolve account review issues")
    return actions


def build_status(waba: Dict[str, Any], phone: Optional[Dict[str, Any]]) -> WabaStatus:
    """Summarizes Graph API answers into the status shape mirrored onto the tenant."""
    raw_review = waba.get("account_review_status")
    review = normalize_review_status(raw_review)
    registered = bool(phone and phone.get("id"))
    verification = normalize_phone_status(phone)
    verified = verification in (PhoneVerificationStatus.VALID, PhoneVerificationStatus.CONNECTED)

    return WabaStatus(
        waba=WabaInfo(
            id=waba.get("id"),
            name=waba.get("name"),
            is_enabled=waba.get("is_enabled") is not False,
            timezone=waba.get("timezone_id"),
        ),
        account_review=AccountReviewInfo(
            status=review,
            is_approved=review == AccountReviewStatus.APPROVED,
            is_pending=review == AccountReviewStatus.PENDING,
            is_rejected=review == AccountReviewStatus.REJECTED,
            message=REVIEW_MESSAGES.get((raw_review or "").upper(), "Review status unknown"),
        ),
        phone=PhoneInfo(
            phone_number_id=phone.get("id") if phone else None,
            phone_number=phone.get("display_phone_number") if phone else None,
            verified=verified,
            registered=registered,
            verification_status=verification,
            needs_verification=registered and not verified,
        ),
        overall=OverallInfo(
            ready=review == AccountReviewStatus.APPROVED and registered and verified,
            needs_action=not (review == AccountReviewStatus.APPROVED and registered and verified),
            pending_actions=pending_actions(review, registered, verified),
        ),
    )


class WabaStatusService:
    """Status procedure: reads the current review and phone state from Meta."""

    def __init__(self, store: TenantStore, graph: Optional[MetaGraphClient] = None):
        self.store = store
        self.graph = graph or MetaGraphClient()

    async def fetch_status(self, tenant_id: str) -> StatusResponse:
        account = self.store.get(tenant_id)
        waba_id = account.whatsapp_business_account_id
        if not waba_id:
            return StatusResponse(success=False, has_waba=False, message="No WABA connected yet")

        try:
            waba = await self.graph.get_waba(waba_id)
        except MetaAPIError as e:
            raise RemoteProcedureError(f"Failed to get WABA status: {e.message}") from e

        phone = None
        try:
            if account.whatsapp_phone_number_id:
                phone = await self.graph.get_phone_number(account.whatsapp_phone_number_id)
            else:
                phone = pick_primary_phone(await self.graph.list_phone_numbers(waba_id))
        except MetaAPIError as e:
            logger.warning(f"Phone lookup failed for WABA {waba_id}: {e.message}")

        return StatusResponse(
            success=True,
            has_waba=True,
            waba_id=waba_id,
            status=build_status(waba, phone),
            timestamp=utcnow(),
        )
