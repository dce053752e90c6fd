import logging
from typing import Any, Dict, List, Optional

import httpx

from waba_connect.core.config import settings
from waba_connect.core.errors import MetaAPIError

logger = logging.getLogger(__name__)

WABA_FIELDS = "id,name,account_review_status,ownership_type,timezone_id,is_enabled"
PHONE_FIELDS = "id,display_phone_number,verified_name,code_verification_status,status,quality_rating"


def pick_primary_phone(phone_numbers: List[Dict[str, Any]]) -> Optional[Dict[str, Any]]:
    """Prefers a connected or verified number, else the first one listed."""
    for phone in phone_numbers:
        if phone.get("status") == "CONNECTED" or phone.get("code_verification_status") == "VERIFIED":
            return phone
    return phone_numbers[0] if phone_numbers else None


class MetaGraphClient:
    """
    Thin async wrapper over the WhatsApp Business Management endpoints of the Graph API.
    Uses the system user token unless another token is given.
    """

    def __init__(
        self,
        access_token: Optional[str] = None,
        base_url: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        timeout: float = 30.0,
    ):
        self.access_token = access_token or settings.meta_system_user_token
        self.base_url = (base_url or settings.meta_graph_base_url).rstrip("/")
        self.transport = transport
        self.timeout = timeout

    async def _request(
        self,
        method: str,
        path: str,
        params: Optional[Dict[str, Any]] = None,
        json: Optional[Dict[str, Any]] = None,
    ) -> Dict[str, Any]:
        if not self.access_token:
            raise MetaAPIError("System user token not configured")

        url = f"{self.base_url}/{path.lstrip('/')}"
        headers = {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

        async with httpx.AsyncClient(transport=self.transport, timeout=self.timeout) as client:
            try:
                response = await client.request(method, url, headers=headers, params=params, json=json)
            except httpx.HTTPError as e:
                logger.error(f"Graph API request failed ({method} {path}): {e}")
                raise MetaAPIError(f"Failed to contact Meta servers: {e}") from e

        try:
            data = response.json()
        except ValueError:
            data = {}

        if response.status_code >= 400:
            error = MetaAPIError.from_response(response.status_code, data)
            logger.warning(
                f"Graph API error ({method} {path}) status={response.status_code} "
                f"code={error.code} subcode={error.subcode}: {error.message}"
            )
            raise error

        return data

    async def get_waba(self, waba_id: str) -> Dict[str, Any]:
        return await self._request("GET", waba_id, params={"fields": WABA_FIELDS})

    async def list_phone_numbers(self, waba_id: str) -> List[Dict[str, Any]]:
        data = await self._request("GET", f"{waba_id}/phone_numbers", params={"fields": PHONE_FIELDS})
        return data.get("data", [])

    async def get_phone_number(self, phone_number_id: str) -> Dict[str, Any]:
        return await self._request("GET", phone_number_id, params={"fields": PHONE_FIELDS})

    async def register_phone(self, phone_number_id: str, pin: Optional[str]) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"messaging_product": "whatsapp"}
        if pin:
            payload["pin"] = pin
        return await self._request("POST", f"{phone_number_id}/register", json=payload)

    async def subscribe_app(self, waba_id: str, fields: Optional[List[str]] = None) -> Dict[str, Any]:
        payload = {"subscribed_fields": fields or settings.meta_subscribed_fields}
        if settings.meta_app_id:
            payload["app_id"] = settings.meta_app_id
        return await self._request("POST", f"{waba_id}/subscribed_apps", json=payload)

    async def list_businesses(self) -> List[Dict[str, Any]]:
        data = await self._request("GET", "me/businesses")
        return data.get("data", [])

    async def list_owned_wabas(self, business_id: str) -> List[Dict[str, Any]]:
        data = await self._request(
            "GET",
            f"{business_id}/owned_whatsapp_business_accounts",
            params={"fields": "id,name,created_time"},
        )
        return data.get("data", [])
