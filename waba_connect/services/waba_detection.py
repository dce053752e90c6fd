import logging
from typing import Any, Dict, List, Optional

from waba_connect.core.errors import MetaAPIError, RemoteProcedureError
from waba_connect.schemas.waba import DetectionResult
from waba_connect.services.meta_graph import MetaGraphClient
from waba_connect.services.tenant_store import TenantStore

logger = logging.getLogger(__name__)


class WabaDetectionService:
    """
    Fallback for when the signup popup closes without reporting anything:
    looks through the businesses visible to the system user for an account
    that is not yet linked to any other tenant.
    """

    def __init__(self, store: TenantStore, graph: Optional[MetaGraphClient] = None):
        self.store = store
        self.graph = graph or MetaGraphClient()

    async def _owned_wabas(self) -> List[Dict[str, Any]]:
        try:
            businesses = await self.graph.list_businesses()
        except MetaAPIError as e:
            raise RemoteProcedureError(f"Failed to fetch businesses: {e.message}") from e

        wabas = []
        for business in businesses:
            try:
                wabas.extend(await self.graph.list_owned_wabas(business["id"]))
            except MetaAPIError as e:
                logger.warning(f"Could not list WABAs for business {business.get('id')}: {e.message}")
        # Newest first; ISO timestamps sort lexically
        wabas.sort(key=lambda w: w.get("created_time") or "", reverse=True)
        return wabas

    def _linked_elsewhere(self, waba_id: str, tenant_id: str) -> bool:
        owner = self.store.find_by_waba_id(waba_id)
        return owner is not None and owner.id != tenant_id

    async def detect(self, tenant_id: str) -> DetectionResult:
        account = self.store.get(tenant_id)
        current = account.whatsapp_business_account_id
        wabas = await self._owned_wabas()

        target, reason = None, None
        for waba in wabas:
            if waba.get("id") != current and not self._linked_elsewhere(waba["id"], tenant_id):
                target, reason = waba, "new_waba_detected"
                break
        if target is None and current:
            target = next((w for w in wabas if w.get("id") == current), None)
            reason = "existing_waba_refresh" if target else None

        if target is None:
            logger.info(f"No WABA detected for tenant {tenant_id}")
            return DetectionResult(found=False)

        phone = None
        try:
            phones = await self.graph.list_phone_numbers(target["id"])
            phone = phones[0] if phones else None
        except MetaAPIError as e:
            logger.warning(f"Error fetching phone numbers for WABA {target['id']}: {e.message}")

        logger.info(f"Detected WABA {target['id']} for tenant {tenant_id} ({reason})")
        return DetectionResult(
            found=True,
            waba_id=target["id"],
            phone_number_id=phone.get("id") if phone else None,
            phone_number=phone.get("display_phone_number") if phone else None,
            match_reason=reason,
        )
