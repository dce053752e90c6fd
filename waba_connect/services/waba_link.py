import logging
from typing import Any, Dict, Optional

from waba_connect.core.errors import MetaAPIError, RemoteProcedureError
from waba_connect.schemas.waba import LinkRequest, LinkResponse
from waba_connect.services.meta_graph import MetaGraphClient, pick_primary_phone
from waba_connect.services.tenant_store import TenantStore

logger = logging.getLogger(__name__)


def _embedded_pin(embedded_data: Optional[Dict[str, Any]]) -> Optional[str]:
    if not embedded_data:
        return None
    nested = embedded_data.get("data") if isinstance(embedded_data.get("data"), dict) else {}
    return embedded_data.get("pin") or embedded_data.get("registration_pin") or nested.get("pin")


class WabaLinkService:
    """
    Linking procedure: checks the account on Meta's side, registers the phone
    number (with the two-step verification PIN when one is known) and subscribes
    the app to the account's webhook fields.

    Persisting the result on the tenant document is left to the caller.
    """

    def __init__(self, store: TenantStore, graph: Optional[MetaGraphClient] = None):
        self.store = store
        self.graph = graph or MetaGraphClient()

    async def link(self, tenant_id: str, request: LinkRequest) -> LinkResponse:
        self.store.get(tenant_id)
        waba_id = request.waba_id

        try:
            await self.graph.get_waba(waba_id)
        except MetaAPIError as e:
            raise RemoteProcedureError(f"WABA {waba_id} not accessible: {e.message}") from e

        phone_number_id = request.phone_number_id
        phone_number = request.phone_number
        if not phone_number_id or not phone_number:
            try:
                primary = pick_primary_phone(await self.graph.list_phone_numbers(waba_id))
            except MetaAPIError as e:
                logger.warning(f"Could not list phone numbers for WABA {waba_id}: {e.message}")
                primary = None
            if primary:
                phone_number_id = phone_number_id or primary.get("id")
                phone_number = phone_number or primary.get("display_phone_number")

        registration_success = False
        if phone_number_id:
            pin = request.pin or _embedded_pin(request.embedded_data)
            try:
                await self.graph.register_phone(phone_number_id, pin)
                registration_success = True
                logger.info(f"Phone {phone_number_id} registered for tenant {tenant_id}")
            except MetaAPIError as e:
                if e.is_pin_error:
                    logger.info(f"Phone {phone_number_id} needs a two-step verification PIN (supplied={bool(pin)})")
                    return LinkResponse(
                        success=False,
                        waba_id=waba_id,
                        phone_number_id=phone_number_id,
                        phone_number=phone_number,
                        require_pin=True,
                        pin_incorrect=bool(pin),
                        message="Two-step verification PIN required",
                    )
                if e.is_already_done:
                    registration_success = True
                else:
                    logger.warning(f"Phone registration failed for {phone_number_id} (code={e.code}): {e.message}")
        else:
            logger.warning(f"No phone number available on WABA {waba_id}, skipping registration")

        try:
            await self.graph.subscribe_app(waba_id)
        except MetaAPIError as e:
            if not e.is_already_done:
                logger.warning(f"App subscription to WABA {waba_id} failed: {e.message}")

        return LinkResponse(
            success=True,
            waba_id=waba_id,
            phone_number_id=phone_number_id,
            phone_number=phone_number,
            registration_success=registration_success,
            message="WABA linked",
        )
