import hashlib
import hmac
import json
import logging
from datetime import datetime
from typing import Any, Dict, Optional

import pytz
from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from fastapi.responses import PlainTextResponse

from waba_connect.api.deps import get_store
from waba_connect.core.config import settings
from waba_connect.core.errors import WabaConnectError
from waba_connect.services.tenant_store import TenantStore, utcnow
from waba_connect.services.waba_status import normalize_review_status

logger = logging.getLogger(__name__)

router = APIRouter()

REVIEW_FIELDS = ("account_review_update", "account_update")


def verify_signature(body: bytes, signature: Optional[str], app_secret: str) -> bool:
    if not signature or not signature.startswith("sha256="):
        return False
    expected = hmac.new(app_secret.encode(), body, hashlib.sha256).hexdigest()
    return hmac.compare_digest(expected, signature[len("sha256="):])


def review_update(change: Dict[str, Any]) -> Optional[Dict[str, Any]]:
    """Tenant fields carried by a review-related change, if any."""
    if change.get("field") not in REVIEW_FIELDS:
        return None
    value = change.get("value") or {}
    review = normalize_review_status(value.get("decision") or value.get("account_review_status"))
    if review is None:
        return None
    return {"whatsapp_account_review_status": review}


def entry_time(entry: Dict[str, Any]) -> datetime:
    try:
        return datetime.fromtimestamp(int(entry["time"]), pytz.utc)
    except (KeyError, TypeError, ValueError):
        return utcnow()


@router.get("/")
async def verify_webhook(
    hub_mode: Optional[str] = Query(None, alias="hub.mode"),
    hub_verify_token: Optional[str] = Query(None, alias="hub.verify_token"),
    hub_challenge: Optional[str] = Query(None, alias="hub.challenge"),
):
    """
    Handles the webhook verification from Meta.
    """
    if hub_mode == "subscribe" and hub_verify_token == settings.meta_verify_token:
        logger.info("Webhook verification succeeded")
        return PlainTextResponse(hub_challenge or "")

    logger.warning("Webhook verification failed")
    raise HTTPException(status_code=403, detail="Verification failed")


@router.post("/")
async def handle_webhook(
    request: Request,
    x_hub_signature_256: Optional[str] = Header(None),
    store: TenantStore = Depends(get_store),
):
    """
    Mirrors account review decisions into the tenant that owns the WABA.
    """
    body = await request.body()
    if settings.meta_app_secret and not verify_signature(body, x_hub_signature_256, settings.meta_app_secret):
        logger.warning("Webhook rejected: bad signature")
        raise HTTPException(status_code=403, detail="Invalid signature")

    try:
        payload = json.loads(body)
    except ValueError:
        payload = None
    if not isinstance(payload, dict):
        return {"status": "error", "message": "Invalid JSON"}

    applied = 0
    for entry in payload.get("entry", []):
        waba_id = entry.get("id")
        if not waba_id:
            continue
        for change in entry.get("changes", []):
            fields = review_update(change)
            if not fields:
                continue

            tenant = store.find_by_waba_id(str(waba_id))
            if tenant is None:
                logger.info(f"No tenant linked to WABA {waba_id}, ignoring {change.get('field')}")
                continue

            try:
                if store.apply_remote_update(tenant.id, fields, entry_time(entry)):
                    applied += 1
            except WabaConnectError as e:
                logger.error(f"Error applying {change.get('field')} for WABA {waba_id}: {e}")

    return {"status": "success", "applied": applied}
