import json
import logging
import uuid
from datetime import timedelta
from typing import Any, Dict, Optional, Tuple
from urllib.parse import urlencode, quote

from waba_connect.core.config import Settings, settings as default_settings
from waba_connect.core.errors import MetaAPIError
from waba_connect.schemas.waba import PopupSpec, SignupLaunch, SignupSession
from waba_connect.services.meta_graph import MetaGraphClient, pick_primary_phone
from waba_connect.services.signup_messages import BRIDGE_EVENT
from waba_connect.services.tenant_store import TenantStore, utcnow

logger = logging.getLogger(__name__)


def build_signup_url(session_id: str, config: Settings = default_settings) -> str:
    params = {
        "app_id": config.meta_app_id,
        "config_id": config.meta_config_id,
        "extras": json.dumps({"sessionInfoVersion": "3", "version": "v3"}),
        "state": session_id,
        "redirect_uri": config.embedded_signup_redirect_uri,
    }
    return f"{config.embedded_signup_base_url}?{urlencode(params)}"


class SignupSessionService:
    """
    Session initiator: records a short-lived signup session for the tenant and
    describes the popup the front end should open.
    """

    def __init__(self, store: TenantStore, config: Settings = default_settings):
        self.store = store
        self.config = config

    def start(self, tenant_id: str) -> SignupLaunch:
        self.store.get(tenant_id)
        now = utcnow()
        session = SignupSession(
            id=f"embedded_{uuid.uuid4().hex}",
            tenant_id=tenant_id,
            created_at=now,
            expires_at=now + timedelta(minutes=self.config.signup_session_ttl_minutes),
        )
        self.store.create_signup_session(session)

        url = build_signup_url(session.id, self.config)
        width, height = self.config.popup_width, self.config.popup_height
        logger.info(f"Signup session {session.id} started for tenant {tenant_id}")
        return SignupLaunch(
            session_id=session.id,
            url=url,
            popup=PopupSpec(
                width=width,
                height=height,
                features=f"width={width},height={height},resizable=yes,scrollbars=yes",
            ),
            fallback_url=url,
            poll_interval_seconds=self.config.popup_poll_interval_seconds,
            expires_at=session.expires_at,
        )


# --- Redirect callback ---

BRIDGE_PAGE = """<!DOCTYPE html>
<html>
<head><title>{title}</title></head>
<body>
<p>{text}</p>
<script>
  var message = {message};
  if (window.opener) {{
    window.opener.postMessage(message, {target_origin});
    setTimeout(function () {{ window.close(); }}, 1000);
  }} else {{
    window.location.href = {fallback_url};
  }}
</script>
</body>
</html>
"""


def _js(value: Any) -> str:
    return json.dumps(value).replace("</", "<\\/")


def render_bridge_page(message: Dict[str, Any], config: Settings = default_settings) -> str:
    """HTML page that hands the signup result back to the window that opened the popup."""
    succeeded = message.get("status") == "SUCCESS"
    if succeeded:
        fallback_url = f"{config.app_origin}/whatsapp/connect/success"
    else:
        fallback_url = f"{config.app_origin}/whatsapp/connect/error?reason={quote(message.get('error') or '')}"
    return BRIDGE_PAGE.format(
        title="Connection Successful" if succeeded else "Connection Failed",
        text="Finalizing setup, please wait..." if succeeded else "Something went wrong. You can close this window.",
        message=_js(message),
        target_origin=_js(config.app_origin),
        fallback_url=_js(fallback_url),
    )


class SignupCallbackService:
    """
    Handles Meta's redirect at the end of the embedded signup and turns the
    query string into a bridge message. Nothing is written to the tenant here.
    """

    def __init__(self, store: TenantStore, graph: Optional[MetaGraphClient] = None):
        self.store = store
        self.graph = graph or MetaGraphClient()

    async def _waba_from_business(self, business_id: str) -> Dict[str, Optional[str]]:
        try:
            wabas = await self.graph.list_owned_wabas(business_id)
            if not wabas:
                return {}
            latest = sorted(wabas, key=lambda w: w.get("created_time") or "", reverse=True)[0]
            phone = pick_primary_phone(await self.graph.list_phone_numbers(latest["id"]))
        except MetaAPIError as e:
            logger.warning(f"WABA lookup via business {business_id} failed: {e.message}")
            return {}
        return {
            "waba_id": latest["id"],
            "phone_number_id": phone.get("id") if phone else None,
            "phone_number": phone.get("display_phone_number") if phone else None,
        }

    async def resolve(self, params: Dict[str, str]) -> Tuple[int, Dict[str, Any]]:
        if params.get("error"):
            reason = params.get("error_reason") or params.get("error_description") or params["error"]
            logger.error(f"Meta embedded signup error: {params.get('error')} ({reason})")
            return 400, {"type": BRIDGE_EVENT, "status": "ERROR", "error": reason}

        waba_id = params.get("waba_id")
        phone_number_id = params.get("phone_number_id")
        phone_number = params.get("phone_number")
        business_id = params.get("business_id")

        if not waba_id and business_id:
            logger.warning("Missing waba_id, attempting lookup via business_id")
            resolved = await self._waba_from_business(business_id)
            waba_id = resolved.get("waba_id")
            phone_number_id = phone_number_id or resolved.get("phone_number_id")
            phone_number = phone_number or resolved.get("phone_number")

        if not waba_id:
            return 400, {"type": BRIDGE_EVENT, "status": "ERROR", "error": "Missing WABA ID"}

        state = params.get("state")
        session = self.store.get_signup_session(state) if state else None
        if session is None or session.expires_at < utcnow():
            logger.error(f"Signup callback with unknown or expired session {state!r}")
            return 400, {
                "type": BRIDGE_EVENT,
                "status": "ERROR",
                "error": "Session expired or invalid. Please try again.",
            }

        logger.info(f"Signup callback resolved WABA {waba_id} for tenant {session.tenant_id}")
        return 200, {
            "type": BRIDGE_EVENT,
            "status": "SUCCESS",
            "waba_id": waba_id,
            "phone_number_id": phone_number_id or "",
            "phone_number": phone_number or "",
        }
