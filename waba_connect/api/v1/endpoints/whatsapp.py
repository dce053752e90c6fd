import logging

from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import HTMLResponse

from waba_connect.api.deps import get_flow, get_graph, get_store
from waba_connect.core.config import settings
from waba_connect.core.errors import (
    ConfigurationError,
    ConnectionStateError,
    IncorrectPinError,
    ManualEntryError,
    MetaAPIError,
    PinFormatError,
    RemoteProcedureError,
    TenantNotFoundError,
    WabaConnectError,
)
from waba_connect.schemas.waba import (
    ConnectionStateResponse,
    ManualEntry,
    PinSubmission,
    SignupLaunch,
    SignupMessageIn,
)
from waba_connect.services.connection import WabaConnectionFlow
from waba_connect.services.meta_graph import MetaGraphClient
from waba_connect.services.signup_session import SignupCallbackService, render_bridge_page
from waba_connect.services.tenant_store import TenantStore

logger = logging.getLogger(__name__)

router = APIRouter()

ERROR_STATUS = {
    TenantNotFoundError: 404,
    ConnectionStateError: 409,
    PinFormatError: 422,
    IncorrectPinError: 422,
    ManualEntryError: 422,
    ConfigurationError: 400,
    RemoteProcedureError: 502,
    MetaAPIError: 502,
}


def http_error(e: WabaConnectError) -> HTTPException:
    status_code = next((code for cls, code in ERROR_STATUS.items() if isinstance(e, cls)), 500)
    if status_code >= 500:
        logger.error(f"WhatsApp connection error: {e}")
    return HTTPException(status_code=status_code, detail=str(e))


@router.post("/signup", response_model=SignupLaunch)
async def start_signup(flow: WabaConnectionFlow = Depends(get_flow)):
    """
    Starts an embedded signup session. Open `url` in a popup sized per `popup`;
    if the popup is blocked, navigate to `fallbackUrl` instead.
    """
    try:
        return flow.start_signup()
    except WabaConnectError as e:
        raise http_error(e)


@router.post("/signup/popup-closed", response_model=ConnectionStateResponse)
async def popup_closed(flow: WabaConnectionFlow = Depends(get_flow)):
    try:
        await flow.on_popup_closed()
    except WabaConnectError as e:
        raise http_error(e)
    return flow.snapshot()


@router.get("/signup/callback", response_class=HTMLResponse)
async def signup_callback(
    request: Request,
    store: TenantStore = Depends(get_store),
    graph: MetaGraphClient = Depends(get_graph),
):
    """
    Redirect target of the embedded signup. Answers a page that hands the result
    back to the opener window.
    """
    status_code, message = await SignupCallbackService(store, graph).resolve(dict(request.query_params))
    return HTMLResponse(render_bridge_page(message, settings), status_code=status_code)


@router.post("/messages", response_model=ConnectionStateResponse)
async def receive_message(message_in: SignupMessageIn, flow: WabaConnectionFlow = Depends(get_flow)):
    """
    Forwards a window message received by the front end. Unrecognized or
    untrusted messages are ignored and leave the state unchanged.
    """
    try:
        await flow.handle_message(message_in.origin, message_in.data)
    except WabaConnectError as e:
        raise http_error(e)
    return flow.snapshot()


@router.post("/pin", response_model=ConnectionStateResponse)
async def submit_pin(submission: PinSubmission, flow: WabaConnectionFlow = Depends(get_flow)):
    try:
        await flow.submit_pin(submission.pin)
    except WabaConnectError as e:
        raise http_error(e)
    return flow.snapshot()


@router.delete("/pin", response_model=ConnectionStateResponse)
async def cancel_pin(flow: WabaConnectionFlow = Depends(get_flow)):
    flow.cancel_pin()
    return flow.snapshot()


@router.post("/status/refresh", response_model=ConnectionStateResponse)
async def refresh_status(flow: WabaConnectionFlow = Depends(get_flow)):
    try:
        await flow.refresh_status()
    except WabaConnectError as e:
        raise http_error(e)
    return flow.snapshot()


@router.post("/manual", response_model=ConnectionStateResponse)
async def link_manual(entry: ManualEntry, flow: WabaConnectionFlow = Depends(get_flow)):
    try:
        await flow.link_manual(entry.waba_id, entry.phone_number_id, entry.phone_number)
    except WabaConnectError as e:
        raise http_error(e)
    return flow.snapshot()


@router.post("/test-mode", response_model=ConnectionStateResponse)
async def activate_test_mode(flow: WabaConnectionFlow = Depends(get_flow)):
    try:
        flow.activate_test_mode()
    except WabaConnectError as e:
        raise http_error(e)
    return flow.snapshot()


@router.delete("", response_model=ConnectionStateResponse)
async def disconnect(flow: WabaConnectionFlow = Depends(get_flow)):
    try:
        flow.disconnect()
    except WabaConnectError as e:
        raise http_error(e)
    return flow.snapshot()


@router.get("/connection", response_model=ConnectionStateResponse)
async def get_connection(flow: WabaConnectionFlow = Depends(get_flow)):
    return flow.snapshot()
