from datetime import timedelta

import httpx
import pytest

from conftest import MemoryTenantStore
from waba_connect.core.errors import MetaAPIError, RemoteProcedureError
from waba_connect.schemas.tenant import AccountReviewStatus, PhoneVerificationStatus
from waba_connect.schemas.waba import LinkRequest, SignupSession
from waba_connect.services.meta_graph import MetaGraphClient, pick_primary_phone
from waba_connect.services.signup_session import SignupCallbackService
from waba_connect.services.tenant_store import utcnow
from waba_connect.services.waba_detection import WabaDetectionService
from waba_connect.services.waba_link import WabaLinkService
from waba_connect.services.waba_status import (
    WabaStatusService,
    normalize_phone_status,
    normalize_review_status,
)

BASE_URL = "https://graph.test/v24.0"

PIN_ERROR = {
    "error": {
        "message": "(#133005) Two step verification PIN Mismatch",
        "code": 100,
        "error_subcode": 136025,
    }
}


class GraphStub:
    """Routes Graph API calls to canned answers keyed by (method, path)."""

    def __init__(self, routes):
        self.routes = routes
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path[len("/v24.0/"):]
        status_code, body = self.routes.get((request.method, path), (404, {"error": {"message": "Unknown path"}}))
        return httpx.Response(status_code, json=body)

    def client(self) -> MetaGraphClient:
        return MetaGraphClient(access_token="system-token", base_url=BASE_URL, transport=httpx.MockTransport(self))

    def called(self, method, path):
        return any(r.method == method and r.url.path.endswith(path) for r in self.requests)


@pytest.fixture
def tenants():
    return MemoryTenantStore({"id": "t1", "user_id": "u1"})


def base_routes(overrides=None):
    routes = {
        ("GET", "WABA123"): (200, {"id": "WABA123", "name": "Acme", "account_review_status": "IN_REVIEW"}),
        ("GET", "WABA123/phone_numbers"): (200, {"data": [
            {"id": "PN0", "display_phone_number": "+910000000001", "code_verification_status": "NOT_VERIFIED"},
            {"id": "PN1", "display_phone_number": "+910000000000", "code_verification_status": "VERIFIED"},
        ]}),
        ("POST", "PN1/register"): (200, {"success": True}),
        ("POST", "WABA123/subscribed_apps"): (200, {"success": True}),
    }
    routes.update(overrides or {})
    return routes


async def test_link_fills_phone_and_registers(tenants):
    graph = GraphStub(base_routes())

    result = await WabaLinkService(tenants, graph.client()).link("t1", LinkRequest(waba_id="WABA123"))

    assert result.success is True
    assert result.phone_number_id == "PN1"
    assert result.phone_number == "+910000000000"
    assert result.registration_success is True
    assert graph.called("POST", "WABA123/subscribed_apps")
    assert tenants.writes == []


async def test_link_reports_pin_required(tenants):
    graph = GraphStub(base_routes({("POST", "PN1/register"): (400, PIN_ERROR)}))
    service = WabaLinkService(tenants, graph.client())

    result = await service.link("t1", LinkRequest(waba_id="WABA123", phone_number_id="PN1", phone_number="+91"))
    assert result.require_pin is True
    assert result.pin_incorrect is False

    result = await service.link("t1", LinkRequest(waba_id="WABA123", phone_number_id="PN1", phone_number="+91", pin="111111"))
    assert result.require_pin is True
    assert result.pin_incorrect is True
    assert not graph.called("POST", "WABA123/subscribed_apps")


async def test_link_sends_pin_from_embedded_data(tenants):
    graph = GraphStub(base_routes())
    request = LinkRequest(waba_id="WABA123", phone_number_id="PN1", phone_number="+91", embedded_data={"pin": "654321"})

    await WabaLinkService(tenants, graph.client()).link("t1", request)

    register = next(r for r in graph.requests if r.url.path.endswith("PN1/register"))
    assert b'"pin":"654321"' in register.content.replace(b" ", b"")


async def test_link_already_registered_counts_as_success(tenants):
    already = (400, {"error": {"message": "Phone number is already registered", "code": 100}})
    graph = GraphStub(base_routes({("POST", "PN1/register"): already}))

    result = await WabaLinkService(tenants, graph.client()).link("t1", LinkRequest(waba_id="WABA123", phone_number_id="PN1"))

    assert result.success is True
    assert result.registration_success is True


async def test_link_inaccessible_waba_raises(tenants):
    graph = GraphStub(base_routes({("GET", "WABA123"): (500, {"error": {"message": "Service unavailable"}})}))

    with pytest.raises(RemoteProcedureError):
        await WabaLinkService(tenants, graph.client()).link("t1", LinkRequest(waba_id="WABA123"))


async def test_link_subscription_failure_is_not_fatal(tenants):
    graph = GraphStub(base_routes({("POST", "WABA123/subscribed_apps"): (403, {"error": {"message": "Forbidden"}})}))

    result = await WabaLinkService(tenants, graph.client()).link("t1", LinkRequest(waba_id="WABA123"))

    assert result.success is True


async def test_status_normalizes_meta_vocabulary():
    tenants = MemoryTenantStore({
        "id": "t1",
        "whatsapp_business_account_id": "WABA123",
        "whatsapp_phone_number_id": "PN1",
    })
    graph = GraphStub(base_routes({
        ("GET", "PN1"): (200, {"id": "PN1", "display_phone_number": "+910000000000", "code_verification_status": "VERIFIED"}),
    }))

    response = await WabaStatusService(tenants, graph.client()).fetch_status("t1")

    assert response.success is True
    status = response.status
    assert status.account_review.status == AccountReviewStatus.PENDING
    assert status.phone.verification_status == PhoneVerificationStatus.VALID
    assert status.phone.registered is True
    assert status.overall.ready is False
    assert status.overall.pending_actions == ["Wait for account review"]
    assert tenants.writes == []


async def test_status_without_waba(tenants):
    graph = GraphStub({})

    response = await WabaStatusService(tenants, graph.client()).fetch_status("t1")

    assert response.success is False
    assert response.has_waba is False
    assert graph.requests == []


@pytest.mark.parametrize("raw, expected", [
    ("APPROVED", AccountReviewStatus.APPROVED),
    ("in_review", AccountReviewStatus.PENDING),
    ("REJECTED", AccountReviewStatus.REJECTED),
    ("SOMETHING_NEW", None),
    (None, None),
])
def test_normalize_review_status(raw, expected):
    assert normalize_review_status(raw) == expected


@pytest.mark.parametrize("phone, expected", [
    ({"status": "CONNECTED", "code_verification_status": "VERIFIED"}, PhoneVerificationStatus.CONNECTED),
    ({"code_verification_status": "VERIFIED"}, PhoneVerificationStatus.VALID),
    ({"code_verification_status": "EXPIRED"}, PhoneVerificationStatus.PENDING),
    ({"code_verification_status": "MYSTERY"}, None),
    (None, None),
])
def test_normalize_phone_status(phone, expected):
    assert normalize_phone_status(phone) == expected


def test_pick_primary_phone():
    phones = [{"id": "A"}, {"id": "B", "status": "CONNECTED"}]
    assert pick_primary_phone(phones)["id"] == "B"
    assert pick_primary_phone([{"id": "A"}])["id"] == "A"
    assert pick_primary_phone([]) is None


def test_meta_error_pin_detection():
    assert MetaAPIError.from_response(400, PIN_ERROR).is_pin_error
    assert MetaAPIError("x", code=100, subcode=None).is_pin_error is False
    assert MetaAPIError("PIN is required", code=100).is_pin_error
    assert MetaAPIError("Phone number already registered").is_already_done


async def test_graph_client_without_token():
    client = MetaGraphClient(access_token="", base_url=BASE_URL)
    client.access_token = None

    with pytest.raises(MetaAPIError):
        await client.get_waba("WABA123")


async def test_detection_prefers_unlinked_newest_waba():
    tenants = MemoryTenantStore(
        {"id": "t1", "whatsapp_business_account_id": "WABA_CURRENT"},
        {"id": "t2", "whatsapp_business_account_id": "WABA_OTHER"},
    )
    graph = GraphStub({
        ("GET", "me/businesses"): (200, {"data": [{"id": "BIZ1"}]}),
        ("GET", "BIZ1/owned_whatsapp_business_accounts"): (200, {"data": [
            {"id": "WABA_OLD", "created_time": "2024-01-01T00:00:00+0000"},
            {"id": "WABA_OTHER", "created_time": "2024-06-01T00:00:00+0000"},
            {"id": "WABA_NEW", "created_time": "2024-03-01T00:00:00+0000"},
        ]}),
        ("GET", "WABA_NEW/phone_numbers"): (200, {"data": [{"id": "PN9", "display_phone_number": "+910000000009"}]}),
    })

    result = await WabaDetectionService(tenants, graph.client()).detect("t1")

    assert result.found is True
    assert result.waba_id == "WABA_NEW"
    assert result.phone_number_id == "PN9"
    assert result.match_reason == "new_waba_detected"


async def test_detection_falls_back_to_current_waba():
    tenants = MemoryTenantStore({"id": "t1", "whatsapp_business_account_id": "WABA_CURRENT"})
    graph = GraphStub({
        ("GET", "me/businesses"): (200, {"data": [{"id": "BIZ1"}]}),
        ("GET", "BIZ1/owned_whatsapp_business_accounts"): (200, {"data": [{"id": "WABA_CURRENT"}]}),
        ("GET", "WABA_CURRENT/phone_numbers"): (200, {"data": []}),
    })

    result = await WabaDetectionService(tenants, graph.client()).detect("t1")

    assert result.waba_id == "WABA_CURRENT"
    assert result.match_reason == "existing_waba_refresh"


async def test_detection_business_failure_raises(tenants):
    graph = GraphStub({("GET", "me/businesses"): (500, {"error": {"message": "down"}})})

    with pytest.raises(RemoteProcedureError):
        await WabaDetectionService(tenants, graph.client()).detect("t1")


def make_session(tenants, session_id="embedded_abc", minutes=10):
    now = utcnow()
    tenants.create_signup_session(SignupSession(
        id=session_id, tenant_id="t1", created_at=now, expires_at=now + timedelta(minutes=minutes),
    ))


async def test_callback_resolves_session(tenants):
    make_session(tenants)
    service = SignupCallbackService(tenants, GraphStub({}).client())

    status_code, message = await service.resolve({"state": "embedded_abc", "waba_id": "WABA123", "phone_number_id": "PN1"})

    assert status_code == 200
    assert message["status"] == "SUCCESS"
    assert message["waba_id"] == "WABA123"
    assert "access_token" not in message
    assert tenants.writes == []


async def test_callback_looks_up_waba_from_business(tenants):
    make_session(tenants)
    graph = GraphStub({
        ("GET", "BIZ1/owned_whatsapp_business_accounts"): (200, {"data": [{"id": "WABA123", "created_time": "2024-01-01"}]}),
        ("GET", "WABA123/phone_numbers"): (200, {"data": [{"id": "PN1", "display_phone_number": "+910000000000"}]}),
    })

    status_code, message = await SignupCallbackService(tenants, graph.client()).resolve(
        {"state": "embedded_abc", "business_id": "BIZ1"}
    )

    assert status_code == 200
    assert (message["waba_id"], message["phone_number_id"]) == ("WABA123", "PN1")


async def test_callback_rejects_expired_session(tenants):
    make_session(tenants, minutes=-1)
    service = SignupCallbackService(tenants, GraphStub({}).client())

    status_code, message = await service.resolve({"state": "embedded_abc", "waba_id": "WABA123"})

    assert status_code == 400
    assert message["status"] == "ERROR"


async def test_callback_reports_meta_error(tenants):
    service = SignupCallbackService(tenants, GraphStub({}).client())

    status_code, message = await service.resolve({"error": "access_denied", "error_reason": "user_denied"})

    assert status_code == 400
    assert message["error"] == "user_denied"


def test_meta_error_from_unusual_payloads():
    assert MetaAPIError.from_response(400, {"error": "invalid_request"}).message == "invalid_request"
    assert MetaAPIError.from_response(502, {"error": None}).message == "Meta API returned 502"
    assert MetaAPIError.from_response(500, {}).code is None
