from typing import Any, Dict, List, Optional

import pytest

from waba_connect.core.config import SandboxAccountConfig, Settings
from waba_connect.core.errors import TenantNotFoundError
from waba_connect.schemas.waba import (
    DetectionResult,
    LinkRequest,
    LinkResponse,
    StatusResponse,
)
from waba_connect.services.connection import WabaConnectionFlow
from waba_connect.services.sandbox import SandboxSeeder
from waba_connect.services.signup_session import SignupSessionService
from waba_connect.services.tenant_store import TenantStore

TRUSTED_ORIGIN = "https://business.facebook.com"


class MemoryTenantStore(TenantStore):
    """Tenant documents kept in a dict; every write is recorded in `writes`."""

    def __init__(self, *documents: Dict[str, Any]):
        self.documents = {doc["id"]: dict(doc) for doc in documents}
        self.sessions: Dict[str, Dict[str, Any]] = {}
        self.writes: List[Dict[str, Any]] = []

    def _load(self, tenant_id):
        doc = self.documents.get(tenant_id)
        return dict(doc) if doc is not None else None

    def _find(self, column, value):
        for doc in self.documents.values():
            if doc.get(column) == value:
                return dict(doc)
        return None

    def _save(self, tenant_id, fields):
        if tenant_id not in self.documents:
            raise TenantNotFoundError(tenant_id)
        self.writes.append(dict(fields))
        self.documents[tenant_id].update(fields)
        return dict(self.documents[tenant_id])

    def _insert_session(self, row):
        self.sessions[row["id"]] = dict(row)

    def _load_session(self, session_id):
        return self.sessions.get(session_id)


class FakeProcedures:
    """
    Scripted link/status/detect procedures. Queued results are returned in
    order; exceptions in the queue are raised.
    """

    def __init__(self):
        self.link_calls: List[LinkRequest] = []
        self.link_results: List[Any] = []
        self.status_calls: List[str] = []
        self.status_result: Any = StatusResponse(success=False)
        self.detect_calls: List[str] = []
        self.detect_result: Any = DetectionResult(found=False)

    async def link(self, tenant_id: str, request: LinkRequest) -> LinkResponse:
        self.link_calls.append(request)
        if self.link_results:
            result = self.link_results.pop(0)
        else:
            result = LinkResponse(
                success=True,
                waba_id=request.waba_id,
                phone_number_id=request.phone_number_id,
                phone_number=request.phone_number,
            )
        if isinstance(result, Exception):
            raise result
        return result

    async def status(self, tenant_id: str) -> StatusResponse:
        self.status_calls.append(tenant_id)
        if isinstance(self.status_result, Exception):
            raise self.status_result
        return self.status_result

    async def detect(self, tenant_id: str) -> DetectionResult:
        self.detect_calls.append(tenant_id)
        if isinstance(self.detect_result, Exception):
            raise self.detect_result
        return self.detect_result


def make_settings(**overrides) -> Settings:
    values = dict(
        meta_app_id="app-1",
        meta_config_id="config-1",
        app_origin="https://app.example.com",
        status_refresh_delays=(),
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def valid_sandbox() -> SandboxAccountConfig:
    return SandboxAccountConfig(
        waba_id="SANDBOX_WABA",
        phone_number_id="1234567890123",
        phone_number="+1 555 0100",
        test_recipient="+15550199",
        temp_access_token="E" * 64,
    )


def make_flow(
    store: TenantStore,
    procedures: FakeProcedures,
    tenant_id: str = "t1",
    sandbox: Optional[SandboxAccountConfig] = None,
    **options,
) -> WabaConnectionFlow:
    config = make_settings()
    options.setdefault("refresh_delays", ())
    options.setdefault("poll_interval", 0)
    return WabaConnectionFlow(
        tenant_id,
        store,
        link_procedure=procedures.link,
        status_procedure=procedures.status,
        detect_procedure=procedures.detect,
        sessions=SignupSessionService(store, config),
        sandbox=SandboxSeeder(sandbox or valid_sandbox(), store),
        trusted_origins=(TRUSTED_ORIGIN,),
        **options,
    )


@pytest.fixture
def store():
    return MemoryTenantStore({"id": "t1", "user_id": "u1", "name": "Acme Clinic", "timezone": "Asia/Kolkata"})


@pytest.fixture
def procedures():
    return FakeProcedures()


@pytest.fixture
def flow(store, procedures):
    return make_flow(store, procedures)
