import logging
from functools import lru_cache

from fastapi import Depends, HTTPException, status
from fastapi.security import HTTPBearer, HTTPAuthorizationCredentials

from waba_connect.core.config import Settings, settings
from waba_connect.core.errors import TenantNotFoundError
from waba_connect.core.supabase_client import get_supabase
from waba_connect.schemas.tenant import TenantAccount
from waba_connect.services.connection import ConnectionRegistry, WabaConnectionFlow
from waba_connect.services.meta_graph import MetaGraphClient
from waba_connect.services.sandbox import SandboxSeeder
from waba_connect.services.signup_session import SignupSessionService
from waba_connect.services.tenant_store import SupabaseTenantStore, TenantStore
from waba_connect.services.waba_detection import WabaDetectionService
from waba_connect.services.waba_link import WabaLinkService
from waba_connect.services.waba_status import WabaStatusService

logger = logging.getLogger(__name__)

security = HTTPBearer()


async def get_current_user(auth: HTTPAuthorizationCredentials = Depends(security)):
    """
    Verifies the Supabase JWT and returns the user object.
    """
    try:
        res = get_supabase().auth.get_user(auth.credentials)
    except Exception as e:
        logger.warning(f"Auth error: {e}")
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Authentication failed",
        )
    if not res or not res.user:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="Invalid or expired token",
        )
    return res.user


@lru_cache
def get_store() -> TenantStore:
    return SupabaseTenantStore(get_supabase())


@lru_cache
def get_graph() -> MetaGraphClient:
    return MetaGraphClient()


def get_current_tenant(
    current_user=Depends(get_current_user),
    store: TenantStore = Depends(get_store),
) -> TenantAccount:
    try:
        return store.get_by_user(str(current_user.id))
    except TenantNotFoundError:
        raise HTTPException(status_code=404, detail="Tenant profile not found.")


def build_registry(store: TenantStore, graph: MetaGraphClient, config: Settings = settings) -> ConnectionRegistry:
    """Wires the remote procedures, session service and sandbox seeder into one flow per tenant."""
    linker = WabaLinkService(store, graph)
    status_service = WabaStatusService(store, graph)
    detector = WabaDetectionService(store, graph)
    sessions = SignupSessionService(store, config)
    sandbox = SandboxSeeder(config.sandbox, store)

    def factory(tenant_id: str) -> WabaConnectionFlow:
        return WabaConnectionFlow(
            tenant_id,
            store,
            link_procedure=linker.link,
            status_procedure=status_service.fetch_status,
            detect_procedure=detector.detect,
            sessions=sessions,
            sandbox=sandbox,
            trusted_origins=config.trusted_message_origins,
            refresh_delays=config.status_refresh_delays,
            poll_interval=config.popup_poll_interval_seconds,
            reset_review_on_relink=config.reset_review_on_relink,
        )

    return ConnectionRegistry(factory)


@lru_cache
def get_registry() -> ConnectionRegistry:
    return build_registry(get_store(), get_graph())


async def get_flow(
    tenant: TenantAccount = Depends(get_current_tenant),
    registry: ConnectionRegistry = Depends(get_registry),
) -> WabaConnectionFlow:
    flow = registry.get(tenant.id)
    # Picks up writes made elsewhere (webhook, another worker) since the last request
    flow.receive_snapshot(tenant)
    return flow
