from fastapi import APIRouter, Depends

from waba_connect.api.deps import get_current_tenant
from waba_connect.schemas.tenant import TenantAccount

router = APIRouter()


@router.get("/me", response_model=TenantAccount)
async def get_my_tenant(tenant: TenantAccount = Depends(get_current_tenant)):
    """
    Get the tenant profile for the authenticated user.
    """
    return tenant
