from fastapi import APIRouter
from waba_connect.api.v1.endpoints import webhook, tenants, whatsapp

api_router = APIRouter()
api_router.include_router(webhook.router, prefix="/webhook", tags=["webhook"])
api_router.include_router(tenants.router, prefix="/tenants", tags=["tenants"])
api_router.include_router(whatsapp.router, prefix="/whatsapp", tags=["whatsapp"])
