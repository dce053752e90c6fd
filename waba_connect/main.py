from contextlib import asynccontextmanager

from fastapi import FastAPI
from waba_connect.api.deps import get_registry
from waba_connect.api.v1.api import api_router
from waba_connect.core.config import settings
from waba_connect.core.logging import setup_logging

setup_logging()


@asynccontextmanager
async def lifespan(app: FastAPI):
    yield
    # Pending status refreshes are dropped on shutdown
    if get_registry.cache_info().currsize:
        await get_registry().aclose()


app = FastAPI(
    title=settings.app_name,
    openapi_url=f"{settings.api_v1_str}/openapi.json",
    lifespan=lifespan,
)

app.include_router(api_router, prefix=settings.api_v1_str)


@app.get("/")
async def root():
    return {"message": "WhatsApp Business connection service is running"}
