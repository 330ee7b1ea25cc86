from fastapi import APIRouter

from link_ingest.api.routes import health, ingestion

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(ingestion.router, prefix="/ingestion", tags=["ingestion"])
