from fastapi import APIRouter

from meeting_pipeline.api.routes.cron import router as cron_router
from meeting_pipeline.api.routes.health import router as health_router
from meeting_pipeline.api.routes.indexing import router as indexing_router
from meeting_pipeline.api.routes.sync import router as sync_router
from meeting_pipeline.api.routes.webhooks import router as webhooks_router

api_router = APIRouter()
v1_router = APIRouter(prefix="/v1")

api_router.include_router(health_router)

# Unversioned routes used by the provider webhook and the platform scheduler.
api_router.include_router(sync_router)
api_router.include_router(webhooks_router)
api_router.include_router(cron_router)
api_router.include_router(indexing_router)

# Versioned routes for long-term API evolution.
v1_router.include_router(sync_router)
v1_router.include_router(webhooks_router)
v1_router.include_router(cron_router)
v1_router.include_router(indexing_router)
api_router.include_router(v1_router)
