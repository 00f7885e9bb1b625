from fastapi import APIRouter

from enrollment_bridge.interfaces.api.health import router as health_router
from enrollment_bridge.interfaces.api.medusa_webhooks import router as medusa_webhooks_router

api_router = APIRouter()
api_router.include_router(health_router, tags=["health"])
api_router.include_router(medusa_webhooks_router)
