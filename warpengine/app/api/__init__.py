############################################################
#
# warpengine - Serverless GPU Session Broker and Billing
#
# __init__.py: API endpoints package and router configuration
#
############################################################

"""API endpoints for WarpEngine."""

from fastapi import APIRouter

from warpengine.app.api.health import router as health_router
from warpengine.app.api.payments_api import router as payments_router
from warpengine.app.api.users_api import router as users_router
from warpengine.app.api.warps_api import router as warps_router
from warpengine.app.api.webhooks_api import router as webhooks_router

# Create main API router
api_router = APIRouter()

# Include all sub-routers
api_router.include_router(health_router)
api_router.include_router(warps_router)
api_router.include_router(users_router)
api_router.include_router(payments_router)
api_router.include_router(webhooks_router)

__all__ = ["api_router"]
