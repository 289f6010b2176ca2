from fastapi import APIRouter

from app.api.routes.auth import router as auth_router
from app.api.routes.bots import router as bots_router
from app.api.routes.calendar import router as calendar_router
from app.api.routes.health import router as health_router
from app.api.routes.integrations import router as integrations_router
from app.api.routes.meetings import router as meetings_router
from app.api.routes.notifications import router as notifications_router
from app.api.routes.webhooks import router as webhooks_router

api_router = APIRouter()
v1_router = APIRouter(prefix="/v1")

api_router.include_router(health_router)

_FEATURE_ROUTERS = (
    auth_router,
    bots_router,
    calendar_router,
    integrations_router,
    meetings_router,
    notifications_router,
    webhooks_router,
)

# Unversioned routes used by the worker containers and the current frontend.
for feature_router in _FEATURE_ROUTERS:
    api_router.include_router(feature_router)

# Versioned routes for long-term API evolution.
for feature_router in _FEATURE_ROUTERS:
    v1_router.include_router(feature_router)
api_router.include_router(v1_router)
