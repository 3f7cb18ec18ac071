from fastapi import APIRouter
from app.api.v1 import auth, crm, instances, webhooks, metrics

api_router = APIRouter()

# Include all endpoint routers
api_router.include_router(auth.router, prefix="/auth", tags=["auth"])
api_router.include_router(crm.router, prefix="/crm", tags=["crm"])
api_router.include_router(instances.router, prefix="/instances", tags=["instances"])
api_router.include_router(webhooks.router, prefix="/webhooks", tags=["webhooks"])
api_router.include_router(metrics.router, tags=["monitoring"])
