from fastapi import APIRouter

from dojoflow.api.v1.endpoints import auth, credits, notifications

api_v1_router = APIRouter()

api_v1_router.include_router(auth.router, prefix="/auth", tags=["auth"])
api_v1_router.include_router(credits.router, prefix="/credits", tags=["credits"])
api_v1_router.include_router(credits.admin_router, prefix="/admin/credits", tags=["admin"])
api_v1_router.include_router(notifications.router, prefix="/notifications", tags=["notifications"])
