from fastapi import APIRouter

from .endpoints import attempts, admin, health, realtime

api_router = APIRouter()

api_router.include_router(attempts.router, prefix="/exams", tags=["attempts"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
api_router.include_router(health.router, prefix="/health", tags=["health"])
api_router.include_router(realtime.router, tags=["realtime"])
