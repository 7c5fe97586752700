from fastapi import APIRouter

from audit_queue.api.routes import admin, health, queue

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(queue.router, tags=["queue"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
