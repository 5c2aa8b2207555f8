from fastapi import APIRouter

from brandtrust.api.routes import brands, events, health, jobs

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(jobs.router, prefix="/jobs", tags=["processor"])
api_router.include_router(events.router, prefix="/events", tags=["connector"])
api_router.include_router(brands.router, prefix="/brands", tags=["public"])
