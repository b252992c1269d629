from fastapi import APIRouter

from storyflow.api.routes import admin, feeds, health, ingest, queue, stories

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(ingest.router, prefix="/ingest", tags=["ingestion"])
api_router.include_router(queue.router, prefix="/queue", tags=["worker"])
api_router.include_router(admin.router, prefix="/admin", tags=["admin"])
api_router.include_router(stories.router, prefix="/stories", tags=["stories"])
api_router.include_router(feeds.router, prefix="/feeds", tags=["public"])
