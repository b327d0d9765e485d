"""Aggregate all v1 API routers."""

from fastapi import APIRouter
from app.api.v1.health import router as health_router
from app.api.v1.jobs import router as jobs_router
from app.api.v1.agent import router as agent_router
from app.api.v1.sessions import router as sessions_router
from app.api.v1.settings import router as settings_router
from app.api.v1.messages import router as messages_router

v1_router = APIRouter(prefix="/api/v1")
v1_router.include_router(health_router, tags=["health"])
v1_router.include_router(jobs_router, tags=["jobs"])
v1_router.include_router(agent_router, tags=["agent"])
v1_router.include_router(sessions_router, tags=["sessions"])
v1_router.include_router(settings_router, tags=["settings"])
v1_router.include_router(messages_router, tags=["messages"])
