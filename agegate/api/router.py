from fastapi import APIRouter

from agegate.api.routes import jobs, sessions, webhooks

api_router = APIRouter()
api_router.include_router(sessions.router)
api_router.include_router(webhooks.router)
api_router.include_router(jobs.router)
