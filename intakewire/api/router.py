"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from intakewire.api.webhooks import router as webhooks_router
from intakewire.api.followups import router as followups_router
from intakewire.api.experiments import router as experiments_router
from intakewire.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(webhooks_router)
api_router.include_router(followups_router)
api_router.include_router(experiments_router)
api_router.include_router(health_router)
