"""
API router - aggregates all route modules.
"""
from fastapi import APIRouter
from hookledger.api.webhooks import router as webhooks_router
from hookledger.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(webhooks_router)
api_router.include_router(health_router)
