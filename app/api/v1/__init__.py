"""
API v1 router initialization and setup.
"""
from fastapi import APIRouter
from .endpoints import extension, webhooks, scheduler, reconciliation, analytics

api_router = APIRouter()

api_router.include_router(
    extension.router,
    prefix="/extension",
    tags=["extension"]
)

api_router.include_router(
    webhooks.router,
    prefix="/webhooks",
    tags=["webhooks"]
)

api_router.include_router(
    scheduler.router,
    prefix="/scheduler",
    tags=["scheduler"]
)

api_router.include_router(
    reconciliation.router,
    prefix="/reconciliation",
    tags=["reconciliation"]
)

api_router.include_router(
    analytics.router,
    prefix="/analytics",
    tags=["analytics"]
)
