"""
API v1 router initialization and setup.
"""
from fastapi import APIRouter
from .endpoints import creators, queues, snapshots

api_router = APIRouter()

api_router.include_router(
    queues.router,
    prefix="/queues",
    tags=["queues"]
)

api_router.include_router(
    creators.router,
    prefix="/creators",
    tags=["creators"]
)

api_router.include_router(
    snapshots.router,
    prefix="/snapshots",
    tags=["snapshots"]
)
