"""
API v1 router initialization and setup.
"""
from fastapi import APIRouter
from .endpoints import campaigns, dispatch

api_router = APIRouter()

api_router.include_router(
    campaigns.router,
    prefix="/campaigns",
    tags=["campaigns"]
)

api_router.include_router(
    dispatch.router,
    prefix="/dispatch",
    tags=["dispatch"]
)
