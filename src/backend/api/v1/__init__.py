"""
API v1 router aggregating all endpoints.
"""

from fastapi import APIRouter

from api.v1.votes import router as votes_router

router = APIRouter()

router.include_router(votes_router, prefix="/polls", tags=["Votes"])
