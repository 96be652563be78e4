"""API v1: aggregates all routers under a single prefix."""

from fastapi import APIRouter

from wetools_auth.api.v1.routers import auth

router = APIRouter()
router.include_router(auth.router)
