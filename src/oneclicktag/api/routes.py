"""Main API routes for OneClickTag."""

from fastapi import APIRouter

from .oauth import router as oauth_router
from .provisioning import router as provisioning_router

# Main API router
router = APIRouter()

router.include_router(oauth_router, prefix="/oauth", tags=["oauth"])
router.include_router(provisioning_router, tags=["provisioning"])
