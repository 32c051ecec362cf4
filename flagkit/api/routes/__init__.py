"""
API routes aggregation.
"""

from fastapi import APIRouter

from .features import router as features_router
from .schedules import router as schedules_router

router = APIRouter()

router.include_router(features_router, prefix="/features", tags=["features"])
router.include_router(schedules_router, prefix="/schedules", tags=["schedules"])
