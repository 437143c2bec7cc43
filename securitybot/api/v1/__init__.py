"""API v1 routes."""

from fastapi import APIRouter

from securitybot.api.v1 import events, false_positives, health

router = APIRouter()
router.include_router(health.router, prefix="/health", tags=["health"])
router.include_router(false_positives.router, prefix="/false-positives", tags=["false-positives"])
router.include_router(events.router, prefix="/events", tags=["events"])
