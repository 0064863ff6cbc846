"""
Health check endpoint
"""
from datetime import datetime

from fastapi import APIRouter

from sync_orchestrator import __version__
from sync_orchestrator.config import get_settings

settings = get_settings()

router = APIRouter()


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    return {
        "status": "healthy",
        "app_name": settings.app_name,
        "environment": settings.environment,
        "timestamp": datetime.utcnow().isoformat(),
        "version": __version__,
    }
