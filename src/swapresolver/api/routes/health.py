"""Health check endpoints."""

from fastapi import APIRouter, Request

from swapresolver import __version__

router = APIRouter()


@router.get("/health")
async def health_check():
    """Basic health check endpoint."""
    return {"status": "healthy", "service": "swapresolver"}


@router.get("/health/detailed")
async def detailed_health(request: Request):
    """Detailed health check with configuration and flow info."""
    settings = request.app.state.settings
    orchestrator = getattr(request.app.state, "orchestrator", None)
    return {
        "status": "healthy",
        "service": "swapresolver",
        "version": __version__,
        "config": settings.get_safe_dict(),
        "pending_recoveries": orchestrator.recovery.pending if orchestrator else [],
    }
