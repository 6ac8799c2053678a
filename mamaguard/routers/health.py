from fastapi import APIRouter

from mamaguard import settings

router = APIRouter()


@router.get("/")
async def root():
    return {
        "status": "MamaGuard is Running",
        "endpoints": {
            "webhook": "/api/webhook",
            "health": "/health",
        },
    }


@router.get("/health")
async def health_check():
    """Health check endpoint"""
    from mamaguard.gateway.setup import get_config, get_pipeline, get_queue_manager

    pipeline = get_pipeline()
    queue_manager = get_queue_manager()
    config = get_config()

    if pipeline is None:
        return {"status": "degraded", "pipeline": "not_initialized", "port": settings.PORT}

    return {
        "status": "healthy",
        "service": "mamaguard",
        "port": settings.PORT,
        "pipeline": "running" if queue_manager and queue_manager.running else "stopped",
        "queue": {
            "pending": queue_manager.pending if queue_manager else 0,
            "active_senders": queue_manager.active_count if queue_manager else 0,
        },
        "llm_provider": (config.llm_provider if config else None) or "offline",
        "metrics": pipeline.get_metrics(),
    }
