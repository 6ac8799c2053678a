"""
MamaGuard Server — Application Factory
"""

import logging
import time

from fastapi import FastAPI

from mamaguard import settings

# ── 1. Configure logging ──
logging.basicConfig(level=logging.INFO)
logger = logging.getLogger("mamaguard-server")

_startup_time = time.time()
logger.info("Server initialization started...")

# ── 2. Create FastAPI app ──
app = FastAPI(title="MamaGuard Messaging Pipeline")

# ── 3. Register routers ──
from mamaguard.routers import health, webhook  # noqa: E402

app.include_router(health.router)
app.include_router(webhook.router)


# ── 4. Startup / shutdown ──
@app.on_event("startup")
async def startup_event():
    logger.info("=" * 60)
    logger.info("MamaGuard Server Starting")
    logger.info("Listening on port: %s", settings.PORT)

    # Blocking: the webhook answers 503 until the pipeline exists
    try:
        from mamaguard.gateway.setup import initialize_pipeline
        await initialize_pipeline()
        logger.info("Message pipeline initialized")
    except Exception as e:
        logger.error("Pipeline failed to start — webhook will answer 503: %s", e, exc_info=True)

    logger.info("Total init time: %.2fs", time.time() - _startup_time)
    logger.info("=" * 60)


@app.on_event("shutdown")
async def shutdown_event():
    from mamaguard.gateway.setup import shutdown_pipeline
    await shutdown_pipeline()
