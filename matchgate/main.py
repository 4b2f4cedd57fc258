from __future__ import annotations

import logging
from fastapi import FastAPI

from matchgate.core.config import settings
from matchgate.modules.api.router import get_gateway, router as api_router, shutdown_gateway

# Configure logging
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s"
)
logger = logging.getLogger(__name__)

app = FastAPI(title=settings.APP_NAME)

app.include_router(api_router, prefix="/api")


@app.on_event("startup")
async def startup():
    """Log configuration and build the gateway on startup."""
    logger.info(f"{settings.APP_NAME} starting")
    logger.info(f"MatchGate port: {settings.MATCHGATE_PORT}")
    logger.info(f"Anthropic model: {settings.ANTHROPIC_MODEL}")
    logger.info(f"Provider timeout: {settings.AI_PROVIDER_TIMEOUT_SECONDS}s")
    logger.info(f"Redis cache: {'enabled' if settings.REDIS_CACHE_URL else 'in-memory'}")
    get_gateway()


@app.on_event("shutdown")
async def shutdown():
    """Stop the provider worker pool and close HTTP sessions."""
    logger.info("Shutting down AI gateway...")
    shutdown_gateway()


@app.get("/healthz")
def healthz():
    """Health check endpoint."""
    return {
        "ok": True,
        "app": settings.APP_NAME,
        "env": settings.APP_ENV,
        "model": settings.ANTHROPIC_MODEL,
        "port": settings.MATCHGATE_PORT
    }


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("matchgate.main:app", host="0.0.0.0", port=settings.MATCHGATE_PORT)
