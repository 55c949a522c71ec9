#!/usr/bin/env python3
"""
Tariff Resolution Engine API - classification, duty/measure resolution, tax and batch review.
"""

import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from api.middleware.logging import LoggingMiddleware
from api.routers import batches, classification, health, sync, tariff, tax
from core.config import settings
from core.logging import configure_logging

configure_logging(settings)
logger = logging.getLogger(__name__)

app = FastAPI(
    title=settings.project_name,
    version=settings.version,
    description="Tariff and tax resolution for imported goods with batch review and confirmation",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.allowed_origins,
    allow_credentials=True,
    allow_methods=settings.allowed_methods,
    allow_headers=settings.allowed_headers,
)
app.add_middleware(LoggingMiddleware)

# Expose health checks both at root and versioned paths
app.include_router(health.router, prefix=settings.api_v1_prefix)
app.include_router(classification.router, prefix=settings.api_v1_prefix)
app.include_router(tariff.router, prefix=settings.api_v1_prefix)
app.include_router(tax.router, prefix=settings.api_v1_prefix)
app.include_router(batches.router, prefix=settings.api_v1_prefix)
app.include_router(sync.router, prefix=settings.api_v1_prefix)
logger.info(f"Routers included under {settings.api_v1_prefix}")


@app.get("/healthz")
async def root_health_check():
    """Root-level health endpoint for external monitors."""
    return await health.health_check()


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(app, host=settings.api_host, port=settings.api_port)
