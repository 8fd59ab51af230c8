"""ThreatQuery backend application."""

import logging
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from threatquery.api.routes import queries
from threatquery.config import settings
from threatquery.db import dispose_db, init_db

logging.basicConfig(
    level=logging.DEBUG if settings.DEBUG else logging.INFO,
    format="%(asctime)s %(levelname)s %(name)s: %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI):
    await init_db()
    logger.info(f"{settings.APP_NAME} {settings.APP_VERSION} started")
    yield
    await dispose_db()


# Create FastAPI application
app = FastAPI(
    title="ThreatQuery API",
    description="Tenant-scoped advanced query and threat-hunting engine",
    version=settings.APP_VERSION,
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routes
app.include_router(queries.router)


@app.get("/", tags=["health"])
async def root():
    """API health check."""
    return {
        "service": "ThreatQuery API",
        "status": "running",
        "docs": "/docs",
    }
