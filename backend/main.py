"""
KmTrack Backend - FastAPI Application
Tesla mileage sync & reconciliation service
"""

import asyncio
import logging
import os
from contextlib import asynccontextmanager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from database.connection import init_db, close_db, async_session
from routers import settings, sync, tesla, vehicles
from services.auto_sync import start_auto_sync_scheduler
from services.event import record_audit_event

logging.basicConfig(
    level=os.environ.get("KMTRACK_LOG_LEVEL", "INFO").upper(),
    format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
)

CORS_ORIGINS = [
    origin.strip()
    for origin in os.environ.get(
        "KMTRACK_CORS_ORIGINS", "https://kmtrack.nl,http://localhost:3000,http://localhost:5173"
    ).split(",")
    if origin.strip()
]


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Application lifespan: startup and shutdown events."""
    await init_db()

    async with async_session() as session:
        await record_audit_event(
            session, "system.start", "Application backend started", entity_type="system"
        )

    # Start background tasks
    sync_task = asyncio.create_task(start_auto_sync_scheduler())

    yield

    sync_task.cancel()
    try:
        await sync_task
    except asyncio.CancelledError:
        pass
    await close_db()


app = FastAPI(
    title="KmTrack API",
    description="Tesla mileage sync & reconciliation",
    version="0.1.0",
    lifespan=lifespan,
)

# CORS middleware for frontend communication
app.add_middleware(
    CORSMiddleware,
    allow_origins=CORS_ORIGINS,
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

# Include routers
app.include_router(tesla.router, prefix="/api/tesla", tags=["tesla"])
app.include_router(sync.router, prefix="/api/sync", tags=["sync"])
app.include_router(vehicles.router, prefix="/api/vehicles", tags=["vehicles"])
app.include_router(settings.router, prefix="/api/settings", tags=["settings"])


@app.get("/api/health")
async def health_check():
    """Health check endpoint."""
    return {"status": "ok", "version": "0.1.0"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run(
        "main:app",
        host=os.environ.get("KMTRACK_HOST", "127.0.0.1"),
        port=int(os.environ.get("KMTRACK_PORT", "8000")),
    )
